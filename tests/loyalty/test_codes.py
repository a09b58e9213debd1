"""Client and redemption code tests."""
import re
from itertools import count

import pytest

from loyalty.codes import (
    CODE_ALPHABET, format_client_code, generate_client_code,
    generate_redemption_code, generate_unique_code,
    normalize_client_code, normalize_redemption_code,
)
from loyalty.errors import CodeGenerationError, InfrastructureError


def test_alphabet_excludes_ambiguous_characters():
    assert len(CODE_ALPHABET) == 31
    for ch in "01ILO":
        assert ch not in CODE_ALPHABET


def test_client_code_shape():
    for _ in range(50):
        code = generate_client_code()
        assert len(code) == 6
        assert all(ch in CODE_ALPHABET for ch in code)


def test_redemption_code_shape():
    pattern = re.compile(r"^CJ-[A-HJ-NP-Z2-9]{6}$")
    for _ in range(50):
        assert pattern.match(generate_redemption_code())


def test_format_client_code():
    assert format_client_code("ABC234") == "ABC-234"
    assert format_client_code("") == "---"
    assert format_client_code(None) == "---"
    assert format_client_code("ABC") == "ABC"


def test_normalize():
    assert normalize_client_code(" abc-234 ") == "ABC234"
    assert normalize_redemption_code(" cj-abc234 ") == "CJ-ABC234"


def test_generate_unique_code_retries_on_collision():
    taken = {"AAAAAA", "BBBBBB"}
    candidates = iter(["AAAAAA", "BBBBBB", "CCCCCC"])
    code = generate_unique_code(lambda: next(candidates), taken.__contains__)
    assert code == "CCCCCC"


def test_generate_unique_code_gives_up():
    attempts = count()

    def generator():
        next(attempts)
        return "AAAAAA"

    with pytest.raises(CodeGenerationError) as exc:
        generate_unique_code(generator, lambda c: True, max_attempts=3)
    assert isinstance(exc.value, InfrastructureError)
    assert next(attempts) == 3
