"""Appointment lifecycle tests.

- create / book validation and double-booking protection
- status transitions and terminal states
- client cancellation
- calendar queries and day statistics
"""
import threading
from datetime import datetime, timezone

import pytest

from loyalty.errors import NotFoundError, StateConflictError, ValidationError
from tests.conftest import MONDAY, TUESDAY, at


class TestCreate:

    def test_book_copies_service_duration(self, core, client, service, employee):
        apt_id = core.appointments.book(client.id, service.id, employee.id, at(MONDAY, "10:00"))
        apt = core.appointments.get(apt_id)
        assert apt.status == "pending"
        assert apt.duration == 30
        assert apt.establishment_id == employee.establishment_id

    def test_duration_kept_after_service_change(self, core, temp_db, client, service, employee):
        apt_id = core.appointments.book(client.id, service.id, employee.id, at(MONDAY, "10:00"))
        temp_db.services.update_service(service.id, duration=60)
        assert core.appointments.get(apt_id).duration == 30

    def test_missing_fields(self, core, client, service, employee):
        with pytest.raises(ValidationError) as exc:
            core.appointments.create(client.id, None, employee.id, at(MONDAY, "10:00"), 30)
        assert "service_id" in exc.value.message

    def test_invalid_duration(self, core, client, service, employee):
        with pytest.raises(ValidationError):
            core.appointments.create(client.id, service.id, employee.id, at(MONDAY, "10:00"), 0)

    def test_date_must_be_datetime(self, core, client, service, employee):
        with pytest.raises(ValidationError):
            core.appointments.create(client.id, service.id, employee.id, MONDAY, 30)

    def test_unknown_employee(self, core, client, service):
        with pytest.raises(NotFoundError):
            core.appointments.create(client.id, service.id, 99999, at(MONDAY, "10:00"), 30)

    def test_overlap_rejected(self, core, client, service, employee):
        core.appointments.book(client.id, service.id, employee.id, at(MONDAY, "10:00"))
        with pytest.raises(StateConflictError) as exc:
            core.appointments.create(
                client.id, service.id, employee.id, at(MONDAY, "10:15"), 30
            )
        assert exc.value.current_state == "pending"

    def test_overlap_across_midnight(self, core, client, service, employee):
        core.appointments.create(client.id, service.id, employee.id, at(MONDAY, "23:30"), 60)
        with pytest.raises(StateConflictError):
            core.appointments.create(client.id, service.id, employee.id, at(TUESDAY, "00:00"), 30)
        core.appointments.create(client.id, service.id, employee.id, at(TUESDAY, "00:30"), 30)

    def test_late_booking_overrunning_into_next_day(self, core, client, service, employee):
        core.appointments.create(client.id, service.id, employee.id, at(TUESDAY, "00:15"), 30)
        with pytest.raises(StateConflictError):
            core.appointments.create(client.id, service.id, employee.id, at(MONDAY, "23:30"), 60)

    def test_timezone_aware_start_stored_as_local_time(self, core, client, service, employee):
        core.appointments.book(client.id, service.id, employee.id, at(MONDAY, "10:00"))
        aware = at(MONDAY, "11:00").astimezone(timezone.utc)

        apt_id = core.appointments.create(client.id, service.id, employee.id, aware, 30)

        stored = core.appointments.get(apt_id).date
        assert stored.tzinfo is None
        assert stored == at(MONDAY, "11:00")

    def test_timezone_aware_start_still_checked_for_overlap(self, core, client, service, employee):
        core.appointments.book(client.id, service.id, employee.id, at(MONDAY, "10:00"))
        aware = at(MONDAY, "10:15").astimezone(timezone.utc)
        with pytest.raises(StateConflictError):
            core.appointments.create(client.id, service.id, employee.id, aware, 30)

    def test_back_to_back_allowed(self, core, client, service, employee):
        core.appointments.book(client.id, service.id, employee.id, at(MONDAY, "10:00"))
        core.appointments.book(client.id, service.id, employee.id, at(MONDAY, "10:30"))
        assert len(core.appointments.list_for_employee_day(employee.id, MONDAY)) == 2

    def test_cancelled_slot_can_be_rebooked(self, core, client, service, employee):
        first = core.appointments.book(client.id, service.id, employee.id, at(MONDAY, "10:00"))
        core.appointments.cancel(first)
        second = core.appointments.book(client.id, service.id, employee.id, at(MONDAY, "10:00"))
        assert second != first

    def test_concurrent_bookings_same_slot(self, core, client, service, employee):
        outcomes = []

        def attempt():
            try:
                outcomes.append(core.appointments.book(
                    client.id, service.id, employee.id, at(MONDAY, "11:00")
                ))
            except StateConflictError:
                outcomes.append("conflict")

        threads = [threading.Thread(target=attempt) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("conflict") == 3
        assert len(core.appointments.list_for_employee_day(employee.id, MONDAY)) == 1


class TestBookValidation:

    def test_inactive_service(self, core, temp_db, client, service, employee):
        temp_db.services.update_service(service.id, is_active=False)
        with pytest.raises(ValidationError):
            core.appointments.book(client.id, service.id, employee.id, at(MONDAY, "10:00"))

    def test_inactive_employee(self, core, temp_db, client, service, employee):
        temp_db.employees.deactivate(employee.id)
        with pytest.raises(ValidationError):
            core.appointments.book(client.id, service.id, employee.id, at(MONDAY, "10:00"))

    def test_employee_does_not_offer_service(self, core, temp_db, establishment, client, employee):
        dye = temp_db.services.create_service(establishment.id, "Tinte", duration=90)
        with pytest.raises(ValidationError):
            core.appointments.book(client.id, dye.id, employee.id, at(MONDAY, "10:00"))

    def test_missing_service(self, core, client, employee):
        with pytest.raises(NotFoundError):
            core.appointments.book(client.id, 99999, employee.id, at(MONDAY, "10:00"))


class TestTransitions:

    @pytest.fixture
    def apt_id(self, core, client, service, employee):
        return core.appointments.book(client.id, service.id, employee.id, at(MONDAY, "10:00"))

    def test_happy_path(self, core, apt_id):
        assert core.appointments.confirm(apt_id).status == "confirmed"
        assert core.appointments.complete(apt_id).status == "completed"

    def test_pending_can_be_cancelled(self, core, apt_id):
        assert core.appointments.cancel(apt_id).status == "cancelled"

    def test_pending_cannot_complete(self, core, apt_id):
        with pytest.raises(StateConflictError) as exc:
            core.appointments.complete(apt_id)
        assert exc.value.current_state == "pending"

    @pytest.mark.parametrize("terminal", ["completed", "cancelled"])
    def test_terminal_states(self, core, apt_id, terminal):
        core.appointments.confirm(apt_id)
        core.appointments.set_status(apt_id, terminal)
        for target in ("pending", "confirmed", "completed", "cancelled"):
            with pytest.raises(StateConflictError):
                core.appointments.set_status(apt_id, target)
        assert core.appointments.get(apt_id).status == terminal

    def test_unknown_status(self, core, apt_id):
        with pytest.raises(ValidationError):
            core.appointments.set_status(apt_id, "no_show")

    def test_missing_appointment(self, core):
        with pytest.raises(NotFoundError):
            core.appointments.confirm(99999)

    def test_completion_does_not_award_points(self, core, client, apt_id):
        core.appointments.confirm(apt_id)
        core.appointments.complete(apt_id)
        assert core.ledger.get_balance(client.id) == 0


class TestClientCancellation:

    def test_cancel_own(self, core, client, service, employee):
        apt_id = core.appointments.book(client.id, service.id, employee.id, at(MONDAY, "10:00"))
        core.appointments.confirm(apt_id)
        assert core.appointments.cancel_by_client(apt_id, client.id).status == "cancelled"

    def test_cannot_cancel_someone_else(self, core, client, service, employee):
        other = core.register_client("Beto")
        apt_id = core.appointments.book(client.id, service.id, employee.id, at(MONDAY, "10:00"))
        with pytest.raises(NotFoundError):
            core.appointments.cancel_by_client(apt_id, other.id)

    def test_cannot_cancel_completed(self, core, client, service, employee):
        apt_id = core.appointments.book(client.id, service.id, employee.id, at(MONDAY, "10:00"))
        core.appointments.confirm(apt_id)
        core.appointments.complete(apt_id)
        with pytest.raises(StateConflictError):
            core.appointments.cancel_by_client(apt_id, client.id)


class TestQueries:

    def test_list_for_month(self, core, client, service, employee, establishment):
        core.appointments.book(client.id, service.id, employee.id, at(MONDAY, "10:00"))
        core.appointments.create(
            client.id, service.id, employee.id, datetime(2024, 2, 5, 10, 0), 30
        )
        january = core.appointments.list_for_month(establishment.id, 2024, 1)
        assert [a.date for a in january] == [at(MONDAY, "10:00")]
        assert len(core.appointments.list_for_month(establishment.id, 2024, 2)) == 1
        assert core.appointments.list_for_month(establishment.id, 2024, 12) == []

    def test_list_for_client_upcoming(self, core, client, service, employee):
        past = core.appointments.book(client.id, service.id, employee.id, at(MONDAY, "09:00"))
        later = core.appointments.book(client.id, service.id, employee.id, at(MONDAY, "15:00"))
        soon = core.appointments.book(client.id, service.id, employee.id, at(MONDAY, "12:00"))
        cancelled = core.appointments.book(client.id, service.id, employee.id, at(MONDAY, "16:00"))
        core.appointments.cancel(cancelled)

        upcoming = core.appointments.list_for_client(
            client.id, upcoming_only=True, now=at(MONDAY, "10:00")
        )
        assert [a.id for a in upcoming] == [soon, later]
        assert past in [a.id for a in core.appointments.list_for_client(client.id)]

    def test_day_stats(self, core, client, service, employee, establishment):
        a = core.appointments.book(client.id, service.id, employee.id, at(MONDAY, "09:00"))
        b = core.appointments.book(client.id, service.id, employee.id, at(MONDAY, "10:00"))
        c = core.appointments.book(client.id, service.id, employee.id, at(MONDAY, "11:00"))
        core.appointments.book(client.id, service.id, employee.id, at(MONDAY, "12:00"))
        core.appointments.confirm(a)
        core.appointments.confirm(b)
        core.appointments.complete(b)
        core.appointments.cancel(c)

        stats = core.appointments.day_stats(establishment.id, MONDAY)
        assert stats == {"total": 4, "pending": 1, "confirmed": 1, "completed": 1}
