"""Slot availability tests.

Covers the 30-minute grid, the working-hours fallback chain,
breaks, and overlap exclusion against existing appointments.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta

import pytest

from config.settings import Settings
from loyalty.availability import (
    SLOT_STEP_MINUTES, WorkingWindow, compute_free_slots, parse_hhmm, resolve_working_window,
)
from loyalty.errors import NotFoundError, ValidationError
from tests.conftest import ESTABLISHMENT_HOURS, MONDAY, SUNDAY, TUESDAY, at

MONDAY_9_TO_18 = {"monday": {"start": "09:00", "end": "18:00"}}


@dataclass
class FakeAppointment:
    date: datetime
    duration: int
    status: str = "pending"


def _to_minutes(slot):
    return parse_hhmm(slot)


class TestWorkingWindow:

    def test_employee_day_wins(self):
        window = resolve_working_window("monday", MONDAY_9_TO_18, ESTABLISHMENT_HOURS)
        assert (window.start, window.end) == (9 * 60, 18 * 60)

    def test_falls_back_to_establishment_hours(self):
        window = resolve_working_window("tuesday", MONDAY_9_TO_18, ESTABLISHMENT_HOURS)
        assert (window.start, window.end) == (10 * 60, 14 * 60)

    def test_closed_establishment_day(self):
        assert resolve_working_window("saturday", {}, ESTABLISHMENT_HOURS) is None

    def test_no_configuration(self):
        assert resolve_working_window("sunday", MONDAY_9_TO_18, ESTABLISHMENT_HOURS) is None
        assert resolve_working_window("monday", None, None) is None

    def test_break_times_both_spellings(self):
        snake = WorkingWindow.from_employee_day(
            {"start": "09:00", "end": "18:00",
             "break_times": [{"start": "13:00", "end": "14:00"}]}
        )
        camel = WorkingWindow.from_employee_day(
            {"start": "09:00", "end": "18:00",
             "breakTimes": [{"start": "13:00", "end": "14:00"}]}
        )
        assert snake.breaks == camel.breaks == ((13 * 60, 14 * 60),)

    def test_bad_time_value(self):
        with pytest.raises(ValidationError):
            parse_hhmm("nine")


class TestComputeFreeSlots:

    def test_full_day_has_eighteen_slots(self):
        slots = compute_free_slots(WorkingWindow(9 * 60, 18 * 60), 30, MONDAY, [])
        assert len(slots) == 18
        assert slots[0] == "09:00"
        assert slots[-1] == "17:30"

    def test_slots_on_grid_inside_window(self):
        slots = compute_free_slots(WorkingWindow(9 * 60, 18 * 60), 45, MONDAY, [])
        for slot in slots:
            minutes = _to_minutes(slot)
            assert (minutes - 9 * 60) % 30 == 0
            assert minutes + 45 <= 18 * 60
        # 17:30 would overrun closing time
        assert slots[-1] == "17:00"

    def test_existing_appointment_blocks_overlapping_slots(self):
        booked = [FakeAppointment(at(MONDAY, "10:00"), 60)]
        slots = compute_free_slots(WorkingWindow(9 * 60, 18 * 60), 30, MONDAY, booked)
        assert "10:00" not in slots
        assert "10:30" not in slots
        assert "09:30" in slots
        assert "11:00" in slots

    def test_longer_service_blocked_by_later_appointment(self):
        booked = [FakeAppointment(at(MONDAY, "10:00"), 30)]
        slots = compute_free_slots(WorkingWindow(9 * 60, 18 * 60), 60, MONDAY, booked)
        assert "09:00" in slots
        assert "09:30" not in slots
        assert "10:30" in slots

    def test_no_slot_overlaps_any_active_appointment(self):
        booked = [
            FakeAppointment(at(MONDAY, "09:15"), 20),
            FakeAppointment(at(MONDAY, "12:00"), 90),
            FakeAppointment(at(MONDAY, "16:45"), 30),
        ]
        slots = compute_free_slots(WorkingWindow(9 * 60, 18 * 60), 45, MONDAY, booked)
        for slot in slots:
            start = at(MONDAY, slot)
            end = start + timedelta(minutes=45)
            for apt in booked:
                apt_end = apt.date + timedelta(minutes=apt.duration)
                assert not (start < apt_end and end > apt.date)

    def test_cancelled_appointments_ignored(self):
        booked = [FakeAppointment(at(MONDAY, "10:00"), 60, status="cancelled")]
        slots = compute_free_slots(WorkingWindow(9 * 60, 18 * 60), 30, MONDAY, booked)
        assert len(slots) == 18

    def test_breaks_excluded(self):
        window = WorkingWindow(9 * 60, 18 * 60, breaks=((13 * 60, 14 * 60),))
        slots = compute_free_slots(window, 30, MONDAY, [])
        assert "13:00" not in slots
        assert "13:30" not in slots
        assert "12:30" in slots
        assert "14:00" in slots

    def test_service_longer_than_window(self):
        assert compute_free_slots(WorkingWindow(9 * 60, 10 * 60), 90, MONDAY, []) == []


class TestAvailabilityCalculator:

    def test_free_monday(self, core, employee):
        slots = core.availability.compute_available_slots(
            employee.id, MONDAY_9_TO_18, 30, MONDAY
        )
        assert len(slots) == 18

    def test_grid_step_is_not_configurable(self, monkeypatch, core, employee):
        monkeypatch.setenv("SLOT_STEP_MINUTES", "0")
        assert not hasattr(Settings(), "slot_step_minutes")

        slots = core.availability.compute_available_slots(
            employee.id, MONDAY_9_TO_18, 30, MONDAY
        )

        assert SLOT_STEP_MINUTES == 30
        assert len(slots) == 18

    def test_accepts_datetime_target(self, core, employee):
        slots = core.availability.compute_available_slots(
            employee.id, MONDAY_9_TO_18, 30, at(MONDAY, "15:00")
        )
        assert len(slots) == 18

    def test_booked_slot_removed(self, core, client, service, employee):
        core.appointments.book(client.id, service.id, employee.id, at(MONDAY, "10:00"))
        slots = core.availability.get_slots_for_booking(employee.id, service.id, MONDAY)
        assert "10:00" not in slots
        assert len(slots) == 17

    def test_cancelled_booking_frees_slot(self, core, client, service, employee):
        apt_id = core.appointments.book(client.id, service.id, employee.id, at(MONDAY, "10:00"))
        core.appointments.cancel(apt_id)
        slots = core.availability.get_slots_for_booking(employee.id, service.id, MONDAY)
        assert "10:00" in slots

    def test_previous_day_overrun_blocks_early_slots(self, core, temp_db, client, service, employee):
        temp_db.employees.update_availability(employee.id, {
            "monday": {"start": "20:00", "end": "23:59"},
            "tuesday": {"start": "00:00", "end": "02:00"},
        })
        core.appointments.create(client.id, service.id, employee.id, at(MONDAY, "23:30"), 90)

        slots = core.availability.get_slots_for_booking(employee.id, service.id, TUESDAY)

        assert slots == ["01:00", "01:30"]

    def test_establishment_fallback_and_closed_days(self, core, service, employee):
        tuesday = core.availability.get_slots_for_booking(employee.id, service.id, TUESDAY)
        assert tuesday[0] == "10:00"
        assert tuesday[-1] == "13:30"
        assert core.availability.get_slots_for_booking(employee.id, service.id, SUNDAY) == []

    def test_invalid_duration(self, core, employee):
        for duration in (0, -30, None):
            with pytest.raises(ValidationError):
                core.availability.compute_available_slots(
                    employee.id, MONDAY_9_TO_18, duration, MONDAY
                )

    def test_missing_employee_or_service(self, core, service, employee):
        with pytest.raises(NotFoundError):
            core.availability.get_slots_for_booking(99999, service.id, MONDAY)
        with pytest.raises(NotFoundError):
            core.availability.get_slots_for_booking(employee.id, 99999, MONDAY)
