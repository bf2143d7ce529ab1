import math
from datetime import datetime, timedelta

import pytest

import safety
from errors import NotFound, PermissionDenied
from models import NightRideSafetyCheck, Notification, SosAlert
from schemas import SosRequest

ONE_KM_LAT = math.degrees(1 / 6371)


@pytest.fixture
def completed_trip(session, make_user, make_ride, make_booking):
    """Passenger with a completed booking and its open safety check"""
    driver = make_user("driver", name="Ravi")
    passenger = make_user(name="Asha")
    ride = make_ride(driver, status="completed")
    booking = make_booking(ride, passenger, status="completed")
    check = NightRideSafetyCheck(
        booking_id=booking.id,
        ride_id=ride.id,
        passenger_id=passenger.id,
        ride_completed_at=datetime.utcnow() - timedelta(hours=2),
    )
    session.add(check)
    session.commit()
    return passenger, booking, check


def _messages(session, user_id):
    return [n.message for n in session.query(Notification).filter_by(user_id=user_id).order_by(Notification.id)]


# ---------------- CONFIRM ----------------
def test_confirm_is_idempotent(session, completed_trip):
    passenger, booking, _ = completed_trip

    check, already = safety.confirm_safety(session, passenger.id, booking.id)
    assert (check.is_confirmed, already) == (True, False)

    _, already = safety.confirm_safety(session, passenger.id, booking.id)
    assert already is True
    assert _messages(session, passenger.id) == [safety.THANK_YOU_MESSAGE]
    assert safety.pending_checks(session, passenger.id) == []


def test_confirm_someone_elses_check(session, make_user, completed_trip):
    _, booking, _ = completed_trip
    with pytest.raises(NotFound):
        safety.confirm_safety(session, make_user().id, booking.id)


# ---------------- REPORT UNSAFE ----------------
def test_report_unsafe_alerts_admins(session, make_user, completed_trip):
    passenger, booking, check = completed_trip
    passenger.emergency_contact_name = "Meera"
    passenger.emergency_contact_phone = "9123456780"
    session.commit()
    admin = make_user("admin")

    result = safety.report_unsafe(session, passenger.id, booking.id, "driver took a detour")

    assert result == {'admins_notified': 1}
    stored = session.get(NightRideSafetyCheck, check.id)
    assert (stored.is_confirmed, stored.admin_notified) == (False, True)
    [alert] = _messages(session, admin.id)
    assert "Asha" in alert and "NOT SAFE" in alert
    assert "Meera 9123456780" in alert
    assert "driver took a detour" in alert
    assert _messages(session, passenger.id) == [safety.UNSAFE_ACK_MESSAGE]


def test_report_unsafe_requires_own_check(session, make_user, completed_trip):
    _, booking, _ = completed_trip
    with pytest.raises(NotFound):
        safety.report_unsafe(session, make_user().id, booking.id)


# ---------------- OVERDUE CHECKS ----------------
def test_overdue_checks_get_one_reminder(session, completed_trip):
    passenger, _, _ = completed_trip

    assert safety.process_overdue_checks(session) == {'checked': 1, 'reminders_sent': 1}
    assert safety.process_overdue_checks(session) == {'checked': 0, 'reminders_sent': 0}
    assert _messages(session, passenger.id) == [safety.REMINDER_MESSAGE]


def test_recent_and_escalated_checks_are_not_reminded(session, completed_trip):
    passenger, booking, check = completed_trip
    assert safety.process_overdue_checks(session, now=check.ride_completed_at + timedelta(minutes=30))["checked"] == 0

    safety.report_unsafe(session, passenger.id, booking.id)
    assert safety.process_overdue_checks(session)["checked"] == 0


# ---------------- SOS ----------------
def test_sos_notifies_admins_and_nearby_drivers(session, make_user, completed_trip):
    passenger, booking, _ = completed_trip
    admin = make_user("admin")
    near = make_user("driver", is_available=True, latitude=12.0 + ONE_KM_LAT, longitude=77.0)
    make_user("driver", is_available=True, latitude=12.5, longitude=77.0)
    make_user("driver", is_available=False, latitude=12.0, longitude=77.0)

    result = safety.raise_sos(
        session, passenger, booking.id,
        SosRequest(details="car stopped on highway", passenger_lat=12.0, passenger_lon=77.0),
    )

    assert result["booking_id"] == booking.id
    assert (result["admins_notified"], result["nearby_drivers_notified"]) == (1, 1)
    alert = session.get(SosAlert, result["alert_id"])
    assert (alert.user_id, alert.details) == (passenger.id, "car stopped on highway")

    [admin_message] = _messages(session, admin.id)
    assert admin_message.startswith("SOS ALERT")
    assert "maps.google.com/?q=12.0,77.0" in admin_message
    assert len(_messages(session, None)) == 1
    assert len(_messages(session, near.id)) == 1


def test_sos_without_admins_still_reaches_the_feed(session, completed_trip):
    passenger, booking, _ = completed_trip

    result = safety.raise_sos(session, passenger, booking.id, SosRequest())

    assert (result["admins_notified"], result["nearby_drivers_notified"]) == (0, 0)
    assert "SOS ALERT" in _messages(session, None)[0]


def test_sos_is_limited_to_passenger_or_admin(session, make_user, completed_trip):
    _, booking, _ = completed_trip

    with pytest.raises(PermissionDenied):
        safety.raise_sos(session, make_user(), booking.id, SosRequest())
    with pytest.raises(NotFound):
        safety.raise_sos(session, make_user("admin"), 404, SosRequest())

    assert safety.raise_sos(session, make_user("admin"), booking.id, SosRequest())["alert_id"]
