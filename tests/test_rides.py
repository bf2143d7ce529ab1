from datetime import date, timedelta

import pytest

import notifications
import rides
from errors import BadRequest, Conflict, NotFound, PermissionDenied
from models import Booking, Feedback, NightRideSafetyCheck, Notification, Ride, Wallet, WalletTransaction
from schemas import RideCreate, RideUpdate


def _ride_payload(**overrides):
    data = {
        "source": "MG Road",
        "destination": "Airport",
        "date": (date.today() + timedelta(days=2)).isoformat(),
        "time": "9:05",
        "total_seats": 3,
        "distance_km": 12.0,
    }
    data.update(overrides)
    return RideCreate(**data)


def _seat_invariant_holds(session, ride_id):
    ride = session.get(Ride, ride_id)
    booked = sum(
        b.seats_booked for b in session.query(Booking).filter_by(ride_id=ride_id)
        if b.status not in ("canceled_by_driver", "canceled_by_passenger")
    )
    return ride.available_seats + booked == ride.total_seats


# ---------------- CREATE ----------------
def test_create_ride_without_documents(session, make_user):
    driver = make_user("driver")
    ride = rides.create_ride(session, driver, _ride_payload())
    assert ride.status == "scheduled"
    assert ride.available_seats == ride.total_seats == 3
    assert ride.fare_per_km == 10
    assert ride.time == "09:05:00"


def test_create_ride_with_only_rejected_documents_is_forbidden(session, make_user, make_document):
    driver = make_user("driver")
    make_document(driver, status="rejected")
    make_document(driver, status="pending", doc_type="rc")
    with pytest.raises(PermissionDenied):
        rides.create_ride(session, driver, _ride_payload())
    assert session.query(Ride).count() == 0


def test_create_ride_with_an_approved_document(session, make_user, make_document):
    driver = make_user("both")
    make_document(driver, status="rejected")
    make_document(driver, status="approved", doc_type="rc")
    ride = rides.create_ride(session, driver, _ride_payload())
    assert ride.id is not None


def test_create_ride_with_foreign_vehicle(session, make_user, make_vehicle):
    driver = make_user("driver")
    other = make_user("driver")
    vehicle = make_vehicle(other)
    with pytest.raises(BadRequest):
        rides.create_ride(session, driver, _ride_payload(vehicle_id=vehicle.id))


def test_create_ride_with_own_vehicle(session, make_user, make_vehicle):
    driver = make_user("driver")
    vehicle = make_vehicle(driver, color="white")
    ride = rides.create_ride(session, driver, _ride_payload(vehicle_id=vehicle.id))
    data = ride.to_dict()
    assert data["vehicle_id"] == vehicle.id
    assert data["vehicle_color"] == "white"


# ---------------- SEARCH / READ ----------------
def test_search_filters_and_orders(session, make_user, make_ride):
    driver = make_user("driver")
    tomorrow = date.today() + timedelta(days=1)
    later = make_ride(driver, source="MG Road", destination="Airport", date=tomorrow, time="18:00:00")
    early = make_ride(driver, source="mg road east", destination="Kempegowda Airport", date=tomorrow, time="07:30:00")
    make_ride(driver, source="MG Road", destination="Airport", date=tomorrow, available_seats=0)
    make_ride(driver, source="MG Road", destination="Airport", date=tomorrow, status="cancelled")
    make_ride(driver, source="MG Road", destination="Airport", date=tomorrow + timedelta(days=1))
    make_ride(driver, source="Hebbal", destination="Airport", date=tomorrow)

    results = rides.search_rides(session, source="MG ROAD", destination="airport", date=tomorrow)

    assert [r["ride_id"] for r in results] == [early.id, later.id]
    assert results[0]["estimated_fare"] == 100.0
    assert results[0]["driver_name"] == driver.name


def test_driver_rating_is_computed_on_read(session, make_user, make_ride):
    driver = make_user("driver")
    ride = make_ride(driver)
    first, second = make_user(), make_user()
    session.add_all([
        Feedback(ride_id=ride.id, user_id=first.id, rating=5),
        Feedback(ride_id=ride.id, user_id=second.id, rating=4),
    ])
    session.commit()

    assert rides.get_ride(session, ride.id)["driver_rating"] == 4.5
    assert rides.search_rides(session)[0]["driver_rating"] == 4.5


def test_get_missing_ride(session):
    with pytest.raises(NotFound):
        rides.get_ride(session, 999)


def test_my_rides_stats(session, make_user, make_ride, make_booking):
    driver = make_user("driver")
    ride = make_ride(driver, total_seats=6, distance_km=5.0)
    make_booking(ride, make_user(), seats=2, status="confirmed")
    make_booking(ride, make_user(), seats=1, status="completed")
    make_booking(ride, make_user(), seats=1, status="in_progress")
    make_booking(ride, make_user(), seats=1, status="pending")
    make_booking(ride, make_user(), seats=1, status="canceled_by_passenger")
    empty = make_ride(driver, date=date.today() + timedelta(days=5))

    result = rides.my_rides(session, driver.id)

    assert [r["ride_id"] for r in result] == [empty.id, ride.id]
    stats = result[1]
    assert stats["total_bookings"] == 3
    assert stats["seats_booked_count"] == 4
    assert stats["total_revenue"] == 150.0
    assert result[0]["total_bookings"] == 0


# ---------------- EDIT ----------------
def test_edit_below_booked_seats_is_rejected(session, make_user, make_ride, make_booking):
    driver = make_user("driver")
    ride = make_ride(driver, total_seats=4)
    make_booking(ride, make_user(), seats=1, status="confirmed")
    make_booking(ride, make_user(), seats=2, status="confirmed")

    with pytest.raises(Conflict):
        rides.update_ride(session, driver.id, ride.id, RideUpdate(total_seats=2))
    assert session.get(Ride, ride.id).total_seats == 4


def test_edit_to_exactly_booked_seats(session, make_user, make_ride, make_booking):
    driver = make_user("driver")
    ride = make_ride(driver, total_seats=4)
    make_booking(ride, make_user(), seats=1, status="confirmed")
    make_booking(ride, make_user(), seats=2, status="confirmed")
    make_booking(ride, make_user(), seats=1, status="canceled_by_passenger")

    updated = rides.update_ride(session, driver.id, ride.id, RideUpdate(total_seats=3, time="10:15"))

    assert updated.total_seats == 3
    assert updated.available_seats == 0
    assert updated.time == "10:15:00"
    assert _seat_invariant_holds(session, ride.id)


def test_edit_counts_pending_bookings_as_booked(session, make_user, make_ride, make_booking):
    driver = make_user("driver")
    ride = make_ride(driver, total_seats=4)
    make_booking(ride, make_user(), seats=1, status="confirmed")
    make_booking(ride, make_user(), seats=2, status="pending")

    with pytest.raises(Conflict):
        rides.update_ride(session, driver.id, ride.id, RideUpdate(total_seats=2))

    updated = rides.update_ride(session, driver.id, ride.id, RideUpdate(total_seats=5))
    assert updated.available_seats == 2
    assert _seat_invariant_holds(session, ride.id)


def test_edit_to_pending_booked_count_leaves_no_seats(session, make_user, make_ride, make_booking):
    driver = make_user("driver")
    ride = make_ride(driver, total_seats=4)
    make_booking(ride, make_user(), seats=2, status="pending")

    updated = rides.update_ride(session, driver.id, ride.id, RideUpdate(total_seats=2))

    assert updated.total_seats == 2
    assert updated.available_seats == 0


def test_edit_only_while_scheduled(session, make_user, make_ride):
    driver = make_user("driver")
    ride = make_ride(driver, status="ongoing")
    with pytest.raises(BadRequest):
        rides.update_ride(session, driver.id, ride.id, RideUpdate(source="Hebbal"))


def test_edit_foreign_ride_is_not_found(session, make_user, make_ride):
    ride = make_ride(make_user("driver"))
    with pytest.raises(NotFound):
        rides.update_ride(session, make_user("driver").id, ride.id, RideUpdate(total_seats=2))


# ---------------- STATUS TRANSITIONS ----------------
@pytest.mark.parametrize("current,target", [
    ("scheduled", "completed"),
    ("scheduled", "scheduled"),
    ("ongoing", "scheduled"),
    ("completed", "ongoing"),
    ("completed", "cancelled"),
    ("cancelled", "scheduled"),
    ("cancelled", "completed"),
])
def test_illegal_transitions(session, make_user, make_ride, current, target):
    driver = make_user("driver")
    ride = make_ride(driver, status=current)
    with pytest.raises(BadRequest):
        rides.update_ride_status(session, driver.id, ride.id, target)
    assert session.get(Ride, ride.id).status == current


def test_start_ride(session, make_user, make_ride):
    driver = make_user("driver")
    ride = make_ride(driver)
    result = rides.update_ride_status(session, driver.id, ride.id, "ongoing")
    assert result["status"] == "ongoing"
    assert session.get(Ride, ride.id).status == "ongoing"


def test_cancel_ride_refunds_wallet_payments(session, make_user, make_ride, make_booking):
    driver = make_user("driver")
    ride = make_ride(driver, total_seats=4)
    alice, bob, carol = make_user(), make_user(), make_user()
    make_booking(ride, alice, seats=1, status="confirmed", amount=100.0, paid_with="wallet")
    make_booking(ride, bob, seats=2, status="confirmed", amount=50.0, paid_with="wallet")
    make_booking(ride, carol, seats=1, status="pending", amount=100.0)

    result = rides.update_ride_status(session, driver.id, ride.id, "cancelled")

    assert result == {'ride_id': ride.id, 'status': 'cancelled', 'bookings_cancelled': 3, 'refunds_processed': 2}
    ride = session.get(Ride, ride.id)
    assert ride.status == "cancelled"
    assert ride.available_seats == 4
    statuses = {b.passenger_id: b.status for b in session.query(Booking).filter_by(ride_id=ride.id)}
    assert set(statuses.values()) == {"canceled_by_driver"}
    assert session.query(Wallet).filter_by(user_id=alice.id).one().balance == 100.0
    assert session.query(Wallet).filter_by(user_id=bob.id).one().balance == 50.0
    assert session.query(Wallet).filter_by(user_id=carol.id).first() is None
    refunds = session.query(WalletTransaction).filter_by(type="refund").all()
    assert sorted(t.amount for t in refunds) == [50.0, 100.0]

    messages = {n.user_id: n.message for n in session.query(Notification).all()}
    assert "refunded to your wallet" in messages[alice.id]
    assert "contact us for refund" in messages[carol.id]


def test_cancel_ride_is_all_or_nothing(session, monkeypatch, make_user, make_ride, make_booking):
    driver = make_user("driver")
    ride = make_ride(driver, total_seats=4)
    alice, bob = make_user(), make_user()
    make_booking(ride, alice, seats=1, status="confirmed", amount=100.0, paid_with="wallet")
    make_booking(ride, bob, seats=2, status="confirmed", amount=50.0, paid_with="wallet")

    real_credit = rides.credit_wallet
    calls = []

    def failing_credit(*args, **kwargs):
        calls.append(args)
        if len(calls) == 2:
            raise RuntimeError("ledger unavailable")
        return real_credit(*args, **kwargs)

    monkeypatch.setattr(rides, "credit_wallet", failing_credit)

    with pytest.raises(RuntimeError):
        rides.update_ride_status(session, driver.id, ride.id, "cancelled")

    ride = session.get(Ride, ride.id)
    assert ride.status == "scheduled"
    assert ride.available_seats == 1
    assert {b.status for b in session.query(Booking).filter_by(ride_id=ride.id)} == {"confirmed"}
    assert session.query(Wallet).count() == 0
    assert session.query(WalletTransaction).count() == 0
    assert session.query(Notification).count() == 0


def test_cancel_ride_survives_notification_failures(session, monkeypatch, make_user, make_ride, make_booking):
    driver = make_user("driver")
    ride = make_ride(driver)
    passenger = make_user()
    make_booking(ride, passenger, seats=1, status="confirmed", amount=100.0, paid_with="wallet")

    def broken(*args, **kwargs):
        raise RuntimeError("delivery down")

    monkeypatch.setattr(notifications, "send_notification", broken)

    result = rides.update_ride_status(session, driver.id, ride.id, "cancelled")

    assert result["bookings_cancelled"] == 1
    assert session.get(Ride, ride.id).status == "cancelled"
    assert session.query(Wallet).filter_by(user_id=passenger.id).one().balance == 100.0


def test_complete_ride_opens_safety_checks(session, make_user, make_ride, make_booking):
    driver = make_user("driver")
    ride = make_ride(driver, status="ongoing")
    alice, bob, carol = make_user(), make_user(), make_user()
    first = make_booking(ride, alice, status="confirmed")
    second = make_booking(ride, bob, status="confirmed")
    make_booking(ride, carol, status="canceled_by_passenger")

    result = rides.update_ride_status(session, driver.id, ride.id, "completed")

    assert result["safety_checks_created"] == 2
    assert session.get(Ride, ride.id).status == "completed"
    checks = session.query(NightRideSafetyCheck).order_by(NightRideSafetyCheck.booking_id).all()
    assert [(c.booking_id, c.passenger_id, c.is_confirmed) for c in checks] == [
        (first.id, alice.id, False),
        (second.id, bob.id, False),
    ]
    notified = {n.user_id for n in session.query(Notification).all() if n.message == rides.SAFETY_PROMPT}
    assert notified == {alice.id, bob.id}


def test_complete_ride_continues_past_a_failed_check(session, monkeypatch, make_user, make_ride, make_booking):
    driver = make_user("driver")
    ride = make_ride(driver, status="ongoing")
    alice, bob = make_user(), make_user()
    first = make_booking(ride, alice, status="confirmed")
    second = make_booking(ride, bob, status="confirmed")

    real_check = rides.NightRideSafetyCheck

    def flaky_check(**kwargs):
        if kwargs["booking_id"] == first.id:
            raise RuntimeError("insert failed")
        return real_check(**kwargs)

    monkeypatch.setattr(rides, "NightRideSafetyCheck", flaky_check)

    result = rides.update_ride_status(session, driver.id, ride.id, "completed")

    assert result["safety_checks_created"] == 1
    checks = session.query(NightRideSafetyCheck).all()
    assert [c.booking_id for c in checks] == [second.id]
    assert session.get(Ride, ride.id).status == "completed"


def test_status_update_on_foreign_ride(session, make_user, make_ride):
    ride = make_ride(make_user("driver"))
    with pytest.raises(NotFound):
        rides.update_ride_status(session, make_user("driver").id, ride.id, "cancelled")


# ---------------- SCHEDULES / WAYPOINTS ----------------
def test_create_schedule_validates_crontab(session, make_user):
    from schemas import ScheduleCreate

    driver = make_user("driver")
    with pytest.raises(BadRequest):
        rides.create_schedule(session, driver.id, ScheduleCreate(cron_expr="every morning"))
    with pytest.raises(BadRequest):
        rides.create_schedule(session, driver.id, ScheduleCreate(cron_expr="61 9 * * *"))

    schedule = rides.create_schedule(session, driver.id, ScheduleCreate(cron_expr="0 9 * * mon-fri"))
    assert schedule.active is True
    assert [s.id for s in rides.list_schedules(session, driver.id)] == [schedule.id]


def test_waypoints_are_owner_only_and_ordered(session, make_user, make_ride):
    from schemas import WaypointCreate

    driver = make_user("driver")
    ride = make_ride(driver)
    with pytest.raises(PermissionDenied):
        rides.add_waypoint(session, make_user("driver").id, ride.id, WaypointCreate(lat=12.9, lon=77.6))

    late = rides.add_waypoint(session, driver.id, ride.id, WaypointCreate(name="Hebbal", lat=13.03, lon=77.59, order_index=2))
    early = rides.add_waypoint(session, driver.id, ride.id, WaypointCreate(name="Mekhri", lat=13.01, lon=77.58, order_index=1))

    assert [w.id for w in rides.list_waypoints(session, ride.id)] == [early.id, late.id]
