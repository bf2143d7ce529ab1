from datetime import date, datetime, timezone

import pytest

import scheduling
from errors import BadRequest
from models import Notification, Ride, RideSchedule

NOW = datetime(2026, 3, 2, 9, 30, 27, tzinfo=timezone.utc)


@pytest.fixture
def add_schedule(session):
    def add(driver, cron_expr="* * * * *", active=True):
        schedule = RideSchedule(driver_id=driver.id, cron_expr=cron_expr, active=active)
        session.add(schedule)
        session.commit()
        return schedule
    return add


def test_parse_crontab_rejects_garbage():
    with pytest.raises(BadRequest):
        scheduling.parse_crontab("not a cron")


def test_fires_at_matches_minute():
    minute = NOW.replace(second=0)
    assert scheduling.fires_at(scheduling.parse_crontab("30 9 * * *"), minute)
    assert not scheduling.fires_at(scheduling.parse_crontab("0 9 * * *"), minute)


def test_matching_schedule_creates_one_ride_per_day(session, make_user, make_vehicle, add_schedule):
    driver = make_user("driver")
    vehicle = make_vehicle(driver, capacity=5)
    add_schedule(driver, "30 9 * * *")

    created = scheduling.process_scheduled_rides(session, now=NOW)

    assert len(created) == 1
    ride = session.get(Ride, created[0])
    assert (ride.driver_id, ride.vehicle_id) == (driver.id, vehicle.id)
    assert ride.date == date(2026, 3, 2)
    assert ride.time == "09:30:00"
    assert ride.total_seats == ride.available_seats == 4
    assert ride.status == "scheduled"
    note = session.query(Notification).filter_by(user_id=driver.id).one()
    assert f"Ride ID: {ride.id}" in note.message

    assert scheduling.process_scheduled_rides(session, now=NOW) == []
    assert session.query(Ride).count() == 1


def test_non_matching_and_inactive_schedules_are_ignored(session, make_user, make_vehicle, add_schedule):
    driver = make_user("driver")
    make_vehicle(driver)
    add_schedule(driver, "0 18 * * *")
    add_schedule(driver, "* * * * *", active=False)

    assert scheduling.process_scheduled_rides(session, now=NOW) == []


def test_driver_without_vehicle_is_skipped(session, make_user, add_schedule):
    add_schedule(make_user("driver"))
    assert scheduling.process_scheduled_rides(session, now=NOW) == []
    assert session.query(Ride).count() == 0


def test_broken_schedule_does_not_stop_others(session, make_user, make_vehicle, add_schedule):
    broken = make_user("driver")
    make_vehicle(broken)
    add_schedule(broken, "every morning")
    healthy = make_user("driver")
    make_vehicle(healthy)
    add_schedule(healthy)

    created = scheduling.process_scheduled_rides(session, now=NOW)

    assert [session.get(Ride, ride_id).driver_id for ride_id in created] == [healthy.id]


def test_naive_now_is_treated_as_utc(session, make_user, make_vehicle, add_schedule):
    driver = make_user("driver")
    make_vehicle(driver)
    add_schedule(driver, "30 9 * * *")

    created = scheduling.process_scheduled_rides(session, now=NOW.replace(tzinfo=None))
    assert len(created) == 1
