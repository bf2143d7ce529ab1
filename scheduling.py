import logging
from datetime import datetime, timezone

from apscheduler.triggers.cron import CronTrigger

from errors import BadRequest
from models import Ride, RideSchedule, Vehicle
from notifications import send_notification

logger = logging.getLogger(__name__)

SCHEDULE_TIMEZONE = "UTC"
PLACEHOLDER_SOURCE = "Scheduled Ride - Please update source"
PLACEHOLDER_DESTINATION = "Scheduled Ride - Please update destination"


def parse_crontab(expr):
    """Build a trigger from a standard 5-field crontab, or raise BadRequest"""
    try:
        return CronTrigger.from_crontab(expr.strip(), timezone=SCHEDULE_TIMEZONE)
    except ValueError as e:
        raise BadRequest(f"Invalid cron expression: {e}")


def fires_at(trigger, minute_start):
    return trigger.get_next_fire_time(None, minute_start) == minute_start


def _current_minute(now=None):
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc).replace(second=0, microsecond=0)


def materialise_schedule(session, schedule, minute_start):
    """Create today's placeholder ride for a schedule. Returns the ride or None if skipped."""
    today = minute_start.date()
    existing = session.query(Ride).filter(
        Ride.driver_id == schedule.driver_id,
        Ride.date == today,
        Ride.status.in_(("scheduled", "ongoing")),
    ).first()
    if existing:
        logger.debug(f"Schedule {schedule.id}: driver {schedule.driver_id} already has ride {existing.id} today")
        return None

    vehicle = (
        session.query(Vehicle)
        .filter_by(user_id=schedule.driver_id)
        .order_by(Vehicle.id.desc())
        .first()
    )
    if vehicle is None:
        logger.warning(f"Driver {schedule.driver_id} has no vehicles, skipping scheduled ride")
        return None

    # One seat is the driver's
    seats = max(vehicle.capacity - 1, 0)
    ride = Ride(
        driver_id=schedule.driver_id,
        vehicle_id=vehicle.id,
        source=PLACEHOLDER_SOURCE,
        destination=PLACEHOLDER_DESTINATION,
        date=today,
        time=minute_start.strftime("%H:%M:00"),
        total_seats=seats,
        available_seats=seats,
        fare_per_km=10.0,
        distance_km=0.0,
        status="scheduled",
    )
    session.add(ride)
    try:
        session.commit()
    except Exception:
        session.rollback()
        raise
    logger.info(f"Created scheduled ride {ride.id} for driver {schedule.driver_id} from schedule {schedule.id}")
    return ride


def process_scheduled_rides(session, now=None):
    """Materialise rides for every active schedule that fires in the current minute"""
    minute_start = _current_minute(now)
    schedules = session.query(RideSchedule).filter_by(active=True).order_by(RideSchedule.id).all()
    logger.info(f"Checking {len(schedules)} active ride schedules at {minute_start.isoformat()}")

    created = []
    for schedule in schedules:
        schedule_id, driver_id = schedule.id, schedule.driver_id
        try:
            if not fires_at(parse_crontab(schedule.cron_expr), minute_start):
                continue
            ride = materialise_schedule(session, schedule, minute_start)
            if ride is None:
                continue
            created.append(ride.id)
        except Exception as e:
            session.rollback()
            logger.error(f"Error processing schedule {schedule_id}: {e}")
            continue

        try:
            send_notification(
                session,
                driver_id,
                f"Your scheduled ride has been created! Ride ID: {ride.id}. Please update the source and destination.",
            )
        except Exception as e:
            logger.error(f"Failed to notify driver {driver_id} about scheduled ride {ride.id}: {e}")

    if created:
        logger.info(f"Materialised {len(created)} scheduled ride(s): {created}")
    return created
