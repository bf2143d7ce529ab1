import logging
from datetime import datetime, timedelta

from flask import Blueprint, g

from app import db
from auth import login_required, parse_body, roles_required
from errors import NotFound, PermissionDenied, success_response
from models import DRIVER_TYPES, Booking, NightRideSafetyCheck, SosAlert, User
from notifications import NotificationBatch
from pricing import haversine
from schemas import UnsafeReport

logger = logging.getLogger(__name__)

bp = Blueprint('safety', __name__, url_prefix='/api/safety')

THANK_YOU_MESSAGE = "Thank you for confirming your safety. We're glad you arrived safely!"
UNSAFE_ACK_MESSAGE = (
    "We have received your safety report. Our team has been notified and will contact you shortly. "
    "If this is an emergency, please call local emergency services."
)
REMINDER_MESSAGE = "Please confirm that you reached your destination safely."

# Unconfirmed checks older than this get a reminder
OVERDUE_AFTER = timedelta(hours=1)
SOS_DRIVER_RADIUS_KM = 5
SOS_DRIVER_LIMIT = 10


def _admin_ids(session):
    return [user_id for (user_id,) in session.query(User.id).filter(User.user_type == "admin").order_by(User.id)]


def confirm_safety(session, passenger_id, booking_id):
    """Acknowledge the safety check opened for a booking. Returns (check, already_confirmed)."""
    check = session.query(NightRideSafetyCheck).filter_by(booking_id=booking_id, passenger_id=passenger_id).first()
    if check is None:
        raise NotFound("Safety check not found or unauthorized")
    if check.is_confirmed:
        return check, True

    check.is_confirmed = True
    check.confirmation_time = datetime.utcnow()
    try:
        session.commit()
    except Exception:
        session.rollback()
        raise
    logger.info(f"Passenger {passenger_id} confirmed safety for booking {booking_id}")

    batch = NotificationBatch()
    batch.add(passenger_id, THANK_YOU_MESSAGE)
    batch.send_all(session)
    return check, False


def pending_checks(session, passenger_id):
    checks = (
        session.query(NightRideSafetyCheck)
        .filter_by(passenger_id=passenger_id, is_confirmed=False)
        .order_by(NightRideSafetyCheck.ride_completed_at.desc(), NightRideSafetyCheck.id.desc())
        .all()
    )
    result = []
    for check in checks:
        item = check.to_dict()
        item.update({
            'source': check.ride.source,
            'destination': check.ride.destination,
            'date': check.ride.date.isoformat(),
            'time': check.ride.time,
        })
        result.append(item)
    return result


def report_unsafe(session, passenger_id, booking_id, message=None):
    """Flag a completed ride's check as unsafe and alert every admin."""
    check = session.query(NightRideSafetyCheck).filter_by(booking_id=booking_id, passenger_id=passenger_id).first()
    if check is None:
        raise NotFound("Safety check not found or unauthorized")

    check.is_confirmed = False
    check.confirmation_time = None
    check.admin_notified = True
    try:
        session.commit()
    except Exception:
        session.rollback()
        raise
    logger.warning(f"Passenger {passenger_id} reported feeling unsafe after booking {booking_id}")

    passenger = session.get(User, passenger_id)
    ride = check.ride
    alert = (
        f"URGENT: Passenger {passenger.name} (ID: {passenger_id}) has reported they are NOT SAFE. "
        f"Phone: {passenger.phone}. Route: {ride.source} -> {ride.destination} on {ride.date.isoformat()} "
        f"at {ride.time}. Booking ID: {booking_id}."
    )
    if passenger.emergency_contact_name:
        alert += f" Emergency contact: {passenger.emergency_contact_name} {passenger.emergency_contact_phone or ''}".rstrip() + "."
    if message:
        alert += f" Message: {message}"

    admins = _admin_ids(session)
    batch = NotificationBatch()
    for admin_id in admins:
        batch.add(admin_id, alert)
    batch.add(passenger_id, UNSAFE_ACK_MESSAGE)
    batch.send_all(session)

    failed = {user_id for user_id, _ in batch.failures}
    return {'admins_notified': len([a for a in admins if a not in failed])}


def process_overdue_checks(session, now=None):
    """Remind passengers whose safety check stayed unconfirmed past OVERDUE_AFTER.

    Each check is reminded once; checks already escalated to admins are skipped.
    """
    now = now or datetime.utcnow()
    overdue = (
        session.query(NightRideSafetyCheck)
        .filter(
            NightRideSafetyCheck.is_confirmed.is_(False),
            NightRideSafetyCheck.admin_notified.is_(False),
            NightRideSafetyCheck.passenger_reminded.is_(False),
            NightRideSafetyCheck.ride_completed_at < now - OVERDUE_AFTER,
        )
        .order_by(NightRideSafetyCheck.ride_completed_at)
        .all()
    )
    batch = NotificationBatch()
    for check in overdue:
        check.passenger_reminded = True
        batch.add(check.passenger_id, REMINDER_MESSAGE)
    try:
        session.commit()
    except Exception:
        session.rollback()
        raise
    sent = batch.send_all(session)
    if overdue:
        logger.info(f"Sent {sent} safety reminder(s) for {len(overdue)} overdue check(s)")
    return {'checked': len(overdue), 'reminders_sent': sent}


def _nearby_drivers(session, lat, lon, exclude):
    candidates = (
        session.query(User)
        .filter(
            User.user_type.in_(DRIVER_TYPES),
            User.is_available.is_(True),
            User.latitude.isnot(None),
            User.longitude.isnot(None),
        )
        .all()
    )
    nearby = []
    for driver in candidates:
        if driver.id in exclude:
            continue
        distance = haversine(lat, lon, driver.latitude, driver.longitude)
        if distance <= SOS_DRIVER_RADIUS_KM:
            nearby.append((distance, driver.id))
    nearby.sort()
    return [driver_id for _, driver_id in nearby[:SOS_DRIVER_LIMIT]]


def _sos_message(booking, user, payload):
    ride = booking.ride
    driver = ride.driver
    lines = [
        "SOS ALERT: emergency raised",
        f"Booking ID: #{booking.id}",
        f"Passenger: {booking.passenger.name} ({booking.passenger.phone})",
        f"Driver: {driver.name} ({driver.phone})",
    ]
    if ride.vehicle is not None:
        lines.append(f"Vehicle: {ride.vehicle.model} {ride.vehicle.license_plate}")
    lines.append(f"Route: {ride.source} -> {ride.destination} on {ride.date.isoformat()} at {ride.time} ({ride.status})")
    if user.id != booking.passenger_id:
        lines.append(f"Raised by admin {user.name}")
    if payload.details:
        lines.append(f"Details: {payload.details}")
    if payload.passenger_lat is not None and payload.passenger_lon is not None:
        lines.append(
            f"Location: https://maps.google.com/?q={payload.passenger_lat},{payload.passenger_lon}"
        )
    passenger = booking.passenger
    if passenger.emergency_contact_name:
        contact = " ".join(
            part for part in (
                passenger.emergency_contact_name,
                passenger.emergency_contact_phone,
                passenger.emergency_contact_email,
            ) if part
        )
        lines.append(f"Emergency contact: {contact}")
    return "\n".join(lines)


def raise_sos(session, user, booking_id, payload):
    """Log an SOS for a booking and alert admins and nearby available drivers.

    Only the booking's passenger or an admin may raise it. Every admin gets the
    alert, plus one broadcast row so it stays in the admin feed even when no
    admin account exists.
    """
    booking = session.get(Booking, booking_id)
    if booking is None:
        raise NotFound("Booking not found")
    if user.id != booking.passenger_id and user.user_type != "admin":
        raise PermissionDenied("Only the passenger or an admin can raise SOS for this booking")

    alert = SosAlert(
        booking_id=booking.id,
        user_id=user.id,
        details=payload.details,
        latitude=payload.passenger_lat,
        longitude=payload.passenger_lon,
    )
    session.add(alert)
    try:
        session.commit()
    except Exception:
        session.rollback()
        raise
    logger.warning(f"SOS {alert.id} raised by user {user.id} for booking {booking.id}")

    message = _sos_message(booking, user, payload)
    admins = _admin_ids(session)
    drivers = []
    if payload.passenger_lat is not None and payload.passenger_lon is not None:
        drivers = _nearby_drivers(
            session, payload.passenger_lat, payload.passenger_lon,
            exclude={booking.passenger_id, booking.ride.driver_id},
        )

    batch = NotificationBatch()
    for admin_id in admins:
        batch.add(admin_id, message)
    batch.add(None, message)
    for driver_id in drivers:
        batch.add(driver_id, f"SOS ALERT: a passenger within {SOS_DRIVER_RADIUS_KM} km needs help. Booking #{booking.id}")
    batch.send_all(session)

    failed = {user_id for user_id, _ in batch.failures}
    return {
        'alert_id': alert.id,
        'booking_id': booking.id,
        'admins_notified': len([a for a in admins if a not in failed]),
        'nearby_drivers_notified': len([d for d in drivers if d not in failed]),
    }


# ---------------- API ENDPOINTS ----------------
@bp.route('/confirm/<int:booking_id>', methods=['POST'])
@login_required
def confirm(booking_id):
    check, already = confirm_safety(db.session, g.current_user.id, booking_id)
    message = 'Safety already confirmed' if already else 'Safety confirmed successfully'
    return success_response(message, check.to_dict())


@bp.route('/report-unsafe/<int:booking_id>', methods=['POST'])
@login_required
def report(booking_id):
    payload = parse_body(UnsafeReport)
    result = report_unsafe(db.session, g.current_user.id, booking_id, payload.message)
    return success_response('Safety alert reported successfully. Admins have been notified.', result)


@bp.route('/pending', methods=['GET'])
@login_required
def pending():
    return success_response('Pending safety checks retrieved', pending_checks(db.session, g.current_user.id))


@bp.route('/check-pending', methods=['POST'])
@roles_required('admin')
def check_pending():
    return success_response('Safety checks processed', process_overdue_checks(db.session))

