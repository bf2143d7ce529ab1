import logging

from flask import Blueprint, g
from sqlalchemy import update

from app import db
from auth import login_required, parse_body, roles_required
from errors import BadRequest, NotFound, PermissionDenied, success_response
from models import CANCELLED_STATUSES, SEAT_HOLDING_STATUSES, Booking, Payment, Ride
from notifications import NotificationBatch
from payments import confirm_pending_booking, credit_wallet
from pricing import ride_amount
from schemas import BookingCreate, BookingStatusUpdate

logger = logging.getLogger(__name__)

bp = Blueprint('bookings', __name__, url_prefix='/api/bookings')

# Cancellation fee: 10% of the booking amount, clamped to [20, 100]
CANCELLATION_FEE_RATE = 0.10
MIN_CANCELLATION_FEE = 20.0
MAX_CANCELLATION_FEE = 100.0

BOOKING_TRANSITIONS = {
    "confirmed": "in_progress",
    "in_progress": "completed",
}


def cancellation_fee(amount):
    fee = round(CANCELLATION_FEE_RATE * float(amount), 2)
    return min(MAX_CANCELLATION_FEE, max(MIN_CANCELLATION_FEE, fee))


def _booking_view(booking, ride):
    item = booking.to_dict()
    item.update({
        'source': ride.source,
        'destination': ride.destination,
        'date': ride.date.isoformat(),
        'time': ride.time,
        'ride_status': ride.status,
        'driver_id': ride.driver_id,
        'driver_name': ride.driver.name,
        'driver_phone': ride.driver.phone,
        'passenger_name': booking.passenger.name,
    })
    return item


# ---------------- OPERATIONS ----------------
def create_booking(session, passenger_id, payload):
    ride = session.query(Ride).filter_by(id=payload.ride_id, status="scheduled").first()
    if ride is None:
        raise NotFound("Ride not found or not available")
    if payload.seats_booked > ride.available_seats:
        raise BadRequest(f"Only {ride.available_seats} seats available")
    if ride.driver_id == passenger_id:
        raise BadRequest("Driver cannot book their own ride")

    booking = Booking(
        ride_id=ride.id,
        passenger_id=passenger_id,
        seats_booked=payload.seats_booked,
        amount=ride_amount(ride.distance_km, payload.seats_booked),
        status="pending",
        notes=payload.notes,
    )
    session.add(booking)
    try:
        session.commit()
    except Exception:
        session.rollback()
        raise
    logger.info(f"Booking {booking.id} created: passenger {passenger_id}, ride {ride.id}, {booking.seats_booked} seat(s)")

    batch = NotificationBatch()
    batch.add(
        ride.driver_id,
        f"New booking request: {booking.passenger.name} booked {booking.seats_booked} seat(s) for {ride.source} → {ride.destination}",
    )
    batch.send_all(session)
    return booking


def list_my_bookings(session, user):
    query = session.query(Booking).join(Ride, Booking.ride_id == Ride.id)
    if user.is_driver:
        query = query.filter(Ride.driver_id == user.id)
    else:
        query = query.filter(Booking.passenger_id == user.id)
    bookings = query.order_by(Booking.booking_date.desc(), Booking.id.desc()).all()
    return [_booking_view(b, b.ride) for b in bookings]


def get_booking(session, user_id, booking_id):
    booking = session.get(Booking, booking_id)
    if booking is None:
        raise NotFound("Booking not found")
    if user_id not in (booking.passenger_id, booking.ride.driver_id):
        raise PermissionDenied("Unauthorized access")
    return _booking_view(booking, booking.ride)


def confirm_booking(session, passenger_id, booking_id):
    booking = session.query(Booking).filter_by(id=booking_id, passenger_id=passenger_id).first()
    if booking is None:
        raise NotFound("Booking not found")
    if booking.status == "confirmed":
        raise BadRequest("Booking already confirmed")
    if booking.status != "pending":
        raise BadRequest(f"Cannot confirm a booking with status '{booking.status}'")

    try:
        if not confirm_pending_booking(session, booking):
            raise BadRequest("Booking already confirmed")
        session.commit()
    except Exception:
        session.rollback()
        raise
    logger.info(f"Booking {booking.id} confirmed, {booking.seats_booked} seat(s) taken from ride {booking.ride_id}")
    return booking


def cancel_booking(session, user_id, booking_id):
    booking = session.get(Booking, booking_id)
    if booking is None:
        raise NotFound("Booking not found")
    ride = booking.ride
    is_passenger = booking.passenger_id == user_id
    if not is_passenger and ride.driver_id != user_id:
        raise PermissionDenied("Unauthorized to cancel this booking")
    if booking.status == "completed":
        raise BadRequest("Cannot cancel completed booking")
    if booking.status in CANCELLED_STATUSES:
        raise BadRequest("Booking already cancelled")

    previous = booking.status
    # Fee applies once the driver is committed to the trip
    fee = 0.0
    if is_passenger and (previous == "confirmed" or ride.status == "ongoing"):
        fee = cancellation_fee(booking.amount)
    next_status = "canceled_by_passenger" if is_passenger else "canceled_by_driver"

    try:
        moved = session.execute(
            update(Booking)
            .where(Booking.id == booking.id, Booking.status == previous)
            .values(status=next_status, cancellation_fee=fee)
            .execution_options(synchronize_session=False)
        )
        if moved.rowcount != 1:
            raise BadRequest("Booking already cancelled")

        if previous in SEAT_HOLDING_STATUSES:
            session.execute(
                update(Ride)
                .where(Ride.id == ride.id)
                .values(available_seats=Ride.available_seats + booking.seats_booked)
                .execution_options(synchronize_session=False)
            )

        payment = booking.completed_payment()
        if payment is not None and payment.method == "wallet":
            refund = round(booking.amount - fee, 2)
            if refund > 0:
                credit_wallet(session, booking.passenger_id, refund, "refund")

        session.execute(
            update(Payment)
            .where(Payment.booking_id == booking.id, Payment.status == "pending")
            .values(status="failed")
            .execution_options(synchronize_session=False)
        )
        if fee > 0:
            session.add(Payment(
                booking_id=booking.id,
                amount=fee,
                method="cash",
                status="pending",
                transaction_id="CANCEL_FEE",
            ))
        session.commit()
    except Exception:
        session.rollback()
        raise

    logger.info(f"Booking {booking_id} cancelled by {'passenger' if is_passenger else 'driver'} (fee {fee:.2f})")
    return {
        'booking_id': booking_id,
        'canceled_by': 'passenger' if is_passenger else 'driver',
        'status': next_status,
        'cancellation_fee': round(fee, 2),
    }


def update_booking_status(session, driver_id, booking_id, status):
    booking = session.get(Booking, booking_id)
    if booking is None:
        raise NotFound("Booking not found")
    if booking.ride.driver_id != driver_id:
        raise PermissionDenied("Unauthorized")
    if BOOKING_TRANSITIONS.get(booking.status) != status:
        raise BadRequest(f"Cannot change booking status from '{booking.status}' to '{status}'")

    try:
        moved = session.execute(
            update(Booking)
            .where(Booking.id == booking.id, Booking.status == booking.status)
            .values(status=status)
            .execution_options(synchronize_session=False)
        )
        if moved.rowcount != 1:
            raise BadRequest("Booking status changed, please retry")
        session.commit()
    except Exception:
        session.rollback()
        raise
    return booking


# ---------------- API ENDPOINTS ----------------
@bp.route('/create', methods=['POST'])
@login_required
def create():
    booking = create_booking(db.session, g.current_user.id, parse_body(BookingCreate))
    return success_response('Booking created successfully', booking.to_dict(), 201)


@bp.route('/my', methods=['GET'])
@login_required
def my_bookings():
    return success_response('Bookings retrieved successfully', list_my_bookings(db.session, g.current_user))


@bp.route('/<int:booking_id>', methods=['GET'])
@login_required
def booking_detail(booking_id):
    return success_response('Booking retrieved successfully', get_booking(db.session, g.current_user.id, booking_id))


@bp.route('/<int:booking_id>/confirm', methods=['PUT'])
@login_required
def confirm(booking_id):
    booking = confirm_booking(db.session, g.current_user.id, booking_id)
    return success_response('Booking confirmed successfully', booking.to_dict())


@bp.route('/<int:booking_id>/cancel', methods=['PUT', 'POST'])
@login_required
def cancel(booking_id):
    return success_response('Booking canceled successfully', cancel_booking(db.session, g.current_user.id, booking_id))


@bp.route('/<int:booking_id>/status', methods=['PUT'])
@roles_required('driver', 'both')
def change_status(booking_id):
    body = parse_body(BookingStatusUpdate)
    booking = update_booking_status(db.session, g.current_user.id, booking_id, body.status)
    return success_response('Booking status updated', booking.to_dict())
