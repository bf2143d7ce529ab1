"""Ride lifecycle: creation, search, fare/ETA estimates, edits and status transitions.

Cancelling a ride is a single transaction covering the ride, its bookings,
seat restoration and wallet refunds. Passenger notifications are sent only
after that transaction commits, and their failures never undo it.
"""

import logging
from datetime import datetime

from flask import Blueprint, current_app, g, request
from sqlalchemy import case, func, update

from app import db
from auth import login_required, parse_body, roles_required
from errors import BadRequest, Conflict, NotFound, PermissionDenied, success_response
from feedback import driver_rating, driver_ratings
from models import (
    CANCELLED_STATUSES, SEAT_HOLDING_STATUSES, Booking, DriverDocument, NightRideSafetyCheck,
    Ride, RideSchedule, RideWaypoint, Vehicle,
)
from notifications import NotificationBatch
from payments import credit_wallet
from pricing import FARE_PER_KM, estimate_eta_minutes, estimate_fare, haversine, per_seat_fare
from safety import raise_sos
from scheduling import parse_crontab
from schemas import (
    RideCreate, RideStatusUpdate, RideUpdate, ScheduleCreate, SosRequest, WaypointCreate, normalize_time,
)

logger = logging.getLogger(__name__)

bp = Blueprint('rides', __name__, url_prefix='/api/rides')

RIDE_TRANSITIONS = {
    "scheduled": ("ongoing", "cancelled"),
    "ongoing": ("completed", "cancelled"),
    "completed": (),
    "cancelled": (),
}

SAFETY_PROMPT = "Hope you reached safely. Please confirm you arrived at your destination. Click here to confirm your safety."


# ---------------- HELPERS ----------------
def _owned_ride(session, driver_id, ride_id):
    ride = session.query(Ride).filter_by(id=ride_id, driver_id=driver_id).first()
    if ride is None:
        raise NotFound("Ride not found or unauthorized")
    return ride


def _with_driver(ride, rating):
    item = ride.to_dict()
    item.update({
        'driver_name': ride.driver.name,
        'driver_phone': ride.driver.phone,
        'driver_rating': rating,
    })
    return item


def _booked_seats(session, ride_id):
    """Seats across every booking on the ride that has not been cancelled"""
    query = session.query(func.coalesce(func.sum(Booking.seats_booked), 0)).filter(
        Booking.ride_id == ride_id, Booking.status.notin_(CANCELLED_STATUSES))
    return int(query.scalar())


def _move_ride_status(session, ride, target):
    """Conditional status write on the status we observed"""
    result = session.execute(
        update(Ride)
        .where(Ride.id == ride.id, Ride.status == ride.status)
        .values(status=target)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise Conflict("Ride status changed, please retry")


# ---------------- OPERATIONS ----------------
def create_ride(session, driver, payload):
    documents = session.query(DriverDocument).filter_by(driver_id=driver.id).all()
    # Drivers registered before document upload existed have no records at all
    if documents and not any(d.status == "approved" for d in documents):
        raise PermissionDenied("Your driver documents must be approved before you can create rides")

    if payload.vehicle_id is not None:
        vehicle = session.query(Vehicle).filter_by(id=payload.vehicle_id, user_id=driver.id).first()
        if vehicle is None:
            raise BadRequest("Invalid vehicle for this driver")

    ride = Ride(
        driver_id=driver.id,
        vehicle_id=payload.vehicle_id,
        source=payload.source,
        destination=payload.destination,
        date=payload.date,
        time=normalize_time(payload.time),
        total_seats=payload.total_seats,
        available_seats=payload.total_seats,
        fare_per_km=FARE_PER_KM,
        distance_km=payload.distance_km,
        status="scheduled",
    )
    session.add(ride)
    try:
        session.commit()
    except Exception:
        session.rollback()
        raise
    logger.info(f"Ride {ride.id} created by driver {driver.id}: {ride.source} -> {ride.destination} on {ride.date} {ride.time}")
    return ride


def search_rides(session, source=None, destination=None, date=None):
    query = session.query(Ride).filter(Ride.status == "scheduled", Ride.available_seats > 0)
    if source:
        query = query.filter(Ride.source.ilike(f"%{source}%"))
    if destination:
        query = query.filter(Ride.destination.ilike(f"%{destination}%"))
    if date:
        query = query.filter(Ride.date == date)
    rides = query.order_by(Ride.date.asc(), Ride.time.asc(), Ride.id.asc()).all()

    ratings = driver_ratings(session, [r.driver_id for r in rides])
    results = []
    for ride in rides:
        item = _with_driver(ride, ratings.get(ride.driver_id))
        item['estimated_fare'] = per_seat_fare(ride.distance_km)
        results.append(item)
    return results


def get_ride(session, ride_id):
    ride = session.get(Ride, ride_id)
    if ride is None:
        raise NotFound("Ride not found")
    return _with_driver(ride, driver_rating(session, ride.driver_id))


def my_rides(session, driver_id):
    rides = (
        session.query(Ride)
        .filter_by(driver_id=driver_id)
        .order_by(Ride.date.desc(), Ride.time.desc(), Ride.id.desc())
        .all()
    )
    if not rides:
        return []

    holding = Booking.status.in_(SEAT_HOLDING_STATUSES)
    earning = Booking.status.in_(("confirmed", "completed"))
    rows = (
        session.query(
            Booking.ride_id,
            func.count(case((holding, 1))),
            func.coalesce(func.sum(case((holding, Booking.seats_booked), else_=0)), 0),
            func.coalesce(func.sum(case((earning, Booking.amount), else_=0)), 0),
        )
        .filter(Booking.ride_id.in_([r.id for r in rides]))
        .group_by(Booking.ride_id)
        .all()
    )
    stats = {ride_id: (int(count), int(seats), round(float(revenue), 2)) for ride_id, count, seats, revenue in rows}

    result = []
    for ride in rides:
        total_bookings, seats_booked, revenue = stats.get(ride.id, (0, 0, 0.0))
        item = ride.to_dict()
        item.update({
            'total_bookings': total_bookings,
            'seats_booked_count': seats_booked,
            'total_revenue': revenue,
        })
        result.append(item)
    return result


def cancel_ride(session, ride):
    """Cancel a ride with everything hanging off it in one transaction"""
    batch = NotificationBatch()
    bookings_cancelled = 0
    refunds_processed = 0
    try:
        _move_ride_status(session, ride, "cancelled")
        bookings = (
            session.query(Booking)
            .filter(Booking.ride_id == ride.id, Booking.status.in_(("confirmed", "pending")))
            .order_by(Booking.id)
            .all()
        )
        for booking in bookings:
            previous = booking.status
            moved = session.execute(
                update(Booking)
                .where(Booking.id == booking.id, Booking.status == previous)
                .values(status="canceled_by_driver")
                .execution_options(synchronize_session=False)
            )
            if moved.rowcount != 1:
                continue
            bookings_cancelled += 1

            if previous in SEAT_HOLDING_STATUSES:
                session.execute(
                    update(Ride)
                    .where(Ride.id == ride.id)
                    .values(available_seats=Ride.available_seats + booking.seats_booked)
                    .execution_options(synchronize_session=False)
                )

            payment = booking.completed_payment()
            refunded = payment is not None and payment.method == "wallet"
            if refunded:
                credit_wallet(session, booking.passenger_id, booking.amount, "refund")
                refunds_processed += 1

            batch.add(
                booking.passenger_id,
                f"Your ride from {ride.source} to {ride.destination} on {ride.date} at {ride.time} has been "
                f"cancelled by the driver. "
                + ("Your payment has been refunded to your wallet." if refunded else "Please contact us for refund."),
            )
        session.commit()
    except Exception:
        session.rollback()
        logger.error(f"Cancelling ride {ride.id} failed, transaction rolled back")
        raise

    logger.info(f"Ride {ride.id} cancelled: {bookings_cancelled} booking(s) cancelled, {refunds_processed} refund(s)")
    batch.send_all(session)
    return {
        'ride_id': ride.id,
        'status': 'cancelled',
        'bookings_cancelled': bookings_cancelled,
        'refunds_processed': refunds_processed,
    }


def complete_ride(session, ride):
    """Mark a ride completed, then open a safety check for each confirmed booking"""
    try:
        _move_ride_status(session, ride, "completed")
        session.commit()
    except Exception:
        session.rollback()
        raise

    targets = [
        (b.id, b.passenger_id)
        for b in session.query(Booking).filter_by(ride_id=ride.id, status="confirmed").order_by(Booking.id).all()
    ]
    completed_at = datetime.utcnow()
    batch = NotificationBatch()
    checks_created = 0
    for booking_id, passenger_id in targets:
        try:
            session.add(NightRideSafetyCheck(
                booking_id=booking_id,
                ride_id=ride.id,
                passenger_id=passenger_id,
                is_confirmed=False,
                ride_completed_at=completed_at,
            ))
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Failed to create safety check for booking {booking_id}: {e}")
            continue
        checks_created += 1
        batch.add(passenger_id, SAFETY_PROMPT)

    batch.send_all(session)
    logger.info(f"Ride {ride.id} completed, {checks_created} safety check(s) created")
    return {'ride_id': ride.id, 'status': 'completed', 'safety_checks_created': checks_created}


def update_ride_status(session, driver_id, ride_id, status):
    ride = _owned_ride(session, driver_id, ride_id)
    if status not in RIDE_TRANSITIONS:
        raise BadRequest("Invalid status")
    if status not in RIDE_TRANSITIONS[ride.status]:
        raise BadRequest(f"Cannot change ride status from '{ride.status}' to '{status}'")

    if status == "cancelled":
        return cancel_ride(session, ride)
    if status == "completed":
        return complete_ride(session, ride)

    try:
        _move_ride_status(session, ride, status)
        session.commit()
    except Exception:
        session.rollback()
        raise
    logger.info(f"Ride {ride.id} moved to {status}")
    return {'ride_id': ride.id, 'status': status}


def update_ride(session, driver_id, ride_id, payload):
    ride = _owned_ride(session, driver_id, ride_id)
    if ride.status != "scheduled":
        raise BadRequest("Only scheduled rides can be edited")

    if payload.total_seats is not None:
        booked = _booked_seats(session, ride.id)
        if payload.total_seats < booked:
            raise Conflict(f"Cannot reduce total seats below already booked seats ({booked})")
        ride.total_seats = payload.total_seats
        ride.available_seats = payload.total_seats - booked

    if payload.source is not None:
        ride.source = payload.source.strip() or ride.source
    if payload.destination is not None:
        ride.destination = payload.destination.strip() or ride.destination
    if payload.date is not None:
        ride.date = payload.date
    if payload.time is not None:
        ride.time = normalize_time(payload.time)
    if payload.distance_km is not None:
        ride.distance_km = payload.distance_km

    try:
        session.commit()
    except Exception:
        session.rollback()
        raise
    logger.info(f"Ride {ride.id} updated by driver {driver_id}")
    return ride


def create_schedule(session, driver_id, payload):
    parse_crontab(payload.cron_expr)
    schedule = RideSchedule(driver_id=driver_id, cron_expr=payload.cron_expr.strip(), active=payload.active)
    session.add(schedule)
    session.commit()
    logger.info(f"Ride schedule {schedule.id} '{schedule.cron_expr}' created for driver {driver_id}")
    return schedule


def list_schedules(session, driver_id):
    return (
        session.query(RideSchedule)
        .filter_by(driver_id=driver_id)
        .order_by(RideSchedule.created_at.desc(), RideSchedule.id.desc())
        .all()
    )


def add_waypoint(session, driver_id, ride_id, payload):
    ride = session.get(Ride, ride_id)
    if ride is None:
        raise NotFound("Ride not found")
    if ride.driver_id != driver_id:
        raise PermissionDenied("You can only add waypoints to your own rides")
    waypoint = RideWaypoint(
        ride_id=ride.id,
        name=payload.name,
        lat=payload.lat,
        lon=payload.lon,
        order_index=payload.order_index,
    )
    session.add(waypoint)
    session.commit()
    return waypoint


def list_waypoints(session, ride_id):
    return (
        session.query(RideWaypoint)
        .filter_by(ride_id=ride_id)
        .order_by(RideWaypoint.order_index.asc(), RideWaypoint.id.asc())
        .all()
    )


# ---------------- API ENDPOINTS ----------------
def _coordinates():
    names = ('start_lat', 'start_lon', 'end_lat', 'end_lon')
    values = [request.args.get(name, type=float) for name in names]
    if any(v is None for v in values):
        return None
    return values


@bp.route('/create', methods=['POST'])
@roles_required('driver', 'both')
def create():
    ride = create_ride(db.session, g.current_user, parse_body(RideCreate))
    return success_response('Ride created successfully', ride.to_dict(), 201)


@bp.route('/search', methods=['GET'])
def search():
    date = request.args.get('date') or None
    if date:
        try:
            date = datetime.strptime(date, '%Y-%m-%d').date()
        except ValueError:
            raise BadRequest("date must be in YYYY-MM-DD format")
    rides = search_rides(
        db.session,
        source=request.args.get('source'),
        destination=request.args.get('destination'),
        date=date,
    )
    return success_response('Rides retrieved successfully', rides)


@bp.route('/estimate', methods=['GET'])
def estimate():
    coords = _coordinates()
    if coords is None:
        raise BadRequest("Missing coordinates")
    seats = request.args.get('seats', default=1, type=int)
    if seats < 1:
        raise BadRequest("seats must be at least 1")
    return success_response('Estimated', {
        'distance_km': round(haversine(*coords), 2),
        'estimated_fare': estimate_fare(*coords, seats=seats),
    })


@bp.route('/eta', methods=['GET'])
def eta():
    coords = _coordinates()
    raw_speed = request.args.get('speed_kmph')
    try:
        speed = float(raw_speed) if raw_speed is not None else current_app.config['DEFAULT_SPEED_KMPH']
        if coords is None:
            raise ValueError("missing coordinates")
        minutes = estimate_eta_minutes(*coords, speed_kmph=speed)
    except ValueError:
        raise BadRequest("Missing coordinates or invalid speed")
    return success_response('ETA estimated', {
        'distance_km': round(haversine(*coords), 2),
        'speed_kmph': round(speed, 2),
        'eta_minutes': minutes,
    })


@bp.route('/my-rides', methods=['GET'])
@roles_required('driver', 'both')
def list_my_rides():
    return success_response('Your rides retrieved successfully', my_rides(db.session, g.current_user.id))


@bp.route('/schedule', methods=['POST'])
@roles_required('driver', 'both')
def schedule():
    created = create_schedule(db.session, g.current_user.id, parse_body(ScheduleCreate))
    return success_response('Schedule created', created.to_dict(), 201)


@bp.route('/schedule/my', methods=['GET'])
@login_required
def my_schedules():
    schedules = list_schedules(db.session, g.current_user.id)
    return success_response('Schedules retrieved', [s.to_dict() for s in schedules])


@bp.route('/<int:ride_id>', methods=['GET'])
def ride_detail(ride_id):
    return success_response('Ride retrieved successfully', get_ride(db.session, ride_id))


@bp.route('/<int:ride_id>/status', methods=['PUT'])
@roles_required('driver', 'both')
def change_status(ride_id):
    body = parse_body(RideStatusUpdate)
    result = update_ride_status(db.session, g.current_user.id, ride_id, body.status)
    if body.status == 'cancelled':
        return success_response('Ride cancelled and all passengers notified', result)
    return success_response('Ride status updated successfully', result)


@bp.route('/<int:ride_id>', methods=['PUT'])
@roles_required('driver', 'both')
def edit(ride_id):
    ride = update_ride(db.session, g.current_user.id, ride_id, parse_body(RideUpdate))
    return success_response('Ride updated successfully', ride.to_dict())


@bp.route('/<int:ride_id>/waypoints', methods=['POST'])
@login_required
def create_waypoint(ride_id):
    waypoint = add_waypoint(db.session, g.current_user.id, ride_id, parse_body(WaypointCreate))
    return success_response('Waypoint added', waypoint.to_dict(), 201)


@bp.route('/<int:ride_id>/waypoints', methods=['GET'])
def waypoints(ride_id):
    return success_response('Waypoints retrieved', [w.to_dict() for w in list_waypoints(db.session, ride_id)])


# The path segment is the passenger's booking id
@bp.route('/<int:booking_id>/sos', methods=['POST'])
@login_required
def sos(booking_id):
    result = raise_sos(db.session, g.current_user, booking_id, parse_body(SosRequest))
    return success_response('SOS logged and notifications sent', result)
