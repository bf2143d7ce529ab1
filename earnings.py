"""Driver earnings after platform commission.

Earnings are derived on read from completed bookings that carry a completed
payment; nothing is stored per booking.
"""

from datetime import date, datetime, timedelta

from flask import Blueprint, g, request
from sqlalchemy import exists

from app import db
from auth import roles_required
from errors import BadRequest, success_response
from models import Booking, Payment, Ride

bp = Blueprint('earnings', __name__, url_prefix='/api/earnings')

PLATFORM_COMMISSION_RATE = 0.15
DEFAULT_HISTORY_LIMIT = 50
MAX_HISTORY_LIMIT = 200


def split_amount(amount):
    """(commission, driver_earnings) for a booking amount"""
    commission = round(amount * PLATFORM_COMMISSION_RATE, 2)
    return commission, round(amount - commission, 2)


def _paid_bookings(session, driver_id):
    paid = exists().where(Payment.booking_id == Booking.id, Payment.status == "completed")
    return (
        session.query(Booking)
        .join(Ride, Booking.ride_id == Ride.id)
        .filter(Ride.driver_id == driver_id, Booking.status == "completed", paid)
    )


def _totals(bookings):
    commission = earnings = 0.0
    for booking in bookings:
        c, e = split_amount(booking.amount)
        commission += c
        earnings += e
    return {'earnings': round(earnings, 2), 'commission': round(commission, 2), 'rides': len(bookings)}


def earnings_summary(session, driver_id, today=None):
    today = today or date.today()
    completed = _paid_bookings(session, driver_id).all()

    by_date = {}
    for booking in completed:
        by_date.setdefault(booking.ride.date, []).append(booking)

    # Driver's share of confirmed or running trips still waiting on a payment
    unpaid = (
        session.query(Booking)
        .join(Ride, Booking.ride_id == Ride.id)
        .join(Payment, Payment.booking_id == Booking.id)
        .filter(
            Ride.driver_id == driver_id,
            Booking.status.in_(("confirmed", "in_progress")),
            Payment.status == "pending",
        )
        .distinct()
        .all()
    )

    # Weeks start on Sunday
    week_start = today - timedelta(days=(today.weekday() + 1) % 7)
    month_start = today.replace(day=1)
    overall = _totals(completed)

    return {
        'driver_id': driver_id,
        'total_earnings': overall['earnings'],
        'total_commission': overall['commission'],
        'total_rides': overall['rides'],
        'pending_earnings': _totals(unpaid)['earnings'],
        'this_week': _totals([b for b in completed if b.ride.date >= week_start]),
        'this_month': _totals([b for b in completed if b.ride.date >= month_start]),
        'commission_rate': PLATFORM_COMMISSION_RATE,
        'earnings_by_date': [
            dict(_totals(by_date[day]), date=day.isoformat()) for day in sorted(by_date)
        ],
    }


def earnings_history(session, driver_id, start_date=None, end_date=None, limit=DEFAULT_HISTORY_LIMIT, offset=0):
    limit = min(MAX_HISTORY_LIMIT, max(1, limit))
    offset = max(0, offset)
    query = _paid_bookings(session, driver_id)
    if start_date is not None:
        query = query.filter(Ride.date >= start_date)
    if end_date is not None:
        query = query.filter(Ride.date <= end_date)
    bookings = query.order_by(Booking.booking_date.desc(), Booking.id.desc()).offset(offset).limit(limit).all()

    history = []
    for booking in bookings:
        payment = booking.completed_payment()
        commission, earned = split_amount(booking.amount)
        history.append({
            'booking_id': booking.id,
            'ride_id': booking.ride_id,
            'passenger_name': booking.passenger.name,
            'passenger_phone': booking.passenger.phone,
            'source': booking.ride.source,
            'destination': booking.ride.destination,
            'date': booking.ride.date.isoformat(),
            'seats_booked': booking.seats_booked,
            'total_amount': booking.amount,
            'platform_commission': commission,
            'driver_earnings': earned,
            'payment_method': payment.method if payment else None,
            'payment_date': payment.payment_date.isoformat() if payment and payment.payment_date else None,
            'transaction_id': payment.transaction_id if payment else None,
        })
    return {'earnings': history, 'total': len(history), 'limit': limit, 'offset': offset}


def _date_arg(name):
    raw = request.args.get(name)
    if not raw:
        return None
    try:
        return datetime.strptime(raw, "%Y-%m-%d").date()
    except ValueError:
        raise BadRequest(f"Invalid {name}, expected YYYY-MM-DD")


# ---------------- API ENDPOINTS ----------------
@bp.route('/summary', methods=['GET'])
@roles_required('driver', 'both')
def summary():
    return success_response('Earnings summary retrieved successfully', earnings_summary(db.session, g.current_user.id))


@bp.route('/history', methods=['GET'])
@roles_required('driver', 'both')
def history():
    result = earnings_history(
        db.session,
        g.current_user.id,
        start_date=_date_arg('start_date'),
        end_date=_date_arg('end_date'),
        limit=request.args.get('limit', default=DEFAULT_HISTORY_LIMIT, type=int),
        offset=request.args.get('offset', default=0, type=int),
    )
    return success_response('Earnings history retrieved successfully', result)
