import logging
import uuid
from datetime import datetime

from flask import Blueprint, g
from sqlalchemy import select, update

from app import db
from auth import login_required, parse_body
from errors import BadRequest, Conflict, NotFound, PermissionDenied, success_response
from models import Booking, Payment, Ride, Wallet, WalletTransaction
from notifications import NotificationBatch
from schemas import CashInitRequest, PaymentRequest, WalletTopup

logger = logging.getLogger(__name__)

bp = Blueprint('payments', __name__, url_prefix='/api/payment')

MIN_TOPUP_AMOUNT = 10


# ---------------- WALLET ----------------
def ensure_wallet(session, user_id):
    wallet = session.query(Wallet).filter_by(user_id=user_id).first()
    if wallet is None:
        wallet = Wallet(user_id=user_id, balance=0.0)
        session.add(wallet)
        session.flush()
    return wallet


def credit_wallet(session, user_id, amount, tx_type):
    """Add `amount` to the user's wallet and append a ledger entry. Does not commit."""
    ensure_wallet(session, user_id)
    session.execute(
        update(Wallet)
        .where(Wallet.user_id == user_id)
        .values(balance=Wallet.balance + amount)
    )
    session.add(WalletTransaction(user_id=user_id, amount=amount, type=tx_type))
    logger.info(f"Wallet credit ({tx_type}) of {amount:.2f} for user {user_id}")


def debit_wallet(session, user_id, amount):
    """Atomically take `amount` from the wallet if the balance covers it. Does not commit."""
    ensure_wallet(session, user_id)
    result = session.execute(
        update(Wallet)
        .where(Wallet.user_id == user_id, Wallet.balance >= amount)
        .values(balance=Wallet.balance - amount)
    )
    if result.rowcount != 1:
        raise BadRequest("Insufficient wallet balance")
    session.add(WalletTransaction(user_id=user_id, amount=amount, type="debit"))
    logger.info(f"Wallet debit of {amount:.2f} for user {user_id}")


def get_wallet(session, user_id):
    wallet = ensure_wallet(session, user_id)
    session.commit()
    return wallet


def list_wallet_transactions(session, user_id):
    return (
        session.query(WalletTransaction)
        .filter_by(user_id=user_id)
        .order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
        .all()
    )


def topup_wallet(session, user_id, amount):
    if amount < MIN_TOPUP_AMOUNT:
        raise BadRequest(f"Minimum topup amount is {MIN_TOPUP_AMOUNT}")
    try:
        credit_wallet(session, user_id, amount, "topup")
        session.commit()
    except Exception:
        session.rollback()
        raise
    return session.query(Wallet).filter_by(user_id=user_id).one()


# ---------------- BOOKING CONFIRMATION ----------------
def confirm_pending_booking(session, booking):
    """Move a pending booking to confirmed and take its seats from the ride.

    Both writes are conditional so a retried call never deducts twice, and
    seats are only taken from a ride that is still scheduled. Does not
    commit. Returns True when this call performed the confirmation.
    """
    moved = session.execute(
        update(Booking)
        .where(Booking.id == booking.id, Booking.status == "pending")
        .values(status="confirmed")
        .execution_options(synchronize_session=False)
    )
    if moved.rowcount != 1:
        return False
    seats = session.execute(
        update(Ride)
        .where(
            Ride.id == booking.ride_id,
            Ride.status == "scheduled",
            Ride.available_seats >= booking.seats_booked,
        )
        .values(available_seats=Ride.available_seats - booking.seats_booked)
        .execution_options(synchronize_session=False)
    )
    if seats.rowcount != 1:
        ride_status = session.execute(select(Ride.status).where(Ride.id == booking.ride_id)).scalar()
        if ride_status != "scheduled":
            raise BadRequest("Ride is no longer open for booking")
        raise Conflict("Not enough seats available")
    session.expire(booking)
    ride = session.get(Ride, booking.ride_id)
    if ride is not None:
        session.expire(ride)
    return True


def _new_transaction_id(prefix="TXN"):
    return f"{prefix}{datetime.utcnow().strftime('%Y%m%d%H%M%S')}{uuid.uuid4().hex[:6].upper()}"


def _passenger_booking(session, user_id, booking_id):
    booking = session.query(Booking).filter_by(id=booking_id, passenger_id=user_id).first()
    if booking is None:
        raise NotFound("Booking not found")
    return booking


# ---------------- OPERATIONS ----------------
def confirm_payment(session, user_id, booking_id, method):
    booking = _passenger_booking(session, user_id, booking_id)
    if booking.status not in ("pending", "confirmed"):
        raise BadRequest(f"Cannot pay for a booking with status '{booking.status}'")
    if booking.completed_payment() is not None:
        raise Conflict("Payment already completed for this booking")

    batch = NotificationBatch()
    try:
        if method == "wallet":
            debit_wallet(session, user_id, booking.amount)
        payment = Payment(
            booking_id=booking.id,
            amount=booking.amount,
            method=method,
            status="completed",
            transaction_id=_new_transaction_id(),
        )
        session.add(payment)
        session.flush()
        confirm_pending_booking(session, booking)
        session.commit()
    except Exception:
        session.rollback()
        raise

    ride = session.get(Ride, booking.ride_id)
    logger.info(f"Payment {payment.id} ({method}) completed for booking {booking.id}")
    batch.add(
        ride.driver_id,
        f"Payment received: {booking.amount:.2f} for {booking.seats_booked} seat(s) - Booking #{booking.id}",
    )
    batch.send_all(session)
    return payment


def init_cash_payment(session, user_id, booking_id):
    booking = _passenger_booking(session, user_id, booking_id)
    if booking.completed_payment() is not None:
        raise Conflict("Payment already completed for this booking")
    existing = session.query(Payment).filter_by(booking_id=booking.id, method="cash", status="pending").first()
    if existing is not None:
        return existing
    payment = Payment(booking_id=booking.id, amount=booking.amount, method="cash", status="pending")
    session.add(payment)
    session.commit()
    return payment


def complete_cash_payment(session, user_id, payment_id):
    payment = session.get(Payment, payment_id)
    if payment is None:
        raise NotFound("Payment not found")
    booking = session.get(Booking, payment.booking_id)
    if booking.passenger_id != user_id:
        raise PermissionDenied("Unauthorized to complete this payment")
    if payment.status == "completed":
        return payment
    if payment.status != "pending":
        raise BadRequest(f"Cannot complete a payment with status '{payment.status}'")

    try:
        payment.status = "completed"
        payment.transaction_id = _new_transaction_id("CASH")
        session.flush()
        confirm_pending_booking(session, booking)
        session.commit()
    except Exception:
        session.rollback()
        raise
    return payment


def get_payment_for_booking(session, user_id, booking_id):
    booking = _passenger_booking(session, user_id, booking_id)
    payment = (
        session.query(Payment)
        .filter_by(booking_id=booking.id)
        .order_by(Payment.payment_date.desc(), Payment.id.desc())
        .first()
    )
    if payment is None:
        raise NotFound("Payment not found")
    return payment


def list_my_payments(session, user_id):
    rows = (
        session.query(Payment, Booking, Ride)
        .join(Booking, Payment.booking_id == Booking.id)
        .join(Ride, Booking.ride_id == Ride.id)
        .filter(Booking.passenger_id == user_id)
        .order_by(Payment.payment_date.desc(), Payment.id.desc())
        .all()
    )
    result = []
    for payment, booking, ride in rows:
        item = payment.to_dict()
        item.update({
            'seats_booked': booking.seats_booked,
            'source': ride.source,
            'destination': ride.destination,
            'date': ride.date.isoformat(),
            'time': ride.time,
        })
        result.append(item)
    return result


# ---------------- API ENDPOINTS ----------------
@bp.route('/confirm', methods=['POST'])
@login_required
def confirm():
    body = parse_body(PaymentRequest)
    payment = confirm_payment(db.session, g.current_user.id, body.booking_id, body.payment_method)
    return success_response('Payment processed successfully', payment.to_dict(), 201)


@bp.route('/cash-init', methods=['POST'])
@login_required
def cash_init():
    body = parse_body(CashInitRequest)
    payment = init_cash_payment(db.session, g.current_user.id, body.booking_id)
    return success_response('Cash payment initialized', payment.to_dict(), 201)


@bp.route('/<int:payment_id>/complete', methods=['PUT'])
@login_required
def complete_cash(payment_id):
    payment = complete_cash_payment(db.session, g.current_user.id, payment_id)
    return success_response('Cash payment completed', payment.to_dict())


@bp.route('/booking/<int:booking_id>', methods=['GET'])
@login_required
def payment_by_booking(booking_id):
    payment = get_payment_for_booking(db.session, g.current_user.id, booking_id)
    return success_response('Payment retrieved successfully', payment.to_dict())


@bp.route('/my', methods=['GET'])
@login_required
def my_payments():
    return success_response('Payments retrieved successfully', list_my_payments(db.session, g.current_user.id))


@bp.route('/wallet', methods=['GET'])
@login_required
def wallet():
    return success_response('Wallet retrieved', get_wallet(db.session, g.current_user.id).to_dict())


@bp.route('/wallet/transactions', methods=['GET'])
@login_required
def wallet_transactions():
    transactions = list_wallet_transactions(db.session, g.current_user.id)
    return success_response('Transactions retrieved', [t.to_dict() for t in transactions])


@bp.route('/wallet/topup', methods=['POST'])
@login_required
def wallet_topup():
    body = parse_body(WalletTopup)
    updated = topup_wallet(db.session, g.current_user.id, body.amount)
    return success_response('Wallet topped up successfully', updated.to_dict(), 201)
