"""Ride feedback and the driver rating derived from it.

Ratings are never stored on the user; every read aggregates feedback over the
driver's rides.
"""

import logging

from flask import Blueprint, g
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from app import db
from auth import login_required, parse_body
from errors import Conflict, NotFound, PermissionDenied, success_response
from models import Booking, Feedback, Ride
from schemas import FeedbackCreate

logger = logging.getLogger(__name__)

bp = Blueprint('feedback', __name__, url_prefix='/api/feedback')

FEEDBACK_ELIGIBLE_STATUSES = ("confirmed", "completed")
DUPLICATE_MESSAGE = "You have already provided feedback for this ride"


def driver_ratings(session, driver_ids):
    """Average rating per driver id, for drivers that have any feedback"""
    driver_ids = list(set(driver_ids))
    if not driver_ids:
        return {}
    rows = (
        session.query(Ride.driver_id, func.avg(Feedback.rating))
        .join(Ride, Feedback.ride_id == Ride.id)
        .filter(Ride.driver_id.in_(driver_ids))
        .group_by(Ride.driver_id)
        .all()
    )
    return {driver_id: round(float(avg), 2) for driver_id, avg in rows}


def driver_rating(session, driver_id):
    return driver_ratings(session, [driver_id]).get(driver_id)


def _average(items):
    if not items:
        return 0
    return round(sum(f.rating for f in items) / len(items), 2)


# ---------------- OPERATIONS ----------------
def add_feedback(session, user_id, payload):
    ride = session.get(Ride, payload.ride_id)
    if ride is None:
        raise NotFound("Ride not found")

    eligible = session.query(Booking).filter(
        Booking.ride_id == ride.id,
        Booking.passenger_id == user_id,
        Booking.status.in_(FEEDBACK_ELIGIBLE_STATUSES),
    ).first()
    if eligible is None:
        raise PermissionDenied("You must have a confirmed booking for this ride to leave feedback")

    if session.query(Feedback).filter_by(ride_id=ride.id, user_id=user_id).first():
        raise Conflict(DUPLICATE_MESSAGE)

    feedback = Feedback(ride_id=ride.id, user_id=user_id, rating=payload.rating, comments=payload.comments)
    session.add(feedback)
    try:
        session.commit()
    except IntegrityError:
        # A concurrent submission won the unique (ride_id, user_id) insert
        session.rollback()
        raise Conflict(DUPLICATE_MESSAGE)
    except Exception:
        session.rollback()
        raise
    logger.info(f"Feedback {feedback.id} ({feedback.rating}/5) added for ride {ride.id} by user {user_id}")
    return feedback


def feedback_for_ride(session, ride_id):
    items = (
        session.query(Feedback)
        .filter_by(ride_id=ride_id)
        .order_by(Feedback.created_at.desc(), Feedback.id.desc())
        .all()
    )
    return {
        'feedback': [dict(f.to_dict(), passenger_name=f.user.name) for f in items],
        'averageRating': _average(items),
        'totalFeedback': len(items),
    }


def _with_ride(feedback):
    item = feedback.to_dict()
    item.update({
        'source': feedback.ride.source,
        'destination': feedback.ride.destination,
        'date': feedback.ride.date.isoformat(),
    })
    return item


def feedback_by_user(session, user_id):
    items = (
        session.query(Feedback)
        .filter_by(user_id=user_id)
        .order_by(Feedback.created_at.desc(), Feedback.id.desc())
        .all()
    )
    return [_with_ride(f) for f in items]


def feedback_for_driver(session, driver_id):
    items = (
        session.query(Feedback)
        .join(Ride, Feedback.ride_id == Ride.id)
        .filter(Ride.driver_id == driver_id)
        .order_by(Feedback.created_at.desc(), Feedback.id.desc())
        .all()
    )
    return {
        'feedback': [dict(_with_ride(f), passenger_name=f.user.name) for f in items],
        'averageRating': _average(items),
        'totalFeedback': len(items),
    }


# ---------------- API ENDPOINTS ----------------
@bp.route('/add', methods=['POST'])
@login_required
def add():
    feedback = add_feedback(db.session, g.current_user.id, parse_body(FeedbackCreate))
    return success_response('Feedback added successfully', feedback.to_dict(), 201)


@bp.route('/driver/my', methods=['GET'])
@login_required
def my_driver_feedback():
    return success_response('Driver feedback retrieved successfully', feedback_for_driver(db.session, g.current_user.id))


@bp.route('/user/<int:user_id>', methods=['GET'])
def by_user(user_id):
    return success_response('User feedback retrieved successfully', feedback_by_user(db.session, user_id))


@bp.route('/<int:ride_id>', methods=['GET'])
def by_ride(ride_id):
    return success_response('Feedback retrieved successfully', feedback_for_ride(db.session, ride_id))
