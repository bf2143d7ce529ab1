import logging

from flask import Blueprint, g

from app import db
from auth import login_required, parse_body
from errors import NotFound, PermissionDenied, success_response
from models import User
from schemas import AvailabilityUpdate, EmergencyContactUpdate, LocationUpdate

logger = logging.getLogger(__name__)

bp = Blueprint('users', __name__, url_prefix='/api/users')


def _target_user(session, requester, user_id):
    """The user a profile call acts on; only the user themselves or an admin may"""
    user = session.get(User, user_id)
    if user is None:
        raise NotFound("User not found")
    if requester.id != user.id and requester.user_type != "admin":
        raise PermissionDenied("You can only manage your own profile")
    return user


def _contact(user):
    return {
        'emergency_contact_name': user.emergency_contact_name,
        'emergency_contact_phone': user.emergency_contact_phone,
        'emergency_contact_email': user.emergency_contact_email,
    }


def get_emergency_contact(session, requester, user_id):
    return _contact(_target_user(session, requester, user_id))


def update_emergency_contact(session, requester, user_id, payload):
    user = _target_user(session, requester, user_id)
    # Omitted fields clear the stored value
    user.emergency_contact_name = (payload.emergency_contact_name or "").strip() or None
    user.emergency_contact_phone = payload.emergency_contact_phone or None
    user.emergency_contact_email = payload.emergency_contact_email or None
    session.commit()
    logger.info(f"Emergency contact updated for user {user.id}")
    return _contact(user)


def set_availability(session, requester, user_id, is_available):
    user = _target_user(session, requester, user_id)
    if not user.is_driver:
        raise PermissionDenied("Only drivers can update availability")
    user.is_available = is_available
    session.commit()
    logger.info(f"Driver {user.id} is now {'online' if is_available else 'offline'}")
    return {'user_id': user.id, 'is_available': bool(user.is_available)}


def update_location(session, requester, user_id, lat, lon):
    """Record a driver's latest position; reporting a position puts the driver online."""
    user = _target_user(session, requester, user_id)
    if not user.is_driver:
        raise PermissionDenied("Only drivers can update location")
    user.latitude = lat
    user.longitude = lon
    user.is_available = True
    session.commit()
    return {'user_id': user.id, 'latitude': user.latitude, 'longitude': user.longitude, 'is_available': True}


# ---------------- API ENDPOINTS ----------------
@bp.route('/<int:user_id>/emergency-contact', methods=['GET'])
@login_required
def emergency_contact(user_id):
    return success_response('Emergency contact', get_emergency_contact(db.session, g.current_user, user_id))


@bp.route('/<int:user_id>/emergency-contact', methods=['PUT'])
@login_required
def change_emergency_contact(user_id):
    payload = parse_body(EmergencyContactUpdate)
    return success_response(
        'Emergency contact updated',
        update_emergency_contact(db.session, g.current_user, user_id, payload),
    )


@bp.route('/<int:user_id>/availability', methods=['PUT'])
@login_required
def availability(user_id):
    payload = parse_body(AvailabilityUpdate)
    result = set_availability(db.session, g.current_user, user_id, payload.is_available)
    return success_response(f"Driver {'online' if result['is_available'] else 'offline'}", result)


@bp.route('/<int:user_id>/location', methods=['PUT'])
@login_required
def location(user_id):
    payload = parse_body(LocationUpdate)
    return success_response('Location updated', update_location(db.session, g.current_user, user_id, payload.lat, payload.lon))
