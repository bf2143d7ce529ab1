import logging
from datetime import datetime

from flask import Blueprint, g
from sqlalchemy import func, or_

from app import db
from auth import parse_body, roles_required
from errors import NotFound, success_response
from models import DRIVER_TYPES, DriverDocument, Notification, User, Vehicle
from schemas import DocumentReview, VehicleVerification

logger = logging.getLogger(__name__)

bp = Blueprint('admin', __name__, url_prefix='/admin')

ADMIN_NOTIFICATION_LIMIT = 100
ALERT_KEYWORDS = ("sos", "emergency")


# ---------------- VEHICLES ----------------
def pending_vehicles(session):
    vehicles = (
        session.query(Vehicle)
        .filter(or_(Vehicle.verification_status == "pending", Vehicle.verification_status.is_(None)))
        .order_by(Vehicle.created_at.desc(), Vehicle.id.desc())
        .all()
    )
    return [dict(v.to_dict(), owner_name=v.owner.name, owner_email=v.owner.email) for v in vehicles]


def review_vehicle(session, vehicle_id, status):
    vehicle = session.get(Vehicle, vehicle_id)
    if vehicle is None:
        raise NotFound("Vehicle not found")
    vehicle.verification_status = status
    session.commit()
    logger.info(f"Vehicle {vehicle_id} {status}")
    return vehicle


# ---------------- DOCUMENTS ----------------
def pending_documents(session):
    documents = (
        session.query(DriverDocument)
        .filter_by(status="pending")
        .order_by(DriverDocument.created_at.asc(), DriverDocument.id.asc())
        .all()
    )
    return [dict(d.to_dict(), driver_name=d.driver.name, driver_email=d.driver.email) for d in documents]


def documents_for_driver(session, driver_id):
    return (
        session.query(DriverDocument)
        .filter_by(driver_id=driver_id)
        .order_by(DriverDocument.created_at.desc(), DriverDocument.id.desc())
        .all()
    )


def review_document(session, document_id, status, rejection_reason=None):
    document = session.get(DriverDocument, document_id)
    if document is None:
        raise NotFound("Document not found")
    document.status = status
    document.rejection_reason = rejection_reason if status == "rejected" else None
    session.flush()

    # A fully verified driver becomes available for rides
    outstanding = session.query(DriverDocument).filter(
        DriverDocument.driver_id == document.driver_id,
        DriverDocument.status != "approved",
    ).count()
    if outstanding == 0:
        document.driver.is_available = True
    try:
        session.commit()
    except Exception:
        session.rollback()
        raise
    logger.info(f"Document {document_id} {status} for driver {document.driver_id}")
    return document


# ---------------- DRIVERS ----------------
def drivers_overview(session):
    counts = {}
    rows = (
        session.query(DriverDocument.driver_id, DriverDocument.status, func.count(DriverDocument.id))
        .group_by(DriverDocument.driver_id, DriverDocument.status)
        .all()
    )
    for driver_id, status, count in rows:
        counts.setdefault(driver_id, {})[status] = count

    drivers = session.query(User).filter(User.user_type.in_(DRIVER_TYPES)).all()
    result = []
    for driver in drivers:
        by_status = counts.get(driver.id, {})
        result.append({
            'user_id': driver.id,
            'name': driver.name,
            'email': driver.email,
            'phone': driver.phone,
            'created_at': driver.created_at.isoformat() if driver.created_at else None,
            'total_documents': sum(by_status.values()),
            'pending_documents': by_status.get("pending", 0),
            'approved_documents': by_status.get("approved", 0),
            'rejected_documents': by_status.get("rejected", 0),
            '_created': driver.created_at,
        })
    # Pending documents first, then newest drivers
    result.sort(key=lambda d: d['_created'] or datetime.min, reverse=True)
    result.sort(key=lambda d: d['pending_documents'], reverse=True)
    for item in result:
        del item['_created']
    return result


# ---------------- NOTIFICATIONS ----------------
def admin_notifications(session, admin_id):
    filters = [Notification.user_id == admin_id, Notification.user_id.is_(None)]
    filters += [func.lower(Notification.message).contains(word) for word in ALERT_KEYWORDS]
    return (
        session.query(Notification)
        .filter(or_(*filters))
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(ADMIN_NOTIFICATION_LIMIT)
        .all()
    )


def mark_notification_read(session, notification_id):
    notification = session.get(Notification, notification_id)
    if notification is None:
        raise NotFound("Notification not found")
    notification.is_read = True
    session.commit()
    return notification


# ---------------- API ENDPOINTS ----------------
@bp.route('/vehicles/pending', methods=['GET'])
@roles_required('admin')
def list_pending_vehicles():
    return success_response('Pending vehicles retrieved', pending_vehicles(db.session))


@bp.route('/vehicles/<int:vehicle_id>/approve', methods=['PUT'])
@roles_required('admin')
def approve_vehicle(vehicle_id):
    body = parse_body(VehicleVerification)
    vehicle = review_vehicle(db.session, vehicle_id, body.verification_status)
    return success_response(f'Vehicle {vehicle_id} {body.verification_status}', vehicle.to_dict())


@bp.route('/documents/pending', methods=['GET'])
@roles_required('admin')
def list_pending_documents():
    return success_response('Pending documents retrieved', pending_documents(db.session))


@bp.route('/documents/driver/<int:driver_id>', methods=['GET'])
@roles_required('admin')
def list_driver_documents(driver_id):
    documents = documents_for_driver(db.session, driver_id)
    return success_response('Driver documents retrieved', [d.to_dict() for d in documents])


@bp.route('/documents/<int:document_id>/approve', methods=['PUT'])
@roles_required('admin')
def approve_document(document_id):
    body = parse_body(DocumentReview)
    document = review_document(db.session, document_id, body.status, body.rejection_reason)
    return success_response(f'Document {document_id} {body.status}', document.to_dict())


@bp.route('/drivers', methods=['GET'])
@roles_required('admin')
def list_drivers():
    return success_response('Drivers retrieved', drivers_overview(db.session))


@bp.route('/notifications', methods=['GET'])
@roles_required('admin')
def list_admin_notifications():
    notifications = admin_notifications(db.session, g.current_user.id)
    return success_response('Notifications retrieved', [n.to_dict() for n in notifications])


@bp.route('/notifications/<int:notification_id>/read', methods=['PATCH'])
@roles_required('admin')
def read_notification(notification_id):
    mark_notification_read(db.session, notification_id)
    return success_response('Notification marked as read')
