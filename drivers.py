"""Driver-owned vehicles and verification documents."""

import logging

from flask import Blueprint, g, request

from app import db
from auth import login_required, parse_body, roles_required
from errors import BadRequest, Conflict, NotFound, PermissionDenied, success_response
from models import DriverDocument, Ride, Vehicle
from schemas import DocumentLink, VehicleCreate

logger = logging.getLogger(__name__)

bp = Blueprint('drivers', __name__, url_prefix='/api')


# ---------------- VEHICLES ----------------
def list_vehicles(session, driver_id):
    return session.query(Vehicle).filter_by(user_id=driver_id).order_by(Vehicle.id.desc()).all()


def create_vehicle(session, driver_id, payload):
    plate = payload.license_plate.strip().upper()
    if session.query(Vehicle).filter_by(license_plate=plate).first():
        raise Conflict("License plate already exists")
    vehicle = Vehicle(
        user_id=driver_id,
        model=payload.model.strip(),
        license_plate=plate,
        capacity=payload.capacity,
        color=payload.color,
        vehicle_image_url=payload.vehicle_image_url,
        verification_status="pending",
    )
    session.add(vehicle)
    try:
        session.commit()
    except Exception:
        session.rollback()
        raise
    logger.info(f"Vehicle {vehicle.id} ({plate}) registered for driver {driver_id}")
    return vehicle


def delete_vehicle(session, driver_id, vehicle_id):
    vehicle = session.get(Vehicle, vehicle_id)
    if vehicle is None:
        raise NotFound("Vehicle not found")
    if vehicle.user_id != driver_id:
        raise PermissionDenied("Not authorized to delete this vehicle")
    active = session.query(Ride).filter(
        Ride.vehicle_id == vehicle.id,
        Ride.status.in_(("scheduled", "ongoing")),
    ).count()
    if active:
        raise BadRequest("Cannot delete vehicle with active rides")
    session.delete(vehicle)
    session.commit()
    logger.info(f"Vehicle {vehicle_id} deleted by driver {driver_id}")


# ---------------- DOCUMENTS ----------------
def upload_document(session, driver_id, payload):
    document = DriverDocument(
        driver_id=driver_id,
        doc_type=payload.doc_type,
        file_url=payload.file_url,
        status="pending",
    )
    session.add(document)
    session.commit()
    logger.info(f"Document {document.id} ({document.doc_type}) uploaded by driver {driver_id}")
    return document


def list_documents(session, driver_id):
    return (
        session.query(DriverDocument)
        .filter_by(driver_id=driver_id)
        .order_by(DriverDocument.created_at.desc(), DriverDocument.id.desc())
        .all()
    )


# ---------------- API ENDPOINTS ----------------
@bp.route('/vehicles', methods=['GET'])
@login_required
def vehicles():
    driver_id = request.args.get('driver_id', type=int) or g.current_user.id
    return success_response('OK', [v.to_dict() for v in list_vehicles(db.session, driver_id)])


@bp.route('/vehicles', methods=['POST'])
@roles_required('driver', 'both')
def add_vehicle():
    vehicle = create_vehicle(db.session, g.current_user.id, parse_body(VehicleCreate))
    return success_response('Vehicle created', vehicle.to_dict(), 201)


@bp.route('/vehicles/<int:vehicle_id>', methods=['DELETE'])
@login_required
def remove_vehicle(vehicle_id):
    delete_vehicle(db.session, g.current_user.id, vehicle_id)
    return success_response('Vehicle deleted successfully')


@bp.route('/drivers/documents', methods=['POST'])
@roles_required('driver', 'both')
def add_document():
    document = upload_document(db.session, g.current_user.id, parse_body(DocumentLink))
    return success_response('Document uploaded', document.to_dict(), 201)


@bp.route('/drivers/documents', methods=['GET'])
@login_required
def documents():
    return success_response('Documents', [d.to_dict() for d in list_documents(db.session, g.current_user.id)])
