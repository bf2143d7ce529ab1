"""Registration, login and the request-level identity helpers.

Tokens carry the user id as their identity; role checks always re-read the
user's current type from the database.
"""

import logging
from functools import wraps

from flask import Blueprint, g, request
from flask_jwt_extended import create_access_token, get_jwt_identity, verify_jwt_in_request
from sqlalchemy import or_

from app import bcrypt, db
from errors import AuthenticationError, Conflict, PermissionDenied, error_response, success_response
from models import DriverDocument, User
from schemas import LoginRequest, RegisterRequest

logger = logging.getLogger(__name__)

bp = Blueprint('auth', __name__, url_prefix='/api/auth')


# ---------------- REQUEST HELPERS ----------------
def parse_body(schema):
    return schema.model_validate(request.get_json(silent=True) or {})


def current_user_id():
    identity = get_jwt_identity()
    try:
        return int(identity)
    except (TypeError, ValueError):
        raise AuthenticationError("Authentication required")


def login_required(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        verify_jwt_in_request()
        user = db.session.get(User, current_user_id())
        if user is None:
            raise AuthenticationError("User not found")
        g.current_user = user
        return view(*args, **kwargs)
    return wrapper


def roles_required(*roles):
    def decorator(view):
        @wraps(view)
        @login_required
        def wrapper(*args, **kwargs):
            if g.current_user.user_type not in roles:
                raise PermissionDenied(f"Access denied. Required role: {', '.join(roles)}")
            return view(*args, **kwargs)
        return wrapper
    return decorator


def register_jwt_handlers(jwt):
    @jwt.unauthorized_loader
    def missing_token(reason):
        return error_response("Authentication required", 401)

    @jwt.invalid_token_loader
    def invalid_token(reason):
        return error_response("Invalid token", 401)

    @jwt.expired_token_loader
    def expired_token(jwt_header, jwt_payload):
        return error_response("Token expired", 401)


def issue_token(user):
    return create_access_token(identity=str(user.id), additional_claims={"user_type": user.user_type})


# ---------------- OPERATIONS ----------------
def register_user(session, payload):
    existing = session.query(User).filter(
        or_(User.email == payload.email, User.phone == payload.phone)
    ).first()
    if existing:
        raise Conflict("User with this email or phone already exists")

    user = User(
        name=payload.name,
        email=payload.email,
        phone=payload.phone,
        password_hash=bcrypt.generate_password_hash(payload.password).decode('utf-8'),
        user_type=payload.user_type,
    )
    session.add(user)
    if user.is_driver and payload.documents:
        for doc in payload.documents:
            user.documents.append(DriverDocument(doc_type=doc.doc_type, file_url=doc.file_url, status="pending"))
    try:
        session.commit()
    except Exception:
        session.rollback()
        raise
    logger.info(f"Registered user {user.id} as {user.user_type}")
    return user


def authenticate(session, payload):
    user = session.query(User).filter_by(email=payload.email).first()
    if not user or not bcrypt.check_password_hash(user.password_hash, payload.password):
        raise AuthenticationError("Invalid email or password")
    return user


# ---------------- API ENDPOINTS ----------------
@bp.route('/register', methods=['POST'])
def register():
    user = register_user(db.session, parse_body(RegisterRequest))
    return success_response('User registered successfully', {
        'user': user.to_dict(),
        'token': issue_token(user),
    }, 201)


@bp.route('/login', methods=['POST'])
def login():
    user = authenticate(db.session, parse_body(LoginRequest))
    return success_response('Login successful', {
        'user': user.to_dict(),
        'token': issue_token(user),
    })


@bp.route('/me', methods=['GET'])
@login_required
def me():
    return success_response('User retrieved successfully', g.current_user.to_dict())
