"""Per-user notification inbox and the dispatch helper used by other operations."""

import logging

from flask import Blueprint, g, jsonify, request
from sqlalchemy import update
from sqlalchemy.exc import OperationalError, ProgrammingError

from app import db
from auth import login_required
from errors import NotFound, success_response
from models import Notification

logger = logging.getLogger(__name__)

bp = Blueprint('notifications', __name__, url_prefix='/api/notifications')

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 50
SAFETY_ACK_MESSAGE = "We're glad you're safe!"


def send_notification(session, user_id, message):
    """Persist a notification for `user_id` (None broadcasts) and commit it.

    Delivery to connected clients happens outside this service; the inbox row
    is the record of dispatch.
    """
    notification = Notification(user_id=user_id, message=message)
    session.add(notification)
    try:
        session.commit()
    except Exception:
        session.rollback()
        raise
    logger.info(f"Notification {notification.id} queued for user {user_id if user_id is not None else 'ALL'}")
    return notification


class NotificationBatch:
    """Notifications collected during a transaction and sent after it commits.

    Each send is attempted independently; a failure is logged and recorded,
    never propagated.
    """

    def __init__(self):
        self.pending = []
        self.failures = []

    def add(self, user_id, message):
        self.pending.append((user_id, message))

    def __len__(self):
        return len(self.pending)

    def send_all(self, session):
        sent = 0
        for user_id, message in self.pending:
            try:
                send_notification(session, user_id, message)
                sent += 1
            except Exception as e:
                logger.error(f"Failed to notify user {user_id}: {e}")
                self.failures.append((user_id, str(e)))
        self.pending = []
        return sent


def _is_missing_table(exc):
    text = str(getattr(exc, "orig", exc)).lower()
    return "no such table" in text or "doesn't exist" in text or "does not exist" in text


# ---------------- OPERATIONS ----------------
def list_notifications(session, user_id, page=1, limit=DEFAULT_PAGE_SIZE, unread_only=False):
    page = max(1, page)
    limit = min(MAX_PAGE_SIZE, max(1, limit))
    offset = (page - 1) * limit

    query = session.query(Notification).filter(Notification.user_id == user_id)
    if unread_only:
        query = query.filter(Notification.is_read.is_(False))

    try:
        total = query.count()
        rows = (
            query.order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(limit)
            .offset(offset)
            .all()
        )
    except (OperationalError, ProgrammingError) as e:
        if not _is_missing_table(e):
            raise
        session.rollback()
        logger.warning("Notifications table missing, returning empty inbox")
        return {"data": [], "page": 1, "limit": DEFAULT_PAGE_SIZE, "total": 0, "hasMore": False}

    return {
        "data": [n.to_dict() for n in rows],
        "page": page,
        "limit": limit,
        "total": total,
        "hasMore": offset + len(rows) < total,
    }


def _owned_notification(session, user_id, notification_id):
    notification = session.query(Notification).filter_by(id=notification_id, user_id=user_id).first()
    if notification is None:
        raise NotFound("Notification not found")
    return notification


def mark_read(session, user_id, notification_id):
    notification = _owned_notification(session, user_id, notification_id)
    notification.is_read = True
    session.commit()
    return notification


def mark_all_read(session, user_id):
    result = session.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.is_read.is_(False))
        .values(is_read=True)
    )
    session.commit()
    return result.rowcount


def acknowledge_safety(session, user_id, notification_id):
    mark_read(session, user_id, notification_id)
    return SAFETY_ACK_MESSAGE


# ---------------- API ENDPOINTS ----------------
def _int_arg(name, default):
    try:
        return int(request.args.get(name, default))
    except (TypeError, ValueError):
        return default


@bp.route('', methods=['GET'])
@login_required
def list_my_notifications():
    unread_only = str(request.args.get('unreadOnly', '')).lower() == 'true'
    result = list_notifications(
        db.session,
        g.current_user.id,
        page=_int_arg('page', 1),
        limit=_int_arg('limit', DEFAULT_PAGE_SIZE),
        unread_only=unread_only,
    )
    return jsonify({"success": True, **result})


@bp.route('/<int:notification_id>/read', methods=['PUT'])
@login_required
def read_one(notification_id):
    mark_read(db.session, g.current_user.id, notification_id)
    return success_response('Notification marked as read')


@bp.route('/mark-all-read', methods=['PUT'])
@login_required
def read_all():
    updated = mark_all_read(db.session, g.current_user.id)
    return success_response('All notifications marked as read', {'updated': updated})


@bp.route('/<int:notification_id>/ack-safety', methods=['POST'])
@login_required
def ack_safety(notification_id):
    message = acknowledge_safety(db.session, g.current_user.id, notification_id)
    return success_response(message)
