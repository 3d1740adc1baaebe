from . import db
from .errors import NotFound
from .models import Notification

NOTIFICATION_TYPES = (
    'new_lead',
    'lead_unlocked',
    'agent_interested',
    'credit_added',
    'credit_deducted',
    'lead_expired',
    'referral',
    'subscription',
    'system',
)


def notify(user_id, type, title, message, data=None):
    """Queue an in-app notification on the current session."""
    n = Notification(user_id=user_id, type=type if type in NOTIFICATION_TYPES else 'system',
                     title=title, message=message, data=data or {}, read=False)
    db.session.add(n)
    return n


def list_notifications(user, unread_only=False, limit=50):
    query = Notification.query.filter_by(user_id=user.id)
    if unread_only:
        query = query.filter_by(read=False)
    return query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()


def unread_count(user):
    return Notification.query.filter_by(user_id=user.id, read=False).count()


def mark_read(user, notification_id):
    n = Notification.query.filter_by(id=notification_id, user_id=user.id).first()
    if not n:
        raise NotFound('Notification not found')
    n.read = True
    db.session.commit()
    return n


def mark_all_read(user):
    count = Notification.query.filter_by(user_id=user.id, read=False).update({'read': True})
    db.session.commit()
    return count
