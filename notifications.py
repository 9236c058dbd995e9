"""Fire-and-forget user notifications, written after the caller commits."""
import logging
from datetime import datetime
from typing import List, Optional

from sqlmodel import select, update, col, or_

import events
from db import get_session
from models import Notification, utcnow

logger = logging.getLogger(__name__)


def notify(
    user_id: int,
    kind: str,
    title: str,
    message: str,
    payload: Optional[dict] = None,
    request_id: Optional[int] = None,
    expires_at: Optional[datetime] = None,
) -> Optional[int]:
    """Store and publish a notification. Never raises; returns the id or None."""
    if user_id is None:
        return None
    try:
        with get_session() as session:
            n = Notification(
                user_id=user_id,
                request_id=request_id,
                kind=kind,
                title=title,
                message=message,
                payload=payload or {},
                expires_at=expires_at,
            )
            session.add(n)
            session.commit()
            session.refresh(n)
            notification_id = n.id
    except Exception:
        logger.exception("Failed to store %s notification for user %s", kind, user_id)
        return None
    events.publish(events.CHANNEL_NOTIFICATIONS, {
        "id": notification_id,
        "user_id": user_id,
        "request_id": request_id,
        "kind": kind,
        "title": title,
        "message": message,
        "payload": payload or {},
        "expires_at": expires_at.isoformat() if expires_at else None,
    })
    return notification_id


def pending_for(user_id: int, now: Optional[datetime] = None) -> List[Notification]:
    """Notifications for a user, newest first, excluding expired ones."""
    now = now or utcnow()
    with get_session() as session:
        stmt = (
            select(Notification)
            .where(Notification.user_id == user_id)
            .where(or_(col(Notification.expires_at).is_(None), col(Notification.expires_at) > now))
            .order_by(col(Notification.created_at).desc(), col(Notification.id).desc())
        )
        return list(session.exec(stmt).all())


def expire_for_request(user_id: int, request_id: int, kind: str, now: Optional[datetime] = None) -> None:
    """Cut short any live notification of this kind, e.g. when a slot is reclaimed."""
    now = now or utcnow()
    try:
        with get_session() as session:
            session.exec(
                update(Notification)
                .where(
                    Notification.user_id == user_id,
                    Notification.request_id == request_id,
                    Notification.kind == kind,
                )
                .where(or_(col(Notification.expires_at).is_(None), col(Notification.expires_at) > now))
                .values(expires_at=now)
            )
            session.commit()
    except Exception:
        logger.exception("Failed to expire %s notifications for request %s", kind, request_id)
