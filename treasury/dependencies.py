from fastapi import Depends, Request
from sqlalchemy.orm import Session

from treasury.db import get_db
from treasury.services.notification_service import NotificationDispatcher, get_notification_dispatcher


def get_client_ip(request: Request) -> str | None:
    # First hop of X-Forwarded-For is the original client behind the proxy.
    forwarded_for = request.headers.get('x-forwarded-for', '')
    first_hop = forwarded_for.split(',')[0].strip()
    if first_hop:
        return first_hop
    real_ip = request.headers.get('x-real-ip', '').strip()
    if real_ip:
        return real_ip
    return request.client.host if request.client else None


def get_dispatcher(db: Session = Depends(get_db)) -> NotificationDispatcher:
    return get_notification_dispatcher(db)
