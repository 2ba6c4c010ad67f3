from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from sqlalchemy.orm import Session

from treasury.config import settings
from treasury.models import DrawRequest
from treasury.services.audit_service import log_audit

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    REQUEST_CREATED = 'request_created'
    APPROVED = 'approved'
    REJECTED = 'rejected'
    CANCELLED = 'cancelled'
    TOPUP_CREATED = 'topup_created'
    TOPUP_COMPLETED = 'topup_completed'
    LOW_BALANCE = 'low_balance'


@dataclass(frozen=True)
class DispatchResult:
    success: bool
    error: str | None = None
    message_id: str | None = None


class NotificationDispatcher(Protocol):
    def send(self, kind: NotificationKind, request: DrawRequest | None, context: dict[str, Any]) -> DispatchResult: ...


class AuditLogNotificationDispatcher:
    """Records the notification in the audit log instead of delivering it."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def send(self, kind: NotificationKind, request: DrawRequest | None, context: dict[str, Any]) -> DispatchResult:
        payload = {
            'kind': kind.value,
            'to': context.get('to'),
            'subject': context.get('subject'),
            'status': 'STUB_SENT',
        }
        if request is not None:
            payload['request_number'] = request.request_number
        log_audit(
            self.db,
            actor='system',
            action='NOTIFICATION_STUB_SENT',
            request_id=request.id if request is not None else None,
            metadata=payload,
        )
        return DispatchResult(success=True)


def get_notification_dispatcher(db: Session) -> NotificationDispatcher:
    provider = settings.notification_provider.strip().lower()
    if provider == 'stub':
        return AuditLogNotificationDispatcher(db)
    raise ValueError(f'Unknown notification provider: {provider}')


def dispatch_notification(
    db: Session,
    dispatcher: NotificationDispatcher,
    *,
    kind: NotificationKind,
    request: DrawRequest | None,
    context: dict[str, Any] | None = None,
) -> DispatchResult:
    """Send through ``dispatcher`` without ever failing the calling workflow."""
    context = context or {}
    request_id = request.id if request is not None else None
    try:
        result = dispatcher.send(kind, request, context)
    except Exception as exc:
        logger.exception('Notification %s for request id=%s raised', kind.value, request_id)
        result = DispatchResult(success=False, error=str(exc) or exc.__class__.__name__)

    if not result.success:
        logger.warning('Notification %s for request id=%s failed: %s', kind.value, request_id, result.error)
        log_audit(
            db,
            actor='system',
            action='NOTIFICATION_FAILED',
            request_id=request_id,
            metadata={'kind': kind.value, 'error': result.error},
        )
    return result
