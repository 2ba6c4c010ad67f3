from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from sqlalchemy.orm import Session

from treasury.models import CommunicationChannel, DrawRequest, DrawRequestStatus
from treasury.services.action_token_service import configured_max_age, verify_action_token
from treasury.services.audit_service import log_audit
from treasury.services.communication_service import log_inbound_communication
from treasury.services.draw_request_service import (
    approve_draw_request,
    get_draw_request,
    reject_draw_request,
)
from treasury.services.notification_service import (
    NotificationDispatcher,
    NotificationKind,
    dispatch_notification,
)

logger = logging.getLogger(__name__)

DEFAULT_WEB_REJECTION_REASON = 'Rejected via approval link'


class DecisionOutcome(str, Enum):
    APPROVED = 'approved'
    REJECTED = 'rejected'
    ALREADY_DECIDED = 'already_decided'
    NEEDS_REVIEW = 'needs_review'
    NOT_FOUND = 'not_found'
    UNMATCHED = 'unmatched'
    DUPLICATE = 'duplicate'
    INVALID_TOKEN = 'invalid_token'
    AWAITING_CONFIRMATION = 'awaiting_confirmation'
    IGNORED_AUTO_REPLY = 'ignored_auto_reply'
    IGNORED_WRONG_SENDER = 'ignored_wrong_sender'


def apply_decision(
    db: Session,
    dispatcher: NotificationDispatcher,
    *,
    request: DrawRequest,
    action: str,
    actor: str,
    message: str | None = None,
    now: datetime | None = None,
) -> DecisionOutcome:
    """Run the guarded transition for ``action`` and notify on success.

    A guard miss means someone else already decided; it is reported as
    ``ALREADY_DECIDED`` and nothing is dispatched.
    """
    if action == 'approve':
        updated = approve_draw_request(db, request_id=request.id, approved_by=actor, message=message, now=now)
        outcome, kind = DecisionOutcome.APPROVED, NotificationKind.APPROVED
    elif action == 'reject':
        updated = reject_draw_request(db, request_id=request.id, rejected_by=actor, reason=message or '', now=now)
        outcome, kind = DecisionOutcome.REJECTED, NotificationKind.REJECTED
    else:
        raise ValueError(f'Unsupported action: {action}')

    if not updated:
        logger.info('Draw request %s already decided; %s ignored', request.request_number, action)
        return DecisionOutcome.ALREADY_DECIDED

    db.refresh(request)
    dispatch_notification(
        db,
        dispatcher,
        kind=kind,
        request=request,
        context={
            'to': request.created_by,
            'subject': f'Draw request {request.request_number} {outcome.value}',
            'actor': actor,
            'message': message,
        },
    )
    return outcome


@dataclass(frozen=True)
class WebActionPreview:
    outcome: DecisionOutcome
    request: DrawRequest | None = None


def _link_is_valid(
    db: Session,
    *,
    request_id: int,
    action: str,
    token: str | None,
    ip: str | None,
    now: datetime | None,
) -> bool:
    if action in {'approve', 'reject'} and verify_action_token(
        token, request_id, action, max_age=configured_max_age(), now=now
    ):
        return True
    logger.warning('Rejected %s link for draw request id=%s: invalid or expired token', action, request_id)
    log_audit(
        db,
        actor=None,
        action='ACTION_TOKEN_REJECTED',
        request_id=None,
        ip=ip,
        metadata={'request_id': request_id, 'action': action},
    )
    return False


def preview_web_action(
    db: Session,
    *,
    request_id: int,
    action: str,
    token: str | None,
    ip: str | None = None,
    now: datetime | None = None,
) -> WebActionPreview:
    """Check an approval link without deciding anything.

    Mail scanners fetch links before the treasurer does, so opening a link
    only ever reads; the decision itself needs ``handle_web_action``.
    """
    if not _link_is_valid(db, request_id=request_id, action=action, token=token, ip=ip, now=now):
        return WebActionPreview(DecisionOutcome.INVALID_TOKEN)
    request = get_draw_request(db, request_id=request_id)
    if request is None:
        return WebActionPreview(DecisionOutcome.NOT_FOUND)
    if request.status != DrawRequestStatus.PENDING:
        return WebActionPreview(DecisionOutcome.ALREADY_DECIDED, request)
    return WebActionPreview(DecisionOutcome.AWAITING_CONFIRMATION, request)


def handle_web_action(
    db: Session,
    dispatcher: NotificationDispatcher,
    *,
    request_id: int,
    action: str,
    token: str | None,
    reason: str | None = None,
    ip: str | None = None,
    now: datetime | None = None,
) -> DecisionOutcome:
    if not _link_is_valid(db, request_id=request_id, action=action, token=token, ip=ip, now=now):
        return DecisionOutcome.INVALID_TOKEN

    request = get_draw_request(db, request_id=request_id)
    if request is None:
        return DecisionOutcome.NOT_FOUND

    actor = request.treasurer_email
    message = (reason or '').strip() or None
    if action == 'reject' and not message:
        message = DEFAULT_WEB_REJECTION_REASON

    log_inbound_communication(
        db,
        request_id=request.id,
        subject=f'{action} via approval link',
        body=message,
        from_email=actor,
        to_email=None,
        parse_result=None,
        channel=CommunicationChannel.WEB,
    )
    return apply_decision(db, dispatcher, request=request, action=action, actor=actor, message=message, now=now)
