from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from sqlalchemy.orm import Session

from treasury.models import ParseConfidence, ParsedApprovalStatus
from treasury.services.approval_classifier import (
    ApprovalParseResult,
    classify,
    extract_request_number,
    is_auto_reply,
    strip_quoted_text,
    validate_sender_email,
)
from treasury.services.audit_service import log_audit
from treasury.services.communication_service import (
    find_communication_by_message_id,
    log_inbound_communication,
)
from treasury.services.decision_service import DecisionOutcome, apply_decision
from treasury.services.draw_request_service import get_draw_request_by_number
from treasury.services.notification_service import NotificationDispatcher

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ('from', 'to', 'subject', 'text')
ACTIONABLE_CONFIDENCE = {ParseConfidence.HIGH, ParseConfidence.MEDIUM}
DEFAULT_EMAIL_REJECTION_REASON = 'Rejected via email'


@dataclass(frozen=True)
class InboundEmail:
    from_address: str
    to_address: str
    subject: str
    text: str
    html: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    message_id: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> InboundEmail:
        missing = [name for name in REQUIRED_FIELDS if not isinstance(payload.get(name), str) or not payload.get(name)]
        if missing:
            raise ValueError(f'Inbound email is missing required fields: {", ".join(missing)}')
        headers = payload.get('headers') or {}
        if not isinstance(headers, Mapping):
            raise ValueError('Inbound email headers must be an object')
        return cls(
            from_address=payload['from'],
            to_address=payload['to'],
            subject=payload['subject'],
            text=payload['text'],
            html=payload.get('html'),
            headers={str(k): str(v) for k, v in headers.items()},
            message_id=payload.get('messageId') or payload.get('message_id'),
        )


@dataclass(frozen=True)
class InboundEmailResult:
    outcome: DecisionOutcome
    request_id: int | None = None
    communication_id: int | None = None
    parse_result: ApprovalParseResult | None = None


def _action_for(parse_result: ApprovalParseResult) -> str | None:
    if parse_result.confidence not in ACTIONABLE_CONFIDENCE:
        return None
    if parse_result.status == ParsedApprovalStatus.APPROVED:
        return 'approve'
    if parse_result.status == ParsedApprovalStatus.REJECTED:
        return 'reject'
    return None


def handle_inbound_email(
    db: Session,
    dispatcher: NotificationDispatcher,
    *,
    payload: Mapping[str, Any],
    now: datetime | None = None,
) -> InboundEmailResult:
    email = InboundEmail.from_payload(payload)

    if email.message_id and find_communication_by_message_id(db, message_id=email.message_id):
        logger.info('Inbound email %s already recorded', email.message_id)
        return InboundEmailResult(DecisionOutcome.DUPLICATE)

    request_number = extract_request_number(email.subject, email.text)
    request = get_draw_request_by_number(db, request_number=request_number) if request_number else None
    if request is None:
        logger.warning('Inbound email from %s matched no draw request (subject=%r)', email.from_address, email.subject)
        return InboundEmailResult(DecisionOutcome.UNMATCHED)

    reply_text = strip_quoted_text(email.text) or email.text

    if is_auto_reply(email.subject, email.text, email.headers):
        communication = log_inbound_communication(
            db,
            request_id=request.id,
            subject=email.subject,
            body=email.text,
            from_email=email.from_address,
            to_email=email.to_address,
            parse_result=ApprovalParseResult(status=ParsedApprovalStatus.UNCLEAR, confidence=ParseConfidence.LOW),
            message_id=email.message_id,
        )
        logger.info('Ignored auto-reply for %s from %s', request.request_number, email.from_address)
        return InboundEmailResult(DecisionOutcome.IGNORED_AUTO_REPLY, request.id, communication.id)

    if not validate_sender_email(email.from_address, request.treasurer_email):
        logger.warning(
            'Ignored reply for %s from unexpected sender %s', request.request_number, email.from_address
        )
        log_audit(
            db,
            actor=email.from_address,
            action='INBOUND_EMAIL_WRONG_SENDER',
            request_id=request.id,
            metadata={'expected': request.treasurer_email, 'subject': email.subject},
        )
        communication = log_inbound_communication(
            db,
            request_id=request.id,
            subject=email.subject,
            body=email.text,
            from_email=email.from_address,
            to_email=email.to_address,
            parse_result=None,
            message_id=email.message_id,
        )
        return InboundEmailResult(DecisionOutcome.IGNORED_WRONG_SENDER, request.id, communication.id)

    parse_result = classify(reply_text)
    communication = log_inbound_communication(
        db,
        request_id=request.id,
        subject=email.subject,
        body=email.text,
        from_email=email.from_address,
        to_email=email.to_address,
        parse_result=parse_result,
        message_id=email.message_id,
    )
    logger.info(
        'Classified reply for %s: status=%s confidence=%s keywords=%s',
        request.request_number,
        parse_result.status.value,
        parse_result.confidence.value,
        parse_result.matched_keywords,
    )

    action = _action_for(parse_result)
    if action is None:
        return InboundEmailResult(DecisionOutcome.NEEDS_REVIEW, request.id, communication.id, parse_result)

    message = parse_result.extracted_message
    if action == 'reject' and not message:
        message = DEFAULT_EMAIL_REJECTION_REASON
    outcome = apply_decision(
        db,
        dispatcher,
        request=request,
        action=action,
        actor=request.treasurer_email,
        message=message,
        now=now,
    )
    return InboundEmailResult(outcome, request.id, communication.id, parse_result)
