from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from treasury.models import (
    CommunicationChannel,
    CommunicationDirection,
    TreasuryCommunication,
)
from treasury.services.approval_classifier import ApprovalParseResult


def log_outbound_communication(
    db: Session,
    *,
    request_id: int,
    channel: CommunicationChannel,
    subject: str | None,
    body: str | None,
    from_email: str | None,
    to_email: str | None,
    message_id: str | None = None,
) -> TreasuryCommunication:
    row = TreasuryCommunication(
        request_id=request_id,
        direction=CommunicationDirection.OUTBOUND,
        channel=channel,
        subject=subject,
        body=body,
        from_email=from_email,
        to_email=to_email,
        message_id=message_id,
        matched_keywords=[],
    )
    db.add(row)
    db.flush()
    return row


def log_inbound_communication(
    db: Session,
    *,
    request_id: int,
    subject: str | None,
    body: str | None,
    from_email: str | None,
    to_email: str | None,
    parse_result: ApprovalParseResult | None,
    channel: CommunicationChannel = CommunicationChannel.EMAIL,
    message_id: str | None = None,
) -> TreasuryCommunication:
    row = TreasuryCommunication(
        request_id=request_id,
        direction=CommunicationDirection.INBOUND,
        channel=channel,
        subject=subject,
        body=body,
        from_email=from_email,
        to_email=to_email,
        message_id=message_id,
        parsed_status=parse_result.status if parse_result else None,
        parsed_confidence=parse_result.confidence if parse_result else None,
        matched_keywords=list(parse_result.matched_keywords) if parse_result else [],
        extracted_message=parse_result.extracted_message if parse_result else None,
    )
    db.add(row)
    db.flush()
    return row


def list_communications(db: Session, *, request_id: int) -> list[TreasuryCommunication]:
    return db.execute(
        select(TreasuryCommunication)
        .where(TreasuryCommunication.request_id == request_id)
        .order_by(TreasuryCommunication.created_at.asc(), TreasuryCommunication.id.asc())
    ).scalars().all()


def find_communication_by_message_id(db: Session, *, message_id: str) -> TreasuryCommunication | None:
    return db.execute(
        select(TreasuryCommunication).where(TreasuryCommunication.message_id == message_id).limit(1)
    ).scalar_one_or_none()
