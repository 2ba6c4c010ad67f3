from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntId = BigInteger().with_variant(Integer, 'sqlite')


class Base(DeclarativeBase):
    pass


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class DrawRequestStatus(str, Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'
    CANCELLED = 'cancelled'


ACTIVE_DRAW_REQUEST_STATUSES = (DrawRequestStatus.PENDING, DrawRequestStatus.APPROVED)


class WithdrawalStatus(str, Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    FAILED = 'failed'
    REJECTED = 'rejected'


class CommunicationDirection(str, Enum):
    OUTBOUND = 'outbound'
    INBOUND = 'inbound'


class CommunicationChannel(str, Enum):
    EMAIL = 'email'
    WEB = 'web'
    SLACK = 'slack'


class ParsedApprovalStatus(str, Enum):
    APPROVED = 'approved'
    REJECTED = 'rejected'
    UNCLEAR = 'unclear'


class ParseConfidence(str, Enum):
    HIGH = 'high'
    MEDIUM = 'medium'
    LOW = 'low'


class Withdrawal(Base):
    __tablename__ = 'withdrawals'
    __table_args__ = (CheckConstraint('net_amount_cents >= 0', name='withdrawals_amount_non_negative_ck'),)

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    creator_name: Mapped[str] = mapped_column(Text, nullable=False)
    project_description: Mapped[str | None] = mapped_column(Text)
    net_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default='USD', server_default='USD')
    status: Mapped[WithdrawalStatus] = mapped_column(
        SQLEnum(WithdrawalStatus, name='withdrawal_status', values_callable=_enum_values),
        nullable=False,
        default=WithdrawalStatus.PENDING,
        server_default=WithdrawalStatus.PENDING.value,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )


class DrawRequest(Base):
    __tablename__ = 'draw_requests'
    __table_args__ = (
        UniqueConstraint('request_number', name='draw_requests_request_number_key'),
        CheckConstraint('total_amount_cents >= 0', name='draw_requests_total_non_negative_ck'),
        CheckConstraint(
            "(status = 'pending' AND approved_at IS NULL AND rejected_at IS NULL AND cancelled_at IS NULL)"
            " OR (status = 'approved' AND approved_at IS NOT NULL AND rejected_at IS NULL AND cancelled_at IS NULL)"
            " OR (status = 'rejected' AND rejected_at IS NOT NULL AND approved_at IS NULL AND cancelled_at IS NULL)"
            " OR (status = 'cancelled' AND cancelled_at IS NOT NULL AND approved_at IS NULL AND rejected_at IS NULL)",
            name='draw_requests_decision_timestamp_ck',
        ),
        CheckConstraint('(approved_at IS NULL) = (approved_by IS NULL)', name='draw_requests_approved_actor_ck'),
        CheckConstraint('(rejected_at IS NULL) = (rejected_by IS NULL)', name='draw_requests_rejected_actor_ck'),
        CheckConstraint('(cancelled_at IS NULL) = (cancelled_by IS NULL)', name='draw_requests_cancelled_actor_ck'),
        Index('draw_requests_status_approved_at_idx', 'status', 'approved_at'),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    request_number: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    total_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default='USD', server_default='USD')
    treasurer_name: Mapped[str | None] = mapped_column(Text)
    treasurer_email: Mapped[str] = mapped_column(Text, nullable=False)
    signers: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    due_date: Mapped[date | None] = mapped_column(Date)
    is_draft: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    pdf_url: Mapped[str | None] = mapped_column(Text)
    status: Mapped[DrawRequestStatus] = mapped_column(
        SQLEnum(DrawRequestStatus, name='draw_request_status', values_callable=_enum_values),
        nullable=False,
        default=DrawRequestStatus.PENDING,
        server_default=DrawRequestStatus.PENDING.value,
    )
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    approved_by: Mapped[str | None] = mapped_column(Text)
    approval_message: Mapped[str | None] = mapped_column(Text)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    rejected_by: Mapped[str | None] = mapped_column(Text)
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_by: Mapped[str | None] = mapped_column(Text)
    # Set once the auto-send batch has taken the request.
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_by: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )


class DrawRequestItem(Base):
    __tablename__ = 'draw_request_items'
    __table_args__ = (
        UniqueConstraint('request_id', 'withdrawal_id', name='draw_request_items_request_withdrawal_uniq'),
        CheckConstraint('net_amount_cents >= 0', name='draw_request_items_amount_non_negative_ck'),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    request_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('draw_requests.id', ondelete='CASCADE'), nullable=False)
    withdrawal_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('withdrawals.id'), nullable=False)
    creator_name: Mapped[str] = mapped_column(Text, nullable=False)
    project_description: Mapped[str | None] = mapped_column(Text)
    net_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default='USD', server_default='USD')
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )


class TreasuryCommunication(Base):
    __tablename__ = 'treasury_communications'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    request_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('draw_requests.id', ondelete='CASCADE'), nullable=False)
    direction: Mapped[CommunicationDirection] = mapped_column(
        SQLEnum(CommunicationDirection, name='communication_direction', values_callable=_enum_values),
        nullable=False,
    )
    channel: Mapped[CommunicationChannel] = mapped_column(
        SQLEnum(CommunicationChannel, name='communication_channel', values_callable=_enum_values),
        nullable=False,
        default=CommunicationChannel.EMAIL,
    )
    subject: Mapped[str | None] = mapped_column(Text)
    body: Mapped[str | None] = mapped_column(Text)
    from_email: Mapped[str | None] = mapped_column(Text)
    to_email: Mapped[str | None] = mapped_column(Text)
    message_id: Mapped[str | None] = mapped_column(Text)
    parsed_status: Mapped[ParsedApprovalStatus | None] = mapped_column(
        SQLEnum(ParsedApprovalStatus, name='parsed_approval_status', values_callable=_enum_values)
    )
    parsed_confidence: Mapped[ParseConfidence | None] = mapped_column(
        SQLEnum(ParseConfidence, name='parse_confidence', values_callable=_enum_values)
    )
    matched_keywords: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    extracted_message: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )


class TreasurySetting(Base):
    __tablename__ = 'treasury_settings'
    __table_args__ = (
        CheckConstraint(
            'auto_send_delay_hours >= 0 AND auto_send_delay_hours <= 168', name='treasury_settings_delay_range_ck'
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    auto_send_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    auto_send_delay_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=24, server_default='24')
    auto_send_max_amount_cents: Mapped[int | None] = mapped_column(BigInteger)
    treasurer_email: Mapped[str | None] = mapped_column(Text)
    treasurer_name: Mapped[str | None] = mapped_column(Text)
    low_balance_alert_threshold_cents: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=100000, server_default='100000'
    )
    slack_notifications_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default='false'
    )
    updated_by: Mapped[str | None] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )


class AuditLog(Base):
    __tablename__ = 'audit_log'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    actor: Mapped[str | None] = mapped_column(Text)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    request_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('draw_requests.id', ondelete='SET NULL'))
    ip: Mapped[str | None] = mapped_column(Text)
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
