from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import Select, exists, select, update
from sqlalchemy.orm import Session

from treasury.models import (
    ACTIVE_DRAW_REQUEST_STATUSES,
    DrawRequest,
    DrawRequestItem,
    DrawRequestStatus,
    Withdrawal,
    WithdrawalStatus,
)

logger = logging.getLogger(__name__)

CLAIMABLE_WITHDRAWAL_STATUSES = (WithdrawalStatus.PENDING, WithdrawalStatus.APPROVED)


@dataclass(frozen=True)
class DrawRequestFilter:
    status: DrawRequestStatus | None = None
    payee: str | None = None
    created_from: date | None = None
    created_to: date | None = None
    due_from: date | None = None
    due_to: date | None = None


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _generate_request_number(now: datetime) -> str:
    return f'DR-{now:%Y%m%d}-{secrets.token_hex(3).upper()}'


def _day_start(value: date) -> datetime:
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def get_draw_request(db: Session, *, request_id: int, fresh: bool = False) -> DrawRequest | None:
    query = select(DrawRequest).where(DrawRequest.id == request_id)
    if fresh:
        query = query.execution_options(populate_existing=True)
    return db.execute(query).scalar_one_or_none()


def get_draw_request_by_number(db: Session, *, request_number: str) -> DrawRequest | None:
    return db.execute(
        select(DrawRequest).where(DrawRequest.request_number == request_number.strip().upper())
    ).scalar_one_or_none()


def list_draw_request_items(db: Session, *, request_id: int) -> list[DrawRequestItem]:
    return db.execute(
        select(DrawRequestItem).where(DrawRequestItem.request_id == request_id).order_by(DrawRequestItem.id.asc())
    ).scalars().all()


def list_withdrawal_ids(db: Session, *, request_id: int) -> list[int]:
    return [
        withdrawal_id
        for withdrawal_id, in db.execute(
            select(DrawRequestItem.withdrawal_id).where(DrawRequestItem.request_id == request_id)
        ).all()
    ]


def build_draw_request_query(filters: DrawRequestFilter | None = None) -> Select:
    filters = filters or DrawRequestFilter()
    query = select(DrawRequest)
    if filters.status is not None:
        query = query.where(DrawRequest.status == filters.status)
    payee = (filters.payee or '').strip()
    if payee:
        query = query.where(
            exists()
            .where(DrawRequestItem.request_id == DrawRequest.id)
            .where(DrawRequestItem.creator_name.ilike(f'%{payee}%'))
        )
    if filters.created_from is not None:
        query = query.where(DrawRequest.created_at >= _day_start(filters.created_from))
    if filters.created_to is not None:
        query = query.where(DrawRequest.created_at < _day_start(filters.created_to + timedelta(days=1)))
    if filters.due_from is not None:
        query = query.where(DrawRequest.due_date >= filters.due_from)
    if filters.due_to is not None:
        query = query.where(DrawRequest.due_date <= filters.due_to)
    return query.order_by(DrawRequest.created_at.desc(), DrawRequest.id.desc())


def list_draw_requests(
    db: Session,
    *,
    filters: DrawRequestFilter | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[DrawRequest]:
    return db.execute(build_draw_request_query(filters).limit(limit).offset(offset)).scalars().all()


def _claimed_withdrawal_ids(db: Session, withdrawal_ids: list[int]) -> set[int]:
    rows = db.execute(
        select(DrawRequestItem.withdrawal_id)
        .join(DrawRequest, DrawRequest.id == DrawRequestItem.request_id)
        .where(
            DrawRequestItem.withdrawal_id.in_(withdrawal_ids),
            DrawRequest.status.in_(ACTIVE_DRAW_REQUEST_STATUSES),
        )
    ).all()
    return {withdrawal_id for withdrawal_id, in rows}


def create_draw_request(
    db: Session,
    *,
    withdrawal_ids: list[int],
    description: str,
    treasurer_email: str,
    created_by: str,
    treasurer_name: str | None = None,
    signers: list[str] | None = None,
    due_date: date | None = None,
    is_draft: bool = False,
    now: datetime | None = None,
) -> DrawRequest:
    unique_ids = sorted({int(wid) for wid in withdrawal_ids if wid})
    if not unique_ids:
        raise ValueError('Select at least one withdrawal')
    description = (description or '').strip()
    if not description:
        raise ValueError('Description is required')
    treasurer_email = (treasurer_email or '').strip()
    if not treasurer_email:
        raise ValueError('Treasurer email is required')
    created_by = (created_by or '').strip()
    if not created_by:
        raise ValueError('Creator is required')

    withdrawals = db.execute(select(Withdrawal).where(Withdrawal.id.in_(unique_ids))).scalars().all()
    found = {w.id for w in withdrawals}
    missing = [wid for wid in unique_ids if wid not in found]
    if missing:
        raise ValueError(f'Withdrawals not found: {", ".join(str(wid) for wid in missing)}')

    not_claimable = sorted(w.id for w in withdrawals if w.status not in CLAIMABLE_WITHDRAWAL_STATUSES)
    if not_claimable:
        raise ValueError(
            f'Withdrawals must be pending or approved: {", ".join(str(wid) for wid in not_claimable)}'
        )

    claimed = sorted(_claimed_withdrawal_ids(db, unique_ids))
    if claimed:
        raise ValueError(
            f'Withdrawals already in an active draw request: {", ".join(str(wid) for wid in claimed)}'
        )

    currencies = {w.currency.upper() for w in withdrawals}
    if len(currencies) != 1:
        raise ValueError('All withdrawals in a draw request must share one currency')
    currency = currencies.pop()

    now = now or _now()
    ordered = sorted(withdrawals, key=lambda w: w.id)
    request = DrawRequest(
        request_number=_generate_request_number(now),
        description=description,
        total_amount_cents=sum(w.net_amount_cents for w in ordered),
        currency=currency,
        treasurer_name=(treasurer_name or '').strip() or None,
        treasurer_email=treasurer_email,
        signers=[s.strip() for s in (signers or []) if s and s.strip()],
        due_date=due_date,
        is_draft=is_draft,
        status=DrawRequestStatus.PENDING,
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    db.add(request)
    db.flush()

    # Snapshot amounts so later withdrawal edits never change this request.
    for withdrawal in ordered:
        db.add(
            DrawRequestItem(
                request_id=request.id,
                withdrawal_id=withdrawal.id,
                creator_name=withdrawal.creator_name,
                project_description=withdrawal.project_description,
                net_amount_cents=withdrawal.net_amount_cents,
                currency=withdrawal.currency.upper(),
                created_at=now,
            )
        )
    db.flush()
    logger.info(
        'Created draw request %s with %d withdrawals totalling %d %s',
        request.request_number,
        len(ordered),
        request.total_amount_cents,
        currency,
    )
    return request


def expire_cached(db: Session, model, ids) -> None:
    for row_id in ids:
        cached = db.identity_map.get(Session.identity_key(model, row_id))
        if cached is not None:
            db.expire(cached)


def _guarded_transition(db: Session, *, request_id: int, values: dict) -> bool:
    # The status predicate is the concurrency guard: a stale writer affects zero rows.
    result = db.execute(
        update(DrawRequest)
        .where(DrawRequest.id == request_id, DrawRequest.status == DrawRequestStatus.PENDING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    expire_cached(db, DrawRequest, [request_id])
    return result.rowcount > 0


def approve_draw_request(
    db: Session,
    *,
    request_id: int,
    approved_by: str,
    message: str | None = None,
    now: datetime | None = None,
) -> bool:
    approved_by = (approved_by or '').strip()
    if not approved_by:
        raise ValueError('Approver is required')
    now = now or _now()
    updated = _guarded_transition(
        db,
        request_id=request_id,
        values={
            'status': DrawRequestStatus.APPROVED,
            'approved_at': now,
            'approved_by': approved_by,
            'approval_message': (message or '').strip() or None,
            'updated_at': now,
        },
    )
    logger.info('Approve draw request id=%s by=%s updated=%s', request_id, approved_by, updated)
    return updated


def reject_draw_request(
    db: Session,
    *,
    request_id: int,
    rejected_by: str,
    reason: str,
    now: datetime | None = None,
) -> bool:
    rejected_by = (rejected_by or '').strip()
    if not rejected_by:
        raise ValueError('Rejecter is required')
    reason = (reason or '').strip()
    if not reason:
        raise ValueError('Rejection reason is required')
    now = now or _now()
    updated = _guarded_transition(
        db,
        request_id=request_id,
        values={
            'status': DrawRequestStatus.REJECTED,
            'rejected_at': now,
            'rejected_by': rejected_by,
            'rejection_reason': reason,
            'updated_at': now,
        },
    )
    logger.info('Reject draw request id=%s by=%s updated=%s', request_id, rejected_by, updated)
    return updated


def cancel_draw_request(
    db: Session,
    *,
    request_id: int,
    cancelled_by: str,
    now: datetime | None = None,
) -> bool:
    cancelled_by = (cancelled_by or '').strip()
    if not cancelled_by:
        raise ValueError('Canceller is required')
    now = now or _now()
    updated = _guarded_transition(
        db,
        request_id=request_id,
        values={
            'status': DrawRequestStatus.CANCELLED,
            'cancelled_at': now,
            'cancelled_by': cancelled_by,
            'updated_at': now,
        },
    )
    logger.info('Cancel draw request id=%s by=%s updated=%s', request_id, cancelled_by, updated)
    return updated


def attach_pdf_url(db: Session, *, request_id: int, pdf_url: str) -> DrawRequest:
    pdf_url = (pdf_url or '').strip()
    if not pdf_url:
        raise ValueError('PDF URL is required')
    request = get_draw_request(db, request_id=request_id)
    if not request:
        raise ValueError('Draw request not found')
    request.pdf_url = pdf_url
    request.updated_at = _now()
    db.flush()
    return request
