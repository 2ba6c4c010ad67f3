"""Scheduled advancement of approved draw requests.

``run_auto_send_batch`` folds over the eligible requests the batch has not
taken yet, oldest approval first. Each request is claimed by stamping
``processed_at`` and then either advances its linked withdrawals or records
one error; a failing request never stops the rest of the batch. Every write
is guarded on the prior state, so overlapping runs and manual actions can
only ever flip a withdrawal once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.orm import Session

from treasury.models import DrawRequest, DrawRequestStatus, Withdrawal, WithdrawalStatus
from treasury.services.auto_send_service import AutoSendConfig, get_requests_ready_for_auto_send
from treasury.services.draw_request_service import expire_cached, get_draw_request, list_withdrawal_ids

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS = 10


@dataclass(frozen=True)
class RequestOutcome:
    request_id: int
    request_number: str
    processed: int
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BatchReport:
    processed: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    results: list[RequestOutcome] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0

    def record(self, outcome: RequestOutcome) -> BatchReport:
        self.results.append(outcome)
        if outcome.ok:
            self.processed += outcome.processed
        else:
            self.failed += 1
            self.errors.append(f'{outcome.request_number}: {outcome.error}')
        return self

    def as_dict(self) -> dict:
        return {
            'success': self.success,
            'processed': self.processed,
            'failed': self.failed,
            'errors': list(self.errors),
        }


def advance_withdrawals(db: Session, *, withdrawal_ids: list[int]) -> int:
    if not withdrawal_ids:
        return 0
    result = db.execute(
        update(Withdrawal)
        .where(Withdrawal.id.in_(withdrawal_ids), Withdrawal.status == WithdrawalStatus.APPROVED)
        .values(status=WithdrawalStatus.PROCESSING, updated_at=datetime.now(tz=timezone.utc))
        .execution_options(synchronize_session=False)
    )
    expire_cached(db, Withdrawal, withdrawal_ids)
    return result.rowcount


def claim_request(db: Session, *, request_id: int, now: datetime) -> bool:
    result = db.execute(
        update(DrawRequest)
        .where(
            DrawRequest.id == request_id,
            DrawRequest.status == DrawRequestStatus.APPROVED,
            DrawRequest.processed_at.is_(None),
        )
        .values(processed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    expire_cached(db, DrawRequest, [request_id])
    return result.rowcount == 1


def process_request(db: Session, request: DrawRequest, *, now: datetime | None = None) -> RequestOutcome:
    request_id = request.id
    request_number = request.request_number

    # Re-read: the request may have changed since eligibility was computed.
    current = get_draw_request(db, request_id=request_id, fresh=True)
    if current is None:
        return RequestOutcome(request_id, request_number, 0, 'draw request not found')
    if current.status != DrawRequestStatus.APPROVED:
        return RequestOutcome(request_id, request_number, 0, f'status is {current.status.value}, expected approved')

    if not claim_request(db, request_id=request_id, now=now or datetime.now(tz=timezone.utc)):
        logger.info('Draw request %s was already taken by another auto-send run', request_number)
        return RequestOutcome(request_id, request_number, 0)

    withdrawal_ids = list_withdrawal_ids(db, request_id=request_id)
    if not withdrawal_ids:
        return RequestOutcome(request_id, request_number, 0, 'no linked withdrawals')

    flipped = advance_withdrawals(db, withdrawal_ids=withdrawal_ids)
    if flipped < len(withdrawal_ids):
        logger.info(
            'Draw request %s: %d of %d withdrawals advanced; the rest were not in approved status',
            request_number,
            flipped,
            len(withdrawal_ids),
        )
    return RequestOutcome(request_id, request_number, flipped)


def run_auto_send_batch(
    db: Session,
    config: AutoSendConfig,
    *,
    max_requests: int = DEFAULT_MAX_REQUESTS,
    now: datetime | None = None,
) -> BatchReport:
    if max_requests <= 0:
        raise ValueError('max_requests must be greater than zero')

    report = BatchReport()
    eligible = get_requests_ready_for_auto_send(db, config, now=now, limit=max_requests, unprocessed_only=True)
    for request in eligible:
        outcome = process_request(db, request, now=now)
        report.record(outcome)
        db.flush()
        if outcome.ok:
            logger.info('Auto-send advanced %s: %d withdrawals', outcome.request_number, outcome.processed)
        else:
            logger.warning('Auto-send failed for %s: %s', outcome.request_number, outcome.error)

    logger.info(
        'Auto-send batch complete: candidates=%d processed=%d failed=%d',
        len(eligible),
        report.processed,
        report.failed,
    )
    return report
