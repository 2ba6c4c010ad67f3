from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from treasury.models import DrawRequest, DrawRequestStatus, TreasurySetting

logger = logging.getLogger(__name__)

MAX_DELAY_HOURS = 168
SETTINGS_ROW_ID = 1


@dataclass(frozen=True)
class AutoSendConfig:
    enabled: bool
    delay_hours: int
    max_amount_cents: int | None = None
    treasurer_email: str | None = None


@dataclass(frozen=True)
class EligibilityResult:
    eligible: bool
    reason: str | None = None


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def eligibility_cutoff(config: AutoSendConfig, now: datetime | None = None) -> datetime:
    """Latest approval time that has cleared the configured delay at ``now``."""
    return ensure_utc(now or _now()) - timedelta(hours=config.delay_hours)


def _format_cents(amount_cents: int, currency: str = 'USD') -> str:
    return f'{currency} {amount_cents / 100:,.2f}'


def is_eligible(request: DrawRequest, config: AutoSendConfig, now: datetime | None = None) -> EligibilityResult:
    if not config.enabled:
        return EligibilityResult(False, 'auto-send not enabled')
    if request.status != DrawRequestStatus.APPROVED:
        return EligibilityResult(False, 'not approved')
    if request.approved_at is None:
        return EligibilityResult(False, 'no approval timestamp')

    now = ensure_utc(now or _now())
    approved_at = ensure_utc(request.approved_at)
    if approved_at > eligibility_cutoff(config, now):
        eligible_at = approved_at + timedelta(hours=config.delay_hours)
        hours_remaining = math.ceil((eligible_at - now) / timedelta(hours=1))
        return EligibilityResult(False, f'delay window not elapsed: {hours_remaining} hours remaining')

    if config.max_amount_cents is not None and request.total_amount_cents > config.max_amount_cents:
        limit = _format_cents(config.max_amount_cents, request.currency or 'USD')
        return EligibilityResult(False, f'amount exceeds auto-send limit of {limit}')

    return EligibilityResult(True)


def get_requests_ready_for_auto_send(
    db: Session,
    config: AutoSendConfig,
    *,
    now: datetime | None = None,
    limit: int | None = None,
    unprocessed_only: bool = False,
) -> list[DrawRequest]:
    """Bulk form of ``is_eligible``.

    ``unprocessed_only`` drops requests the batch has already taken, so a
    limited batch moves on to newer approvals instead of revisiting old ones.
    """
    if not config.enabled:
        return []

    query = select(DrawRequest).where(
        DrawRequest.status == DrawRequestStatus.APPROVED,
        DrawRequest.approved_at.is_not(None),
        DrawRequest.approved_at <= eligibility_cutoff(config, now),
    )
    if unprocessed_only:
        query = query.where(DrawRequest.processed_at.is_(None))
    if config.max_amount_cents is not None:
        query = query.where(DrawRequest.total_amount_cents <= config.max_amount_cents)
    query = query.order_by(DrawRequest.approved_at.asc(), DrawRequest.id.asc())
    if limit is not None:
        query = query.limit(limit)
    return db.execute(query).scalars().all()


def get_or_create_treasury_settings(db: Session) -> TreasurySetting:
    row = db.execute(select(TreasurySetting).where(TreasurySetting.id == SETTINGS_ROW_ID)).scalar_one_or_none()
    if row:
        return row

    row = TreasurySetting(
        id=SETTINGS_ROW_ID,
        auto_send_enabled=False,
        auto_send_delay_hours=24,
        auto_send_max_amount_cents=None,
        low_balance_alert_threshold_cents=100000,
        slack_notifications_enabled=False,
    )
    db.add(row)
    db.flush()
    return row


def config_from_settings(row: TreasurySetting) -> AutoSendConfig:
    return AutoSendConfig(
        enabled=bool(row.auto_send_enabled),
        delay_hours=row.auto_send_delay_hours,
        max_amount_cents=row.auto_send_max_amount_cents,
        treasurer_email=row.treasurer_email,
    )


def load_auto_send_config(db: Session) -> AutoSendConfig:
    return config_from_settings(get_or_create_treasury_settings(db))


def _validate_settings(*, delay_hours: int, max_amount_cents: int | None, low_balance_threshold_cents: int) -> None:
    if delay_hours < 0 or delay_hours > MAX_DELAY_HOURS:
        raise ValueError(f'Auto-send delay must be between 0 and {MAX_DELAY_HOURS} hours')
    if max_amount_cents is not None and max_amount_cents < 0:
        raise ValueError('Auto-send maximum amount cannot be negative')
    if low_balance_threshold_cents < 0:
        raise ValueError('Low balance threshold cannot be negative')


_UNSET = object()


def update_treasury_settings(
    db: Session,
    *,
    updated_by: str,
    auto_send_enabled: bool | None = None,
    auto_send_delay_hours: int | None = None,
    auto_send_max_amount_cents=_UNSET,
    treasurer_email=_UNSET,
    treasurer_name=_UNSET,
    low_balance_alert_threshold_cents: int | None = None,
    slack_notifications_enabled: bool | None = None,
) -> TreasurySetting:
    row = get_or_create_treasury_settings(db)

    delay_hours = row.auto_send_delay_hours if auto_send_delay_hours is None else int(auto_send_delay_hours)
    max_amount = row.auto_send_max_amount_cents
    if auto_send_max_amount_cents is not _UNSET:
        max_amount = None if auto_send_max_amount_cents is None else int(auto_send_max_amount_cents)
        # Zero means "no cap" in the settings form.
        if max_amount == 0:
            max_amount = None
    threshold = (
        row.low_balance_alert_threshold_cents
        if low_balance_alert_threshold_cents is None
        else int(low_balance_alert_threshold_cents)
    )
    _validate_settings(delay_hours=delay_hours, max_amount_cents=max_amount, low_balance_threshold_cents=threshold)

    if auto_send_enabled is not None:
        row.auto_send_enabled = bool(auto_send_enabled)
    row.auto_send_delay_hours = delay_hours
    row.auto_send_max_amount_cents = max_amount
    row.low_balance_alert_threshold_cents = threshold
    if treasurer_email is not _UNSET:
        row.treasurer_email = (treasurer_email or '').strip() or None
    if treasurer_name is not _UNSET:
        row.treasurer_name = (treasurer_name or '').strip() or None
    if slack_notifications_enabled is not None:
        row.slack_notifications_enabled = bool(slack_notifications_enabled)
    row.updated_by = updated_by
    row.updated_at = _now()
    db.flush()
    logger.info(
        'Treasury settings updated by %s: enabled=%s delay_hours=%s max_amount_cents=%s',
        updated_by,
        row.auto_send_enabled,
        row.auto_send_delay_hours,
        row.auto_send_max_amount_cents,
    )
    return row
