from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

from treasury.config import DEFAULT_ACTION_TOKEN_SECRET, settings

logger = logging.getLogger(__name__)

ACTIONS = {'approve', 'reject'}
DEFAULT_MAX_AGE = timedelta(days=7)
MAX_CLOCK_SKEW = timedelta(minutes=1)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode('ascii').rstrip('=')


def _b64decode(value: str) -> bytes:
    padding = '=' * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def _sign(encoded_payload: str, secret: str) -> str:
    return hmac.new(secret.encode('utf-8'), encoded_payload.encode('utf-8'), hashlib.sha256).hexdigest()


def issue_action_token(
    request_id: int,
    action: str,
    *,
    now: datetime | None = None,
    secret: str | None = None,
) -> str:
    if action not in ACTIONS:
        raise ValueError(f'Unsupported action: {action}')
    issued_at = _epoch_ms(now or _now())
    encoded = _b64encode(f'{request_id}:{action}:{issued_at}'.encode('utf-8'))
    return f'{encoded}.{_sign(encoded, secret or settings.action_token_secret)}'


def verify_action_token(
    token: str | None,
    expected_request_id: int,
    expected_action: str,
    *,
    max_age: timedelta | None = None,
    now: datetime | None = None,
    secret: str | None = None,
) -> bool:
    if not token or '.' not in token:
        return False
    encoded, _, signature = token.partition('.')
    expected_signature = _sign(encoded, secret or settings.action_token_secret)
    if not hmac.compare_digest(signature.encode('utf-8'), expected_signature.encode('utf-8')):
        return False

    try:
        request_id_raw, action, issued_at_raw = _b64decode(encoded).decode('utf-8').split(':')
        request_id = int(request_id_raw)
        issued_at = int(issued_at_raw)
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return False

    if request_id != expected_request_id or action != expected_action:
        return False

    age_ms = _epoch_ms(now or _now()) - issued_at
    if age_ms < -_ms(MAX_CLOCK_SKEW):
        return False
    return age_ms <= _ms(max_age or DEFAULT_MAX_AGE)


def _ms(delta: timedelta) -> int:
    return int(delta.total_seconds() * 1000)


def build_action_url(request_id: int, action: str, *, now: datetime | None = None) -> str:
    token = issue_action_token(request_id, action, now=now)
    query = urlencode({'action': action, 'token': token})
    return f"{settings.public_base_url.rstrip('/')}/treasury/requests/{request_id}/action?{query}"


def configured_max_age() -> timedelta:
    return timedelta(days=settings.action_token_max_age_days)


def warn_if_default_secret() -> bool:
    """Log a warning when links are signed with the shipped placeholder secret."""
    if settings.action_token_secret and settings.action_token_secret != DEFAULT_ACTION_TOKEN_SECRET:
        return False
    logger.warning('ACTION_TOKEN_SECRET is not set; approval links can be forged until it is configured')
    return True
