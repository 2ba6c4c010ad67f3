from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session

from treasury.config import settings
from treasury.models import CommunicationChannel, DrawRequest, DrawRequestStatus
from treasury.services.action_token_service import build_action_url
from treasury.services.communication_service import log_outbound_communication
from treasury.services.draw_request_service import get_draw_request, list_draw_request_items
from treasury.services.notification_service import (
    DispatchResult,
    NotificationDispatcher,
    NotificationKind,
    dispatch_notification,
)


def _format_amount(amount_cents: int, currency: str) -> str:
    return f'{currency} {amount_cents / 100:,.2f}'


def approval_subject(request: DrawRequest) -> str:
    return f'Approval Required: {request.request_number} {_format_amount(request.total_amount_cents, request.currency)}'


def approval_body(request: DrawRequest, *, items, approve_url: str, reject_url: str) -> str:
    lines = [
        f'Draw request {request.request_number} requires your approval.',
        '',
        f'Amount: {_format_amount(request.total_amount_cents, request.currency)}',
        f'Description: {request.description}',
    ]
    if request.due_date:
        lines.append(f'Due: {request.due_date.isoformat()}')
    if request.pdf_url:
        lines.append(f'Summary PDF: {request.pdf_url}')
    lines.append('')
    lines.append('Payees:')
    for item in items:
        lines.append(f'  - {item.creator_name}: {_format_amount(item.net_amount_cents, item.currency)}')
    lines.extend(
        [
            '',
            f'Approve: {approve_url}',
            f'Reject: {reject_url}',
            '',
            'You can also reply to this email with your decision.',
        ]
    )
    return '\n'.join(lines)


def send_approval_request(
    db: Session,
    dispatcher: NotificationDispatcher,
    *,
    request_id: int,
    now: datetime | None = None,
) -> DispatchResult:
    request = get_draw_request(db, request_id=request_id)
    if not request:
        raise ValueError('Draw request not found')
    if request.status != DrawRequestStatus.PENDING:
        raise ValueError('Only pending draw requests can be sent for approval')
    if request.is_draft:
        raise ValueError('Draft draw requests cannot be sent for approval')

    approve_url = build_action_url(request.id, 'approve', now=now)
    reject_url = build_action_url(request.id, 'reject', now=now)
    subject = approval_subject(request)
    body = approval_body(
        request,
        items=list_draw_request_items(db, request_id=request.id),
        approve_url=approve_url,
        reject_url=reject_url,
    )

    result = dispatch_notification(
        db,
        dispatcher,
        kind=NotificationKind.REQUEST_CREATED,
        request=request,
        context={
            'to': request.treasurer_email,
            'from': settings.treasury_from_email,
            'subject': subject,
            'body': body,
            'approve_url': approve_url,
            'reject_url': reject_url,
        },
    )
    if result.success:
        log_outbound_communication(
            db,
            request_id=request.id,
            channel=CommunicationChannel.EMAIL,
            subject=subject,
            body=body,
            from_email=settings.treasury_from_email,
            to_email=request.treasurer_email,
            message_id=result.message_id,
        )
    return result
