from __future__ import annotations

from datetime import date
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from treasury.auth import Principal, Role, require_role
from treasury.config import settings
from treasury.db import get_db
from treasury.dependencies import get_client_ip, get_dispatcher
from treasury.models import DrawRequest, DrawRequestStatus, TreasurySetting
from treasury.services.approval_email_service import send_approval_request
from treasury.services.audit_service import log_audit
from treasury.services.auto_send_service import (
    get_or_create_treasury_settings,
    load_auto_send_config,
    update_treasury_settings,
)
from treasury.services.batch_service import run_auto_send_batch
from treasury.services.communication_service import list_communications
from treasury.services.decision_service import (
    DecisionOutcome,
    apply_decision,
    handle_web_action,
    preview_web_action,
)
from treasury.services.draw_request_service import (
    DrawRequestFilter,
    attach_pdf_url,
    cancel_draw_request,
    create_draw_request,
    get_draw_request,
    list_draw_request_items,
    list_draw_requests,
)
from treasury.services.inbound_email_service import handle_inbound_email
from treasury.services.notification_service import (
    NotificationDispatcher,
    NotificationKind,
    dispatch_notification,
)

router = APIRouter(prefix='/treasury', tags=['treasury'])
admin_access = require_role(Role.ADMIN)


class CreateDrawRequestBody(BaseModel):
    withdrawal_ids: list[int]
    description: str
    treasurer_email: str | None = None
    treasurer_name: str | None = None
    signers: list[str] = Field(default_factory=list)
    due_date: date | None = None
    is_draft: bool = False


class DecisionBody(BaseModel):
    message: str | None = None


class RejectBody(BaseModel):
    reason: str


class PdfBody(BaseModel):
    pdf_url: str


class SettingsBody(BaseModel):
    auto_send_enabled: bool | None = None
    auto_send_delay_hours: int | None = None
    auto_send_max_amount_cents: int | None = None
    treasurer_email: str | None = None
    treasurer_name: str | None = None
    low_balance_alert_threshold_cents: int | None = None
    slack_notifications_enabled: bool | None = None


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


def _request_dict(request: DrawRequest) -> dict[str, Any]:
    return {
        'id': request.id,
        'request_number': request.request_number,
        'description': request.description,
        'total_amount_cents': request.total_amount_cents,
        'currency': request.currency,
        'treasurer_name': request.treasurer_name,
        'treasurer_email': request.treasurer_email,
        'signers': list(request.signers or []),
        'due_date': _iso(request.due_date),
        'is_draft': request.is_draft,
        'pdf_url': request.pdf_url,
        'status': request.status.value,
        'approved_at': _iso(request.approved_at),
        'approved_by': request.approved_by,
        'approval_message': request.approval_message,
        'rejected_at': _iso(request.rejected_at),
        'rejected_by': request.rejected_by,
        'rejection_reason': request.rejection_reason,
        'cancelled_at': _iso(request.cancelled_at),
        'cancelled_by': request.cancelled_by,
        'processed_at': _iso(request.processed_at),
        'created_by': request.created_by,
        'created_at': _iso(request.created_at),
        'updated_at': _iso(request.updated_at),
    }


def _settings_dict(row: TreasurySetting) -> dict[str, Any]:
    return {
        'auto_send_enabled': row.auto_send_enabled,
        'auto_send_delay_hours': row.auto_send_delay_hours,
        'auto_send_max_amount_cents': row.auto_send_max_amount_cents,
        'treasurer_email': row.treasurer_email,
        'treasurer_name': row.treasurer_name,
        'low_balance_alert_threshold_cents': row.low_balance_alert_threshold_cents,
        'slack_notifications_enabled': row.slack_notifications_enabled,
        'updated_by': row.updated_by,
        'updated_at': _iso(row.updated_at),
    }


def _load_request(db: Session, request_id: int) -> DrawRequest:
    request = get_draw_request(db, request_id=request_id)
    if not request:
        raise HTTPException(status_code=404, detail='Draw request not found')
    return request


def _conflict() -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={'updated': False, 'detail': 'Draw request has already been decided'},
    )


@router.post('/inbound-email')
def inbound_email(
    payload: dict[str, Any] = Body(...),
    _: Principal = Depends(require_role(Role.WEBHOOK)),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    try:
        result = handle_inbound_email(db, dispatcher, payload=payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    parse = result.parse_result
    return {
        'outcome': result.outcome.value,
        'request_id': result.request_id,
        'communication_id': result.communication_id,
        'parsed_status': parse.status.value if parse else None,
        'parsed_confidence': parse.confidence.value if parse else None,
        'matched_keywords': list(parse.matched_keywords) if parse else [],
    }


@router.get('/requests/{request_id}/action')
def web_action_confirm(
    request_id: int,
    request: Request,
    action: str = Query(...),
    token: str = Query(...),
    db: Session = Depends(get_db),
):
    preview = preview_web_action(db, request_id=request_id, action=action, token=token, ip=get_client_ip(request))
    db.commit()
    if preview.outcome == DecisionOutcome.INVALID_TOKEN:
        raise HTTPException(status_code=403, detail='This link is invalid or has expired')
    if preview.outcome == DecisionOutcome.NOT_FOUND:
        raise HTTPException(status_code=404, detail='Draw request not found')
    draw_request = preview.request
    return {
        'outcome': preview.outcome.value,
        'action': action,
        'request': {
            'request_number': draw_request.request_number,
            'description': draw_request.description,
            'total_amount_cents': draw_request.total_amount_cents,
            'currency': draw_request.currency,
            'status': draw_request.status.value,
        },
        # The decision is only taken by POSTing back to the same link.
        'confirm_method': 'POST',
    }


@router.post('/requests/{request_id}/action')
def web_action(
    request_id: int,
    request: Request,
    action: str = Query(...),
    token: str = Query(...),
    reason: str | None = Query(None),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    outcome = handle_web_action(
        db,
        dispatcher,
        request_id=request_id,
        action=action,
        token=token,
        reason=reason,
        ip=get_client_ip(request),
    )
    db.commit()
    if outcome == DecisionOutcome.INVALID_TOKEN:
        raise HTTPException(status_code=403, detail='This link is invalid or has expired')
    if outcome == DecisionOutcome.NOT_FOUND:
        raise HTTPException(status_code=404, detail='Draw request not found')
    return {'outcome': outcome.value}


@router.post('/auto-send/run')
def auto_send_run(
    max_requests: int | None = Query(None, ge=1, le=500),
    principal: Principal = Depends(require_role(Role.SCHEDULER, Role.ADMIN)),
    db: Session = Depends(get_db),
):
    config = load_auto_send_config(db)
    report = run_auto_send_batch(db, config, max_requests=max_requests or settings.auto_send_batch_size)
    log_audit(
        db,
        actor=principal.name,
        action='AUTO_SEND_BATCH_RUN',
        request_id=None,
        metadata=report.as_dict(),
    )
    db.commit()
    return report.as_dict()


@router.post('/requests', status_code=status.HTTP_201_CREATED)
def create_request(
    body: CreateDrawRequestBody,
    request: Request,
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    defaults = get_or_create_treasury_settings(db)
    treasurer_email = body.treasurer_email or defaults.treasurer_email or ''
    treasurer_name = body.treasurer_name or defaults.treasurer_name
    try:
        draw_request = create_draw_request(
            db,
            withdrawal_ids=body.withdrawal_ids,
            description=body.description,
            treasurer_email=treasurer_email,
            treasurer_name=treasurer_name,
            signers=body.signers,
            due_date=body.due_date,
            is_draft=body.is_draft,
            created_by=principal.name,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    log_audit(
        db,
        actor=principal.name,
        action='DRAW_REQUEST_CREATED',
        request_id=draw_request.id,
        ip=get_client_ip(request),
        metadata={'request_number': draw_request.request_number, 'withdrawal_ids': body.withdrawal_ids},
    )
    db.commit()
    return _request_dict(draw_request)


@router.get('/requests')
def list_requests(
    status_filter: DrawRequestStatus | None = Query(None, alias='status'),
    payee: str | None = Query(None),
    created_from: date | None = Query(None),
    created_to: date | None = Query(None),
    due_from: date | None = Query(None),
    due_to: date | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    _: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    filters = DrawRequestFilter(
        status=status_filter,
        payee=payee,
        created_from=created_from,
        created_to=created_to,
        due_from=due_from,
        due_to=due_to,
    )
    return [_request_dict(row) for row in list_draw_requests(db, filters=filters, limit=limit, offset=offset)]


@router.get('/requests/{request_id}')
def request_detail(
    request_id: int,
    _: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    draw_request = _load_request(db, request_id)
    payload = _request_dict(draw_request)
    payload['items'] = [
        {
            'withdrawal_id': item.withdrawal_id,
            'creator_name': item.creator_name,
            'project_description': item.project_description,
            'net_amount_cents': item.net_amount_cents,
            'currency': item.currency,
        }
        for item in list_draw_request_items(db, request_id=request_id)
    ]
    payload['communications'] = [
        {
            'id': row.id,
            'direction': row.direction.value,
            'channel': row.channel.value,
            'subject': row.subject,
            'from_email': row.from_email,
            'to_email': row.to_email,
            'parsed_status': row.parsed_status.value if row.parsed_status else None,
            'parsed_confidence': row.parsed_confidence.value if row.parsed_confidence else None,
            'matched_keywords': list(row.matched_keywords or []),
            'extracted_message': row.extracted_message,
            'created_at': _iso(row.created_at),
        }
        for row in list_communications(db, request_id=request_id)
    ]
    return payload


@router.post('/requests/{request_id}/approve')
def approve_request(
    request_id: int,
    body: DecisionBody | None = None,
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    draw_request = _load_request(db, request_id)
    outcome = apply_decision(
        db,
        dispatcher,
        request=draw_request,
        action='approve',
        actor=principal.name,
        message=body.message if body else None,
    )
    db.commit()
    if outcome == DecisionOutcome.ALREADY_DECIDED:
        return _conflict()
    return {'updated': True, 'request': _request_dict(draw_request)}


@router.post('/requests/{request_id}/reject')
def reject_request(
    request_id: int,
    body: RejectBody,
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    draw_request = _load_request(db, request_id)
    try:
        outcome = apply_decision(
            db,
            dispatcher,
            request=draw_request,
            action='reject',
            actor=principal.name,
            message=body.reason,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    if outcome == DecisionOutcome.ALREADY_DECIDED:
        return _conflict()
    return {'updated': True, 'request': _request_dict(draw_request)}


@router.post('/requests/{request_id}/cancel')
def cancel_request(
    request_id: int,
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    draw_request = _load_request(db, request_id)
    if not cancel_draw_request(db, request_id=request_id, cancelled_by=principal.name):
        db.rollback()
        return _conflict()
    db.refresh(draw_request)
    dispatch_notification(
        db,
        dispatcher,
        kind=NotificationKind.CANCELLED,
        request=draw_request,
        context={'to': draw_request.treasurer_email, 'actor': principal.name},
    )
    db.commit()
    return {'updated': True, 'request': _request_dict(draw_request)}


@router.post('/requests/{request_id}/pdf')
def attach_pdf(
    request_id: int,
    body: PdfBody,
    _: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    try:
        draw_request = attach_pdf_url(db, request_id=request_id, pdf_url=body.pdf_url)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return _request_dict(draw_request)


@router.post('/requests/{request_id}/send-approval')
def send_approval(
    request_id: int,
    _: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    try:
        result = send_approval_request(db, dispatcher, request_id=request_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return {'success': result.success, 'error': result.error}


@router.get('/settings')
def read_settings(
    _: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    row = get_or_create_treasury_settings(db)
    db.commit()
    return _settings_dict(row)


@router.put('/settings')
def write_settings(
    body: SettingsBody,
    request: Request,
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    fields = body.model_dump(exclude_unset=True)
    try:
        row = update_treasury_settings(db, updated_by=principal.name, **fields)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    log_audit(
        db,
        actor=principal.name,
        action='TREASURY_SETTINGS_UPDATED',
        request_id=None,
        ip=get_client_ip(request),
        metadata=fields,
    )
    db.commit()
    return _settings_dict(row)
