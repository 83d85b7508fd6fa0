from __future__ import annotations

import hmac
import logging
import urllib.parse
from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import ValidationError

from .call_window import is_within_call_window, next_window_opening, window_closed_reason
from .delivery import ReconcileOutcome
from .engine import ReminderEngine
from .errors import PolicyConfigMissingError
from .models import (
    CallbackResponse,
    Channel,
    DispatchRunRequest,
    DispatchRunResponse,
    SyncRunRequest,
    SyncRunResponse,
    VoiceStatusCallback,
    WindowStatusResponse,
)
from .policy import ReminderPolicyConfig, require_config
from .webhook_security import (
    WebhookSignatureVerification,
    verify_twilio_status_signature,
    verify_voice_status_signature,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reminders", tags=["reminders"])


def _engine(request: Request) -> ReminderEngine:
    return request.app.state.engine  # type: ignore[no-any-return]


def _require_cron(request: Request, engine: ReminderEngine) -> None:
    token = request.headers.get("Authorization", "").removeprefix("Bearer ").strip()
    if not token:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "cron secret required")
    if not hmac.compare_digest(token, engine.settings.cron_secret):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "invalid cron secret")


def _enforce_signature(engine: ReminderEngine, result: WebhookSignatureVerification, *, source: str) -> None:
    if result.verified:
        return
    if engine.settings.webhook_signature_mode == "enforce":
        logger.warning("%s callback rejected: %s", source, result.reason)
        raise HTTPException(status.HTTP_403_FORBIDDEN, f"invalid webhook signature: {result.reason}")
    logger.warning("%s callback signature not verified (%s); accepted in log_only mode", source, result.reason)


def _callback_response(outcome: ReconcileOutcome) -> CallbackResponse:
    if not outcome.accepted:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "reminder not found for callback id")
    reminder = outcome.reminder
    return CallbackResponse(
        accepted=True,
        reminder_id=reminder.reminder_id if reminder else None,
        status=reminder.status if reminder else None,
        changed=outcome.changed,
    )


@router.post("/cron/sync", response_model=SyncRunResponse)
def run_sync(payload: SyncRunRequest, request: Request) -> SyncRunResponse:
    engine = _engine(request)
    _require_cron(request, engine)
    items = engine.sync_orchestrator().sync_owners(payload.owner_ids, full=payload.full)
    return SyncRunResponse(items=items)


@router.post("/cron/dispatch", response_model=DispatchRunResponse)
def run_dispatch(request: Request, payload: DispatchRunRequest | None = None) -> DispatchRunResponse:
    engine = _engine(request)
    _require_cron(request, engine)
    body = payload or DispatchRunRequest()
    return engine.dispatcher().run(now=body.now_override, owner_ids=body.owner_ids)


@router.post("/webhooks/sms-status", response_model=CallbackResponse)
async def sms_status_callback(request: Request) -> CallbackResponse:
    engine = _engine(request)
    raw_body = await request.body()
    try:
        decoded_body = raw_body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "callback body must be UTF-8 form data") from exc
    form_data = dict(urllib.parse.parse_qsl(decoded_body, keep_blank_values=True))
    verification = verify_twilio_status_signature(
        settings=engine.settings,
        url=str(request.url),
        form_data=form_data,
        headers=request.headers,
    )
    _enforce_signature(engine, verification, source="sms")

    message_sid = form_data.get("MessageSid", "").strip()
    message_status = form_data.get("MessageStatus", "").strip()
    if not message_sid or not message_status:
        raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, "MessageSid and MessageStatus are required")

    outcome = engine.reconciler().apply(
        Channel.SMS,
        message_sid,
        message_status,
        error_code=form_data.get("ErrorCode") or None,
        error_message=form_data.get("ErrorMessage") or None,
    )
    return _callback_response(outcome)


@router.post("/webhooks/voice-status", response_model=CallbackResponse)
async def voice_status_callback(request: Request) -> CallbackResponse:
    engine = _engine(request)
    raw_body = await request.body()
    verification = verify_voice_status_signature(settings=engine.settings, body=raw_body, headers=request.headers)
    _enforce_signature(engine, verification, source="voice")

    try:
        payload = VoiceStatusCallback.model_validate_json(raw_body)
    except ValidationError as exc:
        raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, exc.errors(include_url=False)) from exc

    outcome = engine.reconciler().apply(
        Channel.VOICE,
        payload.call_id,
        payload.event,
        error_code=payload.error_code,
        error_message=payload.error_message,
    )
    return _callback_response(outcome)


@router.get("/owners/{owner_id}/window", response_model=WindowStatusResponse)
def owner_window_status(owner_id: str, request: Request) -> WindowStatusResponse:
    try:
        config = require_config(_engine(request).policies, owner_id)
    except PolicyConfigMissingError as exc:
        raise HTTPException(status.HTTP_404_NOT_FOUND, exc.message) from exc
    now = datetime.now(timezone.utc)
    is_open = is_within_call_window(config, now)
    return WindowStatusResponse(
        owner_id=owner_id,
        timezone=config.timezone,
        open=is_open,
        closed_reason=window_closed_reason(config, now),
        next_opening_at=None if is_open else next_window_opening(config, now),
    )


@router.get("/owners/{owner_id}/policy", response_model=ReminderPolicyConfig)
def get_owner_policy(owner_id: str, request: Request) -> ReminderPolicyConfig:
    engine = _engine(request)
    _require_cron(request, engine)
    config = engine.policies.get_config(owner_id)
    if config is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "reminder policy not configured")
    return config


@router.put("/owners/{owner_id}/policy", response_model=ReminderPolicyConfig)
def put_owner_policy(owner_id: str, payload: ReminderPolicyConfig, request: Request) -> ReminderPolicyConfig:
    engine = _engine(request)
    _require_cron(request, engine)
    engine.policies.put_config(owner_id, payload)
    logger.info("reminder policy updated for owner %s", owner_id)
    return payload
