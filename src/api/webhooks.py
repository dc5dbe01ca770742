"""
Twilio webhook endpoints - call and message status callbacks, inbound SMS and calls.
Twilio sends form-encoded data, not JSON.

Security layers (in order):
1. Signature validation (X-Twilio-Signature)
2. Deduplication of provider retries (Redis)
3. Payload processing

Status callbacks always answer 200 with {"status": "ok"|"error"}; a non-2xx
makes Twilio retry and the handlers have already logged the failure.
"""
import logging

from fastapi import APIRouter, Request, Depends, HTTPException, Response
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import get_settings
from src.database import get_db
from src.schemas.communication import CallCompletion, DeliveryStatusUpdate
from src.services.engagement import (
    handle_call_status,
    handle_inbound_call,
    handle_inbound_message,
    handle_message_status,
)
from src.services.gateway import get_gateway, is_voicemail_answer
from src.utils.dedup import is_duplicate_callback
from src.utils.phone import mask_phone
from src.utils.webhook_signatures import (
    compute_payload_hash,
    get_webhook_url,
    validate_twilio_signature,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/webhook", tags=["webhooks"])

INBOUND_CALL_GREETING = "Thanks for calling. We got your call and will get back to you shortly."

# Twilio reports a dialled call as "initiated" before it rings
_CALL_STATUS_ALIASES = {"initiated": "queued"}


async def _validate_signature(request: Request, form_params: dict) -> None:
    """Validate the Twilio signature and raise 401 if invalid."""
    settings = get_settings()
    if not settings.twilio_validate_signatures or not settings.twilio_auth_token:
        return
    signature = request.headers.get("X-Twilio-Signature", "")
    is_valid = validate_twilio_signature(
        settings.twilio_auth_token, signature, get_webhook_url(request), form_params,
    )
    if not is_valid:
        client_ip = request.client.host if request.client else "unknown"
        logger.warning(
            "Invalid webhook signature: path=%s ip=%s", request.url.path, client_ip,
            extra={"provider": "twilio"},
        )
        raise HTTPException(status_code=401, detail="Invalid webhook signature")


async def _read_form(request: Request) -> tuple[bytes, dict]:
    body = await request.body()
    form_data = await request.form()
    form_params = dict(form_data)
    await _validate_signature(request, form_params)
    return body, form_params


def _twiml(xml: str) -> Response:
    return Response(content=xml, media_type="application/xml")


@router.post("/twilio/voice/status")
async def twilio_voice_status_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Call status callback - progress updates and call funnel transitions."""
    body, form_params = await _read_form(request)

    call_sid = form_params.get("CallSid", "")
    status = form_params.get("CallStatus", "")
    status = _CALL_STATUS_ALIASES.get(status, status)
    if not call_sid or not status:
        logger.warning("Voice status callback missing CallSid or CallStatus")
        return {"status": "ignored"}

    if await is_duplicate_callback("twilio", call_sid, status):
        return {"status": "duplicate"}

    try:
        duration = form_params.get("CallDuration")
        completion = CallCompletion(
            provider_call_id=call_sid,
            status=status,
            duration_seconds=int(duration) if duration else None,
            is_voicemail=is_voicemail_answer(form_params.get("AnsweredBy")),
        )
        await handle_call_status(db, completion, get_gateway())
        logger.info(
            "Call %s status: %s", call_sid, status,
            extra={"provider": "twilio", "channel": "call"},
        )
        return {"status": "ok"}
    except Exception as e:
        await db.rollback()
        logger.error(
            "Voice status webhook error (payload %s): %s",
            compute_payload_hash(body)[:12], str(e), exc_info=True,
        )
        return {"status": "error"}


@router.post("/twilio/sms/status")
async def twilio_sms_status_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Message delivery status callback."""
    body, form_params = await _read_form(request)

    message_sid = form_params.get("MessageSid", "")
    status = form_params.get("MessageStatus", "")
    if not message_sid or not status:
        logger.warning("SMS status callback missing MessageSid or MessageStatus")
        return {"status": "ignored"}

    if await is_duplicate_callback("twilio", message_sid, status):
        return {"status": "duplicate"}

    try:
        update = DeliveryStatusUpdate(
            provider_message_id=message_sid,
            status=status,
            error_code=form_params.get("ErrorCode") or None,
            error_message=form_params.get("ErrorMessage") or None,
        )
        await handle_message_status(db, update)
        return {"status": "ok"}
    except Exception as e:
        await db.rollback()
        logger.error(
            "SMS status webhook error (payload %s): %s",
            compute_payload_hash(body)[:12], str(e), exc_info=True,
        )
        return {"status": "error"}


@router.post("/twilio/sms")
async def twilio_inbound_sms_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Inbound SMS from a lead."""
    body, form_params = await _read_form(request)

    from_phone = form_params.get("From", "")
    text = form_params.get("Body", "")
    message_sid = form_params.get("MessageSid") or None
    if not from_phone or not text:
        raise HTTPException(status_code=400, detail="Missing From or Body")

    if message_sid and await is_duplicate_callback("twilio", message_sid, "inbound"):
        return _twiml("<Response/>")

    try:
        message = await handle_inbound_message(db, from_phone, text, provider_message_id=message_sid)
        if message is None:
            logger.info("Inbound SMS from %s matched no lead", mask_phone(from_phone))
    except Exception as e:
        await db.rollback()
        logger.error(
            "Inbound SMS webhook error (payload %s): %s",
            compute_payload_hash(body)[:12], str(e), exc_info=True,
        )
    # Empty TwiML: replies go out through the dispatcher, not the webhook response
    return _twiml("<Response/>")


@router.post("/twilio/voice/inbound")
async def twilio_inbound_voice_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Inbound call from a lead. Records the call and answers with a short greeting."""
    from twilio.twiml.voice_response import VoiceResponse

    body, form_params = await _read_form(request)

    from_phone = form_params.get("From", "")
    call_sid = form_params.get("CallSid", "")
    response = VoiceResponse()
    response.say(INBOUND_CALL_GREETING)

    if not from_phone or not call_sid:
        logger.warning("Inbound call webhook missing From or CallSid")
        return _twiml(str(response))

    if await is_duplicate_callback("twilio", call_sid, "inbound"):
        return _twiml(str(response))

    try:
        await handle_inbound_call(db, from_phone, call_sid)
    except Exception as e:
        await db.rollback()
        logger.error(
            "Inbound call webhook error (payload %s): %s",
            compute_payload_hash(body)[:12], str(e), exc_info=True,
        )
    return _twiml(str(response))
