"""
Communication gateway - the seam between the orchestrator and the telephony provider.

CommunicationGateway is the contract the dispatcher and call coordinator
depend on. TwilioGateway implements it with the Twilio REST SDK; the SDK is
synchronous, so every request runs in the thread pool.

Outcomes arrive asynchronously through the status webhooks (src/api/webhooks.py),
not from these calls.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

from src.config import get_settings
from src.schemas.communication import CallPlacement, MessageReceipt
from src.utils.phone import mask_phone, sanitize_error

logger = logging.getLogger(__name__)

# Twilio AnsweredBy values that mean nobody picked up
VOICEMAIL_ANSWERED_BY = frozenset({
    "machine_start",
    "machine_end_beep",
    "machine_end_silence",
    "machine_end_other",
    "fax",
})

TWILIO_CLIENT_TIMEOUT = 10


class GatewayError(Exception):
    """Provider rejected or failed a request."""

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.error_code = error_code


class CommunicationGateway(ABC):
    """Abstract provider interface for outbound calls and messages."""

    @abstractmethod
    async def place_call(
        self,
        to_number: str,
        call_type: str,
        attempt_number: int,
        script: Optional[str] = None,
    ) -> CallPlacement:
        """
        Start an outbound call. Returns once the provider accepted it;
        the outcome arrives via the voice status webhook.
        """
        ...

    @abstractmethod
    async def send_message(self, to_number: str, text: str) -> MessageReceipt:
        """Send one SMS. Delivery is reported later via the status webhook."""
        ...


def is_voicemail_answer(answered_by: Optional[str]) -> bool:
    """Map Twilio's answering machine detection result to a voicemail flag."""
    if not answered_by:
        return False
    return answered_by.strip().lower() in VOICEMAIL_ANSWERED_BY


def _get_twilio_client():
    """Get a Twilio REST client with configured timeout."""
    from twilio.rest import Client as TwilioClient
    from twilio.http.http_client import TwilioHttpClient
    settings = get_settings()
    http_client = TwilioHttpClient(timeout=TWILIO_CLIENT_TIMEOUT)
    return TwilioClient(
        settings.twilio_account_sid,
        settings.twilio_auth_token,
        http_client=http_client,
    )


async def _run_sync(func, *args, **kwargs):
    """Run a synchronous function in the thread pool to avoid blocking the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: func(*args, **kwargs))


def _gateway_error(e: Exception) -> GatewayError:
    """Normalize a Twilio SDK exception, keeping the provider error code."""
    from twilio.base.exceptions import TwilioRestException
    if isinstance(e, TwilioRestException):
        code = str(e.code) if e.code is not None else None
        return GatewayError(sanitize_error(e.msg or str(e)), error_code=code)
    return GatewayError(sanitize_error(str(e)))


class TwilioGateway(CommunicationGateway):
    """CommunicationGateway backed by Twilio Programmable Voice and Messaging."""

    def __init__(self, client=None):
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = _get_twilio_client()
        return self._client

    def _callback_url(self, path: str) -> str:
        return f"{get_settings().app_base_url.rstrip('/')}/api/v1/webhook/twilio/{path}"

    async def place_call(
        self,
        to_number: str,
        call_type: str,
        attempt_number: int,
        script: Optional[str] = None,
    ) -> CallPlacement:
        from twilio.twiml.voice_response import VoiceResponse

        settings = get_settings()
        response = VoiceResponse()
        response.say(script or "Hello, this is a quick follow-up call.")

        try:
            call = await _run_sync(
                self.client.calls.create,
                to=to_number,
                from_=settings.twilio_phone_number,
                twiml=str(response),
                machine_detection="Enable",
                status_callback=self._callback_url("voice/status"),
                status_callback_method="POST",
                status_callback_event=["initiated", "ringing", "answered", "completed"],
            )
        except Exception as e:
            error = _gateway_error(e)
            logger.warning(
                "Twilio call to %s failed (%s #%d): %s",
                mask_phone(to_number), call_type, attempt_number, str(error),
                extra={"provider": "twilio", "channel": "call", "error_code": error.error_code},
            )
            raise error from e

        logger.info(
            "Call placed to %s (%s #%d): %s",
            mask_phone(to_number), call_type, attempt_number, call.sid,
            extra={"provider": "twilio", "channel": "call"},
        )
        return CallPlacement(provider_call_id=call.sid, status=call.status or "queued")

    async def send_message(self, to_number: str, text: str) -> MessageReceipt:
        settings = get_settings()
        kwargs = {
            "to": to_number,
            "body": text,
            "status_callback": self._callback_url("sms/status"),
        }
        if settings.twilio_messaging_service_sid:
            kwargs["messaging_service_sid"] = settings.twilio_messaging_service_sid
        else:
            kwargs["from_"] = settings.twilio_phone_number

        try:
            message = await _run_sync(self.client.messages.create, **kwargs)
        except Exception as e:
            error = _gateway_error(e)
            logger.warning(
                "Twilio SMS to %s failed: %s", mask_phone(to_number), str(error),
                extra={"provider": "twilio", "channel": "message", "error_code": error.error_code},
            )
            raise error from e

        logger.info(
            "SMS sent to %s: %s", mask_phone(to_number), message.sid,
            extra={"provider": "twilio", "channel": "message"},
        )
        return MessageReceipt(provider_message_id=message.sid, status=message.status or "sent")


_gateway: Optional[CommunicationGateway] = None


def get_gateway() -> CommunicationGateway:
    """Process-wide gateway instance."""
    global _gateway
    if _gateway is None:
        _gateway = TwilioGateway()
    return _gateway
