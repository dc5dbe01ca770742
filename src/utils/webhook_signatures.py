"""
Webhook signature validation - verify incoming Twilio callbacks are authentic.
Twilio signs form posts with HMAC-SHA1 via the X-Twilio-Signature header.
"""
import hashlib
import logging

logger = logging.getLogger(__name__)


def validate_twilio_signature(
    auth_token: str,
    signature: str,
    url: str,
    params: dict,
) -> bool:
    """
    Validate Twilio webhook signature using their RequestValidator.
    Returns True if valid, False if invalid or on error.
    """
    if not signature:
        logger.warning("Missing X-Twilio-Signature header")
        return False

    try:
        from twilio.request_validator import RequestValidator
        validator = RequestValidator(auth_token)
        return validator.validate(url, params, signature)
    except Exception as e:
        logger.error("Twilio signature validation error: %s", str(e))
        return False


def compute_payload_hash(body: bytes) -> str:
    """Compute SHA-256 hash of raw payload for audit logging."""
    return hashlib.sha256(body).hexdigest()


def get_webhook_url(request) -> str:
    """
    Reconstruct the public URL Twilio signed.
    Behind a reverse proxy request.url is the internal URL, so the scheme and
    host are taken from X-Forwarded-* headers when present.
    """
    proto = request.headers.get("x-forwarded-proto")
    host = request.headers.get("x-forwarded-host") or request.headers.get("host")
    url = str(request.url)
    if proto and host:
        path = request.url.path
        query = request.url.query
        url = f"{proto}://{host}{path}"
        if query:
            url = f"{url}?{query}"
    return url
