"""Twilio webhook helpers.

Builds TwiML that connects an answered call to the bidirectional Media
Stream WebSocket, validates Twilio request signatures, and places outbound
calls through the REST client.
"""

from fastapi import Request
from twilio.request_validator import RequestValidator
from twilio.rest import Client
from twilio.twiml.voice_response import Connect, VoiceResponse

from voicebridge.utils.logging import get_logger

logger = get_logger(__name__)

MEDIA_STREAM_PATH = "/media-stream"
ANSWER_PATH = "/incoming-call"
STATUS_PATH = "/call-status"
TERMINAL_CALL_STATUSES = frozenset({"completed", "failed", "busy", "no-answer", "canceled"})


def validate_twilio_request(
    request: Request,
    body: dict,
    auth_token: str,
) -> bool:
    """Validate incoming Twilio request signature.

    Args:
        request: FastAPI request object.
        body: Parsed form body as dict.
        auth_token: Twilio auth token for validation.

    Returns:
        True if the request is valid, False otherwise.
    """
    validator = RequestValidator(auth_token)
    signature = request.headers.get("X-Twilio-Signature", "")
    url = str(request.url)

    is_valid = validator.validate(url, body, signature)
    if not is_valid:
        logger.warning(
            "twilio_invalid_signature",
            url=url,
            signature=signature[:20] + "...",
        )
    return is_valid


def resolve_base_url(request: Request, base_url: str | None = None) -> str:
    """Public base URL for webhooks, honouring proxy forwarding headers."""
    if base_url:
        return base_url.rstrip("/")
    host = request.headers.get("x-forwarded-host") or request.headers.get("host") or request.url.netloc
    proto = request.headers.get("x-forwarded-proto") or request.url.scheme
    return f"{proto}://{host}"


def build_media_stream_twiml(base_url: str, call_sid: str) -> str:
    """Build TwiML response that connects to our WebSocket Media Stream.

    The call SID is passed as a custom stream parameter so the relay can look
    up the metadata registered when the call was placed.

    Args:
        base_url: Public URL of the application (e.g., ngrok URL).
        call_sid: Twilio Call SID.

    Returns:
        TwiML XML string.
    """
    response = VoiceResponse()

    # Convert http(s):// to ws(s)://
    ws_url = base_url.replace("https://", "wss://").replace("http://", "ws://")
    stream_url = f"{ws_url.rstrip('/')}{MEDIA_STREAM_PATH}"

    connect = Connect()
    stream = connect.stream(url=stream_url)
    stream.parameter(name="callSid", value=call_sid)

    response.append(connect)

    twiml = str(response)
    logger.info(
        "twilio_twiml_generated",
        call_sid=call_sid,
        stream_url=stream_url,
    )
    return twiml


def build_twilio_client(account_sid: str | None, auth_token: str | None) -> Client | None:
    """REST client, or None when credentials are not configured."""
    if not account_sid or not auth_token:
        return None
    return Client(account_sid, auth_token)


def place_outbound_call(
    client: Client,
    to_number: str,
    from_number: str,
    base_url: str,
) -> tuple[str, str]:
    """Dial ``to_number``; Twilio fetches TwiML from our answer webhook.

    Returns:
        (call_sid, status) of the created call.
    """
    call = client.calls.create(
        to=to_number,
        from_=from_number,
        url=f"{base_url}{ANSWER_PATH}",
        method="POST",
        status_callback=f"{base_url}{STATUS_PATH}",
        status_callback_event=["initiated", "ringing", "answered", "completed"],
    )
    logger.info("outbound_call_placed", call_sid=call.sid, to=to_number)
    return str(call.sid), str(call.status)
