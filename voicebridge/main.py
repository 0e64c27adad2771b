"""FastAPI application entry point for the realtime voice bridge."""

import asyncio
from contextlib import asynccontextmanager
from functools import partial

from fastapi import Depends, FastAPI, HTTPException, Request, Response, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from pydantic import BaseModel, Field
from twilio.base.exceptions import TwilioRestException

from voicebridge.persona.prompts import build_instructions, get_persona, resolve_voice
from voicebridge.realtime.events import build_webrtc_session
from voicebridge.realtime.peer import RealtimePeer
from voicebridge.realtime.webrtc import (
    WebRTCCallError,
    create_webrtc_call,
    start_observer,
    stop_observers,
)
from voicebridge.recording.recorder import RecordingError, recorder_manager
from voicebridge.recording.storage import (
    RecordingNotFoundError,
    delete_recording,
    list_recordings,
    recording_path,
)
from voicebridge.session.registry import session_registry
from voicebridge.telephony.media_stream import RealtimeRelay
from voicebridge.telephony.twilio_handler import (
    TERMINAL_CALL_STATUSES,
    build_media_stream_twiml,
    build_twilio_client,
    place_outbound_call,
    resolve_base_url,
    validate_twilio_request,
)
from voicebridge.utils.logging import get_logger, setup_logging

# Lazy import settings: a missing OPENAI_API_KEY fails here, at startup
_settings = None


def _get_settings():
    global _settings
    if _settings is None:
        from voicebridge.config import settings
        _settings = settings
    return _settings


logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler: apply settings to the shared registries."""
    settings = _get_settings()
    setup_logging(settings.log_level)

    session_registry.default_language = settings.default_language
    session_registry.default_persona = settings.default_persona
    recorder_manager.directory = settings.recordings_dir

    logger.info(
        "app_starting",
        model=settings.openai_realtime_model,
        voice=settings.openai_voice,
        recordings_dir=str(settings.recordings_dir),
    )

    yield

    await stop_observers()
    logger.info("app_shutdown_complete", active_calls=session_registry.active_count())


app = FastAPI(
    title="Realtime Voice Bridge",
    description="Bridges Twilio Media Streams to the OpenAI Realtime API with barge-in handling",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware for development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_twilio_client():
    settings = _get_settings()
    return build_twilio_client(settings.twilio_account_sid, settings.twilio_auth_token)


class CallRequest(BaseModel):
    phone_number: str = Field(..., min_length=1, description="E.164 number to dial")
    language: str | None = None
    persona_type: str | None = None
    enable_recording: bool = False


class CallResponse(BaseModel):
    success: bool = True
    call_sid: str
    status: str


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "voicebridge",
        "active_calls": session_registry.active_count(),
        "active_recordings": recorder_manager.active_count(),
    }


@app.post("/incoming-call")
async def incoming_call(request: Request):
    """Answer webhook for a Twilio call.

    Returns TwiML that connects the call to the Media Stream WebSocket.
    """
    settings = _get_settings()

    form = await request.form()
    body = dict(form)

    if settings.validate_twilio_signature and settings.twilio_auth_token:
        if not validate_twilio_request(request, body, settings.twilio_auth_token):
            logger.warning("incoming_call_invalid_signature")
            return Response(content="Forbidden", status_code=403)

    call_sid = str(body.get("CallSid", "unknown"))
    logger.info(
        "incoming_call",
        call_sid=call_sid,
        caller=body.get("From", ""),
        to=body.get("To", ""),
    )

    twiml = build_media_stream_twiml(
        base_url=resolve_base_url(request, settings.base_url),
        call_sid=call_sid,
    )
    return Response(content=twiml, media_type="application/xml")


@app.post("/calls", response_model=CallResponse)
async def create_call(
    payload: CallRequest,
    request: Request,
    twilio_client=Depends(get_twilio_client),
):
    """Place an outbound call and remember its language/persona/recording choice."""
    settings = _get_settings()
    if twilio_client is None or not settings.twilio_phone_number:
        raise HTTPException(status_code=503, detail="Twilio not configured")

    try:
        call_sid, status = await asyncio.to_thread(
            place_outbound_call,
            twilio_client,
            payload.phone_number,
            settings.twilio_phone_number,
            resolve_base_url(request, settings.base_url),
        )
    except TwilioRestException as e:
        logger.error("outbound_call_failed", to=payload.phone_number, error=str(e))
        raise HTTPException(status_code=502, detail=f"Twilio error: {e.msg}") from e

    session_registry.register_call(
        call_sid,
        language=payload.language,
        persona_type=payload.persona_type,
        recording_enabled=payload.enable_recording,
        phone_number=payload.phone_number,
    )
    return CallResponse(call_sid=call_sid, status=status)


@app.post("/call-status")
async def call_status(request: Request):
    """Twilio status callback; terminal statuses drop unused call metadata."""
    form = await request.form()
    call_sid = str(form.get("CallSid", ""))
    status = str(form.get("CallStatus", ""))
    logger.info(
        "call_status",
        call_sid=call_sid,
        status=status,
        duration=form.get("CallDuration"),
    )
    if status in TERMINAL_CALL_STATUSES and session_registry.get(call_sid) is None:
        session_registry.forget_call(call_sid)
    return Response(status_code=204)


@app.websocket("/media-stream")
async def media_stream(websocket: WebSocket):
    """WebSocket endpoint for Twilio Media Streams.

    Handles bidirectional audio streaming for a single phone call.
    """
    await websocket.accept()

    settings = _get_settings()
    logger.info("media_stream_accepted")

    relay = RealtimeRelay(
        websocket=websocket,
        peer_factory=partial(
            RealtimePeer.connect,
            api_key=settings.openai_api_key,
            model=settings.openai_realtime_model,
            url=settings.openai_realtime_url,
            temperature=settings.temperature,
            initial_response_delay_ms=settings.initial_response_delay_ms,
        ),
        voice=settings.openai_voice,
        model=settings.openai_realtime_model,
    )
    await relay.handle()


def _observer_factory(settings):
    return partial(
        RealtimePeer.attach,
        api_key=settings.openai_api_key,
        url=settings.openai_realtime_url,
        initial_response_delay_ms=settings.observer_response_delay_ms,
    )


@app.post("/rtc")
async def create_rtc_call(request: Request):
    """Create a browser call from an SDP offer.

    Language and persona come from the ``X-Language`` and ``X-Persona``
    headers. Returns the SDP answer and starts a sideband observer.
    """
    settings = _get_settings()
    offer_sdp = (await request.body()).decode("utf-8", errors="replace")
    if not offer_sdp.strip():
        raise HTTPException(status_code=400, detail="SDP offer required")

    language = request.headers.get("x-language") or settings.default_language
    persona_type = request.headers.get("x-persona") or settings.default_persona
    persona = get_persona(persona_type)
    logger.info(
        "rtc_call_requested",
        language=language,
        persona_type=persona_type,
        persona=persona.name,
    )

    session = build_webrtc_session(
        instructions=build_instructions(language, persona_type),
        voice=resolve_voice(persona_type, settings.openai_voice),
        model=settings.openai_realtime_model,
    )
    try:
        answer = await create_webrtc_call(
            offer_sdp, session, settings.openai_api_key, url=settings.openai_calls_url
        )
    except WebRTCCallError:
        return Response(content="Internal error", status_code=500)

    if answer.call_id:
        start_observer(answer.call_id, _observer_factory(settings), recorder_manager)
    return Response(content=answer.sdp, media_type=answer.content_type)


@app.post("/observer/{call_id}")
async def observe_call(call_id: str):
    """Attach a sideband observer to an existing realtime call."""
    start_observer(call_id, _observer_factory(_get_settings()), recorder_manager)
    return {"success": True, "message": f"Observer started for call {call_id}"}


@app.get("/recordings")
async def get_recordings(call_id: str | None = None):
    """List recordings, optionally for one call."""
    recordings = list_recordings(recorder_manager.directory, call_id=call_id)
    return {"recordings": [r.model_dump(mode="json") for r in recordings]}


@app.get("/recordings/{filename}")
async def download_recording(filename: str):
    try:
        path = recording_path(recorder_manager.directory, filename)
    except RecordingNotFoundError:
        raise HTTPException(status_code=404, detail="Recording not found")
    return FileResponse(path, media_type="audio/wav", filename=filename)


@app.delete("/recordings/{filename}")
async def remove_recording(filename: str):
    try:
        delete_recording(recorder_manager.directory, filename)
    except RecordingNotFoundError:
        raise HTTPException(status_code=404, detail="Recording not found")
    return {"success": True, "message": f"Recording {filename} deleted"}


@app.post("/recordings/{call_id}/start")
async def start_recording(call_id: str):
    recorder = recorder_manager.get_or_create(call_id)
    try:
        recorder.start()
    except RecordingError:
        raise HTTPException(status_code=400, detail="Recording already in progress")
    return {"success": True, "message": f"Recording started for call {call_id}"}


@app.post("/recordings/{call_id}/stop")
async def stop_recording(call_id: str):
    recorder = recorder_manager.get(call_id)
    if recorder is None:
        raise HTTPException(status_code=400, detail="No recording in progress")
    try:
        paths = await recorder.stop()
    except RecordingError:
        raise HTTPException(status_code=400, detail="No recording in progress")
    if session_registry.get(call_id) is None:
        recorder_manager.remove(call_id)
    return {
        "success": True,
        "message": f"Recording stopped for call {call_id}",
        "files": {k: v.name if v else None for k, v in paths.model_dump().items()},
    }


if __name__ == "__main__":
    import uvicorn

    settings = _get_settings()
    uvicorn.run(
        "voicebridge.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level=settings.log_level.lower(),
    )
