"""
RAPPORT Session API
===================
Voice role-play assessments on FastAPI + Asyncio.

Features:
- Sessions seeded from a scenario catalog, transcripts saved atomically
- Character replies from the language model
- Background rubric analysis with idempotent persistence
- whisper.cpp transcription & Edge-TTS speech
- Token-protected staff dashboard endpoints
"""

import base64
import hmac
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

import uvicorn
from fastapi import Body, Depends, FastAPI, File, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse

from rapport_core import config
from rapport_core.analysis import AnalysisPipeline
from rapport_core.conversation import ConversationEngine
from rapport_core.db import Database
from rapport_core.errors import InvalidInput, RapportError, ServiceUnavailable, Unauthorized
from rapport_core.llm_gateway import AsyncLLMGateway
from rapport_core.scenarios import ScenarioCatalog
from rapport_core.speech import SpeechToText, TextToSpeech
from rapport_core.structs import ConversationRequest, CreateSessionRequest, SpeakRequest
from rapport_core.transcripts import TranscriptManager

# Logging
logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

ANALYSIS_DRAIN_SECONDS = 30


def create_app(
    database: Optional[Database] = None,
    catalog: Optional[ScenarioCatalog] = None,
    gateway: Optional[AsyncLLMGateway] = None,
    stt: Optional[SpeechToText] = None,
    tts: Optional[TextToSpeech] = None,
    admin_token: Optional[str] = None,
) -> FastAPI:
    """
    Build the application. Collaborators default to the environment
    configuration; tests pass their own.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = database or Database()
        await db.connect()

        llm = gateway or AsyncLLMGateway()
        manager = TranscriptManager(db, catalog or ScenarioCatalog())

        app.state.database = db
        app.state.manager = manager
        app.state.conversation = ConversationEngine(llm)
        app.state.pipeline = AnalysisPipeline(db, manager, llm)
        app.state.stt = stt or SpeechToText()
        app.state.tts = tts or TextToSpeech()
        app.state.admin_token = config.ADMIN_TOKEN if admin_token is None else admin_token
        logger.info("RAPPORT is accepting requests")

        yield

        # The server has stopped listening by now; finish background work, then close the pool
        await app.state.pipeline.drain(timeout=ANALYSIS_DRAIN_SECONDS)
        await db.dispose()

    app = FastAPI(title="RAPPORT Assessment Service", version="1.0.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in config.CORS_ORIGIN.split(",")],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)
    register_routes(app)
    return app


# ── ERROR HANDLING ──

def register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(RapportError)
    async def handle_rapport_error(request: Request, exc: RapportError):
        if exc.status_code >= 500:
            logger.error(f"{exc.status_code} {request.method} {request.url.path}: {exc.message}")
        return JSONResponse({"error": exc.message}, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        logger.warning(f"400 {request.method} {request.url.path}: {exc.errors()}")
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{field}: {first.get('msg', 'invalid')}" if field else "Bad request. Please check your input."
        return JSONResponse({"error": message}, status_code=400)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.error(f"Unexpected error: {exc} - Path: {request.url.path}, Method: {request.method}", exc_info=exc)
        return JSONResponse({"error": "Internal server error"}, status_code=500)


# ── DEPENDENCIES ──

def get_manager(request: Request) -> TranscriptManager:
    return request.app.state.manager


def get_pipeline(request: Request) -> AnalysisPipeline:
    return request.app.state.pipeline


def require_admin(request: Request) -> None:
    """Shared bearer token. Without a configured token the staff views are switched off."""
    expected = request.app.state.admin_token
    if not expected:
        raise ServiceUnavailable("Admin access not configured")
    header = request.headers.get("authorization", "")
    provided = header[len("Bearer "):] if header.startswith("Bearer ") else ""
    if not hmac.compare_digest(provided.encode(), expected.encode()):
        raise Unauthorized("Unauthorized")


# ── ENDPOINTS ──

def register_routes(app: FastAPI) -> None:

    @app.get("/", response_class=HTMLResponse)
    async def serve_ui():
        ui_path = config.PUBLIC_DIR / "index.html"
        if ui_path.exists():
            return HTMLResponse(content=ui_path.read_text(encoding="utf-8"))
        return HTMLResponse("<h1>RAPPORT is Active. UI file not found.</h1>")

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    @app.get("/api/stt-status")
    async def stt_status(request: Request):
        """Client checks this to decide between whisper and in-browser recognition."""
        return {
            "whisperAvailable": request.app.state.stt.available,
            "fallback": "browser-speech-recognition",
        }

    @app.get("/api/scenarios")
    async def list_scenarios(manager: TranscriptManager = Depends(get_manager)):
        scenarios = await manager.catalog.list_all()
        return [s.model_dump(by_alias=True) for s in scenarios]

    @app.post("/api/sessions")
    async def create_session(body: CreateSessionRequest, manager: TranscriptManager = Depends(get_manager)):
        session_id, scenario, transcript = await manager.create_session(body.scenario_id)
        return {
            "sessionId": session_id,
            "scenario": scenario.model_dump(by_alias=True),
            "transcript": [m.model_dump() for m in transcript],
        }

    @app.get("/api/sessions/{session_id}")
    async def get_session(session_id: str, manager: TranscriptManager = Depends(get_manager)):
        detail = await manager.get_session(session_id)
        return {
            "transcript": [m.model_dump() for m in detail.transcript],
            "analysis": detail.analysis,
            "created_at": detail.created_at.isoformat(),
        }

    @app.put("/api/sessions/{session_id}/transcript")
    async def replace_transcript(
        session_id: str,
        body: Dict[str, Any] = Body(...),
        manager: TranscriptManager = Depends(get_manager),
    ):
        await manager.replace_transcript(session_id, body.get("transcript"))
        return {"success": True}

    @app.post("/api/conversation")
    async def conversation_turn(body: ConversationRequest, request: Request):
        reply = await request.app.state.conversation.next_turn(body.scenario, body.transcript, body.message)
        return {"response": reply, "role": config.CHARACTER_ROLE}

    @app.post("/api/sessions/{session_id}/analyze", status_code=202)
    async def analyze_session(session_id: str, pipeline: AnalysisPipeline = Depends(get_pipeline)):
        # Respond immediately so the participant isn't kept waiting
        await pipeline.request_analysis(session_id)
        return {"status": "analyzing"}

    @app.get("/api/admin/sessions", dependencies=[Depends(require_admin)])
    async def admin_list_sessions(manager: TranscriptManager = Depends(get_manager)):
        return [
            {"id": s.id, "created_at": s.created_at.isoformat(), "summary": s.summary}
            for s in await manager.list_sessions()
        ]

    @app.get("/api/admin/sessions/{session_id}", dependencies=[Depends(require_admin)])
    async def admin_get_session(session_id: str, manager: TranscriptManager = Depends(get_manager)):
        detail = await manager.get_session(session_id)
        return {
            "id": detail.id,
            "scenarioId": detail.scenario_id,
            "created_at": detail.created_at.isoformat(),
            "transcript": [m.model_dump() for m in detail.transcript],
            "analysis": detail.analysis,
            "analysis_updated_at": detail.analysis_updated_at.isoformat() if detail.analysis_updated_at else None,
        }

    @app.post("/api/transcribe")
    async def transcribe(request: Request, audio: Optional[UploadFile] = File(None)):
        if audio is None:
            raise InvalidInput("No audio file provided")
        content_type = audio.content_type or "application/octet-stream"
        if not (content_type.startswith("audio/") or content_type == "application/octet-stream"):
            raise InvalidInput("Only audio files are allowed")

        data = await audio.read(config.MAX_UPLOAD_BYTES + 1)
        if len(data) > config.MAX_UPLOAD_BYTES:
            raise InvalidInput("Audio file too large")

        suffix = Path(audio.filename or "").suffix
        if not suffix[1:].isalnum():
            suffix = ".webm"
        text = await request.app.state.stt.transcribe(data, suffix=suffix)
        return {"text": text}

    @app.post("/api/tts")
    async def speak(body: SpeakRequest, request: Request):
        tts: TextToSpeech = request.app.state.tts
        audio = await tts.synthesize(body.text)
        return {"audio": base64.b64encode(audio).decode("ascii"), "format": tts.media_type}


app = create_app()

if __name__ == "__main__":
    uvicorn.run("rapport_server:app", host=config.HOST, port=config.PORT)
