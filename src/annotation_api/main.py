from __future__ import annotations

import json
import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse, StreamingResponse
from pydantic import ValidationError as PydanticValidationError
from starlette.datastructures import UploadFile as StarletteUploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from .annotation_manager import AnnotationFilter, AnnotationManager, AnnotationPatch
from .configuration import cors_origins, get_settings, settings_summary
from .database import AnnotationDatabase
from .dependencies import (
    get_annotation_manager,
    get_broadcaster,
    get_current_user,
    get_identity_service,
    require_capability,
)
from .errors import APIError, NotFound, PipelineError, UnsupportedType, ValidationError
from .events import ProgressBroadcaster, format_sse
from .generator import OllamaClient
from .identity import IdentityService, UserDatabase, UserRecord
from .middleware import RequestLoggingMiddleware
from .models import (
    AnnotationPage,
    AnnotationStatus,
    AnnotationUpdateRequest,
    APIResponse,
    Capability,
    LoginRequest,
    Pagination,
    RegisterRequest,
)
from .publisher import build_publisher
from .tokens import TokenService
from .utils import document_type_for, image_content_type_for

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100
KEEPALIVE_SECONDS = 15.0

IMAGE_TYPES_MESSAGE = "Only image files are supported (jpg, png, gif, webp)"

settings = get_settings()
logging.basicConfig(
    level=str(settings.logging.level).upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger.debug(f"Runtime settings: {settings_summary(settings)}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    generator = app.state.annotation_manager.generator
    if isinstance(generator, OllamaClient):
        generator.close()


app = FastAPI(title="Auto Annotation API", version="1.0.0", lifespan=lifespan)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(settings),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

db_path = Path(settings.database.path)
broadcaster = ProgressBroadcaster()
token_service = TokenService(
    secret=settings.auth.jwt_secret,
    ttl_hours=settings.auth.token_ttl_hours,
    issuer=settings.auth.jwt_issuer,
    algorithm=settings.auth.jwt_algorithm,
)
identity_service = IdentityService(
    UserDatabase(db_path),
    token_service,
    iterations=settings.auth.password_iterations,
    content_emails=settings.auth.content_emails,
)
annotation_manager = AnnotationManager(
    database=AnnotationDatabase(db_path),
    generator=OllamaClient(
        base_url=settings.ollama.base_url,
        model=settings.ollama.model,
        timeout=float(settings.ollama.timeout_seconds),
    ),
    publisher=build_publisher(settings),
    broadcaster=broadcaster,
    cleanup_on_delete=settings.storage.cleanup_on_delete,
)

app.state.settings = settings
app.state.broadcaster = broadcaster
app.state.token_service = token_service
app.state.identity_service = identity_service
app.state.annotation_manager = annotation_manager

manage_annotations = require_capability(Capability.MANAGE_ANNOTATIONS)
view_annotations = require_capability(Capability.VIEW_ANNOTATIONS)


def envelope(
    message: str,
    data: Any = None,
    *,
    success: bool = True,
    error: Optional[str] = None,
    status_code: int = 200,
) -> JSONResponse:
    body = APIResponse(success=success, message=message, data=jsonable_encoder(data), error=error)
    content = body.model_dump()
    for key in ("data", "error"):
        if content[key] is None:
            del content[key]
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    record = exc.annotation
    return envelope(
        "Failed to create annotation",
        record.to_response(),
        success=False,
        error=record.error_message or exc.message,
        status_code=exc.status_code,
    )


@app.exception_handler(APIError)
async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return envelope(exc.message, success=False, error=type(exc).__name__, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = "; ".join(
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}" for error in exc.errors()
    )
    return envelope("Invalid request payload", success=False, error=details, status_code=400)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return envelope(str(exc.detail), success=False, error=str(exc.detail), status_code=exc.status_code)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return envelope("Internal server error", success=False, error=str(exc), status_code=500)


@app.get("/")
def root() -> JSONResponse:
    return envelope(
        "Auto Annotation API",
        {"version": app.version, "docs": "/docs", "status": "/system/services/status"},
    )


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


# Auth

@app.post("/auth/register", status_code=201)
def register(payload: RegisterRequest, identity: IdentityService = Depends(get_identity_service)) -> JSONResponse:
    auth = identity.register(payload)
    return envelope("User registered successfully", auth, status_code=201)


@app.post("/auth/login")
def login(payload: LoginRequest, identity: IdentityService = Depends(get_identity_service)) -> JSONResponse:
    auth = identity.login(payload)
    return envelope("Login successful", auth)


@app.get("/auth/profile")
def profile(user: UserRecord = Depends(get_current_user)) -> JSONResponse:
    return envelope("Profile retrieved successfully", user.to_response())


# Annotations

async def _read_image(image: UploadFile) -> Tuple[bytes, str]:
    content_type = image_content_type_for(image.filename or "")
    if content_type is None:
        raise UnsupportedType(IMAGE_TYPES_MESSAGE)
    data = await image.read()
    await image.close()
    return data, content_type


def _has_file(upload: Any) -> bool:
    return isinstance(upload, StarletteUploadFile) and bool(upload.filename)


@app.post("/annotations/upload", status_code=201)
async def upload_annotation(
    title: str = Form(""),
    file: Optional[UploadFile] = File(None),
    image: Optional[UploadFile] = File(None),
    image_url: str = Form(""),
    user: UserRecord = Depends(manage_annotations),
    manager: AnnotationManager = Depends(get_annotation_manager),
) -> JSONResponse:
    title = title.strip()
    if not title:
        raise ValidationError("Title is required")

    image_location: Optional[str] = image_url.strip() or None
    if _has_file(image):
        image_data, content_type = await _read_image(image)
        image_location = await run_in_threadpool(
            manager.upload_image, f"temp_{time.time_ns()}", image_data, content_type
        )

    if not _has_file(file):
        raise ValidationError("File is required")
    file_type = document_type_for(file.filename)
    if file_type is None:
        raise UnsupportedType("Only PDF files are supported")

    data = await file.read()
    await file.close()

    record = await run_in_threadpool(
        manager.create_annotation, user.id, title, image_location, data, file_type
    )
    return envelope("Annotation created successfully", record.to_response(), status_code=201)


def _page_limit(limit: int) -> int:
    if limit <= 0:
        return DEFAULT_PAGE_SIZE
    return min(limit, MAX_PAGE_SIZE)


@app.get("/annotations")
def list_annotations(
    limit: int = DEFAULT_PAGE_SIZE,
    offset: int = 0,
    status: Optional[AnnotationStatus] = None,
    genre: Optional[str] = None,
    user_id: Optional[str] = None,
    user: UserRecord = Depends(view_annotations),
    manager: AnnotationManager = Depends(get_annotation_manager),
) -> JSONResponse:
    limit = _page_limit(limit)
    offset = max(offset, 0)
    annotation_filter = AnnotationFilter(user_id=user_id or None, status=status, genre=genre or None)
    records = manager.list_annotations(annotation_filter, limit=limit, offset=offset)
    page = AnnotationPage(
        annotations=[record.to_response() for record in records],
        pagination=Pagination(limit=limit, offset=offset, count=len(records)),
    )
    return envelope("Annotations retrieved successfully", page)


@app.get("/annotations/stats")
def annotation_stats(
    user: UserRecord = Depends(manage_annotations),
    manager: AnnotationManager = Depends(get_annotation_manager),
) -> JSONResponse:
    return envelope("Statistics retrieved successfully", manager.stats(user.id))


@app.get("/annotations/{annotation_id}")
def get_annotation(
    annotation_id: str,
    user: UserRecord = Depends(view_annotations),
    manager: AnnotationManager = Depends(get_annotation_manager),
) -> JSONResponse:
    record = manager.get_annotation(annotation_id)
    return envelope("Annotation retrieved successfully", record.to_response())


async def _patch_from_request(request: Request, annotation_id: str, manager: AnnotationManager) -> AnnotationPatch:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(("multipart/form-data", "application/x-www-form-urlencoded")):
        form = await request.form()
        patch = AnnotationPatch.from_form(form)
        image = form.get("image")
        if _has_file(image):
            await run_in_threadpool(manager.get_annotation, annotation_id)
            image_data, image_type = await _read_image(image)
            url = await run_in_threadpool(manager.upload_image, annotation_id, image_data, image_type)
            patch = patch.with_image(url)
        return patch

    raw = await request.body()
    try:
        payload = json.loads(raw) if raw.strip() else {}
    except ValueError as exc:
        raise ValidationError("Invalid request body") from exc
    try:
        body = AnnotationUpdateRequest.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid request body: {exc.error_count()} validation error(s)") from exc
    return AnnotationPatch.from_request(body)


@app.patch("/annotations/{annotation_id}")
async def update_annotation(
    annotation_id: str,
    request: Request,
    user: UserRecord = Depends(manage_annotations),
    manager: AnnotationManager = Depends(get_annotation_manager),
) -> JSONResponse:
    patch = await _patch_from_request(request, annotation_id, manager)
    record = await run_in_threadpool(manager.update_annotation, annotation_id, patch)
    return envelope("Annotation updated successfully", record.to_response())


@app.delete("/annotations/{annotation_id}")
def delete_annotation(
    annotation_id: str,
    background_tasks: BackgroundTasks,
    user: UserRecord = Depends(manage_annotations),
    manager: AnnotationManager = Depends(get_annotation_manager),
) -> JSONResponse:
    record = manager.delete_annotation(annotation_id)
    if manager.cleanup_on_delete:
        background_tasks.add_task(manager.cleanup_assets, record)
    return envelope("Annotation deleted successfully", record.to_response())


@app.post("/annotations/{annotation_id}/tts")
def generate_tts(
    annotation_id: str,
    user: UserRecord = Depends(manage_annotations),
    manager: AnnotationManager = Depends(get_annotation_manager),
) -> JSONResponse:
    record = manager.generate_speech(annotation_id)
    return envelope("TTS generated successfully", record.to_response())


@app.get("/annotations/{annotation_id}/audio")
def get_audio(
    annotation_id: str,
    user: UserRecord = Depends(view_annotations),
    manager: AnnotationManager = Depends(get_annotation_manager),
):
    record = manager.get_annotation(annotation_id)
    if not record.tts_url:
        raise NotFound(f"TTS audio not available. Use POST /annotations/{annotation_id}/tts to generate it.")
    return RedirectResponse(record.tts_url, status_code=302)


@app.get("/annotations/{annotation_id}/events")
async def annotation_events(
    annotation_id: str,
    request: Request,
    snapshot: bool = True,
    user: UserRecord = Depends(view_annotations),
    manager: AnnotationManager = Depends(get_annotation_manager),
    events: ProgressBroadcaster = Depends(get_broadcaster),
) -> StreamingResponse:
    """
    Stream progress events for an annotation as Server-Sent Events.

    Unless snapshot=false, the stream opens with the record's current status
    and closes right away if that status is already final. Otherwise it ends
    after the next terminal event or when the client goes away.
    """
    # Subscribe before reading the snapshot so no event falls between the two.
    subscription = events.subscribe(annotation_id)
    try:
        record = await run_in_threadpool(manager.get_annotation, annotation_id)
    except Exception:
        events.unsubscribe(subscription)
        raise

    async def stream():
        try:
            if snapshot:
                current = record.snapshot_event()
                yield format_sse(current)
                if current.is_terminal:
                    return
            while True:
                if await request.is_disconnected():
                    return
                event = await subscription.next_event(KEEPALIVE_SECONDS)
                if event is None:
                    yield ": keep-alive\n\n"
                    continue
                yield format_sse(event)
                if event.is_terminal:
                    return
        finally:
            events.unsubscribe(subscription)

    return StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# System

@app.get("/system/services/status")
def services_status(manager: AnnotationManager = Depends(get_annotation_manager)) -> JSONResponse:
    services = manager.check_services()
    healthy = all(service.get("status") == "OK" for service in services.values())
    return envelope(
        "Service status check completed" if healthy else "One or more services are unavailable",
        services,
        success=healthy,
        status_code=200 if healthy else 503,
    )
