"""
Worker HTTP surface: chat (streaming and single-shot), uploads, file and
session management, TTS relay, health and the model catalog.
"""

from __future__ import annotations

import asyncio
import datetime
import os
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

import anyio
import httpx
from fastapi import APIRouter, Depends, FastAPI, File, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field
from starlette.background import BackgroundTask

from chatcluster.errors import (
    ErrorResponse,
    InfrastructureError,
    UpstreamError,
    bad_gateway,
    bad_request,
    not_found,
    payload_too_large,
)
from chatcluster.lock_manager import LockManager, ensure_upload_dirs
from chatcluster.logging_config import logger
from chatcluster.models import (
    MODEL_CATALOG,
    TTS_VOICES,
    FileDescriptor,
    UserSession,
    WorkerReadyMessage,
    clamp_max_tokens,
    describe_model,
)
from chatcluster.redis_client import close_redis_clients
from chatcluster.session import SessionManager, build_session_store, idle_sweep_loop
from chatcluster.settings import Settings, build_upstream_headers
from chatcluster.settings import settings as default_settings
from chatcluster.upstream import stream_upstream

from .chat import ChatExchange, ChatRequest, build_chat_payload, build_upstream_messages
from .deps import WorkerContext, get_http_client, get_session, get_worker_context
from .file_content import build_user_content, history_text
from .middleware import UserSessionMiddleware
from .stats import StatsSink, WorkerStats, stats_reporter_loop
from .uploads import (
    UnsupportedFileType,
    UploadTarget,
    UploadTooLarge,
    discard_stored,
    store_upload,
)

router = APIRouter(prefix="/api")


class TTSRequest(BaseModel):
    text: str = ""
    voice: Optional[str] = None
    speed: float = Field(1.0, ge=0.25, le=4.0)
    gain: float = Field(0.0, ge=-10.0, le=10.0)
    model: Optional[str] = None
    response_format: str = "mp3"


def _new_request_id() -> str:
    return uuid.uuid4().hex[:12]


async def _prepare_exchange(
    ctx: WorkerContext,
    session: UserSession,
    body: ChatRequest,
    *,
    stream: bool,
) -> tuple[ChatExchange, Dict[str, Any]]:
    cfg = ctx.settings
    request_id = _new_request_id()
    deadline = asyncio.get_running_loop().time() + cfg.chat_timeout_seconds
    model = describe_model(body.model or cfg.default_model)
    max_tokens = clamp_max_tokens(model.id, body.max_tokens or cfg.default_max_tokens)

    user_content = await build_user_content(
        message=body.message,
        files=body.files,
        session=session,
        upload_root=cfg.upload_root,
        model=model,
        max_document_chars=cfg.max_document_chars,
        trace_id=request_id,
    )
    messages = build_upstream_messages(session, user_content, cfg.max_history_turns)
    payload = build_chat_payload(
        model=model,
        messages=messages,
        max_tokens=max_tokens,
        temperature=cfg.chat_temperature,
        stream=stream,
    )
    logger.info(
        "[req=%s] worker=%s user=%s chat model=%s files=%d history=%d stream=%s",
        request_id,
        ctx.worker_id,
        session.id,
        model.id,
        len(body.files),
        len(session.history.turns),
        stream,
    )
    exchange = ChatExchange(
        request_id=request_id,
        worker_id=ctx.worker_id,
        session=session,
        sessions=ctx.sessions,
        stats=ctx.stats,
        model=model,
        max_tokens=max_tokens,
        history_content=history_text(body.message, body.files),
        max_turns=cfg.max_history_turns,
        deadline=deadline,
    )
    return exchange, payload


@router.get("/health")
async def health(ctx: WorkerContext = Depends(get_worker_context)) -> Dict[str, Any]:
    cfg = ctx.settings
    return {
        "status": "ok",
        "workerId": ctx.worker_id,
        "port": ctx.port,
        "pid": os.getpid(),
        "timestamp": datetime.datetime.now(datetime.UTC).isoformat(),
        "uploadsEnabled": cfg.upload_root.is_dir(),
        "apiKeyConfigured": bool(cfg.upstream_api_key),
        "activeConnections": ctx.stats.active_connections,
    }


@router.get("/models")
async def list_models(ctx: WorkerContext = Depends(get_worker_context)) -> Dict[str, Any]:
    return {
        "success": True,
        "default": ctx.settings.default_model,
        "models": [m.model_dump(exclude={"strength"}) for m in MODEL_CATALOG],
    }


@router.post("/chat/stream")
async def chat_stream(
    body: ChatRequest,
    ctx: WorkerContext = Depends(get_worker_context),
    client: httpx.AsyncClient = Depends(get_http_client),
    session: UserSession = Depends(get_session),
) -> StreamingResponse:
    if body.is_empty():
        raise bad_request("Message content must not be empty")

    exchange, payload = await _prepare_exchange(ctx, session, body, stream=True)
    cfg = ctx.settings
    upstream = stream_upstream(
        client=client,
        url=cfg.upstream_url(cfg.upstream_chat_path),
        headers=build_upstream_headers(accept="text/event-stream", cfg=cfg),
        json_body=payload,
        trace_id=exchange.request_id,
    )
    return StreamingResponse(
        exchange.stream_events(upstream),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            "X-Request-ID": exchange.request_id,
        },
    )


@router.post("/chat")
async def chat_once(
    body: ChatRequest,
    ctx: WorkerContext = Depends(get_worker_context),
    client: httpx.AsyncClient = Depends(get_http_client),
    session: UserSession = Depends(get_session),
) -> Dict[str, Any]:
    if body.is_empty():
        raise bad_request("Message content must not be empty")

    exchange, payload = await _prepare_exchange(ctx, session, body, stream=False)
    cfg = ctx.settings
    try:
        return await exchange.complete(
            client=client,
            url=cfg.upstream_url(cfg.upstream_chat_path),
            headers=build_upstream_headers(cfg=cfg),
            payload=payload,
        )
    except UpstreamError as exc:
        ctx.stats.record_error()
        logger.warning("[req=%s] chat completion failed: %s", exchange.request_id, exc)
        raise bad_gateway(
            str(exc),
            details={"status": exc.status_code, "body": exc.text[:500], "requestId": exchange.request_id},
        )


async def _store_all(
    ctx: WorkerContext, session: UserSession, uploads: List[UploadFile]
) -> List[FileDescriptor]:
    cfg = ctx.settings
    target = UploadTarget(
        upload_root=cfg.upload_root,
        user_id=session.id,
        public_base_url=cfg.public_url(),
        max_size=cfg.max_upload_size,
    )
    stored: List[FileDescriptor] = []
    completed = False
    try:
        for upload in uploads:
            stored.append(await store_upload(upload, target))
        completed = True
    except UploadTooLarge as exc:
        logger.info("Rejected upload for user %s: %s", session.id, exc)
        raise payload_too_large(str(exc), details={"limit": exc.limit})
    except UnsupportedFileType as exc:
        logger.info("Rejected upload for user %s: %s", session.id, exc)
        raise bad_request(str(exc), details={"type": exc.mime_type})
    finally:
        if not completed:
            # All-or-nothing: drop files already written for this request.
            for descriptor in stored:
                await anyio.to_thread.run_sync(discard_stored, cfg.upload_root / descriptor.path)
        for upload in uploads:
            await upload.close()
    await ctx.sessions.add_files(session, stored)
    return stored


@router.post("/upload")
async def upload_file(
    file: UploadFile = File(...),
    ctx: WorkerContext = Depends(get_worker_context),
    session: UserSession = Depends(get_session),
) -> Dict[str, Any]:
    stored = await _store_all(ctx, session, [file])
    return {"success": True, "file": stored[0].model_dump(by_alias=True)}


@router.post("/upload/multiple")
async def upload_files(
    files: List[UploadFile] = File(...),
    ctx: WorkerContext = Depends(get_worker_context),
    session: UserSession = Depends(get_session),
) -> Dict[str, Any]:
    limit = ctx.settings.max_upload_files
    if len(files) > limit:
        raise bad_request(
            f"At most {limit} files can be uploaded at once",
            details={"limit": limit, "received": len(files)},
        )
    stored = await _store_all(ctx, session, files)
    return {
        "success": True,
        "count": len(stored),
        "files": [d.model_dump(by_alias=True) for d in stored],
    }


@router.get("/files")
async def list_files(session: UserSession = Depends(get_session)) -> Dict[str, Any]:
    return {
        "success": True,
        "count": len(session.files),
        "files": [d.model_dump(by_alias=True) for d in session.files],
    }


@router.delete("/files/{file_id}")
async def delete_file(
    file_id: str,
    ctx: WorkerContext = Depends(get_worker_context),
    session: UserSession = Depends(get_session),
) -> Dict[str, Any]:
    removed = await ctx.sessions.remove_file(session, file_id)
    if removed is None:
        raise not_found(f"File {file_id} not found", details={"fileId": file_id})
    return {"success": True, "file": removed.model_dump(by_alias=True)}


@router.get("/session")
async def session_summary(
    ctx: WorkerContext = Depends(get_worker_context),
    session: UserSession = Depends(get_session),
) -> Dict[str, Any]:
    turns = session.history.turns
    return {
        "success": True,
        "userId": session.id,
        "workerId": ctx.worker_id,
        "createdAt": session.created_at,
        "lastActivity": session.last_activity,
        "fileCount": len(session.files),
        "turns": len(turns),
        "history": [m.model_dump() for m in turns],
        "preferences": session.preferences,
    }


@router.post("/session/reset")
async def reset_session(
    ctx: WorkerContext = Depends(get_worker_context),
    session: UserSession = Depends(get_session),
) -> Dict[str, Any]:
    await ctx.sessions.reset_history(session)
    logger.info("Reset history for user %s on worker %s", session.id, ctx.worker_id)
    return {"success": True, "turns": len(session.history.turns)}


@router.post("/tts/generate")
async def tts_generate(
    body: TTSRequest,
    ctx: WorkerContext = Depends(get_worker_context),
    client: httpx.AsyncClient = Depends(get_http_client),
) -> StreamingResponse:
    text = body.text.strip()
    if not text:
        raise bad_request("Text must not be empty")

    cfg = ctx.settings
    url = cfg.upstream_url(cfg.upstream_tts_path)
    payload = {
        "model": body.model or cfg.tts_default_model,
        "input": text,
        "voice": body.voice or cfg.tts_default_voice,
        "response_format": body.response_format,
        "speed": body.speed,
        "gain": body.gain,
        "stream": True,
    }
    upstream_request = client.build_request(
        "POST",
        url,
        headers=build_upstream_headers(accept="*/*", cfg=cfg),
        json=payload,
    )
    try:
        resp = await client.send(upstream_request, stream=True)
    except httpx.HTTPError as exc:
        ctx.stats.record_error()
        logger.warning("TTS upstream transport error for %s: %s", url, exc)
        raise bad_gateway(f"TTS upstream unavailable: {exc}")

    if resp.status_code >= 400:
        detail = (await resp.aread()).decode("utf-8", errors="ignore")
        await resp.aclose()
        ctx.stats.record_error()
        logger.warning("TTS upstream HTTP %s: %s", resp.status_code, detail[:500])
        raise bad_gateway(
            f"TTS upstream error {resp.status_code}",
            details={"status": resp.status_code, "body": detail[:500]},
        )

    logger.info(
        "TTS stream started on worker %s (%d chars, voice=%s)",
        ctx.worker_id,
        len(text),
        payload["voice"],
    )
    return StreamingResponse(
        resp.aiter_bytes(),
        media_type=resp.headers.get("content-type", "audio/mpeg"),
        background=BackgroundTask(resp.aclose),
    )


@router.get("/tts/models")
async def tts_models(ctx: WorkerContext = Depends(get_worker_context)) -> Dict[str, Any]:
    return {
        "success": True,
        "models": [ctx.settings.tts_default_model],
        "voices": TTS_VOICES,
        "defaultVoice": ctx.settings.tts_default_voice,
    }


async def handle_infrastructure_error(request: Request, exc: InfrastructureError):
    """
    Local disk/lock failures: counted as worker errors and reported with the
    standard error payload.
    """
    ctx: Optional[WorkerContext] = getattr(request.app.state, "worker", None)
    if ctx is not None:
        ctx.stats.record_error()
    logger.error(
        "Infrastructure failure on %s %s: %s",
        request.method,
        request.url.path,
        exc,
        exc_info=exc,
    )
    payload = ErrorResponse(
        error="infrastructure_error",
        message=str(exc),
        code=status.HTTP_503_SERVICE_UNAVAILABLE,
    )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": payload.model_dump()},
    )


async def handle_unexpected_error(request: Request, exc: Exception):
    """
    Catch-all handler: log with an error id, count it, return a generic 500.
    """
    error_id = uuid.uuid4().hex
    ctx: Optional[WorkerContext] = getattr(request.app.state, "worker", None)
    if ctx is not None:
        ctx.stats.record_error()
    logger.exception(
        "Unhandled error %s %s (error_id=%s)",
        request.method,
        request.url.path,
        error_id,
    )
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "internal_error",
            "message": "Internal server error, please try again later",
            "error_id": error_id,
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    startup: create the shared upload tree, open the upstream client, start
    the idle sweep and stats reporter, announce readiness.
    shutdown: stop background tasks and close clients.
    """
    ctx: WorkerContext = app.state.worker
    cfg = ctx.settings
    await ensure_upload_dirs(ctx.locks, cfg.upload_root)

    ctx.http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(cfg.chat_timeout_seconds, connect=cfg.upstream_connect_timeout)
    )
    tasks = [
        asyncio.create_task(
            idle_sweep_loop(ctx.sessions, cfg.session_sweep_interval_seconds),
            name=f"idle-sweep-{ctx.worker_id}",
        )
    ]
    if ctx.stats_sink is not None:
        tasks.append(
            asyncio.create_task(
                stats_reporter_loop(
                    ctx.stats,
                    ctx.stats_sink,
                    interval=cfg.stats_interval_seconds,
                    session_count=ctx.sessions.store.count,
                ),
                name=f"stats-{ctx.worker_id}",
            )
        )
        ready = WorkerReadyMessage(worker_id=ctx.worker_id, pid=os.getpid(), port=ctx.port)
        ctx.stats_sink(ready.model_dump(by_alias=True))

    logger.info(
        "Worker %s ready on port %s (pid=%s, sessions=%s)",
        ctx.worker_id,
        ctx.port,
        os.getpid(),
        cfg.session_backend,
    )
    try:
        yield
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await ctx.http_client.aclose()
        if cfg.session_backend == "redis":
            await close_redis_clients()
        logger.info("Worker %s stopped", ctx.worker_id)


def create_worker_app(
    worker_id: str | int,
    port: int,
    *,
    cfg: Optional[Settings] = None,
    stats_sink: Optional[StatsSink] = None,
) -> FastAPI:
    cfg = cfg or default_settings
    worker_id = str(worker_id)
    upload_root: Path = cfg.upload_root

    sessions = SessionManager(
        build_session_store(cfg),
        worker_id=worker_id,
        system_prompt=cfg.system_prompt,
        upload_root=upload_root,
        idle_timeout_seconds=cfg.session_idle_timeout_seconds,
    )
    ctx = WorkerContext(
        worker_id=worker_id,
        port=port,
        settings=cfg,
        sessions=sessions,
        stats=WorkerStats(worker_id=worker_id),
        locks=LockManager(),
        stats_sink=stats_sink,
    )

    app = FastAPI(
        title=f"chatcluster worker {worker_id}",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.worker = ctx
    app.add_exception_handler(InfrastructureError, handle_infrastructure_error)
    app.add_exception_handler(Exception, handle_unexpected_error)

    app.add_middleware(UserSessionMiddleware, ctx=ctx)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[cfg.user_id_header, "X-Worker-ID", "X-Request-ID"],
    )

    app.include_router(router)
    # Directory is created in lifespan; check_dir=False lets the mount exist first.
    app.mount(
        "/uploads",
        StaticFiles(directory=str(upload_root), check_dir=False),
        name="uploads",
    )
    return app


__all__ = ["create_worker_app", "router"]
