"""
Reverse proxy in front of the worker pool.

Every request is relayed to one worker chosen by the selector. Request and
response bodies are streamed in both directions; nothing is buffered, so
SSE chat streams reach the client chunk by chunk.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable, List, Optional, Sequence, Tuple

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from chatcluster.settings import Settings
from chatcluster.settings import settings as default_settings

from .health import WorkerHealthRegistry, health_monitor_loop
from .selector import build_selector

logger = logging.getLogger("chatcluster.balancer")

LOAD_BALANCER_NAME = "chatcluster-balancer"

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"]


def filter_headers(
    raw: Iterable[Tuple[bytes, bytes]], *, drop: Iterable[str] = ()
) -> List[Tuple[bytes, bytes]]:
    """
    Copy ``raw`` header pairs without hop-by-hop headers, anything listed in
    ``Connection`` and any name in ``drop``.
    """
    pairs = list(raw)
    excluded = set(HOP_BY_HOP_HEADERS) | {name.lower() for name in drop}
    for name, value in pairs:
        if name.lower() == b"connection":
            excluded.update(token.strip().lower() for token in value.decode("latin-1").split(","))
    return [(name, value) for name, value in pairs if name.decode("latin-1").lower() not in excluded]


def _has_body(request: Request) -> bool:
    headers = request.headers
    return "content-length" in headers or "transfer-encoding" in headers


def proxy_error_response(message: str, details: str) -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "proxy_error",
            "message": message,
            "details": details,
        },
    )


async def _relay_body(
    resp: httpx.Response, *, request_no: int, target: str
) -> AsyncIterator[bytes]:
    # Headers are already on the wire once this runs; a failure can only
    # end the stream early.
    try:
        async for chunk in resp.aiter_raw():
            yield chunk
    except httpx.HTTPError as exc:
        logger.error(
            "[%d] worker %s failed mid-response: %s; closing client stream",
            request_no,
            target,
            exc,
        )
    finally:
        await resp.aclose()


def create_balancer_app(
    worker_urls: Optional[Sequence[str]] = None,
    cfg: Optional[Settings] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    cfg = cfg or default_settings
    urls = list(worker_urls) if worker_urls is not None else cfg.worker_urls()
    registry = WorkerHealthRegistry(urls)
    selector = build_selector(
        cfg.balance_policy,
        urls,
        is_healthy=registry.is_healthy if cfg.exclude_unhealthy_workers else None,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = httpx.AsyncClient(
            transport=transport,
            # Chat streams are long-lived; only connecting is bounded.
            timeout=httpx.Timeout(None, connect=cfg.upstream_connect_timeout),
        )
        app.state.http_client = client
        monitor = asyncio.create_task(
            health_monitor_loop(
                client,
                registry,
                urls,
                initial_delay=cfg.health_check_initial_delay_seconds,
                interval=cfg.health_check_interval_seconds,
                timeout=cfg.health_check_timeout_seconds,
            ),
            name="balancer-health-monitor",
        )
        logger.info(
            "Balancer listening on %s, proxying to %d workers (%s)",
            cfg.balancer_url(),
            len(urls),
            cfg.balance_policy,
        )
        for index, url in enumerate(urls):
            logger.info("  %d. %s", index + 1, url)
        try:
            yield
        finally:
            monitor.cancel()
            await asyncio.gather(monitor, return_exceptions=True)
            await client.aclose()
            logger.info("Balancer stopped after %d requests", app.state.request_count)

    app = FastAPI(
        title="chatcluster balancer",
        version="0.1.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.selector = selector
    app.state.health = registry
    app.state.request_count = 0

    @app.get("/__balancer/status")
    async def balancer_status() -> dict:
        return {
            "policy": cfg.balance_policy,
            "cursor": selector.cursor,
            "requests": app.state.request_count,
            "excludeUnhealthy": cfg.exclude_unhealthy_workers,
            "workers": [s.model_dump(mode="json") for s in registry.snapshot()],
        }

    @app.api_route("/{path:path}", methods=PROXY_METHODS)
    async def proxy(path: str, request: Request):
        app.state.request_count += 1
        request_no = app.state.request_count
        index, target = selector.select(request.headers.get(cfg.user_id_header))
        url = f"{target}{request.url.path}"
        if request.url.query:
            url = f"{url}?{request.url.query}"
        logger.info("[%d] %s %s -> %s", request_no, request.method, request.url.path, target)

        headers = filter_headers(request.headers.raw, drop=("host",))
        client_host = request.client.host if request.client else ""
        if client_host:
            headers.append((b"x-forwarded-for", client_host.encode("latin-1")))
        client: httpx.AsyncClient = request.app.state.http_client
        upstream_request = client.build_request(
            request.method,
            url,
            headers=headers,
            content=request.stream() if _has_body(request) else None,
        )
        try:
            resp = await client.send(upstream_request, stream=True)
        except httpx.HTTPError as exc:
            logger.error("[%d] proxy error for %s: %s", request_no, target, exc)
            return proxy_error_response("Proxy server error", str(exc))

        response = StreamingResponse(
            _relay_body(resp, request_no=request_no, target=target),
            status_code=resp.status_code,
            background=BackgroundTask(resp.aclose),
        )
        # raw list keeps repeated headers such as Set-Cookie intact
        response.raw_headers = [
            *filter_headers(resp.headers.raw, drop=("content-length",)),
            (b"x-load-balancer", LOAD_BALANCER_NAME.encode("latin-1")),
            (b"x-worker-hit", f"{index} {target}".encode("latin-1")),
        ]
        return response

    return app


__all__ = ["HOP_BY_HOP_HEADERS", "create_balancer_app", "filter_headers", "proxy_error_response"]
