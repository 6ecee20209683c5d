import asyncio
import json
from collections import Counter
from typing import List

import httpx
import pytest
from fastapi.testclient import TestClient

from chatcluster.balancer import (
    RoundRobinSelector,
    UserHashSelector,
    WorkerHealth,
    WorkerHealthRegistry,
    create_balancer_app,
    probe_worker,
)
from chatcluster.balancer.app import filter_headers
from chatcluster.balancer.health import WorkerHealthStatus, probe_all
from chatcluster.settings import Settings

WORKERS = [f"http://127.0.0.1:{3001 + i}" for i in range(4)]


def _balancer(handler, **overrides) -> TestClient:
    cfg = Settings(health_check_initial_delay_seconds=3600, **overrides)
    app = create_balancer_app(WORKERS, cfg, transport=httpx.MockTransport(handler))
    return TestClient(app)


def test_round_robin_is_fair_over_full_cycles():
    selector = RoundRobinSelector(WORKERS)

    picks = [selector.select()[1] for _ in range(len(WORKERS) * 5)]

    assert Counter(picks) == {url: 5 for url in WORKERS}
    assert picks[:4] == WORKERS


def test_round_robin_skips_unhealthy_workers_when_filter_enabled():
    unhealthy = {1}
    selector = RoundRobinSelector(WORKERS, is_healthy=lambda i: i not in unhealthy)

    picks = [selector.select()[0] for _ in range(6)]

    assert 1 not in picks


def test_round_robin_falls_back_when_all_unhealthy():
    selector = RoundRobinSelector(WORKERS, is_healthy=lambda i: False)
    assert [selector.select()[0] for _ in range(4)] == [0, 1, 2, 3]


def test_user_hash_is_sticky_and_falls_back_without_user():
    selector = UserHashSelector(WORKERS)

    first = selector.select("alice")
    assert all(selector.select("alice") == first for _ in range(10))
    assert [selector.select(None)[0] for _ in range(4)] == [0, 1, 2, 3]


def test_filter_headers_drops_hop_by_hop_and_connection_listed():
    raw = [
        (b"host", b"example"),
        (b"connection", b"keep-alive, X-Private"),
        (b"x-private", b"secret"),
        (b"transfer-encoding", b"chunked"),
        (b"x-user-id", b"alice"),
    ]

    kept = filter_headers(raw, drop=("host",))

    assert kept == [(b"x-user-id", b"alice")]


def test_balancer_rotates_requests_across_workers():
    hits: List[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        hits.append(f"{request.url.scheme}://{request.url.host}:{request.url.port}")
        return httpx.Response(200, json={"path": request.url.path, "query": request.url.query.decode()})

    with _balancer(handler) as client:
        responses = [client.get("/api/health?probe=1") for _ in range(8)]

    assert Counter(hits) == {url: 2 for url in WORKERS}
    assert responses[0].json() == {"path": "/api/health", "query": "probe=1"}
    assert responses[0].headers["X-Load-Balancer"] == "chatcluster-balancer"
    assert [r.headers["X-Worker-Hit"] for r in responses[:4]] == [
        f"{i} {url}" for i, url in enumerate(WORKERS)
    ]


def test_balancer_relays_body_headers_and_status():
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            201,
            content=b"data: one\n\ndata: two\n\n",
            headers={"content-type": "text/event-stream", "x-worker-id": "2"},
        )

    with _balancer(handler) as client:
        resp = client.post(
            "/api/chat/stream",
            json={"message": "hi"},
            headers={"X-User-ID": "alice"},
        )

    assert resp.status_code == 201
    assert resp.text == "data: one\n\ndata: two\n\n"
    assert resp.headers["x-worker-id"] == "2"
    forwarded = seen[0]
    assert forwarded.method == "POST"
    assert json.loads(forwarded.content) == {"message": "hi"}
    assert forwarded.headers["x-user-id"] == "alice"
    assert forwarded.headers["host"] == "127.0.0.1:3001"


def test_balancer_returns_proxy_error_when_worker_unreachable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with _balancer(handler) as client:
        resp = client.get("/api/models")
        status = client.get("/__balancer/status").json()

    assert resp.status_code == 500
    body = resp.json()
    assert body["success"] is False
    assert body["error"] == "proxy_error"
    assert "connection refused" in body["details"]
    assert status["cursor"] == 1
    assert status["requests"] == 1


def test_user_hash_policy_pins_user_to_one_worker():
    hits: List[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        hits.append(str(request.url.port))
        return httpx.Response(200)

    with _balancer(handler, balance_policy="user_hash") as client:
        for _ in range(5):
            client.get("/api/files", headers={"X-User-ID": "alice"})

    assert len(set(hits)) == 1


@pytest.mark.asyncio
async def test_probe_worker_classifies_outcomes():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/health"
        if request.url.port == 3001:
            return httpx.Response(200, json={"status": "ok"})
        if request.url.port == 3002:
            return httpx.Response(503)
        raise httpx.ConnectError("refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        healthy = await probe_worker(client, 0, WORKERS[0])
        degraded = await probe_worker(client, 1, WORKERS[1])
        down = await probe_worker(client, 2, WORKERS[2])

    assert healthy.status == WorkerHealth.HEALTHY
    assert healthy.last_successful_check is not None
    assert degraded.status == WorkerHealth.DEGRADED
    assert degraded.error_message == "HTTP 503"
    assert down.status == WorkerHealth.UNREACHABLE
    assert down.response_time_ms is not None


@pytest.mark.asyncio
async def test_probe_all_updates_registry():
    registry = WorkerHealthRegistry(WORKERS)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200 if request.url.port != 3004 else 500)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        await probe_all(client, registry, WORKERS, timeout=1.0)

    assert [registry.is_healthy(i) for i in range(4)] == [True, True, True, False]


def test_registry_keeps_last_success_across_failures():
    registry = WorkerHealthRegistry(WORKERS[:1])
    registry.record(
        WorkerHealthStatus(index=0, url=WORKERS[0], status=WorkerHealth.HEALTHY, last_successful_check=100.0)
    )
    registry.record(WorkerHealthStatus(index=0, url=WORKERS[0], status=WorkerHealth.UNREACHABLE))

    assert registry.get(0).last_successful_check == 100.0
    assert not registry.is_healthy(0)


async def _call_asgi(app, path: str, sent: List[dict]) -> None:
    """
    Drive ``app`` with a single GET and record every ASGI message it sends.
    TestClient buffers the whole body, so chunk timing is checked here.
    """
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "GET",
        "scheme": "http",
        "path": path,
        "raw_path": path.encode("ascii"),
        "query_string": b"",
        "root_path": "",
        "headers": [(b"host", b"balancer")],
        "client": ("127.0.0.1", 50000),
        "server": ("balancer", 3000),
    }
    request_sent = False
    disconnected = asyncio.Event()

    async def receive() -> dict:
        nonlocal request_sent
        if not request_sent:
            request_sent = True
            return {"type": "http.request", "body": b"", "more_body": False}
        await disconnected.wait()
        return {"type": "http.disconnect"}

    async def send(message: dict) -> None:
        sent.append(message)

    try:
        await app(scope, receive, send)
    finally:
        disconnected.set()


def _body_chunks(sent: List[dict]) -> List[bytes]:
    return [m["body"] for m in sent if m["type"] == "http.response.body" and m.get("body")]


async def _until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        assert loop.time() < deadline, "condition not reached in time"
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_balancer_forwards_each_chunk_as_it_arrives():
    release = asyncio.Event()

    async def slow_body():
        yield b"data: first\n\n"
        await release.wait()
        yield b"data: second\n\n"

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=slow_body(), headers={"content-type": "text/event-stream"})

    cfg = Settings(health_check_initial_delay_seconds=3600)
    app = create_balancer_app(WORKERS, cfg, transport=httpx.MockTransport(handler))
    sent: List[dict] = []

    async with app.router.lifespan_context(app):
        call = asyncio.create_task(_call_asgi(app, "/api/chat/stream", sent))
        await _until(lambda: _body_chunks(sent) == [b"data: first\n\n"])
        await asyncio.sleep(0.05)
        assert not call.done()
        assert _body_chunks(sent) == [b"data: first\n\n"]

        release.set()
        await asyncio.wait_for(call, timeout=2.0)

    start = next(m for m in sent if m["type"] == "http.response.start")
    assert start["status"] == 200
    assert _body_chunks(sent) == [b"data: first\n\n", b"data: second\n\n"]


def test_worker_failure_after_headers_truncates_stream_without_second_response():
    async def broken_body():
        yield b"data: partial\n\n"
        raise httpx.ReadError("worker went away")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=broken_body(), headers={"content-type": "text/event-stream"})

    with _balancer(handler) as client:
        resp = client.get("/api/chat/stream")
        status = client.get("/__balancer/status")

    assert resp.status_code == 200
    assert resp.text == "data: partial\n\n"
    assert "proxy_error" not in resp.text
    assert resp.headers["X-Worker-Hit"].startswith("0 ")
    assert status.status_code == 200
