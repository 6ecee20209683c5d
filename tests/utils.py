from __future__ import annotations

import fnmatch
import json
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
from fastapi.testclient import TestClient

from chatcluster.settings import Settings
from chatcluster.supervisor.state import ChildSpec
from chatcluster.worker import create_worker_app
from chatcluster.worker.deps import get_http_client


class InMemoryRedis:
    """
    Minimal async Redis replacement used for tests.
    Supports the subset of commands used by the session store.
    """

    def __init__(self) -> None:
        self._data: Dict[str, Any] = {}
        self.expiry: Dict[str, Optional[int]] = {}

    async def get(self, key: str):
        return self._data.get(key)

    async def set(self, key: str, value: str, ex: int | None = None):
        self._data[key] = value
        self.expiry[key] = ex

    async def delete(self, key: str):
        existed = key in self._data
        self._data.pop(key, None)
        self.expiry.pop(key, None)
        return 1 if existed else 0

    async def scan_iter(self, match: str | None = None):
        for key in list(self._data):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key


class UpstreamRecorder:
    """
    httpx.MockTransport handler that records every upstream request.
    """

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.handler = handler
        self.calls: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        return self.handler(request)

    def json_bodies(self) -> List[Dict[str, Any]]:
        return [json.loads(call.content) for call in self.calls]


def sse_body(*fragments: str, done: bool = True) -> bytes:
    """
    Upstream-style SSE stream with one delta frame per fragment.
    """
    lines = [
        "data: " + json.dumps({"choices": [{"delta": {"content": fragment}}]})
        for fragment in fragments
    ]
    if done:
        lines.append("data: [DONE]")
    return ("\n\n".join(lines) + "\n\n").encode("utf-8")


def sse_response(*fragments: str) -> httpx.Response:
    return httpx.Response(
        200,
        content=sse_body(*fragments),
        headers={"content-type": "text/event-stream"},
    )


def parse_sse_events(text: str) -> List[Any]:
    """
    Client-side view of a worker SSE stream: JSON payloads, with the final
    marker kept as the literal string "[DONE]".
    """
    events: List[Any] = []
    for block in text.split("\n\n"):
        block = block.strip()
        if not block.startswith("data:"):
            continue
        data = block[len("data:"):].strip()
        events.append(data if data == "[DONE]" else json.loads(data))
    return events


def event_types(events: List[Any]) -> List[str]:
    return [e if isinstance(e, str) else e["type"] for e in events]


def build_worker_client(
    cfg: Settings,
    handler: Callable[[httpx.Request], httpx.Response],
    *,
    stats_sink=None,
) -> Tuple[TestClient, UpstreamRecorder]:
    """
    Worker app whose upstream HTTP client is replaced by a MockTransport.
    Use the returned TestClient as a context manager so the lifespan runs.
    """
    app = create_worker_app(1, 3001, cfg=cfg, stats_sink=stats_sink)
    recorder = UpstreamRecorder(handler)
    mock_client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))

    def override_http_client() -> httpx.AsyncClient:
        return mock_client

    app.dependency_overrides[get_http_client] = override_http_client
    return TestClient(app), recorder


class FakeProcess:
    """
    Stand-in for multiprocessing.Process driven entirely by the test.
    """

    _next_pid = 4000

    def __init__(self, spec: ChildSpec, log: List[Tuple[str, str]]) -> None:
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.spec = spec
        self.log = log
        self.alive = True
        self.exitcode: Optional[int] = None
        self.ignore_terminate = False

    def is_alive(self) -> bool:
        return self.alive

    def terminate(self) -> None:
        self.log.append(("terminate", self.spec.name))
        if not self.ignore_terminate:
            self.alive = False
            self.exitcode = -15

    def kill(self) -> None:
        self.log.append(("kill", self.spec.name))
        self.alive = False
        self.exitcode = -9

    def crash(self, code: int = 1) -> None:
        self.alive = False
        self.exitcode = code


class FakeProcessFactory:
    def __init__(self) -> None:
        self.log: List[Tuple[str, str]] = []
        self.launched: List[FakeProcess] = []

    def __call__(self, spec: ChildSpec) -> FakeProcess:
        process = FakeProcess(spec, self.log)
        self.launched.append(process)
        self.log.append(("start", spec.name))
        return process
