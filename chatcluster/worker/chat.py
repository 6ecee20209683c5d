"""
Chat completion relay: request assembly, the SSE event stream and the
non-streaming variant.

Event order on the wire is always:

    model_info, chunk*, [error], done, "data: [DONE]"

A client disconnect is the one exception: it cancels the stream at
whichever await it lands on and nothing more is written.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from chatcluster.errors import UpstreamError, UpstreamTimeoutError
from chatcluster.models import ModelDescriptor, UserSession
from chatcluster.models.session import MessageContent
from chatcluster.session import SessionManager
from chatcluster.upstream import SSEFrameParser

from .file_content import FileReference
from .stats import WorkerStats

logger = logging.getLogger("chatcluster.worker.chat")

SSE_DONE = "data: [DONE]\n\n"


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    message: str = ""
    files: List[FileReference] = Field(default_factory=list)
    model: Optional[str] = None
    max_tokens: Optional[int] = Field(default=None, ge=1)

    def is_empty(self) -> bool:
        return not self.message.strip() and not self.files


def sse_event(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def build_upstream_messages(
    session: UserSession, user_content: MessageContent, max_turns: int
) -> List[Dict[str, Any]]:
    """
    System prompt, the most recent ``max_turns`` history entries, then the
    new user turn.
    """
    history = session.history
    system = [m.model_dump() for m in history.messages[:1] if m.role == "system"]
    turns = history.turns[-max_turns:] if max_turns > 0 else []
    return [
        *system,
        *(m.model_dump() for m in turns),
        {"role": "user", "content": user_content},
    ]


def build_chat_payload(
    *,
    model: ModelDescriptor,
    messages: List[Dict[str, Any]],
    max_tokens: int,
    temperature: float,
    stream: bool,
) -> Dict[str, Any]:
    return {
        "model": model.id,
        "messages": messages,
        "max_tokens": max_tokens,
        "temperature": temperature,
        "stream": stream,
    }


class ChatExchange:
    """
    Everything one chat request needs once its inputs are resolved.
    """

    def __init__(
        self,
        *,
        request_id: str,
        worker_id: str,
        session: UserSession,
        sessions: SessionManager,
        stats: WorkerStats,
        model: ModelDescriptor,
        max_tokens: int,
        history_content: str,
        max_turns: int,
        deadline: float,
    ) -> None:
        self.request_id = request_id
        self.worker_id = worker_id
        self.session = session
        self.sessions = sessions
        self.stats = stats
        self.model = model
        self.max_tokens = max_tokens
        self.history_content = history_content
        self.max_turns = max_turns
        # loop.time() based; shared by every await on the upstream
        self.deadline = deadline

    def _event(self, kind: str, **fields: Any) -> str:
        return sse_event({"type": kind, "requestId": self.request_id, **fields})

    async def _commit(self, reply: str) -> int:
        return await self.sessions.record_exchange(
            self.session,
            user_content=self.history_content,
            assistant_text=reply,
            max_turns=self.max_turns,
        )

    async def stream_events(self, upstream: AsyncIterator[bytes]) -> AsyncIterator[str]:
        """
        Relay ``upstream`` (raw SSE bytes) as client events.

        Each read from the upstream is bounded by the request deadline. The
        upstream iterator is always closed on exit, which closes the
        upstream HTTP response.
        """
        parser = SSEFrameParser(trace_id=self.request_id)
        collected: List[str] = []
        failure: Optional[UpstreamError] = None
        started = time.perf_counter()

        yield self._event(
            "model_info",
            model=self.model.id,
            name=self.model.name,
            vision=self.model.vision,
            maxTokens=self.max_tokens,
            workerId=self.worker_id,
        )

        try:
            finished = False
            while not finished:
                try:
                    async with asyncio.timeout_at(self.deadline):
                        chunk = await anext(upstream)
                except StopAsyncIteration:
                    frames = parser.flush()
                    finished = True
                except TimeoutError as exc:
                    raise UpstreamTimeoutError(
                        "Upstream did not finish before the request deadline"
                    ) from exc
                else:
                    frames = parser.feed(chunk)

                for frame in frames:
                    if frame.kind == "content":
                        collected.append(frame.content)
                        yield self._event("chunk", content=frame.content)
                    elif frame.kind == "error":
                        raise UpstreamError(frame.message or "Upstream reported an error")
                    else:
                        finished = True
                        break
        except UpstreamError as exc:
            failure = exc
        except (asyncio.CancelledError, GeneratorExit):
            self.stats.cancelled_streams += 1
            logger.info(
                "[req=%s] worker=%s client disconnected after %d chunks; upstream cancelled",
                self.request_id,
                self.worker_id,
                len(collected),
            )
            raise
        finally:
            await upstream.aclose()

        if failure is not None:
            self.stats.record_error()
            logger.warning(
                "[req=%s] worker=%s chat stream failed: %s",
                self.request_id,
                self.worker_id,
                failure,
            )
            yield self._event(
                "error",
                error="timeout" if isinstance(failure, UpstreamTimeoutError) else "upstream_error",
                message=str(failure),
                status=failure.status_code,
            )
        else:
            dropped = await self._commit("".join(collected))
            if dropped:
                logger.debug("[req=%s] trimmed %d history entries", self.request_id, dropped)

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        logger.info(
            "[req=%s] worker=%s chat stream finished chunks=%d ok=%s elapsed_ms=%.0f",
            self.request_id,
            self.worker_id,
            len(collected),
            failure is None,
            elapsed_ms,
        )
        yield self._event(
            "done",
            success=failure is None,
            chunks=len(collected),
            historyTurns=len(self.session.history.turns),
        )
        yield SSE_DONE

    async def complete(
        self,
        *,
        client: httpx.AsyncClient,
        url: str,
        headers: Dict[str, str],
        payload: Dict[str, Any],
    ) -> Dict[str, Any]:
        """
        Single-shot completion for ``POST /api/chat``.
        """
        timeout = max(0.001, self.deadline - asyncio.get_running_loop().time())
        try:
            resp = await client.post(url, headers=headers, json=payload, timeout=timeout)
        except httpx.TimeoutException as exc:
            raise UpstreamTimeoutError(f"Upstream timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Upstream transport error: {exc}", text=str(exc)) from exc

        if resp.status_code >= 400:
            raise UpstreamError(
                f"Upstream HTTP error {resp.status_code}",
                status_code=resp.status_code,
                text=resp.text,
            )
        try:
            data = resp.json()
            reply = data["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise UpstreamError(
                "Upstream returned an unexpected response body",
                status_code=resp.status_code,
                text=resp.text[:500],
            ) from exc

        await self._commit(reply)
        logger.info(
            "[req=%s] worker=%s chat completion ok (%d chars)",
            self.request_id,
            self.worker_id,
            len(reply),
        )
        return {
            "success": True,
            "reply": reply,
            "model": self.model.id,
            "usage": data.get("usage"),
            "requestId": self.request_id,
        }


__all__ = [
    "ChatExchange",
    "ChatRequest",
    "SSE_DONE",
    "build_chat_payload",
    "build_upstream_messages",
    "sse_event",
]
