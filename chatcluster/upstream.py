"""
Upstream AI API access: raw streaming plus translation of the vendor's
SSE frames into a small internal vocabulary.
"""

import codecs
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Literal, Optional

import httpx

from .errors import UpstreamError

logger = logging.getLogger("chatcluster.upstream")


async def stream_upstream(
    *,
    client: httpx.AsyncClient,
    url: str,
    headers: Dict[str, str],
    json_body: Dict[str, Any],
    trace_id: str = "-",
) -> AsyncIterator[bytes]:
    """
    POST ``json_body`` to ``url`` in streaming mode and yield raw chunks as
    they arrive.

    - HTTP status >= 400 raises UpstreamError before anything is yielded.
    - Transport errors (connect, read, protocol) raise UpstreamError.
    - Closing this generator (client disconnect, timeout) exits the
      ``client.stream`` context, which closes the upstream response.
    """
    logger.info("[req=%s] opening upstream stream POST %s", trace_id, url)
    try:
        async with client.stream("POST", url, headers=headers, json=json_body) as resp:
            if resp.status_code >= 400:
                text_bytes = await resp.aread()
                text = text_bytes.decode("utf-8", errors="ignore")
                logger.warning(
                    "[req=%s] upstream HTTP error %s for %s; response=%s",
                    trace_id,
                    resp.status_code,
                    url,
                    text[:500],
                )
                raise UpstreamError(
                    f"Upstream HTTP error {resp.status_code}",
                    status_code=resp.status_code,
                    text=text,
                )

            logger.info(
                "[req=%s] connected to upstream %s with status %s",
                trace_id,
                url,
                resp.status_code,
            )
            chunk_count = 0
            async for chunk in resp.aiter_bytes():
                if not chunk:
                    continue
                chunk_count += 1
                if chunk_count == 1:
                    logger.debug("[req=%s] received first upstream chunk", trace_id)
                yield chunk
            logger.info(
                "[req=%s] upstream stream finished after %d chunks", trace_id, chunk_count
            )
    except httpx.HTTPError as exc:
        logger.warning("[req=%s] upstream transport error for %s: %s", trace_id, url, exc)
        raise UpstreamError(
            f"Upstream transport error: {exc}", status_code=None, text=str(exc)
        ) from exc


@dataclass
class UpstreamFrame:
    kind: Literal["content", "done", "error"]
    content: str = ""
    message: str = ""


def _extract_error_message(error: Any) -> str:
    if isinstance(error, dict):
        message = error.get("message") or error.get("msg")
        if isinstance(message, str) and message:
            return message
        return json.dumps(error, ensure_ascii=False)
    return str(error)


class SSEFrameParser:
    """
    Incremental parser for an OpenAI-style ``data: {...}`` stream.

    Lines may be split across network chunks (and multi-byte characters
    across byte boundaries), so undecoded bytes and the trailing partial
    line are buffered between ``feed`` calls. Frames that are not valid JSON
    are logged and skipped.
    """

    def __init__(self, trace_id: str = "-") -> None:
        self.trace_id = trace_id
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.skipped_frames = 0

    def feed(self, chunk: bytes) -> List[UpstreamFrame]:
        self._buffer += self._decoder.decode(chunk)
        frames: List[UpstreamFrame] = []
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            frame = self._parse_line(line)
            if frame is not None:
                frames.append(frame)
        return frames

    def flush(self) -> List[UpstreamFrame]:
        self._buffer += self._decoder.decode(b"", final=True)
        rest, self._buffer = self._buffer, ""
        frame = self._parse_line(rest)
        return [frame] if frame is not None else []

    def _parse_line(self, raw: str) -> Optional[UpstreamFrame]:
        line = raw.strip()
        if not line or line.startswith(":"):
            return None
        if not line.startswith("data:"):
            # event:/id:/retry: fields carry nothing we translate
            return None
        data = line[len("data:"):].strip()
        if data == "[DONE]":
            return UpstreamFrame(kind="done")
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as exc:
            self.skipped_frames += 1
            logger.warning(
                "[req=%s] skipping unparsable upstream frame (%s): %r",
                self.trace_id,
                exc,
                data[:200],
            )
            return None
        if not isinstance(payload, dict):
            self.skipped_frames += 1
            return None
        if payload.get("error"):
            return UpstreamFrame(kind="error", message=_extract_error_message(payload["error"]))
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            return None
        first = choices[0] if isinstance(choices[0], dict) else {}
        delta = first.get("delta") if isinstance(first.get("delta"), dict) else {}
        content = delta.get("content")
        if isinstance(content, str) and content:
            return UpstreamFrame(kind="content", content=content)
        return None


__all__ = ["SSEFrameParser", "UpstreamFrame", "stream_upstream"]
