"""
Request accounting and session attachment for worker apps.

Written as a plain ASGI middleware so that ``active_connections`` is only
decremented once a streamed response body has been fully sent (or the
client went away), not when the endpoint returns.
"""

from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .deps import WorkerContext

# Paths that never touch per-user state.
_SESSIONLESS_PATHS = ("/api/health", "/api/models", "/api/tts/models")


def _needs_session(path: str) -> bool:
    return path.startswith("/api/") and path not in _SESSIONLESS_PATHS


class UserSessionMiddleware:
    def __init__(self, app: ASGIApp, *, ctx: WorkerContext) -> None:
        self.app = app
        self.ctx = ctx

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        ctx = self.ctx
        header_name = ctx.settings.user_id_header
        ctx.stats.requests += 1
        ctx.stats.active_connections += 1
        try:
            user_id = None
            if _needs_session(scope["path"]):
                requested = Headers(scope=scope).get(header_name)
                session, _issued = await ctx.sessions.resolve(requested)
                await ctx.sessions.touch(session)
                scope.setdefault("state", {})["session"] = session
                user_id = session.id

            async def send_with_headers(message: Message) -> None:
                if message["type"] == "http.response.start":
                    headers = MutableHeaders(scope=message)
                    headers["X-Worker-ID"] = ctx.worker_id
                    if user_id is not None:
                        headers[header_name] = user_id
                await send(message)

            await self.app(scope, receive, send_with_headers)
        finally:
            ctx.stats.active_connections -= 1


__all__ = ["UserSessionMiddleware"]
