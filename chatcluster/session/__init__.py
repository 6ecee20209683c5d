from .manager import SessionManager, idle_sweep_loop, is_valid_user_id, new_user_id
from .store import InMemorySessionStore, RedisSessionStore, SessionStore, build_session_store

__all__ = [
    "InMemorySessionStore",
    "RedisSessionStore",
    "SessionManager",
    "SessionStore",
    "build_session_store",
    "idle_sweep_loop",
    "is_valid_user_id",
    "new_user_id",
]
