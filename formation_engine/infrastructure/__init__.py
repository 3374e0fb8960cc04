from .session_backends import (
    FileSessionBackend,
    MemorySessionBackend,
    RedisSessionBackend,
    SessionBackend,
)
from .session_store import (
    SessionStore,
    build_session_backend,
    build_session_store,
    clear_sensitive_data,
    generate_session_id,
)

__all__ = [
    "FileSessionBackend",
    "MemorySessionBackend",
    "RedisSessionBackend",
    "SessionBackend",
    "SessionStore",
    "build_session_backend",
    "build_session_store",
    "clear_sensitive_data",
    "generate_session_id",
]
