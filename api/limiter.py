"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/auth.py (to apply per-route limits with @limiter.limit()).

A single shared instance means every route counts against the same
in-memory store; separate instances per module would never trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_rate_limit() -> str:
    """Return the configured login limit, e.g. "10/minute".

    slowapi accepts a callable so the value is read per request from the
    cached Settings rather than frozen at import time.
    """
    return get_settings().login_rate_limit
