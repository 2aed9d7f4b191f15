"""
api/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (mounted as middleware) and api/routes/v1/auth.py
(per-route limits on login and refresh via @limiter.limit()).

One shared instance means every route uses the same counter store; separate
instances per module would each count in isolation and never trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
