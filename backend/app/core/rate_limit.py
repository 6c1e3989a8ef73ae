"""Shared rate limiter instance for use across route files.

POS terminals of one store usually sit behind a single NAT address, so
requests that name their store are limited per store rather than per IP.
"""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from app.core.config import settings


def get_store_or_ip(request: Request) -> str:
    """Rate limit by the ``X-Store-ID`` header when present, else by IP."""
    store_id = request.headers.get("X-Store-ID", "").strip()
    if store_id.isdigit():
        return f"store:{store_id}"
    return get_remote_address(request)


limiter = Limiter(key_func=get_store_or_ip, enabled=settings.rate_limit_enabled)
