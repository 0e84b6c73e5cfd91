import logging
from typing import Optional

import httpx

from bibliodesk.config import settings

logger = logging.getLogger(__name__)


def build_http_client(timeout: Optional[float] = None, transport: Optional[httpx.BaseTransport] = None) -> httpx.Client:
    """HTTP client with connection pooling and bounded timeouts for provider calls."""
    limits = httpx.Limits(
        max_keepalive_connections=10,
        max_connections=20,
        keepalive_expiry=30.0,
    )
    total = timeout if timeout is not None else settings.gmail_http_timeout
    return httpx.Client(
        limits=limits,
        timeout=httpx.Timeout(timeout=total, connect=min(5.0, total)),
        follow_redirects=False,
        transport=transport,
    )


# Global HTTP client instance
_global_client: Optional[httpx.Client] = None


def get_http_client() -> httpx.Client:
    """Get or create the global HTTP client instance."""
    global _global_client
    if _global_client is None:
        _global_client = build_http_client()
    return _global_client


def cleanup_http_client() -> None:
    """Close the global HTTP client."""
    global _global_client
    if _global_client:
        _global_client.close()
        _global_client = None
        logger.debug("HTTP client closed")
