"""Build Redis clients, including TLS endpoints such as Upstash."""

from __future__ import annotations

import ssl
from typing import Any

from redis import Redis


def create_redis_client(url: str, verify_ssl: bool = False, **kwargs: Any) -> Redis:
    """Create a Redis client from ``url``.

    Upstash hosts are always reached over TLS. Certificate checks on TLS
    connections are skipped unless ``verify_ssl`` is set.

    Args:
        url: Redis connection URL (redis:// or rediss://)
        verify_ssl: Require a valid server certificate on TLS connections
        **kwargs: Passed through to ``Redis.from_url``

    Returns:
        Configured Redis client
    """
    if ".upstash.io" in url and url.startswith("redis://"):
        url = url.replace("redis://", "rediss://", 1)

    client = Redis.from_url(url, **kwargs)

    if url.startswith("rediss://") and not verify_ssl:
        pool_kwargs = getattr(client.connection_pool, "connection_kwargs", None)
        if pool_kwargs is not None:
            pool_kwargs["ssl_cert_reqs"] = ssl.CERT_NONE

    return client
