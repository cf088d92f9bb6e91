"""Transports that carry queued webhook executions to workers."""

from __future__ import annotations

import logging
from typing import Callable, Optional

from ..config import FlowgateConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport

logger = logging.getLogger(__name__)


def _redis_transport(config: FlowgateConfig) -> BaseTransport:
    from .redis import RedisTransport

    settings = config.transport.redis
    return RedisTransport(
        host=settings.host,
        port=settings.port,
        db=settings.db,
        password=settings.password,
    )


_BACKENDS: dict[str, Callable[[FlowgateConfig], BaseTransport]] = {
    "inmemory": lambda config: InMemoryTransport(),
    "redis": _redis_transport,
}


def get_transport(
    backend: Optional[str] = None, config: Optional[FlowgateConfig] = None
) -> BaseTransport:
    """Build the transport named by ``backend`` or by ``config.transport.backend``.

    ``load_config`` already applies ``FLOWGATE_TRANSPORT``. The in-memory
    backend only reaches workers in the same process; use Redis when
    ``flowgate worker`` runs separately from ``flowgate serve``.
    """
    config = config or load_config()
    name = (backend or config.transport.backend).lower()
    try:
        build = _BACKENDS[name]
    except KeyError:
        raise ValueError(
            f"Unsupported transport backend '{name}', expected one of {sorted(_BACKENDS)}"
        ) from None
    logger.debug(f"Using {name} transport on topic {config.transport.topic}")
    return build(config)


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
