"""Health report shared by cache and rate-limit backends."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class HealthReport:
    """Health of a cache or rate-limit backend.

    Attributes:
        status: ``healthy``, ``degraded`` or ``unhealthy``.
        type: Backend type label (``memory``, ``redis``, ``memory-fallback``...).
        details: Backend-specific diagnostics. Never contains credentials.
    """

    status: str
    type: str
    details: dict[str, Any] = field(default_factory=dict)
