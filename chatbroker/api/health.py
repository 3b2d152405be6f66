"""Health check endpoint.

/health - Liveness check: is the process up? Public, no auth required.
"""

from __future__ import annotations

from datetime import UTC, datetime

from fastapi import APIRouter

from chatbroker import __version__

router = APIRouter(tags=["health"])


@router.get("/health")
async def liveness() -> dict:
    """Liveness check - always returns 200 if the process is running."""
    return {"status": "ok", "version": __version__, "timestamp": datetime.now(UTC).isoformat()}
