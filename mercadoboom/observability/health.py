from __future__ import annotations

import time
from typing import Dict, Union

from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from mercadoboom.database import engine


def check_database_health() -> Dict[str, Union[str, float]]:
    """Run ``SELECT 1`` and report status with round-trip latency."""
    started = time.perf_counter()
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
    except OperationalError as exc:
        return {"status": "DOWN", "detail": str(exc.orig)}
    return {"status": "UP", "latency_ms": round((time.perf_counter() - started) * 1000, 2)}
