import logging
import os
from collections.abc import Callable
from typing import Optional

from fastapi import FastAPI

log = logging.getLogger("agenda.health")


def add_standard_health(app: FastAPI, env_key: str = "ENV", db_check: Optional[Callable[[], None]] = None):
    """
    Register ``GET /health``.

    ``db_check`` is called on every health check; it should raise when the database
    is unreachable. The endpoint still answers 200 so orchestrators can tell
    a degraded service from a dead one.
    """

    @app.get("/health")
    def _health():
        database = "skipped"
        if db_check is not None:
            try:
                db_check()
                database = "ok"
            except Exception:
                log.exception("health database check failed")
                database = "error"
        return {
            "status": "ok" if database != "error" else "degraded",
            "env": os.getenv(env_key, "dev"),
            "service": app.title,
            "version": getattr(app, "version", None),
            "database": database,
        }
