from __future__ import annotations

import os
from collections.abc import Callable

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware


def configure_cors(app: FastAPI, allowed: str | None):
    raw_origins = [o.strip() for o in (allowed or "").split(",") if o.strip()]
    if not raw_origins:
        # Local admin UI defaults when ALLOWED_ORIGINS is missing.
        raw_origins = ["http://localhost:5173", "http://127.0.0.1:5173", "http://localhost:8081"]

    if "*" in raw_origins:
        # Wildcard origins must not be combined with credentialed requests.
        origins = ["*"]
        allow_credentials = False
    else:
        origins = raw_origins
        allow_credentials = True

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def add_standard_health(app: FastAPI, check: Callable[[], bool] | None = None, env_key: str = "ENV"):
    """
    Mount GET /health. ``check`` is an optional readiness probe (e.g. a
    database ping); a failing or raising probe reports status "degraded"
    instead of failing the liveness call.
    """

    @app.get("/health")
    def _health():
        status = "ok"
        if check is not None:
            try:
                if not check():
                    status = "degraded"
            except Exception:
                status = "degraded"
        return {
            "status": status,
            "env": os.getenv(env_key, "dev"),
            "service": app.title,
            "version": getattr(app, "version", None),
        }
