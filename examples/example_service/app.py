"""Sample deployable service.

Build it into an image and deploy it with `cli.py deploy` to try the
health gate. POST /simulate/unhealthy makes /health fail so a deployment
rolls back.
"""
from __future__ import annotations

import os
import random
import time
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException


VERSION = os.getenv("VERSION", "dev")
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
FAIL_RATE = float(os.getenv("FAIL_RATE", "0"))  # 0..1

STARTED = time.time()
APP_STATE = {"unhealthy": os.getenv("START_UNHEALTHY", "") == "1"}

app = FastAPI(title=f"Example Service {VERSION}")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@app.get("/health")
def health() -> dict[str, object]:
    if APP_STATE["unhealthy"]:
        raise HTTPException(status_code=503, detail="unhealthy")
    # Optional fault injection: slow answers trip the deployer's probe timeout.
    if FAIL_RATE > 0 and random.random() < FAIL_RATE:
        time.sleep(3)
    return {
        "status": "ok",
        "timestamp": _now(),
        "uptime": round(time.time() - STARTED, 3),
        "environment": ENVIRONMENT,
    }


@app.get("/ready")
def ready() -> dict[str, str]:
    return {"status": "ready", "timestamp": _now()}


@app.get("/api/version")
def version() -> dict[str, str]:
    return {
        "version": VERSION,
        "build": os.getenv("BUILD_NUMBER", "local"),
        "commit": os.getenv("GIT_COMMIT", "unknown"),
    }


@app.get("/api/status")
def status() -> dict[str, object]:
    return {"status": "running", "timestamp": _now(), "unhealthy": APP_STATE["unhealthy"]}


@app.post("/simulate/unhealthy")
def simulate_unhealthy() -> dict[str, str]:
    APP_STATE["unhealthy"] = True
    return {"msg": "Health endpoint now fails."}


@app.post("/simulate/reset")
def simulate_reset() -> dict[str, str]:
    APP_STATE["unhealthy"] = False
    return {"msg": "Health endpoint restored."}
