from __future__ import annotations

import os
import random
import time

from fastapi import FastAPI


ROUTE = os.getenv("BG_ROUTE", "demo")
SLOT = os.getenv("BG_SLOT", "a")
BUILD_ID = os.getenv("BUILD_ID", "dev")
FAIL_RATE = float(os.getenv("FAIL_RATE", "0"))  # 0..1
UNHEALTHY = os.getenv("UNHEALTHY", "").lower() in {"1", "true", "yes"}

app = FastAPI(title=f"Example Service {ROUTE}/{SLOT}")


@app.get("/health")
def health() -> dict[str, str]:
    # Fault injection to demo aborted releases.
    if UNHEALTHY:
        return {"status": "degraded"}
    if FAIL_RATE > 0 and random.random() < FAIL_RATE:
        time.sleep(3)
    return {"status": "healthy"}


@app.get("/")
def whoami() -> dict[str, str]:
    return {"route": ROUTE, "slot": SLOT, "build": BUILD_ID}
