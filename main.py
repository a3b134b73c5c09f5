import os
import sys
import logging
from fastapi import FastAPI
from contextlib import asynccontextmanager

CURRENT_DIR = os.path.dirname(os.path.abspath(__file__))
if CURRENT_DIR not in sys.path:
    sys.path.insert(0, CURRENT_DIR)

from app.state import init_state, shutdown_state
from routes import api

logger = logging.getLogger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize the shared signaling store and release it on shutdown."""
    await init_state()
    try:
        yield
    finally:
        await shutdown_state()


app = FastAPI(
    title="Peer Call Signaling Service",
    version="1.0.0",
    lifespan=lifespan
)

# --- Routers ---
app.include_router(api.router, tags=["Signaling"])

# Proxy prefix for deployments behind a path-based gateway
app.include_router(api.router, prefix="/api/v1/signaling", tags=["Signaling Proxy"])


@app.get("/health", include_in_schema=False)
async def health():
    return {"status": "ok"}


# --- Run with uvicorn ---
if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    host = os.getenv("SERVICE_HOST", "0.0.0.0")
    port = int(os.getenv("SERVICE_PORT", "8104"))

    uvicorn.run("main:app", host=host, port=port, reload=False)
