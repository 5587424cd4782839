import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sigprobe import routers
from sigprobe.runner import runner

LOG_FILE = os.getenv("SIGPROBE_LOG_FILE", "data/sigprobe.log")
os.makedirs(os.path.dirname(LOG_FILE) or ".", exist_ok=True)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(),
        logging.FileHandler(LOG_FILE),
    ],
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Release the socket before the process goes away
    await runner.stop()


app = FastAPI(
    title="Signaling Path Probe",
    description="Repeated TCP/UDP reachability probe for a signaling endpoint",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS configuration - use environment variable for allowed origins
allowed_origins = os.getenv("CORS_ORIGINS", "*").split(",")
logger.info(f"CORS allowed origins: {allowed_origins}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(routers.router)


@app.get("/health")
async def health():
    """Basic health check endpoint."""
    return {"status": "ok", "service": "sigprobe", "probe_running": runner.is_running}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("sigprobe.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8100")))
