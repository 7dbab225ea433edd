from fastapi import FastAPI, WebSocket, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import uvicorn
import logging

import config
config.setup_logging()

from errors import InvalidPin
from registry import validate_pin
from session_manager import session_manager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting trivia session server")
    session_manager.start_cleanup_loop()
    yield
    logger.info("Shutting down trivia session server")
    await session_manager.shutdown()


app = FastAPI(title="Live Trivia Session Server", lifespan=lifespan)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await session_manager.connect(websocket)


@app.get("/session/{pin}")
async def get_session(pin: str):
    """Read-only snapshot, still available during the post-game grace period."""
    try:
        pin = validate_pin(pin)
    except InvalidPin as e:
        raise HTTPException(status_code=400, detail=e.message)
    session = session_manager.registry.get(pin)
    if not session:
        raise HTTPException(status_code=404, detail="Game not found")
    return session.snapshot()


# Configure CORS
if config.ALLOWED_ORIGINS.strip():
    origins = [o.strip() for o in config.ALLOWED_ORIGINS.split(",")]
    session_manager.allowed_origins = origins
else:
    origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["GET"],
    allow_headers=["Content-Type"],
)


@app.get("/")
async def root():
    return {"message": "Trivia session server is running"}


@app.get("/health")
async def health():
    return {"status": "healthy", "active_sessions": len(session_manager.registry)}


if __name__ == "__main__":
    uvicorn.run("main:app", host=config.HOST, port=config.PORT, reload=True)
