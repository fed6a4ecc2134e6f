import logging
import os
from pathlib import Path

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from fastapi.staticfiles import StaticFiles

from .connection_hub import ConnectionHub
from .session_registry import SessionRegistry, normalize_code
from .ws_handler import EventCoordinator, websocket_feedback as _websocket_feedback_handler

logger = logging.getLogger(__name__)

app = FastAPI()

# --- CORS Configuration ---

def _get_cors_origins() -> list[str]:
    """Get CORS origins from environment variable or use the Vite dev server."""
    cors_origins_str = os.environ.get("CLASSPULSE_CORS_ORIGINS", "http://localhost:5173")
    origins = [origin.strip() for origin in cors_origins_str.split(",") if origin.strip()]
    return origins if origins else ["http://localhost:5173"]


_cors_origins = _get_cors_origins()

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

BASE_DIR = Path(__file__).resolve().parent.parent
DIST_DIR = Path(os.environ.get("CLASSPULSE_FRONTEND_DIST", str(BASE_DIR / "frontend" / "dist")))

# One registry for the life of the process; handlers reach it only through
# the coordinator.
coordinator = EventCoordinator(SessionRegistry(), ConnectionHub())


@app.on_event("startup")
async def startup_event():
    logger.info("Lecture feedback server ready (CORS origins: %s)", ", ".join(_cors_origins))


# --- API Routes ---

@app.get("/api/health")
async def api_health():
    return {"status": "ok", "active_sessions": coordinator.registry.active_session_count}


@app.get("/api/sessions/{code}")
async def api_session_status(code: str):
    normalized = normalize_code(code)
    aggregate = coordinator.registry.get_aggregate(normalized)
    return {
        "code": normalized,
        "exists": aggregate is not None,
        "aggregate": aggregate,
    }


@app.websocket("/ws/feedback")
async def websocket_feedback(websocket: WebSocket):
    await _websocket_feedback_handler(websocket, coordinator=coordinator)


# --- Static frontend ---

def mount_frontend(target: FastAPI, dist_dir: Path) -> bool:
    """Serve a built single-page frontend from *dist_dir*.

    Unknown GET paths fall back to index.html so client-side routing works.
    Must be called after every API route is registered.
    """
    index_html = dist_dir / "index.html"
    if not index_html.is_file():
        return False

    assets_dir = dist_dir / "assets"
    if assets_dir.is_dir():
        target.mount("/assets", StaticFiles(directory=str(assets_dir)), name="assets")

    @target.get("/{full_path:path}", include_in_schema=False)
    async def spa_fallback(full_path: str):
        candidate = (dist_dir / full_path).resolve()
        if full_path and candidate.is_file() and candidate.is_relative_to(dist_dir.resolve()):
            return FileResponse(candidate)
        return FileResponse(index_html)

    return True


if not mount_frontend(app, DIST_DIR):
    logger.info("No frontend build at %s; serving the API only", DIST_DIR)
