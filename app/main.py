from pathlib import Path
import logging

from dotenv import load_dotenv
from fastapi import FastAPI

from app.api.routes import router
from app.canvas.startup import init_canvas_for_app, shutdown_canvas_for_app

_project_root = Path(__file__).resolve().parent.parent

# Local runs pick up settings from the repo .env; real environment variables win.
_env_path = _project_root / ".env"
if _env_path.exists():
    load_dotenv(dotenv_path=_env_path, override=False)

app = FastAPI(title="pixel-canvas", version="0.1.0")
app.include_router(router)
# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@app.on_event("startup")
async def _startup() -> None:
    await init_canvas_for_app()


@app.on_event("shutdown")
async def _shutdown() -> None:
    await shutdown_canvas_for_app()


@app.get("/info")
async def info() -> dict[str, str]:
    return {"name": "pixel-canvas", "version": "0.1.0"}
