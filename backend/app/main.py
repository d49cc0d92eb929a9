import asyncio
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.database import engine, Base
from app.routers import activity, drills, progress, session
from app.services.generation_service import build_default_generator


@asynccontextmanager
async def lifespan(app: FastAPI):
    alembic_ini = Path(__file__).resolve().parent.parent / "alembic.ini"
    if alembic_ini.exists() and os.environ.get("YOMU_SKIP_MIGRATIONS") != "1":
        # Dispose engine pool to avoid SQLite locking conflicts with alembic
        engine.dispose()
        await asyncio.to_thread(_run_alembic, alembic_ini)
    else:
        Base.metadata.create_all(bind=engine)
    app.state.drill_generator = build_default_generator()
    yield
    app.state.drill_generator.cache.clear()


def _run_alembic(alembic_ini: Path):
    if settings.database_url.startswith("sqlite:///"):
        import sqlite3
        # Checkpoint WAL before alembic to avoid lock contention
        db_path = settings.database_url.replace("sqlite:///", "")
        conn = sqlite3.connect(db_path)
        conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
        conn.close()

    from alembic import command
    from alembic.config import Config
    alembic_cfg = Config(str(alembic_ini))
    alembic_cfg.set_main_option("script_location", str(alembic_ini.parent / "alembic"))
    command.upgrade(alembic_cfg, "head")


app = FastAPI(title="Yomu Japanese Practice API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(session.router)
app.include_router(drills.router)
app.include_router(progress.router)
app.include_router(activity.router)


@app.get("/")
def root():
    return {"app": "yomu", "version": "0.1.0"}
