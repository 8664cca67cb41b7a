import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from alembic.util import CommandError
from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
import uvicorn

from labtrack.config import settings
from labtrack.errors import LimsError
from labtrack.routers import catalog, dashboard, orders, patients
from labtrack.seed.test_catalog import load_tests
from labtrack.services.catalog import TestCatalog
from labtrack.services.lifecycle import LifecycleStore
from labtrack.services.persistence import SqlSnapshotStore, build_snapshot_store

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _migrate_snapshot_table(engine: Engine) -> str | None:
    """Upgrade the sql backend to the alembic head.

    Returns a warning instead of raising, so an unreachable or unmigratable
    database still starts the service with an empty store.
    """
    alembic_cfg = Config(str(PROJECT_ROOT / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    expected = set(ScriptDirectory.from_config(alembic_cfg).get_heads())
    where = engine.url.render_as_string(hide_password=True)

    try:
        with engine.begin() as connection:
            current = set(MigrationContext.configure(connection).get_current_heads())
            if current == expected:
                return None
            logger.info(
                "Upgrading snapshot database at %s from %s to %s", where, sorted(current) or ["<none>"], sorted(expected)
            )
            alembic_cfg.attributes["connection"] = connection
            command.upgrade(alembic_cfg, "head")
    except (SQLAlchemyError, CommandError) as exc:
        warning = f"Snapshot database at {where} could not be migrated: {exc}"
        logger.warning("%s; snapshots will not be saved until it is fixed", warning)
        return warning
    return None


@asynccontextmanager
async def lifespan(app: FastAPI):
    snapshots = build_snapshot_store(settings)
    migration_warning = None
    if isinstance(snapshots, SqlSnapshotStore):
        migration_warning = _migrate_snapshot_table(snapshots.engine)

    app.state.catalog = TestCatalog(load_tests(settings.test_catalog_path), settings.catalog_fuzzy_threshold)
    store = LifecycleStore.open(snapshots)
    if migration_warning:
        store.persistence_warning = migration_warning
    app.state.store = store
    logger.info(
        "Lifecycle store ready: %d patients, %d orders (%s backend)",
        len(store.list_patients()),
        len(store.list_orders()),
        settings.storage_backend,
    )

    yield

    if not store.flush():
        logger.warning("Shutting down with unsaved changes: %s", store.persistence_warning)


app = FastAPI(title="Lab Order Lifecycle API", version="0.1.0", lifespan=lifespan)

allowed_origins = [origin.strip() for origin in settings.allowed_origins.split(",") if origin.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
def root():
    return {"statusCode": 200, "message": "Success", "data": {"status": "ok", "service": "labtrack"}}


@app.get("/health")
def health():
    return {
        "status": "ok",
        "service": "labtrack",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


_ERROR_NAMES = {
    400: "BadRequest",
    404: "NotFound",
    409: "InvalidTransition",
    422: "ValidationError",
    503: "PersistenceError",
}


def _error_response(status_code: int, message: str, error: str | None = None, details: Any = None) -> JSONResponse:
    if error is None:
        error = _ERROR_NAMES.get(status_code, "InternalServerError" if status_code >= 500 else "HTTPError")
    content = {"statusCode": status_code, "message": message, "error": error}
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(LimsError)
async def lims_exception_handler(_: Request, exc: LimsError):
    return _error_response(exc.status_code, exc.message, exc.code, jsonable_encoder(exc.detail))


@app.exception_handler(HTTPException)
async def http_exception_handler(_: Request, exc: HTTPException):
    return _error_response(exc.status_code, str(exc.detail) if exc.detail else "Request failed")


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_: Request, exc: RequestValidationError):
    return _error_response(422, "Invalid request payload", details={"errors": jsonable_encoder(exc.errors())})


@app.exception_handler(Exception)
async def unhandled_exception_handler(_: Request, exc: Exception):
    logger.exception("Unhandled server error: %s", exc)
    return _error_response(500, str(exc) or "An unexpected error occurred")


app.include_router(catalog.router)
app.include_router(patients.router)
app.include_router(orders.router)
app.include_router(dashboard.router)


def run() -> None:
    uvicorn.run("labtrack.main:app", host=settings.app_host, port=settings.app_port, reload=settings.app_env == "dev")
