import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlmodel import Session

import config
from audit import AuditLogStore, AuditMiddleware
from database import init_db, make_engine, make_log_collection, seed_admin
from errors import register_exception_handlers
from routers import auth, categories, goals, logs, tags, transactions, users

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(engine=None, log_collection=None) -> FastAPI:
    """Build the API. Stores default to the configured URLs."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_db(app.state.engine)
        seed_admin(app.state.engine)
        logger.info("Finance API ready on prefix %s", config.API_PREFIX)
        yield

    app = FastAPI(title="Finance Backend", version="1.0.0", lifespan=lifespan)
    app.state.engine = engine if engine is not None else make_engine()
    app.state.log_store = AuditLogStore(log_collection if log_collection is not None else make_log_collection())

    # ----------------------
    # Middleware & Errors
    # ----------------------
    app.add_middleware(AuditMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    for module in (auth, users, transactions, categories, tags, goals, logs):
        app.include_router(module.router, prefix=config.API_PREFIX)

    # ----------------------
    # Health & Status
    # ----------------------
    @app.get("/")
    def read_root():
        return {"message": "Finance Backend Running", "version": app.version, "documentation": app.docs_url}

    @app.get("/health")
    def health():
        return {"ok": True}

    @app.get("/status")
    def database_status(request: Request):
        """Check that both stores are reachable."""
        response = {
            "backend": "running",
            "database": "not available",
            "log_store": "not available",
        }
        try:
            with Session(request.app.state.engine) as session:
                session.exec(text("SELECT 1"))
            response["database"] = "connected"
        except Exception as e:
            logger.warning("Database check failed: %s", e)
            response["database"] = f"error: {str(e)[:50]}"

        try:
            response["log_store"] = "connected"
            response["log_count"] = request.app.state.log_store.count({})
        except Exception as e:
            logger.warning("Log store check failed: %s", e)
            response["log_store"] = f"error: {str(e)[:50]}"

        return response

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
