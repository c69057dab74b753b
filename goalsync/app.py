"""
GoalSync - FastAPI Application Entrypoint

This module initializes the FastAPI application with:
- CORS and security middleware
- Authentication, user, admin and realtime routes
- Database lifecycle management
- The expired-session sweeper

Usage:
    uvicorn goalsync.app:app
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from goalsync.admin.routes import router as admin_router
from goalsync.auth.credentials import CredentialStore
from goalsync.auth.database import get_engine, get_session_factory, init_db
from goalsync.auth.email import EmailSender, LoggingEmailSender
from goalsync.auth.routes import router as auth_router, users_router
from goalsync.auth.service import AuthService
from goalsync.auth.sessions import SessionRegistry, SessionSweeper
from goalsync.auth.tokens import TokenService
from goalsync.config import Settings, settings as default_settings
from goalsync.gateway.error_handling import register_exception_handlers
from goalsync.gateway.middleware import SecurityMiddleware
from goalsync.logging import configure_logging, get_logger
from goalsync.realtime.routes import router as realtime_router
from goalsync.realtime.tracker import ConnectionTracker


logger = get_logger(__name__)

VERSION = "0.1.0"


def create_app(
    settings: Optional[Settings] = None,
    engine=None,
    email_sender: Optional[EmailSender] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Defaults to settings loaded from the environment
        engine: Pre-built SQLAlchemy engine (tests pass an in-memory one)
        email_sender: Defaults to LoggingEmailSender
    """
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup:
            - Configure logging
            - Initialize SQLModel database (users, credentials, sessions)
            - Build the auth services and the connection tracker
            - Refuse to start without signing secrets
            - Start the expired-session sweeper

        Shutdown:
            - Stop the sweeper and dispose of an engine we created
        """
        configure_logging(settings.LOG_LEVEL, settings.LOG_JSON, settings.LOG_DEV_MODE)

        db_engine = engine if engine is not None else get_engine(settings.DATABASE_URL)
        init_db(db_engine)
        session_factory = get_session_factory(db_engine)

        sessions = SessionRegistry(session_factory)
        tokens = TokenService.from_settings(settings, sessions)
        tokens.check_configuration()

        tracker = ConnectionTracker()
        credentials = CredentialStore(session_factory, settings.BCRYPT_WORK_FACTOR)

        app.state.settings = settings
        app.state.db_engine = db_engine
        app.state.db_session_factory = session_factory
        app.state.tracker = tracker
        app.state.auth_service = AuthService(
            credentials=credentials,
            sessions=sessions,
            tokens=tokens,
            tracker=tracker,
            email_sender=email_sender
            or LoggingEmailSender(settings.FRONTEND_URL, expose_links=settings.LOG_DEV_MODE),
        )

        sweeper = SessionSweeper(sessions, settings.SESSION_SWEEP_INTERVAL_SECONDS)
        sweeper.start()
        app.state.sweeper = sweeper
        logger.info("application_started", version=VERSION)

        yield

        await sweeper.stop()
        session_factory.close()
        if engine is None:
            db_engine.dispose()
        logger.info("application_stopped")

    app = FastAPI(
        title="GoalSync",
        description="Session and realtime core of the GoalSync productivity backend",
        version=VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "PUT", "PATCH"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    )
    app.add_middleware(SecurityMiddleware)

    register_exception_handlers(app)

    app.include_router(auth_router, prefix="/api")
    app.include_router(users_router, prefix="/api")
    app.include_router(admin_router, prefix="/api")
    app.include_router(realtime_router)

    @app.get("/health")
    async def health_check():
        """Liveness plus the number of live realtime connections."""
        return {
            "status": "healthy",
            "version": VERSION,
            "realtime_connections": app.state.tracker.connection_count(),
        }

    return app


app = create_app()
