"""Migration control plane service entry point.

Initializes the FastAPI application with:
- SQLAlchemy async engine and the cp_ tables for durable state
- Alert notifier (webhook when configured, structured log otherwise)
- ControlPlaneFacade with its background health evaluation loop
- Error mapping from control plane errors to HTTP status codes
"""

from collections.abc import AsyncGenerator, Iterable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from migration_control_plane.adapters.notifier import LoggingNotifier, WebhookNotifier
from migration_control_plane.adapters.sql_store import (
    SqlControlPlaneStore,
    create_engine_and_session_factory,
    init_schema,
)
from migration_control_plane.api.router import router
from migration_control_plane.errors import (
    ConcurrentPolicyUpdate,
    ControlPlaneError,
    NotFoundError,
    SagaAlreadyRunning,
    ValidationError,
)
from migration_control_plane.facade import ControlPlaneFacade
from migration_control_plane.observability import configure_logging, get_logger
from migration_control_plane.saga.definition import SagaDefinition
from migration_control_plane.settings import Settings

logger = get_logger(__name__)

_STATUS_BY_ERROR: dict[type[ControlPlaneError], int] = {
    NotFoundError: 404,
    ValidationError: 422,
    ConcurrentPolicyUpdate: 409,
    SagaAlreadyRunning: 409,
}


async def control_plane_error_handler(request: Request, exc: ControlPlaneError) -> JSONResponse:
    """Translate a ControlPlaneError into a JSON error response.

    Args:
        request: The failed request.
        exc: The raised error.

    Returns:
        JSONResponse with the mapped status code (500 for unmapped errors).
    """
    status_code = next(
        (code for error_type, code in _STATUS_BY_ERROR.items() if isinstance(exc, error_type)),
        500,
    )
    if status_code == 500:
        logger.error("Unhandled control plane error", path=request.url.path, error=exc.message)
    return JSONResponse(
        status_code=status_code,
        content={
            "error": type(exc).__name__,
            "detail": exc.message,
            "context": {key: value for key, value in exc.context.items() if value is not None},
        },
    )


def create_app(
    settings: Settings | None = None,
    saga_definitions: Iterable[SagaDefinition] = (),
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Service settings. Read from the environment when None.
        saga_definitions: Saga definitions registered before startup, so their
            in-flight instances are reconciled and they can be executed by name.

    Returns:
        The configured application.
    """
    settings = settings or Settings()
    definitions = tuple(saga_definitions)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Manage application startup and shutdown lifecycle.

        Creates the database engine and schema, the notifier and the facade on
        startup. Stops the health loop and disposes connections on shutdown.

        Args:
            app: The FastAPI application instance.

        Yields:
            None
        """
        configure_logging(settings.log_level, json_output=settings.log_json)

        # Startup: storage
        logger.info("Initializing control plane database", service=settings.service_name)
        engine, session_factory = create_engine_and_session_factory(
            settings.database_url,
            echo=settings.database_echo,
        )
        await init_schema(engine)
        store = SqlControlPlaneStore(session_factory)

        # Startup: alerting
        if settings.alert_webhook_url:
            notifier: LoggingNotifier | WebhookNotifier = WebhookNotifier(
                settings.alert_webhook_url,
                timeout_ms=settings.alert_timeout_ms,
                service_name=settings.service_name,
            )
        else:
            logger.warning("No alert webhook configured, alerts are logged only")
            notifier = LoggingNotifier()

        control_plane = ControlPlaneFacade(store, notifier, settings)
        for definition in definitions:
            control_plane.register_saga(definition)
        await control_plane.start()

        # Shared objects on app state for dependency injection
        app.state.control_plane = control_plane
        app.state.settings = settings

        logger.info("Control plane startup complete", service=settings.service_name)

        yield

        # Shutdown
        logger.info("Shutting down control plane")
        await control_plane.stop()
        if isinstance(notifier, WebhookNotifier):
            await notifier.close()
        await engine.dispose()
        logger.info("Control plane shutdown complete")

    app = FastAPI(title=settings.service_name, version="0.1.0", lifespan=lifespan)
    app.add_exception_handler(ControlPlaneError, control_plane_error_handler)  # type: ignore[arg-type]
    app.include_router(router, prefix="/api/v1")
    return app


app: FastAPI = create_app()
