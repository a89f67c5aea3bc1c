"""Application factory for creating FastAPI instances."""

from contextlib import asynccontextmanager
from typing import Optional

import requests
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.endpoints import init_dependencies, router
from .config import AppConfig, get_config, validate_config
from .core.conditions import ConditionalLogicEngine
from .core.execution_engine import ExecutionEngine
from .core.graph_manager import GraphManager
from .core.logging import get_logger, setup_logging
from .core.validator import WorkflowValidator
from .storage.database import create_database_engine, create_session_factory, create_tables
from .storage.history import InMemoryHistorySink, SqlAlchemyHistorySink
from .storage.kv_store import InMemoryKeyValueStore, SqlAlchemyKeyValueStore

logger = get_logger(__name__)


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.graph_manager: Optional[GraphManager] = None
        self.execution_engine: Optional[ExecutionEngine] = None
        self.database_engine = None


# Global application state
app_state = ApplicationState()


def initialize_core_components(config: AppConfig) -> ApplicationState:
    """Build storage, the graph manager and the execution engine from ``config``."""
    state = ApplicationState()
    state.config = config

    if config.uses_database:
        database_engine = create_database_engine(
            config.database_url,
            echo=config.database_echo,
            connect_args=config.get_database_connect_args(),
        )
        create_tables(database_engine)
        session_factory = create_session_factory(database_engine)
        store = SqlAlchemyKeyValueStore(session_factory)
        history = SqlAlchemyHistorySink(session_factory)
        state.database_engine = database_engine
        logger.info("Database tables created")
    else:
        store = InMemoryKeyValueStore()
        history = InMemoryHistorySink(config.history_limit)
        logger.info("Using in-memory storage")

    conditions = ConditionalLogicEngine(
        allow_scripts=config.allow_script_conditions,
        default_max_iterations=config.default_max_iterations,
    )
    state.graph_manager = GraphManager(store=store, validator=WorkflowValidator(conditions))
    state.execution_engine = ExecutionEngine(
        graph_manager=state.graph_manager,
        config=config,
        conditions=conditions,
        history_sink=history,
        http_session=requests.Session(),
    )
    logger.info("Core components initialized")
    return state


def graceful_shutdown(state: ApplicationState) -> None:
    """Handle graceful shutdown of application components."""
    logger.info("Shutting down workflow core")
    try:
        if state.execution_engine is not None:
            state.execution_engine.shutdown()
    except Exception as e:
        logger.error(f"Error during execution engine shutdown: {str(e)}")
    if state.database_engine is not None:
        state.database_engine.dispose()


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Create and configure FastAPI application instance."""
    if config is None:
        config = get_config()

    validate_config(config)

    setup_logging(
        level=config.log_level.value,
        log_file=config.log_file,
        log_format=config.log_format,
        structured=config.log_structured,
        max_size=config.log_max_size,
        backup_count=config.log_backup_count,
    )
    logger.info(f"Starting {config.app_name} v{config.app_version}")

    state = initialize_core_components(config)
    app_state.config = state.config
    app_state.graph_manager = state.graph_manager
    app_state.execution_engine = state.execution_engine
    app_state.database_engine = state.database_engine
    init_dependencies(graph_manager=state.graph_manager, execution_engine=state.execution_engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Application startup completed successfully")
        yield
        graceful_shutdown(state)

    app = FastAPI(
        title=config.app_name,
        description="Directed-graph workflow orchestration with branching, loops, retries and bounded concurrency",
        version=config.app_version,
        debug=config.debug,
        lifespan=lifespan,
    )
    app.state.components = state

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    app.include_router(router)
    add_health_endpoints(app, config)
    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    """Add health check endpoints to the application."""

    @app.get("/")
    async def root():
        """Root endpoint for basic health check."""
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        """Basic health check endpoint."""
        engine = app.state.components.execution_engine
        return {
            "status": "healthy",
            "service": config.app_name.lower().replace(" ", "-"),
            "version": config.app_version,
            "queue": engine.get_execution_queue_status(),
        }


def get_app_state() -> ApplicationState:
    """Get the current application state."""
    return app_state
