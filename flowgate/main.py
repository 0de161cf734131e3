"""Main FastAPI application for the workflow engine."""

import os
from contextlib import asynccontextmanager
from typing import Callable, Dict, Optional

from fastapi import FastAPI

from flowgate.api.endpoints import init_dependencies, router
from flowgate.config import AppConfig, load_config
from flowgate.core.execution_engine import ExecutionEngine
from flowgate.core.logging import get_logger, setup_logging
from flowgate.core.node_executor import NodeExecutor
from flowgate.core.tool_registry import ToolRegistry
from flowgate.integrations.task_client import ExternalTaskClient
from flowgate.llm.base import LLMProvider
from flowgate.storage.database import build_engine, create_session_factory, create_tables
from flowgate.storage.execution_store import ExecutionStore
from flowgate.tools.task_poller import TASK_STATUS_POLLER, make_task_status_poller


def _build_llm_provider(config: AppConfig) -> Optional[LLMProvider]:
    logger = get_logger(__name__)
    if config.llm_provider != "anthropic":
        logger.warning(f"Unknown language model provider '{config.llm_provider}'; llm and agent nodes will fail")
        return None
    if not os.environ.get("ANTHROPIC_API_KEY"):
        logger.warning("ANTHROPIC_API_KEY is not set; llm and agent nodes will fail")
        return None
    from flowgate.llm.anthropic_provider import AnthropicProvider
    return AnthropicProvider(default_model=config.llm_default_model)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    config: AppConfig = app.state.config
    setup_logging(
        level=config.log_level.value,
        log_file=config.log_file,
        log_format=config.log_format,
        structured=config.log_structured,
        max_size=config.log_max_size,
        backup_count=config.log_backup_count,
    )
    logger = get_logger(__name__)
    logger.info(f"Starting {config.app_name} {config.app_version}")

    db_engine = build_engine(config.database_url, echo=config.database_echo,
                             connect_args=config.get_database_connect_args())
    create_tables(db_engine)
    session_factory = create_session_factory(db_engine)
    logger.info("Database tables created")

    tool_registry = ToolRegistry(session_factory)
    for name, function in app.state.tools.items():
        tool_registry.register_tool(name, function, replace=True)

    task_client = app.state.task_client
    owns_task_client = task_client is None
    if owns_task_client:
        task_client = ExternalTaskClient(
            timeout=config.task_request_timeout,
            status_url_template=config.task_status_url_template,
        )
    tool_registry.register_tool(
        TASK_STATUS_POLLER,
        make_task_status_poller(task_client, config.poll_interval_seconds, config.poll_max_wait_seconds),
        description="Waits until an external approval task is decided and returns the decision",
        input_schema={
            "type": "object",
            "properties": {
                "taskId": {"type": "string"},
                "pollInterval": {"type": "number"},
                "maxWait": {"type": "number"},
            },
            "required": ["taskId"],
        },
        replace=True,
    )

    llm_provider = app.state.llm_provider or _build_llm_provider(config)
    node_executor = NodeExecutor(
        tool_registry,
        llm_provider=llm_provider,
        default_model=config.llm_default_model,
        default_timeout=config.node_timeout,
    )
    execution_engine = ExecutionEngine(
        store=ExecutionStore(session_factory),
        node_executor=node_executor,
        config=config,
        task_client=task_client,
    )

    init_dependencies(execution_engine=execution_engine, tool_registry=tool_registry)
    app.state.execution_engine = execution_engine
    logger.info("Core components initialized")

    execution_engine.start()
    await execution_engine.recover_interrupted_executions()

    yield

    # Shutdown
    logger.info(f"Shutting down {config.app_name}")
    try:
        await execution_engine.shutdown()
        logger.info("Execution engine shutdown completed")
    except Exception as e:
        logger.error(f"Error during execution engine shutdown: {str(e)}")
    if owns_task_client:
        await task_client.close()
    db_engine.dispose()


def create_app(
    config: Optional[AppConfig] = None,
    tools: Optional[Dict[str, Callable]] = None,
    llm_provider: Optional[LLMProvider] = None,
    task_client: Optional[ExternalTaskClient] = None
) -> FastAPI:
    """
    Build the application.

    Args:
        config: Settings; loaded from ``.env`` and the environment when omitted
        tools: Tools registered at startup, by name
        llm_provider: Language model provider; Anthropic when omitted and configured
        task_client: External task system client; an HTTP client when omitted
    """
    config = config or load_config()
    app = FastAPI(
        title=config.app_name,
        description="Asynchronous workflow engine with human review checkpoints",
        version=config.app_version,
        lifespan=lifespan
    )
    app.state.config = config
    app.state.tools = dict(tools or {})
    app.state.llm_provider = llm_provider
    app.state.task_client = task_client

    # Include API router
    app.include_router(router)

    @app.get("/")
    async def root():
        """Root endpoint for health check."""
        return {"message": f"{config.app_name} is running"}

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        engine = getattr(app.state, "execution_engine", None)
        return {
            "status": "healthy",
            "service": "flowgate",
            "version": config.app_version,
            "active_executions": engine.get_active_executions() if engine is not None else 0,
            "timeout_sweep_running": engine.sweeper.is_running if engine is not None else False,
        }

    return app


if __name__ == "__main__":
    import uvicorn
    settings = load_config()
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)
