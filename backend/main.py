"""
Forkline - branching conversation router
FastAPI backend over routed LLM backends with SSE streaming
"""

from contextlib import asynccontextmanager
import logging
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import RuntimeConfig, runtime_config
from errors import register_exception_handlers
from logging_config import setup_logging
from routers import chat, sessions
from routers.chat_orchestration import ChatOrchestrator
from services.backend_router import BackendRouter
from services.capabilities import CapabilityRegistry
from services.tree_store import TreeStore

logger = logging.getLogger(__name__)


def build_orchestrator(config: RuntimeConfig) -> ChatOrchestrator:
    """Build the store, capability registry and backend router for one process."""
    Path(config.database_path).parent.mkdir(parents=True, exist_ok=True)
    store = TreeStore(config.database_path, snippet_chars=config.snippet_chars)

    capabilities = CapabilityRegistry(overrides_path=config.capabilities_path)
    router = BackendRouter(config.load_backend_settings(), default_backend=config.default_backend)

    return ChatOrchestrator(store, capabilities, router, config)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown events"""
    config: RuntimeConfig = app.state.config
    setup_logging(config.log_level)

    # Tests inject their own orchestrator before startup
    if getattr(app.state, "orchestrator", None) is None:
        app.state.orchestrator = build_orchestrator(config)

    backends = app.state.orchestrator.router.registered_backends()
    if not backends:
        logger.warning("No backends registered; set <NAME>_API_KEY or FORKLINE_BACKENDS_CONFIG")
    logger.info(f"Forkline ready: store={config.database_path}, default model={config.default_model}")

    yield

    logger.info("Forkline signing off")


def create_app(config: RuntimeConfig = runtime_config) -> FastAPI:
    app = FastAPI(
        title="Forkline",
        description="Branching conversation router for LLM backends",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.orchestrator = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.get_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    app.include_router(chat.router)
    app.include_router(sessions.router)

    @app.get("/health")
    async def health():
        """Store health and registered backends."""
        orchestrator: ChatOrchestrator = app.state.orchestrator
        if orchestrator is None:
            return {"status": "starting", "service": "forkline"}

        store = orchestrator.store.health_check()
        return {
            "status": "healthy" if store.get("status") == "ok" else "degraded",
            "service": "forkline",
            "store": store,
            "backends": orchestrator.router.registered_backends(),
            "default_backend": orchestrator.router.default_backend,
            "default_model": config.default_model,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
