"""
Backend Router - picks a backend for a model name and builds it.

Resolution order:
1. An explicit backend that is registered
2. The first keyword-table entry whose keyword is a case-insensitive
   substring of the model name and whose backend is registered
3. The configured default backend
"""

import logging
from typing import Dict, List, Optional, Tuple

from backends import ChatBackend, get_backend
from config import BackendSettings
from errors import ErrorCode, ValidationError

logger = logging.getLogger(__name__)

# Ordered: more specific entries first ("openrouter/" before any model
# keyword it may contain, openai and ollama last because their keywords
# are short and generic).
KEYWORD_TABLE: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("openrouter", ("openrouter/",)),
    ("claude", ("claude",)),
    ("deepseek", ("deepseek",)),
    ("gemini", ("gemini",)),
    ("grok", ("grok",)),
    ("glm", ("glm",)),
    ("kimi", ("kimi",)),
    ("minimax", ("minimax",)),
    ("qwen", ("qwen",)),
    ("openai", ("gpt", "o1", "o3", "o4", "chatgpt")),
    ("ollama", ("llama", "gemma", "phi", "mistral", "codellama", "vicuna")),
)


class BackendRouter:
    """Resolves backend names and constructs chat backends."""

    def __init__(self, settings: Dict[str, BackendSettings], default_backend: str = "openai"):
        self._settings = dict(settings)
        self.default_backend = default_backend
        if default_backend not in self._settings:
            logger.warning(f"Default backend {default_backend!r} is not registered")

    def is_registered(self, backend_name: str) -> bool:
        return backend_name in self._settings

    def registered_backends(self) -> List[str]:
        return sorted(self._settings)

    def resolve_backend(self, model_name: str, explicit_backend: Optional[str] = None) -> str:
        if explicit_backend:
            if self.is_registered(explicit_backend):
                return explicit_backend
            logger.warning(f"Requested backend {explicit_backend!r} is not registered, falling back to keywords")

        lowered = model_name.lower()
        for backend_name, keywords in KEYWORD_TABLE:
            if not self.is_registered(backend_name):
                continue
            if any(keyword in lowered for keyword in keywords):
                return backend_name

        return self.default_backend

    def settings_for(self, backend_name: str) -> BackendSettings:
        """Connection settings, borrowing the default backend's when a
        non-default backend has neither base URL nor API key."""
        settings = self._settings[backend_name]
        if backend_name != self.default_backend and not settings.has_credentials:
            fallback = self._settings.get(self.default_backend)
            if fallback is not None and fallback.has_credentials:
                logger.debug(f"Backend {backend_name} borrows {self.default_backend} credentials")
                return BackendSettings(name=backend_name, base_url=fallback.base_url, api_key=fallback.api_key)
        return settings

    def create_adapter(self, backend_name: str, model_name: str, apply_policy: bool = True) -> ChatBackend:
        if not self.is_registered(backend_name):
            raise ValidationError(
                f"unknown backend: {backend_name}",
                code=ErrorCode.VALIDATION_UNKNOWN_BACKEND,
                parameter="backend",
                received=backend_name,
            )

        backend = get_backend(backend_name, model_name, self.settings_for(backend_name), apply_policy=apply_policy)
        logger.debug(f"Created {backend!r} (policy={'on' if apply_policy else 'off'})")
        return backend
