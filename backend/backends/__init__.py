"""Chat backends - factory for backend instances."""

import importlib

from config import BackendSettings
from errors import DependencyError
from backends.base import ChatBackend, IncrementalStream

# module -> (SDK distribution, backend class)
_BACKEND_MODULES = {
    "backends.openai_compat": ("openai", "OpenAIChatBackend"),
    "backends.openai_responses": ("openai", "OpenAIResponsesBackend"),
    "backends.anthropic": ("anthropic", "AnthropicBackend"),
    "backends.gemini": ("google-genai", "GeminiBackend"),
}


def _load(module_name: str) -> type:
    package, class_name = _BACKEND_MODULES[module_name]
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise DependencyError(
            f"{package} package not installed",
            str(e),
            package=package,
            install_hint=f"pip install {package}",
        ) from e
    return getattr(module, class_name)


def get_backend(backend_name: str, model: str, settings: BackendSettings, apply_policy: bool = True) -> ChatBackend:
    """Create a chat backend instance.

    Args:
        backend_name: Registered backend name ("openai", "claude", "gemini", ...)
        model: Model identifier passed to the provider
        settings: Connection settings (base_url, api_key)
        apply_policy: Whether to inject thinking parameters

    Raises:
        DependencyError: The provider SDK is not installed
    """
    if backend_name == "openai":
        cls = _load("backends.openai_responses")
        from backends.openai_responses import should_use_responses_api

        if not should_use_responses_api(model):
            cls = _load("backends.openai_compat")
    elif backend_name == "claude":
        cls = _load("backends.anthropic")
    elif backend_name == "gemini":
        cls = _load("backends.gemini")
    else:
        # deepseek, grok, glm, kimi, minimax, qwen, ollama, openrouter
        cls = _load("backends.openai_compat")

    return cls(backend_name, model, settings, apply_policy=apply_policy)


__all__ = ["ChatBackend", "IncrementalStream", "get_backend"]
