"""
Runtime Configuration for Forkline.

Provides a RuntimeConfig dataclass whose values default from environment
variables and can be adjusted at runtime without a service restart, plus
the per-backend credential loader.

Usage:
    from config import runtime_config
    db_path = runtime_config.database_path
    runtime_config.update(default_model="gpt-4o-mini")
"""

import json
import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, List, Optional
from threading import Lock

logger = logging.getLogger(__name__)


# Backends the router knows how to build. Order is irrelevant here; keyword
# precedence lives in services.backend_router.
KNOWN_BACKENDS = (
    "openai",
    "claude",
    "deepseek",
    "gemini",
    "grok",
    "glm",
    "kimi",
    "minimax",
    "ollama",
    "openrouter",
    "qwen",
)

DEFAULT_SYSTEM_PROMPT = "You are a friendly AI assistant; answer concisely and clearly."


def _first_env(*keys: str, default: str) -> str:
    """Return the first non-empty environment value from keys, else default."""
    for key in keys:
        value = os.environ.get(key, "").strip()
        if value:
            return value
    return default


@dataclass
class BackendSettings:
    """Connection settings for one named backend."""

    name: str
    base_url: str = ""
    api_key: str = ""

    @property
    def has_credentials(self) -> bool:
        return bool(self.base_url or self.api_key)

    def to_dict(self) -> Dict[str, Any]:
        """Export settings with the API key masked."""
        return {
            "name": self.name,
            "base_url": self.base_url,
            "api_key": "***" if self.api_key else "",
        }


@dataclass
class RuntimeConfig:
    """
    Configuration for runtime-adjustable parameters.

    All values have defaults from environment variables, but can be
    changed at runtime via the update() method.
    """

    # Conversation store
    database_path: str = field(
        default_factory=lambda: os.environ.get("FORKLINE_DB_PATH", "data/sessions.db")
    )

    # Model routing
    default_model: str = field(
        default_factory=lambda: _first_env("FORKLINE_DEFAULT_MODEL", "LLM_CHAT_MODEL", default="gpt-4o-mini")
    )
    default_backend: str = field(
        default_factory=lambda: os.environ.get("FORKLINE_DEFAULT_BACKEND", "openai")
    )
    system_prompt: str = field(
        default_factory=lambda: os.environ.get("FORKLINE_SYSTEM_PROMPT", DEFAULT_SYSTEM_PROMPT)
    )

    # Config files
    backends_config_path: str = field(
        default_factory=lambda: os.environ.get("FORKLINE_BACKENDS_CONFIG", "configs/backends.json")
    )  # {name: {base_url, api_key}}
    capabilities_path: str = field(
        default_factory=lambda: os.environ.get("FORKLINE_CAPABILITIES_PATH", "configs/model_capabilities.json")
    )

    # Server
    log_level: str = field(default_factory=lambda: os.environ.get("LOG_LEVEL", "INFO").upper())
    cors_origins: str = field(
        default_factory=lambda: os.environ.get("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")
    )

    # Tree listing
    snippet_chars: int = field(default_factory=lambda: int(os.environ.get("FORKLINE_SNIPPET_CHARS", "100")))

    # Internal state
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)
    _update_count: int = field(default=0, repr=False)

    def update(self, **kwargs) -> Dict[str, Any]:
        """
        Update configuration values at runtime.

        Args:
            **kwargs: Key-value pairs to update (e.g., default_model="gpt-4o")

        Returns:
            Dict with 'updated' (changed keys) and 'ignored' (unknown keys)
        """
        updated = []
        ignored = []

        with self._lock:
            for key, value in kwargs.items():
                if key.startswith("_") or not hasattr(self, key):
                    ignored.append(key)
                    logger.warning(f"Config ignored unknown key: {key}")
                    continue

                if key == "snippet_chars" and (not isinstance(value, int) or value < 1):
                    ignored.append(key)
                    logger.warning(f"Config rejected {key}={value!r} (must be a positive int)")
                    continue

                old_value = getattr(self, key)
                setattr(self, key, value)
                updated.append(key)
                logger.info(f"Config updated: {key} = {value} (was {old_value})")

            self._update_count += 1

        return {"updated": updated, "ignored": ignored}

    def get_cors_origins(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    def to_dict(self) -> Dict[str, Any]:
        """Export current config as dict (excludes internal fields)."""
        from dataclasses import fields as dataclass_fields

        result = {}
        for field_info in dataclass_fields(self):
            if not field_info.name.startswith("_"):
                result[field_info.name] = getattr(self, field_info.name)
        return result

    def load_backend_settings(self, path: Optional[str] = None) -> Dict[str, BackendSettings]:
        """
        Build the registered backend table.

        A backend is registered when it has an entry in the backends JSON file
        or a ``<NAME>_API_KEY`` / ``<NAME>_BASE_URL`` environment variable.
        Environment values win over the file.
        """
        config_path = Path(path or self.backends_config_path)
        file_entries: Dict[str, Any] = {}

        if config_path.exists():
            try:
                loaded = json.loads(config_path.read_text(encoding="utf-8"))
                if isinstance(loaded, dict):
                    file_entries = loaded
                else:
                    logger.warning(f"Backends config {config_path} is not a JSON object, ignoring")
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"Failed to read backends config {config_path}: {e}")

        settings: Dict[str, BackendSettings] = {}
        for name in KNOWN_BACKENDS:
            entry = file_entries.get(name)
            env_key = os.environ.get(f"{name.upper()}_API_KEY", "").strip()
            env_url = os.environ.get(f"{name.upper()}_BASE_URL", "").strip()

            if entry is None and not env_key and not env_url:
                continue

            entry = entry if isinstance(entry, dict) else {}
            settings[name] = BackendSettings(
                name=name,
                base_url=env_url or str(entry.get("base_url", "") or ""),
                api_key=env_key or str(entry.get("api_key", "") or ""),
            )

        unknown = sorted(set(file_entries) - set(KNOWN_BACKENDS))
        if unknown:
            logger.warning(f"Backends config has unknown entries: {', '.join(unknown)}")

        logger.info(f"Registered backends: {', '.join(settings) or 'none'}")
        return settings


# Singleton instance
runtime_config = RuntimeConfig()
