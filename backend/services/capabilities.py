"""
Per-backend capability registry and outbound content filter.

Built-in entries cover backends known to be text-only or to break when
streamed. A JSON override file (same shape, keyed by backend or model name)
is merged on top; its entries win. Names that are not registered get the
permissive default: every modality, streaming allowed.

Override file example:
    {
        "deepseek": {"supported_modalities": {"text": true, "image": false}},
        "my-image-model": {"supported_modalities": ["text", "image"], "requires_non_streaming": true}
    }
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional

from services.messages import (
    MODALITY_PLACEHOLDER,
    ChatMessage,
    MessagePart,
    Modality,
)

logger = logging.getLogger(__name__)

ALL_MODALITIES: FrozenSet[Modality] = frozenset(Modality)


@dataclass(frozen=True)
class ModelCapabilities:
    """What a backend accepts and whether its stream can be trusted."""

    supported_modalities: FrozenSet[Modality] = field(default_factory=lambda: ALL_MODALITIES)
    requires_non_streaming: bool = False

    def supports(self, modality: Optional[Modality]) -> bool:
        # Parts without a modality (files) always pass
        return modality is None or modality in self.supported_modalities

    @property
    def is_restricted(self) -> bool:
        return self.supported_modalities != ALL_MODALITIES

    def to_dict(self) -> dict:
        return {
            "supported_modalities": {m.value: m in self.supported_modalities for m in Modality},
            "requires_non_streaming": self.requires_non_streaming,
        }


PERMISSIVE = ModelCapabilities()

# Image generation models whose streaming endpoints are unreliable; they
# are called once and the answer is replayed as a simulated stream.
NON_STREAMING_IMAGE_MODELS = (
    "gemini-3-pro-image-preview",
    "gemini-2.5-flash-image",
)


def default_capabilities() -> Dict[str, ModelCapabilities]:
    defaults = {"deepseek": ModelCapabilities(supported_modalities=frozenset({Modality.TEXT}))}
    for model in NON_STREAMING_IMAGE_MODELS:
        defaults[model] = ModelCapabilities(requires_non_streaming=True)
    return defaults


def parse_capabilities(raw: dict) -> ModelCapabilities:
    """Build ModelCapabilities from one override-file entry.

    ``supported_modalities`` may be a {modality: bool} map (absent keys are
    unsupported) or a list of supported modality names. Unknown modality
    names are ignored.
    """
    if not isinstance(raw, dict):
        raise ValueError(f"capability entry must be an object, got {type(raw).__name__}")

    modalities_raw = raw.get("supported_modalities")
    if modalities_raw is None:
        modalities = ALL_MODALITIES
    elif isinstance(modalities_raw, dict):
        names = [name for name, enabled in modalities_raw.items() if enabled]
        modalities = frozenset(Modality(n) for n in names if n in Modality._value2member_map_)
    elif isinstance(modalities_raw, list):
        modalities = frozenset(Modality(n) for n in modalities_raw if n in Modality._value2member_map_)
    else:
        raise ValueError("supported_modalities must be an object or a list")

    return ModelCapabilities(
        supported_modalities=modalities,
        requires_non_streaming=bool(raw.get("requires_non_streaming", False)),
    )


class CapabilityRegistry:
    """Name -> ModelCapabilities table, built once at startup."""

    def __init__(self, overrides_path: Optional[str | Path] = None, include_defaults: bool = True):
        self._capabilities: Dict[str, ModelCapabilities] = default_capabilities() if include_defaults else {}
        if overrides_path:
            self.load_overrides(overrides_path)

    def load_overrides(self, path: str | Path) -> int:
        """Merge entries from a JSON file. Returns how many were applied.

        Missing or malformed files are logged and leave the table unchanged.
        """
        path = Path(path)
        if not path.exists():
            logger.debug(f"No capability overrides at {path}")
            return 0

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring capability overrides {path}: {e}")
            return 0

        if not isinstance(data, dict):
            logger.warning(f"Ignoring capability overrides {path}: top level must be an object")
            return 0

        applied = 0
        for name, raw in data.items():
            try:
                self._capabilities[name] = parse_capabilities(raw)
                applied += 1
            except ValueError as e:
                logger.warning(f"Ignoring capability entry {name!r}: {e}")

        logger.info(f"Capability overrides loaded: {applied} entries from {path}")
        return applied

    def register(self, name: str, capabilities: ModelCapabilities) -> None:
        self._capabilities[name] = capabilities

    def get(self, name: str) -> ModelCapabilities:
        """Capabilities for name, or the permissive default."""
        return self._capabilities.get(name, PERMISSIVE)

    def lookup(self, *names: str) -> ModelCapabilities:
        """First registered entry among names (e.g. model before backend)."""
        for name in names:
            if name and name in self._capabilities:
                return self._capabilities[name]
        return PERMISSIVE

    def supports_modality(self, name: str, modality: Modality) -> bool:
        return self.get(name).supports(modality)

    def requires_non_streaming(self, name: str) -> bool:
        return self.get(name).requires_non_streaming

    def to_dict(self) -> dict:
        return {name: caps.to_dict() for name, caps in sorted(self._capabilities.items())}


def _filter_input_parts(parts: List[MessagePart], capabilities: ModelCapabilities) -> List[MessagePart]:
    filtered = []
    for part in parts:
        modality = part.modality
        if capabilities.supports(modality):
            filtered.append(part)
        elif modality in MODALITY_PLACEHOLDER:
            filtered.append(MessagePart.text_part(MODALITY_PLACEHOLDER[modality]))
        # unsupported text parts are dropped
    return filtered


def filter_multimodal_content(messages: List[ChatMessage], capabilities: ModelCapabilities) -> List[ChatMessage]:
    """Rewrite history so it only carries modalities the backend accepts.

    Returns copies; the input messages are not modified.
    """
    if not capabilities.is_restricted:
        return list(messages)

    filtered = []
    for msg in messages:
        copy = msg.model_copy(deep=True)

        if copy.user_input_multi_content:
            copy.user_input_multi_content = _filter_input_parts(copy.user_input_multi_content, capabilities)

        if copy.assistant_gen_multi_content:
            kept = []
            placeholders = []
            for part in copy.assistant_gen_multi_content:
                if capabilities.supports(part.modality):
                    kept.append(part)
                elif part.modality in MODALITY_PLACEHOLDER:
                    placeholders.append(MODALITY_PLACEHOLDER[part.modality])
            copy.assistant_gen_multi_content = kept
            if placeholders:
                summary = " ".join(placeholders)
                copy.content = f"{copy.content}\n{summary}" if copy.content else summary

        if copy.reasoning_content and not capabilities.supports(Modality.TEXT):
            copy.reasoning_content = ""
            copy.content += "\n[Reasoning Content]"

        filtered.append(copy)

    return filtered
