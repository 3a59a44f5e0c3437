"""
Forkline Services - conversation storage, capabilities and routing.

- messages: Message and content-part models
- tree_store: SQLite conversation trees, branches and messages
- capabilities: Per-model modality support and history filtering
- backend_router: Model name -> backend resolution and construction

backend_router depends on the backends package, which itself imports
services.messages, so it is imported from its module and not re-exported here.
"""

from .capabilities import CapabilityRegistry, ModelCapabilities, filter_multimodal_content
from .messages import ChatMessage, MessagePart, Modality, PartType, Role
from .tree_store import TreeStore

__all__ = [
    "CapabilityRegistry",
    "ModelCapabilities",
    "filter_multimodal_content",
    "ChatMessage",
    "MessagePart",
    "Modality",
    "PartType",
    "Role",
    "TreeStore",
]
