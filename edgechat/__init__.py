"""
EdgeChat: an on-device chat front-end for local text and vision models.

The interesting part is the generation session orchestrator: it owns the model
lifecycle, runs one streaming reply at a time, keeps chat history consistent while
replies are cancelled or superseded, and rebuilds the live session when settings
change. Engines (llama.cpp GGUF files, the Apple on-device model) are adapters
behind a small protocol and load their SDKs lazily.
"""

from .catalog import Backend, ModelCatalog, ModelIdentifier
from .controller import (
    GenerationSessionController,
    GenerationState,
    GenerationStats,
    GenerationTask,
)
from .exceptions import (
    CatalogEmptyError,
    EdgeChatError,
    EngineError,
    GenerationError,
    ModelLoadError,
    SessionCreateError,
)
from .history import ChatHistory
from .lifecycle import LoadedModel, ModelLifecycleManager
from .messages import Message
from .settings import SessionConfig, SettingsStore

__all__ = [
    "Backend",
    "CatalogEmptyError",
    "ChatHistory",
    "EdgeChatError",
    "EngineError",
    "GenerationError",
    "GenerationSessionController",
    "GenerationState",
    "GenerationStats",
    "GenerationTask",
    "LoadedModel",
    "Message",
    "ModelCatalog",
    "ModelIdentifier",
    "ModelLifecycleManager",
    "ModelLoadError",
    "SessionConfig",
    "SessionCreateError",
    "SettingsStore",
]
