"""Error taxonomy for EdgeChat.

Catalog and model errors block generation until the user switches or retries.
Session errors keep the model loaded. Generation errors are local to one turn.
Cancellation is never represented as an exception here.
"""

from __future__ import annotations


class EdgeChatError(Exception):
    """Base class for all EdgeChat errors."""


class CatalogEmptyError(EdgeChatError):
    """No installed model variant was found. Not recoverable without remediation."""

    def __init__(self, models_dir: str | None = None) -> None:
        self.models_dir = models_dir
        location = f" in {models_dir}" if models_dir else ""
        super().__init__(
            f"No usable model found{location}. "
            "Install a supported model file (see `edgechat models`) and restart."
        )


class ModelLoadError(EdgeChatError):
    """Model file missing/corrupt, SDK missing, or engine construction failed."""


class SessionCreateError(EdgeChatError):
    """The engine accepted the model but rejected the session parameters."""


class EngineError(EdgeChatError):
    """An engine call failed (add chunk, add image, stream, count tokens)."""


class GenerationError(EdgeChatError):
    """A single turn failed mid-stream. The loaded model stays usable."""
