"""Model catalog: the closed set of known model variants and which are installed."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable

from .engines.apple_fm import system_model_available
from .engines.base import EngineOptions
from .exceptions import CatalogEmptyError

logger = logging.getLogger("edgechat")


class Backend(str, Enum):
    LLAMA_CPP = "llama_cpp"
    APPLE_FM = "apple_fm"


@dataclass(frozen=True)
class ModelSpec:
    """Display and storage metadata for one model variant.

    ``vision_chat_handler`` names the llama-cpp-python chat handler that pairs with
    the projector. Gemma 3n needs a Gemma-format handler; when the installed
    llama-cpp-python has none, the model loads text-only.
    """

    display_name: str
    backend: Backend
    filename: str | None = None
    vision_encoder_filename: str | None = None
    vision_adapter_filename: str | None = None
    vision_chat_handler: str | None = None
    max_tokens: int = 4096
    max_images: int = 1


class ModelIdentifier(str, Enum):
    GEMMA3N_E4B = "gemma3n-e4b"
    GEMMA3N_E2B = "gemma3n-e2b"
    GEMMA3_1B = "gemma3-1b"
    APPLE_SYSTEM = "apple-system"

    @property
    def spec(self) -> ModelSpec:
        return _MODEL_SPECS[self]

    @property
    def display_name(self) -> str:
        return self.spec.display_name

    @property
    def filename(self) -> str | None:
        return self.spec.filename

    @property
    def backend(self) -> Backend:
        return self.spec.backend

    @classmethod
    def parse(cls, value: str) -> ModelIdentifier:
        """Resolve an identifier from its value or enum name, case-insensitively."""
        needle = value.strip().lower()
        for identifier in cls:
            if needle in (identifier.value, identifier.name.lower()):
                return identifier
        raise ValueError(f"Unknown model identifier: {value!r}")


_MODEL_SPECS: dict[ModelIdentifier, ModelSpec] = {
    ModelIdentifier.GEMMA3N_E4B: ModelSpec(
        display_name="Gemma 3n E4B",
        backend=Backend.LLAMA_CPP,
        filename="gemma-3n-E4B-it-Q4_K_M.gguf",
        vision_encoder_filename="mmproj-gemma-3n-E4B-it-f16.gguf",
        vision_chat_handler="Gemma3ChatHandler",
    ),
    ModelIdentifier.GEMMA3N_E2B: ModelSpec(
        display_name="Gemma 3n E2B",
        backend=Backend.LLAMA_CPP,
        filename="gemma-3n-E2B-it-Q4_K_M.gguf",
        vision_encoder_filename="mmproj-gemma-3n-E2B-it-f16.gguf",
        vision_chat_handler="Gemma3ChatHandler",
    ),
    ModelIdentifier.GEMMA3_1B: ModelSpec(
        display_name="Gemma 3 1B (text)",
        backend=Backend.LLAMA_CPP,
        filename="gemma-3-1b-it-Q4_K_M.gguf",
        max_images=0,
    ),
    ModelIdentifier.APPLE_SYSTEM: ModelSpec(
        display_name="Apple Foundation Model",
        backend=Backend.APPLE_FM,
        max_images=0,
    ),
}


class ModelCatalog:
    """Discovers installed model variants once, then serves that fixed list.

    File-backed variants are available when their model file exists under
    *models_dir*. Fileless variants ask a per-backend probe.
    """

    def __init__(
        self,
        models_dir: Path,
        probes: dict[Backend, Callable[[], bool]] | None = None,
    ) -> None:
        self.models_dir = Path(models_dir)
        self._probes = probes if probes is not None else {Backend.APPLE_FM: system_model_available}
        self._available: tuple[ModelIdentifier, ...] | None = None

    def _is_installed(self, identifier: ModelIdentifier) -> bool:
        spec = identifier.spec
        if spec.filename is not None:
            return (self.models_dir / spec.filename).is_file()
        probe = self._probes.get(spec.backend)
        return bool(probe and probe())

    def available_models(self) -> list[ModelIdentifier]:
        """Installed identifiers in declaration order; discovered on first call."""
        if self._available is None:
            self._available = tuple(m for m in ModelIdentifier if self._is_installed(m))
            logger.info(
                "[EdgeChat Catalog] %d model(s) available in %s: %s",
                len(self._available),
                self.models_dir,
                ", ".join(m.value for m in self._available) or "none",
            )
        return list(self._available)

    def require_available(self) -> list[ModelIdentifier]:
        """Like ``available_models`` but raises ``CatalogEmptyError`` when empty."""
        models = self.available_models()
        if not models:
            raise CatalogEmptyError(str(self.models_dir))
        return models

    def is_available(self, identifier: ModelIdentifier) -> bool:
        return identifier in self.available_models()

    def model_path(self, identifier: ModelIdentifier) -> Path | None:
        filename = identifier.spec.filename
        return None if filename is None else self.models_dir / filename

    def _optional_path(self, filename: str | None) -> Path | None:
        if filename is None:
            return None
        path = self.models_dir / filename
        return path if path.is_file() else None

    def engine_options(self, identifier: ModelIdentifier) -> EngineOptions:
        """Engine options for *identifier*; vision files are passed only if present."""
        spec = identifier.spec
        encoder = self._optional_path(spec.vision_encoder_filename)
        return EngineOptions(
            max_tokens=spec.max_tokens,
            vision_encoder_path=encoder,
            vision_adapter_path=self._optional_path(spec.vision_adapter_filename),
            max_images=spec.max_images if encoder is not None else 0,
            vision_chat_handler=spec.vision_chat_handler if encoder is not None else None,
        )

    def __repr__(self) -> str:
        return f"ModelCatalog(models_dir={self.models_dir!r})"
