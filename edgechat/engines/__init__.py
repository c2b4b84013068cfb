"""Engine adapters. SDKs are imported lazily by each adapter."""

from .base import EngineOptions, InferenceEngine, SessionOptions

__all__ = ["EngineOptions", "InferenceEngine", "SessionOptions"]
