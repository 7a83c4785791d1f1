"""Realtime duplex streaming session engine for the Gemini Live API."""

from .config import LiveEngineConfig, load_config
from .core import SessionState, TurnResult
from .providers import LiveSessionEngine

__version__ = "0.1.0"

__all__ = ["LiveEngineConfig", "LiveSessionEngine", "SessionState", "TurnResult", "load_config", "__version__"]
