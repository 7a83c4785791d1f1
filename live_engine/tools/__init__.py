"""Tool contracts, manifest, grounding and the agentic orchestrator."""

from .base import DEFAULT_DANGEROUS_TOOLS, ConfirmationProvider, ToolExecutor, describe_action
from .grounding import extract_sources
from .manifest import GOOGLE_SEARCH_TOOL, build_tools
from .orchestrator import (
    DECLINED_ERROR,
    DEFAULT_FALLBACK_MESSAGE,
    DEFAULT_MAX_ROUNDS,
    ROUND_LIMIT_ERROR,
    ToolCallOrchestrator,
    TurnChannel,
)

__all__ = [
    "DEFAULT_DANGEROUS_TOOLS",
    "ConfirmationProvider",
    "ToolExecutor",
    "describe_action",
    "extract_sources",
    "GOOGLE_SEARCH_TOOL",
    "build_tools",
    "DECLINED_ERROR",
    "DEFAULT_FALLBACK_MESSAGE",
    "DEFAULT_MAX_ROUNDS",
    "ROUND_LIMIT_ERROR",
    "ToolCallOrchestrator",
    "TurnChannel",
]
