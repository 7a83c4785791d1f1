"""
Contracts for local tools and user confirmation.

The engine never implements tools itself. A ToolExecutor is injected by the
host application and owns the concrete capabilities (filesystem, shell,
email, ...); a ConfirmationProvider asks the user before anything in the
dangerous set runs.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, FrozenSet, List

DEFAULT_DANGEROUS_TOOLS: FrozenSet[str] = frozenset({"delete_item", "execute_command", "send_email"})


class ToolExecutor(ABC):
    @abstractmethod
    async def execute(self, name: str, args: Dict[str, Any]) -> Any:
        """Run tool ``name``. Raise on failure; the orchestrator reports the error."""
        pass

    @abstractmethod
    def has_tool(self, name: str) -> bool:
        pass

    def declarations(self) -> List[Dict[str, Any]]:
        """Function declarations advertised in the setup frame. Defaults to none."""
        return []


class ConfirmationProvider(ABC):
    @abstractmethod
    async def confirm(self, description: str, *, tool_name: str = "") -> bool:
        """Ask the user. May wait indefinitely; the caller applies no timeout."""
        pass


def describe_action(name: str, args: Dict[str, Any]) -> str:
    """Human-readable description shown when asking for confirmation."""
    if name == "delete_item":
        return f"Delete: {args.get('path', '')}"
    if name == "send_email":
        lines = [f"Send email to: {args.get('to', '')}", f"Subject: {args.get('subject', '')}"]
        attachments = args.get("attachment_paths") or []
        if attachments:
            lines.append(f"Attachments: {len(attachments)} file(s)")
        return "\n".join(lines)
    if name == "execute_command":
        return f"Run command: {args.get('command', '')}"
    return f"Run {name} with {args}"


__all__ = ["DEFAULT_DANGEROUS_TOOLS", "ToolExecutor", "ConfirmationProvider", "describe_action"]
