"""Tool manifest for the setup frame."""

from typing import Any, Dict, Iterable, List, Optional

GOOGLE_SEARCH_TOOL: Dict[str, Any] = {"googleSearch": {}}


def build_tools(
    declarations: Optional[Iterable[Dict[str, Any]]] = None,
    *,
    include_search: bool = True,
) -> List[Dict[str, Any]]:
    """
    Build the ``tools`` list: built-in search first, then one
    ``functionDeclarations`` entry holding every declaration.

    Declarations with a duplicate name keep the first occurrence.
    """
    tools: List[Dict[str, Any]] = []
    if include_search:
        tools.append(dict(GOOGLE_SEARCH_TOOL))

    seen = set()
    unique: List[Dict[str, Any]] = []
    for declaration in declarations or []:
        name = declaration.get("name")
        if not name or name in seen:
            continue
        seen.add(name)
        unique.append(declaration)
    if unique:
        tools.append({"functionDeclarations": unique})
    return tools


__all__ = ["GOOGLE_SEARCH_TOOL", "build_tools"]
