"""Helpers for caller-supplied callbacks that may be sync or async."""

import inspect
from typing import Any


async def maybe_await(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


__all__ = ["maybe_await"]
