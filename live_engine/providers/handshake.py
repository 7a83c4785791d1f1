"""
Setup handshake and capability fallback.

HandshakeController builds the setup frame and waits for the server's
acknowledgement. The service sometimes never acknowledges a valid setup, so
after a short grace window the session is treated as ready anyway
("soft-ready"). That shim is kept deliberately visible: it is logged every
time it fires and the session records it.

CapabilityNegotiator decides whether a rejected setup is worth one more
attempt with a reduced tool manifest. Rejections caused by an unsupported
tool combination come back as a close whose reason mentions an invalid
argument; dropping the built-in search tool usually gets past them.
"""

from __future__ import annotations

import asyncio
import re
from typing import Any, Dict, List, Optional

from structlog import get_logger

from ..core.models import Session
from .frames import Setup

logger = get_logger(__name__)

DEFAULT_ACK_GRACE_SEC = 3.0

_RETRYABLE_REASON = re.compile(r"invalid|argument", re.IGNORECASE)


class HandshakeController:
    def __init__(
        self,
        *,
        model: str,
        response_modalities: Optional[List[str]] = None,
        voice_name: Optional[str] = None,
        system_instruction: Optional[str] = None,
        ack_grace_sec: float = DEFAULT_ACK_GRACE_SEC,
    ):
        self.model = model
        self.response_modalities = list(response_modalities or ["AUDIO"])
        self.voice_name = voice_name
        self.system_instruction = system_instruction
        self.ack_grace_sec = max(0.0, float(ack_grace_sec))

    def build_setup(self, tools: List[Dict[str, Any]]) -> Setup:
        return Setup(
            model=self.model,
            response_modalities=self.response_modalities,
            voice_name=self.voice_name,
            system_instruction=self.system_instruction,
            tools=tools,
        )

    async def wait_for_ack(self, ack: "asyncio.Future[Any]") -> bool:
        """
        Wait for the setup acknowledgement.

        Returns True when the server acknowledged, False when the grace window
        ran out (soft-ready). Raises HandshakeRejected if the socket closed
        first; the engine's dispatcher resolves ``ack`` either way.
        """
        try:
            # shield: a late ack must still be able to resolve the future
            await asyncio.wait_for(asyncio.shield(ack), timeout=self.ack_grace_sec)
            return True
        except asyncio.TimeoutError:
            logger.warning(
                "Setup not acknowledged within grace window; continuing as soft-ready",
                grace_sec=self.ack_grace_sec,
                model=self.model,
            )
            return False


class CapabilityNegotiator:
    """One-shot fallback from the full tool manifest to function declarations only."""

    def __init__(self, session: Session, *, search_enabled: bool = True):
        self.session = session
        self.search_enabled = search_enabled

    @property
    def include_search(self) -> bool:
        return self.search_enabled and not self.session.capability_retry_used

    def should_retry(self, reason: Optional[str]) -> bool:
        """Consume the single retry if ``reason`` looks like a capability rejection."""
        if self.session.capability_retry_used:
            return False
        if not reason or not _RETRYABLE_REASON.search(reason):
            return False
        self.session.capability_retry_used = True
        logger.warning(
            "Setup rejected; retrying once with reduced tool manifest",
            reason=reason,
        )
        return True


__all__ = ["DEFAULT_ACK_GRACE_SEC", "HandshakeController", "CapabilityNegotiator"]
