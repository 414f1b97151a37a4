"""Capability tokens for screen-share frame ingestion.

The FastAPI routes live in :mod:`guildvoice.capability.http` and need the
``http`` extra.
"""

from guildvoice.capability.tokens import (
    CapabilityAuditEvent,
    CapabilityConsumer,
    CapabilityToken,
    CapabilityTokenManager,
    ConsumerResult,
    GrantResult,
    UseResult,
    token_suffix,
)

__all__ = [
    "CapabilityAuditEvent",
    "CapabilityConsumer",
    "CapabilityToken",
    "CapabilityTokenManager",
    "ConsumerResult",
    "GrantResult",
    "UseResult",
    "token_suffix",
]
