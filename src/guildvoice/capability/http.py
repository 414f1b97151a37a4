"""FastAPI routes for screen-share capability tokens.

Requires the ``http`` extra (``pip install guildvoice[http]``).
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from guildvoice.capability.tokens import CapabilityTokenManager, token_suffix
from guildvoice.session.stream_watch import FramePayload

logger = logging.getLogger("guildvoice.capability.http")


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GrantRequest(_CamelModel):
    guild_id: str = Field(min_length=1)
    channel_id: str = Field(min_length=1)
    requester_id: str = Field(min_length=1)
    target_id: str | None = None


class FrameRequest(_CamelModel):
    token: str
    mime_type: str
    data_base64: str
    streamer_id: str | None = None
    streamer_name: str | None = None


class StopRequest(_CamelModel):
    token: str
    reason: str = "stopped"


def create_capability_router(
    tokens: CapabilityTokenManager,
    *,
    public_base_url: str = "",
    prefix: str = "/capability",
) -> APIRouter:
    """Build the ``/grant``, ``/frame`` and ``/stop`` routes around *tokens*.

    When *public_base_url* is set, successful grants include a ``shareUrl``
    pointing at ``{public_base_url}/share/{token}``.
    """
    router = APIRouter(prefix=prefix, tags=["capability"])
    base_url = public_base_url.rstrip("/")

    @router.post("/grant")
    async def grant(body: GrantRequest) -> dict[str, Any]:
        result = await tokens.grant(
            body.guild_id, body.channel_id, body.requester_id, body.target_id
        )
        if not result.ok or result.token is None:
            return {"ok": False, "reason": result.reason, "message": result.message}

        record = result.token
        expires_in = record.ttl_remaining(tokens.now()) / 60
        payload: dict[str, Any] = {
            "token": record.token,
            "expiresAt": datetime.fromtimestamp(record.expires_at, UTC).isoformat(),
            "expiresInMinutes": round(expires_in),
            "targetId": record.target_id,
            "reused": result.reused,
        }
        if base_url:
            payload["shareUrl"] = f"{base_url}/share/{record.token}"
        return payload

    @router.post("/frame")
    async def frame(body: FrameRequest) -> dict[str, Any]:
        result = await tokens.use(
            body.token,
            FramePayload(
                mime_type=body.mime_type,
                data_base64=body.data_base64,
                streamer_id=body.streamer_id,
                streamer_name=body.streamer_name,
            ),
        )
        if not result.accepted:
            logger.debug(
                "Frame rejected token_suffix=%s reason=%s", token_suffix(body.token), result.reason
            )
        return {"accepted": result.accepted, "reason": result.reason}

    @router.post("/stop")
    async def stop(body: StopRequest) -> dict[str, bool]:
        return {"stopped": tokens.revoke(body.token, body.reason)}

    return router
