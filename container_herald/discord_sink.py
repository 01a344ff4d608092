"""
Container Herald — Discord Notification Sink
═══════════════════════════════════════════════════
Thin async client for the handful of Discord REST calls the Reconciler
needs: list / create / delete channels, create / edit messages.

HTTP failures are mapped onto the sink error taxonomy:
  401             → Unauthorized
  404             → NotFound
  429             → RateLimited (retry_after from body or header)
  5xx, transport  → SinkUnavailable
  other 4xx       → SinkError, 403 included (channel permissions)
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from .errors import NotFound, RateLimited, SinkError, SinkUnavailable, Unauthorized
from .models import Channel, MessagePayload

logger = logging.getLogger(__name__)

GUILD_TEXT_CHANNEL = 0
USER_AGENT = "DiscordBot (https://github.com/container-herald, 0.1.0)"


def _retry_after(resp: httpx.Response) -> float:
    try:
        return float(resp.json().get("retry_after", 0))
    except (ValueError, AttributeError):
        pass
    try:
        return float(resp.headers.get("Retry-After", 0))
    except ValueError:
        return 0.0


def raise_for_discord(resp: httpx.Response, what: str) -> None:
    """Translate a non-2xx Discord response into a sink error."""
    status = resp.status_code
    if status < 400:
        return
    detail = resp.text[:200]
    msg = f"{what} failed with HTTP {status}: {detail}"
    if status == 401:
        raise Unauthorized(msg, status=status)
    if status == 404:
        raise NotFound(msg)
    if status == 429:
        raise RateLimited(msg, retry_after=_retry_after(resp))
    if status >= 500:
        raise SinkUnavailable(msg, status=status)
    raise SinkError(msg, status=status)


class DiscordSink:
    """
    Notification Sink backed by the Discord REST API.

    One shared httpx.AsyncClient; call aclose() on shutdown.
    """

    def __init__(
        self,
        token: str,
        guild_id: str,
        api_base: str = "https://discord.com/api/v10",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.guild_id = guild_id
        self._client = httpx.AsyncClient(
            base_url=api_base,
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bot {token}",
                "User-Agent": USER_AGENT,
            },
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, what: str,
                       json: Optional[Dict[str, Any]] = None) -> httpx.Response:
        try:
            resp = await self._client.request(method, path, json=json)
        except httpx.TimeoutException as e:
            raise SinkUnavailable(f"{what} timed out: {e}") from e
        except httpx.HTTPError as e:
            raise SinkUnavailable(f"{what} failed: {e}") from e
        raise_for_discord(resp, what)
        return resp

    # ── Channels ──────────────────────────────────────────

    async def list_channels_in_category(self, category_id: str) -> List[Channel]:
        resp = await self._request("GET", f"/guilds/{self.guild_id}/channels", "List channels")
        channels = []
        for raw in resp.json():
            if str(raw.get("parent_id")) == str(category_id):
                channels.append(Channel(
                    id=str(raw["id"]),
                    name=raw.get("name", ""),
                    parent_id=str(raw["parent_id"]),
                ))
        return channels

    async def create_channel(self, guild_id: str, category_id: str, name: str) -> str:
        resp = await self._request(
            "POST", f"/guilds/{guild_id}/channels", f"Create channel '{name}'",
            json={"name": name, "type": GUILD_TEXT_CHANNEL, "parent_id": str(category_id)},
        )
        channel_id = str(resp.json()["id"])
        logger.info(f"[Discord] Created channel #{name} ({channel_id})")
        return channel_id

    async def delete_channel(self, channel_id: str) -> None:
        await self._request("DELETE", f"/channels/{channel_id}", f"Delete channel {channel_id}")
        logger.info(f"[Discord] Deleted channel {channel_id}")

    # ── Messages ──────────────────────────────────────────

    async def create_message(self, channel_id: str, payload: MessagePayload) -> str:
        resp = await self._request(
            "POST", f"/channels/{channel_id}/messages", f"Create message in {channel_id}",
            json=payload.to_body(),
        )
        return str(resp.json()["id"])

    async def update_message(self, channel_id: str, message_id: str, payload: MessagePayload) -> None:
        await self._request(
            "PATCH", f"/channels/{channel_id}/messages/{message_id}",
            f"Update message {message_id}",
            json=payload.to_body(),
        )
