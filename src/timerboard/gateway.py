"""Discord REST gateway for Timerboard.

A thin authenticated wrapper over the Discord HTTP API. Every call carries a
bounded timeout; timeouts, transport errors, non-2xx answers and rate limits
all surface as GatewayError. Nothing is retried here: callers log and move
on, and the next sweep or event tries again.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

import discord
import httpx

from timerboard import __version__
from timerboard.errors import GatewayError, RateLimitedError
from timerboard.logging import get_logger
from timerboard.models import GatewayChannel, GatewayGuild, GatewayMember, GatewayRole

if TYPE_CHECKING:
    from timerboard.config import Config

log = get_logger("gateway")

USER_AGENT = f"DiscordBot (https://github.com/timerboard/timerboard, {__version__})"


class DiscordGateway:
    """Async client for the guild, member and message endpoints we use.

    Attributes:
        base_url: Discord API base URL (e.g. https://discord.com/api/v10).
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        token: str,
        base_url: str = "https://discord.com/api/v10",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the gateway.

        Args:
            token: Bot token.
            base_url: Discord API base URL.
            timeout: Per-request timeout in seconds.
            transport: Optional httpx transport (tests use MockTransport).
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            headers={
                "Authorization": f"Bot {token}",
                "User-Agent": USER_AGENT,
            },
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: Config, token: str) -> "DiscordGateway":
        """Build a gateway from application configuration."""
        return cls(
            token=token,
            base_url=config.discord.api_base_url,
            timeout=config.discord.request_timeout_seconds,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        """Perform a request and decode the JSON body.

        Raises:
            RateLimitedError: On HTTP 429.
            GatewayError: On timeout, transport failure or any other non-2xx.
        """
        try:
            response = await self._client.request(method, path, params=params, json=json)
        except httpx.TimeoutException as e:
            raise GatewayError(f"{method} {path} timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise GatewayError(f"{method} {path} failed: {e}") from e

        if response.status_code == 429:
            retry_after = None
            try:
                retry_after = float(response.json().get("retry_after"))
            except (ValueError, TypeError, AttributeError):
                pass
            log.warning("discord_rate_limited", method=method, path=path, retry_after=retry_after)
            raise RateLimitedError(f"{method} {path} rate limited", retry_after=retry_after)

        if response.status_code >= 400:
            raise GatewayError(
                f"{method} {path} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # =========================================================================
    # Guild Reads
    # =========================================================================

    async def get_guild(self, guild_id: str) -> GatewayGuild:
        data = await self._request("GET", f"/guilds/{guild_id}")
        return GatewayGuild.from_payload(data)

    async def get_roles(self, guild_id: str) -> list[GatewayRole]:
        data = await self._request("GET", f"/guilds/{guild_id}/roles")
        return [GatewayRole.from_payload(r) for r in data]

    async def get_channels(self, guild_id: str) -> list[GatewayChannel]:
        data = await self._request("GET", f"/guilds/{guild_id}/channels")
        return [GatewayChannel.from_payload(c) for c in data]

    async def get_members(
        self, guild_id: str, limit: int = 1000, after: str = "0"
    ) -> list[GatewayMember]:
        """Fetch one page of guild members ordered by user id.

        Args:
            guild_id: Guild to list.
            limit: Page size (Discord caps this at 1000).
            after: Only return users with an id greater than this.

        Returns:
            Members on this page.
        """
        data = await self._request(
            "GET",
            f"/guilds/{guild_id}/members",
            params={"limit": limit, "after": after},
        )
        return [GatewayMember.from_payload(m) for m in data]

    async def iter_member_pages(
        self, guild_id: str, page_size: int = 1000
    ) -> AsyncIterator[list[GatewayMember]]:
        """Yield pages of guild members until a short or empty page.

        The cursor is the highest user id seen on the previous page. A failure
        on any page propagates to the consumer, which must treat the listing
        as incomplete.

        Args:
            guild_id: Guild to list.
            page_size: Members requested per page.

        Yields:
            Non-empty pages of members.
        """
        after = "0"
        while True:
            page = await self.get_members(guild_id, limit=page_size, after=after)
            if page:
                yield page
            if len(page) < page_size:
                return
            after = max(page, key=lambda m: int(m.user_id)).user_id

    async def get_member(self, guild_id: str, user_id: str) -> GatewayMember:
        data = await self._request("GET", f"/guilds/{guild_id}/members/{user_id}")
        return GatewayMember.from_payload(data)

    # =========================================================================
    # Messages
    # =========================================================================

    async def send_message(
        self,
        channel_id: str,
        content: str,
        embed: discord.Embed | None = None,
        reply_to: str | None = None,
    ) -> str:
        """Post a message to a channel.

        Args:
            channel_id: Target channel.
            content: Message text (role pings live here).
            embed: Optional embed.
            reply_to: Message id in the same channel to reply to.

        Returns:
            The new message id.
        """
        payload: dict[str, Any] = {"content": content}
        if embed is not None:
            payload["embeds"] = [embed.to_dict()]
        if reply_to is not None:
            payload["message_reference"] = {
                "message_id": reply_to,
                "channel_id": channel_id,
                "fail_if_not_exists": False,
            }

        data = await self._request("POST", f"/channels/{channel_id}/messages", json=payload)
        return str(data["id"])

    async def edit_message(
        self,
        channel_id: str,
        message_id: str,
        content: str | None = None,
        embed: discord.Embed | None = None,
    ) -> None:
        """Edit a message in place.

        Args:
            channel_id: Channel holding the message.
            message_id: Message to edit.
            content: New text, or None to leave it unchanged. Empty string clears it.
            embed: Replacement embed, or None to leave embeds unchanged.
        """
        payload: dict[str, Any] = {}
        if content is not None:
            payload["content"] = content
        if embed is not None:
            payload["embeds"] = [embed.to_dict()]

        await self._request(
            "PATCH", f"/channels/{channel_id}/messages/{message_id}", json=payload
        )
