"""Spotify Web API implementation of the PlaybackController contract.

Every call goes through _request, which owns the failure policy:

- 401 responses trigger a single token refresh and an immediate retry;
  a second 401 surfaces as TokenExpiredError.
- 403 responses mentioning a restriction surface as DeviceRestrictedError
  without retrying (the caller decides whether to re-activate the device).
- Network errors, 429 and 5xx are retried with exponential backoff up to
  the policy's attempt count, then surface as PlaybackError.
- Any other non-2xx status surfaces as PlaybackError immediately.
"""

from __future__ import annotations

import asyncio
import time
from http import HTTPStatus
from typing import TYPE_CHECKING, Any

import httpx
import structlog
from pydantic import BaseModel, Field

from bingo.logic.exceptions import DeviceRestrictedError, PlaybackError, TokenExpiredError
from bingo.playback.controller import PlaybackController, PlaybackState
from bingo.playback.credentials import StoredTokens

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from bingo.playback.credentials import TokenStore

logger = structlog.get_logger()

DEFAULT_API_URL = "https://api.spotify.com/v1"
DEFAULT_ACCOUNTS_URL = "https://accounts.spotify.com"

# Refresh slightly before the reported expiry to avoid racing it.
_EXPIRY_SKEW_SECONDS = 60


class RetryPolicy(BaseModel):
    attempts: int = Field(default=3, ge=1)
    backoff_seconds: float = Field(default=0.3, ge=0)

    def delay_for(self, attempt: int) -> float:
        """Delay before the given (1-based) attempt; the first attempt is immediate."""
        if attempt <= 1:
            return 0.0
        return self.backoff_seconds * (2 ** (attempt - 2))


class _TransientError(Exception):
    """Retryable failure inside _request; never escapes this module."""


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return str(error.get("message", ""))
    return str(error or "")


class SpotifyPlaybackController(PlaybackController):
    def __init__(
        self,
        token_store: TokenStore,
        *,
        client_id: str | None = None,
        client_secret: str | None = None,
        api_url: str = DEFAULT_API_URL,
        accounts_url: str = DEFAULT_ACCOUNTS_URL,
        retry: RetryPolicy | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._token_store = token_store
        self._client_id = client_id
        self._client_secret = client_secret
        self._api_url = api_url.rstrip("/")
        self._accounts_url = accounts_url.rstrip("/")
        self._retry = retry or RetryPolicy()
        self._client = http_client or httpx.AsyncClient(timeout=10.0)
        self._sleep = sleep
        self._tokens: StoredTokens | None = None

    async def aclose(self) -> None:
        await self._client.aclose()

    # --- Token handling ---

    def _current_tokens(self) -> StoredTokens:
        if self._tokens is None:
            self._tokens = self._token_store.load()
        if self._tokens is None:
            raise TokenExpiredError("no playback credentials available")
        return self._tokens

    async def _ensure_fresh_token(self) -> str:
        tokens = self._current_tokens()
        expired = tokens.expires_at is not None and time.time() >= tokens.expires_at - _EXPIRY_SKEW_SECONDS
        if expired and tokens.refresh_token:
            tokens = await self.refresh_access_token()
        return tokens.access_token

    async def refresh_access_token(self) -> StoredTokens:
        tokens = self._current_tokens()
        if not tokens.refresh_token or not self._client_id or not self._client_secret:
            raise TokenExpiredError("access token expired and cannot be refreshed")
        try:
            response = await self._client.post(
                f"{self._accounts_url}/api/token",
                data={"grant_type": "refresh_token", "refresh_token": tokens.refresh_token},
                auth=httpx.BasicAuth(self._client_id, self._client_secret),
            )
        except httpx.RequestError as e:
            raise TokenExpiredError(f"token refresh failed: {e}") from e
        if response.status_code != HTTPStatus.OK:
            raise TokenExpiredError(f"token refresh rejected: {response.status_code} {_error_message(response)}")
        body = response.json()
        refreshed = StoredTokens(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token") or tokens.refresh_token,
            expires_at=time.time() + float(body.get("expires_in", 3600)),
        )
        self._tokens = refreshed
        self._token_store.save(refreshed)
        logger.info("playback access token refreshed")
        return refreshed

    # --- Request core ---

    async def _send_once(
        self,
        label: str,
        method: str,
        path: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
    ) -> httpx.Response:
        token = await self._ensure_fresh_token()
        try:
            response = await self._client.request(
                method,
                f"{self._api_url}{path}",
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.RequestError as e:
            raise _TransientError(f"{label}: {e}") from e

        status = response.status_code
        if status < HTTPStatus.MULTIPLE_CHOICES:
            return response
        message = _error_message(response)
        if status == HTTPStatus.UNAUTHORIZED:
            raise TokenExpiredError(f"{label}: {message or 'unauthorized'}")
        if status == HTTPStatus.FORBIDDEN and "restriction" in message.lower():
            raise DeviceRestrictedError(f"{label}: {message}")
        if status == HTTPStatus.TOO_MANY_REQUESTS or status >= HTTPStatus.INTERNAL_SERVER_ERROR:
            raise _TransientError(f"{label}: {status} {message}")
        raise PlaybackError(f"{label}: {status} {message}")

    async def _request(
        self,
        label: str,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        refreshed = False
        last_error: Exception | None = None
        attempt = 1
        while attempt <= self._retry.attempts:
            delay = self._retry.delay_for(attempt)
            if delay:
                await self._sleep(delay)
            try:
                return await self._send_once(label, method, path, params, json_body)
            except TokenExpiredError:
                if refreshed:
                    raise
                refreshed = True
                await self.refresh_access_token()
                # the refresh retry does not consume an attempt
                continue
            except _TransientError as e:
                last_error = e
                logger.warning("playback call failed, retrying", label=label, attempt=attempt, error=str(e))
            attempt += 1
        raise PlaybackError(str(last_error)) from last_error

    # --- Capability contract ---

    async def get_state(self) -> PlaybackState | None:
        response = await self._request("get_state", "GET", "/me/player")
        if response.status_code == HTTPStatus.NO_CONTENT or not response.content:
            return None
        body = response.json()
        item = body.get("item") or {}
        device = body.get("device") or {}
        return PlaybackState(
            is_playing=bool(body.get("is_playing")),
            track_id=item.get("id"),
            progress_ms=int(body.get("progress_ms") or 0),
            device_id=device.get("id"),
            device_name=device.get("name"),
        )

    async def list_devices(self) -> list[dict[str, Any]]:
        response = await self._request("list_devices", "GET", "/me/player/devices")
        return list(response.json().get("devices", []))

    async def transfer(self, device_id: str, *, play: bool = False) -> None:
        await self._request("transfer", "PUT", "/me/player", json_body={"device_ids": [device_id], "play": play})

    async def activate_device(self, device_id: str) -> None:
        await self._request(
            "activate",
            "PUT",
            "/me/player",
            json_body={"device_ids": [device_id], "play": False},
        )

    async def start(self, device_id: str, uris: list[str], position_ms: int = 0) -> None:
        await self._request(
            "start",
            "PUT",
            "/me/player/play",
            params={"device_id": device_id},
            json_body={"uris": uris, "position_ms": position_ms},
        )

    async def pause(self, device_id: str) -> None:
        await self._request("pause", "PUT", "/me/player/pause", params={"device_id": device_id})

    async def resume(self, device_id: str) -> None:
        await self._request("resume", "PUT", "/me/player/play", params={"device_id": device_id})

    async def seek(self, device_id: str, position_ms: int) -> None:
        await self._request(
            "seek",
            "PUT",
            "/me/player/seek",
            params={"device_id": device_id, "position_ms": position_ms},
        )

    async def set_volume(self, device_id: str, volume_percent: int) -> None:
        await self._request(
            "set_volume",
            "PUT",
            "/me/player/volume",
            params={"device_id": device_id, "volume_percent": volume_percent},
        )

    async def set_shuffle(self, device_id: str, *, enabled: bool) -> None:
        await self._request(
            "set_shuffle",
            "PUT",
            "/me/player/shuffle",
            params={"device_id": device_id, "state": "true" if enabled else "false"},
        )

    async def set_repeat(self, device_id: str, mode: str) -> None:
        await self._request(
            "set_repeat",
            "PUT",
            "/me/player/repeat",
            params={"device_id": device_id, "state": mode},
        )

    async def add_to_queue(self, device_id: str, uri: str) -> None:
        await self._request(
            "add_to_queue",
            "POST",
            "/me/player/queue",
            params={"device_id": device_id, "uri": uri},
        )
