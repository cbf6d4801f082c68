"""
Remote Mutation Client.

Single-item insert/delete against the YouTube Data API ``playlistItems``
resource. Every failure is normalised into ``RemoteMutationError`` carrying
a ``code`` (the API's error reason where available) and a human message, so
the retrier and the coordinator can classify it without knowing about HTTP.
"""
from abc import ABC, abstractmethod
from typing import Any, Optional, Tuple

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import get_settings
from backend.app.core.logging import get_logger
from backend.app.core.resilience import is_transient_failure
from backend.app.models.user_token_orm import UserTokenORM

logger = get_logger(__name__)

UNKNOWN_ERROR_CODE = "unknown_error"
UNKNOWN_ERROR_MESSAGE = "Unknown error"

# Used when an HTTP error carries no API reason of its own
STATUS_CODE_ERRORS = {
    429: "RATE_LIMIT_EXCEEDED",
    500: "BACKEND_ERROR",
    502: "SERVICE_UNAVAILABLE",
    503: "SERVICE_UNAVAILABLE",
    504: "SERVICE_UNAVAILABLE",
}


class RemoteMutationError(Exception):
    """A classified failure returned by the remote API."""

    def __init__(self, code: str, message: str, status_code: Optional[int] = None):
        self.code = code
        self.message = message
        self.status_code = status_code
        super().__init__(f"{code}: {message}")


def parse_remote_error(error: Any) -> Tuple[str, str]:
    """
    Extract ``(code, message)`` from any raised error.

    Looks at the error's own ``code``/``message``, then at a Google API error
    body (``error.errors[0].reason``, ``error.code``). A bare or numeric code
    on a 429 or 5xx response becomes a named rate-limit or backend code so
    the retrier sees it as transient. Anything else falls back to
    ``unknown_error``.
    """
    if error is None:
        return UNKNOWN_ERROR_CODE, UNKNOWN_ERROR_MESSAGE

    if isinstance(error, RemoteMutationError):
        return error.code or UNKNOWN_ERROR_CODE, error.message or UNKNOWN_ERROR_MESSAGE

    body_error: dict = {}
    status_code = None
    response = getattr(error, "response", None)
    if isinstance(response, httpx.Response):
        status_code = response.status_code
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict) and isinstance(data.get("error"), dict):
            body_error = data["error"]

    errors = body_error.get("errors")
    first = errors[0] if isinstance(errors, list) and errors and isinstance(errors[0], dict) else {}

    code = (
        getattr(error, "code", None)
        or first.get("reason")
        or body_error.get("code")
        or first.get("domain")
        or UNKNOWN_ERROR_CODE
    )
    if status_code in STATUS_CODE_ERRORS and (code == UNKNOWN_ERROR_CODE or str(code).isdigit()):
        code = STATUS_CODE_ERRORS[status_code]
    message = (
        first.get("message")
        or body_error.get("message")
        or str(error)
        or UNKNOWN_ERROR_MESSAGE
    )
    return str(code), str(message)


def is_retryable_remote_error(error: Exception) -> bool:
    """Retry predicate consumed by ``with_retry``."""
    code, message = parse_remote_error(error)
    return is_transient_failure(code, message)


def is_not_found_error(error: Exception) -> bool:
    """True when a delete failed because the item is already absent."""
    code, message = parse_remote_error(error)
    if code.lower() == "playlistitemnotfound" or "not found" in message.lower():
        return True
    return getattr(error, "status_code", None) == 404


class PlaylistMutationClient(ABC):
    """Single-item mutations against a remote playlist service."""

    @abstractmethod
    async def insert(self, target_playlist_id: str, video_id: str) -> Optional[str]:
        """Insert a video and return the remote-assigned playlist item id."""
        ...

    @abstractmethod
    async def delete(self, playlist_item_id: str) -> None:
        """Delete one playlist item by its id."""
        ...


class YouTubePlaylistClient(PlaylistMutationClient):
    """httpx implementation of the YouTube Data API v3 playlistItems calls."""

    def __init__(
        self,
        access_token: str,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.youtube_api_base_url,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=timeout or settings.youtube_request_timeout_sec,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def insert(self, target_playlist_id: str, video_id: str) -> Optional[str]:
        body = {
            "snippet": {
                "playlistId": target_playlist_id,
                "resourceId": {"kind": "youtube#video", "videoId": video_id},
            }
        }
        resp = await self._send("POST", "/playlistItems", params={"part": "snippet"}, json=body)
        return resp.json().get("id")

    async def delete(self, playlist_item_id: str) -> None:
        await self._send("DELETE", "/playlistItems", params={"id": playlist_item_id})

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            resp = await self._client.request(method, url, **kwargs)
            resp.raise_for_status()
            return resp
        except httpx.HTTPStatusError as e:
            code, message = parse_remote_error(e)
            raise RemoteMutationError(code, message, status_code=e.response.status_code) from e
        except httpx.TimeoutException as e:
            raise RemoteMutationError("SERVICE_UNAVAILABLE", f"Request timed out: {e}") from e
        except httpx.TransportError as e:
            raise RemoteMutationError("SERVICE_UNAVAILABLE", f"Connection aborted: {e}") from e


class RemoteClientProvider:
    """
    Resolves the remote client for a user.

    Returns ``None`` when the user has no usable access token; callers treat
    that as fallback mode rather than an error.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_client(self, user_id: str) -> Optional[PlaylistMutationClient]:
        try:
            result = await self.session.execute(
                select(UserTokenORM).where(UserTokenORM.user_id == user_id)
            )
            tokens = result.scalar_one_or_none()
        except Exception as e:
            logger.error(f"Failed to load remote credentials for user {user_id}: {e}", exc_info=True)
            return None

        if tokens is None or not tokens.access_token:
            logger.info(f"No remote credentials for user {user_id}, using fallback mode")
            return None

        return YouTubePlaylistClient(access_token=tokens.access_token)
