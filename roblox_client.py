"""
Roblox web API client for account lookups, profile descriptions and avatars.
"""

import logging
import httpx
from typing import Optional
from dataclasses import dataclass

from config import config

logger = logging.getLogger(__name__)

USER_AGENT = "USAFFE-Backend/1.0"


@dataclass
class RobloxUser:
    """Result of a username lookup."""
    id: int
    name: str
    display_name: str


@dataclass
class RobloxProfile:
    """Public profile of a Roblox account."""
    id: str
    name: str
    display_name: str
    description: str


class RobloxAPIError(Exception):
    """Exception for Roblox API errors."""
    pass


def _timeout() -> httpx.Timeout:
    return httpx.Timeout(config.PROFILE_LOOKUP_TIMEOUT)


async def lookup_username(username: str) -> Optional[RobloxUser]:
    """
    Look up a Roblox account by username.

    Args:
        username: Roblox username (not display name)

    Returns:
        RobloxUser, or None if no account has that username

    Raises:
        RobloxAPIError: on HTTP or transport errors
    """
    url = f"{config.ROBLOX_USERS_URL}/usernames/users"
    try:
        async with httpx.AsyncClient(timeout=_timeout()) as client:
            response = await client.post(
                url,
                json={"usernames": [username], "excludeBannedUsers": False},
                headers={"User-Agent": USER_AGENT},
            )
            response.raise_for_status()
            data = response.json()
    except httpx.HTTPError as e:
        raise RobloxAPIError(f"Username lookup failed: {e}")
    except ValueError as e:
        raise RobloxAPIError(f"Invalid lookup response: {e}")

    users = data.get("data") if isinstance(data, dict) else None
    users = users or []
    if not users:
        return None

    user = users[0]
    if not isinstance(user, dict) or not isinstance(user.get("id"), int):
        raise RobloxAPIError(f"Invalid lookup response: {user!r}")
    # Numeric, as the users API returns it
    return RobloxUser(
        id=user["id"],
        name=user.get("name") or "",
        display_name=user.get("displayName") or "",
    )


async def fetch_profile(roblox_id: str) -> RobloxProfile:
    """
    Fetch the public profile of a Roblox account.

    Raises:
        RobloxAPIError: on HTTP or transport errors, including timeouts
    """
    url = f"{config.ROBLOX_USERS_URL}/users/{roblox_id}"
    try:
        async with httpx.AsyncClient(timeout=_timeout()) as client:
            response = await client.get(url, headers={"User-Agent": USER_AGENT})
            response.raise_for_status()
            data = response.json()
    except httpx.HTTPError as e:
        raise RobloxAPIError(f"Profile fetch failed for {roblox_id}: {e}")
    except ValueError as e:
        raise RobloxAPIError(f"Invalid profile response for {roblox_id}: {e}")

    if not isinstance(data, dict):
        raise RobloxAPIError(f"Invalid profile response for {roblox_id}")

    return RobloxProfile(
        id=str(data.get("id", roblox_id)),
        name=data.get("name") or "",
        display_name=data.get("displayName") or "",
        description=data.get("description") or "",
    )


async def fetch_avatar_url(roblox_id: str) -> Optional[str]:
    """
    Get the headshot thumbnail URL for a Roblox account.

    Never raises; returns None when the image is unavailable so the caller can
    render a placeholder.
    """
    url = f"{config.ROBLOX_THUMBNAILS_URL}/users/avatar-headshot"
    params = {
        "userIds": roblox_id,
        "size": "150x150",
        "format": "Png",
        "isCircular": "true",
    }
    try:
        async with httpx.AsyncClient(timeout=_timeout()) as client:
            response = await client.get(url, params=params, headers={"User-Agent": USER_AGENT})
            response.raise_for_status()
            data = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.warning(f"Avatar proxy error for {roblox_id}: {e}")
        return None

    if not isinstance(data, dict):
        return None
    entries = data.get("data") or []
    if not entries:
        return None
    return entries[0].get("imageUrl") or None
