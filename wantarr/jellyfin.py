"""
Jellyfin API client: library contents, account provisioning and the Trakt
plugin configuration that links Jellyfin users to Trakt accounts.
"""
from __future__ import annotations

import logging
from typing import Optional

import httpx
from pydantic import BaseModel

from .errors import JellyfinError, UserAlreadyExistsError
from .medias import EPISODE, MOVIE, MediaInfo
from .parsing import parse_list, parse_model, unwrap
from .trakt import TraktUser

logger = logging.getLogger(__name__)

TRAKT_PLUGIN_NAME = "Trakt"
LIBRARY_FIELDS = "Id,Name,Type,OriginalTitle,ExternalSeriesId,ProviderIds,ExtraIds"


class LibraryItem(BaseModel):
    Id: str
    Name: str
    Type: str
    ProductionYear: Optional[int] = None
    SeriesName: Optional[str] = None
    ParentIndexNumber: Optional[int] = None
    IndexNumber: Optional[int] = None
    ProviderIds: dict[str, Optional[str]] = {}

    def to_media_info(self) -> MediaInfo:
        is_movie = self.Type == "Movie"
        return MediaInfo(
            external_id=self.ProviderIds.get("Imdb") or "",
            type=MOVIE if is_movie else EPISODE,
            title=self.Name if is_movie else (self.SeriesName or self.Name),
            year=self.ProductionYear,
            season_number=None if is_movie else self.ParentIndexNumber,
            episode_number=None if is_movie else self.IndexNumber,
        )


class LibraryPage(BaseModel):
    Items: list[LibraryItem] = []


class Plugin(BaseModel):
    Id: str
    Name: str
    Version: Optional[str] = None


class TraktPluginUser(BaseModel):
    LinkedMbUserId: str
    AccessToken: Optional[str] = None


class TraktPluginConfig(BaseModel):
    TraktUsers: list[TraktPluginUser] = []


def normalize_id(jellyfin_id: str) -> str:
    """Jellyfin reports the same GUID with or without dashes depending on the endpoint."""
    return jellyfin_id.replace("-", "").lower()


async def authenticate(url: str, username: str, password: str, transport=None) -> str:
    """
    Exchange a username and password for an access token.

    Returns:
        The Jellyfin access token
    """
    logger.info(f"Authenticating {username} on {url}")
    async with httpx.AsyncClient(transport=transport) as client:
        try:
            response = await client.post(
                f"{url}/Users/AuthenticateByName",
                json={"Username": username, "Pw": password},
                headers={"Authorization": 'MediaBrowser Client="wantarr", Device="wantarr", DeviceId="wantarr", Version="1.0.0"'},
                timeout=10.0,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise JellyfinError(f"Authentication failed: {e}") from e
        return response.json()["AccessToken"]


class JellyfinClient:
    def __init__(self, url: str, token: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url.rstrip("/")
        self.http = httpx.AsyncClient(
            base_url=self.url,
            headers={
                "Content-Type": "application/json",
                "X-Emby-Token": token,
                "Authorization": f'MediaBrowser Token="{token}"',
            },
            timeout=30.0,
            transport=transport,
        )

    @classmethod
    async def create(
        cls,
        url: str,
        token: str = "",
        username: str = "",
        password: str = "",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "JellyfinClient":
        """Build a client from an API token, or log in with username and password."""
        if not token:
            if not (username and password):
                raise JellyfinError("Authentication required, either token or username and password must be provided")
            token = await authenticate(url.rstrip("/"), username, password, transport)
        return cls(url, token, transport)

    async def close(self) -> None:
        await self.http.aclose()

    async def _request(self, method: str, endpoint: str, **kwargs) -> httpx.Response:
        try:
            response = await self.http.request(method, endpoint, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise JellyfinError(f"{method} {endpoint} failed with HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise JellyfinError(f"{method} {endpoint} failed: {e}") from e
        return response

    async def list_library_items(self) -> list[MediaInfo]:
        """Every movie and episode of the library that carries an IMDb id."""
        response = await self._request(
            "GET",
            "/Items",
            params={
                "Recursive": "true",
                "Fields": LIBRARY_FIELDS,
                "hasImdbId": "true",
                "includeItemTypes": "Movie,Episode",
            },
        )
        page = unwrap(parse_model(LibraryPage, response.json()), "library items")
        return [item.to_media_info() for item in page.Items]

    async def register_user(self, username: str, password: str) -> str:
        """
        Create a Jellyfin account.

        Returns:
            The new user's Jellyfin id

        Raises:
            UserAlreadyExistsError: when the name is taken
        """
        try:
            response = await self.http.post("/Users/New", json={"Name": username, "Password": password})
        except httpx.HTTPError as e:
            raise JellyfinError(f"User creation failed: {e}") from e
        if response.status_code == 400:
            raise UserAlreadyExistsError(username)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise JellyfinError(f"User creation failed with HTTP {response.status_code}") from e
        return response.json()["Id"]

    async def reset_user_password(self, user_id: str, password: str) -> None:
        await self._request("POST", f"/Users/{user_id}/Password", json={"ResetPassword": True})
        await self._request("POST", f"/Users/{user_id}/Password", json={"CurrentPw": "", "NewPw": password})

    async def list_plugins(self) -> list[Plugin]:
        response = await self._request("GET", "/Plugins")
        return unwrap(parse_list(Plugin, response.json()), "plugins")

    async def get_trakt_auth_contexts(self) -> list[TraktUser]:
        """Trakt accounts linked to Jellyfin users through the Trakt plugin."""
        plugin = next((p for p in await self.list_plugins() if p.Name == TRAKT_PLUGIN_NAME), None)
        if plugin is None:
            raise JellyfinError(f"Plugin {TRAKT_PLUGIN_NAME!r} is not installed")

        response = await self._request("GET", f"/Plugins/{plugin.Id}/Configuration")
        config = unwrap(parse_model(TraktPluginConfig, response.json()), "trakt plugin configuration")
        return [
            TraktUser(id=normalize_id(user.LinkedMbUserId), access_token=user.AccessToken)
            for user in config.TraktUsers
            if user.AccessToken
        ]
