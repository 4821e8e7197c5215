from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from wantarr.cache import MemoryCache
from wantarr.errors import MalformedPayloadError, TraktError
from wantarr.ratelimit import DEFAULT_WAIT_SECONDS, retry_delay
from wantarr.trakt import TraktClient, TraktUser

USER = TraktUser(id="aaaa", access_token="secret")

ACTIVITIES = {
    "all": "2024-05-01T10:00:00.000Z",
    "movies": {"watched_at": "2024-04-01T10:00:00.000Z", "rated_at": None},
    "episodes": {"watched_at": "2024-04-02T10:00:00.000Z"},
    "shows": {"hidden_at": None, "dropped_at": None},
    "watchlist": {"updated_at": "2024-05-01T10:00:00.000Z"},
    "lists": {"liked_at": None, "updated_at": "2024-03-01T10:00:00.000Z"},
}


def movie(imdb: str, released: str | None) -> dict:
    return {
        "type": "movie",
        "movie": {"title": imdb, "year": 2020, "ids": {"trakt": 1, "imdb": imdb}, "released": released},
    }


def show(trakt_id: int, title: str = "Show") -> dict:
    return {"title": title, "year": 2019, "ids": {"trakt": trakt_id}}


class Routes:
    """A tiny Trakt: path -> JSON body, counting hits."""

    def __init__(self, routes: dict):
        self.routes = routes
        self.hits: dict[str, int] = {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        self.hits[path] = self.hits.get(path, 0) + 1
        body = self.routes.get(path)
        if body is None:
            return httpx.Response(404)
        if isinstance(body, httpx.Response):
            return body
        return httpx.Response(200, json=body)


def make_client(routes: Routes) -> TraktClient:
    return TraktClient("client-id", cache=MemoryCache(), transport=httpx.MockTransport(routes))


async def test_rate_limited_request_is_retried_once() -> None:
    answers = iter([httpx.Response(429, headers={"Retry-After": "0"}), httpx.Response(200, json=ACTIVITIES)])
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return next(answers)

    client = TraktClient("client-id", transport=httpx.MockTransport(handler))
    activities = await client.get_last_activities(USER)
    await client.close()

    assert len(seen) == 2
    assert activities.at("watchlist.updated_at") == datetime(2024, 5, 1, 10, tzinfo=timezone.utc)
    assert seen[0].headers["authorization"] == "Bearer secret"
    assert seen[0].headers["trakt-api-key"] == "client-id"


async def test_second_rate_limit_is_an_error() -> None:
    client = TraktClient(
        "client-id",
        transport=httpx.MockTransport(lambda request: httpx.Response(429, headers={"Retry-After": "0"})),
    )
    with pytest.raises(TraktError):
        await client.get_last_activities(USER)
    await client.close()


def test_retry_delay_reads_x_ratelimit_until() -> None:
    now = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
    until = (now + timedelta(seconds=5)).isoformat().replace("+00:00", "Z")
    response = httpx.Response(429, headers={"X-Ratelimit": json.dumps({"until": until})})

    assert retry_delay(response, now) == 5
    assert retry_delay(httpx.Response(429, headers={"Retry-After": "3"}), now) == 3
    assert retry_delay(httpx.Response(429), now) == DEFAULT_WAIT_SECONDS


async def test_watchlist_keeps_released_items_only() -> None:
    past = (datetime.now(timezone.utc) - timedelta(days=30)).date().isoformat()
    future = (datetime.now(timezone.utc) + timedelta(days=30)).date().isoformat()
    routes = Routes(
        {
            "/sync/last_activities": ACTIVITIES,
            "/sync/watchlist": [
                movie("tt1", past),
                movie("tt2", future),
                movie("tt3", None),
                {"type": "show", "show": {**show(5), "first_aired": "2019-01-01T00:00:00.000Z"}},
            ],
        }
    )
    client = make_client(routes)

    released = await client.get_watchlist(USER)
    everything = await client.get_watchlist(USER, released=False)
    await client.close()

    assert [item.movie.ids.imdb if item.movie else item.show.ids.trakt for item in released] == ["tt1", 5]
    assert len(everything) == 4


async def test_malformed_payload_raises() -> None:
    routes = Routes(
        {
            "/sync/last_activities": ACTIVITIES,
            "/sync/watchlist": [{"type": "movie", "movie": {"title": "No ids"}}],
        }
    )
    client = make_client(routes)

    with pytest.raises(MalformedPayloadError):
        await client.get_watchlist(USER)
    await client.close()


async def test_item_without_its_media_is_malformed() -> None:
    routes = Routes({"/sync/last_activities": ACTIVITIES, "/sync/watchlist": [{"type": "episode", "show": show(1)}]})
    client = make_client(routes)

    with pytest.raises(MalformedPayloadError):
        await client.get_watchlist(USER, released=False)
    await client.close()


async def test_reads_are_cached_until_the_facet_changes() -> None:
    routes = Routes({"/sync/last_activities": ACTIVITIES, "/sync/watchlist": [movie("tt1", "2000-01-01")]})
    client = make_client(routes)

    await client.get_watchlist(USER)
    await client.get_watchlist(USER)
    assert routes.hits["/sync/watchlist"] == 1
    assert routes.hits["/sync/last_activities"] == 1

    # Unrelated facet moves: the watchlist stays cached.
    routes.routes["/sync/last_activities"] = {**ACTIVITIES, "episodes": {"watched_at": "2024-06-01T00:00:00.000Z"}}
    client.cache.delete("last-activities-aaaa")
    await client.get_watchlist(USER)
    assert routes.hits["/sync/watchlist"] == 1

    routes.routes["/sync/last_activities"] = {**ACTIVITIES, "watchlist": {"updated_at": "2024-06-01T00:00:00.000Z"}}
    client.cache.delete("last-activities-aaaa")
    await client.get_watchlist(USER)
    assert routes.hits["/sync/watchlist"] == 2
    await client.close()


async def test_changed_activity_replaces_the_cached_read() -> None:
    routes = Routes({"/sync/last_activities": ACTIVITIES, "/sync/watchlist": [movie("tt1", "2000-01-01")]})
    client = make_client(routes)
    start = datetime(2024, 6, 1, tzinfo=timezone.utc)

    for day in range(30):
        updated_at = (start + timedelta(days=day)).isoformat().replace("+00:00", "Z")
        routes.routes["/sync/last_activities"] = {**ACTIVITIES, "watchlist": {"updated_at": updated_at}}
        client.cache.delete("last-activities-aaaa")
        await client.get_watchlist(USER)

    assert routes.hits["/sync/watchlist"] == 30
    # One last-activities entry and one watchlist entry.
    assert len(client.cache) == 2
    await client.close()


async def test_high_rated_threshold_is_validated() -> None:
    client = make_client(Routes({}))
    with pytest.raises(ValueError):
        await client.get_high_rated(USER, 11)
    await client.close()


async def test_high_rated_queries_every_media_type() -> None:
    routes = Routes(
        {
            "/sync/last_activities": ACTIVITIES,
            "/sync/ratings/movies/9,10": [{**movie("tt1", "2000-01-01"), "rating": 9}],
            "/sync/ratings/shows/9,10": [{"type": "show", "show": show(2), "rating": 10}],
            "/sync/ratings/seasons/9,10": [],
            "/sync/ratings/episodes/9,10": [],
        }
    )
    client = make_client(routes)

    items = await client.get_high_rated(USER, 9)
    await client.close()

    assert [item.type for item in items] == ["movie", "show"]


async def test_in_progress_shows_skip_hidden_and_finished() -> None:
    progress = {
        "aired": 10,
        "completed": 4,
        "last_watched_at": "2024-04-02T10:00:00.000Z",
        "next_episode": {"season": 1, "number": 5, "ids": {"trakt": 105}},
    }
    routes = Routes(
        {
            "/sync/last_activities": ACTIVITIES,
            "/users/hidden/progress_watched": [{"hidden_at": "2024-01-01T00:00:00.000Z", "show": show(3)}],
            "/sync/watched/shows": [
                {"plays": 4, "last_watched_at": "2024-04-01T10:00:00.000Z", "show": show(1, "Older")},
                {"plays": 4, "last_watched_at": "2024-04-02T10:00:00.000Z", "show": show(2, "Newer")},
                {"plays": 4, "last_watched_at": "2024-04-03T10:00:00.000Z", "show": show(3, "Hidden")},
                {"plays": 10, "last_watched_at": "2024-03-01T10:00:00.000Z", "show": show(4, "Done")},
            ],
            "/shows/1/progress/watched": progress,
            "/shows/2/progress/watched": progress,
            "/shows/4/progress/watched": {"aired": 10, "completed": 10, "next_episode": None},
        }
    )
    client = make_client(routes)

    shows = await client.get_in_progress_shows(USER)
    limited = await client.get_in_progress_shows(USER, limit=1)
    await client.close()

    assert [entry.show.title for entry in shows] == ["Newer", "Older"]
    assert [entry.show.title for entry in limited] == ["Newer"]
    assert "/shows/3/progress/watched" not in routes.hits
