from __future__ import annotations

import math

from wantarr.aggregator import (
    DEFAULT_BUFFER_COUNT,
    buffer_count,
    buffered_expansion,
    expand_season,
    expand_show,
)
from wantarr.trakt import Episode, Ids, SeasonDetails, Show


def make_show(aired_episodes, runtime=None) -> Show:
    return Show(title="Show", year=2019, ids=Ids(trakt=1), aired_episodes=aired_episodes, runtime=runtime)


def make_seasons(*sizes: int, specials: int = 0) -> list[SeasonDetails]:
    seasons = []
    if specials:
        seasons.append(
            SeasonDetails(
                number=0,
                ids=Ids(trakt=100),
                episodes=[Episode(season=0, number=n, ids=Ids(trakt=1000 + n, imdb=f"tt0-{n}")) for n in range(1, specials + 1)],
            )
        )
    for number, size in enumerate(sizes, start=1):
        seasons.append(
            SeasonDetails(
                number=number,
                ids=Ids(trakt=100 + number),
                episodes=[
                    Episode(season=number, number=n, ids=Ids(trakt=number * 1000 + n, imdb=f"tt{number}-{n}"))
                    for n in range(1, size + 1)
                ],
            )
        )
    return seasons


def numbers(medias) -> list[tuple[int, int]]:
    return [(m.season_number, m.episode_number) for m in medias]


def test_expand_show_stops_at_aired_count() -> None:
    medias = expand_show(make_show(aired_episodes=12), make_seasons(10, 10))
    assert len(medias) == 12
    assert numbers(medias)[-1] == (2, 2)


def test_expand_show_skips_specials() -> None:
    medias = expand_show(make_show(aired_episodes=3), make_seasons(3, specials=4))
    assert numbers(medias) == [(1, 1), (1, 2), (1, 3)]


def test_expand_show_uses_show_title_and_episode_ids() -> None:
    medias = expand_show(make_show(aired_episodes=1), make_seasons(2))
    assert medias[0].title == "Show"
    assert medias[0].external_id == "tt1-1"
    assert medias[0].type == "episode"


def test_expand_season_offsets_aired_count_by_previous_seasons() -> None:
    seasons = make_seasons(8, 8, 8)
    assert numbers(expand_season(make_show(aired_episodes=20), seasons, 3)) == [(3, 1), (3, 2), (3, 3), (3, 4)]
    assert len(expand_season(make_show(aired_episodes=24), seasons, 2)) == 8
    assert expand_season(make_show(aired_episodes=10), seasons, 3) == []


def test_expand_season_ignores_specials_and_unknown_seasons() -> None:
    seasons = make_seasons(4, specials=2)
    assert expand_season(make_show(aired_episodes=4), seasons, 0) == []
    assert expand_season(make_show(aired_episodes=4), seasons, 5) == []


def test_buffer_count() -> None:
    assert buffer_count(150, 45) == 4
    assert buffer_count(150, 30) == 5
    assert buffer_count(150, None) == DEFAULT_BUFFER_COUNT


def test_buffered_expansion_size() -> None:
    show = make_show(aired_episodes=20, runtime=40)
    medias = buffered_expansion(show, make_seasons(10, 10), 150, 1, 9)
    assert len(medias) == min(math.ceil(150 / 40), 12)
    assert numbers(medias) == [(1, 9), (1, 10), (2, 1), (2, 2)]


def test_buffered_expansion_limited_by_remaining_aired_episodes() -> None:
    show = make_show(aired_episodes=11, runtime=20)
    medias = buffered_expansion(show, make_seasons(10, 10), 150, 1, 9)
    assert numbers(medias) == [(1, 9), (1, 10), (2, 1)]


def test_buffered_expansion_unknown_start() -> None:
    show = make_show(aired_episodes=5, runtime=30)
    assert buffered_expansion(show, make_seasons(5), 150, 3, 1) == []
