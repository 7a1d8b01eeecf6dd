from __future__ import annotations

import httpx
import pytest

from watchparty.config import Settings
from watchparty.errors import SearchError, ValidationError
from watchparty.search import YouTubeSearchClient

pytestmark = pytest.mark.anyio


def make_client(handler) -> YouTubeSearchClient:
    settings = Settings(_env_file=None, youtube_api_key="secret", search_max_results=3)
    return YouTubeSearchClient(settings, transport=httpx.MockTransport(handler))


async def test_search_maps_results() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "items": [
                    {
                        "id": {"videoId": "dQw4w9WgXcQ"},
                        "snippet": {
                            "title": "Never Gonna Give You Up",
                            "channelTitle": "Rick Astley",
                            "thumbnails": {"default": {"url": "https://i.ytimg.com/vi/dQw4w9WgXcQ/default.jpg"}},
                        },
                    },
                    {"id": {"channelId": "UC123"}, "snippet": {"title": "A channel"}},
                ]
            },
        )

    results = await make_client(handler).search("  rick  ")

    assert [(item.external_id, item.title, item.channel_name) for item in results] == [
        ("dQw4w9WgXcQ", "Never Gonna Give You Up", "Rick Astley")
    ]
    params = seen[0].url.params
    assert params["q"] == "rick"
    assert params["part"] == "snippet"
    assert params["type"] == "video"
    assert params["maxResults"] == "3"
    assert params["key"] == "secret"


@pytest.mark.parametrize("query", ["", "   "])
async def test_empty_query_is_rejected_locally(query: str) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    with pytest.raises(ValidationError):
        await make_client(handler).search(query)


async def test_quota_error_is_reported() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"error": {"message": "quotaExceeded"}})

    with pytest.raises(SearchError) as exc:
        await make_client(handler).search("rick")
    assert exc.value.status_code == 403


async def test_network_error_is_reported() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("unreachable", request=request)

    with pytest.raises(SearchError) as exc:
        await make_client(handler).search("rick")
    assert exc.value.status_code is None
