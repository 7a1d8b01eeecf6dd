"""Content metadata lookup against the YouTube Data API."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import ValidationError as PydanticValidationError

from .config import Settings
from .errors import SearchError, ValidationError
from .models import TITLE_MAX_LENGTH, ContentSummary

logger = logging.getLogger(__name__)


class YouTubeSearchClient:
    """Search videos by free text query."""

    def __init__(self, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.base_url = str(settings.youtube_search_url)
        self.api_key = settings.youtube_api_key
        self.max_results = settings.search_max_results
        self.timeout = settings.search_timeout_seconds
        self._transport = transport

    def _get_params(self, query: str) -> dict[str, Any]:
        return {
            "part": "snippet",
            "type": "video",
            "maxResults": self.max_results,
            "q": query,
            "key": self.api_key or "",
        }

    async def search(self, query: str) -> list[ContentSummary]:
        """
        Search for videos.

        Args:
            query: Free text query, rejected when blank

        Returns:
            Matching content summaries; malformed items are skipped

        Raises:
            ValidationError: If the query is empty
            SearchError: If the request fails or the quota is exhausted
        """
        query = (query or "").strip()
        if not query:
            raise ValidationError("query", "search query must not be empty")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(self.base_url, params=self._get_params(query))
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.warning("Content search rejected", extra={"status_code": status})
            raise SearchError(f"Search failed with status {status}", status_code=status) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Content search unavailable: %s", exc)
            raise SearchError("Search service unavailable") from exc

        if not isinstance(payload, dict):
            raise SearchError("Unexpected search response")
        results = []
        for item in payload.get("items") or []:
            summary = self._to_summary(item)
            if summary is not None:
                results.append(summary)
        return results

    @staticmethod
    def _to_summary(item: Any) -> ContentSummary | None:
        if not isinstance(item, dict):
            return None
        snippet = item.get("snippet") or {}
        thumbnails = snippet.get("thumbnails") or {}
        try:
            return ContentSummary(
                external_id=(item.get("id") or {}).get("videoId", ""),
                title=str(snippet.get("title", ""))[:TITLE_MAX_LENGTH],
                thumbnail_url=(thumbnails.get("default") or {}).get("url", ""),
                channel_name=snippet.get("channelTitle", ""),
            )
        except (PydanticValidationError, AttributeError):
            logger.debug("Skipped malformed search result")
            return None


__all__ = ["YouTubeSearchClient"]
