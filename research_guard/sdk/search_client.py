"""
Full-text search index client.

Thin REST client for the document index. Ranking happens in the index;
this client only builds the query, retries transient failures and maps
hits into SearchHit records.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import requests

from research_guard.config.loader import SearchSettings
from research_guard.core.retry import RetryPolicy

logger = logging.getLogger(__name__)

MATCH_ALL = "*"


class SourceType(Enum):
    """Kinds of indexed sources."""
    PDF = "pdf"
    IMAGE = "image"
    URL = "url"
    FEED = "feed"


class SearchError(Exception):
    """Search provider unreachable or returned an error."""


class _TransientSearchError(SearchError):
    pass


@dataclass(frozen=True)
class SearchHit:
    """One ranked document returned by the index."""
    id: str
    title: str
    content: str
    relevance_score: float
    source_type: str
    highlights: List[str] = field(default_factory=list)
    source_url: Optional[str] = None
    page_number: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "relevanceScore": self.relevance_score,
            "sourceType": self.source_type,
            "highlights": list(self.highlights),
            "sourceUrl": self.source_url,
            "pageNumber": self.page_number,
        }


class AzureSearchClient:
    """Client for an Azure Cognitive Search style document index."""

    def __init__(
        self,
        settings: SearchSettings,
        session: Optional[requests.Session] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        if not settings.endpoint:
            logger.warning("Search endpoint not configured")
        self.settings = settings
        self.retry_policy = retry_policy or RetryPolicy()
        self.session = session or requests.Session()
        self.session.headers.update({
            "Content-Type": "application/json",
            "api-key": settings.api_key,
        })

    @property
    def base_url(self) -> str:
        return f"{self.settings.endpoint.rstrip('/')}/indexes/{self.settings.index_name}"

    def search(
        self,
        query: str,
        source_types: Optional[Sequence[SourceType]] = None,
        top: int = 10,
        skip: int = 0,
    ) -> List[SearchHit]:
        """Search the index.

        Args:
            query: Full-text query; "*" matches every document
            source_types: Optional filter on source type
            top: Maximum number of hits
            skip: Number of hits to skip

        Returns:
            Hits ordered by relevance (highest first)

        Raises:
            SearchError: If the index is not configured or the request fails
        """
        if not self.settings.endpoint:
            raise SearchError("Search endpoint not configured")

        params: Dict[str, str] = {
            "api-version": self.settings.api_version,
            "search": query or MATCH_ALL,
            "$top": str(top),
            "$skip": str(skip),
            "highlight": "content",
            "highlightPreTag": "<mark>",
            "highlightPostTag": "</mark>",
            "$orderby": "search.score() desc",
        }
        if source_types:
            params["$filter"] = " or ".join(
                f"sourceType eq '{SourceType(t).value}'" for t in source_types
            )

        def attempt() -> requests.Response:
            try:
                response = self.session.get(
                    f"{self.base_url}/docs",
                    params=params,
                    timeout=self.settings.timeout_seconds,
                )
            except requests.RequestException as e:
                raise _TransientSearchError(f"search request failed: {e}") from e
            if response.status_code >= 500 or response.status_code == 429:
                raise _TransientSearchError(f"search returned {response.status_code}")
            return response

        response = self.retry_policy.call(attempt, retry_on=(_TransientSearchError,), description="search")
        if not response.ok:
            raise SearchError(f"search returned {response.status_code}")

        try:
            documents = response.json()["value"]
            hits = [self._to_hit(doc) for doc in documents]
        except (ValueError, KeyError, TypeError) as e:
            raise SearchError(f"malformed search response: {e}") from e

        return sorted(hits, key=lambda hit: hit.relevance_score, reverse=True)

    @staticmethod
    def _to_hit(doc: Dict[str, Any]) -> SearchHit:
        highlights = (doc.get("@search.highlights") or {}).get("content") or []
        return SearchHit(
            id=str(doc["id"]),
            title=doc.get("title") or "",
            content=doc.get("content") or "",
            relevance_score=float(doc.get("@search.score") or 0.0),
            source_type=doc.get("sourceType") or "",
            highlights=list(highlights),
            source_url=doc.get("sourceUrl"),
            page_number=doc.get("pageNumber"),
        )
