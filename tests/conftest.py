"""
Shared fakes for provider collaborators.
"""

import copy

import pytest

from research_guard.sdk.search_client import SearchError, SearchHit
from research_guard.storage.models import UsageSummary


class FakeLedger:
    """In-memory ledger with a fixed available balance."""

    def __init__(self, available=100, credit_limit=100):
        self.available = available
        self.credit_limit = credit_limit
        self.events = []
        self.checks = []

    def check_credits(self, user_id, required_credits):
        self.checks.append((user_id, required_credits))
        return self.available >= required_credits

    def record_usage(self, event):
        self.events.append(event)

    def get_user_usage(self, user_id):
        used = sum(e.credits for e in self.events if e.user_id == user_id)
        if not used:
            return UsageSummary.empty(user_id, self.credit_limit)
        return UsageSummary(
            user_id=user_id,
            total_credits_used=used,
            total_reports=0,
            total_sources=0,
            last_activity=max(e.timestamp for e in self.events if e.user_id == user_id),
            credit_limit=self.credit_limit,
        )


class FakeSearchIndex:
    """Search index returning canned hits, or failing like a dead provider."""

    def __init__(self, hits=None, fail=False):
        self.hits = list(hits or [])
        self.fail = fail
        self.calls = []

    def search(self, query, source_types=None, top=10, skip=0):
        self.calls.append({"query": query, "source_types": source_types, "top": top})
        if self.fail:
            raise SearchError("search request failed: connection refused")
        hits = self.hits
        if source_types:
            wanted = {t.value for t in source_types}
            hits = [h for h in hits if h.source_type in wanted]
        return sorted(hits, key=lambda h: h.relevance_score, reverse=True)[:top]


class FakeChatModel:
    """Chat model replaying one scripted response per call.

    A script entry that is an exception instance is raised instead.
    """

    def __init__(self, *scripts):
        self.scripts = list(scripts)
        self.calls = []

    def stream(self, messages, tools=None):
        self.calls.append({"messages": copy.deepcopy(messages), "tools": tools})
        script = self.scripts.pop(0)
        if isinstance(script, Exception):
            raise script
        for chunk in script:
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk


def make_hit(doc_id, score, source_type="pdf", title=None, content=None):
    return SearchHit(
        id=doc_id,
        title=title or f"Document {doc_id}",
        content=content or f"Content of {doc_id}",
        relevance_score=score,
        source_type=source_type,
    )


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def three_documents():
    return [make_hit("a", 0.4), make_hit("b", 2.5, "url"), make_hit("c", 1.1, "image")]
