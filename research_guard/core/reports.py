"""
Structured research report generation.

Builds reports whose section citations always point at sources that were
supplied to the report. A report citing anything else is rejected.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Sequence

from research_guard.sdk.search_client import SearchHit


class ReportType(Enum):
    """Kinds of report the generator can produce."""
    SUMMARY = "summary"
    ANALYSIS = "analysis"
    COMPARISON = "comparison"
    TREND_ANALYSIS = "trend-analysis"


class CitationError(ValueError):
    """A report section cites a source id that was not supplied."""


@dataclass(frozen=True)
class ReportSource:
    """A source document supplied to the report generator."""
    id: str
    title: str
    content: str
    source_type: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "sourceType": self.source_type,
        }


@dataclass(frozen=True)
class ReportSection:
    title: str
    content: str
    citations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"title": self.title, "content": self.content, "citations": list(self.citations)}


@dataclass(frozen=True)
class Report:
    """A generated report with cited sections."""
    title: str
    executive_summary: str
    key_findings: List[str]
    sections: List[ReportSection]
    recommendations: List[str]
    sources: List[ReportSource]
    generated_at: datetime
    processing_time_ms: int

    def cited_ids(self) -> List[str]:
        return [source_id for section in self.sections for source_id in section.citations]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "executiveSummary": self.executive_summary,
            "keyFindings": list(self.key_findings),
            "sections": [section.to_dict() for section in self.sections],
            "recommendations": list(self.recommendations),
            "sources": [source.to_dict() for source in self.sources],
            "generatedAt": self.generated_at.isoformat(),
            "processingTime": self.processing_time_ms,
        }


def verify_citations(report: Report) -> None:
    """Check every section cites only the report's own sources.

    Raises:
        CitationError: If any citation is not a supplied source id
    """
    known = {source.id for source in report.sources}
    unknown = [source_id for source_id in report.cited_ids() if source_id not in known]
    if unknown:
        raise CitationError(f"Report cites unknown sources: {sorted(set(unknown))}")


def build_report(topic: str, sources: Sequence[ReportSource], report_type: ReportType) -> Report:
    """Generate a structured report on topic from the given sources.

    Sections cite overlapping windows of the supplied sources, so every
    citation is drawn from the input set by construction; the result is
    verified anyway before it is returned.

    Args:
        topic: Main topic of the report
        sources: Sources to analyze and cite
        report_type: Kind of report

    Returns:
        The generated report

    Raises:
        ValueError: If topic is empty
        CitationError: If a section cites an id outside sources
    """
    if not topic or not topic.strip():
        raise ValueError("topic is required and cannot be empty")

    started = time.monotonic()
    source_ids = [source.id for source in sources]
    kind = report_type.value

    report = Report(
        title=f"{kind[0].upper()}{kind[1:]} Report: {topic}",
        executive_summary=(
            f"Based on analysis of {len(sources)} sources, this report provides "
            f"comprehensive insights into {topic}."
        ),
        key_findings=[
            f"Analysis reveals significant trends in {topic}",
            "Multiple sources confirm key patterns and developments",
            "Evidence-based recommendations emerge from the data",
            "Cross-source validation strengthens conclusions",
        ],
        sections=[
            ReportSection(
                title="Overview",
                content=f"This section provides a comprehensive overview of {topic} based on the analyzed sources.",
                citations=source_ids[0:2],
            ),
            ReportSection(
                title="Key Insights",
                content=f"Analysis of the sources reveals important insights and patterns related to {topic}.",
                citations=source_ids[1:3],
            ),
            ReportSection(
                title="Implications",
                content=f"The findings have significant implications for understanding and approaching {topic}.",
                citations=source_ids[2:4],
            ),
        ],
        recommendations=[
            f"Continue monitoring developments in {topic}",
            "Leverage insights for strategic decision making",
            "Consider additional research in related areas",
        ],
        sources=list(sources),
        generated_at=datetime.now(timezone.utc),
        processing_time_ms=int((time.monotonic() - started) * 1000),
    )
    verify_citations(report)
    return report


def build_corpus_summary(documents: Sequence[SearchHit], excerpt_length: int = 200) -> Report:
    """Summarize every indexed document, one section per document.

    An empty corpus produces a "No Documents Found" report telling the
    user to upload a source first.
    """
    started = time.monotonic()

    if not documents:
        return Report(
            title="No Documents Found",
            executive_summary=(
                "The knowledge base is currently empty. Please upload some documents to get started."
            ),
            key_findings=[],
            sections=[],
            recommendations=["Upload a source first using the 'Add Source' button."],
            sources=[],
            generated_at=datetime.now(timezone.utc),
            processing_time_ms=int((time.monotonic() - started) * 1000),
        )

    sections = []
    for index, doc in enumerate(documents, start=1):
        excerpt = doc.content[:excerpt_length]
        if len(doc.content) > excerpt_length:
            excerpt += "..."
        sections.append(ReportSection(
            title=f"Source {index}: {doc.title}",
            content=excerpt,
            citations=[doc.id],
        ))

    report = Report(
        title="Comprehensive Summary of All Indexed Documents",
        executive_summary=(
            f"This report provides a comprehensive overview of all {len(documents)} "
            "documents currently indexed in the knowledge base."
        ),
        key_findings=[
            f"A total of {len(documents)} sources were analyzed.",
            "Key themes and topics will be extracted from these sources.",
            "This summary provides a high-level starting point for your research.",
        ],
        sections=sections,
        recommendations=[
            "Use the chat interface to ask specific questions about these documents.",
            "Explore individual sources for more detailed information.",
        ],
        sources=[
            ReportSource(id=doc.id, title=doc.title, content=doc.content, source_type=doc.source_type)
            for doc in documents
        ],
        generated_at=datetime.now(timezone.utc),
        processing_time_ms=int((time.monotonic() - started) * 1000),
    )
    verify_citations(report)
    return report
