"""
Citation extraction from answer text and the search-result side channel.

Inline markers like [1], [1, 3] or [2-4] are read left to right. Marker n
refers to the n-th side-channel source; resolved sources are de-duplicated
by URL and renumbered 1..k in order of first appearance.
"""
import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable
from urllib.parse import urlparse

from infrastructure.config.qa_config import CitationsConfig
from infrastructure.llm.errors import ParsingError
from schemas.qa import Citation, CitationType, GroundingMetadata, SourceRecord

logger = logging.getLogger(__name__)

_MARKER_PATTERN = re.compile(r"\[(\d+(?:\s*-\s*\d+)?(?:\s*,\s*\d+(?:\s*-\s*\d+)?)*)\]")

# Upper bound on a single [a-b] range expansion
MAX_MARKER_RANGE = 50

CONFIDENCE_SOURCE_TARGET = 5


@dataclass
class SideChannel:
    """Search metadata delivered next to the answer text."""

    search_results: Any = None
    citations: Any = None
    search_queries: list[str] = field(default_factory=list)

    @classmethod
    def from_body(cls, body: dict) -> "SideChannel":
        return cls().merge(body)

    def merge(self, frame: dict) -> "SideChannel":
        """Return a copy updated with whichever side-channel keys the frame carries."""
        queries = frame.get("web_search_queries", frame.get("search_queries"))
        return SideChannel(
            search_results=frame.get("search_results", self.search_results),
            citations=frame.get("citations", self.citations),
            search_queries=[str(q) for q in queries] if isinstance(queries, list) else self.search_queries,
        )

    def sources(self) -> list[SourceRecord | None]:
        """
        Index-aligned source list.

        search_results entries come first; bare citation URLs fill positions
        the search results don't cover. Unusable entries stay as None so
        marker positions are preserved.
        """
        results = self.search_results or []
        urls = self.citations or []
        if not isinstance(results, list) or not isinstance(urls, list):
            raise ParsingError("Side-channel search results must be lists")

        records: list[SourceRecord | None] = [_to_source(item) for item in results]
        for index, url in enumerate(urls):
            if index >= len(records):
                records.append(_to_source(url))
            elif records[index] is None:
                records[index] = _to_source(url)
        return records


def _to_source(item: Any) -> SourceRecord | None:
    if isinstance(item, str):
        return SourceRecord(url=item) if item.strip() else None
    if isinstance(item, dict) and isinstance(item.get("url"), str) and item["url"].strip():
        return SourceRecord(
            url=item["url"],
            title=item.get("title") or None,
            snippet=item.get("snippet") or None,
            date=item.get("date") or item.get("last_updated") or None,
        )
    return None


def find_markers(text: str) -> list[int]:
    """Marker numbers in order of first appearance, without repeats."""
    if not text:
        return []

    indices: list[int] = []
    for match in _MARKER_PATTERN.findall(text):
        for part in (p.strip() for p in match.split(",")):
            if "-" in part:
                bounds = [b.strip() for b in part.split("-", 1)]
                start, end = int(bounds[0]), int(bounds[1])
                if start <= end and end - start < MAX_MARKER_RANGE:
                    indices.extend(range(start, end + 1))
            elif part.isdigit():
                indices.append(int(part))

    seen = set()
    unique = []
    for idx in indices:
        if idx not in seen:
            seen.add(idx)
            unique.append(idx)
    return unique


def domain_of(url: str) -> str:
    host = urlparse(url).hostname or ""
    return host[4:] if host.startswith("www.") else host


def _matches(domain: str, suffix: str) -> bool:
    return domain == suffix or domain.endswith("." + suffix)


def confidence_score(sources: Iterable[SourceRecord | None]) -> float:
    count = sum(1 for s in sources if s is not None)
    return min(count / CONFIDENCE_SOURCE_TARGET, 1.0)


@dataclass
class CitationExtraction:
    citations: list[Citation]
    grounding: GroundingMetadata
    warning: str | None = None


class CitationExtractor:
    def __init__(self, config: CitationsConfig):
        self._config = config
        # Longest suffix first so zh.wikipedia.org wins over wikipedia.org
        self._titles = sorted(config.domain_titles.items(), key=lambda kv: len(kv[0]), reverse=True)

    def classify(self, domain: str) -> CitationType:
        if any(_matches(domain, d) for d in self._config.academic_domains):
            return CitationType.ACADEMIC
        if domain.endswith(".edu") or ".edu." in domain:
            return CitationType.ACADEMIC
        if any(_matches(domain, d) for d in self._config.news_domains):
            return CitationType.NEWS
        return CitationType.WEB_CITATION

    def title_for(self, domain: str) -> str:
        for suffix, title in self._titles:
            if _matches(domain, suffix):
                return title
        return domain.split(".")[0] if domain else "來源"

    def _to_citation(self, source: SourceRecord, number: int, marker: int) -> Citation:
        domain = domain_of(source.url)
        return Citation(
            number=str(number),
            title=source.title or self.title_for(domain),
            url=source.url,
            type=self.classify(domain),
            snippet=source.snippet,
            publish_date=source.date,
            domain=domain or None,
            marker=marker,
        )

    def grounding(
        self,
        side_channel: SideChannel,
        sources: list[SourceRecord | None],
        successful: bool,
    ) -> GroundingMetadata:
        return GroundingMetadata(
            search_queries=list(side_channel.search_queries),
            web_sources=[s for s in sources if s is not None],
            confidence_score=confidence_score(sources),
            grounding_successful=successful,
        )

    def extract(self, text: str, side_channel: SideChannel) -> CitationExtraction:
        """Resolve markers in text against the side channel. Raises ParsingError."""
        sources = side_channel.sources()
        citations: list[Citation] = []
        seen_urls: set[str] = set()
        unresolved: list[int] = []

        for marker in find_markers(text):
            if len(citations) >= self._config.max_citations:
                break
            source = sources[marker - 1] if 1 <= marker <= len(sources) else None
            if source is None:
                unresolved.append(marker)
                continue
            if source.url in seen_urls:
                continue
            seen_urls.add(source.url)
            citations.append(self._to_citation(source, len(citations) + 1, marker))

        warning = None
        if unresolved:
            warning = f"Unresolved citation markers: {unresolved}"
        if not citations:
            warning = warning or "No citation markers resolved to a source"

        return CitationExtraction(
            citations=citations,
            grounding=self.grounding(side_channel, sources, bool(citations)),
            warning=warning,
        )

    def passthrough(self, side_channel: SideChannel) -> CitationExtraction:
        """Grounding metadata only, for requests that did not ask for citations."""
        try:
            sources = side_channel.sources()
        except ParsingError as e:
            logger.warning(f"[CITATIONS] Ignoring malformed side channel: {e}")
            sources = []
        return CitationExtraction(
            citations=[],
            grounding=self.grounding(side_channel, sources, any(s is not None for s in sources)),
        )

    def _failed(self, side_channel: SideChannel, warning: str) -> CitationExtraction:
        logger.warning(f"[CITATIONS] {warning}")
        return CitationExtraction(
            citations=[],
            grounding=GroundingMetadata(
                search_queries=list(side_channel.search_queries),
                grounding_successful=False,
            ),
            warning=warning,
        )

    async def extract_with_timeout(self, text: str, side_channel: SideChannel) -> CitationExtraction:
        """Extraction bounded by citation_timeout_ms. Never raises."""
        if not side_channel.search_results and not side_channel.citations:
            return self._failed(side_channel, "No search results returned, grounding unavailable")

        loop = asyncio.get_running_loop()
        try:
            result = await asyncio.wait_for(
                loop.run_in_executor(None, self.extract, text, side_channel),
                timeout=self._config.citation_timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            return self._failed(
                side_channel, f"Citation extraction exceeded {self._config.citation_timeout_ms}ms"
            )
        except ParsingError as e:
            return self._failed(side_channel, f"Citation parsing failed: {e}")

        if result.warning:
            logger.warning(f"[CITATIONS] {result.warning}")
        logger.debug(f"[CITATIONS] Extracted {len(result.citations)} citations")
        return result
