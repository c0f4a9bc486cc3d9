"""
External source protocols.

Sources hand the orchestrator raw pages and know how to parse one raw item
into the local shape. Transport concerns (HTTP status mapping, conditional
requests) stay inside the source; every failure surfaces as a
``RefSpineError`` whose ``retryable`` flag drives the sync retry loop.

Architecture:
    ::

        ConceptSource (Protocol)               FeatureSource (Protocol)
        ├── SkosmosConceptSource (httpx)       └── OgcFeatureSource (httpx)
        └── StaticConceptSource (records/JSON)

        fetch_page(page_number, page_size) → Page
        parse_item(raw)                    → Concept | ParsedFeature
        fetch_concept / fetch_item         → Fetched | NotModified   (conditional)

Tags:
    sources, protocol, pagination, etag, refspine
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from refspine.cache import Fetched, Fetcher, NotModified
from refspine.core.errors import SourceNotFoundError
from refspine.models import CacheEntry, Concept
from refspine.sync.transform import concept_from_record


@dataclass
class Page:
    """One page of raw items. ``total_items`` is ``None`` when the source does not say."""

    items: list[dict[str, Any]]
    page_number: int
    total_items: int | None = None
    has_more: bool = False


@dataclass
class ParsedFeature:
    """A raw external feature reduced to what the cache stores."""

    collection: str
    item_id: str
    payload: dict[str, Any]
    change_token: str | None = None
    href: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.collection, self.item_id)


@runtime_checkable
class ConceptSource(Protocol):
    name: str

    def fetch_page(self, page_number: int, page_size: int) -> Page: ...

    def parse_item(self, item: dict[str, Any]) -> Concept: ...

    def fetch_concept(
        self, uri: str, change_token: str | None = None
    ) -> Fetched | NotModified: ...


@runtime_checkable
class FeatureSource(Protocol):
    name: str
    api_base_url: str
    collection: str

    def fetch_page(self, page_number: int, page_size: int) -> Page: ...

    def parse_item(self, item: dict[str, Any]) -> ParsedFeature: ...

    def fetch_item(
        self, collection: str, item_id: str, change_token: str | None = None
    ) -> Fetched | NotModified: ...


# ---------------------------------------------------------------------------
# StaticConceptSource
# ---------------------------------------------------------------------------


@dataclass
class StaticConceptSource:
    """Concept source over records already in the native record format.

    Used to seed a store from a JSON export (a list of concept records).
    ``version`` acts as the change token: a matching token means not-modified.
    """

    records: list[dict[str, Any]]
    name: str = "static"
    version: str | None = None
    _by_uri: dict[str, dict[str, Any]] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        self._by_uri = {r["uri"]: r for r in self.records if "uri" in r}

    @classmethod
    def from_json_file(cls, path: str | Path, name: str | None = None) -> StaticConceptSource:
        path = Path(path)
        data = json.loads(path.read_text(encoding="utf-8"))
        if isinstance(data, dict):
            return cls(records=data.get("concepts", []), name=name or path.stem, version=data.get("version"))
        return cls(records=data, name=name or path.stem)

    def fetch_page(self, page_number: int, page_size: int) -> Page:
        start = page_number * page_size
        items = self.records[start:start + page_size]
        return Page(
            items=items,
            page_number=page_number,
            total_items=len(self.records),
            has_more=start + page_size < len(self.records),
        )

    def parse_item(self, item: dict[str, Any]) -> Concept:
        return concept_from_record(item)

    def fetch_concept(self, uri: str, change_token: str | None = None) -> Fetched | NotModified:
        record = self._by_uri.get(uri)
        if record is None:
            raise SourceNotFoundError(f"{uri} is not in source '{self.name}'").with_context(
                source_name=self.name, uri=uri
            )
        if self.version is not None and change_token == self.version:
            return NotModified(change_token=self.version)
        return Fetched(payload=concept_from_record(record).content_dict(), change_token=self.version)


def concept_fetcher(source: ConceptSource, uri: str) -> Fetcher:
    """Conditional fetcher for one concept, for ``CacheController.get_or_fetch``."""

    def fetch(prior: CacheEntry | None) -> Fetched | NotModified:
        return source.fetch_concept(uri, prior.change_token if prior else None)

    return fetch


def feature_fetcher(source: FeatureSource, collection: str, item_id: str) -> Fetcher:
    """Conditional fetcher for one target item."""

    def fetch(prior: CacheEntry | None) -> Fetched | NotModified:
        return source.fetch_item(collection, item_id, prior.change_token if prior else None)

    return fetch


__all__ = [
    "Page",
    "ParsedFeature",
    "ConceptSource",
    "FeatureSource",
    "StaticConceptSource",
    "concept_fetcher",
    "feature_fetcher",
]
