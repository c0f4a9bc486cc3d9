"""
HTTP sources over httpx.

``SkosmosConceptSource`` reads a unit vocabulary from a Skosmos REST API
(Finto serves UCUM at ``https://api.finto.fi/rest/v1/ucum``).
``OgcFeatureSource`` reads one collection of an OGC API Features service.

Both accept an injected ``httpx.Client`` (tests pass one built on
``httpx.MockTransport``) and map transport outcomes onto the error hierarchy:

    ============================  ==========================================
    Outcome                       Raised / returned
    ============================  ==========================================
    timeout, connection failure   NetworkError         (retryable)
    5xx                           FetchError           (retryable)
    429                           RateLimitError       (retryable, retry_after)
    404                           SourceNotFoundError
    other 4xx                     SourceError
    304 (If-None-Match)           NotModified
    body is not JSON              ParseError
    ============================  ==========================================

Examples:
    >>> with SkosmosConceptSource("https://api.finto.fi/rest/v1", "ucum") as finto:
    ...     page = finto.fetch_page(0, 100)

Tags:
    httpx, skosmos, finto, ogc-api-features, etag, sources, refspine
"""

from __future__ import annotations

from typing import Any

import httpx

from refspine.cache import Fetched, NotModified
from refspine.core.errors import (
    FetchError,
    NetworkError,
    ParseError,
    RateLimitError,
    SourceError,
    SourceNotFoundError,
)
from refspine.core.logging import get_logger
from refspine.models import Concept
from refspine.sync.sources import Page, ParsedFeature
from refspine.sync.transform import concept_from_skosmos, feature_item_id, self_href

log = get_logger(__name__)

USER_AGENT = "refspine/0.1"


class HttpSource:
    """Shared request handling and status mapping."""

    def __init__(
        self,
        *,
        name: str,
        timeout: float = 30.0,
        api_key: str | None = None,
        http_client: httpx.Client | None = None,
    ):
        self.name = name
        self.api_key = api_key
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(timeout=timeout, follow_redirects=True)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def _get(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        etag: str | None = None,
    ) -> httpx.Response | None:
        """GET ``url``; returns ``None`` on 304 Not Modified."""
        headers = {"Accept": "application/json", "User-Agent": USER_AGENT}
        if etag:
            headers["If-None-Match"] = etag
        if self.api_key:
            headers["X-API-Key"] = self.api_key

        try:
            response = self._client.get(url, params=params, headers=headers)
        except httpx.TimeoutException as exc:
            raise NetworkError(f"{self.name}: request timed out", cause=exc).with_context(
                source_name=self.name, url=url
            ) from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"{self.name}: {exc}", cause=exc).with_context(
                source_name=self.name, url=url
            ) from exc

        status = response.status_code
        if status == 304:
            return None
        if status < 400:
            return response

        context = {"source_name": self.name, "url": str(response.request.url), "http_status": status}
        if status == 429:
            raise RateLimitError(
                f"{self.name}: rate limited", retry_after=_retry_after(response)
            ).with_context(**context)
        if status >= 500:
            raise FetchError(f"{self.name} returned HTTP {status}").with_context(**context)
        if status == 404:
            raise SourceNotFoundError(f"{self.name}: {url} not found").with_context(**context)
        raise SourceError(f"{self.name} rejected the request with HTTP {status}").with_context(**context)

    def _json(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise ParseError(f"{self.name}: response is not JSON", cause=exc).with_context(
                source_name=self.name, url=str(response.request.url)
            ) from exc


def _retry_after(response: httpx.Response) -> int:
    value = response.headers.get("Retry-After")
    if value and value.isdigit():
        return int(value)
    return 60


# ---------------------------------------------------------------------------
# Skosmos / Finto
# ---------------------------------------------------------------------------


class SkosmosConceptSource(HttpSource):
    """Unit concepts from a Skosmos vocabulary.

    Pages come from ``/{vocab}/search?query=*`` (Skosmos reports no total, so
    one extra hit is requested to learn whether another page exists); each hit
    is then read in full from ``/{vocab}/data?uri=...``. A hit whose data
    request is refused travels on the page with its error and fails in
    ``parse_item``.
    """

    def __init__(
        self,
        base_url: str = "https://api.finto.fi/rest/v1",
        vocabulary: str = "ucum",
        *,
        lang: str = "en",
        name: str = "finto",
        timeout: float = 30.0,
        api_key: str | None = None,
        http_client: httpx.Client | None = None,
    ):
        super().__init__(name=name, timeout=timeout, api_key=api_key, http_client=http_client)
        self.base_url = base_url.rstrip("/")
        self.vocabulary = vocabulary
        self.lang = lang

    @property
    def vocabulary_url(self) -> str:
        return f"{self.base_url}/{self.vocabulary}"

    def fetch_page(self, page_number: int, page_size: int) -> Page:
        response = self._get(
            f"{self.vocabulary_url}/search",
            params={
                "query": "*",
                "lang": self.lang,
                "maxhits": page_size + 1,
                "offset": page_number * page_size,
            },
        )
        body = self._json(response)
        hits = body.get("results", []) if isinstance(body, dict) else []
        items = []
        for hit in hits[:page_size]:
            uri = hit.get("uri") if isinstance(hit, dict) else None
            if not uri:
                items.append({"uri": None, "document": hit})
                continue
            try:
                data = self._get(f"{self.vocabulary_url}/data", params={"uri": uri, "format": "application/ld+json"})
                items.append({"uri": uri, "document": self._json(data), "etag": data.headers.get("ETag")})
            except SourceError as exc:
                # one unreadable hit is an item error; transient failures still fail the page
                log.info("skosmos.hit_failed", uri=uri, error=str(exc))
                items.append({"uri": uri, "error": exc})
        log.debug("skosmos.page", page=page_number, items=len(items))
        return Page(items=items, page_number=page_number, has_more=len(hits) > page_size)

    def parse_item(self, item: dict[str, Any]) -> Concept:
        uri = item.get("uri")
        if not uri:
            raise ParseError(f"{self.name}: search hit without uri")
        if item.get("error") is not None:
            raise item["error"]
        concept = concept_from_skosmos(item.get("document") or {}, uri)
        concept.cache.change_token = item.get("etag")
        return concept

    def fetch_concept(self, uri: str, change_token: str | None = None) -> Fetched | NotModified:
        response = self._get(
            f"{self.vocabulary_url}/data",
            params={"uri": uri, "format": "application/ld+json"},
            etag=change_token,
        )
        if response is None:
            return NotModified(change_token=change_token)
        concept = concept_from_skosmos(self._json(response), uri)
        return Fetched(payload=concept.content_dict(), change_token=response.headers.get("ETag"))


# ---------------------------------------------------------------------------
# OGC API Features
# ---------------------------------------------------------------------------


class OgcFeatureSource(HttpSource):
    """Items of one OGC API Features collection."""

    def __init__(
        self,
        api_base_url: str,
        collection: str,
        *,
        name: str | None = None,
        timeout: float = 30.0,
        api_key: str | None = None,
        http_client: httpx.Client | None = None,
    ):
        super().__init__(
            name=name or f"ogc:{collection}",
            timeout=timeout,
            api_key=api_key,
            http_client=http_client,
        )
        self.api_base_url = api_base_url.rstrip("/")
        self.collection = collection

    def item_url(self, collection: str, item_id: str) -> str:
        return f"{self.api_base_url}/collections/{collection}/items/{item_id}"

    def fetch_page(self, page_number: int, page_size: int) -> Page:
        offset = page_number * page_size
        response = self._get(
            f"{self.api_base_url}/collections/{self.collection}/items",
            params={"limit": page_size, "offset": offset, "f": "json"},
        )
        body = self._json(response)
        if not isinstance(body, dict):
            raise ParseError(f"{self.name}: items response is not a FeatureCollection")
        features = body.get("features") or []
        matched = body.get("numberMatched")
        has_next_link = any(
            isinstance(link, dict) and link.get("rel") == "next" for link in body.get("links", []) or []
        )
        has_more = has_next_link or (isinstance(matched, int) and offset + len(features) < matched)
        return Page(
            items=features,
            page_number=page_number,
            total_items=matched if isinstance(matched, int) else None,
            has_more=has_more,
        )

    def parse_item(self, item: dict[str, Any]) -> ParsedFeature:
        item_id = feature_item_id(item)
        return ParsedFeature(
            collection=self.collection,
            item_id=item_id,
            payload=_strip_links(item),
            href=self_href(item) or self.item_url(self.collection, item_id),
        )

    def fetch_item(
        self, collection: str, item_id: str, change_token: str | None = None
    ) -> Fetched | NotModified:
        response = self._get(self.item_url(collection, item_id), params={"f": "json"}, etag=change_token)
        if response is None:
            return NotModified(change_token=change_token)
        item = self._json(response)
        feature_item_id(item)
        return Fetched(payload=_strip_links(item), change_token=response.headers.get("ETag"))


def _strip_links(item: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in item.items() if k != "links"}


__all__ = ["HttpSource", "SkosmosConceptSource", "OgcFeatureSource"]
