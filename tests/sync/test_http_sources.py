"""Tests for the httpx sources against a mocked transport."""

import httpx
import pytest

from refspine.cache import CacheController, FeatureCacheStorage, Fetched, NotModified
from refspine.core.errors import (
    FetchError,
    NetworkError,
    ParseError,
    RateLimitError,
    SourceError,
    SourceNotFoundError,
)
from refspine.hierarchy import HierarchyBuilder
from refspine.models import ConversionOperation
from refspine.sync import OgcFeatureSource, SkosmosConceptSource, SyncOrchestrator, feature_fetcher

from _support import ATM, MBAR, PA, ogc_feature, square

FINTO = "https://finto.test/rest/v1"
OGC = "https://ogc.example.org"


def skosmos_node(uri, code, label, broader=None, conversion=None, dimension="pressure"):
    node = {
        "uri": uri,
        "notation": code,
        "prefLabel": [{"lang": "en", "value": label}, {"lang": "fi", "value": label.upper()}],
        "classification": {"dimension": dimension},
    }
    if broader:
        node["broader"] = {"uri": broader}
    if conversion:
        node["conversion"] = conversion
    return node


VOCAB = {
    PA: skosmos_node(PA, "Pa", "pascal"),
    ATM: skosmos_node(
        ATM, "atm", "standard atmosphere", broader=PA,
        conversion={"factor": 101325, "base_uri": PA, "operation": "multiply"},
    ),
    MBAR: skosmos_node(
        MBAR, "mbar", "millibar", broader=ATM,
        conversion={"factor": 100, "base_uri": PA},
    ),
}


class FakeFinto:
    """Just enough of the Skosmos REST API, with ETags on concept documents."""

    def __init__(self, vocab=VOCAB, gone=()):
        self.vocab = vocab
        # listed by search, 404 on data
        self.gone = list(gone)
        self.requests = []
        self.status_override = None

    def etag(self, uri):
        return f'"{self.vocab[uri]["notation"]}-1"'

    def __call__(self, request):
        self.requests.append(request)
        if self.status_override is not None:
            return httpx.Response(self.status_override, headers={"Retry-After": "7"})
        path = request.url.path
        params = request.url.params
        if path == "/rest/v1/ucum/search":
            offset, maxhits = int(params["offset"]), int(params["maxhits"])
            hits = [{"uri": uri} for uri in [*self.vocab, *self.gone]][offset:offset + maxhits]
            return httpx.Response(200, json={"results": hits})
        if path == "/rest/v1/ucum/data":
            uri = params["uri"]
            if uri not in self.vocab:
                return httpx.Response(404, json={"error": "not found"})
            etag = self.etag(uri)
            if request.headers.get("If-None-Match") == etag:
                return httpx.Response(304)
            node = self.vocab[uri]
            graph = [node] + [self.vocab[b["uri"]] for b in [node.get("broader")] if b]
            return httpx.Response(200, json={"graph": graph}, headers={"ETag": etag})
        return httpx.Response(404)


@pytest.fixture
def finto():
    return FakeFinto()


@pytest.fixture
def skosmos(finto):
    client = httpx.Client(transport=httpx.MockTransport(finto))
    return SkosmosConceptSource(FINTO, "ucum", http_client=client, api_key="secret")


class TestSkosmosConceptSource:
    def test_pages_carry_documents_and_etags(self, skosmos, finto):
        page = skosmos.fetch_page(0, 2)

        assert page.has_more
        assert page.total_items is None
        assert [item["uri"] for item in page.items] == [PA, ATM]
        assert page.items[1]["etag"] == '"atm-1"'
        search = finto.requests[0]
        assert search.url.params["maxhits"] == "3"
        assert search.url.params["offset"] == "0"
        assert search.url.params["query"] == "*"

    def test_last_page(self, skosmos):
        page = skosmos.fetch_page(1, 2)
        assert not page.has_more
        assert [item["uri"] for item in page.items] == [MBAR]

    def test_headers(self, skosmos, finto):
        skosmos.fetch_page(0, 2)
        request = finto.requests[0]
        assert request.headers["X-API-Key"] == "secret"
        assert request.headers["User-Agent"].startswith("refspine/")
        assert request.headers["Accept"] == "application/json"

    def test_parse_item(self, skosmos):
        page = skosmos.fetch_page(0, 2)
        atm = skosmos.parse_item(page.items[1])

        assert atm.uri == ATM
        assert atm.code == "atm"
        assert atm.label("fi") == "STANDARD ATMOSPHERE"
        assert atm.broader_uris == [PA]
        assert atm.broader[0].code == "Pa"
        assert atm.dimension == "pressure"
        assert atm.conversion.factor == 101325.0
        assert atm.conversion.operation == ConversionOperation.MULTIPLY
        assert atm.cache.change_token == '"atm-1"'

    def test_parse_item_without_uri(self, skosmos):
        with pytest.raises(ParseError):
            skosmos.parse_item({"uri": None, "document": {}})

    def test_fetch_concept_conditional(self, skosmos):
        fetched = skosmos.fetch_concept(ATM)
        assert isinstance(fetched, Fetched)
        assert fetched.change_token == '"atm-1"'
        assert fetched.payload["code"] == "atm"

        assert skosmos.fetch_concept(ATM, '"atm-1"') == NotModified(change_token='"atm-1"')

    def test_unknown_concept(self, skosmos):
        with pytest.raises(SourceNotFoundError) as info:
            skosmos.fetch_concept("http://urn.fi/URN:NBN:fi:au:ucum:r999")
        assert info.value.context.http_status == 404
        assert not info.value.retryable

    @pytest.mark.parametrize(
        "status, error, retryable",
        [
            (429, RateLimitError, True),
            (500, FetchError, True),
            (503, FetchError, True),
            (403, SourceError, False),
            (400, SourceError, False),
        ],
    )
    def test_status_mapping(self, skosmos, finto, status, error, retryable):
        finto.status_override = status
        with pytest.raises(error) as info:
            skosmos.fetch_page(0, 2)
        assert info.value.retryable is retryable
        assert info.value.context.source_name == "finto"

    def test_rate_limit_carries_retry_after(self, skosmos, finto):
        finto.status_override = 429
        with pytest.raises(RateLimitError) as info:
            skosmos.fetch_concept(ATM)
        assert info.value.retry_after == 7

    def test_client_errors_are_not_fetch_errors(self, skosmos, finto):
        finto.status_override = 403
        with pytest.raises(SourceError) as info:
            skosmos.fetch_page(0, 2)
        assert not isinstance(info.value, FetchError)

    def test_transport_failure(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        source = SkosmosConceptSource(FINTO, http_client=httpx.Client(transport=httpx.MockTransport(refuse)))
        with pytest.raises(NetworkError) as info:
            source.fetch_page(0, 10)
        assert info.value.retryable

    def test_timeout(self):
        def slow(request):
            raise httpx.ReadTimeout("timed out", request=request)

        source = SkosmosConceptSource(FINTO, http_client=httpx.Client(transport=httpx.MockTransport(slow)))
        with pytest.raises(NetworkError, match="timed out"):
            source.fetch_concept(ATM)

    def test_body_that_is_not_json(self):
        def garbage(request):
            return httpx.Response(200, content=b"<html>maintenance</html>")

        source = SkosmosConceptSource(FINTO, http_client=httpx.Client(transport=httpx.MockTransport(garbage)))
        with pytest.raises(ParseError):
            source.fetch_page(0, 10)

    def test_full_sync_over_http(self, skosmos, memory_store, clock, sleep):
        orchestrator = SyncOrchestrator(
            memory_store, builder=HierarchyBuilder(memory_store, clock), clock=clock, page_size=2, sleep=sleep
        )

        report = orchestrator.sync_all(skosmos)

        assert report.ok
        assert report.created == 3
        assert report.pages_ok == 2
        assert memory_store.get_concept(ATM).cache.change_token == '"atm-1"'
        assert orchestrator.builder.get_tree("pressure").node(MBAR).path == "Pa/atm/mbar"

    def test_missing_hit_is_an_item_error(self, memory_store, clock, sleep):
        gone = "http://urn.fi/URN:NBN:fi:au:ucum:gone"
        finto = FakeFinto(vocab={PA: VOCAB[PA]}, gone=[gone])
        source = SkosmosConceptSource(FINTO, http_client=httpx.Client(transport=httpx.MockTransport(finto)))

        page = source.fetch_page(0, 10)
        assert [item["uri"] for item in page.items] == [PA, gone]
        with pytest.raises(SourceNotFoundError):
            source.parse_item(page.items[1])

        orchestrator = SyncOrchestrator(memory_store, clock=clock, page_size=10, sleep=sleep)
        report = orchestrator.sync_all(source)

        assert report.created == 1
        assert report.failed_pages == []
        assert [(e.index, e.key) for e in report.item_errors] == [(1, gone)]
        assert memory_store.get_concept(PA) is not None

    def test_transient_hit_failure_fails_the_page(self):
        def flaky_data(request):
            if request.url.path.endswith("/data"):
                return httpx.Response(503)
            return httpx.Response(200, json={"results": [{"uri": PA}]})

        source = SkosmosConceptSource(FINTO, http_client=httpx.Client(transport=httpx.MockTransport(flaky_data)))
        with pytest.raises(FetchError):
            source.fetch_page(0, 10)


class FakeOgc:
    def __init__(self, features, next_links=False):
        self.features = features
        self.next_links = next_links
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        path = request.url.path
        if path == "/collections/watersheds/items":
            limit, offset = int(request.url.params["limit"]), int(request.url.params["offset"])
            chunk = self.features[offset:offset + limit]
            body = {"type": "FeatureCollection", "features": chunk, "links": []}
            if self.next_links:
                if offset + limit < len(self.features):
                    body["links"].append({"rel": "next", "href": f"{OGC}{path}?offset={offset + limit}"})
            else:
                body["numberMatched"] = len(self.features)
                body["numberReturned"] = len(chunk)
            return httpx.Response(200, json=body)
        if path.startswith("/collections/watersheds/items/"):
            item_id = path.rsplit("/", 1)[-1]
            feature = next((f for f in self.features if f["id"] == item_id), None)
            if feature is None:
                return httpx.Response(404)
            etag = f'"{item_id}-v1"'
            if request.headers.get("If-None-Match") == etag:
                return httpx.Response(304)
            return httpx.Response(200, json=feature, headers={"ETag": etag})
        return httpx.Response(404)


FEATURES = [
    ogc_feature("ws-1", square(0, 0, 10, 10), name="Upper"),
    ogc_feature("ws-2", square(10, 0, 20, 10), name="Middle"),
    ogc_feature("ws-3", square(20, 0, 30, 10), name="Lower"),
]


def ogc_source(server):
    return OgcFeatureSource(OGC, "watersheds", http_client=httpx.Client(transport=httpx.MockTransport(server)))


class TestOgcFeatureSource:
    def test_paging_by_number_matched(self):
        source = ogc_source(FakeOgc(FEATURES))
        first = source.fetch_page(0, 2)
        second = source.fetch_page(1, 2)

        assert (len(first.items), first.total_items, first.has_more) == (2, 3, True)
        assert (len(second.items), second.has_more) == (1, False)

    def test_paging_by_next_link(self):
        source = ogc_source(FakeOgc(FEATURES, next_links=True))
        assert source.fetch_page(0, 2).has_more
        last = source.fetch_page(1, 2)
        assert not last.has_more
        assert last.total_items is None

    def test_query_parameters(self):
        server = FakeOgc(FEATURES)
        ogc_source(server).fetch_page(1, 2)
        params = server.requests[0].url.params
        assert (params["limit"], params["offset"], params["f"]) == ("2", "2", "json")

    def test_parse_item(self):
        source = ogc_source(FakeOgc(FEATURES))
        parsed = source.parse_item(FEATURES[0])

        assert parsed.key == ("watersheds", "ws-1")
        assert "links" not in parsed.payload
        assert parsed.payload["geometry"] == square(0, 0, 10, 10)
        assert parsed.href == f"{OGC}/collections/watersheds/items/ws-1"

    def test_parse_item_without_self_link(self):
        source = ogc_source(FakeOgc(FEATURES))
        item = {"type": "Feature", "id": 7, "geometry": None, "properties": {}}
        parsed = source.parse_item(item)
        assert parsed.item_id == "7"
        assert parsed.href == f"{OGC}/collections/watersheds/items/7"

    def test_parse_item_rejects_non_features(self):
        source = ogc_source(FakeOgc(FEATURES))
        with pytest.raises(ParseError):
            source.parse_item({"type": "FeatureCollection"})

    def test_fetch_item_conditional(self):
        server = FakeOgc(FEATURES)
        source = ogc_source(server)

        fetched = source.fetch_item("watersheds", "ws-2")
        assert isinstance(fetched, Fetched)
        assert fetched.change_token == '"ws-2-v1"'
        assert fetched.payload["properties"] == {"name": "Middle"}

        assert isinstance(source.fetch_item("watersheds", "ws-2", '"ws-2-v1"'), NotModified)
        assert server.requests[-1].headers["If-None-Match"] == '"ws-2-v1"'

    def test_fetcher_uses_prior_token(self, memory_store, clock):
        server = FakeOgc(FEATURES)
        source = ogc_source(server)
        controller = CacheController(FeatureCacheStorage(memory_store), clock=clock)

        first = controller.get_or_fetch(("watersheds", "ws-1"), feature_fetcher(source, "watersheds", "ws-1"))
        clock.advance(days=31)
        second = controller.get_or_fetch(("watersheds", "ws-1"), feature_fetcher(source, "watersheds", "ws-1"))

        assert server.requests[-1].headers["If-None-Match"] == '"ws-1-v1"'
        assert second.last_modified == first.last_modified
        assert second.expiry > first.expiry

    def test_collection_sync_keeps_item_etag_for_unchanged_content(self, memory_store, clock, sleep):
        server = FakeOgc(FEATURES)
        source = ogc_source(server)
        orchestrator = SyncOrchestrator(memory_store, clock=clock, page_size=10, sleep=sleep)
        orchestrator.refresh_feature(source, "ws-1")
        assert memory_store.get_cache_entry("watersheds", "ws-1").change_token == '"ws-1-v1"'

        server.features = [ogc_feature("ws-1", square(0, 0, 10, 10), name="Upper"), *FEATURES[1:]]
        orchestrator.sync_all(source)
        assert memory_store.get_cache_entry("watersheds", "ws-1").change_token == '"ws-1-v1"'

        server.features = [ogc_feature("ws-1", square(0, 0, 12, 12), name="Upper"), *FEATURES[1:]]
        orchestrator.sync_all(source)
        assert memory_store.get_cache_entry("watersheds", "ws-1").change_token is None

    def test_missing_item(self):
        with pytest.raises(SourceNotFoundError):
            ogc_source(FakeOgc(FEATURES)).fetch_item("watersheds", "ws-404")

    def test_sync_collection(self, memory_store, clock, sleep):
        orchestrator = SyncOrchestrator(memory_store, clock=clock, page_size=2, sleep=sleep)

        report = orchestrator.sync_all(ogc_source(FakeOgc(FEATURES)))

        assert report.ok
        assert report.created == 3
        assert [e.item_id for e in memory_store.list_cache_entries("watersheds")] == ["ws-1", "ws-2", "ws-3"]
