"""Shared builders for refspine tests: sample UCUM units, fake sources, geometries."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from refspine.cache import Fetched, NotModified
from refspine.core.errors import FetchError, SourceNotFoundError
from refspine.models import (
    Classification,
    Concept,
    ConceptRef,
    Conversion,
    ConversionOperation,
    Labels,
)
from refspine.sync.sources import Page
from refspine.sync.transform import concept_from_record

UCUM = "http://urn.fi/URN:NBN:fi:au:ucum:"

# pressure
PA = UCUM + "r102"
ATM = UCUM + "r101"
MBAR = UCUM + "r103"
# temperature
K = UCUM + "r200"
CEL = UCUM + "r201"
DEGR = UCUM + "r202"
DEGF = UCUM + "r203"
# length
M = UCUM + "r300"
KM = UCUM + "r301"


def make_concept(
    uri: str,
    code: str,
    dimension: str | None,
    *,
    base: bool = False,
    factor: float | None = None,
    base_uri: str | None = None,
    operation: str = "multiply",
    broader: tuple[str, ...] = (),
    label: str | None = None,
) -> Concept:
    conversion = None
    if factor is not None:
        conversion = Conversion(
            factor=factor,
            base_uri=base_uri,
            operation=ConversionOperation(operation),
        )
    return Concept(
        uri=uri,
        code=code,
        labels=Labels(preferred={"en": label or code}),
        broader=[ConceptRef(uri=b) for b in broader],
        conversion=conversion,
        classification=Classification(dimension=dimension, is_base_unit=base),
    )


def pressure_units() -> list[Concept]:
    return [
        make_concept(PA, "Pa", "pressure", base=True, label="pascal"),
        make_concept(ATM, "atm", "pressure", factor=101325.0, base_uri=PA, broader=(PA,), label="standard atmosphere"),
        make_concept(MBAR, "mbar", "pressure", factor=100.0, base_uri=PA, broader=(ATM,), label="millibar"),
    ]


def temperature_units() -> list[Concept]:
    return [
        make_concept(K, "K", "temperature", base=True, label="kelvin"),
        make_concept(CEL, "Cel", "temperature", factor=273.15, base_uri=K, operation="add", broader=(K,)),
        make_concept(DEGR, "[degR]", "temperature", factor=5.0 / 9.0, base_uri=K, broader=(K,)),
        make_concept(DEGF, "[degF]", "temperature", factor=459.67, base_uri=DEGR, operation="add", broader=(DEGR,)),
    ]


def length_units() -> list[Concept]:
    return [
        make_concept(M, "m", "length", base=True, label="meter"),
        make_concept(KM, "km", "length", factor=1000.0, base_uri=M, broader=(M,), label="kilometer"),
    ]


def all_units() -> list[Concept]:
    return pressure_units() + temperature_units() + length_units()


def seed(store: Any, concepts: list[Concept], now: datetime) -> None:
    for concept in concepts:
        concept.last_modified = now
        store.upsert_concept(concept, None)


def records(concepts: list[Concept]) -> list[dict[str, Any]]:
    return [c.content_dict() for c in concepts]


def square(x0: float, y0: float, x1: float, y1: float) -> dict[str, Any]:
    return {
        "type": "Polygon",
        "coordinates": [[[x0, y0], [x1, y0], [x1, y1], [x0, y1], [x0, y0]]],
    }


def ogc_feature(item_id: str, geometry: dict[str, Any], **properties: Any) -> dict[str, Any]:
    return {
        "type": "Feature",
        "id": item_id,
        "geometry": geometry,
        "properties": properties,
        "links": [{"rel": "self", "href": f"https://ogc.example.org/collections/watersheds/items/{item_id}"}],
    }


class RecordingSleep:
    """Stands in for ``time.sleep`` and remembers every delay."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FakeConceptSource:
    """In-memory concept source with scripted page failures.

    ``failures`` maps a page number to how many times fetching it raises a
    transient ``FetchError`` before succeeding (``-1`` for always).
    """

    def __init__(
        self,
        items: list[dict[str, Any]],
        *,
        name: str = "fake",
        failures: dict[int, int] | None = None,
        report_total: bool = True,
        on_page: Any = None,
    ):
        self.items = items
        self.name = name
        self.failures = dict(failures or {})
        self.report_total = report_total
        self.on_page = on_page
        self.page_calls: list[int] = []
        self.concept_calls: list[tuple[str, str | None]] = []
        self.tokens: dict[str, str] = {}
        self.unreachable = False

    def fetch_page(self, page_number: int, page_size: int) -> Page:
        self.page_calls.append(page_number)
        remaining = self.failures.get(page_number, 0)
        if remaining != 0:
            self.failures[page_number] = remaining - 1 if remaining > 0 else remaining
            raise FetchError(f"page {page_number} unavailable")
        start = page_number * page_size
        page = Page(
            items=self.items[start:start + page_size],
            page_number=page_number,
            total_items=len(self.items) if self.report_total else None,
            has_more=start + page_size < len(self.items),
        )
        if self.on_page is not None:
            self.on_page(page_number)
        return page

    def parse_item(self, item: dict[str, Any]) -> Concept:
        return concept_from_record(item)

    def fetch_concept(self, uri: str, change_token: str | None = None) -> Fetched | NotModified:
        self.concept_calls.append((uri, change_token))
        if self.unreachable:
            raise FetchError(f"{self.name} unreachable")
        record = next((r for r in self.items if r.get("uri") == uri), None)
        if record is None:
            raise SourceNotFoundError(f"{uri} unknown")
        token = self.tokens.get(uri)
        if token is not None and change_token == token:
            return NotModified(change_token=token)
        return Fetched(payload=concept_from_record(record).content_dict(), change_token=token)
