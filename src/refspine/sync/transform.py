"""
Payload transforms: external records → local records.

Every transform either returns a fully valid record or raises ``ParseError``
naming the offending item; the orchestrator records those as item errors and
carries on with the page.

Derived fields (transitive closures) and local bookkeeping (cache block,
usage statistics, ``last_modified``) are never taken from a payload.

Formats:
    - **Native records:** the ``Concept.to_dict()`` layout, used by JSON exports
    - **Skosmos JSON-LD:** ``/rest/v1/{vocab}/data?uri=...`` graphs, optionally
      carrying ``conversion`` / ``classification`` / ``compliance`` extension keys
    - **GeoJSON features:** OGC API Features ``items`` members
"""

from __future__ import annotations

from typing import Any

from refspine.core.errors import ParseError, ValidationError
from refspine.models import (
    Classification,
    Compliance,
    Concept,
    ConceptRef,
    Conversion,
    Labels,
)

_DERIVED_KEYS = ("broader_transitive", "narrower_transitive", "cache", "usage", "last_modified")


def concept_from_record(record: dict[str, Any]) -> Concept:
    """Parse a native concept record."""
    if not isinstance(record, dict):
        raise ParseError(f"concept record must be an object, got {type(record).__name__}")
    uri = record.get("uri")
    _require_text(record, "uri", uri)
    _require_text(record, "code", record.get("code"), uri=uri)

    cleaned = {k: v for k, v in record.items() if k not in _DERIVED_KEYS}
    try:
        concept = Concept.from_dict(cleaned)
    except ValidationError as exc:
        raise ParseError(f"{uri}: {exc.message}", cause=exc).with_context(uri=uri) from exc
    except (KeyError, TypeError, ValueError) as exc:
        raise ParseError(f"{uri}: malformed concept record ({exc})", cause=exc).with_context(uri=uri) from exc
    return concept


def concept_from_skosmos(document: dict[str, Any], uri: str) -> Concept:
    """Parse the JSON-LD graph Skosmos returns for one concept."""
    graph = document.get("graph") if isinstance(document, dict) else None
    if not isinstance(graph, list):
        raise ParseError(f"{uri}: Skosmos response has no graph").with_context(uri=uri)
    nodes = {n.get("uri"): n for n in graph if isinstance(n, dict) and n.get("uri")}
    node = nodes.get(uri)
    if node is None:
        raise ParseError(f"{uri}: concept missing from Skosmos graph").with_context(uri=uri)

    code = _first_literal(node.get("notation")) or _first_literal(node.get("skos:notation"))
    _require_text(node, "notation", code, uri=uri)

    try:
        labels = Labels(
            preferred=_lang_map(node.get("prefLabel"), uri, unique=True),
            alternative=_lang_pairs(node.get("altLabel")),
            definition=_lang_map(node.get("definition"), uri, unique=False),
        )
        concept = Concept(
            uri=uri,
            code=str(code),
            labels=labels,
            broader=[_ref(r, nodes) for r in _as_list(node.get("broader"))],
            narrower=[_ref(r, nodes) for r in _as_list(node.get("narrower"))],
            conversion=Conversion.from_dict(node.get("conversion")),
            classification=Classification.from_dict(node.get("classification")),
            compliance=Compliance.from_dict(node.get("compliance")),
            code_case_sensitive=node.get("code_case_sensitive"),
        )
    except ParseError:
        raise
    except ValidationError as exc:
        raise ParseError(f"{uri}: {exc.message}", cause=exc).with_context(uri=uri) from exc
    except (KeyError, TypeError, ValueError) as exc:
        raise ParseError(f"{uri}: malformed Skosmos concept ({exc})", cause=exc).with_context(uri=uri) from exc
    return concept


def feature_item_id(item: dict[str, Any]) -> str:
    if not isinstance(item, dict) or item.get("type") != "Feature":
        raise ParseError("OGC item is not a GeoJSON Feature")
    item_id = item.get("id")
    if item_id is None or item_id == "":
        raise ParseError("OGC feature has no id")
    return str(item_id)


def self_href(item: dict[str, Any]) -> str | None:
    for link in item.get("links", []) or []:
        if isinstance(link, dict) and link.get("rel") == "self":
            return link.get("href")
    return None


# ---------------------------------------------------------------------------
# helpers
# ---------------------------------------------------------------------------


def _require_text(record: dict[str, Any], name: str, value: Any, uri: str | None = None) -> None:
    if not isinstance(value, str) or not value.strip():
        where = f"{uri}: " if uri else ""
        raise ParseError(f"{where}missing or empty '{name}'").with_context(uri=uri, field=name)


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _first_literal(value: Any) -> str | None:
    for item in _as_list(value):
        if isinstance(item, dict):
            item = item.get("value")
        if item is not None:
            return str(item)
    return None


def _lang_map(value: Any, uri: str, unique: bool) -> dict[str, str]:
    result: dict[str, str] = {}
    for item in _as_list(value):
        if not isinstance(item, dict) or "value" not in item:
            continue
        lang = item.get("lang", "")
        if unique and lang in result and result[lang] != item["value"]:
            raise ParseError(f"{uri}: more than one preferred label for language '{lang}'").with_context(uri=uri)
        result.setdefault(lang, item["value"])
    return result


def _lang_pairs(value: Any) -> list[tuple[str, str]]:
    return [
        (item.get("lang", ""), item["value"])
        for item in _as_list(value)
        if isinstance(item, dict) and "value" in item
    ]


def _ref(value: Any, nodes: dict[str, dict[str, Any]]) -> ConceptRef:
    uri = value.get("uri") if isinstance(value, dict) else value
    if not isinstance(uri, str) or not uri:
        raise ParseError("hierarchy edge without a uri")
    neighbour = nodes.get(uri, {})
    label = _lang_map(neighbour.get("prefLabel"), uri, unique=False)
    return ConceptRef(
        uri=uri,
        code=_first_literal(neighbour.get("notation")),
        label=label.get("en") or next(iter(label.values()), None),
    )


__all__ = [
    "concept_from_record",
    "concept_from_skosmos",
    "feature_item_id",
    "self_href",
]
