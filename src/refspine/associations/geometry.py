"""
Planar geometry predicates over GeoJSON.

Just enough topology to classify how a local feature sits against an external
one: vertex (and edge midpoint) containment, proper edge crossings and
boundary contact, with bounding boxes as the first filter.

Supported types: Point, MultiPoint, LineString, MultiLineString, Polygon,
MultiPolygon. Coordinates are treated as planar ``(x, y)``; any third
ordinate is ignored.

Relation table (source against target):

    =================================================  ==============
    Situation                                          Relation
    =================================================  ==============
    bounding boxes apart, or no contact at all         None (disjoint)
    source entirely inside areal target, no crossing   within
    target entirely inside areal source, no crossing   contains
    interiors meet, both areal                         overlaps
    interiors meet, at least one not areal             intersects
    only boundaries meet, one side areal               touches
    only boundaries meet, neither areal                intersects
    =================================================  ==============

Tags:
    geometry, geojson, spatial-relation, point-in-polygon, refspine
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from refspine.core.errors import ValidationError
from refspine.models import SpatialRelation

Coord = tuple[float, float]
Segment = tuple[Coord, Coord]
Ring = tuple[Coord, ...]

EPSILON = 1e-12

INSIDE, BOUNDARY, OUTSIDE = 1, 0, -1

# Strength of each computed relation; confidence = strength × mean quality.
RELATION_STRENGTH: dict[SpatialRelation, float] = {
    SpatialRelation.WITHIN: 1.0,
    SpatialRelation.CONTAINS: 1.0,
    SpatialRelation.PART_OF: 1.0,
    SpatialRelation.OVERLAPS: 0.85,
    SpatialRelation.TOUCHES: 0.75,
    SpatialRelation.INTERSECTS: 0.7,
}


@dataclass(frozen=True)
class Shape:
    """A parsed geometry: its vertices, its edges and its polygons (rings, exterior first)."""

    geometry_type: str
    points: tuple[Coord, ...]
    segments: tuple[Segment, ...]
    polygons: tuple[tuple[Ring, ...], ...]

    @property
    def is_areal(self) -> bool:
        return bool(self.polygons)

    @property
    def bbox(self) -> tuple[float, float, float, float]:
        xs = [p[0] for p in self.points]
        ys = [p[1] for p in self.points]
        return (min(xs), min(ys), max(xs), max(ys))

    def samples(self) -> list[Coord]:
        """Vertices plus edge midpoints."""
        mids = [((a[0] + b[0]) / 2.0, (a[1] + b[1]) / 2.0) for a, b in self.segments]
        return [*self.points, *mids]


def parse_geometry(geometry: dict[str, Any] | None) -> Shape:
    """Parse a GeoJSON geometry object.

    Raises:
        ValidationError: missing, unsupported or malformed geometry
    """
    if not isinstance(geometry, dict):
        raise ValidationError("geometry is missing", field="geometry")
    kind = geometry.get("type")
    coords = geometry.get("coordinates")
    try:
        if kind == "Point":
            return _shape(kind, points=[_coord(coords)])
        if kind == "MultiPoint":
            return _shape(kind, points=[_coord(c) for c in coords])
        if kind == "LineString":
            return _shape(kind, lines=[_line(coords)])
        if kind == "MultiLineString":
            return _shape(kind, lines=[_line(c) for c in coords])
        if kind == "Polygon":
            return _shape(kind, polygons=[_polygon(coords)])
        if kind == "MultiPolygon":
            return _shape(kind, polygons=[_polygon(c) for c in coords])
    except (TypeError, ValueError, IndexError) as exc:
        raise ValidationError(f"malformed {kind} coordinates: {exc}", field="geometry") from exc
    raise ValidationError(f"unsupported geometry type: {kind!r}", field="geometry", value=kind)


def _coord(value: Any) -> Coord:
    if len(value) < 2:
        raise ValueError("position needs at least two ordinates")
    return (float(value[0]), float(value[1]))


def _line(value: Any) -> tuple[Coord, ...]:
    line = tuple(_coord(c) for c in value)
    if len(line) < 2:
        raise ValueError("line needs at least two positions")
    return line


def _polygon(value: Any) -> tuple[Ring, ...]:
    rings = []
    for ring in value:
        coords = [_coord(c) for c in ring]
        if len(coords) >= 2 and coords[0] == coords[-1]:
            coords = coords[:-1]
        if len(coords) < 3:
            raise ValueError("ring needs at least three distinct positions")
        rings.append(tuple(coords))
    if not rings:
        raise ValueError("polygon without rings")
    return tuple(rings)


def _shape(
    kind: str,
    points: list[Coord] | None = None,
    lines: list[tuple[Coord, ...]] | None = None,
    polygons: list[tuple[Ring, ...]] | None = None,
) -> Shape:
    vertices = list(points or [])
    segments: list[Segment] = []
    for line in lines or []:
        vertices.extend(line)
        segments.extend(zip(line, line[1:]))
    for polygon in polygons or []:
        for ring in polygon:
            vertices.extend(ring)
            segments.extend(_ring_edges(ring))
    if not vertices:
        raise ValueError("empty geometry")
    return Shape(kind, tuple(vertices), tuple(segments), tuple(polygons or ()))


def _ring_edges(ring: Ring) -> list[Segment]:
    return [(ring[i], ring[(i + 1) % len(ring)]) for i in range(len(ring))]


# ---------------------------------------------------------------------------
# Primitive predicates
# ---------------------------------------------------------------------------


def _orient(a: Coord, b: Coord, c: Coord) -> float:
    return (b[0] - a[0]) * (c[1] - a[1]) - (b[1] - a[1]) * (c[0] - a[0])


def on_segment(p: Coord, a: Coord, b: Coord) -> bool:
    if abs(_orient(a, b, p)) > EPSILON:
        return False
    return (
        min(a[0], b[0]) - EPSILON <= p[0] <= max(a[0], b[0]) + EPSILON
        and min(a[1], b[1]) - EPSILON <= p[1] <= max(a[1], b[1]) + EPSILON
    )


def properly_cross(s: Segment, t: Segment) -> bool:
    """Segments cross at a single point interior to both."""
    d1 = _orient(t[0], t[1], s[0])
    d2 = _orient(t[0], t[1], s[1])
    d3 = _orient(s[0], s[1], t[0])
    d4 = _orient(s[0], s[1], t[1])
    return (
        ((d1 > EPSILON and d2 < -EPSILON) or (d1 < -EPSILON and d2 > EPSILON))
        and ((d3 > EPSILON and d4 < -EPSILON) or (d3 < -EPSILON and d4 > EPSILON))
    )


def segments_meet(s: Segment, t: Segment) -> bool:
    return (
        properly_cross(s, t)
        or on_segment(s[0], *t)
        or on_segment(s[1], *t)
        or on_segment(t[0], *s)
        or on_segment(t[1], *s)
    )


def _in_ring(p: Coord, ring: Ring) -> bool:
    inside = False
    j = len(ring) - 1
    for i in range(len(ring)):
        xi, yi = ring[i]
        xj, yj = ring[j]
        if (yi > p[1]) != (yj > p[1]):
            x_cross = (xj - xi) * (p[1] - yi) / (yj - yi) + xi
            if p[0] < x_cross:
                inside = not inside
        j = i
    return inside


def locate(p: Coord, shape: Shape) -> int:
    """``INSIDE``, ``BOUNDARY`` or ``OUTSIDE`` of ``shape``.

    Points and lines have no interior: contact with them is ``BOUNDARY``.
    """
    if not shape.is_areal:
        if any(on_segment(p, a, b) for a, b in shape.segments):
            return BOUNDARY
        if any(abs(p[0] - q[0]) <= EPSILON and abs(p[1] - q[1]) <= EPSILON for q in shape.points):
            return BOUNDARY
        return OUTSIDE

    result = OUTSIDE
    for rings in shape.polygons:
        if any(on_segment(p, a, b) for ring in rings for a, b in _ring_edges(ring)):
            result = max(result, BOUNDARY)
            continue
        exterior, holes = rings[0], rings[1:]
        if _in_ring(p, exterior) and not any(_in_ring(p, hole) for hole in holes):
            return INSIDE
    return result


def bboxes_overlap(a: Shape, b: Shape) -> bool:
    ax0, ay0, ax1, ay1 = a.bbox
    bx0, by0, bx1, by1 = b.bbox
    return not (ax1 < bx0 - EPSILON or bx1 < ax0 - EPSILON or ay1 < by0 - EPSILON or by1 < ay0 - EPSILON)


# ---------------------------------------------------------------------------
# Relation
# ---------------------------------------------------------------------------


def relate(source: Shape, target: Shape) -> SpatialRelation | None:
    """Relation of ``source`` to ``target``; ``None`` when disjoint."""
    if not bboxes_overlap(source, target):
        return None

    source_in_target = [locate(p, target) for p in source.samples()]
    target_in_source = [locate(p, source) for p in target.samples()]
    crossing = any(properly_cross(s, t) for s in source.segments for t in target.segments)

    if target.is_areal and not crossing and _covered(source_in_target, target_in_source):
        return SpatialRelation.WITHIN
    if source.is_areal and not crossing and _covered(target_in_source, source_in_target):
        return SpatialRelation.CONTAINS

    interiors_meet = crossing or INSIDE in source_in_target or INSIDE in target_in_source
    if interiors_meet:
        if source.is_areal and target.is_areal:
            return SpatialRelation.OVERLAPS
        return SpatialRelation.INTERSECTS

    boundaries_meet = (
        BOUNDARY in source_in_target
        or BOUNDARY in target_in_source
        or any(segments_meet(s, t) for s in source.segments for t in target.segments)
    )
    if boundaries_meet:
        if source.is_areal or target.is_areal:
            return SpatialRelation.TOUCHES
        return SpatialRelation.INTERSECTS
    return None


def _covered(inner: list[int], outer: list[int]) -> bool:
    if OUTSIDE in inner:
        return False
    # all on the boundary: covered only if the shapes coincide
    return INSIDE in inner or OUTSIDE not in outer


def relation_holds(declared: SpatialRelation, computed: SpatialRelation | None) -> bool:
    """Whether a declared relation is satisfied by the computed one."""
    if computed is None:
        return False
    if declared == computed:
        return True
    if declared == SpatialRelation.PART_OF:
        return computed == SpatialRelation.WITHIN
    return declared == SpatialRelation.INTERSECTS


__all__ = [
    "Shape",
    "parse_geometry",
    "locate",
    "on_segment",
    "properly_cross",
    "segments_meet",
    "bboxes_overlap",
    "relate",
    "relation_holds",
    "RELATION_STRENGTH",
    "INSIDE",
    "BOUNDARY",
    "OUTSIDE",
]
