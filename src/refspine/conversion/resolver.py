"""
Conversion resolver - converts values between units of one dimension.

Every unit either is a base unit or knows how to reach its base unit
(``value_in_base = value <operation> factor``). Converting A to B walks A's
base chain; if B is not on it, B's base chain is walked until it meets A's,
and that second half is inverted and reversed.

Each step is applied on its own, in order. Multiplicative and additive
steps do not commute, so chains are never collapsed into one factor.

Examples:
    >>> resolver = ConversionResolver(store)
    >>> resolver.convert(1.0, ATM, PA).value
    101325.0
    >>> [s.operation.value for s in resolver.convert(1.0, PA, ATM).chain]
    ['divide']

Tags:
    conversion, units, ucum, factor-chain, refspine
"""

from __future__ import annotations

from dataclasses import dataclass

from refspine.core.errors import (
    ConversionError,
    IncompatibleDimensionError,
    NoConversionPathError,
    UndefinedConversionError,
    UnknownConceptError,
)
from refspine.core.logging import get_logger
from refspine.models import Concept, ConversionOperation, ObservationResult
from refspine.store import ReferenceStore

log = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ConversionStep:
    """One edge of a conversion chain."""

    from_uri: str
    to_uri: str
    operation: ConversionOperation
    factor: float

    def apply(self, value: float) -> float:
        op = self.operation
        if op == ConversionOperation.MULTIPLY:
            return value * self.factor
        if op == ConversionOperation.DIVIDE:
            return value / self.factor
        if op == ConversionOperation.ADD:
            return value + self.factor
        return value - self.factor

    def inverse(self) -> ConversionStep:
        return ConversionStep(
            from_uri=self.to_uri,
            to_uri=self.from_uri,
            operation=self.operation.inverse,
            factor=self.factor,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "from_uri": self.from_uri,
            "to_uri": self.to_uri,
            "operation": self.operation.value,
            "factor": self.factor,
        }


@dataclass(frozen=True, slots=True)
class ConversionResult:
    value: float
    from_uri: str
    to_uri: str
    chain: tuple[ConversionStep, ...] = ()


class ConversionResolver:
    def __init__(self, store: ReferenceStore):
        self.store = store

    def convert(self, value: float, from_uri: str, to_uri: str) -> ConversionResult:
        """Convert ``value`` from ``from_uri`` to ``to_uri``.

        Raises:
            UnknownConceptError: either unit is not in the store
            IncompatibleDimensionError: dimensions differ or are missing
            UndefinedConversionError: a non-base unit on the walk has no conversion
            NoConversionPathError: the two base chains never meet
        """
        source = self._require(from_uri, from_uri, to_uri)
        target = self._require(to_uri, from_uri, to_uri)

        if from_uri == to_uri:
            return ConversionResult(value=float(value), from_uri=from_uri, to_uri=to_uri)

        if source.dimension is None or target.dimension is None or source.dimension != target.dimension:
            raise IncompatibleDimensionError(from_uri, to_uri, source.dimension, target.dimension)

        chain = self._chain(source, target)
        result = float(value)
        for step in chain:
            result = step.apply(result)

        log.debug(
            "conversion.resolved",
            from_uri=from_uri,
            to_uri=to_uri,
            steps=len(chain),
        )
        return ConversionResult(value=result, from_uri=from_uri, to_uri=to_uri, chain=tuple(chain))

    def convert_result(
        self, result: ObservationResult, from_uri: str, to_uri: str
    ) -> ConversionResult:
        """Convert a tagged observation result; only numeric results are accepted."""
        return self.convert(result.as_float(), from_uri, to_uri)

    def compatible_units(self, uri: str) -> list[str]:
        """URIs of units ``uri`` can be converted to (same dimension, path exists)."""
        concept = self._require(uri, uri, uri)
        if concept.dimension is None:
            return []
        compatible = []
        for other in self.store.list_concepts(concept.dimension):
            if other.uri == uri:
                continue
            try:
                self._chain(concept, other)
            except ConversionError:
                continue
            compatible.append(other.uri)
        return compatible

    # ------------------------------------------------------------------ #

    def _require(self, uri: str, from_uri: str, to_uri: str) -> Concept:
        concept = self.store.get_concept(uri)
        if concept is None:
            raise UnknownConceptError(uri, from_uri, to_uri)
        return concept

    def _chain(self, source: Concept, target: Concept) -> list[ConversionStep]:
        from_uri, to_uri = source.uri, target.uri

        forward_nodes, forward_steps = self._walk(source, from_uri, to_uri, stop_at={to_uri})
        if forward_nodes[-1] == to_uri:
            return forward_steps

        backward_nodes, backward_steps = self._walk(
            target, from_uri, to_uri, stop_at=set(forward_nodes)
        )
        join = backward_nodes[-1]
        if join not in forward_nodes:
            raise NoConversionPathError(from_uri, to_uri)

        head = forward_steps[: forward_nodes.index(join)]
        tail = [step.inverse() for step in reversed(backward_steps)]
        return head + tail

    def _walk(
        self, start: Concept, from_uri: str, to_uri: str, stop_at: set[str]
    ) -> tuple[list[str], list[ConversionStep]]:
        """Follow base-unit edges from ``start`` until a base unit or a node in ``stop_at``."""
        nodes = [start.uri]
        steps: list[ConversionStep] = []
        current = start
        while not current.is_base_unit:
            if current.conversion is None:
                raise UndefinedConversionError(current.uri, from_uri, to_uri)
            base_uri = current.conversion.base_uri
            if base_uri in nodes:
                raise NoConversionPathError(from_uri, to_uri, reason=f"conversion loop at {base_uri}")
            base = self.store.get_concept(base_uri)
            if base is None:
                raise NoConversionPathError(
                    from_uri, to_uri, reason=f"base unit {base_uri} is not in the store"
                )
            steps.append(
                ConversionStep(
                    from_uri=current.uri,
                    to_uri=base_uri,
                    operation=current.conversion.operation,
                    factor=current.conversion.factor,
                )
            )
            nodes.append(base_uri)
            current = base
            if base_uri in stop_at:
                break
        return nodes, steps


__all__ = ["ConversionStep", "ConversionResult", "ConversionResolver"]
