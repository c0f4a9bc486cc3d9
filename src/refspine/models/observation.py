"""Observation results as a tagged variant.

Raw results arrive as JSON scalars or objects; they are normalized once at
the boundary so downstream code switches on ``result_type`` instead of
probing Python types.

Example:
    >>> ObservationResult.from_raw(12.5).result_type
    <ResultType.NUMERIC: 'numeric'>
    >>> ObservationResult.from_raw(True).result_type
    <ResultType.BOOLEAN: 'boolean'>
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from refspine.core.errors import NonNumericResultError, ValidationError
from refspine.models.enums import ResultType


@dataclass(frozen=True, slots=True)
class ObservationResult:
    result_type: ResultType
    value: Any

    @classmethod
    def numeric(cls, value: float) -> ObservationResult:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError("numeric result must be a number", field="value", value=value)
        if not math.isfinite(value):
            raise ValidationError("numeric result must be finite", field="value", value=value)
        return cls(ResultType.NUMERIC, float(value))

    @classmethod
    def string(cls, value: str) -> ObservationResult:
        return cls(ResultType.STRING, str(value))

    @classmethod
    def boolean(cls, value: bool) -> ObservationResult:
        return cls(ResultType.BOOLEAN, bool(value))

    @classmethod
    def structured(cls, value: dict[str, Any] | list[Any]) -> ObservationResult:
        return cls(ResultType.OBJECT, value)

    @classmethod
    def from_raw(cls, value: Any) -> ObservationResult:
        # bool is an int subclass; test it first
        if isinstance(value, bool):
            return cls.boolean(value)
        if isinstance(value, (int, float)):
            return cls.numeric(value)
        if isinstance(value, str):
            return cls.string(value)
        if isinstance(value, (dict, list)):
            return cls.structured(value)
        raise ValidationError(
            f"unsupported observation result type {type(value).__name__}",
            field="result",
            value=value,
        )

    @property
    def is_numeric(self) -> bool:
        return self.result_type == ResultType.NUMERIC

    def as_float(self) -> float:
        if not self.is_numeric:
            raise NonNumericResultError(
                f"cannot convert a {self.result_type.value} result",
                field="result",
                value=self.value,
            )
        return self.value

    def to_dict(self) -> dict[str, Any]:
        return {"result_type": self.result_type.value, "value": self.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ObservationResult:
        return cls(ResultType(data["result_type"]), data["value"])
