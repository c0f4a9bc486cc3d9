"""Unit conversion over base-unit factor chains."""

from refspine.conversion.resolver import ConversionResolver, ConversionResult, ConversionStep

__all__ = ["ConversionResolver", "ConversionResult", "ConversionStep"]
