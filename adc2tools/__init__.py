"""ADC2 symbol set tools: decode .set descriptors and their sheet bitmaps."""

from adc2tools.errors import (
    InconsistentGeometry,
    IOFailure,
    MalformedStream,
    SymbolSetError,
    UnsupportedFormat,
)
from adc2tools.symbol_set import Category, Shape, SymbolRecord, SymbolSet

__all__ = [
    "Category",
    "InconsistentGeometry",
    "IOFailure",
    "MalformedStream",
    "Shape",
    "SymbolRecord",
    "SymbolSet",
    "SymbolSetError",
    "UnsupportedFormat",
]
