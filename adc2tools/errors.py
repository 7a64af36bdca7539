from __future__ import annotations


class SymbolSetError(Exception):
    """Base class for every failure raised while decoding or exporting a symbol set."""


class MalformedStream(SymbolSetError, ValueError):
    """The descriptor ended before a complete value could be read."""


class UnsupportedFormat(SymbolSetError, ValueError):
    """Header marker is out of range or names a format revision we do not read."""


class InconsistentGeometry(SymbolSetError, ValueError):
    """Symbol rectangles disagree with each other or with their sheet."""


class IOFailure(SymbolSetError, OSError):
    """A sheet bitmap could not be found/decoded, or an image could not be written out."""
