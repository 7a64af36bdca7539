"""
ADC2 symbol set (.set) decoder.

A symbol set is a binary descriptor that indexes sprite rectangles inside a
handful of shared sheet bitmaps, one set of sheets per zoom level:

- ``<base>-t<N>.bmp``: map-board (terrain) symbols
- ``<base>-u<N>.bmp``: game-piece (unit) symbols
- ``<base>-m<N>.bmp``: black/white masks, turned into alpha when loaded

``N`` is the 1-based zoom level. Only the sheets of the configured zoom level
are opened. Symbol images are cut out of the sheets on first request and
cached on their record.

Descriptor layout (big-endian):

    int8 marker, int8 orientation, int8 map_style, int8 sub_version
    base250 n_map_board; 3 x (int32 w, int32 h)
    base250 n_game_piece; 3 x (int32 w, int32 h)
    base250 n_mask; 3 x (int32 w, int32 h)
    n_map_board + n_game_piece [+ n_mask] records of:
        NUL-terminated name; base250 mask_index; 3 x (int32 x1, y1, x2, y2)
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import pathlib
import struct
from collections import Counter
from typing import BinaryIO, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from PIL import Image

from adc2tools.archive import ArchiveSink, UniqueNames, encode_png
from adc2tools.errors import (
    InconsistentGeometry,
    IOFailure,
    MalformedStream,
    SymbolSetError,
    UnsupportedFormat,
)

log = logging.getLogger(__name__)

ZOOM_LEVELS = 3
DEFAULT_ZOOM_LEVEL = 2

MARKER_MIN = -6
MARKER_MAX = -1
# -3 files store mask indices as single bytes.
OLD_FORMAT_MARKER = -3

BASE250_LIMIT = 250 * 250
BITMAP_EXTS = (".bmp", ".dib", ".rle")
NAME_ENCODING = "cp1252"


class Shape(enum.Enum):
    SQUARE = "square"
    HEX = "hex"


class Category(enum.Enum):
    MAP_BOARD = "t"
    GAME_PIECE = "u"
    MASK = "m"

    @property
    def role(self) -> str:
        return self.value


@dataclasses.dataclass(frozen=True)
class Rect:
    x: int
    y: int
    width: int
    height: int

    @classmethod
    def from_corners(cls, x1: int, y1: int, x2: int, y2: int) -> "Rect":
        return cls(x1, y1, x2 - x1 + 1, y2 - y1 + 1)

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    @property
    def box(self) -> Tuple[int, int, int, int]:
        return self.x, self.y, self.x + self.width, self.y + self.height

    def fits(self, width: int, height: int) -> bool:
        return (
            self.width > 0
            and self.height > 0
            and self.x >= 0
            and self.y >= 0
            and self.x + self.width <= width
            and self.y + self.height <= height
        )


# ---------------------------------------------------------------------------
# Descriptor primitives
# ---------------------------------------------------------------------------


def _where(stream: BinaryIO) -> str:
    try:
        return f" at offset 0x{stream.tell():X}"
    except (OSError, AttributeError):
        return ""


def _read_exact(stream: BinaryIO, n: int, what: str) -> bytes:
    pos = _where(stream)
    raw = stream.read(n)
    if len(raw) < n:
        raise MalformedStream(f"Truncated {what}{pos}: expected {n} bytes, got {len(raw)}")
    return raw


def _read_struct(stream: BinaryIO, fmt: str, what: str) -> Tuple[int, ...]:
    return struct.unpack(fmt, _read_exact(stream, struct.calcsize(fmt), what))


def read_s8(stream: BinaryIO, what: str = "byte") -> int:
    return _read_struct(stream, ">b", what)[0]


def decode_base250(raw: bytes) -> int:
    # Bytes >= 250 are an escape in other ADC2 files; here they read as value mod 250.
    return (raw[0] % 250) * 250 + (raw[1] % 250)


def encode_base250(value: int) -> bytes:
    if not 0 <= value < BASE250_LIMIT:
        raise ValueError(f"base-250 word out of range: {value}")
    return bytes((value // 250, value % 250))


def read_base250_word(stream: BinaryIO, what: str = "base-250 word") -> int:
    return decode_base250(_read_exact(stream, 2, what))


def read_cstring(stream: BinaryIO, what: str = "symbol name") -> str:
    pos = _where(stream)
    buf = bytearray()
    while True:
        b = stream.read(1)
        if not b:
            raise MalformedStream(f"Truncated {what}{pos}: no NUL terminator after {len(buf)} bytes")
        if b == b"\x00":
            return buf.decode(NAME_ENCODING, errors="replace")
        buf += b


def read_dimension_triplet(stream: BinaryIO, zoom_level: int) -> Tuple[int, int]:
    """Read one (width, height) pair per zoom level and return the active one."""
    dims: List[Tuple[int, int]] = []
    for _ in range(ZOOM_LEVELS):
        w, h = _read_struct(stream, ">ii", "bitmap dimensions")
        dims.append((w, h))
    return dims[zoom_level]


# ---------------------------------------------------------------------------
# Header
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class SymbolSetHeader:
    marker: int
    orientation: int
    map_style: int
    sub_version: int

    @property
    def shape(self) -> Shape:
        return Shape.HEX if self.map_style == 1 else Shape.SQUARE

    @property
    def ignore_mask(self) -> bool:
        return self.sub_version != 0


def check_marker(marker: int) -> None:
    if marker < MARKER_MIN or marker > MARKER_MAX:
        raise UnsupportedFormat(
            f"Invalid symbol set header: marker {marker}, expected {MARKER_MIN}..{MARKER_MAX}"
        )
    if marker == OLD_FORMAT_MARKER:
        raise UnsupportedFormat(
            "Symbol set file version less than 2.12 (marker -3). Convert it with ADC2 before importing."
        )


def read_header(stream: BinaryIO) -> SymbolSetHeader:
    marker = read_s8(stream, "header marker")
    check_marker(marker)
    # Orientation is overridden by the map file; read to stay aligned.
    orientation = read_s8(stream, "orientation flag")
    map_style = read_s8(stream, "map style flag")
    sub_version = read_s8(stream, "symbol set version flag")
    return SymbolSetHeader(marker, orientation, map_style, sub_version)


# ---------------------------------------------------------------------------
# Image operations
# ---------------------------------------------------------------------------


def alpha_from_band(band: np.ndarray) -> np.ndarray:
    """Black (0) -> 255 opaque, white (255) -> 0 transparent."""
    return (255 - band.astype(np.int16)).clip(0, 255).astype(np.uint8)


def _mask_band(img: Image.Image) -> np.ndarray:
    if img.mode in ("1", "I", "I;16", "I;16B", "I;16L", "F"):
        img = img.convert("L")
    elif img.mode not in ("L", "LA", "RGB", "RGBA"):
        img = img.convert("RGB")
    arr = np.asarray(img)
    if arr.ndim == 2:
        return arr
    # Black/white source: red is as good as any band.
    return arr[..., 0]


def generate_alpha_mask(img: Image.Image) -> Image.Image:
    """Turn a black/white bitmap into an RGBA image carrying only alpha."""
    band = _mask_band(img)
    out = np.zeros(band.shape + (4,), dtype=np.uint8)
    out[..., 3] = alpha_from_band(band)
    return Image.fromarray(out)


def composite_dst_atop(base: Image.Image, mask: Image.Image) -> Image.Image:
    """
    Draw ``mask`` over ``base`` with Porter-Duff destination-atop.

    Output alpha is the mask alpha. Colour comes from ``base`` (blended with the
    mask colour only where ``base`` itself is translucent). Where the mask is
    fully transparent the base colour is kept under alpha 0. Pixels outside the
    mask image are left as they are in ``base``.
    """
    dst = np.asarray(base.convert("RGBA"), dtype=np.float64) / 255.0
    src = np.asarray(mask.convert("RGBA"), dtype=np.float64) / 255.0
    out = dst.copy()
    h = min(dst.shape[0], src.shape[0])
    w = min(dst.shape[1], src.shape[1])
    d = dst[:h, :w]
    s = src[:h, :w]
    a_s = s[..., 3:4]
    a_d = d[..., 3:4]
    color = np.where(a_s > 0, s[..., :3] * (1.0 - a_d) + d[..., :3] * a_d, d[..., :3])
    out[:h, :w, :3] = color
    out[:h, :w, 3:4] = a_s
    return Image.fromarray(np.rint(out * 255.0).clip(0, 255).astype(np.uint8))


# ---------------------------------------------------------------------------
# Sheet files
# ---------------------------------------------------------------------------


SheetSource = Callable[[Category], Image.Image]


def sheet_file_name(base: pathlib.Path, category: Category, zoom_level: int) -> str:
    return f"{base.name}-{category.role}{zoom_level + 1}.bmp"


def find_sheet_file(base: pathlib.Path, category: Category, zoom_level: int) -> pathlib.Path:
    expected = base.parent / sheet_file_name(base, category, zoom_level)
    if expected.is_file():
        return expected
    want = expected.stem.casefold()
    if base.parent.is_dir():
        for p in sorted(base.parent.iterdir()):
            if p.is_file() and p.suffix.lower() in BITMAP_EXTS and p.stem.casefold() == want:
                return p
    raise IOFailure(f"Missing bitmap file: {expected}")


def open_sheet(path: pathlib.Path) -> Image.Image:
    try:
        with Image.open(path) as img:
            img.load()
            return img.copy()
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        raise IOFailure(f"Cannot decode bitmap {path}: {e}") from e


def file_sheet_source(base: pathlib.Path, zoom_level: int) -> SheetSource:
    def load(category: Category) -> Image.Image:
        path = find_sheet_file(base, category, zoom_level)
        log.debug("loading %s sheet %s", category.name.lower(), path)
        return open_sheet(path)

    return load


def _normalize_sheet(img: Image.Image) -> Image.Image:
    if img.mode in ("RGB", "RGBA"):
        return img
    return img.convert("RGBA" if "A" in img.getbands() else "RGB")


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class _Unresolved:
    pass


_UNRESOLVED = _Unresolved()


class SymbolRecord:
    """One symbol: its descriptor name, mask reference and active-zoom rectangle."""

    def __init__(self, owner: "SymbolSet", category: Category, sheet: Image.Image, index: int) -> None:
        self.owner = owner
        self.category = category
        self.sheet = sheet
        self.index = index
        self.name = ""
        self.raw_mask_index = 0
        # 0-based; None when the descriptor says 0.
        self.mask_index: Optional[int] = None
        self.rect = Rect(0, 0, 0, 0)
        self._image: Optional[Image.Image] = None
        self._mask: object = _UNRESOLVED
        self._file_name: Optional[str] = None

    def __repr__(self) -> str:
        return f"SymbolRecord({self.category.name}, #{self.index}, {self.name!r}, {self.rect})"

    @property
    def is_mask(self) -> bool:
        return self.category is Category.MASK

    @property
    def file_name(self) -> Optional[str]:
        return self._file_name

    def read(self, stream: BinaryIO) -> "SymbolRecord":
        self.name = read_cstring(stream)
        self.raw_mask_index = read_base250_word(stream, "mask index")
        self.mask_index = self.raw_mask_index - 1 if self.raw_mask_index > 0 else None
        rects: List[Rect] = []
        for _ in range(ZOOM_LEVELS):
            x1, y1, x2, y2 = _read_struct(stream, ">iiii", f"rectangle of symbol {self.name!r}")
            rects.append(Rect.from_corners(x1, y1, x2, y2))
        self.owner._note_symbol_sizes(self.category, rects)
        self.rect = rects[self.owner.zoom_level]
        return self

    def resolve_mask(self) -> Optional["SymbolRecord"]:
        if self._mask is _UNRESOLVED:
            self._mask = self._lookup_mask()
        return self._mask  # type: ignore[return-value]

    def _lookup_mask(self) -> Optional["SymbolRecord"]:
        if self.is_mask or self.owner.ignore_mask or self.mask_index is None:
            return None
        mask = self.owner.get_mask(self.mask_index)
        if mask is None:
            log.debug("%r: mask index %d out of range, drawing unmasked", self, self.raw_mask_index)
        return mask

    def image(self) -> Image.Image:
        if self._image is None:
            self._image = self._materialize()
        return self._image

    def _materialize(self) -> Image.Image:
        sw, sh = self.sheet.size
        if not self.rect.fits(sw, sh):
            raise InconsistentGeometry(
                f"{self.category.name.lower()} symbol {self.index} ({self.name!r}): "
                f"rectangle {self.rect.box} does not fit the {sw}x{sh} sheet"
            )
        img = self.sheet.crop(self.rect.box)
        mask = self.resolve_mask()
        if mask is not None:
            img = composite_dst_atop(img, mask.image())
        return img

    def externalize(self, sink: ArchiveSink) -> str:
        """Write the image to ``sink`` once and return its archive name."""
        if self._file_name is not None:
            return self._file_name
        names = self.owner.names
        file_name = names.next_free(self.name)
        data = encode_png(self.image())
        try:
            sink.store(file_name, data)
        except SymbolSetError:
            raise
        except OSError as e:
            raise IOFailure(f"Failed to store {file_name}: {e}") from e
        names.add(file_name)
        self._file_name = file_name
        return file_name


# ---------------------------------------------------------------------------
# Symbol set
# ---------------------------------------------------------------------------


class SymbolSet:
    """
    Decoded symbol set. Build one with ``SymbolSet.load(path)`` or
    ``SymbolSet.read(stream, sheets)``; a failed load raises and returns nothing.

    Not thread safe: ``image()``/``externalize()`` fill per-record caches.
    """

    def __init__(self, zoom_level: int = DEFAULT_ZOOM_LEVEL, names: Optional[UniqueNames] = None) -> None:
        if not 0 <= zoom_level < ZOOM_LEVELS:
            raise ValueError(f"zoom level must be 0..{ZOOM_LEVELS - 1}, got {zoom_level}")
        self.zoom_level = zoom_level
        self.names = names if names is not None else UniqueNames()
        self.header: Optional[SymbolSetHeader] = None
        self.map_board: List[SymbolRecord] = []
        self.game_pieces: List[SymbolRecord] = []
        self.masks: Optional[List[SymbolRecord]] = None
        self.sheets: Dict[Category, Image.Image] = {}
        self.declared_sheet_sizes: Dict[Category, Tuple[int, int]] = {}
        self.symbol_sizes: Dict[Category, Tuple[int, ...]] = {}
        self.source: Optional[pathlib.Path] = None

    @classmethod
    def load(
        cls,
        path: pathlib.Path,
        zoom_level: int = DEFAULT_ZOOM_LEVEL,
        names: Optional[UniqueNames] = None,
    ) -> "SymbolSet":
        path = pathlib.Path(path)
        base = path.with_suffix("")
        try:
            stream = open(path, "rb")
        except OSError as e:
            raise IOFailure(f"Cannot open symbol set {path}: {e}") from e
        with stream:
            sset = cls.read(stream, file_sheet_source(base, zoom_level), zoom_level=zoom_level, names=names)
        sset.source = path
        return sset

    @classmethod
    def read(
        cls,
        stream: BinaryIO,
        sheets: SheetSource,
        zoom_level: int = DEFAULT_ZOOM_LEVEL,
        names: Optional[UniqueNames] = None,
    ) -> "SymbolSet":
        sset = cls(zoom_level, names)
        sset._read(stream, sheets)
        return sset

    @property
    def shape(self) -> Shape:
        if self.header is None:
            raise ValueError("symbol set has not been read")
        return self.header.shape

    @property
    def ignore_mask(self) -> bool:
        return self.header is None or self.header.ignore_mask

    def _read(self, stream: BinaryIO, sheets: SheetSource) -> None:
        self.header = read_header(stream)
        log.debug("header %s", self.header)

        counts: Dict[Category, int] = {}
        for category in (Category.MAP_BOARD, Category.GAME_PIECE, Category.MASK):
            counts[category] = read_base250_word(stream, f"{category.name.lower()} count")
            self.declared_sheet_sizes[category] = read_dimension_triplet(stream, self.zoom_level)
        if not self.ignore_mask:
            self.masks = []

        n_map = counts[Category.MAP_BOARD]
        if n_map:
            sheet = self._load_sheet(sheets, Category.MAP_BOARD)
            for i in range(n_map):
                rec = SymbolRecord(self, Category.MAP_BOARD, sheet, i).read(stream)
                self.map_board.append(rec)
                self._check_map_board(rec)

        n_pieces = counts[Category.GAME_PIECE]
        if n_pieces:
            sheet = self._load_sheet(sheets, Category.GAME_PIECE)
            for i in range(n_pieces):
                self.game_pieces.append(SymbolRecord(self, Category.GAME_PIECE, sheet, i).read(stream))

        n_masks = counts[Category.MASK]
        if self.masks is not None and n_masks:
            sheet = generate_alpha_mask(self._load_sheet(sheets, Category.MASK, normalize=False))
            self.sheets[Category.MASK] = sheet
            for i in range(n_masks):
                self.masks.append(SymbolRecord(self, Category.MASK, sheet, i).read(stream))
        elif self.masks is None and n_masks:
            log.debug("sub-version %d: ignoring %d masks", self.header.sub_version, n_masks)

        log.info(
            "loaded symbol set: %d map-board, %d game-piece, %d mask symbols (%s, zoom level %d)",
            len(self.map_board),
            len(self.game_pieces),
            len(self.masks or ()),
            self.header.shape.value,
            self.zoom_level + 1,
        )

    def _load_sheet(self, sheets: SheetSource, category: Category, normalize: bool = True) -> Image.Image:
        img = sheets(category)
        if normalize:
            img = _normalize_sheet(img)
        self.sheets[category] = img
        return img

    def _check_map_board(self, rec: SymbolRecord) -> None:
        first = self.map_board[0].rect
        w, h = rec.rect.size
        if rec.rect.size != first.size:
            raise InconsistentGeometry(
                f"Map board image dimensions are inconsistent: symbol {rec.index} ({rec.name!r}) "
                f"is {w}x{h}, symbol 0 is {first.width}x{first.height}"
            )
        if w != h:
            raise InconsistentGeometry(
                f"Map board image dimensions are not square: symbol {rec.index} ({rec.name!r}) is {w}x{h}"
            )

    def _note_symbol_sizes(self, category: Category, rects: Sequence[Rect]) -> None:
        # Heights of the first symbol per category, one per zoom level.
        if category not in self.symbol_sizes:
            self.symbol_sizes[category] = tuple(r.height for r in rects)

    # -- lookups ----------------------------------------------------------

    @staticmethod
    def _at(records: Optional[Sequence[SymbolRecord]], index: int) -> Optional[SymbolRecord]:
        if records is not None and 0 <= index < len(records):
            return records[index]
        return None

    def get_game_piece(self, index: int) -> Optional[SymbolRecord]:
        return self._at(self.game_pieces, index)

    def get_map_board_symbol(self, index: int) -> Optional[SymbolRecord]:
        return self._at(self.map_board, index)

    def get_mask(self, index: int) -> Optional[SymbolRecord]:
        return self._at(self.masks, index)

    def records(self, category: Category) -> List[SymbolRecord]:
        if category is Category.MAP_BOARD:
            return list(self.map_board)
        if category is Category.GAME_PIECE:
            return list(self.game_pieces)
        return list(self.masks or ())

    # -- derived metrics --------------------------------------------------

    def modal_size(self) -> Tuple[int, int]:
        """
        Most frequent (width, height) among game-piece images.

        Ties go to the size seen first when scanning pieces in index order.
        ``(0, 0)`` when the set has no game pieces.
        """
        histogram: Counter[Tuple[int, int]] = Counter()
        for piece in self.game_pieces:
            histogram[piece.image().size] += 1
        best = (0, 0)
        best_n = 0
        # Counter keeps first-insertion order; strict > keeps the earliest maximum.
        for size, n in histogram.items():
            if n > best_n:
                best, best_n = size, n
        return best

    def size_table(self, category: Optional[Category] = None) -> Tuple[int, ...]:
        if category is not None:
            table = self.symbol_sizes.get(category)
        else:
            table = None
            for cat in (Category.MAP_BOARD, Category.GAME_PIECE, Category.MASK):
                if cat in self.symbol_sizes:
                    table = self.symbol_sizes[cat]
                    break
        if table is None:
            raise ValueError("symbol set has no symbols to take a size from")
        return table

    def symbol_size(self, category: Optional[Category] = None) -> int:
        return self.size_table(category)[self.zoom_level]

    def zoom_factor(self, level: int, category: Optional[Category] = None) -> float:
        if not 0 <= level < ZOOM_LEVELS:
            raise ValueError(f"zoom level must be 0..{ZOOM_LEVELS - 1}, got {level}")
        table = self.size_table(category)
        active = table[self.zoom_level]
        if active == 0:
            raise InconsistentGeometry(f"symbol size at zoom level {self.zoom_level + 1} is 0")
        return table[level] / active

    # -- export -----------------------------------------------------------

    def externalize_all(
        self,
        sink: ArchiveSink,
        categories: Sequence[Category] = (Category.GAME_PIECE,),
    ) -> List[str]:
        written: List[str] = []
        for category in categories:
            for rec in self.records(category):
                written.append(rec.externalize(sink))
        log.info("externalized %d symbol images", len(written))
        return written
