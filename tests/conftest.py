from __future__ import annotations

import io
import struct
from typing import Callable, Dict, List, Sequence, Tuple

import pytest
from PIL import Image

from adc2tools.symbol_set import Category, SymbolSet, encode_base250

Rect = Tuple[int, int, int, int]


def record_bytes(name: str, mask_index: int, rects: Sequence[Rect]) -> bytes:
    """rects: one (x, y, w, h) per zoom level, or a single one repeated."""
    if len(rects) == 1:
        rects = list(rects) * 3
    out = name.encode("cp1252") + b"\x00" + encode_base250(mask_index)
    for x, y, w, h in rects:
        out += struct.pack(">iiii", x, y, x + w - 1, y + h - 1)
    return out


def descriptor_bytes(
    marker: int = -1,
    orientation: int = 1,
    map_style: int = 0,
    sub_version: int = 0,
    terrain: Sequence[Tuple[str, int, Sequence[Rect]]] = (),
    pieces: Sequence[Tuple[str, int, Sequence[Rect]]] = (),
    masks: Sequence[Tuple[str, int, Sequence[Rect]]] = (),
    n_masks: int = -1,
) -> bytes:
    out = struct.pack(">bbbb", marker, orientation, map_style, sub_version)
    declared = len(masks) if n_masks < 0 else n_masks
    for n in (len(terrain), len(pieces), declared):
        out += encode_base250(n) + struct.pack(">6i", 10, 10, 20, 20, 40, 40)
    for group in (terrain, pieces, masks):
        for name, mask, rects in group:
            out += record_bytes(name, mask, rects)
    return out


class SheetStub:
    """In-memory sheet source that remembers what was requested."""

    def __init__(self, sheets: Dict[Category, Image.Image]) -> None:
        self.sheets = sheets
        self.requested: List[Category] = []

    def __call__(self, category: Category) -> Image.Image:
        self.requested.append(category)
        return self.sheets[category]


@pytest.fixture
def sheets() -> Callable[..., SheetStub]:
    def make(**by_role: Image.Image) -> SheetStub:
        roles = {"terrain": Category.MAP_BOARD, "pieces": Category.GAME_PIECE, "masks": Category.MASK}
        return SheetStub({roles[k]: v for k, v in by_role.items()})

    return make


@pytest.fixture
def read_set() -> Callable[..., SymbolSet]:
    def read(data: bytes, source: SheetStub, zoom_level: int = 2) -> SymbolSet:
        return SymbolSet.read(io.BytesIO(data), source, zoom_level=zoom_level)

    return read


def terrain_sheet() -> Image.Image:
    """Three 4x4 squares: red, green, blue."""
    sheet = Image.new("RGB", (12, 4))
    for i, color in enumerate([(255, 0, 0), (0, 255, 0), (0, 0, 255)]):
        sheet.paste(color, (i * 4, 0, i * 4 + 4, 4))
    return sheet


def half_mask_sheet() -> Image.Image:
    """4x4 mask: left half black (opaque), right half white (transparent)."""
    sheet = Image.new("L", (4, 4), 255)
    sheet.paste(0, (0, 0, 2, 4))
    return sheet
