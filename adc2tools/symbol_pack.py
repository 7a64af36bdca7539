#!/usr/bin/env python3
"""
Pack PNG symbol images into an ADC2 symbol set.

Input: a JSON/YAML manifest

    style: square            # or hex
    orientation: 1           # 1=vertical, 2=horizontal, 3=grid
    sub_version: 0           # 0 honours mask indices
    zoom_scales: [0.25, 0.5, 1.0]
    terrain: [{name: Grass, image: grass.png}, ...]
    pieces:  [{name: Tank, image: tank.png, mask: 1}, ...]
    masks:   [{name: Round, image: round.png}, ...]

Image paths are relative to the manifest. ``mask`` is the 1-based mask index.

Outputs:
- <out>.set (descriptor)
- <out>-t1..3.bmp, <out>-u1..3.bmp, <out>-m1..3.bmp (one sheet per zoom level)
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import pathlib
import struct
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import yaml
from PIL import Image

from adc2tools.symbol_set import (
    MARKER_MAX,
    NAME_ENCODING,
    ZOOM_LEVELS,
    Category,
    check_marker,
    encode_base250,
)

DEFAULT_ZOOM_SCALES = (0.25, 0.5, 1.0)

# x, y, width, height
Box = Tuple[int, int, int, int]


@dataclasses.dataclass
class PackedSymbol:
    name: str
    rects: List[Box]
    mask_index: int = 0


def _encode_name(name: str) -> bytes:
    raw = name.encode(NAME_ENCODING, errors="replace")
    if b"\x00" in raw:
        raise ValueError(f"Symbol name may not contain NUL: {name!r}")
    return raw + b"\x00"


def _write_dims(out: bytearray, sizes: Sequence[Tuple[int, int]]) -> None:
    if len(sizes) != ZOOM_LEVELS:
        raise ValueError(f"Expected {ZOOM_LEVELS} sheet sizes, got {len(sizes)}")
    for w, h in sizes:
        out += struct.pack(">ii", w, h)


def _write_symbol(out: bytearray, sym: PackedSymbol) -> None:
    if len(sym.rects) != ZOOM_LEVELS:
        raise ValueError(f"Symbol {sym.name!r} needs {ZOOM_LEVELS} rectangles, got {len(sym.rects)}")
    out += _encode_name(sym.name)
    out += encode_base250(sym.mask_index)
    for x, y, w, h in sym.rects:
        out += struct.pack(">iiii", x, y, x + w - 1, y + h - 1)


def encode_symbol_set(
    map_board: Sequence[PackedSymbol],
    game_pieces: Sequence[PackedSymbol],
    masks: Sequence[PackedSymbol],
    marker: int = MARKER_MAX,
    orientation: int = 1,
    map_style: int = 0,
    sub_version: int = 0,
    sheet_sizes: Optional[Mapping[Category, Sequence[Tuple[int, int]]]] = None,
) -> bytes:
    """Serialize a descriptor. Masks are written only when ``sub_version`` is 0."""
    check_marker(marker)
    sizes = dict(sheet_sizes or {})
    out = bytearray(struct.pack(">bbbb", marker, orientation, map_style, sub_version))
    for category, syms in (
        (Category.MAP_BOARD, map_board),
        (Category.GAME_PIECE, game_pieces),
        (Category.MASK, masks),
    ):
        out += encode_base250(len(syms))
        _write_dims(out, sizes.get(category, [(0, 0)] * ZOOM_LEVELS))
    for sym in map_board:
        _write_symbol(out, sym)
    for sym in game_pieces:
        _write_symbol(out, sym)
    if sub_version == 0:
        for sym in masks:
            _write_symbol(out, sym)
    return bytes(out)


def build_sheet(images: Sequence[Image.Image], mode: str = "RGB", fill: Any = "white") -> Tuple[Image.Image, List[Box]]:
    """Lay images out left to right, top aligned."""
    width = sum(img.width for img in images)
    height = max((img.height for img in images), default=0)
    sheet = Image.new(mode, (max(width, 1), max(height, 1)), fill)
    boxes: List[Box] = []
    x = 0
    for img in images:
        sheet.paste(img.convert(mode), (x, 0))
        boxes.append((x, 0, img.width, img.height))
        x += img.width
    return sheet, boxes


def _scaled(img: Image.Image, scale: float) -> Image.Image:
    if scale == 1.0:
        return img
    w = max(1, int(round(img.width * scale)))
    h = max(1, int(round(img.height * scale)))
    return img.resize((w, h), Image.NEAREST)


def _load_manifest(path: pathlib.Path) -> Dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)
    if not isinstance(data, dict):
        raise ValueError("Manifest root must be a mapping/object")
    return data


def _entries(manifest: Mapping[str, Any], key: str) -> List[Dict[str, Any]]:
    items = manifest.get(key) or []
    if not isinstance(items, list):
        raise ValueError(f"Manifest '{key}' must be a list")
    for i, item in enumerate(items):
        if not isinstance(item, dict) or "image" not in item:
            raise ValueError(f"Manifest '{key}[{i}]' needs an 'image' entry")
    return items


def _check_terrain(images: Sequence[Image.Image]) -> None:
    if not images:
        return
    first = images[0].size
    for i, img in enumerate(images):
        if img.size != first:
            raise ValueError(f"Terrain image {i} is {img.width}x{img.height}, expected {first[0]}x{first[1]}")
        if img.width != img.height:
            raise ValueError(f"Terrain image {i} is not square: {img.width}x{img.height}")


def pack_symbol_set(
    out_base: pathlib.Path,
    terrain: Sequence[Tuple[str, Image.Image]],
    pieces: Sequence[Tuple[str, Image.Image, int]],
    masks: Sequence[Tuple[str, Image.Image]],
    style: str = "square",
    orientation: int = 1,
    sub_version: int = 0,
    zoom_scales: Sequence[float] = DEFAULT_ZOOM_SCALES,
) -> List[pathlib.Path]:
    if len(zoom_scales) != ZOOM_LEVELS:
        raise ValueError(f"zoom_scales needs {ZOOM_LEVELS} values")
    if style not in ("square", "hex"):
        raise ValueError(f"Unsupported style: {style}")
    _check_terrain([img for _, img in terrain])

    groups: List[Tuple[Category, List[str], List[Image.Image], List[int], str, Any]] = [
        (Category.MAP_BOARD, [n for n, _ in terrain], [img for _, img in terrain], [0] * len(terrain), "RGB", "white"),
        (Category.GAME_PIECE, [n for n, _, _ in pieces], [img for _, img, _ in pieces], [m for _, _, m in pieces], "RGB", "white"),
        (Category.MASK, [n for n, _ in masks], [img for _, img in masks], [0] * len(masks), "L", 255),
    ]
    out_base.parent.mkdir(parents=True, exist_ok=True)
    wrote: List[pathlib.Path] = []
    symbols: Dict[Category, List[PackedSymbol]] = {}
    sheet_sizes: Dict[Category, List[Tuple[int, int]]] = {}
    for category, names, images, mask_indices, mode, fill in groups:
        symbols[category] = [PackedSymbol(n, [], m) for n, m in zip(names, mask_indices)]
        sheet_sizes[category] = []
        for level, scale in enumerate(zoom_scales):
            sheet, boxes = build_sheet([_scaled(img, scale) for img in images], mode=mode, fill=fill)
            for sym, box in zip(symbols[category], boxes):
                sym.rects.append(box)
            sheet_sizes[category].append(sheet.size)
            sheet_path = out_base.parent / f"{out_base.name}-{category.role}{level + 1}.bmp"
            sheet.save(sheet_path, format="BMP")
            wrote.append(sheet_path)

    set_path = out_base.with_suffix(".set")
    set_path.write_bytes(
        encode_symbol_set(
            symbols[Category.MAP_BOARD],
            symbols[Category.GAME_PIECE],
            symbols[Category.MASK],
            orientation=orientation,
            map_style=1 if style == "hex" else 0,
            sub_version=sub_version,
            sheet_sizes=sheet_sizes,
        )
    )
    wrote.insert(0, set_path)
    return wrote


def _open_png(root: pathlib.Path, rel: str) -> Image.Image:
    path = root / rel
    if not path.exists():
        raise FileNotFoundError(f"Input file not found: {path}")
    with Image.open(path) as img:
        img.load()
        return img.copy()


def pack_from_manifest(manifest_path: pathlib.Path, out_base: pathlib.Path) -> List[pathlib.Path]:
    manifest = _load_manifest(manifest_path)
    root = manifest_path.parent
    terrain = [
        (str(e.get("name", pathlib.Path(e["image"]).stem)), _open_png(root, e["image"]))
        for e in _entries(manifest, "terrain")
    ]
    pieces = [
        (str(e.get("name", pathlib.Path(e["image"]).stem)), _open_png(root, e["image"]), int(e.get("mask", 0)))
        for e in _entries(manifest, "pieces")
    ]
    masks = [
        (str(e.get("name", pathlib.Path(e["image"]).stem)), _open_png(root, e["image"]))
        for e in _entries(manifest, "masks")
    ]
    return pack_symbol_set(
        out_base,
        terrain,
        pieces,
        masks,
        style=str(manifest.get("style", "square")),
        orientation=int(manifest.get("orientation", 1)),
        sub_version=int(manifest.get("sub_version", 0)),
        zoom_scales=[float(s) for s in manifest.get("zoom_scales", DEFAULT_ZOOM_SCALES)],
    )


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Pack PNG symbols into an ADC2 symbol set (.set + sheet BMPs).")
    p.add_argument("--manifest", required=True, type=pathlib.Path, help="Manifest path (.json/.yaml/.yml).")
    p.add_argument("--out", required=True, type=pathlib.Path, help="Output base path, e.g. out/MySet.")
    return p.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    if not args.manifest.exists():
        raise FileNotFoundError(f"Input file not found: {args.manifest}")
    wrote = pack_from_manifest(args.manifest, args.out)
    print("Generated:")
    for path in wrote:
        print(f"- {path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
