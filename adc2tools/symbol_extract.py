#!/usr/bin/env python3
"""
ADC2 symbol set extraction helpers.

Current capabilities:
- Report header flags, symbol counts, sizes and zoom factors of a .set file.
- Export symbol images (masks applied) to a folder or a module zip archive.
- Preview a mask bitmap as the alpha image the decoder builds from it.
"""

from __future__ import annotations

import argparse
import json
import logging
import pathlib
import sys
from typing import Any, Dict, List, Mapping, Optional, Sequence

import yaml
from PIL import Image

from adc2tools.archive import DirectorySink, UniqueNames, ZipSink
from adc2tools.errors import IOFailure, SymbolSetError
from adc2tools.symbol_set import (
    DEFAULT_ZOOM_LEVEL,
    ZOOM_LEVELS,
    Category,
    SymbolRecord,
    SymbolSet,
    generate_alpha_mask,
    open_sheet,
)

log = logging.getLogger(__name__)

CATEGORY_NAMES = {
    "terrain": Category.MAP_BOARD,
    "pieces": Category.GAME_PIECE,
    "masks": Category.MASK,
}
CONFIG_KEYS = {"zoom_level", "categories", "verbose"}


def _load_config(path: pathlib.Path) -> Dict[str, Any]:
    ext = path.suffix.lower()
    text = path.read_text(encoding="utf-8")
    if ext == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)
    if not isinstance(data, dict):
        raise ValueError("Config root must be a mapping/object")
    unknown = sorted(set(data) - CONFIG_KEYS)
    if unknown:
        raise ValueError(f"Unknown config keys: {', '.join(unknown)}")
    return data


def _parse_categories(spec: Any) -> List[Category]:
    if isinstance(spec, str):
        tokens = [t.strip().lower() for t in spec.split(",") if t.strip()]
    else:
        tokens = [str(t).strip().lower() for t in spec]
    if "all" in tokens:
        return [Category.MAP_BOARD, Category.GAME_PIECE, Category.MASK]
    out: List[Category] = []
    for tok in tokens:
        if tok not in CATEGORY_NAMES:
            raise ValueError(f"Unknown category: {tok} (expected terrain|pieces|masks|all)")
        out.append(CATEGORY_NAMES[tok])
    return out


def _settings(args: argparse.Namespace, cfg: Mapping[str, Any]) -> Dict[str, Any]:
    zoom = args.zoom if getattr(args, "zoom", None) is not None else cfg.get("zoom_level")
    # CLI zoom levels are 1-based like the sheet file names.
    if zoom is None:
        zoom_level = DEFAULT_ZOOM_LEVEL
    else:
        try:
            zoom_level = int(zoom) - 1
        except (TypeError, ValueError):
            raise ValueError(f"zoom_level must be an integer 1..{ZOOM_LEVELS}, got {zoom!r}") from None
        if not 0 <= zoom_level < ZOOM_LEVELS:
            raise ValueError(f"zoom_level must be 1..{ZOOM_LEVELS}, got {zoom}")
    categories = getattr(args, "category", None) or cfg.get("categories") or "pieces"
    return {
        "zoom_level": zoom_level,
        "categories": _parse_categories(categories),
    }


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _record_entry(rec: SymbolRecord) -> Dict[str, object]:
    mask = rec.resolve_mask()
    return {
        "index": rec.index,
        "name": rec.name,
        "rect": [rec.rect.x, rec.rect.y, rec.rect.width, rec.rect.height],
        "mask": mask.index + 1 if mask is not None else 0,
        "file": rec.file_name,
    }


def cmd_info(args: argparse.Namespace) -> int:
    settings = args.settings
    sset = SymbolSet.load(pathlib.Path(args.set), zoom_level=settings["zoom_level"])
    header = sset.header
    assert header is not None
    report: Dict[str, object] = {
        "set": args.set,
        "marker": header.marker,
        "orientation": header.orientation,
        "shape": sset.shape.value,
        "sub_version": header.sub_version,
        "masks_ignored": sset.ignore_mask,
        "zoom_level": sset.zoom_level + 1,
        "counts": {name: len(sset.records(cat)) for name, cat in CATEGORY_NAMES.items()},
        "declared_sheet_sizes": {
            name: list(sset.declared_sheet_sizes[cat]) for name, cat in CATEGORY_NAMES.items()
        },
        "sheet_sizes": {
            name: list(sset.sheets[cat].size) for name, cat in CATEGORY_NAMES.items() if cat in sset.sheets
        },
    }
    if sset.symbol_sizes:
        report["symbol_size"] = sset.symbol_size()
        report["zoom_factors"] = [round(sset.zoom_factor(level), 6) for level in range(ZOOM_LEVELS)]
    if sset.game_pieces:
        report["modal_size"] = list(sset.modal_size())
    if args.symbols:
        report["symbols"] = {
            name: [_record_entry(rec) for rec in sset.records(cat)] for name, cat in CATEGORY_NAMES.items()
        }
    if args.json:
        pathlib.Path(args.json).write_text(json.dumps(report, indent=2), encoding="utf-8")
    print(json.dumps(report, indent=2))
    return 0


def cmd_export(args: argparse.Namespace) -> int:
    settings = args.settings
    set_path = pathlib.Path(args.set)

    manifest: Dict[str, object] = {"set": str(set_path), "zoom_level": settings["zoom_level"] + 1}
    if args.outdir:
        sink = DirectorySink(pathlib.Path(args.outdir))
        sset = SymbolSet.load(set_path, settings["zoom_level"], UniqueNames(sink.existing_names()))
        sset.externalize_all(sink, settings["categories"])
        manifest["outdir"] = str(sink.root)
    else:
        with ZipSink(pathlib.Path(args.zip), mode="a" if args.append else "w") as zsink:
            sset = SymbolSet.load(set_path, settings["zoom_level"], UniqueNames(zsink.existing_names()))
            sset.externalize_all(zsink, settings["categories"])
        manifest["zip"] = str(zsink.path)

    for name, cat in CATEGORY_NAMES.items():
        if cat in settings["categories"]:
            manifest[name] = [_record_entry(rec) for rec in sset.records(cat)]
    if args.manifest:
        pathlib.Path(args.manifest).write_text(json.dumps(manifest, indent=2), encoding="utf-8")
    print(
        json.dumps(
            {
                "set": str(set_path),
                "exported": sum(len(sset.records(cat)) for cat in settings["categories"]),
                "categories": [c.name.lower() for c in settings["categories"]],
                "manifest": args.manifest,
            },
            indent=2,
        )
    )
    return 0


def cmd_mask_preview(args: argparse.Namespace) -> int:
    src = pathlib.Path(args.input)
    if not src.exists():
        raise IOFailure(f"Input file not found: {src}")
    alpha = generate_alpha_mask(open_sheet(src))
    if args.scale != 1:
        alpha = alpha.resize((alpha.width * args.scale, alpha.height * args.scale), Image.NEAREST)
    out = pathlib.Path(args.out)
    out.parent.mkdir(parents=True, exist_ok=True)
    alpha.save(out, format="PNG")
    print(json.dumps({"input": str(src), "output": str(out), "size": list(alpha.size)}, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="ADC2 symbol set extraction helper")
    p.add_argument("--verbose", action="store_true", help="Enable debug logging")
    sub = p.add_subparsers(dest="cmd", required=True)

    pin = sub.add_parser("info", help="Report header, counts, symbol size and zoom factors of a .set file")
    pin.add_argument("--set", required=True, help="Path to symbol set (.set)")
    pin.add_argument("--zoom", type=int, choices=[1, 2, 3], help=f"Zoom level to read (default: {DEFAULT_ZOOM_LEVEL + 1})")
    pin.add_argument("--config", help="Optional config file (.json/.yaml/.yml)")
    pin.add_argument("--symbols", action="store_true", help="Include per-symbol names, rectangles and masks")
    pin.add_argument("--json", help="Optional output JSON path")
    pin.set_defaults(func=cmd_info)

    pex = sub.add_parser("export", help="Write symbol images (masks applied) as PNG files")
    pex.add_argument("--set", required=True, help="Path to symbol set (.set)")
    dest = pex.add_mutually_exclusive_group(required=True)
    dest.add_argument("--outdir", help="Output folder")
    dest.add_argument("--zip", help="Output zip archive (images stored under images/)")
    pex.add_argument("--append", action="store_true", help="Append to an existing --zip archive")
    pex.add_argument("--zoom", type=int, choices=[1, 2, 3], help=f"Zoom level to read (default: {DEFAULT_ZOOM_LEVEL + 1})")
    pex.add_argument("--category", help="Comma-separated: terrain,pieces,masks,all (default: pieces)")
    pex.add_argument("--config", help="Optional config file (.json/.yaml/.yml)")
    pex.add_argument("--manifest", help="Optional output JSON manifest path")
    pex.set_defaults(func=cmd_export)

    pmp = sub.add_parser("mask-preview", help="Convert a black/white mask bitmap to an alpha PNG")
    pmp.add_argument("--input", required=True, help="Mask bitmap (e.g. Set-m3.bmp)")
    pmp.add_argument("--out", required=True, help="Output PNG path")
    pmp.add_argument("--scale", type=int, default=1, help="Integer upscale factor (default: 1)")
    pmp.set_defaults(func=cmd_mask_preview)

    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        cfg = _load_config(pathlib.Path(args.config)) if getattr(args, "config", None) else {}
        args.settings = _settings(args, cfg)
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    _configure_logging(args.verbose or bool(cfg.get("verbose", False)))
    try:
        return int(args.func(args))
    except SymbolSetError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
