"""
Destinations for exported symbol images.

A sink only needs ``store(name, data)``. Names are allocated by ``UniqueNames``
so that duplicate symbol names (legal in ADC2) never overwrite each other.
"""

from __future__ import annotations

import io
import logging
import pathlib
import re
import zipfile
from typing import Dict, Iterable, List, Optional, Protocol

from PIL import Image

from adc2tools.errors import IOFailure

log = logging.getLogger(__name__)

IMAGE_DIR = "images"


class ArchiveSink(Protocol):
    def store(self, name: str, data: bytes) -> None:
        ...


def sanitize_file_stem(name: str) -> str:
    token = re.sub(r"[^A-Za-z0-9._() -]+", "_", name.strip())
    token = token.strip(". ")
    return token if token else "symbol"


class UniqueNames:
    """Case-insensitive registry of archive file names already handed out."""

    def __init__(self, taken: Iterable[str] = ()) -> None:
        self._taken = {n.casefold() for n in taken}

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.casefold() in self._taken

    def __len__(self) -> int:
        return len(self._taken)

    def next_free(self, name: str, ext: str = ".png") -> str:
        stem = sanitize_file_stem(name)
        candidate = f"{stem}{ext}"
        n = 1
        while candidate.casefold() in self._taken:
            candidate = f"{stem}({n}){ext}"
            n += 1
        return candidate

    def add(self, name: str) -> None:
        self._taken.add(name.casefold())


def encode_png(img: Image.Image) -> bytes:
    buf = io.BytesIO()
    try:
        img.save(buf, format="PNG")
    except (OSError, ValueError) as e:
        raise IOFailure(f"PNG encoding failed for {img.width}x{img.height} {img.mode} image: {e}") from e
    return buf.getvalue()


class DirectorySink:
    """Writes each image as a file under ``root``."""

    def __init__(self, root: pathlib.Path) -> None:
        self.root = pathlib.Path(root)
        self.written: List[pathlib.Path] = []

    def existing_names(self) -> List[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.name for p in self.root.iterdir() if p.is_file())

    def store(self, name: str, data: bytes) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        out_path = self.root / name
        out_path.write_bytes(data)
        self.written.append(out_path)
        log.debug("wrote %s (%d bytes)", out_path, len(data))


class ZipSink:
    """Adds images under ``images/`` of a zip archive, the layout of a game module file."""

    def __init__(self, path: pathlib.Path, mode: str = "w") -> None:
        self.path = pathlib.Path(path)
        self._zip: Optional[zipfile.ZipFile] = None
        self._mode = mode

    def __enter__(self) -> "ZipSink":
        self.open()
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def open(self) -> None:
        if self._zip is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._zip = zipfile.ZipFile(self.path, self._mode, compression=zipfile.ZIP_DEFLATED)

    def close(self) -> None:
        if self._zip is not None:
            self._zip.close()
            self._zip = None

    def existing_names(self) -> List[str]:
        if self._zip is None:
            return []
        prefix = f"{IMAGE_DIR}/"
        return [n[len(prefix):] for n in self._zip.namelist() if n.startswith(prefix)]

    def store(self, name: str, data: bytes) -> None:
        if self._zip is None:
            raise IOFailure(f"Archive {self.path} is not open")
        self._zip.writestr(f"{IMAGE_DIR}/{name}", data)


class MemorySink:
    def __init__(self) -> None:
        self.items: Dict[str, bytes] = {}

    def store(self, name: str, data: bytes) -> None:
        self.items[name] = data
