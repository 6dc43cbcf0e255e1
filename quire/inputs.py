from __future__ import annotations

import re
from pathlib import Path
from typing import Iterable, Optional

from .errors import InputError

EPUB_SUFFIX = ".epub"
_DIGITS_RE = re.compile(r"[0-9]+")


def volume_number(name: str) -> Optional[int]:
    """First run of digits in the file stem, e.g. ``Series v03 (2019).epub`` -> 3."""
    match = _DIGITS_RE.search(Path(name).stem)
    if match is None:
        return None
    return int(match.group(0))


def _directory_sort_key(path: Path) -> tuple:
    number = volume_number(path.name)
    lowered = path.name.lower()
    if number is None:
        return (1, 0, lowered, path.name)
    return (0, number, lowered, path.name)


def expand_list_files(paths: Iterable[Path]) -> list[Path]:
    """Read newline-separated volume paths; blank lines and ``#`` comments are skipped."""
    volumes: list[Path] = []
    for list_path in paths:
        list_path = Path(list_path)
        try:
            text = list_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise InputError(f"cannot read volume list {list_path}: {exc}") from exc
        for line in text.splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            volumes.append(Path(line))
    return volumes


def expand_directories(dirs: Iterable[Path]) -> list[Path]:
    """Non-recursive ``*.epub`` scan; numbered files first, in volume order."""
    volumes: list[Path] = []
    for directory in dirs:
        directory = Path(directory)
        if not directory.is_dir():
            raise InputError(f"not a directory: {directory}")
        candidates = [
            entry
            for entry in directory.iterdir()
            if entry.is_file() and entry.suffix.lower() == EPUB_SUFFIX
        ]
        volumes.extend(sorted(candidates, key=_directory_sort_key))
    return volumes
