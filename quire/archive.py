from __future__ import annotations

import io
import logging
import os
import posixpath
import shutil
import tempfile
import zipfile
from pathlib import Path
from typing import BinaryIO, Union

from .env import work_dir
from .errors import ArchiveError

MIMETYPE = b"application/epub+zip"
MIMETYPE_MEMBER = "mimetype"
CHUNK_SIZE = 1024 * 1024

logger = logging.getLogger("quire.archive")


def canonical_member(name: str) -> str:
    normalized = posixpath.normpath((name or "").replace("\\", "/")).lstrip("/")
    while normalized.startswith("../"):
        normalized = normalized[3:]
    return "" if normalized in {"", ".", ".."} else normalized


def extract_archive(container: Path) -> Path:
    """Unpack every entry of ``container`` into a fresh private directory.

    The caller owns the returned directory and must remove it. Entry names are
    canonicalised first so nothing lands outside the directory.
    """
    container = Path(container)
    if not container.is_file():
        raise FileNotFoundError(f"EPUB not found: {container}")

    target_root = Path(tempfile.mkdtemp(prefix="quire-", dir=work_dir()))
    try:
        with zipfile.ZipFile(container, "r") as zf:
            for info in zf.infolist():
                if info.is_dir():
                    continue
                member = canonical_member(info.filename)
                if not member:
                    continue
                target = target_root.joinpath(*member.split("/"))
                target.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info, "r") as src, target.open("wb") as dst:
                    shutil.copyfileobj(src, dst, CHUNK_SIZE)
    except zipfile.BadZipFile as exc:
        shutil.rmtree(target_root, ignore_errors=True)
        raise ArchiveError(f"{container}: not a valid zip container ({exc})") from exc
    except BaseException:
        shutil.rmtree(target_root, ignore_errors=True)
        raise
    logger.debug("extracted %s to %s", container, target_root)
    return target_root


def _archive_members(root_dir: Path) -> list[tuple[str, Path]]:
    members: list[tuple[str, Path]] = []
    for dirpath, dirnames, filenames in os.walk(root_dir):
        dirnames.sort()
        for filename in sorted(filenames):
            path = Path(dirpath) / filename
            member = path.relative_to(root_dir).as_posix()
            if member == MIMETYPE_MEMBER:
                continue
            members.append((member, path))
    # META-INF first, then everything else in path order.
    members.sort(key=lambda entry: (not entry[0].startswith("META-INF/"), entry[0]))
    return members


def _write_zip(target: Union[Path, BinaryIO], root_dir: Path) -> None:
    with zipfile.ZipFile(target, "w") as zf:
        # EPUB requires mimetype to be the first entry, stored uncompressed.
        zf.writestr(MIMETYPE_MEMBER, MIMETYPE, compress_type=zipfile.ZIP_STORED)
        for member, path in _archive_members(root_dir):
            zf.write(path, member, compress_type=zipfile.ZIP_DEFLATED)


def pack_archive(root_dir: Path) -> bytes:
    buffer = io.BytesIO()
    _write_zip(buffer, Path(root_dir))
    return buffer.getvalue()


def write_archive(root_dir: Path, output_path: Path) -> None:
    """Pack ``root_dir`` and atomically replace ``output_path`` with the result."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_handle = tempfile.NamedTemporaryFile(
        prefix=f"{output_path.stem}.",
        suffix=".epub",
        dir=str(output_path.parent),
        delete=False,
    )
    tmp_path = Path(tmp_handle.name)
    tmp_handle.close()

    try:
        _write_zip(tmp_path, Path(root_dir))
        tmp_path.replace(output_path)
        logger.info("wrote %s", output_path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink(missing_ok=True)
