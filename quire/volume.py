from __future__ import annotations

import logging
import shutil
from pathlib import Path, PurePosixPath
from typing import Optional
from urllib.parse import unquote

from .archive import canonical_member, extract_archive
from .errors import FormatError
from .package import opf_path_from_container, parse_package, validate_package, write_package
from .models import PackageDocument

CONTAINER_MEMBER = "META-INF/container.xml"

logger = logging.getLogger("quire.volume")


def href_path(href: str) -> str:
    """Decode a manifest href into a normalized relative file path (no fragment)."""
    raw = (href or "").split("#", 1)[0].strip()
    return canonical_member(unquote(raw))


class Volume:
    """One opened EPUB bound to its private extracted tree.

    Use as a context manager; leaving the block removes the extracted tree.
    """

    def __init__(
        self,
        source: Path,
        root_dir: Path,
        package_path: Path,
        package: PackageDocument,
        nav_href: str = "",
        sequence: int = 0,
    ) -> None:
        self.source = source
        self.root_dir = root_dir
        self.package_path = package_path
        self.package = package
        self.nav_href = nav_href
        self.sequence = sequence

    def __enter__(self) -> "Volume":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        shutil.rmtree(self.root_dir, ignore_errors=True)

    @property
    def package_dir(self) -> Path:
        return self.package_path.parent

    @property
    def package_member(self) -> str:
        return self.package_path.relative_to(self.root_dir).as_posix()

    def resolve(self, href: str) -> Path:
        relative = PurePosixPath(self.package_member).parent / unquote(href.split("#", 1)[0].strip())
        member = canonical_member(relative.as_posix())
        return self.root_dir.joinpath(*member.split("/"))

    @property
    def nav_path(self) -> Optional[Path]:
        if not self.nav_href:
            return None
        return self.resolve(self.nav_href)

    def require_nav(self) -> Path:
        path = self.nav_path
        if path is None:
            raise FormatError(f"navigation document not found in {self.source}")
        return path

    def first_title(self) -> str:
        for entry in self.package.metadata.titles:
            value = entry.value.strip()
            if value:
                return value
        return ""

    def save_package(self) -> None:
        write_package(self.package, self.package_path)


def open_volume(path: Path, sequence: int = 0) -> Volume:
    source = Path(path)
    root_dir = extract_archive(source)
    try:
        container = root_dir / CONTAINER_MEMBER
        if not container.is_file():
            raise FormatError(f"{source}: missing {CONTAINER_MEMBER}")
        opf_member = canonical_member(opf_path_from_container(container.read_bytes()))
        if not opf_member:
            raise FormatError(f"{source}: container.xml names an empty package path")
        package_path = root_dir.joinpath(*opf_member.split("/"))
        if not package_path.is_file():
            raise FormatError(f"{source}: package document {opf_member} is missing")
        try:
            package = parse_package(package_path.read_bytes())
            validate_package(package)
        except FormatError as exc:
            raise FormatError(f"{source}: {exc}") from exc
    except BaseException:
        shutil.rmtree(root_dir, ignore_errors=True)
        raise

    nav = package.nav_item()
    nav_href = nav.href if nav is not None else ""
    if not nav_href:
        logger.debug("%s has no navigation document", source)
    logger.debug("opened %s (package %s, %d manifest items)", source, opf_member, len(package.manifest))
    return Volume(source, root_dir, package_path, package, nav_href=nav_href, sequence=sequence)
