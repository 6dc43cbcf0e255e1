from __future__ import annotations

import copy
import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from .archive import MIMETYPE, MIMETYPE_MEMBER, canonical_member, write_archive
from .env import work_dir
from .errors import FormatError, InputError
from .models import (
    DCMeta,
    ManifestItem,
    MergeOptions,
    MetaNode,
    PackageDocument,
    PackageMetadata,
    Spine,
    SpineItemRef,
)
from .package import modified_timestamp, render_epub_template, write_package
from .volume import CONTAINER_MEMBER, Volume, href_path, open_volume

CONTENT_DIR = "OEBPS"
VOLUMES_DIR = "Volumes"
PACKAGE_NAME = "content.opf"
NAV_ITEM_ID = "nav"
NAV_HREF = "nav.xhtml"
NCX_ITEM_ID = "ncx"
NCX_HREF = "toc.ncx"
NCX_MEDIA_TYPE = "application/x-dtbncx+xml"
XHTML_MEDIA_TYPE = "application/xhtml+xml"
# Manifest attributes whose value is another item's id.
ID_REFERENCE_ATTRS = ("media-overlay",)

logger = logging.getLogger("quire.merge")


@dataclass
class NavEntry:
    label: str
    href: str


@dataclass
class _ImportedVolume:
    manifest: list[ManifestItem] = field(default_factory=list)
    itemrefs: list[SpineItemRef] = field(default_factory=list)
    id_map: dict[str, str] = field(default_factory=dict)
    entry_href: str = ""


def volume_item_id(sequence: int, item_id: str) -> str:
    return f"v{sequence}-{item_id}"


def volume_prefix(sequence: int, total: int) -> str:
    """Directory, relative to the merged package document, that holds one volume."""
    width = max(2, len(str(total)))
    return f"{VOLUMES_DIR}/v{sequence:0{width}d}"


def _strip_property(properties: Optional[str], token: str) -> Optional[str]:
    kept = [part for part in (properties or "").split() if part != token]
    return " ".join(kept) or None


def _remap_extra(extra: dict[str, str], sequence: int) -> dict[str, str]:
    remapped = dict(extra)
    for key in ID_REFERENCE_ATTRS:
        if remapped.get(key):
            remapped[key] = volume_item_id(sequence, remapped[key])
    return remapped


def _copy_file(src: Path, dest: Path) -> None:
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(src, dest)


def _import_volume(volume: Volume, prefix: str, content_dir: Path) -> _ImportedVolume:
    sequence = volume.sequence
    imported = _ImportedVolume()
    copied: set[Path] = {volume.package_path.resolve()}
    package_dir = volume.package_dir

    for item in volume.package.manifest:
        relative = href_path(item.href)
        if not relative:
            raise FormatError(f"{volume.source}: manifest item {item.item_id!r} has an empty href")
        src = volume.resolve(item.href)
        if not src.is_file():
            raise FileNotFoundError(f"{volume.source}: manifest item {item.item_id!r} points to missing file {item.href}")
        dest = content_dir.joinpath(*prefix.split("/"), *relative.split("/"))
        if src.resolve() not in copied:
            _copy_file(src, dest)
            copied.add(src.resolve())

        raw_href, _, fragment = item.href.partition("#")
        # Same normalization as the copy target, but keeping the href's own percent-encoding.
        href = f"{prefix}/{canonical_member(raw_href.strip())}"
        properties = _strip_property(item.properties, "nav")
        if sequence > 1:
            properties = _strip_property(properties, "cover-image")
        new_id = volume_item_id(sequence, item.item_id)
        imported.id_map[item.item_id] = new_id
        imported.manifest.append(
            ManifestItem(
                item_id=new_id,
                href=f"{href}#{fragment}" if fragment else href,
                media_type=item.media_type,
                properties=properties,
                fallback=volume_item_id(sequence, item.fallback) if item.fallback else None,
                extra=_remap_extra(item.extra, sequence),
            )
        )

    # Same-directory assets the manifest does not list (fonts and images pulled in by CSS).
    for path in sorted(package_dir.rglob("*")):
        if not path.is_file() or path.resolve() in copied:
            continue
        relative = path.relative_to(package_dir).as_posix()
        if relative == MIMETYPE_MEMBER or relative.startswith("META-INF/"):
            continue
        _copy_file(path, content_dir.joinpath(*prefix.split("/"), *relative.split("/")))
        copied.add(path.resolve())
        logger.debug("copied unlisted asset %s from %s", relative, volume.source)

    for itemref in volume.package.spine.itemrefs:
        imported.itemrefs.append(
            SpineItemRef(
                idref=imported.id_map[itemref.idref],
                linear=itemref.linear,
                properties=itemref.properties,
            )
        )

    imported.entry_href = _entry_href(imported)
    return imported


def _entry_href(imported: _ImportedVolume) -> str:
    by_id = {item.item_id: item for item in imported.manifest}
    candidates = [ref for ref in imported.itemrefs if ref.is_linear] or imported.itemrefs
    if candidates:
        return by_id[candidates[0].idref].href
    for item in imported.manifest:
        if item.media_type == XHTML_MEDIA_TYPE:
            return item.href
    return ""


def _first_entry(entries: Iterable[DCMeta]) -> Optional[DCMeta]:
    for entry in entries:
        return copy.deepcopy(entry)
    return None


def merged_metadata(first: PackageMetadata, options: MergeOptions, cover_id: Optional[str] = None) -> PackageMetadata:
    metadata = PackageMetadata()

    if options.title:
        metadata.titles = [DCMeta(value=options.title)]
    else:
        title = _first_entry(first.titles)
        metadata.titles = [title] if title else []

    if options.language:
        metadata.languages = [DCMeta(value=options.language)]
    else:
        language = _first_entry(first.languages)
        metadata.languages = [language] if language else []

    if options.creators:
        metadata.creators = [DCMeta(value=name) for name in options.creators]
    else:
        metadata.creators = copy.deepcopy(first.creators)

    metadata.meta.append(MetaNode(property="dcterms:modified", value=modified_timestamp()))
    if cover_id:
        metadata.meta.append(MetaNode(name="cover", content=cover_id))
    return metadata


def _legacy_cover_id(volume: Volume) -> Optional[str]:
    for meta in volume.package.metadata.meta:
        if (meta.name or "") == "cover" and meta.content and volume.package.item_by_id(meta.content):
            return volume_item_id(volume.sequence, meta.content)
    return None


def merge_epubs(volume_paths: Iterable[Path], options: MergeOptions) -> Path:
    """Merge single-volume EPUBs, in the given order, into one book at ``options.out_path``."""
    paths = [Path(p) for p in volume_paths]
    if len(paths) < 2:
        raise InputError("need at least two EPUB files to merge")
    if not options.out_path:
        raise InputError("merge output path is required")
    for path in paths:
        if not path.is_file():
            raise FileNotFoundError(f"EPUB not found: {path}")

    out_path = Path(options.out_path)
    build_dir = Path(tempfile.mkdtemp(prefix="quire-merge-", dir=work_dir()))
    try:
        content_dir = build_dir / CONTENT_DIR
        content_dir.mkdir(parents=True)
        manifest: list[ManifestItem] = []
        itemrefs: list[SpineItemRef] = []
        entries: list[NavEntry] = []
        first_metadata: Optional[PackageMetadata] = None
        cover_id: Optional[str] = None

        for sequence, path in enumerate(paths, start=1):
            with open_volume(path, sequence=sequence) as volume:
                prefix = volume_prefix(sequence, len(paths))
                logger.info("merging volume %d/%d: %s -> %s", sequence, len(paths), path, prefix)
                imported = _import_volume(volume, prefix, content_dir)
                manifest.extend(imported.manifest)
                itemrefs.extend(imported.itemrefs)
                entries.append(NavEntry(label=volume.first_title() or f"Volume {sequence}", href=imported.entry_href))
                if first_metadata is None:
                    first_metadata = copy.deepcopy(volume.package.metadata)
                    cover_id = _legacy_cover_id(volume)

        metadata = merged_metadata(first_metadata or PackageMetadata(), options, cover_id=cover_id)
        title = metadata.titles[0].value if metadata.titles else entries[0].label
        language = metadata.languages[0].value if metadata.languages else ""

        nav_item = ManifestItem(item_id=NAV_ITEM_ID, href=NAV_HREF, media_type=XHTML_MEDIA_TYPE, properties="nav")
        ncx_item = ManifestItem(item_id=NCX_ITEM_ID, href=NCX_HREF, media_type=NCX_MEDIA_TYPE)
        package = PackageDocument(
            version="3.0",
            metadata=metadata,
            manifest=[nav_item, ncx_item, *manifest],
            spine=Spine(itemrefs=itemrefs, toc=NCX_ITEM_ID),
        )

        (build_dir / MIMETYPE_MEMBER).write_bytes(MIMETYPE)
        container = build_dir / CONTAINER_MEMBER
        container.parent.mkdir(parents=True, exist_ok=True)
        container.write_text(
            render_epub_template("container.xml.j2", package_path=f"{CONTENT_DIR}/{PACKAGE_NAME}"),
            encoding="utf-8",
        )
        (content_dir / NAV_HREF).write_text(
            render_epub_template("nav.xhtml.j2", title=title, lang=language, entries=entries),
            encoding="utf-8",
        )
        (content_dir / NCX_HREF).write_text(
            render_epub_template("toc.ncx.j2", title=title, uid="", entries=entries),
            encoding="utf-8",
        )
        write_package(package, content_dir / PACKAGE_NAME)

        write_archive(build_dir, out_path)
        logger.info("merged %d volumes into %s (%d spine items)", len(paths), out_path, len(itemrefs))
    finally:
        shutil.rmtree(build_dir, ignore_errors=True)
    return out_path
