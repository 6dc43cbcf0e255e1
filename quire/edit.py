from __future__ import annotations

import datetime as dt
import json
import logging
import shutil
from pathlib import Path
from typing import Optional

from .archive import write_archive
from .errors import InputError
from .models import (
    UNSET,
    DCMeta,
    EditOptions,
    MetadataPatch,
    MetadataSnapshot,
    MetaNode,
    PackageMetadata,
    patch_from_dict,
    snapshot_to_dict,
)
from .package import modified_timestamp
from .volume import Volume, open_volume

MODIFIED_PROPERTY = "dcterms:modified"

logger = logging.getLogger("quire.edit")


def apply_metadata_patch(metadata: PackageMetadata, patch: MetadataPatch) -> bool:
    """Replace every metadata list the patch names; return whether anything was set."""
    changed = False
    if patch.title is not UNSET:
        metadata.titles = [DCMeta(value=patch.title)]
        changed = True
    if patch.language is not UNSET:
        metadata.languages = [DCMeta(value=patch.language)]
        changed = True
    if patch.identifier is not UNSET:
        # The first identifier keeps its id so package/@unique-identifier still resolves.
        if metadata.identifiers:
            metadata.identifiers[0].value = patch.identifier
        else:
            metadata.identifiers = [DCMeta(value=patch.identifier)]
        changed = True
    if patch.description is not UNSET:
        metadata.descriptions = [DCMeta(value=patch.description)]
        changed = True
    if patch.creators is not UNSET:
        metadata.creators = [DCMeta(value=name) for name in patch.creators]
        changed = True
    return changed


def _first_value(entries: list[DCMeta]) -> str:
    return entries[0].value if entries else ""


def metadata_snapshot(metadata: PackageMetadata) -> MetadataSnapshot:
    return MetadataSnapshot(
        title=_first_value(metadata.titles),
        language=_first_value(metadata.languages),
        identifier=_first_value(metadata.identifiers),
        description=_first_value(metadata.descriptions),
        creators=[entry.value for entry in metadata.creators if entry.value.strip()],
    )


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def dump_metadata(metadata: PackageMetadata, dest: Path) -> None:
    dest = Path(dest)
    _ensure_parent(dest)
    payload = snapshot_to_dict(metadata_snapshot(metadata))
    dest.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")


def dump_nav(volume: Volume, dest: Path) -> None:
    dest = Path(dest)
    _ensure_parent(dest)
    shutil.copyfile(volume.require_nav(), dest)


def load_metadata_patch(path: Path) -> MetadataPatch:
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise InputError(f"cannot read metadata patch {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise InputError(f"metadata patch {path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise InputError(f"metadata patch {path} must be a JSON object")
    try:
        return patch_from_dict(data)
    except TypeError as exc:
        raise InputError(f"metadata patch {path}: {exc}") from exc


def touch_modified(metadata: PackageMetadata, now: Optional[dt.datetime] = None) -> str:
    stamp = modified_timestamp(now)
    for meta in metadata.meta:
        if meta.property == MODIFIED_PROPERTY:
            meta.value = stamp
            return stamp
    metadata.meta.append(MetaNode(property=MODIFIED_PROPERTY, value=stamp))
    return stamp


def edit_epub(input_path: Path, options: EditOptions) -> bool:
    """Dump, patch and/or swap the navigation document of one book.

    Returns True when a new archive was written.
    """
    if not input_path:
        raise InputError("input EPUB path is required")
    source = Path(input_path)
    nav_source = Path(options.nav_replace_path) if options.nav_replace_path else None
    if nav_source is not None and not nav_source.is_file():
        raise InputError(f"replacement navigation document not found: {nav_source}")

    with open_volume(source) as volume:
        metadata = volume.package.metadata
        if options.dump_meta_path:
            dump_metadata(metadata, Path(options.dump_meta_path))
            logger.info("wrote metadata snapshot %s", options.dump_meta_path)
        if options.dump_nav_path:
            dump_nav(volume, Path(options.dump_nav_path))
            logger.info("wrote navigation document %s", options.dump_nav_path)

        changed = False
        if not options.patch.is_empty():
            changed = apply_metadata_patch(metadata, options.patch)

        if nav_source is not None:
            target = volume.require_nav()
            shutil.copyfile(nav_source, target)
            logger.debug("replaced %s with %s", volume.nav_href, nav_source)
            changed = True

        if not changed:
            logger.info("%s: nothing to change", source)
            return False

        if options.touch_modified:
            touch_modified(metadata)
        volume.save_package()
        write_archive(volume.root_dir, Path(options.out_path) if options.out_path else source)
    return True
