from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union


class Unset(enum.Enum):
    UNSET = "unset"

    def __repr__(self) -> str:
        return "UNSET"


UNSET = Unset.UNSET


@dataclass
class DCMeta:
    value: str = ""
    element_id: Optional[str] = None
    role: Optional[str] = None
    file_as: Optional[str] = None
    lang: Optional[str] = None


@dataclass
class MetaNode:
    property: Optional[str] = None
    name: Optional[str] = None
    content: Optional[str] = None
    refines: Optional[str] = None
    element_id: Optional[str] = None
    value: str = ""


@dataclass
class PackageMetadata:
    titles: list[DCMeta] = field(default_factory=list)
    creators: list[DCMeta] = field(default_factory=list)
    languages: list[DCMeta] = field(default_factory=list)
    identifiers: list[DCMeta] = field(default_factory=list)
    descriptions: list[DCMeta] = field(default_factory=list)
    meta: list[MetaNode] = field(default_factory=list)

    def dc_lists(self) -> list[list[DCMeta]]:
        return [self.titles, self.creators, self.languages, self.identifiers, self.descriptions]


@dataclass
class ManifestItem:
    item_id: str
    href: str
    media_type: str
    properties: Optional[str] = None
    fallback: Optional[str] = None
    extra: dict[str, str] = field(default_factory=dict)

    def property_tokens(self) -> list[str]:
        return (self.properties or "").split()

    def has_property(self, token: str) -> bool:
        return token in self.property_tokens()


@dataclass
class SpineItemRef:
    idref: str
    linear: Optional[str] = None
    properties: Optional[str] = None

    @property
    def is_linear(self) -> bool:
        return (self.linear or "").strip().lower() != "no"


@dataclass
class Spine:
    itemrefs: list[SpineItemRef] = field(default_factory=list)
    toc: Optional[str] = None
    page_progression_direction: Optional[str] = None
    spine_id: Optional[str] = None


@dataclass
class PackageDocument:
    version: str = "3.0"
    unique_identifier: Optional[str] = None
    lang: Optional[str] = None
    prefix: Optional[str] = None
    metadata: PackageMetadata = field(default_factory=PackageMetadata)
    manifest: list[ManifestItem] = field(default_factory=list)
    spine: Spine = field(default_factory=Spine)
    # Parsed OPF tree this document mirrors; None for freshly built packages.
    source: Optional[object] = field(default=None, compare=False, repr=False)

    def item_by_id(self, item_id: str) -> Optional[ManifestItem]:
        for item in self.manifest:
            if item.item_id == item_id:
                return item
        return None

    def nav_item(self) -> Optional[ManifestItem]:
        for item in self.manifest:
            if item.has_property("nav"):
                return item
        return None


@dataclass
class MergeOptions:
    out_path: Path
    title: str = ""
    language: str = ""
    creators: list[str] = field(default_factory=list)


class RewriteScope(str, enum.Enum):
    BODY = "body"
    METADATA = "metadata"
    BOTH = "both"

    @property
    def includes_body(self) -> bool:
        return self in {RewriteScope.BODY, RewriteScope.BOTH}

    @property
    def includes_metadata(self) -> bool:
        return self in {RewriteScope.METADATA, RewriteScope.BOTH}


@dataclass
class RewriteRule:
    find: str
    replace: str = ""
    regex: bool = False
    ignore_case: bool = False
    selectors: list[str] = field(default_factory=list)


@dataclass
class RewriteStats:
    match_count: int = 0
    files_changed: int = 0


PatchValue = Union[str, Unset]


@dataclass
class MetadataPatch:
    title: PatchValue = UNSET
    language: PatchValue = UNSET
    identifier: PatchValue = UNSET
    description: PatchValue = UNSET
    creators: Union[list[str], Unset] = UNSET

    def is_empty(self) -> bool:
        return all(
            value is UNSET
            for value in (self.title, self.language, self.identifier, self.description, self.creators)
        )


@dataclass
class MetadataSnapshot:
    title: str = ""
    language: str = ""
    identifier: str = ""
    description: str = ""
    creators: list[str] = field(default_factory=list)


@dataclass
class EditOptions:
    out_path: Optional[Path] = None
    patch: MetadataPatch = field(default_factory=MetadataPatch)
    nav_replace_path: Optional[Path] = None
    dump_meta_path: Optional[Path] = None
    dump_nav_path: Optional[Path] = None
    touch_modified: bool = True


def rule_from_dict(data: dict) -> RewriteRule:
    return RewriteRule(
        find=str(data.get("find") or ""),
        replace=str(data.get("replace") or ""),
        regex=bool(data.get("regex", False)),
        ignore_case=bool(data.get("ignore_case", False)),
        selectors=[str(sel) for sel in data.get("selectors") or []],
    )


def snapshot_to_dict(snapshot: MetadataSnapshot) -> dict:
    data: dict = {}
    for key in ("title", "language", "identifier", "description"):
        value = getattr(snapshot, key)
        if value:
            data[key] = value
    if snapshot.creators:
        data["creators"] = list(snapshot.creators)
    return data


def patch_from_dict(data: dict) -> MetadataPatch:
    patch = MetadataPatch()
    for key in ("title", "language", "identifier", "description"):
        value = data.get(key)
        if value is not None:
            setattr(patch, key, str(value))
    creators = data.get("creators")
    if creators is not None:
        if not isinstance(creators, list):
            raise TypeError("creators must be a list of strings")
        patch.creators = [str(name) for name in creators]
    return patch
