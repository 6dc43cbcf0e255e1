from __future__ import annotations

import datetime as dt
from functools import lru_cache
from pathlib import Path
from typing import Iterable, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape
from lxml import etree as LXML_ET

from .errors import FormatError
from .models import DCMeta, ManifestItem, MetaNode, PackageDocument, PackageMetadata, Spine, SpineItemRef

CONTAINER_NS = "urn:oasis:names:tc:opendocument:xmlns:container"
OPF_NS = "http://www.idpf.org/2007/opf"
DC_NS = "http://purl.org/dc/elements/1.1/"
XML_NS = "http://www.w3.org/XML/1998/namespace"
EPUB_TEMPLATES_DIR = Path(__file__).resolve().parent / "epub_templates"

DC_FIELDS = ("title", "creator", "language", "identifier", "description")
_ITEM_ATTRS = {"id", "href", "media-type", "properties", "fallback"}
_KNOWN_PREFIXES = {
    OPF_NS: "opf",
    "http://vocabulary.itunes.apple.com/rdf/ibooks/vocabulary-extensions-1.0/": "ibooks",
    "http://calibre.kovidgoyal.net/2009/metadata": "calibre",
}


@lru_cache(maxsize=1)
def _epub_template_env() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(EPUB_TEMPLATES_DIR)),
        autoescape=select_autoescape(
            enabled_extensions=("xml", "xhtml", "html", "opf", "ncx", "j2"),
            default_for_string=False,
        ),
        trim_blocks=True,
        lstrip_blocks=True,
    )


def render_epub_template(template_name: str, **context: object) -> str:
    return _epub_template_env().get_template(template_name).render(**context)


def modified_timestamp(now: Optional[dt.datetime] = None) -> str:
    moment = now or dt.datetime.now(dt.timezone.utc)
    return moment.astimezone(dt.timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _tag_local_name(tag: object) -> str:
    if not tag or not isinstance(tag, str):
        return ""
    if "}" in tag:
        return tag.split("}", 1)[1]
    return tag


def _child_by_local_name(node: LXML_ET._Element, local_name: str) -> Optional[LXML_ET._Element]:
    for child in list(node):
        if _tag_local_name(child.tag) == local_name:
            return child
    return None


def _iter_children_by_local_name(node: LXML_ET._Element, local_name: str) -> list[LXML_ET._Element]:
    return [child for child in list(node) if _tag_local_name(child.tag) == local_name]


def _attr(node: LXML_ET._Element, local_name: str) -> Optional[str]:
    for key, value in node.attrib.items():
        if _tag_local_name(key) == local_name:
            return str(value)
    return None


def _strict_parser() -> LXML_ET.XMLParser:
    return LXML_ET.XMLParser(resolve_entities=False, no_network=True, remove_blank_text=False)


def opf_path_from_container(raw: bytes) -> str:
    try:
        root = LXML_ET.fromstring(raw, parser=_strict_parser())
    except LXML_ET.XMLSyntaxError as exc:
        raise FormatError(f"container.xml is not well-formed: {exc}") from exc
    for node in root.iter():
        if _tag_local_name(node.tag) != "rootfile":
            continue
        full_path = (node.attrib.get("full-path") or "").strip()
        if full_path:
            return full_path
    raise FormatError("container.xml does not name a package document")


def _dc_from_node(node: LXML_ET._Element) -> DCMeta:
    return DCMeta(
        value=node.text or "",
        element_id=node.attrib.get("id"),
        role=_attr(node, "role"),
        file_as=_attr(node, "file-as"),
        lang=node.attrib.get(f"{{{XML_NS}}}lang"),
    )


def _meta_from_node(node: LXML_ET._Element) -> MetaNode:
    return MetaNode(
        property=node.attrib.get("property"),
        name=node.attrib.get("name"),
        content=node.attrib.get("content"),
        refines=node.attrib.get("refines"),
        element_id=node.attrib.get("id"),
        value=node.text or "",
    )


def _parse_metadata(node: Optional[LXML_ET._Element]) -> PackageMetadata:
    metadata = PackageMetadata()
    if node is None:
        return metadata
    targets = {
        "title": metadata.titles,
        "creator": metadata.creators,
        "language": metadata.languages,
        "identifier": metadata.identifiers,
        "description": metadata.descriptions,
    }
    for child in list(node):
        if not isinstance(child.tag, str):
            continue
        local = _tag_local_name(child.tag)
        namespace = LXML_ET.QName(child).namespace
        if namespace == DC_NS and local in targets:
            targets[local].append(_dc_from_node(child))
        elif local == "meta":
            metadata.meta.append(_meta_from_node(child))
    return metadata


def parse_package(raw: bytes) -> PackageDocument:
    try:
        root = LXML_ET.fromstring(raw, parser=_strict_parser())
    except LXML_ET.XMLSyntaxError as exc:
        raise FormatError(f"package document is not well-formed: {exc}") from exc
    if _tag_local_name(root.tag) != "package":
        raise FormatError(f"unexpected package root element {root.tag!r}")

    manifest: list[ManifestItem] = []
    manifest_node = _child_by_local_name(root, "manifest")
    if manifest_node is not None:
        for node in _iter_children_by_local_name(manifest_node, "item"):
            manifest.append(
                ManifestItem(
                    item_id=str(node.attrib.get("id") or ""),
                    href=str(node.attrib.get("href") or ""),
                    media_type=str(node.attrib.get("media-type") or ""),
                    properties=node.attrib.get("properties"),
                    fallback=node.attrib.get("fallback"),
                    extra={str(k): str(v) for k, v in node.attrib.items() if k not in _ITEM_ATTRS},
                )
            )

    spine = Spine()
    spine_node = _child_by_local_name(root, "spine")
    if spine_node is not None:
        spine.toc = spine_node.attrib.get("toc")
        spine.page_progression_direction = spine_node.attrib.get("page-progression-direction")
        spine.spine_id = spine_node.attrib.get("id")
        for node in _iter_children_by_local_name(spine_node, "itemref"):
            spine.itemrefs.append(
                SpineItemRef(
                    idref=str(node.attrib.get("idref") or ""),
                    linear=node.attrib.get("linear"),
                    properties=node.attrib.get("properties"),
                )
            )

    return PackageDocument(
        version=str(root.attrib.get("version") or ""),
        unique_identifier=root.attrib.get("unique-identifier"),
        lang=root.attrib.get(f"{{{XML_NS}}}lang"),
        prefix=root.attrib.get("prefix"),
        metadata=_parse_metadata(_child_by_local_name(root, "metadata")),
        manifest=manifest,
        spine=spine,
        source=root,
    )


def validate_package(package: PackageDocument) -> None:
    seen: set[str] = set()
    for item in package.manifest:
        if not item.item_id:
            raise FormatError(f"manifest item {item.href!r} has no id")
        if item.item_id in seen:
            raise FormatError(f"duplicate manifest id {item.item_id!r}")
        seen.add(item.item_id)
    for itemref in package.spine.itemrefs:
        if itemref.idref not in seen:
            raise FormatError(f"spine references unknown manifest id {itemref.idref!r}")


def _set_optional(node: LXML_ET._Element, key: str, value: Optional[str]) -> None:
    if value is None:
        node.attrib.pop(key, None)
    else:
        node.set(key, value)


def _missing_namespaces(node: LXML_ET._Element, wanted: dict[str, str]) -> Optional[dict[str, str]]:
    known = node.nsmap
    missing = {prefix: uri for prefix, uri in wanted.items() if known.get(prefix) != uri}
    return missing or None


def _new_dc_element(parent: LXML_ET._Element, local: str, entry: DCMeta) -> LXML_ET._Element:
    wanted = {"dc": DC_NS}
    if entry.role is not None or entry.file_as is not None:
        wanted["opf"] = OPF_NS
    # Created in place so lxml reuses the namespace declarations already in scope.
    node = LXML_ET.SubElement(parent, f"{{{DC_NS}}}{local}", nsmap=_missing_namespaces(parent, wanted))
    node.text = entry.value
    _set_optional(node, "id", entry.element_id)
    _set_optional(node, f"{{{OPF_NS}}}role", entry.role)
    _set_optional(node, f"{{{OPF_NS}}}file-as", entry.file_as)
    _set_optional(node, f"{{{XML_NS}}}lang", entry.lang)
    return node


def _new_meta_element(parent: LXML_ET._Element, entry: MetaNode) -> LXML_ET._Element:
    parent_ns = LXML_ET.QName(parent).namespace
    # Prefer the default namespace so an `opf:` declaration in scope is not picked for the tag.
    nsmap = {None: parent_ns} if parent_ns and parent.nsmap.get(None) == parent_ns else None
    node = LXML_ET.SubElement(parent, f"{{{parent_ns}}}meta" if parent_ns else "meta", nsmap=nsmap)
    for key, value in (
        ("property", entry.property),
        ("name", entry.name),
        ("content", entry.content),
        ("refines", entry.refines),
        ("id", entry.element_id),
    ):
        _set_optional(node, key, value)
    if entry.value:
        node.text = entry.value
    return node


def _layout(node: LXML_ET._Element) -> tuple[Optional[str], Optional[str]]:
    children = list(node)
    return node.text, children[-1].tail if children else None


def _restore_layout(node: LXML_ET._Element, layout: tuple[Optional[str], Optional[str]]) -> None:
    """Give rebuilt children the indentation the source used."""
    indent, closing = layout
    children = list(node)
    if not children or not indent or indent.strip():
        return
    for child in children[:-1]:
        if not (child.tail or "").strip():
            child.tail = indent
    if closing is not None and not closing.strip():
        children[-1].tail = closing


def _ensure_child(root: LXML_ET._Element, local_name: str, index: int) -> LXML_ET._Element:
    node = _child_by_local_name(root, local_name)
    if node is None:
        node = LXML_ET.SubElement(root, f"{{{OPF_NS}}}{local_name}")
        root.insert(min(index, len(root) - 1), node)
    return node


def _sync_metadata(root: LXML_ET._Element, metadata: PackageMetadata) -> None:
    node = _ensure_child(root, "metadata", 0)
    layout = _layout(node)
    # Managed entries go back where the first one was; other children keep their order.
    insert_at: Optional[int] = None
    kept = 0
    for child in list(node):
        managed = False
        if isinstance(child.tag, str):
            local = _tag_local_name(child.tag)
            managed_dc = local in DC_FIELDS and LXML_ET.QName(child).namespace == DC_NS
            if managed_dc and insert_at is None:
                insert_at = kept
            managed = managed_dc or local == "meta"
        if managed:
            node.remove(child)
        else:
            kept += 1
    if insert_at is None:
        insert_at = 0

    groups: Iterable[tuple[str, list[DCMeta]]] = zip(DC_FIELDS, metadata.dc_lists())
    for local, entries in groups:
        for entry in entries:
            node.insert(insert_at, _new_dc_element(node, local, entry))
            insert_at += 1
    for meta in metadata.meta:
        _new_meta_element(node, meta)
    _restore_layout(node, layout)


def _sync_manifest(root: LXML_ET._Element, manifest: list[ManifestItem]) -> None:
    node = _ensure_child(root, "manifest", 1)
    layout = _layout(node)
    for child in _iter_children_by_local_name(node, "item"):
        node.remove(child)
    for item in manifest:
        el = LXML_ET.SubElement(node, f"{{{OPF_NS}}}item")
        el.set("id", item.item_id)
        el.set("href", item.href)
        el.set("media-type", item.media_type)
        _set_optional(el, "properties", item.properties)
        _set_optional(el, "fallback", item.fallback)
        for key, value in item.extra.items():
            el.set(key, value)
    _restore_layout(node, layout)


def _sync_spine(root: LXML_ET._Element, spine: Spine) -> None:
    node = _ensure_child(root, "spine", 2)
    layout = _layout(node)
    _set_optional(node, "toc", spine.toc)
    _set_optional(node, "page-progression-direction", spine.page_progression_direction)
    _set_optional(node, "id", spine.spine_id)
    for child in _iter_children_by_local_name(node, "itemref"):
        node.remove(child)
    for itemref in spine.itemrefs:
        el = LXML_ET.SubElement(node, f"{{{OPF_NS}}}itemref")
        el.set("idref", itemref.idref)
        _set_optional(el, "linear", itemref.linear)
        _set_optional(el, "properties", itemref.properties)
    _restore_layout(node, layout)


def _qualified_extras(
    manifest: list[ManifestItem],
) -> tuple[dict[str, str], list[tuple[ManifestItem, list[tuple[str, str]]]]]:
    """Prefixed names for Clark-notation manifest attributes, plus the declarations they need."""
    prefixes: dict[str, str] = {}
    rows = []
    for item in manifest:
        attrs = []
        for key, value in item.extra.items():
            qname = LXML_ET.QName(key)
            uri = qname.namespace
            if uri is None:
                attrs.append((key, value))
                continue
            if uri == XML_NS:
                prefix = "xml"
            else:
                prefix = prefixes.get(uri) or _KNOWN_PREFIXES.get(uri) or f"ns{len(prefixes)}"
                prefixes[uri] = prefix
            attrs.append((f"{prefix}:{qname.localname}", value))
        rows.append((item, attrs))
    return {prefix: uri for uri, prefix in prefixes.items()}, rows


def serialize_package(package: PackageDocument) -> bytes:
    root = package.source
    if root is None:
        namespaces, manifest = _qualified_extras(package.manifest)
        return render_epub_template(
            "content.opf.j2",
            package=package,
            namespaces=namespaces,
            manifest=manifest,
        ).encode("utf-8")
    if package.version:
        root.set("version", package.version)
    _set_optional(root, "unique-identifier", package.unique_identifier)
    _set_optional(root, f"{{{XML_NS}}}lang", package.lang)
    _set_optional(root, "prefix", package.prefix)
    _sync_metadata(root, package.metadata)
    _sync_manifest(root, package.manifest)
    _sync_spine(root, package.spine)
    return LXML_ET.tostring(root.getroottree(), encoding="utf-8", xml_declaration=True)


def write_package(package: PackageDocument, path: Path) -> None:
    Path(path).write_bytes(serialize_package(package))
