from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, Sequence, Union

from lxml import etree as LXML_ET

from .archive import write_archive
from .errors import FormatError, InputError, RuleCompileError
from .models import PackageMetadata, RewriteRule, RewriteScope, RewriteStats
from .volume import open_volume

XHTML_MEDIA_TYPE = "application/xhtml+xml"

START = "start"
TEXT = "text"
END = "end"

logger = logging.getLogger("quire.rewrite")


@dataclass(frozen=True)
class Selector:
    tag: str = ""
    class_name: str = ""

    def matches(self, tag: str, classes: set[str]) -> bool:
        if self.tag and self.tag != tag:
            return False
        if self.class_name and self.class_name not in classes:
            return False
        return True


@dataclass
class CompiledRule:
    rule: RewriteRule
    pattern: Optional[re.Pattern] = None
    selectors: tuple[Selector, ...] = ()

    def matches_element(self, tag: str, classes: set[str]) -> bool:
        if not self.selectors:
            return True
        return any(selector.matches(tag, classes) for selector in self.selectors)

    def apply(self, text: str) -> tuple[str, int]:
        if not text:
            return text, 0
        if self.pattern is not None:
            return self.pattern.subn(self.rule.replace, text)
        if not self.rule.ignore_case:
            count = text.count(self.rule.find)
            if not count:
                return text, 0
            return text.replace(self.rule.find, self.rule.replace), count
        return _replace_ignoring_case(text, self.rule.find, self.rule.replace)


@dataclass
class DocumentRewrite:
    match_count: int
    changed: bool
    content: Optional[bytes] = None


class _RuleState:
    """Selector tracking for one rule: a stack of per-element matches and how many are open."""

    __slots__ = ("always", "stack", "active")

    def __init__(self, always: bool) -> None:
        self.always = always
        self.stack: list[bool] = []
        self.active = 0

    def enter(self, matched: bool) -> None:
        if self.always:
            return
        self.stack.append(matched)
        if matched:
            self.active += 1

    def leave(self) -> None:
        if self.always or not self.stack:
            return
        if self.stack.pop() and self.active > 0:
            self.active -= 1

    def is_active(self) -> bool:
        return self.always or self.active > 0


def _fold(text: str) -> str:
    """Lower-case ``text`` keeping one character per input character."""
    lowered = text.lower()
    if len(lowered) == len(text):
        return lowered
    chars = []
    for ch in text:
        low = ch.lower()
        chars.append(low if len(low) == 1 else ch)
    return "".join(chars)


def _replace_ignoring_case(text: str, find: str, replace: str) -> tuple[str, int]:
    haystack = _fold(text)
    needle = _fold(find)
    pieces: list[str] = []
    start = 0
    count = 0
    while True:
        found = haystack.find(needle, start)
        if found < 0:
            break
        pieces.append(text[start:found])
        pieces.append(replace)
        start = found + len(find)
        count += 1
    if not count:
        return text, 0
    pieces.append(text[start:])
    return "".join(pieces), count


def parse_selectors(raw: Sequence[str], index: int = 0) -> tuple[Selector, ...]:
    selectors: list[Selector] = []
    for entry in raw:
        for part in (entry or "").split(","):
            part = part.strip()
            if not part:
                continue
            tag, _, class_name = part.partition(".")
            selector = Selector(tag=tag.strip().lower(), class_name=class_name.strip())
            if not selector.tag and not selector.class_name:
                raise InputError(f"rule {index + 1}: selector {part!r} names neither a tag nor a class")
            selectors.append(selector)
    return tuple(selectors)


def compile_rules(rules: Sequence[RewriteRule]) -> list[CompiledRule]:
    if not rules:
        raise InputError("no rewrite rules provided")
    compiled: list[CompiledRule] = []
    for index, rule in enumerate(rules):
        if not rule.find:
            raise InputError(f"rule {index + 1}: find pattern is empty")
        pattern = None
        if rule.regex:
            try:
                pattern = re.compile(rule.find, re.IGNORECASE if rule.ignore_case else 0)
                # Expanding against an empty string still parses the replacement template.
                pattern.sub(rule.replace, "")
            except re.error as exc:
                raise RuleCompileError(index, rule.find, exc) from exc
        compiled.append(CompiledRule(rule=rule, pattern=pattern, selectors=parse_selectors(rule.selectors, index)))
    return compiled


def metadata_rules(rules: Sequence[CompiledRule]) -> list[CompiledRule]:
    return [rule for rule in rules if not rule.selectors]


def rewrite_metadata(
    metadata: PackageMetadata, rules: Sequence[CompiledRule], *, mutate: bool = True
) -> tuple[int, bool]:
    matches = 0
    changed = False
    for entries in metadata.dc_lists():
        for entry in entries:
            text = entry.value
            for rule in rules:
                text, count = rule.apply(text)
                matches += count
            if text != entry.value:
                changed = True
                if mutate:
                    entry.value = text
    return matches, changed


def _iter_tokens(element: LXML_ET._Element) -> Iterator[tuple[str, LXML_ET._Element, str]]:
    """Yield start, text and end tokens in document order.

    Text tokens name the node and slot ("text" or "tail") holding the characters.
    Comments, processing instructions and entities contribute only their tail.
    """
    yield START, element, ""
    if element.text:
        yield TEXT, element, "text"
    for child in element:
        if isinstance(child.tag, str):
            yield from _iter_tokens(child)
        if child.tail:
            yield TEXT, child, "tail"
    yield END, element, ""


def _document_parser() -> LXML_ET.XMLParser:
    return LXML_ET.XMLParser(
        resolve_entities=False,
        no_network=True,
        recover=True,
        strip_cdata=False,
        remove_blank_text=False,
    )


def _serialize_document(root: LXML_ET._Element, raw: bytes) -> bytes:
    tree = root.getroottree()
    has_declaration = raw.lstrip(b"\xef\xbb\xbf \t\r\n").startswith(b"<?xml")
    encoding = tree.docinfo.encoding or "utf-8"
    return LXML_ET.tostring(tree, encoding=encoding, xml_declaration=has_declaration)


def rewrite_document(raw: bytes, rules: Sequence[CompiledRule]) -> DocumentRewrite:
    try:
        root = LXML_ET.fromstring(raw, parser=_document_parser())
    except LXML_ET.XMLSyntaxError as exc:
        raise FormatError(f"cannot parse document: {exc}") from exc
    if root is None:
        raise FormatError("document has no root element")

    states = [_RuleState(always=not rule.selectors) for rule in rules]
    matches = 0
    changed = False
    for kind, node, slot in _iter_tokens(root):
        if kind == START:
            tag = LXML_ET.QName(node).localname.lower()
            classes = set((node.get("class") or "").split())
            for rule, state in zip(rules, states):
                state.enter(rule.matches_element(tag, classes))
        elif kind == END:
            for state in states:
                state.leave()
        else:
            original = getattr(node, slot)
            text = original
            for rule, state in zip(rules, states):
                if not state.is_active():
                    continue
                text, count = rule.apply(text)
                matches += count
            if text != original:
                setattr(node, slot, text)
                changed = True

    if not changed:
        return DocumentRewrite(match_count=matches, changed=False)
    return DocumentRewrite(match_count=matches, changed=True, content=_serialize_document(root, raw))


def rewrite_epub(
    input_path: Path,
    rules: Sequence[RewriteRule],
    *,
    scope: Union[RewriteScope, str] = RewriteScope.BODY,
    dry_run: bool = False,
    out_path: Optional[Path] = None,
) -> RewriteStats:
    """Apply ``rules`` to the book's XHTML text and/or metadata values.

    Nothing is written for a dry run or when no file changes; otherwise the
    rewritten book replaces ``out_path`` (default: the input) atomically.
    """
    if not input_path:
        raise InputError("input EPUB path is required")
    source = Path(input_path)
    compiled = compile_rules(rules)
    scope = RewriteScope(scope)
    stats = RewriteStats()

    with open_volume(source) as volume:
        metadata_changed = False
        if scope.includes_metadata:
            count, metadata_changed = rewrite_metadata(
                volume.package.metadata, metadata_rules(compiled), mutate=not dry_run
            )
            stats.match_count += count
            if metadata_changed:
                stats.files_changed += 1

        pending: list[tuple[Path, bytes]] = []
        if scope.includes_body:
            for item in volume.package.manifest:
                if item.media_type.strip().lower() != XHTML_MEDIA_TYPE:
                    continue
                path = volume.resolve(item.href)
                try:
                    result = rewrite_document(path.read_bytes(), compiled)
                except FormatError as exc:
                    raise FormatError(f"{source}: {item.href}: {exc}") from exc
                stats.match_count += result.match_count
                if result.changed and result.content is not None:
                    stats.files_changed += 1
                    pending.append((path, result.content))
                    logger.debug("%s: %d matches", item.href, result.match_count)

        logger.info("%s: %d matches, %d files changed", source, stats.match_count, stats.files_changed)
        if dry_run or not stats.files_changed:
            return stats

        for path, content in pending:
            path.write_bytes(content)
        if metadata_changed:
            volume.save_package()
        write_archive(volume.root_dir, Path(out_path) if out_path else source)
    return stats
