from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from .edit import edit_epub, load_metadata_patch
from .env import log_level
from .errors import InputError, QuireError
from .inputs import expand_directories, expand_list_files
from .merge import merge_epubs
from .models import EditOptions, MergeOptions, MetadataPatch, RewriteRule, RewriteScope
from .rewrite import rewrite_epub
from .rules import load_rule_set

DEFAULT_MERGE_OUTPUT = "merged.epub"
LOG_FORMAT = "%(levelname)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-v", "--verbose", action="store_true", help="Log progress at INFO level")

    parser = argparse.ArgumentParser(prog="quire", description="Merge, rewrite and edit EPUB books.")
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.required = True

    merge = commands.add_parser("merge", parents=[common], help="Merge volumes into one omnibus EPUB")
    merge.add_argument("files", nargs="*", type=Path, help="Volume EPUB files, in reading order")
    merge.add_argument("-o", "--out", type=Path, default=Path(DEFAULT_MERGE_OUTPUT), help="Output EPUB path")
    merge.add_argument("-t", "--title", default="", help="Override the merged title")
    merge.add_argument("--lang", default="", help="Override the merged language")
    merge.add_argument("-c", "--creator", action="append", default=[], help="Author credit (repeatable)")
    merge.add_argument("--list", action="append", default=[], type=Path, help="Text file listing volumes (repeatable)")
    merge.add_argument("--dir", action="append", default=[], type=Path, help="Directory to scan for EPUBs (repeatable)")
    merge.set_defaults(handler=_run_merge)

    rewrite = commands.add_parser("rewrite", parents=[common], help="Find and replace text inside a book")
    rewrite.add_argument("book", type=Path, help="EPUB to rewrite")
    source = rewrite.add_mutually_exclusive_group()
    source.add_argument("--rules", type=Path, help="JSON rule set file")
    source.add_argument("--find", help="Text or pattern to find")
    rewrite.add_argument("--replace", default="", help="Replacement text")
    rewrite.add_argument("--regex", action="store_true", help="Treat --find as a regular expression")
    rewrite.add_argument("--ignore-case", action="store_true", help="Match case-insensitively")
    rewrite.add_argument("--selector", action="append", default=[], help="Limit to tag, .class or tag.class (repeatable)")
    rewrite.add_argument(
        "--scope",
        choices=[scope.value for scope in RewriteScope],
        default=RewriteScope.BODY.value,
        help="Rewrite body text, metadata values or both",
    )
    rewrite.add_argument("--dry-run", action="store_true", help="Count matches without writing")
    rewrite.add_argument("-o", "--out", type=Path, help="Output EPUB path (default: rewrite in place)")
    rewrite.set_defaults(handler=_run_rewrite)

    edit = commands.add_parser("edit-meta", parents=[common], help="Edit metadata or swap the navigation document")
    edit.add_argument("book", type=Path, help="EPUB to edit")
    edit.add_argument("--title", help="Set the title")
    edit.add_argument("--lang", help="Set the language")
    edit.add_argument("--identifier", help="Set the primary identifier")
    edit.add_argument("--description", help="Set the description")
    edit.add_argument("--creator", action="append", help="Creator credit, replaces the list (repeatable)")
    edit.add_argument("--meta-json", type=Path, help="Apply a JSON metadata patch")
    edit.add_argument("--dump-meta", type=Path, help="Write a JSON metadata snapshot")
    edit.add_argument("--dump-nav", type=Path, help="Copy out the navigation document")
    edit.add_argument("--nav", type=Path, help="Replace the navigation document with this file")
    edit.add_argument("-o", "--out", type=Path, help="Output EPUB path (default: edit in place)")
    edit.add_argument("--no-touch-modified", action="store_true", help="Leave dcterms:modified alone")
    edit.set_defaults(handler=_run_edit)

    return parser


def _run_merge(args: argparse.Namespace) -> int:
    files = list(args.files)
    files.extend(expand_list_files(args.list))
    files.extend(expand_directories(args.dir))
    if len(files) < 2:
        raise InputError("need at least two EPUB files to merge")
    options = MergeOptions(out_path=args.out, title=args.title, language=args.lang, creators=list(args.creator))
    out_path = merge_epubs(files, options)
    print(f"Merged {len(files)} volumes into {out_path}")
    return 0


def _run_rewrite(args: argparse.Namespace) -> int:
    if args.rules is not None:
        rules = load_rule_set(args.rules)
    elif args.find:
        rules = [
            RewriteRule(
                find=args.find,
                replace=args.replace,
                regex=args.regex,
                ignore_case=args.ignore_case,
                selectors=list(args.selector),
            )
        ]
    else:
        raise InputError("rewrite needs --rules or --find")

    stats = rewrite_epub(args.book, rules, scope=args.scope, dry_run=args.dry_run, out_path=args.out)
    verb = "would change" if args.dry_run else "changed"
    print(f"{stats.match_count} matches, {verb} {stats.files_changed} files")
    return 0


def _run_edit(args: argparse.Namespace) -> int:
    patch = load_metadata_patch(args.meta_json) if args.meta_json else MetadataPatch()
    # Command-line values win over the JSON patch.
    for key, value in (
        ("title", args.title),
        ("language", args.lang),
        ("identifier", args.identifier),
        ("description", args.description),
    ):
        if value is not None:
            setattr(patch, key, value)
    if args.creator:
        patch.creators = list(args.creator)

    options = EditOptions(
        out_path=args.out,
        patch=patch,
        nav_replace_path=args.nav,
        dump_meta_path=args.dump_meta,
        dump_nav_path=args.dump_nav,
        touch_modified=not args.no_touch_modified,
    )
    written = edit_epub(args.book, options)
    if written:
        print(f"EPUB saved to: {args.out or args.book}")
    elif patch.is_empty() and not (args.nav or args.dump_meta or args.dump_nav):
        print("Nothing to do", file=sys.stderr)
    return 0


def configure_logging(verbose: bool = False) -> None:
    level = logging.getLevelName(log_level())
    if not isinstance(level, int):
        level = logging.WARNING
    if verbose:
        level = min(level, logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    configure_logging(args.verbose)
    try:
        return args.handler(args)
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return 130
    except (QuireError, OSError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
