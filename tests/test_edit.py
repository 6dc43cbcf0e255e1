import datetime as dt
import json
import tempfile
import unittest
from pathlib import Path

from epub_fixtures import read_member, write_epub

from quire.edit import apply_metadata_patch, edit_epub, load_metadata_patch, metadata_snapshot, touch_modified
from quire.errors import FormatError, InputError
from quire.models import UNSET, DCMeta, EditOptions, MetadataPatch, MetaNode, PackageMetadata
from quire.volume import open_volume


def _modified(metadata: PackageMetadata) -> list[str]:
    return [meta.value for meta in metadata.meta if meta.property == "dcterms:modified"]


class MetadataPatchTests(unittest.TestCase):
    def test_empty_patch_changes_nothing(self) -> None:
        metadata = PackageMetadata(titles=[DCMeta(value="T")])
        self.assertTrue(MetadataPatch().is_empty())
        self.assertFalse(apply_metadata_patch(metadata, MetadataPatch()))
        self.assertEqual(metadata.titles[0].value, "T")

    def test_present_fields_replace_whole_lists(self) -> None:
        metadata = PackageMetadata(
            titles=[DCMeta(value="Main"), DCMeta(value="Subtitle")],
            creators=[DCMeta(value="A", role="aut"), DCMeta(value="B")],
            identifiers=[DCMeta(value="old-id", element_id="BookId"), DCMeta(value="isbn")],
        )
        patch = MetadataPatch(title="New", identifier="new-id", creators=[])
        self.assertTrue(apply_metadata_patch(metadata, patch))
        self.assertEqual([t.value for t in metadata.titles], ["New"])
        self.assertEqual(metadata.creators, [])
        self.assertEqual(metadata.identifiers[0], DCMeta(value="new-id", element_id="BookId"))
        self.assertEqual(metadata.identifiers[1].value, "isbn")

    def test_identifier_is_created_when_missing(self) -> None:
        metadata = PackageMetadata()
        apply_metadata_patch(metadata, MetadataPatch(identifier="urn:x"))
        self.assertEqual(metadata.identifiers, [DCMeta(value="urn:x")])

    def test_empty_string_is_a_value(self) -> None:
        metadata = PackageMetadata(descriptions=[DCMeta(value="long text")])
        self.assertTrue(apply_metadata_patch(metadata, MetadataPatch(description="")))
        self.assertEqual(metadata.descriptions, [DCMeta(value="")])

    def test_touch_modified_updates_or_appends(self) -> None:
        now = dt.datetime(2024, 5, 6, 7, 8, 9, 123456, tzinfo=dt.timezone.utc)
        metadata = PackageMetadata(meta=[MetaNode(property="dcterms:modified", value="2001-01-01T00:00:00Z")])
        self.assertEqual(touch_modified(metadata, now), "2024-05-06T07:08:09Z")
        self.assertEqual(_modified(metadata), ["2024-05-06T07:08:09Z"])
        metadata = PackageMetadata()
        touch_modified(metadata, now)
        self.assertEqual(_modified(metadata), ["2024-05-06T07:08:09Z"])

    def test_snapshot_skips_blank_creators(self) -> None:
        metadata = PackageMetadata(
            titles=[DCMeta(value="T")],
            creators=[DCMeta(value="A"), DCMeta(value="  ")],
        )
        snapshot = metadata_snapshot(metadata)
        self.assertEqual(snapshot.title, "T")
        self.assertEqual(snapshot.creators, ["A"])

    def test_load_patch_distinguishes_null_from_empty(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "patch.json"
            path.write_text(json.dumps({"title": None, "description": "", "creators": ["X"]}), encoding="utf-8")
            patch = load_metadata_patch(path)
            self.assertIs(patch.title, UNSET)
            self.assertEqual(patch.description, "")
            self.assertEqual(patch.creators, ["X"])

    def test_load_patch_errors_are_input_errors(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "patch.json"
            path.write_text("{not json", encoding="utf-8")
            with self.assertRaises(InputError):
                load_metadata_patch(path)
            path.write_text(json.dumps({"creators": "one"}), encoding="utf-8")
            with self.assertRaises(InputError):
                load_metadata_patch(path)
            path.write_text("[]", encoding="utf-8")
            with self.assertRaises(InputError):
                load_metadata_patch(path)
            with self.assertRaises(InputError):
                load_metadata_patch(Path(tmp) / "missing.json")


class EditEpubTests(unittest.TestCase):
    def test_description_only_leaves_other_fields(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            book = write_epub(
                Path(tmp) / "book.epub",
                title="Title",
                language="en",
                identifier="urn:isbn:42",
                creators=["Jane", "John"],
            )
            written = edit_epub(book, EditOptions(patch=MetadataPatch(description="Blurb")))
            self.assertTrue(written)
            with open_volume(book) as volume:
                metadata = volume.package.metadata
                self.assertEqual([t.value for t in metadata.titles], ["Title"])
                self.assertEqual([lang.value for lang in metadata.languages], ["en"])
                self.assertEqual(metadata.identifiers[0].value, "urn:isbn:42")
                self.assertEqual(metadata.identifiers[0].element_id, "BookId")
                self.assertEqual([c.value for c in metadata.creators], ["Jane", "John"])
                self.assertEqual([d.value for d in metadata.descriptions], ["Blurb"])
                modified = _modified(metadata)
                self.assertEqual(len(modified), 1)
                self.assertNotEqual(modified[0], "2020-01-01T00:00:00Z")

    def test_no_touch_keeps_timestamp_and_out_path_keeps_input(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            book = write_epub(Path(tmp) / "book.epub")
            before = book.read_bytes()
            out = Path(tmp) / "edited.epub"
            options = EditOptions(out_path=out, patch=MetadataPatch(title="Other"), touch_modified=False)
            self.assertTrue(edit_epub(book, options))
            self.assertEqual(book.read_bytes(), before)
            with open_volume(out) as volume:
                self.assertEqual(volume.first_title(), "Other")
                self.assertEqual(_modified(volume.package.metadata), ["2020-01-01T00:00:00Z"])

    def test_dumps_are_read_only(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            book = write_epub(Path(tmp) / "book.epub", title="Dumped", creators=["Ann"])
            before = book.read_bytes()
            meta_path = Path(tmp) / "dump" / "meta.json"
            nav_path = Path(tmp) / "dump" / "nav.xhtml"
            written = edit_epub(book, EditOptions(dump_meta_path=meta_path, dump_nav_path=nav_path))
            self.assertFalse(written)
            self.assertEqual(book.read_bytes(), before)
            data = json.loads(meta_path.read_text(encoding="utf-8"))
            self.assertEqual(data["title"], "Dumped")
            self.assertEqual(data["creators"], ["Ann"])
            self.assertNotIn("description", data)
            self.assertEqual(nav_path.read_bytes(), read_member(book, "OEBPS/nav.xhtml"))

    def test_nav_replacement(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            book = write_epub(Path(tmp) / "book.epub")
            replacement = Path(tmp) / "nav.xhtml"
            replacement.write_bytes(b"<html xmlns=\"http://www.w3.org/1999/xhtml\"><body>new nav</body></html>")
            self.assertTrue(edit_epub(book, EditOptions(nav_replace_path=replacement)))
            self.assertEqual(read_member(book, "OEBPS/nav.xhtml"), replacement.read_bytes())

    def test_nav_replacement_errors(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(InputError):
                edit_epub(Path(tmp) / "missing.epub", EditOptions(nav_replace_path=Path(tmp) / "none.xhtml"))
            book = write_epub(Path(tmp) / "book.epub", with_nav=False)
            before = book.read_bytes()
            replacement = Path(tmp) / "nav.xhtml"
            replacement.write_text("<html/>", encoding="utf-8")
            with self.assertRaises(FormatError):
                edit_epub(book, EditOptions(nav_replace_path=replacement))
            self.assertEqual(book.read_bytes(), before)


if __name__ == "__main__":
    unittest.main()
