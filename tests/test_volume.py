import tempfile
import unittest
import zipfile
from pathlib import Path

from epub_fixtures import write_epub

from quire.archive import write_archive
from quire.errors import FormatError
from quire.models import DCMeta, ManifestItem, MetaNode, PackageDocument, PackageMetadata, Spine, SpineItemRef
from quire.package import opf_path_from_container, parse_package, serialize_package, validate_package
from quire.volume import href_path, open_volume


class PackageDocumentTests(unittest.TestCase):
    OPF = (
        "<?xml version=\"1.0\" encoding=\"utf-8\"?>"
        "<package xmlns=\"http://www.idpf.org/2007/opf\" unique-identifier=\"BookId\" version=\"3.0\">"
        "<metadata xmlns:dc=\"http://purl.org/dc/elements/1.1/\" xmlns:opf=\"http://www.idpf.org/2007/opf\">"
        "<dc:identifier id=\"BookId\">urn:isbn:123</dc:identifier>"
        "<dc:title>Novel</dc:title>"
        "<dc:creator opf:role=\"aut\" opf:file-as=\"Doe, Jane\">Jane Doe</dc:creator>"
        "<dc:publisher>Press</dc:publisher>"
        "<dc:language>en</dc:language>"
        "<meta property=\"dcterms:modified\">2020-01-01T00:00:00Z</meta>"
        "<meta name=\"cover\" content=\"cover\"/>"
        "</metadata>"
        "<manifest>"
        "<item id=\"nav\" href=\"nav.xhtml\" media-type=\"application/xhtml+xml\" properties=\"nav\"/>"
        "<item id=\"c1\" href=\"Text/c1.xhtml\" media-type=\"application/xhtml+xml\" media-overlay=\"mo\"/>"
        "<item id=\"cover\" href=\"cover.jpg\" media-type=\"image/jpeg\" properties=\"cover-image\"/>"
        "</manifest>"
        "<spine page-progression-direction=\"rtl\"><itemref idref=\"c1\" linear=\"no\"/></spine>"
        "<guide><reference type=\"toc\" href=\"nav.xhtml\"/></guide>"
        "</package>"
    ).encode("utf-8")

    def test_parse_reads_metadata_manifest_and_spine(self) -> None:
        package = parse_package(self.OPF)
        self.assertEqual(package.unique_identifier, "BookId")
        self.assertEqual(package.metadata.titles[0].value, "Novel")
        creator = package.metadata.creators[0]
        self.assertEqual((creator.value, creator.role, creator.file_as), ("Jane Doe", "aut", "Doe, Jane"))
        self.assertEqual(package.metadata.identifiers[0].element_id, "BookId")
        self.assertEqual(len(package.metadata.meta), 2)
        self.assertEqual(package.nav_item().href, "nav.xhtml")
        self.assertEqual(package.item_by_id("c1").extra, {"media-overlay": "mo"})
        self.assertEqual(package.spine.page_progression_direction, "rtl")
        self.assertFalse(package.spine.itemrefs[0].is_linear)

    def test_serialize_round_trip_keeps_unmanaged_content(self) -> None:
        package = parse_package(self.OPF)
        raw = serialize_package(package)
        again = parse_package(raw)
        self.assertEqual(again, package)
        text = raw.decode("utf-8")
        self.assertIn("<dc:publisher>Press</dc:publisher>", text)
        self.assertIn("<guide>", text)
        self.assertEqual(text.count("xmlns:dc="), 1)

    def test_serialize_places_patched_entries_where_the_originals_were(self) -> None:
        package = parse_package(self.OPF)
        package.metadata.titles = [DCMeta(value="Renamed")]
        package.metadata.descriptions = [DCMeta(value="About <things> & more")]
        text = serialize_package(package).decode("utf-8")
        self.assertIn("<dc:title>Renamed</dc:title>", text)
        self.assertIn("About &lt;things&gt; &amp; more", text)
        self.assertLess(text.index("<dc:title>"), text.index("<dc:publisher>"))
        self.assertNotIn("ns0:", text)
        again = parse_package(serialize_package(package))
        self.assertEqual(again.metadata.descriptions[0].value, "About <things> & more")

    def test_rendered_package_round_trips(self) -> None:
        package = PackageDocument(
            unique_identifier="uid",
            metadata=PackageMetadata(
                titles=[DCMeta(value="Fresh & New")],
                identifiers=[DCMeta(value="urn:uuid:1", element_id="uid")],
                creators=[DCMeta(value="A", role="aut")],
                meta=[MetaNode(property="dcterms:modified", value="2024-01-01T00:00:00Z")],
            ),
            manifest=[ManifestItem(item_id="c1", href="c1.xhtml", media_type="application/xhtml+xml")],
            spine=Spine(itemrefs=[SpineItemRef(idref="c1")], toc=None),
        )
        again = parse_package(serialize_package(package))
        self.assertEqual(again, package)

    def test_rebuilt_entries_keep_default_namespace_and_indentation(self) -> None:
        raw = (
            "<?xml version=\"1.0\" encoding=\"utf-8\"?>\n"
            "<package xmlns=\"http://www.idpf.org/2007/opf\" unique-identifier=\"BookId\" version=\"3.0\">\n"
            "  <metadata xmlns:dc=\"http://purl.org/dc/elements/1.1/\" xmlns:opf=\"http://www.idpf.org/2007/opf\">\n"
            "    <dc:identifier id=\"BookId\">urn:isbn:123</dc:identifier>\n"
            "    <dc:title>Novel</dc:title>\n"
            "    <meta property=\"dcterms:modified\">2020-01-01T00:00:00Z</meta>\n"
            "  </metadata>\n"
            "  <manifest>\n"
            "    <item id=\"c1\" href=\"c1.xhtml\" media-type=\"application/xhtml+xml\"/>\n"
            "  </manifest>\n"
            "  <spine>\n"
            "    <itemref idref=\"c1\"/>\n"
            "  </spine>\n"
            "</package>"
        ).encode("utf-8")
        package = parse_package(raw)
        package.metadata.meta.append(MetaNode(name="cover", content="c1"))
        package.manifest.append(ManifestItem(item_id="c2", href="c2.xhtml", media_type="application/xhtml+xml"))
        text = serialize_package(package).decode("utf-8")
        self.assertNotIn("<opf:meta", text)
        self.assertIn("\n    <meta property=\"dcterms:modified\">2020-01-01T00:00:00Z</meta>\n    <meta ", text)
        self.assertIn("content=\"c1\"/>\n  </metadata>", text)
        self.assertIn(
            "media-type=\"application/xhtml+xml\"/>\n    <item id=\"c2\" href=\"c2.xhtml\" "
            "media-type=\"application/xhtml+xml\"/>\n  </manifest>",
            text,
        )
        self.assertIn("<spine>\n    <itemref idref=\"c1\"/>\n  </spine>", text)

    def test_rendered_package_declares_namespaced_item_attributes(self) -> None:
        calibre = "http://calibre.kovidgoyal.net/2009/metadata"
        package = PackageDocument(
            metadata=PackageMetadata(titles=[DCMeta(value="T")]),
            manifest=[
                ManifestItem(
                    item_id="c1",
                    href="c1.xhtml",
                    media_type="application/xhtml+xml",
                    extra={f"{{{calibre}}}split": "yes", "{urn:x-other}flag": "1", "media-overlay": "mo"},
                )
            ],
            spine=Spine(itemrefs=[SpineItemRef(idref="c1")]),
        )
        raw = serialize_package(package)
        self.assertIn(b"xmlns:calibre=", raw)
        self.assertIn(b"calibre:split=\"yes\"", raw)
        self.assertEqual(parse_package(raw).manifest, package.manifest)

    def test_validate_rejects_duplicate_ids_and_dangling_refs(self) -> None:
        package = parse_package(self.OPF)
        package.manifest.append(ManifestItem(item_id="c1", href="dup.xhtml", media_type="application/xhtml+xml"))
        with self.assertRaises(FormatError):
            validate_package(package)
        package = parse_package(self.OPF)
        package.spine.itemrefs.append(SpineItemRef(idref="ghost"))
        with self.assertRaises(FormatError):
            validate_package(package)

    def test_malformed_documents_raise_format_error(self) -> None:
        with self.assertRaises(FormatError):
            parse_package(b"<package><metadata>")
        with self.assertRaises(FormatError):
            parse_package(b"<notapackage/>")
        with self.assertRaises(FormatError):
            opf_path_from_container(b"<container><rootfiles/></container>")


class VolumeTests(unittest.TestCase):
    def test_open_locates_package_and_nav(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            book = write_epub(Path(tmp) / "book.epub", title="Vol One")
            with open_volume(book, sequence=3) as volume:
                root = volume.root_dir
                self.assertEqual(volume.package_member, "OEBPS/content.opf")
                self.assertEqual(volume.nav_href, "nav.xhtml")
                self.assertTrue(volume.require_nav().is_file())
                self.assertEqual(volume.first_title(), "Vol One")
                self.assertEqual(volume.sequence, 3)
                self.assertTrue(root.is_dir())
            self.assertFalse(root.exists())

    def test_package_at_archive_root(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            book = write_epub(Path(tmp) / "book.epub", package_dir="")
            with open_volume(book) as volume:
                self.assertEqual(volume.package_member, "content.opf")
                self.assertTrue(volume.resolve("chap1.xhtml").is_file())

    def test_missing_nav_is_only_an_error_when_required(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            book = write_epub(Path(tmp) / "book.epub", with_nav=False)
            with open_volume(book) as volume:
                self.assertIsNone(volume.nav_path)
                with self.assertRaises(FormatError):
                    volume.require_nav()

    def test_missing_container_raises_and_cleans_up(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            book = Path(tmp) / "bare.epub"
            with zipfile.ZipFile(book, "w") as zf:
                zf.writestr("mimetype", b"application/epub+zip")
                zf.writestr("OEBPS/content.opf", "<package/>")
            with self.assertRaises(FormatError) as ctx:
                open_volume(book)
            self.assertIn("container.xml", str(ctx.exception))

    def test_resolve_decodes_percent_escapes(self) -> None:
        self.assertEqual(href_path("Text/a%20b.xhtml#frag"), "Text/a b.xhtml")
        with tempfile.TemporaryDirectory() as tmp:
            book = write_epub(Path(tmp) / "book.epub")
            with open_volume(book) as volume:
                expected = volume.root_dir / "OEBPS" / "Text" / "a b.xhtml"
                self.assertEqual(volume.resolve("Text/a%20b.xhtml#frag"), expected)
                self.assertEqual(volume.resolve("../../../x.css"), volume.root_dir / "x.css")

    def test_repacked_tree_reopens_to_an_equal_package(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            book = write_epub(Path(tmp) / "book.epub", description="About")
            copy = Path(tmp) / "copy.epub"
            with open_volume(book) as volume:
                write_archive(volume.root_dir, copy)
                before = volume.package
            with open_volume(copy) as reopened:
                self.assertEqual(reopened.package, before)

    def test_save_package_rewrites_opf(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            book = write_epub(Path(tmp) / "book.epub")
            with open_volume(book) as volume:
                volume.package.metadata.titles[0].value = "Changed"
                volume.save_package()
                self.assertIn(b"<dc:title>Changed</dc:title>", volume.package_path.read_bytes())


if __name__ == "__main__":
    unittest.main()
