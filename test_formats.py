from __future__ import annotations

import json
import os
import sqlite3
import stat
import tempfile
import unittest
from pathlib import Path

from strategos import dispatch
from strategos.engines.cartridge import Cartridge
from strategos.engines.datacard import Card
from strategos.engines.engram import EngramReader, EngramWriter
from strategos.errors import (
    EncryptedArchiveRequiresPassword,
    NotFoundError,
    OpenError,
    UnknownFormatError,
    UnsupportedOperation,
)
from strategos.formats import (
    CartridgeArchive,
    DataCardArchive,
    DataSpoolArchive,
    EngramArchive,
    MutableArchive,
    OutputFormat,
    QueryableArchive,
)
from strategos.formats.base import search_text
from strategos.formats.dataspool import build_spool

TEST_KDF_KIB = 8192

THREE_LINES = b"first line\nsecond PATTERN line\nthird line\n"


def _sqlite_bytes(tmp_path: Path) -> bytes:
    db_path = tmp_path / "scratch.db"
    conn = sqlite3.connect(str(db_path))
    conn.execute("CREATE TABLE people (id INTEGER, name TEXT)")
    conn.executemany("INSERT INTO people VALUES (?, ?)", [(1, "alice"), (2, None)])
    conn.commit()
    conn.close()
    data = db_path.read_bytes()
    db_path.unlink()
    return data


def _make_engram(tmp_path: Path, *, password=None) -> Path:
    path = tmp_path / "sample.eng"
    with EngramWriter(str(path), password=password, kdf_memory_kib=TEST_KDF_KIB) as w:
        w.add_file("docs/notes.txt", THREE_LINES)
        w.add_file("bin/blob.bin", b"\xff\xfe\x00\x80" * 64, compression="none")
        w.add_file("data/app.db", _sqlite_bytes(tmp_path), compression="deflate")
        w.finalize()
    return path


def _make_cartridge(tmp_path: Path) -> Path:
    path = tmp_path / "sample.cart"
    with Cartridge.create(str(path), "sample", "Sample") as cart:
        cart.write("docs/notes.txt", THREE_LINES)
        cart.write("store.sqlite", _sqlite_bytes(tmp_path))
        cart.flush()
    return path


def _make_spool(tmp_path: Path) -> Path:
    path = tmp_path / "sample.spool"
    build_spool(str(path), [b"card zero\n", THREE_LINES, b"\x00\xff binary"])
    return path


def _make_card(tmp_path: Path, *, with_checksum: bool = True) -> Path:
    path = tmp_path / "sample.card"
    Card.from_document(THREE_LINES, "sample", with_checksum=with_checksum).save(str(path))
    return path


def _files_under(root: Path):
    return sorted(p.relative_to(root).as_posix() for p in root.rglob("*") if p.is_file())


class SearchTextTests(unittest.TestCase):
    def test_only_matching_line_is_reported(self):
        results = search_text("notes.txt", THREE_LINES, "PATTERN")
        self.assertEqual(len(results), 1)
        self.assertEqual(results[0].line_number, 2)
        self.assertEqual(results[0].line_content, "second PATTERN line")
        self.assertEqual(results[0].match_offset, 7)

    def test_case_insensitive_and_byte_offsets(self):
        data = "café Pattern\r\nnone\n".encode("utf-8")
        self.assertEqual(search_text("x", data, "pattern"), [])
        results = search_text("x", data, "pattern", case_insensitive=True)
        self.assertEqual(len(results), 1)
        # 'é' is two bytes in UTF-8; the trailing CR is stripped
        self.assertEqual(results[0].match_offset, 6)
        self.assertEqual(results[0].line_content, "café Pattern")

    def test_pattern_is_literal(self):
        self.assertEqual(len(search_text("x", b"a.c\nabc\n", "a.c")), 1)

    def test_binary_is_skipped(self):
        self.assertEqual(search_text("x", b"\xff\xfe PATTERN", "PATTERN"), [])


class EngramArchiveTests(unittest.TestCase):
    def run_with_tmpdir(self, func):
        with tempfile.TemporaryDirectory() as tmp:
            func(Path(tmp))

    def test_info_list_read(self):
        def scenario(tmp_path: Path):
            path = _make_engram(tmp_path)
            with EngramArchive.open(str(path)) as arc:
                info = arc.info()
                self.assertEqual(info.format, "Engram")
                self.assertEqual(info.version, "1.0")
                self.assertEqual(info.entry_count, 3)
                self.assertFalse(info.metadata["encrypted"])
                entries = arc.list_files()
                self.assertEqual([e.path for e in entries], ["docs/notes.txt", "bin/blob.bin", "data/app.db"])
                self.assertEqual(entries[0].compression_method, "zstd")
                self.assertEqual(entries[1].compression_method, "none")
                self.assertEqual(arc.list_files(), entries)
                self.assertEqual(arc.read_file("docs/notes.txt"), THREE_LINES)
                with self.assertRaises(NotFoundError):
                    arc.read_file("missing.txt")
                self.assertTrue(arc.verify())
                self.assertEqual(arc.list_databases(), ["data/app.db"])

        self.run_with_tmpdir(scenario)

    def test_search_skips_binary(self):
        def scenario(tmp_path: Path):
            path = _make_engram(tmp_path)
            with EngramArchive.open(str(path)) as arc:
                results = arc.search("PATTERN")
                self.assertEqual([(r.file_path, r.line_number) for r in results], [("docs/notes.txt", 2)])
                self.assertEqual(len(arc.search("pattern", case_insensitive=True)), 1)

        self.run_with_tmpdir(scenario)

    def test_extract_is_subset_of_listing(self):
        def scenario(tmp_path: Path):
            path = _make_engram(tmp_path)
            out = tmp_path / "out"
            with EngramArchive.open(str(path)) as arc:
                written = arc.extract(str(out))
                listed = {e.path for e in arc.list_files()}
                self.assertTrue(set(written) <= listed)
                self.assertEqual(set(_files_under(out)), set(written))
                self.assertEqual((out / "docs" / "notes.txt").read_bytes(), THREE_LINES)
                subset = arc.extract(str(tmp_path / "sub"), ["docs/notes.txt"])
                self.assertEqual(subset, ["docs/notes.txt"])
                self.assertEqual(_files_under(tmp_path / "sub"), ["docs/notes.txt"])
                with self.assertRaises(NotFoundError):
                    arc.extract(str(tmp_path / "none"), ["docs/missing.txt"])
                self.assertFalse((tmp_path / "none").exists())

        self.run_with_tmpdir(scenario)

    def test_unknown_codec_fails_verify(self):
        def scenario(tmp_path: Path):
            path = _make_engram(tmp_path)
            with EngramReader(str(path)) as reader:
                cd_offset = reader.header.central_directory_offset
            raw = bytearray(path.read_bytes())
            # first entry: u16 path length, then the path, then the codec byte
            raw[cd_offset + 2 + len("docs/notes.txt")] = 0x7F
            path.write_bytes(bytes(raw))
            with EngramArchive.open(str(path)) as arc:
                self.assertEqual(arc.list_files()[0].compression_method, "unknown(127)")
                self.assertFalse(arc.verify())

        self.run_with_tmpdir(scenario)

    def test_query_json(self):
        def scenario(tmp_path: Path):
            path = _make_engram(tmp_path)
            with EngramArchive.open(str(path)) as arc:
                out = arc.query("data/app.db", "SELECT id, name FROM people ORDER BY id", OutputFormat.JSON)
                self.assertEqual(json.loads(out), [{"id": "1", "name": "alice"}, {"id": "2", "name": "NULL"}])
                with self.assertRaises(NotFoundError):
                    arc.query("nope.db", "SELECT 1")

        self.run_with_tmpdir(scenario)

    def test_encrypted_needs_password_to_read(self):
        def scenario(tmp_path: Path):
            path = _make_engram(tmp_path, password="pw")
            with EngramArchive.open(str(path)) as arc:
                info = arc.info()
                self.assertTrue(info.metadata["encrypted"])
                self.assertEqual(len(arc.list_files()), 3)
                with self.assertRaises(EncryptedArchiveRequiresPassword):
                    arc.read_file("docs/notes.txt")
            with EngramArchive.open(str(path), password="pw") as arc:
                self.assertEqual(arc.read_file("docs/notes.txt"), THREE_LINES)
                self.assertTrue(arc.verify())

        self.run_with_tmpdir(scenario)


class CartridgeArchiveTests(unittest.TestCase):
    def run_with_tmpdir(self, func):
        with tempfile.TemporaryDirectory() as tmp:
            func(Path(tmp))

    def test_write_read_delete(self):
        def scenario(tmp_path: Path):
            path = _make_cartridge(tmp_path)
            with CartridgeArchive.open(str(path), writable=True) as arc:
                self.assertIsInstance(arc, MutableArchive)
                self.assertIsInstance(arc, QueryableArchive)
                arc.write_file("new/file.bin", b"\x00\x01payload")
                self.assertEqual(arc.read_file("new/file.bin"), b"\x00\x01payload")
                arc.write_file("new/file.bin", b"replaced")
                self.assertEqual(arc.read_file("new/file.bin"), b"replaced")
                arc.delete_file("new/file.bin")
                with self.assertRaises(NotFoundError):
                    arc.read_file("new/file.bin")
                with self.assertRaises(NotFoundError):
                    arc.delete_file("new/file.bin")
                arc.write_file("kept.txt", b"kept")
                arc.flush()
            with CartridgeArchive.open(str(path)) as arc:
                self.assertEqual(arc.read_file("kept.txt"), b"kept")
                self.assertEqual([e.path for e in arc.list_files()], ["docs/notes.txt", "kept.txt", "store.sqlite"])
                self.assertTrue(arc.verify())

        self.run_with_tmpdir(scenario)

    def test_member_paths_are_normalized(self):
        def scenario(tmp_path: Path):
            path = _make_cartridge(tmp_path)
            with CartridgeArchive.open(str(path), writable=True) as arc:
                arc.write_file("/docs/a.txt", b"data")
                arc.flush()
                self.assertEqual(arc.read_file("/docs/a.txt"), b"data")
                self.assertEqual(arc.read_file("./docs//a.txt"), b"data")
                self.assertIn("docs/a.txt", arc.member_paths())
                with self.assertRaises(NotFoundError):
                    arc.read_file("../docs/a.txt")
                arc.delete_file("/docs/a.txt")
                arc.flush()
                self.assertNotIn("docs/a.txt", arc.member_paths())

        self.run_with_tmpdir(scenario)

    def test_read_only_handle(self):
        def scenario(tmp_path: Path):
            path = _make_cartridge(tmp_path)
            os.chmod(path, 0o444)
            try:
                info = dispatch.info(str(path))
                self.assertEqual(info.entry_count, 2)
                self.assertTrue(dispatch.verify(str(path)))
                self.assertEqual(len(dispatch.search(str(path), "PATTERN")), 1)
                with CartridgeArchive.open(str(path)) as arc:
                    with self.assertRaises(UnsupportedOperation):
                        arc.write_file("x.txt", b"x")
                    with self.assertRaises(UnsupportedOperation):
                        arc.delete_file("docs/notes.txt")
            finally:
                os.chmod(path, 0o644)

        self.run_with_tmpdir(scenario)

    def test_info_and_verify_fresh(self):
        def scenario(tmp_path: Path):
            path = tmp_path / "fresh.cart"
            Cartridge.create(str(path), "fresh", "Fresh").close()
            with CartridgeArchive.open(str(path)) as arc:
                self.assertTrue(arc.verify())
                info = arc.info()
                self.assertEqual(info.entry_count, 0)
                self.assertEqual(info.compression_ratio, 1.0)
                self.assertEqual(info.metadata["slug"], "fresh")
                self.assertEqual(arc.search("anything"), [])

        self.run_with_tmpdir(scenario)

    def test_query_csv_and_extract(self):
        def scenario(tmp_path: Path):
            path = _make_cartridge(tmp_path)
            with CartridgeArchive.open(str(path)) as arc:
                self.assertEqual(arc.list_databases(), ["store.sqlite"])
                out = arc.query("store.sqlite", "SELECT name FROM people ORDER BY id", OutputFormat.CSV)
                self.assertEqual(out, "name\nalice\nNULL")
                written = arc.extract(str(tmp_path / "out"))
                self.assertTrue(set(written) <= {e.path for e in arc.list_files()})

        self.run_with_tmpdir(scenario)


class DataSpoolArchiveTests(unittest.TestCase):
    def run_with_tmpdir(self, func):
        with tempfile.TemporaryDirectory() as tmp:
            func(Path(tmp))

    def test_listing_and_addressing(self):
        def scenario(tmp_path: Path):
            path = _make_spool(tmp_path)
            with DataSpoolArchive.open(str(path)) as arc:
                entries = arc.list_files()
                self.assertEqual([e.path for e in entries], ["card_00000", "card_00001", "card_00002"])
                self.assertEqual(entries[0].compression_method, "stored")
                self.assertEqual(arc.read_file("card_00001"), THREE_LINES)
                self.assertEqual(arc.read_file("1"), THREE_LINES)
                for bad in ("card_00003", "card_x", "notes.txt"):
                    with self.assertRaises(NotFoundError):
                        arc.read_file(bad)
                with self.assertRaises(NotFoundError):
                    arc.extract(str(tmp_path / "by-ordinal"), ["1"])
                written = arc.extract(str(tmp_path / "by-name"), ["card_00001"])
                self.assertEqual(_files_under(tmp_path / "by-name"), written)
                results = arc.search("PATTERN")
                self.assertEqual([(r.file_path, r.line_number) for r in results], [("card_00001", 2)])
                self.assertTrue(arc.verify())
                self.assertEqual(arc.info().entry_count, 3)

        self.run_with_tmpdir(scenario)

    def test_write_replaces_or_appends(self):
        def scenario(tmp_path: Path):
            path = _make_spool(tmp_path)
            with DataSpoolArchive.open(str(path)) as arc:
                arc.write_file("card_00000", b"replaced")
                self.assertEqual(arc.read_file("card_00000"), b"replaced")
                arc.write_file("card_00003", b"appended")
                self.assertEqual(arc.read_file("card_00003"), b"appended")
                for bad in ("card_00009", "notes.txt"):
                    with self.assertRaises(ValueError):
                        arc.write_file(bad, b"lost")
                self.assertEqual(len(arc.list_files()), 4)
                with self.assertRaises(UnsupportedOperation):
                    arc.delete_file("card_00000")
                arc.flush()
            with DataSpoolArchive.open(str(path)) as arc:
                self.assertEqual(len(arc.list_files()), 4)
            leftovers = [p.name for p in tmp_path.iterdir() if p.name.endswith(".tmp")]
            self.assertEqual(leftovers, [])

        self.run_with_tmpdir(scenario)


class DataCardArchiveTests(unittest.TestCase):
    def run_with_tmpdir(self, func):
        with tempfile.TemporaryDirectory() as tmp:
            func(Path(tmp))

    def test_single_document_member(self):
        def scenario(tmp_path: Path):
            path = _make_card(tmp_path)
            with DataCardArchive.open(str(path)) as arc:
                entries = arc.list_files()
                self.assertEqual([e.path for e in entries], ["document.cml"])
                self.assertEqual(entries[0].size, len(THREE_LINES))
                self.assertEqual(arc.read_file("document.cml"), THREE_LINES)
                self.assertNotEqual(arc.read_file("payload"), THREE_LINES)
                with self.assertRaises(NotFoundError):
                    arc.read_file("other")
                self.assertTrue(arc.verify())
                written = arc.extract(str(tmp_path / "out"))
                self.assertEqual(written, ["document.cml"])
                self.assertEqual((tmp_path / "out" / "document.cml").read_bytes(), THREE_LINES)
                with self.assertRaises(NotFoundError):
                    arc.extract(str(tmp_path / "raw"), ["payload"])
                self.assertFalse((tmp_path / "raw").exists())
                self.assertEqual(len(arc.search("PATTERN")), 1)

        self.run_with_tmpdir(scenario)

    def test_checksum_mismatch_fails_verify(self):
        def scenario(tmp_path: Path):
            path = _make_card(tmp_path)
            raw = bytearray(path.read_bytes())
            raw[-1] ^= 0xFF
            path.write_bytes(bytes(raw))
            with DataCardArchive.open(str(path)) as arc:
                self.assertFalse(arc.verify())

        self.run_with_tmpdir(scenario)

    def test_no_checksum_still_verifies(self):
        def scenario(tmp_path: Path):
            path = _make_card(tmp_path, with_checksum=False)
            with DataCardArchive.open(str(path)) as arc:
                self.assertTrue(arc.verify())
                self.assertFalse(arc.info().metadata["checksum"])

        self.run_with_tmpdir(scenario)


class DispatchTests(unittest.TestCase):
    def run_with_tmpdir(self, func):
        with tempfile.TemporaryDirectory() as tmp:
            func(Path(tmp))

    def test_unknown_and_malformed(self):
        def scenario(tmp_path: Path):
            junk = tmp_path / "junk.bin"
            junk.write_bytes(os.urandom(64))
            with self.assertRaises(UnknownFormatError):
                dispatch.info(str(junk))
            fake = tmp_path / "fake.eng"
            fake.write_bytes(b"not an engram at all")
            with self.assertRaises(OpenError):
                dispatch.list_files(str(fake))

        self.run_with_tmpdir(scenario)

    def test_capability_checks_fail_fast(self):
        def scenario(tmp_path: Path):
            eng = _make_engram(tmp_path)
            before = eng.read_bytes()
            with self.assertRaises(UnsupportedOperation):
                dispatch.write_file(str(eng), "x.txt", b"x")
            with self.assertRaises(UnsupportedOperation):
                dispatch.delete_file(str(_make_card(tmp_path)), "document.cml")
            with self.assertRaises(UnsupportedOperation):
                dispatch.query(str(_make_spool(tmp_path)), "a.db", "SELECT 1")
            with self.assertRaises(UnsupportedOperation):
                dispatch.list_databases(str(_make_card(tmp_path)))
            self.assertEqual(eng.read_bytes(), before)

        self.run_with_tmpdir(scenario)

    def test_same_shape_across_formats(self):
        def scenario(tmp_path: Path):
            archives = [_make_engram(tmp_path), _make_cartridge(tmp_path), _make_spool(tmp_path), _make_card(tmp_path)]
            for path in archives:
                info = dispatch.info(str(path))
                listed = dispatch.list_files(str(path))
                self.assertEqual(info.entry_count, len(listed), path.name)
                self.assertTrue(dispatch.verify(str(path)), path.name)
                hits = dispatch.search(str(path), "PATTERN")
                self.assertEqual([h.line_number for h in hits], [2], path.name)
                out = tmp_path / ("out-" + path.suffix.lstrip("."))
                written = dispatch.extract(str(path), str(out))
                self.assertTrue(set(written) <= {e.path for e in listed}, path.name)

        self.run_with_tmpdir(scenario)

    def test_generic_write_and_delete(self):
        def scenario(tmp_path: Path):
            cart = _make_cartridge(tmp_path)
            dispatch.write_file(str(cart), "added.txt", b"added")
            self.assertIn("added.txt", [e.path for e in dispatch.list_files(str(cart))])
            dispatch.delete_file(str(cart), "added.txt")
            self.assertNotIn("added.txt", [e.path for e in dispatch.list_files(str(cart))])
            spool = _make_spool(tmp_path)
            os.chmod(spool, 0o640)
            dispatch.write_file(str(spool), "card_00002", b"text now\n")
            self.assertEqual(len(dispatch.search(str(spool), "text now")), 1)
            self.assertEqual(stat.S_IMODE(spool.stat().st_mode), 0o640)
            self.assertEqual(
                [e.path for e in dispatch.list_files(str(cart), databases_only=True)],
                ["store.sqlite"],
            )

        self.run_with_tmpdir(scenario)

    def test_freeze_cartridge(self):
        def scenario(tmp_path: Path):
            cart = _make_cartridge(tmp_path)
            eng = tmp_path / "frozen.eng"
            self.assertEqual(dispatch.freeze(str(cart), str(eng)), 2)
            with EngramArchive.open(str(eng)) as arc:
                self.assertEqual(arc.read_file("docs/notes.txt"), THREE_LINES)
                self.assertTrue(arc.verify())
            with self.assertRaises(UnsupportedOperation):
                dispatch.freeze(str(eng), str(tmp_path / "again.eng"))

        self.run_with_tmpdir(scenario)


if __name__ == "__main__":
    unittest.main()
