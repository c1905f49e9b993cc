from __future__ import annotations

import os
import tempfile
import unittest
from pathlib import Path

from strategos.constants import PAGE_SIZE
from strategos.engines.cartridge import Cartridge
from strategos.engines.datacard import Card
from strategos.engines.dataspool import SpoolBuilder, SpoolReader
from strategos.engines.engram import EngramReader, EngramWriter
from strategos.errors import EncryptedArchiveRequiresPassword, NotFoundError, OpenError, StrategosError

TEST_KDF_KIB = 8192


class EngineTests(unittest.TestCase):
    def run_with_tmpdir(self, func):
        with tempfile.TemporaryDirectory() as tmp:
            func(Path(tmp))

    def test_engram_roundtrip_all_codecs(self):
        def scenario(tmp_path: Path):
            path = tmp_path / "a.eng"
            blob = os.urandom(5000)
            with EngramWriter(str(path)) as w:
                w.add_file("docs/a.txt", b"hello world\n" * 50, compression="deflate")
                w.add_file("b.bin", blob, compression="none")
                w.add_file("c.txt", b"zstd body " * 100)
                w.finalize()
            with EngramReader(str(path)) as r:
                self.assertEqual(r.list_files(), ["docs/a.txt", "b.bin", "c.txt"])
                self.assertEqual(r.read_file("docs/a.txt"), b"hello world\n" * 50)
                self.assertEqual(r.read_file("b.bin"), blob)
                self.assertEqual(r.read_file("c.txt"), b"zstd body " * 100)
                self.assertFalse(r.header.encrypted)
                self.assertIsNone(r.read_manifest())
                with self.assertRaises(NotFoundError):
                    r.read_file("nope")

        self.run_with_tmpdir(scenario)

    def test_engram_rejects_duplicates_and_dotdot(self):
        def scenario(tmp_path: Path):
            with EngramWriter(str(tmp_path / "d.eng")) as w:
                w.add_file("x.txt", b"1")
                with self.assertRaises(ValueError):
                    w.add_file("./x.txt", b"2")
                with self.assertRaises(ValueError):
                    w.add_file("../escape.txt", b"3")

        self.run_with_tmpdir(scenario)

    def test_engram_encrypted(self):
        def scenario(tmp_path: Path):
            path = tmp_path / "enc.eng"
            with EngramWriter(str(path), password="pw", kdf_memory_kib=TEST_KDF_KIB) as w:
                w.add_file("secret.txt", b"top secret")
                w.finalize()
            with EngramReader(str(path)) as r:
                self.assertTrue(r.header.encrypted)
                self.assertEqual(r.header.argon_memory_cost, TEST_KDF_KIB)
                self.assertEqual(r.list_files(), ["secret.txt"])
                with self.assertRaises(EncryptedArchiveRequiresPassword):
                    r.read_file("secret.txt")
            with EngramReader(str(path), password="pw") as r:
                self.assertEqual(r.read_file("secret.txt"), b"top secret")
            with EngramReader(str(path), password="wrong") as r:
                with self.assertRaises(StrategosError):
                    r.read_file("secret.txt")

        self.run_with_tmpdir(scenario)

    def test_engram_bad_header(self):
        def scenario(tmp_path: Path):
            path = tmp_path / "bad.eng"
            path.write_bytes(b"\x89ENG\r\n\x1a\n" + b"\x00" * 200)
            with self.assertRaises(OpenError):
                EngramReader(str(path)).open()

        self.run_with_tmpdir(scenario)

    def test_cartridge_write_flush_reopen(self):
        def scenario(tmp_path: Path):
            path = tmp_path / "c.cart"
            big = os.urandom(PAGE_SIZE * 2 + 10)
            with Cartridge.create(str(path), "notes", "My Notes") as cart:
                cart.write("a.txt", b"alpha")
                cart.write("dir/big.bin", big)
                cart.flush()
            with Cartridge.open(str(path), writable=True) as cart:
                self.assertEqual(cart.list(), ["a.txt", "dir/big.bin"])
                self.assertEqual(cart.read("dir/big.bin"), big)
                self.assertEqual(len(cart.metadata("dir/big.bin").blocks), 3)
                self.assertEqual(cart.read_manifest().slug, "notes")
                self.assertEqual(cart.list("dir/"), ["dir/big.bin"])
                cart.delete("a.txt")
                cart.flush()
                self.assertGreater(cart.header().free_blocks, 0)
            with Cartridge.open(str(path)) as cart:
                self.assertFalse(cart.exists("a.txt"))
                with self.assertRaises(NotFoundError):
                    cart.read("a.txt")

        self.run_with_tmpdir(scenario)

    def test_cartridge_unflushed_writes_are_not_committed(self):
        def scenario(tmp_path: Path):
            path = tmp_path / "c.cart"
            with Cartridge.create(str(path), "s", "t") as cart:
                cart.write("kept.txt", b"kept")
                cart.flush()
                cart.write("lost.txt", b"lost")
            with Cartridge.open(str(path)) as cart:
                self.assertEqual(cart.list(), ["kept.txt"])

        self.run_with_tmpdir(scenario)

    def test_cartridge_snapshot_restore(self):
        def scenario(tmp_path: Path):
            path = tmp_path / "c.cart"
            snaps = tmp_path / "snaps"
            with Cartridge.create(str(path), "s", "t") as cart:
                cart.write("a.txt", b"v1")
                cart.flush()
                snap_id = cart.create_snapshot("first", "before edit", str(snaps))
                cart.write("a.txt", b"v2")
                cart.flush()
                self.assertEqual(cart.read("a.txt"), b"v2")
                listed = Cartridge.list_snapshots(str(snaps))
                self.assertEqual([m["id"] for m in listed], [snap_id])
                self.assertEqual(listed[0]["name"], "first")
                cart.restore_snapshot(snap_id, str(snaps))
                self.assertEqual(cart.read("a.txt"), b"v1")
                with self.assertRaises(NotFoundError):
                    cart.restore_snapshot(snap_id + 12345, str(snaps))
            self.assertEqual(Cartridge.list_snapshots(str(tmp_path / "none")), [])

        self.run_with_tmpdir(scenario)

    def test_spool_build_and_read(self):
        def scenario(tmp_path: Path):
            path = tmp_path / "s.spool"
            cards = [b"first", b"", os.urandom(300)]
            with SpoolBuilder(str(path)) as b:
                for c in cards:
                    b.add_card(c)
                b.finalize()
            with SpoolReader.open(str(path)) as r:
                self.assertEqual(r.card_count(), 3)
                self.assertEqual([r.read_card(i) for i in range(3)], cards)
                self.assertTrue(all(r.entry_in_bounds(e) for e in r.entries()))
                with self.assertRaises(NotFoundError):
                    r.read_card(3)

        self.run_with_tmpdir(scenario)

    def test_spool_bad_magic_and_index(self):
        def scenario(tmp_path: Path):
            bad = tmp_path / "bad.spool"
            bad.write_bytes(b"XXXX" + b"\x00" * 40)
            with self.assertRaises(OpenError):
                SpoolReader.open(str(bad))
            path = tmp_path / "s.spool"
            with SpoolBuilder(str(path)) as b:
                b.add_card(b"abc")
                b.finalize()
            raw = path.read_bytes()
            # drop the index
            path.write_bytes(raw[:-4])
            with self.assertRaises(OpenError):
                SpoolReader.open(str(path))

        self.run_with_tmpdir(scenario)

    def test_card_roundtrip_with_checksum(self):
        def scenario(tmp_path: Path):
            doc = "<cml><title>Card</title></cml>\n" * 20
            for codec in ("none", "deflate", "zstd"):
                card = Card.from_document(doc, "card-1", codec=codec, with_checksum=True, profile="legal")
                path = tmp_path / f"doc-{codec}.card"
                card.save(str(path))
                loaded = Card.load(str(path))
                self.assertEqual(loaded.document(), doc.encode("utf-8"))
                self.assertTrue(loaded.header.has_checksum())
                self.assertEqual(loaded.stored_checksum, loaded.calculate_checksum())
                self.assertEqual(loaded.metadata.id, "card-1")
                self.assertEqual(loaded.metadata.codec, codec)
                self.assertEqual(loaded.metadata.original_size, len(doc))

        self.run_with_tmpdir(scenario)

    def test_card_without_checksum_and_bad_input(self):
        card = Card.from_document(b"plain", "c2")
        raw = card.to_bytes()
        parsed = Card.from_bytes(raw)
        self.assertFalse(parsed.header.has_checksum())
        self.assertIsNone(parsed.stored_checksum)
        self.assertEqual(parsed.document(), b"plain")
        with self.assertRaises(OpenError):
            Card.from_bytes(b"CARD")
        with self.assertRaises(OpenError):
            Card.from_bytes(b"NOPE" + raw[4:])


if __name__ == "__main__":
    unittest.main()
