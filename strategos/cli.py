from __future__ import annotations

import argparse
import getpass as _getpass
import logging
import sys
from pathlib import Path
from typing import List, Optional

from strategos import dispatch
from strategos.constants import CODEC_NAMES, DEFAULT_CODEC_NAME
from strategos.errors import StrategosError
from strategos.formats import OutputFormat
from strategos.keys import KeyPair, load_public_key
from strategos.manifest import Manifest
from strategos.output import (
    render_info,
    render_json,
    render_listing,
    render_search,
    render_signature_results,
)


def _codec_choices() -> List[str]:
    return list(CODEC_NAMES.values())


def _error_chain(exc: BaseException) -> str:
    lines = [f"Error: {exc}"]
    cause = exc.__cause__
    while cause is not None:
        lines.append(f"  caused by: {cause}")
        cause = cause.__cause__
    return "\n".join(lines)


# read-only commands

def cmd_info(archive: str, *, password: Optional[str] = None, inspect: bool = False, verify: bool = False, manifest_only: bool = False) -> bool:
    """Print archive summary, optionally with per-file detail and signature checks."""
    if manifest_only:
        manifest = dispatch.read_manifest(archive, password=password)
        if manifest is None:
            print("No manifest found")
        else:
            print(render_json(manifest.to_dict()))
        return True
    info, entries, results = dispatch.inspect(archive, password=password, entries=inspect, signatures=verify)
    print(render_info(archive, info, entries))
    if verify:
        print("\nVerifying signatures...")
        print(render_signature_results(results))
    return True


def cmd_list(archive: str, *, password: Optional[str] = None, long: bool = False, databases: bool = False) -> bool:
    entries = dispatch.list_files(archive, password=password, databases_only=databases)
    print(render_listing(entries, long=long))
    return True


def cmd_extract(archive: str, *, output: str, files: Optional[List[str]] = None, password: Optional[str] = None) -> bool:
    written = dispatch.extract(archive, output, files=files or None, password=password)
    for member in written:
        print(f"  {member}")
    print(f"Extracted {len(written)} file(s) to {output}")
    return True


def cmd_verify(archive: str, *, password: Optional[str] = None, public_key: Optional[str] = None, check_hashes: bool = False) -> bool:
    """Verify archive integrity.

    Prints:
        "OK" on success, "FAIL" on mismatch.
    """
    key = load_public_key(public_key) if public_key else None
    ok = dispatch.verify(archive, password=password, public_key=key, check_hashes=check_hashes)
    print("OK" if ok else "FAIL")
    return ok


def cmd_search(archive: str, pattern: str, *, case_insensitive: bool = False, password: Optional[str] = None) -> bool:
    results = dispatch.search(archive, pattern, case_insensitive=case_insensitive, password=password)
    print(render_search(results))
    return True


def cmd_query(
    archive: str,
    *,
    list_databases: bool = False,
    database: Optional[str] = None,
    sql: Optional[str] = None,
    output_format: str = "table",
    password: Optional[str] = None,
) -> bool:
    if list_databases:
        names = dispatch.list_databases(archive, password=password)
        print("\n".join(names) if names else "No databases found")
        return True
    if not database or not sql:
        raise ValueError("query needs --database and --sql (or --list-databases)")
    fmt = OutputFormat.parse(output_format)
    print(dispatch.query(archive, database, sql, output_format=fmt, password=password))
    return True


# Engram authoring

def cmd_pack(
    source: str,
    *,
    output: Optional[str] = None,
    compression: str = DEFAULT_CODEC_NAME,
    manifest_path: Optional[str] = None,
    private_key: Optional[str] = None,
    signer: Optional[str] = None,
    password: Optional[str] = None,
) -> bool:
    out = output or str(Path(source).with_suffix(".eng"))
    manifest = Manifest.load_toml(manifest_path) if manifest_path else None
    keypair = KeyPair.load_private(private_key) if private_key else None
    count = dispatch.pack(
        source,
        out,
        compression=compression,
        manifest=manifest,
        keypair=keypair,
        signer=signer,
        password=password,
    )
    print(f"Packed {count} file(s) into {out}")
    if manifest is not None and manifest.signatures:
        print(f"  Signed by: {signer or manifest.signatures[-1].public_key}")
    if password:
        print("  Encrypted: yes")
    return True


def cmd_keygen(private_path: str, public_path: str) -> bool:
    keypair = dispatch.keygen(private_path, public_path)
    print(f"Private key: {private_path}")
    print(f"Public key:  {public_path}")
    print(f"  {keypair.public_key_hex()}")
    return True


def cmd_sign(archive: str, private_key: str, *, signer: Optional[str] = None, password: Optional[str] = None) -> bool:
    keypair = KeyPair.load_private(private_key)
    sig = dispatch.sign(archive, keypair, signer=signer, password=password)
    print(f"Signed {archive}")
    print(f"  Public key: {sig.public_key}")
    if sig.signed_by:
        print(f"  Signer: {sig.signed_by}")
    return True


# generic mutation

def cmd_write(archive: str, member: str, source: str) -> bool:
    data = Path(source).read_bytes()
    dispatch.write_file(archive, member, data)
    print(f"Wrote {len(data)} bytes to {member}")
    return True


def cmd_delete(archive: str, member: str) -> bool:
    dispatch.delete_file(archive, member)
    print(f"Deleted: {member}")
    return True


# format maintenance

def cmd_cart(args) -> bool:
    if args.cart_cmd == "create":
        manifest = dispatch.create_cartridge(args.output, args.slug, args.title, args.description)
        print(f"Created Cartridge archive: {args.output}")
        print(f"  Slug:  {manifest.slug}")
        print(f"  Title: {manifest.title}")
    elif args.cart_cmd == "write":
        return cmd_write(args.archive, args.member, args.source)
    elif args.cart_cmd == "delete":
        return cmd_delete(args.archive, args.member)
    elif args.cart_cmd == "snapshot":
        snap_id = dispatch.create_snapshot(args.archive, args.name, args.description or "", args.snapshot_dir)
        print(f"Created snapshot: {args.name} (ID: {snap_id})")
        print(f"  Stored in: {args.snapshot_dir}")
    elif args.cart_cmd == "snapshots":
        snaps = dispatch.list_snapshots(args.snapshot_dir)
        if not snaps:
            print(f"No snapshots found in: {args.snapshot_dir}")
        for meta in snaps:
            print(f"{meta.get('id')}\t{meta.get('timestamp')}\t{meta.get('name')}\t{meta.get('description') or ''}")
    elif args.cart_cmd == "restore":
        dispatch.restore_snapshot(args.archive, args.snapshot_id, args.snapshot_dir)
        print(f"Restored snapshot {args.snapshot_id} to: {args.archive}")
    elif args.cart_cmd == "freeze":
        count = dispatch.freeze(args.archive, args.output, compression=args.compression)
        print(f"Froze {count} file(s) into {args.output}")
    return True


def cmd_spool(args) -> bool:
    if args.spool_cmd == "build":
        count = dispatch.spool_build(args.output, args.cards)
        print(f"DataSpool created: {args.output} ({count} cards)")
    elif args.spool_cmd == "append":
        count = dispatch.spool_append(args.archive, args.cards)
        print(f"Appended {len(args.cards)} card(s); total cards: {count}")
    elif args.spool_cmd == "extract":
        size = dispatch.spool_extract_card(args.archive, args.index, args.output)
        print(f"Extracted card {args.index} ({size} bytes) to: {args.output}")
    elif args.spool_cmd == "index":
        entries = dispatch.spool_index(args.archive)
        print(f"{'INDEX':<8} {'OFFSET':>12} {'SIZE':>12}")
        for i, e in enumerate(entries):
            print(f"{i:<8} {e.offset:>12} {e.length:>12}")
        print(f"Total cards: {len(entries)}")
    return True


def cmd_card(args) -> bool:
    if args.card_cmd == "compress":
        card = dispatch.card_compress(
            args.source,
            args.output,
            card_id=args.id,
            codec=args.codec,
            with_checksum=args.checksum,
            profile=args.profile,
        )
        print(f"Compressed to DataCard: {args.output}")
        print(f"  ID:       {card.metadata.id}")
        print(f"  Size:     {card.metadata.original_size} -> {card.metadata.compressed_size} bytes")
        print(f"  Checksum: {'yes' if card.header.has_checksum() else 'no'}")
    elif args.card_cmd == "decompress":
        card = dispatch.card_decompress(args.archive, args.output)
        print(f"Decompressed {card.metadata.id} to: {args.output}")
    elif args.card_cmd == "validate":
        ok = dispatch.verify(args.archive)
        print("OK" if ok else "FAIL")
        return ok
    elif args.card_cmd == "metadata":
        card = dispatch.card_load(args.archive)
        print(render_json(vars(card.metadata)))
    return True


def _password(args) -> Optional[str]:
    pw = getattr(args, "password", None)
    if pw:
        return pw
    if getattr(args, "encrypt", False) or getattr(args, "decrypt", False):
        return _getpass.getpass("Password: ")
    return None


def _add_password(p: argparse.ArgumentParser, *, prompt_flag: str = "--decrypt"):
    p.add_argument("--password", help="Archive password")
    p.add_argument(prompt_flag, action="store_true", help="Prompt for the password")


def main(argv: List[str] | None = None):
    ap = argparse.ArgumentParser(
        prog="strategos",
        description="Inspect, extract, verify and query Engram, Cartridge, DataSpool and DataCard archives",
    )
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging on stderr")
    sub = ap.add_subparsers(dest="cmd", required=True)

    ap_info = sub.add_parser("info", help="Show archive information")
    ap_info.add_argument("archive", help="Archive path")
    ap_info.add_argument("--inspect", action="store_true", help="Per-file detail")
    ap_info.add_argument("--verify", action="store_true", help="Check manifest signatures")
    ap_info.add_argument("--manifest", action="store_true", help="Print only the manifest as JSON")
    _add_password(ap_info)

    ap_list = sub.add_parser("list", help="List archive contents")
    ap_list.add_argument("archive", help="Archive path")
    ap_list.add_argument("--long", "-l", action="store_true", help="Sizes and compression")
    ap_list.add_argument("--databases", action="store_true", help="Only embedded databases")
    _add_password(ap_list)

    ap_extract = sub.add_parser("extract", help="Extract members")
    ap_extract.add_argument("archive", help="Archive path")
    ap_extract.add_argument("--output", "-o", default=".", help="Output directory")
    ap_extract.add_argument("--files", nargs="+", help="Members to extract (default: all)")
    _add_password(ap_extract)

    ap_verify = sub.add_parser("verify", help="Verify archive integrity and signatures")
    ap_verify.add_argument("archive", help="Archive path")
    ap_verify.add_argument("--public-key", "-k", help="Require a valid signature by this public key file")
    ap_verify.add_argument("--check-hashes", action="store_true", help="Check manifest SHA-256 file hashes")
    _add_password(ap_verify)

    ap_search = sub.add_parser("search", help="Search text members for a literal pattern")
    ap_search.add_argument("archive", help="Archive path")
    ap_search.add_argument("pattern", help="Text to search for")
    ap_search.add_argument("--case-insensitive", "-i", action="store_true")
    _add_password(ap_search)

    ap_query = sub.add_parser("query", help="Query an embedded SQLite database")
    ap_query.add_argument("archive", help="Archive path")
    ap_query.add_argument("--list-databases", action="store_true")
    ap_query.add_argument("--database", "-d", help="Database member path")
    ap_query.add_argument("--sql", help="SQL statement")
    ap_query.add_argument("--format", "-f", default="table", choices=[f.value for f in OutputFormat])
    _add_password(ap_query)

    ap_pack = sub.add_parser("pack", help="Build an Engram archive from a file or directory")
    ap_pack.add_argument("source", help="File or directory")
    ap_pack.add_argument("--output", "-o", help="Output .eng path (default: <source>.eng)")
    ap_pack.add_argument("--compression", "-c", default=DEFAULT_CODEC_NAME, choices=_codec_choices())
    ap_pack.add_argument("--manifest", "-m", help="manifest.toml to embed")
    ap_pack.add_argument("--private-key", "-k", help="Sign the manifest with this private key file")
    ap_pack.add_argument("--signer", help="Signer identity recorded with the signature")
    _add_password(ap_pack, prompt_flag="--encrypt")

    ap_keygen = sub.add_parser("keygen", help="Generate an Ed25519 keypair")
    ap_keygen.add_argument("--private-key", "-r", default="private.key")
    ap_keygen.add_argument("--public-key", "-u", default="public.key")

    ap_sign = sub.add_parser("sign", help="Add a signature to an Engram manifest")
    ap_sign.add_argument("archive", help="Archive path")
    ap_sign.add_argument("--private-key", "-k", required=True)
    ap_sign.add_argument("--signer", "-s")
    _add_password(ap_sign)

    ap_write = sub.add_parser("write", help="Insert or replace a member (mutable formats)")
    ap_write.add_argument("archive")
    ap_write.add_argument("member")
    ap_write.add_argument("source", help="File whose bytes become the member")

    ap_delete = sub.add_parser("delete", help="Delete a member (mutable formats)")
    ap_delete.add_argument("archive")
    ap_delete.add_argument("member")

    # cart
    ap_cart = sub.add_parser("cart", help="Cartridge maintenance")
    cart_sub = ap_cart.add_subparsers(dest="cart_cmd", required=True)
    p = cart_sub.add_parser("create", help="Create an empty Cartridge")
    p.add_argument("output")
    p.add_argument("--slug", required=True)
    p.add_argument("--title", required=True)
    p.add_argument("--description")
    p = cart_sub.add_parser("write", help="Write a member")
    p.add_argument("archive")
    p.add_argument("member")
    p.add_argument("source")
    p = cart_sub.add_parser("delete", help="Delete a member")
    p.add_argument("archive")
    p.add_argument("member")
    p = cart_sub.add_parser("snapshot", help="Snapshot the Cartridge")
    p.add_argument("archive")
    p.add_argument("--name", required=True)
    p.add_argument("--description")
    p.add_argument("--snapshot-dir", default="snapshots")
    p = cart_sub.add_parser("snapshots", help="List snapshots")
    p.add_argument("--snapshot-dir", default="snapshots")
    p = cart_sub.add_parser("restore", help="Restore a snapshot")
    p.add_argument("archive")
    p.add_argument("snapshot_id", type=int)
    p.add_argument("--snapshot-dir", default="snapshots")
    p = cart_sub.add_parser("freeze", help="Convert to an immutable Engram")
    p.add_argument("archive")
    p.add_argument("output")
    p.add_argument("--compression", "-c", default=DEFAULT_CODEC_NAME, choices=_codec_choices())

    # spool
    ap_spool = sub.add_parser("spool", help="DataSpool maintenance")
    spool_sub = ap_spool.add_subparsers(dest="spool_cmd", required=True)
    p = spool_sub.add_parser("build", help="Build a spool from card files")
    p.add_argument("output")
    p.add_argument("cards", nargs="+")
    p = spool_sub.add_parser("append", help="Append card files (rebuild and rename)")
    p.add_argument("archive")
    p.add_argument("cards", nargs="+")
    p = spool_sub.add_parser("extract", help="Write one card to a file")
    p.add_argument("archive")
    p.add_argument("index", type=int)
    p.add_argument("output")
    p = spool_sub.add_parser("index", help="Show the card index")
    p.add_argument("archive")

    # card
    ap_card = sub.add_parser("card", help="DataCard maintenance")
    card_sub = ap_card.add_subparsers(dest="card_cmd", required=True)
    p = card_sub.add_parser("compress", help="Compress a document into a DataCard")
    p.add_argument("source")
    p.add_argument("output")
    p.add_argument("--id")
    p.add_argument("--codec", default="deflate", choices=_codec_choices())
    p.add_argument("--checksum", action="store_true", help="Append a CRC32 footer")
    p.add_argument("--profile")
    p = card_sub.add_parser("decompress", help="Write the document out of a DataCard")
    p.add_argument("archive")
    p.add_argument("output")
    p = card_sub.add_parser("validate", help="Check checksum and payload")
    p.add_argument("archive")
    p = card_sub.add_parser("metadata", help="Print card metadata as JSON")
    p.add_argument("archive")

    args = ap.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        stream=sys.stderr,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        pw = _password(args)
        if args.cmd == "info":
            cmd_info(args.archive, password=pw, inspect=args.inspect, verify=args.verify, manifest_only=args.manifest)
        elif args.cmd == "list":
            cmd_list(args.archive, password=pw, long=args.long, databases=args.databases)
        elif args.cmd == "extract":
            cmd_extract(args.archive, output=args.output, files=args.files, password=pw)
        elif args.cmd == "verify":
            ok = cmd_verify(args.archive, password=pw, public_key=args.public_key, check_hashes=args.check_hashes)
            sys.exit(0 if ok else 1)
        elif args.cmd == "search":
            cmd_search(args.archive, args.pattern, case_insensitive=args.case_insensitive, password=pw)
        elif args.cmd == "query":
            cmd_query(
                args.archive,
                list_databases=args.list_databases,
                database=args.database,
                sql=args.sql,
                output_format=args.format,
                password=pw,
            )
        elif args.cmd == "pack":
            cmd_pack(
                args.source,
                output=args.output,
                compression=args.compression,
                manifest_path=args.manifest,
                private_key=args.private_key,
                signer=args.signer,
                password=pw,
            )
        elif args.cmd == "keygen":
            cmd_keygen(args.private_key, args.public_key)
        elif args.cmd == "sign":
            cmd_sign(args.archive, args.private_key, signer=args.signer, password=pw)
        elif args.cmd == "write":
            cmd_write(args.archive, args.member, args.source)
        elif args.cmd == "delete":
            cmd_delete(args.archive, args.member)
        elif args.cmd == "cart":
            cmd_cart(args)
        elif args.cmd == "spool":
            cmd_spool(args)
        elif args.cmd == "card":
            if not cmd_card(args):
                sys.exit(1)
        else:
            raise RuntimeError("Unknown command")
    except (StrategosError, OSError, ValueError, RuntimeError) as e:
        print(_error_chain(e), file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
