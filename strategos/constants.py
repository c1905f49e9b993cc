# Magic bytes, checked in this order by the format detector
ENGRAM_MAGIC = b"\x89ENG\r\n\x1a\n"      # 8 bytes, PNG-style
CARTRIDGE_MAGIC = b"CART\x00\x01\x00\x00"  # 8 bytes
DATASPOOL_MAGIC = b"SP01"                  # 4 bytes
DATACARD_MAGIC = b"CARD"                   # 4 bytes

DETECT_PREFIX_LEN = 8

# Engram header flags
FLAG_ENCRYPTED = 1 << 0

# DataCard header flags
CARD_FLAG_CHECKSUM = 1 << 0

ENGRAM_VERSION = (1, 0)
CARTRIDGE_VERSION = (1, 0)
DATASPOOL_VERSION = 1
DATACARD_VERSION = (1, 0)

PAGE_SIZE = 4096

# Codec IDs (0=none, 1=deflate/zlib, 2=zstd)
CODEC_NONE = 0
CODEC_DEFLATE = 1
CODEC_ZSTD = 2

CODEC_NAMES = {
    CODEC_NONE: "none",
    CODEC_DEFLATE: "deflate",
    CODEC_ZSTD: "zstd",
}

DEFAULT_CODEC_NAME = "zstd"

MANIFEST_MEMBER = "manifest.json"
DATABASE_SUFFIXES = (".db", ".sqlite", ".sqlite3")

SPOOL_CARD_PREFIX = "card_"
CARD_DOCUMENT_MEMBER = "document.cml"
CARD_PAYLOAD_MEMBER = "payload"

# Argon2id defaults for password-protected Engram archives
ARGON_TIME_COST = 3
ARGON_MEMORY_COST_KIB = 64 * 1024  # 64 MiB
ARGON_PARALLELISM = 4
# Upper bounds accepted when reading parameters back from an archive header
ARGON_MAX_TIME_COST = 16
ARGON_MAX_MEMORY_COST_KIB = 1024 * 1024


def spool_card_name(index: int) -> str:
    return f"{SPOOL_CARD_PREFIX}{index:05d}"
