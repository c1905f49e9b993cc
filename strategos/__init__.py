"""
Strategos: one access layer over four archive container formats.

Formats:

- Engram: immutable archive with per-member compression, optional Argon2id +
  XChaCha20-Poly1305 encryption and an Ed25519-signed manifest.
- Cartridge: mutable page-based archive with snapshots.
- DataSpool: append-only sequence of opaque cards.
- DataCard: a single compressed document.

The format is detected from the leading magic bytes (falling back to the
file extension), and every operation is routed through strategos.dispatch to
the matching driver in strategos.formats.
"""

__version__ = "0.1"

__all__ = [
    "constants",
    "dispatch",
    "formats",
    "keys",
    "manifest",
]
