from __future__ import annotations

import hashlib
import json
import time
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .errors import InvalidKeyLength, OpenError
from .keys import KeyPair, verify_signature


@dataclass
class Author:
    name: str
    email: Optional[str] = None
    url: Optional[str] = None


@dataclass
class FileHash:
    path: str
    sha256: str
    size: int


@dataclass
class Signature:
    public_key: str
    signature: str
    algorithm: str = "ed25519"
    signed_by: Optional[str] = None
    timestamp: int = 0


@dataclass
class Manifest:
    """Identity and signatures of an Engram archive, stored as ``manifest.json``."""

    id: str
    name: str
    version: str
    author: Author
    description: Optional[str] = None
    license: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    capabilities: List[str] = field(default_factory=list)
    files: List[FileHash] = field(default_factory=list)
    signatures: List[Signature] = field(default_factory=list)

    @classmethod
    def load_toml(cls, path: Union[str, Path]) -> "Manifest":
        try:
            with open(path, "rb") as rf:
                doc = tomllib.load(rf)
        except tomllib.TOMLDecodeError as exc:
            raise ValueError(f"Failed to parse manifest {path}: {exc}") from exc
        for key in ("id", "name", "version", "author"):
            if key not in doc:
                raise ValueError(f"Manifest {path} is missing '{key}'")
        author = doc["author"]
        if not isinstance(author, dict) or "name" not in author:
            raise ValueError(f"Manifest {path}: [author] needs a name")
        return cls(
            id=str(doc["id"]),
            name=str(doc["name"]),
            version=str(doc["version"]),
            author=Author(name=author["name"], email=author.get("email"), url=author.get("url")),
            description=doc.get("description"),
            license=doc.get("license"),
            tags=list(doc.get("tags", [])),
            capabilities=list(doc.get("capabilities", [])),
        )

    @classmethod
    def from_dict(cls, doc: Dict[str, Any]) -> "Manifest":
        try:
            return cls(
                id=doc["id"],
                name=doc["name"],
                version=doc["version"],
                author=Author(**doc["author"]),
                description=doc.get("description"),
                license=doc.get("license"),
                tags=list(doc.get("tags", [])),
                capabilities=list(doc.get("capabilities", [])),
                files=[FileHash(**f) for f in doc.get("files", [])],
                signatures=[Signature(**s) for s in doc.get("signatures", [])],
            )
        except (KeyError, TypeError) as exc:
            raise OpenError(f"Manifest is malformed: {exc}") from exc

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True).encode("utf-8")

    def canonical_bytes(self) -> bytes:
        """The signed message: compact, key-sorted JSON without ``signatures``."""
        doc = self.to_dict()
        doc.pop("signatures", None)
        return json.dumps(doc, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    def add_file(self, path: str, data: bytes):
        self.files.append(FileHash(path=path, sha256=hashlib.sha256(data).hexdigest(), size=len(data)))

    def sign(self, keypair: KeyPair, signer: Optional[str] = None) -> Signature:
        sig = Signature(
            public_key=keypair.public_key_hex(),
            signature=keypair.sign(self.canonical_bytes()).hex(),
            signed_by=signer,
            timestamp=int(time.time()),
        )
        self.signatures.append(sig)
        return sig

    def verify_signatures(self) -> List[bool]:
        message = self.canonical_bytes()
        results = []
        for sig in self.signatures:
            if sig.algorithm != "ed25519":
                results.append(False)
                continue
            try:
                results.append(verify_signature(bytes.fromhex(sig.public_key), message, bytes.fromhex(sig.signature)))
            except (ValueError, InvalidKeyLength):
                results.append(False)
        return results

    def is_signed(self) -> bool:
        return bool(self.signatures)
