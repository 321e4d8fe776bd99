"""
ICN Node Identity - Ed25519 key used to sign outbound vertices.

`<state_dir>/identity.json` holds the base64 raw private key, its public key
and key id, written with mode 0600. The same file is handed to the engine as
its identity credential.

Peers never see the private key: a broadcast vertex carries `signature` and
`public_key`, and receivers check it with `verify_payload`.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from ..errors import StateError
from ..state import atomic_write_text

logger = logging.getLogger(__name__)

_RAW_PUBLIC = (serialization.Encoding.Raw, serialization.PublicFormat.Raw)


def canonical_bytes(payload: Dict[str, Any]) -> bytes:
    """Deterministic encoding used for signing and verification."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(text: str) -> bytes:
    return base64.b64decode(text, validate=True)


def verify_payload(public_key_b64: str, payload: Dict[str, Any], signature_b64: str) -> bool:
    """True iff `signature_b64` is a signature by `public_key_b64` over `payload`."""
    try:
        key = ed25519.Ed25519PublicKey.from_public_bytes(_unb64(public_key_b64))
        key.verify(_unb64(signature_b64), canonical_bytes(payload))
    except (binascii.Error, ValueError, InvalidSignature):
        return False
    return True


class NodeIdentity:
    """Signing identity of this node. `key_id` is hex SHA-256 of the public key, truncated to 40 chars."""

    verify_payload = staticmethod(verify_payload)

    def __init__(self, private_key: Optional[ed25519.Ed25519PrivateKey] = None):
        self._key = private_key or ed25519.Ed25519PrivateKey.generate()
        self._public = self._key.public_key().public_bytes(*_RAW_PUBLIC)

    @property
    def key_id(self) -> str:
        return hashlib.sha256(self._public).hexdigest()[:40]

    @property
    def public_key_b64(self) -> str:
        return _b64(self._public)

    def sign_payload(self, payload: Dict[str, Any]) -> str:
        """Base64 signature over the canonical encoding of `payload`."""
        return _b64(self._key.sign(canonical_bytes(payload)))

    def _private_bytes(self) -> bytes:
        return self._key.private_bytes(
            serialization.Encoding.Raw,
            serialization.PrivateFormat.Raw,
            serialization.NoEncryption(),
        )

    def save(self, path: Path) -> None:
        record = {
            "key_id": self.key_id,
            "private_key": _b64(self._private_bytes()),
            "public_key": self.public_key_b64,
        }
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        atomic_write_text(path, json.dumps(record, indent=2) + "\n", mode=0o600)

    @classmethod
    def load(cls, path: Path) -> "NodeIdentity":
        """Read an identity file. Raises ValueError if it is malformed or inconsistent."""
        record = json.loads(Path(path).read_text(encoding="utf-8"))
        encoded = record.get("private_key") if isinstance(record, dict) else None
        if not isinstance(encoded, str) or not encoded:
            raise ValueError("identity file has no private_key")
        try:
            raw = _unb64(encoded)
        except binascii.Error as exc:
            raise ValueError(f"private_key is not base64: {exc}") from exc
        if len(raw) != 32:
            raise ValueError(f"private_key must be 32 bytes, got {len(raw)}")

        identity = cls(ed25519.Ed25519PrivateKey.from_private_bytes(raw))
        stored = record.get("public_key")
        if stored and stored != identity.public_key_b64:
            raise ValueError("stored public_key does not match private_key")
        return identity

    @classmethod
    def load_or_create(cls, path: Path) -> "NodeIdentity":
        """Load the identity at `path`, generating and saving one if absent."""
        path = Path(path)
        try:
            if path.exists():
                return cls.load(path)
            identity = cls()
            identity.save(path)
        except (OSError, ValueError) as exc:
            raise StateError(f"Failed to load node identity from {path}: {exc}") from exc
        logger.info(f"Generated node identity {identity.key_id}")
        return identity
