"""
Identity keypairs and namespace-scoped writes.

An Identity is an ECDSA P-256 keypair. Its public key, encoded as
``base64url(x).base64url(y)``, is the globally unique root of the
identity's namespace (``~<pub>``). Anyone who knows the public key can read
and subscribe to the namespace; only the private key can produce the
per-field signatures that strict-mode peers require for writes into it.

Invariants:
    - A public identifier always decodes to a point on P-256
    - A signature covers path, field name, value, timestamp and writer,
      so a signed state cannot be replayed under another path or field
    - Without strict mode signatures are advisory; nothing here blocks a write

How to change safely:
    - Changing the signed payload layout invalidates every stored signature
    - Keep verify() free of side effects; the sync layer calls it per field
"""

from __future__ import annotations

import base64
import json
import logging
from pathlib import Path as FsPath
from typing import Any, Dict, List, Mapping, Optional, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from ..errors import IdentityError
from ..graph.path import APP_NAMESPACE, Path, PathLike, make_path, namespace_root
from ..graph.store import GraphStore, PutResult
from ..merge.resolver import FieldState

logger = logging.getLogger(__name__)

CURVE = ec.SECP256R1()


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


def encode_pub(public_key: ec.EllipticCurvePublicKey) -> str:
    """Encode a public key as ``base64url(x).base64url(y)``."""
    numbers = public_key.public_numbers()
    x = numbers.x.to_bytes(32, "big")
    y = numbers.y.to_bytes(32, "big")
    return f"{_b64url_encode(x)}.{_b64url_encode(y)}"


def decode_pub(pub: str) -> ec.EllipticCurvePublicKey:
    """Decode a public identifier.

    Raises:
        IdentityError: If the string is not a valid P-256 public key
    """
    try:
        x_text, y_text = pub.split(".")
        x = int.from_bytes(_b64url_decode(x_text), "big")
        y = int.from_bytes(_b64url_decode(y_text), "big")
        return ec.EllipticCurvePublicNumbers(x, y, CURVE).public_key()
    except (ValueError, TypeError, AttributeError) as e:
        raise IdentityError(f"Invalid public key: {e}", pub=pub) from e


def signing_payload(path: Path, name: str, state: FieldState) -> bytes:
    """Canonical bytes signed for one field state."""
    return json.dumps(
        {"p": list(path), "f": name, "v": state.value, "ts": state.ts, "w": state.writer},
        sort_keys=True,
        separators=(",", ":"),
    ).encode("utf-8")


class Identity:
    """A P-256 keypair, or just a public key for read-only identities.

    Example:
        >>> admin = Identity.generate(alias="organizer")
        >>> sig = admin.sign(b"hello")
        >>> Identity.verify(admin.pub, b"hello", sig)
        True
    """

    def __init__(
        self,
        public_key: ec.EllipticCurvePublicKey,
        private_key: Optional[ec.EllipticCurvePrivateKey] = None,
        alias: Optional[str] = None,
    ) -> None:
        self._public_key = public_key
        self._private_key = private_key
        self.alias = alias
        self.pub = encode_pub(public_key)

    @classmethod
    def generate(cls, alias: Optional[str] = None) -> Identity:
        private_key = ec.generate_private_key(CURVE)
        return cls(private_key.public_key(), private_key, alias=alias)

    @classmethod
    def from_pub(cls, pub: str, alias: Optional[str] = None) -> Identity:
        """Read-only identity for someone else's namespace."""
        return cls(decode_pub(pub), None, alias=alias)

    @classmethod
    def from_pem(
        cls,
        pem: str | bytes,
        password: Optional[bytes] = None,
        alias: Optional[str] = None,
    ) -> Identity:
        """Load a private key from PEM.

        Raises:
            IdentityError: If the PEM is unreadable or not a P-256 key
        """
        data = pem.encode("utf-8") if isinstance(pem, str) else pem
        try:
            private_key = serialization.load_pem_private_key(data, password=password)
        except (ValueError, TypeError) as e:
            raise IdentityError(f"Could not load private key: {e}") from e
        if not isinstance(private_key, ec.EllipticCurvePrivateKey) or not isinstance(
            private_key.curve, ec.SECP256R1
        ):
            raise IdentityError("Private key is not an ECDSA P-256 key")
        return cls(private_key.public_key(), private_key, alias=alias)

    @classmethod
    def load_or_create(cls, key_file: str, alias: Optional[str] = None) -> Identity:
        """Load the identity stored at key_file, generating it on first use."""
        path = FsPath(key_file)
        if path.exists():
            return cls.from_pem(path.read_bytes(), alias=alias)

        identity = cls.generate(alias=alias)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(identity.to_pem())
        path.chmod(0o600)
        logger.info("Generated new identity", extra={"pub": identity.pub, "key_file": key_file})
        return identity

    def to_pem(self) -> str:
        """Export the private key as unencrypted PKCS8 PEM."""
        if self._private_key is None:
            raise IdentityError("Identity has no private key", pub=self.pub)
        return self._private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode("ascii")

    @property
    def can_sign(self) -> bool:
        return self._private_key is not None

    @property
    def root(self) -> str:
        """Namespace root segment (``~<pub>``)."""
        return namespace_root(self.pub)

    def sign(self, payload: bytes) -> str:
        """Sign bytes, returning a base64url DER signature.

        Raises:
            IdentityError: If the identity has no private key
        """
        if self._private_key is None:
            raise IdentityError("Cannot sign without a private key", pub=self.pub)
        signature = self._private_key.sign(payload, ec.ECDSA(hashes.SHA256()))
        return _b64url_encode(signature)

    @staticmethod
    def verify(pub: str, payload: bytes, signature: str) -> bool:
        """Check a signature against a public identifier.

        Returns False for a bad signature; raises IdentityError only if
        ``pub`` itself is malformed.
        """
        public_key = decode_pub(pub)
        try:
            public_key.verify(_b64url_decode(signature), payload, ec.ECDSA(hashes.SHA256()))
        except (InvalidSignature, ValueError):
            return False
        return True

    def sign_state(self, path: Path, name: str, state: FieldState) -> FieldState:
        """Return a copy of state carrying this identity's signature."""
        return FieldState(
            value=state.value,
            ts=state.ts,
            writer=state.writer,
            sig=self.sign(signing_payload(path, name, state)),
        )

    def __repr__(self) -> str:
        return f"Identity(alias={self.alias!r}, pub={self.pub[:12]}..., can_sign={self.can_sign})"


def verify_state(pub: str, path: Path, name: str, state: FieldState) -> bool:
    """Whether a field state carries a valid signature by ``pub``."""
    if not state.sig:
        return False
    return Identity.verify(pub, signing_payload(path, name, state), state.sig)


def sign_put(
    identity: Identity,
    path: Path,
    states: Mapping[str, FieldState],
) -> Dict[str, FieldState]:
    """Sign every field state of a write to ``path``."""
    return {name: identity.sign_state(path, name, state) for name, state in states.items()}


def verify_put(
    pub: str,
    path: Path,
    states: Mapping[str, FieldState],
) -> Tuple[List[str], List[str]]:
    """Split the fields of a write into (accepted, rejected) names.

    A malformed ``pub`` rejects every field.
    """
    accepted: List[str] = []
    rejected: List[str] = []
    for name, state in states.items():
        try:
            ok = verify_state(pub, path, name, state)
        except IdentityError:
            ok = False
        (accepted if ok else rejected).append(name)
    return accepted, rejected


class ScopedWriter:
    """Writes into an identity's namespace, signing every field.

    Paths are relative to ``~<pub>/<app_namespace>``.

    Example:
        >>> writer = ScopedWriter(store, admin)
        >>> writer.put(("class_list", "101"), {"studentId": "101", "name": "Alice"})
    """

    def __init__(
        self,
        store: GraphStore,
        identity: Identity,
        app_namespace: str = APP_NAMESPACE,
    ) -> None:
        if not identity.can_sign:
            raise IdentityError("Scoped writes need a private key", pub=identity.pub)
        self.store = store
        self.identity = identity
        self.base: Path = (identity.root, app_namespace)

    def path(self, relative: PathLike) -> Path:
        return make_path(self.base + make_path(relative))

    def put(self, relative: PathLike, fields: Mapping[str, Any]) -> PutResult:
        """Signed field-level write under the identity's namespace."""
        path = self.path(relative)
        self.store.validate_fields(fields)
        ts = self.store.clock.tick()
        states = {
            name: FieldState(value=value, ts=ts, writer=self.store.peer_id)
            for name, value in fields.items()
        }
        return self.store.put_states(path, sign_put(self.identity, path, states))
