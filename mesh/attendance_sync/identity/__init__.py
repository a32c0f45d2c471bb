"""
Identity module - keypairs and namespace-scoped writes.

Invariants:
    - The public key is the namespace root; it grants read, never write
    - Only ScopedWriter writes into ``~<pub>``, and it signs every field
"""

from .keys import (
    Identity,
    ScopedWriter,
    decode_pub,
    encode_pub,
    sign_put,
    signing_payload,
    verify_put,
    verify_state,
)

__all__ = [
    "Identity",
    "ScopedWriter",
    "decode_pub",
    "encode_pub",
    "sign_put",
    "signing_payload",
    "verify_put",
    "verify_state",
]
