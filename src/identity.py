"""
identity.py - Local Identity Keys for the Fairdrop Client

The private key of the local identity is kept as one hex line in a key
file. Key custody beyond that (wallets, derivation, unlocking) is left to
whatever IdentityProvider the caller plugs in.

Functions:
    parse_private_key(text)          -> bytes[32]        (raises ValueError)
    load_private_key(path)           -> bytes[32]        (raises ValueError / OSError)
    save_private_key(path, key_pair) -> None
"""

import os
import threading
from typing import Optional, Protocol

from fairdrop_types import KeyPair, PRIVATE_KEY_SIZE
from envelope import public_key_from_private

_key_file_lock = threading.Lock()


class IdentityProvider(Protocol):
    def get_key_pair(self) -> Optional[KeyPair]:
        ...


def parse_private_key(text: str) -> bytes:
    """
    Hex private key (64 chars, optional 0x) to bytes.

    Raises:
        ValueError: If the text is not a valid secp256k1 private key.
    """
    if not text:
        raise ValueError("Private key cannot be empty.")

    clean = text.strip()
    if clean.startswith(("0x", "0X")):
        clean = clean[2:]
    if len(clean) != PRIVATE_KEY_SIZE * 2:
        raise ValueError(f"Private key must be {PRIVATE_KEY_SIZE * 2} hex characters, got {len(clean)}")

    key = bytes.fromhex(clean)
    if public_key_from_private(key) is None:
        raise ValueError("Private key is outside the secp256k1 range.")
    return key


def load_private_key(path: str) -> bytes:
    with _key_file_lock:
        with open(path, "r", encoding="utf-8") as f:
            return parse_private_key(f.read())


def save_private_key(path: str, key_pair: KeyPair) -> None:
    """Write the private key as hex, readable by the owner only."""
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)

    with _key_file_lock:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(key_pair.private_key.hex() + "\n")


class FileIdentity:
    """IdentityProvider reading the key file on every request."""

    def __init__(self, path: str):
        self.path = path

    def get_key_pair(self) -> Optional[KeyPair]:
        try:
            private_key = load_private_key(self.path)
        except (OSError, ValueError):
            return None
        return KeyPair(public_key=public_key_from_private(private_key), private_key=private_key)
