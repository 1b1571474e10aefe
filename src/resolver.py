"""
resolver.py - Recipient Resolution for the Fairdrop Client

Turns whatever the user typed as a recipient (a raw public key, a full ENS
name or a bare fairdrop username) into a closed set of outcomes. Record
lookups go through a TextRecordSource supplied by the caller; nothing here
keeps a process-wide provider.

Text records:
    io.fairdrop.publickey       hex secp256k1 public key (66 or 130 chars)
    io.fairdrop.inbox.overlay   inbox target overlay
    io.fairdrop.inbox.id        inbox base identifier
    io.fairdrop.inbox.prox      inbox proximity (default 16)

Functions:
    normalize_public_key(value)                        -> bytes or None
    is_ens_name(name)                                  -> bool
    get_public_key(source, name)                       -> bytes or None
    get_inbox_params(source, name)                     -> InboxParams or None
    resolve_recipient(source, recipient, ens_domain)   -> RecipientResolution
    load_record_file(path)                             -> StaticRecordSource or None
"""

import asyncio
import re
from typing import Dict, Optional, Protocol

# Python 3.11+ has tomllib built-in, earlier versions need tomli
try:
    import tomllib
except ImportError:
    import tomli as tomllib

from fairdrop_types import (
    InboxParams,
    DEFAULT_PROXIMITY,
    DirectKey,
    ResolvedWithKey,
    ResolvedWithoutKey,
    NotFound,
    InvalidRecipient,
    RecipientResolution,
)
from logger import log_debug, log_warning, log_error, LoggerHandle


CONTEXT = "Resolver"

PUBLIC_KEY_RECORD = "io.fairdrop.publickey"
INBOX_OVERLAY_RECORD = "io.fairdrop.inbox.overlay"
INBOX_ID_RECORD = "io.fairdrop.inbox.id"
INBOX_PROX_RECORD = "io.fairdrop.inbox.prox"

DEFAULT_ENS_DOMAIN = "fairdrop.eth"

VALID_TLDS = ("eth", "xyz", "luxe", "kred", "art", "club")

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")
_BARE_HEX_KEY_RE = re.compile(r"^[0-9a-fA-F]{64,130}$")
_USERNAME_RE = re.compile(r"^[a-z0-9][a-z0-9-]*[a-z0-9]$|^[a-z0-9]$")


# ============================================================================
# RECORD SOURCES
# ============================================================================

class TextRecordSource(Protocol):
    """Name service lookups the resolver needs."""

    async def get_text(self, name: str, key: str) -> Optional[str]:
        ...

    async def resolve_address(self, name: str) -> Optional[str]:
        """Owner address of the name, None if it is not registered."""
        ...


class StaticRecordSource:
    """
    In-memory record source, e.g. a local address book.

    Args:
        records: {name: {record_key: value, "address": "0x..."}}
    """

    def __init__(self, records: Optional[Dict[str, Dict[str, str]]] = None):
        self.records = {name.lower(): dict(values) for name, values in (records or {}).items()}

    async def get_text(self, name: str, key: str) -> Optional[str]:
        value = self.records.get(name.lower(), {}).get(key)
        return str(value) if value is not None else None

    async def resolve_address(self, name: str) -> Optional[str]:
        entry = self.records.get(name.lower())
        if entry is None:
            return None
        return entry.get("address", "0x" + "0" * 40)


def load_record_file(path: str) -> Optional[StaticRecordSource]:
    """
    Load an address book TOML file:

        [names."alice.fairdrop.eth"]
        "io.fairdrop.publickey" = "02ab..."
        "io.fairdrop.inbox.overlay" = "..."
    """
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except FileNotFoundError:
        return None
    except tomllib.TOMLDecodeError as e:
        print(f"Error: Invalid TOML syntax in {path}: {e}")
        return None

    names = data.get("names", {})
    if not isinstance(names, dict):
        return None
    return StaticRecordSource({name: values for name, values in names.items() if isinstance(values, dict)})


# ============================================================================
# HELPERS
# ============================================================================

def normalize_public_key(value: Optional[str]) -> Optional[bytes]:
    """Hex public key (66 or 130 chars, optional 0x) to bytes, else None."""
    if not value or not isinstance(value, str):
        return None
    clean = value.strip()
    if clean.startswith(("0x", "0X")):
        clean = clean[2:]
    if len(clean) not in (66, 130) or not _HEX_RE.match(clean):
        return None
    return bytes.fromhex(clean)


def is_ens_name(name: str) -> bool:
    if not name or not isinstance(name, str):
        return False
    parts = name.lower().split(".")
    if len(parts) < 2 or any(not part for part in parts):
        return False
    return parts[-1] in VALID_TLDS


async def _lookup(
    source: TextRecordSource,
    name: str,
    key: str,
    logger_handle: Optional[LoggerHandle]
) -> Optional[str]:
    """A failed lookup counts as a missing record."""
    try:
        return await source.get_text(name, key)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        log_warning(logger_handle, CONTEXT, f"Record {key} of {name} unavailable: {e}")
        return None


async def _exists(source: TextRecordSource, name: str, logger_handle: Optional[LoggerHandle]) -> bool:
    try:
        return await source.resolve_address(name) is not None
    except asyncio.CancelledError:
        raise
    except Exception as e:
        log_warning(logger_handle, CONTEXT, f"Address of {name} unavailable: {e}")
        return False


async def get_public_key(
    source: TextRecordSource,
    name: str,
    logger_handle: Optional[LoggerHandle] = None
) -> Optional[bytes]:
    return normalize_public_key(await _lookup(source, name, PUBLIC_KEY_RECORD, logger_handle))


async def get_inbox_params(
    source: TextRecordSource,
    name: str,
    logger_handle: Optional[LoggerHandle] = None
) -> Optional[InboxParams]:
    """
    Inbox parameters published for a name; the four records are fetched
    in parallel. Overlay and base identifier are required.
    """
    overlay, base_id, prox, public_key = await asyncio.gather(
        _lookup(source, name, INBOX_OVERLAY_RECORD, logger_handle),
        _lookup(source, name, INBOX_ID_RECORD, logger_handle),
        _lookup(source, name, INBOX_PROX_RECORD, logger_handle),
        get_public_key(source, name, logger_handle),
    )

    if not overlay or not base_id:
        return None

    try:
        proximity = int(prox) if prox else DEFAULT_PROXIMITY
    except ValueError:
        proximity = DEFAULT_PROXIMITY
    if proximity <= 0:
        proximity = DEFAULT_PROXIMITY

    return InboxParams(
        target_overlay=overlay,
        base_identifier=base_id,
        proximity=proximity,
        recipient_public_key=public_key,
    )


# ============================================================================
# RESOLVE RECIPIENT
# ============================================================================

async def _resolve_name(
    source: TextRecordSource,
    name: str,
    subdomain: bool,
    logger_handle: Optional[LoggerHandle]
) -> RecipientResolution:
    public_key, inbox_params = await asyncio.gather(
        get_public_key(source, name, logger_handle),
        get_inbox_params(source, name, logger_handle),
    )
    if public_key is not None:
        log_debug(logger_handle, CONTEXT, f"Resolved {name} with public key")
        return ResolvedWithKey(name=name, public_key=public_key,
                               inbox_params=inbox_params, subdomain=subdomain)

    if await _exists(source, name, logger_handle):
        log_debug(logger_handle, CONTEXT, f"{name} exists but has no public key")
        return ResolvedWithoutKey(name=name, subdomain=subdomain)

    return NotFound(query=name)


async def resolve_recipient(
    source: TextRecordSource,
    recipient: str,
    ens_domain: str = DEFAULT_ENS_DOMAIN,
    logger_handle: Optional[LoggerHandle] = None
) -> RecipientResolution:
    """
    Resolve a recipient string.

    Order: raw hex public key, full ENS name, bare username under
    ens_domain. Anything else is NotFound; empty input is InvalidRecipient.
    """
    if not recipient or not isinstance(recipient, str) or not recipient.strip():
        return InvalidRecipient(query=recipient or "")

    cleaned = recipient.strip()

    looks_like_key = (
        (cleaned.startswith("0x") and len(cleaned) == 68)
        or bool(_BARE_HEX_KEY_RE.match(cleaned))
    )
    if looks_like_key:
        public_key = normalize_public_key(cleaned)
        if public_key is None:
            log_error(logger_handle, CONTEXT, "Recipient rejected", "hex string is not a 33 or 65 byte key")
            return InvalidRecipient(query=cleaned)
        return DirectKey(public_key=public_key)

    if is_ens_name(cleaned):
        return await _resolve_name(source, cleaned.lower(), False, logger_handle)

    username = cleaned.lower()
    if _USERNAME_RE.match(username):
        return await _resolve_name(source, f"{username}.{ens_domain}", True, logger_handle)

    return NotFound(query=cleaned)
