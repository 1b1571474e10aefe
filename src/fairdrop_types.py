"""
fairdrop_types.py - Core Type Definitions for the Fairdrop Client

This module defines the error codes, data structures and state machine types
shared by the envelope codec, inbox poller/subscriber and message store.

Version: 1.0.0

Sections:
    1. Error codes
    2. Crypto / envelope types
    3. Inbox feed types
    4. Application message types
    5. Recipient resolution (tagged union)
    6. Subscription state machine
    7. Configuration
"""

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Union


# ============================================================================
# 1. ERROR CODES
# ============================================================================

class CryptoErrorCode(IntEnum):
    """
    Error codes for envelope encryption and decryption.

    ERR_DECRYPTION_FAILED is the DecryptionError condition: the AEAD tag did
    not verify (wrong key, wrong recipient or tampered data). It is never
    returned for an envelope that could not be parsed.
    """
    SUCCESS = 0
    ERR_INVALID_KEY = 1
    ERR_ENCRYPTION_FAILED = 2
    ERR_DECRYPTION_FAILED = 3
    ERR_MALFORMED_ENVELOPE = 4
    ERR_INVALID_PAYLOAD = 5


class StorageErrorCode(IntEnum):
    """Error codes for the content-addressed storage client."""
    SUCCESS = 0
    ERR_INVALID_PARAM = 1
    ERR_NOT_FOUND = 2
    ERR_NETWORK = 3
    ERR_TIMEOUT = 4
    ERR_SERVER_ERROR = 5
    ERR_NO_STAMP = 6
    ERR_INVALID_RESPONSE = 7


class InboxErrorCode(IntEnum):
    """Error codes for inbox polling, subscription and sync."""
    SUCCESS = 0
    ERR_INVALID_PARAM = 1
    ERR_NETWORK = 2
    ERR_INVALID_MESSAGE = 3
    ERR_DATABASE = 4
    ERR_NOT_RUNNING = 5
    ERR_NO_POLLER = 6


class DatabaseErrorCode(IntEnum):
    """Error codes for the local message database."""
    SUCCESS = 0
    ERR_OPEN_FAILED = 1
    ERR_CLOSE_FAILED = 2
    ERR_QUERY_FAILED = 3
    ERR_NOT_FOUND = 4
    ERR_INVALID_PARAM = 5
    ERR_CONSTRAINT = 6
    ERR_IO = 7


class TransferErrorCode(IntEnum):
    """Error codes for sending and receiving files."""
    SUCCESS = 0
    ERR_INVALID_PARAM = 1
    ERR_ENCRYPTION_FAILED = 2
    ERR_STORAGE = 3
    ERR_NEEDS_KEY = 4
    ERR_DECRYPTION_FAILED = 5
    ERR_INVALID_PAYLOAD = 6
    ERR_INBOX = 7


# ============================================================================
# 2. CRYPTO / ENVELOPE TYPES
# ============================================================================

COMPRESSED_PUBKEY_SIZE = 33
UNCOMPRESSED_PUBKEY_SIZE = 65
VALID_PUBKEY_SIZES = (COMPRESSED_PUBKEY_SIZE, UNCOMPRESSED_PUBKEY_SIZE)
PRIVATE_KEY_SIZE = 32
AEAD_NONCE_SIZE = 12
AEAD_TAG_SIZE = 16


@dataclass
class KeyPair:
    """secp256k1 keypair owned by the local identity."""
    public_key: bytes
    private_key: bytes

    def public_key_hex(self) -> str:
        return self.public_key.hex()


@dataclass
class EncryptedEnvelope:
    """
    Self-describing encrypted payload.

    Wire layout (little-endian):
        [u32 pubKeyLen][pubKey][u32 ivLen][iv][ciphertext || tag]
    """
    ephemeral_public_key: bytes
    iv: bytes
    ciphertext: bytes

    def is_valid(self) -> bool:
        """True when the key and nonce lengths match an encrypted payload."""
        return (
            len(self.ephemeral_public_key) in VALID_PUBKEY_SIZES
            and len(self.iv) == AEAD_NONCE_SIZE
        )


@dataclass
class FileMetadata:
    """Metadata sealed inside the envelope next to the file bytes."""
    name: str
    type: str = "application/octet-stream"
    size: int = 0
    timestamp: int = 0  # milliseconds since epoch

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "size": self.size,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileMetadata":
        return cls(
            name=str(data.get("name", "")),
            type=str(data.get("type") or "application/octet-stream"),
            size=int(data.get("size", 0)),
            timestamp=int(data.get("timestamp", 0)),
        )


@dataclass
class DecryptedFile:
    """Result of a successful envelope decryption."""
    data: bytes
    metadata: FileMetadata


@dataclass
class ReceivedFile:
    """
    A downloaded blob and what could be learned about it.

    needs_key: looked encrypted but no private key was supplied
    inconclusive: looked encrypted but did not decrypt; it may be a
        plaintext file that happens to match the envelope header
    """
    data: bytes
    metadata: Optional[FileMetadata] = None
    encrypted: bool = False
    needs_key: bool = False
    inconclusive: bool = False


@dataclass
class SenderInfo:
    """Sender details carried in encrypted form inside a GSOC message."""
    sender: str
    filename: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {"from": self.sender}
        if self.filename is not None:
            result["filename"] = self.filename
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SenderInfo":
        return cls(sender=str(data.get("from", "")), filename=data.get("filename"))


@dataclass
class EncryptedSenderMetadata:
    """Hex-encoded sealed SenderInfo (Mode 1, encrypted send)."""
    ephemeral_public_key: str
    ciphertext: str
    iv: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "ephemeralPublicKey": self.ephemeral_public_key,
            "ciphertext": self.ciphertext,
            "iv": self.iv,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EncryptedSenderMetadata":
        return cls(
            ephemeral_public_key=str(data["ephemeralPublicKey"]),
            ciphertext=str(data["ciphertext"]),
            iv=str(data["iv"]),
        )


# ============================================================================
# 3. INBOX FEED TYPES
# ============================================================================

DEFAULT_PROXIMITY = 16


@dataclass
class InboxParams:
    """
    Location of a recipient's inbox in the overlay address space.

    target_overlay and base_identifier are hex strings (with or without 0x).
    proximity bounds how many leading address bits the inbox key must share
    with the target overlay.
    """
    target_overlay: str
    base_identifier: str
    proximity: int = DEFAULT_PROXIMITY
    recipient_public_key: Optional[bytes] = None

    def is_valid(self) -> bool:
        return bool(self.target_overlay) and bool(self.base_identifier) and 0 <= self.proximity <= 255

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "targetOverlay": self.target_overlay,
            "baseIdentifier": self.base_identifier,
            "proximity": self.proximity,
        }
        if self.recipient_public_key is not None:
            result["recipientPublicKey"] = self.recipient_public_key.hex()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["InboxParams"]:
        """Build params from a dict; None when a required field is missing."""
        overlay = data.get("targetOverlay") or data.get("target_overlay")
        base_id = data.get("baseIdentifier") or data.get("base_identifier")
        if not overlay or not base_id:
            return None

        proximity = data.get("proximity")
        if proximity is None:
            proximity = DEFAULT_PROXIMITY
        try:
            proximity = int(proximity)
        except (TypeError, ValueError):
            proximity = DEFAULT_PROXIMITY

        pubkey = data.get("recipientPublicKey") or data.get("recipient_public_key")
        if isinstance(pubkey, str):
            try:
                pubkey = bytes.fromhex(pubkey[2:] if pubkey.startswith("0x") else pubkey)
            except ValueError:
                pubkey = None

        return cls(
            target_overlay=str(overlay),
            base_identifier=str(base_id),
            proximity=proximity,
            recipient_public_key=pubkey,
        )


@dataclass
class GSOCMessage:
    """Feed-level descriptor written into an inbox slot."""
    reference: str
    timestamp: int
    version: int = 1
    index: Optional[int] = None
    encrypted_meta: Optional[EncryptedSenderMetadata] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "version": self.version,
            "reference": self.reference,
            "timestamp": self.timestamp,
        }
        if self.encrypted_meta is not None:
            result["encryptedMeta"] = self.encrypted_meta.to_dict()
        if self.index is not None:
            result["index"] = self.index
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GSOCMessage":
        meta = data.get("encryptedMeta")
        return cls(
            reference=str(data["reference"]),
            timestamp=int(data.get("timestamp", 0)),
            version=int(data.get("version", 1)),
            index=data.get("index"),
            encrypted_meta=EncryptedSenderMetadata.from_dict(meta) if meta else None,
        )


# ============================================================================
# 4. APPLICATION MESSAGE TYPES
# ============================================================================

class MessageFolder(str, Enum):
    """Per-account message folders."""
    RECEIVED = "received"
    SENT = "sent"
    STORED = "stored"


PLACEHOLDER_FILENAME = "Encrypted file"


@dataclass
class Message:
    """Persisted, application-level view of a delivered file."""
    reference: str
    filename: str
    size: int
    timestamp: int
    encrypted: bool
    sender: Optional[str] = None
    recipient: Optional[str] = None

    @classmethod
    def placeholder(cls, gsoc_message: GSOCMessage) -> "Message":
        """Placeholder for a descriptor whose payload has not been fetched yet."""
        return cls(
            reference=gsoc_message.reference,
            filename=PLACEHOLDER_FILENAME,
            size=0,
            timestamp=gsoc_message.timestamp,
            encrypted=True,
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "reference": self.reference,
            "filename": self.filename,
            "size": self.size,
            "timestamp": self.timestamp,
            "encrypted": self.encrypted,
        }
        if self.sender is not None:
            result["from"] = self.sender
        if self.recipient is not None:
            result["to"] = self.recipient
        return result


# ============================================================================
# 5. RECIPIENT RESOLUTION (tagged union)
# ============================================================================

class ResolutionKind(IntEnum):
    """The three outcomes callers act on."""
    WITH_KEY = 0
    WITHOUT_KEY = 1
    NOT_FOUND = 2


@dataclass(frozen=True)
class DirectKey:
    """The recipient string was itself a public key."""
    public_key: bytes


@dataclass(frozen=True)
class ResolvedWithKey:
    """A name resolved to a published public key (and maybe an inbox)."""
    name: str
    public_key: bytes
    inbox_params: Optional[InboxParams] = None
    subdomain: bool = False


@dataclass(frozen=True)
class ResolvedWithoutKey:
    """The name exists but has no usable public key record."""
    name: str
    subdomain: bool = False


@dataclass(frozen=True)
class NotFound:
    query: str


@dataclass(frozen=True)
class InvalidRecipient:
    query: str


RecipientResolution = Union[DirectKey, ResolvedWithKey, ResolvedWithoutKey, NotFound, InvalidRecipient]


def resolution_kind(resolution: RecipientResolution) -> ResolutionKind:
    """Collapse a resolution to the tri-state the send flow branches on."""
    if isinstance(resolution, (DirectKey, ResolvedWithKey)):
        return ResolutionKind.WITH_KEY
    if isinstance(resolution, ResolvedWithoutKey):
        return ResolutionKind.WITHOUT_KEY
    return ResolutionKind.NOT_FOUND


# ============================================================================
# 6. SUBSCRIPTION STATE MACHINE
# ============================================================================

class SubscriptionState(IntEnum):
    IDLE = 0
    CONNECTING = 1
    CONNECTED = 2
    RECONNECT_PENDING = 3
    CLOSED = 4


class SubscriptionEventType(IntEnum):
    CONNECTING = 0
    CONNECTED = 1
    MESSAGE_RECEIVED = 2
    ERROR = 3
    CLOSED = 4
    RECONNECT_SCHEDULED = 5
    CANCELLED = 6
    GAVE_UP = 7


@dataclass(frozen=True)
class SubscriptionEvent:
    """One transition input for the subscription reducer."""
    type: SubscriptionEventType
    message: Optional[GSOCMessage] = None
    error: Optional[BaseException] = None


@dataclass(frozen=True)
class SubscriptionStatus:
    """Immutable snapshot of a subscriber's state."""
    state: SubscriptionState = SubscriptionState.IDLE
    error: Optional[str] = None
    message_count: int = 0
    reconnect_attempts: int = 0

    @property
    def is_connected(self) -> bool:
        return self.state == SubscriptionState.CONNECTED

    @property
    def is_connecting(self) -> bool:
        return self.state == SubscriptionState.CONNECTING


# ============================================================================
# 7. CONFIGURATION
# ============================================================================

@dataclass
class PathsConfig:
    db_path: str = "Data/fairdrop.db"
    log_path: str = "Data/fairdrop.mlog"
    download_path: str = "Data/Downloads"


@dataclass
class StorageConfig:
    bee_url: str = "http://localhost:1633"
    gateway_urls: List[str] = field(default_factory=lambda: [
        "https://bee-1.fairdatasociety.org",
        "https://gateway.fairdatasociety.org",
    ])
    stamp_id: Optional[str] = None
    timeout_sec: int = 30


@dataclass
class InboxConfig:
    batch_size: int = 5
    max_scan: int = 20
    max_empty_batches: int = 2


@dataclass
class SubscriberConfig:
    auto_reconnect: bool = True
    reconnect_delay_ms: int = 5000
    backoff_multiplier: float = 1.0
    max_reconnect_delay_ms: int = 60000
    max_reconnect_attempts: int = 0  # 0 = unlimited
    resume_from_last_index: bool = False
    queue_size: int = 256


@dataclass
class ResolverConfig:
    ens_domain: str = "fairdrop.eth"


@dataclass
class LoggingConfig:
    level: str = "info"
    max_size_mb: int = 10
    backup_count: int = 5
    console: bool = False


@dataclass
class FairdropConfig:
    """Top-level client configuration (config/fairdrop.toml)."""
    paths: PathsConfig = field(default_factory=PathsConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    inbox: InboxConfig = field(default_factory=InboxConfig)
    subscriber: SubscriberConfig = field(default_factory=SubscriberConfig)
    resolver: ResolverConfig = field(default_factory=ResolverConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


@dataclass
class ValidationResult:
    """Outcome of validate_config()."""
    is_valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        self.is_valid = False

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)
