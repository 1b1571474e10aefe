"""
envelope.py - Hybrid Encryption Envelope Codec for the Fairdrop Client

Seals a file for one recipient with a fresh ephemeral secp256k1 key, and
reads the binary envelope format used on the storage network. Uses the
cryptography package for the curve and pycryptodome for SHA-256/AES-GCM.

Scheme:
    shared  = ECDH(ephemeral_sk, recipient_pk)          (32-byte x coordinate)
    key     = SHA-256(shared)                           (AES-256)
    payload = AES-GCM(key, iv[12], plaintext, aad=ephemeral_pk) || tag[16]

    The ephemeral public key is bound as associated data: a compressed key
    with its prefix byte flipped names the negated point, which has the same
    x coordinate and would otherwise derive the same key.

Plaintext layout (little-endian):
    [u32 metadata_len][metadata JSON {name,type,size,timestamp}][file bytes]

Envelope wire layout (little-endian):
    [u32 pubKeyLen][pubKey][u32 ivLen][iv][ciphertext || tag]

Functions:
    generate_key_pair(compressed)                  -> KeyPair
    derive_shared_secret(private_key, public_key)  -> (CryptoErrorCode, bytes[32] or None)
    encrypt_file(recipient_pk, data, metadata)     -> (CryptoErrorCode, EncryptedEnvelope or None)
    decrypt_file(private_key, envelope)            -> (CryptoErrorCode, DecryptedFile or None)
    serialize_envelope(envelope)                   -> bytes
    deserialize_envelope(data)                     -> (CryptoErrorCode, EncryptedEnvelope or None)
    is_likely_encrypted(data)                      -> bool
    encrypt_sender_metadata(info, recipient_pk)    -> (CryptoErrorCode, EncryptedSenderMetadata or None)
    decrypt_sender_metadata(meta, private_key)     -> (CryptoErrorCode, SenderInfo or None)
"""

import json
import struct
import time
from typing import Optional, Tuple

from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from Crypto.Cipher import AES
from Crypto.Hash import SHA256
from Crypto.Random import get_random_bytes

from fairdrop_types import (
    CryptoErrorCode,
    KeyPair,
    EncryptedEnvelope,
    FileMetadata,
    DecryptedFile,
    SenderInfo,
    EncryptedSenderMetadata,
    VALID_PUBKEY_SIZES,
    PRIVATE_KEY_SIZE,
    AEAD_NONCE_SIZE,
    AEAD_TAG_SIZE,
)
from logger import log_error, log_debug, LoggerHandle


# ============================================================================
# CONSTANTS
# ============================================================================

CONTEXT = "Envelope"

LENGTH_FIELD_SIZE = 4
MIN_ENVELOPE_HEADER = LENGTH_FIELD_SIZE * 2
# 4 + 33 + 4 + 12 = 53 bytes of header; anything under 100 is treated as plain
MIN_LIKELY_ENCRYPTED_SIZE = 100

_CURVE = ec.SECP256K1()


# ============================================================================
# KEY HELPERS
# ============================================================================

def _load_private_key(private_key: bytes) -> Optional[ec.EllipticCurvePrivateKey]:
    """Raw 32-byte scalar to a key object, None when out of range."""
    if not isinstance(private_key, (bytes, bytearray)) or len(private_key) != PRIVATE_KEY_SIZE:
        return None
    try:
        return ec.derive_private_key(int.from_bytes(private_key, "big"), _CURVE)
    except ValueError:
        return None


def _load_public_key(public_key: bytes) -> Optional[ec.EllipticCurvePublicKey]:
    """SEC1 point (33 or 65 bytes) to a key object, None when not on the curve."""
    if not isinstance(public_key, (bytes, bytearray)) or len(public_key) not in VALID_PUBKEY_SIZES:
        return None
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(_CURVE, bytes(public_key))
    except ValueError:
        return None


def _public_bytes(key: ec.EllipticCurvePrivateKey, compressed: bool = True) -> bytes:
    fmt = PublicFormat.CompressedPoint if compressed else PublicFormat.UncompressedPoint
    return key.public_key().public_bytes(Encoding.X962, fmt)


def public_key_from_private(private_key: bytes, compressed: bool = True) -> Optional[bytes]:
    """Public key for a raw private key, None if the scalar is invalid."""
    key = _load_private_key(private_key)
    if key is None:
        return None
    return _public_bytes(key, compressed)


def generate_key_pair(compressed: bool = True) -> KeyPair:
    """Generate a secp256k1 keypair (33-byte compressed public key by default)."""
    key = ec.generate_private_key(_CURVE)
    scalar = key.private_numbers().private_value
    return KeyPair(
        public_key=_public_bytes(key, compressed),
        private_key=scalar.to_bytes(PRIVATE_KEY_SIZE, "big"),
    )


def _ecdh_key(
    private_key: ec.EllipticCurvePrivateKey,
    public_key: ec.EllipticCurvePublicKey
) -> bytes:
    shared_x = private_key.exchange(ec.ECDH(), public_key)
    return SHA256.new(shared_x).digest()


def derive_shared_secret(
    private_key: bytes,
    public_key: bytes,
    logger_handle: Optional[LoggerHandle] = None
) -> Tuple[CryptoErrorCode, Optional[bytes]]:
    """
    Derive the 32-byte symmetric key shared by two secp256k1 keys.

    Args:
        private_key: Raw 32-byte private scalar
        public_key: 33 or 65 byte SEC1 public key

    Returns:
        (SUCCESS, key) or (ERR_INVALID_KEY, None)
    """
    sk = _load_private_key(private_key)
    if sk is None:
        log_error(logger_handle, CONTEXT, "Shared secret failed", "invalid private key")
        return CryptoErrorCode.ERR_INVALID_KEY, None

    pk = _load_public_key(public_key)
    if pk is None:
        log_error(logger_handle, CONTEXT, "Shared secret failed", "invalid public key")
        return CryptoErrorCode.ERR_INVALID_KEY, None

    return CryptoErrorCode.SUCCESS, _ecdh_key(sk, pk)


# ============================================================================
# AEAD PRIMITIVES
# ============================================================================

def _seal(key: bytes, plaintext: bytes, aad: bytes) -> Tuple[bytes, bytes]:
    """AES-256-GCM encrypt; returns (iv, ciphertext || tag)."""
    iv = get_random_bytes(AEAD_NONCE_SIZE)
    cipher = AES.new(key, AES.MODE_GCM, nonce=iv, mac_len=AEAD_TAG_SIZE)
    cipher.update(aad)
    ciphertext, tag = cipher.encrypt_and_digest(plaintext)
    return iv, ciphertext + tag


def _open(key: bytes, iv: bytes, sealed: bytes, aad: bytes) -> Optional[bytes]:
    """AES-256-GCM decrypt; None when the tag does not verify."""
    if len(sealed) < AEAD_TAG_SIZE:
        return None
    cipher = AES.new(key, AES.MODE_GCM, nonce=iv, mac_len=AEAD_TAG_SIZE)
    cipher.update(aad)
    try:
        return cipher.decrypt_and_verify(sealed[:-AEAD_TAG_SIZE], sealed[-AEAD_TAG_SIZE:])
    except ValueError:
        return None


# ============================================================================
# FILE ENCRYPTION
# ============================================================================

def make_metadata(name: str, data: bytes, content_type: Optional[str] = None) -> FileMetadata:
    """Metadata for a file about to be sealed, stamped with the current time."""
    return FileMetadata(
        name=name,
        type=content_type or "application/octet-stream",
        size=len(data),
        timestamp=int(time.time() * 1000),
    )


def _pack_plaintext(data: bytes, metadata: FileMetadata) -> bytes:
    meta_bytes = json.dumps(metadata.to_dict(), separators=(",", ":")).encode("utf-8")
    return struct.pack("<I", len(meta_bytes)) + meta_bytes + data


def _unpack_plaintext(plaintext: bytes) -> Optional[DecryptedFile]:
    if len(plaintext) < LENGTH_FIELD_SIZE:
        return None
    meta_len = struct.unpack_from("<I", plaintext, 0)[0]
    end = LENGTH_FIELD_SIZE + meta_len
    if end > len(plaintext):
        return None
    try:
        meta = json.loads(plaintext[LENGTH_FIELD_SIZE:end].decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    if not isinstance(meta, dict):
        return None
    try:
        metadata = FileMetadata.from_dict(meta)
    except (TypeError, ValueError):
        return None
    return DecryptedFile(data=plaintext[end:], metadata=metadata)


def encrypt_file(
    recipient_public_key: bytes,
    data: bytes,
    metadata: FileMetadata,
    logger_handle: Optional[LoggerHandle] = None
) -> Tuple[CryptoErrorCode, Optional[EncryptedEnvelope]]:
    """
    Seal a file for a recipient.

    A new ephemeral keypair is generated per call and its private half is
    discarded before returning.

    Args:
        recipient_public_key: Recipient's 33 or 65 byte public key
        data: File contents
        metadata: Name, MIME type, size and timestamp sealed with the data

    Returns:
        (SUCCESS, EncryptedEnvelope) or (ERR_INVALID_KEY, None)
    """
    recipient = _load_public_key(recipient_public_key)
    if recipient is None:
        log_error(logger_handle, CONTEXT, "Encrypt failed", "invalid recipient public key")
        return CryptoErrorCode.ERR_INVALID_KEY, None

    ephemeral = ec.generate_private_key(_CURVE)
    ephemeral_public = _public_bytes(ephemeral, compressed=True)
    key = _ecdh_key(ephemeral, recipient)
    del ephemeral

    iv, ciphertext = _seal(key, _pack_plaintext(bytes(data), metadata), ephemeral_public)

    log_debug(logger_handle, CONTEXT, f"Encrypted {len(data)} bytes ({metadata.name})")
    return CryptoErrorCode.SUCCESS, EncryptedEnvelope(
        ephemeral_public_key=ephemeral_public,
        iv=iv,
        ciphertext=ciphertext,
    )


def decrypt_file(
    private_key: bytes,
    envelope: EncryptedEnvelope,
    logger_handle: Optional[LoggerHandle] = None
) -> Tuple[CryptoErrorCode, Optional[DecryptedFile]]:
    """
    Open an envelope with the recipient's private key.

    Returns:
        (SUCCESS, DecryptedFile)
        (ERR_MALFORMED_ENVELOPE, None) - key or iv length wrong
        (ERR_INVALID_KEY, None)        - private key is not a valid scalar
        (ERR_DECRYPTION_FAILED, None)  - wrong key, wrong recipient, tampered
                                         data or ciphertext shorter than the tag
        (ERR_INVALID_PAYLOAD, None)    - authenticated but metadata header broken
    """
    if not envelope.is_valid():
        log_error(logger_handle, CONTEXT, "Decrypt failed", "malformed envelope")
        return CryptoErrorCode.ERR_MALFORMED_ENVELOPE, None

    sk = _load_private_key(private_key)
    if sk is None:
        log_error(logger_handle, CONTEXT, "Decrypt failed", "invalid private key")
        return CryptoErrorCode.ERR_INVALID_KEY, None

    # A corrupted ephemeral key usually stops being a curve point
    pk = _load_public_key(envelope.ephemeral_public_key)
    if pk is None:
        log_error(logger_handle, CONTEXT, "Decrypt failed", "ephemeral key is not a curve point")
        return CryptoErrorCode.ERR_DECRYPTION_FAILED, None

    plaintext = _open(_ecdh_key(sk, pk), envelope.iv, envelope.ciphertext, envelope.ephemeral_public_key)
    if plaintext is None:
        log_error(logger_handle, CONTEXT, "Decrypt failed", "authentication tag mismatch")
        return CryptoErrorCode.ERR_DECRYPTION_FAILED, None

    result = _unpack_plaintext(plaintext)
    if result is None:
        log_error(logger_handle, CONTEXT, "Decrypt failed", "invalid metadata header")
        return CryptoErrorCode.ERR_INVALID_PAYLOAD, None

    log_debug(logger_handle, CONTEXT, f"Decrypted {len(result.data)} bytes ({result.metadata.name})")
    return CryptoErrorCode.SUCCESS, result


# ============================================================================
# WIRE FORMAT
# ============================================================================

def serialize_envelope(envelope: EncryptedEnvelope) -> bytes:
    """Encode an envelope as [u32 pkLen][pk][u32 ivLen][iv][ciphertext]."""
    return b"".join([
        struct.pack("<I", len(envelope.ephemeral_public_key)),
        bytes(envelope.ephemeral_public_key),
        struct.pack("<I", len(envelope.iv)),
        bytes(envelope.iv),
        bytes(envelope.ciphertext),
    ])


def deserialize_envelope(
    data: bytes,
    logger_handle: Optional[LoggerHandle] = None
) -> Tuple[CryptoErrorCode, Optional[EncryptedEnvelope]]:
    """
    Decode an envelope; never attempts decryption.

    Returns:
        (SUCCESS, EncryptedEnvelope) or (ERR_MALFORMED_ENVELOPE, None)
    """
    if data is None or len(data) < MIN_ENVELOPE_HEADER:
        log_error(logger_handle, CONTEXT, "Deserialize failed", "shorter than 8 bytes")
        return CryptoErrorCode.ERR_MALFORMED_ENVELOPE, None

    pk_len = struct.unpack_from("<I", data, 0)[0]
    offset = LENGTH_FIELD_SIZE
    if pk_len not in VALID_PUBKEY_SIZES or offset + pk_len + LENGTH_FIELD_SIZE > len(data):
        log_error(logger_handle, CONTEXT, "Deserialize failed", f"bad public key length {pk_len}")
        return CryptoErrorCode.ERR_MALFORMED_ENVELOPE, None
    public_key = bytes(data[offset:offset + pk_len])
    offset += pk_len

    iv_len = struct.unpack_from("<I", data, offset)[0]
    offset += LENGTH_FIELD_SIZE
    if iv_len != AEAD_NONCE_SIZE or offset + iv_len > len(data):
        log_error(logger_handle, CONTEXT, "Deserialize failed", f"bad iv length {iv_len}")
        return CryptoErrorCode.ERR_MALFORMED_ENVELOPE, None
    iv = bytes(data[offset:offset + iv_len])
    offset += iv_len

    return CryptoErrorCode.SUCCESS, EncryptedEnvelope(
        ephemeral_public_key=public_key,
        iv=iv,
        ciphertext=bytes(data[offset:]),
    )


def is_likely_encrypted(data: bytes) -> bool:
    """
    Best-effort check that a downloaded blob is an envelope.

    True only for buffers of at least 100 bytes whose first length field is
    33 or 65 and whose iv length field is in bounds and equal to 12. A
    crafted plaintext can pass; a failed decrypt afterwards is inconclusive.
    """
    if data is None or len(data) < MIN_LIKELY_ENCRYPTED_SIZE:
        return False

    pk_len = struct.unpack_from("<I", data, 0)[0]
    if pk_len not in VALID_PUBKEY_SIZES:
        return False

    iv_offset = LENGTH_FIELD_SIZE + pk_len
    if iv_offset + LENGTH_FIELD_SIZE > len(data):
        return False

    return struct.unpack_from("<I", data, iv_offset)[0] == AEAD_NONCE_SIZE


# ============================================================================
# SENDER METADATA (encrypted send)
# ============================================================================

def encrypt_sender_metadata(
    sender_info: SenderInfo,
    recipient_public_key: bytes,
    logger_handle: Optional[LoggerHandle] = None
) -> Tuple[CryptoErrorCode, Optional[EncryptedSenderMetadata]]:
    """
    Seal sender details so only the recipient learns who sent a file.

    Returns:
        (SUCCESS, EncryptedSenderMetadata) with hex fields, or (ERR_INVALID_KEY, None)
    """
    recipient = _load_public_key(recipient_public_key)
    if recipient is None:
        log_error(logger_handle, CONTEXT, "Sender metadata encrypt failed", "invalid recipient public key")
        return CryptoErrorCode.ERR_INVALID_KEY, None

    ephemeral = ec.generate_private_key(_CURVE)
    ephemeral_public = _public_bytes(ephemeral, compressed=True)
    key = _ecdh_key(ephemeral, recipient)

    payload = json.dumps(sender_info.to_dict(), separators=(",", ":")).encode("utf-8")
    iv, ciphertext = _seal(key, payload, ephemeral_public)

    return CryptoErrorCode.SUCCESS, EncryptedSenderMetadata(
        ephemeral_public_key=ephemeral_public.hex(),
        ciphertext=ciphertext.hex(),
        iv=iv.hex(),
    )


def decrypt_sender_metadata(
    meta: EncryptedSenderMetadata,
    private_key: bytes,
    logger_handle: Optional[LoggerHandle] = None
) -> Tuple[CryptoErrorCode, Optional[SenderInfo]]:
    """Open sealed sender details; same error codes as decrypt_file()."""
    try:
        ephemeral_public = bytes.fromhex(meta.ephemeral_public_key)
        ciphertext = bytes.fromhex(meta.ciphertext)
        iv = bytes.fromhex(meta.iv)
    except ValueError:
        log_error(logger_handle, CONTEXT, "Sender metadata decrypt failed", "invalid hex")
        return CryptoErrorCode.ERR_MALFORMED_ENVELOPE, None

    if len(ephemeral_public) not in VALID_PUBKEY_SIZES or len(iv) != AEAD_NONCE_SIZE:
        return CryptoErrorCode.ERR_MALFORMED_ENVELOPE, None

    sk = _load_private_key(private_key)
    if sk is None:
        return CryptoErrorCode.ERR_INVALID_KEY, None

    pk = _load_public_key(ephemeral_public)
    if pk is None:
        return CryptoErrorCode.ERR_DECRYPTION_FAILED, None

    plaintext = _open(_ecdh_key(sk, pk), iv, ciphertext, ephemeral_public)
    if plaintext is None:
        log_error(logger_handle, CONTEXT, "Sender metadata decrypt failed", "authentication tag mismatch")
        return CryptoErrorCode.ERR_DECRYPTION_FAILED, None

    try:
        data = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return CryptoErrorCode.ERR_INVALID_PAYLOAD, None
    if not isinstance(data, dict):
        return CryptoErrorCode.ERR_INVALID_PAYLOAD, None

    return CryptoErrorCode.SUCCESS, SenderInfo.from_dict(data)
