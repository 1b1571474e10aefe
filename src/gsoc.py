"""
gsoc.py - Inbox Feed Addressing for the Fairdrop Client

An inbox is a run of single-owner chunks (SOCs) that every sender writes
with the same mined key. The key is found deterministically from the
recipient's published parameters, so senders and the recipient agree on
the owner address without exchanging secrets.

    slot identifier(i) = keccak256(base_identifier || utf8(str(i)))
    soc address        = keccak256(identifier || owner_eth_address)
    owner key          = first scalar >= 0xb33 whose SOC address for the
                         base identifier shares `proximity` leading bits
                         with the target overlay

Functions:
    keccak256(data)                                    -> bytes[32]
    get_indexed_identifier(base_identifier, index)     -> bytes[32]
    mine_inbox_key(target_overlay, base_id, proximity) -> int or None
    get_inbox_owner(params)                            -> bytes[20] or None
    make_soc_address(identifier, owner)                -> bytes[32]
    get_slot_address(params, index)                    -> bytes[32] or None
    new_base_identifier()                              -> str
    create_inbox_params(target_overlay, proximity)     -> (InboxErrorCode, InboxParams or None)
    content_address(payload)                           -> bytes[32]
    sign_digest(private_value, digest)                 -> bytes[65]
    recover_signer(digest, signature)                  -> bytes[20] or None
    make_inbox_chunk(private_value, identifier, data)  -> (owner, signature, span || data)
    parse_gsoc_payload(raw)                            -> (InboxErrorCode, GSOCMessage or None)
    encode_gsoc_message(message)                       -> bytes
"""

import json
import os
import struct
import time
from functools import lru_cache
from typing import Optional, Tuple, Union

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed, decode_dss_signature
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from Crypto.Hash import keccak

from fairdrop_types import InboxErrorCode, InboxParams, GSOCMessage, DEFAULT_PROXIMITY
from logger import log_debug, log_error, LoggerHandle


# ============================================================================
# CONSTANTS
# ============================================================================

CONTEXT = "Gsoc"

INBOX_PREFIX = "fairdrop-inbox-v2"

MINE_START = 0xB33
MINE_ATTEMPTS = 0xFFFF

ADDRESS_BITS = 256

# SOC chunk as returned by GET /chunks/{address}
SOC_IDENTIFIER_SIZE = 32
SOC_SIGNATURE_SIZE = 65
SOC_SPAN_SIZE = 8
SOC_HEADER_SIZE = SOC_IDENTIFIER_SIZE + SOC_SIGNATURE_SIZE + SOC_SPAN_SIZE

CHUNK_PAYLOAD_SIZE = 4096
BMT_SEGMENT_SIZE = 32

ETH_MESSAGE_PREFIX = b"\x19Ethereum Signed Message:\n32"

MESSAGE_MARKER = '{"version":'


# ============================================================================
# HASHING / ADDRESSING
# ============================================================================

def keccak256(data: bytes) -> bytes:
    return keccak.new(digest_bits=256, data=bytes(data)).digest()


def hex_to_bytes(value: Union[str, bytes]) -> bytes:
    """Accept raw bytes or a hex string with or without 0x."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = value.strip()
    if text.startswith(("0x", "0X")):
        text = text[2:]
    return bytes.fromhex(text)


def get_indexed_identifier(base_identifier: Union[str, bytes], index: int) -> bytes:
    """Identifier of inbox slot `index`; each message lives in its own slot."""
    return keccak256(hex_to_bytes(base_identifier) + str(index).encode("utf-8"))


def make_soc_address(identifier: bytes, owner: bytes) -> bytes:
    return keccak256(identifier + owner)


def owner_address(private_value: int) -> bytes:
    key = ec.derive_private_key(private_value, ec.SECP256K1())
    point = key.public_key().public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)
    return keccak256(point[1:])[-20:]


def _common_prefix_bits(a: bytes, b: bytes, max_bits: int = ADDRESS_BITS) -> int:
    """Number of leading bits a and b share, capped at max_bits."""
    for i in range(min(len(a), len(b))):
        diff = a[i] ^ b[i]
        if diff:
            return min(i * 8 + (8 - diff.bit_length()), max_bits)
    return max_bits


# ============================================================================
# KEY MINING
# ============================================================================

@lru_cache(maxsize=32)
def _mine(target_overlay: bytes, base_identifier: bytes, proximity: int) -> Optional[int]:
    for value in range(MINE_START, MINE_START + MINE_ATTEMPTS):
        address = make_soc_address(base_identifier, owner_address(value))
        if _common_prefix_bits(address, target_overlay) >= proximity:
            return value
    return None


def mine_inbox_key(
    target_overlay: Union[str, bytes],
    base_identifier: Union[str, bytes],
    proximity: int = DEFAULT_PROXIMITY
) -> Optional[int]:
    """
    Find the inbox private key for a set of published parameters.

    The search is deterministic, so every sender finds the same key.
    Results are cached per (overlay, identifier, proximity).

    Returns:
        The private scalar, or None if no key in the search window qualifies
        or the parameters are not valid hex.
    """
    try:
        overlay = hex_to_bytes(target_overlay)
        base_id = hex_to_bytes(base_identifier)
    except ValueError:
        return None
    return _mine(overlay, base_id, int(proximity))


def get_inbox_owner(params: InboxParams) -> Optional[bytes]:
    """20-byte Ethereum address owning every slot of the inbox."""
    value = mine_inbox_key(params.target_overlay, params.base_identifier, params.proximity)
    if value is None:
        return None
    return owner_address(value)


def get_slot_address(params: InboxParams, index: int) -> Optional[bytes]:
    """SOC address of inbox slot `index`, None when no owner key exists."""
    owner = get_inbox_owner(params)
    if owner is None:
        return None
    return make_soc_address(get_indexed_identifier(params.base_identifier, index), owner)


def new_base_identifier() -> str:
    """Fresh 0x-prefixed base identifier for a recipient creating an inbox."""
    seed = f"{INBOX_PREFIX}{int(time.time() * 1000)}{os.urandom(16).hex()}"
    return "0x" + keccak256(seed.encode("utf-8")).hex()


def create_inbox_params(
    target_overlay: str,
    proximity: int = DEFAULT_PROXIMITY,
    recipient_public_key: Optional[bytes] = None,
    logger_handle: Optional[LoggerHandle] = None
) -> Tuple[InboxErrorCode, Optional[InboxParams]]:
    """
    Create inbox parameters for a recipient and confirm a key can be mined.

    A fresh base identifier is tried a few times, since a given identifier
    may have no qualifying key in the search window.
    """
    try:
        hex_to_bytes(target_overlay)
    except ValueError:
        log_error(logger_handle, CONTEXT, "Create inbox failed", "target overlay is not hex")
        return InboxErrorCode.ERR_INVALID_PARAM, None

    for _ in range(4):
        params = InboxParams(
            target_overlay=target_overlay,
            base_identifier=new_base_identifier(),
            proximity=proximity,
            recipient_public_key=recipient_public_key,
        )
        if mine_inbox_key(params.target_overlay, params.base_identifier, proximity) is not None:
            log_debug(logger_handle, CONTEXT, f"Mined inbox key for {params.base_identifier[:18]}")
            return InboxErrorCode.SUCCESS, params

    log_error(logger_handle, CONTEXT, "Create inbox failed", f"no key within proximity {proximity}")
    return InboxErrorCode.ERR_INVALID_PARAM, None


# ============================================================================
# SOC SIGNING
# ============================================================================

# secp256k1 domain, for the recovery byte of SOC signatures
_P = 2 ** 256 - 2 ** 32 - 977
_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
_G = (0x79BE667EF9DCBBAC55A06295CE870B07029BFCDB2DCE28D959F2815B16F81798,
      0x483ADA7726A3C4655DA4FBFC0E1108A8FD17B448A68554199C47D08FFB10D4B8)

Point = Optional[Tuple[int, int]]


def _point_add(a: Point, b: Point) -> Point:
    if a is None:
        return b
    if b is None:
        return a
    if a[0] == b[0] and (a[1] + b[1]) % _P == 0:
        return None
    if a == b:
        slope = 3 * a[0] * a[0] * pow(2 * a[1], -1, _P) % _P
    else:
        slope = (b[1] - a[1]) * pow(b[0] - a[0], -1, _P) % _P
    x = (slope * slope - a[0] - b[0]) % _P
    return x, (slope * (a[0] - x) - a[1]) % _P


def _point_mul(k: int, point: Point) -> Point:
    result = None
    while k:
        if k & 1:
            result = _point_add(result, point)
        point = _point_add(point, point)
        k >>= 1
    return result


def _recover_point(digest: bytes, r: int, s: int, recovery: int) -> Point:
    """Public point that produced (r, s) over digest, for one R parity."""
    y_squared = (pow(r, 3, _P) + 7) % _P
    y = pow(y_squared, (_P + 1) // 4, _P)
    if (y * y) % _P != y_squared:
        return None
    if y & 1 != recovery:
        y = _P - y
    e = int.from_bytes(digest, "big") % _N
    r_inv = pow(r, -1, _N)
    return _point_add(_point_mul(s * r_inv % _N, (r, y)), _point_mul(-e * r_inv % _N, _G))


def make_span(length: int) -> bytes:
    return struct.pack("<Q", length)


def bmt_root(payload: bytes) -> bytes:
    """Binary Merkle root of a chunk payload zero-padded to 4096 bytes."""
    if len(payload) > CHUNK_PAYLOAD_SIZE:
        raise ValueError(f"chunk payload exceeds {CHUNK_PAYLOAD_SIZE} bytes")
    data = bytes(payload).ljust(CHUNK_PAYLOAD_SIZE, b"\x00")
    level = [data[i:i + BMT_SEGMENT_SIZE] for i in range(0, len(data), BMT_SEGMENT_SIZE)]
    while len(level) > 1:
        level = [keccak256(level[i] + level[i + 1]) for i in range(0, len(level), 2)]
    return level[0]


def content_address(payload: bytes) -> bytes:
    """Address of a content-addressed chunk: keccak256(span || bmt root)."""
    return keccak256(make_span(len(payload)) + bmt_root(payload))


def sign_digest(private_value: int, digest: bytes) -> bytes:
    """
    Ethereum-style signature (r || s || v, v in {27, 28}) over
    keccak256("\\x19Ethereum Signed Message:\\n32" || digest).
    """
    prefixed = keccak256(ETH_MESSAGE_PREFIX + digest)
    key = ec.derive_private_key(private_value, ec.SECP256K1())
    r, s = decode_dss_signature(key.sign(prefixed, ec.ECDSA(Prehashed(hashes.SHA256()))))
    if s > _N // 2:
        s = _N - s

    owner = owner_address(private_value)
    for recovery in (0, 1):
        signature = r.to_bytes(32, "big") + s.to_bytes(32, "big") + bytes([27 + recovery])
        if recover_signer(digest, signature) == owner:
            return signature
    raise ValueError("signature recovery failed")


def recover_signer(digest: bytes, signature: bytes) -> Optional[bytes]:
    """Ethereum address that produced a sign_digest() signature, None if invalid."""
    if len(signature) != SOC_SIGNATURE_SIZE or signature[64] not in (27, 28):
        return None
    r = int.from_bytes(signature[:32], "big")
    s = int.from_bytes(signature[32:64], "big")
    if not (0 < r < _N and 0 < s < _N):
        return None
    point = _recover_point(keccak256(ETH_MESSAGE_PREFIX + digest), r, s, signature[64] - 27)
    if point is None:
        return None
    return keccak256(point[0].to_bytes(32, "big") + point[1].to_bytes(32, "big"))[-20:]


def make_inbox_chunk(
    private_value: int,
    identifier: bytes,
    payload: bytes
) -> Tuple[bytes, bytes, bytes]:
    """
    Build a single-owner chunk for one inbox slot.

    Returns:
        (owner address, signature, span || payload) as uploaded with
        POST /soc/{owner}/{identifier}?sig={signature}
    """
    signature = sign_digest(private_value, keccak256(identifier + content_address(payload)))
    return owner_address(private_value), signature, make_span(len(payload)) + bytes(payload)


# ============================================================================
# PAYLOAD ENCODING
# ============================================================================

def _balanced_object(text: str, start: int) -> Optional[str]:
    depth = 0
    for i in range(start, len(text)):
        if text[i] == "{":
            depth += 1
        elif text[i] == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def parse_gsoc_payload(raw: Union[bytes, str]) -> Tuple[InboxErrorCode, Optional[GSOCMessage]]:
    """
    Parse a slot payload into a GSOCMessage.

    Plain JSON is tried first. Payloads still carrying binary SOC headers
    are scanned for the {"version": marker and cut at the balancing brace.
    """
    text = raw if isinstance(raw, str) else bytes(raw).decode("utf-8", errors="replace")

    data = None
    try:
        data = json.loads(text)
    except ValueError:
        start = text.find(MESSAGE_MARKER)
        if start >= 0:
            candidate = _balanced_object(text, start)
            if candidate is not None:
                try:
                    data = json.loads(candidate)
                except ValueError:
                    data = None

    if not isinstance(data, dict) or not data.get("reference"):
        return InboxErrorCode.ERR_INVALID_MESSAGE, None

    try:
        return InboxErrorCode.SUCCESS, GSOCMessage.from_dict(data)
    except (KeyError, TypeError, ValueError):
        return InboxErrorCode.ERR_INVALID_MESSAGE, None


def strip_soc_header(chunk: bytes) -> bytes:
    """Payload of a raw SOC chunk (identifier, signature and span removed)."""
    return bytes(chunk[SOC_HEADER_SIZE:])


def encode_gsoc_message(message: GSOCMessage) -> bytes:
    """Wire JSON for a slot payload; the slot index is implied by the address."""
    data = message.to_dict()
    data.pop("index", None)
    return json.dumps(data, separators=(",", ":")).encode("utf-8")
