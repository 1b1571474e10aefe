"""
test_envelope.py - Unit Tests for the Envelope Codec

Covers encryption round-trips, tamper detection, the binary wire format,
the is_likely_encrypted heuristic and sealed sender metadata.
"""

import os
import struct
import sys
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

from fairdrop_types import (
    CryptoErrorCode,
    EncryptedEnvelope,
    FileMetadata,
    SenderInfo,
)
from envelope import (
    generate_key_pair,
    public_key_from_private,
    derive_shared_secret,
    make_metadata,
    encrypt_file,
    decrypt_file,
    serialize_envelope,
    deserialize_envelope,
    is_likely_encrypted,
    encrypt_sender_metadata,
    decrypt_sender_metadata,
)


def flip_bit(data: bytes, bit: int) -> bytes:
    buf = bytearray(data)
    buf[bit // 8] ^= 1 << (bit % 8)
    return bytes(buf)


class TestKeys(unittest.TestCase):

    def test_generate_key_pair_sizes(self):
        compressed = generate_key_pair()
        self.assertEqual(len(compressed.public_key), 33)
        self.assertIn(compressed.public_key[0], (2, 3))
        self.assertEqual(len(compressed.private_key), 32)

        uncompressed = generate_key_pair(compressed=False)
        self.assertEqual(len(uncompressed.public_key), 65)
        self.assertEqual(uncompressed.public_key[0], 4)

    def test_public_key_from_private(self):
        kp = generate_key_pair()
        self.assertEqual(public_key_from_private(kp.private_key), kp.public_key)
        self.assertIsNone(public_key_from_private(bytes(32)))
        self.assertIsNone(public_key_from_private(b"short"))

    def test_shared_secret_is_symmetric(self):
        a = generate_key_pair()
        b = generate_key_pair(compressed=False)
        err_ab, secret_ab = derive_shared_secret(a.private_key, b.public_key)
        err_ba, secret_ba = derive_shared_secret(b.private_key, a.public_key)
        self.assertEqual(err_ab, CryptoErrorCode.SUCCESS)
        self.assertEqual(err_ba, CryptoErrorCode.SUCCESS)
        self.assertEqual(secret_ab, secret_ba)
        self.assertEqual(len(secret_ab), 32)

    def test_shared_secret_rejects_bad_point(self):
        a = generate_key_pair()
        err, secret = derive_shared_secret(a.private_key, b"\x02" + b"\xff" * 32)
        self.assertEqual(err, CryptoErrorCode.ERR_INVALID_KEY)
        self.assertIsNone(secret)


class TestEncryptDecrypt(unittest.TestCase):

    def setUp(self):
        self.recipient = generate_key_pair()

    def _seal(self, data: bytes, name: str = "file.bin") -> EncryptedEnvelope:
        err, envelope = encrypt_file(self.recipient.public_key, data, make_metadata(name, data))
        self.assertEqual(err, CryptoErrorCode.SUCCESS)
        return envelope

    def test_hello_world_scenario(self):
        """Encrypt for PK_B, decrypt with SK_B, check the header lengths."""
        envelope = self._seal(b"hello world", "hello.txt")
        blob = serialize_envelope(envelope)

        pk_len = struct.unpack_from("<I", blob, 0)[0]
        iv_len = struct.unpack_from("<I", blob, 4 + pk_len)[0]
        self.assertIn(pk_len, (33, 65))
        self.assertEqual(iv_len, 12)

        err, decrypted = decrypt_file(self.recipient.private_key, envelope)
        self.assertEqual(err, CryptoErrorCode.SUCCESS)
        self.assertEqual(decrypted.data, b"hello world")
        self.assertEqual(decrypted.metadata.name, "hello.txt")
        self.assertEqual(decrypted.metadata.size, 11)

    def test_round_trip_various_sizes(self):
        for size in (0, 1, 15, 16, 17, 1000, 64 * 1024):
            data = os.urandom(size)
            envelope = self._seal(data)
            err, decrypted = decrypt_file(self.recipient.private_key, envelope)
            self.assertEqual(err, CryptoErrorCode.SUCCESS, f"size {size}")
            self.assertEqual(decrypted.data, data)

    def test_round_trip_uncompressed_recipient(self):
        recipient = generate_key_pair(compressed=False)
        err, envelope = encrypt_file(recipient.public_key, b"data", make_metadata("a", b"data"))
        self.assertEqual(err, CryptoErrorCode.SUCCESS)
        err, decrypted = decrypt_file(recipient.private_key, envelope)
        self.assertEqual(err, CryptoErrorCode.SUCCESS)
        self.assertEqual(decrypted.data, b"data")

    def test_metadata_preserved(self):
        meta = FileMetadata(name="report.pdf", type="application/pdf", size=3, timestamp=1234)
        err, envelope = encrypt_file(self.recipient.public_key, b"pdf", meta)
        self.assertEqual(err, CryptoErrorCode.SUCCESS)
        err, decrypted = decrypt_file(self.recipient.private_key, envelope)
        self.assertEqual(decrypted.metadata, meta)

    def test_fresh_ephemeral_key_and_iv_per_call(self):
        first = self._seal(b"same")
        second = self._seal(b"same")
        self.assertNotEqual(first.ephemeral_public_key, second.ephemeral_public_key)
        self.assertNotEqual(first.iv, second.iv)
        self.assertNotEqual(first.ciphertext, second.ciphertext)

    def test_encrypt_rejects_invalid_recipient(self):
        for bad in (b"", b"\x02" * 10, b"\x05" + b"\x01" * 32, bytes(65)):
            err, envelope = encrypt_file(bad, b"x", make_metadata("x", b"x"))
            self.assertEqual(err, CryptoErrorCode.ERR_INVALID_KEY)
            self.assertIsNone(envelope)

    def test_wrong_key_fails(self):
        envelope = self._seal(b"secret")
        other = generate_key_pair()
        err, decrypted = decrypt_file(other.private_key, envelope)
        self.assertEqual(err, CryptoErrorCode.ERR_DECRYPTION_FAILED)
        self.assertIsNone(decrypted)

    def test_invalid_private_key(self):
        envelope = self._seal(b"secret")
        err, _ = decrypt_file(bytes(32), envelope)
        self.assertEqual(err, CryptoErrorCode.ERR_INVALID_KEY)

    def test_malformed_lengths(self):
        envelope = self._seal(b"secret")
        bad_iv = EncryptedEnvelope(envelope.ephemeral_public_key, envelope.iv[:8], envelope.ciphertext)
        err, _ = decrypt_file(self.recipient.private_key, bad_iv)
        self.assertEqual(err, CryptoErrorCode.ERR_MALFORMED_ENVELOPE)

        bad_pk = EncryptedEnvelope(envelope.ephemeral_public_key[:32], envelope.iv, envelope.ciphertext)
        err, _ = decrypt_file(self.recipient.private_key, bad_pk)
        self.assertEqual(err, CryptoErrorCode.ERR_MALFORMED_ENVELOPE)

    def test_ciphertext_shorter_than_tag(self):
        envelope = self._seal(b"secret")
        short = EncryptedEnvelope(envelope.ephemeral_public_key, envelope.iv, envelope.ciphertext[:10])
        err, _ = decrypt_file(self.recipient.private_key, short)
        self.assertEqual(err, CryptoErrorCode.ERR_DECRYPTION_FAILED)


class TestTamperDetection(unittest.TestCase):
    """Any single bit flip must be rejected, never decrypted to other bytes."""

    @classmethod
    def setUpClass(cls):
        cls.recipient = generate_key_pair()
        data = b"tamper-evident payload " * 4
        err, cls.envelope = encrypt_file(cls.recipient.public_key, data, make_metadata("t.txt", data))
        assert err == CryptoErrorCode.SUCCESS

    def _assert_rejected(self, envelope: EncryptedEnvelope, what: str):
        err, decrypted = decrypt_file(self.recipient.private_key, envelope)
        self.assertEqual(err, CryptoErrorCode.ERR_DECRYPTION_FAILED, what)
        self.assertIsNone(decrypted, what)

    def test_every_ephemeral_key_bit(self):
        pk = self.envelope.ephemeral_public_key
        for bit in range(len(pk) * 8):
            tampered = EncryptedEnvelope(flip_bit(pk, bit), self.envelope.iv, self.envelope.ciphertext)
            self._assert_rejected(tampered, f"ephemeral key bit {bit}")

    def test_compressed_prefix_swap(self):
        """02 <-> 03 names the negated point, which shares the x coordinate."""
        pk = self.envelope.ephemeral_public_key
        swapped = bytes([pk[0] ^ 0x01]) + pk[1:]
        self._assert_rejected(
            EncryptedEnvelope(swapped, self.envelope.iv, self.envelope.ciphertext), "prefix swap")

    def test_every_iv_bit(self):
        iv = self.envelope.iv
        for bit in range(len(iv) * 8):
            tampered = EncryptedEnvelope(self.envelope.ephemeral_public_key, flip_bit(iv, bit),
                                         self.envelope.ciphertext)
            self._assert_rejected(tampered, f"iv bit {bit}")

    def test_ciphertext_bits(self):
        ct = self.envelope.ciphertext
        for bit in range(0, len(ct) * 8, 7):
            tampered = EncryptedEnvelope(self.envelope.ephemeral_public_key, self.envelope.iv,
                                         flip_bit(ct, bit))
            self._assert_rejected(tampered, f"ciphertext bit {bit}")

    def test_truncated_ciphertext(self):
        ct = self.envelope.ciphertext
        tampered = EncryptedEnvelope(self.envelope.ephemeral_public_key, self.envelope.iv, ct[:-1])
        self._assert_rejected(tampered, "truncated")


class TestWireFormat(unittest.TestCase):

    def setUp(self):
        self.recipient = generate_key_pair()
        err, self.envelope = encrypt_file(self.recipient.public_key, b"wire", make_metadata("w", b"wire"))
        self.assertEqual(err, CryptoErrorCode.SUCCESS)

    def test_layout(self):
        blob = serialize_envelope(self.envelope)
        self.assertEqual(struct.unpack_from("<I", blob, 0)[0], 33)
        self.assertEqual(blob[4:37], self.envelope.ephemeral_public_key)
        self.assertEqual(struct.unpack_from("<I", blob, 37)[0], 12)
        self.assertEqual(blob[41:53], self.envelope.iv)
        self.assertEqual(blob[53:], self.envelope.ciphertext)

    def test_round_trip(self):
        err, decoded = deserialize_envelope(serialize_envelope(self.envelope))
        self.assertEqual(err, CryptoErrorCode.SUCCESS)
        self.assertEqual(decoded, self.envelope)

    def test_round_trip_uncompressed_key(self):
        envelope = EncryptedEnvelope(b"\x04" + os.urandom(64), os.urandom(12), os.urandom(40))
        err, decoded = deserialize_envelope(serialize_envelope(envelope))
        self.assertEqual(err, CryptoErrorCode.SUCCESS)
        self.assertEqual(decoded, envelope)

    def test_short_input(self):
        for data in (b"", b"\x21\x00\x00", bytes(7)):
            err, decoded = deserialize_envelope(data)
            self.assertEqual(err, CryptoErrorCode.ERR_MALFORMED_ENVELOPE)
            self.assertIsNone(decoded)

    def test_bad_key_length(self):
        blob = bytearray(serialize_envelope(self.envelope))
        struct.pack_into("<I", blob, 0, 32)
        err, _ = deserialize_envelope(bytes(blob))
        self.assertEqual(err, CryptoErrorCode.ERR_MALFORMED_ENVELOPE)

    def test_key_length_overruns_buffer(self):
        blob = struct.pack("<I", 65) + bytes(20)
        err, _ = deserialize_envelope(blob)
        self.assertEqual(err, CryptoErrorCode.ERR_MALFORMED_ENVELOPE)

    def test_bad_iv_length(self):
        blob = bytearray(serialize_envelope(self.envelope))
        struct.pack_into("<I", blob, 37, 16)
        err, _ = deserialize_envelope(bytes(blob))
        self.assertEqual(err, CryptoErrorCode.ERR_MALFORMED_ENVELOPE)

    def test_iv_overruns_buffer(self):
        blob = serialize_envelope(self.envelope)[:45]
        err, _ = deserialize_envelope(blob)
        self.assertEqual(err, CryptoErrorCode.ERR_MALFORMED_ENVELOPE)

    def test_deserialized_envelope_decrypts(self):
        err, decoded = deserialize_envelope(serialize_envelope(self.envelope))
        err, decrypted = decrypt_file(self.recipient.private_key, decoded)
        self.assertEqual(err, CryptoErrorCode.SUCCESS)
        self.assertEqual(decrypted.data, b"wire")


class TestLikelyEncrypted(unittest.TestCase):

    @staticmethod
    def _header(size: int, pk_len: int = 33, iv_len: int = 12) -> bytes:
        blob = bytearray(size)
        struct.pack_into("<I", blob, 0, pk_len)
        struct.pack_into("<I", blob, 4 + pk_len, iv_len)
        return bytes(blob)

    def test_99_bytes_never_encrypted(self):
        self.assertFalse(is_likely_encrypted(self._header(99)))

    def test_100_bytes_with_valid_header(self):
        self.assertTrue(is_likely_encrypted(self._header(100)))
        self.assertTrue(is_likely_encrypted(self._header(200, pk_len=65)))

    def test_iv_length_other_than_12(self):
        for iv_len in (0, 11, 13, 16, 0xFFFFFFFF):
            self.assertFalse(is_likely_encrypted(self._header(100, iv_len=iv_len)), iv_len)

    def test_key_length_other_than_33_or_65(self):
        blob = bytearray(self._header(100))
        struct.pack_into("<I", blob, 0, 34)
        self.assertFalse(is_likely_encrypted(bytes(blob)))

    def test_plain_text(self):
        self.assertFalse(is_likely_encrypted(b"just a regular text file " * 10))
        self.assertFalse(is_likely_encrypted(b""))

    def test_real_envelope(self):
        kp = generate_key_pair()
        data = os.urandom(64)
        _, envelope = encrypt_file(kp.public_key, data, make_metadata("r", data))
        self.assertTrue(is_likely_encrypted(serialize_envelope(envelope)))


class TestSenderMetadata(unittest.TestCase):

    def setUp(self):
        self.recipient = generate_key_pair()

    def test_round_trip(self):
        info = SenderInfo(sender="alice.fairdrop.eth", filename="notes.txt")
        err, sealed = encrypt_sender_metadata(info, self.recipient.public_key)
        self.assertEqual(err, CryptoErrorCode.SUCCESS)
        self.assertNotIn("alice", sealed.ciphertext)

        err, opened = decrypt_sender_metadata(sealed, self.recipient.private_key)
        self.assertEqual(err, CryptoErrorCode.SUCCESS)
        self.assertEqual(opened, info)

    def test_wrong_key(self):
        _, sealed = encrypt_sender_metadata(SenderInfo(sender="alice"), self.recipient.public_key)
        err, opened = decrypt_sender_metadata(sealed, generate_key_pair().private_key)
        self.assertEqual(err, CryptoErrorCode.ERR_DECRYPTION_FAILED)
        self.assertIsNone(opened)

    def test_bad_hex(self):
        _, sealed = encrypt_sender_metadata(SenderInfo(sender="alice"), self.recipient.public_key)
        sealed.iv = "zz" * 12
        err, _ = decrypt_sender_metadata(sealed, self.recipient.private_key)
        self.assertEqual(err, CryptoErrorCode.ERR_MALFORMED_ENVELOPE)

    def test_dict_round_trip(self):
        _, sealed = encrypt_sender_metadata(SenderInfo(sender="bob"), self.recipient.public_key)
        restored = type(sealed).from_dict(sealed.to_dict())
        err, opened = decrypt_sender_metadata(restored, self.recipient.private_key)
        self.assertEqual(err, CryptoErrorCode.SUCCESS)
        self.assertEqual(opened.sender, "bob")


if __name__ == "__main__":
    unittest.main()
