"""
test_transfer.py - Tests for send_file / receive_file over fake storage
"""

import os
import struct
import sys
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))
sys.path.insert(0, os.path.abspath(os.path.dirname(__file__)))

from fairdrop_types import InboxParams, SenderInfo, StorageErrorCode, TransferErrorCode
from envelope import generate_key_pair, is_likely_encrypted
from transfer import send_file, receive_file, notify_inbox
from test_utils import FakeInbox, FakeStorage, create_test_inbox_params, make_gsoc_message, make_reference


class TestSendReceive(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.storage = FakeStorage()
        self.recipient = generate_key_pair()

    async def test_round_trip(self):
        err, reference = await send_file(self.storage, self.recipient.public_key, b"hello world",
                                         "hello.txt", "text/plain")
        self.assertEqual(err, TransferErrorCode.SUCCESS)
        self.assertTrue(is_likely_encrypted(self.storage.blobs[reference]))
        self.assertNotIn(b"hello world", self.storage.blobs[reference])

        err, received = await receive_file(self.storage, reference, self.recipient.private_key)
        self.assertEqual(err, TransferErrorCode.SUCCESS)
        self.assertEqual(received.data, b"hello world")
        self.assertEqual(received.metadata.name, "hello.txt")
        self.assertEqual(received.metadata.type, "text/plain")
        self.assertTrue(received.encrypted)

    async def test_needs_key(self):
        _, reference = await send_file(self.storage, self.recipient.public_key, b"x", "x.bin")
        err, received = await receive_file(self.storage, reference)
        self.assertEqual(err, TransferErrorCode.ERR_NEEDS_KEY)
        self.assertTrue(received.needs_key)
        self.assertEqual(received.data, self.storage.blobs[reference])

    async def test_wrong_key_is_inconclusive(self):
        _, reference = await send_file(self.storage, self.recipient.public_key, b"x", "x.bin")
        err, received = await receive_file(self.storage, reference, generate_key_pair().private_key)
        self.assertEqual(err, TransferErrorCode.ERR_DECRYPTION_FAILED)
        self.assertTrue(received.inconclusive)

    async def test_plaintext_blob_passes_through(self):
        _, reference = await self.storage.put(b"plain public file")
        err, received = await receive_file(self.storage, reference, self.recipient.private_key)
        self.assertEqual(err, TransferErrorCode.SUCCESS)
        self.assertEqual(received.data, b"plain public file")
        self.assertFalse(received.encrypted)
        self.assertIsNone(received.metadata)

    async def test_plaintext_resembling_envelope(self):
        """A plain file with an envelope-shaped header cannot be told apart until decrypt fails."""
        blob = bytearray(120)
        struct.pack_into("<I", blob, 0, 33)
        struct.pack_into("<I", blob, 37, 12)
        _, reference = await self.storage.put(bytes(blob))

        err, received = await receive_file(self.storage, reference, self.recipient.private_key)
        self.assertEqual(err, TransferErrorCode.ERR_DECRYPTION_FAILED)
        self.assertTrue(received.inconclusive)
        self.assertEqual(received.data, bytes(blob))

    async def test_invalid_recipient(self):
        err, reference = await send_file(self.storage, b"\x02" * 5, b"x", "x.bin")
        self.assertEqual(err, TransferErrorCode.ERR_ENCRYPTION_FAILED)
        self.assertIsNone(reference)
        self.assertEqual(self.storage.blobs, {})

    async def test_missing_filename(self):
        err, _ = await send_file(self.storage, self.recipient.public_key, b"x", "")
        self.assertEqual(err, TransferErrorCode.ERR_INVALID_PARAM)

    async def test_storage_failures(self):
        err, _ = await send_file(FakeStorage(fail_put=True), self.recipient.public_key, b"x", "x.bin")
        self.assertEqual(err, TransferErrorCode.ERR_STORAGE)

        err, received = await receive_file(self.storage, make_reference(1), self.recipient.private_key)
        self.assertEqual(err, TransferErrorCode.ERR_STORAGE)
        self.assertIsNone(received)


class TestNotifyInbox(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.params = create_test_inbox_params()

    async def test_writes_first_free_slot(self):
        inbox = FakeInbox({i: make_gsoc_message(i, index=i) for i in range(3)})
        sender = SenderInfo(sender="alice")

        err, index = await notify_inbox(inbox, self.params, make_reference(7), sender)
        self.assertEqual((err, index), (TransferErrorCode.SUCCESS, 3))
        self.assertEqual(inbox.writes, [(3, make_reference(7), sender)])

    async def test_empty_inbox_starts_at_zero(self):
        inbox = FakeInbox()
        err, index = await notify_inbox(inbox, self.params, make_reference(1))
        self.assertEqual((err, index), (TransferErrorCode.SUCCESS, 0))

    async def test_unreadable_inbox_is_not_written(self):
        inbox = FakeInbox(failing={1})
        err, index = await notify_inbox(inbox, self.params, make_reference(1))
        self.assertEqual(err, TransferErrorCode.ERR_INBOX)
        self.assertIsNone(index)
        self.assertEqual(inbox.writes, [])

    async def test_write_failure(self):
        inbox = FakeInbox()
        inbox.write_status = StorageErrorCode.ERR_NO_STAMP
        err, _ = await notify_inbox(inbox, self.params, make_reference(1))
        self.assertEqual(err, TransferErrorCode.ERR_INBOX)

    async def test_invalid_params(self):
        err, _ = await notify_inbox(FakeInbox(), InboxParams("", ""), make_reference(1))
        self.assertEqual(err, TransferErrorCode.ERR_INVALID_PARAM)


if __name__ == "__main__":
    unittest.main()
