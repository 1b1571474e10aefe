"""
test_bee_client.py - Tests for the Bee HTTP/WebSocket Client

Runs BeeClient against an in-process aiohttp server that mimics the Bee
endpoints used by the client (/bytes, /chunks, /soc, /addresses,
/gsoc/subscribe).
"""

import asyncio
import hashlib
import os
import sys
import time
import unittest
from unittest import mock

from aiohttp import web
from aiohttp.test_utils import TestServer

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))
sys.path.insert(0, os.path.abspath(os.path.dirname(__file__)))

from fairdrop_types import CryptoErrorCode, InboxErrorCode, SenderInfo, StorageConfig, StorageErrorCode, TransferErrorCode
from bee_client import BeeClient, BeeInboxTransport, STAMP_HEADER, is_valid_reference
from envelope import decrypt_sender_metadata, generate_key_pair
from gsoc import (
    SOC_HEADER_SIZE, SOC_SPAN_SIZE, content_address, encode_gsoc_message, get_slot_address,
    keccak256, make_soc_address, recover_signer,
)
from inbox_poller import InboxPoller
from transfer import send_file, receive_file
from test_utils import create_test_inbox_params, make_gsoc_message, make_reference


STAMP = "ab" * 32


class FakeBee:
    """Minimal Bee node: blobs, SOC chunks and gsoc websockets."""

    def __init__(self):
        self.blobs = {}
        self.chunks = {}
        self.ws_payloads = {}
        self.ws_close = set()
        self.fail_uploads = None
        self.overlay = "cd" * 32

        self.app = web.Application()
        self.app.router.add_post("/bytes", self.post_bytes)
        self.app.router.add_get("/bytes/{reference}", self.get_bytes)
        self.app.router.add_get("/chunks/{address}", self.get_chunk)
        self.app.router.add_post("/soc/{owner}/{identifier}", self.post_soc)
        self.app.router.add_get("/addresses", self.get_addresses)
        self.app.router.add_get("/gsoc/subscribe/{address}", self.gsoc_subscribe)

    async def post_bytes(self, request):
        if self.fail_uploads:
            return web.Response(status=self.fail_uploads, text="failed")
        if request.headers.get(STAMP_HEADER) != STAMP:
            return web.Response(status=402, text="payment required")
        data = await request.read()
        reference = hashlib.sha256(data).hexdigest()
        self.blobs[reference] = data
        return web.json_response({"reference": reference}, status=201)

    async def get_bytes(self, request):
        data = self.blobs.get(request.match_info["reference"])
        if data is None:
            return web.Response(status=404)
        return web.Response(body=data)

    async def get_chunk(self, request):
        chunk = self.chunks.get(request.match_info["address"])
        if chunk is None:
            return web.Response(status=404)
        return web.Response(body=chunk)

    async def post_soc(self, request):
        if request.headers.get(STAMP_HEADER) != STAMP:
            return web.Response(status=402, text="payment required")
        owner = bytes.fromhex(request.match_info["owner"])
        identifier = bytes.fromhex(request.match_info["identifier"])
        signature = bytes.fromhex(request.query.get("sig", ""))
        body = await request.read()
        if recover_signer(keccak256(identifier + content_address(body[SOC_SPAN_SIZE:])), signature) != owner:
            return web.Response(status=401, text="invalid chunk signature")
        address = make_soc_address(identifier, owner).hex()
        self.chunks[address] = identifier + signature + body
        return web.json_response({"reference": address}, status=201)

    async def get_addresses(self, request):
        return web.json_response({"overlay": self.overlay, "ethereum": "0x" + "00" * 20})

    async def gsoc_subscribe(self, request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        address = request.match_info["address"]
        if address in self.ws_close:
            await ws.close()
            return ws
        if address in self.ws_payloads:
            await ws.send_bytes(self.ws_payloads[address])
        async for _ in ws:
            pass
        return ws


class BeeTestCase(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.bee = FakeBee()
        self.server = TestServer(self.bee.app)
        await self.server.start_server()
        self.url = f"http://{self.server.host}:{self.server.port}"
        self.client = BeeClient(StorageConfig(bee_url=self.url, gateway_urls=[], stamp_id=STAMP, timeout_sec=5))
        self.params = create_test_inbox_params()

    async def asyncTearDown(self):
        await self.client.close()
        await self.server.close()

    def slot_hex(self, index: int) -> str:
        return get_slot_address(self.params, index).hex()


class TestReferences(unittest.TestCase):

    def test_is_valid_reference(self):
        self.assertTrue(is_valid_reference("a" * 64))
        self.assertTrue(is_valid_reference("A" * 128))
        self.assertFalse(is_valid_reference("a" * 63))
        self.assertFalse(is_valid_reference("g" * 64))
        self.assertFalse(is_valid_reference(""))


class TestUploadDownload(BeeTestCase):

    async def test_put_then_get(self):
        err, reference = await self.client.put(b"file contents")
        self.assertEqual(err, StorageErrorCode.SUCCESS)
        self.assertEqual(reference, hashlib.sha256(b"file contents").hexdigest())

        err, data = await self.client.get(reference)
        self.assertEqual(err, StorageErrorCode.SUCCESS)
        self.assertEqual(data, b"file contents")

    async def test_put_without_stamp(self):
        client = BeeClient(StorageConfig(bee_url=self.url, gateway_urls=[]))
        err, reference = await client.put(b"x")
        await client.close()
        self.assertEqual(err, StorageErrorCode.ERR_NO_STAMP)
        self.assertIsNone(reference)

    async def test_put_server_error(self):
        self.bee.fail_uploads = 500
        err, _ = await self.client.put(b"x")
        self.assertEqual(err, StorageErrorCode.ERR_SERVER_ERROR)

    async def test_get_missing(self):
        err, data = await self.client.get(make_reference(1))
        self.assertEqual(err, StorageErrorCode.ERR_NOT_FOUND)
        self.assertIsNone(data)

    async def test_get_invalid_reference(self):
        err, _ = await self.client.get("not-a-reference")
        self.assertEqual(err, StorageErrorCode.ERR_INVALID_PARAM)

    async def test_gateway_fallback(self):
        gateway = FakeBee()
        gateway_server = TestServer(gateway.app)
        await gateway_server.start_server()
        try:
            reference = hashlib.sha256(b"mirrored").hexdigest()
            gateway.blobs[reference] = b"mirrored"
            client = BeeClient(StorageConfig(
                bee_url=self.url,
                gateway_urls=[f"http://{gateway_server.host}:{gateway_server.port}"],
            ))
            err, data = await client.get(reference)
            await client.close()
        finally:
            await gateway_server.close()

        self.assertEqual(err, StorageErrorCode.SUCCESS)
        self.assertEqual(data, b"mirrored")

    async def test_unreachable_node(self):
        client = BeeClient(StorageConfig(bee_url="http://127.0.0.1:1", gateway_urls=[], stamp_id=STAMP))
        err, _ = await client.get(make_reference(1))
        await client.close()
        self.assertEqual(err, StorageErrorCode.ERR_NETWORK)

    async def test_get_overlay(self):
        err, overlay = await self.client.get_overlay()
        self.assertEqual(err, StorageErrorCode.SUCCESS)
        self.assertEqual(overlay, self.bee.overlay)


class TestInboxSlots(BeeTestCase):

    async def test_empty_slot(self):
        err, message = await self.client.read_inbox_slot(self.params, 0)
        self.assertEqual(err, StorageErrorCode.SUCCESS)
        self.assertIsNone(message)

    async def test_written_slot(self):
        descriptor = make_gsoc_message(3)
        self.bee.chunks[self.slot_hex(2)] = os.urandom(SOC_HEADER_SIZE) + encode_gsoc_message(descriptor)

        err, message = await self.client.read_inbox_slot(self.params, 2)
        self.assertEqual(err, StorageErrorCode.SUCCESS)
        self.assertEqual(message.reference, descriptor.reference)
        self.assertEqual(message.index, 2)

    async def test_garbage_slot_reads_as_empty(self):
        self.bee.chunks[self.slot_hex(0)] = os.urandom(SOC_HEADER_SIZE) + b"\x00garbage"
        err, message = await self.client.read_inbox_slot(self.params, 0)
        self.assertEqual(err, StorageErrorCode.SUCCESS)
        self.assertIsNone(message)

    async def test_unreachable_node(self):
        client = BeeClient(StorageConfig(bee_url="http://127.0.0.1:1", gateway_urls=[]))
        err, _ = await client.read_inbox_slot(self.params, 0)
        await client.close()
        self.assertEqual(err, StorageErrorCode.ERR_NETWORK)


class TestInboxWrites(BeeTestCase):

    async def test_write_then_read_slot(self):
        reference = make_reference(9)
        err, written = await self.client.write_to_inbox(self.params, 4, reference)
        self.assertEqual(err, StorageErrorCode.SUCCESS)
        self.assertEqual(written.index, 4)
        self.assertIsNone(written.encrypted_meta)
        self.assertIn(self.slot_hex(4), self.bee.chunks)

        err, message = await self.client.read_inbox_slot(self.params, 4)
        self.assertEqual(err, StorageErrorCode.SUCCESS)
        self.assertEqual(message.reference, reference)
        self.assertEqual(message.index, 4)
        self.assertEqual(message.timestamp, written.timestamp)

    async def test_sender_details_sealed_for_recipient(self):
        recipient = generate_key_pair()
        params = create_test_inbox_params()
        params.recipient_public_key = recipient.public_key

        err, _ = await self.client.write_to_inbox(params, 0, make_reference(1),
                                                  SenderInfo(sender="alice", filename="a.txt"))
        self.assertEqual(err, StorageErrorCode.SUCCESS)

        _, message = await self.client.read_inbox_slot(params, 0)
        err, sender = decrypt_sender_metadata(message.encrypted_meta, recipient.private_key)
        self.assertEqual(err, CryptoErrorCode.SUCCESS)
        self.assertEqual((sender.sender, sender.filename), ("alice", "a.txt"))

    async def test_sender_details_dropped_without_recipient_key(self):
        err, written = await self.client.write_to_inbox(self.params, 0, make_reference(1), SenderInfo(sender="alice"))
        self.assertEqual(err, StorageErrorCode.SUCCESS)
        self.assertIsNone(written.encrypted_meta)

    async def test_write_without_stamp(self):
        client = BeeClient(StorageConfig(bee_url=self.url, gateway_urls=[]))
        err, _ = await client.write_to_inbox(self.params, 0, make_reference(1))
        await client.close()
        self.assertEqual(err, StorageErrorCode.ERR_NO_STAMP)
        self.assertEqual(self.bee.chunks, {})

    async def test_write_rejects_bad_reference(self):
        err, _ = await self.client.write_to_inbox(self.params, 0, "nope")
        self.assertEqual(err, StorageErrorCode.ERR_INVALID_PARAM)

    async def test_send_notifies_next_free_slot(self):
        recipient = generate_key_pair()
        self.bee.chunks[self.slot_hex(0)] = os.urandom(SOC_HEADER_SIZE) + encode_gsoc_message(make_gsoc_message(1))

        err, reference = await send_file(self.client, recipient.public_key, b"hello bob", "hello.txt",
                                         inbox_params=self.params, sender_info=SenderInfo(sender="alice"))
        self.assertEqual(err, TransferErrorCode.SUCCESS)

        err, messages = await InboxPoller(self.client).poll(self.params)
        self.assertEqual(err, InboxErrorCode.SUCCESS)
        self.assertEqual([m.index for m in messages], [0, 1])
        self.assertEqual(messages[1].reference, reference)

        _, sender = decrypt_sender_metadata(messages[1].encrypted_meta, recipient.private_key)
        self.assertEqual(sender.sender, "alice")

        err, received = await receive_file(self.client, messages[1].reference, recipient.private_key)
        self.assertEqual(err, TransferErrorCode.SUCCESS)
        self.assertEqual(received.data, b"hello bob")

    async def test_send_reports_unwritten_inbox(self):
        with mock.patch.object(self.client, "write_to_inbox",
                               return_value=(StorageErrorCode.ERR_SERVER_ERROR, None)):
            err, reference = await send_file(self.client, generate_key_pair().public_key, b"x", "x.txt",
                                             inbox_params=self.params)
        self.assertEqual(err, TransferErrorCode.ERR_INBOX)
        self.assertIn(reference, self.bee.blobs)


class TestInboxKeys(BeeTestCase):

    async def test_mining_runs_off_the_event_loop_once(self):
        calls = []

        def slow_mine(overlay, base_id, proximity):
            calls.append(base_id)
            time.sleep(0.2)
            return 0xB33

        ticks = 0

        async def ticker():
            nonlocal ticks
            while True:
                await asyncio.sleep(0.01)
                ticks += 1

        ticking = asyncio.get_running_loop().create_task(ticker())
        try:
            with mock.patch("bee_client.mine_inbox_key", slow_mine):
                keys = await asyncio.gather(*(self.client.inbox_key(self.params) for _ in range(3)))
        finally:
            ticking.cancel()

        self.assertEqual(keys, [0xB33] * 3)
        self.assertEqual(len(calls), 1)
        self.assertGreaterEqual(ticks, 5)


class TestLiveChannel(BeeTestCase):

    async def test_channel_follows_slots(self):
        first, third = make_gsoc_message(1), make_gsoc_message(3)
        self.bee.ws_payloads[self.slot_hex(0)] = encode_gsoc_message(first)
        self.bee.ws_payloads[self.slot_hex(1)] = b"not a descriptor"
        self.bee.ws_payloads[self.slot_hex(2)] = encode_gsoc_message(third)
        self.bee.ws_close.add(self.slot_hex(3))

        channel = await BeeInboxTransport(self.client).open(self.params, 0)
        try:
            message = await channel.receive()
            self.assertEqual((message.reference, message.index), (first.reference, 0))

            message = await channel.receive()
            self.assertEqual((message.reference, message.index), (third.reference, 2))

            self.assertIsNone(await channel.receive())
        finally:
            await channel.close()
        await channel.close()

    async def test_open_failure_is_connection_error(self):
        client = BeeClient(StorageConfig(bee_url="http://127.0.0.1:1", gateway_urls=[]))
        with self.assertRaises(ConnectionError):
            await BeeInboxTransport(client).open(self.params, 0)
        await client.close()

    def test_ws_url(self):
        self.assertEqual(BeeClient(StorageConfig(bee_url="https://bee.example/")).ws_url("/x"),
                         "wss://bee.example/x")
        self.assertEqual(BeeClient(StorageConfig(bee_url="http://localhost:1633")).ws_url("/x"),
                         "ws://localhost:1633/x")


if __name__ == "__main__":
    unittest.main()
