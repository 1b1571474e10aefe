"""
test_inbox_poller.py - Unit Tests for the One-shot Inbox Scanner

Uses FakeSlotReader from test_utils; no network access.
"""

import os
import sys
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))
sys.path.insert(0, os.path.abspath(os.path.dirname(__file__)))

from fairdrop_types import InboxConfig, InboxErrorCode, InboxParams
from inbox_poller import InboxPoller
from test_utils import FakeSlotReader, create_test_inbox_params, make_gsoc_message


def filled_reader(count: int, **kwargs) -> FakeSlotReader:
    return FakeSlotReader({i: make_gsoc_message(i) for i in range(count)}, **kwargs)


class TestPoll(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.params = create_test_inbox_params()

    async def test_empty_inbox_stops_after_two_empty_batches(self):
        reader = FakeSlotReader()
        err, messages = await InboxPoller(reader).poll(self.params)
        self.assertEqual(err, InboxErrorCode.SUCCESS)
        self.assertEqual(messages, [])
        self.assertEqual(sorted(reader.reads), list(range(10)))

    async def test_collects_messages_sorted_with_index(self):
        reader = filled_reader(7)
        err, messages = await InboxPoller(reader).poll(self.params)
        self.assertEqual(err, InboxErrorCode.SUCCESS)
        self.assertEqual([m.index for m in messages], list(range(7)))
        self.assertEqual(messages[3].reference, make_gsoc_message(3).reference)

    async def test_max_scan_bounds_the_scan(self):
        reader = filled_reader(30)
        err, messages = await InboxPoller(reader).poll(self.params)
        self.assertEqual(err, InboxErrorCode.SUCCESS)
        self.assertEqual(len(messages), 20)
        self.assertEqual(max(reader.reads), 19)

    async def test_gap_resets_empty_batch_count(self):
        slots = {0: make_gsoc_message(0), 7: make_gsoc_message(7), 12: make_gsoc_message(12)}
        err, messages = await InboxPoller(FakeSlotReader(slots)).poll(self.params)
        self.assertEqual(err, InboxErrorCode.SUCCESS)
        self.assertEqual([m.index for m in messages], [0, 7, 12])

    async def test_start_index(self):
        reader = filled_reader(7)
        err, messages = await InboxPoller(reader).poll(self.params, start_index=5)
        self.assertEqual(err, InboxErrorCode.SUCCESS)
        self.assertEqual([m.index for m in messages], [5, 6])
        self.assertNotIn(0, reader.reads)

    async def test_custom_batch_config(self):
        reader = FakeSlotReader()
        config = InboxConfig(batch_size=3, max_scan=50, max_empty_batches=1)
        await InboxPoller(reader, config).poll(self.params)
        self.assertEqual(sorted(reader.reads), [0, 1, 2])

    async def test_read_failure_aborts(self):
        reader = filled_reader(7, failing={3})
        err, messages = await InboxPoller(reader).poll(self.params)
        self.assertEqual(err, InboxErrorCode.ERR_NETWORK)
        self.assertEqual(messages, [])

    async def test_invalid_params(self):
        poller = InboxPoller(FakeSlotReader())
        err, _ = await poller.poll(InboxParams(target_overlay="", base_identifier="0x11"))
        self.assertEqual(err, InboxErrorCode.ERR_INVALID_PARAM)
        err, _ = await poller.poll(None)
        self.assertEqual(err, InboxErrorCode.ERR_INVALID_PARAM)
        err, _ = await poller.poll(self.params, start_index=-1)
        self.assertEqual(err, InboxErrorCode.ERR_INVALID_PARAM)

    async def test_poll_is_stateless(self):
        poller = InboxPoller(filled_reader(2))
        first = await poller.poll(self.params)
        second = await poller.poll(self.params)
        self.assertEqual(first, second)


class TestFindNextSlot(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.params = create_test_inbox_params()

    async def test_empty(self):
        err, slot = await InboxPoller(FakeSlotReader()).find_next_slot(self.params)
        self.assertEqual(err, InboxErrorCode.SUCCESS)
        self.assertEqual(slot, 0)

    async def test_filled_prefix(self):
        for count in (1, 2, 13, 16, 17):
            err, slot = await InboxPoller(filled_reader(count)).find_next_slot(self.params)
            self.assertEqual(err, InboxErrorCode.SUCCESS)
            self.assertEqual(slot, count, count)

    async def test_max_slots_cap(self):
        err, slot = await InboxPoller(filled_reader(100)).find_next_slot(self.params, max_slots=40)
        self.assertEqual(err, InboxErrorCode.SUCCESS)
        self.assertEqual(slot, 40)

    async def test_failure(self):
        err, _ = await InboxPoller(filled_reader(10, failing={4})).find_next_slot(self.params)
        self.assertEqual(err, InboxErrorCode.ERR_NETWORK)


class TestHasMessages(unittest.IsolatedAsyncioTestCase):

    async def test_has_messages(self):
        params = create_test_inbox_params()
        err, found = await InboxPoller(filled_reader(1)).has_messages(params)
        self.assertEqual((err, found), (InboxErrorCode.SUCCESS, True))
        err, found = await InboxPoller(FakeSlotReader()).has_messages(params)
        self.assertEqual((err, found), (InboxErrorCode.SUCCESS, False))
        err, found = await InboxPoller(FakeSlotReader(failing={0})).has_messages(params)
        self.assertEqual((err, found), (InboxErrorCode.ERR_NETWORK, False))


if __name__ == "__main__":
    unittest.main()
