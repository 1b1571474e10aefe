"""
inbox_poller.py - One-shot Inbox Scanner for the Fairdrop Client

Scans a recipient's inbox slots in parallel batches and returns every
message descriptor found. Keeps no state between calls; the caller tracks
which references it has already seen and where the next scan should start.

Termination:
    - max_empty_batches consecutive batches without a descriptor, or
    - max_scan slots examined from start_index

Any slot that cannot be read aborts the poll with ERR_NETWORK. There is no
retry here; the caller decides whether to poll again.

Functions (InboxPoller methods):
    poll(params, start_index)        -> (InboxErrorCode, List[GSOCMessage])
    find_next_slot(params, max_slots) -> (InboxErrorCode, int)
    has_messages(params)             -> (InboxErrorCode, bool)
"""

import asyncio
import dataclasses
from typing import List, Optional, Protocol, Tuple

from fairdrop_types import InboxErrorCode, StorageErrorCode, InboxParams, InboxConfig, GSOCMessage
from logger import log_debug, log_info, log_error, LoggerHandle


CONTEXT = "InboxPoller"


class SlotReader(Protocol):
    """Anything that can read one inbox slot (BeeClient in production)."""

    async def read_inbox_slot(
        self,
        params: InboxParams,
        index: int
    ) -> Tuple[StorageErrorCode, Optional[GSOCMessage]]:
        ...


class InboxPoller:
    """
    Bounded scan of an inbox feed.

    Args:
        reader: Slot reader, usually a BeeClient
        inbox_config: Batch size and scan limits (defaults 5 / 20 / 2)
        logger_handle: Optional logger handle
    """

    def __init__(
        self,
        reader: SlotReader,
        inbox_config: Optional[InboxConfig] = None,
        logger_handle: Optional[LoggerHandle] = None
    ):
        self.reader = reader
        self.config = inbox_config or InboxConfig()
        self.logger = logger_handle

    async def _read(self, params: InboxParams, index: int) -> Tuple[StorageErrorCode, Optional[GSOCMessage]]:
        err, message = await self.reader.read_inbox_slot(params, index)
        if err != StorageErrorCode.SUCCESS or message is None:
            return err, None
        if message.index != index:
            message = dataclasses.replace(message, index=index)
        return err, message

    async def poll(
        self,
        params: InboxParams,
        start_index: int = 0
    ) -> Tuple[InboxErrorCode, List[GSOCMessage]]:
        """
        Scan slots from start_index and collect every descriptor found.

        Returns:
            (SUCCESS, messages sorted by slot index)
            (ERR_INVALID_PARAM, [])  - params incomplete or negative start
            (ERR_NETWORK, [])        - a slot read failed
        """
        if params is None or not params.is_valid() or start_index < 0:
            log_error(self.logger, CONTEXT, "Poll failed", "invalid inbox parameters")
            return InboxErrorCode.ERR_INVALID_PARAM, []

        batch_size = max(1, self.config.batch_size)
        end_index = start_index + self.config.max_scan
        messages: List[GSOCMessage] = []
        empty_batches = 0
        current = start_index

        while current < end_index and empty_batches < self.config.max_empty_batches:
            indexes = range(current, min(current + batch_size, end_index))
            results = await asyncio.gather(*(self._read(params, i) for i in indexes))

            failed = [(i, err) for i, (err, _) in zip(indexes, results) if err != StorageErrorCode.SUCCESS]
            if failed:
                index, err = failed[0]
                log_error(self.logger, CONTEXT, "Poll failed", f"slot {index}: {err.name}")
                return InboxErrorCode.ERR_NETWORK, []

            found = [message for _, message in results if message is not None]
            if found:
                empty_batches = 0
                messages.extend(found)
            else:
                empty_batches += 1

            current += batch_size

        messages.sort(key=lambda m: m.index if m.index is not None else 0)
        log_info(self.logger, CONTEXT,
                 f"Poll from slot {start_index} scanned to {min(current, end_index)}, "
                 f"found {len(messages)} message(s)")
        return InboxErrorCode.SUCCESS, messages

    async def find_next_slot(
        self,
        params: InboxParams,
        max_slots: int = 10000
    ) -> Tuple[InboxErrorCode, int]:
        """
        First empty slot, by exponential probing then binary search.

        Assumes slots are filled in order, which is how senders write them.
        """
        if params is None or not params.is_valid():
            return InboxErrorCode.ERR_INVALID_PARAM, 0

        low, high = 0, 1
        while high < max_slots:
            err, message = await self._read(params, high)
            if err != StorageErrorCode.SUCCESS:
                log_error(self.logger, CONTEXT, "Find next slot failed", f"slot {high}: {err.name}")
                return InboxErrorCode.ERR_NETWORK, 0
            if message is None:
                break
            low = high
            high *= 2

        high = min(high, max_slots)

        while low < high:
            mid = (low + high) // 2
            err, message = await self._read(params, mid)
            if err != StorageErrorCode.SUCCESS:
                log_error(self.logger, CONTEXT, "Find next slot failed", f"slot {mid}: {err.name}")
                return InboxErrorCode.ERR_NETWORK, 0
            if message is not None:
                low = mid + 1
            else:
                high = mid

        log_debug(self.logger, CONTEXT, f"Next free slot is {low}")
        return InboxErrorCode.SUCCESS, low

    async def has_messages(self, params: InboxParams) -> Tuple[InboxErrorCode, bool]:
        if params is None or not params.is_valid():
            return InboxErrorCode.ERR_INVALID_PARAM, False
        err, message = await self._read(params, 0)
        if err != StorageErrorCode.SUCCESS:
            return InboxErrorCode.ERR_NETWORK, False
        return InboxErrorCode.SUCCESS, message is not None
