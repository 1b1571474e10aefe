"""
bee_client.py - Swarm Bee HTTP/WebSocket Client for the Fairdrop Client

Explicitly owned storage client: the caller constructs one BeeClient per
node, hands it to the components that need it and closes it when done.
Every failure is reported once per call as a StorageErrorCode; nothing
here retries.

Endpoints used:
    POST /bytes                     upload (header swarm-postage-batch-id)
    GET  /bytes/{reference}         download (node, then each gateway)
    GET  /chunks/{soc_address}      read one inbox slot
    POST /soc/{owner}/{id}?sig=     write one inbox slot (stamp header)
    GET  /addresses                 node overlay address
    WS   /gsoc/subscribe/{address}  live notification for one inbox slot

Classes:
    BeeClient           put / get / read_inbox_slot / write_to_inbox / get_overlay
    BeeInboxTransport   opens live inbox channels for InboxSubscriber
    BeeInboxChannel     one websocket, re-armed slot by slot
"""

import asyncio
import re
import time
from typing import Dict, List, Optional, Tuple

import aiohttp

from fairdrop_types import (
    StorageErrorCode, StorageConfig, InboxParams, GSOCMessage, InboxErrorCode, CryptoErrorCode, SenderInfo,
)
from envelope import encrypt_sender_metadata
from gsoc import (
    mine_inbox_key, get_indexed_identifier, make_soc_address, make_inbox_chunk,
    owner_address, parse_gsoc_payload, strip_soc_header, encode_gsoc_message,
)
from logger import log_debug, log_info, log_warning, log_error, LoggerHandle


# ============================================================================
# CONSTANTS
# ============================================================================

CONTEXT = "BeeClient"

STAMP_HEADER = "swarm-postage-batch-id"

# 32-byte address, or 64 bytes for an encrypted reference
_REFERENCE_RE = re.compile(r"^(?:[0-9a-fA-F]{64}|[0-9a-fA-F]{128})$")


def is_valid_reference(reference: str) -> bool:
    return bool(reference) and bool(_REFERENCE_RE.match(reference))


def _status_to_code(status: int) -> StorageErrorCode:
    if status == 404:
        return StorageErrorCode.ERR_NOT_FOUND
    if status == 402:
        return StorageErrorCode.ERR_NO_STAMP
    if status >= 500:
        return StorageErrorCode.ERR_SERVER_ERROR
    return StorageErrorCode.ERR_INVALID_RESPONSE


# ============================================================================
# HTTP CLIENT
# ============================================================================

class BeeClient:
    """
    HTTP client for one Bee node plus read-only fallback gateways.

    The aiohttp session is created on first use (inside the running loop)
    unless one is passed in; a passed-in session is not closed by close().

    Example:
        async with BeeClient(config.storage, logger_handle=log) as bee:
            err, ref = await bee.put(data)
    """

    def __init__(
        self,
        storage_config: Optional[StorageConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
        logger_handle: Optional[LoggerHandle] = None
    ):
        self.config = storage_config or StorageConfig()
        self.logger = logger_handle
        self._session = session
        self._owns_session = session is None
        self._inbox_keys: Dict[Tuple[str, str, int], asyncio.Future] = {}

    # --- lifecycle ---

    async def __aenter__(self) -> "BeeClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    @property
    def base_url(self) -> str:
        return self.config.bee_url.rstrip("/")

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout_sec)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    def _download_urls(self) -> List[str]:
        urls = [self.base_url]
        for gateway in self.config.gateway_urls:
            gateway = gateway.rstrip("/")
            if gateway and gateway not in urls:
                urls.append(gateway)
        return urls

    # --- upload / download ---

    async def put(self, data: bytes) -> Tuple[StorageErrorCode, Optional[str]]:
        """
        Upload bytes and return their content reference.

        Returns:
            (SUCCESS, 64-hex reference) or (error code, None)
        """
        if not self.config.stamp_id:
            log_error(self.logger, CONTEXT, "Upload failed", "no postage stamp configured")
            return StorageErrorCode.ERR_NO_STAMP, None

        headers = {
            STAMP_HEADER: self.config.stamp_id,
            "Content-Type": "application/octet-stream",
        }
        url = f"{self.base_url}/bytes"

        try:
            async with self._get_session().post(url, data=bytes(data), headers=headers) as resp:
                if resp.status not in (200, 201):
                    body = await resp.text()
                    log_error(self.logger, CONTEXT, "Upload failed", f"HTTP {resp.status}: {body[:200]}")
                    return _status_to_code(resp.status), None
                payload = await resp.json(content_type=None)
        except asyncio.TimeoutError:
            log_error(self.logger, CONTEXT, "Upload failed", "timeout")
            return StorageErrorCode.ERR_TIMEOUT, None
        except aiohttp.ClientError as e:
            log_error(self.logger, CONTEXT, "Upload failed", str(e))
            return StorageErrorCode.ERR_NETWORK, None
        except ValueError as e:
            log_error(self.logger, CONTEXT, "Upload failed", f"invalid JSON response: {e}")
            return StorageErrorCode.ERR_INVALID_RESPONSE, None

        reference = payload.get("reference") if isinstance(payload, dict) else None
        if not isinstance(reference, str) or not is_valid_reference(reference):
            log_error(self.logger, CONTEXT, "Upload failed", f"unexpected response {payload!r}")
            return StorageErrorCode.ERR_INVALID_RESPONSE, None

        log_info(self.logger, CONTEXT, f"Uploaded {len(data)} bytes -> {reference[:16]}...")
        return StorageErrorCode.SUCCESS, reference

    async def get(self, reference: str) -> Tuple[StorageErrorCode, Optional[bytes]]:
        """
        Download bytes by reference from the node, then from each gateway.

        Returns:
            (SUCCESS, data) or the error of the last source tried
        """
        if not is_valid_reference(reference or ""):
            log_error(self.logger, CONTEXT, "Download failed", f"invalid reference {reference!r}")
            return StorageErrorCode.ERR_INVALID_PARAM, None

        last_error = StorageErrorCode.ERR_NETWORK
        for base in self._download_urls():
            url = f"{base}/bytes/{reference}"
            try:
                async with self._get_session().get(url) as resp:
                    if resp.status == 200:
                        data = await resp.read()
                        log_debug(self.logger, CONTEXT, f"Downloaded {len(data)} bytes from {base}")
                        return StorageErrorCode.SUCCESS, data
                    last_error = _status_to_code(resp.status)
                    log_warning(self.logger, CONTEXT, f"Download from {base} returned HTTP {resp.status}")
            except asyncio.TimeoutError:
                last_error = StorageErrorCode.ERR_TIMEOUT
                log_warning(self.logger, CONTEXT, f"Download from {base} timed out")
            except aiohttp.ClientError as e:
                last_error = StorageErrorCode.ERR_NETWORK
                log_warning(self.logger, CONTEXT, f"Download from {base} failed: {e}")

        log_error(self.logger, CONTEXT, "Download failed", f"{reference[:16]}... on all sources ({last_error.name})")
        return last_error, None

    # --- inbox slots ---

    async def inbox_key(self, params: InboxParams) -> Optional[int]:
        """
        Mined inbox key for params, computed once per client off the event loop.

        Concurrent callers for the same inbox share one mining run.
        """
        key = (params.target_overlay, params.base_identifier, params.proximity)
        pending = self._inbox_keys.get(key)
        if pending is None:
            loop = asyncio.get_running_loop()
            pending = loop.run_in_executor(None, mine_inbox_key, *key)
            self._inbox_keys[key] = pending
        return await asyncio.shield(pending)

    async def slot_address(self, params: InboxParams, index: int) -> Optional[bytes]:
        value = await self.inbox_key(params)
        if value is None:
            return None
        return make_soc_address(get_indexed_identifier(params.base_identifier, index), owner_address(value))

    async def read_inbox_slot(
        self,
        params: InboxParams,
        index: int
    ) -> Tuple[StorageErrorCode, Optional[GSOCMessage]]:
        """
        Read one inbox slot.

        Returns:
            (SUCCESS, GSOCMessage) - slot written
            (SUCCESS, None)        - slot empty, or holding an unreadable payload
            (error code, None)     - the node could not be asked
        """
        address = await self.slot_address(params, index)
        if address is None:
            log_error(self.logger, CONTEXT, "Slot read failed", "no inbox key for these parameters")
            return StorageErrorCode.ERR_INVALID_PARAM, None

        url = f"{self.base_url}/chunks/{address.hex()}"
        try:
            async with self._get_session().get(url) as resp:
                if resp.status == 404:
                    return StorageErrorCode.SUCCESS, None
                if resp.status != 200:
                    log_error(self.logger, CONTEXT, f"Slot {index} read failed", f"HTTP {resp.status}")
                    return _status_to_code(resp.status), None
                chunk = await resp.read()
        except asyncio.TimeoutError:
            log_error(self.logger, CONTEXT, f"Slot {index} read failed", "timeout")
            return StorageErrorCode.ERR_TIMEOUT, None
        except aiohttp.ClientError as e:
            log_error(self.logger, CONTEXT, f"Slot {index} read failed", str(e))
            return StorageErrorCode.ERR_NETWORK, None

        err, message = parse_gsoc_payload(strip_soc_header(chunk))
        if err != InboxErrorCode.SUCCESS:
            # Anyone holding the inbox params can write a slot
            log_warning(self.logger, CONTEXT, f"Slot {index} holds an unreadable payload, skipped")
            return StorageErrorCode.SUCCESS, None

        message.index = index
        return StorageErrorCode.SUCCESS, message

    async def write_to_inbox(
        self,
        params: InboxParams,
        index: int,
        reference: str,
        sender_info: Optional[SenderInfo] = None
    ) -> Tuple[StorageErrorCode, Optional[GSOCMessage]]:
        """
        Write a descriptor for `reference` into inbox slot `index`.

        Sender details are sealed for the recipient when both sender_info
        and the recipient's public key are known; otherwise the descriptor
        is anonymous.

        Returns:
            (SUCCESS, GSOCMessage written) or (error code, None)
        """
        if not self.config.stamp_id:
            log_error(self.logger, CONTEXT, "Inbox write failed", "no postage stamp configured")
            return StorageErrorCode.ERR_NO_STAMP, None

        if index < 0 or not is_valid_reference(reference or ""):
            log_error(self.logger, CONTEXT, "Inbox write failed", "invalid slot or reference")
            return StorageErrorCode.ERR_INVALID_PARAM, None

        value = await self.inbox_key(params)
        if value is None:
            log_error(self.logger, CONTEXT, "Inbox write failed", "no inbox key for these parameters")
            return StorageErrorCode.ERR_INVALID_PARAM, None

        message = GSOCMessage(reference=reference, timestamp=int(time.time() * 1000))
        if sender_info is not None and params.recipient_public_key:
            err, sealed = encrypt_sender_metadata(sender_info, params.recipient_public_key, self.logger)
            if err == CryptoErrorCode.SUCCESS:
                message.encrypted_meta = sealed
            else:
                log_warning(self.logger, CONTEXT, "Sender details not sealed, writing an anonymous descriptor")

        identifier = get_indexed_identifier(params.base_identifier, index)
        owner, signature, body = make_inbox_chunk(value, identifier, encode_gsoc_message(message))

        url = f"{self.base_url}/soc/{owner.hex()}/{identifier.hex()}"
        headers = {
            STAMP_HEADER: self.config.stamp_id,
            "Content-Type": "application/octet-stream",
        }
        try:
            async with self._get_session().post(url, data=body, headers=headers,
                                                params={"sig": signature.hex()}) as resp:
                if resp.status not in (200, 201):
                    text = await resp.text()
                    log_error(self.logger, CONTEXT, f"Slot {index} write failed", f"HTTP {resp.status}: {text[:200]}")
                    return _status_to_code(resp.status), None
        except asyncio.TimeoutError:
            log_error(self.logger, CONTEXT, f"Slot {index} write failed", "timeout")
            return StorageErrorCode.ERR_TIMEOUT, None
        except aiohttp.ClientError as e:
            log_error(self.logger, CONTEXT, f"Slot {index} write failed", str(e))
            return StorageErrorCode.ERR_NETWORK, None

        message.index = index
        log_info(self.logger, CONTEXT, f"Wrote {reference[:16]}... to inbox slot {index}")
        return StorageErrorCode.SUCCESS, message

    async def get_overlay(self) -> Tuple[StorageErrorCode, Optional[str]]:
        """Overlay address of the configured node (target for a new inbox)."""
        url = f"{self.base_url}/addresses"
        try:
            async with self._get_session().get(url) as resp:
                if resp.status != 200:
                    return _status_to_code(resp.status), None
                payload = await resp.json(content_type=None)
        except asyncio.TimeoutError:
            return StorageErrorCode.ERR_TIMEOUT, None
        except (aiohttp.ClientError, ValueError) as e:
            log_error(self.logger, CONTEXT, "Overlay lookup failed", str(e))
            return StorageErrorCode.ERR_NETWORK, None

        overlay = payload.get("overlay") if isinstance(payload, dict) else None
        if not overlay:
            return StorageErrorCode.ERR_INVALID_RESPONSE, None
        return StorageErrorCode.SUCCESS, overlay

    def ws_url(self, path: str) -> str:
        base = self.base_url
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return f"{base}{path}"

    def session(self) -> aiohttp.ClientSession:
        return self._get_session()


# ============================================================================
# LIVE INBOX TRANSPORT
# ============================================================================

class BeeInboxChannel:
    """
    Live feed of one inbox: a websocket on the current slot's SOC address.

    When a slot fires, the descriptor is tagged with its index and the
    socket is re-opened on the next slot, mirroring how senders fill slots
    in order.
    """

    def __init__(self, client: BeeClient, params: InboxParams, start_index: int):
        self.client = client
        self.params = params
        self.index = start_index
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._closed = False

    async def connect(self) -> None:
        address = await self.client.slot_address(self.params, self.index)
        if address is None:
            raise ValueError("no inbox key for these parameters")
        url = self.client.ws_url(f"/gsoc/subscribe/{address.hex()}")
        self._ws = await self.client.session().ws_connect(url, heartbeat=30)
        log_debug(self.client.logger, CONTEXT, f"Listening on inbox slot {self.index}")

    async def _close_ws(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            await ws.close()

    async def receive(self) -> Optional[GSOCMessage]:
        """
        Wait for the next descriptor.

        Returns:
            GSOCMessage tagged with its slot index, or None on a clean close

        Raises:
            ConnectionError on a transport error
        """
        while not self._closed:
            if self._ws is None:
                await self.connect()

            msg = await self._ws.receive()

            if msg.type in (aiohttp.WSMsgType.BINARY, aiohttp.WSMsgType.TEXT):
                err, message = parse_gsoc_payload(msg.data)
                slot = self.index
                self.index += 1
                await self._close_ws()
                if err != InboxErrorCode.SUCCESS:
                    log_warning(self.client.logger, CONTEXT, f"Unreadable payload on slot {slot}, skipped")
                    continue
                message.index = slot
                return message

            if msg.type == aiohttp.WSMsgType.ERROR:
                exc = self._ws.exception()
                await self._close_ws()
                raise ConnectionError(f"inbox websocket error: {exc}")

            # CLOSE / CLOSING / CLOSED
            await self._close_ws()
            return None

        return None

    async def close(self) -> None:
        self._closed = True
        await self._close_ws()


class BeeInboxTransport:
    """Opens BeeInboxChannels; the transport used by InboxSubscriber."""

    def __init__(self, client: BeeClient):
        self.client = client

    async def open(self, params: InboxParams, start_index: int) -> BeeInboxChannel:
        channel = BeeInboxChannel(self.client, params, start_index)
        try:
            await channel.connect()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ConnectionError(f"inbox websocket connect failed: {e}") from e
        return channel
