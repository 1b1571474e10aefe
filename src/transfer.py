"""
transfer.py - Send and Receive Files for the Fairdrop Client

Glue between the envelope codec and the storage client. Sending seals the
file, uploads the serialized envelope and, when the recipient publishes an
inbox, writes a descriptor into its next free slot. Receiving downloads a
blob and decides whether it is an envelope before trying to open it.

A blob that looks like an envelope but fails to decrypt is reported as
ERR_DECRYPTION_FAILED with inconclusive=True: the header check is only a
heuristic, so the blob may be a plaintext file, the wrong key, or damage.

Functions:
    send_file(storage, recipient_pk, data, filename, content_type,
              inbox_params, sender_info)                    -> (TransferErrorCode, reference)
    notify_inbox(storage, params, reference, sender_info)  -> (TransferErrorCode, slot index)
    receive_file(storage, reference, private_key)           -> (TransferErrorCode, ReceivedFile)
"""

import dataclasses
from typing import Optional, Protocol, Tuple

from fairdrop_types import (
    TransferErrorCode,
    StorageErrorCode,
    CryptoErrorCode,
    InboxErrorCode,
    InboxConfig,
    InboxParams,
    GSOCMessage,
    SenderInfo,
    ReceivedFile,
)
from envelope import (
    make_metadata,
    encrypt_file,
    decrypt_file,
    serialize_envelope,
    deserialize_envelope,
    is_likely_encrypted,
)
from inbox_poller import InboxPoller
from logger import log_info, log_warning, log_error, LoggerHandle


CONTEXT = "Transfer"


class StorageClient(Protocol):
    async def put(self, data: bytes) -> Tuple[StorageErrorCode, Optional[str]]:
        ...

    async def get(self, reference: str) -> Tuple[StorageErrorCode, Optional[bytes]]:
        ...


class InboxWriter(Protocol):
    async def read_inbox_slot(self, params: InboxParams, index: int) -> Tuple[StorageErrorCode, Optional[GSOCMessage]]:
        ...

    async def write_to_inbox(
        self,
        params: InboxParams,
        index: int,
        reference: str,
        sender_info: Optional[SenderInfo] = None
    ) -> Tuple[StorageErrorCode, Optional[GSOCMessage]]:
        ...


async def send_file(
    storage: StorageClient,
    recipient_public_key: bytes,
    data: bytes,
    filename: str,
    content_type: Optional[str] = None,
    logger_handle: Optional[LoggerHandle] = None,
    inbox_params: Optional[InboxParams] = None,
    sender_info: Optional[SenderInfo] = None
) -> Tuple[TransferErrorCode, Optional[str]]:
    """
    Encrypt a file for a recipient, upload it and notify their inbox.

    Without inbox_params the upload is the whole send, and the reference
    has to reach the recipient some other way.

    Returns:
        (SUCCESS, reference)
        (ERR_INBOX, reference)   uploaded, but the inbox descriptor was not written
        (error code, None)
    """
    if not filename:
        return TransferErrorCode.ERR_INVALID_PARAM, None

    err, envelope = encrypt_file(recipient_public_key, data, make_metadata(filename, data, content_type),
                                 logger_handle)
    if err != CryptoErrorCode.SUCCESS:
        return TransferErrorCode.ERR_ENCRYPTION_FAILED, None

    storage_err, reference = await storage.put(serialize_envelope(envelope))
    if storage_err != StorageErrorCode.SUCCESS:
        log_error(logger_handle, CONTEXT, f"Send of {filename} failed", storage_err.name)
        return TransferErrorCode.ERR_STORAGE, None

    log_info(logger_handle, CONTEXT, f"Sent {filename} ({len(data)} bytes) as {reference[:16]}...")

    if inbox_params is not None:
        if inbox_params.recipient_public_key is None:
            inbox_params = dataclasses.replace(inbox_params, recipient_public_key=recipient_public_key)
        err, _ = await notify_inbox(storage, inbox_params, reference, sender_info,
                                    logger_handle=logger_handle)
        if err != TransferErrorCode.SUCCESS:
            return err, reference

    return TransferErrorCode.SUCCESS, reference


async def notify_inbox(
    storage: InboxWriter,
    params: InboxParams,
    reference: str,
    sender_info: Optional[SenderInfo] = None,
    inbox_config: Optional[InboxConfig] = None,
    logger_handle: Optional[LoggerHandle] = None
) -> Tuple[TransferErrorCode, Optional[int]]:
    """
    Write a descriptor for `reference` into the first free slot of an inbox.

    Returns:
        (SUCCESS, slot index) or (ERR_INVALID_PARAM / ERR_INBOX, None)
    """
    if params is None or not params.is_valid():
        return TransferErrorCode.ERR_INVALID_PARAM, None

    poller = InboxPoller(storage, inbox_config, logger_handle)
    err, index = await poller.find_next_slot(params)
    if err != InboxErrorCode.SUCCESS:
        log_error(logger_handle, CONTEXT, "Inbox notify failed", f"next slot lookup: {err.name}")
        return TransferErrorCode.ERR_INBOX, None

    storage_err, _ = await storage.write_to_inbox(params, index, reference, sender_info)
    if storage_err != StorageErrorCode.SUCCESS:
        log_error(logger_handle, CONTEXT, "Inbox notify failed", f"slot {index}: {storage_err.name}")
        return TransferErrorCode.ERR_INBOX, None

    log_info(logger_handle, CONTEXT, f"Descriptor for {reference[:16]}... in inbox slot {index}")
    return TransferErrorCode.SUCCESS, index


async def receive_file(
    storage: StorageClient,
    reference: str,
    private_key: Optional[bytes] = None,
    logger_handle: Optional[LoggerHandle] = None
) -> Tuple[TransferErrorCode, Optional[ReceivedFile]]:
    """
    Download a file and decrypt it when it looks like an envelope.

    Returns:
        (SUCCESS, ReceivedFile)                     plaintext blob, or decrypted file
        (ERR_NEEDS_KEY, ReceivedFile)               looks encrypted, no key given
        (ERR_DECRYPTION_FAILED, ReceivedFile)       looks encrypted, did not open
                                                    (inconclusive=True, raw data kept)
        (ERR_INVALID_PAYLOAD, ReceivedFile)         opened, metadata header broken
        (ERR_STORAGE, None)                         download failed
    """
    storage_err, blob = await storage.get(reference)
    if storage_err != StorageErrorCode.SUCCESS:
        log_error(logger_handle, CONTEXT, f"Receive of {reference[:16]} failed", storage_err.name)
        return TransferErrorCode.ERR_STORAGE, None

    if not is_likely_encrypted(blob):
        return TransferErrorCode.SUCCESS, ReceivedFile(data=blob)

    if private_key is None:
        log_info(logger_handle, CONTEXT, f"{reference[:16]} is encrypted, a private key is needed")
        return TransferErrorCode.ERR_NEEDS_KEY, ReceivedFile(data=blob, encrypted=True, needs_key=True)

    err, envelope = deserialize_envelope(blob, logger_handle)
    if err == CryptoErrorCode.SUCCESS:
        err, decrypted = decrypt_file(private_key, envelope, logger_handle)

    if err == CryptoErrorCode.SUCCESS:
        return TransferErrorCode.SUCCESS, ReceivedFile(
            data=decrypted.data, metadata=decrypted.metadata, encrypted=True)

    if err == CryptoErrorCode.ERR_INVALID_PAYLOAD:
        return TransferErrorCode.ERR_INVALID_PAYLOAD, ReceivedFile(data=blob, encrypted=True)

    log_warning(logger_handle, CONTEXT,
                f"{reference[:16]} looked encrypted but did not decrypt ({err.name}); result inconclusive")
    return TransferErrorCode.ERR_DECRYPTION_FAILED, ReceivedFile(
        data=blob, encrypted=True, inconclusive=True)
