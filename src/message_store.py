"""
message_store.py - Per-account Message Folders for the Fairdrop Client

Holds the received / sent / stored lists of each account in memory and
mirrors every change into the sqlite database. A reference appears at most
once per folder; adding it again is a no-op. Lists are newest first.

The store also drives inbox synchronisation: a one-shot poll (sync_inbox)
or a live subscription (start_subscription) turns inbox descriptors into
placeholder messages until the file itself is fetched and decrypted.

Functions (MessageStore methods):
    add_message(account_id, folder, message)          -> DatabaseErrorCode
    delete_message(account_id, folder, reference)     -> DatabaseErrorCode
    load_messages(account_id)                         -> DatabaseErrorCode
    sync_inbox(account_id, params, private_key)       -> (InboxErrorCode, new_count)
    update_message(account_id, folder, reference, ...) -> DatabaseErrorCode
    start_subscription(account_id, params, subscriber) -> InboxErrorCode
    stop_subscription()                               -> None
    get_messages(account_id, folder)                  -> List[Message]
    total_count(account_id)                           -> int
"""

import dataclasses
import time
from typing import Dict, List, Optional, Tuple, Union

from fairdrop_types import (
    DatabaseErrorCode,
    InboxErrorCode,
    CryptoErrorCode,
    InboxParams,
    GSOCMessage,
    Message,
    MessageFolder,
)
import database
from database import DatabaseHandle
from envelope import decrypt_sender_metadata
from inbox_poller import InboxPoller
from inbox_subscriber import InboxSubscriber
from logger import log_debug, log_info, log_warning, log_error, LoggerHandle


CONTEXT = "MessageStore"

FOLDERS = (MessageFolder.RECEIVED, MessageFolder.SENT, MessageFolder.STORED)


def _now_ms() -> int:
    return int(time.time() * 1000)


class MessageStore:
    """
    In-memory message folders backed by the database.

    Args:
        db_handle: Open DatabaseHandle
        poller: InboxPoller used by sync_inbox (optional)
        logger_handle: Optional logger handle

    Attributes:
        is_syncing: True while sync_inbox() is running
        is_subscribed: True between start_subscription() and stop_subscription()
        last_sync: Milliseconds timestamp of the last successful sync, or None
        error: Last error message, or None
    """

    def __init__(
        self,
        db_handle: Optional[DatabaseHandle],
        poller: Optional[InboxPoller] = None,
        logger_handle: Optional[LoggerHandle] = None
    ):
        self.db = db_handle
        self.poller = poller
        self.logger = logger_handle

        self._folders: Dict[Tuple[str, MessageFolder], List[Message]] = {}
        self._subscriber: Optional[InboxSubscriber] = None

        self.is_syncing = False
        self.is_subscribed = False
        self.last_sync: Optional[int] = None
        self.error: Optional[str] = None

    # --- helpers ---

    @staticmethod
    def _key(account_id: str, folder: Union[MessageFolder, str]) -> Tuple[str, MessageFolder]:
        return account_id.strip().lower(), MessageFolder(folder)

    def _list(self, account_id: str, folder: Union[MessageFolder, str]) -> List[Message]:
        return self._folders.setdefault(self._key(account_id, folder), [])

    def _contains(self, account_id: str, folder: Union[MessageFolder, str], reference: str) -> bool:
        return any(m.reference == reference for m in self._list(account_id, folder))

    def _add(
        self,
        account_id: str,
        folder: Union[MessageFolder, str],
        message: Message
    ) -> Tuple[DatabaseErrorCode, bool]:
        """Add unless present; returns whether a new entry was persisted."""
        if self._contains(account_id, folder, message.reference):
            return DatabaseErrorCode.SUCCESS, False

        err, inserted = database.insert_message(self.db, account_id, folder, message)
        if err != DatabaseErrorCode.SUCCESS:
            self.error = f"Failed to save message: {err.name}"
            return err, False

        self._list(account_id, folder).insert(0, message)
        return DatabaseErrorCode.SUCCESS, inserted

    # --- folder operations ---

    def add_message(
        self,
        account_id: str,
        folder: Union[MessageFolder, str],
        message: Message
    ) -> DatabaseErrorCode:
        """
        Prepend a message to a folder and persist it.

        A message whose reference the folder already holds is ignored.
        """
        err, _ = self._add(account_id, folder, message)
        return err

    def delete_message(
        self,
        account_id: str,
        folder: Union[MessageFolder, str],
        reference: str
    ) -> DatabaseErrorCode:
        """Remove a message from memory and the database; absent is not an error."""
        err = database.delete_message(self.db, account_id, folder, reference)
        if err not in (DatabaseErrorCode.SUCCESS, DatabaseErrorCode.ERR_NOT_FOUND):
            self.error = f"Failed to delete message: {err.name}"
            return err

        messages = self._list(account_id, folder)
        messages[:] = [m for m in messages if m.reference != reference]
        return DatabaseErrorCode.SUCCESS

    def load_messages(self, account_id: str) -> DatabaseErrorCode:
        """
        Reload all three folders of an account from the database.

        On failure the error is recorded and the in-memory folders are left
        exactly as they were.
        """
        loaded: Dict[MessageFolder, List[Message]] = {}
        for folder in FOLDERS:
            err, messages = database.get_messages(self.db, account_id, folder)
            if err != DatabaseErrorCode.SUCCESS:
                self.error = f"Failed to load messages: {err.name}"
                log_error(self.logger, CONTEXT, f"Load failed for {account_id}", err.name)
                return err
            loaded[folder] = messages

        for folder, messages in loaded.items():
            self._folders[self._key(account_id, folder)] = messages

        err, state = database.get_inbox_state(self.db, account_id)
        if err == DatabaseErrorCode.SUCCESS and state:
            self.last_sync = state['last_sync']

        log_debug(self.logger, CONTEXT,
                  f"Loaded {sum(len(m) for m in loaded.values())} message(s) for {account_id}")
        return DatabaseErrorCode.SUCCESS

    def update_message(
        self,
        account_id: str,
        folder: Union[MessageFolder, str],
        reference: str,
        filename: Optional[str] = None,
        size: Optional[int] = None,
        sender: Optional[str] = None,
        encrypted: Optional[bool] = None
    ) -> DatabaseErrorCode:
        """Fill in real file details for a placeholder."""
        err = database.update_message_metadata(
            self.db, account_id, folder, reference,
            filename=filename, size=size, sender=sender, encrypted=encrypted)
        if err != DatabaseErrorCode.SUCCESS:
            if err != DatabaseErrorCode.ERR_NOT_FOUND:
                self.error = f"Failed to update message: {err.name}"
            return err

        changes = {k: v for k, v in (("filename", filename), ("size", size),
                                     ("sender", sender), ("encrypted", encrypted)) if v is not None}
        messages = self._list(account_id, folder)
        for i, message in enumerate(messages):
            if message.reference == reference:
                messages[i] = dataclasses.replace(message, **changes)
        return DatabaseErrorCode.SUCCESS

    def get_messages(self, account_id: str, folder: Union[MessageFolder, str]) -> List[Message]:
        return list(self._list(account_id, folder))

    def total_count(self, account_id: str) -> int:
        return sum(len(self._list(account_id, folder)) for folder in FOLDERS)

    def clear_error(self) -> None:
        self.error = None

    def reset(self) -> None:
        """Forget all in-memory state (e.g. on account switch)."""
        self.stop_subscription()
        self._folders.clear()
        self.is_syncing = False
        self.last_sync = None
        self.error = None

    # --- inbox ---

    def _placeholder(self, gsoc_message: GSOCMessage, private_key: Optional[bytes]) -> Message:
        message = Message.placeholder(gsoc_message)
        if private_key is None or gsoc_message.encrypted_meta is None:
            return message

        err, info = decrypt_sender_metadata(gsoc_message.encrypted_meta, private_key, self.logger)
        if err != CryptoErrorCode.SUCCESS:
            log_warning(self.logger, CONTEXT,
                        f"Sender details of {gsoc_message.reference[:16]} unreadable ({err.name})")
            return message

        return dataclasses.replace(
            message,
            sender=info.sender or None,
            filename=info.filename or message.filename,
        )

    def _record_index(self, account_id: str, index: Optional[int]) -> None:
        if index is None:
            return
        err, state = database.get_inbox_state(self.db, account_id)
        known = state['last_index'] if err == DatabaseErrorCode.SUCCESS and state else None
        if known is None or index > known:
            database.set_inbox_state(self.db, account_id, last_index=index)

    async def sync_inbox(
        self,
        account_id: str,
        params: InboxParams,
        private_key: Optional[bytes] = None
    ) -> Tuple[InboxErrorCode, int]:
        """
        Poll the inbox from slot 0 and add a placeholder per unseen reference.

        Concurrent calls are not merged; callers should not start a sync
        while is_syncing is True.

        Returns:
            (SUCCESS, number of new messages), or an error code with 0
        """
        if self.poller is None:
            self.error = "No inbox poller configured"
            return InboxErrorCode.ERR_NO_POLLER, 0

        self.is_syncing = True
        self.error = None
        try:
            err, gsoc_messages = await self.poller.poll(params, 0)
            if err != InboxErrorCode.SUCCESS:
                self.error = f"Inbox sync failed: {err.name}"
                log_error(self.logger, CONTEXT, f"Sync failed for {account_id}", err.name)
                return err, 0

            new_count = 0
            for gsoc_message in gsoc_messages:
                if self._contains(account_id, MessageFolder.RECEIVED, gsoc_message.reference):
                    continue
                db_err, added = self._add(account_id, MessageFolder.RECEIVED,
                                          self._placeholder(gsoc_message, private_key))
                if db_err != DatabaseErrorCode.SUCCESS:
                    return InboxErrorCode.ERR_DATABASE, new_count
                if added:
                    new_count += 1

            self.last_sync = _now_ms()
            indexes = [m.index for m in gsoc_messages if m.index is not None]
            database.set_inbox_state(self.db, account_id, last_sync=self.last_sync)
            self._record_index(account_id, max(indexes) if indexes else None)

            log_info(self.logger, CONTEXT,
                     f"Synced {account_id}: {len(gsoc_messages)} descriptor(s), {new_count} new")
            return InboxErrorCode.SUCCESS, new_count
        finally:
            self.is_syncing = False

    def start_subscription(
        self,
        account_id: str,
        params: InboxParams,
        subscriber: InboxSubscriber,
        start_index: Optional[int] = None,
        private_key: Optional[bytes] = None
    ) -> InboxErrorCode:
        """
        Route live inbox descriptors into the received folder.

        Without start_index the subscription starts after the highest slot
        already recorded for the account, so history is not replayed.
        """
        self.stop_subscription()

        if start_index is None:
            err, state = database.get_inbox_state(self.db, account_id)
            last_index = state['last_index'] if err == DatabaseErrorCode.SUCCESS and state else None
            start_index = last_index + 1 if last_index is not None else 0

        def on_message(gsoc_message: GSOCMessage) -> None:
            err, added = self._add(account_id, MessageFolder.RECEIVED,
                                   self._placeholder(gsoc_message, private_key))
            if err == DatabaseErrorCode.SUCCESS:
                self._record_index(account_id, gsoc_message.index)
                if added:
                    log_info(self.logger, CONTEXT, f"New message {gsoc_message.reference[:16]} for {account_id}")

        def on_error(error: BaseException) -> None:
            self.error = f"Inbox subscription error: {error}"

        def on_connect() -> None:
            self.error = None

        err = subscriber.subscribe(params, start_index,
                                   on_message=on_message, on_error=on_error, on_connect=on_connect)
        if err != InboxErrorCode.SUCCESS:
            self.error = f"Inbox subscription failed: {err.name}"
            return err

        self._subscriber = subscriber
        self.is_subscribed = True
        return InboxErrorCode.SUCCESS

    def stop_subscription(self) -> None:
        subscriber, self._subscriber = self._subscriber, None
        if subscriber is not None:
            subscriber.cancel()
        self.is_subscribed = False
