#!/usr/bin/env python3
"""
app.py - Fairdrop Client Command Line Entry Point

Usage:
    fairdrop init-config
    fairdrop keygen --out Data/identity.key
    fairdrop send --to alice FILE --account bob --from bob
    fairdrop sync --account bob --name bob.fairdrop.eth --key-file Data/identity.key
    fairdrop watch --account bob --overlay <hex> --base-id <hex>
    fairdrop fetch <reference> --key-file Data/identity.key -o out.bin
    fairdrop list --account bob
"""

import sys
import os
import argparse
import asyncio
import time
from dataclasses import dataclass
from typing import Any, Optional

# Running as a script: make the sibling modules importable
_src_dir = os.path.dirname(os.path.abspath(__file__))
if _src_dir not in sys.path:
    sys.path.insert(0, _src_dir)

from config import (
    load_config, validate_config, print_config_summary,
    get_default_config_path, create_default_config_file,
)
from logger import init_logger, close_logger, log_info, parse_log_level, LogLevel
from database import init_database, close_database
from fairdrop_types import (
    FairdropConfig, InboxParams, Message, MessageFolder, SenderInfo, DEFAULT_PROXIMITY,
    CryptoErrorCode, DatabaseErrorCode, InboxErrorCode, StorageErrorCode, TransferErrorCode,
    SubscriptionEventType, DirectKey, ResolvedWithKey, ResolvedWithoutKey,
)
from envelope import (
    generate_key_pair, make_metadata, encrypt_file, decrypt_file,
    serialize_envelope, deserialize_envelope,
)
from identity import load_private_key, save_private_key
from bee_client import BeeClient, BeeInboxTransport
from gsoc import create_inbox_params
from inbox_poller import InboxPoller
from inbox_subscriber import InboxSubscriber
from message_store import MessageStore
from resolver import (
    StaticRecordSource, load_record_file, resolve_recipient, get_inbox_params,
    PUBLIC_KEY_RECORD, INBOX_OVERLAY_RECORD, INBOX_ID_RECORD, INBOX_PROX_RECORD,
)
from transfer import send_file, receive_file


APP_NAME = "Fairdrop Client"
APP_VERSION = "1.0.0"
APP_CONTEXT = "App"


# ============================================================================
# APP CONTEXT
# ============================================================================

@dataclass
class AppContext:
    """Resources opened for one command and closed when it ends."""
    config: FairdropConfig
    logger: Any
    db_handle: Any = None

    def close(self) -> None:
        if self.db_handle is not None:
            close_database(self.db_handle)
            self.db_handle = None
        close_logger(self.logger)


def open_context(args, need_db: bool = False) -> Optional[AppContext]:
    config_path = args.config if args.config else get_default_config_path()

    if os.path.isfile(config_path):
        config = load_config(config_path)
        if config is None:
            return None
    else:
        config = FairdropConfig()

    validation = validate_config(config)
    if validation.errors:
        print("[ERROR] Configuration validation failed:")
        for error in validation.errors:
            print(f"  - {error}")
        return None

    min_level = LogLevel.DEBUG if args.debug else parse_log_level(config.logging.level)
    logger = init_logger(
        config.paths.log_path,
        max_file_size=config.logging.max_size_mb * 1024 * 1024,
        max_archives=config.logging.backup_count,
        min_level=min_level,
        console_level=LogLevel.WARNING if config.logging.console else None,
    )
    log_info(logger, APP_CONTEXT, f"{APP_NAME} {APP_VERSION}: {args.command}")

    ctx = AppContext(config=config, logger=logger)
    if need_db:
        db_err, db_handle = init_database(config.paths.db_path, logger=logger)
        if db_err != DatabaseErrorCode.SUCCESS:
            print(f"[ERROR] Failed to open database {config.paths.db_path}: {db_err.name}")
            ctx.close()
            return None
        ctx.db_handle = db_handle
    return ctx


def _read_file(path: str) -> Optional[bytes]:
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as e:
        print(f"[ERROR] Cannot read {path}: {e}")
        return None


def _write_file(path: str, data: bytes) -> bool:
    try:
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        with open(path, "wb") as f:
            f.write(data)
        return True
    except OSError as e:
        print(f"[ERROR] Cannot write {path}: {e}")
        return False


def _load_key(args) -> Optional[bytes]:
    if not getattr(args, "key_file", None):
        return None
    try:
        return load_private_key(args.key_file)
    except (OSError, ValueError) as e:
        print(f"[ERROR] Cannot load private key from {args.key_file}: {e}")
        raise SystemExit(1)


def _record_source(args) -> StaticRecordSource:
    if getattr(args, "records", None):
        source = load_record_file(args.records)
        if source is None:
            print(f"[WARNING] Address book {args.records} not loaded")
        else:
            return source
    return StaticRecordSource()


async def _inbox_params_from_args(args, ctx: AppContext) -> Optional[InboxParams]:
    if args.overlay and args.base_id:
        return InboxParams(target_overlay=args.overlay, base_identifier=args.base_id,
                           proximity=args.proximity)
    if args.name:
        params = await get_inbox_params(_record_source(args), args.name, ctx.logger)
        if params is None:
            print(f"[ERROR] No inbox records published for {args.name}")
        return params
    print("[ERROR] Give --overlay and --base-id, or --name with --records")
    return None


# ============================================================================
# COMMANDS
# ============================================================================

def cmd_init_config(args) -> int:
    path = args.config or get_default_config_path()
    if os.path.exists(path) and not args.force:
        print(f"[ERROR] {path} already exists (use --force to overwrite)")
        return 1
    if not create_default_config_file(path):
        return 1
    print(f"Wrote default configuration to {path}")
    return 0


def cmd_keygen(args) -> int:
    key_pair = generate_key_pair(compressed=not args.uncompressed)
    if args.out:
        try:
            save_private_key(args.out, key_pair)
        except OSError as e:
            print(f"[ERROR] Cannot write {args.out}: {e}")
            return 1
        print(f"Private key written to {args.out}")
    else:
        print(f"Private key: {key_pair.private_key.hex()}")
    print(f"Public key:  {key_pair.public_key_hex()}")
    print(f"Publish as text record {PUBLIC_KEY_RECORD}")
    return 0


def cmd_encrypt(args) -> int:
    data = _read_file(args.file)
    if data is None:
        return 1
    try:
        recipient = bytes.fromhex(args.to[2:] if args.to.startswith("0x") else args.to)
    except ValueError:
        print("[ERROR] --to must be a hex public key")
        return 1

    err, envelope = encrypt_file(recipient, data, make_metadata(os.path.basename(args.file), data))
    if err != CryptoErrorCode.SUCCESS:
        print(f"[ERROR] Encryption failed: {err.name}")
        return 1
    if not _write_file(args.output, serialize_envelope(envelope)):
        return 1
    print(f"Encrypted {len(data)} bytes -> {args.output}")
    return 0


def cmd_decrypt(args) -> int:
    blob = _read_file(args.file)
    private_key = _load_key(args)
    if blob is None or private_key is None:
        print("[ERROR] decrypt needs a readable file and --key-file")
        return 1

    err, envelope = deserialize_envelope(blob)
    if err == CryptoErrorCode.SUCCESS:
        err, decrypted = decrypt_file(private_key, envelope)
    if err != CryptoErrorCode.SUCCESS:
        if err == CryptoErrorCode.ERR_DECRYPTION_FAILED:
            print("[ERROR] Decryption failed: wrong key or the file was modified")
        else:
            print(f"[ERROR] Cannot decrypt: {err.name}")
        return 1

    output = args.output or decrypted.metadata.name or "decrypted.bin"
    if not _write_file(output, decrypted.data):
        return 1
    print(f"Decrypted {decrypted.metadata.name} ({len(decrypted.data)} bytes) -> {output}")
    return 0


async def cmd_send(args, ctx: AppContext) -> int:
    data = _read_file(args.file)
    if data is None:
        return 1

    resolution = await resolve_recipient(_record_source(args), args.to,
                                         ctx.config.resolver.ens_domain, ctx.logger)
    if isinstance(resolution, (DirectKey, ResolvedWithKey)):
        public_key = resolution.public_key
    elif isinstance(resolution, ResolvedWithoutKey):
        print(f"[ERROR] {resolution.name} has not published a public key")
        return 1
    else:
        print(f"[ERROR] Recipient not found: {args.to}")
        return 1

    inbox_params = getattr(resolution, "inbox_params", None)
    if args.overlay and args.base_id:
        inbox_params = InboxParams(target_overlay=args.overlay, base_identifier=args.base_id,
                                   proximity=args.proximity, recipient_public_key=public_key)
    sender_info = SenderInfo(sender=args.sender, filename=os.path.basename(args.file)) if args.sender else None

    async with BeeClient(ctx.config.storage, logger_handle=ctx.logger) as bee:
        err, reference = await send_file(bee, public_key, data, os.path.basename(args.file),
                                         logger_handle=ctx.logger, inbox_params=inbox_params,
                                         sender_info=sender_info)
    if reference is None:
        print(f"[ERROR] Send failed: {err.name}")
        return 1

    if args.account:
        store = MessageStore(ctx.db_handle, logger_handle=ctx.logger)
        store.add_message(args.account, MessageFolder.SENT, Message(
            reference=reference,
            filename=os.path.basename(args.file),
            size=len(data),
            timestamp=int(time.time() * 1000),
            encrypted=True,
            recipient=args.to,
        ))
    print(f"Sent {os.path.basename(args.file)} -> {reference}")

    if err == TransferErrorCode.ERR_INBOX:
        print("[ERROR] Uploaded, but the recipient's inbox was not notified; share the reference instead")
        return 1
    if inbox_params is None:
        print("[WARNING] Recipient has no inbox; share the reference with them")
    return 0


async def cmd_fetch(args, ctx: AppContext) -> int:
    private_key = _load_key(args)
    async with BeeClient(ctx.config.storage, logger_handle=ctx.logger) as bee:
        err, received = await receive_file(bee, args.reference, private_key, ctx.logger)

    if err == TransferErrorCode.ERR_STORAGE:
        print("[ERROR] Download failed")
        return 1
    if err == TransferErrorCode.ERR_NEEDS_KEY:
        print("[ERROR] The file is encrypted; pass --key-file")
        return 1
    if err == TransferErrorCode.ERR_DECRYPTION_FAILED:
        print("[ERROR] The file looks encrypted but did not decrypt with this key "
              "(wrong key, or a plain file that resembles an envelope)")
        if args.raw and _write_file(args.output or f"{args.reference[:16]}.bin", received.data):
            print("Raw download saved")
        return 1
    if err != TransferErrorCode.SUCCESS:
        print(f"[ERROR] Fetch failed: {err.name}")
        return 1

    name = received.metadata.name if received.metadata else f"{args.reference[:16]}.bin"
    output = args.output or os.path.join(ctx.config.paths.download_path, os.path.basename(name))
    if not _write_file(output, received.data):
        return 1

    if args.account and received.metadata:
        store = MessageStore(ctx.db_handle, logger_handle=ctx.logger)
        store.update_message(args.account, MessageFolder.RECEIVED, args.reference,
                             filename=received.metadata.name, size=len(received.data))
    print(f"Saved {name} ({len(received.data)} bytes) -> {output}")
    return 0


async def cmd_sync(args, ctx: AppContext) -> int:
    params = await _inbox_params_from_args(args, ctx)
    if params is None:
        return 1

    async with BeeClient(ctx.config.storage, logger_handle=ctx.logger) as bee:
        store = MessageStore(ctx.db_handle, InboxPoller(bee, ctx.config.inbox, ctx.logger), ctx.logger)
        store.load_messages(args.account)
        err, new_count = await store.sync_inbox(args.account, params, _load_key(args))

    if err != InboxErrorCode.SUCCESS:
        print(f"[ERROR] {store.error}")
        return 1
    print(f"Inbox synced: {new_count} new message(s), "
          f"{len(store.get_messages(args.account, MessageFolder.RECEIVED))} received in total")
    return 0


async def cmd_watch(args, ctx: AppContext) -> int:
    params = await _inbox_params_from_args(args, ctx)
    if params is None:
        return 1

    async with BeeClient(ctx.config.storage, logger_handle=ctx.logger) as bee:
        store = MessageStore(ctx.db_handle, logger_handle=ctx.logger)
        store.load_messages(args.account)
        async with InboxSubscriber(BeeInboxTransport(bee), ctx.config.subscriber, ctx.logger) as subscriber:
            err = store.start_subscription(args.account, params, subscriber,
                                           start_index=args.start, private_key=_load_key(args))
            if err != InboxErrorCode.SUCCESS:
                print(f"[ERROR] {store.error}")
                return 1

            print("Watching inbox, Ctrl+C to stop...")
            async for event in subscriber.events():
                if event.type == SubscriptionEventType.MESSAGE_RECEIVED:
                    message = event.message
                    print(f"  slot {message.index}: {message.reference}")
                elif event.type == SubscriptionEventType.CONNECTED:
                    print(f"Connected at slot {subscriber.current_index}")
                elif event.type == SubscriptionEventType.ERROR:
                    print(f"[WARNING] {event.error}")
                elif event.type == SubscriptionEventType.RECONNECT_SCHEDULED:
                    print(f"Reconnecting (attempt {subscriber.status.reconnect_attempts})...")
                elif event.type == SubscriptionEventType.GAVE_UP:
                    print(f"[ERROR] Stopped watching: {subscriber.status.error}")
                    return 1
    return 0


async def cmd_create_inbox(args, ctx: AppContext) -> int:
    overlay = args.overlay
    if not overlay:
        async with BeeClient(ctx.config.storage, logger_handle=ctx.logger) as bee:
            err, overlay = await bee.get_overlay()
        if err != StorageErrorCode.SUCCESS:
            print(f"[ERROR] Cannot read the node overlay: {err.name}")
            return 1

    err, params = create_inbox_params(overlay, args.proximity, logger_handle=ctx.logger)
    if err != InboxErrorCode.SUCCESS:
        print(f"[ERROR] Could not mine an inbox key for proximity {args.proximity}")
        return 1

    print("Publish these text records:")
    print(f"  {INBOX_OVERLAY_RECORD} = {params.target_overlay}")
    print(f"  {INBOX_ID_RECORD} = {params.base_identifier}")
    print(f"  {INBOX_PROX_RECORD} = {params.proximity}")
    return 0


def cmd_list(args, ctx: AppContext) -> int:
    store = MessageStore(ctx.db_handle, logger_handle=ctx.logger)
    if store.load_messages(args.account) != DatabaseErrorCode.SUCCESS:
        print(f"[ERROR] {store.error}")
        return 1

    folders = [MessageFolder(args.folder)] if args.folder else list(MessageFolder)
    for folder in folders:
        messages = store.get_messages(args.account, folder)
        print(f"{folder.value} ({len(messages)})")
        for m in messages:
            who = m.sender or m.recipient or "-"
            print(f"  {m.reference[:16]}  {m.filename:<30} {m.size:>10}  {who}")
    return 0


def cmd_delete(args, ctx: AppContext) -> int:
    store = MessageStore(ctx.db_handle, logger_handle=ctx.logger)
    err = store.delete_message(args.account, args.folder, args.reference)
    if err != DatabaseErrorCode.SUCCESS:
        print(f"[ERROR] {store.error}")
        return 1
    print(f"Deleted {args.reference[:16]} from {args.folder}")
    return 0


# ============================================================================
# ARGUMENTS
# ============================================================================

def _add_inbox_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--account', '-a', required=True, help='Local account name')
    parser.add_argument('--overlay', help='Inbox target overlay (hex)')
    parser.add_argument('--base-id', help='Inbox base identifier (hex)')
    parser.add_argument('--proximity', type=int, default=DEFAULT_PROXIMITY, help='Inbox proximity (default: 16)')
    parser.add_argument('--name', help='Resolve inbox parameters from this name')
    parser.add_argument('--records', help='Address book TOML file used for --name')
    parser.add_argument('--key-file', help='Private key file, used to read sender details')


def parse_arguments(argv=None):
    parser = argparse.ArgumentParser(
        prog='fairdrop',
        description=f'{APP_NAME} - end-to-end encrypted file drop over Swarm',
    )
    parser.add_argument('--config', '-c', default=None,
                        help='Path to configuration file (default: config/fairdrop.toml)')
    parser.add_argument('--debug', '-d', action='store_true', help='Enable debug logging level')
    parser.add_argument('--version', '-v', action='version', version=f'{APP_NAME} {APP_VERSION}')

    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('init-config', help='Write a default configuration file')
    p.add_argument('--force', action='store_true')

    p = sub.add_parser('keygen', help='Generate an identity keypair')
    p.add_argument('--out', '-o', help='Write the private key to this file')
    p.add_argument('--uncompressed', action='store_true', help='Print a 65-byte public key')

    p = sub.add_parser('encrypt', help='Seal a local file for a public key')
    p.add_argument('file')
    p.add_argument('--to', required=True, help='Recipient public key (hex)')
    p.add_argument('--output', '-o', required=True)

    p = sub.add_parser('decrypt', help='Open a local envelope file')
    p.add_argument('file')
    p.add_argument('--key-file', required=True)
    p.add_argument('--output', '-o')

    p = sub.add_parser('send', help='Encrypt and upload a file, then notify the recipient\'s inbox')
    p.add_argument('file')
    p.add_argument('--to', required=True, help='Public key, ENS name or fairdrop username')
    p.add_argument('--records', help='Address book TOML file')
    p.add_argument('--account', '-a', help='Record the upload in this account\'s sent folder')
    p.add_argument('--from', dest='sender', help='Sender name, sealed for the recipient in the inbox descriptor')
    p.add_argument('--overlay', help='Recipient inbox target overlay (hex), when not published')
    p.add_argument('--base-id', help='Recipient inbox base identifier (hex)')
    p.add_argument('--proximity', type=int, default=DEFAULT_PROXIMITY)

    p = sub.add_parser('fetch', help='Download (and decrypt) a file by reference')
    p.add_argument('reference')
    p.add_argument('--key-file')
    p.add_argument('--output', '-o')
    p.add_argument('--account', '-a', help='Update the matching received message')
    p.add_argument('--raw', action='store_true', help='Keep the raw download if decryption fails')

    p = sub.add_parser('sync', help='Poll an inbox once')
    _add_inbox_arguments(p)

    p = sub.add_parser('watch', help='Follow an inbox live')
    _add_inbox_arguments(p)
    p.add_argument('--start', type=int, default=None, help='First slot (default: after the last seen)')

    p = sub.add_parser('create-inbox', help='Create inbox parameters to publish')
    p.add_argument('--overlay', help='Target overlay (default: the configured node)')
    p.add_argument('--proximity', type=int, default=DEFAULT_PROXIMITY)

    p = sub.add_parser('list', help='List stored messages')
    p.add_argument('--account', '-a', required=True)
    p.add_argument('--folder', choices=[f.value for f in MessageFolder])

    p = sub.add_parser('delete', help='Delete a stored message')
    p.add_argument('reference')
    p.add_argument('--account', '-a', required=True)
    p.add_argument('--folder', choices=[f.value for f in MessageFolder], default=MessageFolder.RECEIVED.value)

    return parser.parse_args(argv)


# ============================================================================
# MAIN
# ============================================================================

ASYNC_COMMANDS = {
    'send': cmd_send,
    'fetch': cmd_fetch,
    'sync': cmd_sync,
    'watch': cmd_watch,
    'create-inbox': cmd_create_inbox,
}

DB_COMMANDS = {'send', 'fetch', 'sync', 'watch', 'list', 'delete'}


def main(argv=None) -> int:
    args = parse_arguments(argv)

    if args.command == 'init-config':
        return cmd_init_config(args)
    if args.command == 'keygen':
        return cmd_keygen(args)
    if args.command == 'encrypt':
        return cmd_encrypt(args)
    if args.command == 'decrypt':
        return cmd_decrypt(args)

    ctx = open_context(args, need_db=args.command in DB_COMMANDS)
    if ctx is None:
        return 1

    if args.debug:
        print_config_summary(ctx.config)

    try:
        if args.command in ASYNC_COMMANDS:
            return asyncio.run(ASYNC_COMMANDS[args.command](args, ctx))
        if args.command == 'list':
            return cmd_list(args, ctx)
        if args.command == 'delete':
            return cmd_delete(args, ctx)
        return 1
    except KeyboardInterrupt:
        print()
        print("Stopped.")
        return 0
    finally:
        log_info(ctx.logger, APP_CONTEXT, f"{args.command} finished")
        ctx.close()


# ============================================================================
# ENTRY POINT
# ============================================================================

if __name__ == '__main__':
    sys.exit(main())
