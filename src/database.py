"""
database.py - SQLite Message Storage for the Fairdrop Client

Durable storage behind the MessageStore. Messages are keyed by
(account, folder, reference); the account id is case-insensitive and stored
lower-cased. Listing order is newest insertion first.

Functions:
    init_database(db_path, logger)                           -> (DatabaseErrorCode, DatabaseHandle)
    close_database(handle)                                   -> bool
    insert_message(handle, account, folder, message)         -> (DatabaseErrorCode, inserted)
    get_messages(handle, account, folder)                    -> (DatabaseErrorCode, List[Message])
    message_exists(handle, account, folder, reference)       -> (DatabaseErrorCode, bool)
    delete_message(handle, account, folder, reference)       -> DatabaseErrorCode
    update_message_metadata(handle, account, folder, ref, ...) -> DatabaseErrorCode
    set_inbox_state(handle, account, last_sync, last_index)  -> DatabaseErrorCode
    get_inbox_state(handle, account)                         -> (DatabaseErrorCode, dict or None)
    clear_account(handle, account)                           -> DatabaseErrorCode
"""

import os
import sqlite3
from typing import Any, Dict, List, Optional, Tuple, Union

from fairdrop_types import DatabaseErrorCode, Message, MessageFolder
from logger import log_info, log_error, log_debug


DB_CONTEXT = "Database"


# ============================================================================
# DATABASE HANDLE
# ============================================================================

class DatabaseHandle:
    """Open sqlite connection plus the logger used for its operations."""
    __slots__ = ('connection', 'path', 'logger')

    def __init__(self, connection: sqlite3.Connection, path: str, logger: Any = None):
        self.connection = connection
        self.path = path
        self.logger = logger


# ============================================================================
# SCHEMA
# ============================================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS Messages (
    Seq INTEGER PRIMARY KEY AUTOINCREMENT,
    Account TEXT NOT NULL,
    Folder TEXT NOT NULL CHECK (Folder IN ('received', 'sent', 'stored')),
    Reference TEXT NOT NULL,
    Filename TEXT NOT NULL,
    Size INTEGER NOT NULL DEFAULT 0,
    Timestamp INTEGER NOT NULL DEFAULT 0,
    Encrypted INTEGER NOT NULL DEFAULT 0,
    Sender TEXT,
    Recipient TEXT,
    UNIQUE (Account, Folder, Reference)
);

CREATE INDEX IF NOT EXISTS idx_messages_account_folder ON Messages(Account, Folder);

CREATE TABLE IF NOT EXISTS InboxState (
    Account TEXT PRIMARY KEY,
    LastSync INTEGER,
    LastIndex INTEGER
);
"""


# ============================================================================
# HELPERS
# ============================================================================

def _usable(handle: Optional[DatabaseHandle]) -> bool:
    return handle is not None and handle.connection is not None


def _account_key(account: str) -> str:
    return (account or "").strip().lower()


def _folder_value(folder: Union[MessageFolder, str]) -> Optional[str]:
    try:
        return MessageFolder(folder).value
    except ValueError:
        return None


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        reference=row['Reference'],
        filename=row['Filename'],
        size=row['Size'],
        timestamp=row['Timestamp'],
        encrypted=bool(row['Encrypted']),
        sender=row['Sender'],
        recipient=row['Recipient'],
    )


# ============================================================================
# INIT / CLOSE
# ============================================================================

def init_database(db_path: str, logger: Any = None) -> Tuple[DatabaseErrorCode, Optional[DatabaseHandle]]:
    """
    Open (or create) the database and make sure every table exists.

    Args:
        db_path: Path to the sqlite file, or ":memory:"
        logger: Optional logger handle

    Returns:
        (SUCCESS, DatabaseHandle), (ERR_IO, None) or (ERR_OPEN_FAILED, None)
    """
    if not db_path:
        return DatabaseErrorCode.ERR_INVALID_PARAM, None

    db_dir = os.path.dirname(db_path)
    if db_path != ":memory:" and db_dir and not os.path.exists(db_dir):
        try:
            os.makedirs(db_dir, exist_ok=True)
            log_info(logger, DB_CONTEXT, f"Created directory: {db_dir}")
        except OSError as e:
            log_error(logger, DB_CONTEXT, "Directory creation failed", str(e))
            return DatabaseErrorCode.ERR_IO, None

    try:
        connection = sqlite3.connect(db_path, check_same_thread=False)
        connection.row_factory = sqlite3.Row
        connection.executescript(SCHEMA_SQL)
        connection.commit()
    except sqlite3.Error as e:
        log_error(logger, DB_CONTEXT, "Initialization failed", str(e))
        return DatabaseErrorCode.ERR_OPEN_FAILED, None

    log_info(logger, DB_CONTEXT, f"Database initialized: {db_path}")
    return DatabaseErrorCode.SUCCESS, DatabaseHandle(connection=connection, path=db_path, logger=logger)


def close_database(handle: Optional[DatabaseHandle]) -> bool:
    """Close the connection; True if closed or already closed."""
    if not _usable(handle):
        return True

    try:
        handle.connection.close()
        handle.connection = None
        log_info(handle.logger, DB_CONTEXT, f"Database closed: {handle.path}")
        return True
    except sqlite3.Error as e:
        log_error(handle.logger, DB_CONTEXT, "Failed to close database", str(e))
        return False


# ============================================================================
# MESSAGES
# ============================================================================

def insert_message(
    handle: DatabaseHandle,
    account: str,
    folder: Union[MessageFolder, str],
    message: Message
) -> Tuple[DatabaseErrorCode, bool]:
    """
    Store a message unless the folder already holds its reference.

    Returns:
        (SUCCESS, True) when a row was written, (SUCCESS, False) for a
        duplicate reference, or (error code, False)
    """
    folder_value = _folder_value(folder)
    if not _usable(handle) or not account or folder_value is None or not message.reference:
        return DatabaseErrorCode.ERR_INVALID_PARAM, False

    try:
        cursor = handle.connection.cursor()
        cursor.execute("""
            INSERT OR IGNORE INTO Messages
            (Account, Folder, Reference, Filename, Size, Timestamp, Encrypted, Sender, Recipient)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (_account_key(account), folder_value, message.reference, message.filename,
              int(message.size), int(message.timestamp), 1 if message.encrypted else 0,
              message.sender, message.recipient))
        inserted = cursor.rowcount == 1
        handle.connection.commit()
    except sqlite3.Error as e:
        log_error(handle.logger, DB_CONTEXT, "Failed to insert message", str(e))
        handle.connection.rollback()
        return DatabaseErrorCode.ERR_QUERY_FAILED, False

    if inserted:
        log_debug(handle.logger, DB_CONTEXT,
                  f"Stored {folder_value} message {message.reference[:16]} for {_account_key(account)}")
    return DatabaseErrorCode.SUCCESS, inserted


def get_messages(
    handle: DatabaseHandle,
    account: str,
    folder: Union[MessageFolder, str]
) -> Tuple[DatabaseErrorCode, List[Message]]:
    """All messages of one folder, newest insertion first."""
    folder_value = _folder_value(folder)
    if not _usable(handle) or folder_value is None:
        return DatabaseErrorCode.ERR_INVALID_PARAM, []

    try:
        cursor = handle.connection.cursor()
        cursor.execute("""
            SELECT Reference, Filename, Size, Timestamp, Encrypted, Sender, Recipient
            FROM Messages
            WHERE Account = ? AND Folder = ?
            ORDER BY Seq DESC
        """, (_account_key(account), folder_value))
        return DatabaseErrorCode.SUCCESS, [_row_to_message(row) for row in cursor.fetchall()]
    except sqlite3.Error as e:
        log_error(handle.logger, DB_CONTEXT, "Failed to get messages", str(e))
        return DatabaseErrorCode.ERR_QUERY_FAILED, []


def message_exists(
    handle: DatabaseHandle,
    account: str,
    folder: Union[MessageFolder, str],
    reference: str
) -> Tuple[DatabaseErrorCode, bool]:
    folder_value = _folder_value(folder)
    if not _usable(handle) or folder_value is None:
        return DatabaseErrorCode.ERR_INVALID_PARAM, False

    try:
        cursor = handle.connection.cursor()
        cursor.execute(
            "SELECT 1 FROM Messages WHERE Account = ? AND Folder = ? AND Reference = ?",
            (_account_key(account), folder_value, reference))
        return DatabaseErrorCode.SUCCESS, cursor.fetchone() is not None
    except sqlite3.Error as e:
        log_error(handle.logger, DB_CONTEXT, "Failed to check message", str(e))
        return DatabaseErrorCode.ERR_QUERY_FAILED, False


def delete_message(
    handle: DatabaseHandle,
    account: str,
    folder: Union[MessageFolder, str],
    reference: str
) -> DatabaseErrorCode:
    """Delete one message; ERR_NOT_FOUND if the folder does not hold it."""
    folder_value = _folder_value(folder)
    if not _usable(handle) or folder_value is None:
        return DatabaseErrorCode.ERR_INVALID_PARAM

    try:
        cursor = handle.connection.cursor()
        cursor.execute(
            "DELETE FROM Messages WHERE Account = ? AND Folder = ? AND Reference = ?",
            (_account_key(account), folder_value, reference))
        if cursor.rowcount == 0:
            return DatabaseErrorCode.ERR_NOT_FOUND
        handle.connection.commit()
        log_debug(handle.logger, DB_CONTEXT, f"Deleted {folder_value} message {reference[:16]}")
        return DatabaseErrorCode.SUCCESS
    except sqlite3.Error as e:
        log_error(handle.logger, DB_CONTEXT, f"Failed to delete message {reference[:16]}", str(e))
        handle.connection.rollback()
        return DatabaseErrorCode.ERR_QUERY_FAILED


def update_message_metadata(
    handle: DatabaseHandle,
    account: str,
    folder: Union[MessageFolder, str],
    reference: str,
    filename: Optional[str] = None,
    size: Optional[int] = None,
    sender: Optional[str] = None,
    encrypted: Optional[bool] = None
) -> DatabaseErrorCode:
    """
    Replace placeholder fields once the real file details are known.
    Only the arguments that are not None are written.
    """
    folder_value = _folder_value(folder)
    if not _usable(handle) or folder_value is None:
        return DatabaseErrorCode.ERR_INVALID_PARAM

    updates = []
    values: List[Any] = []
    # Column names come from this fixed list only
    for column, value in (("Filename", filename), ("Size", size), ("Sender", sender)):
        if value is not None:
            updates.append(f"{column} = ?")
            values.append(value)
    if encrypted is not None:
        updates.append("Encrypted = ?")
        values.append(1 if encrypted else 0)

    if not updates:
        return DatabaseErrorCode.SUCCESS

    values.extend([_account_key(account), folder_value, reference])
    try:
        cursor = handle.connection.cursor()
        cursor.execute(
            f"UPDATE Messages SET {', '.join(updates)} WHERE Account = ? AND Folder = ? AND Reference = ?",
            values)
        if cursor.rowcount == 0:
            return DatabaseErrorCode.ERR_NOT_FOUND
        handle.connection.commit()
        return DatabaseErrorCode.SUCCESS
    except sqlite3.Error as e:
        log_error(handle.logger, DB_CONTEXT, f"Failed to update message {reference[:16]}", str(e))
        handle.connection.rollback()
        return DatabaseErrorCode.ERR_QUERY_FAILED


# ============================================================================
# INBOX STATE
# ============================================================================

def set_inbox_state(
    handle: DatabaseHandle,
    account: str,
    last_sync: Optional[int] = None,
    last_index: Optional[int] = None
) -> DatabaseErrorCode:
    """Record when the inbox was last synced and the highest slot seen."""
    if not _usable(handle) or not account:
        return DatabaseErrorCode.ERR_INVALID_PARAM

    try:
        cursor = handle.connection.cursor()
        cursor.execute("""
            INSERT INTO InboxState (Account, LastSync, LastIndex) VALUES (?, ?, ?)
            ON CONFLICT(Account) DO UPDATE SET
                LastSync = COALESCE(excluded.LastSync, LastSync),
                LastIndex = COALESCE(excluded.LastIndex, LastIndex)
        """, (_account_key(account), last_sync, last_index))
        handle.connection.commit()
        return DatabaseErrorCode.SUCCESS
    except sqlite3.Error as e:
        log_error(handle.logger, DB_CONTEXT, "Failed to store inbox state", str(e))
        handle.connection.rollback()
        return DatabaseErrorCode.ERR_QUERY_FAILED


def get_inbox_state(handle: DatabaseHandle, account: str) -> Tuple[DatabaseErrorCode, Optional[Dict[str, Any]]]:
    """Returns {'last_sync', 'last_index'} or ERR_NOT_FOUND."""
    if not _usable(handle):
        return DatabaseErrorCode.ERR_INVALID_PARAM, None

    try:
        cursor = handle.connection.cursor()
        cursor.execute("SELECT LastSync, LastIndex FROM InboxState WHERE Account = ?",
                       (_account_key(account),))
        row = cursor.fetchone()
    except sqlite3.Error as e:
        log_error(handle.logger, DB_CONTEXT, "Failed to read inbox state", str(e))
        return DatabaseErrorCode.ERR_QUERY_FAILED, None

    if row is None:
        return DatabaseErrorCode.ERR_NOT_FOUND, None
    return DatabaseErrorCode.SUCCESS, {'last_sync': row['LastSync'], 'last_index': row['LastIndex']}


def clear_account(handle: DatabaseHandle, account: str) -> DatabaseErrorCode:
    """Remove every message and the inbox state of one account."""
    if not _usable(handle) or not account:
        return DatabaseErrorCode.ERR_INVALID_PARAM

    try:
        cursor = handle.connection.cursor()
        cursor.execute("DELETE FROM Messages WHERE Account = ?", (_account_key(account),))
        cursor.execute("DELETE FROM InboxState WHERE Account = ?", (_account_key(account),))
        handle.connection.commit()
        log_info(handle.logger, DB_CONTEXT, f"Cleared account {_account_key(account)}")
        return DatabaseErrorCode.SUCCESS
    except sqlite3.Error as e:
        log_error(handle.logger, DB_CONTEXT, "Failed to clear account", str(e))
        handle.connection.rollback()
        return DatabaseErrorCode.ERR_QUERY_FAILED
