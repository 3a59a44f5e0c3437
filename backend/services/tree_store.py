"""
Branching conversation store backed by SQLite.

Layout:
    session_trees  one row per conversation tree (title, timestamps)
    sessions       branches of a tree; a forked branch records its fork point
    messages       append-only; parent_id may point into another branch

A branch's visible history is its ancestor chain (walked through parent_id
from the branch's first message) followed by its own messages.

resolve() loads every message of the tree on each call, so very large trees
get slower linearly.
"""

import logging
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from pydantic import ValidationError as PayloadValidationError

from errors import NotFoundError, PersistenceError
from services.messages import ChatMessage, Role

logger = logging.getLogger(__name__)

TITLE_CHARS = 15

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS session_trees (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL DEFAULT '',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        tree_id TEXT NOT NULL REFERENCES session_trees(id) ON DELETE CASCADE,
        message_count INTEGER NOT NULL DEFAULT 0,
        fork_parent_id INTEGER,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        parent_id INTEGER,
        role TEXT NOT NULL,
        model TEXT NOT NULL DEFAULT '',
        message_data TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sessions_tree_id ON sessions(tree_id)",
    "CREATE INDEX IF NOT EXISTS idx_messages_session_id ON messages(session_id)",
    "CREATE INDEX IF NOT EXISTS idx_messages_parent_id ON messages(parent_id)",
)

# Columns added after the first release: (table, column, definition)
MIGRATIONS = (
    ("messages", "model", "TEXT NOT NULL DEFAULT ''"),
    ("sessions", "fork_parent_id", "INTEGER"),
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def derive_title(text: str) -> str:
    """First TITLE_CHARS characters of text, with an ellipsis when truncated."""
    if len(text) > TITLE_CHARS:
        return text[:TITLE_CHARS] + "..."
    return text


@dataclass
class StoredMessage:
    """A persisted message with its tree linkage."""

    id: int
    session_id: str
    parent_id: Optional[int]
    role: str
    model: str
    message: ChatMessage
    created_at: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "parent_id": self.parent_id,
            "role": self.role,
            "model": self.model,
            "message": self.message.model_dump(mode="json", exclude_defaults=True),
            "created_at": self.created_at,
        }


@dataclass
class TreeSummary:
    tree_id: str
    title: str
    created_at: str
    updated_at: str
    latest_session_id: str = ""
    snippet: str = ""

    def to_dict(self) -> dict:
        return {
            "tree_id": self.tree_id,
            "title": self.title,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "session_id": self.latest_session_id,
            "snippet": self.snippet,
        }


@dataclass
class SessionInfo:
    session_id: str
    tree_id: str
    message_count: int
    created_at: str
    fork_parent_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "tree_id": self.tree_id,
            "message_count": self.message_count,
            "fork_parent_id": self.fork_parent_id,
            "created_at": self.created_at,
        }


class TreeStore:
    """SQLite store for conversation trees, branches and messages.

    Every public operation opens its own short-lived connection, so one
    instance can be shared across request handlers.
    """

    def __init__(self, db_path: str | Path, snippet_chars: int = 100):
        self.db_path = Path(db_path)
        self.snippet_chars = snippet_chars
        self._ensure_db()

    # ------------------------------------------------------------------
    # connection handling
    # ------------------------------------------------------------------

    @contextmanager
    def _connect(self, operation: str = "write") -> Iterator[sqlite3.Connection]:
        """Open a connection with foreign keys on; commit on success.

        sqlite3 errors are re-raised as PersistenceError. Other exceptions
        roll back and propagate unchanged.
        """
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as e:
            raise PersistenceError("Failed to open conversation store", str(e), operation=operation) from e

        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Conversation store {operation} failed", str(e), operation=operation) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _ensure_db(self) -> None:
        """Create tables and indexes, then add any missing columns."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError("Cannot create database directory", str(e), path=str(self.db_path)) from e

        with self._connect() as conn:
            for statement in SCHEMA:
                conn.execute(statement)

            for table, column, definition in MIGRATIONS:
                columns = {row["name"] for row in conn.execute(f"PRAGMA table_info({table})")}
                if column not in columns:
                    conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")
                    logger.info(f"Migrated {table}: added column {column}")

        logger.info(f"Conversation store ready at {self.db_path}")

    # ------------------------------------------------------------------
    # trees and sessions
    # ------------------------------------------------------------------

    def _insert_session(self, conn: sqlite3.Connection, tree_id: str, fork_parent_id: Optional[int] = None) -> str:
        session_id = _new_id("session")
        conn.execute(
            "INSERT INTO sessions (id, tree_id, message_count, fork_parent_id, created_at) VALUES (?, ?, 0, ?, ?)",
            (session_id, tree_id, fork_parent_id, _now()),
        )
        return session_id

    def new_conversation(self) -> Tuple[str, str]:
        """Create a tree with an empty first session. Returns (tree_id, session_id)."""
        tree_id = _new_id("tree")
        now = _now()
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO session_trees (id, title, created_at, updated_at) VALUES (?, '', ?, ?)",
                (tree_id, now, now),
            )
            session_id = self._insert_session(conn, tree_id)

        logger.debug(f"New conversation {tree_id} / {session_id}")
        return tree_id, session_id

    def _tree_of_message(self, conn: sqlite3.Connection, message_id: int) -> str:
        row = conn.execute(
            "SELECT s.tree_id FROM messages m JOIN sessions s ON m.session_id = s.id WHERE m.id = ?",
            (message_id,),
        ).fetchone()
        if row is None:
            raise NotFoundError("parent message not found", resource_type="message", resource_id=message_id)
        return row["tree_id"]

    def fork(self, parent_message_id: int) -> str:
        """Open a new branch whose first message will hang off parent_message_id."""
        with self._connect() as conn:
            tree_id = self._tree_of_message(conn, parent_message_id)
            session_id = self._insert_session(conn, tree_id, fork_parent_id=parent_message_id)

        logger.info(f"Forked {session_id} from message {parent_message_id} in {tree_id}")
        return session_id

    def fork_with_message(self, parent_message_id: int, message: ChatMessage, model: str = "") -> Tuple[str, int]:
        """Fork and append the branch's first message in one transaction."""
        with self._connect() as conn:
            tree_id = self._tree_of_message(conn, parent_message_id)
            session_id = self._insert_session(conn, tree_id, fork_parent_id=parent_message_id)
            message_id = self._append(conn, session_id, message, model)

        logger.info(f"Forked {session_id} from message {parent_message_id} with message {message_id}")
        return session_id, message_id

    def exists(self, session_id: str) -> bool:
        with self._connect("read") as conn:
            row = conn.execute("SELECT 1 FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return row is not None

    def tree_of(self, session_id: str) -> str:
        """Tree id owning session_id. Raises NotFoundError for unknown sessions."""
        with self._connect("read") as conn:
            row = conn.execute("SELECT tree_id FROM sessions WHERE id = ?", (session_id,)).fetchone()
        if row is None:
            raise NotFoundError("session not found", resource_type="session", resource_id=session_id)
        return row["tree_id"]

    def delete_tree(self, tree_id: str) -> bool:
        """Delete a tree with all of its sessions and messages."""
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM session_trees WHERE id = ?", (tree_id,))
            deleted = cursor.rowcount > 0

        if deleted:
            logger.info(f"Deleted tree {tree_id}")
        return deleted

    # ------------------------------------------------------------------
    # messages
    # ------------------------------------------------------------------

    def _append(self, conn: sqlite3.Connection, session_id: str, message: ChatMessage, model: str) -> int:
        session = conn.execute(
            "SELECT tree_id, fork_parent_id FROM sessions WHERE id = ?", (session_id,)
        ).fetchone()
        if session is None:
            raise NotFoundError("session not found", resource_type="session", resource_id=session_id)

        last = conn.execute("SELECT MAX(id) AS last_id FROM messages WHERE session_id = ?", (session_id,)).fetchone()
        parent_id = last["last_id"] if last["last_id"] is not None else session["fork_parent_id"]

        now = _now()
        cursor = conn.execute(
            """
            INSERT INTO messages (session_id, parent_id, role, model, message_data, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (session_id, parent_id, message.role.value, model, message.to_json(), now),
        )
        message_id = cursor.lastrowid

        conn.execute("UPDATE sessions SET message_count = message_count + 1 WHERE id = ?", (session_id,))

        text = message.title_text()
        if message.role == Role.USER and text:
            conn.execute(
                "UPDATE session_trees SET title = ? WHERE id = ? AND title = ''",
                (derive_title(text), session["tree_id"]),
            )
        conn.execute("UPDATE session_trees SET updated_at = ? WHERE id = ?", (now, session["tree_id"]))

        return message_id

    def append(self, session_id: str, message: ChatMessage, model: str = "") -> int:
        """Append message to the end of a branch. Returns the new message id."""
        with self._connect() as conn:
            message_id = self._append(conn, session_id, message, model)

        logger.debug(f"Appended {message.role.value} message {message_id} to {session_id}")
        return message_id

    @staticmethod
    def _decode(row: sqlite3.Row) -> Optional[StoredMessage]:
        try:
            payload = ChatMessage.from_json(row["message_data"])
        except PayloadValidationError as e:
            logger.warning(f"Skipping undecodable message {row['id']}: {e.error_count()} errors")
            return None
        return StoredMessage(
            id=row["id"],
            session_id=row["session_id"],
            parent_id=row["parent_id"],
            role=row["role"],
            model=row["model"],
            message=payload,
            created_at=row["created_at"],
        )

    def resolve(self, session_id: str) -> List[StoredMessage]:
        """Ancestors of the branch followed by the branch's own messages.

        Returns [] for an empty branch and for an unknown session.
        """
        with self._connect("read") as conn:
            session = conn.execute("SELECT tree_id FROM sessions WHERE id = ?", (session_id,)).fetchone()
            if session is None:
                return []
            rows = conn.execute(
                """
                SELECT m.id, m.session_id, m.parent_id, m.role, m.model, m.message_data, m.created_at
                FROM messages m JOIN sessions s ON m.session_id = s.id
                WHERE s.tree_id = ?
                ORDER BY m.id
                """,
                (session["tree_id"],),
            ).fetchall()

        by_id: Dict[int, sqlite3.Row] = {row["id"]: row for row in rows}
        branch = [row for row in rows if row["session_id"] == session_id]
        if not branch:
            return []

        ancestors: List[sqlite3.Row] = []
        parent_id = branch[0]["parent_id"]
        while parent_id is not None and parent_id in by_id:
            node = by_id[parent_id]
            ancestors.append(node)
            parent_id = node["parent_id"]
        ancestors.reverse()

        history = []
        for row in ancestors + branch:
            decoded = self._decode(row)
            if decoded is not None:
                history.append(decoded)
        return history

    # ------------------------------------------------------------------
    # listings
    # ------------------------------------------------------------------

    _SUMMARY_SQL = """
        SELECT t.id, t.title, t.created_at, t.updated_at,
               COALESCE(m.session_id, (
                   SELECT s2.id FROM sessions s2 WHERE s2.tree_id = t.id
                   ORDER BY s2.created_at DESC, s2.rowid DESC LIMIT 1
               )) AS latest_session_id,
               m.message_data
        FROM session_trees t
        LEFT JOIN (
            SELECT s.tree_id, MAX(m2.id) AS max_id
            FROM messages m2 JOIN sessions s ON m2.session_id = s.id
            GROUP BY s.tree_id
        ) latest ON latest.tree_id = t.id
        LEFT JOIN messages m ON m.id = latest.max_id
    """

    def _summary(self, row: sqlite3.Row) -> TreeSummary:
        snippet = ""
        if row["message_data"]:
            try:
                snippet = ChatMessage.from_json(row["message_data"]).title_text()[: self.snippet_chars]
            except PayloadValidationError:
                logger.warning(f"Latest message of {row['id']} is undecodable, no snippet")
        return TreeSummary(
            tree_id=row["id"],
            title=row["title"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            latest_session_id=row["latest_session_id"] or "",
            snippet=snippet,
        )

    def list_trees(self) -> List[TreeSummary]:
        """All trees, most recently updated first."""
        with self._connect("read") as conn:
            rows = conn.execute(self._SUMMARY_SQL + " ORDER BY t.updated_at DESC, t.rowid DESC").fetchall()
        return [self._summary(row) for row in rows]

    def get_tree(self, tree_id: str) -> TreeSummary:
        with self._connect("read") as conn:
            row = conn.execute(self._SUMMARY_SQL + " WHERE t.id = ?", (tree_id,)).fetchone()
        if row is None:
            raise NotFoundError("tree not found", resource_type="tree", resource_id=tree_id)
        return self._summary(row)

    def list_sessions(self, tree_id: str) -> List[SessionInfo]:
        """Branches of a tree in creation order."""
        with self._connect("read") as conn:
            if conn.execute("SELECT 1 FROM session_trees WHERE id = ?", (tree_id,)).fetchone() is None:
                raise NotFoundError("tree not found", resource_type="tree", resource_id=tree_id)
            rows = conn.execute(
                """
                SELECT id, tree_id, message_count, fork_parent_id, created_at
                FROM sessions WHERE tree_id = ? ORDER BY created_at, rowid
                """,
                (tree_id,),
            ).fetchall()

        return [
            SessionInfo(
                session_id=row["id"],
                tree_id=row["tree_id"],
                message_count=row["message_count"],
                created_at=row["created_at"],
                fork_parent_id=row["fork_parent_id"],
            )
            for row in rows
        ]

    def health_check(self) -> dict:
        """Row counts per table, or the failure reason."""
        try:
            with self._connect("read") as conn:
                counts = {
                    table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                    for table in ("session_trees", "sessions", "messages")
                }
        except PersistenceError as e:
            logger.error(f"Conversation store health check failed: {e}")
            return {"status": "error", "path": str(self.db_path), "error": str(e)}

        return {"status": "ok", "path": str(self.db_path), **counts}
