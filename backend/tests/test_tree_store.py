"""
Tests for the SQLite conversation tree store.
"""

import sqlite3

import pytest

from errors import ErrorCode, NotFoundError, PersistenceError
from services.messages import ChatMessage, MessagePart, PartType
from services.tree_store import TreeStore, derive_title


def _contents(history):
    return [stored.message.content for stored in history]


class TestDeriveTitle:
    """Test title derivation."""

    def test_short_text_unchanged(self):
        assert derive_title("hello") == "hello"

    def test_exactly_fifteen_chars_unchanged(self):
        assert derive_title("a" * 15) == "a" * 15

    def test_long_text_truncated(self):
        assert derive_title("Tell me about the weather") == "Tell me about t..."


class TestConversations:
    """Test tree and session creation."""

    def test_new_conversation(self, store):
        """A new conversation has an empty first session."""
        tree_id, session_id = store.new_conversation()

        assert tree_id.startswith("tree_")
        assert session_id.startswith("session_")
        assert store.exists(session_id)
        assert store.tree_of(session_id) == tree_id
        assert store.resolve(session_id) == []

    def test_unknown_session(self, store):
        """Unknown sessions resolve to nothing and have no tree."""
        assert store.exists("session_missing") is False
        assert store.resolve("session_missing") == []
        with pytest.raises(NotFoundError) as exc:
            store.tree_of("session_missing")
        assert exc.value.code == ErrorCode.NOT_FOUND_SESSION

    def test_append_to_unknown_session(self, store):
        with pytest.raises(NotFoundError):
            store.append("session_missing", ChatMessage.user("hi"))


class TestAppendAndResolve:
    """Test appending and history resolution."""

    def test_linear_history(self, store):
        """Messages resolve in append order with parent links."""
        _, session_id = store.new_conversation()
        first = store.append(session_id, ChatMessage.user("hi"))
        second = store.append(session_id, ChatMessage.assistant("hello"), model="gpt-4o-mini")

        history = store.resolve(session_id)
        assert _contents(history) == ["hi", "hello"]
        assert history[0].parent_id is None
        assert history[1].parent_id == first
        assert history[1].id == second
        assert history[1].model == "gpt-4o-mini"
        assert history[1].role == "assistant"

    def test_message_ids_increase(self, store):
        _, session_id = store.new_conversation()
        ids = [store.append(session_id, ChatMessage.user(str(i))) for i in range(3)]
        assert ids == sorted(ids)
        assert len(set(ids)) == 3

    def test_title_from_first_user_message(self, store):
        """Title comes from the first user message and never changes."""
        tree_id, session_id = store.new_conversation()
        store.append(session_id, ChatMessage.user("Tell me about the weather"))
        store.append(session_id, ChatMessage.user("Something else entirely"))

        assert store.get_tree(tree_id).title == "Tell me about t..."

    def test_title_from_text_part(self, store):
        tree_id, session_id = store.new_conversation()
        parts = [
            MessagePart(type=PartType.IMAGE_URL, url="https://example.com/cat.png"),
            MessagePart.text_part("what is this"),
        ]
        store.append(session_id, ChatMessage.user("", parts=parts))

        assert store.get_tree(tree_id).title == "what is this"

    def test_assistant_message_does_not_set_title(self, store):
        tree_id, session_id = store.new_conversation()
        store.append(session_id, ChatMessage.assistant("hello there"))

        assert store.get_tree(tree_id).title == ""

    def test_multimodal_payload_round_trips(self, store):
        """Stored payloads decode to the appended message."""
        _, session_id = store.new_conversation()
        message = ChatMessage.assistant(
            "here",
            reasoning_content="thinking",
            parts=[MessagePart(type=PartType.IMAGE_URL, base64_data="aGk=", mime_type="image/png")],
        )
        store.append(session_id, message)

        assert store.resolve(session_id)[0].message == message

    def test_undecodable_row_skipped(self, store):
        """Malformed payload rows are skipped, not fatal."""
        _, session_id = store.new_conversation()
        store.append(session_id, ChatMessage.user("good"))
        bad_id = store.append(session_id, ChatMessage.assistant("soon bad"))
        store.append(session_id, ChatMessage.user("also good"))

        with sqlite3.connect(store.db_path) as conn:
            conn.execute("UPDATE messages SET message_data = ? WHERE id = ?", ('{"role": 42}', bad_id))

        assert _contents(store.resolve(session_id)) == ["good", "also good"]


class TestForking:
    """Test branch creation and ancestor resolution."""

    def test_fork_history(self, store):
        """A fork sees ancestors up to the fork point, then its own messages."""
        tree_id, session_id = store.new_conversation()
        m1 = store.append(session_id, ChatMessage.user("q1"))
        m2 = store.append(session_id, ChatMessage.assistant("a1"))
        store.append(session_id, ChatMessage.user("q2"))
        store.append(session_id, ChatMessage.assistant("a2"))

        branch = store.fork(m2)
        assert store.tree_of(branch) == tree_id
        # Empty until its first message
        assert store.resolve(branch) == []

        store.append(branch, ChatMessage.user("q2-alt"))
        history = store.resolve(branch)
        assert _contents(history) == ["q1", "a1", "q2-alt"]
        assert history[-1].parent_id == m2
        assert history[0].id == m1

    def test_original_branch_unchanged(self, store):
        _, session_id = store.new_conversation()
        store.append(session_id, ChatMessage.user("q1"))
        m2 = store.append(session_id, ChatMessage.assistant("a1"))
        store.append(session_id, ChatMessage.user("q2"))

        branch = store.fork(m2)
        store.append(branch, ChatMessage.user("q2-alt"))

        assert _contents(store.resolve(session_id)) == ["q1", "a1", "q2"]

    def test_fork_of_fork(self, store):
        """Ancestors are walked across several branches."""
        _, session_id = store.new_conversation()
        m1 = store.append(session_id, ChatMessage.user("q1"))
        store.append(session_id, ChatMessage.assistant("a1"))

        branch = store.fork(m1)
        b1 = store.append(branch, ChatMessage.assistant("a1-alt"))
        store.append(branch, ChatMessage.user("q2-alt"))

        nested = store.fork(b1)
        store.append(nested, ChatMessage.user("q2-nested"))

        assert _contents(store.resolve(nested)) == ["q1", "a1-alt", "q2-nested"]

    def test_fork_unknown_message(self, store):
        with pytest.raises(NotFoundError) as exc:
            store.fork(999)
        assert exc.value.code == ErrorCode.NOT_FOUND_MESSAGE

    def test_fork_with_message(self, store):
        _, session_id = store.new_conversation()
        m1 = store.append(session_id, ChatMessage.user("q1"))

        branch, message_id = store.fork_with_message(m1, ChatMessage.assistant("a1-alt"), model="m")
        history = store.resolve(branch)
        assert _contents(history) == ["q1", "a1-alt"]
        assert history[-1].id == message_id

    def test_list_sessions(self, store):
        tree_id, session_id = store.new_conversation()
        m1 = store.append(session_id, ChatMessage.user("q1"))
        branch = store.fork(m1)

        sessions = store.list_sessions(tree_id)
        assert [s.session_id for s in sessions] == [session_id, branch]
        assert sessions[0].message_count == 1
        assert sessions[1].fork_parent_id == m1

    def test_list_sessions_unknown_tree(self, store):
        with pytest.raises(NotFoundError) as exc:
            store.list_sessions("tree_missing")
        assert exc.value.code == ErrorCode.NOT_FOUND_TREE


class TestListingAndDeletion:
    """Test tree listing and cascading deletion."""

    def test_list_trees_most_recent_first(self, store):
        older, older_session = store.new_conversation()
        newer, newer_session = store.new_conversation()
        store.append(older_session, ChatMessage.user("first tree"))
        store.append(newer_session, ChatMessage.user("second tree"))

        assert [t.tree_id for t in store.list_trees()] == [newer, older]

        # Writing to a tree moves it to the top
        store.append(older_session, ChatMessage.assistant("reply"))
        assert [t.tree_id for t in store.list_trees()] == [older, newer]

    def test_summary_snippet_and_latest_session(self, store):
        tree_id, session_id = store.new_conversation()
        m1 = store.append(session_id, ChatMessage.user("q1"))
        branch = store.fork(m1)
        store.append(branch, ChatMessage.assistant("x" * 150))

        summary = store.get_tree(tree_id)
        assert summary.latest_session_id == branch
        assert summary.snippet == "x" * 100
        assert summary.to_dict()["session_id"] == branch

    def test_summary_of_empty_tree(self, store):
        tree_id, session_id = store.new_conversation()
        summary = store.get_tree(tree_id)
        assert summary.latest_session_id == session_id
        assert summary.snippet == ""

    def test_snippet_length_configurable(self, tmp_path):
        store = TreeStore(tmp_path / "short.db", snippet_chars=5)
        tree_id, session_id = store.new_conversation()
        store.append(session_id, ChatMessage.user("abcdefghij"))

        assert store.get_tree(tree_id).snippet == "abcde"

    def test_delete_tree_cascades(self, store):
        """Deleting a tree removes its sessions and messages."""
        tree_id, session_id = store.new_conversation()
        m1 = store.append(session_id, ChatMessage.user("q1"))
        branch = store.fork(m1)
        store.append(branch, ChatMessage.user("q1-alt"))
        keep_tree, keep_session = store.new_conversation()
        store.append(keep_session, ChatMessage.user("keep"))

        assert store.delete_tree(tree_id) is True
        assert store.exists(session_id) is False
        assert store.exists(branch) is False
        assert [t.tree_id for t in store.list_trees()] == [keep_tree]

        with sqlite3.connect(store.db_path) as conn:
            remaining = conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0]
        assert remaining == 1

    def test_delete_unknown_tree(self, store):
        assert store.delete_tree("tree_missing") is False

    def test_get_unknown_tree(self, store):
        with pytest.raises(NotFoundError):
            store.get_tree("tree_missing")


class TestSchema:
    """Test schema setup and migrations."""

    def test_reopen_keeps_data(self, tmp_path):
        path = tmp_path / "sessions.db"
        _, session_id = TreeStore(path).new_conversation()
        TreeStore(path).append(session_id, ChatMessage.user("hi"))

        assert _contents(TreeStore(path).resolve(session_id)) == ["hi"]

    def test_migrates_old_database(self, tmp_path):
        """Databases without the newer columns gain them on open."""
        path = tmp_path / "old.db"
        with sqlite3.connect(path) as conn:
            conn.execute(
                "CREATE TABLE session_trees (id TEXT PRIMARY KEY, title TEXT NOT NULL DEFAULT '', "
                "created_at TEXT NOT NULL, updated_at TEXT NOT NULL)"
            )
            conn.execute(
                "CREATE TABLE sessions (id TEXT PRIMARY KEY, tree_id TEXT NOT NULL, "
                "message_count INTEGER NOT NULL DEFAULT 0, created_at TEXT NOT NULL)"
            )
            conn.execute(
                "CREATE TABLE messages (id INTEGER PRIMARY KEY AUTOINCREMENT, session_id TEXT NOT NULL, "
                "parent_id INTEGER, role TEXT NOT NULL, message_data TEXT NOT NULL, created_at TEXT NOT NULL)"
            )

        store = TreeStore(path)
        _, session_id = store.new_conversation()
        m1 = store.append(session_id, ChatMessage.user("q1"), model="m")
        branch = store.fork(m1)

        assert store.resolve(session_id)[0].model == "m"
        assert store.list_sessions(store.tree_of(branch))[1].fork_parent_id == m1

    def test_health_check(self, store):
        _, session_id = store.new_conversation()
        store.append(session_id, ChatMessage.user("hi"))

        health = store.health_check()
        assert health["status"] == "ok"
        assert health["messages"] == 1
        assert health["sessions"] == 1

    def test_unwritable_location(self, tmp_path):
        """Store errors surface as PersistenceError."""
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")

        with pytest.raises(PersistenceError):
            TreeStore(blocker / "sessions.db")
