"""Tests for the SQLite support store."""

from __future__ import annotations

import pytest

from triage_agent.models import Citation
from triage_agent.services.store import StoreError, SupportStore

CUSTOMER = "jordan.lee@example.com"
OTHER = "sam@example.com"
SUPPORT = "support@example.com"


@pytest.fixture
def thread_with_history(store):
    thread = store.create_thread("Billing question", [CUSTOMER, SUPPORT])
    first = store.add_email(thread.id, CUSTOMER, [SUPPORT], "Billing", "I was charged twice for order 1042.")
    second = store.add_email(thread.id, CUSTOMER, [SUPPORT], "Re: Billing", "Any update on the 100% refund?")
    store.add_email(thread.id, OTHER, [SUPPORT], "Unrelated", "Where is my parcel?")
    return thread, first, second


# ── Threads & emails ─────────────────────────────────────────────────


class TestThreadsAndEmails:
    def test_create_and_get_thread(self, store):
        thread = store.create_thread("Hello", [CUSTOMER])
        fetched = store.get_thread(thread.id)
        assert fetched is not None
        assert fetched.subject == "Hello"
        assert fetched.status == "active"
        assert fetched.participant_emails == [CUSTOMER]

    def test_get_missing_thread_returns_none(self, store):
        assert store.get_thread(999) is None

    def test_add_email_round_trips_fields(self, store):
        thread = store.create_thread("Hello")
        email = store.add_email(thread.id, CUSTOMER, [SUPPORT, "cc@example.com"], "Hello", "Body")
        fetched = store.get_email_by_id(email.id)
        assert fetched.thread_id == thread.id
        assert fetched.to_emails == [SUPPORT, "cc@example.com"]
        assert fetched.direction == "inbound"

    def test_sorted_emails_are_oldest_first(self, store, thread_with_history):
        thread, first, second = thread_with_history
        ids = [e.id for e in store.get_sorted_emails_by_thread(thread.id)]
        assert ids[:2] == [first.id, second.id]

    def test_latest_email_in_thread(self, store, thread_with_history):
        thread, _, _ = thread_with_history
        latest = store.get_latest_email_in_thread(thread.id)
        assert latest.from_email == OTHER

    def test_latest_email_in_empty_thread_is_none(self, store):
        thread = store.create_thread("Empty")
        assert store.get_latest_email_in_thread(thread.id) is None


# ── search_emails ────────────────────────────────────────────────────


class TestSearchEmails:
    def test_empty_query_returns_all_from_sender_newest_first(self, store, thread_with_history):
        _, first, second = thread_with_history
        results = store.search_emails(CUSTOMER)
        assert [e.id for e in results] == [second.id, first.id]

    def test_query_filters_on_body(self, store, thread_with_history):
        _, first, _ = thread_with_history
        results = store.search_emails(CUSTOMER, "charged twice")
        assert [e.id for e in results] == [first.id]

    def test_like_wildcards_are_escaped(self, store, thread_with_history):
        _, _, second = thread_with_history
        assert [e.id for e in store.search_emails(CUSTOMER, "100%")] == [second.id]
        assert store.search_emails(CUSTOMER, "_") == []

    def test_limit_is_applied(self, store, thread_with_history):
        assert len(store.search_emails(CUSTOMER, limit=1)) == 1

    def test_other_senders_are_excluded(self, store, thread_with_history):
        assert all(e.from_email == CUSTOMER for e in store.search_emails(CUSTOMER))


# ── Tags ─────────────────────────────────────────────────────────────


class TestTags:
    def test_insert_tags_clamps_and_rounds_confidence(self, store, thread_with_history):
        _, first, _ = thread_with_history
        tags = store.insert_email_tags([
            {"email_id": first.id, "tag": "billing", "confidence": 0.87654},
            {"email_id": first.id, "tag": "support", "confidence": 1.7},
        ])
        assert [t.confidence for t in tags] == [0.877, 1.0]
        stored = store.get_tags_for_email(first.id)
        assert [t.tag.value for t in stored] == ["billing", "support"]

    def test_insert_is_atomic(self, store, thread_with_history):
        _, first, _ = thread_with_history
        with pytest.raises((StoreError, KeyError)):
            store.insert_email_tags([
                {"email_id": first.id, "tag": "billing", "confidence": 0.9},
                {"email_id": first.id, "tag": "billing"},  # missing confidence
            ])
        assert store.get_tags_for_email(first.id) == []


# ── Drafts ───────────────────────────────────────────────────────────


class TestDrafts:
    def test_first_draft_is_pending_version_one(self, store, thread_with_history):
        thread, _, second = thread_with_history
        draft = store.save_draft_response(second.id, thread.id, "Hello!", 0.9)
        assert draft.status == "pending"
        assert draft.version == 1
        assert draft.parent_draft_id is None
        assert draft.citation is None

    def test_new_draft_revises_previous(self, store, thread_with_history):
        thread, _, second = thread_with_history
        first_draft = store.save_draft_response(second.id, thread.id, "v1")
        revision = store.save_draft_response(second.id, thread.id, "v2")
        assert revision.version == 2
        assert revision.parent_draft_id == first_draft.id
        assert store.get_latest_draft_for_thread(thread.id).id == revision.id

    def test_citation_round_trips(self, store, thread_with_history):
        thread, _, second = thread_with_history
        citation = Citation(filename="returns-policy.md", score=0.91, text="30 days")
        draft = store.save_draft_response(second.id, thread.id, "Hi", 0.8, citation)
        assert store.get_draft(draft.id).citation == citation

    def test_confidence_is_clamped(self, store, thread_with_history):
        thread, _, second = thread_with_history
        draft = store.save_draft_response(second.id, thread.id, "Hi", -0.2)
        assert draft.confidence_score == 0.0


# ── Agent actions ────────────────────────────────────────────────────


class TestAgentActions:
    def test_actions_are_returned_in_insert_order(self, store):
        store.log_agent_action(7, "read_thread", "Read the full email thread", {"status": "success"})
        store.log_agent_action(7, "tag_email", "Tagged email 1 as billing", {"status": "error"})
        store.log_agent_action(8, "read_thread", "other thread")
        actions = store.get_thread_actions(7)
        assert [a.action for a in actions] == ["read_thread", "tag_email"]
        assert [a.status for a in actions] == ["success", "error"]

    def test_clear_agent_data(self, store, thread_with_history):
        thread, first, _ = thread_with_history
        store.insert_email_tags([{"email_id": first.id, "tag": "billing", "confidence": 0.9}])
        store.save_draft_response(first.id, thread.id, "Hi")
        store.log_agent_action(thread.id, "write_draft", "Wrote draft")
        store.clear_agent_data()
        assert store.get_thread_actions(thread.id) == []
        assert store.get_latest_draft_for_thread(thread.id) is None
        assert store.get_tags_for_email(first.id) == []
        # Threads and emails survive
        assert store.get_thread(thread.id) is not None


class TestStoreErrors:
    def test_closed_store_raises_store_error(self):
        s = SupportStore(":memory:")
        s.close()
        with pytest.raises(StoreError):
            s.get_thread(1)
