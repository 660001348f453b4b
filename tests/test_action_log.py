"""Tests for the action log and tool-call descriptions."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from triage_agent.action_log import ASSISTANT_MESSAGE, MODEL_RETRY, ActionLog, describe_tool_call
from triage_agent.services.store import StoreError


class TestDescribeToolCall:
    @pytest.mark.parametrize(
        ("name", "params", "expected"),
        [
            ("tag_email", {"emailId": 12, "tags": ["billing", "support"]}, "Tagged email 12 as billing, support"),
            ("tag_email", {"emailId": 12}, "Tagged email 12 as unknown"),
            ("search_knowledge_base", {"query": "refund"}, 'Searched knowledge base for: "refund"'),
            ("get_customer_history", {"senderEmail": "a@b.com"}, "Retrieved email history for a@b.com"),
            (
                "search_customer_emails",
                {"senderEmail": "a@b.com", "searchQuery": "order 1042"},
                'Searched for emails from a@b.com containing "order 1042"',
            ),
            ("search_emails", {"senderEmail": "a@b.com"}, "Searched for emails from a@b.com"),
            ("read_thread", {}, "Read the full email thread"),
            ("write_draft", {"emailId": 3}, "Wrote draft reply to email 3"),
            ("explain_next_tool_call", {"explanation": "Looking up history"}, "Looking up history"),
            ("mystery_tool", {}, "Called mystery_tool tool"),
        ],
    )
    def test_descriptions(self, name, params, expected):
        assert describe_tool_call(name, params) == expected

    def test_blank_explanation_falls_back(self):
        assert describe_tool_call("explain_next_tool_call", {"explanation": "  "}) == (
            "Called explain_next_tool_call tool"
        )


class TestActionLog:
    @pytest.mark.asyncio
    async def test_success_metadata_shape(self, store):
        log = ActionLog(store, thread_id=5)
        entry = await log.record_tool_call(
            "search_knowledge_base", {"query": "refund"}, {"success": True, "count": 2}, call_id="call_1",
        )
        assert entry.id > 0
        meta = entry.metadata
        assert meta["callId"] == "call_1"
        assert meta["parameters"] == {"query": "refund"}
        assert meta["result"] == {"success": True, "count": 2}
        assert meta["error"] is None
        assert meta["status"] == "success"
        assert isinstance(meta["timestamp"], int)

    @pytest.mark.asyncio
    async def test_failure_metadata_shape(self, store):
        log = ActionLog(store, thread_id=5)
        entry = await log.record_tool_call("tag_email", {"emailId": "abc"}, {"success": False, "error": "Invalid email ID: abc"})
        assert entry.metadata["status"] == "error"
        assert entry.metadata["result"] is None
        assert entry.metadata["error"] == "Invalid email ID: abc"

    @pytest.mark.asyncio
    async def test_entries_keep_run_order(self, store):
        log = ActionLog(store, thread_id=5)
        await log.record_tool_call("read_thread", {}, {"success": True})
        await log.record_assistant_message("Let me think about this.")
        await log.record_model_retry(1, 3, TimeoutError("slow"), 0.5)

        assert [e.action for e in log.entries] == ["read_thread", ASSISTANT_MESSAGE, MODEL_RETRY]
        assert [e.action for e in store.get_thread_actions(5)] == [e.action for e in log.entries]

    @pytest.mark.asyncio
    async def test_model_retry_description(self, store):
        log = ActionLog(store, thread_id=5)
        entry = await log.record_model_retry(2, 3, TimeoutError("slow"), 2.0)
        assert entry.description == "Model call failed (TimeoutError); retry 2/3 in 2.0s"
        assert entry.metadata["errorType"] == "TimeoutError"

    @pytest.mark.asyncio
    async def test_blank_assistant_message_gets_description(self, store):
        log = ActionLog(store, thread_id=5)
        entry = await log.record_assistant_message("   ")
        assert entry.description == "Assistant replied without calling a tool"

    @pytest.mark.asyncio
    async def test_store_failure_keeps_entry_in_memory(self, store):
        log = ActionLog(store, thread_id=5)
        with patch.object(store, "log_agent_action", side_effect=StoreError("disk full")):
            entry = await log.record_tool_call("read_thread", {}, {"success": True})
        assert entry.id == 0
        assert log.entries == [entry]
        assert store.get_thread_actions(5) == []
