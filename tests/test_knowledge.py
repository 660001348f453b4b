"""Tests for knowledge-base search and the search_knowledge_base tool."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from triage_agent.models import KnowledgeResult
from triage_agent.tools import build_default_registry
from triage_agent.tools.knowledge import (
    MarkdownKnowledgeBase,
    VectorStoreKnowledgeSearch,
    _split_into_sections,
    build_knowledge_search,
)

# ── Section splitting ────────────────────────────────────────────────


class TestSplitIntoSections:
    def test_splits_on_headings(self):
        sections = _split_into_sections("# Title\n\nIntro\n\n## Part\n\nBody text\n")
        assert sections == [
            {"heading": "Title", "body": "Intro"},
            {"heading": "Part", "body": "Body text"},
        ]

    def test_keeps_preamble_without_heading(self):
        sections = _split_into_sections("Just some text.\n\n# Heading\nMore")
        assert sections[0] == {"heading": "", "body": "Just some text."}

    def test_strips_trailing_rule(self):
        sections = _split_into_sections("## A\nBody\n---\n")
        assert sections == [{"heading": "A", "body": "Body"}]


# ── MarkdownKnowledgeBase ────────────────────────────────────────────


class TestMarkdownKnowledgeBase:
    def test_loads_nested_files_with_relative_names(self, knowledge):
        filenames = {r.filename for r in knowledge.rank("delivery business days", limit=10)}
        assert "guides/shipping.md" in filenames

    def test_best_match_first(self, knowledge):
        results = knowledge.rank("return policy")
        assert results[0].filename == "returns-policy.md"
        assert results[0].text.startswith("Return policy\n\n")
        assert results[0].score == 1.0
        assert [r.score for r in results] == sorted((r.score for r in results), reverse=True)

    def test_short_words_are_ignored(self, knowledge):
        assert knowledge.rank("a an of") == []

    def test_no_match_returns_empty(self, knowledge):
        assert knowledge.rank("cryptocurrency") == []

    def test_limit(self, knowledge):
        assert len(knowledge.rank("return refund delivery days", limit=1)) == 1

    def test_missing_directory_is_empty(self, tmp_path):
        kb = MarkdownKnowledgeBase(tmp_path / "nope")
        assert kb.section_count == 0

    def test_reload_picks_up_new_files(self, knowledge, knowledge_dir):
        before = knowledge.section_count
        (knowledge_dir / "warranty.md").write_text("# Warranty\n\nTwo years.", encoding="utf-8")
        knowledge.reload()
        assert knowledge.section_count == before + 1

    @pytest.mark.asyncio
    async def test_async_search(self, knowledge):
        results = await knowledge.search("refund timing", limit=2)
        assert all(isinstance(r, KnowledgeResult) for r in results)
        assert len(results) <= 2


# ── Vector store adapter ─────────────────────────────────────────────


class TestVectorStoreKnowledgeSearch:
    @pytest.mark.asyncio
    async def test_maps_client_hits(self):
        client = MagicMock()
        client.search.return_value = [{"filename": "faq.md", "score": 0.81, "text": "Answer"}]
        results = await VectorStoreKnowledgeSearch(client).search("question", 3)
        assert results == [KnowledgeResult(filename="faq.md", score=0.81, text="Answer")]
        client.search.assert_called_once_with("question", 3)

    def test_build_prefers_vector_store_with_key(self, knowledge_dir):
        search = build_knowledge_search(str(knowledge_dir), openai_api_key="sk-test", vector_store_key="kb")
        assert isinstance(search, VectorStoreKnowledgeSearch)

    def test_build_falls_back_to_markdown(self, knowledge_dir):
        search = build_knowledge_search(str(knowledge_dir))
        assert isinstance(search, MarkdownKnowledgeBase)


# ── Tool: search_knowledge_base ──────────────────────────────────────


class TestSearchKnowledgeBaseTool:
    @pytest.mark.asyncio
    async def test_results_are_remembered_for_citations(self, make_context, return_policy_thread):
        thread, _ = return_policy_thread
        ctx = make_context(thread.id)
        result = await build_default_registry().dispatch(ctx, "search_knowledge_base", {"query": "return policy"})
        assert result.success is True
        assert result["count"] == len(ctx.knowledge_results) > 0
        assert result["results"][0]["filename"] == "returns-policy.md"
        assert ctx.action_log.entries[0].description == 'Searched knowledge base for: "return policy"'

    @pytest.mark.asyncio
    async def test_empty_query_fails(self, make_context, return_policy_thread):
        thread, _ = return_policy_thread
        ctx = make_context(thread.id)
        result = await build_default_registry().dispatch(ctx, "search_knowledge_base", {"query": " "})
        assert result.success is False
        assert ctx.knowledge_results == []

    @pytest.mark.asyncio
    async def test_search_error_becomes_failure(self, make_context, return_policy_thread):
        thread, _ = return_policy_thread
        ctx = make_context(thread.id)
        ctx.knowledge = MagicMock()
        ctx.knowledge.search = AsyncMock(side_effect=RuntimeError("vector store down"))
        result = await build_default_registry().dispatch(ctx, "search_knowledge_base", {"query": "refund"})
        assert result.success is False
        assert "vector store down" in result.error
