"""
Tests for the three-tier memory store.
"""

import threading

import pytest

from agentic_workspace.config import MemoryConfig
from agentic_workspace.errors import FactNotFound, IsolationViolation, WorkspaceNotFound
from agentic_workspace.memory import MemoryStore
from agentic_workspace.types import FactCorrection, MemoryTier, Outcome

from conftest import make_llm, record, seed_fact


class TestEpisodicAppend:
    """Tests for ordering and isolation of episodic records."""

    def test_sequence_numbers_increase(self, memory, workspace):
        stored = [
            memory.append_episodic(workspace.id, record(workspace.id, "goto", url=f"https://e.com/{i}"))
            for i in range(5)
        ]
        assert [r.sequence_no for r in stored] == [1, 2, 3, 4, 5]
        window = memory.query_episodic(workspace.id, window=3)
        assert [r.sequence_no for r in window] == [3, 4, 5]

    def test_goal_signature_is_derived(self, memory, workspace):
        stored = memory.append_episodic(
            workspace.id, record(workspace.id, "goto", goal="Search for Cats!", url="https://e.com"),
        )
        assert stored.goal_signature == "search cats"

    def test_appends_do_not_mutate_input(self, memory, workspace):
        rec = record(workspace.id, "goto", url="https://e.com")
        memory.append_episodic(workspace.id, rec)
        assert rec.sequence_no == 0

    def test_concurrent_appends_are_strictly_ordered(self, memory, workspace):
        def worker(n):
            for i in range(20):
                memory.append_episodic(workspace.id, record(workspace.id, "scroll", amount=n * 100 + i))

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        seqs = [r.sequence_no for r in memory.query_episodic(workspace.id, window=200)]
        assert seqs == list(range(1, 81))

    def test_interleaved_appends_across_workspaces(self, memory, workspaces):
        """Each workspace keeps its own gap-free sequence under mixed load."""
        spaces = [workspaces.create({"name": f"ws{n}"}) for n in range(3)]
        barrier = threading.Barrier(6)
        errors = []

        def worker(ws_id, n):
            barrier.wait()
            try:
                for i in range(25):
                    memory.append_episodic(ws_id, record(ws_id, "scroll", amount=n * 100 + i))
            except Exception as e:
                errors.append(e)

        # Two writers per workspace, all started together
        threads = [
            threading.Thread(target=worker, args=(ws.id, n))
            for n, ws in enumerate(spaces + spaces)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        for ws in spaces:
            stored = memory.query_episodic(ws.id, window=200)
            assert [r.sequence_no for r in stored] == list(range(1, 51))
            assert all(r.workspace_id == ws.id for r in stored)

    def test_cross_workspace_append_rejected(self, memory, workspaces, workspace):
        other = workspaces.create({"name": "other"})
        with pytest.raises(IsolationViolation):
            memory.append_episodic(workspace.id, record(other.id, "goto", url="https://e.com"))

    def test_unknown_workspace(self, memory):
        with pytest.raises(WorkspaceNotFound):
            memory.append_episodic("ghost", record("ghost", "goto", url="https://e.com"))

    def test_workspaces_are_isolated(self, memory, workspaces, workspace):
        other = workspaces.create({"name": "other"})
        memory.append_episodic(workspace.id, record(workspace.id, "goto", url="https://a.com"))
        assert memory.query_episodic(other.id) == []
        assert memory.append_episodic(other.id, record(other.id, "goto", url="https://b.com")).sequence_no == 1

    def test_records_survive_reload(self, workspaces, store, memory_config, workspace):
        first = MemoryStore(workspaces, store, memory_config)
        for i in range(3):
            first.append_episodic(workspace.id, record(workspace.id, "scroll", amount=i))
        second = MemoryStore(workspaces, store, memory_config)
        assert [r.sequence_no for r in second.query_episodic(workspace.id)] == [1, 2, 3]
        assert second.append_episodic(workspace.id, record(workspace.id, "back")).sequence_no == 4


class TestEpisodicCap:
    """Tests for eviction of promoted records."""

    def test_unpromoted_records_are_not_evicted(self, workspaces, store, workspace):
        memory = MemoryStore(workspaces, store, MemoryConfig(
            episodic_cap=5, background_promotion=False, promotion_threshold=1000,
        ))
        for i in range(8):
            memory.append_episodic(workspace.id, record(workspace.id, "scroll", amount=i))
        assert len(memory.query_episodic(workspace.id, window=100)) == 8

    def test_cap_enforced_after_promotion(self, workspaces, store, workspace):
        memory = MemoryStore(workspaces, store, MemoryConfig(
            episodic_cap=5, background_promotion=False, promotion_threshold=1000,
        ))
        for i in range(8):
            memory.append_episodic(workspace.id, record(workspace.id, "scroll", amount=i))
        report = memory.promote(workspace.id)
        assert report.evicted == 3

        records = memory.query_episodic(workspace.id, window=100)
        assert [r.sequence_no for r in records] == [4, 5, 6, 7, 8]

        memory.append_episodic(workspace.id, record(workspace.id, "back"))
        records = memory.query_episodic(workspace.id, window=100)
        assert len(records) == 5
        assert records[-1].sequence_no == 9


class TestSemanticQueries:
    """Tests for fact ranking and feedback."""

    def test_query_ranks_relevant_facts_first(self, memory, workspace):
        seed_fact(memory, workspace.id, "The checkout button on shop.example is #buy-now")
        seed_fact(memory, workspace.id, "Weather pages load slowly in the morning")
        results = memory.query_semantic(workspace.id, "click checkout button on shop", limit=2)
        assert "checkout" in results[0].fact.statement
        assert results[0].relevance > results[1].relevance

    def test_query_limit(self, memory, workspace):
        for i in range(4):
            seed_fact(memory, workspace.id, f"fact number {i} about topic{i}")
        assert len(memory.query_semantic(workspace.id, "topic", limit=2)) == 2
        assert memory.query_semantic(workspace.id, "topic", limit=0) == []

    def test_positive_feedback_raises_confidence(self, memory, workspace):
        fact = seed_fact(memory, workspace.id, "Login lives at /signin", confidence=0.5)
        updated = memory.record_feedback(fact.id, FactCorrection(is_correct=True))
        assert updated.confidence == pytest.approx(0.75)
        assert updated.feedback[-1]["previous_confidence"] == 0.5

    def test_negative_feedback_lowers_confidence(self, memory, workspace):
        fact = seed_fact(memory, workspace.id, "Login lives at /signin", confidence=0.8)
        updated = memory.record_feedback(fact.id, FactCorrection(is_correct=False))
        assert updated.confidence == pytest.approx(0.4)

    def test_correction_keeps_fact_and_audit_trail(self, memory, workspace):
        fact = seed_fact(memory, workspace.id, "Login lives at /signin")
        updated = memory.record_feedback(
            fact.id, FactCorrection(statement="Login lives at /login", confidence=0.9),
        )
        assert updated.id == fact.id
        assert updated.statement == "Login lives at /login"
        assert updated.confidence == 0.9
        assert updated.feedback[-1]["previous_statement"] == "Login lives at /signin"
        assert memory.get_fact(fact.id).statement == "Login lives at /login"

    def test_feedback_across_workspaces_rejected(self, memory, workspaces, workspace):
        other = workspaces.create({"name": "other"})
        fact = seed_fact(memory, workspace.id, "Only for the first workspace")
        with pytest.raises(IsolationViolation):
            memory.record_feedback(fact.id, FactCorrection(is_correct=False), workspace_id=other.id)

    def test_unknown_fact(self, memory, workspace):
        with pytest.raises(FactNotFound):
            memory.record_feedback("fact_missing", FactCorrection())


class TestPromotionWithLLM:
    """Summarization through the LLM capability."""

    def test_facts_created_with_provenance(self, workspaces, store, workspace):
        llm = make_llm('{"facts": [{"statement": "Search box is input[name=q]", "confidence": 0.7}]}')
        memory = MemoryStore(workspaces, store, MemoryConfig(background_promotion=False), llm=llm)
        for i in range(3):
            memory.append_episodic(
                workspace.id, record(workspace.id, "type", goal="search cats", selector="input[name=q]", text="cats"),
            )
        report = memory.promote(workspace.id)
        assert report.facts_created == 1
        fact = memory.list_facts(workspace.id)[0]
        assert fact.source_record_ids == {1, 2, 3}
        assert fact.workspace_id == workspace.id

    def test_similar_facts_merge(self, workspaces, store, workspace):
        llm = make_llm(
            '{"facts": [{"statement": "Search box is input[name=q]", "confidence": 0.5}]}',
            '{"facts": [{"statement": "search box is input name q", "confidence": 0.5}]}',
        )
        memory = MemoryStore(workspaces, store, MemoryConfig(background_promotion=False), llm=llm)
        memory.append_episodic(workspace.id, record(workspace.id, "type", goal="search", selector="q", text="a"))
        memory.promote(workspace.id)
        memory.append_episodic(workspace.id, record(workspace.id, "type", goal="search", selector="q", text="b"))
        report = memory.promote(workspace.id)

        assert report.facts_merged == 1
        facts = memory.list_facts(workspace.id)
        assert len(facts) == 1
        assert facts[0].confidence == pytest.approx(0.75)
        assert facts[0].source_record_ids == {1, 2}


class TestMaintenance:
    """Tests for stats and clearing."""

    def test_stats(self, memory, workspace):
        for i in range(3):
            memory.append_episodic(workspace.id, record(workspace.id, "scroll", amount=i))
        seed_fact(memory, workspace.id, "A fact", confidence=0.6)
        stats = memory.stats(workspace.id)
        assert stats.episodic_count == 3
        assert stats.semantic_count == 1
        assert stats.average_confidence == pytest.approx(0.6)
        assert stats.last_sequence_no == 3
        assert stats.total_tokens > 0

    def test_clear_episodic_keeps_sequence(self, memory, workspace):
        for i in range(3):
            memory.append_episodic(workspace.id, record(workspace.id, "scroll", amount=i))
        memory.clear(workspace.id, MemoryTier.EPISODIC)
        assert memory.query_episodic(workspace.id) == []
        assert memory.append_episodic(workspace.id, record(workspace.id, "back")).sequence_no == 4

    def test_clear_all_tiers(self, memory, workspace):
        memory.append_episodic(workspace.id, record(workspace.id, "back", outcome=Outcome.FAILURE))
        seed_fact(memory, workspace.id, "A fact")
        memory.clear(workspace.id)
        stats = memory.stats(workspace.id)
        assert stats.episodic_count == 0
        assert stats.semantic_count == 0
