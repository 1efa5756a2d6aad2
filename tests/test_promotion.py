"""
Tests for workflow induction and promotion bookkeeping.
"""

import pytest
from langchain_core.language_models import FakeListChatModel

from agentic_workspace.config import MemoryConfig
from agentic_workspace.llm_client import HybridLLM
from agentic_workspace.memory import MemoryStore
from agentic_workspace.promotion import merge_templates, noisy_or
from agentic_workspace.providers import ChatProvider, ProviderKind

from conftest import BrokenChatModel, append_run, make_llm, record


SEARCH_STEPS = [
    ("goto", {"url": "https://example.com"}),
    ("type", {"selector": "input[name=q]", "text": "cats"}),
    ("press", {"key": "Enter"}),
]


class TestWorkflowInduction:
    """Successful runs become workflows; failures demote and retire them."""

    def test_three_identical_runs_create_one_workflow(self, memory, workspace):
        for n in range(3):
            append_run(memory, workspace.id, f"plan_{n}", "Search for cats", SEARCH_STEPS)
        report = memory.promote(workspace.id)

        assert report.workflows_created == 1
        workflows = memory.list_workflows(workspace.id)
        assert len(workflows) == 1
        wf = workflows[0]
        assert wf.success_count == 3
        assert wf.failure_count == 0
        assert wf.goal_signature == "search cats"
        assert wf.structure == ("goto", "type", "press")
        assert memory.query_procedural(workspace.id, "search for CATS")[0].id == wf.id

    def test_fewer_runs_than_threshold_create_nothing(self, memory, workspace):
        for n in range(2):
            append_run(memory, workspace.id, f"plan_{n}", "Search for cats", SEARCH_STEPS)
        assert memory.promote(workspace.id).workflows_created == 0
        assert memory.list_workflows(workspace.id) == []

    def test_runs_counted_across_promotions(self, memory, workspace):
        append_run(memory, workspace.id, "plan_0", "Search for cats", SEARCH_STEPS)
        memory.promote(workspace.id)
        append_run(memory, workspace.id, "plan_1", "Search for cats", SEARCH_STEPS)
        memory.promote(workspace.id)
        append_run(memory, workspace.id, "plan_2", "Search for cats", SEARCH_STEPS)
        assert memory.promote(workspace.id).workflows_created == 1

    def test_run_split_by_promotion_is_not_lost(self, memory, workspace):
        for n in range(2):
            append_run(memory, workspace.id, f"plan_{n}", "Search for cats", SEARCH_STEPS)
        for action, args in SEARCH_STEPS:
            memory.append_episodic(workspace.id, record(workspace.id, action, "plan_2", "Search for cats", **args))
        memory.promote(workspace.id)
        memory.append_episodic(workspace.id, record(workspace.id, "done", "plan_2", "Search for cats"))
        assert memory.promote(workspace.id).workflows_created == 1

    def test_different_args_become_placeholders(self, memory, workspace):
        for n, term in enumerate(["cats", "dogs", "owls"]):
            steps = [SEARCH_STEPS[0], ("type", {"selector": "input[name=q]", "text": term}), SEARCH_STEPS[2]]
            append_run(memory, workspace.id, f"plan_{n}", "Search for cats", steps)
        memory.promote(workspace.id)
        wf = memory.list_workflows(workspace.id)[0]
        assert wf.step_templates[1]["args"] == {"selector": "input[name=q]", "text": "{text}"}

    def test_success_reinforces_existing_workflow(self, memory, workspace):
        for n in range(3):
            append_run(memory, workspace.id, f"plan_{n}", "Search for cats", SEARCH_STEPS)
        memory.promote(workspace.id)
        append_run(memory, workspace.id, "plan_3", "Search for cats", SEARCH_STEPS)
        report = memory.promote(workspace.id)
        assert report.workflows_reinforced == 1
        assert memory.list_workflows(workspace.id)[0].success_count == 4

    def test_failures_demote_then_retire(self, workspaces, store, workspace):
        memory = MemoryStore(workspaces, store, MemoryConfig(
            background_promotion=False, retire_floor=0.5, retire_min_samples=5,
        ))
        for n in range(3):
            append_run(memory, workspace.id, f"plan_{n}", "Search for cats", SEARCH_STEPS)
        memory.promote(workspace.id)

        append_run(memory, workspace.id, "fail_0", "Search for cats", SEARCH_STEPS[:1], closing="abandon")
        report = memory.promote(workspace.id)
        assert report.workflows_demoted == 1
        wf = memory.list_workflows(workspace.id)[0]
        assert (wf.success_count, wf.failure_count) == (3, 1)

        for n in range(1, 4):
            append_run(memory, workspace.id, f"fail_{n}", "Search for cats", SEARCH_STEPS[:1], closing="abandon")
        report = memory.promote(workspace.id)
        assert report.workflows_retired == 1
        assert memory.list_workflows(workspace.id) == []
        assert memory.query_procedural(workspace.id, "search cats") == []
        retired = memory.list_workflows(workspace.id, include_retired=True)
        assert retired[0].retired
        assert retired[0].success_rate < 0.5

    def test_cancelled_runs_are_ignored(self, memory, workspace):
        for n in range(3):
            append_run(memory, workspace.id, f"plan_{n}", "Search for cats", SEARCH_STEPS)
        memory.promote(workspace.id)
        append_run(memory, workspace.id, "cancel_0", "Search for cats", SEARCH_STEPS[:1], closing="cancelled")
        report = memory.promote(workspace.id)
        assert report.workflows_demoted == 0
        assert memory.list_workflows(workspace.id)[0].failure_count == 0

    def test_non_latin_goal_creates_workflow(self, memory, workspace):
        steps = [("goto", {"url": "https://tickets.example"}), ("click", {"selector": "#search"})]
        for n in range(3):
            append_run(memory, workspace.id, f"plan_{n}", "Найти билеты в Москву", steps)
        report = memory.promote(workspace.id)

        assert report.workflows_created == 1
        wf = memory.list_workflows(workspace.id)[0]
        assert wf.goal_signature == "найти билеты в москву"
        assert memory.query_procedural(workspace.id, "найти билеты в Москву")[0].id == wf.id

    def test_goals_are_kept_apart(self, memory, workspace):
        for n in range(3):
            append_run(memory, workspace.id, f"a_{n}", "Search for cats", SEARCH_STEPS)
        append_run(memory, workspace.id, "b_0", "Order pizza", SEARCH_STEPS, closing="abandon")
        memory.promote(workspace.id)
        assert memory.list_workflows(workspace.id)[0].failure_count == 0


class TestPromotionIdempotence:
    """Repeating promotion with no new records changes nothing."""

    def test_repeat_promote_is_noop(self, workspaces, store, workspace):
        llm = make_llm('{"facts": [{"statement": "example.com has a search box", "confidence": 0.6}]}')
        memory = MemoryStore(workspaces, store, MemoryConfig(background_promotion=False), llm=llm)
        for n in range(3):
            append_run(memory, workspace.id, f"plan_{n}", "Search for cats", SEARCH_STEPS)

        first = memory.promote(workspace.id)
        assert first.changed
        facts_before = [f.to_dict() for f in memory.list_facts(workspace.id)]
        workflows_before = [w.to_dict() for w in memory.list_workflows(workspace.id)]

        second = memory.promote(workspace.id)
        assert not second.changed
        assert second.records_considered == 0
        assert [f.to_dict() for f in memory.list_facts(workspace.id)] == facts_before
        assert [w.to_dict() for w in memory.list_workflows(workspace.id)] == workflows_before

    def test_state_survives_restart(self, workspaces, store, memory_config, workspace):
        first = MemoryStore(workspaces, store, memory_config)
        for n in range(3):
            append_run(first, workspace.id, f"plan_{n}", "Search for cats", SEARCH_STEPS)
        first.promote(workspace.id)

        second = MemoryStore(workspaces, store, memory_config)
        assert len(second.list_workflows(workspace.id)) == 1
        assert not second.promote(workspace.id).changed


class TestSummarizationFailure:
    """A failed summarization keeps its window for the next attempt."""

    def test_watermark_not_advanced(self, workspaces, store, workspace):
        broken = HybridLLM([ChatProvider(kind=ProviderKind.ON_DEVICE, model=BrokenChatModel(responses=["x"]))])
        memory = MemoryStore(workspaces, store, MemoryConfig(background_promotion=False), llm=broken)
        for n in range(3):
            append_run(memory, workspace.id, f"plan_{n}", "Search for cats", SEARCH_STEPS)

        report = memory.promote(workspace.id)
        assert report.summarization_error
        # Induction does not depend on the LLM
        assert report.workflows_created == 1
        assert memory.stats(workspace.id).promotion_watermark == 0

        memory.llm = make_llm('{"facts": [{"statement": "cats are searchable", "confidence": 0.6}]}')
        retry = memory.promote(workspace.id)
        assert retry.summarization_error is None
        assert retry.facts_created == 1
        assert retry.workflows_created == 0
        assert memory.stats(workspace.id).promotion_watermark == 12

    def test_cloud_fallback_summarizes(self, workspaces, store, workspace):
        llm = HybridLLM([
            ChatProvider(kind=ProviderKind.CLOUD, model=FakeListChatModel(
                responses=['{"facts": [{"statement": "from the cloud", "confidence": 0.5}]}'],
            )),
            ChatProvider(kind=ProviderKind.ON_DEVICE, model=BrokenChatModel(responses=["x"])),
        ])
        memory = MemoryStore(workspaces, store, MemoryConfig(background_promotion=False), llm=llm)
        memory.append_episodic(workspace.id, record(workspace.id, "goto", goal="news", url="https://news.example"))
        assert memory.promote(workspace.id).facts_created == 1


class TestBackgroundPromotion:
    """Promotion triggered by the append threshold runs on the pool."""

    def test_threshold_triggers_promotion(self, workspaces, store, workspace):
        memory = MemoryStore(workspaces, store, MemoryConfig(
            background_promotion=True, promotion_threshold=4,
        ))
        try:
            for n in range(3):
                append_run(memory, workspace.id, f"plan_{n}", "Search for cats", SEARCH_STEPS)
            memory.flush(timeout=10)
            # The last run closes after the final trigger; promote once more to be sure
            memory.promote(workspace.id)
            assert len(memory.list_workflows(workspace.id)) == 1
        finally:
            memory.close()


class TestHelpers:

    def test_noisy_or(self):
        assert noisy_or(0.5, 0.5) == pytest.approx(0.75)
        assert noisy_or(0.0, 0.3) == pytest.approx(0.3)

    def test_merge_templates(self):
        a = [{"type": "goto", "args": {"url": "https://a.com"}}]
        b = [{"type": "goto", "args": {"url": "https://b.com"}}]
        assert merge_templates(a, b) == [{"type": "goto", "args": {"url": "{url}"}}]
        assert merge_templates(a, a) == a
