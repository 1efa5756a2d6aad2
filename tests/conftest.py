"""
Shared fixtures and fakes for Agentic Workspace tests.
"""

import asyncio
import os
from typing import Any, Optional

import pytest
from langchain_core.language_models import FakeListChatModel

from agentic_workspace.config import ContextConfig, MemoryConfig, OrchestratorConfig
from agentic_workspace.context import ContextAssembler
from agentic_workspace.errors import AutomationError
from agentic_workspace.llm_client import HybridLLM
from agentic_workspace.memory import MemoryStore
from agentic_workspace.promotion import FactDraft, merge_facts
from agentic_workspace.providers import ChatProvider, ProviderKind
from agentic_workspace.storage import RecordStore
from agentic_workspace.types import EpisodicRecord, Observation, Outcome, Step
from agentic_workspace.workspace import WorkspaceManager

# Embedding similarity has its own tests with an in-process encoder
os.environ["AGENTIC_WORKSPACE_SIMILARITY"] = "lexical"


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class BrokenChatModel(FakeListChatModel):
    """A chat model whose every call fails."""

    def _call(self, *args, **kwargs) -> str:
        raise RuntimeError("model offline")


def make_llm(*responses: str, kind: ProviderKind = ProviderKind.ON_DEVICE) -> HybridLLM:
    """HybridLLM over a single scripted in-process model."""
    model = FakeListChatModel(responses=list(responses))
    return HybridLLM([ChatProvider(kind=kind, model=model)])


class ScriptedExecutor:
    """In-memory action executor.

    ``script`` maps an action name to a list of outcomes consumed one per
    call: an ``Observation``, an ``AutomationError`` to raise, or None for
    a default success. Unscripted calls succeed.
    """

    def __init__(self, script: Optional[dict[str, list[Any]]] = None, delay: float = 0.0):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.delay = delay
        self.executed: list[Step] = []
        self.observe_calls = 0
        self.url = "about:blank"

    async def execute(self, step: Step) -> Observation:
        if self.delay:
            await asyncio.sleep(self.delay)
        self.executed.append(step)
        queue = self.script.get(step.action)
        outcome = queue.pop(0) if queue else None
        if isinstance(outcome, AutomationError):
            raise outcome
        if isinstance(outcome, Observation):
            return outcome
        if step.action == "goto":
            self.url = step.args.get("url", self.url)
        return Observation(success=True, message=f"{step.action} ok", url=self.url)

    async def observe(self) -> dict[str, Any]:
        self.observe_calls += 1
        return {"url": self.url, "title": "Fake page", "text": ""}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    record_store = RecordStore()
    yield record_store
    record_store.close()


@pytest.fixture
def workspaces(store):
    return WorkspaceManager(store)


@pytest.fixture
def memory_config():
    return MemoryConfig(background_promotion=False, promotion_threshold=1000)


@pytest.fixture
def memory(workspaces, store, memory_config, clock):
    memory_store = MemoryStore(workspaces, store, memory_config, clock=clock)
    yield memory_store
    memory_store.close()


@pytest.fixture
def assembler(workspaces, memory, store, clock):
    return ContextAssembler(workspaces, memory, store, ContextConfig(), clock=clock)


@pytest.fixture
def workspace(workspaces):
    return workspaces.create({"name": "Test", "autonomy_level": 1})


@pytest.fixture
def fast_config():
    return OrchestratorConfig(
        max_step_retries=2,
        retry_backoff=0.0,
        max_replans=2,
        max_planning_attempts=2,
        action_timeout=5.0,
        llm_timeout=5.0,
    )


def record(workspace_id: str, action: str, plan_id: str = "", goal: str = "", outcome=Outcome.SUCCESS, **args):
    """Build an episodic record for ``action``."""
    return EpisodicRecord(
        workspace_id=workspace_id,
        action={"type": action, "args": args},
        observation=f"{action} observed",
        outcome=outcome,
        plan_id=plan_id,
        goal=goal,
    )


def append_run(memory: MemoryStore, workspace_id: str, plan_id: str, goal: str, steps, closing: str = "done"):
    """Append a whole plan run: its steps plus the closing record."""
    for action, args in steps:
        memory.append_episodic(workspace_id, record(workspace_id, action, plan_id, goal, **args))
    outcome = Outcome.SUCCESS if closing == "done" else Outcome.FAILURE
    memory.append_episodic(workspace_id, record(workspace_id, closing, plan_id, goal, outcome=outcome))


def seed_fact(memory: MemoryStore, workspace_id: str, statement: str, confidence: float = 0.5):
    """Put a fact into a workspace through the merge path used by promotion."""
    state = memory._state(workspace_id)
    changed, _, _ = merge_facts(
        {}, [(FactDraft(statement=statement, confidence=confidence), {1})],
        workspace_id, 0.85, memory._clock(),
    )
    fact = next(iter(changed.values()))
    with state.lock:
        state.facts[fact.id] = fact
        memory._fact_index[fact.id] = workspace_id
    return fact
