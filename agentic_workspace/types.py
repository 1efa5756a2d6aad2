"""
Type definitions for Agentic Workspace.

Provides typed dataclasses for the entities shared by the workspace
manager, the memory store, the context assembler and the orchestrator.
Every entity carries the id of the workspace that owns it. Entities that
are persisted round-trip through ``to_dict()`` / ``from_dict()``.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


def new_id(prefix: str) -> str:
    """Create a short unique id such as ``fact_3f9a1c2b7d04``."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


# Action types that close a plan run in the episodic log
TERMINAL_ACTIONS = frozenset({"done", "abandon", "cancelled"})


class Outcome(str, Enum):
    """Outcome of one executed action."""
    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL = "partial"


class MemoryTier(str, Enum):
    """Where a context item came from."""
    EPISODIC = "episodic"
    SEMANTIC = "semantic"
    PROCEDURAL = "procedural"
    EXTERNAL = "external"


class StepStatus(str, Enum):
    PENDING = "pending"
    AWAITING_APPROVAL = "awaiting_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class ApprovalResolution(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"


class TaskState(str, Enum):
    """States of the Planner/Navigator loop."""
    IDLE = "idle"
    PLANNING = "planning"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    OBSERVING = "observing"
    DONE = "done"
    FAILED = "failed"
    TERMINATED = "terminated"


class TerminationStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"


@dataclass
class Workspace:
    """An isolated unit of memory, context and autonomy policy.

    Attributes:
        id: Workspace id
        name: Display name
        autonomy_level: 1 (ask for everything) to 5 (fully autonomous)
        context_token_budget: Token budget for assembled context
        approval_timeout: Seconds to wait for a human decision
        trust_score: Running success estimate used to suggest autonomy changes
    """
    id: str
    name: str
    autonomy_level: int = 3
    context_token_budget: int = 4000
    approval_timeout: float = 300.0
    description: str = ""
    trust_score: float = 0.5
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "id": self.id,
            "name": self.name,
            "autonomy_level": self.autonomy_level,
            "context_token_budget": self.context_token_budget,
            "approval_timeout": self.approval_timeout,
            "description": self.description,
            "trust_score": self.trust_score,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Workspace":
        """Create from a stored dictionary."""
        return cls(
            id=data["id"],
            name=data["name"],
            autonomy_level=int(data.get("autonomy_level", 3)),
            context_token_budget=int(data.get("context_token_budget", 4000)),
            approval_timeout=float(data.get("approval_timeout", 300.0)),
            description=data.get("description", ""),
            trust_score=float(data.get("trust_score", 0.5)),
            created_at=data.get("created_at", 0.0),
            updated_at=data.get("updated_at", 0.0),
        )


@dataclass
class EpisodicRecord:
    """One executed action and what came of it.

    ``sequence_no`` is assigned by the memory store on append; callers
    leave it at 0.
    """
    workspace_id: str
    action: dict[str, Any]
    observation: str = ""
    outcome: Outcome = Outcome.SUCCESS
    plan_id: str = ""
    goal: str = ""
    goal_signature: str = ""
    sequence_no: int = 0
    timestamp: float = field(default_factory=time.time)

    @property
    def action_type(self) -> str:
        return str(self.action.get("type", ""))

    @property
    def is_terminal(self) -> bool:
        return self.action_type in TERMINAL_ACTIONS

    def to_dict(self) -> dict[str, Any]:
        return {
            "workspace_id": self.workspace_id,
            "sequence_no": self.sequence_no,
            "timestamp": self.timestamp,
            "action": self.action,
            "observation": self.observation,
            "outcome": self.outcome.value,
            "plan_id": self.plan_id,
            "goal": self.goal,
            "goal_signature": self.goal_signature,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EpisodicRecord":
        return cls(
            workspace_id=data["workspace_id"],
            sequence_no=int(data.get("sequence_no", 0)),
            timestamp=data.get("timestamp", 0.0),
            action=data.get("action", {}),
            observation=data.get("observation", ""),
            outcome=Outcome(data.get("outcome", Outcome.SUCCESS.value)),
            plan_id=data.get("plan_id", ""),
            goal=data.get("goal", ""),
            goal_signature=data.get("goal_signature", ""),
        )

    def describe(self) -> str:
        """One-line rendering used in prompts and context items."""
        args = self.action.get("args", {})
        arg_text = ", ".join(f"{k}={v}" for k, v in args.items()) if args else ""
        line = f"#{self.sequence_no} {self.action_type}({arg_text}) -> {self.outcome.value}"
        if self.observation:
            line += f": {self.observation}"
        return line


@dataclass
class FactCorrection:
    """A correction to a semantic fact from the user or the orchestrator.

    Attributes:
        statement: Replacement statement, or None to keep the current one
        is_correct: False lowers confidence, True raises it
        confidence: Explicit new confidence, overrides ``is_correct``
        source: "user" or "orchestrator"
    """
    statement: Optional[str] = None
    is_correct: bool = True
    confidence: Optional[float] = None
    source: str = "user"


@dataclass
class SemanticFact:
    """A statement distilled from episodic history."""
    id: str
    workspace_id: str
    statement: str
    confidence: float = 0.5
    source_record_ids: set[int] = field(default_factory=set)
    created_at: float = field(default_factory=time.time)
    last_accessed_at: float = field(default_factory=time.time)
    feedback: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "statement": self.statement,
            "confidence": self.confidence,
            "source_record_ids": sorted(self.source_record_ids),
            "created_at": self.created_at,
            "last_accessed_at": self.last_accessed_at,
            "feedback": self.feedback,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SemanticFact":
        return cls(
            id=data["id"],
            workspace_id=data["workspace_id"],
            statement=data["statement"],
            confidence=float(data.get("confidence", 0.5)),
            source_record_ids=set(data.get("source_record_ids", [])),
            created_at=data.get("created_at", 0.0),
            last_accessed_at=data.get("last_accessed_at", 0.0),
            feedback=list(data.get("feedback", [])),
        )


@dataclass
class ScoredFact:
    """A semantic fact with the score it was ranked by."""
    fact: SemanticFact
    score: float
    relevance: float = 0.0


@dataclass
class ProceduralWorkflow:
    """A reusable step sequence induced from repeated successful runs."""
    id: str
    workspace_id: str
    goal_signature: str
    step_templates: list[dict[str, Any]] = field(default_factory=list)
    success_count: int = 0
    failure_count: int = 0
    last_used_at: float = field(default_factory=time.time)
    created_at: float = field(default_factory=time.time)
    retired: bool = False

    @property
    def structure(self) -> tuple[str, ...]:
        return tuple(t.get("type", "") for t in self.step_templates)

    @property
    def uses(self) -> int:
        return self.success_count + self.failure_count

    @property
    def success_rate(self) -> float:
        if self.uses == 0:
            return 0.0
        return self.success_count / self.uses

    def describe(self) -> str:
        steps = " -> ".join(self.structure)
        return (
            f"Workflow for '{self.goal_signature}': {steps} "
            f"(succeeded {self.success_count}/{self.uses})"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "goal_signature": self.goal_signature,
            "step_templates": self.step_templates,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "last_used_at": self.last_used_at,
            "created_at": self.created_at,
            "retired": self.retired,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProceduralWorkflow":
        return cls(
            id=data["id"],
            workspace_id=data["workspace_id"],
            goal_signature=data["goal_signature"],
            step_templates=list(data.get("step_templates", [])),
            success_count=int(data.get("success_count", 0)),
            failure_count=int(data.get("failure_count", 0)),
            last_used_at=data.get("last_used_at", 0.0),
            created_at=data.get("created_at", 0.0),
            retired=bool(data.get("retired", False)),
        )


@dataclass
class ContextItem:
    """One unit of assembled context (a "pill" in the UI)."""
    id: str
    workspace_id: str
    tier: MemoryTier
    content: str
    token_count: int
    priority_score: float = 0.5
    pinned: bool = False
    source_ref: str = ""
    created_at: float = field(default_factory=time.time)
    sequence_no: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "tier": self.tier.value,
            "content": self.content,
            "token_count": self.token_count,
            "priority_score": self.priority_score,
            "pinned": self.pinned,
            "source_ref": self.source_ref,
            "created_at": self.created_at,
            "sequence_no": self.sequence_no,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ContextItem":
        return cls(
            id=data["id"],
            workspace_id=data["workspace_id"],
            tier=MemoryTier(data["tier"]),
            content=data["content"],
            token_count=int(data["token_count"]),
            priority_score=float(data.get("priority_score", 0.5)),
            pinned=bool(data.get("pinned", False)),
            source_ref=data.get("source_ref", ""),
            created_at=data.get("created_at", 0.0),
            sequence_no=int(data.get("sequence_no", 0)),
        )


@dataclass
class ContextPack:
    """Budgeted context for one planning cycle."""
    workspace_id: str
    items: list[ContextItem]
    total_tokens: int
    budget: int
    dropped: list[str] = field(default_factory=list)
    compressed: list[str] = field(default_factory=list)

    def by_tier(self, tier: MemoryTier) -> list[ContextItem]:
        return [item for item in self.items if item.tier == tier]


@dataclass
class Step:
    """One planned browser action."""
    action: str
    args: dict[str, Any] = field(default_factory=dict)
    description: str = ""
    risk_level: int = 1
    status: StepStatus = StepStatus.PENDING
    id: str = field(default_factory=lambda: new_id("step"))

    def to_action(self) -> dict[str, Any]:
        return {"type": self.action, "args": dict(self.args)}


@dataclass
class Plan:
    goal: str
    steps: list[Step] = field(default_factory=list)
    id: str = field(default_factory=lambda: new_id("plan"))


@dataclass
class ApprovalRequest:
    """A pending human decision for a step that exceeds workspace autonomy."""
    workspace_id: str
    step_id: str
    required_level: int
    description: str = ""
    action: dict[str, Any] = field(default_factory=dict)
    resolution: ApprovalResolution = ApprovalResolution.PENDING
    reason: str = ""
    id: str = field(default_factory=lambda: new_id("approval"))
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "step_id": self.step_id,
            "required_level": self.required_level,
            "description": self.description,
            "action": self.action,
            "resolution": self.resolution.value,
            "reason": self.reason,
            "created_at": self.created_at,
        }


@dataclass
class Observation:
    """What the action executor reports after running one step."""
    success: bool
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    url: str = ""


@dataclass
class Termination:
    status: TerminationStatus
    reason: str


@dataclass
class TaskResult:
    """Final result of one orchestrated task."""
    task_id: str
    workspace_id: str
    goal: str
    termination: Termination
    steps_executed: int = 0
    replans: int = 0
    states: list[TaskState] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.termination.status == TerminationStatus.SUCCESS


@dataclass
class PromotionReport:
    """What one promotion pass changed."""
    workspace_id: str
    records_considered: int = 0
    facts_created: int = 0
    facts_merged: int = 0
    workflows_created: int = 0
    workflows_reinforced: int = 0
    workflows_demoted: int = 0
    workflows_retired: int = 0
    runs_closed: int = 0
    evicted: int = 0
    summarization_error: Optional[str] = None

    @property
    def changed(self) -> bool:
        return any((
            self.facts_created, self.facts_merged, self.workflows_created,
            self.workflows_reinforced, self.workflows_demoted,
            self.workflows_retired,
        ))


@dataclass
class MemoryStats:
    """Per-tier memory statistics for one workspace."""
    workspace_id: str
    episodic_count: int = 0
    semantic_count: int = 0
    procedural_count: int = 0
    retired_count: int = 0
    total_tokens: int = 0
    average_confidence: float = 0.0
    average_success_rate: float = 0.0
    last_sequence_no: int = 0
    promotion_watermark: int = 0

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)
