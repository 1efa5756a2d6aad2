"""
Promotion pipeline for Agentic Workspace.

Turns episodic history into longer-lived memory:

- Summarization condenses a window of records that share a goal
  signature into semantic facts via the LLM capability.
- Workflow induction closes plan runs, clusters successful runs by
  ``(goal_signature, step structure)`` and materializes, reinforces,
  demotes or retires procedural workflows.

Both functions are pure with respect to storage: they compute changes
that the memory store commits atomically.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from .types import EpisodicRecord, Outcome, ProceduralWorkflow, SemanticFact, new_id
from .utils import cosine_similarity

logger = logging.getLogger("agentic_workspace.promotion")


# =============================================================================
# Summarization
# =============================================================================

class FactDraft(BaseModel):
    statement: str = Field(min_length=1)
    confidence: float = Field(default=0.6, ge=0.0, le=1.0)


class FactList(BaseModel):
    """Schema the LLM must answer with when summarizing history."""
    facts: list[FactDraft] = Field(default_factory=list)


SUMMARIZE_PROMPT = """You maintain long-term memory for a web automation agent.

Below are browser actions the agent took while working on the goal "{goal}".
Extract durable facts worth remembering for future tasks in this workspace:
site structure, selectors that worked, preferences, things that failed and why.
Skip anything that only matters to this single run.

ACTIONS:
{actions}

Respond with JSON only:
{{"facts": [{{"statement": "...", "confidence": 0.0-1.0}}]}}
Return {{"facts": []}} if nothing is worth keeping."""


def group_by_goal(records: list[EpisodicRecord]) -> dict[str, list[EpisodicRecord]]:
    """Group records by goal signature, keeping first-seen order."""
    groups: dict[str, list[EpisodicRecord]] = {}
    for record in records:
        key = record.goal_signature or record.goal or "(no goal)"
        groups.setdefault(key, []).append(record)
    return groups


def summarize_window(llm, records: list[EpisodicRecord]) -> list[tuple[FactDraft, set[int]]]:
    """Condense a window of records into fact drafts with provenance.

    Raises whatever the LLM capability raises; the caller decides
    whether the window is committed.
    """
    drafts: list[tuple[FactDraft, set[int]]] = []
    for signature, group in group_by_goal(records).items():
        goal = next((r.goal for r in group if r.goal), signature)
        prompt = SUMMARIZE_PROMPT.format(
            goal=goal,
            actions="\n".join(r.describe() for r in group),
        )
        generation = llm.generate(prompt, response_schema=FactList)
        provenance = {r.sequence_no for r in group}
        for draft in generation.parsed.facts:
            drafts.append((draft, set(provenance)))
        logger.debug(
            "Summarized %d records for '%s' into %d facts",
            len(group), signature, len(generation.parsed.facts),
        )
    return drafts


def noisy_or(a: float, b: float) -> float:
    """Combine two independent confidences."""
    return 1.0 - (1.0 - a) * (1.0 - b)


def merge_facts(
    existing: dict[str, SemanticFact],
    drafts: list[tuple[FactDraft, set[int]]],
    workspace_id: str,
    threshold: float,
    now: float,
    similarity: Callable[[str, str], float] = cosine_similarity,
) -> tuple[dict[str, SemanticFact], int, int]:
    """Merge drafts into existing facts.

    A draft whose statement is at least ``threshold`` similar to an
    existing (or earlier new) fact merges into it, as scored by
    ``similarity``. Returns the changed facts keyed by id plus
    created/merged counts.
    """
    pool = dict(existing)
    changed: dict[str, SemanticFact] = {}
    created = merged = 0

    for draft, provenance in drafts:
        best: Optional[SemanticFact] = None
        best_score = 0.0
        for fact in sorted(pool.values(), key=lambda f: (f.created_at, f.id)):
            score = similarity(draft.statement, fact.statement)
            if score > best_score:
                best, best_score = fact, score

        if best is not None and best_score >= threshold:
            best.confidence = round(noisy_or(best.confidence, draft.confidence), 6)
            best.source_record_ids |= provenance
            changed[best.id] = best
            merged += 1
            continue

        fact = SemanticFact(
            id=new_id("fact"),
            workspace_id=workspace_id,
            statement=draft.statement.strip(),
            confidence=draft.confidence,
            source_record_ids=set(provenance),
            created_at=now,
            last_accessed_at=now,
        )
        pool[fact.id] = fact
        changed[fact.id] = fact
        created += 1

    return changed, created, merged


# =============================================================================
# Workflow induction
# =============================================================================

@dataclass
class InductionState:
    """Incremental induction bookkeeping for one workspace.

    ``open_runs`` holds the steps of plans that have not been closed yet,
    so eviction of their records loses nothing. ``clusters`` counts
    successful runs that have not yet materialized a workflow.
    """
    open_runs: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    goal_stats: dict[str, dict[str, int]] = field(default_factory=dict)
    clusters: dict[tuple[str, tuple[str, ...]], dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "open_runs": self.open_runs,
            "goal_stats": self.goal_stats,
            "clusters": [
                {"goal_signature": sig, "structure": list(structure), **entry}
                for (sig, structure), entry in self.clusters.items()
            ],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InductionState":
        clusters = {}
        for entry in data.get("clusters", []):
            key = (entry["goal_signature"], tuple(entry["structure"]))
            clusters[key] = {
                "successes": int(entry.get("successes", 0)),
                "templates": entry.get("templates", []),
            }
        return cls(
            open_runs={k: list(v) for k, v in data.get("open_runs", {}).items()},
            goal_stats={k: dict(v) for k, v in data.get("goal_stats", {}).items()},
            clusters=clusters,
        )


@dataclass
class InductionResult:
    changed: dict[str, ProceduralWorkflow] = field(default_factory=dict)
    runs_closed: int = 0
    created: int = 0
    reinforced: int = 0
    demoted: int = 0
    retired: int = 0


def merge_templates(
    current: list[dict[str, Any]],
    incoming: list[dict[str, Any]],
) -> list[dict[str, Any]]:
    """Merge step templates of two runs with the same structure.

    Arguments whose values differ between runs become placeholders.
    """
    merged = []
    for old, new in zip(current, incoming):
        args = {}
        for key in sorted(set(old.get("args", {})) | set(new.get("args", {}))):
            a = old.get("args", {}).get(key)
            b = new.get("args", {}).get(key)
            args[key] = a if a == b else "{" + key + "}"
        merged.append({"type": old["type"], "args": args})
    return merged


class WorkflowInducer:
    """Derives procedural workflows from closed plan runs.

    Args:
        min_successes: Successful runs needed before a workflow exists
        retire_floor: Success rate below which a workflow is retired
        retire_min_samples: Uses needed before retirement is considered
    """

    def __init__(self, min_successes: int = 3, retire_floor: float = 0.5, retire_min_samples: int = 5):
        self.min_successes = min_successes
        self.retire_floor = retire_floor
        self.retire_min_samples = retire_min_samples

    def process(
        self,
        records: list[EpisodicRecord],
        state: InductionState,
        workflows: dict[str, ProceduralWorkflow],
        workspace_id: str,
        now: Optional[float] = None,
    ) -> InductionResult:
        """Feed new records (ascending by sequence) through induction.

        ``state`` and ``workflows`` are updated in place; callers pass
        copies when the result may be discarded.
        """
        now = time.time() if now is None else now
        result = InductionResult()

        for record in records:
            if not record.plan_id:
                continue
            if not record.is_terminal:
                state.open_runs.setdefault(record.plan_id, []).append({
                    "sequence_no": record.sequence_no,
                    "type": record.action_type,
                    "args": dict(record.action.get("args", {})),
                    "outcome": record.outcome.value,
                    "goal_signature": record.goal_signature,
                })
                continue

            steps = state.open_runs.pop(record.plan_id, [])
            result.runs_closed += 1
            signature = record.goal_signature or next(
                (s["goal_signature"] for s in steps if s["goal_signature"]), ""
            )
            if not signature:
                continue

            if record.action_type == "done":
                self._close_success(signature, steps, state, workflows, workspace_id, record.timestamp, result)
            elif record.action_type == "abandon":
                self._close_failure(signature, state, workflows, result)
            # Cancelled runs say nothing about the workflow's quality

        return result

    def _close_success(self, signature, steps, state, workflows, workspace_id, when, result) -> None:
        stats = state.goal_stats.setdefault(signature, {"successes": 0, "failures": 0})
        stats["successes"] += 1

        templates = [
            {"type": s["type"], "args": s["args"]}
            for s in steps
            if s["outcome"] == Outcome.SUCCESS.value
        ]
        structure = tuple(t["type"] for t in templates)
        if not structure:
            return

        existing = self._find_active(workflows, signature, structure)
        if existing is not None:
            existing.success_count += 1
            existing.last_used_at = when
            existing.step_templates = merge_templates(existing.step_templates, templates)
            result.changed[existing.id] = existing
            result.reinforced += 1
            return

        cluster = state.clusters.get((signature, structure))
        if cluster is None:
            cluster = {"successes": 0, "templates": templates}
            state.clusters[(signature, structure)] = cluster
        else:
            cluster["templates"] = merge_templates(cluster["templates"], templates)
        cluster["successes"] += 1

        if cluster["successes"] >= self.min_successes and stats["successes"] > stats["failures"]:
            workflow = ProceduralWorkflow(
                id=new_id("wf"),
                workspace_id=workspace_id,
                goal_signature=signature,
                step_templates=cluster["templates"],
                success_count=cluster["successes"],
                failure_count=0,
                last_used_at=when,
                created_at=when,
            )
            workflows[workflow.id] = workflow
            del state.clusters[(signature, structure)]
            result.changed[workflow.id] = workflow
            result.created += 1
            logger.info(
                "Induced workflow %s for '%s': %s",
                workflow.id, signature, " -> ".join(structure),
            )

    def _close_failure(self, signature, state, workflows, result) -> None:
        stats = state.goal_stats.setdefault(signature, {"successes": 0, "failures": 0})
        stats["failures"] += 1

        for workflow in workflows.values():
            if workflow.retired or workflow.goal_signature != signature:
                continue
            workflow.failure_count += 1
            result.changed[workflow.id] = workflow
            result.demoted += 1
            if workflow.uses >= self.retire_min_samples and workflow.success_rate < self.retire_floor:
                workflow.retired = True
                result.retired += 1
                logger.info(
                    "Retired workflow %s (success rate %.2f)",
                    workflow.id, workflow.success_rate,
                )

    @staticmethod
    def _find_active(workflows, signature, structure) -> Optional[ProceduralWorkflow]:
        for workflow in sorted(workflows.values(), key=lambda w: (w.created_at, w.id)):
            if not workflow.retired and workflow.goal_signature == signature and workflow.structure == structure:
                return workflow
        return None
