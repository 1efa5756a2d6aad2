"""
Three-tier memory store for Agentic Workspace.

Episodic records are appended to a capped, per-workspace log. A
promotion pipeline (see ``promotion.py``) periodically condenses the log
into semantic facts and induces procedural workflows from repeated
successful runs.

Concurrency: each workspace has its own re-entrant lock that serializes
appends and commits. Reads copy a snapshot under the lock and rank
outside it. Promotions run on a background thread pool, at most one per
workspace at a time, and never block appends.
"""

import copy
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .config import MemoryConfig
from .errors import FactNotFound, IsolationViolation, WorkspaceNotFound
from .promotion import InductionState, WorkflowInducer, merge_facts, summarize_window
from .storage import (
    TIER_EPISODIC,
    TIER_META,
    TIER_PROCEDURAL,
    TIER_SEMANTIC,
    RecordStore,
)
from .types import (
    EpisodicRecord,
    FactCorrection,
    MemoryStats,
    MemoryTier,
    ProceduralWorkflow,
    PromotionReport,
    ScoredFact,
    SemanticFact,
)
from .similarity import TextSimilarity, build_similarity
from .utils import estimate_tokens, normalize_goal, recency_weight
from .workspace import WorkspaceManager

logger = logging.getLogger("agentic_workspace.memory")


META_ID = "state"

# Semantic query ranking weights
QUERY_W_RELEVANCE = 0.6
QUERY_W_RECENCY = 0.25
QUERY_W_CONFIDENCE = 0.15

# Confidence movement for yes/no feedback without an explicit value
FEEDBACK_STEP = 0.5


@dataclass
class _WorkspaceMemory:
    """In-memory view of one workspace's tiers, mirrored in the record store."""
    workspace_id: str
    lock: threading.RLock = field(default_factory=threading.RLock)
    promotion_lock: threading.Lock = field(default_factory=threading.Lock)
    episodic: list[EpisodicRecord] = field(default_factory=list)
    facts: dict[str, SemanticFact] = field(default_factory=dict)
    workflows: dict[str, ProceduralWorkflow] = field(default_factory=dict)
    induction: InductionState = field(default_factory=InductionState)
    next_seq: int = 1
    summary_watermark: int = 0
    induction_watermark: int = 0
    appends_since_promotion: int = 0
    last_promotion_at: float = 0.0
    pending: Optional[Future] = None
    dropped: bool = False

    @property
    def eviction_watermark(self) -> int:
        return min(self.summary_watermark, self.induction_watermark)

    def meta(self) -> dict[str, Any]:
        return {
            "next_seq": self.next_seq,
            "summary_watermark": self.summary_watermark,
            "induction_watermark": self.induction_watermark,
            "last_promotion_at": self.last_promotion_at,
            "induction": self.induction.to_dict(),
        }


class MemoryStore:
    """Episodic, semantic and procedural memory scoped per workspace.

    Args:
        workspaces: Resolves workspaces; deletion cascades into this store
        store: Durable record storage
        config: Memory tunables
        llm: Optional LLM capability used for summarization
        clock: Time source (seconds), injectable for tests
        similarity: Text similarity for dedup and relevance; built from
            ``config.similarity_backend`` when None
    """

    def __init__(
        self,
        workspaces: WorkspaceManager,
        store: RecordStore,
        config: Optional[MemoryConfig] = None,
        llm=None,
        clock: Optional[Callable[[], float]] = None,
        similarity: Optional[TextSimilarity] = None,
    ):
        self.workspaces = workspaces
        self.store = store
        self.config = config or MemoryConfig()
        self.llm = llm
        self._clock = clock or time.time
        self.similarity = similarity or build_similarity(self.config)
        self._states: dict[str, _WorkspaceMemory] = {}
        self._states_lock = threading.Lock()
        self._fact_index: dict[str, str] = {}
        self._inducer = WorkflowInducer(
            min_successes=self.config.induction_min_successes,
            retire_floor=self.config.retire_floor,
            retire_min_samples=self.config.retire_min_samples,
        )
        self._executor: Optional[ThreadPoolExecutor] = None
        if self.config.background_promotion:
            self._executor = ThreadPoolExecutor(
                max_workers=self.config.promotion_workers,
                thread_name_prefix="promotion_",
            )
        workspaces.register_cascade(self.drop_workspace)

    # ------------------------------------------------------------------
    # State loading
    # ------------------------------------------------------------------

    def _state(self, workspace_id: str) -> _WorkspaceMemory:
        with self._states_lock:
            state = self._states.get(workspace_id)
            if state is None:
                state = self._load(workspace_id)
                self._states[workspace_id] = state
            return state

    def _load(self, workspace_id: str) -> _WorkspaceMemory:
        state = _WorkspaceMemory(workspace_id=workspace_id, last_promotion_at=self._clock())
        state.episodic = [
            EpisodicRecord.from_dict(row) for row in self.store.scan(workspace_id, TIER_EPISODIC)
        ]
        state.episodic.sort(key=lambda r: r.sequence_no)
        for row in self.store.scan(workspace_id, TIER_SEMANTIC):
            fact = SemanticFact.from_dict(row)
            state.facts[fact.id] = fact
            self._fact_index[fact.id] = workspace_id
        for row in self.store.scan(workspace_id, TIER_PROCEDURAL):
            workflow = ProceduralWorkflow.from_dict(row)
            state.workflows[workflow.id] = workflow

        meta = self.store.get(workspace_id, TIER_META, META_ID)
        if meta:
            state.next_seq = int(meta.get("next_seq", 1))
            state.summary_watermark = int(meta.get("summary_watermark", 0))
            state.induction_watermark = int(meta.get("induction_watermark", 0))
            state.last_promotion_at = float(meta.get("last_promotion_at", state.last_promotion_at))
            state.induction = InductionState.from_dict(meta.get("induction", {}))
        if state.episodic:
            state.next_seq = max(state.next_seq, state.episodic[-1].sequence_no + 1)
        return state

    def drop_workspace(self, workspace_id: str) -> None:
        """Forget all in-memory state of a deleted workspace."""
        with self._states_lock:
            state = self._states.pop(workspace_id, None)
        if state is None:
            return
        with state.lock:
            state.dropped = True
            for fact_id in state.facts:
                self._fact_index.pop(fact_id, None)
            state.episodic.clear()
            state.facts.clear()
            state.workflows.clear()
        logger.debug("Dropped memory for workspace %s", workspace_id)

    # ------------------------------------------------------------------
    # Episodic
    # ------------------------------------------------------------------

    def append_episodic(self, workspace_id: str, record: EpisodicRecord) -> EpisodicRecord:
        """Append a record and assign its sequence number.

        Raises:
            IsolationViolation: If the record belongs to another workspace
            WorkspaceNotFound: If the workspace does not exist
        """
        if record.workspace_id != workspace_id:
            raise IsolationViolation(workspace_id, record.workspace_id, "episodic record")
        self.workspaces.get(workspace_id)
        state = self._state(workspace_id)

        with state.lock:
            if state.dropped:
                raise WorkspaceNotFound(workspace_id)
            stored = copy.deepcopy(record)
            stored.sequence_no = state.next_seq
            if not stored.goal_signature and stored.goal:
                stored.goal_signature = normalize_goal(stored.goal)
            meta = state.meta()
            meta["next_seq"] = stored.sequence_no + 1

            with self.store.transaction() as conn:
                self.store.put(
                    workspace_id, TIER_EPISODIC, str(stored.sequence_no),
                    stored.to_dict(), seq=stored.sequence_no, conn=conn,
                )
                self.store.put(workspace_id, TIER_META, META_ID, meta, conn=conn)
                evicted = self._evict(state, conn, incoming=1)

            state.next_seq = stored.sequence_no + 1
            state.episodic.append(stored)
            del state.episodic[:evicted]
            state.appends_since_promotion += 1
            due = (
                state.appends_since_promotion >= self.config.promotion_threshold
                or self._clock() - state.last_promotion_at >= self.config.promotion_interval
            )

        if due:
            self._schedule_promotion(workspace_id, state)
        return copy.deepcopy(stored)

    def _evict(self, state: _WorkspaceMemory, conn, incoming: int = 0) -> int:
        """Evict the oldest considered records above the cap.

        Returns how many records at the head of ``state.episodic`` to drop
        once the transaction has committed. Records above the promotion
        watermark are never evicted, so the log may exceed the cap until
        the next promotion.
        """
        excess = len(state.episodic) + incoming - self.config.episodic_cap
        count = 0
        watermark = state.eviction_watermark
        while count < excess and count < len(state.episodic):
            if state.episodic[count].sequence_no > watermark:
                break
            count += 1
        if count:
            self.store.delete(
                state.workspace_id, TIER_EPISODIC,
                [str(r.sequence_no) for r in state.episodic[:count]],
                conn=conn,
            )
            logger.debug("Evicted %d episodic records from %s", count, state.workspace_id)
        return count

    def query_episodic(self, workspace_id: str, window: int = 10) -> list[EpisodicRecord]:
        """Latest ``window`` records, ascending by sequence number."""
        self.workspaces.get(workspace_id)
        state = self._state(workspace_id)
        if window <= 0:
            return []
        with state.lock:
            return copy.deepcopy(state.episodic[-window:])

    # ------------------------------------------------------------------
    # Promotion
    # ------------------------------------------------------------------

    def _schedule_promotion(self, workspace_id: str, state: _WorkspaceMemory) -> None:
        if self._executor is None:
            return
        with state.lock:
            if state.pending is not None and not state.pending.done():
                return
            state.pending = self._executor.submit(self._promote_in_background, workspace_id)

    def _promote_in_background(self, workspace_id: str) -> Optional[PromotionReport]:
        try:
            return self.promote(workspace_id)
        except Exception as e:
            # Retried on the next trigger
            logger.warning("Background promotion for %s failed: %s", workspace_id, e)
            return None

    def flush(self, timeout: Optional[float] = None) -> None:
        """Wait for scheduled promotions to finish."""
        with self._states_lock:
            pending = [s.pending for s in self._states.values() if s.pending is not None]
        for future in pending:
            future.result(timeout=timeout)

    def close(self) -> None:
        """Wait for background promotions and stop the worker pool."""
        self.flush()
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def promote(self, workspace_id: str) -> PromotionReport:
        """Run summarization and workflow induction over new records.

        With no records since the last call this changes nothing.
        """
        self.workspaces.get(workspace_id)
        state = self._state(workspace_id)
        report = PromotionReport(workspace_id=workspace_id)

        with state.promotion_lock:
            with state.lock:
                state.appends_since_promotion = 0
                state.last_promotion_at = self._clock()
                summary_window = [
                    copy.deepcopy(r) for r in state.episodic
                    if r.sequence_no > state.summary_watermark
                ]
                induction_window = [
                    copy.deepcopy(r) for r in state.episodic
                    if r.sequence_no > state.induction_watermark
                ]
                induction = InductionState.from_dict(copy.deepcopy(state.induction.to_dict()))
                workflows = copy.deepcopy(state.workflows)
            report.records_considered = len(
                {r.sequence_no for r in summary_window} | {r.sequence_no for r in induction_window}
            )

            # Summarization runs outside the write lock; appends continue meanwhile
            drafts = []
            summarized = False
            if summary_window:
                if self.llm is None:
                    summarized = True
                else:
                    try:
                        drafts = summarize_window(self.llm, summary_window)
                        summarized = True
                    except Exception as e:
                        report.summarization_error = str(e)
                        logger.warning(
                            "Summarization for %s failed, will retry: %s", workspace_id, e
                        )

            induced = self._inducer.process(
                induction_window, induction, workflows, workspace_id, now=self._clock()
            )

            # Similarity scoring may embed text; keep it outside the write lock
            with state.lock:
                snapshot = copy.deepcopy(state.facts)
            merge_args = (drafts, workspace_id, self.config.dedup_threshold, self._clock())
            changed_facts, created, merged = merge_facts(
                copy.deepcopy(snapshot), *merge_args, similarity=self.similarity.score
            )

            with state.lock:
                if state.dropped:
                    raise WorkspaceNotFound(workspace_id)
                if state.facts != snapshot:
                    # Feedback changed facts meanwhile; merge against the current ones
                    changed_facts, created, merged = merge_facts(
                        copy.deepcopy(state.facts), *merge_args, similarity=self.similarity.score
                    )
                summary_watermark = state.summary_watermark
                if summarized:
                    summary_watermark = summary_window[-1].sequence_no
                induction_watermark = state.induction_watermark
                if induction_window:
                    induction_watermark = induction_window[-1].sequence_no

                previous = (state.summary_watermark, state.induction_watermark, state.induction)
                state.summary_watermark = summary_watermark
                state.induction_watermark = induction_watermark
                state.induction = induction
                try:
                    with self.store.transaction() as conn:
                        for fact in changed_facts.values():
                            self.store.put(workspace_id, TIER_SEMANTIC, fact.id, fact.to_dict(), conn=conn)
                        for workflow in induced.changed.values():
                            self.store.put(
                                workspace_id, TIER_PROCEDURAL, workflow.id, workflow.to_dict(), conn=conn
                            )
                        self.store.put(workspace_id, TIER_META, META_ID, state.meta(), conn=conn)
                        evicted = self._evict(state, conn)
                except Exception:
                    state.summary_watermark, state.induction_watermark, state.induction = previous
                    raise

                for fact in changed_facts.values():
                    state.facts[fact.id] = fact
                    self._fact_index[fact.id] = workspace_id
                for workflow in induced.changed.values():
                    state.workflows[workflow.id] = workflow
                del state.episodic[:evicted]

        report.facts_created = created
        report.facts_merged = merged
        report.workflows_created = induced.created
        report.workflows_reinforced = induced.reinforced
        report.workflows_demoted = induced.demoted
        report.workflows_retired = induced.retired
        report.runs_closed = induced.runs_closed
        report.evicted = evicted
        if report.changed or report.evicted:
            logger.info(
                "Promotion for %s: %d facts created, %d merged, %d workflows created, "
                "%d reinforced, %d demoted, %d retired, %d records evicted",
                workspace_id, created, merged, induced.created, induced.reinforced,
                induced.demoted, induced.retired, evicted,
            )
        return report

    # ------------------------------------------------------------------
    # Semantic
    # ------------------------------------------------------------------

    def query_semantic(self, workspace_id: str, query: str, limit: int = 5) -> list[ScoredFact]:
        """Facts ranked by relevance to ``query``, recency and confidence.

        Updates ``last_accessed_at`` on the returned facts.
        """
        self.workspaces.get(workspace_id)
        state = self._state(workspace_id)
        if limit <= 0:
            return []
        with state.lock:
            facts = copy.deepcopy(list(state.facts.values()))

        now = self._clock()
        scored = []
        for fact in facts:
            relevance = self.similarity.score(query, fact.statement) if query else 0.0
            recency = recency_weight(now - fact.last_accessed_at, self.config.recency_half_life)
            score = (
                QUERY_W_RELEVANCE * relevance
                + QUERY_W_RECENCY * recency
                + QUERY_W_CONFIDENCE * fact.confidence
            )
            scored.append(ScoredFact(fact=fact, score=score, relevance=relevance))
        scored.sort(key=lambda s: (-s.score, s.fact.created_at, s.fact.id))
        top = scored[:limit]

        with state.lock:
            touched = []
            for item in top:
                live = state.facts.get(item.fact.id)
                if live is not None:
                    live.last_accessed_at = now
                    touched.append(live)
            if touched:
                with self.store.transaction() as conn:
                    for fact in touched:
                        self.store.put(workspace_id, TIER_SEMANTIC, fact.id, fact.to_dict(), conn=conn)
        return top

    def get_fact(self, fact_id: str, workspace_id: Optional[str] = None) -> SemanticFact:
        state = self._state_for_fact(fact_id, workspace_id)
        with state.lock:
            return copy.deepcopy(state.facts[fact_id])

    def list_facts(self, workspace_id: str) -> list[SemanticFact]:
        self.workspaces.get(workspace_id)
        state = self._state(workspace_id)
        with state.lock:
            facts = copy.deepcopy(list(state.facts.values()))
        return sorted(facts, key=lambda f: (-f.confidence, f.created_at, f.id))

    def _state_for_fact(self, fact_id: str, workspace_id: Optional[str]) -> _WorkspaceMemory:
        owner = self._fact_index.get(fact_id)
        if owner is None:
            # Facts of workspaces not loaded yet
            for workspace in self.workspaces.list_workspaces():
                if fact_id in self._state(workspace.id).facts:
                    owner = workspace.id
                    break
        if owner is None:
            raise FactNotFound(f"Fact {fact_id} not found")
        if workspace_id is not None and owner != workspace_id:
            raise IsolationViolation(workspace_id, owner, "fact")
        self.workspaces.get(owner)
        state = self._state(owner)
        if fact_id not in state.facts:
            raise FactNotFound(f"Fact {fact_id} not found")
        return state

    def record_feedback(
        self,
        fact_id: str,
        correction: FactCorrection,
        workspace_id: Optional[str] = None,
    ) -> SemanticFact:
        """Correct a fact without deleting it.

        The previous statement and confidence are kept in the fact's
        ``feedback`` audit trail.

        Raises:
            FactNotFound: If no workspace holds ``fact_id``
            IsolationViolation: If ``workspace_id`` is given and does not own the fact
        """
        state = self._state_for_fact(fact_id, workspace_id)
        with state.lock:
            fact = copy.deepcopy(state.facts[fact_id])
            entry = {
                "at": self._clock(),
                "source": correction.source,
                "is_correct": correction.is_correct,
                "previous_statement": fact.statement,
                "previous_confidence": fact.confidence,
            }
            if correction.statement is not None and correction.statement.strip():
                fact.statement = correction.statement.strip()
            if correction.confidence is not None:
                fact.confidence = max(0.0, min(1.0, correction.confidence))
            elif correction.is_correct:
                fact.confidence = fact.confidence + (1.0 - fact.confidence) * FEEDBACK_STEP
            else:
                fact.confidence = fact.confidence * FEEDBACK_STEP
            fact.confidence = round(fact.confidence, 6)
            fact.feedback.append(entry)

            self.store.put(state.workspace_id, TIER_SEMANTIC, fact.id, fact.to_dict())
            state.facts[fact.id] = fact
        logger.info(
            "Feedback on fact %s from %s: confidence %.2f -> %.2f",
            fact_id, correction.source, entry["previous_confidence"], fact.confidence,
        )
        return copy.deepcopy(fact)

    # ------------------------------------------------------------------
    # Procedural
    # ------------------------------------------------------------------

    def query_procedural(self, workspace_id: str, goal_signature: str) -> list[ProceduralWorkflow]:
        """Active workflows for a goal, best success rate first."""
        self.workspaces.get(workspace_id)
        state = self._state(workspace_id)
        signature = normalize_goal(goal_signature)
        with state.lock:
            matches = [
                copy.deepcopy(w) for w in state.workflows.values()
                if not w.retired and w.goal_signature == signature
            ]
        return sorted(matches, key=lambda w: (-w.success_rate, -w.last_used_at, w.id))

    def list_workflows(self, workspace_id: str, include_retired: bool = False) -> list[ProceduralWorkflow]:
        self.workspaces.get(workspace_id)
        state = self._state(workspace_id)
        with state.lock:
            workflows = [
                copy.deepcopy(w) for w in state.workflows.values()
                if include_retired or not w.retired
            ]
        return sorted(workflows, key=lambda w: (w.created_at, w.id))

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def stats(self, workspace_id: str) -> MemoryStats:
        """Per-tier counts, token totals and averages."""
        self.workspaces.get(workspace_id)
        state = self._state(workspace_id)
        with state.lock:
            episodic = list(state.episodic)
            facts = list(state.facts.values())
            workflows = list(state.workflows.values())
            last_seq = state.next_seq - 1
            watermark = state.eviction_watermark

        active = [w for w in workflows if not w.retired]
        tokens = (
            sum(estimate_tokens(r.describe()) for r in episodic)
            + sum(estimate_tokens(f.statement) for f in facts)
            + sum(estimate_tokens(w.describe()) for w in active)
        )
        return MemoryStats(
            workspace_id=workspace_id,
            episodic_count=len(episodic),
            semantic_count=len(facts),
            procedural_count=len(active),
            retired_count=len(workflows) - len(active),
            total_tokens=tokens,
            average_confidence=(sum(f.confidence for f in facts) / len(facts)) if facts else 0.0,
            average_success_rate=(sum(w.success_rate for w in active) / len(active)) if active else 0.0,
            last_sequence_no=last_seq,
            promotion_watermark=watermark,
        )

    def clear(self, workspace_id: str, tier: Optional[MemoryTier] = None) -> None:
        """Clear one tier (or all tiers) of a workspace.

        Sequence numbers keep counting from where they were.
        """
        self.workspaces.get(workspace_id)
        state = self._state(workspace_id)
        tier = MemoryTier(tier) if tier is not None else None
        with state.lock:
            with self.store.transaction() as conn:
                if tier in (None, MemoryTier.EPISODIC):
                    self.store.clear(workspace_id, TIER_EPISODIC, conn=conn)
                    state.episodic.clear()
                    state.induction.open_runs.clear()
                    state.summary_watermark = state.induction_watermark = state.next_seq - 1
                if tier in (None, MemoryTier.SEMANTIC):
                    self.store.clear(workspace_id, TIER_SEMANTIC, conn=conn)
                    for fact_id in state.facts:
                        self._fact_index.pop(fact_id, None)
                    state.facts.clear()
                if tier in (None, MemoryTier.PROCEDURAL):
                    self.store.clear(workspace_id, TIER_PROCEDURAL, conn=conn)
                    state.workflows.clear()
                    state.induction.clusters.clear()
                    state.induction.goal_stats.clear()
                self.store.put(workspace_id, TIER_META, META_ID, state.meta(), conn=conn)
        logger.info("Cleared %s memory for %s", tier.value if tier else "all", workspace_id)
