"""
Context assembly for Agentic Workspace.

Selects, ranks, budgets and compresses memory into a bounded prompt
context ("pack") for one planning cycle, and lets the UI pin, unpin and
edit the items it produced.
"""

import logging
import threading
import time
from typing import Callable, Iterable, Optional

from .config import ContextConfig
from .errors import BudgetExceeded, ContextItemNotFound, IsolationViolation
from .memory import MemoryStore
from .storage import TIER_OVERRIDE, TIER_PINNED, RecordStore
from .types import ContextItem, ContextPack, FactCorrection, MemoryTier, new_id
from .utils import (
    estimate_tokens,
    normalize_goal,
    recency_weight,
    truncate_to_tokens,
)
from .workspace import WorkspaceManager

logger = logging.getLogger("agentic_workspace.context")


COMPRESS_PROMPT = """Shorten the following note to at most {words} words.
Keep names, selectors, URLs and numbers exactly. Reply with the shortened note only.

NOTE:
{content}"""

TIER_HEADINGS = {
    MemoryTier.SEMANTIC: "KNOWN FACTS",
    MemoryTier.PROCEDURAL: "WORKFLOWS THAT WORKED BEFORE",
    MemoryTier.EPISODIC: "RECENT ACTIONS",
    MemoryTier.EXTERNAL: "EXTERNAL CONTEXT",
}

# Default priority of episodic items by outcome; failures carry more signal
EPISODIC_PRIORITY = {
    "success": 0.4,
    "partial": 0.5,
    "failure": 0.6,
}


def item_id_for(workspace_id: str, tier: MemoryTier, ref: str) -> str:
    """Stable id of a context item derived from its source."""
    return f"{workspace_id}/{tier.value}/{ref}"


class ContextAssembler:
    """Builds budgeted context packs.

    Pinned items are forced in first. Every other candidate is scored by
    ``w_recency * recency + w_relevance * relevance + w_priority * priority``
    and packed greedily; a candidate that does not fit is compressed once,
    then dropped if it is still too large or too small to be useful.
    """

    def __init__(
        self,
        workspaces: WorkspaceManager,
        memory: MemoryStore,
        store: RecordStore,
        config: Optional[ContextConfig] = None,
        llm=None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.workspaces = workspaces
        self.memory = memory
        self.store = store
        self.config = config or ContextConfig()
        self.llm = llm
        self._clock = clock or time.time
        self._lock = threading.RLock()
        self._items: dict[str, dict[str, ContextItem]] = {}
        self._owners: dict[str, str] = {}
        self._pins: dict[str, dict[str, ContextItem]] = {}
        self._overrides: dict[str, dict[str, str]] = {}
        self._external: dict[str, dict[str, ContextItem]] = {}
        self._last_packs: dict[str, ContextPack] = {}
        workspaces.register_cascade(self.drop_workspace)

    # ------------------------------------------------------------------
    # Per-workspace state
    # ------------------------------------------------------------------

    def _ensure_loaded(self, workspace_id: str) -> None:
        with self._lock:
            if workspace_id in self._pins:
                return
            pins = {}
            for row in self.store.scan(workspace_id, TIER_PINNED):
                item = ContextItem.from_dict(row)
                pins[item.id] = item
                self._owners[item.id] = workspace_id
            self._pins[workspace_id] = pins
            self._overrides[workspace_id] = {
                row["id"]: row["content"]
                for row in self.store.scan(workspace_id, TIER_OVERRIDE)
            }
            self._items.setdefault(workspace_id, {}).update(pins)

    def drop_workspace(self, workspace_id: str) -> None:
        """Forget everything held for a deleted workspace."""
        with self._lock:
            for item_id in list(self._items.get(workspace_id, {})):
                self._owners.pop(item_id, None)
            for table in (self._items, self._pins, self._overrides, self._external, self._last_packs):
                table.pop(workspace_id, None)

    def _register(self, item: ContextItem) -> None:
        self._items.setdefault(item.workspace_id, {})[item.id] = item
        self._owners[item.id] = item.workspace_id

    def _check_owner(self, workspace_id: str, item: ContextItem, what: str) -> None:
        if item.workspace_id != workspace_id:
            raise IsolationViolation(workspace_id, item.workspace_id, what)

    # ------------------------------------------------------------------
    # External items
    # ------------------------------------------------------------------

    def add_external(
        self,
        workspace_id: str,
        content: str,
        priority: float = 0.5,
        source_ref: str = "",
        item_id: Optional[str] = None,
    ) -> ContextItem:
        """Register an item supplied by an integrated tool."""
        self.workspaces.get(workspace_id)
        ref = item_id or new_id("ext")
        item = ContextItem(
            id=item_id_for(workspace_id, MemoryTier.EXTERNAL, ref),
            workspace_id=workspace_id,
            tier=MemoryTier.EXTERNAL,
            content=content,
            token_count=estimate_tokens(content),
            priority_score=max(0.0, min(1.0, priority)),
            source_ref=source_ref or ref,
            created_at=self._clock(),
        )
        with self._lock:
            self._external.setdefault(workspace_id, {})[item.id] = item
            self._register(item)
        return item

    def remove_external(self, workspace_id: str, item_id: str) -> None:
        with self._lock:
            self._external.get(workspace_id, {}).pop(item_id, None)

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------

    def available_budget(self, workspace_id: str) -> int:
        workspace = self.workspaces.get(workspace_id)
        return max(0, workspace.context_token_budget - self.config.reserved_overhead)

    def assemble(
        self,
        workspace_id: str,
        goal: str,
        extra_pinned: Iterable[ContextItem] = (),
        external: Iterable[ContextItem] = (),
    ) -> ContextPack:
        """Assemble a context pack for ``goal``.

        Raises:
            BudgetExceeded: If pinned items alone exceed the budget
            IsolationViolation: If a supplied item belongs to another workspace
        """
        available = self.available_budget(workspace_id)
        self._ensure_loaded(workspace_id)

        extra_pinned = list(extra_pinned)
        external = list(external)
        for item in extra_pinned:
            self._check_owner(workspace_id, item, "pinned context item")
        for item in external:
            self._check_owner(workspace_id, item, "external context item")

        with self._lock:
            stored_pins = list(self._pins.get(workspace_id, {}).values())
            overrides = dict(self._overrides.get(workspace_id, {}))
            registered = list(self._external.get(workspace_id, {}).values())

        # Pinned items first, unconditionally
        pinned: list[ContextItem] = []
        seen: set[str] = set()
        for item in sorted(stored_pins, key=self._stable_key) + extra_pinned:
            if item.id in seen:
                continue
            seen.add(item.id)
            pinned.append(self._prepared(item, overrides.get(item.id), pinned=True))
        pinned_tokens = sum(item.token_count for item in pinned)
        if pinned_tokens > available:
            raise BudgetExceeded(pinned_tokens, available)

        candidates = [
            c for c in self._candidates(workspace_id, goal, registered + external, overrides)
            if c.id not in seen
        ]
        ranked = self._rank(candidates, goal)

        items = list(pinned)
        remaining = available - pinned_tokens
        dropped: list[str] = []
        compressed: list[str] = []
        originals: dict[str, ContextItem] = {}
        for item in ranked:
            if item.token_count <= remaining:
                items.append(item)
                remaining -= item.token_count
                continue
            shrunk = self._compress(item, remaining)
            if shrunk is None:
                dropped.append(item.id)
                continue
            items.append(shrunk)
            compressed.append(item.id)
            originals[item.id] = item
            remaining -= shrunk.token_count

        pack = ContextPack(
            workspace_id=workspace_id,
            items=items,
            total_tokens=available - remaining,
            budget=available,
            dropped=dropped,
            compressed=compressed,
        )
        # Pin and edit act on the full content, not the compressed copy
        with self._lock:
            for item in items:
                self._register(originals.get(item.id, item))
            self._last_packs[workspace_id] = pack
        logger.debug(
            "Assembled %d items (%d/%d tokens) for %s; %d compressed, %d dropped",
            len(items), pack.total_tokens, available, workspace_id, len(compressed), len(dropped),
        )
        return pack

    def _prepared(self, item: ContextItem, override: Optional[str], pinned: bool) -> ContextItem:
        content = override if override is not None else item.content
        return ContextItem(
            id=item.id,
            workspace_id=item.workspace_id,
            tier=item.tier,
            content=content,
            token_count=estimate_tokens(content),
            priority_score=item.priority_score,
            pinned=pinned,
            source_ref=item.source_ref,
            created_at=item.created_at,
            sequence_no=item.sequence_no,
        )

    def _candidates(self, workspace_id, goal, external, overrides) -> list[ContextItem]:
        cfg = self.config
        candidates: list[ContextItem] = []

        for scored in self.memory.query_semantic(workspace_id, goal, cfg.semantic_limit):
            fact = scored.fact
            candidates.append(ContextItem(
                id=item_id_for(workspace_id, MemoryTier.SEMANTIC, fact.id),
                workspace_id=workspace_id,
                tier=MemoryTier.SEMANTIC,
                content=fact.statement,
                token_count=0,
                priority_score=fact.confidence,
                source_ref=fact.id,
                created_at=fact.created_at,
                sequence_no=min(fact.source_record_ids, default=0),
            ))

        workflows = self.memory.query_procedural(workspace_id, normalize_goal(goal))
        for workflow in workflows[:cfg.procedural_limit]:
            lines = [workflow.describe()]
            for i, template in enumerate(workflow.step_templates, 1):
                args = ", ".join(f"{k}={v}" for k, v in template.get("args", {}).items())
                lines.append(f"  {i}. {template['type']}({args})")
            candidates.append(ContextItem(
                id=item_id_for(workspace_id, MemoryTier.PROCEDURAL, workflow.id),
                workspace_id=workspace_id,
                tier=MemoryTier.PROCEDURAL,
                content="\n".join(lines),
                token_count=0,
                priority_score=workflow.success_rate,
                source_ref=workflow.id,
                created_at=workflow.created_at,
            ))

        for record in self.memory.query_episodic(workspace_id, cfg.episodic_window):
            candidates.append(ContextItem(
                id=item_id_for(workspace_id, MemoryTier.EPISODIC, str(record.sequence_no)),
                workspace_id=workspace_id,
                tier=MemoryTier.EPISODIC,
                content=record.describe(),
                token_count=0,
                priority_score=EPISODIC_PRIORITY.get(record.outcome.value, 0.5),
                source_ref=str(record.sequence_no),
                created_at=record.timestamp,
                sequence_no=record.sequence_no,
            ))

        candidates.extend(external)
        return [self._prepared(c, overrides.get(c.id), pinned=False) for c in candidates]

    def score(self, item: ContextItem, goal: str, now: Optional[float] = None) -> float:
        """Score of a non-pinned candidate."""
        now = self._clock() if now is None else now
        cfg = self.config
        recency = recency_weight(now - item.created_at, cfg.recency_half_life)
        relevance = self.memory.similarity.score(goal, item.content)
        return cfg.w_recency * recency + cfg.w_relevance * relevance + cfg.w_priority * item.priority_score

    @staticmethod
    def _stable_key(item: ContextItem):
        return (item.created_at, item.sequence_no, item.id)

    def _rank(self, candidates: list[ContextItem], goal: str) -> list[ContextItem]:
        now = self._clock()
        scored = [(self.score(c, goal, now), c) for c in candidates]
        scored.sort(key=lambda pair: (-round(pair[0], 9), *self._stable_key(pair[1])))
        return [c for _, c in scored]

    def _compress(self, item: ContextItem, limit: int) -> Optional[ContextItem]:
        """Shrink an item once to fit ``limit`` tokens, or None to drop it."""
        if limit < self.config.min_useful_tokens:
            return None

        content = None
        if self.llm is not None:
            try:
                generation = self.llm.generate(COMPRESS_PROMPT.format(
                    words=max(1, limit * 3 // 4),
                    content=item.content,
                ))
                content = generation.text.strip()
            except Exception as e:
                logger.debug("LLM compression of %s failed, truncating: %s", item.id, e)
        if not content or estimate_tokens(content) > limit:
            content = truncate_to_tokens(item.content, limit)

        tokens = estimate_tokens(content)
        if tokens > limit or tokens < self.config.min_useful_tokens:
            return None
        shrunk = self._prepared(item, content, pinned=False)
        logger.debug("Compressed %s from %d to %d tokens", item.id, item.token_count, tokens)
        return shrunk

    # ------------------------------------------------------------------
    # Editing
    # ------------------------------------------------------------------

    def _resolve(self, item_id: str, workspace_id: Optional[str]) -> ContextItem:
        with self._lock:
            owner = self._owners.get(item_id)
            if owner is None and workspace_id is not None:
                self._ensure_loaded(workspace_id)
                owner = self._owners.get(item_id)
            if owner is None:
                raise ContextItemNotFound(f"Context item {item_id} not found")
            if workspace_id is not None and owner != workspace_id:
                raise IsolationViolation(workspace_id, owner, "context item")
            return self._items[owner][item_id]

    def pin(self, item_id: str, workspace_id: Optional[str] = None) -> ContextItem:
        """Pin an item so it is forced into every later pack."""
        item = self._resolve(item_id, workspace_id)
        with self._lock:
            self._ensure_loaded(item.workspace_id)
            pinned = self._prepared(item, None, pinned=True)
            self.store.put(item.workspace_id, TIER_PINNED, pinned.id, pinned.to_dict())
            self._pins[item.workspace_id][pinned.id] = pinned
            self._register(pinned)
        logger.info("Pinned %s", item_id)
        return pinned

    def unpin(self, item_id: str, workspace_id: Optional[str] = None) -> ContextItem:
        item = self._resolve(item_id, workspace_id)
        with self._lock:
            self._ensure_loaded(item.workspace_id)
            self.store.delete(item.workspace_id, TIER_PINNED, [item.id])
            self._pins[item.workspace_id].pop(item.id, None)
            unpinned = self._prepared(item, None, pinned=False)
            self._register(unpinned)
        logger.info("Unpinned %s", item_id)
        return unpinned

    def edit(self, item_id: str, new_content: str, workspace_id: Optional[str] = None) -> ContextItem:
        """Change an item's content.

        Semantic items are corrected in memory through ``record_feedback``;
        other items keep a content override used by later packs.
        """
        item = self._resolve(item_id, workspace_id)
        owner = item.workspace_id
        if item.tier == MemoryTier.SEMANTIC:
            self.memory.record_feedback(
                item.source_ref,
                FactCorrection(statement=new_content, is_correct=True, source="user"),
                workspace_id=owner,
            )
        else:
            with self._lock:
                self._ensure_loaded(owner)
                self.store.put(owner, TIER_OVERRIDE, item.id, {"id": item.id, "content": new_content})
                self._overrides[owner][item.id] = new_content

        with self._lock:
            edited = self._prepared(item, new_content, pinned=item.pinned)
            if item.pinned:
                self.store.put(owner, TIER_PINNED, edited.id, edited.to_dict())
                self._pins[owner][edited.id] = edited
            if item.tier == MemoryTier.EXTERNAL and item.id in self._external.get(owner, {}):
                self._external[owner][item.id] = edited
            self._register(edited)
        logger.info("Edited %s (%s)", item_id, item.tier.value)
        return edited

    def pinned_items(self, workspace_id: str) -> list[ContextItem]:
        self.workspaces.get(workspace_id)
        self._ensure_loaded(workspace_id)
        with self._lock:
            return sorted(self._pins[workspace_id].values(), key=self._stable_key)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def stats(self, workspace_id: str) -> dict:
        """Counts and tokens of the last pack, by tier."""
        self.workspaces.get(workspace_id)
        with self._lock:
            pack = self._last_packs.get(workspace_id)
        if pack is None:
            return {"items": 0, "total_tokens": 0, "budget": self.available_budget(workspace_id), "by_tier": {}}
        by_tier: dict[str, dict[str, int]] = {}
        for item in pack.items:
            entry = by_tier.setdefault(item.tier.value, {"count": 0, "tokens": 0})
            entry["count"] += 1
            entry["tokens"] += item.token_count
        return {
            "items": len(pack.items),
            "pinned": sum(1 for item in pack.items if item.pinned),
            "total_tokens": pack.total_tokens,
            "budget": pack.budget,
            "utilization": pack.total_tokens / pack.budget if pack.budget else 0.0,
            "compressed": len(pack.compressed),
            "dropped": len(pack.dropped),
            "by_tier": by_tier,
        }

    @staticmethod
    def render(pack: ContextPack) -> str:
        """Render a pack as the text block given to the planner."""
        if not pack.items:
            return "(no stored context)"
        sections = []
        pinned = [item for item in pack.items if item.pinned]
        if pinned:
            sections.append("PINNED BY USER:\n" + "\n".join(f"- {i.content}" for i in pinned))
        for tier, heading in TIER_HEADINGS.items():
            items = [i for i in pack.items if i.tier == tier and not i.pinned]
            if items:
                sections.append(f"{heading}:\n" + "\n".join(f"- {i.content}" for i in items))
        return "\n\n".join(sections)
