"""
Workspace management for Agentic Workspace.

The workspace manager owns workspace identity, the autonomy policy and
the isolation boundary. It is the single source of truth for
``autonomy_level`` and ``context_token_budget``; every other component
resolves a workspace through it before acting.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from .errors import ConfigurationError, WorkspaceNotFound
from .storage import TIER_WORKSPACE, RecordStore
from .types import Workspace, new_id

logger = logging.getLogger("agentic_workspace.workspace")


# Trust score adjustment per finished task, and the suggestion thresholds
TRUST_STEP = 0.1
TRUST_RAISE_ABOVE = 0.8
TRUST_LOWER_BELOW = 0.3


class WorkspaceConfig(BaseModel):
    """Validated input for ``WorkspaceManager.create``."""
    name: str = Field(min_length=1)
    id: Optional[str] = None
    autonomy_level: int = Field(default=3, ge=1, le=5)
    context_token_budget: int = Field(default=4000, gt=0)
    approval_timeout: float = Field(default=300.0, gt=0)
    description: str = ""


class WorkspacePatch(BaseModel):
    """Validated input for ``WorkspaceManager.update``; unset fields are kept."""
    name: Optional[str] = Field(default=None, min_length=1)
    autonomy_level: Optional[int] = Field(default=None, ge=1, le=5)
    context_token_budget: Optional[int] = Field(default=None, gt=0)
    approval_timeout: Optional[float] = Field(default=None, gt=0)
    description: Optional[str] = None


@dataclass
class AutonomySuggestion:
    current_level: int
    suggested_level: int
    reason: str


CascadeCallback = Callable[[str], None]


def _validate(model: type[BaseModel], data) -> BaseModel:
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid workspace configuration: {e}") from e


class WorkspaceManager:
    """Creates, resolves, updates and deletes workspaces.

    Deletion cascades synchronously to every registered callback while
    the manager lock is held, so no read can observe a half-deleted
    workspace.
    """

    def __init__(self, store: RecordStore):
        self.store = store
        self._lock = threading.RLock()
        self._cache: dict[str, Workspace] = {}
        self._cascades: list[CascadeCallback] = []

    def register_cascade(self, callback: CascadeCallback) -> None:
        """Register a callback invoked with the workspace id on delete."""
        with self._lock:
            self._cascades.append(callback)

    def create(self, config) -> Workspace:
        """Create a workspace from a ``WorkspaceConfig`` or a plain dict."""
        cfg = _validate(WorkspaceConfig, config)
        now = time.time()
        workspace = Workspace(
            id=cfg.id or new_id("ws"),
            name=cfg.name,
            autonomy_level=cfg.autonomy_level,
            context_token_budget=cfg.context_token_budget,
            approval_timeout=cfg.approval_timeout,
            description=cfg.description,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            if self._load(workspace.id) is not None:
                raise ConfigurationError(f"Workspace {workspace.id} already exists")
            self._save(workspace)
        logger.info("Created workspace %s (%s)", workspace.id, workspace.name)
        return workspace

    def get(self, workspace_id: str) -> Workspace:
        """Resolve a workspace.

        Raises:
            WorkspaceNotFound: If the id is unknown or was deleted
        """
        with self._lock:
            workspace = self._load(workspace_id)
        if workspace is None:
            raise WorkspaceNotFound(workspace_id)
        return workspace

    def exists(self, workspace_id: str) -> bool:
        with self._lock:
            return self._load(workspace_id) is not None

    def update(self, workspace_id: str, patch) -> Workspace:
        """Apply a ``WorkspacePatch`` (or dict) and return the new workspace."""
        changes = _validate(WorkspacePatch, patch).model_dump(exclude_none=True)
        with self._lock:
            workspace = self.get(workspace_id)
            for key, value in changes.items():
                setattr(workspace, key, value)
            workspace.updated_at = time.time()
            self._save(workspace)
        logger.info("Updated workspace %s: %s", workspace_id, sorted(changes))
        return workspace

    def delete(self, workspace_id: str) -> None:
        """Delete a workspace and all state scoped to it. Irreversible."""
        with self._lock:
            self.get(workspace_id)
            self._cache.pop(workspace_id, None)
            # Components stop writing before their rows are removed
            for callback in self._cascades:
                callback(workspace_id)
            self.store.clear(workspace_id)
        logger.info("Deleted workspace %s", workspace_id)

    def list_workspaces(self) -> list[Workspace]:
        with self._lock:
            rows = self.store.list_tier(TIER_WORKSPACE)
        return sorted(
            (Workspace.from_dict(row) for row in rows),
            key=lambda ws: (ws.created_at, ws.id),
        )

    # Alias matching the CRUD naming of the other operations
    list = list_workspaces

    # ------------------------------------------------------------------
    # Autonomy policy
    # ------------------------------------------------------------------

    def requires_approval(self, workspace_id: str, risk_level: int) -> bool:
        """True if an action of ``risk_level`` exceeds the workspace autonomy."""
        return int(risk_level) > self.get(workspace_id).autonomy_level

    def record_task_outcome(self, workspace_id: str, success: bool) -> float:
        """Move the trust score up or down after a finished task."""
        with self._lock:
            workspace = self.get(workspace_id)
            delta = TRUST_STEP if success else -TRUST_STEP
            workspace.trust_score = round(max(0.0, min(1.0, workspace.trust_score + delta)), 4)
            workspace.updated_at = time.time()
            self._save(workspace)
        logger.debug("Trust score for %s is now %.2f", workspace_id, workspace.trust_score)
        return workspace.trust_score

    def suggest_autonomy(self, workspace_id: str) -> Optional[AutonomySuggestion]:
        """Suggest an autonomy change from the trust score, or None."""
        workspace = self.get(workspace_id)
        level = workspace.autonomy_level
        if workspace.trust_score > TRUST_RAISE_ABOVE and level < 5:
            return AutonomySuggestion(
                level, level + 1,
                "High success rate suggests you can increase autonomy level",
            )
        if workspace.trust_score < TRUST_LOWER_BELOW and level > 1:
            return AutonomySuggestion(
                level, level - 1,
                "Low success rate suggests decreasing autonomy level for better oversight",
            )
        return None

    # ------------------------------------------------------------------

    def _load(self, workspace_id: str) -> Optional[Workspace]:
        cached = self._cache.get(workspace_id)
        if cached is not None:
            return Workspace.from_dict(cached.to_dict())
        data = self.store.get(workspace_id, TIER_WORKSPACE, workspace_id)
        if data is None:
            return None
        workspace = Workspace.from_dict(data)
        self._cache[workspace_id] = workspace
        return Workspace.from_dict(workspace.to_dict())

    def _save(self, workspace: Workspace) -> None:
        self.store.put(workspace.id, TIER_WORKSPACE, workspace.id, workspace.to_dict())
        self._cache[workspace.id] = Workspace.from_dict(workspace.to_dict())
