"""
Configuration management for Agentic Workspace.

Provides configuration dataclasses and environment variable loading.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load environment variables from .env file if present
load_dotenv()


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def get_base_dir() -> Path:
    """Get the base directory for agentic workspace data."""
    override = os.getenv("AGENTIC_WORKSPACE_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".agentic_workspace"


def get_runs_dir() -> Path:
    """Get the directory for run logs."""
    return get_base_dir() / "runs"


def get_db_path() -> Path:
    """Get the default path of the memory database."""
    return get_base_dir() / "memory.db"


@dataclass
class MemoryConfig:
    """Tunables for the three-tier memory store."""

    # Episodic log cap per workspace
    episodic_cap: int = field(
        default_factory=lambda: _env_int("AGENTIC_WORKSPACE_EPISODIC_CAP", 200)
    )

    # Promotion trigger: N appends or T seconds since the last promotion
    promotion_threshold: int = 10
    promotion_interval: float = 300.0

    # Workflow induction
    induction_min_successes: int = 3
    retire_floor: float = 0.5
    retire_min_samples: int = 5

    # Text similarity: "embedding" (sentence-transformers) or "lexical"
    similarity_backend: str = field(
        default_factory=lambda: os.getenv("AGENTIC_WORKSPACE_SIMILARITY", "embedding")
    )
    embedding_model: str = field(
        default_factory=lambda: os.getenv("AGENTIC_WORKSPACE_EMBEDDING_MODEL", "all-MiniLM-L6-v2")
    )

    # Semantic dedup (cosine similarity)
    dedup_threshold: float = 0.85

    # Query ranking
    recency_half_life: float = 3600.0

    # Run promotions on a background pool (off in most tests)
    background_promotion: bool = True
    promotion_workers: int = 2


@dataclass
class ContextConfig:
    """Tunables for context assembly."""

    reserved_overhead: int = 128
    w_recency: float = 0.3
    w_relevance: float = 0.5
    w_priority: float = 0.2
    semantic_limit: int = 8
    procedural_limit: int = 3
    episodic_window: int = 10
    min_useful_tokens: int = 16
    recency_half_life: float = 3600.0


@dataclass
class OrchestratorConfig:
    """Tunables for the Planner/Navigator loop."""

    max_step_retries: int = 2
    retry_backoff: float = 0.5  # seconds, doubled per attempt
    max_replans: int = 3
    max_planning_attempts: int = 2

    # Timeouts (seconds)
    action_timeout: float = 30.0
    llm_timeout: float = 60.0

    # JSONL run logs + console output
    enable_run_log: bool = False
    console_output: bool = True


@dataclass
class LLMConfig:
    """LLM endpoints: an on-device model first, a cloud model as fallback."""

    on_device_endpoint: str = field(
        default_factory=lambda: os.getenv(
            "AGENTIC_WORKSPACE_LOCAL_ENDPOINT",
            "http://127.0.0.1:1234/v1",
        )
    )
    on_device_model: str = field(
        default_factory=lambda: os.getenv(
            "AGENTIC_WORKSPACE_LOCAL_MODEL",
            "qwen2.5:7b",
        )
    )
    cloud_endpoint: Optional[str] = field(
        default_factory=lambda: os.getenv("AGENTIC_WORKSPACE_CLOUD_ENDPOINT")
    )
    cloud_model: str = field(
        default_factory=lambda: os.getenv(
            "AGENTIC_WORKSPACE_CLOUD_MODEL",
            "gpt-4o-mini",
        )
    )
    cloud_api_key: Optional[str] = field(
        default_factory=lambda: os.getenv("AGENTIC_WORKSPACE_API_KEY")
    )
    temperature: float = 0.1
    max_tokens: int = 1500
    probe_timeout: float = field(
        default_factory=lambda: _env_float("AGENTIC_WORKSPACE_PROBE_TIMEOUT", 2.0)
    )


@dataclass
class AppConfig:
    """Top-level configuration bundle."""

    memory: MemoryConfig = field(default_factory=MemoryConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    db_path: Path = field(default_factory=get_db_path)

    # Debug mode - enables verbose logging (off by default)
    debug: bool = field(
        default_factory=lambda: os.getenv("AGENTIC_WORKSPACE_DEBUG", "").lower() in ("1", "true", "yes")
    )

    def ensure_directories(self) -> None:
        """Ensure all required directories exist."""
        get_base_dir().mkdir(parents=True, exist_ok=True)
        get_runs_dir().mkdir(parents=True, exist_ok=True)
        if str(self.db_path) != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)


# Default configuration values for documentation
DEFAULTS = {
    "autonomy_level": 3,
    "context_token_budget": 4000,
    "approval_timeout": 300.0,
    "headless": False,
    "on_device_endpoint": "http://127.0.0.1:1234/v1",
    "on_device_model": "qwen2.5:7b",
    "cloud_model": "gpt-4o-mini",
    "episodic_cap": 200,
    "reserved_overhead": 128,
}
