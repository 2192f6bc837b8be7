"""Environment-driven settings.

Values are read once at import. `PipelineConfig.from_env()` bundles the
orchestration tunables (phase weights, batch sizes, delays, timeouts) into
a validated object that can also be constructed directly in tests.
"""

import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from rankscope.executor.errors import InvalidInputError
from rankscope.executor.schemas import PHASE_ORDER

logger = logging.getLogger(__name__)

# Store backend: postgres://... for Postgres, memory:// for in-process, else SQLite
DATABASE_URL = os.environ.get("RANKSCOPE_DATABASE_URL", "")
SQLITE_PATH = Path(
    os.environ.get("RANKSCOPE_SQLITE_PATH", str(Path(__file__).parent / "rankscope.db"))
)

# Global cap on simultaneously running pipelines
MAX_CONCURRENT_JOBS = int(os.environ.get("RANKSCOPE_MAX_CONCURRENT_JOBS", "4"))

# Collaborator credentials
ANTHROPIC_API_KEY = os.environ.get("ANTHROPIC_API_KEY", "")
KEYWORD_MODEL = os.environ.get("RANKSCOPE_KEYWORD_MODEL", "claude-haiku-4-5-20251001")
NAVER_CLIENT_ID = os.environ.get("NAVER_CLIENT_ID", "")
NAVER_CLIENT_SECRET = os.environ.get("NAVER_CLIENT_SECRET", "")
GOOGLE_SEARCH_API_KEY = os.environ.get("GOOGLE_SEARCH_API_KEY", "")
GOOGLE_SEARCH_ENGINE_ID = os.environ.get("GOOGLE_SEARCH_ENGINE_ID", "")
GOOGLE_PLACES_API_KEY = os.environ.get("GOOGLE_PLACES_API_KEY", "")

DEFAULT_PHASE_WEIGHTS: dict[str, float] = {key.value: 20.0 for key in PHASE_ORDER}


def parse_phase_weights(raw: Optional[str]) -> dict[str, float]:
    """Parse "scraping=20,ai_analysis=20,..." into a weight map.

    Phases not mentioned keep their default weight; the result is validated
    by PipelineConfig.
    """
    weights = dict(DEFAULT_PHASE_WEIGHTS)
    if not raw:
        return weights
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        if "=" not in part:
            raise InvalidInputError(f"Malformed phase weight entry: '{part}'")
        key, value = part.split("=", 1)
        try:
            weights[key.strip()] = float(value)
        except ValueError:
            raise InvalidInputError(f"Phase weight for '{key.strip()}' is not a number: '{value}'")
    return weights


class PipelineConfig(BaseModel):
    """Tunables for one Orchestrator instance."""

    phase_weights: dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_PHASE_WEIGHTS))
    rank_batch_size: int = Field(default=5, ge=1)
    rank_batch_delay: float = Field(default=2.0, ge=0)
    volume_batch_size: int = Field(default=10, ge=1)
    volume_batch_delay: float = Field(default=0.0, ge=0)
    collaborator_timeout: float = Field(default=30.0, gt=0)
    shallow_rank_limit: int = Field(default=20, ge=0)
    opportunity_volume: int = Field(default=500, ge=0)
    max_job_runtime: float = Field(default=3600.0, gt=0)
    stream_interval: float = Field(default=1.5, ge=0)
    log_tail: int = Field(default=20, ge=0, description="Logs included in a JobView")

    @field_validator("phase_weights")
    @classmethod
    def _check_weights(cls, weights: dict[str, float]) -> dict[str, float]:
        expected = {key.value for key in PHASE_ORDER}
        unknown = set(weights) - expected
        if unknown:
            raise ValueError(f"Unknown phases in weights: {sorted(unknown)}")
        missing = expected - set(weights)
        if missing:
            raise ValueError(f"Missing phase weights: {sorted(missing)}")
        if any(w < 0 for w in weights.values()):
            raise ValueError("Phase weights must be non-negative")
        total = sum(weights.values())
        if abs(total - 100.0) > 1e-6:
            raise ValueError(f"Phase weights must sum to 100, got {total:g}")
        return weights

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        env = os.environ
        try:
            return cls(
                phase_weights=parse_phase_weights(env.get("RANKSCOPE_PHASE_WEIGHTS")),
                rank_batch_size=int(env.get("RANKSCOPE_RANK_BATCH_SIZE", "5")),
                rank_batch_delay=float(env.get("RANKSCOPE_RANK_BATCH_DELAY", "2.0")),
                volume_batch_size=int(env.get("RANKSCOPE_VOLUME_BATCH_SIZE", "10")),
                volume_batch_delay=float(env.get("RANKSCOPE_VOLUME_BATCH_DELAY", "0")),
                collaborator_timeout=float(env.get("RANKSCOPE_COLLABORATOR_TIMEOUT", "30")),
                shallow_rank_limit=int(env.get("RANKSCOPE_SHALLOW_RANK_LIMIT", "20")),
                opportunity_volume=int(env.get("RANKSCOPE_OPPORTUNITY_VOLUME", "500")),
                max_job_runtime=float(env.get("RANKSCOPE_MAX_JOB_RUNTIME", "3600")),
                stream_interval=float(env.get("RANKSCOPE_STREAM_INTERVAL", "1.5")),
            )
        except (ValidationError, ValueError) as e:
            raise InvalidInputError(f"Invalid pipeline configuration: {e}") from e
