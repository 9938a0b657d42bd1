import logging
import os
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from shift_allocation.models import WorkerTier

ENV_PREFIX = "SHIFT_ALLOCATION_"


class ReputationWeights(BaseModel):
    completed_shift_weight: float = 10.0
    shift_points_cap: float = 100.0
    rating_weight: float = 100.0
    reliability_weight: float = 50.0
    no_show_penalty: float = 25.0
    no_show_decay_mode: Literal["flat", "half_life"] = "flat"
    no_show_decay_factor: float = 0.7
    no_show_half_life_days: float = 90.0


class PriorityWeights(BaseModel):
    """
    Claim priority = tier weight + reputation_weight * reliability (1-5).
    Each tier step must exceed reputation_weight * 4 so tier dominates.
    """

    tier_weights: dict[WorkerTier, float] = Field(
        default_factory=lambda: {
            WorkerTier.PRIMARY: 1200.0,
            WorkerTier.SECONDARY: 600.0,
            WorkerTier.ON_CALL: 0.0,
        }
    )
    reputation_weight: float = 100.0

    @model_validator(mode="after")
    def _tier_dominates(self) -> "PriorityWeights":
        if self.reputation_weight < 0:
            raise ValueError("reputation_weight must not be negative")
        # reliability spans 1-5, so reputation can move a score by at most 4x its weight
        span = self.reputation_weight * 4
        ranked = [WorkerTier.PRIMARY, WorkerTier.SECONDARY, WorkerTier.ON_CALL]
        for higher, lower in zip(ranked, ranked[1:]):
            step = self.tier_weights.get(higher, 0.0) - self.tier_weights.get(lower, 0.0)
            if step <= span:
                raise ValueError(
                    f"tier weight {higher} must exceed {lower} by more than {span:g}, "
                    f"got {step:g}"
                )
        return self


class AllocationConfig(BaseModel):
    reputation: ReputationWeights = Field(default_factory=ReputationWeights)
    priority: PriorityWeights = Field(default_factory=PriorityWeights)
    reputation_cache_ttl_seconds: float = 300.0
    default_visibility_hours: float = 2.0
    default_claim_window_minutes: int = 30
    lock_timeout_seconds: float = 2.0
    retry_delay_min_seconds: float = 0.01
    retry_delay_max_seconds: float = 0.05
    log_level: str = "INFO"


_ENV_FIELDS: dict[str, str] = {
    "REPUTATION_CACHE_TTL_SECONDS": "reputation_cache_ttl_seconds",
    "DEFAULT_VISIBILITY_HOURS": "default_visibility_hours",
    "DEFAULT_CLAIM_WINDOW_MINUTES": "default_claim_window_minutes",
    "LOCK_TIMEOUT_SECONDS": "lock_timeout_seconds",
    "RETRY_DELAY_MIN_SECONDS": "retry_delay_min_seconds",
    "RETRY_DELAY_MAX_SECONDS": "retry_delay_max_seconds",
    "LOG_LEVEL": "log_level",
}


def load_config(dotenv_path: str | Path | None = None) -> AllocationConfig:
    """
    Build an AllocationConfig from defaults overlaid with SHIFT_ALLOCATION_*
    environment variables (a .env file is loaded first if present).
    """
    path = Path(dotenv_path) if dotenv_path else None
    if path and path.exists():
        load_dotenv(path)
    else:
        load_dotenv()

    overrides: dict[str, object] = {}
    for env_name, field_name in _ENV_FIELDS.items():
        value = os.getenv(f"{ENV_PREFIX}{env_name}", "").strip()
        if value:
            overrides[field_name] = value

    reputation: dict[str, str] = {}
    decay_mode = os.getenv(f"{ENV_PREFIX}NO_SHOW_DECAY_MODE", "").strip()
    if decay_mode:
        reputation["no_show_decay_mode"] = decay_mode
    half_life = os.getenv(f"{ENV_PREFIX}NO_SHOW_HALF_LIFE_DAYS", "").strip()
    if half_life:
        reputation["no_show_half_life_days"] = half_life
    if reputation:
        overrides["reputation"] = ReputationWeights.model_validate(reputation)

    return AllocationConfig.model_validate(overrides)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
