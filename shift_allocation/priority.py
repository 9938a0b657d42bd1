from shift_allocation.config import PriorityWeights
from shift_allocation.models import Claim, WorkerTier


def compute_priority(
    tier: WorkerTier, reliability: float, weights: PriorityWeights
) -> float:
    """
    Tier weight plus weighted reliability. Monotone in both inputs and
    deterministic; submission time only breaks ties (see `ranking_key`).
    """
    return round(
        weights.tier_weights.get(tier, 0.0) + weights.reputation_weight * reliability,
        2,
    )


def ranking_key(claim: Claim) -> tuple[float, float, str]:
    """Sort key: highest priority first, then earliest submission."""
    return (-claim.priority_score, claim.submitted_at.timestamp(), claim.id)
