"""
Shrinkage of cohort quantiles toward a parent cohort.

Small cohorts are noisy, so their quantiles are pulled toward the nearest
coarser cohort with data, weighted by sample size:

    w = n / (n + K)
    blended = w * child + (1 - w) * parent

With K = 50 a cohort of 50 jobs sits halfway between itself and its parent.
Blending is applied once against a single parent, never compounded up the
chain.
"""
from typing import NamedTuple

from priors import NormalizedPrior

# Shrinkage toward the parent cohort
SHRINKAGE_K = 50


class Quantiles(NamedTuple):
    p10: float
    p50: float
    p90: float

    @classmethod
    def of(cls, prior: NormalizedPrior) -> "Quantiles":
        return cls(prior.p10, prior.p50, prior.p90)


def shrinkage_weight(n: int, k: float = SHRINKAGE_K) -> float:
    """Weight given to the child cohort; 0 when the cohort is empty."""
    n = max(0, n)
    if n + k <= 0:
        return 0.0
    return n / (n + k)


def shrink_quantiles(child: NormalizedPrior, parent: NormalizedPrior,
                     k: float = SHRINKAGE_K) -> Quantiles:
    """
    Blend child quantiles toward parent quantiles.

    Args:
        child: The chosen cohort's prior
        parent: Nearest ancestor with data
        k: Pseudo-count; higher K = more shrinkage toward parent

    Returns:
        Blended Quantiles
    """
    w = shrinkage_weight(child.n, k)
    return Quantiles(
        p10=w * child.p10 + (1 - w) * parent.p10,
        p50=w * child.p50 + (1 - w) * parent.p50,
        p90=w * child.p90 + (1 - w) * parent.p90,
    )
