"""
Confidence Banding for Pricing Estimates
Maps the chosen cohort's sample size to a coarse reliability label.
Raw counts are never shown to customers; the label is shown instead.
"""
import math
from enum import Enum


class Confidence(Enum):
    """Reliability label for an estimate."""
    STRONG = "strong"
    MODERATE = "moderate"
    LIMITED = "limited"
    UNKNOWN = "unknown"


# Sample-size thresholds, checked highest first
STRONG_MIN_N = 200
MODERATE_MIN_N = 50
LIMITED_MIN_N = 10


def classify_confidence(n) -> Confidence:
    """
    Classify the confidence level based on sample size.

    Args:
        n: Number of historical jobs behind the chosen prior. Non-finite
           or missing values count as 0; fractions are floored.

    Returns:
        Confidence label: strong, moderate, limited or unknown
    """
    if n is None or isinstance(n, bool) or not math.isfinite(n):
        total = 0
    else:
        total = max(0, math.floor(n))

    if total >= STRONG_MIN_N:
        return Confidence.STRONG
    elif total >= MODERATE_MIN_N:
        return Confidence.MODERATE
    elif total >= LIMITED_MIN_N:
        return Confidence.LIMITED
    else:
        return Confidence.UNKNOWN
