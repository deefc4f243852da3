"""
Customer Pricing Estimate
=========================

Estimates a p10/p50/p90 price range for a prospective job from aggregated
pricing priors ("based on similar projects").

Steps:
1. Classify the part count into a bucket (utils.get_parts_bucket)
2. Build the fallback ladder: tech+mat+parts -> tech+mat -> tech+parts -> tech -> global
3. Choose the first cohort with data
4. Shrink its quantiles toward the nearest ancestor with data (K=50)
5. Label confidence from the chosen cohort's sample size

Two entry points share this logic:
- compute_pricing_estimate_from_priors: pure, takes a snapshot of rows
- get_pricing_estimate: async, fetches one cohort at a time from a PriorStore

Customer-facing: the result carries quantiles, a confidence label and the
ladder level only. Sample counts and raw rows never leave this module.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

from confidence import Confidence, classify_confidence
from database import PriorStore, is_missing_schema_error
from fallback import (
    FallbackStep,
    PriorSource,
    ancestor_steps,
    build_fallback_plan,
    nearest_ancestor,
    select_prior,
)
from priors import GroupKey, NormalizedPrior, PriorIndex, normalize_prior_row
from shrinkage import Quantiles, shrink_quantiles
from utils import get_parts_bucket, normalize_text

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PricingEstimate:
    """Price range shown to the customer."""
    p10: float
    p50: float
    p90: float
    confidence: Confidence
    source: PriorSource

    def to_dict(self) -> Dict[str, Any]:
        return {
            "p10": self.p10,
            "p50": self.p50,
            "p90": self.p90,
            "confidence": self.confidence.value,
            "source": self.source.value,
        }


class EstimateObserver:
    """Diagnostics hooks for estimate computation. Does nothing by default."""

    def schema_checked(self, supported: bool) -> None:
        pass

    def prior_chosen(self, inputs: Dict[str, Any], step: FallbackStep, prior: NormalizedPrior) -> None:
        pass

    def duplicate_keys(self, keys: List[GroupKey]) -> None:
        pass

    def fetch_failed(self, key: GroupKey, error: Exception, missing_schema: bool) -> None:
        pass


class LoggingObserver(EstimateObserver):
    """
    Writes diagnostics to a logger, each distinct message once per observer.

    Create one per process (or per request) and pass it in; the dedupe set
    lives on the instance.
    """

    def __init__(self, log: Optional[logging.Logger] = None, level: int = logging.INFO):
        self._log = log or logger
        self._level = level
        self._seen = set()

    def _once(self, message: str) -> None:
        if message in self._seen:
            return
        self._seen.add(message)
        self._log.log(self._level, message)

    def schema_checked(self, supported: bool) -> None:
        self._once(f"[pricing estimate] schema_supported={supported}")

    def prior_chosen(self, inputs: Dict[str, Any], step: FallbackStep, prior: NormalizedPrior) -> None:
        self._once(
            f"[pricing estimate] chosen source={step.source.value} "
            f"group_key={step.key.describe()} n={prior.n} inputs={inputs}"
        )

    def duplicate_keys(self, keys: List[GroupKey]) -> None:
        for key in keys:
            self._once(f"[pricing estimate] duplicate prior rows for {key.describe()}; last row kept")

    def fetch_failed(self, key: GroupKey, error: Exception, missing_schema: bool) -> None:
        kind = "missing_schema" if missing_schema else "query_error"
        self._once(f"[pricing estimate] fetch_failed kind={kind} group_key={key.describe()}")


NULL_OBSERVER = EstimateObserver()


def _request_inputs(technology, material, parts_count, bucket) -> Dict[str, Any]:
    return {
        "technology_raw": technology,
        "material_raw": material,
        "parts_count_raw": parts_count,
        "technology": normalize_text(technology),
        "material": normalize_text(material),
        "parts_bucket": bucket,
    }


def _build_estimate(step: FallbackStep, chosen: NormalizedPrior,
                    parent: Optional[NormalizedPrior]) -> PricingEstimate:
    if parent is not None:
        quantiles = shrink_quantiles(chosen, parent)
    else:
        quantiles = Quantiles.of(chosen)
    return PricingEstimate(
        p10=quantiles.p10,
        p50=quantiles.p50,
        p90=quantiles.p90,
        confidence=classify_confidence(chosen.n),
        source=step.source,
    )


def compute_pricing_estimate_from_priors(
    technology: Optional[str],
    material: Optional[str],
    parts_count: Optional[float],
    priors: Optional[Iterable[Mapping]],
    observer: Optional[EstimateObserver] = None,
) -> Optional[PricingEstimate]:
    """
    Pure estimate builder over a complete snapshot of prior rows.

    Args:
        technology: Requested technology (e.g. "CNC")
        material: Canonical material (e.g. "Aluminum 6061")
        parts_count: Number of parts in the job
        priors: Raw pricing_priors rows; malformed rows are ignored
        observer: Optional diagnostics hooks

    Returns:
        PricingEstimate, or None when no cohort down to global has data
    """
    observer = observer or NULL_OBSERVER
    bucket = get_parts_bucket(parts_count)

    index = PriorIndex.from_rows(priors)
    if index.duplicate_keys:
        observer.duplicate_keys(list(index.duplicate_keys))

    plan = build_fallback_plan(technology, material, bucket)
    selected = select_prior(plan, index.get)
    if selected is None:
        return None

    step, chosen = selected
    observer.prior_chosen(_request_inputs(technology, material, parts_count, bucket), step, chosen)

    parent = nearest_ancestor(step, index.get)
    return _build_estimate(step, chosen, parent)


async def _fetch_prior(store: PriorStore, key: GroupKey,
                       observer: EstimateObserver) -> Optional[NormalizedPrior]:
    """Fetch and normalize one cohort. Fetch errors and rows for another cohort count as no row."""
    try:
        row = await store.fetch_prior_row(key)
    except Exception as e:
        missing_schema = is_missing_schema_error(e)
        if missing_schema:
            logger.warning(f"pricing_priors table/column missing while fetching {key.describe()}: {e}")
        else:
            logger.warning(f"pricing_priors fetch failed for {key.describe()}: {type(e).__name__}: {e}")
        observer.fetch_failed(key, e, missing_schema)
        return None

    prior = normalize_prior_row(row)
    if prior is not None and prior.key != key:
        # e.g. the global row answering a lookup for technology "__global__"
        logger.debug(f"Ignoring pricing prior {prior.key.describe()} returned for {key.describe()}")
        return None
    return prior


async def get_pricing_estimate(
    technology: Optional[str],
    material: Optional[str],
    parts_count: Optional[float],
    store: PriorStore,
    observer: Optional[EstimateObserver] = None,
) -> Optional[PricingEstimate]:
    """
    Estimate from the backing store, one sequential lookup per cohort.

    Walks the fallback ladder until a cohort has data, then walks that
    cohort's parent chain until a shrinkage parent is found. At most nine
    lookups; usually two or three.

    Args:
        technology: Requested technology
        material: Canonical material
        parts_count: Number of parts in the job
        store: PriorStore implementation (see database.PostgresPriorStore)
        observer: Optional diagnostics hooks

    Returns:
        PricingEstimate, or None when the schema is unsupported or no cohort
        has data
    """
    observer = observer or NULL_OBSERVER

    supported = await store.has_pricing_priors_schema()
    observer.schema_checked(supported)
    if not supported:
        logger.info("pricing_priors schema unsupported; skipping pricing estimate")
        return None

    bucket = get_parts_bucket(parts_count)
    plan = build_fallback_plan(technology, material, bucket)

    step = None
    chosen = None
    for candidate in plan:
        prior = await _fetch_prior(store, candidate.key, observer)
        if prior is not None:
            step, chosen = candidate, prior
            break

    if chosen is None:
        return None

    observer.prior_chosen(_request_inputs(technology, material, parts_count, bucket), step, chosen)

    parent = None
    for ancestor in ancestor_steps(step):
        parent = await _fetch_prior(store, ancestor.key, observer)
        if parent is not None:
            break

    return _build_estimate(step, chosen, parent)
