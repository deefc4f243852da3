"""
Pricing Priors Monitoring

Admin-facing summary of what the pricing_priors table covers:
- total valid priors
- priors per technology (labelled as stored, so the global cohort is "__global__")
- number of distinct group keys
- freshness (latest updated_at)
- missing combinations: technology/material/parts bucket requests from
  estimate_shown events over the last 7 and 30 days with no exact prior

Malformed rows are excluded the same way the estimator excludes them.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

import pandas as pd

from database import PostgresPriorStore
from priors import ByTechnology, GroupKey, NormalizedPrior, normalize_prior_row
from utils import normalize_text

logger = logging.getLogger(__name__)

MAX_MISSING_COMBOS = 12

# Window label -> days back from now
MISSING_COMBINATION_WINDOWS = {"7d": 7, "30d": 30}

MISSING_COLUMNS = ["technology", "material_canon", "parts_bucket"]


def empty_summary(supported: bool = False) -> Dict[str, Any]:
    return {
        "supported": supported,
        "total_priors": 0,
        "distinct_group_keys": 0,
        "counts_by_technology": [],
        "freshness_updated_at": None,
        "missing_combinations": empty_missing_combinations(),
    }


def empty_missing_combinations(supported: bool = False) -> Dict[str, Any]:
    return {
        "supported": supported,
        "windows": {window: [] for window in MISSING_COMBINATION_WINDOWS},
    }


def valid_priors(rows: Optional[Iterable[Mapping]]) -> List[NormalizedPrior]:
    return [p for p in (normalize_prior_row(row) for row in rows or []) if p is not None]


def summarize_priors(rows: Optional[Iterable[Mapping]],
                     freshness_updated_at=None) -> Dict[str, Any]:
    """
    Summarize prior coverage.

    Args:
        rows: Raw pricing_priors rows
        freshness_updated_at: Latest updated_at, if known (datetime or ISO string)

    Returns:
        Dict with total_priors, distinct_group_keys, counts_by_technology
        (sorted by count desc, then technology) and freshness_updated_at
    """
    priors = valid_priors(rows)
    summary = empty_summary(supported=True)

    if hasattr(freshness_updated_at, "isoformat"):
        freshness_updated_at = freshness_updated_at.isoformat()
    summary["freshness_updated_at"] = freshness_updated_at

    if not priors:
        return summary

    df = pd.DataFrame({
        # storage label keeps the global cohort apart from a technology named "global"
        "technology": [p.key.storage_technology for p in priors],
        "group_key": [p.key for p in priors],
    })

    counts = (
        df.groupby("technology").size()
        .reset_index(name="priors_count")
        .sort_values(["priors_count", "technology"], ascending=[False, True])
    )

    summary["total_priors"] = len(df)
    summary["distinct_group_keys"] = int(df["group_key"].nunique())
    summary["counts_by_technology"] = [
        {"technology": row.technology, "priors_count": int(row.priors_count)}
        for row in counts.itertuples(index=False)
    ]
    return summary


def summarize_missing_combinations(payloads: Optional[Iterable[Mapping]],
                                   prior_keys: Set[GroupKey],
                                   limit: int = MAX_MISSING_COMBOS) -> List[Dict[str, Any]]:
    """
    Count requested cohorts that have no exact prior.

    Args:
        payloads: estimate_shown event payloads (process, material_canon, parts_bucket)
        prior_keys: Group keys of the valid priors
        limit: Maximum number of combinations returned

    Returns:
        List of {technology, material_canon, parts_bucket, count}, sorted by
        count desc then technology, material and bucket
    """
    records = []
    for payload in payloads or []:
        if not isinstance(payload, Mapping):
            continue
        technology = normalize_text(payload.get("process"))
        material = normalize_text(payload.get("material_canon"))
        bucket = normalize_text(payload.get("parts_bucket"))
        # Only fully specified requests can point at a missing cohort
        if not technology or not material or not bucket:
            continue
        if GroupKey(ByTechnology(technology), material, bucket) in prior_keys:
            continue
        records.append((technology, material, bucket))

    if not records:
        return []

    df = pd.DataFrame(records, columns=MISSING_COLUMNS)
    counts = (
        df.groupby(MISSING_COLUMNS).size()
        .reset_index(name="requests")
        .sort_values(["requests"] + MISSING_COLUMNS, ascending=[False, True, True, True])
        .head(limit)
    )
    return [
        {
            "technology": row.technology,
            "material_canon": row.material_canon,
            "parts_bucket": row.parts_bucket,
            "count": int(row.requests),
        }
        for row in counts.itertuples(index=False)
    ]


async def load_missing_combinations(store: PostgresPriorStore, prior_keys: Set[GroupKey],
                                    now: Optional[datetime] = None) -> Dict[str, Any]:
    """Missing combinations for each window; unsupported when ops_events is absent."""
    if not await store.has_ops_events_schema():
        return empty_missing_combinations(supported=False)

    now = now or datetime.now(timezone.utc)
    result = empty_missing_combinations(supported=True)
    for window, days in MISSING_COMBINATION_WINDOWS.items():
        try:
            payloads = await store.fetch_estimate_shown_payloads(now - timedelta(days=days))
        except Exception as e:
            logger.warning(f"ops_events scan failed for {window}: {type(e).__name__}: {e}")
            continue
        result["windows"][window] = summarize_missing_combinations(payloads, prior_keys)
    return result


async def load_pricing_monitoring(store: PostgresPriorStore) -> Dict[str, Any]:
    """Load the coverage summary from the store; unsupported schema gives an empty summary."""
    if not await store.has_pricing_priors_schema():
        return empty_summary(supported=False)

    rows = await store.fetch_all_prior_rows()
    freshness = await store.fetch_latest_updated_at()
    summary = summarize_priors(rows, freshness)

    prior_keys = {p.key for p in valid_priors(rows)}
    summary["missing_combinations"] = await load_missing_combinations(store, prior_keys)

    logger.info(f"Pricing priors summary: {summary['total_priors']} priors, "
                f"{len(summary['counts_by_technology'])} technologies")
    return summary
