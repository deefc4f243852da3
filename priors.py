"""
Pricing Priors - Typed Model and Parse Boundary
================================================

Raw prior rows arrive from the backing store (or a caller-supplied snapshot)
with loosely typed fields: numerics may be int, float, Decimal or numeric
strings. This module is the single place where they are validated. Everything
downstream works with NormalizedPrior and GroupKey only.

Group key hierarchy:

    Global (no dimensions)
        └── Technology
            ├── Technology + Material
            │       └── Technology + Material + Parts bucket
            └── Technology + Parts bucket

Rows are accepted or rejected as a whole; a rejected row is dropped silently
(logged at DEBUG) since malformed history is treated as noise.
"""
import logging
import math
import numbers
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Union

from utils import PARTS_BUCKETS, normalize_text

logger = logging.getLogger(__name__)

# How the dimension-free cohort is stored in the pricing_priors table.
# Only the storage boundary (this module and database.py) sees this string.
GLOBAL_TECHNOLOGY_SENTINEL = "__global__"


@dataclass(frozen=True)
class ByTechnology:
    """Cohort scoped to one manufacturing technology (e.g. CNC)."""
    name: str

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class GlobalScope:
    """The dimension-free cohort covering every technology."""

    def __str__(self) -> str:
        return "global"


GLOBAL = GlobalScope()

TechnologyScope = Union[ByTechnology, GlobalScope]


@dataclass(frozen=True)
class GroupKey:
    """Identifies one aggregation cohort."""
    technology: TechnologyScope
    material: Optional[str] = None
    parts_bucket: Optional[str] = None

    @classmethod
    def global_key(cls) -> "GroupKey":
        return cls(GLOBAL, None, None)

    @property
    def is_global(self) -> bool:
        return isinstance(self.technology, GlobalScope)

    @property
    def storage_technology(self) -> str:
        """Technology column value as stored in pricing_priors."""
        if self.is_global:
            return GLOBAL_TECHNOLOGY_SENTINEL
        return self.technology.name

    def describe(self) -> str:
        return f"{self.technology}|{self.material or ''}|{self.parts_bucket or ''}"


@dataclass(frozen=True)
class NormalizedPrior:
    """A validated prior: quantiles of historical job prices for one cohort."""
    technology: TechnologyScope
    material: Optional[str]
    parts_bucket: Optional[str]
    n: int
    p10: float
    p50: float
    p90: float

    @property
    def key(self) -> GroupKey:
        return GroupKey(self.technology, self.material, self.parts_bucket)

    def is_monotonic(self) -> bool:
        """p10 <= p50 <= p90. Assumed upstream, not enforced here."""
        return self.p10 <= self.p50 <= self.p90


@dataclass(frozen=True)
class PriorParseResult:
    """Outcome of parsing one raw row: a prior on success, a reason otherwise."""
    prior: Optional[NormalizedPrior] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.prior is not None


def parse_technology(value) -> Optional[TechnologyScope]:
    """Map a stored technology value to its scope (sentinel becomes GLOBAL)."""
    technology = normalize_text(value)
    if technology is None:
        return None
    if technology == GLOBAL_TECHNOLOGY_SENTINEL:
        return GLOBAL
    return ByTechnology(technology)


def parse_parts_bucket(value) -> Optional[str]:
    bucket = normalize_text(value)
    return bucket if bucket in PARTS_BUCKETS else None


def to_finite_number(value) -> Optional[float]:
    """Coerce int/float/Decimal/numeric string to a finite float, else None."""
    if value is None or isinstance(value, bool):
        return None
    if not isinstance(value, (numbers.Real, Decimal, str)):
        return None
    # float() accepts digit grouping ("1_000"); stored numerics never use it
    if isinstance(value, str) and "_" in value:
        return None
    try:
        number = float(value.strip() if isinstance(value, str) else value)
    except (ValueError, OverflowError):
        return None
    return number if math.isfinite(number) else None


def parse_prior_row(row: Optional[Mapping]) -> PriorParseResult:
    """
    Validate a raw pricing_priors row.

    Args:
        row: Mapping with technology, material_canon (or material),
             parts_bucket, n, p10, p50, p90

    Returns:
        PriorParseResult holding the NormalizedPrior, or the rejection reason
    """
    if not isinstance(row, Mapping):
        return PriorParseResult(reason="row is not a mapping")

    technology = parse_technology(row.get("technology"))
    if technology is None:
        return PriorParseResult(reason="missing technology")

    material = normalize_text(row.get("material_canon", row.get("material")))
    parts_bucket = parse_parts_bucket(row.get("parts_bucket"))

    values = {}
    for field in ("n", "p10", "p50", "p90"):
        number = to_finite_number(row.get(field))
        if number is None:
            return PriorParseResult(reason=f"non-numeric {field}: {row.get(field)!r}")
        values[field] = number

    prior = NormalizedPrior(
        technology=technology,
        material=material,
        parts_bucket=parts_bucket,
        n=max(0, math.floor(values["n"])),
        p10=values["p10"],
        p50=values["p50"],
        p90=values["p90"],
    )
    return PriorParseResult(prior=prior)


def normalize_prior_row(row: Optional[Mapping]) -> Optional[NormalizedPrior]:
    """Return the NormalizedPrior for a row, or None if the row is malformed."""
    result = parse_prior_row(row)
    if not result.ok:
        logger.debug(f"Dropping pricing prior row: {result.reason}")
    return result.prior


class PriorIndex:
    """In-memory lookup of normalized priors by group key."""

    def __init__(self):
        self._priors: Dict[GroupKey, NormalizedPrior] = {}
        self.duplicate_keys: List[GroupKey] = []
        self.dropped_rows = 0

    @classmethod
    def from_rows(cls, rows: Optional[Iterable[Mapping]]) -> "PriorIndex":
        """
        Build the index from raw rows.

        When two rows normalize to the same key the later one replaces the
        earlier one; the key is recorded in duplicate_keys.
        """
        index = cls()
        for row in rows or []:
            prior = normalize_prior_row(row)
            if prior is None:
                index.dropped_rows += 1
                continue
            index.add(prior)
        return index

    def add(self, prior: NormalizedPrior) -> None:
        key = prior.key
        if key in self._priors and key not in self.duplicate_keys:
            self.duplicate_keys.append(key)
        self._priors[key] = prior

    def get(self, key: GroupKey) -> Optional[NormalizedPrior]:
        return self._priors.get(key)

    def __contains__(self, key: GroupKey) -> bool:
        return key in self._priors

    def __len__(self) -> int:
        return len(self._priors)
