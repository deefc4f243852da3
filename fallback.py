"""
Fallback Ladder for Pricing Priors

Builds the ordered list of cohorts to try, most specific first:

    tech+mat+parts -> tech+mat -> tech+parts -> tech -> global

and the static parent chain used to pick a shrinkage target:

    tech+mat+parts -> tech+mat -> tech -> global
    tech+mat       -> tech -> global
    tech+parts     -> tech -> global
    tech           -> global
"""
from enum import Enum
from typing import Callable, Iterator, List, NamedTuple, Optional, Tuple

from priors import ByTechnology, GroupKey, NormalizedPrior
from utils import normalize_text


class PriorSource(Enum):
    """Which ladder level an estimate came from."""
    TECH_MAT_PARTS = "tech+mat+parts"
    TECH_MAT = "tech+mat"
    TECH_PARTS = "tech+parts"
    TECH = "tech"
    GLOBAL = "global"


PARENT_SOURCE = {
    PriorSource.TECH_MAT_PARTS: PriorSource.TECH_MAT,
    PriorSource.TECH_MAT: PriorSource.TECH,
    PriorSource.TECH_PARTS: PriorSource.TECH,
    PriorSource.TECH: PriorSource.GLOBAL,
}


class FallbackStep(NamedTuple):
    source: PriorSource
    key: GroupKey


def build_fallback_plan(technology: Optional[str],
                        material: Optional[str],
                        parts_bucket: Optional[str]) -> List[FallbackStep]:
    """
    Build candidate cohorts from most to least specific.

    Args:
        technology: Requested technology (blank counts as absent)
        material: Canonical material name (blank counts as absent)
        parts_bucket: One of utils.PARTS_BUCKETS, or None

    Returns:
        De-duplicated list of FallbackStep; always ends with global
    """
    technology = normalize_text(technology)
    material = normalize_text(material)

    plan = []
    if technology:
        tech = ByTechnology(technology)
        if material and parts_bucket:
            plan.append(FallbackStep(PriorSource.TECH_MAT_PARTS, GroupKey(tech, material, parts_bucket)))
        if material:
            plan.append(FallbackStep(PriorSource.TECH_MAT, GroupKey(tech, material, None)))
        if parts_bucket:
            plan.append(FallbackStep(PriorSource.TECH_PARTS, GroupKey(tech, None, parts_bucket)))
        plan.append(FallbackStep(PriorSource.TECH, GroupKey(tech, None, None)))

    plan.append(FallbackStep(PriorSource.GLOBAL, GroupKey.global_key()))

    seen = set()
    deduped = []
    for step in plan:
        if step in seen:
            continue
        seen.add(step)
        deduped.append(step)
    return deduped


def parent_step(step: FallbackStep) -> Optional[FallbackStep]:
    """Immediate parent cohort of a step, or None for global."""
    source = PARENT_SOURCE.get(step.source)
    if source is None:
        return None
    key = step.key
    if source is PriorSource.TECH_MAT:
        return FallbackStep(source, GroupKey(key.technology, key.material, None))
    if source is PriorSource.TECH:
        return FallbackStep(source, GroupKey(key.technology, None, None))
    return FallbackStep(source, GroupKey.global_key())


def ancestor_steps(step: FallbackStep) -> Iterator[FallbackStep]:
    """Yield the parent chain of a step, nearest first."""
    current = parent_step(step)
    while current is not None:
        yield current
        current = parent_step(current)


def select_prior(plan: List[FallbackStep],
                 lookup: Callable[[GroupKey], Optional[NormalizedPrior]]
                 ) -> Optional[Tuple[FallbackStep, NormalizedPrior]]:
    """First step in the plan whose key has a prior."""
    for step in plan:
        prior = lookup(step.key)
        if prior is not None:
            return step, prior
    return None


def nearest_ancestor(step: FallbackStep,
                     lookup: Callable[[GroupKey], Optional[NormalizedPrior]]
                     ) -> Optional[NormalizedPrior]:
    """Nearest ancestor prior with data, used as the shrinkage parent."""
    for ancestor in ancestor_steps(step):
        prior = lookup(ancestor.key)
        if prior is not None:
            return prior
    return None
