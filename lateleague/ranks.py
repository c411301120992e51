from __future__ import annotations

from typing import Protocol, Sequence, TypeVar

UNRANKED = "Unranked"


class Thresholded(Protocol):
    name: str
    mmr_threshold: int


T = TypeVar("T", bound=Thresholded)


def sort_tiers(tiers: Sequence[T]) -> list[T]:
    # sorted() is stable, so tiers sharing a threshold keep their input order.
    return sorted(tiers, key=lambda tier: tier.mmr_threshold)


def resolve_tier(mmr: float, tiers: Sequence[T]) -> T | None:
    """Return the tier with the highest threshold not above ``mmr``.

    Returns None when ``mmr`` is below every threshold (or there are no
    tiers); callers display that as "Unranked".
    """
    resolved: T | None = None
    for tier in sort_tiers(tiers):
        if tier.mmr_threshold > mmr:
            break
        resolved = tier
    return resolved


def tier_label(tier: Thresholded | None) -> str:
    if tier is None:
        return UNRANKED
    return tier.name


def next_tier(mmr: float, tiers: Sequence[T]) -> T | None:
    for tier in sort_tiers(tiers):
        if tier.mmr_threshold > mmr:
            return tier
    return None


def progress_to_next_tier(mmr: float, tiers: Sequence[T]) -> int:
    if len(tiers) < 2:
        return 100
    current = resolve_tier(mmr, tiers)
    upcoming = next_tier(mmr, tiers)
    if current is None or upcoming is None:
        return 100
    span = upcoming.mmr_threshold - current.mmr_threshold
    progress = mmr - current.mmr_threshold
    return min(round(progress / span * 100), 100)


def duplicate_values(tiers: Sequence[Thresholded], attribute: str) -> list[object]:
    seen: set[object] = set()
    duplicates: list[object] = []
    for tier in tiers:
        value = getattr(tier, attribute)
        if value in seen and value not in duplicates:
            duplicates.append(value)
        seen.add(value)
    return duplicates
