"""Busy-slot types and the union/intersection merges used for scheduling.

Overlap checks are inclusive: two intervals that only touch at an endpoint
still overlap, so back-to-back busy slots merge into one block.
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import StrEnum

from pydantic import AwareDatetime, BaseModel, ConfigDict, model_validator

from calbridge.calendar.models import CalendarProviderKind


class ConditionRelation(StrEnum):
    """How busy slots of several accounts combine.

    ``AND``: everyone must be free, so any account's busy slot blocks the
    time (union). ``OR``: one free account is enough, so only time when
    every account is busy blocks (intersection).
    """

    AND = "and"
    OR = "or"


class TimeInterval(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: AwareDatetime
    end: AwareDatetime

    @model_validator(mode="after")
    def _validate_order(self) -> TimeInterval:
        if self.end < self.start:
            raise ValueError("end must not be earlier than start")
        return self


class TimeSlot(TimeInterval):
    """A busy interval attributed to one account and one provider."""

    source: CalendarProviderKind
    account_address: str


def intervals_overlap(a: TimeInterval, b: TimeInterval) -> bool:
    return a.start <= b.end and b.start <= a.end


def merge_slots_union(slots: Iterable[TimeInterval]) -> list[TimeInterval]:
    """Merge overlapping or touching intervals into disjoint blocks."""
    merged: list[TimeInterval] = []
    for slot in sorted(slots, key=lambda item: item.start):
        if merged and intervals_overlap(merged[-1], slot):
            last = merged[-1]
            merged[-1] = TimeInterval(start=last.start, end=max(last.end, slot.end))
        else:
            merged.append(TimeInterval(start=slot.start, end=slot.end))
    return merged


def _intersect(left: list[TimeInterval], right: list[TimeSlot]) -> list[TimeInterval]:
    overlaps: list[TimeInterval] = []
    for a in left:
        for b in right:
            if not intervals_overlap(a, b):
                continue
            start, end = max(a.start, b.start), min(a.end, b.end)
            # Touching endpoints overlap but leave no shared busy time.
            if end > start:
                overlaps.append(TimeInterval(start=start, end=end))
    return overlaps


def merge_slots_intersection(slots: Iterable[TimeSlot]) -> list[TimeInterval]:
    """Return the time when every account represented in *slots* is busy.

    Fewer than two accounts yields an empty list: with a single account
    there is nobody to intersect with.
    """
    by_account: dict[str, list[TimeSlot]] = {}
    for slot in sorted(slots, key=lambda item: item.start):
        by_account.setdefault(slot.account_address, []).append(slot)
    if len(by_account) < 2:
        return []

    groups = sorted(by_account.values(), key=len)
    overlaps: list[TimeInterval] = [TimeInterval(start=s.start, end=s.end) for s in groups[0]]
    for group in groups[1:]:
        if not overlaps:
            return []
        overlaps = _intersect(overlaps, group)
    return sorted(overlaps, key=lambda item: item.start)


__all__ = [
    "ConditionRelation",
    "TimeInterval",
    "TimeSlot",
    "intervals_overlap",
    "merge_slots_intersection",
    "merge_slots_union",
]
