"""Weighted random selection. Priority requests are three times as likely to be drawn."""

import random
from collections.abc import Sequence

from ..models import QueueItem

PRIORITY_WEIGHT = 3
NORMAL_WEIGHT = 1


def weight(item: QueueItem) -> int:
    return PRIORITY_WEIGHT if item.is_priority else NORMAL_WEIGHT


def weighted_index(items: Sequence[QueueItem], rng: random.Random | None = None) -> int:
    if not items:
        raise ValueError("cannot pick from an empty queue")
    rng = rng or random
    total = sum(weight(i) for i in items)
    r = rng.random() * total
    for i, item in enumerate(items):
        r -= weight(item)
        if r <= 0:
            return i
    return len(items) - 1


def shuffle_for_repeat_all(items: Sequence[QueueItem], rng: random.Random | None = None) -> list[QueueItem]:
    """Order `items` by repeated weighted draws without replacement."""
    remaining = list(items)
    result = []
    while remaining:
        result.append(remaining.pop(weighted_index(remaining, rng)))
    return result
