import random

import pytest

from songqueue.models import QueueItem
from songqueue.playback import ReplayBuffer, shuffle_for_repeat_all, weighted_index


def make(name, priority=False):
    return QueueItem(content=f"https://example.com/{name}", title=name, is_priority=priority)


class FixedRandom:
    def __init__(self, value):
        self.value = value

    def random(self):
        return self.value


def test_priority_item_drawn_three_times_as_often():
    items = [make("vip", priority=True), make("normal")]
    rng = random.Random(1234)
    draws = 10_000
    hits = sum(1 for _ in range(draws) if weighted_index(items, rng) == 0)
    assert 0.70 <= hits / draws <= 0.80


def test_walk_stops_when_remainder_reaches_zero():
    items = [make("a"), make("b", priority=True), make("c")]
    # total weight 5
    assert weighted_index(items, FixedRandom(0.1)) == 0
    assert weighted_index(items, FixedRandom(0.5)) == 1
    assert weighted_index(items, FixedRandom(0.99)) == 2


def test_empty_queue_is_an_error():
    with pytest.raises(ValueError):
        weighted_index([])


def test_repeat_all_shuffle_is_a_permutation():
    items = [make(str(i), priority=i % 2 == 0) for i in range(6)]
    shuffled = shuffle_for_repeat_all(items, random.Random(7))
    assert sorted(i.title for i in shuffled) == sorted(i.title for i in items)


def test_replay_buffer_snapshots_point_at_source_url(tmp_path):
    played = make("a")
    played.mark_resolved(str(tmp_path / "a.mp3"), title="A")
    buffer = ReplayBuffer()
    buffer.record(played)

    (snapshot,) = buffer.drain()
    assert snapshot.content == "https://example.com/a"
    assert snapshot.title == "A"
    assert snapshot.id != played.id
    assert len(buffer) == 0


def test_replay_buffer_keeps_order_without_shuffle():
    buffer = ReplayBuffer()
    for name in "abc":
        buffer.record(make(name))
    assert [i.title for i in buffer.drain()] == ["a", "b", "c"]
