import pytest

from songqueue.db import Database, Dummy, PlaybackState, PriorityUsers, QueueItems
from songqueue.models import QueueItem


@pytest.fixture
def database(tmp_path):
    return Database.open(str(tmp_path / "nested" / "songqueue.db"))


def item(name):
    return QueueItem(content=f"https://example.com/{name}", title=name)


def titles(database):
    return [row["title"] for row in database.load_queue_items()]


def test_tables_share_one_file(tmp_path):
    path = str(tmp_path / "one.db")
    QueueItems(path)
    PlaybackState(path)
    PriorityUsers(path).add(("u",))
    # opening again must not fail on existing tables
    assert Database.open(path).is_priority_user("u")


def test_insert_at_position_shifts_rows(database):
    database.add_queue_item(item("a"))
    database.add_queue_item(item("b"))
    database.add_queue_item(item("c"), 1)
    assert titles(database) == ["a", "c", "b"]


def test_update_and_remove(database):
    a = item("a")
    database.add_queue_item(a)
    a.title = "renamed"
    database.update_queue_item(a)
    assert titles(database) == ["renamed"]
    database.remove_queue_item(a.id)
    assert titles(database) == []


def test_reorder(database):
    items = [item(n) for n in "abc"]
    for i in items:
        database.add_queue_item(i)
    database.reorder_queue([items[2].id, items[0].id, items[1].id])
    assert titles(database) == ["c", "a", "b"]


def test_playback_state_round_trip(database):
    assert database.load_playback_state() is None
    database.save_playback_state({"songs_played": 3, "repeat_mode": "all"})
    database.save_playback_state({"songs_played": 4, "repeat_mode": "all"})
    assert database.load_playback_state() == {"songs_played": 4, "repeat_mode": "all"}


def test_priority_users(database):
    assert not database.is_priority_user("u1")
    assert not database.is_priority_user("")
    database.add_priority_user("u1")
    database.add_priority_user("u1")
    database.add_priority_user("u2")
    assert database.is_priority_user("u1")
    assert sorted(database.priority_users()) == ["u1", "u2"]
    database.remove_priority_user("u1")
    assert database.priority_users() == ["u2"]


def test_dummy_remembers_nothing():
    database = Database.dummy()
    database.add_queue_item(item("a"), 0)
    database.save_playback_state({"songs_played": 1})
    database.add_priority_user("u")
    assert database.load_queue_items() == []
    assert database.load_playback_state() is None
    assert not database.is_priority_user("u")
    assert isinstance(database.queue, Dummy)
