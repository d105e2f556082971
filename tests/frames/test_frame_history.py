import gc
import threading

import pytest

from previz.errors import NotFoundError, ValidationError
from previz.production.frames import FrameHistoryStore, FrameOrderStore
from previz.production.models import FrameOrderEntry


def test_versions_increment_with_single_active(store):
    project = store.create_project("u1", "Pilot")
    history = FrameHistoryStore(store)
    for i in range(4):
        history.create_version(project.id, 2, f"https://img/{i}.png", prompt=f"take {i}")

    versions = history.list_history(project.id, 2)
    assert [v.version_number for v in versions] == [1, 2, 3, 4]
    active = [v for v in versions if v.is_active]
    assert len(active) == 1
    assert active[0].version_number == 4
    assert history.active_version(project.id, 2).image_url == "https://img/3.png"


def test_keys_are_independent(store):
    project = store.create_project("u1", "Pilot")
    history = FrameHistoryStore(store)
    history.create_version(project.id, 1, "https://img/a.png")
    history.create_version(project.id, 1, "https://img/b.png")
    v = history.create_version(project.id, 2, "https://img/c.png")
    assert v.version_number == 1
    assert history.active_version(project.id, 1).version_number == 2


def test_concurrent_versions_stay_consistent(store):
    project = store.create_project("u1", "Pilot")
    history = FrameHistoryStore(store)
    errors = []

    def worker(n):
        try:
            for i in range(5):
                history.create_version(project.id, 1, f"https://img/{n}-{i}.png")
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    versions = history.list_history(project.id, 1)
    assert [v.version_number for v in versions] == list(range(1, 21))
    assert sum(1 for v in versions if v.is_active) == 1
    assert history.active_version(project.id, 1).version_number == 20


def test_create_version_requires_image(store):
    project = store.create_project("u1", "Pilot")
    with pytest.raises(ValidationError):
        FrameHistoryStore(store).create_version(project.id, 1, "")


def test_activate_earlier_version(store):
    project = store.create_project("u1", "Pilot")
    history = FrameHistoryStore(store)
    history.create_version(project.id, 1, "https://img/a.png")
    history.create_version(project.id, 1, "https://img/b.png")

    reverted = history.activate_version(project.id, 1, 1)
    assert reverted.version_number == 1
    assert [v.is_active for v in history.list_history(project.id, 1)] == [True, False]

    nxt = history.create_version(project.id, 1, "https://img/c.png")
    assert nxt.version_number == 3


def test_activate_missing_version(store):
    project = store.create_project("u1", "Pilot")
    history = FrameHistoryStore(store)
    history.create_version(project.id, 1, "https://img/a.png")
    with pytest.raises(NotFoundError):
        history.activate_version(project.id, 1, 5)
    assert history.active_version(project.id, 1).version_number == 1


def test_set_then_get_order_round_trips_sorted(store):
    project = store.create_project("u1", "Pilot")
    order = FrameOrderStore(store)
    entries = [
        FrameOrderEntry(project.id, 3, 1),
        {"shot_number": 1, "display_order": 2},
        {"shotNumber": 2, "displayOrder": 1},
    ]
    order.set_order(project.id, entries)

    assert order.get_order(project.id) == [
        FrameOrderEntry(project.id, 2, 1),
        FrameOrderEntry(project.id, 3, 1),
        FrameOrderEntry(project.id, 1, 2),
    ]


def test_set_order_replaces_previous(store):
    project = store.create_project("u1", "Pilot")
    order = FrameOrderStore(store)
    order.set_order(project.id, [{"shot_number": 1, "display_order": 1}, {"shot_number": 2, "display_order": 2}])
    order.set_order(project.id, [{"shot_number": 2, "display_order": 1}])
    assert order.get_order(project.id) == [FrameOrderEntry(project.id, 2, 1)]

    order.set_order(project.id, [])
    assert order.get_order(project.id) == []


def test_set_order_rejects_malformed_entry(store):
    project = store.create_project("u1", "Pilot")
    order = FrameOrderStore(store)
    order.set_order(project.id, [{"shot_number": 1, "display_order": 1}])
    with pytest.raises(ValidationError):
        order.set_order(project.id, [{"shot_number": 2}])
    assert order.get_order(project.id) == [FrameOrderEntry(project.id, 1, 1)]


def test_unknown_project_is_not_found(store):
    with pytest.raises(NotFoundError):
        FrameHistoryStore(store).create_version(999, 1, "https://img/a.png")
    with pytest.raises(NotFoundError):
        FrameOrderStore(store).set_order(999, [{"shot_number": 1, "display_order": 1}])
    assert FrameOrderStore(store).get_order(999) == []


def test_key_locks_are_released_when_unused(store):
    project = store.create_project("u1", "Pilot")
    history = FrameHistoryStore(store)
    for shot_number in range(1, 6):
        history.create_version(project.id, shot_number, f"https://img/{shot_number}.png")
    gc.collect()
    assert len(history._key_locks) == 0

    held = history.key_lock(project.id, 1)
    assert history.key_lock(project.id, 1) is held
    assert len(history._key_locks) == 1
