import threading

from app import dependencies
from app.core import locks as lock_registry
from app.core.locks import KeyedLocks
from app.services.contribution_service import ContributionStore
from app.services.investment_service import RecommendationPersister


def test_entries_are_dropped_once_released():
    locks = KeyedLocks()
    for n in range(200):
        with locks.hold(f"user-{n}"):
            assert len(locks) == 1
    assert len(locks) == 0


def test_entry_is_dropped_when_an_error_escapes():
    locks = KeyedLocks()
    try:
        with locks.hold("Leeds"):
            raise RuntimeError("boom")
    except RuntimeError:
        pass
    assert len(locks) == 0

    # the key is usable again
    with locks.hold("Leeds"):
        assert len(locks) == 1


def test_same_key_is_serialized_and_entry_kept_for_waiters():
    locks = KeyedLocks()
    first_in = threading.Event()
    release_first = threading.Event()
    order = []

    def first():
        with locks.hold("Manchester"):
            order.append("first")
            first_in.set()
            release_first.wait(timeout=5)
        order.append("first-out")

    def second():
        first_in.wait(timeout=5)
        with locks.hold("Manchester"):
            order.append("second")

    t1 = threading.Thread(target=first)
    t2 = threading.Thread(target=second)
    t1.start()
    t2.start()
    first_in.wait(timeout=5)
    # the waiter keeps the entry alive while the first holder has it
    assert len(locks) == 1
    release_first.set()
    t1.join()
    t2.join()

    assert order.index("second") > order.index("first")
    assert len(locks) == 0


def test_different_keys_do_not_block_each_other():
    locks = KeyedLocks()
    with locks.hold("Leeds"):
        with locks.hold("York"):
            assert len(locks) == 2
    assert len(locks) == 0


def test_services_share_the_request_registries(db):
    assert ContributionStore(db).locks is dependencies.get_area_locks()
    assert RecommendationPersister(db).locks is dependencies.get_user_locks()
    assert dependencies.get_area_locks() is lock_registry.area_locks
    assert dependencies.get_user_locks() is lock_registry.user_locks
    assert lock_registry.area_locks is not lock_registry.user_locks
