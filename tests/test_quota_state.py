import threading

import pytest

from bandwidth_control.quota_state import QuotaAction
from bandwidth_control.quota_state import QuotaKind
from bandwidth_control.quota_state import QuotaStateTracker
from bandwidth_control.quota_state import decide


@pytest.mark.parametrize('current, requested, action', [
    (None, 10, QuotaAction.CREATE),
    (10, 11, QuotaAction.UPDATE_IN_PLACE),
    (10, 10, QuotaAction.NO_OP),
])
def test_decide(current, requested, action):
    assert decide(current, requested) is action


def test_interface_records():
    state = QuotaStateTracker()
    assert state.lookup("wlan0") is None
    record = state.upsert("wlan0", 10)
    assert record.kind is QuotaKind.INTERFACE
    assert state.upsert("wlan0", 20) is record
    assert state.lookup("wlan0").quota == 20
    state.upsert("eth0", 5)
    assert state.interfaces() == ["eth0", "wlan0"]
    assert state.remove("wlan0") is record
    assert state.remove("wlan0") is None


def test_shared_transitions():
    state = QuotaStateTracker()
    assert state.shared_group() is None
    assert state.join("a", 100) == (0, 1)
    assert state.join("b", 100) == (1, 2)
    # joining twice does not bump the refcount
    assert state.join("b", 100) == (2, 2)
    member = state.shared_member("a")
    assert member.kind is QuotaKind.SHARED_MEMBER
    assert member.quota == 100
    assert state.shared_member("c") is None

    state.set_shared_alert(7)
    assert state.leave("a") == (2, 1)
    assert state.shared_group().alert == 7
    assert state.leave("b") == (1, 0)
    assert state.shared_group() is None
    # a new group starts from scratch
    state.join("c", 5)
    assert state.shared_group().alert == 0


def test_reset():
    state = QuotaStateTracker()
    state.upsert("wlan0", 10)
    state.join("a", 1)
    state.global_alert = 5
    state.global_alert_tether_count = 2
    state.reset()
    assert state.lookup("wlan0") is None
    assert state.shared_group() is None
    assert state.global_alert == 0
    assert state.global_alert_tether_count == 0


def test_locked_is_per_key():
    state = QuotaStateTracker()
    holding = threading.Event()
    release = threading.Event()
    other_key_done = threading.Event()

    def hold():
        with state.locked("wlan0"):
            holding.set()
            release.wait(5)

    def other():
        with state.locked("eth0"):
            other_key_done.set()

    t = threading.Thread(target=hold)
    t.start()
    assert holding.wait(5)
    o = threading.Thread(target=other)
    o.start()
    assert other_key_done.wait(5)
    release.set()
    t.join(5)
    o.join(5)

    # reentrant for the same caller
    with state.locked("wlan0"):
        with state.locked("wlan0"):
            pass


def test_locked_all_waits_for_keys():
    state = QuotaStateTracker()
    holding = threading.Event()
    release = threading.Event()
    reset_done = threading.Event()

    def hold():
        with state.locked("wlan0"):
            holding.set()
            release.wait(5)

    def reset():
        with state.locked_all():
            state.reset()
            reset_done.set()

    t = threading.Thread(target=hold)
    t.start()
    assert holding.wait(5)
    r = threading.Thread(target=reset)
    r.start()
    assert not reset_done.wait(0.2)
    release.set()
    assert reset_done.wait(5)
    t.join(5)
    r.join(5)


def test_locked_all_keeps_new_keys_out():
    state = QuotaStateTracker()
    inside = threading.Event()
    release = threading.Event()
    entered = threading.Event()

    def exclusive():
        with state.locked_all():
            inside.set()
            release.wait(5)

    def key():
        with state.locked("eth0"):
            entered.set()

    e = threading.Thread(target=exclusive)
    e.start()
    assert inside.wait(5)
    k = threading.Thread(target=key)
    k.start()
    assert not entered.wait(0.2)
    release.set()
    assert entered.wait(5)
    e.join(5)
    k.join(5)


def test_idle_key_locks_are_dropped():
    state = QuotaStateTracker()
    for n in range(100):
        with state.locked(f"tun{n}"):
            pass
    assert state.active_keys() == []
    with state.locked("wlan0"):
        with state.locked("wlan0"):
            assert state.active_keys() == ["wlan0"]
        assert state.active_keys() == ["wlan0"]
    assert state.active_keys() == []
