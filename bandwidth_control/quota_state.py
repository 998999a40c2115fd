from __future__ import annotations

import contextlib
import dataclasses
import enum
import threading
import typing


class QuotaKind(enum.Enum):
    INTERFACE = "interface"
    SHARED_MEMBER = "shared"


class QuotaAction(enum.Enum):
    CREATE = "create"
    UPDATE_IN_PLACE = "update"
    NO_OP = "noop"


def decide(current: typing.Optional[int], requested: int) -> QuotaAction:
    if current is None:
        return QuotaAction.CREATE
    if current != requested:
        return QuotaAction.UPDATE_IN_PLACE
    return QuotaAction.NO_OP


@dataclasses.dataclass
class QuotaRecord:
    iface: str
    quota: int
    kind: QuotaKind = QuotaKind.INTERFACE
    alert: int = 0


@dataclasses.dataclass
class SharedQuotaGroup:
    quota: int = 0
    members: typing.Set[str] = dataclasses.field(default_factory=set)
    alert: int = 0

    @property
    def refcount(self) -> int:
        return len(self.members)


class _KeyLock:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        # holders plus waiters; the entry is dropped when this reaches 0
        self.users = 0


class QuotaStateTracker:
    """
    Everything the controller knows about installed quota and alert rules.

    Callers hold ``locked(key)`` across deciding, submitting and recording,
    so two operations on the same interface (or on the shared group, keyed
    by its quota name) never interleave. Records are only written
    after the rules they describe were installed.

    ``locked_all()`` waits for every key's critical section to finish and
    keeps new ones out; anything that rewrites the whole rule set (and
    therefore resets the tracker) runs under it. A thread must not take a
    second key, or ``locked_all()``, while it holds a key.
    """

    GLOBAL_KEY = "*"

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._key_locks: typing.Dict[str, _KeyLock] = {}
        self._exclusive = False
        self._local = threading.local()
        self._quotas: typing.Dict[str, QuotaRecord] = {}
        self._shared = SharedQuotaGroup()
        self.global_alert = 0
        self.global_alert_tether_count = 0

    def _held(self) -> typing.Set[str]:
        held = getattr(self._local, 'keys', None)
        if held is None:
            held = self._local.keys = set()
        return held

    @contextlib.contextmanager
    def locked(self, key: str) -> typing.Iterator[None]:
        held = self._held()
        if key in held:
            # reentrant for the thread already holding it
            yield
            return
        with self._cond:
            while self._exclusive:
                self._cond.wait()
            entry = self._key_locks.setdefault(key, _KeyLock())
            entry.users += 1
        try:
            with entry.lock:
                held.add(key)
                try:
                    yield
                finally:
                    held.discard(key)
        finally:
            with self._cond:
                entry.users -= 1
                if not entry.users:
                    del self._key_locks[key]

    @contextlib.contextmanager
    def locked_all(self) -> typing.Iterator[None]:
        with self._cond:
            while self._exclusive:
                self._cond.wait()
            self._exclusive = True
            pending = list(self._key_locks.values())
        try:
            with contextlib.ExitStack() as stack:
                for entry in pending:
                    stack.enter_context(entry.lock)
                yield
        finally:
            with self._cond:
                self._exclusive = False
                self._cond.notify_all()

    def active_keys(self) -> typing.List[str]:
        with self._cond:
            return sorted(self._key_locks)

    # per-interface quotas

    def lookup(self, iface: str) -> typing.Optional[QuotaRecord]:
        return self._quotas.get(iface)

    def upsert(self, iface: str, quota: int) -> QuotaRecord:
        record = self._quotas.get(iface)
        if record is None:
            record = self._quotas[iface] = QuotaRecord(iface, quota)
        else:
            record.quota = quota
        return record

    def remove(self, iface: str) -> typing.Optional[QuotaRecord]:
        return self._quotas.pop(iface, None)

    def interfaces(self) -> typing.List[str]:
        return sorted(self._quotas)

    # shared quota group

    def shared_group(self) -> typing.Optional[SharedQuotaGroup]:
        if not self._shared.members:
            return None
        return self._shared

    def shared_member(self, iface: str) -> typing.Optional[QuotaRecord]:
        if iface not in self._shared.members:
            return None
        return QuotaRecord(iface, self._shared.quota, QuotaKind.SHARED_MEMBER,
                           self._shared.alert)

    def join(self, iface: str, quota: int) -> typing.Tuple[int, int]:
        before = self._shared.refcount
        self._shared.members.add(iface)
        self._shared.quota = quota
        return before, self._shared.refcount

    def leave(self, iface: str) -> typing.Tuple[int, int]:
        before = self._shared.refcount
        self._shared.members.discard(iface)
        if not self._shared.members:
            self._shared = SharedQuotaGroup()
        return before, self._shared.refcount

    def set_shared_quota(self, quota: int) -> None:
        self._shared.quota = quota

    def set_shared_alert(self, alert: int) -> None:
        self._shared.alert = alert

    def reset(self) -> None:
        """Forget everything; callers hold ``locked_all()``."""
        self._quotas.clear()
        self._shared = SharedQuotaGroup()
        self.global_alert = 0
        self.global_alert_tether_count = 0
