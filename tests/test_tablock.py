import json

from storyloom.tablock import LOCK_FILE, FileTabLock, NullTabGuard


class _Now:
    def __init__(self, t: float = 100.0):
        self.t = t

    def __call__(self) -> float:
        return self.t


def test_first_claim_writes_lock_and_release_removes_it(tmp_path):
    lock = FileTabLock(tmp_path, session_id="a", stale_after=15, now=_Now())
    assert lock.claim() is True
    raw = json.loads((tmp_path / LOCK_FILE).read_text(encoding="utf-8"))
    assert raw["session_id"] == "a"
    assert lock.holder() == "a"
    lock.release()
    assert not (tmp_path / LOCK_FILE).exists()


def test_live_foreign_session_blocks_claim(tmp_path):
    now = _Now()
    assert FileTabLock(tmp_path, session_id="a", stale_after=15, now=now).claim()
    now.t += 5
    other = FileTabLock(tmp_path, session_id="b", stale_after=15, now=now)
    assert other.claim() is False
    assert other.holder() == "a"
    # Releasing someone else's lock is a no-op.
    other.release()
    assert (tmp_path / LOCK_FILE).exists()


def test_stale_lock_is_taken_over(tmp_path):
    now = _Now()
    FileTabLock(tmp_path, session_id="a", stale_after=15, now=now).claim()
    now.t += 60
    other = FileTabLock(tmp_path, session_id="b", stale_after=15, now=now)
    assert other.holder() is None
    assert other.claim() is True
    assert other.holder() == "b"


def test_own_lock_is_refreshed(tmp_path):
    now = _Now()
    lock = FileTabLock(tmp_path, session_id="a", stale_after=15, now=now)
    lock.claim()
    now.t += 10
    assert lock.claim() is True
    raw = json.loads((tmp_path / LOCK_FILE).read_text(encoding="utf-8"))
    assert raw["heartbeat"] == 110.0


def test_torn_lock_file_counts_as_abandoned(tmp_path):
    (tmp_path / LOCK_FILE).write_text("{not json", encoding="utf-8")
    lock = FileTabLock(tmp_path, session_id="a", stale_after=15, now=_Now())
    assert lock.holder() is None
    assert lock.claim() is True


def test_null_guard_always_claims():
    guard = NullTabGuard()
    assert guard.claim() is True
    assert guard.holder() == "local"
    assert guard.release() is None
