import pytest

from app.utils.cron_lock import with_cron_lock, LOCK_PREFIX


class FakeRedis:
    """SET NX EX et script de libération, en mémoire."""

    def __init__(self):
        self.store = {}
        self.ttls = {}

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = value
        self.ttls[key] = ex
        return True

    def eval(self, script, numkeys, key, token):
        if self.store.get(key) == token:
            del self.store[key]
            return 1
        return 0


def test_runs_and_releases():
    conn = FakeRedis()

    result = with_cron_lock("nightly", lambda: {"status": "completed"}, ttl=60, redis_conn=conn)

    assert result == {"status": "completed"}
    assert conn.store == {}
    assert conn.ttls[f"{LOCK_PREFIX}nightly"] == 60


def test_overlapping_run_is_skipped():
    conn = FakeRedis()
    conn.set(f"{LOCK_PREFIX}nightly", "other-worker")
    called = []

    result = with_cron_lock("nightly", lambda: called.append(1), redis_conn=conn)

    assert result == {"status": "skipped", "reason": "locked", "lock": "nightly"}
    assert called == []
    assert conn.store[f"{LOCK_PREFIX}nightly"] == "other-worker"


def test_lock_released_when_job_fails():
    conn = FakeRedis()

    def boom():
        raise RuntimeError("job failed")

    with pytest.raises(RuntimeError):
        with_cron_lock("nightly", boom, redis_conn=conn)

    assert conn.store == {}
