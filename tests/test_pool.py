import time

import pytest

from app.core.exceptions import BatchItemTimeoutError, is_retryable
from app.utils.pool import run_bounded
from app.utils.proximity import calculate_proximity, calculate_ask_ratio


def test_inline_run_keeps_order_and_isolates_errors():
    def fn(item):
        if item == 2:
            raise ValueError("boom")
        return item * 10

    outcomes = run_bounded(fn, [1, 2, 3], max_workers=1)

    assert [o.item for o in outcomes] == [1, 2, 3]
    assert [o.value for o in outcomes if o.ok] == [10, 30]
    assert isinstance(outcomes[1].error, ValueError)
    assert not outcomes[1].timed_out


def test_threaded_run_times_out_slow_item_only():
    def fn(item):
        if item == "slow":
            time.sleep(1.0)
        return item

    outcomes = run_bounded(fn, ["a", "slow", "b"], max_workers=3, item_timeout=0.2)

    assert outcomes[0].value == "a"
    assert outcomes[2].value == "b"
    assert outcomes[1].timed_out
    assert isinstance(outcomes[1].error, BatchItemTimeoutError)
    assert is_retryable(outcomes[1].error)


def test_queued_item_runs_after_slow_items_time_out():
    ran = []

    def fn(item):
        ran.append(item)
        if item.startswith("slow"):
            time.sleep(1.0)
        return item

    outcomes = run_bounded(fn, ["slow1", "slow2", "fast"], max_workers=2, item_timeout=0.3)

    assert outcomes[0].timed_out
    assert outcomes[1].timed_out
    assert outcomes[2].ok
    assert outcomes[2].value == "fast"
    assert "fast" in ran


def test_concurrency_stays_bounded():
    active = []
    peak = []

    def fn(item):
        active.append(item)
        peak.append(len(active))
        time.sleep(0.05)
        active.remove(item)
        return item

    outcomes = run_bounded(fn, list(range(8)), max_workers=2, item_timeout=5)

    assert [o.value for o in outcomes] == list(range(8))
    assert max(peak) <= 2


def test_empty_batch():
    assert run_bounded(lambda x: x, [], max_workers=4) == []


@pytest.mark.parametrize("bid,ask,expected", [
    (4.0, 4.0, 100),
    (4.5, 4.0, 100),
    (3.7, 4.0, 90),
    (3.3, 4.0, 75),
    (2.9, 4.0, 60),
    (2.0, 4.0, 50),
    (0.2, 4.0, 10),
    (3.0, None, 50),
    (3.0, 0, 50),
])
def test_calculate_proximity(bid, ask, expected):
    assert calculate_proximity(bid, ask) == expected


def test_calculate_ask_ratio():
    assert calculate_ask_ratio(3.4, 4.0) == 0.85
    assert calculate_ask_ratio(3.4, None) is None
