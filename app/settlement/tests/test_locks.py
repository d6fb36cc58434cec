"""
Tests for DistributedLock and check_version.

Redis is the autouse mock_redis fixture from conftest.py.
"""

import pytest

from settlement.exceptions import LockAcquisitionError, OrderNotFoundError, StaleRecordError
from settlement.locks import LOCK_PREFIX, DistributedLock, check_version
from settlement.models import Order


class TestDistributedLock:
    def test_acquire_sets_key_with_ttl(self, mock_redis):
        lock = DistributedLock("escrow:release:1", ttl=30, blocking=False)

        assert lock.acquire() is True
        assert lock.is_held

        args, kwargs = mock_redis.set.call_args
        assert args[0] == f"{LOCK_PREFIX}escrow:release:1"
        assert kwargs == {"nx": True, "ex": 30}

    def test_busy_lock_raises_when_not_blocking(self, mock_redis):
        mock_redis.set.return_value = False

        with pytest.raises(LockAcquisitionError) as exc_info:
            DistributedLock("reconciliation:sweep", blocking=False).acquire()

        assert exc_info.value.error_code == "LOCK_ACQUISITION_FAILED"
        assert mock_redis.set.call_count == 1

    def test_blocking_lock_polls_until_timeout(self, mock_redis, mocker):
        mock_redis.set.return_value = False
        fake_time = mocker.patch("settlement.locks.time")
        fake_time.monotonic.side_effect = [0.0, 0.5, 1.0]

        with pytest.raises(LockAcquisitionError):
            DistributedLock("key", blocking=True, timeout=1.0).acquire()

        assert mock_redis.set.call_count == 2

    def test_blocking_lock_gets_freed_lock(self, mock_redis, mocker):
        mock_redis.set.side_effect = [False, True]
        fake_time = mocker.patch("settlement.locks.time")
        fake_time.monotonic.return_value = 0.0

        assert DistributedLock("key", blocking=True, timeout=5).acquire()

    def test_release_only_with_own_token(self, mock_redis):
        lock = DistributedLock("key", blocking=False)
        lock.acquire()
        token = mock_redis.set.call_args.args[1]

        assert lock.release() is True
        mock_redis.eval.assert_called_once_with(
            DistributedLock.RELEASE_SCRIPT, 1, f"{LOCK_PREFIX}key", token
        )
        assert lock.release() is False
        assert mock_redis.eval.call_count == 1

    def test_context_manager_releases_on_error(self, mock_redis):
        with pytest.raises(RuntimeError):
            with DistributedLock("key", blocking=False) as lock:
                assert lock.is_held
                raise RuntimeError("boom")

        assert not lock.is_held
        mock_redis.eval.assert_called_once()

    def test_extend(self, mock_redis):
        lock = DistributedLock("key", ttl=60, blocking=False)
        assert lock.extend() is False

        lock.acquire()
        assert lock.extend(120) is True
        assert mock_redis.eval.call_args.args[-1] == 120


@pytest.mark.django_db
class TestCheckVersion:
    def test_returns_row_at_expected_version(self, pending_order):
        locked = check_version(Order, pending_order.pk, expected_version=pending_order.version)
        assert locked.pk == pending_order.pk

    def test_stale_version_raises(self, pending_order):
        with pytest.raises(StaleRecordError) as exc_info:
            check_version(Order, pending_order.pk, expected_version=pending_order.version - 1)

        assert exc_info.value.details["current_version"] == pending_order.version

    def test_missing_row_raises(self, db):
        import uuid

        with pytest.raises(OrderNotFoundError):
            check_version(Order, uuid.uuid4(), expected_version=1)
