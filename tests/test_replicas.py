"""Tests for the local/durable repository and the workbook store."""

from __future__ import annotations

from dataclasses import replace
from unittest.mock import Mock

import pytest

from conftest import build_order, build_request
from cropflow import data_manager
from cropflow.errors import DurableStoreError, DurableWriteError, NotFoundError
from cropflow.replicas import (
    ORDER_LOCK,
    REQUEST_LOCK,
    Repository,
    WorkbookStore,
    is_temporary_request_id,
)


@pytest.fixture
def failing_store() -> Mock:
    """Durable store double whose writes and reads all fail."""

    store = Mock(name="durable")
    store.save_order.side_effect = DurableWriteError("offline")
    store.save_request.side_effect = DurableWriteError("offline")
    store.append_event.side_effect = DurableWriteError("offline")
    store.purge_order.side_effect = DurableWriteError("offline")
    store.load_order.side_effect = DurableStoreError("offline")
    store.load_request.side_effect = DurableStoreError("offline")
    store.load_requests_for_order.side_effect = DurableStoreError("offline")
    store.list_orders.side_effect = DurableStoreError("offline")
    store.list_users.side_effect = DurableStoreError("offline")
    return store


def test_save_falls_back_to_local_replica(failing_store):
    """A failed durable write keeps the record locally and marks it pending."""

    repository = Repository(failing_store)
    order = build_order()
    request = build_request(order)

    assert repository.save_order(order) is False
    stored, durable_ok = repository.save_request(request)

    assert durable_ok is False
    assert stored == request
    assert repository.get_order(order.order_id) == order
    assert repository.get_request(request.request_id) == request
    assert repository.local.pending_orders == {order.order_id}
    assert repository.local.pending_requests == {request.request_id}


def test_reads_degrade_to_local_when_durable_is_unreachable(failing_store):
    repository = Repository(failing_store)

    with pytest.raises(NotFoundError):
        repository.get_order("P404")
    assert repository.list_users() == []
    assert repository.requests_for_order("P404") == []


def test_retry_pending_flushes_and_rekeys(failing_store, workbook_store):
    """Once the store is back, pending writes land and temp ids get replaced."""

    repository = Repository(failing_store)
    order = build_order()
    request = build_request(order)
    repository.save_order(order)
    repository.save_request(request)

    repository.durable = workbook_store
    flushed = repository.retry_pending()

    assert flushed == 2
    assert not repository.local.has_pending()
    [durable_request] = workbook_store.load_requests_for_order(order.order_id)
    assert not is_temporary_request_id(durable_request.request_id)
    assert repository.get_request(request.request_id) == durable_request


def test_retry_pending_keeps_failures_pending(failing_store):
    repository = Repository(failing_store)
    repository.save_order(build_order())

    assert repository.retry_pending() == 0
    assert repository.local.pending_orders == {"P100"}


def test_read_through_hydrates_local_replica(workbook_store):
    order = build_order(order_id="P9")
    workbook_store.save_order(order)
    repository = Repository(workbook_store)

    assert repository.get_order("P9") == order
    assert "P9" in repository.local.orders


def test_workbook_store_assigns_permanent_request_ids(workbook_store):
    request = build_request()
    stored = workbook_store.save_request(request)

    assert stored.request_id.startswith("R")
    assert replace(stored, request_id=request.request_id) == request
    assert workbook_store.load_request(stored.request_id) == stored


def test_workbook_store_permanent_ids_do_not_collide(workbook_store):
    ids = {workbook_store.save_request(build_request()).request_id for _ in range(5)}
    assert len(ids) == 5


def test_request_lock_follows_rekeyed_id(workbook_store):
    repository = Repository(workbook_store)
    request = build_request()
    lock = repository.lock_for(REQUEST_LOCK, request.request_id)
    stored, _ = repository.save_request(request)

    assert repository.lock_for(REQUEST_LOCK, stored.request_id) is lock
    assert repository.lock_for(REQUEST_LOCK, request.request_id) is lock
    assert repository.lock_for(ORDER_LOCK, "P100") is repository.lock_for(ORDER_LOCK, "P100")


def test_purge_cascades_to_requests_and_audit(workbook_store):
    order = build_order(order_id="P1")
    other = build_order(order_id="P2")
    repository = Repository(workbook_store)
    repository.save_order(order)
    repository.save_order(other)
    repository.save_request(build_request(order))
    repository.save_request(build_request(other))

    assert repository.purge_order("P1") is True

    workbook = workbook_store.workbook
    assert [o.order_id for o in data_manager.iter_orders(workbook)] == ["P2"]
    assert [r.order_id for r in data_manager.iter_requests(workbook)] == ["P2"]
    assert repository.find_order("P1") is None


def test_deferred_purge_hides_order_until_retried(workbook_store):
    repository = Repository(workbook_store)
    repository.save_order(build_order(order_id="P1"))
    flaky = Mock(wraps=workbook_store)
    flaky.purge_order.side_effect = DurableWriteError("locked")
    repository.durable = flaky

    assert repository.purge_order("P1") is False
    assert repository.find_order("P1") is None
    assert [o.order_id for o in repository.list_orders()] == []

    repository.durable = workbook_store
    assert repository.retry_pending() == 1
    assert workbook_store.load_order("P1") is None


def test_flush_without_path_raises_durable_write_error(master_workbook_path):
    store = WorkbookStore(data_manager.open_workbook(master_workbook_path))

    with pytest.raises(DurableWriteError):
        store.flush()


def test_autosave_failure_surfaces_as_durable_write_error(master_workbook_path, tmp_path):
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("x")
    store = WorkbookStore(
        data_manager.open_workbook(master_workbook_path),
        path=blocker / "master.xlsx",
        autosave=True,
    )

    with pytest.raises(DurableWriteError):
        store.save_order(build_order())
