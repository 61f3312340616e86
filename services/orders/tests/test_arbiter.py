import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from orderflow import arbiter, crud, workflow
from orderflow.errors import AlreadyAssigned

from conftest import create_order_row

WORKERS = [f"worker-{n}" for n in range(8)]


def test_claim_sets_worker_and_status(db, customer):
    order = create_order_row(db, customer)

    assert arbiter.claim(db, order.id, "worker-1") is True
    db.commit()
    db.expire_all()

    order = workflow.get_order(db, order.id)
    assert order.worker_id == "worker-1"
    assert order.status == "assigned"


def test_claim_loses_on_claimed_order(db, customer):
    order = create_order_row(db, customer)
    arbiter.claim(db, order.id, "worker-1")
    db.commit()

    assert arbiter.claim(db, order.id, "worker-2") is False
    db.rollback()
    db.expire_all()
    assert workflow.get_order(db, order.id).worker_id == "worker-1"


def test_claim_loses_on_unclaimable_status(db, customer):
    order = create_order_row(db, customer)
    order.status = "in_progress"
    db.commit()

    assert arbiter.claim(db, order.id, "worker-1") is False


@pytest.mark.slow
def test_concurrent_claims_have_exactly_one_winner(session_factory, db, customer):
    order = create_order_row(db, customer)
    barrier = threading.Barrier(len(WORKERS))

    def attempt(worker_id):
        session = session_factory()
        try:
            barrier.wait()
            workflow.assign_self(session, order.id, worker_id)
            return worker_id, None
        except AlreadyAssigned as e:
            return worker_id, e
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=len(WORKERS)) as pool:
        results = list(pool.map(attempt, WORKERS))

    winners = [worker for worker, error in results if error is None]
    losers = [error for _, error in results if error is not None]
    assert len(winners) == 1
    assert len(losers) == len(WORKERS) - 1
    assert all(isinstance(error, AlreadyAssigned) for error in losers)

    db.expire_all()
    order = workflow.get_order(db, order.id)
    assert order.worker_id == winners[0]
    assert order.status == "assigned"

    assigned = [e for e in crud.get_order_events(db, order.id) if e.event_type == "assigned"]
    assert len(assigned) == 1
    assert assigned[0].user_id == winners[0]
