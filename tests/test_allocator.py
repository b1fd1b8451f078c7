import threading

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from opsdesk.allocator import ReferenceAllocator, format_reference
from opsdesk.models import OperationRequest, Success
from opsdesk.store import Invoice, is_unique_violation


class Collision(Exception):
    pass


class FakeStore:
    """In-memory unique column with a scriptable count."""

    def __init__(self, taken=(), counts=None):
        self.taken = set(taken)
        self.counts = list(counts or [])
        self.attempted = []

    def count(self):
        if self.counts:
            return self.counts.pop(0)
        return len(self.taken)

    def commit(self, reference):
        self.attempted.append(reference)
        if reference in self.taken:
            raise Collision(reference)
        self.taken.add(reference)
        return reference


def is_collision(exc):
    return isinstance(exc, Collision)

# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def test_format_reference_pads_and_suffixes():
    assert format_reference("INV", 42) == "INV-00042"
    assert format_reference("QUO", 7, attempt=9) == "QUO-00007"
    assert format_reference("ORD", 61, attempt=10) == "ORD-00061-10"
    assert format_reference("PRJ", 3, width=3) == "PRJ-003"

def test_candidate_adds_attempt_to_count():
    allocator = ReferenceAllocator("INV")
    assert allocator.candidate(41, 0) == "INV-00042"
    assert allocator.candidate(42, 1) == "INV-00044"
    assert allocator.candidate(41, 12) == "INV-00054-12"

def test_rejects_zero_attempts():
    with pytest.raises(ValueError):
        ReferenceAllocator("INV", max_attempts=0)

# ---------------------------------------------------------------------------
# Retry protocol
# ---------------------------------------------------------------------------

def test_first_candidate_commits_without_retry():
    store = FakeStore(counts=[41])
    assert ReferenceAllocator("INV").allocate(store.count, store.commit, is_collision) == "INV-00042"
    assert store.attempted == ["INV-00042"]

def test_concurrent_loser_retries_with_fresh_count():
    # Both writers counted 41; the winner already holds INV-00042.
    store = FakeStore(taken={"INV-00042"}, counts=[41, 42])
    reference = ReferenceAllocator("INV").allocate(store.count, store.commit, is_collision)
    assert store.attempted[0] == "INV-00042"
    assert reference == store.attempted[1]
    assert reference != "INV-00042"
    assert reference in store.taken

def test_non_collision_error_propagates_immediately():
    calls = []

    def commit(reference):
        calls.append(reference)
        raise RuntimeError("disk full")

    with pytest.raises(RuntimeError, match="disk full"):
        ReferenceAllocator("INV").allocate(lambda: 0, commit, is_collision)
    assert len(calls) == 1

def test_exhaustion_raises_last_collision():
    attempted = []

    def commit(reference):
        attempted.append(reference)
        raise Collision(reference)

    with pytest.raises(Collision) as info:
        ReferenceAllocator("INV").allocate(lambda: 0, commit, is_collision)
    assert len(attempted) == 25
    assert str(info.value) == attempted[-1]

def test_suffix_starts_at_attempt_ten():
    attempted = []

    def commit(reference):
        attempted.append(reference)
        raise Collision(reference)

    with pytest.raises(Collision):
        ReferenceAllocator("INV", max_attempts=12).allocate(lambda: 5, commit, is_collision)
    assert attempted[9] == "INV-00015"
    assert attempted[10] == "INV-00016-10"
    assert attempted[11] == "INV-00017-11"
    assert len(set(attempted)) == len(attempted)

# ---------------------------------------------------------------------------
# Store integration
# ---------------------------------------------------------------------------

def _invoice(number, creator_id):
    return Invoice(
        invoice_number=number,
        customer_name="Seed",
        customer_email="seed@example.com",
        created_by_id=creator_id,
    )

def test_unique_violation_is_recognised_by_column(session_factory, admin):
    with session_factory() as session:
        session.add(_invoice("INV-00001", admin.id))
        session.commit()

    with session_factory() as session:
        session.add(_invoice("INV-00001", admin.id))
        with pytest.raises(IntegrityError) as info:
            session.commit()

    assert is_unique_violation(info.value, "invoice_number") is True
    assert is_unique_violation(info.value, "quote_number") is False
    assert is_unique_violation(RuntimeError("unique"), "invoice_number") is False

def test_foreign_key_failure_is_not_a_collision(session_factory):
    with session_factory() as session:
        session.add(_invoice("INV-00001", 9999))
        with pytest.raises(IntegrityError) as info:
            session.commit()

    assert is_unique_violation(info.value, "invoice_number") is False

def test_concurrent_invoice_creation_yields_distinct_numbers(make_registry, session_factory, admin):
    workers = 8
    barrier = threading.Barrier(workers)
    outcomes = [None] * workers
    registry = make_registry(admin)

    def create(index):
        barrier.wait()
        outcomes[index] = registry.invoke(
            OperationRequest(
                name="create_invoice",
                parameters={
                    "customer_name": f"Customer {index}",
                    "customer_email": f"c{index}@example.com",
                    "amount": 100 + index,
                    "description": "Gutter cleaning",
                },
            )
        )

    threads = [threading.Thread(target=create, args=(i,)) for i in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert all(isinstance(outcome, Success) for outcome in outcomes)
    numbers = [outcome.payload["invoice_number"] for outcome in outcomes]
    assert len(set(numbers)) == workers

    with session_factory() as session:
        assert session.scalar(select(func.count(Invoice.id))) == workers
