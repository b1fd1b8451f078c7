# allocator.py
# Collision-safe reference numbers (INV-00042, QUO-00007, ...).
#
# Counting rows is cheap but racy: two writers can read the same count and
# mint the same candidate. Instead of locking, the allocator commits
# optimistically and retries on a uniqueness violation with a fresh count.
# From attempt `suffix_after` on, the candidate carries a `-{attempt}` suffix
# so that a count made stale by deletions cannot collide forever.
#
# stdlib only. The store supplies the count, the commit and the predicate
# that recognises its own uniqueness errors.

import logging
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_WIDTH = 5
DEFAULT_MAX_ATTEMPTS = 25
DEFAULT_SUFFIX_AFTER = 10


def format_reference(
    prefix: str,
    ordinal: int,
    attempt: int = 0,
    width: int = DEFAULT_WIDTH,
    suffix_after: int = DEFAULT_SUFFIX_AFTER,
) -> str:
    base = f"{prefix}-{ordinal:0{width}d}"
    return base if attempt < suffix_after else f"{base}-{attempt}"


class ReferenceAllocator:
    """
    Mints a reference number and commits the record carrying it.

    Example:
        allocator = ReferenceAllocator("INV")
        invoice = allocator.allocate(
            count=lambda: count_invoices(),
            commit=lambda number: insert_invoice(number),
            is_collision=lambda exc: is_unique_violation(exc, "invoice_number"),
        )
    """

    def __init__(
        self,
        prefix: str,
        width: int = DEFAULT_WIDTH,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        suffix_after: int = DEFAULT_SUFFIX_AFTER,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")
        self.prefix = prefix
        self.width = width
        self.max_attempts = max_attempts
        self.suffix_after = suffix_after

    def candidate(self, existing: int, attempt: int) -> str:
        return format_reference(self.prefix, existing + 1 + attempt, attempt, self.width, self.suffix_after)

    def allocate(
        self,
        count: Callable[[], int],
        commit: Callable[[str], T],
        is_collision: Callable[[Exception], bool],
    ) -> T:
        """
        Run count -> candidate -> commit until a commit succeeds.

        Errors for which `is_collision` is False propagate on the spot.
        After `max_attempts` collisions the last collision error propagates.
        """
        for attempt in range(self.max_attempts):
            reference = self.candidate(count(), attempt)
            try:
                return commit(reference)
            except Exception as exc:
                if not is_collision(exc):
                    raise
                if attempt == self.max_attempts - 1:
                    logger.error("Reference allocation for %s exhausted after %d attempts", self.prefix, self.max_attempts)
                    raise
                logger.info("Reference %s already taken; retrying (attempt %d)", reference, attempt + 1)

        raise AssertionError("unreachable")
