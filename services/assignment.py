from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from typing import Callable
from data.database import ABTest, Assignment
from services.cache import CacheClient
from services.errors import InvalidConfiguration, NotFound, TestNotRunning
from services.metrics import ensure_variant_metrics, increment_visitors
import random
import logging

logger = logging.getLogger(__name__)

# Define the maximum number of times to retry the transaction
MAX_RETRIES = 3

RandomSource = Callable[[], float]


def get_random_source() -> RandomSource:
    """Dependency returning a uniform [0, 1) source. Tests override it with a fixed sequence."""
    return random.random


def select_variant(test: ABTest, rand: RandomSource = random.random) -> dict:
    """
    Weighted draw over the traffic split.
    Walks test.variants in declared order, never the split's key order.
    """
    r = rand() * 100
    cumulative = 0.0
    for variant in test.variants:
        cumulative += test.traffic_split.get(variant["id"], 0)
        if r <= cumulative:
            return variant

    # rounding can leave r past the last boundary
    return test.variants[-1]


def get_cached_test(db: Session, cache: CacheClient, test_id: str) -> ABTest | None:
    """ Get test definition, cache first """

    test = cache.get_test(test_id)
    if not test:
        test = db.query(ABTest).filter(ABTest.id == test_id).one_or_none()
        if test:
            cache.set_test(test)
            logger.debug("get_cached_test %s cache miss", test_id)
    else:
        logger.debug("get_cached_test %s cache hit", test_id)

    return test


def is_running(db: Session, cache: CacheClient, test_id: str) -> bool:
    """Status read straight from the database. Evicts the cached test when it is stale."""
    status = db.query(ABTest.status).filter(ABTest.id == test_id).scalar()
    if status != "running":
        cache.invalidate_test(test_id)
        return False
    return True


def get_existing_assignment(db: Session, cache: CacheClient, test_id: str, session_id: str) -> Assignment | None:
    """ Get existing assignment, cache first """

    existing_assignment = cache.get_assignment(test_id, session_id)
    if not existing_assignment:
        existing_assignment = db.query(Assignment).filter(
                Assignment.session_id == session_id,
                Assignment.test_id == test_id
            ).first()

        if existing_assignment:
            cache.set_assignment(existing_assignment)
            logger.debug("get_existing_assignment %s cache miss", test_id)
    else:
        logger.debug("get_existing_assignment %s cache hit", test_id)

    return existing_assignment


def create_assignment(db: Session, cache: CacheClient, test_id: str, session_id: str, variant_id: str) -> Assignment:
    """
    Inserts the assignment and counts the visitor in one transaction.
    A concurrent insert for the same session fails the unique constraint and
    rolls both writes back together.
    """
    assignment = Assignment(test_id=test_id, session_id=session_id, variant_id=variant_id)
    db.add(assignment)
    db.flush()  # This is where the database constraint check happens
    increment_visitors(db, test_id, variant_id)
    db.commit()
    db.refresh(assignment)
    cache.set_assignment(assignment)
    return assignment


def _assignment_view(test: ABTest, variant_id: str) -> dict:
    return {"variant_id": variant_id, "variant": test.find_variant(variant_id)}


# --- Idempotent Assignment ---
def get_or_create_assignment(
    db: Session,
    cache: CacheClient,
    test_id: str,
    session_id: str,
    rand: RandomSource = random.random,
) -> dict:
    """
    Retrieves an existing assignment or creates a new one if doesn't exist,
    safely handling concurrent requests using the Unique Constraint + Retry pattern.

    Returns {"variant_id", "variant"}; raises NotFound or TestNotRunning.
    """
    if not session_id:
        raise InvalidConfiguration("Session id must not be empty.")

    test = get_cached_test(db=db, cache=cache, test_id=test_id)
    if not test:
        logger.info("Test %s not found.", test_id)
        raise NotFound(f"A/B test {test_id} not found.")

    if test.status != "running":
        logger.info("Test %s is %s, not admitting session %s.", test_id, test.status, session_id)
        raise TestNotRunning(f"A/B test {test_id} is not running.")

    # Retry loop handles concurrent inserts that fail the unique constraint
    for attempt in range(MAX_RETRIES):

        # 1. CHECK FOR EXISTING ASSIGNMENT
        existing_assignment = get_existing_assignment(db=db, cache=cache, test_id=test_id, session_id=session_id)

        if existing_assignment:
            logger.info("Found persistent assignment for session %s on test %s: %s",
                        session_id, test_id, existing_assignment.variant_id)
            return _assignment_view(test, existing_assignment.variant_id)

        # 2. RE-CHECK STATUS, the cached definition may predate a pause or completion
        if not is_running(db=db, cache=cache, test_id=test_id):
            logger.info("Test %s stopped running, cached definition evicted.", test_id)
            raise TestNotRunning(f"A/B test {test_id} is not running.")

        # 3. PERFORM WEIGHTED RANDOM SELECTION
        variant = select_variant(test, rand)
        ensure_variant_metrics(db, test_id, variant["id"])

        try:
            # 4. ATTEMPT TO CREATE THE NEW ASSIGNMENT (THE WRITE)
            create_assignment(db=db, cache=cache, test_id=test_id, session_id=session_id, variant_id=variant["id"])

            logger.info("SUCCESS: Session %s newly assigned to %s (test %s) on attempt %d.",
                        session_id, variant["id"], test_id, attempt + 1)
            return _assignment_view(test, variant["id"])

        except IntegrityError:
            # 5. HANDLE THE RACE CONDITION
            # A concurrent transaction beat us to the INSERT, the visitor increment is rolled back with it.
            db.rollback()

            logger.warning("RACE DETECTED: IntegrityError on session %s (test %s). Retrying (Attempt %d/%d)...",
                           session_id, test_id, attempt + 2, MAX_RETRIES)

            # The next pass re-reads and finds the competing transaction's assignment.

    # If all retries fail, something is seriously wrong
    logger.error("Failed to get or create assignment for session %s after %d attempts.", session_id, MAX_RETRIES)
    raise RuntimeError(f"A/B test {test_id} unable to create assignment for session {session_id}.")
