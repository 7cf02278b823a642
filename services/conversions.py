from sqlalchemy.orm import Session
from typing import Any
from services.assignment import get_cached_test, get_existing_assignment
from services.cache import CacheClient
from services.errors import AssignmentNotFound, NotFound
from services.metrics import ensure_variant_metrics, increment_conversions
from data.database import utc_now
import json
import logging

logger = logging.getLogger(__name__)


def record_conversion(
    db: Session,
    cache: CacheClient,
    test_id: str,
    session_id: str,
    value: float | None = None,
    metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Counts one conversion against the session's assigned variant.

    Every call is counted, repeated conversions from one session included.
    `metadata` never touches the counters; it is returned in the event payload
    for the conversion event log.
    """
    test = get_cached_test(db=db, cache=cache, test_id=test_id)
    if not test:
        raise NotFound(f"A/B test {test_id} not found.")

    assignment = get_existing_assignment(db=db, cache=cache, test_id=test_id, session_id=session_id)
    if not assignment:
        logger.warning("Conversion rejected: session %s has no assignment on test %s.", session_id, test_id)
        raise AssignmentNotFound(f"Session {session_id} is not assigned to any variant of A/B test {test_id}.")

    amount = float(value) if value is not None else 0.0

    ensure_variant_metrics(db, test_id, assignment.variant_id)
    increment_conversions(db, test_id, assignment.variant_id, amount)
    db.commit()

    logger.info("Conversion recorded for session %s on test %s variant %s (value %s).",
                session_id, test_id, assignment.variant_id, amount)

    return {
        "test_id": test_id,
        "variant_id": assignment.variant_id,
        "session_id": session_id,
        "conversion_value": amount,
        "metadata_json": json.dumps(metadata) if metadata else None,
        "created_at": utc_now().isoformat(),
    }
