from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from data.database import ABTest, VariantMetrics
import logging

logger = logging.getLogger(__name__)


def ensure_variant_metrics(db: Session, test_id: str, variant_id: str):
    """
    Creates the zeroed counter row for a variant if it does not exist yet.
    Commits on its own so the counter row is never part of a rolled back assignment.
    """
    exists = db.query(VariantMetrics.id).filter(
        VariantMetrics.test_id == test_id,
        VariantMetrics.variant_id == variant_id
    ).first()
    if exists:
        return

    try:
        db.add(VariantMetrics(test_id=test_id, variant_id=variant_id, visitors=0, conversions=0, conversion_value=0.0))
        db.commit()
        logger.debug("created metrics row for test %s variant %s", test_id, variant_id)
    except IntegrityError:
        # another request created it first
        db.rollback()
        logger.debug("metrics row for test %s variant %s already created", test_id, variant_id)


def increment_visitors(db: Session, test_id: str, variant_id: str) -> int:
    """Atomic visitors + 1. Does not commit, the caller owns the transaction."""
    result = db.execute(
        update(VariantMetrics)
        .where(VariantMetrics.test_id == test_id, VariantMetrics.variant_id == variant_id)
        .values(visitors=VariantMetrics.visitors + 1)
    )
    return result.rowcount


def increment_conversions(db: Session, test_id: str, variant_id: str, value: float = 0.0) -> int:
    """Atomic conversions + 1 and conversion_value + value. Does not commit."""
    result = db.execute(
        update(VariantMetrics)
        .where(VariantMetrics.test_id == test_id, VariantMetrics.variant_id == variant_id)
        .values(
            conversions=VariantMetrics.conversions + 1,
            conversion_value=VariantMetrics.conversion_value + value,
        )
    )
    return result.rowcount


def get_metrics_map(db: Session, test: ABTest) -> dict[str, dict]:
    """
    Returns counters for every variant of the test, keyed by variant id.
    Variants that never had a visitor report zeros.
    """
    rows = db.query(VariantMetrics).filter(VariantMetrics.test_id == test.id).all()
    by_variant = {row.variant_id: row for row in rows}

    metrics = {}
    for variant in test.variants:
        row = by_variant.get(variant["id"])
        metrics[variant["id"]] = {
            "visitors": row.visitors if row else 0,
            "conversions": row.conversions if row else 0,
            "conversion_value": row.conversion_value if row else 0.0,
        }
    return metrics
