from sqlalchemy.orm import Session
from data.database import ABTest, to_naive_utc, utc_now
from models.ab_tests import ABTestCreate, ABTestUpdate
from services.cache import CacheClient
from services.errors import InvalidConfiguration, InvalidTransition, NotFound
import logging

logger = logging.getLogger(__name__)

STATUSES = ("draft", "running", "paused", "completed", "archived")

# Sum of the split may drift this far from 100
TRAFFIC_TOLERANCE = 0.01

DEFAULT_PAGE_SIZE = 50

# action -> (allowed source states, target state)
TRANSITIONS = {
    "start": (("draft", "paused"), "running"),
    "pause": (("running",), "paused"),
    "complete": (("running", "paused"), "completed"),
    "archive": (("paused", "completed"), "archived"),
}


# --- Validation ---
def validate_test_config(variants: list[dict], traffic_split: dict[str, float]):
    """
    Checks the variant set against the traffic split.
    Variants are wire-form dicts (id, name, components, trafficPercentage, isControl).
    Raises InvalidConfiguration on the first violation.
    """
    if len(variants) < 2:
        raise InvalidConfiguration("An A/B test needs at least 2 variants")

    variant_ids = [v["id"] for v in variants]
    if len(set(variant_ids)) != len(variant_ids):
        raise InvalidConfiguration("Variant ids must be unique")

    if set(variant_ids) != set(traffic_split):
        raise InvalidConfiguration("Traffic split must have exactly one entry per variant")

    total_traffic = sum(traffic_split.values())
    if abs(total_traffic - 100) > TRAFFIC_TOLERANCE:
        raise InvalidConfiguration(f"Traffic split must add up to 100%, got {total_traffic:g}%")

    for variant in variants:
        if abs(variant["trafficPercentage"] - traffic_split[variant["id"]]) > TRAFFIC_TOLERANCE:
            raise InvalidConfiguration(
                f"Variant {variant['id']} trafficPercentage does not match its traffic split entry"
            )

    if not any(v.get("isControl") for v in variants):
        raise InvalidConfiguration("At least one variant must be marked as control")


# --- CRUD ---
def create_test(db: Session, test_data: ABTestCreate) -> ABTest:
    """Validates and stores a new test in draft status."""
    variants = [v.model_dump(by_alias=True) for v in test_data.variants]
    traffic_split = dict(test_data.traffic_split)
    validate_test_config(variants, traffic_split)

    db_test = ABTest(
        name=test_data.name,
        description=test_data.description,
        page_id=test_data.page_id,
        variants=variants,
        traffic_split=traffic_split,
        status="draft",
        start_date=to_naive_utc(test_data.start_date),
        end_date=to_naive_utc(test_data.end_date),
        conversion_goal=test_data.conversion_goal,
    )
    db.add(db_test)
    db.commit()
    db.refresh(db_test)
    logger.info("create new A/B test %s success with id: %s", test_data.name, db_test.id)
    return db_test


def get_test(db: Session, test_id: str) -> ABTest:
    test = db.query(ABTest).filter(ABTest.id == test_id).one_or_none()
    if not test:
        raise NotFound(f"A/B test {test_id} not found.")
    return test


def list_tests(
    db: Session,
    status: str | None = None,
    page_id: str | None = None,
    limit: int = DEFAULT_PAGE_SIZE,
    offset: int = 0,
) -> tuple[list[ABTest], int]:
    """
    Lists tests newest first. Archived tests only show up when asked for by status.
    """
    query = db.query(ABTest)
    if status:
        query = query.filter(ABTest.status == status)
    else:
        query = query.filter(ABTest.status != "archived")
    if page_id:
        query = query.filter(ABTest.page_id == page_id)

    total = query.count()
    tests = query.order_by(ABTest.created_at.desc()).limit(limit).offset(offset).all()
    return tests, total


def list_tests_for_page(db: Session, page_id: str) -> list[ABTest]:
    """Every test ever run on a page, archived included."""
    return db.query(ABTest).filter(ABTest.page_id == page_id).order_by(ABTest.created_at.desc()).all()


def update_test(db: Session, cache: CacheClient, test_id: str, update_data: ABTestUpdate) -> ABTest:
    """
    Applies a partial update. Variants and traffic split may only change while
    the test is a draft; live assignments are never invalidated.
    """
    test = get_test(db, test_id)
    patch = update_data.model_dump(exclude_unset=True)

    if test.status == "archived":
        raise InvalidTransition("Archived tests are read-only")

    # explicit nulls leave the allocation untouched
    touches_allocation = patch.get("variants") is not None or patch.get("traffic_split") is not None
    if touches_allocation and test.status != "draft":
        raise InvalidTransition(f"Variants and traffic split can only be edited on draft tests, test is {test.status}")

    if touches_allocation:
        variants = test.variants
        if update_data.variants is not None:
            variants = [v.model_dump(by_alias=True) for v in update_data.variants]
        traffic_split = test.traffic_split
        if update_data.traffic_split is not None:
            traffic_split = dict(update_data.traffic_split)
        validate_test_config(variants, traffic_split)
        test.variants = variants
        test.traffic_split = traffic_split

    for field in ("name", "conversion_goal"):
        if patch.get(field) is not None:
            setattr(test, field, patch[field])
    if "description" in patch:
        test.description = patch["description"]
    for field in ("start_date", "end_date"):
        if field in patch:
            setattr(test, field, to_naive_utc(patch[field]))

    db.commit()
    db.refresh(test)
    cache.invalidate_test(test_id)
    logger.info("updated A/B test %s fields: %s", test_id, sorted(patch))
    return test


def delete_test(db: Session, cache: CacheClient, test_id: str) -> bool:
    test = db.query(ABTest).filter(ABTest.id == test_id).one_or_none()
    if not test:
        return False

    db.delete(test)
    db.commit()
    cache.invalidate_test(test_id)
    logger.info("deleted A/B test %s", test_id)
    return True


# --- Lifecycle ---
def transition_test(db: Session, cache: CacheClient, test_id: str, action: str) -> ABTest:
    """Moves a test through its lifecycle, state is unchanged on failure."""
    allowed_from, target = TRANSITIONS[action]
    test = get_test(db, test_id)

    if test.status not in allowed_from:
        raise InvalidTransition(f"Cannot {action} a {test.status} test")

    test.status = target
    if action == "start" and test.start_date is None:
        test.start_date = utc_now()
    if action == "complete":
        test.end_date = utc_now()

    db.commit()
    db.refresh(test)
    cache.invalidate_test(test_id)
    logger.info("A/B test %s: %s -> %s", test_id, action, target)
    return test


def start_test(db: Session, cache: CacheClient, test_id: str) -> ABTest:
    return transition_test(db, cache, test_id, "start")


def pause_test(db: Session, cache: CacheClient, test_id: str) -> ABTest:
    return transition_test(db, cache, test_id, "pause")


def complete_test(db: Session, cache: CacheClient, test_id: str) -> ABTest:
    return transition_test(db, cache, test_id, "complete")


def archive_test(db: Session, cache: CacheClient, test_id: str) -> ABTest:
    return transition_test(db, cache, test_id, "archive")
