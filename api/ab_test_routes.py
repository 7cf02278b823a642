from fastapi import APIRouter, Query, Response, status
from sqlalchemy.orm import Session

from models.ab_tests import (
    ABTestCreate, ABTestUpdate, ABTestResponse, ABTestListResponse, TestStatus,
    AssignmentRequest, AssignmentResponse, ConversionCreate, ConversionResponse,
)
from models.results import ResultsView, AnalyticsView, SummaryView
from services import assignment, conversions, export, lifecycle, results
from services.assignment import RandomSource
from services.cache import CacheClient
from services.errors import NotFound
from api.depends import CLIENT_AUTH, DB_DEPENDENCY, CACHE_CLIENT, RANDOM_SOURCE

# Import the Celery task
from celery_tasks.conversion_tasks import insert_conversion_event
from celery.exceptions import CeleryError
from kombu.exceptions import KombuError
from sqlalchemy.exc import SQLAlchemyError
import logging

logger = logging.getLogger(__name__)

ab_test_router = APIRouter(
    prefix="/ab-tests",
    tags=["ab-tests"],
    dependencies=[CLIENT_AUTH],  # CLIENT_AUTH is applied to all routes in this router
)

page_router = APIRouter(
    prefix="/pages",
    tags=["pages"],
    dependencies=[CLIENT_AUTH],
)


# --- Test definitions ---

@ab_test_router.post("", response_model=ABTestResponse, status_code=status.HTTP_201_CREATED)
def create_test_route(test_data: ABTestCreate, db: Session = DB_DEPENDENCY):
    """Create a new A/B test in draft status."""
    return lifecycle.create_test(db, test_data)


@ab_test_router.get("", response_model=ABTestListResponse)
def list_tests_route(
    db: Session = DB_DEPENDENCY,
    status_filter: TestStatus | None = Query(default=None, alias="status"),
    page_id: str | None = Query(default=None, alias="pageId"),
    limit: int = Query(default=lifecycle.DEFAULT_PAGE_SIZE, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
):
    """List tests, newest first. Archived tests are excluded unless status=archived."""
    tests, total = lifecycle.list_tests(db, status=status_filter, page_id=page_id, limit=limit, offset=offset)
    return {"tests": tests, "total": total, "limit": limit, "offset": offset}


@ab_test_router.get("/{test_id}", response_model=ABTestResponse)
def get_test_route(test_id: str, db: Session = DB_DEPENDENCY):
    return lifecycle.get_test(db, test_id)


@ab_test_router.put("/{test_id}", response_model=ABTestResponse)
def update_test_route(
    test_id: str,
    update_data: ABTestUpdate,
    db: Session = DB_DEPENDENCY,
    cache: CacheClient = CACHE_CLIENT,
):
    """Update a test. Variants and traffic split can only change on drafts."""
    return lifecycle.update_test(db, cache, test_id, update_data)


@ab_test_router.delete("/{test_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_test_route(test_id: str, db: Session = DB_DEPENDENCY, cache: CacheClient = CACHE_CLIENT):
    if not lifecycle.delete_test(db, cache, test_id):
        raise NotFound(f"A/B test {test_id} not found.")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- Lifecycle ---

@ab_test_router.post("/{test_id}/start", response_model=ABTestResponse)
def start_test_route(test_id: str, db: Session = DB_DEPENDENCY, cache: CacheClient = CACHE_CLIENT):
    return lifecycle.start_test(db, cache, test_id)


@ab_test_router.post("/{test_id}/pause", response_model=ABTestResponse)
def pause_test_route(test_id: str, db: Session = DB_DEPENDENCY, cache: CacheClient = CACHE_CLIENT):
    return lifecycle.pause_test(db, cache, test_id)


@ab_test_router.post("/{test_id}/complete", response_model=ABTestResponse)
def complete_test_route(test_id: str, db: Session = DB_DEPENDENCY, cache: CacheClient = CACHE_CLIENT):
    return lifecycle.complete_test(db, cache, test_id)


@ab_test_router.post("/{test_id}/archive", response_model=ABTestResponse)
def archive_test_route(test_id: str, db: Session = DB_DEPENDENCY, cache: CacheClient = CACHE_CLIENT):
    return lifecycle.archive_test(db, cache, test_id)


# --- Visitors ---

# POST /ab-tests/{test_id}/assign (The Idempotent Logic)
@ab_test_router.post("/{test_id}/assign", response_model=AssignmentResponse)
def assign_variant_route(
    test_id: str,
    request_data: AssignmentRequest,
    db: Session = DB_DEPENDENCY,
    cache: CacheClient = CACHE_CLIENT,
    rand: RandomSource = RANDOM_SOURCE,
):
    """Get the session's variant. Performs assignment if none exists."""
    return assignment.get_or_create_assignment(db, cache, test_id, request_data.session_id, rand)


@ab_test_router.post("/{test_id}/convert", response_model=ConversionResponse)
def record_conversion_route(
    test_id: str,
    conversion_data: ConversionCreate,
    db: Session = DB_DEPENDENCY,
    cache: CacheClient = CACHE_CLIENT,
):
    """
    Count a conversion for an assigned session.
    Counters update in the request; the event log row is written by a celery worker.
    Once the counters are committed the request succeeds, a failed dispatch only
    loses the timeline row and is reported as taskId=None.
    """
    event_payload = conversions.record_conversion(
        db,
        cache,
        test_id,
        conversion_data.session_id,
        value=conversion_data.conversion_value,
        metadata=conversion_data.metadata,
    )

    # .delay() is non-blocking, the worker appends the event for the timeline
    try:
        task = insert_conversion_event.delay(event_payload)
    except (KombuError, CeleryError, SQLAlchemyError):
        # counters are already committed, only the event log row is lost
        logger.exception("Conversion event for session %s on test %s was not logged.",
                         conversion_data.session_id, test_id)
        return ConversionResponse(success=True, message="Conversion recorded successfully", task_id=None)

    logger.debug("insert_conversion_event task result:%s", task)

    return ConversionResponse(success=True, message="Conversion recorded successfully", task_id=task.id)


# --- Analytics ---

@ab_test_router.get("/{test_id}/results", response_model=ResultsView)
def get_results_route(test_id: str, db: Session = DB_DEPENDENCY):
    return results.get_results(db, test_id)


@ab_test_router.get("/{test_id}/analytics", response_model=AnalyticsView)
def get_analytics_route(test_id: str, db: Session = DB_DEPENDENCY):
    return results.get_detailed_analytics(db, test_id)


@ab_test_router.get("/{test_id}/summary", response_model=SummaryView)
def get_summary_route(test_id: str, db: Session = DB_DEPENDENCY):
    return results.get_test_summary(db, test_id)


@ab_test_router.get("/{test_id}/export")
def export_results_route(
    test_id: str,
    db: Session = DB_DEPENDENCY,
    fmt: export.ExportFormat = Query(default="json", alias="format"),
):
    exported = export.export_results(db, test_id, fmt)
    return Response(
        content=exported["data"],
        media_type=exported["mime_type"],
        headers={"Content-Disposition": f'attachment; filename="{exported["filename"]}"'},
    )


# --- Pages ---

@page_router.get("/{page_id}/ab-tests", response_model=list[ABTestResponse])
def list_page_tests_route(page_id: str, db: Session = DB_DEPENDENCY):
    return lifecycle.list_tests_for_page(db, page_id)
