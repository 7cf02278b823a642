from sqlalchemy.orm import Session
from datetime import datetime
from typing import Literal
from models.ab_tests import ABTestResponse
from models.results import AnalyticsView
from data.database import ABTest, utc_now
from services.errors import UnsupportedExportFormat
from services.lifecycle import get_test
from services.results import get_detailed_analytics
import csv
import io
import json
import re
import logging

logger = logging.getLogger(__name__)

ExportFormat = Literal["json", "csv", "xlsx"]

CSV_HEADERS = [
    "Variant ID",
    "Variant Name",
    "Visitors",
    "Conversions",
    "Conversion Rate",
    "Conversion Value",
    "Average Value",
    "Confidence",
]


def export_filename(test_name: str, now: datetime, extension: str) -> str:
    slug = re.sub(r"[^a-zA-Z0-9]", "-", test_name)
    return f"ab-test-{slug}-{now.date().isoformat()}.{extension}"


def analytics_to_csv(test: ABTest, analytics: AnalyticsView) -> str:
    """One row per variant, in the test's variant order."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADERS)

    for variant_id, perf in analytics.variant_performance.items():
        variant = test.find_variant(variant_id)
        writer.writerow([
            variant_id,
            variant["name"] if variant else "Unknown",
            perf.visitors,
            perf.conversions,
            f"{perf.conversion_rate * 100:.2f}%",
            perf.conversion_value,
            f"{perf.average_value:.2f}",
            f"{perf.confidence * 100:.1f}%",
        ])

    return buffer.getvalue()


def export_results(db: Session, test_id: str, fmt: str = "json", now: datetime | None = None) -> dict:
    """Returns {"data", "mime_type", "filename"} for the requested format."""
    test = get_test(db, test_id)
    # xlsx is part of the public format list but has no writer
    if fmt not in ("json", "csv"):
        raise UnsupportedExportFormat(f"Unsupported export format: {fmt}")

    analytics = get_detailed_analytics(db, test_id)
    now = now or utc_now()

    if fmt == "json":
        data = json.dumps({
            "test": ABTestResponse.model_validate(test).model_dump(mode="json", by_alias=True),
            "analytics": analytics.model_dump(mode="json", by_alias=True),
            "exportedAt": now.isoformat(),
        }, indent=2)
        mime_type = "application/json"
    else:
        data = analytics_to_csv(test, analytics)
        mime_type = "text/csv"

    logger.info("exported A/B test %s as %s", test_id, fmt)
    return {"data": data, "mime_type": mime_type, "filename": export_filename(test.name, now, fmt)}
