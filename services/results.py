from sqlalchemy.orm import Session
from sqlalchemy import func
from datetime import datetime
from models.ab_tests import ABTestResponse
from models.results import ResultsView, VariantPerformance, TimelineEntry, AnalyticsView, SummaryWinner, SummaryView
from data.database import ABTest, Assignment, ConversionEvent, utc_now
from services.lifecycle import get_test
from services.metrics import get_metrics_map
import math
import logging

logger = logging.getLogger(__name__)

# Chi-square critical value at 95% for one degree of freedom. Applied regardless
# of the number of variants, which understates the bar for 3+ variants.
CRITICAL_VALUE = 3.841
SIGNIFICANT_CONFIDENCE = 0.95

MIN_TOTAL_VISITORS = 100
MIN_DURATION_DAYS = 7
SEASONAL_DURATION_DAYS = 30
OUTPERFORM_RATIO = 1.2


def _rate(conversions: int, visitors: int) -> float:
    return conversions / visitors if visitors > 0 else 0.0


def calculate_statistical_significance(metrics: list[dict]) -> float:
    """
    Pooled chi-square heuristic over the variants' counters.

    Returns 0.95 above the critical value, otherwise chi / critical as a
    continuous indicator. This is not a p-value.
    """
    if len(metrics) < 2:
        return 0.0

    total_visitors = sum(m["visitors"] for m in metrics)
    total_conversions = sum(m["conversions"] for m in metrics)
    if total_visitors == 0 or total_conversions == 0:
        return 0.0

    expected_rate = total_conversions / total_visitors
    chi_square = 0.0
    for m in metrics:
        if m["visitors"] == 0:
            continue
        expected = m["visitors"] * expected_rate
        if expected > 0:
            chi_square += (m["conversions"] - expected) ** 2 / expected

    if chi_square > CRITICAL_VALUE:
        return SIGNIFICANT_CONFIDENCE
    return max(0.0, chi_square / CRITICAL_VALUE)


def compute_results(variants: list[dict], metrics: dict[str, dict]) -> ResultsView:
    """
    Rates, significance and the informational winner for one test.

    `variants` is the test's ordered variant list, `metrics` maps variant id to
    {"visitors", "conversions", "conversion_value"}. The winner is the highest
    rate among variants with visitors (earliest variant on ties) and is not
    gated on significance; callers acting on it must check the significance.
    """
    conversions: dict[str, int] = {}
    conversion_rates: dict[str, float] = {}
    observed = []

    for variant in variants:
        counts = metrics.get(variant["id"], {"visitors": 0, "conversions": 0})
        conversions[variant["id"]] = counts["conversions"]
        conversion_rates[variant["id"]] = _rate(counts["conversions"], counts["visitors"])
        if counts["visitors"] > 0:
            observed.append((variant["id"], counts))

    total_visitors = sum(metrics.get(v["id"], {"visitors": 0})["visitors"] for v in variants)

    if len(observed) < 2:
        return ResultsView(
            total_visitors=total_visitors,
            conversions=conversions,
            conversion_rates=conversion_rates,
            statistical_significance=0.0,
            winner=None,
            confidence=0.0,
        )

    significance = calculate_statistical_significance([counts for _, counts in observed])

    winner = None
    for variant_id, _ in observed:
        if winner is None or conversion_rates[variant_id] > conversion_rates[winner]:
            winner = variant_id

    return ResultsView(
        total_visitors=total_visitors,
        conversions=conversions,
        conversion_rates=conversion_rates,
        statistical_significance=significance,
        winner=winner,
        confidence=significance,
    )


def calculate_variant_confidence(baseline: dict, current: dict) -> float:
    """Two-proportion z-test of a variant against the control, bucketed into a confidence level."""
    if baseline["visitors"] == 0 or current["visitors"] == 0:
        return 0.0

    n1 = baseline["visitors"]
    n2 = current["visitors"]
    p1 = baseline["conversions"] / n1
    p2 = current["conversions"] / n2

    pooled = (baseline["conversions"] + current["conversions"]) / (n1 + n2)
    se = math.sqrt(pooled * (1 - pooled) * (1 / n1 + 1 / n2))
    if se == 0:
        return 0.0

    z = abs(p2 - p1) / se
    if z > 2.58:
        return 0.99
    if z > 1.96:
        return 0.95
    if z > 1.65:
        return 0.90
    if z > 1.28:
        return 0.80

    # Scale linearly below 80%
    return min(0.75, z / 1.28 * 0.75)


def get_results(db: Session, test_id: str) -> ResultsView:
    test = get_test(db, test_id)
    return compute_results(test.variants, get_metrics_map(db, test))


def build_timeline(db: Session, test: ABTest) -> list[TimelineEntry]:
    """Visitors (by assignment day) and conversions (by event day) per UTC day and variant."""
    visitor_day = func.date(Assignment.assigned_at)
    visitor_rows = db.query(
        visitor_day,
        Assignment.variant_id,
        func.count(Assignment.id).label('visitors')
    ).filter(
        Assignment.test_id == test.id
    ).group_by(visitor_day, Assignment.variant_id).all()

    conversion_day = func.date(ConversionEvent.created_at)
    conversion_rows = db.query(
        conversion_day,
        ConversionEvent.variant_id,
        func.count(ConversionEvent.id).label('conversions')
    ).filter(
        ConversionEvent.test_id == test.id
    ).group_by(conversion_day, ConversionEvent.variant_id).all()

    buckets: dict[tuple[str, str], dict[str, int]] = {}
    for day, variant_id, visitors in visitor_rows:
        buckets.setdefault((str(day), variant_id), {"visitors": 0, "conversions": 0})["visitors"] = visitors
    for day, variant_id, conversions in conversion_rows:
        buckets.setdefault((str(day), variant_id), {"visitors": 0, "conversions": 0})["conversions"] = conversions

    order = {v["id"]: index for index, v in enumerate(test.variants)}
    keys = sorted(buckets, key=lambda k: (k[0], order.get(k[1], len(order)), k[1]))

    return [
        TimelineEntry(date=day, variant_id=variant_id, **buckets[(day, variant_id)])
        for day, variant_id in keys
    ]


def build_variant_performance(test: ABTest, metrics: dict[str, dict]) -> dict[str, VariantPerformance]:
    performance: dict[str, VariantPerformance] = {}
    for variant in test.variants:
        counts = metrics[variant["id"]]
        performance[variant["id"]] = VariantPerformance(
            visitors=counts["visitors"],
            conversions=counts["conversions"],
            conversion_rate=_rate(counts["conversions"], counts["visitors"]),
            conversion_value=counts["conversion_value"],
            average_value=counts["conversion_value"] / counts["conversions"] if counts["conversions"] > 0 else 0.0,
        )

    control = test.control_variant()
    if control:
        baseline = metrics[control["id"]]
        for variant in test.variants:
            if variant["id"] == control["id"]:
                continue
            performance[variant["id"]].confidence = calculate_variant_confidence(baseline, metrics[variant["id"]])

    return performance


def get_detailed_analytics(db: Session, test_id: str) -> AnalyticsView:
    test = get_test(db, test_id)
    metrics = get_metrics_map(db, test)

    return AnalyticsView(
        results=compute_results(test.variants, metrics),
        timeline=build_timeline(db, test),
        variant_performance=build_variant_performance(test, metrics),
    )


def duration_in_days(test: ABTest, now: datetime | None = None) -> int:
    """Whole days from start (or creation) to end (or now), rounded up."""
    start = test.start_date or test.created_at
    end = test.end_date or now or utc_now()
    seconds = (end - start).total_seconds()
    return max(0, math.ceil(seconds / 86400))


def _improvement(winner_rate: float, control_rate: float) -> float:
    return (winner_rate - control_rate) / control_rate * 100 if control_rate > 0 else 0.0


def generate_recommendations(
    test: ABTest,
    results: ResultsView,
    variant_performance: dict[str, VariantPerformance],
    duration: int,
) -> list[str]:
    recommendations: list[str] = []

    if results.total_visitors < MIN_TOTAL_VISITORS:
        recommendations.append(
            f"Collect more data before making decisions. Aim for at least {MIN_TOTAL_VISITORS} visitors per variant."
        )

    if results.statistical_significance < SIGNIFICANT_CONFIDENCE:
        recommendations.append(
            "Results are not statistically significant. Continue running the test or increase sample size."
        )

    if results.winner and results.confidence >= SIGNIFICANT_CONFIDENCE:
        winner = test.find_variant(results.winner)
        control = test.control_variant()
        if winner and control:
            winner_rate = results.conversion_rates.get(results.winner, 0.0)
            control_rate = results.conversion_rates.get(control["id"], 0.0)
            if winner_rate and control_rate:
                improvement = _improvement(winner_rate, control_rate)
                recommendations.append(
                    f"Implement {winner['name']} - it shows {improvement:.1f}% improvement "
                    f"with {results.confidence * 100:.1f}% confidence."
                )

    if duration < MIN_DURATION_DAYS:
        recommendations.append("Run the test for at least one week to account for weekly patterns in user behavior.")

    if duration > SEASONAL_DURATION_DAYS:
        recommendations.append("Consider seasonal effects - results may vary across different time periods.")

    ranked = sorted(variant_performance.items(), key=lambda item: item[1].conversion_rate, reverse=True)
    if len(ranked) > 1:
        best_id, best = ranked[0]
        _, worst = ranked[-1]
        if best.conversion_rate > worst.conversion_rate * OUTPERFORM_RATIO:
            best_variant = test.find_variant(best_id)
            name = best_variant["name"] if best_variant else "Top variant"
            recommendations.append(
                f"{name} significantly outperforms others. Consider using its elements in future tests."
            )

    return recommendations


def get_test_summary(db: Session, test_id: str, now: datetime | None = None) -> SummaryView:
    """Dashboard view: duration, totals, the winner against control, and recommendations."""
    test = get_test(db, test_id)
    analytics = get_detailed_analytics(db, test_id)
    results = analytics.results

    duration = duration_in_days(test, now)
    total_visitors = results.total_visitors
    total_conversions = sum(results.conversions.values())

    winner = None
    if results.winner:
        winner_variant = test.find_variant(results.winner)
        control = test.control_variant()
        if winner_variant and control:
            winner = SummaryWinner(
                variant_id=results.winner,
                variant_name=winner_variant["name"],
                improvement=_improvement(
                    results.conversion_rates[results.winner],
                    results.conversion_rates.get(control["id"], 0.0),
                ),
                confidence=results.confidence,
            )

    logger.debug("summary for test %s: %d visitors over %d days", test_id, total_visitors, duration)

    return SummaryView(
        test=ABTestResponse.model_validate(test),
        status=test.status,
        duration=duration,
        total_visitors=total_visitors,
        total_conversions=total_conversions,
        overall_conversion_rate=_rate(total_conversions, total_visitors),
        winner=winner,
        recommendations=generate_recommendations(test, results, analytics.variant_performance, duration),
    )
