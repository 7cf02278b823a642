from pydantic import Field
from models.ab_tests import CamelModel, ABTestResponse


class ResultsView(CamelModel):
    """Schema returned by GET /ab-tests/{id}/results."""
    total_visitors: int
    conversions: dict[str, int]
    conversion_rates: dict[str, float]  # conversions / visitors, 0 when no visitors
    # Chi-square heuristic, not a p-value
    statistical_significance: float
    winner: str | None = None
    confidence: float = 0.0


class VariantPerformance(CamelModel):
    visitors: int
    conversions: int
    conversion_rate: float
    conversion_value: float
    average_value: float
    confidence: float = 0.0


class TimelineEntry(CamelModel):
    date: str  # YYYY-MM-DD, UTC
    variant_id: str
    visitors: int
    conversions: int


class AnalyticsView(CamelModel):
    """Schema returned by GET /ab-tests/{id}/analytics."""
    results: ResultsView
    timeline: list[TimelineEntry]
    variant_performance: dict[str, VariantPerformance]


class SummaryWinner(CamelModel):
    variant_id: str
    variant_name: str
    improvement: float  # percent over control
    confidence: float


class SummaryView(CamelModel):
    """Schema returned by GET /ab-tests/{id}/summary."""
    test: ABTestResponse
    status: str
    duration: int  # days
    total_visitors: int
    total_conversions: int
    overall_conversion_rate: float
    winner: SummaryWinner | None = None
    recommendations: list[str] = Field(default_factory=list)
