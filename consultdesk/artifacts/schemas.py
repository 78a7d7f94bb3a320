"""Pydantic schemas for the generated analytics artifacts.

Wire format is camelCase (the chart library's option names); fields are
snake_case in Python via an alias generator. ``partial_model`` derives a
deeply all-optional variant used to validate objects mid-stream.
"""
from functools import lru_cache
from typing import Dict, List, Literal, Optional, Type, Union, get_args, get_origin

from pydantic import BaseModel, ConfigDict, Field, create_model
from pydantic.alias_generators import to_camel

SCHEMA_VERSION = '1'

Trend = Literal['up', 'down', 'stable']
XValue = Union[float, str]


class ArtifactModel(BaseModel):
    model_config = ConfigDict(extra='forbid', alias_generator=to_camel, populate_by_name=True)


# --- shared pieces ---
class ChartTitle(ArtifactModel):
    text: str
    font_color: Optional[str] = None
    font_size: Optional[float] = None


class Axis(ArtifactModel):
    title: str
    prefix: Optional[str] = None
    grid_color: Optional[str] = None
    line_color: Optional[str] = None
    value_format_string: Optional[str] = None


class DataPoint(ArtifactModel):
    x: XValue
    y: float
    label: Optional[str] = None
    tool_tip_content: Optional[str] = None


class ToolTip(ArtifactModel):
    shared: Optional[bool] = None
    content_formatter: Optional[str] = None


class Legend(ArtifactModel):
    vertical_align: Optional[Literal['top', 'bottom', 'center']] = None
    horizontal_align: Optional[Literal['left', 'right', 'center']] = None
    font_size: Optional[float] = None
    font_color: Optional[str] = None


class ValueMetric(ArtifactModel):
    label: str
    value: float
    prefix: Optional[str] = None
    suffix: Optional[str] = None
    color: Optional[str] = None


class ChangeMetric(ArtifactModel):
    label: str
    value: float
    percentage: float
    trend: Trend
    color: Optional[str] = None


# --- burn-rate ---
class BurnRateSeries(ArtifactModel):
    type: Literal['splineArea', 'line', 'column', 'bar']
    name: str
    show_in_legend: Optional[bool] = None
    color: Optional[str] = None
    line_color: Optional[str] = None
    line_thickness: Optional[float] = None
    line_dash_type: Optional[Literal['solid', 'dash', 'dot']] = None
    data_points: List[DataPoint]


class BurnRateChart(ArtifactModel):
    title: ChartTitle
    axis_x: Axis = Field(alias='axisX')
    axis_y: Axis = Field(alias='axisY')
    data: List[BurnRateSeries]
    tool_tip: Optional[ToolTip] = None
    legend: Optional[Legend] = None


class BurnRateMetrics(ArtifactModel):
    current: ValueMetric
    average: ValueMetric
    change: ChangeMetric


class BurnRateArtifact(ArtifactModel):
    chart: BurnRateChart
    metrics: BurnRateMetrics
    summary: str
    timeframe: str
    last_updated: str


# --- revenue-analytics ---
class RevenueSeries(ArtifactModel):
    type: Literal['line', 'column', 'spline', 'area']
    name: str
    color: Optional[str] = None
    data_points: List[DataPoint]


class RevenueChart(ArtifactModel):
    title: ChartTitle
    axis_x: Axis = Field(alias='axisX')
    axis_y: Axis = Field(alias='axisY')
    data: List[RevenueSeries]


class ForecastMetric(ArtifactModel):
    label: str
    value: float
    confidence: Literal['high', 'medium', 'low']


class RevenueMetrics(ArtifactModel):
    total: ValueMetric
    growth: ChangeMetric
    forecast: ForecastMetric


class RevenueAnalyticsArtifact(ArtifactModel):
    chart: RevenueChart
    metrics: RevenueMetrics
    summary: str
    timeframe: str


# --- lead-conversion ---
class FunnelPoint(ArtifactModel):
    y: float
    name: str
    color: Optional[str] = None
    tool_tip_content: Optional[str] = None


class FunnelSeries(ArtifactModel):
    type: Literal['funnel', 'pie', 'doughnut', 'pyramid']
    name: str
    data_points: List[FunnelPoint]


class FunnelChart(ArtifactModel):
    title: ChartTitle
    data: List[FunnelSeries]


class CountMetric(ArtifactModel):
    label: str
    value: float


class RateMetric(ArtifactModel):
    label: str
    value: float
    percentage: float


class LeadConversionMetrics(ArtifactModel):
    total_leads: CountMetric
    conversion_rate: RateMetric
    qualified_leads: CountMetric


class LeadConversionArtifact(ArtifactModel):
    chart: FunnelChart
    metrics: LeadConversionMetrics
    summary: str
    timeframe: str


# --- performance-dashboard ---
class DashboardSeries(ArtifactModel):
    type: str
    name: str
    data_points: List[DataPoint]


class DashboardChartBody(ArtifactModel):
    title: ChartTitle
    data: List[DashboardSeries]


class DashboardChart(ArtifactModel):
    id: str
    title: str
    type: Literal['burn-rate', 'revenue', 'leads', 'custom']
    chart: DashboardChartBody


class OverallMetrics(ArtifactModel):
    health: Literal['excellent', 'good', 'fair', 'poor']
    score: float = Field(ge=0, le=100)
    recommendations: List[str]


class PerformanceDashboardArtifact(ArtifactModel):
    charts: List[DashboardChart]
    overall_metrics: OverallMetrics
    summary: str
    last_updated: str


ARTIFACT_SCHEMAS: Dict[str, Type[ArtifactModel]] = {
    'burn-rate': BurnRateArtifact,
    'revenue-analytics': RevenueAnalyticsArtifact,
    'lead-conversion': LeadConversionArtifact,
    'performance-dashboard': PerformanceDashboardArtifact,
}


def _partial_annotation(annotation):
    if isinstance(annotation, type) and issubclass(annotation, ArtifactModel):
        return partial_model(annotation)
    origin = get_origin(annotation)
    if origin in (list, List):
        (item,) = get_args(annotation)
        return List[_partial_annotation(item)]
    if origin is Union:
        return Union[tuple(_partial_annotation(a) for a in get_args(annotation))]
    return annotation


@lru_cache(maxsize=None)
def partial_model(model: Type[ArtifactModel]) -> Type[ArtifactModel]:
    """Same shape as ``model`` with every field (recursively) optional; unknown keys still rejected."""
    fields = {}
    for name, info in model.model_fields.items():
        annotation = _partial_annotation(info.annotation)
        fields[name] = (Optional[annotation], Field(default=None, alias=info.alias))
    return create_model(f'Partial{model.__name__}', __base__=ArtifactModel, **fields)
