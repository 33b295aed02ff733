"""Read-side helpers over CRM collections -- pipeline board and activity metrics.

Pure functions; nothing here touches the store or the network. The
collection-level helpers (build_pipeline, summarize_activities) are shared
with the backends' reporting methods, the state-level ones are what pages
call with the current store snapshot.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from src.app.crm.schemas import (
    Activity,
    ActivityMetrics,
    ActivityStatus,
    Contact,
    Deal,
    DealStage,
    MetricsTimeframe,
    PipelineStage,
    PipelineSummary,
    RelatedToType,
)
from src.app.crm.store import CRMState

TIMEFRAME_WINDOWS: dict[MetricsTimeframe, timedelta] = {
    MetricsTimeframe.DAY: timedelta(days=1),
    MetricsTimeframe.WEEK: timedelta(weeks=1),
    MetricsTimeframe.MONTH: timedelta(days=30),
}


# ── Collection helpers ──────────────────────────────────────────────────────


def build_pipeline(deals: Iterable[Deal]) -> list[PipelineStage]:
    """Partition deals by stage, in board order, empty stages included."""
    columns = {stage: PipelineStage(stage=stage) for stage in DealStage}
    for deal in deals:
        column = columns[deal.stage]
        column.deals.append(deal)
        column.count += 1
        column.total_value += deal.value
        column.weighted_value += deal.weighted_value
    return list(columns.values())


def summarize_pipeline(deals: Iterable[Deal]) -> PipelineSummary:
    deals = list(deals)
    won = sum(1 for d in deals if d.stage == DealStage.CLOSED_WON)
    lost = sum(1 for d in deals if d.stage == DealStage.CLOSED_LOST)
    closed = won + lost
    return PipelineSummary(
        total_deals=len(deals),
        total_value=sum((d.value for d in deals), Decimal("0")),
        weighted_value=sum((d.weighted_value for d in deals), Decimal("0")),
        win_rate=(won / closed) * 100 if closed else 0.0,
    )


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def summarize_activities(
    activities: Iterable[Activity],
    timeframe: MetricsTimeframe,
    now: datetime | None = None,
) -> ActivityMetrics:
    """Totals for activities due inside the trailing timeframe window.

    Activities without a due date fall back to their creation time; those
    with neither are counted regardless of window. Overdue means still
    planned with a due date before ``now``.
    """
    now = _aware(now or datetime.now(timezone.utc))
    since = now - TIMEFRAME_WINDOWS[timeframe]

    metrics = ActivityMetrics(timeframe=timeframe)
    for activity in activities:
        anchor = activity.due_date or activity.created_at
        if anchor is not None and not (since <= _aware(anchor) <= now):
            continue

        metrics.total += 1
        metrics.by_type[activity.type.value] = metrics.by_type.get(activity.type.value, 0) + 1
        if activity.status == ActivityStatus.COMPLETED:
            metrics.completed += 1
        elif (
            activity.status == ActivityStatus.PLANNED
            and activity.due_date is not None
            and _aware(activity.due_date) < now
        ):
            metrics.overdue += 1

    if metrics.total:
        metrics.completion_rate = (metrics.completed / metrics.total) * 100
    return metrics


# ── State selectors ─────────────────────────────────────────────────────────


def deals_by_stage(state: CRMState) -> list[PipelineStage]:
    return build_pipeline(state.deals)


def pipeline_summary(state: CRMState) -> PipelineSummary:
    return summarize_pipeline(state.deals)


def activity_metrics(
    state: CRMState,
    timeframe: MetricsTimeframe,
    now: datetime | None = None,
) -> ActivityMetrics:
    return summarize_activities(state.activities, timeframe, now)


def activities_for(
    state: CRMState, related_type: RelatedToType, related_id: str
) -> list[Activity]:
    """Activities attached to one contact, company or deal, in store order."""
    return [
        activity
        for activity in state.activities
        if activity.related_to.type == related_type and activity.related_to.id == related_id
    ]


def contacts_for_company(state: CRMState, company_id: str) -> list[Contact]:
    return [contact for contact in state.contacts if contact.company_id == company_id]
