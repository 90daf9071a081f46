"""Per-variant statistics computed from the sessions and events tables."""

import math
from datetime import datetime, timezone
from typing import Dict, List, Optional

import ibis
import numpy as np
import pandas as pd

from uxprobe.schemas import (
    ERROR_TYPES,
    Outcome,
    TestAnalytics,
    TimeBucket,
    VariantStats,
)
from uxprobe.server import registry

# Half-open [lower, upper) millisecond ranges, always reported in this order.
TIME_BUCKET_EDGES = [0, 30_000, 60_000, 120_000, np.inf]
TIME_BUCKET_LABELS = ["0-30s", "30-60s", "60-120s", "120s+"]


def round_half_up(value: float) -> int:
    """Rounds .5 away from zero for positive values, unlike Python's round()."""
    return int(math.floor(value + 0.5))


def percentage(count: int, total: int) -> float:
    """count/total as a percentage with one decimal place; 0 when total is 0."""
    if total == 0:
        return 0
    return round_half_up(count / total * 100 * 10) / 10


def lower_median(sorted_values: pd.Series) -> int:
    """The element at floor(n/2) of an ascending series; 0 when empty."""
    if sorted_values.empty:
        return 0
    return int(sorted_values.iloc[len(sorted_values) // 2])


def time_distribution(durations: pd.Series) -> List[TimeBucket]:
    """Four-bucket histogram of completion times with explicit zero counts."""
    buckets = pd.cut(
        durations.astype("float64"),
        bins=TIME_BUCKET_EDGES,
        right=False,
        labels=TIME_BUCKET_LABELS,
    )
    counts = buckets.value_counts(sort=False)
    return [
        TimeBucket(bucket=label, count=int(counts.get(label, 0)))
        for label in TIME_BUCKET_LABELS
    ]


def _variant_sessions(conn: ibis.BaseBackend, test_id: str, variant: str):
    sessions = conn.table("sessions")
    return sessions.filter(
        (sessions.test_id == test_id) & (sessions.variant == variant)
    )


def completion_durations(
    conn: ibis.BaseBackend, test_id: str, variant: str
) -> pd.Series:
    """Durations of completed sessions with a known duration, ascending."""
    scoped = _variant_sessions(conn, test_id, variant)
    completed = scoped.filter(
        (scoped.outcome == Outcome.COMPLETED.value) & scoped.duration_ms.notnull()
    )
    df = completed.select("duration_ms").order_by("duration_ms").execute()
    return df["duration_ms"].astype("int64").sort_values(ignore_index=True)


def errors_by_type(conn: ibis.BaseBackend, test_id: str, variant: str) -> Dict[str, int]:
    """Counts of error events, joined to the variant through their session."""
    scoped = _variant_sessions(conn, test_id, variant)
    events = conn.table("events")
    owned = events.semi_join(scoped, events.session_id == scoped["id"])
    types = owned.filter(owned["type"].isin(ERROR_TYPES)).select("type").execute()
    counts = types["type"].value_counts()
    return {str(name): int(counts[name]) for name in sorted(counts.index)}


def compute_variant_stats(
    conn: ibis.BaseBackend, test_id: str, variant: str
) -> VariantStats:
    """Computes VariantStats for one (test, variant) pair. Read-only."""
    scoped = _variant_sessions(conn, test_id, variant)
    total = int(scoped.count().execute())
    completed = int(
        scoped.filter(scoped.outcome == Outcome.COMPLETED.value).count().execute()
    )
    abandoned = int(
        scoped.filter(scoped.outcome == Outcome.ABANDONED.value).count().execute()
    )

    durations = completion_durations(conn, test_id, variant)
    has_durations = not durations.empty

    return VariantStats(
        sessions=total,
        completed=completed,
        abandoned=abandoned,
        completion_rate=percentage(completed, total),
        abandon_rate=percentage(abandoned, total),
        avg_completion_time_ms=round_half_up(durations.mean()) if has_durations else 0,
        median_completion_time_ms=lower_median(durations),
        min_completion_time_ms=int(durations.min()) if has_durations else 0,
        max_completion_time_ms=int(durations.max()) if has_durations else 0,
        errors_by_type=errors_by_type(conn, test_id, variant),
        time_distribution=time_distribution(durations),
    )


def variants_for_test(conn: ibis.BaseBackend, test_id: str) -> List[str]:
    """Declared variants first, then any other variant seen in sessions."""
    test = registry.get_test(conn, test_id)
    declared = list(test.variants) if test else []

    sessions = conn.table("sessions")
    observed = (
        sessions.filter(sessions.test_id == test_id)
        .select("variant")
        .distinct()
        .execute()["variant"]
    )
    extra = sorted(v for v in observed if v not in declared)
    return declared + extra


def compute_analytics(conn: ibis.BaseBackend, test_id: str) -> Optional[TestAnalytics]:
    """
    Analytics for every variant of a test.

    Returns None when the test is neither registered nor has any sessions.
    """
    test = registry.get_test(conn, test_id)
    variants = variants_for_test(conn, test_id)
    if test is None and not variants:
        return None

    analytics = TestAnalytics(
        test_id=test_id,
        test_name=test.name if test else None,
        description=test.description if test else None,
        computed_at=datetime.now(timezone.utc).isoformat(),
    )
    for variant in variants:
        stats = compute_variant_stats(conn, test_id, variant)
        analytics.variants[variant] = stats
        analytics.sample_size += stats.sessions
    return analytics


def summarise_tests(conn: ibis.BaseBackend, project_id: Optional[str] = None) -> List[dict]:
    """Registered tests with their session totals, newest first."""
    sessions = conn.table("sessions")
    summaries = []
    for test in registry.list_tests(conn, project_id=project_id):
        scoped = sessions.filter(sessions.test_id == test.id)
        total = int(scoped.count().execute())
        completed = int(
            scoped.filter(scoped.outcome == Outcome.COMPLETED.value).count().execute()
        )
        summaries.append(
            {
                **test.model_dump(by_alias=True, exclude={"tasks"}),
                "totalSessions": total,
                "completionRate": percentage(completed, total),
            }
        )
    return summaries
