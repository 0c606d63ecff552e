"""
Item statistics and the daily focus list.

Week and month boundaries are computed in UTC, like the stored
``created``/``modified`` timestamps.  ``due`` dates are compared as plain
YYYY-MM-DD strings against ``today``.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional

from sparkle.store import ItemStore
from sparkle.types import Item

logger = logging.getLogger(__name__)

FOCUS_LIMIT = 5


def _boundaries(now: datetime) -> Dict[str, str]:
    today = now.date()
    monday = today - timedelta(days=today.weekday())
    first = today.replace(day=1)
    return {
        "today": today.isoformat(),
        "week": datetime.combine(monday, time(), tzinfo=timezone.utc).isoformat(),
        "month": datetime.combine(first, time(), tzinfo=timezone.utc).isoformat(),
    }


def get_stats(store: ItemStore, now: Optional[datetime] = None) -> Dict[str, int]:
    """
    Aggregate counters over the whole store.

    ``exported_*``/``done_*`` use ``modified`` as the time the item reached
    that status.  ``overdue_count`` counts tasks with a past due date that
    are neither done nor archived.
    """
    b = _boundaries(now or datetime.now(timezone.utc))
    row = store.read_rows(
        """SELECT
            COALESCE(SUM(CASE WHEN kind='note' AND status='fleeting' THEN 1 ELSE 0 END), 0) AS fleeting_count,
            COALESCE(SUM(CASE WHEN kind='note' AND status='developing' THEN 1 ELSE 0 END), 0) AS developing_count,
            COALESCE(SUM(CASE WHEN kind='note' AND status='permanent' THEN 1 ELSE 0 END), 0) AS permanent_count,
            COALESCE(SUM(CASE WHEN kind='note' AND status='exported' AND modified >= :week THEN 1 ELSE 0 END), 0) AS exported_this_week,
            COALESCE(SUM(CASE WHEN kind='note' AND status='exported' AND modified >= :month THEN 1 ELSE 0 END), 0) AS exported_this_month,
            COALESCE(SUM(CASE WHEN kind='task' AND status='active' THEN 1 ELSE 0 END), 0) AS active_count,
            COALESCE(SUM(CASE WHEN kind='task' AND status='done' AND modified >= :week THEN 1 ELSE 0 END), 0) AS done_this_week,
            COALESCE(SUM(CASE WHEN kind='task' AND status='done' AND modified >= :month THEN 1 ELSE 0 END), 0) AS done_this_month,
            COALESCE(SUM(CASE WHEN kind='scratch' AND status='draft' THEN 1 ELSE 0 END), 0) AS scratch_count,
            COALESCE(SUM(CASE WHEN created >= :week THEN 1 ELSE 0 END), 0) AS created_this_week,
            COALESCE(SUM(CASE WHEN created >= :month THEN 1 ELSE 0 END), 0) AS created_this_month,
            COALESCE(SUM(CASE WHEN kind='task' AND due < :today
                              AND status NOT IN ('done','archived') THEN 1 ELSE 0 END), 0) AS overdue_count
        FROM items""",
        b,
    )[0]
    return {key: int(row[key]) for key in row.keys()}


def get_focus_items(
    store: ItemStore,
    today: Optional[date] = None,
    limit: int = FOCUS_LIMIT,
) -> List[Item]:
    """
    Suggest up to ``limit`` active tasks to work on today.

    Ranking:
        1. overdue (oldest due date first)
        2. due today
        3. due within the next 7 days (earliest first)
        4. high priority without a near due date (oldest first)
    """
    day = (today or datetime.now(timezone.utc).date()).isoformat()
    rows = store.read_rows(
        """SELECT id FROM (
            SELECT id, created, due,
                CASE
                    WHEN due < :today THEN 1
                    WHEN due = :today THEN 2
                    WHEN due > :today AND due <= date(:today, '+7 days') THEN 3
                    WHEN priority = 'high' THEN 4
                    ELSE 5
                END AS focus_rank
            FROM items
            WHERE kind = 'task' AND status = 'active'
        ) ranked
        WHERE focus_rank < 5
        ORDER BY focus_rank ASC,
                 CASE WHEN focus_rank < 4 THEN due ELSE created END ASC
        LIMIT :limit""",
        {"today": day, "limit": limit},
    )
    return store.get_many([r["id"] for r in rows])


def format_stats(stats: Dict[str, Any]) -> str:
    """Multi-line summary used by the CLI and the chat commands."""
    return "\n".join([
        "Sparkle stats",
        "-- notes --",
        f"fleeting: {stats['fleeting_count']} | developing: {stats['developing_count']}"
        f" | permanent: {stats['permanent_count']}",
        f"exported this week: {stats['exported_this_week']}"
        f" | this month: {stats['exported_this_month']}",
        "-- tasks --",
        f"active: {stats['active_count']} | done this week: {stats['done_this_week']}"
        f" | this month: {stats['done_this_month']}",
        "-- scratch --",
        f"drafts: {stats['scratch_count']}",
        "-- overall --",
        f"created this week: {stats['created_this_week']}"
        f" | this month: {stats['created_this_month']}"
        f" | overdue: {stats['overdue_count']}",
    ])
