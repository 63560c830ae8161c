"""Daily roll-up of geo-grid check results with trend deltas."""

import logging
from collections import OrderedDict
from datetime import date, timedelta
from typing import Any, Optional

from sqlalchemy import desc, select
from sqlalchemy.orm import Session

from rankgrid.database import get_session
from rankgrid.models.geo_grid import (
    CheckResult,
    CheckStatus,
    DailySummary,
    PositionBucket,
    SummaryStatus,
)
from rankgrid.modules.geo_grid.buckets import visibility_weight

logger = logging.getLogger(__name__)

_BUCKETS = [PositionBucket.TOP3, PositionBucket.TOP10, PositionBucket.TOP20, PositionBucket.NONE]


def _pct(count: int, total: int) -> float:
    return round(100.0 * count / total, 1) if total else 0.0


def _stats(rows: list[CheckResult]) -> dict[str, Any]:
    """Bucket counts, percentages, mean position and score over ``rows``."""
    valid = [r for r in rows if r.status == CheckStatus.OK.value]
    counts = {b: 0 for b in _BUCKETS}
    for row in valid:
        counts[PositionBucket(row.position_bucket or PositionBucket.NONE.value)] += 1
    positions = [r.position for r in valid if r.position is not None]
    n_valid = len(valid)
    score = sum(visibility_weight(b) * c for b, c in counts.items())
    stats = {
        "total_checks": len(rows),
        "valid_checks": n_valid,
        "error_count": len(rows) - n_valid,
        "avg_position": round(sum(positions) / len(positions), 2) if positions else None,
        "visibility_score": round(100.0 * score / n_valid, 1) if n_valid else 0.0,
    }
    for bucket, count in counts.items():
        stats[f"{bucket.value}_count"] = count
        stats[f"{bucket.value}_pct"] = _pct(count, n_valid)
    return stats


def _deltas(
    current_score: float,
    current_avg: Optional[float],
    prev_score: Optional[float],
    prev_avg: Optional[float],
) -> tuple[Optional[float], Optional[float]]:
    """Score delta is current - previous; position delta is previous - current."""
    score_delta = round(current_score - prev_score, 1) if prev_score is not None else None
    pos_delta = (
        round(prev_avg - current_avg, 2)
        if prev_avg is not None and current_avg is not None
        else None
    )
    return score_delta, pos_delta


def summary_to_dict(summary: DailySummary) -> dict[str, Any]:
    return {
        "config_id": summary.config_id,
        "summary_date": summary.summary_date.isoformat(),
        "run_status": summary.run_status,
        "total_checks": summary.total_checks,
        "valid_checks": summary.valid_checks,
        "error_count": summary.error_count,
        "top3_count": summary.top3_count,
        "top10_count": summary.top10_count,
        "top20_count": summary.top20_count,
        "none_count": summary.none_count,
        "top3_pct": summary.top3_pct,
        "top10_pct": summary.top10_pct,
        "top20_pct": summary.top20_pct,
        "none_pct": summary.none_pct,
        "avg_position": summary.avg_position,
        "visibility_score": summary.visibility_score,
        "visibility_delta": summary.visibility_delta,
        "avg_position_delta": summary.avg_position_delta,
        "previous_summary_date": (
            summary.previous_summary_date.isoformat() if summary.previous_summary_date else None
        ),
        "term_breakdown": list(summary.term_breakdown or []),
    }


class SummaryAggregator:
    """Compute and persist one :class:`DailySummary` per (config, date).

    The summary is computed fully in memory and written with a single
    upsert, so reruns on unchanged results reproduce the same row and a
    failure never leaves a half-written summary.

    Usage::

        aggregator = SummaryAggregator()
        summary = aggregator.summarize(config_id=1, summary_date=date.today())
        trend = aggregator.get_trend(config_id=1, days=30)
    """

    def summarize(self, config_id: int, summary_date: date) -> dict[str, Any]:
        with get_session() as session:
            rows = session.scalars(
                select(CheckResult)
                .where(CheckResult.config_id == config_id, CheckResult.check_date == summary_date)
                .order_by(CheckResult.tracked_term_id, CheckResult.point_label)
            ).all()
            existing = self._get_row(session, config_id, summary_date)

            if not rows and existing is not None and (
                existing.run_status == SummaryStatus.INSUFFICIENT_CREDITS.value
            ):
                return summary_to_dict(existing)

            values = self._compute(session, config_id, summary_date, list(rows))
            if existing is None:
                existing = DailySummary(config_id=config_id, summary_date=summary_date)
                session.add(existing)
            for key, value in values.items():
                setattr(existing, key, value)
            session.flush()
            result = summary_to_dict(existing)

        logger.info(
            "Summary for config %s on %s: status=%s score=%.1f valid=%d/%d",
            config_id, summary_date, result["run_status"], result["visibility_score"],
            result["valid_checks"], result["total_checks"],
        )
        return result

    def _compute(
        self, session: Session, config_id: int, summary_date: date, rows: list[CheckResult]
    ) -> dict[str, Any]:
        overall = _stats(rows)
        previous = session.scalars(
            select(DailySummary)
            .where(
                DailySummary.config_id == config_id,
                DailySummary.summary_date < summary_date,
                DailySummary.valid_checks > 0,
            )
            .order_by(desc(DailySummary.summary_date))
            .limit(1)
        ).first()

        if overall["valid_checks"] == 0:
            status = SummaryStatus.NO_RESULTS
        elif overall["error_count"]:
            status = SummaryStatus.PARTIAL
        else:
            status = SummaryStatus.COMPLETED

        has_baseline = previous is not None and overall["valid_checks"] > 0
        score_delta, pos_delta = _deltas(
            overall["visibility_score"],
            overall["avg_position"],
            previous.visibility_score if has_baseline else None,
            previous.avg_position if has_baseline else None,
        )

        prev_terms = {}
        if has_baseline:
            prev_terms = {t["tracked_term_id"]: t for t in (previous.term_breakdown or [])}

        by_term: "OrderedDict[int, list[CheckResult]]" = OrderedDict()
        for row in rows:
            by_term.setdefault(row.tracked_term_id, []).append(row)

        breakdown = []
        for term_id, term_rows in by_term.items():
            stats = _stats(term_rows)
            prev = prev_terms.get(term_id)
            t_score_delta, t_pos_delta = _deltas(
                stats["visibility_score"],
                stats["avg_position"],
                prev["visibility_score"] if prev and stats["valid_checks"] else None,
                prev["avg_position"] if prev and stats["valid_checks"] else None,
            )
            breakdown.append({
                "tracked_term_id": term_id,
                "keyword_id": term_rows[0].keyword_id,
                "search_query": term_rows[0].search_query,
                **stats,
                "visibility_delta": t_score_delta,
                "avg_position_delta": t_pos_delta,
            })

        return {
            **overall,
            "run_status": status.value,
            "visibility_delta": score_delta,
            "avg_position_delta": pos_delta,
            "previous_summary_date": previous.summary_date if has_baseline else None,
            "term_breakdown": breakdown,
        }

    @staticmethod
    def _get_row(session: Session, config_id: int, summary_date: date) -> Optional[DailySummary]:
        return session.scalars(
            select(DailySummary).where(
                DailySummary.config_id == config_id,
                DailySummary.summary_date == summary_date,
            )
        ).first()

    def record_insufficient_credits(self, config_id: int, summary_date: date) -> bool:
        """Flag a skipped run for the date unless a summary already exists.

        Returns True when a new row was written.
        """
        with get_session() as session:
            if self._get_row(session, config_id, summary_date) is not None:
                return False
            session.add(
                DailySummary(
                    config_id=config_id,
                    summary_date=summary_date,
                    run_status=SummaryStatus.INSUFFICIENT_CREDITS.value,
                    term_breakdown=[],
                )
            )
        logger.warning("Config %s skipped on %s: insufficient credits", config_id, summary_date)
        return True

    def get_summary(self, config_id: int, summary_date: date) -> Optional[dict[str, Any]]:
        with get_session() as session:
            row = self._get_row(session, config_id, summary_date)
            return summary_to_dict(row) if row else None

    def get_trend(
        self, config_id: int, days: int = 30, until: Optional[date] = None
    ) -> list[dict[str, Any]]:
        """Summaries for the last ``days`` days up to ``until``, oldest first."""
        end = until or date.today()
        start = end - timedelta(days=days - 1)
        with get_session() as session:
            rows = session.scalars(
                select(DailySummary)
                .where(
                    DailySummary.config_id == config_id,
                    DailySummary.summary_date >= start,
                    DailySummary.summary_date <= end,
                )
                .order_by(DailySummary.summary_date)
            ).all()
            return [summary_to_dict(r) for r in rows]
