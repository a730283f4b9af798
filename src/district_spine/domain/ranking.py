"""Borda count ranking across club growth, payment growth and distinguished %.

For N districts with metrics, each category ranks districts by value
(descending) using competition ranking, so equal values share a rank and
the next distinct value takes rank ``i + 1``. A district earns
``N - rank + 1`` points per category; the aggregate score is the sum.

Metrics come from the first ``districtPerformance`` row of each district.
Districts without such a row pass through unchanged and unranked.

Example:
    >>> calculator = BordaCountRankingCalculator()
    >>> ranked = await calculator.calculate_rankings(districts)
    >>> data = calculator.build_rankings_data(ranked, "2024-01-31")
    >>> data.rankings[0].overall_rank
    1
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from district_spine.core.logging import get_logger
from district_spine.core.timestamps import utc_now_iso
from district_spine.domain.models import (
    AllDistrictsRankingsData,
    AllDistrictsRankingsMetadata,
    DistrictRanking,
    DistrictStatistics,
)

logger = get_logger(__name__)

RANKING_VERSION = "2.0"

_LEADING_FLOAT = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)")
_LEADING_INT = re.compile(r"^[+-]?\d+")


def parse_percentage(value: Any) -> float:
    """``"12.5%"`` → 12.5; anything unparseable → 0."""
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        match = _LEADING_FLOAT.match(value.replace("%", "").strip())
        return float(match.group(0)) if match else 0.0
    return 0.0


def parse_number(value: Any) -> int:
    """``"1,234"`` → 1234; anything unparseable → 0."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        match = _LEADING_INT.match(value.replace(",", "").strip())
        return int(match.group(0)) if match else 0
    return 0


@dataclass
class RankingMetrics:
    district_id: str
    district_name: str
    region: str
    club_growth_percent: float
    payment_growth_percent: float
    distinguished_percent: float
    paid_clubs: int
    paid_club_base: int
    total_payments: int
    payment_base: int
    distinguished_clubs: int
    active_clubs: int
    select_distinguished: int
    presidents_distinguished: int


@dataclass
class CategoryRanking:
    district_id: str
    rank: int
    borda_points: int
    value: float


def rank_category(metrics: list[RankingMetrics], value_field: str) -> list[CategoryRanking]:
    """Competition-rank ``metrics`` by ``value_field`` (1, 1, 3 on ties)."""
    ordered = sorted(metrics, key=lambda m: getattr(m, value_field), reverse=True)
    rankings: list[CategoryRanking] = []
    current_rank = 1
    for i, metric in enumerate(ordered):
        value = getattr(metric, value_field)
        if i > 0 and value != getattr(ordered[i - 1], value_field):
            current_rank = i + 1
        rankings.append(
            CategoryRanking(
                district_id=metric.district_id,
                rank=current_rank,
                borda_points=len(metrics) - current_rank + 1,
                value=value,
            )
        )
    return rankings


class BordaCountRankingCalculator:
    """Ranking service implementing the Borda count method."""

    def get_ranking_version(self) -> str:
        return RANKING_VERSION

    async def calculate_rankings(
        self, districts: list[DistrictStatistics]
    ) -> list[DistrictStatistics]:
        """Attach ``ranking`` to every district with metrics; sort by aggregate score."""
        if not districts:
            logger.warning("ranking.no_districts")
            return districts

        calculated_at = utc_now_iso()
        metrics = self._extract_metrics(districts)

        clubs = {r.district_id: r for r in rank_category(metrics, "club_growth_percent")}
        payments = {r.district_id: r for r in rank_category(metrics, "payment_growth_percent")}
        distinguished = {r.district_id: r for r in rank_category(metrics, "distinguished_percent")}
        by_id = {m.district_id: m for m in metrics}

        ranked: list[DistrictStatistics] = []
        for district in districts:
            metric = by_id.get(district.district_id)
            if metric is None:
                ranked.append(district)
                continue
            c = clubs[district.district_id]
            p = payments[district.district_id]
            d = distinguished[district.district_id]
            ranking = {
                "clubsRank": c.rank,
                "paymentsRank": p.rank,
                "distinguishedRank": d.rank,
                "aggregateScore": c.borda_points + p.borda_points + d.borda_points,
                "clubGrowthPercent": metric.club_growth_percent,
                "paymentGrowthPercent": metric.payment_growth_percent,
                "distinguishedPercent": metric.distinguished_percent,
                "paidClubBase": metric.paid_club_base,
                "paymentBase": metric.payment_base,
                "paidClubs": metric.paid_clubs,
                "totalPayments": metric.total_payments,
                "distinguishedClubs": metric.distinguished_clubs,
                "activeClubs": metric.active_clubs,
                "selectDistinguished": metric.select_distinguished,
                "presidentsDistinguished": metric.presidents_distinguished,
                "region": metric.region,
                "districtName": metric.district_name,
                "rankingVersion": RANKING_VERSION,
                "calculatedAt": calculated_at,
            }
            ranked.append(district.model_copy(update={"ranking": ranking}))

        ranked.sort(key=lambda d: (d.ranking or {}).get("aggregateScore", 0), reverse=True)
        logger.info(
            "ranking.calculated",
            district_count=len(districts),
            ranked_count=len(metrics),
            ranking_version=RANKING_VERSION,
        )
        return ranked

    def build_rankings_data(
        self, ranked: list[DistrictStatistics], snapshot_id: str
    ) -> AllDistrictsRankingsData:
        """Shape ranked districts into the ``all-districts-rankings.json`` record."""
        calculated_at = utc_now_iso()
        with_ranking = sorted(
            (d for d in ranked if d.ranking is not None),
            key=lambda d: d.ranking.get("aggregateScore", 0),
            reverse=True,
        )
        rankings = [
            DistrictRanking(
                district_id=d.district_id,
                district_name=d.ranking["districtName"],
                region=d.ranking["region"],
                paid_clubs=d.ranking["paidClubs"],
                paid_club_base=d.ranking["paidClubBase"],
                club_growth_percent=d.ranking["clubGrowthPercent"],
                total_payments=d.ranking["totalPayments"],
                payment_base=d.ranking["paymentBase"],
                payment_growth_percent=d.ranking["paymentGrowthPercent"],
                active_clubs=d.ranking["activeClubs"],
                distinguished_clubs=d.ranking["distinguishedClubs"],
                select_distinguished=d.ranking["selectDistinguished"],
                presidents_distinguished=d.ranking["presidentsDistinguished"],
                distinguished_percent=d.ranking["distinguishedPercent"],
                clubs_rank=d.ranking["clubsRank"],
                payments_rank=d.ranking["paymentsRank"],
                distinguished_rank=d.ranking["distinguishedRank"],
                aggregate_score=d.ranking["aggregateScore"],
                overall_rank=index + 1,
            )
            for index, d in enumerate(with_ranking)
        ]
        return AllDistrictsRankingsData(
            metadata=AllDistrictsRankingsMetadata(
                snapshot_id=snapshot_id,
                calculated_at=calculated_at,
                ranking_version=RANKING_VERSION,
                source_csv_date=snapshot_id,
                csv_fetched_at=calculated_at,
                total_districts=len(rankings),
            ),
            rankings=rankings,
        )

    def _extract_metrics(self, districts: list[DistrictStatistics]) -> list[RankingMetrics]:
        metrics: list[RankingMetrics] = []
        for district in districts:
            if not district.district_performance:
                logger.warning("ranking.no_performance_data", district_id=district.district_id)
                continue
            row = district.district_performance[0]
            active = parse_number(row.get("Active Clubs"))
            total_distinguished = parse_number(row.get("Total Distinguished Clubs"))
            metrics.append(
                RankingMetrics(
                    district_id=district.district_id,
                    district_name=str(row.get("DISTRICT") or district.district_id),
                    region=str(row.get("REGION") or "Unknown"),
                    club_growth_percent=parse_percentage(row.get("% Club Growth")),
                    payment_growth_percent=parse_percentage(row.get("% Payment Growth")),
                    distinguished_percent=(total_distinguished / active * 100) if active else 0.0,
                    paid_clubs=parse_number(row.get("Paid Clubs")),
                    paid_club_base=parse_number(row.get("Paid Club Base")),
                    total_payments=parse_number(row.get("Total YTD Payments")),
                    payment_base=parse_number(row.get("Payment Base")),
                    distinguished_clubs=total_distinguished,
                    active_clubs=active,
                    select_distinguished=parse_number(row.get("Select Distinguished Clubs")),
                    presidents_distinguished=parse_number(
                        row.get("Presidents Distinguished Clubs")
                    ),
                )
            )
        return metrics
