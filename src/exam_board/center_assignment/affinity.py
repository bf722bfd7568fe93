"""Geographic candidate tiers for a school."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Iterable

from .contracts import (
    REASON_NO_ACTIVE_CENTER,
    REASON_NO_REGION_ASSIGNED,
    TIER_CLUSTER,
    TIER_REGION,
    Cluster,
    ExamCenter,
    School,
)


logger = logging.getLogger("exam_board.center_assignment.affinity")


@dataclass(frozen=True)
class CandidateTiers:
    school_id: int
    cluster: tuple[ExamCenter, ...]
    region: tuple[ExamCenter, ...]
    has_geography: bool

    def ordered(self) -> tuple[tuple[str, tuple[ExamCenter, ...]], ...]:
        return ((TIER_CLUSTER, self.cluster), (TIER_REGION, self.region))

    @property
    def is_empty(self) -> bool:
        return not self.cluster and not self.region

    def empty_reason(self) -> str | None:
        """Skip reason that applies before capacity is even considered."""

        if not self.has_geography:
            return REASON_NO_REGION_ASSIGNED
        if self.is_empty:
            return REASON_NO_ACTIVE_CENTER
        return None


class AffinityResolver:
    """Answers which active centers could serve a school, cluster first then region."""

    def __init__(self, centers: Iterable[ExamCenter], clusters: Iterable[Cluster] = ()) -> None:
        self._region_of_cluster = {cluster.cluster_id: cluster.region_id for cluster in clusters}
        active = sorted((c for c in centers if c.is_active), key=lambda c: c.center_id)
        self._by_cluster: dict[int, list[ExamCenter]] = {}
        self._by_region: dict[int, list[ExamCenter]] = {}
        for center in active:
            parent = self._region_of_cluster.get(center.cluster_id)
            if parent is not None and parent != center.region_id:
                logger.warning(
                    "Center %s region %s disagrees with cluster %s parent region %s",
                    center.center_id,
                    center.region_id,
                    center.cluster_id,
                    parent,
                )
            self._by_cluster.setdefault(center.cluster_id, []).append(center)
            self._by_region.setdefault(center.region_id, []).append(center)

    def effective_region(self, school: School) -> int | None:
        if school.region_id is not None:
            return school.region_id
        if school.cluster_id is not None:
            return self._region_of_cluster.get(school.cluster_id)
        return None

    def resolve(self, school: School) -> CandidateTiers:
        if not school.has_geography:
            return CandidateTiers(school_id=school.school_id, cluster=(), region=(), has_geography=False)

        cluster_tier: tuple[ExamCenter, ...] = ()
        if school.cluster_id is not None:
            cluster_tier = tuple(self._by_cluster.get(school.cluster_id, ()))

        region_tier: tuple[ExamCenter, ...] = ()
        region_id = self.effective_region(school)
        if region_id is not None:
            consumed = {center.center_id for center in cluster_tier}
            region_tier = tuple(
                center for center in self._by_region.get(region_id, ()) if center.center_id not in consumed
            )

        return CandidateTiers(
            school_id=school.school_id,
            cluster=cluster_tier,
            region=region_tier,
            has_geography=True,
        )
