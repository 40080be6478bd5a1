"""
Incident Ledger - Statistics Aggregator
Read-only counts over the latest version of each organisation incident.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterable, Optional
import statistics

from sqlalchemy.ext.asyncio import AsyncSession

from incident_registry import IncidentRegistry, IncidentSummary


@dataclass
class IncidentStatistics:
    total: int = 0
    resolved: int = 0
    unresolved: int = 0
    regulator_notified: int = 0
    affected_parties_notified: int = 0
    # Mean days from detection to resolution; None when no resolved incident has a detection date
    average_resolution_days: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def aggregate(summaries: Iterable[IncidentSummary]) -> IncidentStatistics:
    stats = IncidentStatistics()
    durations = []
    for summary in summaries:
        latest = summary.latest_version
        stats.total += 1
        if latest.resolution_date is not None:
            stats.resolved += 1
            if latest.detection_date is not None:
                durations.append((latest.resolution_date - latest.detection_date).days)
        else:
            stats.unresolved += 1
        if latest.regulator_notified:
            stats.regulator_notified += 1
        if latest.affected_parties_notified:
            stats.affected_parties_notified += 1

    if durations:
        stats.average_resolution_days = round(statistics.fmean(durations), 2)
    return stats


async def get_organisation_stats(session: AsyncSession, organisation_id: str) -> IncidentStatistics:
    summaries = await IncidentRegistry(session).get_organisation_incidents(organisation_id)
    return aggregate(summaries)
