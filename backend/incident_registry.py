"""
Incident Ledger - Incident Registry
Incident identity, per-organisation numbering and the create / update / list /
history / delete entry points used by the admin API.
"""

from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, Optional, Tuple, Union
import logging

from sqlalchemy import select, update, delete, func, case
from sqlalchemy.ext.asyncio import AsyncSession

from exceptions import IncidentNotFoundError, IncidentAccessDeniedError
from incident_schemas import IncidentContent, coerce_content
from models import (
    Incident, IncidentVersion, IncidentCounter, AuditLog, AuditEventType, utcnow,
)
from tokens import generate_token
from version_chain import (
    VersionChainManager, HistoryEntry, build_history, consistency_fault, verify_chain,
)

logger = logging.getLogger("incident-ledger.registry")


@dataclass
class IncidentSummary:
    incident: Incident
    latest_version: IncidentVersion
    version_count: int


class IncidentRegistry:
    """Entry point for incident writes; every write is one atomic unit of work"""

    def __init__(
        self,
        session: AsyncSession,
        token_generator: Callable[[], str] = generate_token,
        chain: Optional[VersionChainManager] = None,
        request_id: Optional[str] = None,
    ):
        self.session = session
        self.chain = chain or VersionChainManager(session, token_generator=token_generator)
        self.request_id = request_id

    # ── Helpers ──────────────────────────────────────────────

    async def _allocate_internal_id(self, organisation_id: str) -> int:
        """Atomically bump the organisation's counter row (creating it on first use)."""
        bumped = await self.session.execute(
            update(IncidentCounter)
            .where(IncidentCounter.organisation_id == organisation_id)
            .values(last_internal_id=IncidentCounter.last_internal_id + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if bumped.rowcount == 0:
            # A concurrent first insert for the same organisation fails on the primary key and retries
            self.session.add(IncidentCounter(organisation_id=organisation_id, last_internal_id=1))
            await self.session.flush()
            return 1

        result = await self.session.execute(
            select(IncidentCounter.last_internal_id)
            .where(IncidentCounter.organisation_id == organisation_id)
        )
        return result.scalar_one()

    async def _get_owned(self, incident_id: str, organisation_id: Optional[str], operation: str,
                         lock: bool = False) -> Incident:
        if lock:
            incident = await self.chain.lock_incident(incident_id)
        else:
            result = await self.session.execute(select(Incident).where(Incident.id == incident_id))
            incident = result.scalar_one_or_none()
            if incident is None:
                raise IncidentNotFoundError(incident_id=incident_id, operation=operation)
        if organisation_id is not None and incident.organisation_id != organisation_id:
            logger.warning(
                f"Cross-organisation access to incident {incident_id} "
                f"by organisation {organisation_id} during {operation}"
            )
            raise IncidentAccessDeniedError(
                incident_id=incident_id, operation=operation, organisation_id=organisation_id,
            )
        return incident

    async def _exists(self, incident_id: str) -> bool:
        result = await self.session.execute(select(Incident.id).where(Incident.id == incident_id))
        return result.scalar_one_or_none() is not None

    def _audit(self, event_type: AuditEventType, incident: Incident, actor_id: Optional[str], **details):
        self.session.add(AuditLog(
            event_type=event_type,
            user_id=actor_id,
            organisation_id=incident.organisation_id,
            resource_type="incident",
            resource_id=incident.id,
            request_id=self.request_id,
            details=details,
        ))

    # ── Writes ───────────────────────────────────────────────

    async def create_incident(
        self, organisation_id: str, content: Union[IncidentContent, Mapping[str, Any]], actor_id: str
    ) -> Tuple[Incident, IncidentVersion]:
        content = coerce_content(content)

        async def _create():
            internal_id = await self._allocate_internal_id(organisation_id)
            now = utcnow()
            incident = Incident(
                organisation_id=organisation_id,
                internal_id=internal_id,
                created_at=now,
                updated_at=now,
            )
            self.session.add(incident)
            await self.session.flush()
            version = await self.chain.create_first_version(incident, content, actor_id)
            self._audit(AuditEventType.INCIDENT_CREATED, incident, actor_id, internal_id=internal_id)
            return incident, version

        incident, version = await self.chain.run_atomic(_create, name="create_incident")
        logger.info(f"Created incident {incident.id} (#{incident.internal_id}) for organisation {organisation_id}")
        return incident, version

    async def update_incident(
        self, incident_id: str, organisation_id: str, content: Union[IncidentContent, Mapping[str, Any]],
        actor_id: str,
    ) -> Tuple[Incident, IncidentVersion]:
        content = coerce_content(content)

        async def _update():
            incident = await self._get_owned(incident_id, organisation_id, "update_incident", lock=True)
            version = await self.chain.append_version(incident, content, actor_id)
            self._audit(
                AuditEventType.INCIDENT_VERSION_CREATED, incident, actor_id,
                version_number=version.version_number,
            )
            return incident, version

        incident, version = await self.chain.run_atomic(
            _update, name="update_incident", incident_id=incident_id,
        )
        logger.info(f"Incident {incident_id} advanced to version {version.version_number}")
        return incident, version

    async def delete_incident(self, incident_id: str, organisation_id: str, actor_id: Optional[str] = None) -> None:
        """Irreversibly remove an incident and every version it owns."""
        async def _delete():
            incident = await self._get_owned(incident_id, organisation_id, "delete_incident", lock=True)
            count = await self.session.scalar(
                select(func.count(IncidentVersion.id)).where(IncidentVersion.incident_id == incident_id)
            )
            self._audit(
                AuditEventType.INCIDENT_DELETED, incident, actor_id,
                internal_id=incident.internal_id, versions_removed=count,
            )
            await self.session.execute(
                delete(IncidentVersion)
                .where(IncidentVersion.incident_id == incident_id)
                .execution_options(synchronize_session=False)
            )
            await self.session.execute(
                delete(Incident)
                .where(Incident.id == incident_id)
                .execution_options(synchronize_session=False)
            )

        await self.chain.run_atomic(_delete, name="delete_incident", incident_id=incident_id)
        logger.warning(f"Deleted incident {incident_id} of organisation {organisation_id}")

    # ── Reads ────────────────────────────────────────────────

    async def get_incident(self, incident_id: str, organisation_id: Optional[str] = None) -> Incident:
        return await self._get_owned(incident_id, organisation_id, "get_incident")

    async def get_organisation_incidents(self, organisation_id: str) -> List[IncidentSummary]:
        """Every incident of the organisation with its latest version, most recently updated first."""
        incidents = (await self.session.execute(
            select(Incident)
            .where(Incident.organisation_id == organisation_id)
            .order_by(Incident.updated_at.desc(), Incident.internal_id.desc())
        )).scalars().all()
        if not incidents:
            return []

        counts = (await self.session.execute(
            select(
                IncidentVersion.incident_id,
                func.count(IncidentVersion.id),
                func.sum(case((IncidentVersion.is_latest == True, 1), else_=0)),
            )
            .join(Incident, Incident.id == IncidentVersion.incident_id)
            .where(Incident.organisation_id == organisation_id)
            .group_by(IncidentVersion.incident_id)
        )).all()
        totals = {row[0]: (row[1], row[2] or 0) for row in counts}

        latest_rows = (await self.session.execute(
            select(IncidentVersion)
            .join(Incident, Incident.id == IncidentVersion.incident_id)
            .where(Incident.organisation_id == organisation_id, IncidentVersion.is_latest == True)
        )).scalars().all()
        latest = {v.incident_id: v for v in latest_rows}

        summaries = []
        for incident in incidents:
            total, latest_count = totals.get(incident.id, (0, 0))
            if (total == 0 or incident.id not in latest) and not await self._exists(incident.id):
                # Deleted between the statements above
                continue
            if total == 0:
                raise consistency_fault(incident.id, "list_incidents", "incident has no versions")
            if latest_count != 1 or incident.id not in latest:
                raise consistency_fault(incident.id, "list_incidents", f"{latest_count} versions marked latest")
            summaries.append(IncidentSummary(
                incident=incident, latest_version=latest[incident.id], version_count=total,
            ))
        return summaries

    async def get_incident_with_history(
        self, incident_id: str, organisation_id: Optional[str] = None
    ) -> Tuple[Incident, List[IncidentVersion]]:
        """The incident and all of its versions, most recent first."""
        incident = await self._get_owned(incident_id, organisation_id, "get_incident_with_history")
        versions = await self.chain.load_versions(incident_id)
        verify_chain(incident_id, versions, "get_incident_with_history")
        return incident, versions

    async def get_history(
        self, incident_id: str, organisation_id: Optional[str] = None
    ) -> List[HistoryEntry]:
        _, versions = await self.get_incident_with_history(incident_id, organisation_id)
        return build_history(versions)

    async def compare_versions(
        self, incident_id: str, organisation_id: Optional[str], version_a: int, version_b: int
    ) -> dict:
        await self._get_owned(incident_id, organisation_id, "compare_versions")
        return await self.chain.compare_versions(incident_id, version_a, version_b)
