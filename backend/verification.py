"""
Incident Ledger - Public Verification Resolver
The only unauthenticated lookup. A token found on any version of an incident
reveals that incident's current state and its full (public) history.
"""

from dataclasses import dataclass
from typing import List
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from exceptions import IncidentNotFoundError
from incident_schemas import PublicVersionOut, public_version_out
from models import Incident, IncidentVersion
from tokens import MAX_TOKEN_LENGTH
from version_chain import VersionChainManager, verify_chain

logger = logging.getLogger("incident-ledger.verify")


@dataclass
class VerificationResult:
    internal_id: int
    created_at: object
    updated_at: object
    requested_version: PublicVersionOut
    current_version: PublicVersionOut
    history: List[PublicVersionOut]
    total_versions: int

    def to_dict(self) -> dict:
        return {
            "incident": {
                "internal_id": self.internal_id,
                "display_id": f"#{self.internal_id}",
                "created_at": self.created_at.isoformat() if self.created_at else None,
                "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            },
            "requested_version": self.requested_version.model_dump(mode="json"),
            "current_version": self.current_version.model_dump(mode="json"),
            "history": [v.model_dump(mode="json") for v in self.history],
            "total_versions": self.total_versions,
        }


class VerificationResolver:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.chain = VersionChainManager(session)

    async def resolve(self, token: str) -> VerificationResult:
        """Resolve an exact token. Any miss, whatever its cause, is the same NotFound."""
        if not token or len(token) > MAX_TOKEN_LENGTH:
            raise IncidentNotFoundError(operation="verify")

        result = await self.session.execute(
            select(IncidentVersion).where(IncidentVersion.token == token)
        )
        requested = result.scalar_one_or_none()
        if requested is None:
            raise IncidentNotFoundError(operation="verify")

        incident = (await self.session.execute(
            select(Incident).where(Incident.id == requested.incident_id)
        )).scalar_one_or_none()
        if incident is None:
            # Deleted after the token matched
            raise IncidentNotFoundError(operation="verify")
        versions = await self.chain.load_versions(incident.id)
        if not versions:
            raise IncidentNotFoundError(operation="verify")
        current = verify_chain(incident.id, versions, "verify")

        logger.info(
            f"Verified incident {incident.id} via version {requested.version_number} "
            f"(current {current.version_number})"
        )
        return VerificationResult(
            internal_id=incident.internal_id,
            created_at=incident.created_at,
            updated_at=incident.updated_at,
            requested_version=public_version_out(requested),
            current_version=public_version_out(current),
            history=[public_version_out(v) for v in versions],
            total_versions=len(versions),
        )
