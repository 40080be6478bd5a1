"""
Incident Ledger — Incidents Router
Organisation-scoped breach register: create, version, list, history, compare,
statistics and deletion. Every write produces a new verification token.
"""

from datetime import date, datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from auth import require_permission, require_min_role, CurrentUser
from database import get_db_session
from incident_registry import IncidentRegistry, IncidentSummary
from incident_schemas import IncidentContent, incident_out, version_out
from incident_stats import get_organisation_stats
from models import UserRole

router = APIRouter(prefix="/api/v1/incidents", tags=["Incidents"])


# ── Schemas ──────────────────────────────────────────────────

class IncidentCreated(BaseModel):
    incident_id: str
    internal_id: int
    token: str
    version_number: int


class IncidentVersioned(BaseModel):
    incident_id: str
    token: str
    version_number: int


class LatestVersionSummary(BaseModel):
    version_number: int
    token: str
    status: str
    incident_type: Optional[str] = None
    description: Optional[str] = None
    detection_date: Optional[date] = None
    resolution_date: Optional[date] = None
    regulator_notified: bool = False
    affected_parties_notified: bool = False
    created_at: Optional[datetime] = None


class IncidentListItem(BaseModel):
    incident_id: str
    internal_id: int
    version_count: int
    updated_at: Optional[datetime] = None
    latest_version: LatestVersionSummary


def _list_item(summary: IncidentSummary) -> IncidentListItem:
    latest = summary.latest_version
    return IncidentListItem(
        incident_id=summary.incident.id,
        internal_id=summary.incident.internal_id,
        version_count=summary.version_count,
        updated_at=summary.incident.updated_at,
        latest_version=LatestVersionSummary(
            version_number=latest.version_number,
            token=latest.token,
            status=latest.status,
            incident_type=latest.incident_type,
            description=latest.description,
            detection_date=latest.detection_date,
            resolution_date=latest.resolution_date,
            regulator_notified=bool(latest.regulator_notified),
            affected_parties_notified=bool(latest.affected_parties_notified),
            created_at=latest.created_at,
        ),
    )


def get_registry(request: Request, db: AsyncSession = Depends(get_db_session)) -> IncidentRegistry:
    return IncidentRegistry(db, request_id=getattr(request.state, "request_id", None))


# ── Endpoints ────────────────────────────────────────────────

@router.post("", status_code=201, response_model=IncidentCreated)
async def create_incident(
    body: IncidentContent,
    user: CurrentUser = Depends(require_permission("incidents:write")),
    registry: IncidentRegistry = Depends(get_registry),
):
    """Report a new incident. Returns the verification token of version 1."""
    incident, version = await registry.create_incident(user.organisation_id, body, user.id)
    return IncidentCreated(
        incident_id=incident.id,
        internal_id=incident.internal_id,
        token=version.token,
        version_number=version.version_number,
    )


@router.get("")
async def list_incidents(
    user: CurrentUser = Depends(require_permission("incidents:read")),
    registry: IncidentRegistry = Depends(get_registry),
):
    """List the organisation's incidents with their latest version"""
    summaries = await registry.get_organisation_incidents(user.organisation_id)
    items = [_list_item(s) for s in summaries]
    return {"items": items, "total": len(items)}


@router.get("/stats")
async def incident_stats(
    user: CurrentUser = Depends(require_permission("incidents:read")),
    db: AsyncSession = Depends(get_db_session),
):
    """Resolution and notification counts over latest versions"""
    stats = await get_organisation_stats(db, user.organisation_id)
    return stats.to_dict()


@router.get("/{incident_id}")
async def get_incident(
    incident_id: str,
    user: CurrentUser = Depends(require_permission("incidents:read")),
    registry: IncidentRegistry = Depends(get_registry),
):
    incident, versions = await registry.get_incident_with_history(incident_id, user.organisation_id)
    return {
        "incident": incident_out(incident),
        "current_version": version_out(versions[0]),
        "versions": [version_out(v) for v in versions],
        "total_versions": len(versions),
    }


@router.put("/{incident_id}", response_model=IncidentVersioned)
async def update_incident(
    incident_id: str,
    body: IncidentContent,
    user: CurrentUser = Depends(require_permission("incidents:write")),
    registry: IncidentRegistry = Depends(get_registry),
):
    """Record a corrected or updated report as a new version with a new token."""
    incident, version = await registry.update_incident(incident_id, user.organisation_id, body, user.id)
    return IncidentVersioned(
        incident_id=incident.id,
        token=version.token,
        version_number=version.version_number,
    )


@router.get("/{incident_id}/history")
async def incident_history(
    incident_id: str,
    user: CurrentUser = Depends(require_permission("incidents:read")),
    registry: IncidentRegistry = Depends(get_registry),
):
    """Version history, most recent first, with a change summary per version"""
    entries = await registry.get_history(incident_id, user.organisation_id)
    return {
        "incident_id": incident_id,
        "history": [e.to_dict() for e in entries],
        "total": len(entries),
    }


@router.get("/{incident_id}/compare")
async def compare_versions(
    incident_id: str,
    version_a: int = Query(..., ge=1),
    version_b: int = Query(..., ge=1),
    user: CurrentUser = Depends(require_permission("incidents:read")),
    registry: IncidentRegistry = Depends(get_registry),
):
    """Field changes and unified diff between two versions"""
    return await registry.compare_versions(incident_id, user.organisation_id, version_a, version_b)


@router.delete("/{incident_id}", dependencies=[Depends(require_min_role(UserRole.ORG_ADMIN))])
async def delete_incident(
    incident_id: str,
    user: CurrentUser = Depends(require_permission("incidents:delete")),
    registry: IncidentRegistry = Depends(get_registry),
):
    """Irreversibly delete an incident together with all of its versions."""
    await registry.delete_incident(incident_id, user.organisation_id, user.id)
    return {"status": "deleted", "incident_id": incident_id}
