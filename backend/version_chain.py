"""
Incident Ledger - Version Chain Manager
Sole writer of incident versions. Keeps every incident's chain gap-free with a
single latest version, retries whole units of work when concurrent writers race,
and diffs versions for history views.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar
import asyncio
import difflib
import json
import logging
import os
import random

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from exceptions import ConflictRetryError, ConsistencyFaultError, IncidentNotFoundError
from incident_schemas import CONTENT_FIELDS, IncidentContent
from models import Incident, IncidentVersion, utcnow
from tokens import generate_token

logger = logging.getLogger("incident-ledger.versions")

MAX_ATTEMPTS = int(os.getenv("VERSION_WRITE_MAX_ATTEMPTS", "5"))
BACKOFF_MS = int(os.getenv("VERSION_WRITE_BACKOFF_MS", "25"))

# serialization_failure, deadlock_detected, unique_violation
_RETRYABLE_SQLSTATES = {"40001", "40P01", "23505"}
_RETRYABLE_MESSAGES = ("database is locked", "unique constraint failed", "deadlock detected")

T = TypeVar("T")


class VersionConflict(Exception):
    """Another writer moved the chain between our read and our write."""


def is_retryable(exc: BaseException) -> bool:
    """True for races that a fresh attempt of the whole unit of work can resolve."""
    if isinstance(exc, VersionConflict):
        return True
    if not isinstance(exc, (IntegrityError, OperationalError)):
        return False
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _RETRYABLE_SQLSTATES:
        return True
    message = str(orig if orig is not None else exc).lower()
    return any(m in message for m in _RETRYABLE_MESSAGES)


# ============================================================
# DIFFS
# ============================================================

def _jsonable(value: Any) -> Any:
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def content_snapshot(version: IncidentVersion) -> Dict[str, Any]:
    return {f: _jsonable(getattr(version, f)) for f in CONTENT_FIELDS}


@dataclass
class FieldChange:
    field: str
    old: Any
    new: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "old": self.old, "new": self.new}


def diff_versions(older: Optional[IncidentVersion], newer: IncidentVersion) -> List[FieldChange]:
    """Field-level changes from `older` to `newer`; every set field when older is None."""
    new_snapshot = content_snapshot(newer)
    old_snapshot = content_snapshot(older) if older is not None else {}
    changes = []
    for name in CONTENT_FIELDS:
        old, new = old_snapshot.get(name), new_snapshot.get(name)
        if older is None and new in (None, [], False):
            continue
        if old != new:
            changes.append(FieldChange(field=name, old=old, new=new))
    return changes


@dataclass
class HistoryEntry:
    """One version as seen in an incident's history listing"""
    version_number: int
    token: str
    is_latest: bool
    created_at: Any
    created_by: str
    changed_fields: List[str] = field(default_factory=list)
    summary: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version_number": self.version_number,
            "token": self.token,
            "is_latest": self.is_latest,
            "created_at": _jsonable(self.created_at),
            "created_by": self.created_by,
            "changed_fields": self.changed_fields,
            "summary": self.summary,
        }


def build_history(versions: Sequence[IncidentVersion]) -> List[HistoryEntry]:
    """History entries, most recent first, each summarised against its predecessor."""
    ordered = sorted(versions, key=lambda v: v.version_number)
    entries = []
    previous = None
    for version in ordered:
        if previous is None:
            changed, summary = [], "Initial report"
        else:
            changed = [c.field for c in diff_versions(previous, version)]
            summary = f"Changed: {', '.join(changed)}" if changed else "No content changes"
        entries.append(HistoryEntry(
            version_number=version.version_number,
            token=version.token,
            is_latest=bool(version.is_latest),
            created_at=version.created_at,
            created_by=version.created_by,
            changed_fields=changed,
            summary=summary,
        ))
        previous = version
    entries.reverse()
    return entries


def compare_snapshots(version_a: IncidentVersion, version_b: IncidentVersion) -> Dict[str, Any]:
    """Compare two versions and return field changes plus a unified diff"""
    content_a = json.dumps(content_snapshot(version_a), indent=2, sort_keys=True, default=str)
    content_b = json.dumps(content_snapshot(version_b), indent=2, sort_keys=True, default=str)

    diff = list(difflib.unified_diff(
        content_a.splitlines(keepends=True),
        content_b.splitlines(keepends=True),
        fromfile=f"version_{version_a.version_number}",
        tofile=f"version_{version_b.version_number}",
    ))

    lines_added = sum(1 for line in diff if line.startswith('+') and not line.startswith('+++'))
    lines_removed = sum(1 for line in diff if line.startswith('-') and not line.startswith('---'))
    changes = diff_versions(version_a, version_b)

    return {
        "version_a": version_a.version_number,
        "version_b": version_b.version_number,
        "changes": [c.to_dict() for c in changes],
        "diff": "".join(diff),
        "statistics": {
            "fields_changed": len(changes),
            "lines_added": lines_added,
            "lines_removed": lines_removed,
            "total_changes": lines_added + lines_removed,
        },
    }


# ============================================================
# CHAIN INVARIANTS
# ============================================================

def consistency_fault(incident_id: str, operation: str, problem: str) -> ConsistencyFaultError:
    logger.critical(f"Version chain fault on incident {incident_id} during {operation}: {problem}")
    return ConsistencyFaultError(problem, incident_id=incident_id, operation=operation)


def verify_chain(incident_id: str, versions: Sequence[IncidentVersion], operation: str) -> IncidentVersion:
    """Check numbering is exactly 1..N with one latest row on N. Returns the latest."""
    numbers = sorted(v.version_number for v in versions)
    if not numbers:
        raise consistency_fault(incident_id, operation, "incident has no versions")
    if numbers != list(range(1, len(numbers) + 1)):
        raise consistency_fault(incident_id, operation, f"version numbers are not contiguous: {numbers}")
    latest = [v for v in versions if v.is_latest]
    if len(latest) != 1:
        raise consistency_fault(incident_id, operation, f"{len(latest)} versions marked latest")
    if latest[0].version_number != numbers[-1]:
        raise consistency_fault(
            incident_id, operation,
            f"latest flag on version {latest[0].version_number}, highest is {numbers[-1]}",
        )
    return latest[0]


# ============================================================
# MANAGER
# ============================================================

class VersionChainManager:
    """Writes incident versions inside retried atomic units of work"""

    def __init__(
        self,
        session: AsyncSession,
        token_generator: Callable[[], str] = generate_token,
        max_attempts: int = MAX_ATTEMPTS,
        backoff_ms: int = BACKOFF_MS,
    ):
        self.session = session
        self.token_generator = token_generator
        self.max_attempts = max(1, max_attempts)
        self.backoff_ms = backoff_ms

    def _backoff_seconds(self, attempt: int) -> float:
        return random.uniform(0, self.backoff_ms * (2 ** (attempt - 1))) / 1000

    async def run_atomic(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        name: str,
        incident_id: Optional[str] = None,
    ) -> T:
        """Run `operation` and commit; on a race roll back and rerun all of it."""
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await operation()
                await self.session.commit()
                return result
            except Exception as exc:
                await self.session.rollback()
                if not is_retryable(exc):
                    raise
                last_error = exc
                logger.warning(
                    f"{name} conflict on incident {incident_id or '-'} "
                    f"(attempt {attempt}/{self.max_attempts}): {exc.__class__.__name__}"
                )
            if attempt < self.max_attempts:
                await asyncio.sleep(self._backoff_seconds(attempt))

        logger.error(f"{name} gave up on incident {incident_id or '-'} after {self.max_attempts} attempts")
        raise ConflictRetryError(
            incident_id=incident_id, operation=name, attempts=self.max_attempts,
        ) from last_error

    # ── Reads ────────────────────────────────────────────────

    async def lock_incident(self, incident_id: str) -> Incident:
        """Load the incident row with a write lock (FOR UPDATE where supported)."""
        result = await self.session.execute(
            select(Incident)
            .where(Incident.id == incident_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        incident = result.scalar_one_or_none()
        if incident is None:
            raise IncidentNotFoundError(incident_id=incident_id, operation="lock_incident")
        return incident

    async def current_latest(self, incident_id: str, operation: str) -> IncidentVersion:
        result = await self.session.execute(
            select(IncidentVersion)
            .where(IncidentVersion.incident_id == incident_id, IncidentVersion.is_latest == True)
            .execution_options(populate_existing=True)
        )
        rows = result.scalars().all()
        if len(rows) != 1:
            raise consistency_fault(incident_id, operation, f"{len(rows)} versions marked latest")
        return rows[0]

    async def load_versions(self, incident_id: str) -> List[IncidentVersion]:
        """All versions of an incident, most recent first."""
        result = await self.session.execute(
            select(IncidentVersion)
            .where(IncidentVersion.incident_id == incident_id)
            .order_by(IncidentVersion.version_number.desc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_version(self, incident_id: str, version_number: int) -> IncidentVersion:
        result = await self.session.execute(
            select(IncidentVersion).where(
                IncidentVersion.incident_id == incident_id,
                IncidentVersion.version_number == version_number,
            )
        )
        version = result.scalar_one_or_none()
        if version is None:
            raise IncidentNotFoundError(
                f"Version {version_number} not found", incident_id=incident_id, operation="get_version",
            )
        return version

    async def compare_versions(self, incident_id: str, version_a: int, version_b: int) -> Dict[str, Any]:
        a = await self.get_version(incident_id, version_a)
        b = await self.get_version(incident_id, version_b)
        return compare_snapshots(a, b)

    # ── Writes ───────────────────────────────────────────────

    def _new_version(self, incident_id: str, number: int, content: IncidentContent, actor_id: str) -> IncidentVersion:
        return IncidentVersion(
            incident_id=incident_id,
            version_number=number,
            is_latest=True,
            token=self.token_generator(),
            created_by=actor_id,
            created_at=utcnow(),
            **content.to_columns(),
        )

    async def create_first_version(
        self, incident: Incident, content: IncidentContent, actor_id: str
    ) -> IncidentVersion:
        """Insert version 1 inside the caller's unit of work for a freshly created incident."""
        version = self._new_version(incident.id, 1, content, actor_id)
        self.session.add(version)
        await self.session.flush()
        return version

    async def append_version(
        self, incident: Incident, content: IncidentContent, actor_id: str
    ) -> IncidentVersion:
        """One attempt of the version transition. The caller holds the incident lock."""
        current = await self.current_latest(incident.id, operation="create_next_version")
        next_number = current.version_number + 1

        # Compare-and-set: only the writer that still sees this row as latest may flip it
        flipped = await self.session.execute(
            update(IncidentVersion)
            .where(IncidentVersion.id == current.id, IncidentVersion.is_latest == True)
            .values(is_latest=False)
        )
        if flipped.rowcount != 1:
            raise VersionConflict(f"version {current.version_number} is no longer latest")

        version = self._new_version(incident.id, next_number, content, actor_id)
        self.session.add(version)
        incident.updated_at = utcnow()
        await self.session.flush()
        return version

    async def create_next_version(
        self, incident_id: str, content: IncidentContent, actor_id: str
    ) -> IncidentVersion:
        async def _transition() -> IncidentVersion:
            incident = await self.lock_incident(incident_id)
            return await self.append_version(incident, content, actor_id)

        return await self.run_atomic(_transition, name="create_next_version", incident_id=incident_id)
