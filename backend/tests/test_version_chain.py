# tests/test_version_chain.py — Version chain integrity, retries and diffs
import asyncio
import itertools

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from exceptions import ConflictRetryError, ConsistencyFaultError, IncidentNotFoundError
from incident_registry import IncidentRegistry
from models import IncidentVersion
from version_chain import (
    VersionChainManager, VersionConflict, build_history, diff_versions, is_retryable, verify_chain,
)
from tests.conftest import ORG_A


async def _versions(session, incident_id):
    result = await session.execute(
        select(IncidentVersion)
        .where(IncidentVersion.incident_id == incident_id)
        .order_by(IncidentVersion.version_number)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


@pytest.mark.asyncio
class TestVersionTransitions:
    async def test_first_version(self, db_session, content):
        incident, version = await IncidentRegistry(db_session).create_incident(ORG_A, content(), "user-1")
        assert version.version_number == 1
        assert version.is_latest is True
        assert version.incident_id == incident.id
        assert version.created_by == "user-1"

    async def test_each_update_appends_one_version(self, db_session, content):
        registry = IncidentRegistry(db_session)
        incident, first = await registry.create_incident(ORG_A, content(), "user-1")
        for _ in range(3):
            await registry.update_incident(incident.id, ORG_A, content(status="investigating"), "user-1")

        versions = await _versions(db_session, incident.id)
        assert [v.version_number for v in versions] == [1, 2, 3, 4]
        assert [v.is_latest for v in versions] == [False, False, False, True]
        assert len({v.token for v in versions}) == 4
        assert verify_chain(incident.id, versions, "test").version_number == 4

    async def test_old_versions_are_unchanged(self, db_session, content):
        registry = IncidentRegistry(db_session)
        incident, _ = await registry.create_incident(ORG_A, content(description="First draft"), "user-1")
        await registry.update_incident(incident.id, ORG_A, content(description="Corrected"), "user-2")

        v1, v2 = await _versions(db_session, incident.id)
        assert v1.description == "First draft"
        assert v1.created_by == "user-1"
        assert v2.description == "Corrected"
        assert v2.created_by == "user-2"

    async def test_update_refreshes_incident_timestamp(self, db_session, content):
        registry = IncidentRegistry(db_session)
        incident, _ = await registry.create_incident(ORG_A, content(), "user-1")
        created = incident.updated_at
        await asyncio.sleep(0.01)
        updated, _ = await registry.update_incident(incident.id, ORG_A, content(), "user-1")
        assert updated.updated_at > created

    async def test_next_version_of_missing_incident(self, db_session, content):
        chain = VersionChainManager(db_session)
        with pytest.raises(IncidentNotFoundError):
            await chain.create_next_version("does-not-exist", content(), "user-1")

    async def test_create_next_version_directly(self, db_session, content):
        incident, _ = await IncidentRegistry(db_session).create_incident(ORG_A, content(), "user-1")
        version = await VersionChainManager(db_session).create_next_version(incident.id, content(), "user-1")
        assert version.version_number == 2
        assert version.is_latest is True


@pytest.mark.asyncio
class TestTokenUniqueness:
    async def test_duplicate_token_is_retried(self, db_session, content):
        registry = IncidentRegistry(db_session)
        incident, first = await registry.create_incident(ORG_A, content(), "user-1")
        incident_id = incident.id

        # First draw collides with version 1, the retry draws a fresh token
        tokens = itertools.chain([first.token], iter(lambda: "fresh-token-value-0123456789", None))
        chain = VersionChainManager(db_session, token_generator=lambda: next(tokens), backoff_ms=0)
        version = await chain.create_next_version(incident_id, content(), "user-1")

        assert version.version_number == 2
        assert version.token == "fresh-token-value-0123456789"
        versions = await _versions(db_session, incident_id)
        verify_chain(incident_id, versions, "test")

    async def test_persistent_collision_exhausts_retries(self, db_session, content):
        registry = IncidentRegistry(db_session)
        incident, first = await registry.create_incident(ORG_A, content(), "user-1")
        incident_id, taken = incident.id, first.token

        chain = VersionChainManager(db_session, token_generator=lambda: taken, max_attempts=3, backoff_ms=0)
        with pytest.raises(ConflictRetryError) as exc_info:
            await chain.create_next_version(incident_id, content(), "user-1")
        assert exc_info.value.http_status == 503
        assert exc_info.value.incident_id == incident_id

        # The failed attempts left nothing behind
        versions = await _versions(db_session, incident_id)
        assert [v.version_number for v in versions] == [1]
        assert versions[0].is_latest is True


@pytest.mark.asyncio
class TestRunAtomic:
    async def test_retries_until_success(self, db_session):
        chain = VersionChainManager(db_session, max_attempts=4, backoff_ms=0)
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise VersionConflict("moved")
            return "done"

        assert await chain.run_atomic(flaky, name="flaky") == "done"
        assert len(calls) == 3

    async def test_gives_up_after_max_attempts(self, db_session):
        chain = VersionChainManager(db_session, max_attempts=2, backoff_ms=0)
        calls = []

        async def always_conflicts():
            calls.append(1)
            raise VersionConflict("moved")

        with pytest.raises(ConflictRetryError) as exc_info:
            await chain.run_atomic(always_conflicts, name="always", incident_id="inc-1")
        assert len(calls) == 2
        assert exc_info.value.incident_id == "inc-1"
        assert isinstance(exc_info.value.__cause__, VersionConflict)

    async def test_other_errors_are_not_retried(self, db_session):
        chain = VersionChainManager(db_session, max_attempts=5, backoff_ms=0)
        calls = []

        async def broken():
            calls.append(1)
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            await chain.run_atomic(broken, name="broken")
        assert len(calls) == 1


class TestRetryClassification:
    def test_retryable_classification(self):
        class _Orig(Exception):
            sqlstate = "40001"

        assert is_retryable(VersionConflict())
        assert is_retryable(IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed: incident_versions.token")))
        assert is_retryable(IntegrityError("UPDATE", {}, _Orig("serialization failure")))
        assert not is_retryable(IntegrityError("INSERT", {}, Exception("NOT NULL constraint failed")))
        assert not is_retryable(RuntimeError("database is locked"))


@pytest.mark.asyncio
class TestConcurrentWriters:
    async def test_concurrent_updates_never_share_a_number(self, session_factory, content):
        async with session_factory() as setup:
            registry = IncidentRegistry(setup)
            incident, _ = await registry.create_incident(ORG_A, content(), "user-1")
            incident_id = incident.id
            await registry.update_incident(incident_id, ORG_A, content(), "user-1")

        async def writer(label, max_attempts):
            async with session_factory() as session:
                chain = VersionChainManager(session, max_attempts=max_attempts, backoff_ms=5)
                _, version = await IncidentRegistry(session, chain=chain).update_incident(
                    incident_id, ORG_A, content(description=f"Update from {label}"), label,
                )
                return version.version_number

        # The loser either retries onto version 4 or runs out of attempts
        results = await asyncio.gather(writer("alice", 5), writer("bob", 5), return_exceptions=True)
        numbers = [r for r in results if isinstance(r, int)]
        failures = [r for r in results if not isinstance(r, int)]

        assert 3 in numbers
        assert all(isinstance(f, ConflictRetryError) for f in failures)
        assert len(numbers) == len(set(numbers))
        assert set(numbers) <= {3, 4}

        async with session_factory() as check:
            versions = await _versions(check, incident_id)
            latest = verify_chain(incident_id, versions, "test")
            assert latest.version_number == 2 + len(numbers)
            assert len({v.token for v in versions}) == len(versions)

    async def test_both_concurrent_updates_land_with_enough_attempts(self, session_factory, content):
        async with session_factory() as setup:
            registry = IncidentRegistry(setup)
            incident, _ = await registry.create_incident(ORG_A, content(), "user-1")
            incident_id = incident.id
            await registry.update_incident(incident_id, ORG_A, content(), "user-1")

        async def writer(label):
            async with session_factory() as session:
                chain = VersionChainManager(session, max_attempts=25, backoff_ms=5)
                _, version = await IncidentRegistry(session, chain=chain).update_incident(
                    incident_id, ORG_A, content(description=f"Update from {label}"), label,
                )
                return version.version_number

        numbers = await asyncio.gather(writer("alice"), writer("bob"))
        assert sorted(numbers) == [3, 4]

        async with session_factory() as check:
            versions = await _versions(check, incident_id)
            assert verify_chain(incident_id, versions, "test").version_number == 4
            assert {v.description for v in versions[2:]} == {"Update from alice", "Update from bob"}


@pytest.mark.asyncio
class TestChainFaults:
    async def _incident_with_versions(self, db_session, content, count=2):
        registry = IncidentRegistry(db_session)
        incident, _ = await registry.create_incident(ORG_A, content(), "user-1")
        for _ in range(count - 1):
            await registry.update_incident(incident.id, ORG_A, content(), "user-1")
        return incident

    async def test_no_latest_version(self, db_session, content):
        incident = await self._incident_with_versions(db_session, content)
        incident_id = incident.id
        await db_session.execute(
            update(IncidentVersion).where(IncidentVersion.incident_id == incident_id).values(is_latest=False)
        )
        await db_session.commit()

        with pytest.raises(ConsistencyFaultError) as exc_info:
            await VersionChainManager(db_session).create_next_version(incident_id, content(), "user-1")
        assert exc_info.value.code == "ILG-DATA-001"
        assert exc_info.value.incident_id == incident_id

        # Nothing was repaired or written
        versions = await _versions(db_session, incident_id)
        assert [v.version_number for v in versions] == [1, 2]
        assert not any(v.is_latest for v in versions)

    async def test_latest_flag_on_wrong_version(self, db_session, content):
        incident = await self._incident_with_versions(db_session, content)
        versions = await _versions(db_session, incident.id)
        versions[0].is_latest = True
        versions[1].is_latest = False

        with pytest.raises(ConsistencyFaultError, match="latest flag on version 1"):
            verify_chain(incident.id, versions, "test")

    async def test_gap_in_numbering(self, db_session, content):
        incident = await self._incident_with_versions(db_session, content, count=3)
        versions = await _versions(db_session, incident.id)
        with pytest.raises(ConsistencyFaultError, match="not contiguous"):
            verify_chain(incident.id, [versions[0], versions[2]], "test")


def test_empty_chain_is_a_fault():
    with pytest.raises(ConsistencyFaultError, match="no versions"):
        verify_chain("inc-1", [], "test")


@pytest.mark.asyncio
class TestDiffs:
    async def test_history_summaries(self, db_session, content):
        registry = IncidentRegistry(db_session)
        incident, _ = await registry.create_incident(ORG_A, content(), "user-1")
        await registry.update_incident(incident.id, ORG_A, content(status="closed", affected_subjects=150), "user-1")
        await registry.update_incident(incident.id, ORG_A, content(status="closed", affected_subjects=150), "user-1")

        history = build_history(await _versions(db_session, incident.id))
        assert [h.version_number for h in history] == [3, 2, 1]
        assert history[0].summary == "No content changes"
        assert history[0].is_latest is True
        assert history[1].changed_fields == ["affected_subjects", "status"]
        assert history[1].summary == "Changed: affected_subjects, status"
        assert history[2].summary == "Initial report"

    async def test_compare_versions(self, db_session, content):
        registry = IncidentRegistry(db_session)
        incident, _ = await registry.create_incident(ORG_A, content(), "user-1")
        await registry.update_incident(incident.id, ORG_A, content(measures_taken="Mailbox wiped"), "user-1")

        result = await VersionChainManager(db_session).compare_versions(incident.id, 1, 2)
        assert result["version_a"] == 1
        assert result["version_b"] == 2
        assert result["changes"] == [
            {"field": "measures_taken", "old": "Password reset, MFA enforced", "new": "Mailbox wiped"},
        ]
        assert result["statistics"]["fields_changed"] == 1
        assert result["statistics"]["lines_added"] == 1
        assert result["statistics"]["lines_removed"] == 1
        assert "Mailbox wiped" in result["diff"]

    async def test_compare_unknown_version(self, db_session, content):
        incident, _ = await IncidentRegistry(db_session).create_incident(ORG_A, content(), "user-1")
        with pytest.raises(IncidentNotFoundError):
            await VersionChainManager(db_session).compare_versions(incident.id, 1, 7)

    async def test_diff_against_nothing_lists_set_fields(self, db_session, content):
        _, version = await IncidentRegistry(db_session).create_incident(ORG_A, content(), "user-1")
        fields = [c.field for c in diff_versions(None, version)]
        assert "description" in fields
        assert "regulator_notified" not in fields
