# models.py — Database models for the Incident Ledger
# - UUID string primary keys everywhere
# - Incidents own an append-only chain of immutable versions
# - Exactly one latest version per incident (partial unique index)
# - Per-organisation incident numbering through a counter row
# - Audit trail for administrative incident actions

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, Date, JSON, Boolean, Integer,
    Enum as SQLEnum, ForeignKey, Text, Index, UniqueConstraint, text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


# ============================================================
# ENUMS
# ============================================================

class UserRole(str, PyEnum):
    SUPER_ADMIN = "super_admin"
    ORG_ADMIN = "org_admin"
    AUDITOR = "auditor"
    MEMBER = "member"


class IncidentType(str, PyEnum):
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    MALWARE_RANSOMWARE = "malware_ransomware"
    PHISHING = "phishing"
    DEVICE_LOSS = "device_loss"
    DATA_LEAK = "data_leak"
    AVAILABILITY = "availability"
    MISCONFIGURATION = "misconfiguration"
    OTHER = "other"


class DataCategory(str, PyEnum):
    IDENTIFICATION = "identification"
    CONTACT = "contact"
    FINANCIAL = "financial"
    HEALTH = "health"
    EMPLOYMENT = "employment"
    CREDENTIALS = "credentials"
    BIOMETRIC = "biometric"
    MINORS = "minors"
    OTHER = "other"


class IncidentStatus(str, PyEnum):
    OPEN = "open"
    INVESTIGATING = "investigating"
    CLOSED = "closed"


class AuditEventType(str, PyEnum):
    INCIDENT_CREATED = "incident.created"
    INCIDENT_VERSION_CREATED = "incident.version.created"
    INCIDENT_DELETED = "incident.deleted"


# ============================================================
# USERS
# ============================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    display_name = Column(String, nullable=False, default="")
    role = Column(SQLEnum(UserRole), default=UserRole.MEMBER, nullable=False, index=True)
    organisation_id = Column(String, nullable=False, index=True)
    is_active = Column(Boolean, default=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_user_org_active", "organisation_id", "is_active"),
    )


# ============================================================
# INCIDENTS
# ============================================================

class Incident(Base):
    """One reportable event for one organisation. Content lives in versions."""
    __tablename__ = "incidents"

    id = Column(String, primary_key=True, default=new_uuid)
    organisation_id = Column(String, nullable=False, index=True)
    internal_id = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)

    versions = relationship(
        "IncidentVersion",
        back_populates="incident",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="IncidentVersion.version_number",
    )

    __table_args__ = (
        UniqueConstraint("organisation_id", "internal_id", name="uq_incident_org_internal_id"),
    )


class IncidentVersion(Base):
    """Immutable snapshot of an incident. Only is_latest ever changes after insert."""
    __tablename__ = "incident_versions"

    id = Column(String, primary_key=True, default=new_uuid)
    incident_id = Column(
        String, ForeignKey("incidents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    version_number = Column(Integer, nullable=False)
    is_latest = Column(Boolean, nullable=False, default=False)
    token = Column(String(128), nullable=False, unique=True)

    # 1. Identification
    detection_date = Column(Date, nullable=True)
    description = Column(Text, nullable=True)
    incident_type = Column(String, nullable=True)
    data_categories = Column(JSON, nullable=False, default=list)
    affected_subjects = Column(Integer, nullable=True)
    affected_records = Column(Integer, nullable=True)

    # 2. Consequences and risk
    consequences = Column(Text, nullable=True)
    probable_risks = Column(Text, nullable=True)

    # 3. Measures
    measures_taken = Column(Text, nullable=True)
    planned_measures = Column(Text, nullable=True)

    # 4. Notifications
    regulator_notified = Column(Boolean, nullable=False, default=False)
    regulator_notification_date = Column(Date, nullable=True)
    notification_delay_reason = Column(Text, nullable=True)
    affected_parties_notified = Column(Boolean, nullable=False, default=False)
    affected_parties_notification_date = Column(Date, nullable=True)
    contact_name = Column(String, nullable=True)
    contact_email = Column(String, nullable=True)
    contact_phone = Column(String, nullable=True)

    # 5. Follow-up
    resolution_date = Column(Date, nullable=True)
    status = Column(String, nullable=False, default=IncidentStatus.OPEN.value)

    # 6. Private, never shown on the public verification page
    internal_notes = Column(Text, nullable=True)

    created_by = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    incident = relationship("Incident", back_populates="versions")

    __table_args__ = (
        UniqueConstraint("incident_id", "version_number", name="uq_incident_version_number"),
        Index(
            "uq_incident_version_latest",
            "incident_id",
            unique=True,
            postgresql_where=text("is_latest"),
            sqlite_where=text("is_latest"),
        ),
    )


class IncidentCounter(Base):
    """Last internal id handed out per organisation."""
    __tablename__ = "incident_counters"

    organisation_id = Column(String, primary_key=True)
    last_internal_id = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ============================================================
# AUDIT
# ============================================================

class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=new_uuid)
    event_type = Column(SQLEnum(AuditEventType), nullable=False, index=True)
    user_id = Column(String, nullable=True, index=True)
    organisation_id = Column(String, nullable=False, index=True)
    resource_type = Column(String, nullable=False, default="incident")
    resource_id = Column(String, nullable=True)
    request_id = Column(String, nullable=True)
    details = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    __table_args__ = (
        Index("idx_audit_org_time", "organisation_id", "created_at"),
    )
