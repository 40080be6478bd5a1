"""
Incident Ledger — Incident content and output schemas

`IncidentContent` is the reportable snapshot a caller submits for every new
version (GDPR Art. 33 breach register fields). The *Out models are the admin
and public projections of stored versions.
"""

from datetime import date, datetime
from typing import Optional, List, Dict, Any, Mapping, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, ValidationError, model_validator

from exceptions import ContentValidationError
from models import IncidentType, DataCategory, IncidentStatus, IncidentVersion

# Regulator notification deadline after detection
NOTIFICATION_DEADLINE_HOURS = 72

# Never leave the admin boundary
PRIVATE_FIELDS = frozenset({"internal_notes", "contact_name", "contact_email", "contact_phone"})


class IncidentContent(BaseModel):
    model_config = ConfigDict(use_enum_values=True, str_strip_whitespace=True)

    # 1. Identification
    detection_date: Optional[date] = None
    description: str = Field(..., min_length=1, max_length=1000)
    incident_type: Optional[IncidentType] = None
    data_categories: List[DataCategory] = Field(default_factory=list)
    affected_subjects: Optional[int] = Field(None, ge=0)
    affected_records: Optional[int] = Field(None, ge=0)

    # 2. Consequences and risk
    consequences: Optional[str] = Field(None, max_length=2000)
    probable_risks: Optional[str] = Field(None, max_length=2000)

    # 3. Measures
    measures_taken: Optional[str] = Field(None, max_length=2000)
    planned_measures: Optional[str] = Field(None, max_length=2000)

    # 4. Notifications
    regulator_notified: bool = False
    regulator_notification_date: Optional[date] = None
    notification_delay_reason: Optional[str] = Field(None, max_length=500)
    affected_parties_notified: bool = False
    affected_parties_notification_date: Optional[date] = None
    contact_name: Optional[str] = Field(None, max_length=100)
    contact_email: Optional[EmailStr] = None
    contact_phone: Optional[str] = Field(None, max_length=20)

    # 5. Follow-up
    resolution_date: Optional[date] = None
    status: IncidentStatus = Field(IncidentStatus.OPEN, validate_default=True)

    # 6. Private
    internal_notes: Optional[str] = Field(None, max_length=5000)

    @model_validator(mode="after")
    def check_dates(self) -> "IncidentContent":
        if self.regulator_notified and not self.regulator_notification_date:
            raise ValueError("regulator_notification_date is required when the regulator was notified")
        if self.affected_parties_notified and not self.affected_parties_notification_date:
            raise ValueError(
                "affected_parties_notification_date is required when affected parties were notified"
            )
        if self.detection_date and self.resolution_date and self.resolution_date < self.detection_date:
            raise ValueError("resolution_date cannot be earlier than detection_date")
        if self.regulator_notified and self.regulator_notification_date and self.detection_date:
            hours = (self.regulator_notification_date - self.detection_date).days * 24
            if hours > NOTIFICATION_DEADLINE_HOURS and not self.notification_delay_reason:
                raise ValueError(
                    f"notification_delay_reason is required when the regulator was notified "
                    f"more than {NOTIFICATION_DEADLINE_HOURS} hours after detection"
                )
        return self

    def to_columns(self) -> Dict[str, Any]:
        """Column values for a new IncidentVersion row."""
        values = self.model_dump()
        values["data_categories"] = list(values.get("data_categories") or [])
        return values


def coerce_content(content: Union[IncidentContent, Mapping[str, Any]]) -> IncidentContent:
    """Validate raw content from programmatic callers (seeders, imports)."""
    if isinstance(content, IncidentContent):
        return content
    try:
        return IncidentContent.model_validate(dict(content))
    except ValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) or "content" for err in e.errors()})
        raise ContentValidationError(operation="validate_content", fields=fields) from e


CONTENT_FIELDS = tuple(IncidentContent.model_fields)
PUBLIC_CONTENT_FIELDS = tuple(f for f in CONTENT_FIELDS if f not in PRIVATE_FIELDS)


# ── Output models ────────────────────────────────────────────

class PublicVersionOut(BaseModel):
    version_number: int
    is_latest: bool
    created_at: Optional[datetime] = None
    detection_date: Optional[date] = None
    description: Optional[str] = None
    incident_type: Optional[str] = None
    data_categories: List[str] = []
    affected_subjects: Optional[int] = None
    affected_records: Optional[int] = None
    consequences: Optional[str] = None
    probable_risks: Optional[str] = None
    measures_taken: Optional[str] = None
    planned_measures: Optional[str] = None
    regulator_notified: bool = False
    regulator_notification_date: Optional[date] = None
    notification_delay_reason: Optional[str] = None
    affected_parties_notified: bool = False
    affected_parties_notification_date: Optional[date] = None
    resolution_date: Optional[date] = None
    status: str = IncidentStatus.OPEN.value


class VersionOut(PublicVersionOut):
    id: str
    incident_id: str
    token: str
    created_by: str
    contact_name: Optional[str] = None
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    internal_notes: Optional[str] = None


class IncidentOut(BaseModel):
    id: str
    organisation_id: str
    internal_id: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


def public_version_out(version: IncidentVersion) -> PublicVersionOut:
    return PublicVersionOut(
        version_number=version.version_number,
        is_latest=bool(version.is_latest),
        created_at=version.created_at,
        **{f: getattr(version, f) for f in PUBLIC_CONTENT_FIELDS if f not in ("data_categories",)},
        data_categories=list(version.data_categories or []),
    )


def version_out(version: IncidentVersion) -> VersionOut:
    public = public_version_out(version)
    return VersionOut(
        **public.model_dump(),
        id=version.id,
        incident_id=version.incident_id,
        token=version.token,
        created_by=version.created_by,
        **{f: getattr(version, f) for f in sorted(PRIVATE_FIELDS)},
    )


def incident_out(incident) -> IncidentOut:
    return IncidentOut(
        id=incident.id,
        organisation_id=incident.organisation_id,
        internal_id=incident.internal_id,
        created_at=incident.created_at,
        updated_at=incident.updated_at,
    )
