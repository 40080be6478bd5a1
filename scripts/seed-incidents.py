#!/usr/bin/env python3
"""
Incident Ledger — Demo Data Seeder
Creates users and incident histories through the incident registry, so every
seeded version gets a real verification token. Used for UAT, development and
demo environments.

Requires the project to be installed (`pip install -e .`) and DATABASE_URL set.

Usage:
    python scripts/seed-incidents.py
    python scripts/seed-incidents.py --orgs 3 --incidents 20 --output seeded-tokens.json
"""

import json
import random
import asyncio
import argparse
from datetime import date, timedelta

from auth import AuthService
from database import init_db, get_db_context, close_db
from incident_registry import IncidentRegistry
from incident_schemas import IncidentContent
from models import User, UserRole, IncidentType, DataCategory, IncidentStatus


# ── Configuration ───────────────────────────────────────────

DESCRIPTIONS = {
    IncidentType.PHISHING: "Credential phishing campaign against finance mailboxes",
    IncidentType.MALWARE_RANSOMWARE: "Ransomware encrypted a shared file server",
    IncidentType.DEVICE_LOSS: "Unencrypted laptop lost during travel",
    IncidentType.DATA_LEAK: "Customer export shared with the wrong recipient",
    IncidentType.UNAUTHORIZED_ACCESS: "Former contractor account used after offboarding",
    IncidentType.MISCONFIGURATION: "Public storage bucket exposed HR documents",
}
MEASURES = [
    "Accounts disabled and passwords reset",
    "Affected systems isolated and restored from backup",
    "Recipient confirmed deletion in writing",
    "Access policy tightened and MFA enforced",
]


class IncidentSeeder:
    """Seeds realistic incident histories for Incident Ledger."""

    def __init__(self, seed: int = 42):
        random.seed(seed)
        self.today = date.today()

    def initial_content(self) -> IncidentContent:
        incident_type = random.choice(list(DESCRIPTIONS))
        return IncidentContent(
            detection_date=self.today - timedelta(days=random.randint(10, 300)),
            description=DESCRIPTIONS[incident_type],
            incident_type=incident_type,
            data_categories=random.sample(list(DataCategory), k=random.randint(1, 3)),
            affected_subjects=random.randint(1, 5000),
            consequences="Personal data possibly disclosed to an unauthorised party",
            internal_notes="Seeded record",
        )

    def follow_up(self, previous: dict, step: int) -> dict:
        """Next report of the same incident: investigation, notification, closure."""
        data = dict(previous)
        detected = data["detection_date"]
        if step == 1:
            data.update(status=IncidentStatus.INVESTIGATING, measures_taken=random.choice(MEASURES))
        elif step == 2:
            data.update(
                regulator_notified=True,
                regulator_notification_date=detected + timedelta(days=2),
            )
        else:
            data.update(
                status=IncidentStatus.CLOSED,
                resolution_date=detected + timedelta(days=random.randint(3, 30)),
            )
        return data


async def seed(orgs: int, incidents: int, seed_value: int) -> dict:
    seeder = IncidentSeeder(seed=seed_value)
    await init_db()
    output = {"users": [], "incidents": []}

    for org_index in range(orgs):
        organisation_id = f"org-{org_index + 1:03d}"
        async with get_db_context() as session:
            admin = User(
                email=f"admin@{organisation_id}.example",
                display_name=f"Admin {organisation_id}",
                role=UserRole.ORG_ADMIN,
                organisation_id=organisation_id,
            )
            session.add(admin)
            await session.flush()
            output["users"].append({
                "email": admin.email,
                "organisation_id": organisation_id,
                "access_token": AuthService.create_access_token(
                    {"sub": admin.id, "organisation_id": organisation_id}
                ),
            })
            admin_id = admin.id

        for _ in range(incidents):
            async with get_db_context() as session:
                registry = IncidentRegistry(session)
                content = seeder.initial_content()
                incident, version = await registry.create_incident(organisation_id, content, admin_id)
                tokens = [version.token]
                data = content.model_dump()
                for step in range(1, random.randint(1, 4)):
                    data = seeder.follow_up(data, step)
                    _, version = await registry.update_incident(incident.id, organisation_id, data, admin_id)
                    tokens.append(version.token)
                output["incidents"].append({
                    "organisation_id": organisation_id,
                    "internal_id": incident.internal_id,
                    "tokens": tokens,
                })

    await close_db()
    return output


def main():
    parser = argparse.ArgumentParser(description="Incident Ledger Demo Data Seeder")
    parser.add_argument("--orgs", type=int, default=2, help="Number of organisations")
    parser.add_argument("--incidents", type=int, default=10, help="Incidents per organisation")
    parser.add_argument("--output", type=str, default="seeded-tokens.json", help="Output file")
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    args = parser.parse_args()

    data = asyncio.run(seed(args.orgs, args.incidents, args.seed))

    with open(args.output, "w") as f:
        json.dump(data, f, indent=2, default=str)

    versions = sum(len(i["tokens"]) for i in data["incidents"])
    print(f"✅ Incidents seeded, tokens written to {args.output}")
    print(f"   Organisations: {args.orgs}")
    print(f"   Incidents: {len(data['incidents'])}")
    print(f"   Versions: {versions}")


if __name__ == "__main__":
    main()
