"""
Role-scoped authorization for medical resources.

Every check ends in exactly one audit record, whatever the outcome, and any
failure while looking up the resource resolves to a denial.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

from fastapi import Depends
from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from clinic.db import get_db
from clinic.models import Appointment, TherapistNote
from clinic.services.actors import Actor, AdminActor, PatientActor, TherapistActor, UnknownRole, make_actor
from clinic.services.audit import AuditLogger, get_audit_logger

logger = logging.getLogger(__name__)

APPOINTMENT = "appointment"
PATIENT_HISTORY = "patient_history"
THERAPIST_NOTE = "therapist_note"


@dataclass(frozen=True)
class AccessDecision:
    authorized: bool
    reason: str

    def __bool__(self) -> bool:
        return self.authorized


class MedicalRecordLookup(Protocol):
    async def appointment_parties(self, appointment_id: str) -> Optional[Tuple[str, Optional[str]]]:
        """(patient_id, therapist_id) of the appointment, or None if it does not exist."""

    async def therapist_has_patient(self, therapist_id: str, patient_id: str) -> bool:
        """True if any appointment (any date, any status) links the two."""

    async def note_author(self, note_id: str) -> Optional[str]:
        """therapist_id that wrote the note, or None if it does not exist."""


class SqlMedicalRecordLookup:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def appointment_parties(self, appointment_id: str):
        res = await self.session.execute(
            select(Appointment.patient_id, Appointment.therapist_id).where(Appointment.id == appointment_id)
        )
        row = res.first()
        if row is None:
            return None
        return row[0], row[1]

    async def therapist_has_patient(self, therapist_id: str, patient_id: str) -> bool:
        q = select(
            exists().where(
                Appointment.therapist_id == therapist_id,
                Appointment.patient_id == patient_id,
            )
        )
        return bool((await self.session.execute(q)).scalar())

    async def note_author(self, note_id: str):
        res = await self.session.execute(select(TherapistNote.therapist_id).where(TherapistNote.id == note_id))
        return res.scalar_one_or_none()


class MedicalAccessResolver:
    def __init__(self, lookup: MedicalRecordLookup, audit: AuditLogger):
        self.lookup = lookup
        self.audit = audit

    async def check(
        self,
        actor: Actor,
        resource_type: str,
        resource_id: str,
        access_type: str = "verify",
    ) -> AccessDecision:
        try:
            decision = await self._decide(actor, resource_type, str(resource_id))
        except Exception:
            logger.exception("Access lookup failed for %s/%s", resource_type, resource_id)
            decision = AccessDecision(False, "unauthorized_lookup_error")

        await self.audit.record(
            actor.id,
            access_type,
            resource_type,
            resource_id,
            {"result": decision.authorized, "reason": decision.reason, "userRole": actor.role.value},
        )
        return decision

    async def check_role(
        self,
        actor_id: str,
        actor_role: str,
        resource_type: str,
        resource_id: str,
        access_type: str = "verify",
    ) -> AccessDecision:
        """Same as ``check`` for callers holding a raw role string."""
        try:
            actor = make_actor(actor_id, actor_role)
        except UnknownRole:
            decision = AccessDecision(False, "unauthorized_role")
            await self.audit.record(
                actor_id,
                access_type,
                resource_type,
                resource_id,
                {"result": False, "reason": decision.reason, "userRole": actor_role},
            )
            return decision
        return await self.check(actor, resource_type, resource_id, access_type)

    async def is_authorized(self, actor_id: str, actor_role: str, resource_type: str, resource_id: str) -> bool:
        return (await self.check_role(actor_id, actor_role, resource_type, resource_id)).authorized

    async def _decide(self, actor: Actor, resource_type: str, resource_id: str) -> AccessDecision:
        if isinstance(actor, AdminActor):
            return AccessDecision(True, "admin_role")

        if resource_type == APPOINTMENT:
            parties = await self.lookup.appointment_parties(resource_id)
            if parties is not None and actor.id in parties:
                return AccessDecision(True, "appointment_access")
            return AccessDecision(False, "unauthorized_appointment")

        if resource_type == PATIENT_HISTORY:
            if isinstance(actor, PatientActor):
                if actor.id == resource_id:
                    return AccessDecision(True, "own_history")
                return AccessDecision(False, "unauthorized_patient_history")
            if isinstance(actor, TherapistActor):
                if await self.lookup.therapist_has_patient(actor.id, resource_id):
                    return AccessDecision(True, "therapist_patient_relationship")
                return AccessDecision(False, "unauthorized_therapist")
            return AccessDecision(False, "unauthorized_role")

        if resource_type == THERAPIST_NOTE:
            if isinstance(actor, TherapistActor):
                author = await self.lookup.note_author(resource_id)
                if author is not None and author == actor.id:
                    return AccessDecision(True, "note_author")
            return AccessDecision(False, "unauthorized_note_access")

        return AccessDecision(False, "unknown_resource_type")


def get_access_resolver(
    db: AsyncSession = Depends(get_db),
    audit: AuditLogger = Depends(get_audit_logger),
) -> MedicalAccessResolver:
    return MedicalAccessResolver(SqlMedicalRecordLookup(db), audit)
