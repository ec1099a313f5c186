from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from clinic.models import Role, User


@dataclass(frozen=True)
class AdminActor:
    id: str
    email: Optional[str] = None
    role: Role = Role.ADMIN


@dataclass(frozen=True)
class TherapistActor:
    id: str
    email: Optional[str] = None
    role: Role = Role.THERAPIST


@dataclass(frozen=True)
class PatientActor:
    id: str
    email: Optional[str] = None
    role: Role = Role.PATIENT


Actor = Union[AdminActor, TherapistActor, PatientActor]

_ACTOR_BY_ROLE = {
    Role.ADMIN: AdminActor,
    Role.THERAPIST: TherapistActor,
    Role.PATIENT: PatientActor,
}


class UnknownRole(ValueError):
    pass


def make_actor(actor_id: str, role: str, email: Optional[str] = None) -> Actor:
    """Build the actor variant for ``role``; unknown roles raise ``UnknownRole``."""
    try:
        cls = _ACTOR_BY_ROLE[Role(role)]
    except ValueError as exc:
        raise UnknownRole(role) from exc
    return cls(id=str(actor_id), email=email)


def actor_from_user(user: User) -> Actor:
    return make_actor(user.id, user.role, user.email)
