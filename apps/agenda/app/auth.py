"""
Request-scoped caller identity.

Authentication happens upstream; the gateway forwards the verified caller as
``X-Actor-Id`` / ``X-Actor-Role`` / ``X-Actor-Doctor-Id`` headers. Every
service call receives an explicit :class:`Actor`, nothing is read from
process-wide state.
"""

import enum
from dataclasses import dataclass
from typing import Optional

from fastapi import Header

from .errors import ForbiddenError, UnauthorizedError


class Role(str, enum.Enum):
    ADMIN = "ADMIN"
    DOCTOR = "DOCTOR"
    PATIENT = "PATIENT"


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: Role
    doctor_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    def is_doctor(self, doctor_id: Optional[str]) -> bool:
        return self.role is Role.DOCTOR and doctor_id is not None and self.doctor_id == doctor_id


def get_actor(
    actor_id: Optional[str] = Header(default=None, alias="X-Actor-Id"),
    actor_role: Optional[str] = Header(default=None, alias="X-Actor-Role"),
    actor_doctor_id: Optional[str] = Header(default=None, alias="X-Actor-Doctor-Id"),
) -> Actor:
    uid = (actor_id or "").strip()
    if not uid:
        raise UnauthorizedError("missing X-Actor-Id")
    try:
        role = Role((actor_role or "").strip().upper())
    except ValueError:
        raise UnauthorizedError("invalid X-Actor-Role")
    doctor_id = (actor_doctor_id or "").strip() or None
    if role is Role.DOCTOR and not doctor_id:
        raise UnauthorizedError("doctor callers must send X-Actor-Doctor-Id")
    return Actor(user_id=uid, role=role, doctor_id=doctor_id if role is Role.DOCTOR else None)


def require_admin(actor: Actor) -> None:
    if not actor.is_admin:
        raise ForbiddenError("admin role required")


def require_doctor_or_admin(actor: Actor, doctor_id: str) -> None:
    """Owner doctor or admin; everyone else gets ForbiddenError."""
    if actor.is_admin or actor.is_doctor(doctor_id):
        return
    raise ForbiddenError("only the owning doctor or an admin may do this")
