"""Participant authorization for the custody registry.

The admin identity is fixed when the registry is created and is itself
authorized with the admin role; only the admin may authorize others. There
is no de-authorization and a participant's role never changes once set.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from custody.errors import AlreadyAuthorized, InvalidTarget, NotAuthorized, Unauthorized
from custody.events import Event, ParticipantAuthorized
from custody.hardening import MonotonicClock, Validators
from custody.observability import RegistryLayer, get_logger

logger = get_logger("access_control", RegistryLayer.ACCESS)


@dataclass(frozen=True)
class Participant:
    """An authorized identity and the role it was authorized with."""
    identity: str
    role: str
    authorized: bool
    authorized_at: datetime
    authorized_by: str

    def to_dict(self) -> Dict[str, object]:
        return {
            "identity": self.identity,
            "role": self.role,
            "authorized": self.authorized,
            "authorized_at": self.authorized_at,
            "authorized_by": self.authorized_by,
        }


class AccessControl:
    """Authorized participant set; gatekeeper for every mutating call."""

    def __init__(
        self,
        admin: str,
        *,
        admin_role: str = "admin",
        clock: Optional[MonotonicClock] = None,
        event_sink: Optional[Callable[[Event], None]] = None,
    ):
        result = Validators.validate_identity(admin, "admin")
        if not result.is_valid:
            raise ValueError(f"invalid admin identity: {result.first_error}")

        self._admin: str = result.sanitized_value
        self._clock = clock or MonotonicClock()
        self._event_sink = event_sink
        self._lock = threading.RLock()
        self._participants: Dict[str, Participant] = {
            self._admin: Participant(
                identity=self._admin,
                role=admin_role,
                authorized=True,
                authorized_at=self._clock.now(),
                authorized_by=self._admin,
            )
        }

    @property
    def admin(self) -> str:
        return self._admin

    def authorize(self, caller: str, target: str, role: str) -> Participant:
        """Authorize ``target`` with ``role``. Only the admin may call this."""
        if caller != self._admin:
            logger.warning(
                "authorization rejected",
                operation="authorize",
                error_code=Unauthorized.code,
                caller=caller,
                target=target,
            )
            raise Unauthorized(
                "only the registry admin may authorize participants",
                {"caller": caller},
            )

        checked = Validators.validate_identity(target, "target")
        if not checked.is_valid:
            raise InvalidTarget(
                f"invalid participant identity: {checked.first_error.message}",
                {"target": target},
            )
        if not isinstance(role, str):
            raise TypeError(f"role must be a string, got {type(role).__name__}")

        identity = checked.sanitized_value
        with self._lock:
            if identity in self._participants:
                existing = self._participants[identity]
                logger.warning(
                    "participant already authorized",
                    operation="authorize",
                    error_code=AlreadyAuthorized.code,
                    target=identity,
                    role=existing.role,
                )
                raise AlreadyAuthorized(
                    f"participant {identity} is already authorized",
                    {"target": identity, "role": existing.role},
                )

            participant = Participant(
                identity=identity,
                role=role,
                authorized=True,
                authorized_at=self._clock.now(),
                authorized_by=caller,
            )
            self._participants[identity] = participant

        # Emitted after the lock is released: handlers may take product locks,
        # and transfers take this lock while holding one.
        if self._event_sink is not None:
            self._event_sink(ParticipantAuthorized(participant=identity, role=role))

        logger.info("participant authorized", operation="authorize", participant=identity, role=role)
        return participant

    def require_authorized(self, identity: str) -> None:
        """Raise NotAuthorized unless ``identity`` is an authorized participant."""
        if not self.is_authorized(identity):
            raise NotAuthorized(
                f"{identity!r} is not an authorized participant",
                {"identity": identity},
            )

    def is_authorized(self, identity: str) -> bool:
        if not isinstance(identity, str):
            return False
        with self._lock:
            participant = self._participants.get(identity)
        return participant is not None and participant.authorized

    def role_of(self, identity: str) -> str:
        """Role of ``identity``, or an empty string when unknown."""
        if not isinstance(identity, str):
            return ""
        with self._lock:
            participant = self._participants.get(identity)
        return participant.role if participant else ""

    def get(self, identity: str) -> Optional[Participant]:
        if not isinstance(identity, str):
            return None
        with self._lock:
            return self._participants.get(identity)

    def participants(self) -> List[Participant]:
        """All participants in authorization order."""
        with self._lock:
            return list(self._participants.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._participants)
