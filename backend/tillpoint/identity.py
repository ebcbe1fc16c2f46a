# Overview: Pre-authenticated actor identity handed to the engine by the transport layer.

from __future__ import annotations

from dataclasses import dataclass

ROLE_CASHIER = "CASHIER"
ROLE_MANAGER = "MANAGER"
ROLE_ADMIN = "ADMIN"

VALID_ROLES = [ROLE_CASHIER, ROLE_MANAGER, ROLE_ADMIN]

# Roles allowed to void sales, refund, and operate the sync queue
SUPERVISOR_ROLES = [ROLE_MANAGER, ROLE_ADMIN]

SYSTEM_ACTOR_ID = "system"


@dataclass(frozen=True)
class Actor:
    id: str
    role: str = ROLE_CASHIER

    @property
    def is_supervisor(self) -> bool:
        return self.role in SUPERVISOR_ROLES


SYSTEM_ACTOR = Actor(id=SYSTEM_ACTOR_ID, role=ROLE_ADMIN)
