"""
Identity context handed to the core by the external auth layer.

The core performs no credential checks: an ActorContext arrives already
validated and is trusted as-is. Checking that the actor may touch a
given shelter is the auth layer's job before the call reaches the
reconciler or the lifecycle manager.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict


class ActorRole(str, Enum):
    SHELTER_OPERATOR = "shelter_operator"
    FIRST_RESPONDER = "first_responder"
    EMERGENCY_COORDINATOR = "emergency_coordinator"
    ADMIN = "admin"


@dataclass(frozen=True)
class ActorContext:
    actor_id: str
    role: ActorRole = ActorRole.SHELTER_OPERATOR

    def to_dict(self) -> Dict[str, Any]:
        return {"actor_id": self.actor_id, "role": self.role.value}
