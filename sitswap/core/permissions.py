"""Service contexts for writes that cross user boundaries.

Request handlers act for one user. Some effects of a booking change touch
other users' rows (the host's points, the counterparty's notifications, the
listing's calendar). Functions that perform such writes take a
``ServiceContext`` argument so the elevated access is explicit at every call
site and shows up in logs.
"""

from dataclasses import dataclass
from uuid import UUID


@dataclass(frozen=True)
class ServiceContext:
    purpose: str
    actor_id: UUID | None = None

    def __str__(self) -> str:
        if self.actor_id:
            return f"{self.purpose} (on behalf of {self.actor_id})"
        return self.purpose


def service_context(purpose: str, actor_id: UUID | None = None) -> ServiceContext:
    return ServiceContext(purpose=purpose, actor_id=actor_id)
