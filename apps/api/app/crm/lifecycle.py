"""Deal lifecycle status as a single tagged value.

A deal is exactly one of open, archived or lost. The persisted flag, timestamp
and reason columns are a projection of that value and are only ever written
through :func:`apply_status`, so they cannot drift apart.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from app.crm.errors import InvalidTransitionError
from app.crm.models import CRMDeal


@dataclass(frozen=True, slots=True)
class OpenStatus:
    name = "open"


@dataclass(frozen=True, slots=True)
class ArchivedStatus:
    archived_at: datetime
    reason: str | None = None
    name = "archived"


@dataclass(frozen=True, slots=True)
class LostStatus:
    lost_at: datetime
    reason: str
    stage_at_loss: str
    name = "lost"


DealStatus = OpenStatus | ArchivedStatus | LostStatus


class StatusMachine:
    def __init__(self, transitions: dict[str, set[str]]) -> None:
        self._transitions = transitions

    def can_transition(self, current: str, target: str) -> bool:
        return target in self._transitions.get(current, set())

    def assert_transition(self, current: str, target: str) -> None:
        if not self.can_transition(current, target):
            raise InvalidTransitionError(current, target)


# Archiving a lost deal is refused; losing an archived deal replaces the archive.
deal_status_machine = StatusMachine(
    {
        "open": {"archived", "lost"},
        "archived": {"lost", "open"},
        "lost": {"open"},
    }
)


def status_of(deal: CRMDeal) -> DealStatus:
    if deal.status == "lost" and deal.lost_at is not None:
        return LostStatus(
            lost_at=deal.lost_at,
            reason=deal.loss_reason or "",
            stage_at_loss=deal.stage_at_loss or deal.stage,
        )
    if deal.status == "archived" and deal.archived_at is not None:
        return ArchivedStatus(archived_at=deal.archived_at, reason=deal.archive_reason)
    return OpenStatus()


def apply_status(deal: CRMDeal, status: DealStatus) -> None:
    deal.status = status.name
    deal.is_archived = isinstance(status, ArchivedStatus)
    deal.archived_at = status.archived_at if isinstance(status, ArchivedStatus) else None
    deal.archive_reason = status.reason if isinstance(status, ArchivedStatus) else None
    deal.is_lost = isinstance(status, LostStatus)
    deal.lost_at = status.lost_at if isinstance(status, LostStatus) else None
    deal.loss_reason = status.reason if isinstance(status, LostStatus) else None
    deal.stage_at_loss = status.stage_at_loss if isinstance(status, LostStatus) else None
