"""
Facts emitted by the engine for external consumers (reminders, reports).

The engine never delivers anything itself. It hands events to whatever
sink the host application injects, after the change has been committed.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol

from compliance_engine.models.enums import ItemStatus, RiskLevel

ITEM_STATUS_CHANGED = "item.status_changed"


@dataclass(frozen=True)
class ComplianceEvent:
    name: str
    item_id: str
    occurred_at: datetime
    previous_status: Optional[ItemStatus]
    status: ItemStatus
    previous_risk_level: Optional[RiskLevel]
    risk_level: RiskLevel


class EventSink(Protocol):
    def publish(self, event: ComplianceEvent) -> None:
        ...


class CollectingSink:
    """Keeps every published event in memory."""

    def __init__(self):
        self.events: List[ComplianceEvent] = []

    def publish(self, event: ComplianceEvent) -> None:
        self.events.append(event)
