"""Enums for the compliance engine - the valid values for kinds, states and severities."""
from enum import Enum


class ItemKind(str, Enum):
    """What a compliance item tracks. Discriminates the kind-specific fields."""
    CREDENTIAL_CHECK = "credential-check"
    REGULATORY_REQUIREMENT = "regulatory-requirement"
    STANDARD = "standard"


class ItemStatus(str, Enum):
    """
    Lifecycle status of a compliance item.

    COMPLIANT, AT_RISK and NON_COMPLIANT are derived. PENDING and ARCHIVED are
    only ever set by an explicit command and suspend derivation.
    """
    COMPLIANT = "compliant"
    AT_RISK = "at-risk"
    NON_COMPLIANT = "non-compliant"
    PENDING = "pending"
    ARCHIVED = "archived"


MANUAL_STATUSES = frozenset({ItemStatus.PENDING, ItemStatus.ARCHIVED})


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class GapSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class GapStatus(str, Enum):
    """A gap is open until resolved; in-progress still counts as open."""
    OPEN = "open"
    IN_PROGRESS = "in-progress"
    RESOLVED = "resolved"


UNRESOLVED_GAP_STATUSES = frozenset({GapStatus.OPEN, GapStatus.IN_PROGRESS})


class EntityType(str, Enum):
    """Entities the audit log can refer to."""
    COMPLIANCE_ITEM = "compliance-item"
    GAP = "gap"
