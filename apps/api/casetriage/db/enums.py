"""Enum definitions for case triage."""

from enum import Enum


class Role(str, Enum):
    """Operator roles carried in the auth token."""

    AGENT = "agent"
    ADMIN = "admin"

    @classmethod
    def has_value(cls, value: str) -> bool:
        return value in cls._value2member_map_


# Roles allowed to force-close a case (administrative override)
ROLES_CAN_OVERRIDE = frozenset({Role.ADMIN})


class CaseKind(str, Enum):
    """Case variants sharing one workflow."""

    DISPUTE = "dispute"
    SUPPORT_TICKET = "support_ticket"
    CLAIM = "claim"
    ANTI_CHEAT_FLAG = "anti_cheat_flag"


class CaseCategory(str, Enum):
    """Domain tag used for routing and reporting."""

    PAYMENT = "payment"
    GAME_RESULT = "game_result"
    TECHNICAL = "technical"
    FRAUD = "fraud"
    ACCOUNT = "account"
    GENERAL = "general"


class Severity(str, Enum):
    """Ordered severity: low < medium < high < critical."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    @classmethod
    def from_rank(cls, rank: int) -> "Severity":
        return _SEVERITY_ORDER[max(0, min(rank, len(_SEVERITY_ORDER) - 1))]

    def bump(self, levels: int = 1) -> "Severity":
        return Severity.from_rank(self.rank + levels)

    @classmethod
    def highest(cls, *values: "Severity") -> "Severity":
        return max(values, key=lambda s: s.rank)


_SEVERITY_ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]


class DeclaredPriority(str, Enum):
    """Priority picked by the reporting user."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    def as_severity(self) -> Severity:
        if self is DeclaredPriority.URGENT:
            return Severity.CRITICAL
        return Severity(self.value)


class CaseStatus(str, Enum):
    """Workflow states shared by every kind."""

    NEW = "new"
    OPEN = "open"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    REJECTED = "rejected"
    FALSE_POSITIVE = "false_positive"
    CLOSED = "closed"

    @classmethod
    def parse(cls, value: str) -> "CaseStatus":
        """Parse a status, accepting ``in_progress`` as an alias of investigating."""
        normalized = (value or "").strip().lower()
        if normalized == "in_progress":
            return cls.INVESTIGATING
        return cls(normalized)


TERMINAL_STATUSES = frozenset(
    {CaseStatus.RESOLVED, CaseStatus.REJECTED, CaseStatus.FALSE_POSITIVE, CaseStatus.CLOSED}
)


class MessageSender(str, Enum):
    USER = "user"
    STAFF = "staff"


class AuditAction(str, Enum):
    """Audited case mutations."""

    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    ASSIGNED = "assigned"
    REASSIGNED = "reassigned"
    FIRST_RESPONSE = "first_response"
    RECLASSIFIED = "reclassified"
    EVIDENCE_ADDED = "evidence_added"
    TAGS_CHANGED = "tags_changed"
    DELETED = "deleted"
    CLUSTER_ESCALATED = "cluster_escalated"


class DisputeType(str, Enum):
    PAYMENT = "payment"
    GAME_RESULT = "game_result"
    TECHNICAL = "technical"
    FRAUD = "fraud"


class SupportChannel(str, Enum):
    CONTACT_FORM = "contact_form"
    LIVE_CHAT = "live_chat"
    SUPPORT_TICKET = "support_ticket"


class SupportTopic(str, Enum):
    GAMING = "gaming"
    WALLET = "wallet"
    TECHNICAL = "technical"
    ACCOUNT = "account"
    GENERAL = "general"


class ClaimType(str, Enum):
    PAYMENT_DISPUTE = "payment_dispute"
    GAME_ISSUE = "game_issue"
    ACCOUNT_ACCESS = "account_access"
    REFUND_REQUEST = "refund_request"
    TECHNICAL_SUPPORT = "technical_support"
    FRAUD_REPORT = "fraud_report"


class DetectorType(str, Enum):
    """Anti-cheat detector that raised a flag."""

    SUSPICIOUS_TIMING = "suspicious_timing"
    IMPOSSIBLE_MOVES = "impossible_moves"
    PATTERN_DETECTION = "pattern_detection"
    MULTIPLE_ACCOUNTS = "multiple_accounts"
    BOT_BEHAVIOR = "bot_behavior"
