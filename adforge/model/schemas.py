"""
adForge Data Schemas
====================

Typed dataclasses for the fabricated directory and its answer key.

Design Decisions:
-----------------
1. DirectoryObject is a single dataclass keyed by its DN-like identifier;
   the object type is an enum value rather than a subclass, since every
   type carries a free-form LDAP attribute mapping
2. ObjectType, RelationshipKind and Severity enums serialize to their
   string values in the answer key and run summary
3. LedgerEntry is frozen: once written it is never mutated
4. Identifiers are derived from the parent path and the name, so the same
   plan always produces the same identifiers (the idempotency key)

Schema Overview:
- DirectoryObject: OU, User, Group, Computer, GPO or ServiceAccount
- Relationship: Membership, Delegation or GpoLink edge
- OUNode: a node in the planned OU hierarchy with its object quotas
- LedgerEntry: one misconfiguration confirmed in the directory
- StageCounts / RunSummary: what was attempted vs. what succeeded
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterator, Optional


class ObjectType(Enum):
    """Types of directory objects the engine creates."""
    OU = "OU"
    USER = "User"
    GROUP = "Group"
    COMPUTER = "Computer"
    GPO = "GPO"
    SERVICE_ACCOUNT = "ServiceAccount"

    @classmethod
    def from_string(cls, s: str) -> "ObjectType":
        """Convert a configuration key to an ObjectType.

        Accepts the enum value ("ServiceAccount") or a snake_case key
        ("service_account"), case-insensitively.
        """
        normalized = s.strip().lower().replace("_", "").replace("-", "")
        for object_type in cls:
            if object_type.value.lower() == normalized:
                return object_type
        raise ValueError(f"Unknown object type: {s}")

    @property
    def config_key(self) -> str:
        """snake_case key used in configuration documents."""
        return {
            ObjectType.OU: "ou",
            ObjectType.USER: "user",
            ObjectType.GROUP: "group",
            ObjectType.COMPUTER: "computer",
            ObjectType.GPO: "gpo",
            ObjectType.SERVICE_ACCOUNT: "service_account",
        }[self]


# Principals that can be placed into groups
PRINCIPAL_TYPES = (ObjectType.USER, ObjectType.COMPUTER, ObjectType.SERVICE_ACCOUNT)

# Fixed inter-type creation order (OUs are created first, by the hierarchy walk)
CREATION_ORDER = (
    ObjectType.GROUP,
    ObjectType.USER,
    ObjectType.COMPUTER,
    ObjectType.SERVICE_ACCOUNT,
    ObjectType.GPO,
)


class ObjectStatus(Enum):
    """Creation status of a directory object or relationship."""
    PENDING = "Pending"
    CREATED = "Created"
    FAILED = "Failed"


class RelationshipKind(Enum):
    """Types of edges between directory objects.

    Direction follows the data it represents:
    - Membership: group -> member
    - Delegation: principal -> OU/object (carries a rights set)
    - GpoLink: GPO -> OU
    """
    MEMBERSHIP = "Membership"
    DELEGATION = "Delegation"
    GPO_LINK = "GpoLink"


class Severity(Enum):
    """Severity of a misconfiguration rule."""
    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"
    INFO = "Info"


def ou_identifier(name: str, parent: str) -> str:
    """Identifier of an OU named `name` under `parent`."""
    return f"OU={escape_rdn(name)},{parent}"


def object_identifier(name: str, parent: str) -> str:
    """Identifier of a leaf object (CN) named `name` under `parent`."""
    return f"CN={escape_rdn(name)},{parent}"


def escape_rdn(value: str) -> str:
    """Escape an RDN value per RFC 4514."""
    escaped = ""
    for i, ch in enumerate(value):
        if ch in ',+"\\<>;=' or (ch == "#" and i == 0) or (ch == " " and i in (0, len(value) - 1)):
            escaped += "\\" + ch
        else:
            escaped += ch
    return escaped


def domain_dn(domain: str) -> str:
    """Derive the base DN from a DNS domain name (corp.local -> DC=corp,DC=local)."""
    return ",".join(f"DC={part}" for part in domain.split("."))


@dataclass
class DirectoryObject:
    """A directory object planned or created by the engine.

    Attributes:
        identifier: DN-like path, unique within the run
        object_type: Type of the object
        name: RDN value (the OU name or CN)
        parent: Identifier of the owning OU (domain root for top-level OUs)
        attributes: LDAP attribute mapping
        status: Pending until the adapter confirms or rejects the create
        failure_reason: Why the object is Failed, if it is
        existed: True if the adapter reported AlreadyExists
    """
    identifier: str
    object_type: ObjectType
    name: str
    parent: str
    attributes: dict = field(default_factory=dict)
    status: ObjectStatus = ObjectStatus.PENDING
    failure_reason: Optional[str] = None
    existed: bool = False

    def __hash__(self):
        return hash(self.identifier)

    def __eq__(self, other):
        if isinstance(other, DirectoryObject):
            return self.identifier == other.identifier
        return False

    @property
    def is_created(self) -> bool:
        return self.status == ObjectStatus.CREATED

    @property
    def is_privileged(self) -> bool:
        """Privileged groups carry adminCount=1."""
        return self.attributes.get("adminCount") == 1

    def to_dict(self) -> dict:
        return {
            "identifier": self.identifier,
            "object_type": self.object_type.value,
            "name": self.name,
            "parent": self.parent,
            "attributes": self.attributes,
            "status": self.status.value,
            "failure_reason": self.failure_reason,
        }


@dataclass
class Relationship:
    """A typed edge between two directory objects.

    Attributes:
        kind: Relationship kind
        source: Identifier of the source (group, principal or GPO)
        target: Identifier of the target (member, OU/object or OU)
        attributes: Edge data, e.g. {"rights": ["GenericAll"]} for delegations
        status: Pending until the adapter confirms or rejects the write
    """
    kind: RelationshipKind
    source: str
    target: str
    attributes: dict = field(default_factory=dict)
    status: ObjectStatus = ObjectStatus.PENDING
    failure_reason: Optional[str] = None

    @property
    def key(self) -> tuple:
        return (self.kind, self.source, self.target)

    @property
    def rights(self) -> list[str]:
        return list(self.attributes.get("rights", []))

    @property
    def description(self) -> str:
        """Human-readable description of the edge."""
        return f"{self.source} --[{self.kind.value}]--> {self.target}"

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "source": self.source,
            "target": self.target,
            "attributes": self.attributes,
            "status": self.status.value,
        }


@dataclass
class OUNode:
    """A node of the planned OU hierarchy.

    Attributes:
        name: OU name
        identifier: OU identifier (OU=<name>,<parent>)
        parent: Parent identifier (domain root for top-level OUs)
        depth: 1 for top-level OUs
        children: Child OU nodes
        quotas: Number of objects of each type to create directly in this OU
        weight: Density weight used when splitting object budgets
    """
    name: str
    identifier: str
    parent: str
    depth: int
    children: list = field(default_factory=list)
    quotas: dict = field(default_factory=dict)
    weight: float = 1.0

    @property
    def is_leaf(self) -> bool:
        return not self.children

    def walk(self) -> Iterator["OUNode"]:
        """Pre-order traversal of this subtree."""
        yield self
        for child in self.children:
            yield from child.walk()

    def total_quota(self) -> int:
        return sum(self.quotas.values())


def utc_now() -> str:
    """ISO-8601 UTC timestamp used across the ledger and summary."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


@dataclass(frozen=True)
class LedgerEntry:
    """One misconfiguration confirmed in the directory.

    Created only after the adapter confirms the weakening write succeeded.

    Attributes:
        rule_id: Misconfiguration rule that was applied
        target: Identifier of the weakened object
        severity: Rule severity
        delta: Attribute delta (or relationship data) actually written
        remediation: Hint on how to fix the weakness
        description: What the weakness is
        timestamp: When the write was confirmed
    """
    rule_id: str
    target: str
    severity: Severity
    delta: dict
    remediation: str
    description: str = ""
    timestamp: str = field(default_factory=utc_now)

    @property
    def key(self) -> tuple[str, str]:
        return (self.rule_id, self.target)

    def to_dict(self) -> dict:
        """Answer key record. Field names are part of the file format."""
        return {
            "rule_id": self.rule_id,
            "target": self.target,
            "severity": self.severity.value,
            "description": self.description,
            "remediation": self.remediation,
            "timestamp": self.timestamp,
            "delta": self.delta,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LedgerEntry":
        return cls(
            rule_id=data["rule_id"],
            target=data["target"],
            severity=Severity(data["severity"]),
            delta=data.get("delta", {}),
            remediation=data.get("remediation", ""),
            description=data.get("description", ""),
            timestamp=data.get("timestamp", ""),
        )


@dataclass
class StageCounts:
    """Attempted vs. succeeded vs. failed counts for one stage.

    `succeeded` includes objects the adapter reported as already existing,
    which are also counted separately in `existing`.
    """
    stage: str
    attempted: int = 0
    succeeded: int = 0
    existing: int = 0
    failed: int = 0
    skipped: int = 0
    rejected: int = 0

    @property
    def failure_rate(self) -> float:
        """Failed share of everything the stage was asked to handle."""
        total = self.attempted + self.skipped
        if total == 0:
            return 0.0
        return (self.failed + self.skipped) / total

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "existing": self.existing,
            "failed": self.failed,
            "skipped": self.skipped,
            "rejected": self.rejected,
            "failure_rate": round(self.failure_rate, 4),
        }


@dataclass
class RunSummary:
    """Aggregate outcome of a run, surfaced at process exit.

    Attributes:
        domain: Fabricated domain
        seed: Seed used for every random choice in the run
        stages: Stage name -> StageCounts
        answer_key_path: Where the ledger was written
        ledger_entries: Number of misconfigurations in the answer key
        cancelled: Whether the run was cancelled before completion
        critical_failures: Stages whose failure rate exceeded the threshold
        started_at / finished_at: ISO-8601 timestamps
    """
    domain: str
    seed: int
    stages: dict = field(default_factory=dict)
    answer_key_path: Optional[str] = None
    ledger_entries: int = 0
    cancelled: bool = False
    critical_failures: list = field(default_factory=list)
    started_at: str = field(default_factory=utc_now)
    finished_at: Optional[str] = None

    def stage(self, name: str) -> StageCounts:
        """Get (or create) the counters for a stage."""
        if name not in self.stages:
            self.stages[name] = StageCounts(stage=name)
        return self.stages[name]

    @property
    def succeeded(self) -> bool:
        return not self.cancelled and not self.critical_failures

    @property
    def exit_status(self) -> int:
        return 0 if self.succeeded else 1

    def to_dict(self) -> dict:
        return {
            "domain": self.domain,
            "seed": self.seed,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "cancelled": self.cancelled,
            "critical_failures": self.critical_failures,
            "answer_key_path": self.answer_key_path,
            "ledger_entries": self.ledger_entries,
            "stages": {name: counts.to_dict() for name, counts in self.stages.items()},
            "exit_status": self.exit_status,
        }
