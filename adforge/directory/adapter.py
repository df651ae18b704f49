"""
Directory Execution Adapter
===========================

The contract between the engine and a concrete directory.

Every call is idempotent and safely retryable: creating an object that
already exists reports ALREADY_EXISTS instead of failing, and re-applying
an attribute delta or relationship is a no-op.

Error Contract:
- Retryable conditions (busy server, throttling, dropped connection)
  raise TransientDirectoryError; the engine retries them with backoff
- Everything else is returned as AdapterResult(FAILED, reason), or raised
  as PermanentDirectoryError, which the engine treats the same way
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..model.schemas import ObjectType, RelationshipKind


class AdapterOutcome(Enum):
    """Outcome of a single adapter call."""
    CREATED = "Created"
    ALREADY_EXISTS = "AlreadyExists"
    OK = "Ok"
    FAILED = "Failed"


@dataclass(frozen=True)
class AdapterResult:
    """Result of an adapter call, with the reason when it failed."""
    outcome: AdapterOutcome
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome != AdapterOutcome.FAILED

    @property
    def existed(self) -> bool:
        return self.outcome == AdapterOutcome.ALREADY_EXISTS

    @classmethod
    def created(cls) -> "AdapterResult":
        return cls(AdapterOutcome.CREATED)

    @classmethod
    def already_exists(cls) -> "AdapterResult":
        return cls(AdapterOutcome.ALREADY_EXISTS)

    @classmethod
    def success(cls) -> "AdapterResult":
        return cls(AdapterOutcome.OK)

    @classmethod
    def failed(cls, reason: str) -> "AdapterResult":
        return cls(AdapterOutcome.FAILED, reason)


class DirectoryAdapter(ABC):
    """Abstract directory the engine writes to.

    Usage:
        adapter = InMemoryDirectory()
        await adapter.connect()
        result = await adapter.create_object(ObjectType.OU, "OU=IT,DC=corp,DC=local", {...})
        await adapter.close()
    """

    name = "directory"

    async def connect(self) -> None:
        """Open the connection. Raises DirectoryError if it cannot."""

    async def close(self) -> None:
        """Release the connection."""

    @abstractmethod
    async def create_object(self, object_type: ObjectType, identifier: str,
                            attributes: dict) -> AdapterResult:
        """Create an object: CREATED, ALREADY_EXISTS or FAILED(reason)."""

    @abstractmethod
    async def set_attributes(self, identifier: str, delta: dict) -> AdapterResult:
        """Replace attribute values on an existing object: OK or FAILED(reason)."""

    @abstractmethod
    async def create_relationship(self, kind: RelationshipKind, source: str, target: str,
                                  attributes: Optional[dict] = None) -> AdapterResult:
        """Create an edge: OK, ALREADY_EXISTS or FAILED(reason)."""

    async def __aenter__(self) -> "DirectoryAdapter":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
