"""
In-Memory Directory
===================

Dict-backed DirectoryAdapter for dry runs, offline generation and tests.

Features:
- Same idempotency contract as a real directory (ALREADY_EXISTS on
  re-create, no-op re-writes)
- Rejects objects whose parent container does not exist
- Failure injection: permanent failures per identifier and a number of
  transient failures before a call succeeds
- Optional per-call latency, so concurrency and cancellation can be
  exercised without a server
"""

import asyncio
import logging
from collections import Counter
from typing import Optional

from ..errors import TransientDirectoryError
from ..model.schemas import ObjectType, RelationshipKind
from .adapter import AdapterResult, DirectoryAdapter

logger = logging.getLogger(__name__)


def split_identifier(identifier: str) -> tuple[str, str]:
    """Split a DN-like identifier into (first RDN, parent), honoring escapes."""
    escaped = False
    for i, ch in enumerate(identifier):
        if escaped:
            escaped = False
        elif ch == "\\":
            escaped = True
        elif ch == ",":
            return identifier[:i], identifier[i + 1:]
    return identifier, ""


class InMemoryDirectory(DirectoryAdapter):
    """A directory that lives in a few dictionaries.

    Usage:
        directory = InMemoryDirectory()
        directory.fail_permanently("OU=HR,DC=corp,DC=local")
        directory.fail_transiently("CN=jdoe,OU=IT,DC=corp,DC=local", times=2)

        ...run the engine...

        directory.get_attributes("CN=jdoe,OU=IT,DC=corp,DC=local")
    """

    name = "memory"

    def __init__(self, latency: float = 0.0):
        """Initialize an empty directory.

        Args:
            latency: Seconds every call sleeps before doing its work
        """
        self.latency = latency
        self.connected = False

        self.objects: dict[str, dict] = {}
        self.relationships: dict[tuple, dict] = {}
        self.calls: Counter = Counter()

        self._permanent: dict[str, str] = {}
        self._transient: Counter = Counter()

    # ------------------------------------------------------------------
    # Failure injection
    # ------------------------------------------------------------------

    def fail_permanently(self, identifier: str, reason: str = "injected permanent failure") -> None:
        """Every call touching `identifier` fails with `reason`."""
        self._permanent[identifier] = reason

    def fail_transiently(self, identifier: str, times: int = 1) -> None:
        """The next `times` calls touching `identifier` raise TransientDirectoryError."""
        self._transient[identifier] += times

    def _check_failures(self, *identifiers: str) -> Optional[AdapterResult]:
        for identifier in identifiers:
            if self._transient[identifier] > 0:
                self._transient[identifier] -= 1
                raise TransientDirectoryError("injected transient failure", identifier)
        for identifier in identifiers:
            if identifier in self._permanent:
                return AdapterResult.failed(self._permanent[identifier])
        return None

    async def _simulate_latency(self) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)

    # ------------------------------------------------------------------
    # DirectoryAdapter
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        self.connected = True

    async def close(self) -> None:
        self.connected = False

    async def create_object(self, object_type: ObjectType, identifier: str,
                            attributes: dict) -> AdapterResult:
        self.calls["create_object"] += 1
        await self._simulate_latency()

        injected = self._check_failures(identifier)
        if injected is not None:
            return injected

        existing = self.objects.get(identifier)
        if existing is not None:
            if existing["object_type"] != object_type:
                return AdapterResult.failed(
                    f"conflict: {identifier} exists as {existing['object_type'].value}"
                )
            return AdapterResult.already_exists()

        _, parent = split_identifier(identifier)
        if not parent.upper().startswith("DC=") and parent not in self.objects:
            return AdapterResult.failed(f"parent container {parent} does not exist")

        self.objects[identifier] = {
            "object_type": object_type,
            "attributes": dict(attributes),
        }
        return AdapterResult.created()

    async def set_attributes(self, identifier: str, delta: dict) -> AdapterResult:
        self.calls["set_attributes"] += 1
        await self._simulate_latency()

        injected = self._check_failures(identifier)
        if injected is not None:
            return injected

        existing = self.objects.get(identifier)
        if existing is None:
            return AdapterResult.failed(f"no such object: {identifier}")
        existing["attributes"].update(delta)
        return AdapterResult.success()

    async def create_relationship(self, kind: RelationshipKind, source: str, target: str,
                                  attributes: Optional[dict] = None) -> AdapterResult:
        self.calls["create_relationship"] += 1
        await self._simulate_latency()

        injected = self._check_failures(source, target)
        if injected is not None:
            return injected

        for identifier in (source, target):
            if identifier not in self.objects:
                return AdapterResult.failed(f"no such object: {identifier}")

        key = (kind, source, target)
        requested = dict(attributes or {})
        existing = self.relationships.get(key)
        if existing is None:
            self.relationships[key] = requested
            return AdapterResult.success()

        if kind == RelationshipKind.DELEGATION:
            # Rights accumulate, like ACEs on a security descriptor
            rights = list(existing.get("rights", []))
            added = [r for r in requested.get("rights", []) if r not in rights]
            if not added:
                return AdapterResult.already_exists()
            existing["rights"] = rights + added
            return AdapterResult.success()
        return AdapterResult.already_exists()

    # ------------------------------------------------------------------
    # Read-back
    # ------------------------------------------------------------------

    def exists(self, identifier: str) -> bool:
        return identifier in self.objects

    def get_attributes(self, identifier: str) -> Optional[dict]:
        """Copy of an object's attributes, or None if it does not exist."""
        entry = self.objects.get(identifier)
        if entry is None:
            return None
        return dict(entry["attributes"])

    def get_relationship(self, kind: RelationshipKind, source: str, target: str) -> Optional[dict]:
        entry = self.relationships.get((kind, source, target))
        return dict(entry) if entry is not None else None

    def count(self, object_type: Optional[ObjectType] = None) -> int:
        if object_type is None:
            return len(self.objects)
        return sum(1 for entry in self.objects.values() if entry["object_type"] == object_type)

    @property
    def relationship_count(self) -> int:
        return len(self.relationships)
