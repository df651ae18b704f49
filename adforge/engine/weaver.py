"""
Relationship Weaver
===================

Proposes and creates relationships between Created objects.

Relationship Types:
- Group nesting: a group joins an ordinary parent group
- Memberships: users, computers and service accounts join groups
- GPO links: every OU gets at least one GPO
- Delegations: an ordinary group receives rights on an OU

Design Decisions:
-----------------
1. Proposals are drawn sequentially from a seeded RNG, then written
   concurrently; the same registry state always yields the same proposals
2. A nesting edge is reserved in the registry before its write and
   released if the write fails, so concurrent proposals can never close a
   cycle; a proposal that would is counted as rejected
3. Privileged groups are never used as parents of nested groups, and only
   a privileged_fraction sample of principals joins them
4. A failed write drops the edge (after the adapter retry policy) and is
   logged; it is never re-proposed within the run
"""

import logging
import random
from typing import Callable, Optional

from ..config import RelationshipConfig, ExecutionConfig
from ..directory.adapter import DirectoryAdapter
from ..errors import CycleRejected
from ..generation.naming import NameGenerator
from ..model.registry import ObjectRegistry
from ..model.schemas import (
    DirectoryObject, ObjectStatus, ObjectType, Relationship, RelationshipKind,
    RunSummary, PRINCIPAL_TYPES
)
from .executor import RetryingExecutor
from .scheduler import CancellationToken, WorkerPool

logger = logging.getLogger(__name__)

STAGE = "relationship"

# Same-OU groups are this much more likely to be picked for a principal
SAME_OU_WEIGHT = 4.0


class RelationshipWeaver:
    """Creates nesting, membership, GPO link and delegation edges.

    Usage:
        weaver = RelationshipWeaver(config.relationships, config.execution, registry,
                                    adapter, executor, summary, rng, names, token)
        await weaver.weave()
    """

    def __init__(
        self,
        config: RelationshipConfig,
        execution: ExecutionConfig,
        registry: ObjectRegistry,
        adapter: DirectoryAdapter,
        executor: RetryingExecutor,
        summary: RunSummary,
        rng: random.Random,
        names: NameGenerator,
        token: Optional[CancellationToken] = None,
        verbose: bool = True,
        progress_callback: Optional[Callable[[str], None]] = None
    ):
        self.config = config
        self.execution = execution
        self.registry = registry
        self.adapter = adapter
        self.executor = executor
        self.summary = summary
        self.rng = rng
        self.names = names
        self.token = token or CancellationToken()
        self.verbose = verbose
        self.progress_callback = progress_callback

    def _log(self, message: str) -> None:
        """Log a message to console and/or callback."""
        if self.verbose:
            print(message)
        if self.progress_callback:
            self.progress_callback(message)

    async def weave(self) -> None:
        """Run every relationship phase in order."""
        phases = (
            ("group nesting", self.propose_nesting),
            ("memberships", self.propose_memberships),
            ("GPO links", self.propose_gpo_links),
            ("delegations", self.propose_delegations),
        )
        for label, propose in phases:
            if self.token.cancelled:
                self._log("[!] Cancelled: remaining relationship phases were skipped")
                return
            proposals = propose()
            self._log(f"[*] Writing {len(proposals)} {label}...")
            await self._write_all(proposals)

        counts = self.summary.stage(STAGE)
        self._log(
            f"[+] relationships: {counts.succeeded} created, {counts.failed} failed, "
            f"{counts.rejected} rejected"
        )

    # ------------------------------------------------------------------
    # Proposals
    # ------------------------------------------------------------------

    def _ordinary_groups(self) -> list[DirectoryObject]:
        return [g for g in self.registry.created(ObjectType.GROUP) if not g.is_privileged]

    def _privileged_groups(self) -> list[DirectoryObject]:
        return [g for g in self.registry.created(ObjectType.GROUP) if g.is_privileged]

    def propose_nesting(self) -> list[Relationship]:
        """Nest groups into ordinary parent groups, reserving each edge."""
        counts = self.summary.stage(STAGE)
        groups = self.registry.created(ObjectType.GROUP)
        parents = self._ordinary_groups()
        proposals = []

        for child in groups:
            if self.rng.random() >= self.config.nesting_fraction:
                continue
            candidates = [p for p in parents if p.identifier != child.identifier]
            if not candidates:
                continue
            parent = self.rng.choice(candidates)
            if self.registry.has_relationship(RelationshipKind.MEMBERSHIP, parent.identifier, child.identifier):
                continue
            if self.registry.nesting_depth_with(parent.identifier, child.identifier) > self.config.max_nesting_depth:
                logger.debug("Nesting %s into %s would exceed max depth", child.identifier, parent.identifier)
                continue
            try:
                self.registry.reserve_nesting(parent.identifier, child.identifier)
            except CycleRejected as e:
                counts.rejected += 1
                logger.debug("Rejected proposal: %s", e)
                continue
            proposals.append(Relationship(
                kind=RelationshipKind.MEMBERSHIP,
                source=parent.identifier,
                target=child.identifier,
                attributes={"nested": True},
            ))
        return proposals

    def propose_memberships(self) -> list[Relationship]:
        """Place principals into ordinary groups, and a sample into privileged ones."""
        ordinary = self._ordinary_groups()
        privileged = self._privileged_groups()
        principals = [p for t in PRINCIPAL_TYPES for p in self.registry.created(t)]
        proposals = []

        if ordinary:
            for principal in principals:
                k = self.rng.randint(self.config.memberships_min, self.config.memberships_max)
                pool = list(ordinary)
                for _ in range(min(k, len(pool))):
                    weights = [SAME_OU_WEIGHT if g.parent == principal.parent else 1.0 for g in pool]
                    group = self.rng.choices(pool, weights=weights, k=1)[0]
                    pool.remove(group)
                    proposals.append(self._membership(group, principal))

        if privileged and principals:
            sample_size = min(int(self.config.privileged_fraction * len(principals) + 0.5), len(principals))
            for principal in self.rng.sample(principals, sample_size):
                proposals.append(self._membership(self.rng.choice(privileged), principal))

        return [p for p in proposals if not self.registry.has_relationship(p.kind, p.source, p.target)]

    @staticmethod
    def _membership(group: DirectoryObject, member: DirectoryObject) -> Relationship:
        return Relationship(RelationshipKind.MEMBERSHIP, group.identifier, member.identifier)

    def propose_gpo_links(self) -> list[Relationship]:
        """Link each OU to its own GPOs, or to some GPO when it owns none."""
        gpos = self.registry.created(ObjectType.GPO)
        if not gpos:
            if self.registry.created(ObjectType.OU):
                logger.warning("No GPO was created: OUs are left without a linked GPO")
            return []

        owned: dict[str, list[DirectoryObject]] = {}
        for gpo in gpos:
            owned.setdefault(gpo.parent, []).append(gpo)

        proposals = []
        for ou in self.registry.created(ObjectType.OU):
            linked = list(owned.get(ou.identifier, [])) or [self.rng.choice(gpos)]
            if self.rng.random() < self.config.extra_gpo_link_fraction:
                others = [g for g in gpos if g not in linked]
                if others:
                    linked.append(self.rng.choice(others))
            for gpo in linked:
                if not self.registry.has_relationship(RelationshipKind.GPO_LINK, gpo.identifier, ou.identifier):
                    proposals.append(Relationship(RelationshipKind.GPO_LINK, gpo.identifier, ou.identifier))
        return proposals

    def propose_delegations(self) -> list[Relationship]:
        """Delegate a rights set on some OUs to ordinary groups."""
        groups = self._ordinary_groups()
        if not groups:
            return []

        proposals = []
        for ou in self.registry.created(ObjectType.OU):
            if self.rng.random() >= self.config.delegation_fraction:
                continue
            group = self.rng.choice(groups)
            rights = self.names.rights_set()
            existing = self.registry.get_relationship(RelationshipKind.DELEGATION, group.identifier, ou.identifier)
            if existing is not None and existing.status == ObjectStatus.CREATED:
                continue
            proposals.append(Relationship(
                kind=RelationshipKind.DELEGATION,
                source=group.identifier,
                target=ou.identifier,
                attributes={"rights": rights},
            ))
        return proposals

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _write_all(self, proposals: list[Relationship]) -> None:
        pool = WorkerPool(self.execution.concurrency, self.token)

        async def handle(rel: Relationship):
            await self.write(rel)

        await pool.run(proposals, handle)

        # Reserved nesting edges that were never written (cancellation)
        for rel in proposals:
            if rel.status == ObjectStatus.PENDING and rel.attributes.get("nested"):
                self.registry.release_nesting(rel.source, rel.target)

    async def write(self, rel: Relationship) -> bool:
        """Write one relationship through the adapter and record the outcome."""
        counts = self.summary.stage(STAGE)
        modified = rel.source if rel.kind == RelationshipKind.MEMBERSHIP else rel.target

        async with self.registry.lock_for(modified):
            if not self.registry.can_relate(rel.source, rel.target):
                counts.skipped += 1
                self._drop(rel, "endpoint not created")
                return False

            counts.attempted += 1
            result = await self.executor.run(
                lambda: self.adapter.create_relationship(rel.kind, rel.source, rel.target, rel.attributes),
                identifier=modified,
                stage=STAGE,
            )
            if result.ok:
                rel.status = ObjectStatus.CREATED
                self.registry.record_relationship(rel)
                counts.succeeded += 1
                if result.existed:
                    counts.existing += 1
                return True

            counts.failed += 1
            self._drop(rel, result.reason)
            return False

    def _drop(self, rel: Relationship, reason: str) -> None:
        rel.status = ObjectStatus.FAILED
        rel.failure_reason = reason
        self.registry.record_relationship(rel)
        if rel.attributes.get("nested"):
            self.registry.release_nesting(rel.source, rel.target)
        logger.warning("[%s] %s dropped: %s", STAGE, rel.description, reason)
