"""
Misconfiguration Injector
=========================

Weakens a sampled subset of Created objects and records each confirmed
weakening in the answer key ledger.

Algorithm (per selected rule, rules run one after another):
-----------------------------------------------------------
1. Evaluate the rule predicate on the registry to get the eligible set;
   targets this rule already weakened in a previous run stay in the set
2. sample_size = fraction (rounded half up) or count of the eligible set;
   already-weakened targets count toward it
3. Draw the remaining targets without replacement from a per-rule RNG
4. Build every mutation from the current registry state, then write them
   concurrently through the adapter
5. On success update the registry copy and append a LedgerEntry; on
   failure skip the target (no entry)

A ledger entry exists only for a write the adapter confirmed.
"""

import logging
import random
from typing import Callable, Optional

from ..config import ExecutionConfig, RuleSampling
from ..directory.adapter import DirectoryAdapter
from ..ledger.answer_key import AnswerKeyLedger
from ..model.registry import ObjectRegistry
from ..model.schemas import LedgerEntry, ObjectStatus, Relationship, RelationshipKind, RunSummary
from ..rules.catalog import MisconfigurationRule, Mutation, RuleCatalog
from .executor import RetryingExecutor
from .scheduler import CancellationToken, WorkerPool

logger = logging.getLogger(__name__)

STAGE = "misconfiguration"


class MisconfigurationInjector:
    """Applies configured misconfiguration rules.

    Usage:
        injector = MisconfigurationInjector(catalog, config.misconfigurations, registry,
                                            adapter, executor, ledger, summary,
                                            config.execution, seed, token)
        await injector.inject()
    """

    def __init__(
        self,
        catalog: RuleCatalog,
        selection: dict[str, RuleSampling],
        registry: ObjectRegistry,
        adapter: DirectoryAdapter,
        executor: RetryingExecutor,
        ledger: AnswerKeyLedger,
        summary: RunSummary,
        execution: ExecutionConfig,
        seed: int,
        token: Optional[CancellationToken] = None,
        verbose: bool = True,
        progress_callback: Optional[Callable[[str], None]] = None
    ):
        """Initialize the injector.

        Args:
            catalog: Available rules
            selection: rule_id -> sampling, in application order
            registry: Run registry (read for predicates, updated on success)
            adapter: Directory to write to
            executor: Retry wrapper for adapter calls
            ledger: Answer key ledger
            summary: Run summary (stage counters)
            execution: Concurrency settings
            seed: Run seed; each rule draws from its own RNG derived from it
            token: Run cancellation token
        """
        self.catalog = catalog
        self.selection = selection
        self.registry = registry
        self.adapter = adapter
        self.executor = executor
        self.ledger = ledger
        self.summary = summary
        self.execution = execution
        self.seed = seed
        self.token = token or CancellationToken()
        self.verbose = verbose
        self.progress_callback = progress_callback

        # Entries confirmed by a previous run, replayed into the registry per rule
        self._previous: dict[str, list[LedgerEntry]] = {}
        for entry in ledger.entries:
            self._previous.setdefault(entry.rule_id, []).append(entry)

    def _log(self, message: str) -> None:
        """Log a message to console and/or callback."""
        if self.verbose:
            print(message)
        if self.progress_callback:
            self.progress_callback(message)

    async def inject(self) -> int:
        """Apply every selected rule.

        Returns:
            Number of new ledger entries
        """
        before = len(self.ledger)
        for rule_id, sampling in self.selection.items():
            if self.token.cancelled:
                self._log("[!] Cancelled: remaining rules were not applied")
                break
            await self.apply_rule(self.catalog[rule_id], sampling)

        added = len(self.ledger) - before
        counts = self.summary.stage(STAGE)
        self._log(f"[+] misconfigurations: {added} new, {counts.existing} already applied, {counts.failed} failed")
        return added

    def select_targets(self, rule: MisconfigurationRule, sampling: RuleSampling) -> tuple[list, int]:
        """Targets to weaken now, and how many were already weakened.

        Deterministic for a given registry state, ledger and seed.
        """
        applied = self.ledger.targets_for(rule.rule_id)
        eligible = rule.eligible(self.registry, include=applied)
        quota = sampling.sample_size(len(eligible))

        already = [t for t in eligible if rule.target_id(t) in applied]
        fresh = [t for t in eligible if rule.target_id(t) not in applied]
        remaining = max(0, quota - len(already))

        rng = random.Random(f"{self.seed}:rule:{rule.rule_id}")
        return rng.sample(fresh, min(remaining, len(fresh))), len(already)

    async def apply_rule(self, rule: MisconfigurationRule, sampling: RuleSampling) -> None:
        counts = self.summary.stage(STAGE)
        targets, already = self.select_targets(rule, sampling)
        counts.attempted += already
        counts.existing += already
        counts.succeeded += already
        if not targets:
            logger.info("[%s] %s: nothing to apply (%d already applied)", STAGE, rule.rule_id, already)
            self._replay(rule)
            return

        self._log(f"[*] Applying {rule.rule_id} to {len(targets)} target(s)...")
        rng = random.Random(f"{self.seed}:mutate:{rule.rule_id}")
        mutations = [rule.apply(target, self.registry, rng) for target in targets]

        async def handle(mutation: Mutation):
            await self._write(rule, mutation)

        await WorkerPool(self.execution.concurrency, self.token).run(mutations, handle)
        self._replay(rule)

    def _replay(self, rule: MisconfigurationRule) -> None:
        """Reflect a previous run's confirmed weakenings in the registry.

        Later rules then see the same state they saw in the previous run.
        """
        for entry in self._previous.pop(rule.rule_id, []):
            delta = entry.delta
            if "principal" in delta and "rights" in delta:
                if self.registry.can_relate(delta["principal"], entry.target):
                    self._record_relationship(Relationship(
                        RelationshipKind.DELEGATION, delta["principal"], entry.target,
                        {"rights": list(delta["rights"])},
                    ))
            elif entry.target in self.registry:
                self.registry.update_attributes(entry.target, delta)

    async def _write(self, rule: MisconfigurationRule, mutation: Mutation) -> bool:
        counts = self.summary.stage(STAGE)
        async with self.registry.lock_for(mutation.target):
            counts.attempted += 1
            if mutation.is_relationship:
                rel = mutation.relationship
                result = await self.executor.run(
                    lambda: self.adapter.create_relationship(rel.kind, rel.source, rel.target, rel.attributes),
                    identifier=mutation.target,
                    stage=STAGE,
                )
            else:
                result = await self.executor.run(
                    lambda: self.adapter.set_attributes(mutation.target, mutation.attributes),
                    identifier=mutation.target,
                    stage=STAGE,
                )

            if not result.ok:
                counts.failed += 1
                logger.warning("[%s] %s on %s failed: %s", STAGE, rule.rule_id, mutation.target, result.reason)
                return False

            if mutation.is_relationship:
                self._record_relationship(mutation.relationship)
            else:
                self.registry.update_attributes(mutation.target, mutation.attributes)

            await self.ledger.append(LedgerEntry(
                rule_id=rule.rule_id,
                target=mutation.target,
                severity=rule.severity,
                delta=mutation.ledger_delta,
                remediation=rule.remediation,
                description=rule.description,
            ))
            counts.succeeded += 1
            return True

    def _record_relationship(self, rel: Relationship) -> None:
        """Record an injected edge; delegated rights add to existing ones."""
        existing = self.registry.get_relationship(rel.kind, rel.source, rel.target)
        attributes = dict(rel.attributes)
        if existing is not None and existing.status == ObjectStatus.CREATED and "rights" in attributes:
            attributes["rights"] = existing.rights + [r for r in rel.rights if r not in existing.rights]
        self.registry.record_relationship(Relationship(
            kind=rel.kind,
            source=rel.source,
            target=rel.target,
            attributes=attributes,
            status=ObjectStatus.CREATED,
        ))
