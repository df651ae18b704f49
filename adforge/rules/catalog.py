"""
Misconfiguration Rule Catalog
=============================

Immutable rule definitions and the catalog that holds them.

A rule names the weakness, what it targets (an object type or a
relationship kind), how to recognize an eligible target, and how to build
the mutation that weakens it. Rules never touch the directory themselves:
the injector applies the Mutation through the adapter.
"""

import random
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional, Union

from ..model.registry import ObjectRegistry
from ..model.schemas import (
    DirectoryObject, ObjectType, Relationship, RelationshipKind, Severity
)

Target = Union[DirectoryObject, Relationship]


@dataclass(frozen=True)
class Mutation:
    """The weakening to perform on one target.

    Exactly one of `attributes` (a delta written with set_attributes) or
    `relationship` (an edge written with create_relationship) is set.
    `ledger_delta` is what the answer key records.
    """
    target: str
    ledger_delta: dict
    attributes: dict = field(default_factory=dict)
    relationship: Optional[Relationship] = None

    @property
    def is_relationship(self) -> bool:
        return self.relationship is not None


@dataclass(frozen=True)
class MisconfigurationRule:
    """A single misconfiguration the engine can inject.

    Attributes:
        rule_id: Stable identifier used in configuration and the answer key
        target_type: ObjectType or RelationshipKind the rule weakens
        severity: Severity recorded in the answer key
        description: What the weakness is
        remediation: How to fix it
        predicate: (target, registry) -> bool, is the target eligible
        mutate: (target, registry, rng) -> Mutation
    """
    rule_id: str
    target_type: Union[ObjectType, RelationshipKind]
    severity: Severity
    description: str
    remediation: str
    predicate: Callable[[Target, ObjectRegistry], bool]
    mutate: Callable[[Target, ObjectRegistry, random.Random], Mutation]

    @property
    def targets_relationships(self) -> bool:
        return isinstance(self.target_type, RelationshipKind)

    def candidates(self, registry: ObjectRegistry) -> list:
        """Created objects of the target type, or Created relationships of the kind."""
        if self.targets_relationships:
            return registry.relationships(self.target_type)
        return registry.created(self.target_type)

    def target_id(self, target: Target) -> str:
        """Identifier the answer key records for a target.

        Relationship rules record the object the relationship grants
        rights on.
        """
        if isinstance(target, Relationship):
            return target.target
        return target.identifier

    def eligible(self, registry: ObjectRegistry, include: Optional[set] = None) -> list:
        """Eligible targets, one per target identifier, in registry order.

        Args:
            registry: Registry to evaluate the predicate on
            include: Target ids kept even if the predicate no longer holds
                (targets this rule already weakened)
        """
        include = include or set()
        seen = set()
        result = []
        for target in self.candidates(registry):
            target_id = self.target_id(target)
            if target_id in seen:
                continue
            if target_id in include or self.predicate(target, registry):
                seen.add(target_id)
                result.append(target)
        return result

    def apply(self, target: Target, registry: ObjectRegistry, rng: random.Random) -> Mutation:
        return self.mutate(target, registry, rng)


class RuleCatalog:
    """Ordered collection of rules, keyed by rule id.

    Usage:
        catalog = RuleCatalog([rule_a, rule_b])
        rule = catalog.get("USER_ASREP_ROASTABLE")
    """

    def __init__(self, rules: Iterable[MisconfigurationRule] = ()):
        self._rules: dict[str, MisconfigurationRule] = {}
        for rule in rules:
            self.add(rule)

    def add(self, rule: MisconfigurationRule) -> None:
        if rule.rule_id in self._rules:
            raise ValueError(f"Duplicate rule id: {rule.rule_id}")
        self._rules[rule.rule_id] = rule

    def get(self, rule_id: str) -> Optional[MisconfigurationRule]:
        return self._rules.get(rule_id)

    def __getitem__(self, rule_id: str) -> MisconfigurationRule:
        return self._rules[rule_id]

    def __contains__(self, rule_id: str) -> bool:
        return rule_id in self._rules

    def __iter__(self):
        return iter(self._rules.values())

    def __len__(self) -> int:
        return len(self._rules)

    @property
    def rule_ids(self) -> list[str]:
        return list(self._rules)
