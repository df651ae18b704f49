"""
Generation Planner
==================

Computes the full GenerationPlan in memory before any directory write.

The plan holds every intended OU and object with its final identifier and
attributes, plus projected misconfiguration sample sizes. It has no side
effects, so it doubles as the dry-run output.

Design Decisions:
-----------------
1. Each stage draws from its own RNG derived from the run seed, so a
   change in one distribution does not reshuffle the others
2. CNs are unique within their OU; sAMAccountNames and GPO display names
   are unique domain-wide
3. Privileged groups are spread across the plan at random positions; at
   least one group always stays ordinary
"""

import logging
import random
import re
from dataclasses import dataclass, field
from typing import Optional

from ..config import ForgeConfig
from ..model.schemas import (
    DirectoryObject, ObjectType, OUNode, CREATION_ORDER,
    domain_dn, object_identifier
)
from .hierarchy import HierarchyBuilder
from .naming import NameGenerator, make_unique

logger = logging.getLogger(__name__)


def stage_rng(seed: int, stage: str) -> random.Random:
    """Independent, reproducible random source for one stage."""
    return random.Random(f"{seed}:{stage}")


@dataclass
class GenerationPlan:
    """Everything a run intends to create, before execution.

    Attributes:
        domain: DNS domain name
        root: Domain root identifier
        seed: Run seed
        top_level: Top-level OU nodes (the tree)
        ous: OU objects in pre-order (parents before children)
        objects: ObjectType -> planned objects, in creation order
        rule_projections: rule_id -> projected sample size upper bound
    """
    domain: str
    root: str
    seed: int
    top_level: list = field(default_factory=list)
    ous: list = field(default_factory=list)
    objects: dict = field(default_factory=dict)
    rule_projections: dict = field(default_factory=dict)

    def planned(self, object_type: ObjectType) -> list[DirectoryObject]:
        if object_type == ObjectType.OU:
            return list(self.ous)
        return list(self.objects.get(object_type, []))

    def counts(self) -> dict:
        result = {ObjectType.OU.value: len(self.ous)}
        for object_type in CREATION_ORDER:
            result[object_type.value] = len(self.objects.get(object_type, []))
        return result

    @property
    def max_depth(self) -> int:
        return max((node.depth for top in self.top_level for node in top.walk()), default=0)

    def to_dict(self) -> dict:
        """Dry-run view: counts, tree and projections (no attributes)."""
        def tree(node: OUNode) -> dict:
            return {
                "name": node.name,
                "identifier": node.identifier,
                "quotas": {t.value: n for t, n in node.quotas.items() if n},
                "children": [tree(child) for child in node.children],
            }

        return {
            "domain": self.domain,
            "root": self.root,
            "seed": self.seed,
            "counts": self.counts(),
            "max_depth": self.max_depth,
            "hierarchy": [tree(node) for node in self.top_level],
            "rule_projections": self.rule_projections,
        }


class GenerationPlanner:
    """Builds a GenerationPlan from configuration.

    Usage:
        planner = GenerationPlanner(config, catalog)
        plan = planner.plan()
        print(plan.counts())
    """

    def __init__(self, config: ForgeConfig, catalog=None):
        """Initialize the planner.

        Args:
            config: Validated run configuration
            catalog: RuleCatalog used for projections (optional)
        """
        self.config = config
        self.catalog = catalog
        self.seed = config.effective_seed
        self.root = domain_dn(config.domain)

        self._sam_names: set = set()
        self._gpo_names: set = set()

    def plan(self) -> GenerationPlan:
        """Compute the plan. Pure: no I/O, same config -> same plan.

        Raises:
            ConfigurationError: If the hierarchy cannot host the counts
        """
        overrides = self.config.naming.distributions
        hierarchy_names = NameGenerator(overrides=overrides, rng=stage_rng(self.seed, "ou-names"))
        builder = HierarchyBuilder(self.config.hierarchy, hierarchy_names, stage_rng(self.seed, "hierarchy"))
        top_level = builder.build(self.config.counts, self.root)

        plan = GenerationPlan(
            domain=self.config.domain,
            root=self.root,
            seed=self.seed,
            top_level=top_level,
        )

        departments = {}
        for top in top_level:
            for node in top.walk():
                departments[node.identifier] = re.sub(r"\d+$", "", top.name)
                plan.ous.append(DirectoryObject(
                    identifier=node.identifier,
                    object_type=ObjectType.OU,
                    name=node.name,
                    parent=node.parent,
                    attributes={
                        "objectClass": "organizationalUnit",
                        "ou": node.name,
                        "description": f"{departments[node.identifier]} organizational unit",
                    },
                ))

        leaves = builder.leaves(top_level)
        total_groups = sum(leaf.quotas[ObjectType.GROUP] for leaf in leaves)
        privileged_count = self.privileged_count(total_groups)
        privileged_slots = set(
            stage_rng(self.seed, "privileged").sample(range(total_groups), privileged_count)
        ) if total_groups else set()

        names = {
            object_type: NameGenerator(overrides=overrides, rng=stage_rng(self.seed, object_type.value))
            for object_type in CREATION_ORDER
        }
        cns = {leaf.identifier: set() for leaf in leaves}

        group_index = 0
        for object_type in CREATION_ORDER:
            planned = []
            for leaf in leaves:
                department = departments[leaf.identifier]
                for _ in range(leaf.quotas[object_type]):
                    if object_type == ObjectType.GROUP:
                        obj = self._plan_group(names[object_type], leaf, department, cns[leaf.identifier],
                                               privileged=group_index in privileged_slots)
                        group_index += 1
                    elif object_type == ObjectType.USER:
                        obj = self._plan_user(names[object_type], leaf, department, cns[leaf.identifier])
                    elif object_type == ObjectType.COMPUTER:
                        obj = self._plan_computer(names[object_type], leaf, department, cns[leaf.identifier])
                    elif object_type == ObjectType.SERVICE_ACCOUNT:
                        obj = self._plan_service_account(names[object_type], leaf, cns[leaf.identifier])
                    else:
                        obj = self._plan_gpo(names[object_type], leaf, cns[leaf.identifier])
                    planned.append(obj)
            plan.objects[object_type] = planned

        plan.rule_projections = self._project_rules(plan)
        logger.debug("Plan for %s: %s", self.config.domain, plan.counts())
        return plan

    def privileged_count(self, total_groups: int) -> int:
        """Number of groups to flag privileged.

        At least one group stays ordinary so relationships always have a
        target group.
        """
        requested = self.config.relationships.privileged_groups
        count = max(0, min(requested, total_groups - 1))
        if total_groups and count < requested:
            logger.warning(
                "Flagging %d of %d groups privileged (requested %d); one group stays ordinary",
                count, total_groups, requested,
            )
        return count

    def _plan_group(self, names: NameGenerator, leaf: OUNode, department: str,
                    cns: set, privileged: bool) -> DirectoryObject:
        if privileged:
            base = names.choose("privileged_group")
        else:
            base = f"{department}-{names.choose('group_function')}"
        sam = make_unique(base, self._sam_names, max_len=64)
        cn = make_unique(sam, cns)
        return DirectoryObject(
            identifier=object_identifier(cn, leaf.identifier),
            object_type=ObjectType.GROUP,
            name=cn,
            parent=leaf.identifier,
            attributes=names.group_attributes(cn, sam, department, privileged),
        )

    def _plan_user(self, names: NameGenerator, leaf: OUNode, department: str, cns: set) -> DirectoryObject:
        first, last = names.person_name()
        sam = make_unique(names.sam_account_name(first, last), self._sam_names, max_len=20)
        cn = make_unique(f"{first} {last}", cns)
        attributes = names.user_attributes(first, last, sam, department, self.config.domain)
        attributes["password"] = names.password()
        return DirectoryObject(
            identifier=object_identifier(cn, leaf.identifier),
            object_type=ObjectType.USER,
            name=cn,
            parent=leaf.identifier,
            attributes=attributes,
        )

    def _plan_computer(self, names: NameGenerator, leaf: OUNode, department: str, cns: set) -> DirectoryObject:
        role = names.choose("computer_role")
        code = department[:3].upper() or "GEN"
        name = make_unique(f"{role}-{code}{names.rng.randint(1, 9999):04d}", self._sam_names, max_len=15)
        cn = make_unique(name, cns)
        return DirectoryObject(
            identifier=object_identifier(cn, leaf.identifier),
            object_type=ObjectType.COMPUTER,
            name=cn,
            parent=leaf.identifier,
            attributes=names.computer_attributes(cn, role, self.config.domain),
        )

    def _plan_service_account(self, names: NameGenerator, leaf: OUNode, cns: set) -> DirectoryObject:
        service = names.choose("service")
        sam = make_unique(f"svc_{service}", self._sam_names, max_len=20)
        cn = make_unique(sam, cns)
        attributes = names.service_account_attributes(service, sam, self.config.domain)
        attributes["password"] = names.password(24)
        return DirectoryObject(
            identifier=object_identifier(cn, leaf.identifier),
            object_type=ObjectType.SERVICE_ACCOUNT,
            name=cn,
            parent=leaf.identifier,
            attributes=attributes,
        )

    def _plan_gpo(self, names: NameGenerator, leaf: OUNode, cns: set) -> DirectoryObject:
        display = make_unique(f"GPO-{leaf.name}-{names.choose('gpo_theme')}", self._gpo_names)
        cn = make_unique(display, cns)
        return DirectoryObject(
            identifier=object_identifier(cn, leaf.identifier),
            object_type=ObjectType.GPO,
            name=cn,
            parent=leaf.identifier,
            attributes=names.gpo_attributes(display),
        )

    def _project_rules(self, plan: GenerationPlan) -> dict:
        """Upper bound of targets per configured rule, assuming every object is created."""
        if self.catalog is None:
            return {}

        projections = {}
        for rule_id, sampling in self.config.misconfigurations.items():
            rule = self.catalog.get(rule_id)
            if rule is None:
                continue
            eligible: Optional[int] = None
            if isinstance(rule.target_type, ObjectType):
                eligible = len(plan.planned(rule.target_type))
            projections[rule_id] = {
                "target_type": rule.target_type.value,
                "eligible_upper_bound": eligible,
                "projected_max": sampling.sample_size(eligible) if eligible is not None else None,
            }
        return projections
