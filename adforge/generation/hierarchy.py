"""
Hierarchy Builder
=================

Builds the OU tree and assigns every leaf OU its object quotas.

Algorithm:
----------
1. Top-down: at each level choose how many child OUs to create so that
   the remaining OU budget still fits in the bounded subtrees below
2. Split the remaining budget across the children with skewed density
   weights (some branches denser, like real org charts)
3. Apportion each object type's total across the leaf OUs by weight,
   capped per OU, with the remainder handed out deterministically to the
   first leaves in pre-order

Invariants:
- OU count == counts.ou and depth <= min(max_depth, 8)
- No OU has more than max_branching children
- For each type, the leaf quotas sum to the requested total
"""

import logging
import math
import random
from typing import Optional

from ..config import CountsConfig, HierarchyConfig, MAX_OU_DEPTH
from ..errors import ConfigurationError
from ..model.schemas import OUNode, ObjectType, CREATION_ORDER, ou_identifier
from .naming import NameGenerator, make_unique

logger = logging.getLogger(__name__)


def subtree_capacity(levels: int, branching: int) -> int:
    """Nodes in a full subtree of `levels` levels (root included)."""
    return sum(branching ** d for d in range(levels))


def apportion(total: int, weights: list[float], cap: Optional[int] = None) -> list[int]:
    """Split `total` into integer shares proportional to `weights`.

    Shares are floored, clipped to `cap`, and the remainder is given one
    unit at a time to the first entries that are still below the cap.

    Raises:
        ConfigurationError: If the total cannot fit under the cap
    """
    if total == 0:
        return [0] * len(weights)
    if not weights:
        raise ConfigurationError([f"cannot place {total} objects: the hierarchy has no leaf OU"])
    if cap is not None and total > cap * len(weights):
        raise ConfigurationError([
            f"cannot place {total} objects in {len(weights)} leaf OUs with "
            f"hierarchy.max_objects_per_ou={cap}"
        ])

    weight_sum = sum(weights) or float(len(weights))
    shares = [math.floor(total * w / weight_sum) for w in weights]
    if cap is not None:
        shares = [min(s, cap) for s in shares]
    while sum(shares) > total:
        shares[shares.index(max(shares))] -= 1

    remainder = total - sum(shares)
    index = 0
    while remainder > 0:
        slot = index % len(shares)
        if cap is None or shares[slot] < cap:
            shares[slot] += 1
            remainder -= 1
        index += 1
    return shares


class HierarchyBuilder:
    """Constructs a bounded OU tree with per-leaf object quotas.

    Usage:
        builder = HierarchyBuilder(config.hierarchy, names, rng)
        top_level = builder.build(config.counts, "DC=corp,DC=local")
        for ou in builder.all_ous(top_level):
            print(ou.identifier, ou.quotas)
    """

    def __init__(self, config: HierarchyConfig, names: NameGenerator, rng: random.Random):
        """Initialize the builder.

        Args:
            config: Depth/branching bounds and skew
            names: Generator for OU names
            rng: Random source for structure and density weights
        """
        self.config = config
        self.names = names
        self.rng = rng
        self.max_depth = min(config.max_depth, MAX_OU_DEPTH)
        self.branching = config.max_branching

    def build(self, counts: CountsConfig, root: str) -> list[OUNode]:
        """Build the OU tree under `root` and assign quotas.

        Args:
            counts: Target counts per type (counts.ou OUs are created)
            root: Domain root identifier (e.g. DC=corp,DC=local)

        Returns:
            Top-level OU nodes

        Raises:
            ConfigurationError: If the counts do not fit the bounds
        """
        capacity = subtree_capacity(self.max_depth + 1, self.branching) - 1
        if counts.ou > capacity:
            raise ConfigurationError([
                f"counts.ou={counts.ou} exceeds what depth {self.max_depth} and "
                f"branching {self.branching} can host ({capacity} OUs)"
            ])

        top_level = self._build_children(root, counts.ou, depth=1)
        self._assign_quotas(top_level, counts)

        logger.debug("Built %d OUs (%d top-level) under %s", counts.ou, len(top_level), root)
        return top_level

    @staticmethod
    def all_ous(top_level: list[OUNode]) -> list[OUNode]:
        """Every OU in pre-order."""
        return [node for top in top_level for node in top.walk()]

    @staticmethod
    def leaves(top_level: list[OUNode]) -> list[OUNode]:
        return [node for top in top_level for node in top.walk() if node.is_leaf]

    def _density_weight(self) -> float:
        if self.config.skew <= 0:
            return 1.0
        return self.rng.paretovariate(1.0 + 1.0 / self.config.skew)

    def _build_children(self, parent: str, budget: int, depth: int) -> list[OUNode]:
        """Create `budget` OUs (children plus their descendants) under `parent`."""
        if budget <= 0:
            return []

        per_child = subtree_capacity(self.max_depth - depth + 1, self.branching)
        low = math.ceil(budget / per_child)
        high = min(self.branching, budget)
        child_count = self.rng.randint(low, high)

        taken: set = set()
        children = []
        for _ in range(child_count):
            name = make_unique(self.names.ou_name(depth), taken)
            children.append(OUNode(
                name=name,
                identifier=ou_identifier(name, parent),
                parent=parent,
                depth=depth,
                weight=self._density_weight(),
            ))

        # Each child already accounts for one OU; spread the rest by weight
        extra = [0] * child_count
        room = per_child - 1
        for _ in range(budget - child_count):
            open_slots = [i for i in range(child_count) if extra[i] < room]
            slot = self.rng.choices(open_slots, weights=[children[i].weight for i in open_slots], k=1)[0]
            extra[slot] += 1

        for child, descendants in zip(children, extra):
            child.children = self._build_children(child.identifier, descendants, depth + 1)
        return children

    def _assign_quotas(self, top_level: list[OUNode], counts: CountsConfig) -> None:
        leaves = self.leaves(top_level)
        for node in self.all_ous(top_level):
            node.quotas = {object_type: 0 for object_type in CREATION_ORDER}

        cap = self.config.max_objects_per_ou
        for object_type in CREATION_ORDER:
            total = counts.get(object_type)
            if object_type == ObjectType.GPO:
                # GPOs are spread evenly; OUs without one get a link from the weaver
                weights = [1.0] * len(leaves)
            else:
                weights = [leaf.weight for leaf in leaves]
            for leaf, share in zip(leaves, apportion(total, weights, cap)):
                leaf.quotas[object_type] = share
