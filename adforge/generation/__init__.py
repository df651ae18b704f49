"""
adForge Generation Module
=========================

Pure, seeded generation of what a run will create.

Components:
- naming.py: Weighted name and attribute distributions
- hierarchy.py: Bounded OU tree with per-leaf object quotas
- planner.py: Full in-memory GenerationPlan (the dry-run output)

Design Philosophy:
- Nothing here performs I/O or touches the directory
- Same configuration and seed always produce the same plan
"""

from .naming import NameGenerator, DEFAULT_DISTRIBUTIONS
from .hierarchy import HierarchyBuilder, apportion
from .planner import GenerationPlan, GenerationPlanner
