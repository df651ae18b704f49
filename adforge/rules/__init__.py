"""
adForge Rules Module
====================

Misconfiguration rules and the built-in catalog.
"""

from .catalog import MisconfigurationRule, Mutation, RuleCatalog
from .builtin import BUILTIN_CATALOG, BUILTIN_RULES
