"""
adForge Model Module
====================

Core data models and the shared registry of a run.

Key Components:
- schemas.py: Typed dataclasses for objects, relationships and the ledger
- registry.py: NetworkX-backed registry shared by all engine stages
"""

from .schemas import (
    ObjectType,
    ObjectStatus,
    RelationshipKind,
    Severity,
    DirectoryObject,
    Relationship,
    OUNode,
    LedgerEntry,
    StageCounts,
    RunSummary,
    PRINCIPAL_TYPES,
    CREATION_ORDER,
)
from .registry import ObjectRegistry
