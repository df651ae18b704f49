"""
adForge - Vulnerable Active Directory Fabrication Engine
========================================================

A Python framework that fabricates a realistic, deliberately misconfigured
Active Directory domain for security training, and records exactly what
was weakened in an answer key.

Architecture Overview:
----------------------
- generation/: Seeded names, OU hierarchy and the in-memory plan
- model/: Typed data models and the NetworkX-backed object registry
- directory/: Adapter contract, in-memory directory and LDAP adapter
- engine/: Worker pool, retries, population, relationships, injection
- rules/: Misconfiguration rule catalog
- ledger/: Durable answer key
- reporting/: Text reports and the JSON run summary

Design Decisions:
-----------------
1. NetworkX backs the registry so cycle checks are graph queries
2. All data models use Python dataclasses for type safety and clarity
3. Everything random comes from seeded generators: re-running the same
   configuration is idempotent
4. The engine only sees the DirectoryAdapter contract; LDAP is one
   implementation, an in-memory directory is another

License: Research/Educational Use Only
"""

__version__ = "1.0.0"
__author__ = "adForge Research Team"

from .config import ForgeConfig, load_config
