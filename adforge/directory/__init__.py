"""
adForge Directory Module
========================

Adapters between the engine and a concrete directory.

Supported Targets:
- InMemoryDirectory: dict-backed, for dry runs and tests
- LDAPDirectoryAdapter: live Active Directory over LDAP (ldap3 + impacket)

Design Philosophy:
- The engine only talks to the DirectoryAdapter contract
- Every call is idempotent, so any call can be retried
"""

from .adapter import AdapterOutcome, AdapterResult, DirectoryAdapter
from .memory_adapter import InMemoryDirectory
