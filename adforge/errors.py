"""
adForge Errors
==============

Exception hierarchy for the fabrication engine.

Propagation Policy:
-------------------
- ConfigurationError and LedgerWriteError are fatal and reach main()
- TransientDirectoryError is retried by the executor and never escapes it
- PermanentDirectoryError marks a single object/relationship as Failed
- CycleRejected is a rejected proposal, counted but never propagated
"""

from typing import Optional


class AdForgeError(Exception):
    """Base exception for adForge."""


class ConfigurationError(AdForgeError):
    """Invalid or inconsistent configuration.

    Carries every violation found, not just the first one.
    """

    def __init__(self, violations: list[str]) -> None:
        self.violations = list(violations)
        lines = "\n".join(f"  - {v}" for v in self.violations)
        super().__init__(f"Invalid configuration ({len(self.violations)} violation(s)):\n{lines}")


class DirectoryError(AdForgeError):
    """Base class for errors raised by a directory adapter."""

    def __init__(self, message: str, identifier: Optional[str] = None) -> None:
        super().__init__(message)
        self.identifier = identifier


class TransientDirectoryError(DirectoryError):
    """Retryable failure (throttling, busy server, dropped connection)."""


class PermanentDirectoryError(DirectoryError):
    """Non-retryable failure (schema violation, access denied, conflict)."""


class CycleRejected(AdForgeError):
    """A group nesting proposal that would close a cycle."""

    def __init__(self, parent: str, child: str) -> None:
        super().__init__(f"Nesting {child} into {parent} would create a cycle")
        self.parent = parent
        self.child = child


class LedgerWriteError(AdForgeError):
    """The answer key could not be durably written."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Failed to write answer key ledger {path}: {reason}")
        self.path = path
        self.reason = reason
