"""
Answer Key Ledger
=================

Durable record of every misconfiguration that was actually written.

Storage:
--------
- Write-ahead journal (JSON Lines): one entry per line, flushed and
  fsynced every `flush_every` entries
- Answer key (JSON): written atomically (temp file + os.replace) when the
  run completes or is cancelled

Answer key format (field names are fixed):

    {
      "format_version": 1,
      "domain": "corp.local",
      "seed": 1337,
      "generated_at": "2026-01-01T00:00:00+00:00",
      "entry_count": 2,
      "entries": [
        {"rule_id": ..., "target": ..., "severity": ..., "description": ...,
         "remediation": ..., "timestamp": ..., "delta": {...}}
      ]
    }

On open, entries already in the answer key or the journal are loaded, so
a restarted run never injects the same (rule, target) twice. Any I/O
failure raises LedgerWriteError: a run never reports success without a
flushed ledger.
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Optional, TextIO

from ..config import LedgerConfig
from ..errors import AdForgeError, LedgerWriteError
from ..model.schemas import LedgerEntry, utc_now

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


class AnswerKeyLedger:
    """Append-only ledger of confirmed misconfigurations.

    Usage:
        ledger = AnswerKeyLedger(config.ledger, domain="corp.local", seed=1337)
        ledger.open()
        await ledger.append(entry)
        ledger.finalize()       # writes answer_key.json atomically
    """

    def __init__(self, config: LedgerConfig, domain: str, seed: int):
        """Initialize the ledger.

        Args:
            config: Output paths and flush policy
            domain: Domain recorded in the answer key header
            seed: Seed recorded in the answer key header
        """
        self.config = config
        self.domain = domain
        self.seed = seed

        self._entries: list[LedgerEntry] = []
        self._keys: set = set()
        self._journal: Optional[TextIO] = None
        self._unflushed = 0
        self._lock = asyncio.Lock()

    @property
    def answer_key_path(self) -> Path:
        return self.config.answer_key_path

    @property
    def journal_path(self) -> Path:
        return self.config.journal_path

    @property
    def entries(self) -> list[LedgerEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def has(self, rule_id: str, target: str) -> bool:
        return (rule_id, target) in self._keys

    def targets_for(self, rule_id: str) -> set:
        """Targets already weakened by a rule."""
        return {target for rid, target in self._keys if rid == rule_id}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> int:
        """Load existing entries and open the journal for appending.

        Returns:
            Number of entries loaded from a previous run

        Raises:
            LedgerWriteError: If the output directory or journal cannot be used
        """
        try:
            self.answer_key_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LedgerWriteError(str(self.answer_key_path.parent), str(e)) from e

        if self.answer_key_path.exists():
            for entry in read_answer_key(self.answer_key_path):
                self._remember(entry)
        if self.journal_path.exists():
            for entry in self._read_journal():
                self._remember(entry)

        try:
            self._journal = open(self.journal_path, "a", encoding="utf-8")
        except OSError as e:
            raise LedgerWriteError(str(self.journal_path), str(e)) from e

        if self._entries:
            logger.info("Loaded %d answer key entries from a previous run", len(self._entries))
        return len(self._entries)

    def _remember(self, entry: LedgerEntry) -> bool:
        if entry.key in self._keys:
            return False
        self._keys.add(entry.key)
        self._entries.append(entry)
        return True

    def _read_journal(self) -> list[LedgerEntry]:
        entries = []
        try:
            with open(self.journal_path, "r", encoding="utf-8") as f:
                for line_number, line in enumerate(f, 1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entries.append(LedgerEntry.from_dict(json.loads(line)))
                    except (json.JSONDecodeError, KeyError, ValueError) as e:
                        # A torn final line from a crash mid-write
                        logger.warning("Ignoring unreadable journal line %d: %s", line_number, e)
        except OSError as e:
            raise LedgerWriteError(str(self.journal_path), str(e)) from e
        return entries

    async def append(self, entry: LedgerEntry) -> bool:
        """Record a confirmed misconfiguration.

        Returns:
            False if the (rule, target) pair was already recorded

        Raises:
            LedgerWriteError: If the journal write fails
        """
        async with self._lock:
            if not self._remember(entry):
                return False
            if self._journal is None:
                raise LedgerWriteError(str(self.journal_path), "ledger is not open")
            try:
                self._journal.write(json.dumps(entry.to_dict(), sort_keys=True) + "\n")
                self._unflushed += 1
                if self._unflushed >= self.config.flush_every:
                    self._flush()
            except OSError as e:
                raise LedgerWriteError(str(self.journal_path), str(e)) from e
            return True

    def _flush(self) -> None:
        self._journal.flush()
        os.fsync(self._journal.fileno())
        self._unflushed = 0

    def flush(self) -> None:
        """Flush and fsync pending journal entries."""
        if self._journal is None or self._unflushed == 0:
            return
        try:
            self._flush()
        except OSError as e:
            raise LedgerWriteError(str(self.journal_path), str(e)) from e

    def to_dict(self) -> dict:
        return {
            "format_version": FORMAT_VERSION,
            "domain": self.domain,
            "seed": self.seed,
            "generated_at": utc_now(),
            "entry_count": len(self._entries),
            "entries": [entry.to_dict() for entry in self._entries],
        }

    def finalize(self) -> Path:
        """Flush the journal and atomically write the answer key.

        Returns:
            Path of the answer key

        Raises:
            LedgerWriteError: If either write fails
        """
        self.flush()
        tmp_path = self.answer_key_path.with_name(self.answer_key_path.name + ".tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(self.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.answer_key_path)
        except OSError as e:
            raise LedgerWriteError(str(self.answer_key_path), str(e)) from e
        finally:
            self.close()
        logger.info("Answer key written: %s (%d entries)", self.answer_key_path, len(self._entries))
        return self.answer_key_path

    def close(self) -> None:
        if self._journal is not None:
            self._journal.close()
            self._journal = None


def read_answer_key(path) -> list[LedgerEntry]:
    """Read every entry of an answer key file.

    Raises:
        AdForgeError: If the file cannot be read or is not an answer key
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            document = json.load(f)
        return [LedgerEntry.from_dict(item) for item in document["entries"]]
    except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        raise AdForgeError(f"Cannot read answer key {path}: {e}") from e


def grading_tuples(entries: list[LedgerEntry]) -> list[tuple[str, str, str]]:
    """(target, rule_id, remediation) for each entry, sorted by target."""
    return sorted((e.target, e.rule_id, e.remediation) for e in entries)
