"""Shared test fixtures."""

import random
from pathlib import Path
from typing import Iterator

import pytest

from adforge.config import (
    CountsConfig, ExecutionConfig, ForgeConfig, HierarchyConfig, LedgerConfig,
    RelationshipConfig, RuleSampling
)
from adforge.directory.memory_adapter import InMemoryDirectory
from adforge.engine.executor import RetryingExecutor
from adforge.engine.scheduler import CancellationToken
from adforge.generation.naming import NameGenerator
from adforge.ledger.answer_key import AnswerKeyLedger
from adforge.model.registry import ObjectRegistry
from adforge.model.schemas import RunSummary


@pytest.fixture
def output_dir(tmp_path: Path) -> Path:
    """Temporary directory for answer keys and summaries."""
    return tmp_path / "adforge-output"


@pytest.fixture
def fast_execution() -> ExecutionConfig:
    """Execution settings with no real backoff delay."""
    return ExecutionConfig(concurrency=4, max_attempts=3, base_delay=0.0, max_delay=0.0, call_timeout=5.0)


@pytest.fixture
def small_config(output_dir: Path, fast_execution: ExecutionConfig) -> ForgeConfig:
    """A small domain that exercises every stage."""
    return ForgeConfig(
        domain="corp.local",
        seed=1337,
        counts=CountsConfig(ou=6, user=30, group=8, computer=10, service_account=4, gpo=5),
        hierarchy=HierarchyConfig(max_depth=2, max_branching=3, skew=1.0),
        relationships=RelationshipConfig(privileged_groups=2, privileged_fraction=0.2),
        execution=fast_execution,
        ledger=LedgerConfig(output_dir=str(output_dir)),
        misconfigurations={
            "USER_ASREP_ROASTABLE": RuleSampling(fraction=0.2),
            "USER_PASSWORD_NEVER_EXPIRES": RuleSampling(count=5),
            "USER_PASSWORD_IN_DESCRIPTION": RuleSampling(count=2),
            "SERVICE_ACCOUNT_KERBEROASTABLE": RuleSampling(count=2),
            "COMPUTER_UNCONSTRAINED_DELEGATION": RuleSampling(count=1),
            "GPO_UNCONSTRAINED_DELEGATION_RIGHT": RuleSampling(fraction=0.5),
            "GPO_WEAK_PASSWORD_POLICY": RuleSampling(count=1),
            "OU_OVERBROAD_DELEGATION": RuleSampling(count=1),
            "PRIVILEGED_GROUP_WEAK_DELEGATION": RuleSampling(count=1),
            "DELEGATION_ESCALATED_TO_GENERIC_ALL": RuleSampling(count=1),
        },
        verbose=False,
    )


@pytest.fixture
def directory() -> InMemoryDirectory:
    """Empty in-memory directory."""
    return InMemoryDirectory()


@pytest.fixture
def registry() -> ObjectRegistry:
    return ObjectRegistry()


@pytest.fixture
def token() -> CancellationToken:
    return CancellationToken()


@pytest.fixture
def executor(fast_execution: ExecutionConfig, token: CancellationToken) -> RetryingExecutor:
    return RetryingExecutor(fast_execution, token)


@pytest.fixture
def summary() -> RunSummary:
    return RunSummary(domain="corp.local", seed=1337)


@pytest.fixture
def names() -> NameGenerator:
    return NameGenerator(seed=7)


@pytest.fixture
def rng() -> random.Random:
    return random.Random(42)


@pytest.fixture
def ledger(output_dir: Path) -> Iterator[AnswerKeyLedger]:
    """Open ledger in the temporary output directory."""
    ledger = AnswerKeyLedger(LedgerConfig(output_dir=str(output_dir)), domain="corp.local", seed=1337)
    ledger.open()
    yield ledger
    ledger.close()
