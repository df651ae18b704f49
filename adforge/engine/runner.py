"""
Run Orchestration
=================

Drives one fabrication run end to end.

Pipeline:
---------
1. Plan: hierarchy, objects and attributes, computed in memory
2. Ledger: load entries of a previous run, open the journal
3. Populate: OUs, then groups, users, computers, service accounts, GPOs
4. Weave: nesting, memberships, GPO links, delegations
5. Inject: configured misconfiguration rules
6. Finalize: answer key (atomic) and run_summary.json

Each stage only sees objects the previous stages actually created. The
answer key is finalized even when the run is cancelled or a stage raises.
"""

import logging
from typing import Callable, Optional

from ..config import ForgeConfig
from ..directory.adapter import DirectoryAdapter
from ..generation.naming import NameGenerator
from ..generation.planner import GenerationPlan, GenerationPlanner, stage_rng
from ..ledger.answer_key import AnswerKeyLedger
from ..model.registry import ObjectRegistry
from ..model.schemas import RunSummary, utc_now
from ..reporting.summary import write_run_summary
from ..rules.builtin import BUILTIN_CATALOG
from ..rules.catalog import RuleCatalog
from .executor import RetryingExecutor
from .injector import MisconfigurationInjector
from .population import ObjectPopulationEngine
from .scheduler import CancellationToken
from .weaver import RelationshipWeaver

logger = logging.getLogger(__name__)


class ForgeRunner:
    """Runs the full pipeline against a directory adapter.

    Usage:
        runner = ForgeRunner(config, InMemoryDirectory())
        summary = await runner.run()
        print(summary.exit_status)

    After run(), `registry` and `plan` hold the run's state.
    """

    def __init__(
        self,
        config: ForgeConfig,
        adapter: DirectoryAdapter,
        catalog: Optional[RuleCatalog] = None,
        token: Optional[CancellationToken] = None,
        progress_callback: Optional[Callable[[str], None]] = None
    ):
        """Initialize the runner.

        Args:
            config: Validated configuration
            adapter: Directory to write to
            catalog: Rule catalog (defaults to the built-in rules)
            token: Cancellation token (set by the CLI on SIGINT/SIGTERM)
            progress_callback: Optional callback for progress updates
        """
        self.config = config
        self.adapter = adapter
        self.catalog = catalog or BUILTIN_CATALOG
        self.token = token or CancellationToken()
        self.verbose = config.verbose
        self.progress_callback = progress_callback

        self.seed = config.effective_seed
        self.registry = ObjectRegistry()
        self.plan: Optional[GenerationPlan] = None
        self.ledger: Optional[AnswerKeyLedger] = None

    def _log(self, message: str) -> None:
        """Log a message to console and/or callback."""
        if self.verbose:
            print(message)
        if self.progress_callback:
            self.progress_callback(message)

    async def run(self) -> RunSummary:
        """Execute the run.

        Returns:
            RunSummary with per-stage counts and the exit status

        Raises:
            ConfigurationError: If the counts cannot be planned
            DirectoryError: If the adapter cannot connect
            LedgerWriteError: If the answer key cannot be written
        """
        summary = RunSummary(domain=self.config.domain, seed=self.seed)

        self._log(f"[*] Planning {self.config.domain} (seed {self.seed})...")
        self.plan = GenerationPlanner(self.config, self.catalog).plan()
        self._log(f"[+] Plan ready: {self.plan.counts()}")

        self.ledger = AnswerKeyLedger(self.config.ledger, self.config.domain, self.seed)
        loaded = self.ledger.open()
        if loaded:
            self._log(f"[*] Resuming: {loaded} misconfigurations already in the answer key")

        executor = RetryingExecutor(self.config.execution, self.token)
        try:
            await self.adapter.connect()
            try:
                await self._execute(executor, summary)
            finally:
                await self.adapter.close()
        finally:
            path = self.ledger.finalize()
            summary.answer_key_path = str(path)
            summary.ledger_entries = len(self.ledger)

        summary.cancelled = self.token.cancelled
        summary.critical_failures = self._critical_failures(summary)
        summary.finished_at = utc_now()
        write_run_summary(summary, self.config.ledger.summary_path)

        if executor.retries:
            logger.info("%d adapter calls were retried (%d timeouts)", executor.retries, executor.timeouts)
        return summary

    async def _execute(self, executor: RetryingExecutor, summary: RunSummary) -> None:
        common = dict(
            token=self.token,
            verbose=self.verbose,
            progress_callback=self.progress_callback,
        )

        population = ObjectPopulationEngine(
            self.plan, self.registry, self.adapter, executor,
            self.config.execution, summary, **common
        )
        await population.populate()
        if self.token.cancelled:
            return

        weaver = RelationshipWeaver(
            self.config.relationships, self.config.execution, self.registry,
            self.adapter, executor, summary,
            rng=stage_rng(self.seed, "relationships"),
            names=NameGenerator(overrides=self.config.naming.distributions,
                                rng=stage_rng(self.seed, "delegation-rights")),
            **common
        )
        await weaver.weave()
        if self.token.cancelled or not self.config.misconfigurations:
            return

        injector = MisconfigurationInjector(
            self.catalog, self.config.misconfigurations, self.registry, self.adapter,
            executor, self.ledger, summary, self.config.execution, self.seed, **common
        )
        await injector.inject()

    def _critical_failures(self, summary: RunSummary) -> list[str]:
        failures = []
        for stage in self.config.execution.critical_stages:
            counts = summary.stages.get(stage)
            if counts is not None and counts.failure_rate > self.config.execution.failure_threshold:
                logger.error(
                    "Critical stage %s failed for %.1f%% of its objects (threshold %.1f%%)",
                    stage, counts.failure_rate * 100, self.config.execution.failure_threshold * 100
                )
                failures.append(stage)
        return failures
