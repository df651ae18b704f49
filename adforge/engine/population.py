"""
Object Population Engine
========================

Creates the planned OUs and objects through the directory adapter.

Algorithm:
----------
1. OUs first, dependency-driven: top-level OUs are queued, and a child
   OU is queued only once its parent is confirmed Created
2. Then objects type by type: Group, User, Computer, ServiceAccount, GPO
3. An object whose OU failed is marked Failed ("prerequisite failed")
   without calling the adapter and is counted as skipped
4. Created and AlreadyExists both count as success

Partial failure is never fatal: a failed object is logged with its
identifier and reason, marked Failed, and excluded from later stages.
"""

import logging
from collections import defaultdict
from typing import Callable, Optional

from ..config import ExecutionConfig
from ..directory.adapter import DirectoryAdapter
from ..generation.planner import GenerationPlan
from ..model.registry import ObjectRegistry
from ..model.schemas import DirectoryObject, ObjectType, RunSummary, CREATION_ORDER
from .executor import RetryingExecutor
from .scheduler import CancellationToken, WorkerPool

logger = logging.getLogger(__name__)

PREREQUISITE_FAILED = "prerequisite failed"


class ObjectPopulationEngine:
    """Populates the directory from a GenerationPlan.

    Usage:
        engine = ObjectPopulationEngine(plan, registry, adapter, executor,
                                        config.execution, summary, token)
        await engine.populate()
        print(registry.count(ObjectType.USER, ObjectStatus.CREATED))
    """

    def __init__(
        self,
        plan: GenerationPlan,
        registry: ObjectRegistry,
        adapter: DirectoryAdapter,
        executor: RetryingExecutor,
        config: ExecutionConfig,
        summary: RunSummary,
        token: Optional[CancellationToken] = None,
        verbose: bool = True,
        progress_callback: Optional[Callable[[str], None]] = None
    ):
        self.plan = plan
        self.registry = registry
        self.adapter = adapter
        self.executor = executor
        self.config = config
        self.summary = summary
        self.token = token or CancellationToken()
        self.verbose = verbose
        self.progress_callback = progress_callback

        self._children: dict[str, list[DirectoryObject]] = defaultdict(list)

    def _log(self, message: str) -> None:
        """Log a message to console and/or callback."""
        if self.verbose:
            print(message)
        if self.progress_callback:
            self.progress_callback(message)

    async def populate(self) -> None:
        """Create every planned OU and object, in dependency order."""
        for ou in self.plan.ous:
            self.registry.register(ou)
            self._children[ou.parent].append(ou)
        for object_type in CREATION_ORDER:
            for obj in self.plan.planned(object_type):
                self.registry.register(obj)

        await self._create_ous()
        for object_type in CREATION_ORDER:
            if self.token.cancelled:
                self._log("[!] Cancelled: remaining object types were not created")
                return
            await self._create_objects(object_type)

    async def _create_ous(self) -> None:
        self._log(f"[*] Creating {len(self.plan.ous)} OUs...")
        pool = WorkerPool(self.config.concurrency, self.token)

        async def handle(ou: DirectoryObject):
            if await self._create(ou, "ou"):
                return self._children.get(ou.identifier, [])
            self._skip_subtree(ou)
            return None

        await pool.run(self._children.get(self.plan.root, []), handle)
        self._report("ou")

    def _skip_subtree(self, ou: DirectoryObject) -> None:
        """Mark every OU below a failed OU as Failed without an adapter call."""
        counts = self.summary.stage("ou")
        stack = list(self._children.get(ou.identifier, []))
        while stack:
            child = stack.pop()
            self.registry.mark_failed(child.identifier, PREREQUISITE_FAILED)
            counts.skipped += 1
            logger.warning("[ou] %s skipped: parent OU %s failed", child.identifier, ou.identifier)
            stack.extend(self._children.get(child.identifier, []))

    async def _create_objects(self, object_type: ObjectType) -> None:
        stage = object_type.config_key
        counts = self.summary.stage(stage)
        planned = self.plan.planned(object_type)
        if not planned:
            return

        self._log(f"[*] Creating {len(planned)} {object_type.value} objects...")
        ready = []
        for obj in planned:
            if self.registry.is_created(obj.parent):
                ready.append(obj)
            else:
                self.registry.mark_failed(obj.identifier, PREREQUISITE_FAILED)
                counts.skipped += 1
                logger.warning("[%s] %s skipped: OU %s was not created", stage, obj.identifier, obj.parent)

        pool = WorkerPool(self.config.concurrency, self.token)

        async def handle(obj: DirectoryObject):
            await self._create(obj, stage)

        await pool.run(ready, handle)
        self._report(stage)

    async def _create(self, obj: DirectoryObject, stage: str) -> bool:
        """Create one object and record the outcome. Returns True on success."""
        counts = self.summary.stage(stage)
        async with self.registry.lock_for(obj.identifier):
            if self.registry.is_created(obj.identifier):
                return True

            counts.attempted += 1
            result = await self.executor.run(
                lambda: self.adapter.create_object(obj.object_type, obj.identifier, obj.attributes),
                identifier=obj.identifier,
                stage=stage,
            )
            if result.ok:
                self.registry.mark_created(obj.identifier, existed=result.existed)
                counts.succeeded += 1
                if result.existed:
                    counts.existing += 1
                return True

            self.registry.mark_failed(obj.identifier, result.reason)
            counts.failed += 1
            logger.warning("[%s] %s failed: %s", stage, obj.identifier, result.reason)
            return False

    def _report(self, stage: str) -> None:
        counts = self.summary.stage(stage)
        line = f"[+] {stage}: {counts.succeeded} created ({counts.existing} already existed)"
        if counts.failed or counts.skipped:
            line += f", {counts.failed} failed, {counts.skipped} skipped"
        self._log(line)
