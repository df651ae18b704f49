"""
adForge Engine Module
=====================

Executes a GenerationPlan against a directory.

Components:
- executor.py: Retry/backoff/timeout around every adapter call
- scheduler.py: Bounded worker pool and cancellation token
- population.py: Dependency-ordered object creation
- weaver.py: Nesting, memberships, GPO links and delegations
- injector.py: Misconfiguration rules and answer key entries
- runner.py: The end-to-end pipeline
"""

from .executor import RetryingExecutor
from .scheduler import CancellationToken, WorkerPool
from .population import ObjectPopulationEngine
from .weaver import RelationshipWeaver
from .injector import MisconfigurationInjector
from .runner import ForgeRunner
