"""End-to-end runs against the in-memory directory."""

import asyncio
import json
from pathlib import Path

import networkx as nx
import pytest

from adforge.config import CountsConfig, ForgeConfig, HierarchyConfig, LedgerConfig, RuleSampling
from adforge.directory.adapter import AdapterResult
from adforge.directory.memory_adapter import InMemoryDirectory
from adforge.engine.runner import ForgeRunner
from adforge.engine.scheduler import CancellationToken
from adforge.errors import LedgerWriteError
from adforge.generation.naming import UAC_DONT_REQ_PREAUTH
from adforge.generation.planner import GenerationPlanner
from adforge.ledger.answer_key import read_answer_key
from adforge.model.schemas import ObjectType, RelationshipKind


def three_ou_config(output_dir: Path) -> ForgeConfig:
    return ForgeConfig(
        domain="corp.local",
        seed=2024,
        counts=CountsConfig(ou=3, user=10, group=2, computer=0, service_account=0, gpo=3),
        hierarchy=HierarchyConfig(max_depth=1, max_branching=8),
        ledger=LedgerConfig(output_dir=str(output_dir)),
        misconfigurations={"GPO_UNCONSTRAINED_DELEGATION_RIGHT": RuleSampling(fraction=0.5)},
        verbose=False,
    )


def assert_ledger_matches_directory(entries: list, directory: InMemoryDirectory) -> None:
    """The last recorded value of every attribute is what the directory holds."""
    latest = {}
    for entry in entries:
        if "principal" in entry.delta:
            rights = directory.get_relationship(RelationshipKind.DELEGATION, entry.delta["principal"], entry.target)
            assert rights is not None
            assert set(entry.delta["rights"]) <= set(rights["rights"])
            continue
        for attribute, value in entry.delta.items():
            latest[(entry.target, attribute)] = value

    for (target, attribute), value in latest.items():
        assert directory.get_attributes(target)[attribute] == value


class CancellingDirectory(InMemoryDirectory):
    """Cancels the run once the first attribute write is confirmed."""

    def __init__(self, token: CancellationToken) -> None:
        super().__init__()
        self.token = token

    async def set_attributes(self, identifier: str, delta: dict) -> AdapterResult:
        result = await super().set_attributes(identifier, delta)
        if result.ok:
            self.token.cancel()
        return result


class TestForgeRun:
    async def test_three_ou_example(self, output_dir: Path) -> None:
        config = three_ou_config(output_dir)
        config.validate()
        directory = InMemoryDirectory()

        summary = await ForgeRunner(config, directory).run()

        assert summary.exit_status == 0
        assert directory.count(ObjectType.OU) == 3
        assert directory.count(ObjectType.USER) == 10
        assert directory.count(ObjectType.GROUP) == 2
        assert directory.count(ObjectType.GPO) == 3
        assert directory.count(ObjectType.COMPUTER) == 0

        user_memberships = [
            (kind, source, target) for kind, source, target in directory.relationships
            if kind == RelationshipKind.MEMBERSHIP and directory.objects[target]["object_type"] == ObjectType.USER
        ]
        assert len(user_memberships) >= 10

        entries = read_answer_key(config.ledger.answer_key_path)
        assert len(entries) == 2
        assert {e.rule_id for e in entries} == {"GPO_UNCONSTRAINED_DELEGATION_RIGHT"}
        assert len({e.target for e in entries}) == 2
        assert_ledger_matches_directory(entries, directory)

    async def test_full_run(self, small_config: ForgeConfig, directory: InMemoryDirectory) -> None:
        runner = ForgeRunner(small_config, directory)
        summary = await runner.run()

        assert summary.exit_status == 0
        assert summary.ledger_entries == len(runner.ledger)
        assert summary.ledger_entries > 0

        plan = GenerationPlanner(small_config).plan()
        for object_type in ObjectType:
            assert directory.count(object_type) == len(plan.planned(object_type))

        entries = read_answer_key(small_config.ledger.answer_key_path)
        assert len({e.key for e in entries}) == len(entries)
        assert_ledger_matches_directory(entries, directory)

        document = json.loads(small_config.ledger.summary_path.read_text(encoding="utf-8"))
        assert document["exit_status"] == 0
        assert document["ledger_entries"] == len(entries)
        assert set(document["stages"]) >= {"ou", "user", "relationship", "misconfiguration"}

    async def test_no_nesting_cycles(self, small_config: ForgeConfig, directory: InMemoryDirectory) -> None:
        small_config.relationships.nesting_fraction = 1.0
        runner = ForgeRunner(small_config, directory)
        await runner.run()

        graph = nx.DiGraph()
        for (kind, source, target), attributes in directory.relationships.items():
            if kind == RelationshipKind.MEMBERSHIP and attributes.get("nested"):
                graph.add_edge(source, target)
        assert nx.is_directed_acyclic_graph(graph)
        assert not runner.registry.nesting_has_cycle()

    async def test_rerun_is_idempotent(self, small_config: ForgeConfig, directory: InMemoryDirectory) -> None:
        first = await ForgeRunner(small_config, directory).run()
        objects = directory.count()
        relationships = dict(directory.relationships)
        key_before = read_answer_key(small_config.ledger.answer_key_path)

        second = await ForgeRunner(small_config, directory).run()

        assert second.exit_status == 0
        assert directory.count() == objects
        assert set(directory.relationships) == set(relationships)
        key_after = read_answer_key(small_config.ledger.answer_key_path)
        assert [e.key for e in key_after] == [e.key for e in key_before]
        assert second.ledger_entries == first.ledger_entries
        for stage in ("ou", "group", "user", "computer", "service_account", "gpo"):
            counts = second.stages[stage]
            assert counts.existing == counts.succeeded == counts.attempted
        injected = second.stages["misconfiguration"]
        assert injected.attempted == injected.existing == injected.succeeded == second.ledger_entries
        assert injected.failed == 0

    async def test_failed_ou_subtree(self, small_config: ForgeConfig, directory: InMemoryDirectory) -> None:
        plan = GenerationPlanner(small_config).plan()
        parent = next(node for node in plan.top_level if node.children)
        subtree = {node.identifier for node in parent.walk()}
        directory.fail_permanently(parent.identifier, "insufficient access rights")

        runner = ForgeRunner(small_config, directory)
        summary = await runner.run()

        assert summary.stages["ou"].skipped == len(subtree) - 1
        for kind, source, target in directory.relationships:
            assert directory.exists(source) and directory.exists(target)
            assert runner.registry.is_created(source) and runner.registry.is_created(target)
        for entry in runner.ledger.entries:
            assert runner.registry.is_created(entry.target)

    async def test_critical_stage_failure_sets_exit_status(self, small_config: ForgeConfig,
                                                           directory: InMemoryDirectory) -> None:
        plan = GenerationPlanner(small_config).plan()
        directory.fail_permanently(plan.top_level[0].identifier)
        small_config.execution.critical_stages = ["ou"]
        small_config.execution.failure_threshold = 0.0

        summary = await ForgeRunner(small_config, directory).run()

        assert summary.critical_failures == ["ou"]
        assert summary.exit_status == 1
        assert small_config.ledger.answer_key_path.exists()

    async def test_non_critical_stage_failure_keeps_exit_status(self, small_config: ForgeConfig,
                                                                directory: InMemoryDirectory) -> None:
        plan = GenerationPlanner(small_config).plan()
        for group in plan.planned(ObjectType.GROUP):
            directory.fail_permanently(group.identifier)
        assert "group" not in small_config.execution.critical_stages

        summary = await ForgeRunner(small_config, directory).run()

        assert summary.stages["group"].failure_rate == 1.0
        assert summary.stages["group"].failure_rate > small_config.execution.failure_threshold
        assert summary.critical_failures == []
        assert summary.exit_status == 0
        assert directory.count(ObjectType.USER) == len(plan.planned(ObjectType.USER))

    async def test_transient_failures_do_not_lose_objects(self, small_config: ForgeConfig,
                                                          directory: InMemoryDirectory) -> None:
        plan = GenerationPlanner(small_config).plan()
        for obj in plan.planned(ObjectType.USER)[:5]:
            directory.fail_transiently(obj.identifier, times=2)

        summary = await ForgeRunner(small_config, directory).run()

        assert summary.stages["user"].failed == 0
        assert directory.count(ObjectType.USER) == len(plan.planned(ObjectType.USER))

    async def test_cancellation_keeps_only_confirmed_entries(self, small_config: ForgeConfig) -> None:
        directory = InMemoryDirectory(latency=0.01)
        token = CancellationToken()
        runner = ForgeRunner(small_config, directory, token=token)

        async def cancel_soon() -> None:
            await asyncio.sleep(0.05)
            token.cancel()

        canceller = asyncio.create_task(cancel_soon())
        summary = await runner.run()
        await canceller

        assert summary.cancelled
        assert summary.exit_status == 1
        assert small_config.ledger.answer_key_path.exists()
        assert small_config.ledger.summary_path.exists()
        entries = read_answer_key(small_config.ledger.answer_key_path)
        assert len(entries) == summary.ledger_entries
        assert_ledger_matches_directory(entries, directory)
        plan = GenerationPlanner(small_config).plan()
        assert directory.count() < sum(len(plan.planned(t)) for t in ObjectType)

    async def test_cancellation_during_injection(self, small_config: ForgeConfig) -> None:
        token = CancellationToken()
        directory = CancellingDirectory(token)
        runner = ForgeRunner(small_config, directory, token=token)

        summary = await runner.run()

        assert summary.cancelled
        assert summary.exit_status == 1
        assert summary.stages["relationship"].succeeded > 0
        entries = read_answer_key(small_config.ledger.answer_key_path)
        assert 1 <= len(entries) <= small_config.execution.concurrency
        assert len(entries) == summary.ledger_entries == len(runner.ledger)
        assert_ledger_matches_directory(entries, directory)

        roastable = {
            identifier for identifier, entry in directory.objects.items()
            if int(entry["attributes"].get("userAccountControl", 0)) & UAC_DONT_REQ_PREAUTH
        }
        assert roastable == {e.target for e in entries if e.rule_id == "USER_ASREP_ROASTABLE"}

    async def test_progress_callback_receives_messages(self, small_config: ForgeConfig,
                                                       directory: InMemoryDirectory) -> None:
        messages = []

        await ForgeRunner(small_config, directory, progress_callback=messages.append).run()

        assert any(m.startswith("[*] Planning") for m in messages)
        assert any(m.startswith("[+] misconfigurations") for m in messages)

    async def test_unwritable_output_directory(self, small_config: ForgeConfig, tmp_path: Path,
                                               directory: InMemoryDirectory) -> None:
        blocker = tmp_path / "not-a-directory"
        blocker.write_text("", encoding="utf-8")
        small_config.ledger.output_dir = str(blocker / "output")

        with pytest.raises(LedgerWriteError):
            await ForgeRunner(small_config, directory).run()
