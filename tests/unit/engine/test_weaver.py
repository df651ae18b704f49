"""RelationshipWeaver tests."""

import random

import networkx as nx

from adforge.config import ExecutionConfig, ForgeConfig, RelationshipConfig
from adforge.directory.memory_adapter import InMemoryDirectory
from adforge.engine.executor import RetryingExecutor
from adforge.engine.population import ObjectPopulationEngine
from adforge.engine.weaver import STAGE, RelationshipWeaver
from adforge.generation.naming import NameGenerator
from adforge.generation.planner import GenerationPlanner
from adforge.model.registry import ObjectRegistry
from adforge.model.schemas import (
    DirectoryObject, ObjectStatus, ObjectType, RelationshipKind, RunSummary
)

ROOT = "DC=corp,DC=local"
OU = "OU=IT,DC=corp,DC=local"


async def populated_registry(config: ForgeConfig, directory: InMemoryDirectory) -> tuple:
    plan = GenerationPlanner(config).plan()
    registry = ObjectRegistry()
    summary = RunSummary(domain=config.domain, seed=config.effective_seed)
    await ObjectPopulationEngine(
        plan, registry, directory, RetryingExecutor(config.execution),
        config.execution, summary, verbose=False,
    ).populate()
    return registry, summary


def make_weaver(config: RelationshipConfig, execution: ExecutionConfig, registry: ObjectRegistry,
                directory: InMemoryDirectory, summary: RunSummary, seed: int = 5) -> RelationshipWeaver:
    return RelationshipWeaver(
        config, execution, registry, directory, RetryingExecutor(execution), summary,
        rng=random.Random(seed), names=NameGenerator(seed=seed), verbose=False,
    )


async def add(directory: InMemoryDirectory, registry: ObjectRegistry, obj: DirectoryObject) -> DirectoryObject:
    await directory.create_object(obj.object_type, obj.identifier, obj.attributes)
    registry.register(obj)
    registry.mark_created(obj.identifier)
    return obj


def nesting_graph(directory: InMemoryDirectory) -> nx.DiGraph:
    graph = nx.DiGraph()
    for (kind, source, target), attributes in directory.relationships.items():
        if kind == RelationshipKind.MEMBERSHIP and attributes.get("nested"):
            graph.add_edge(source, target)
    return graph


class TestRelationshipWeaver:
    async def test_relationships_only_between_created_objects(self, small_config: ForgeConfig,
                                                             directory: InMemoryDirectory) -> None:
        plan = GenerationPlanner(small_config).plan()
        failed_group = plan.planned(ObjectType.GROUP)[1]
        failed_user = plan.planned(ObjectType.USER)[2]
        directory.fail_permanently(failed_group.identifier)
        directory.fail_permanently(failed_user.identifier)
        registry, summary = await populated_registry(small_config, directory)

        await make_weaver(small_config.relationships, small_config.execution, registry, directory, summary).weave()

        assert summary.stage(STAGE).succeeded > 0
        for kind, source, target in directory.relationships:
            assert registry.is_created(source)
            assert registry.is_created(target)
        for rel in registry.relationships():
            assert failed_group.identifier not in (rel.source, rel.target)
            assert failed_user.identifier not in (rel.source, rel.target)

    async def test_registry_matches_directory(self, small_config: ForgeConfig,
                                              directory: InMemoryDirectory) -> None:
        registry, summary = await populated_registry(small_config, directory)

        await make_weaver(small_config.relationships, small_config.execution, registry, directory, summary).weave()

        assert {r.key for r in registry.relationships()} == set(directory.relationships)

    async def test_every_ou_has_a_linked_gpo(self, small_config: ForgeConfig,
                                             directory: InMemoryDirectory) -> None:
        registry, summary = await populated_registry(small_config, directory)

        await make_weaver(small_config.relationships, small_config.execution, registry, directory, summary).weave()

        for ou in registry.created(ObjectType.OU):
            assert registry.gpos_linked_to(ou.identifier)

    async def test_nesting_is_acyclic_and_bounded(self, small_config: ForgeConfig,
                                                  directory: InMemoryDirectory) -> None:
        small_config.relationships.nesting_fraction = 1.0
        small_config.relationships.max_nesting_depth = 2
        registry, summary = await populated_registry(small_config, directory)

        for seed in range(5):
            await make_weaver(small_config.relationships, small_config.execution,
                              registry, directory, summary, seed=seed).weave()

        graph = nesting_graph(directory)
        assert nx.is_directed_acyclic_graph(graph)
        if graph.number_of_edges():
            assert nx.dag_longest_path_length(graph) <= 2
        for parent in graph.nodes:
            if graph.out_degree(parent):
                assert not registry.get(parent).is_privileged

    async def test_cycle_proposal_is_rejected(self, directory: InMemoryDirectory,
                                              registry: ObjectRegistry, summary: RunSummary,
                                              fast_execution: ExecutionConfig) -> None:
        await add(directory, registry, DirectoryObject(OU, ObjectType.OU, "IT", ROOT))
        for name in ("A", "B"):
            await add(directory, registry, DirectoryObject(f"CN={name},{OU}", ObjectType.GROUP, name, OU))
        config = RelationshipConfig(nesting_fraction=1.0, max_nesting_depth=5)

        weaver = make_weaver(config, fast_execution, registry, directory, summary)
        proposals = weaver.propose_nesting()

        assert len(proposals) == 1
        assert summary.stage(STAGE).rejected == 1

    async def test_failed_nesting_write_releases_reservation(self, directory: InMemoryDirectory,
                                                             registry: ObjectRegistry, summary: RunSummary,
                                                             fast_execution: ExecutionConfig) -> None:
        await add(directory, registry, DirectoryObject(OU, ObjectType.OU, "IT", ROOT))
        a = await add(directory, registry, DirectoryObject(f"CN=A,{OU}", ObjectType.GROUP, "A", OU))
        b = await add(directory, registry, DirectoryObject(f"CN=B,{OU}", ObjectType.GROUP, "B", OU))
        directory.fail_permanently(a.identifier)
        directory.fail_permanently(b.identifier)
        config = RelationshipConfig(nesting_fraction=1.0)

        weaver = make_weaver(config, fast_execution, registry, directory, summary)
        for rel in weaver.propose_nesting():
            assert not await weaver.write(rel)
            assert rel.status == ObjectStatus.FAILED

        assert not registry.would_create_cycle(a.identifier, b.identifier)
        assert not registry.would_create_cycle(b.identifier, a.identifier)

    async def test_weave_writes_every_membership(self, directory: InMemoryDirectory,
                                                 registry: ObjectRegistry, summary: RunSummary,
                                                 fast_execution: ExecutionConfig) -> None:
        await add(directory, registry, DirectoryObject(OU, ObjectType.OU, "IT", ROOT))
        staff = await add(directory, registry, DirectoryObject(f"CN=Staff,{OU}", ObjectType.GROUP, "Staff", OU))
        users = [
            await add(directory, registry, DirectoryObject(f"CN=user{i},{OU}", ObjectType.USER, f"user{i}", OU))
            for i in range(6)
        ]
        config = RelationshipConfig(nesting_fraction=0.0, memberships_min=1, memberships_max=1,
                                    delegation_fraction=0.0, extra_gpo_link_fraction=0.0)

        await make_weaver(config, fast_execution, registry, directory, summary).weave()

        for user in users:
            assert directory.get_relationship(RelationshipKind.MEMBERSHIP, staff.identifier, user.identifier) == {}
        assert sorted(registry.members_of(staff.identifier)) == sorted(u.identifier for u in users)
        assert summary.stage(STAGE).succeeded == len(users)

    async def test_privileged_membership_sample(self, directory: InMemoryDirectory,
                                                registry: ObjectRegistry, summary: RunSummary,
                                                fast_execution: ExecutionConfig) -> None:
        await add(directory, registry, DirectoryObject(OU, ObjectType.OU, "IT", ROOT))
        admins = await add(directory, registry, DirectoryObject(
            f"CN=Domain Admins,{OU}", ObjectType.GROUP, "Domain Admins", OU, {"adminCount": 1}
        ))
        await add(directory, registry, DirectoryObject(f"CN=Staff,{OU}", ObjectType.GROUP, "Staff", OU))
        for i in range(20):
            await add(directory, registry, DirectoryObject(f"CN=user{i},{OU}", ObjectType.USER, f"user{i}", OU))
        config = RelationshipConfig(privileged_fraction=0.1, memberships_min=1, memberships_max=1)

        proposals = make_weaver(config, fast_execution, registry, directory, summary).propose_memberships()

        privileged = [p for p in proposals if p.source == admins.identifier]
        assert len(privileged) == 2
        assert len(proposals) == 22

    async def test_delegations_go_to_ordinary_groups(self, small_config: ForgeConfig,
                                                     directory: InMemoryDirectory) -> None:
        small_config.relationships.delegation_fraction = 1.0
        registry, summary = await populated_registry(small_config, directory)

        await make_weaver(small_config.relationships, small_config.execution, registry, directory, summary).weave()

        delegations = registry.relationships(RelationshipKind.DELEGATION)
        assert len(delegations) == len(registry.created(ObjectType.OU))
        for rel in delegations:
            assert not registry.get(rel.source).is_privileged
            assert rel.rights
