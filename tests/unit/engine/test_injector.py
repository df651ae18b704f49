"""MisconfigurationInjector tests."""

from adforge.config import ExecutionConfig, RuleSampling
from adforge.directory.memory_adapter import InMemoryDirectory
from adforge.engine.executor import RetryingExecutor
from adforge.engine.injector import STAGE, MisconfigurationInjector
from adforge.generation.naming import UAC_DONT_EXPIRE_PASSWORD, UAC_DONT_REQ_PREAUTH, UAC_NORMAL_ACCOUNT
from adforge.ledger.answer_key import AnswerKeyLedger
from adforge.model.registry import ObjectRegistry
from adforge.model.schemas import DirectoryObject, ObjectType, Relationship, RelationshipKind, RunSummary, ObjectStatus
from adforge.rules.builtin import BUILTIN_CATALOG

ROOT = "DC=corp,DC=local"
OU = "OU=Sales,DC=corp,DC=local"


async def add(directory: InMemoryDirectory, registry: ObjectRegistry, obj: DirectoryObject) -> DirectoryObject:
    await directory.create_object(obj.object_type, obj.identifier, obj.attributes)
    registry.register(obj)
    registry.mark_created(obj.identifier)
    return obj


async def sales_ou(directory: InMemoryDirectory, registry: ObjectRegistry, users: int = 4) -> list:
    await add(directory, registry, DirectoryObject(OU, ObjectType.OU, "Sales", ROOT))
    return [
        await add(directory, registry, DirectoryObject(
            f"CN=user{i},{OU}", ObjectType.USER, f"user{i}", OU,
            {"sAMAccountName": f"user{i}", "userAccountControl": UAC_NORMAL_ACCOUNT},
        ))
        for i in range(users)
    ]


def make_injector(selection: dict, registry: ObjectRegistry, directory: InMemoryDirectory,
                  ledger: AnswerKeyLedger, summary: RunSummary,
                  execution: ExecutionConfig) -> MisconfigurationInjector:
    return MisconfigurationInjector(
        BUILTIN_CATALOG, selection, registry, directory, RetryingExecutor(execution),
        ledger, summary, execution, seed=1337, verbose=False,
    )


class TestMisconfigurationInjector:
    async def test_fraction_of_eligible_targets(self, directory: InMemoryDirectory, registry: ObjectRegistry,
                                                ledger: AnswerKeyLedger, summary: RunSummary,
                                                fast_execution: ExecutionConfig) -> None:
        await sales_ou(directory, registry, users=4)
        injector = make_injector({"USER_ASREP_ROASTABLE": RuleSampling(fraction=0.5)},
                                 registry, directory, ledger, summary, fast_execution)

        assert await injector.inject() == 2
        for entry in ledger.entries:
            uac = directory.get_attributes(entry.target)["userAccountControl"]
            assert uac & UAC_DONT_REQ_PREAUTH
            assert entry.delta == {"userAccountControl": uac}
            assert registry.get(entry.target).attributes["userAccountControl"] == uac

    async def test_selection_is_deterministic(self, directory: InMemoryDirectory, registry: ObjectRegistry,
                                              ledger: AnswerKeyLedger, summary: RunSummary,
                                              fast_execution: ExecutionConfig) -> None:
        await sales_ou(directory, registry, users=10)
        injector = make_injector({}, registry, directory, ledger, summary, fast_execution)
        rule = BUILTIN_CATALOG["USER_PASSWORD_NEVER_EXPIRES"]

        first, _ = injector.select_targets(rule, RuleSampling(count=3))
        second, _ = injector.select_targets(rule, RuleSampling(count=3))
        assert [t.identifier for t in first] == [t.identifier for t in second]
        assert len(first) == 3

    async def test_failed_write_has_no_entry(self, directory: InMemoryDirectory, registry: ObjectRegistry,
                                             ledger: AnswerKeyLedger, summary: RunSummary,
                                             fast_execution: ExecutionConfig) -> None:
        users = await sales_ou(directory, registry, users=3)
        directory.fail_permanently(users[1].identifier, "constraint violation")
        injector = make_injector({"USER_PASSWORD_NEVER_EXPIRES": RuleSampling(count=100)},
                                 registry, directory, ledger, summary, fast_execution)

        assert await injector.inject() == 2
        assert not ledger.has("USER_PASSWORD_NEVER_EXPIRES", users[1].identifier)
        assert summary.stage(STAGE).failed == 1
        assert not directory.get_attributes(users[1].identifier)["userAccountControl"] & UAC_DONT_EXPIRE_PASSWORD

    async def test_flags_accumulate_across_rules(self, directory: InMemoryDirectory, registry: ObjectRegistry,
                                                 ledger: AnswerKeyLedger, summary: RunSummary,
                                                 fast_execution: ExecutionConfig) -> None:
        users = await sales_ou(directory, registry, users=1)
        injector = make_injector({
            "USER_PASSWORD_NEVER_EXPIRES": RuleSampling(count=1),
            "USER_ASREP_ROASTABLE": RuleSampling(count=1),
        }, registry, directory, ledger, summary, fast_execution)

        await injector.inject()

        uac = directory.get_attributes(users[0].identifier)["userAccountControl"]
        assert uac == UAC_NORMAL_ACCOUNT | UAC_DONT_EXPIRE_PASSWORD | UAC_DONT_REQ_PREAUTH
        assert ledger.entries[-1].delta == {"userAccountControl": uac}

    async def test_previous_entries_count_toward_quota(self, directory: InMemoryDirectory,
                                                       registry: ObjectRegistry, ledger: AnswerKeyLedger,
                                                       fast_execution: ExecutionConfig) -> None:
        await sales_ou(directory, registry, users=6)
        selection = {"USER_ASREP_ROASTABLE": RuleSampling(fraction=0.5)}
        first = RunSummary(domain="corp.local", seed=1337)
        await make_injector(selection, registry, directory, ledger, first, fast_execution).inject()
        writes = directory.calls["set_attributes"]

        again = RunSummary(domain="corp.local", seed=1337)
        added = await make_injector(selection, registry, directory, ledger, again, fast_execution).inject()

        assert added == 0
        assert directory.calls["set_attributes"] == writes
        counts = again.stage(STAGE)
        assert counts.attempted == counts.existing == counts.succeeded == 3
        assert counts.failed == 0

    async def test_overbroad_delegation_is_recorded(self, directory: InMemoryDirectory,
                                                    registry: ObjectRegistry, ledger: AnswerKeyLedger,
                                                    summary: RunSummary,
                                                    fast_execution: ExecutionConfig) -> None:
        users = await sales_ou(directory, registry, users=2)
        staff = await add(directory, registry, DirectoryObject(f"CN=Staff,{OU}", ObjectType.GROUP, "Staff", OU))
        for user in users:
            await directory.create_relationship(RelationshipKind.MEMBERSHIP, staff.identifier, user.identifier)
            registry.record_relationship(Relationship(
                RelationshipKind.MEMBERSHIP, staff.identifier, user.identifier, status=ObjectStatus.CREATED
            ))
        injector = make_injector({"OU_OVERBROAD_DELEGATION": RuleSampling(count=1)},
                                 registry, directory, ledger, summary, fast_execution)

        assert await injector.inject() == 1

        entry = ledger.entries[0]
        assert entry.target == OU
        assert entry.delta == {"principal": staff.identifier, "rights": ["GenericAll"]}
        assert directory.get_relationship(RelationshipKind.DELEGATION, staff.identifier, OU) == {
            "rights": ["GenericAll"]
        }
        assert [d.rights for d in registry.delegations_on(OU)] == [["GenericAll"]]
