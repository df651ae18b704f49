"""Rule catalog and built-in rule tests."""

import random

import pytest

from adforge.generation.naming import UAC_DONT_REQ_PREAUTH, UAC_NORMAL_ACCOUNT, UAC_TRUSTED_FOR_DELEGATION
from adforge.model.registry import ObjectRegistry
from adforge.model.schemas import (
    DirectoryObject, ObjectStatus, ObjectType, Relationship, RelationshipKind, Severity
)
from adforge.rules.builtin import AUTHENTICATED_USERS, BUILTIN_CATALOG, BUILTIN_RULES, uac_flag_rule
from adforge.rules.catalog import RuleCatalog

ROOT = "DC=corp,DC=local"
OU = "OU=IT,DC=corp,DC=local"


def created(registry: ObjectRegistry, obj: DirectoryObject) -> DirectoryObject:
    registry.register(obj)
    registry.mark_created(obj.identifier)
    return obj


def link(registry: ObjectRegistry, kind: RelationshipKind, source: str, target: str, **attributes) -> None:
    registry.record_relationship(Relationship(kind, source, target, attributes, status=ObjectStatus.CREATED))


@pytest.fixture
def it_ou(registry: ObjectRegistry) -> DirectoryObject:
    return created(registry, DirectoryObject(OU, ObjectType.OU, "IT", ROOT))


class TestRuleCatalog:
    def test_builtin_catalog_is_complete(self) -> None:
        assert len(BUILTIN_CATALOG) == len(BUILTIN_RULES) == 13
        assert "GPO_UNCONSTRAINED_DELEGATION_RIGHT" in BUILTIN_CATALOG
        assert BUILTIN_CATALOG.get("NOPE") is None

    def test_duplicate_rule_id(self) -> None:
        rule = BUILTIN_RULES[0]

        with pytest.raises(ValueError):
            RuleCatalog([rule, rule])

    def test_eligible_dedupes_relationship_targets(self, registry: ObjectRegistry,
                                                   it_ou: DirectoryObject) -> None:
        for name in ("A", "B"):
            group = created(registry, DirectoryObject(f"CN={name},{OU}", ObjectType.GROUP, name, OU))
            link(registry, RelationshipKind.DELEGATION, group.identifier, OU, rights=["ResetPassword"])
        rule = BUILTIN_CATALOG["DELEGATION_ESCALATED_TO_GENERIC_ALL"]

        eligible = rule.eligible(registry)
        assert len(eligible) == 1
        assert rule.target_id(eligible[0]) == OU

    def test_include_keeps_already_weakened_targets(self, registry: ObjectRegistry,
                                                    it_ou: DirectoryObject) -> None:
        user = created(registry, DirectoryObject(
            f"CN=u,{OU}", ObjectType.USER, "u", OU,
            {"userAccountControl": UAC_NORMAL_ACCOUNT | UAC_DONT_REQ_PREAUTH},
        ))
        rule = BUILTIN_CATALOG["USER_ASREP_ROASTABLE"]

        assert rule.eligible(registry) == []
        assert rule.eligible(registry, include={user.identifier}) == [user]


class TestBuiltinRules:
    def test_uac_flag_rule(self, registry: ObjectRegistry, it_ou: DirectoryObject) -> None:
        rule = uac_flag_rule("TEST_UNCONSTRAINED", ObjectType.COMPUTER, UAC_TRUSTED_FOR_DELEGATION,
                             Severity.CRITICAL, "desc", "fix")
        computer = created(registry, DirectoryObject(
            f"CN=SRV01,{OU}", ObjectType.COMPUTER, "SRV01", OU, {"userAccountControl": 0x1000}
        ))

        mutation = rule.apply(computer, registry, random.Random(1))
        assert mutation.attributes == {"userAccountControl": 0x1000 | UAC_TRUSTED_FOR_DELEGATION}
        assert mutation.ledger_delta == mutation.attributes
        assert not mutation.is_relationship

    def test_gpo_rules_need_a_link(self, registry: ObjectRegistry, it_ou: DirectoryObject) -> None:
        gpo = created(registry, DirectoryObject(
            f"CN=GPO-IT,{OU}", ObjectType.GPO, "GPO-IT", OU,
            {"policy:SeEnableDelegationPrivilege": "*S-1-5-32-544", "policy:MinimumPasswordLength": 14},
        ))
        rule = BUILTIN_CATALOG["GPO_UNCONSTRAINED_DELEGATION_RIGHT"]
        assert rule.eligible(registry) == []

        link(registry, RelationshipKind.GPO_LINK, gpo.identifier, OU)
        assert rule.eligible(registry) == [gpo]

        mutation = rule.apply(gpo, registry, random.Random(1))
        assert mutation.attributes["policy:SeEnableDelegationPrivilege"].endswith(AUTHENTICATED_USERS)

    def test_weak_password_policy(self, registry: ObjectRegistry, it_ou: DirectoryObject) -> None:
        gpo = created(registry, DirectoryObject(
            f"CN=GPO-IT,{OU}", ObjectType.GPO, "GPO-IT", OU, {"policy:MinimumPasswordLength": 14}
        ))
        link(registry, RelationshipKind.GPO_LINK, gpo.identifier, OU)

        mutation = BUILTIN_CATALOG["GPO_WEAK_PASSWORD_POLICY"].apply(gpo, registry, random.Random(3))
        assert mutation.attributes["policy:MinimumPasswordLength"] < 8
        assert mutation.attributes["policy:PasswordComplexity"] == 0

    def test_password_in_description(self, registry: ObjectRegistry, it_ou: DirectoryObject) -> None:
        user = created(registry, DirectoryObject(
            f"CN=u,{OU}", ObjectType.USER, "u", OU, {"description": "Sales staff"}
        ))
        rule = BUILTIN_CATALOG["USER_PASSWORD_IN_DESCRIPTION"]

        mutation = rule.apply(user, registry, random.Random(2))
        assert "description" in mutation.attributes
        assert not rule.predicate(
            DirectoryObject(user.identifier, ObjectType.USER, "u", OU, dict(mutation.attributes)), registry
        )

    def test_kerberoastable_spn(self, registry: ObjectRegistry, it_ou: DirectoryObject) -> None:
        created(registry, DirectoryObject(
            f"CN=SRV-IT0001,{OU}", ObjectType.COMPUTER, "SRV-IT0001", OU,
            {"dNSHostName": "srv-it0001.corp.local", "description": "Member server"},
        ))
        account = created(registry, DirectoryObject(
            f"CN=svc_sql,{OU}", ObjectType.SERVICE_ACCOUNT, "svc_sql", OU,
            {"sAMAccountName": "svc_sql", "userPrincipalName": "svc_sql@corp.local"},
        ))

        mutation = BUILTIN_CATALOG["SERVICE_ACCOUNT_KERBEROASTABLE"].apply(account, registry, random.Random(1))
        assert mutation.attributes == {"servicePrincipalName": ["MSSQLSvc/srv-it0001.corp.local:1433"]}

    def test_privileged_group_needs_members(self, registry: ObjectRegistry, it_ou: DirectoryObject) -> None:
        admins = created(registry, DirectoryObject(
            f"CN=Domain Admins,{OU}", ObjectType.GROUP, "Domain Admins", OU, {"adminCount": 1}
        ))
        staff = created(registry, DirectoryObject(f"CN=Staff,{OU}", ObjectType.GROUP, "Staff", OU))
        user = created(registry, DirectoryObject(f"CN=u,{OU}", ObjectType.USER, "u", OU))
        rule = BUILTIN_CATALOG["PRIVILEGED_GROUP_WEAK_DELEGATION"]
        assert rule.eligible(registry) == []

        link(registry, RelationshipKind.MEMBERSHIP, admins.identifier, user.identifier)
        assert rule.eligible(registry) == [admins]

        mutation = rule.apply(admins, registry, random.Random(1))
        assert mutation.relationship.source == staff.identifier
        assert mutation.ledger_delta == {"principal": staff.identifier, "rights": ["GenericWrite"]}
