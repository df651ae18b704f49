"""
Built-in Misconfiguration Rules
===============================

The weaknesses adForge can inject, modeled on what BadderBlood-style lab
generators plant and what AD auditing tools look for.

Rule Families:
- Account control flags on users, computers and service accounts
- Kerberos abuse: SPNs, AS-REP roasting, unconstrained/constrained delegation
- GPO settings on linked GPOs
- Over-broad delegated rights on OUs and privileged groups

Which rules run, and how many targets each weakens, is configuration.
"""

import random

from ..generation.naming import (
    NameGenerator,
    UAC_NORMAL_ACCOUNT, UAC_DONT_EXPIRE_PASSWORD, UAC_PASSWD_NOTREQD,
    UAC_ENCRYPTED_TEXT_PWD_ALLOWED, UAC_DONT_REQ_PREAUTH,
    UAC_TRUSTED_FOR_DELEGATION, UAC_TRUSTED_TO_AUTH_FOR_DELEGATION
)
from ..model.registry import ObjectRegistry
from ..model.schemas import (
    DirectoryObject, ObjectType, Relationship, RelationshipKind, Severity
)
from .catalog import MisconfigurationRule, Mutation, RuleCatalog


AUTHENTICATED_USERS = "*S-1-5-11"

# SPN service classes per service name
SPN_CLASSES = {
    "sql": "MSSQLSvc",
    "web": "HTTP",
    "iis": "HTTP",
    "sharepoint": "HTTP",
    "jenkins": "HTTP",
    "adfs": "HTTP",
    "exchange": "exchangeMDB",
    "sccm": "SMS",
    "backup": "CIFS",
    "veeam": "CIFS",
    "scan": "CIFS",
    "monitoring": "WSMAN",
}

DESCRIPTION_TEMPLATES = (
    "Temp password: {}",
    "Initial pwd {} - change at first logon",
    "pw={}",
    "Password reset to {} per helpdesk ticket",
)


def _uac(obj: DirectoryObject) -> int:
    return int(obj.attributes.get("userAccountControl", UAC_NORMAL_ACCOUNT))


def _ordinary_groups(registry: ObjectRegistry) -> list[DirectoryObject]:
    return [g for g in registry.created(ObjectType.GROUP) if not g.is_privileged]


def _is_linked(gpo: DirectoryObject, registry: ObjectRegistry) -> bool:
    return bool(registry.ous_linked_by(gpo.identifier))


def _has_generic_all(target: str, registry: ObjectRegistry) -> bool:
    return any("GenericAll" in d.rights for d in registry.delegations_on(target))


def _delegation(principal: str, target: str, rights: list) -> Mutation:
    return Mutation(
        target=target,
        relationship=Relationship(RelationshipKind.DELEGATION, principal, target, {"rights": list(rights)}),
        ledger_delta={"principal": principal, "rights": list(rights)},
    )


def uac_flag_rule(rule_id: str, target_type: ObjectType, flag: int, severity: Severity,
                  description: str, remediation: str) -> MisconfigurationRule:
    """Rule that sets one userAccountControl flag."""
    def predicate(obj, registry):
        return not _uac(obj) & flag

    def mutate(obj, registry, rng):
        value = _uac(obj) | flag
        return Mutation(
            target=obj.identifier,
            attributes={"userAccountControl": value},
            ledger_delta={"userAccountControl": value},
        )

    return MisconfigurationRule(rule_id, target_type, severity, description, remediation, predicate, mutate)


# ----------------------------------------------------------------------
# Users
# ----------------------------------------------------------------------

def _no_password_in_description(obj, registry) -> bool:
    description = str(obj.attributes.get("description", "")).lower()
    return "pw" not in description and "password" not in description


def _password_in_description(obj, registry, rng: random.Random) -> Mutation:
    password = NameGenerator(rng=rng).weak_password()
    description = rng.choice(DESCRIPTION_TEMPLATES).format(password)
    return Mutation(
        target=obj.identifier,
        attributes={"description": description},
        ledger_delta={"description": description},
    )


# ----------------------------------------------------------------------
# Service accounts
# ----------------------------------------------------------------------

def _service_of(obj: DirectoryObject) -> str:
    sam = str(obj.attributes.get("sAMAccountName", obj.name))
    return sam.lower().removeprefix("svc_").rstrip("0123456789")


def _domain_of(obj: DirectoryObject) -> str:
    upn = str(obj.attributes.get("userPrincipalName", ""))
    return upn.split("@", 1)[1] if "@" in upn else "local"


def _pick_host(registry: ObjectRegistry, rng: random.Random, prefer_servers: bool = False):
    computers = registry.created(ObjectType.COMPUTER)
    if prefer_servers:
        servers = [c for c in computers if c.attributes.get("description") == "Member server"]
        computers = servers or computers
    if not computers:
        return None
    return str(rng.choice(computers).attributes.get("dNSHostName"))


def _has_no_spn(obj, registry) -> bool:
    return not obj.attributes.get("servicePrincipalName")


def _kerberoastable(obj, registry, rng: random.Random) -> Mutation:
    service = _service_of(obj)
    host = _pick_host(registry, rng, prefer_servers=True) or f"{service}.{_domain_of(obj)}"
    spn = f"{SPN_CLASSES.get(service, 'HTTP')}/{host}"
    if service == "sql":
        spn += ":1433"
    return Mutation(
        target=obj.identifier,
        attributes={"servicePrincipalName": [spn]},
        ledger_delta={"servicePrincipalName": [spn]},
    )


def _can_delegate_any_protocol(obj, registry) -> bool:
    return not _uac(obj) & UAC_TRUSTED_TO_AUTH_FOR_DELEGATION and bool(registry.created(ObjectType.COMPUTER))


def _constrained_any_protocol(obj, registry, rng: random.Random) -> Mutation:
    host = _pick_host(registry, rng, prefer_servers=True)
    delta = {
        "userAccountControl": _uac(obj) | UAC_TRUSTED_TO_AUTH_FOR_DELEGATION,
        "msDS-AllowedToDelegateTo": [f"cifs/{host}"],
    }
    return Mutation(target=obj.identifier, attributes=dict(delta), ledger_delta=dict(delta))


# ----------------------------------------------------------------------
# GPOs
# ----------------------------------------------------------------------

def _delegation_right_not_open(gpo, registry) -> bool:
    current = str(gpo.attributes.get("policy:SeEnableDelegationPrivilege", ""))
    return _is_linked(gpo, registry) and AUTHENTICATED_USERS not in current


def _open_delegation_right(gpo, registry, rng) -> Mutation:
    current = str(gpo.attributes.get("policy:SeEnableDelegationPrivilege", ""))
    value = f"{current},{AUTHENTICATED_USERS}" if current else AUTHENTICATED_USERS
    return Mutation(
        target=gpo.identifier,
        attributes={"policy:SeEnableDelegationPrivilege": value},
        ledger_delta={"policy:SeEnableDelegationPrivilege": value},
    )


def _password_policy_strong(gpo, registry) -> bool:
    return _is_linked(gpo, registry) and int(gpo.attributes.get("policy:MinimumPasswordLength", 14)) >= 8


def _weaken_password_policy(gpo, registry, rng: random.Random) -> Mutation:
    delta = {
        "policy:MinimumPasswordLength": rng.randint(0, 6),
        "policy:PasswordComplexity": 0,
    }
    return Mutation(target=gpo.identifier, attributes=dict(delta), ledger_delta=dict(delta))


# ----------------------------------------------------------------------
# Delegations
# ----------------------------------------------------------------------

def _ou_without_full_control(ou, registry) -> bool:
    return bool(_ordinary_groups(registry)) and not _has_generic_all(ou.identifier, registry)


def _overbroad_delegation(ou, registry, rng) -> Mutation:
    # The most populated ordinary group: full control for "everyone in the department"
    groups = _ordinary_groups(registry)
    principal = max(groups, key=lambda g: len(registry.members_of(g.identifier)))
    return _delegation(principal.identifier, ou.identifier, ["GenericAll"])


def _privileged_group_with_member(group, registry) -> bool:
    return (
        group.is_privileged
        and bool(registry.members_of(group.identifier))
        and bool(_ordinary_groups(registry))
        and not registry.delegations_on(group.identifier)
    )


def _weak_privileged_delegation(group, registry, rng: random.Random) -> Mutation:
    principal = rng.choice(_ordinary_groups(registry))
    return _delegation(principal.identifier, group.identifier, ["GenericWrite"])


def _delegation_not_generic_all(rel: Relationship, registry) -> bool:
    return "GenericAll" not in rel.rights and registry.can_relate(rel.source, rel.target)


def _escalate_delegation(rel: Relationship, registry, rng) -> Mutation:
    return _delegation(rel.source, rel.target, ["GenericAll"])


BUILTIN_RULES = [
    uac_flag_rule(
        "USER_PASSWORD_NEVER_EXPIRES", ObjectType.USER, UAC_DONT_EXPIRE_PASSWORD, Severity.LOW,
        "User password is set to never expire",
        "Clear DONT_EXPIRE_PASSWORD in userAccountControl and enforce password rotation",
    ),
    uac_flag_rule(
        "USER_PASSWORD_NOT_REQUIRED", ObjectType.USER, UAC_PASSWD_NOTREQD, Severity.MEDIUM,
        "User account may have an empty password (PASSWD_NOTREQD)",
        "Clear PASSWD_NOTREQD in userAccountControl and set a strong password",
    ),
    uac_flag_rule(
        "USER_REVERSIBLE_ENCRYPTION", ObjectType.USER, UAC_ENCRYPTED_TEXT_PWD_ALLOWED, Severity.MEDIUM,
        "User password is stored with reversible encryption",
        "Clear ENCRYPTED_TEXT_PWD_ALLOWED in userAccountControl and reset the password",
    ),
    uac_flag_rule(
        "USER_ASREP_ROASTABLE", ObjectType.USER, UAC_DONT_REQ_PREAUTH, Severity.HIGH,
        "Kerberos pre-authentication is disabled: the account is AS-REP roastable",
        "Clear DONT_REQ_PREAUTH in userAccountControl",
    ),
    MisconfigurationRule(
        "USER_PASSWORD_IN_DESCRIPTION", ObjectType.USER, Severity.HIGH,
        "A password is stored in the user's description attribute",
        "Remove the password from the description and reset the account password",
        _no_password_in_description, _password_in_description,
    ),
    MisconfigurationRule(
        "SERVICE_ACCOUNT_KERBEROASTABLE", ObjectType.SERVICE_ACCOUNT, Severity.HIGH,
        "Service account has an SPN and a user-chosen password: it is Kerberoastable",
        "Use a group managed service account or a 25+ character random password",
        _has_no_spn, _kerberoastable,
    ),
    MisconfigurationRule(
        "SERVICE_ACCOUNT_CONSTRAINED_DELEGATION_ANY_PROTOCOL", ObjectType.SERVICE_ACCOUNT, Severity.HIGH,
        "Service account may impersonate any user to the listed services (protocol transition)",
        "Clear TRUSTED_TO_AUTH_FOR_DELEGATION or use resource-based constrained delegation",
        _can_delegate_any_protocol, _constrained_any_protocol,
    ),
    uac_flag_rule(
        "COMPUTER_UNCONSTRAINED_DELEGATION", ObjectType.COMPUTER, UAC_TRUSTED_FOR_DELEGATION, Severity.CRITICAL,
        "Computer is trusted for unconstrained delegation and caches users' TGTs",
        "Clear TRUSTED_FOR_DELEGATION; use constrained delegation where needed",
    ),
    MisconfigurationRule(
        "GPO_UNCONSTRAINED_DELEGATION_RIGHT", ObjectType.GPO, Severity.CRITICAL,
        "Linked GPO grants SeEnableDelegationPrivilege to Authenticated Users",
        "Restrict SeEnableDelegationPrivilege to Administrators in the GPO",
        _delegation_right_not_open, _open_delegation_right,
    ),
    MisconfigurationRule(
        "GPO_WEAK_PASSWORD_POLICY", ObjectType.GPO, Severity.MEDIUM,
        "Linked GPO sets a short minimum password length without complexity",
        "Require at least 14 characters and enable password complexity",
        _password_policy_strong, _weaken_password_policy,
    ),
    MisconfigurationRule(
        "OU_OVERBROAD_DELEGATION", ObjectType.OU, Severity.HIGH,
        "A broadly populated group has full control (GenericAll) over the OU",
        "Remove the GenericAll ACE and delegate only the specific rights needed",
        _ou_without_full_control, _overbroad_delegation,
    ),
    MisconfigurationRule(
        "PRIVILEGED_GROUP_WEAK_DELEGATION", ObjectType.GROUP, Severity.CRITICAL,
        "An ordinary group can modify a privileged group (GenericWrite)",
        "Remove the ACE; only Tier 0 administrators may manage privileged groups",
        _privileged_group_with_member, _weak_privileged_delegation,
    ),
    MisconfigurationRule(
        "DELEGATION_ESCALATED_TO_GENERIC_ALL", RelationshipKind.DELEGATION, Severity.HIGH,
        "A delegated rights set was widened to full control (GenericAll)",
        "Reduce the delegation to the rights originally intended",
        _delegation_not_generic_all, _escalate_delegation,
    ),
]

BUILTIN_CATALOG = RuleCatalog(BUILTIN_RULES)
