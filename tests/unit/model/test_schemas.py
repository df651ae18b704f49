"""Schema helper tests."""

import pytest

from adforge.model.schemas import (
    LedgerEntry, ObjectType, RunSummary, Severity, StageCounts,
    domain_dn, escape_rdn, object_identifier, ou_identifier
)


class TestIdentifiers:
    def test_domain_dn(self) -> None:
        assert domain_dn("corp.local") == "DC=corp,DC=local"

    def test_escape_rdn(self) -> None:
        assert escape_rdn("Smith, John") == "Smith\\, John"
        assert escape_rdn("#admins") == "\\#admins"
        assert escape_rdn("plain") == "plain"

    def test_nested_identifiers(self) -> None:
        ou = ou_identifier("IT", "DC=corp,DC=local")

        assert ou == "OU=IT,DC=corp,DC=local"
        assert object_identifier("jdoe", ou) == "CN=jdoe,OU=IT,DC=corp,DC=local"


class TestObjectType:
    @pytest.mark.parametrize("text,expected", [
        ("service_account", ObjectType.SERVICE_ACCOUNT),
        ("ServiceAccount", ObjectType.SERVICE_ACCOUNT),
        ("gpo", ObjectType.GPO),
        ("OU", ObjectType.OU),
    ])
    def test_from_string(self, text: str, expected: ObjectType) -> None:
        assert ObjectType.from_string(text) == expected

    def test_from_string_unknown(self) -> None:
        with pytest.raises(ValueError):
            ObjectType.from_string("printer")


class TestSummary:
    def test_failure_rate_includes_skipped(self) -> None:
        counts = StageCounts("ou", attempted=8, succeeded=6, failed=2, skipped=2)

        assert counts.failure_rate == pytest.approx(0.4)
        assert StageCounts("user").failure_rate == 0.0

    def test_exit_status(self) -> None:
        summary = RunSummary(domain="corp.local", seed=1)
        assert summary.exit_status == 0

        summary.cancelled = True
        assert summary.exit_status == 1
        assert summary.to_dict()["exit_status"] == 1

    def test_failed_stage_without_critical_flag_keeps_exit_status(self) -> None:
        summary = RunSummary(domain="corp.local", seed=1)
        summary.stage("user").attempted = 4
        summary.stage("user").failed = 4

        assert summary.stage("user").failure_rate == 1.0
        assert summary.exit_status == 0

    def test_ledger_entry_serialization(self) -> None:
        entry = LedgerEntry(
            rule_id="USER_ASREP_ROASTABLE",
            target="CN=jdoe,OU=IT,DC=corp,DC=local",
            severity=Severity.HIGH,
            delta={"userAccountControl": 4194816},
            remediation="Clear DONT_REQ_PREAUTH",
        )

        data = entry.to_dict()
        assert data["severity"] == "High"
        assert LedgerEntry.from_dict(data) == entry
