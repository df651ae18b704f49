"""
adForge Configuration Module
============================

Centralized configuration for a fabrication run.

A run is driven by a single structured document (JSON or YAML) that is
loaded into the dataclasses below and validated before any directory write.

Design Decision:
- Configuration is a tree of dataclasses passed explicitly to every
  component; there is no module-level connection or counter state
- validate() collects every violation and raises one ConfigurationError
- The LDAP password is read from the environment when not given, so it
  never has to live in the configuration file

Example document (YAML):

    domain: corp.local
    seed: 1337
    counts: {ou: 3, user: 10, group: 2, gpo: 3}
    hierarchy: {max_depth: 1, max_branching: 8}
    misconfigurations:
      GPO_UNCONSTRAINED_DELEGATION_RIGHT: {fraction: 0.5}
"""

import json
import os
import re
import zlib
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Optional

import yaml

from .errors import ConfigurationError
from .model.schemas import ObjectType


# Hard cap on OU depth, whatever the configuration says
MAX_OU_DEPTH = 8

# Stages that can be declared critical for the exit status
STAGE_NAMES = (
    "ou", "group", "user", "computer", "service_account", "gpo",
    "relationship", "misconfiguration",
)

_DOMAIN_LABEL = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?$")


@dataclass
class CountsConfig:
    """Target number of objects per type for the whole domain."""
    ou: int = 12
    user: int = 250
    group: int = 40
    computer: int = 80
    service_account: int = 10
    gpo: int = 12

    def get(self, object_type: ObjectType) -> int:
        return getattr(self, object_type.config_key)

    @property
    def total_objects(self) -> int:
        """Objects placed inside OUs (everything except the OUs themselves)."""
        return self.user + self.group + self.computer + self.service_account + self.gpo


@dataclass
class HierarchyConfig:
    """Bounds for the OU tree.

    Attributes:
        max_depth: Maximum OU depth below the domain root (hard cap 8)
        max_branching: Maximum number of child OUs per OU (and top-level OUs)
        skew: 0 splits budgets uniformly; larger values make some OUs denser
        max_objects_per_ou: Optional cap on objects of one type per OU
    """
    max_depth: int = 3
    max_branching: int = 6
    skew: float = 1.0
    max_objects_per_ou: Optional[int] = None


@dataclass
class RelationshipConfig:
    """Distribution knobs for the relationship weaver.

    Attributes:
        nesting_fraction: Chance that a group is nested into another group
        max_nesting_depth: Longest allowed group nesting chain (edges)
        memberships_min / memberships_max: Ordinary groups per principal
        privileged_groups: Number of planned groups flagged privileged, capped
            so that at least one group stays ordinary
        privileged_fraction: Share of principals placed in privileged groups
        extra_gpo_link_fraction: Chance an OU gets an additional GPO link
        delegation_fraction: Chance an OU delegates rights to a group
    """
    nesting_fraction: float = 0.3
    max_nesting_depth: int = 3
    memberships_min: int = 1
    memberships_max: int = 3
    privileged_groups: int = 2
    privileged_fraction: float = 0.02
    extra_gpo_link_fraction: float = 0.2
    delegation_fraction: float = 0.3


@dataclass
class RuleSampling:
    """How many eligible targets a misconfiguration rule weakens.

    Exactly one of `fraction` (share of the eligible set, rounded half up)
    or `count` (fixed number, capped by the eligible set) is set.
    """
    fraction: Optional[float] = None
    count: Optional[int] = None

    def sample_size(self, eligible: int) -> int:
        if self.count is not None:
            return min(self.count, eligible)
        fraction = self.fraction or 0.0
        return min(int(fraction * eligible + 0.5), eligible)


@dataclass
class ExecutionConfig:
    """Worker pool, retry policy and exit-status settings.

    Attributes:
        concurrency: Number of concurrent adapter calls
        max_attempts: Attempts per adapter call on transient failures
        base_delay / max_delay: Exponential backoff bounds in seconds
        call_timeout: Per-call timeout in seconds (timeouts are transient)
        failure_threshold: Max failure rate of a critical stage
        critical_stages: Stages checked against failure_threshold
    """
    concurrency: int = 4
    max_attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 8.0
    call_timeout: float = 30.0
    failure_threshold: float = 0.1
    critical_stages: list = field(default_factory=lambda: ["ou"])


@dataclass
class LedgerConfig:
    """Where the answer key and its write-ahead journal live.

    Attributes:
        output_dir: Directory for the answer key, journal and run summary
        answer_key_file: Final answer key (JSON)
        journal_file: Write-ahead journal (JSON Lines)
        flush_every: Entries per journal flush (1 = flush after each write)
    """
    output_dir: str = "output"
    answer_key_file: str = "answer_key.json"
    journal_file: str = "answer_key.journal.jsonl"
    summary_file: str = "run_summary.json"
    flush_every: int = 1

    @property
    def answer_key_path(self) -> Path:
        return Path(self.output_dir) / self.answer_key_file

    @property
    def journal_path(self) -> Path:
        return Path(self.output_dir) / self.journal_file

    @property
    def summary_path(self) -> Path:
        return Path(self.output_dir) / self.summary_file


@dataclass
class LDAPConfig:
    """Connection settings for the LDAP directory adapter.

    Attributes:
        server: Domain controller hostname or IP
        username: Bind user (DOMAIN\\user or user@domain)
        password: Bind password (ADFORGE_LDAP_PASSWORD if not provided)
        use_ssl: Whether to use LDAPS (required to set passwords)
        port: Port (auto-detected from use_ssl)
        timeout: Connect/receive timeout in seconds
    """
    server: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    use_ssl: bool = False
    port: Optional[int] = None
    timeout: int = 30

    def __post_init__(self):
        if self.password is None:
            self.password = os.environ.get("ADFORGE_LDAP_PASSWORD")
        if self.port is None:
            self.port = 636 if self.use_ssl else 389


@dataclass
class NamingConfig:
    """Overrides for the name/attribute distributions.

    `distributions` maps a distribution name (optionally "<name>:<context>")
    to a list of [value, weight] pairs. Entries replace the built-in table
    of the same name.
    """
    distributions: dict = field(default_factory=dict)


@dataclass
class ForgeConfig:
    """Main configuration container for a run.

    Usage:
        config = ForgeConfig()                      # defaults
        config = ForgeConfig.from_dict(document)    # from JSON/YAML
        config.validate()                           # raises ConfigurationError
    """
    domain: str = "corp.local"
    seed: Optional[int] = None
    counts: CountsConfig = field(default_factory=CountsConfig)
    hierarchy: HierarchyConfig = field(default_factory=HierarchyConfig)
    relationships: RelationshipConfig = field(default_factory=RelationshipConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    ldap: LDAPConfig = field(default_factory=LDAPConfig)
    naming: NamingConfig = field(default_factory=NamingConfig)
    misconfigurations: dict = field(default_factory=dict)  # rule_id -> RuleSampling

    verbose: bool = True

    @property
    def effective_seed(self) -> int:
        """Seed for the run; derived from the domain name when not set.

        A stable default keeps re-runs with the same document idempotent.
        """
        if self.seed is not None:
            return self.seed
        return zlib.crc32(self.domain.lower().encode("utf-8"))

    @classmethod
    def from_dict(cls, config_dict: dict) -> "ForgeConfig":
        """Create configuration from a dictionary.

        Raises:
            ConfigurationError: Listing every unknown key or malformed section
        """
        violations: list[str] = []
        if not isinstance(config_dict, dict):
            raise ConfigurationError(["configuration document must be a mapping"])

        top_level = {f.name for f in fields(cls)}
        for key in config_dict:
            if key not in top_level:
                violations.append(f"unknown top-level key '{key}'")

        counts = _section(CountsConfig, config_dict.get("counts"), "counts", violations)
        hierarchy = _section(HierarchyConfig, config_dict.get("hierarchy"), "hierarchy", violations)
        relationships = _section(RelationshipConfig, config_dict.get("relationships"), "relationships", violations)
        execution = _section(ExecutionConfig, config_dict.get("execution"), "execution", violations)
        ledger = _section(LedgerConfig, config_dict.get("ledger"), "ledger", violations)
        ldap = _section(LDAPConfig, config_dict.get("ldap"), "ldap", violations)
        naming = _section(NamingConfig, config_dict.get("naming"), "naming", violations)

        misconfigurations = {}
        raw_rules = config_dict.get("misconfigurations") or {}
        if not isinstance(raw_rules, dict):
            violations.append("misconfigurations must be a mapping of rule id to sampling")
        else:
            for rule_id, sampling in raw_rules.items():
                rule = _section(RuleSampling, sampling, f"misconfigurations.{rule_id}", violations)
                if rule is not None:
                    misconfigurations[str(rule_id)] = rule

        if violations:
            raise ConfigurationError(violations)

        return cls(
            domain=config_dict.get("domain", "corp.local"),
            seed=config_dict.get("seed"),
            counts=counts,
            hierarchy=hierarchy,
            relationships=relationships,
            execution=execution,
            ledger=ledger,
            ldap=ldap,
            naming=naming,
            misconfigurations=misconfigurations,
            verbose=config_dict.get("verbose", True),
        )

    def to_dict(self) -> dict:
        """Convert configuration to dictionary for serialization."""
        data = asdict(self)
        data["ldap"].pop("password", None)
        return data

    def validate(self, known_rules: Optional[set] = None) -> None:
        """Check the whole document and raise once with every violation.

        Args:
            known_rules: Rule ids that may be configured (defaults to the
                built-in catalog)

        Raises:
            ConfigurationError: If anything is invalid or inconsistent
        """
        if known_rules is None:
            from .rules.builtin import BUILTIN_CATALOG
            known_rules = set(BUILTIN_CATALOG.rule_ids)

        violations: list[str] = []
        violations.extend(self._validate_domain())
        violations.extend(self._validate_counts())
        violations.extend(self._validate_hierarchy())
        violations.extend(self._validate_relationships())
        violations.extend(self._validate_execution())
        violations.extend(self._validate_ledger())
        violations.extend(self._validate_naming())
        violations.extend(self._validate_misconfigurations(known_rules))

        if violations:
            raise ConfigurationError(violations)

    def _validate_domain(self) -> list[str]:
        if not isinstance(self.domain, str) or not self.domain:
            return ["domain must be a non-empty DNS name"]
        labels = self.domain.split(".")
        if len(labels) < 2 or not all(_DOMAIN_LABEL.match(label) for label in labels):
            return [f"domain '{self.domain}' is not a valid DNS name (e.g. corp.local)"]
        if self.seed is not None and not isinstance(self.seed, int):
            return ["seed must be an integer"]
        return []

    def _validate_counts(self) -> list[str]:
        violations = []
        for f in fields(self.counts):
            value = getattr(self.counts, f.name)
            if not isinstance(value, int) or value < 0:
                violations.append(f"counts.{f.name} must be a non-negative integer (got {value!r})")
        if violations:
            return violations

        if self.counts.total_objects > 0 and self.counts.ou < 1:
            violations.append("counts.ou must be at least 1 when other objects are requested")
        if self.counts.ou > 0 and self.counts.gpo < 1:
            violations.append("counts.gpo must be at least 1: every OU needs a linked GPO")
        return violations

    def _validate_hierarchy(self) -> list[str]:
        h = self.hierarchy
        violations = []
        if not isinstance(h.max_depth, int) or not 1 <= h.max_depth <= MAX_OU_DEPTH:
            violations.append(f"hierarchy.max_depth must be between 1 and {MAX_OU_DEPTH} (got {h.max_depth!r})")
        if not isinstance(h.max_branching, int) or h.max_branching < 1:
            violations.append(f"hierarchy.max_branching must be at least 1 (got {h.max_branching!r})")
        if not isinstance(h.skew, (int, float)) or h.skew < 0:
            violations.append(f"hierarchy.skew must be >= 0 (got {h.skew!r})")
        if h.max_objects_per_ou is not None and (not isinstance(h.max_objects_per_ou, int) or h.max_objects_per_ou < 1):
            violations.append("hierarchy.max_objects_per_ou must be a positive integer or null")
        if violations:
            return violations

        capacity = sum(h.max_branching ** d for d in range(1, h.max_depth + 1))
        if isinstance(self.counts.ou, int) and self.counts.ou > capacity:
            violations.append(
                f"counts.ou={self.counts.ou} exceeds what depth {h.max_depth} and "
                f"branching {h.max_branching} can host ({capacity} OUs)"
            )
        return violations

    def _validate_relationships(self) -> list[str]:
        r = self.relationships
        violations = []
        for name in ("nesting_fraction", "privileged_fraction", "extra_gpo_link_fraction", "delegation_fraction"):
            value = getattr(r, name)
            if not isinstance(value, (int, float)) or not 0.0 <= value <= 1.0:
                violations.append(f"relationships.{name} must be between 0 and 1 (got {value!r})")
        if not isinstance(r.max_nesting_depth, int) or r.max_nesting_depth < 0:
            violations.append("relationships.max_nesting_depth must be a non-negative integer")
        if not isinstance(r.memberships_min, int) or not isinstance(r.memberships_max, int) \
                or r.memberships_min < 0 or r.memberships_min > r.memberships_max:
            violations.append("relationships.memberships_min/max must satisfy 0 <= min <= max")
        if not isinstance(r.privileged_groups, int) or r.privileged_groups < 0:
            violations.append("relationships.privileged_groups must be a non-negative integer")
        elif isinstance(self.counts.group, int) and r.privileged_groups > self.counts.group:
            violations.append(
                f"relationships.privileged_groups={r.privileged_groups} exceeds counts.group={self.counts.group}"
            )
        return violations

    def _validate_execution(self) -> list[str]:
        e = self.execution
        violations = []
        if not isinstance(e.concurrency, int) or e.concurrency < 1:
            violations.append("execution.concurrency must be at least 1")
        if not isinstance(e.max_attempts, int) or e.max_attempts < 1:
            violations.append("execution.max_attempts must be at least 1")
        if not isinstance(e.base_delay, (int, float)) or e.base_delay < 0:
            violations.append("execution.base_delay must be >= 0")
        if not isinstance(e.max_delay, (int, float)) or e.max_delay < 0:
            violations.append("execution.max_delay must be >= 0")
        elif isinstance(e.base_delay, (int, float)) and e.base_delay > e.max_delay:
            violations.append("execution.base_delay must not exceed execution.max_delay")
        if not isinstance(e.call_timeout, (int, float)) or e.call_timeout <= 0:
            violations.append("execution.call_timeout must be > 0")
        if not isinstance(e.failure_threshold, (int, float)) or not 0.0 <= e.failure_threshold <= 1.0:
            violations.append("execution.failure_threshold must be between 0 and 1")
        for stage in e.critical_stages or []:
            if stage not in STAGE_NAMES:
                violations.append(f"execution.critical_stages: unknown stage '{stage}' (known: {', '.join(STAGE_NAMES)})")
        return violations

    def _validate_ledger(self) -> list[str]:
        violations = []
        if not isinstance(self.ledger.flush_every, int) or self.ledger.flush_every < 1:
            violations.append("ledger.flush_every must be at least 1")
        if self.ledger.answer_key_file == self.ledger.journal_file:
            violations.append("ledger.answer_key_file and ledger.journal_file must differ")
        return violations

    def _validate_naming(self) -> list[str]:
        violations = []
        if not isinstance(self.naming.distributions, dict):
            return ["naming.distributions must be a mapping"]
        for name, entries in self.naming.distributions.items():
            if not isinstance(entries, list) or not entries:
                violations.append(f"naming.distributions.{name} must be a non-empty list of [value, weight]")
                continue
            for entry in entries:
                if not isinstance(entry, (list, tuple)) or len(entry) != 2:
                    violations.append(f"naming.distributions.{name}: entry {entry!r} is not [value, weight]")
                elif not isinstance(entry[1], (int, float)) or entry[1] <= 0:
                    violations.append(f"naming.distributions.{name}: weight of {entry[0]!r} must be > 0")
        return violations

    def _validate_misconfigurations(self, known_rules: set) -> list[str]:
        violations = []
        for rule_id, sampling in self.misconfigurations.items():
            prefix = f"misconfigurations.{rule_id}"
            if rule_id not in known_rules:
                violations.append(f"{prefix}: unknown rule id")
            if (sampling.fraction is None) == (sampling.count is None):
                violations.append(f"{prefix}: set exactly one of 'fraction' or 'count'")
                continue
            if sampling.fraction is not None and (
                not isinstance(sampling.fraction, (int, float)) or not 0.0 <= sampling.fraction <= 1.0
            ):
                violations.append(f"{prefix}.fraction must be between 0 and 1")
            if sampling.count is not None and (not isinstance(sampling.count, int) or sampling.count < 0):
                violations.append(f"{prefix}.count must be a non-negative integer")
        return violations


def _section(section_cls, data: Optional[dict], name: str, violations: list[str]):
    """Build one configuration section, recording unknown keys as violations."""
    if data is None:
        return section_cls()
    if not isinstance(data, dict):
        violations.append(f"{name} must be a mapping")
        return None

    known = {f.name for f in fields(section_cls)}
    unknown = [key for key in data if key not in known]
    for key in unknown:
        violations.append(f"{name}: unknown key '{key}'")
    return section_cls(**{k: v for k, v in data.items() if k in known})


def load_config(path: str) -> ForgeConfig:
    """Load and validate a JSON or YAML configuration document.

    Args:
        path: Path to a .json, .yaml or .yml file

    Returns:
        Validated ForgeConfig

    Raises:
        ConfigurationError: If the file cannot be read or is invalid
    """
    config_path = Path(path)
    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError([f"cannot read configuration file {path}: {e}"])

    try:
        if config_path.suffix.lower() in (".yaml", ".yml"):
            document = yaml.safe_load(text) or {}
        else:
            document = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigurationError([f"cannot parse configuration file {path}: {e}"])

    config = ForgeConfig.from_dict(document)
    config.validate()
    return config
