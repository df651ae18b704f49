"""
Naming & Attribute Generator
============================

Plausible names and LDAP attributes drawn from weighted distributions.

Design Decisions:
-----------------
1. Every distribution is an explicit table of (value, weight) pairs;
   configuration can replace any table by name
2. Context-specific tables use the key "<distribution>:<context>"
   (e.g. "job_title:Finance") and fall back to the generic table
3. The generator owns its random.Random; the same seed and the same
   tables always produce the same sequence (deterministic replay)
4. No I/O and no shared state: it is safe to create one per stage
"""

import random
import string
from typing import Optional


# userAccountControl flags
UAC_ACCOUNTDISABLE = 0x0002
UAC_PASSWD_NOTREQD = 0x0020
UAC_ENCRYPTED_TEXT_PWD_ALLOWED = 0x0080
UAC_NORMAL_ACCOUNT = 0x0200
UAC_WORKSTATION_TRUST_ACCOUNT = 0x1000
UAC_DONT_EXPIRE_PASSWORD = 0x10000
UAC_TRUSTED_FOR_DELEGATION = 0x80000
UAC_DONT_REQ_PREAUTH = 0x400000
UAC_TRUSTED_TO_AUTH_FOR_DELEGATION = 0x1000000

# groupType: global security group
GROUP_TYPE_GLOBAL_SECURITY = -2147483646


DEFAULT_DISTRIBUTIONS: dict[str, list[tuple]] = {
    "first_name": [
        ("James", 8), ("Mary", 8), ("Robert", 7), ("Patricia", 7), ("John", 7),
        ("Jennifer", 7), ("Michael", 7), ("Linda", 6), ("David", 6), ("Elizabeth", 6),
        ("William", 6), ("Barbara", 5), ("Richard", 5), ("Susan", 5), ("Joseph", 5),
        ("Jessica", 5), ("Thomas", 5), ("Sarah", 5), ("Charles", 4), ("Karen", 4),
        ("Daniel", 4), ("Nancy", 4), ("Matthew", 4), ("Lisa", 4), ("Anthony", 3),
        ("Betty", 3), ("Mark", 3), ("Sandra", 3), ("Steven", 3), ("Ashley", 3),
        ("Paul", 3), ("Kimberly", 3), ("Andrew", 3), ("Emily", 3), ("Joshua", 3),
        ("Olivia", 2), ("Kevin", 2), ("Amanda", 2), ("Brian", 2), ("Melissa", 2),
        ("Priya", 1), ("Wei", 1), ("Aisha", 1), ("Mateo", 1), ("Yuki", 1),
        ("Fatima", 1), ("Lars", 1), ("Chidi", 1), ("Sofia", 1), ("Omar", 1),
    ],
    "last_name": [
        ("Smith", 9), ("Johnson", 8), ("Williams", 7), ("Brown", 7), ("Jones", 7),
        ("Garcia", 6), ("Miller", 6), ("Davis", 6), ("Rodriguez", 5), ("Martinez", 5),
        ("Hernandez", 5), ("Lopez", 4), ("Gonzalez", 4), ("Wilson", 4), ("Anderson", 4),
        ("Thomas", 4), ("Taylor", 4), ("Moore", 4), ("Jackson", 3), ("Martin", 3),
        ("Lee", 3), ("Perez", 3), ("Thompson", 3), ("White", 3), ("Harris", 3),
        ("Sanchez", 2), ("Clark", 2), ("Ramirez", 2), ("Lewis", 2), ("Robinson", 2),
        ("Walker", 2), ("Young", 2), ("Allen", 2), ("King", 2), ("Wright", 2),
        ("Nguyen", 2), ("Patel", 2), ("Kim", 2), ("Chen", 2), ("Okafor", 1),
        ("Tanaka", 1), ("Novak", 1), ("Larsen", 1), ("Haddad", 1), ("Kowalski", 1),
    ],
    "department": [
        ("IT", 6), ("Finance", 5), ("HR", 4), ("Sales", 7), ("Marketing", 4),
        ("Operations", 6), ("Engineering", 6), ("Legal", 2), ("Facilities", 2),
        ("Research", 3), ("Support", 5), ("Procurement", 2), ("Security", 2),
    ],
    "ou_sublevel": [
        ("Users", 8), ("Workstations", 6), ("Servers", 4), ("Groups", 5),
        ("Service Accounts", 3), ("Contractors", 2), ("Laptops", 3), ("Admins", 2),
        ("EMEA", 2), ("APAC", 2), ("Americas", 2), ("Staging", 1), ("Legacy", 1),
        ("Kiosks", 1), ("Printers", 1), ("Disabled", 1),
    ],
    "job_title": [
        ("Analyst", 6), ("Specialist", 5), ("Coordinator", 4), ("Manager", 4),
        ("Associate", 5), ("Senior Analyst", 3), ("Director", 1), ("Intern", 2),
        ("Consultant", 2), ("Administrator", 2),
    ],
    "job_title:IT": [
        ("Systems Administrator", 5), ("Helpdesk Technician", 6), ("Network Engineer", 3),
        ("IT Manager", 1), ("DevOps Engineer", 2), ("Database Administrator", 2),
    ],
    "job_title:Finance": [
        ("Accountant", 6), ("Financial Analyst", 5), ("Controller", 1),
        ("Payroll Specialist", 3), ("Auditor", 2),
    ],
    "job_title:HR": [
        ("HR Generalist", 5), ("Recruiter", 4), ("HR Business Partner", 2), ("HR Director", 1),
    ],
    "job_title:Sales": [
        ("Account Executive", 6), ("Sales Representative", 6), ("Sales Manager", 2),
        ("Inside Sales", 3),
    ],
    "job_title:Engineering": [
        ("Software Engineer", 7), ("QA Engineer", 3), ("Engineering Manager", 1),
        ("Architect", 1), ("Site Reliability Engineer", 2),
    ],
    "group_function": [
        ("Users", 6), ("ReadOnly", 4), ("ReadWrite", 4), ("Share-RW", 3), ("Share-R", 3),
        ("Printers", 2), ("VPN", 2), ("App-Access", 3), ("Managers", 2), ("Project", 2),
    ],
    "privileged_group": [
        ("Tier0-Admins", 3), ("Server-Admins", 4), ("Workstation-Admins", 4),
        ("Helpdesk-Operators", 4), ("Backup-Admins", 2), ("GPO-Editors", 2),
        ("Identity-Admins", 2), ("SQL-Admins", 2),
    ],
    "computer_role": [
        ("WS", 10), ("LT", 6), ("SRV", 3), ("VDI", 1),
    ],
    "operating_system": [
        ("Windows 10 Enterprise", 6), ("Windows 11 Enterprise", 8),
        ("Windows Server 2019 Standard", 3), ("Windows Server 2022 Standard", 3),
        ("Windows Server 2016 Standard", 1), ("Windows 7 Professional", 1),
    ],
    "operating_system:SRV": [
        ("Windows Server 2022 Standard", 5), ("Windows Server 2019 Standard", 4),
        ("Windows Server 2016 Standard", 2), ("Windows Server 2012 R2 Standard", 1),
    ],
    "service": [
        ("sql", 5), ("web", 4), ("backup", 3), ("sccm", 2), ("exchange", 2),
        ("sharepoint", 2), ("jenkins", 2), ("iis", 3), ("adfs", 1), ("scan", 2),
        ("monitoring", 2), ("veeam", 1),
    ],
    "gpo_theme": [
        ("Security-Baseline", 5), ("Drive-Maps", 4), ("Printers", 3), ("Desktop", 3),
        ("Software-Deploy", 3), ("Firewall", 2), ("Power", 1), ("Browser", 2),
        ("Audit-Policy", 2), ("Password-Policy", 2),
    ],
    "delegation_rights": [
        ("ResetPassword", 5), ("CreateChild|DeleteChild", 3), ("WriteProperty", 3),
        ("GenericWrite", 1), ("ReadProperty", 4),
    ],
    "password_words": [
        ("Summer", 3), ("Winter", 3), ("Welcome", 4), ("Password", 2), ("Company", 2),
        ("Spring", 2), ("Autumn", 2), ("Changeme", 1), ("Football", 1), ("Monkey", 1),
    ],
}


def make_unique(base: str, taken: set, max_len: Optional[int] = None) -> str:
    """Return `base`, or `base` with the lowest numeric suffix not in `taken`.

    Comparison is case-insensitive (directory names are). The chosen name
    is added to `taken`.
    """
    def clip(name: str, suffix: str = "") -> str:
        if max_len is None:
            return name + suffix
        return name[:max_len - len(suffix)] + suffix

    candidate = clip(base)
    n = 2
    while candidate.lower() in taken:
        candidate = clip(base, str(n))
        n += 1
    taken.add(candidate.lower())
    return candidate


class NameGenerator:
    """Draws names and attributes from weighted distributions.

    Usage:
        names = NameGenerator(seed=1337)
        first, last = names.person_name()
        title = names.choose("job_title", context="Finance")

        # Override a table
        names = NameGenerator(seed=1, overrides={"department": [("Ops", 1)]})
    """

    def __init__(self, seed: Optional[int] = None, overrides: Optional[dict] = None,
                 rng: Optional[random.Random] = None):
        """Initialize the generator.

        Args:
            seed: Seed for a private random.Random (ignored if rng is given)
            overrides: {distribution: [(value, weight), ...]} replacing defaults
            rng: Random source to draw from
        """
        self.rng = rng or random.Random(seed)
        self.distributions: dict[str, list[tuple]] = dict(DEFAULT_DISTRIBUTIONS)
        for name, entries in (overrides or {}).items():
            self.distributions[name] = [tuple(entry) for entry in entries]

    def table(self, distribution: str, context: Optional[str] = None) -> list[tuple]:
        """The (value, weight) table used for a distribution and context."""
        if context is not None:
            specific = self.distributions.get(f"{distribution}:{context}")
            if specific:
                return specific
        try:
            return self.distributions[distribution]
        except KeyError:
            raise KeyError(f"Unknown distribution: {distribution}") from None

    def choose(self, distribution: str, context: Optional[str] = None):
        """Draw one value from a weighted distribution."""
        entries = self.table(distribution, context)
        values = [value for value, _ in entries]
        weights = [weight for _, weight in entries]
        return self.rng.choices(values, weights=weights, k=1)[0]

    def choose_many(self, distribution: str, k: int, context: Optional[str] = None) -> list:
        """Draw up to k distinct values, without replacement."""
        entries = list(self.table(distribution, context))
        picked = []
        while entries and len(picked) < k:
            values = [value for value, _ in entries]
            weights = [weight for _, weight in entries]
            index = self.rng.choices(range(len(values)), weights=weights, k=1)[0]
            picked.append(values[index])
            entries.pop(index)
        return picked

    def person_name(self) -> tuple[str, str]:
        return self.choose("first_name"), self.choose("last_name")

    @staticmethod
    def sam_account_name(first: str, last: str) -> str:
        """First initial + last name, lowercased, letters and digits only."""
        base = (first[:1] + last).lower()
        return "".join(ch for ch in base if ch.isascii() and ch.isalnum()) or "user"

    def ou_name(self, depth: int) -> str:
        """Top-level OUs are departments, deeper OUs are sub-units."""
        if depth <= 1:
            return self.choose("department")
        return self.choose("ou_sublevel")

    def password(self, length: int = 16) -> str:
        """Random strong password (at least one char of each class)."""
        symbols = "!@#%^&*()-_=+"
        alphabet = string.ascii_letters + string.digits + symbols
        chars = [
            self.rng.choice(string.ascii_lowercase),
            self.rng.choice(string.ascii_uppercase),
            self.rng.choice(string.digits),
            self.rng.choice(symbols),
        ]
        chars += [self.rng.choice(alphabet) for _ in range(length - len(chars))]
        self.rng.shuffle(chars)
        return "".join(chars)

    def weak_password(self) -> str:
        """Guessable password (Season + year + symbol)."""
        return f"{self.choose('password_words')}{self.rng.randint(2015, 2026)}!"

    # ------------------------------------------------------------------
    # Per-type attributes
    # ------------------------------------------------------------------

    def user_attributes(self, first: str, last: str, sam: str, department: str, domain: str) -> dict:
        return {
            "objectClass": "user",
            "givenName": first,
            "sn": last,
            "displayName": f"{first} {last}",
            "sAMAccountName": sam,
            "userPrincipalName": f"{sam}@{domain}",
            "department": department,
            "title": self.choose("job_title", context=department),
            "employeeID": f"{self.rng.randint(100000, 999999)}",
            "description": f"{department} staff",
            "userAccountControl": UAC_NORMAL_ACCOUNT,
        }

    def service_account_attributes(self, service: str, sam: str, domain: str) -> dict:
        return {
            "objectClass": "user",
            "sAMAccountName": sam,
            "userPrincipalName": f"{sam}@{domain}",
            "displayName": f"{service.upper()} service account",
            "description": f"Service account for {service}",
            "userAccountControl": UAC_NORMAL_ACCOUNT,
        }

    def computer_attributes(self, name: str, role: str, domain: str) -> dict:
        return {
            "objectClass": "computer",
            "sAMAccountName": f"{name}$",
            "dNSHostName": f"{name.lower()}.{domain}",
            "operatingSystem": self.choose("operating_system", context=role),
            "description": {"SRV": "Member server", "LT": "Laptop", "VDI": "Virtual desktop"}.get(role, "Workstation"),
            "userAccountControl": UAC_WORKSTATION_TRUST_ACCOUNT,
        }

    def group_attributes(self, name: str, sam: str, department: str, privileged: bool) -> dict:
        attributes = {
            "objectClass": "group",
            "sAMAccountName": sam,
            "description": f"{department} {name}" if not privileged else f"Privileged group: {name}",
            "groupType": GROUP_TYPE_GLOBAL_SECURITY,
        }
        if privileged:
            attributes["adminCount"] = 1
        return attributes

    def gpo_attributes(self, name: str) -> dict:
        """GPO with a hardened baseline; `policy:*` keys are GPO settings."""
        return {
            "objectClass": "groupPolicyContainer",
            "displayName": name,
            "flags": 0,
            "versionNumber": 1,
            "policy:MinimumPasswordLength": 14,
            "policy:PasswordComplexity": 1,
            "policy:SeEnableDelegationPrivilege": "*S-1-5-32-544",
        }

    def rights_set(self) -> list[str]:
        """Delegation rights set; '|' separates rights in one table entry."""
        return self.choose("delegation_rights").split("|")
