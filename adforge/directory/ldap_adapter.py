"""
LDAP Directory Adapter
======================

Writes the fabricated domain to a live Active Directory over LDAP.

Features:
- Creates OUs, users, groups, computers, service accounts and GPO containers
- Group memberships (member), GPO links (gPLink) and delegated rights
  (ACEs appended to nTSecurityDescriptor)
- Supports LDAP (389) and LDAPS (636); passwords are only set over LDAPS

Design Decisions:
-----------------
1. Uses ldap3 with the SAFE_SYNC strategy; blocking calls run in a worker
   thread through asyncio.to_thread so the event loop stays responsive
2. Binds with NTLM first and falls back to a SIMPLE bind
3. ACEs are built with impacket's ldaptypes, so delegations are real
   security descriptor entries a collector like BloodHound can read back
4. GPO containers live under CN=Policies,CN=System with a GUID derived
   from the planned identifier, so a re-run addresses the same container
5. GPO `policy:*` settings are stored in SYSVOL, which LDAP cannot write:
   such deltas are reported as failures and never ledgered

Security Consideration:
This module MODIFIES the target directory. Point it only at a disposable
lab domain.
"""

import asyncio
import logging
import socket
import uuid
from typing import Callable, Optional

from impacket.ldap import ldaptypes
from impacket.uuid import bin_to_string, string_to_bin
from ldap3 import (
    Server, Connection, ALL, BASE, NTLM, SIMPLE, SAFE_SYNC,
    MODIFY_ADD, MODIFY_REPLACE
)
from ldap3.core.exceptions import (
    LDAPException, LDAPSocketOpenError, LDAPSocketReceiveError,
    LDAPSocketSendError, LDAPSessionTerminatedByServerError, LDAPResponseTimeoutError
)
from ldap3.protocol.microsoft import security_descriptor_control

from ..config import LDAPConfig
from ..errors import DirectoryError, PermanentDirectoryError, TransientDirectoryError
from ..generation.naming import UAC_ACCOUNTDISABLE
from ..model.schemas import ObjectType, RelationshipKind, domain_dn
from .adapter import AdapterResult, DirectoryAdapter

logger = logging.getLogger(__name__)


# LDAP result codes
RESULT_SUCCESS = 0
RESULT_NO_SUCH_OBJECT = 32
RESULT_ATTRIBUTE_OR_VALUE_EXISTS = 20
RESULT_BUSY = 51
RESULT_UNAVAILABLE = 52
RESULT_ENTRY_ALREADY_EXISTS = 68

ALREADY_EXISTS_CODES = {RESULT_ENTRY_ALREADY_EXISTS, RESULT_ATTRIBUTE_OR_VALUE_EXISTS}
TRANSIENT_CODES = {RESULT_BUSY, RESULT_UNAVAILABLE}

TRANSIENT_EXCEPTIONS = (
    LDAPSocketOpenError, LDAPSocketReceiveError, LDAPSocketSendError,
    LDAPSessionTerminatedByServerError, LDAPResponseTimeoutError,
    socket.timeout, ConnectionError,
)

OBJECT_CLASSES = {
    ObjectType.OU: ["top", "organizationalUnit"],
    ObjectType.USER: ["top", "person", "organizationalPerson", "user"],
    ObjectType.SERVICE_ACCOUNT: ["top", "person", "organizationalPerson", "user"],
    ObjectType.COMPUTER: ["top", "person", "organizationalPerson", "user", "computer"],
    ObjectType.GROUP: ["top", "group"],
    ObjectType.GPO: ["top", "container", "groupPolicyContainer"],
}

# Access mask bits for delegated rights
RIGHT_MASKS = {
    "CreateChild": 0x00000001,
    "DeleteChild": 0x00000002,
    "ReadProperty": 0x00000010,
    "WriteProperty": 0x00000020,
    "WriteDacl": 0x00040000,
    "WriteOwner": 0x00080000,
    "GenericWrite": 0x00020028,
    "GenericAll": 0x000F01FF,
}

# Extended rights, granted as object ACEs with CONTROL_ACCESS
EXTENDED_RIGHTS = {
    "ResetPassword": "00299570-246d-11d0-a768-00aa006e0529",
}
ADS_RIGHT_DS_CONTROL_ACCESS = 0x00000100

CONTAINER_INHERIT_ACE = 0x02

# Pseudo-attributes handled outside the generic attribute write
PASSWORD_ATTRIBUTE = "password"
POLICY_PREFIX = "policy:"


def gpo_guid(identifier: str) -> str:
    """Stable GPO GUID for a planned GPO identifier."""
    return "{" + str(uuid.uuid5(uuid.NAMESPACE_URL, identifier.lower())).upper() + "}"


def build_ace(sid: str, right: str):
    """Build an ACCESS_ALLOWED ACE granting `right` to `sid`.

    Raises:
        PermanentDirectoryError: If the right is not known
    """
    ace = ldaptypes.ACE()
    ace["AceFlags"] = CONTAINER_INHERIT_ACE

    if right in EXTENDED_RIGHTS:
        ace["AceType"] = ldaptypes.ACCESS_ALLOWED_OBJECT_ACE.ACE_TYPE
        ace_data = ldaptypes.ACCESS_ALLOWED_OBJECT_ACE()
        ace_data["Mask"] = ldaptypes.ACCESS_MASK()
        ace_data["Mask"]["Mask"] = ADS_RIGHT_DS_CONTROL_ACCESS
        ace_data["ObjectType"] = string_to_bin(EXTENDED_RIGHTS[right])
        ace_data["InheritedObjectType"] = b""
        ace_data["Flags"] = ldaptypes.ACCESS_ALLOWED_OBJECT_ACE.ACE_OBJECT_TYPE_PRESENT
    elif right in RIGHT_MASKS:
        ace["AceType"] = ldaptypes.ACCESS_ALLOWED_ACE.ACE_TYPE
        ace_data = ldaptypes.ACCESS_ALLOWED_ACE()
        ace_data["Mask"] = ldaptypes.ACCESS_MASK()
        ace_data["Mask"]["Mask"] = RIGHT_MASKS[right]
    else:
        raise PermanentDirectoryError(f"unknown delegated right '{right}'")

    ace_data["Sid"] = ldaptypes.LDAP_SID()
    ace_data["Sid"].fromCanonical(sid)
    ace["Ace"] = ace_data
    return ace


def ace_matches(ace, sid: str, right: str) -> bool:
    """True if an existing ACE already grants `right` to `sid`."""
    if ace["AceType"] not in (ldaptypes.ACCESS_ALLOWED_ACE.ACE_TYPE,
                              ldaptypes.ACCESS_ALLOWED_OBJECT_ACE.ACE_TYPE):
        return False
    if ace["Ace"]["Sid"].formatCanonical() != sid:
        return False

    mask = int(ace["Ace"]["Mask"]["Mask"])
    if right in EXTENDED_RIGHTS:
        if ace["AceType"] != ldaptypes.ACCESS_ALLOWED_OBJECT_ACE.ACE_TYPE:
            return False
        return bool(mask & ADS_RIGHT_DS_CONTROL_ACCESS) and \
            bin_to_string(ace["Ace"]["ObjectType"]).lower() == EXTENDED_RIGHTS[right]
    if ace["AceType"] != ldaptypes.ACCESS_ALLOWED_ACE.ACE_TYPE:
        return False
    return mask & RIGHT_MASKS[right] == RIGHT_MASKS[right]


class LDAPDirectoryAdapter(DirectoryAdapter):
    """DirectoryAdapter backed by a live domain controller.

    Usage:
        adapter = LDAPDirectoryAdapter(
            domain="corp.local",
            config=LDAPConfig(server="192.168.1.100", username="admin",
                              password="...", use_ssl=True)
        )
        await adapter.connect()
        ...
        await adapter.close()
    """

    name = "ldap"

    def __init__(
        self,
        domain: str,
        config: LDAPConfig,
        verbose: bool = True,
        progress_callback: Optional[Callable[[str], None]] = None
    ):
        """Initialize the adapter.

        Args:
            domain: Domain name (e.g., "corp.local")
            config: LDAPConfig with server and credentials
            verbose: Whether to print progress messages
            progress_callback: Optional callback for progress updates
        """
        self.domain = domain
        self.config = config
        self.verbose = verbose
        self.progress_callback = progress_callback

        self.connection: Optional[Connection] = None
        self.base_dn = domain_dn(domain)
        self.policies_dn = f"CN=Policies,CN=System,{self.base_dn}"

        # planned GPO identifier -> container DN
        self._gpo_dns: dict[str, str] = {}
        self._sid_cache: dict[str, str] = {}

    def _log(self, message: str) -> None:
        """Log a message to console and/or callback."""
        if self.verbose:
            print(message)
        if self.progress_callback:
            self.progress_callback(message)

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Bind to the domain controller.

        Raises:
            DirectoryError: If no bind method succeeds
        """
        await asyncio.to_thread(self._connect)

    def _connect(self) -> None:
        if not self.config.server:
            raise DirectoryError("ldap.server is not configured")
        if not self.config.username or not self.config.password:
            raise DirectoryError("LDAP writes need ldap.username and a password (ADFORGE_LDAP_PASSWORD)")

        server = Server(
            self.config.server,
            port=self.config.port,
            use_ssl=self.config.use_ssl,
            get_info=ALL,
            connect_timeout=self.config.timeout
        )

        if "\\" not in self.config.username and "@" not in self.config.username:
            ntlm_user = f"{self.domain.split('.')[0].upper()}\\{self.config.username}"
        else:
            ntlm_user = self.config.username

        self._log(f"[*] Connecting to {self.config.server}:{self.config.port} as {ntlm_user}")

        try:
            try:
                self.connection = Connection(
                    server,
                    user=ntlm_user,
                    password=self.config.password,
                    authentication=NTLM,
                    client_strategy=SAFE_SYNC,
                    auto_bind=True,
                    receive_timeout=self.config.timeout
                )
            except LDAPException as ntlm_error:
                self._log("[*] NTLM auth failed, trying simple bind...")
                logger.debug("NTLM bind failed: %s", ntlm_error)
                username = self.config.username
                self.connection = Connection(
                    server,
                    user=username if "@" in username else f"{username}@{self.domain}",
                    password=self.config.password,
                    authentication=SIMPLE,
                    client_strategy=SAFE_SYNC,
                    auto_bind=True,
                    receive_timeout=self.config.timeout
                )
        except LDAPException as e:
            self._log(f"[!] Connection failed: {e}")
            raise DirectoryError(f"cannot bind to {self.config.server}: {e}") from e

        self._log(f"[+] Connected successfully to {self.config.server}")
        if not self.config.use_ssl:
            self._log("[!] Not using LDAPS: account passwords will not be set, accounts stay disabled")

    async def close(self) -> None:
        if self.connection is not None:
            await asyncio.to_thread(self.connection.unbind)
            self.connection = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _call(self, identifier: str, operation: Callable, *args, **kwargs) -> dict:
        """Run one ldap3 call and classify its result.

        Returns:
            The ldap3 result dict (code 0, 68 or 20)

        Raises:
            TransientDirectoryError: Busy/unavailable server or dropped socket
            PermanentDirectoryError: Any other error code
        """
        if self.connection is None:
            raise TransientDirectoryError("not connected", identifier)
        try:
            status, result, response, _ = operation(*args, **kwargs)
        except TRANSIENT_EXCEPTIONS as e:
            raise TransientDirectoryError(f"connection error: {e}", identifier) from e
        except LDAPException as e:
            raise PermanentDirectoryError(str(e), identifier) from e

        code = result.get("result", RESULT_SUCCESS)
        if code == RESULT_SUCCESS or code in ALREADY_EXISTS_CODES:
            result["response"] = response
            return result
        message = f"{result.get('description')} ({code}): {result.get('message', '').strip()}"
        if code in TRANSIENT_CODES:
            raise TransientDirectoryError(message, identifier)
        raise PermanentDirectoryError(message, identifier)

    def _dn(self, identifier: str) -> str:
        """Directory DN of a planned identifier (GPOs live under CN=Policies)."""
        return self._gpo_dns.get(identifier, identifier)

    def _read(self, identifier: str, attributes: list, controls=None) -> Optional[dict]:
        result = self._call(
            identifier, self.connection.search,
            search_base=self._dn(identifier),
            search_filter="(objectClass=*)",
            search_scope=BASE,
            attributes=attributes,
            controls=controls,
        )
        entries = [r for r in result["response"] if r.get("type") == "searchResEntry"]
        return entries[0] if entries else None

    def _object_sid(self, identifier: str) -> str:
        if identifier not in self._sid_cache:
            entry = self._read(identifier, ["objectSid"])
            if entry is None or not entry["attributes"].get("objectSid"):
                raise PermanentDirectoryError("principal has no objectSid", identifier)
            self._sid_cache[identifier] = str(entry["attributes"]["objectSid"])
        return self._sid_cache[identifier]

    def _set_password(self, identifier: str, dn: str, password: str) -> None:
        try:
            changed = self.connection.extend.microsoft.modify_password(dn, password)
        except TRANSIENT_EXCEPTIONS as e:
            raise TransientDirectoryError(f"connection error: {e}", identifier) from e
        except LDAPException as e:
            raise PermanentDirectoryError(str(e), identifier) from e
        if not changed:
            raise PermanentDirectoryError("password change rejected", identifier)

    @staticmethod
    def _ldap_values(attributes: dict) -> dict:
        return {
            key: value for key, value in attributes.items()
            if key != "objectClass" and key != PASSWORD_ATTRIBUTE and not key.startswith(POLICY_PREFIX)
        }

    # ------------------------------------------------------------------
    # Objects
    # ------------------------------------------------------------------

    async def create_object(self, object_type: ObjectType, identifier: str,
                            attributes: dict) -> AdapterResult:
        return await asyncio.to_thread(self._create_object, object_type, identifier, attributes)

    def _create_object(self, object_type: ObjectType, identifier: str, attributes: dict) -> AdapterResult:
        values = self._ldap_values(attributes)
        dn = identifier

        if object_type == ObjectType.GPO:
            guid = gpo_guid(identifier)
            dn = f"CN={guid},{self.policies_dn}"
            self._gpo_dns[identifier] = dn
            values["gPCFileSysPath"] = f"\\\\{self.domain}\\SysVol\\{self.domain}\\Policies\\{guid}"
            values.setdefault("gPCFunctionalityVersion", 2)

        password = attributes.get(PASSWORD_ATTRIBUTE)
        enable_uac = None
        if object_type in (ObjectType.USER, ObjectType.SERVICE_ACCOUNT) and "userAccountControl" in values:
            # Accounts are created disabled and enabled once a password is set
            enable_uac = int(values["userAccountControl"])
            values["userAccountControl"] = enable_uac | UAC_ACCOUNTDISABLE

        try:
            result = self._call(identifier, self.connection.add, dn, OBJECT_CLASSES[object_type], values)
        except PermanentDirectoryError as e:
            return AdapterResult.failed(str(e))
        if result["result"] in ALREADY_EXISTS_CODES:
            return AdapterResult.already_exists()

        if enable_uac is not None and password and self.config.use_ssl:
            try:
                self._set_password(identifier, dn, password)
                self._call(identifier, self.connection.modify, dn,
                           {"userAccountControl": [(MODIFY_REPLACE, [enable_uac])]})
            except PermanentDirectoryError as e:
                logger.warning("Created %s but could not enable it: %s", identifier, e)
        return AdapterResult.created()

    async def set_attributes(self, identifier: str, delta: dict) -> AdapterResult:
        return await asyncio.to_thread(self._set_attributes, identifier, delta)

    def _set_attributes(self, identifier: str, delta: dict) -> AdapterResult:
        policy_keys = [key for key in delta if key.startswith(POLICY_PREFIX)]
        if policy_keys:
            return AdapterResult.failed(
                f"GPO settings {', '.join(policy_keys)} live in SYSVOL and cannot be written over LDAP"
            )

        dn = self._dn(identifier)
        try:
            if PASSWORD_ATTRIBUTE in delta:
                if not self.config.use_ssl:
                    return AdapterResult.failed("setting a password requires LDAPS")
                self._set_password(identifier, dn, delta[PASSWORD_ATTRIBUTE])

            changes = {}
            for key, value in self._ldap_values(delta).items():
                values = value if isinstance(value, list) else [value]
                changes[key] = [(MODIFY_REPLACE, values)]
            if changes:
                self._call(identifier, self.connection.modify, dn, changes)
        except PermanentDirectoryError as e:
            return AdapterResult.failed(str(e))
        return AdapterResult.success()

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    async def create_relationship(self, kind: RelationshipKind, source: str, target: str,
                                  attributes: Optional[dict] = None) -> AdapterResult:
        return await asyncio.to_thread(self._create_relationship, kind, source, target, attributes or {})

    def _create_relationship(self, kind: RelationshipKind, source: str, target: str,
                             attributes: dict) -> AdapterResult:
        try:
            if kind == RelationshipKind.MEMBERSHIP:
                return self._add_member(source, target)
            if kind == RelationshipKind.GPO_LINK:
                return self._link_gpo(source, target)
            return self._delegate(source, target, attributes.get("rights", []))
        except PermanentDirectoryError as e:
            return AdapterResult.failed(str(e))

    def _add_member(self, group: str, member: str) -> AdapterResult:
        result = self._call(group, self.connection.modify, self._dn(group),
                            {"member": [(MODIFY_ADD, [self._dn(member)])]})
        if result["result"] in ALREADY_EXISTS_CODES:
            return AdapterResult.already_exists()
        return AdapterResult.success()

    def _link_gpo(self, gpo: str, ou: str) -> AdapterResult:
        gpo_dn = self._gpo_dns.get(gpo) or f"CN={gpo_guid(gpo)},{self.policies_dn}"
        entry = self._read(ou, ["gPLink"])
        if entry is None:
            raise PermanentDirectoryError("no such OU", ou)

        current = entry["attributes"].get("gPLink") or ""
        if isinstance(current, list):
            current = current[0] if current else ""
        if gpo_dn.lower() in current.lower():
            return AdapterResult.already_exists()

        link = f"{current}[LDAP://{gpo_dn};0]"
        self._call(ou, self.connection.modify, self._dn(ou), {"gPLink": [(MODIFY_REPLACE, [link])]})
        return AdapterResult.success()

    def _delegate(self, principal: str, target: str, rights: list) -> AdapterResult:
        if not rights:
            raise PermanentDirectoryError("delegation without rights", target)

        sid = self._object_sid(principal)
        controls = security_descriptor_control(sdflags=0x04)
        entry = self._read(target, ["nTSecurityDescriptor"], controls=controls)
        raw = entry["raw_attributes"].get("nTSecurityDescriptor") if entry else None
        if not raw:
            raise PermanentDirectoryError("cannot read security descriptor", target)

        descriptor = ldaptypes.SR_SECURITY_DESCRIPTOR(data=raw[0])
        missing = [
            right for right in rights
            if not any(ace_matches(ace, sid, right) for ace in descriptor["Dacl"].aces)
        ]
        if not missing:
            return AdapterResult.already_exists()

        for right in missing:
            descriptor["Dacl"].aces.append(build_ace(sid, right))
        self._call(
            target, self.connection.modify, self._dn(target),
            {"nTSecurityDescriptor": [(MODIFY_REPLACE, [descriptor.getData()])]},
            controls=controls,
        )
        return AdapterResult.success()
