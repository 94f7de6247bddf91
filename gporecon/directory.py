from __future__ import annotations

import json
import logging
import re
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from ldap3 import ALL, BASE, LEVEL, NTLM, SIMPLE, SUBTREE, Connection, Server
from ldap3.core.exceptions import LDAPException
from ldap3.protocol.formatters.formatters import format_sid

from .errors import DirectoryUnavailable, LookupFailed, ReportParseError, ReportUnavailable
from .gpreport import ParsedReport, gpo_elements, parse_gpo_report, read_report_root, report_guid
from .linklist import normalize_guid
from .models import AuditContext, OrganizationalUnit, PolicyRef, Principal

logger = logging.getLogger(__name__)

SID_PATTERN = re.compile(r"S-1-\d+(?:-\d+)+")

WELL_KNOWN_GROUP = "wellKnownGroup"

WELL_KNOWN_PRINCIPALS: dict[str, Principal] = {
    sid: Principal(sid=sid, name=name, object_class=WELL_KNOWN_GROUP)
    for sid, name in (
        ("S-1-1-0", "Everyone"),
        ("S-1-3-0", "CREATOR OWNER"),
        ("S-1-5-9", "NT AUTHORITY\\ENTERPRISE DOMAIN CONTROLLERS"),
        ("S-1-5-11", "NT AUTHORITY\\Authenticated Users"),
        ("S-1-5-18", "NT AUTHORITY\\SYSTEM"),
        ("S-1-5-32-544", "BUILTIN\\Administrators"),
        ("S-1-5-32-545", "BUILTIN\\Users"),
        ("S-1-5-32-548", "BUILTIN\\Account Operators"),
        ("S-1-5-32-549", "BUILTIN\\Server Operators"),
        ("S-1-5-32-551", "BUILTIN\\Backup Operators"),
    )
}

AUTHENTICATED_USERS_SID = "S-1-5-11"

# AD refuses unpaged searches beyond MaxPageSize (1000 by default)
PAGE_SIZE = 500
PAGED_RESULTS_OID = "1.2.840.113556.1.4.319"


class DirectoryService(ABC):
    """Read-only view of the directory the collector depends on."""

    @abstractmethod
    def domain_context(self) -> AuditContext: ...

    @abstractmethod
    def list_policies(self) -> list[PolicyRef]: ...

    @abstractmethod
    def lookup_sid(self, sid: str) -> Optional[Principal]: ...

    @abstractmethod
    def list_organizational_units(self) -> list[OrganizationalUnit]: ...

    def resolve_sid(self, sid: str) -> Optional[Principal]:
        """Return the principal for ``sid``, or None when it does not resolve.

        Well-known SIDs never hit the directory. Raises ``LookupFailed`` when
        the lookup itself could not be performed.
        """
        if sid in WELL_KNOWN_PRINCIPALS:
            return WELL_KNOWN_PRINCIPALS[sid]
        if not SID_PATTERN.fullmatch(sid):
            return None
        return self.lookup_sid(sid)


def _attr_values(entry: Any, name: str) -> list[Any]:
    attributes = entry.entry_attributes_as_dict
    for key, values in attributes.items():
        if key.lower() == name.lower():
            return list(values or [])
    return []


def _attr(entry: Any, name: str) -> Optional[Any]:
    values = _attr_values(entry, name)
    return values[0] if values else None


def _sid_string(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return format_sid(bytes(value))
    return str(value)


def _dns_name_from_dn(dn: str) -> str:
    parts = [p.split("=", 1)[1] for p in dn.split(",") if p.strip().lower().startswith("dc=")]
    return ".".join(p.strip() for p in parts)


class LdapDirectory(DirectoryService):
    def __init__(
        self,
        server: str,
        base_dn: str,
        *,
        user: Optional[str] = None,
        password: Optional[str] = None,
        use_ssl: bool = False,
        connection: Optional[Connection] = None,
    ):
        self.server_address = server
        self.base_dn = base_dn
        self._lock = threading.Lock()
        self._server: Optional[Server] = None

        if connection is not None:
            self._conn = connection
            return

        authentication = NTLM if user and "\\" in user else SIMPLE
        try:
            self._server = Server(server, use_ssl=use_ssl, get_info=ALL)
            self._conn = Connection(
                self._server,
                user=user,
                password=password,
                authentication=authentication,
                auto_bind=True,
            )
        except LDAPException as exc:
            raise DirectoryUnavailable(f"cannot bind to {server}: {exc}") from exc
        logger.debug("Bound to %s as %s", server, user or "(anonymous)")

    def _search(
        self,
        base: str,
        search_filter: str,
        scope: str,
        attributes: list[str],
        *,
        paged: bool = False,
    ) -> list[Any]:
        """Run one search and return every entry, following paged results.

        ``Connection.search`` returns False both for "no entries" and for a
        failed operation; only a non-zero result code is an error and raises
        ``LDAPException``.
        """
        entries: list[Any] = []
        cookie: Optional[bytes] = None
        with self._lock:
            while True:
                paging = {"paged_size": PAGE_SIZE, "paged_cookie": cookie} if paged else {}
                self._conn.search(base, search_filter, scope, attributes=attributes, **paging)
                result = self._conn.result or {}
                if result.get("result", 0) != 0:
                    raise LDAPException(
                        f"search of {base} failed: {result.get('description') or result.get('result')}"
                    )
                entries.extend(self._conn.entries)
                if not paged:
                    return entries
                controls = result.get("controls") or {}
                cookie = controls.get(PAGED_RESULTS_OID, {}).get("value", {}).get("cookie")
                if not cookie:
                    return entries

    def _configuration_dn(self) -> str:
        info = self._server.info if self._server is not None else None
        if info is not None and info.other.get("configurationNamingContext"):
            return info.other["configurationNamingContext"][0]
        return f"CN=Configuration,{self.base_dn}"

    def domain_context(self) -> AuditContext:
        try:
            heads = self._search(self.base_dn, "(objectClass=domainDNS)", BASE, ["objectSid"])
            if not heads:
                raise DirectoryUnavailable(f"domain head {self.base_dn} not found")
            domain_sid = _sid_string(_attr(heads[0], "objectSid"))
            if not domain_sid:
                raise DirectoryUnavailable(f"domain head {self.base_dn} has no objectSid")

            refs = self._search(
                f"CN=Partitions,{self._configuration_dn()}",
                f"(&(objectClass=crossRef)(nCName={self.base_dn}))",
                SUBTREE,
                ["nETBIOSName"],
            )
        except LDAPException as exc:
            raise DirectoryUnavailable(f"cannot read domain context: {exc}") from exc

        dns_name = _dns_name_from_dn(self.base_dn)
        netbios = _attr(refs[0], "nETBIOSName") if refs else None
        return AuditContext(
            domain_sid=domain_sid,
            netbios_name=str(netbios) if netbios else dns_name.split(".")[0].upper(),
            server=self.server_address,
            dns_name=dns_name,
        )

    def list_policies(self) -> list[PolicyRef]:
        try:
            entries = self._search(
                f"CN=Policies,CN=System,{self.base_dn}",
                "(objectClass=groupPolicyContainer)",
                LEVEL,
                ["cn", "displayName"],
                paged=True,
            )
        except LDAPException as exc:
            raise DirectoryUnavailable(f"cannot enumerate policies: {exc}") from exc

        policies: list[PolicyRef] = []
        for entry in entries:
            guid = normalize_guid(str(_attr(entry, "cn") or ""))
            if guid is None:
                logger.warning("Ignoring policy container with unexpected name: %s", entry.entry_dn)
                continue
            name = _attr(entry, "displayName")
            policies.append(PolicyRef(guid=guid, name=str(name) if name else guid))
        return policies

    def lookup_sid(self, sid: str) -> Optional[Principal]:
        try:
            entries = self._search(self.base_dn, f"(objectSid={sid})", SUBTREE, ["objectClass", "sAMAccountName", "name"])
        except LDAPException as exc:
            raise LookupFailed(sid, str(exc)) from exc
        if not entries:
            return None

        entry = entries[0]
        classes = _attr_values(entry, "objectClass")
        account = _attr(entry, "sAMAccountName") or _attr(entry, "name")
        return Principal(
            sid=sid,
            name=str(account) if account else None,
            object_class=str(classes[-1]) if classes else None,
        )

    def _count_objects(self, dn: str) -> Optional[int]:
        try:
            entries = self._search(
                dn,
                "(|(&(objectCategory=person)(objectClass=user))(objectClass=computer))",
                SUBTREE,
                ["distinguishedName"],
                paged=True,
            )
        except LDAPException as exc:
            logger.warning("Cannot count objects under %s: %s", dn, exc)
            return None
        return len(entries)

    def list_organizational_units(self) -> list[OrganizationalUnit]:
        try:
            entries = self._search(
                self.base_dn,
                "(|(objectClass=organizationalUnit)(objectClass=domainDNS))",
                SUBTREE,
                ["name", "gPLink"],
                paged=True,
            )
        except LDAPException as exc:
            raise DirectoryUnavailable(f"cannot enumerate organizational units: {exc}") from exc

        units: list[OrganizationalUnit] = []
        for entry in entries:
            gplink = str(_attr(entry, "gPLink") or "")
            units.append(
                OrganizationalUnit(
                    name=str(_attr(entry, "name") or entry.entry_dn),
                    dn=entry.entry_dn,
                    gplink=gplink,
                    object_count=self._count_objects(entry.entry_dn) if gplink.strip() else None,
                )
            )
        return units


class SnapshotDirectory(DirectoryService):
    """Directory contents exported to a JSON file, for offline audits.

    Layout::

        {
          "domain": {"sid": "S-1-5-21-...", "netbios_name": "CONTOSO",
                     "dns_name": "contoso.com", "server": "dc01"},
          "policies": [{"guid": "{...}", "name": "..."}],
          "principals": [{"sid": "...", "name": "...", "object_class": "user"}],
          "organizational_units": [{"name": "...", "dn": "...",
                                    "gplink": "[LDAP://...;0]", "object_count": 3}]
        }
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        try:
            self._data: dict[str, Any] = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise DirectoryUnavailable(f"cannot load snapshot {self.path}: {exc}") from exc

        try:
            self._principals = {
                p["sid"]: Principal(sid=p["sid"], name=p.get("name"), object_class=p.get("object_class"))
                for p in self._data.get("principals", [])
            }
        except (KeyError, TypeError, AttributeError) as exc:
            raise DirectoryUnavailable(f"snapshot {self.path} has a malformed principal: {exc}") from exc

    def domain_context(self) -> AuditContext:
        domain = self._data.get("domain") or {}
        if not isinstance(domain, dict):
            raise DirectoryUnavailable(f"snapshot {self.path} has a malformed domain entry")
        if not domain.get("sid"):
            raise DirectoryUnavailable(f"snapshot {self.path} has no domain SID")
        dns_name = domain.get("dns_name")
        try:
            netbios = domain.get("netbios_name") or (dns_name.split(".")[0].upper() if dns_name else "")
        except AttributeError as exc:
            raise DirectoryUnavailable(f"snapshot {self.path} has a malformed domain entry: {exc}") from exc
        return AuditContext(
            domain_sid=str(domain["sid"]),
            netbios_name=netbios,
            server=domain.get("server"),
            dns_name=dns_name,
        )

    def list_policies(self) -> list[PolicyRef]:
        if "policies" not in self._data:
            raise DirectoryUnavailable(f"snapshot {self.path} has no policy list")
        policies: list[PolicyRef] = []
        try:
            for item in self._data["policies"]:
                guid = normalize_guid(item.get("guid") or "")
                if guid is None:
                    logger.warning("Ignoring snapshot policy with invalid GUID: %r", item.get("guid"))
                    continue
                policies.append(PolicyRef(guid=guid, name=item.get("name") or guid))
        except (KeyError, TypeError, AttributeError) as exc:
            raise DirectoryUnavailable(f"snapshot {self.path} has a malformed policy: {exc}") from exc
        return policies

    def lookup_sid(self, sid: str) -> Optional[Principal]:
        return self._principals.get(sid)

    def list_organizational_units(self) -> list[OrganizationalUnit]:
        try:
            return [
                OrganizationalUnit(
                    name=item["name"],
                    dn=item["dn"],
                    gplink=item.get("gplink") or "",
                    object_count=item.get("object_count"),
                )
                for item in self._data.get("organizational_units", [])
            ]
        except (KeyError, TypeError, AttributeError) as exc:
            raise DirectoryUnavailable(f"snapshot {self.path} has a malformed organizational unit: {exc}") from exc


class ReportStore:
    """Per-GPO XML reports as written by ``Get-GPOReport -ReportType Xml``.

    ``path`` is either a directory holding one ``<GUID>.xml`` per policy, or a
    single ``Get-GPOReport -All`` file.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._combined: Optional[dict[str, ParsedReport]] = None
        self._broken: dict[str, ReportParseError] = {}
        if self.path.is_file():
            self._load_combined()
        elif not self.path.is_dir():
            raise ReportParseError(str(self.path), "report path does not exist")

    def _load_combined(self) -> None:
        # one unparseable <GPO> only costs that policy, not the whole file
        source = str(self.path)
        self._combined = {}
        for element in gpo_elements(read_report_root(self.path), source):
            guid = report_guid(element)
            if guid is None:
                logger.warning("Ignoring a policy without an identifier in %s", self.path.name)
                continue
            try:
                self._combined[guid] = parse_gpo_report(element, source)
            except ReportParseError as exc:
                self._broken[guid] = exc

    def _find_file(self, guid: str) -> Optional[Path]:
        bare = guid.strip("{}").lower()
        for candidate in self.path.iterdir():
            if candidate.suffix.lower() != ".xml":
                continue
            if candidate.stem.strip("{}").lower() == bare:
                return candidate
        return None

    def fetch(self, guid: str) -> ParsedReport:
        if self._combined is not None:
            if guid in self._broken:
                raise ReportParseError(guid, self._broken[guid].reason)
            report = self._combined.get(guid)
            if report is None:
                raise ReportUnavailable(guid, f"not present in {self.path.name}")
            return report

        file_path = self._find_file(guid)
        if file_path is None:
            raise ReportUnavailable(guid, f"no report file in {self.path}")

        for element in gpo_elements(read_report_root(file_path), str(file_path)):
            if report_guid(element) == guid:
                return parse_gpo_report(element, str(file_path))
        raise ReportParseError(guid, f"{file_path.name} describes a different policy")


def list_policy_folders(path: str | Path) -> frozenset[str]:
    folders: set[str] = set()
    for child in Path(path).iterdir():
        if not child.is_dir():
            continue
        guid = normalize_guid(child.name)
        if guid is not None:
            folders.add(guid)
    return frozenset(folders)
