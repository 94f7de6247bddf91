from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from xml.etree import ElementTree as ET

from .errors import ReportParseError
from .linklist import normalize_guid
from .models import RIGHT_CUSTOM, GpoLink, SectionState


@dataclass(frozen=True)
class ReportPermission:
    sid: str
    name: Optional[str]
    right: str
    denied: bool


@dataclass(frozen=True)
class ParsedReport:
    guid: str
    name: str
    computer: SectionState
    user: SectionState
    owner_sid: Optional[str] = None
    owner_name: Optional[str] = None
    permissions: tuple[ReportPermission, ...] = ()
    links: tuple[GpoLink, ...] = ()
    domain: Optional[str] = None
    created: Optional[str] = None
    modified: Optional[str] = None
    wmi_filter: Optional[str] = None


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1] if "}" in tag else tag


def _safe_str(v: Optional[str]) -> Optional[str]:
    if v is None:
        return None
    s = " ".join(v.split())
    return s or None


def _children(elem: ET.Element, localname: str) -> list[ET.Element]:
    want = localname.lower()
    return [child for child in list(elem) if _local_name(child.tag).lower() == want]


def _child(elem: Optional[ET.Element], localname: str) -> Optional[ET.Element]:
    if elem is None:
        return None
    found = _children(elem, localname)
    return found[0] if found else None


def _child_text(elem: Optional[ET.Element], localname: str) -> Optional[str]:
    child = _child(elem, localname)
    return _safe_str(child.text) if child is not None else None


def _parse_bool(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"true", "1", "yes"}


def _parse_version(section: ET.Element, localname: str, identity: str) -> int:
    raw = _child_text(section, localname)
    if raw is None:
        raise ReportParseError(identity, f"{_local_name(section.tag)}/{localname} is missing")
    try:
        return int(raw)
    except ValueError:
        raise ReportParseError(identity, f"{_local_name(section.tag)}/{localname} is not a number: {raw!r}") from None


def _has_extension_data(section: ET.Element) -> bool:
    for ext in _children(section, "ExtensionData"):
        if len(ext) or _safe_str(ext.text):
            return True
    return False


def _parse_section(root: ET.Element, localname: str, identity: str) -> SectionState:
    section = _child(root, localname)
    if section is None:
        raise ReportParseError(identity, f"{localname} section is missing")
    return SectionState(
        enabled=_parse_bool(_child_text(section, "Enabled"), default=True),
        has_content=_has_extension_data(section),
        ad_version=_parse_version(section, "VersionDirectory", identity),
        sysvol_version=_parse_version(section, "VersionSysvol", identity),
    )


def _parse_permissions(descriptor: Optional[ET.Element]) -> list[ReportPermission]:
    permissions: list[ReportPermission] = []
    container = _child(descriptor, "Permissions")
    if container is None:
        return permissions

    for tp in _children(container, "TrusteePermissions"):
        trustee = _child(tp, "Trustee")
        sid = _child_text(trustee, "SID")
        if not sid:
            continue

        permission_type = _child(tp, "Type")
        kind = _child_text(permission_type, "PermissionType") or _safe_str(
            permission_type.text if permission_type is not None else None
        )
        right = _child_text(_child(tp, "Standard"), "GPOGroupedAccessEnum") or RIGHT_CUSTOM

        permissions.append(
            ReportPermission(
                sid=sid,
                name=_child_text(trustee, "Name"),
                right=right,
                denied=(kind or "").lower() == "deny",
            )
        )
    return permissions


def _parse_links(root: ET.Element) -> list[GpoLink]:
    links: list[GpoLink] = []
    for link in _children(root, "LinksTo"):
        target = _child_text(link, "SOMPath")
        if not target:
            continue
        links.append(
            GpoLink(
                target=target,
                target_name=_child_text(link, "SOMName"),
                enabled=_parse_bool(_child_text(link, "Enabled"), default=True),
                enforced=_parse_bool(_child_text(link, "NoOverride"), default=False),
            )
        )
    return links


def report_guid(root: ET.Element) -> Optional[str]:
    raw_guid = _child_text(_child(root, "Identifier"), "Identifier") or _child_text(root, "Identifier")
    return normalize_guid(raw_guid) if raw_guid else None


def parse_gpo_report(root: ET.Element, source: str = "<report>") -> ParsedReport:
    """Convert one ``<GPO>`` element of a ``Get-GPOReport -ReportType Xml`` export.

    Element lookups go by local name only, so the GPMC namespaces do not need
    to be declared. No directory lookups happen here; trustee classes are
    filled in by the collector.
    """
    guid = report_guid(root)
    if guid is None:
        raise ReportParseError(source, "report has no GPO identifier")

    identifier = _child(root, "Identifier")
    name = _child_text(root, "Name") or guid
    descriptor = _child(root, "SecurityDescriptor")
    owner = _child(descriptor, "Owner")
    permissions = _parse_permissions(descriptor)

    return ParsedReport(
        guid=guid,
        name=name,
        computer=_parse_section(root, "Computer", name),
        user=_parse_section(root, "User", name),
        owner_sid=_child_text(owner, "SID"),
        owner_name=_child_text(owner, "Name"),
        permissions=tuple(permissions),
        links=tuple(_parse_links(root)),
        domain=_child_text(identifier, "Domain"),
        created=_child_text(root, "CreatedTime"),
        modified=_child_text(root, "ModifiedTime"),
        wmi_filter=_child_text(root, "FilterName"),
    )


def gpo_elements(root: ET.Element, source: str = "<report>") -> list[ET.Element]:
    """``<GPO>`` elements of a single-policy report or a ``-All`` report."""
    lname = _local_name(root.tag).lower()
    if lname == "gpo":
        return [root]
    if lname == "report":
        return _children(root, "GPO")
    raise ReportParseError(source, f"unexpected root element <{_local_name(root.tag)}>")


def parse_report_root(root: ET.Element, source: str = "<report>") -> list[ParsedReport]:
    return [parse_gpo_report(gpo, source) for gpo in gpo_elements(root, source)]


def read_report_root(file_path: str | Path) -> ET.Element:
    file_path = Path(file_path)
    try:
        tree = ET.parse(str(file_path))
    except ET.ParseError as exc:
        raise ReportParseError(str(file_path), f"invalid XML: {exc}") from exc
    except OSError as exc:
        raise ReportParseError(str(file_path), f"cannot read report: {exc}") from exc
    return tree.getroot()


def load_report_file(file_path: str | Path) -> list[ParsedReport]:
    return parse_report_root(read_report_root(file_path), str(file_path))
