from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Optional

LOW = "LOW"
MEDIUM = "MEDIUM"
HIGH = "HIGH"
URGENCY_RANK: dict[str, int] = {LOW: 0, MEDIUM: 1, HIGH: 2}

COMPUTER = "Computer"
USER = "User"
SECTIONS: tuple[str, ...] = (COMPUTER, USER)

RIGHT_APPLY = "Apply Group Policy"
RIGHT_READ = "Read"
RIGHT_EDIT = "Edit settings"
RIGHT_EDIT_DELETE_MODIFY = "Edit, delete, modify security"
RIGHT_CUSTOM = "Custom"


@dataclass(frozen=True)
class AuditContext:
    domain_sid: str
    netbios_name: str
    server: Optional[str] = None
    dns_name: Optional[str] = None

    @property
    def domain_computers_sid(self) -> str:
        return f"{self.domain_sid}-515"


@dataclass(frozen=True)
class Principal:
    sid: str
    name: Optional[str] = None
    object_class: Optional[str] = None


@dataclass(frozen=True)
class Permission:
    trustee_sid: str
    trustee_name: Optional[str]
    right: str
    denied: bool = False
    trustee_class: Optional[str] = None
    resolved: bool = True


@dataclass(frozen=True)
class SectionState:
    enabled: bool
    has_content: bool
    ad_version: int
    sysvol_version: int


@dataclass(frozen=True)
class GpoLink:
    target: str
    target_name: Optional[str] = None
    enabled: bool = True
    enforced: bool = False


@dataclass(frozen=True)
class GroupPolicyObject:
    guid: str
    name: str
    computer: SectionState
    user: SectionState
    owner: Optional[Principal] = None
    permissions: tuple[Permission, ...] = ()
    links: tuple[GpoLink, ...] = ()
    domain: Optional[str] = None
    created: Optional[str] = None
    modified: Optional[str] = None
    wmi_filter: Optional[str] = None

    def section(self, name: str) -> SectionState:
        if name == COMPUTER:
            return self.computer
        if name == USER:
            return self.user
        raise ValueError(f"unknown policy section: {name}")

    @property
    def status(self) -> str:
        if self.computer.enabled and self.user.enabled:
            return "AllSettingsEnabled"
        if self.computer.enabled:
            return "UserSettingsDisabled"
        if self.user.enabled:
            return "ComputerSettingsDisabled"
        return "AllSettingsDisabled"


@dataclass(frozen=True)
class PolicyRef:
    guid: str
    name: str


@dataclass(frozen=True)
class OrganizationalUnit:
    name: str
    dn: str
    gplink: str = ""
    object_count: Optional[int] = None


@dataclass(frozen=True)
class LinkOrderEntry:
    ou_name: str
    ou_dn: str
    gpo_dn: str
    gpo_guid: Optional[str]
    gpo_name: Optional[str]
    linked: Optional[bool]
    enforced: Optional[bool]
    order: int
    status_code: str
    malformed: bool = False

    @property
    def status_known(self) -> bool:
        return self.linked is not None and self.enforced is not None


@dataclass(frozen=True)
class Finding:
    urgency: str
    problem: str
    policy_name: str
    recommendation: str
    check: str
    target: Optional[str] = None

    def fingerprint(self) -> str:
        payload = "|".join([
            self.urgency,
            self.problem,
            self.policy_name,
            self.recommendation,
            self.check,
            self.target or "",
        ])
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class SkippedObject:
    identity: str
    reason: str


@dataclass(frozen=True)
class Snapshot:
    context: AuditContext
    policies: tuple[GroupPolicyObject, ...]
    known_policies: tuple[PolicyRef, ...] = ()
    skipped: tuple[SkippedObject, ...] = ()
    organizational_units: tuple[OrganizationalUnit, ...] = ()
    link_order: tuple[LinkOrderEntry, ...] = ()
    policy_folders: Optional[frozenset[str]] = field(default=None)
