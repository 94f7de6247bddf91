"""Per-policy facts and directory-wide checks.

Every predicate is a pure function of its arguments. Nothing here touches the
directory, so policies can be evaluated in any order or in parallel.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .directory import AUTHENTICATED_USERS_SID
from .models import (
    RIGHT_APPLY,
    RIGHT_EDIT,
    RIGHT_EDIT_DELETE_MODIFY,
    RIGHT_READ,
    SECTIONS,
    AuditContext,
    GroupPolicyObject,
    LinkOrderEntry,
    OrganizationalUnit,
    PolicyRef,
)

READ_RIGHTS = frozenset({RIGHT_APPLY, RIGHT_READ})
EDIT_RIGHTS = frozenset({RIGHT_EDIT, RIGHT_EDIT_DELETE_MODIFY})
USER_CLASS = "user"


@dataclass(frozen=True)
class GpoFacts:
    gpo: GroupPolicyObject
    version_inconsistent: dict[str, bool] = field(default_factory=dict)
    has_content: dict[str, bool] = field(default_factory=dict)
    section_enabled_mismatch: dict[str, bool] = field(default_factory=dict)
    missing_baseline_permission: bool = False
    owner_is_user_account: bool = False
    has_unknown_sid: bool = False
    grants_edit_to_user: bool = False
    empty_security_filtering: bool = False
    unlinked: bool = False
    link_disabled: bool = False


def version_inconsistent(gpo: GroupPolicyObject, section: str) -> bool:
    state = gpo.section(section)
    return state.ad_version != state.sysvol_version


def has_content(gpo: GroupPolicyObject, section: str) -> bool:
    return gpo.section(section).has_content


def section_enabled_mismatch(gpo: GroupPolicyObject, section: str) -> bool:
    state = gpo.section(section)
    return state.has_content != state.enabled


def holds_read_or_apply(gpo: GroupPolicyObject, sid: str) -> bool:
    grants = [p for p in gpo.permissions if p.trustee_sid == sid and p.right in READ_RIGHTS]
    if any(p.denied for p in grants):
        return False
    return any(not p.denied for p in grants)


def missing_baseline_permission(gpo: GroupPolicyObject, context: AuditContext) -> bool:
    if holds_read_or_apply(gpo, AUTHENTICATED_USERS_SID):
        return False
    return not holds_read_or_apply(gpo, context.domain_computers_sid)


def owner_is_user_account(gpo: GroupPolicyObject) -> bool:
    if gpo.owner is None or gpo.owner.object_class is None:
        return False
    return gpo.owner.object_class.lower() == USER_CLASS


def has_unknown_sid(gpo: GroupPolicyObject) -> bool:
    return any(not p.resolved for p in gpo.permissions)


def grants_edit_to_user(gpo: GroupPolicyObject) -> bool:
    return any(
        not p.denied
        and p.right in EDIT_RIGHTS
        and (p.trustee_class or "").lower() == USER_CLASS
        for p in gpo.permissions
    )


def empty_security_filtering(gpo: GroupPolicyObject) -> bool:
    return not any(p.right == RIGHT_APPLY and not p.denied for p in gpo.permissions)


def unlinked(gpo: GroupPolicyObject) -> bool:
    return not gpo.links


def link_disabled(gpo: GroupPolicyObject) -> bool:
    return bool(gpo.links) and all(not link.enabled for link in gpo.links)


def evaluate(gpo: GroupPolicyObject, context: AuditContext) -> GpoFacts:
    return GpoFacts(
        gpo=gpo,
        version_inconsistent={s: version_inconsistent(gpo, s) for s in SECTIONS},
        has_content={s: has_content(gpo, s) for s in SECTIONS},
        section_enabled_mismatch={s: section_enabled_mismatch(gpo, s) for s in SECTIONS},
        missing_baseline_permission=missing_baseline_permission(gpo, context),
        owner_is_user_account=owner_is_user_account(gpo),
        has_unknown_sid=has_unknown_sid(gpo),
        grants_edit_to_user=grants_edit_to_user(gpo),
        empty_security_filtering=empty_security_filtering(gpo),
        unlinked=unlinked(gpo),
        link_disabled=link_disabled(gpo),
    )


def evaluate_all(
    policies: Iterable[GroupPolicyObject],
    context: AuditContext,
    workers: int = 1,
) -> list[GpoFacts]:
    policies = list(policies)
    if workers <= 1 or len(policies) <= 1:
        return [evaluate(gpo, context) for gpo in policies]
    with ThreadPoolExecutor(max_workers=workers) as executor:
        return list(executor.map(lambda gpo: evaluate(gpo, context), policies))


def orphaned_folders(folders: Optional[Iterable[str]], known_policies: Iterable[PolicyRef]) -> list[str]:
    """GUID folders in SYSVOL with no matching policy object in the directory."""
    if folders is None:
        return []
    known = {ref.guid for ref in known_policies}
    return sorted(guid for guid in folders if guid not in known)


def unpopulated_links(
    units: Iterable[OrganizationalUnit],
    link_order: Iterable[LinkOrderEntry],
) -> list[LinkOrderEntry]:
    empty = {ou.dn for ou in units if ou.object_count == 0}
    return [entry for entry in link_order if entry.ou_dn in empty and entry.linked]


def broken_links(link_order: Iterable[LinkOrderEntry], known_policies: Iterable[PolicyRef]) -> list[LinkOrderEntry]:
    known = {ref.guid for ref in known_policies}
    return [
        entry for entry in link_order
        if not entry.malformed and (entry.gpo_guid is None or entry.gpo_guid not in known)
    ]


def unknown_link_status(link_order: Iterable[LinkOrderEntry]) -> list[LinkOrderEntry]:
    return [entry for entry in link_order if not entry.status_known]
