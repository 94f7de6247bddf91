from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

from .evaluator import (
    EDIT_RIGHTS,
    USER_CLASS,
    GpoFacts,
    broken_links,
    evaluate_all,
    orphaned_folders,
    unknown_link_status,
    unpopulated_links,
)
from .models import HIGH, LOW, MEDIUM, SECTIONS, URGENCY_RANK, Finding, Snapshot


@dataclass(frozen=True)
class Rule:
    urgency: str
    problem: str
    recommendation: str


RULES: dict[str, Rule] = {
    "grants_edit_to_user": Rule(
        urgency=HIGH,
        problem="Edit rights are granted to a user account ({trustees}).",
        recommendation="Delegate editing to a group instead of individual user accounts.",
    ),
    "version_inconsistent": Rule(
        urgency=HIGH,
        problem="{section} version differs between AD ({ad_version}) and SYSVOL ({sysvol_version}).",
        recommendation="Check SYSVOL replication, then re-save the policy so both versions match.",
    ),
    "missing_baseline_permission": Rule(
        urgency=HIGH,
        problem="Neither Authenticated Users nor Domain Computers can read this policy.",
        recommendation="Grant Read to Authenticated Users or Domain Computers so the policy can be processed.",
    ),
    "content_disabled": Rule(
        urgency=MEDIUM,
        problem="{section} section has content but is disabled.",
        recommendation="Enable the {section} section or remove its unused settings.",
    ),
    "enabled_empty": Rule(
        urgency=LOW,
        problem="{section} section is enabled but has no content.",
        recommendation="Disable the {section} section to skip it during policy processing.",
    ),
    "owner_is_user": Rule(
        urgency=MEDIUM,
        problem="Policy is owned by a user account ({owner}).",
        recommendation="Change the owner to Domain Admins.",
    ),
    "unknown_sid": Rule(
        urgency=MEDIUM,
        problem="Permissions reference SIDs that do not resolve ({sids}).",
        recommendation="Remove permission entries left behind by deleted accounts.",
    ),
    "empty_security_filtering": Rule(
        urgency=MEDIUM,
        problem="No trustee is granted Apply Group Policy; the policy applies to nobody.",
        recommendation="Add the intended groups to security filtering or delete the policy.",
    ),
    "unlinked": Rule(
        urgency=LOW,
        problem="Policy is not linked to any site, domain or OU.",
        recommendation="Link the policy where it is needed, or back it up and delete it.",
    ),
    "link_disabled": Rule(
        urgency=LOW,
        problem="Every link to this policy is disabled.",
        recommendation="Enable a link if the policy is still needed, or back it up and delete it.",
    ),
    "orphaned": Rule(
        urgency=MEDIUM,
        problem="Policy folder exists in SYSVOL without a matching directory object.",
        recommendation="Back up and remove the orphaned SYSVOL folder.",
    ),
    "broken_link": Rule(
        urgency=MEDIUM,
        problem="{ou} links to a policy that does not exist ({gpo_dn}).",
        recommendation="Remove the stale link from the container.",
    ),
    "unknown_link_status": Rule(
        urgency=MEDIUM,
        problem="Link on {ou} has an unrecognised status {status!r}.",
        recommendation="Inspect the gPLink attribute of the container and relink the policy.",
    ),
    "unpopulated_link": Rule(
        urgency=LOW,
        problem="Policy is linked to {ou}, which contains no users or computers.",
        recommendation="Remove the link or move the intended objects into the container.",
    ),
}


def make_finding(check: str, policy_name: str, target: Optional[str] = None, **params: object) -> Finding:
    rule = RULES[check]
    return Finding(
        urgency=rule.urgency,
        problem=rule.problem.format(**params),
        policy_name=policy_name,
        recommendation=rule.recommendation.format(**params),
        check=check,
        target=target,
    )


def _true_facts(facts: GpoFacts) -> Iterator[tuple[str, Optional[str], dict[str, object]]]:
    gpo = facts.gpo

    if facts.grants_edit_to_user:
        trustees = sorted({
            p.trustee_name or p.trustee_sid
            for p in gpo.permissions
            if not p.denied and p.right in EDIT_RIGHTS and (p.trustee_class or "").lower() == USER_CLASS
        })
        yield "grants_edit_to_user", None, {"trustees": ", ".join(trustees)}

    for section in SECTIONS:
        if facts.version_inconsistent.get(section):
            state = gpo.section(section)
            yield "version_inconsistent", section, {
                "section": section,
                "ad_version": state.ad_version,
                "sysvol_version": state.sysvol_version,
            }

    if facts.missing_baseline_permission:
        yield "missing_baseline_permission", None, {}

    for section in SECTIONS:
        if not facts.section_enabled_mismatch.get(section):
            continue
        check = "content_disabled" if facts.has_content.get(section) else "enabled_empty"
        yield check, section, {"section": section}

    if facts.owner_is_user_account and gpo.owner is not None:
        yield "owner_is_user", None, {"owner": gpo.owner.name or gpo.owner.sid}

    if facts.has_unknown_sid:
        sids = sorted({p.trustee_sid for p in gpo.permissions if not p.resolved})
        yield "unknown_sid", None, {"sids": ", ".join(sids)}

    if facts.empty_security_filtering:
        yield "empty_security_filtering", None, {}

    if facts.unlinked:
        yield "unlinked", None, {}
    elif facts.link_disabled:
        yield "link_disabled", None, {}


def classify(facts: GpoFacts) -> list[Finding]:
    """One finding per true fact; a policy with several problems fans out."""
    return [
        make_finding(check, facts.gpo.name, target, **params)
        for check, target, params in _true_facts(facts)
    ]


def classify_snapshot(snapshot: Snapshot, workers: int = 1) -> list[Finding]:
    findings: list[Finding] = []
    for facts in evaluate_all(snapshot.policies, snapshot.context, workers=workers):
        findings.extend(classify(facts))

    for guid in orphaned_folders(snapshot.policy_folders, snapshot.known_policies):
        findings.append(make_finding("orphaned", guid, target=guid))

    for entry in broken_links(snapshot.link_order, snapshot.known_policies):
        findings.append(
            make_finding(
                "broken_link",
                entry.gpo_guid or entry.gpo_dn,
                target=entry.ou_dn,
                ou=entry.ou_name,
                gpo_dn=entry.gpo_dn,
            )
        )

    for entry in unknown_link_status(snapshot.link_order):
        findings.append(
            make_finding(
                "unknown_link_status",
                entry.gpo_name or entry.gpo_guid or entry.gpo_dn or "(unparseable)",
                target=entry.ou_dn,
                ou=entry.ou_name,
                status=entry.status_code,
            )
        )

    for entry in unpopulated_links(snapshot.organizational_units, snapshot.link_order):
        findings.append(
            make_finding(
                "unpopulated_link",
                entry.gpo_name or entry.gpo_guid or entry.gpo_dn,
                target=entry.ou_dn,
                ou=entry.ou_name,
            )
        )

    return findings


def at_least(findings: Iterable[Finding], minimum: str) -> list[Finding]:
    floor = URGENCY_RANK[minimum]
    return [f for f in findings if URGENCY_RANK[f.urgency] >= floor]
