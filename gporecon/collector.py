from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Optional

from .directory import DirectoryService, ReportStore, list_policy_folders
from .errors import ObjectFetchError
from .gpreport import ParsedReport
from .linklist import build_link_order
from .models import (
    GroupPolicyObject,
    LinkOrderEntry,
    OrganizationalUnit,
    Permission,
    PolicyRef,
    Principal,
    SkippedObject,
    Snapshot,
)

logger = logging.getLogger(__name__)

DEFAULT_WORKERS = 8


class Collector:
    def __init__(
        self,
        directory: DirectoryService,
        reports: Optional[ReportStore],
        *,
        sysvol: Optional[str | Path] = None,
        workers: int = DEFAULT_WORKERS,
    ):
        self.directory = directory
        self.reports = reports
        self.sysvol = Path(sysvol) if sysvol else None
        self.workers = max(1, workers)

    def _resolve(self, sid: str, cache: dict[str, Optional[Principal]]) -> Optional[Principal]:
        if sid not in cache:
            cache[sid] = self.directory.resolve_sid(sid)
        return cache[sid]

    def _build_policy(self, ref: PolicyRef, report: ParsedReport) -> GroupPolicyObject:
        cache: dict[str, Optional[Principal]] = {}

        owner: Optional[Principal] = None
        if report.owner_sid:
            resolved = self._resolve(report.owner_sid, cache)
            owner = resolved or Principal(sid=report.owner_sid, name=report.owner_name)

        permissions: list[Permission] = []
        for perm in report.permissions:
            principal = self._resolve(perm.sid, cache)
            permissions.append(
                Permission(
                    trustee_sid=perm.sid,
                    trustee_name=perm.name or (principal.name if principal else None),
                    right=perm.right,
                    denied=perm.denied,
                    trustee_class=principal.object_class if principal else None,
                    resolved=principal is not None,
                )
            )

        return GroupPolicyObject(
            guid=ref.guid,
            name=ref.name,
            computer=report.computer,
            user=report.user,
            owner=owner,
            permissions=tuple(permissions),
            links=report.links,
            domain=report.domain,
            created=report.created,
            modified=report.modified,
            wmi_filter=report.wmi_filter,
        )

    def collect_policy(self, ref: PolicyRef) -> GroupPolicyObject:
        if self.reports is None:
            raise ObjectFetchError(ref.guid, "no report store configured")
        report = self.reports.fetch(ref.guid)
        return self._build_policy(ref, report)

    def collect_policies(self, refs: list[PolicyRef]) -> tuple[list[GroupPolicyObject], list[SkippedObject]]:
        policies: list[GroupPolicyObject] = []
        skipped: list[SkippedObject] = []
        if not refs:
            return policies, skipped

        with ThreadPoolExecutor(max_workers=min(self.workers, len(refs))) as executor:
            futures = [executor.submit(self.collect_policy, ref) for ref in refs]
            for ref, future in zip(refs, futures):
                try:
                    policies.append(future.result())
                except ObjectFetchError as exc:
                    logger.warning("Skipping policy %s %s: %s", ref.name, ref.guid, exc.reason)
                    skipped.append(SkippedObject(identity=f"{ref.name} {ref.guid}", reason=exc.reason))
        return policies, skipped

    def collect_link_order(self, refs: list[PolicyRef]) -> tuple[list[OrganizationalUnit], list[LinkOrderEntry]]:
        units = self.directory.list_organizational_units()
        names_by_guid = {ref.guid: ref.name for ref in refs}
        entries: list[LinkOrderEntry] = []
        for ou in units:
            ou_entries = build_link_order(ou, names_by_guid)
            for entry in ou_entries:
                if entry.malformed:
                    logger.warning("Malformed gPLink segment on %s: %r", ou.dn, entry.gpo_dn)
                elif not entry.status_known:
                    logger.warning("Unknown link status %r on %s for %s", entry.status_code, ou.dn, entry.gpo_dn)
            entries.extend(ou_entries)
        return units, entries

    def policy_folders(self) -> Optional[frozenset[str]]:
        if self.sysvol is None:
            return None
        try:
            return list_policy_folders(self.sysvol)
        except OSError as exc:
            logger.warning("Cannot list policy folders in %s, orphan detection disabled: %s", self.sysvol, exc)
            return None

    def collect(self, *, include_policies: bool = True) -> Snapshot:
        """Fetch everything one audit run needs.

        The domain context and policy list must be readable; a
        ``DirectoryUnavailable`` from either aborts the run. Individual
        policies whose report or identities cannot be fetched are skipped.
        """
        context = self.directory.domain_context()
        refs = sorted(self.directory.list_policies(), key=lambda r: (r.name.lower(), r.guid))
        logger.info("Found %d policies in %s", len(refs), context.dns_name or context.netbios_name)

        policies: list[GroupPolicyObject] = []
        skipped: list[SkippedObject] = []
        if include_policies:
            policies, skipped = self.collect_policies(refs)

        units, link_order = self.collect_link_order(refs)
        return Snapshot(
            context=context,
            policies=tuple(policies),
            known_policies=tuple(refs),
            skipped=tuple(skipped),
            organizational_units=tuple(units),
            link_order=tuple(link_order),
            policy_folders=self.policy_folders(),
        )
