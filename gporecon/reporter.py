from __future__ import annotations

import csv
import json
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from colorama import Fore, Style, init

from .models import (
    HIGH,
    LOW,
    MEDIUM,
    AuditContext,
    Finding,
    GroupPolicyObject,
    LinkOrderEntry,
    SkippedObject,
)

init(autoreset=True)

URGENCY_COLORS = {HIGH: Fore.RED, MEDIUM: Fore.YELLOW, LOW: Fore.GREEN}

FINDING_COLUMNS = ["Urgency", "Problem", "PolicyName", "Recommendation"]
LINK_ORDER_COLUMNS = ["OU", "OUDistinguishedName", "Order", "GPO", "GPOGuid", "Linked", "Enforced", "Status"]
STATUS_COLUMNS = [
    "Name",
    "Guid",
    "Status",
    "ComputerVersion",
    "UserVersion",
    "Links",
    "Owner",
    "Modified",
    "WmiFilter",
]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _flag(value: Optional[bool]) -> str:
    if value is None:
        return "Unknown"
    return "Yes" if value else "No"


def print_banner(title: str) -> None:
    print(f"\n{Fore.CYAN}{'='*60}")
    print(f"{Fore.CYAN} {title}")
    print(f"{Fore.CYAN}{'='*60}")


class Reporter:
    def __init__(self, findings: Iterable[Finding], *, skipped: Iterable[SkippedObject] = ()):
        self.findings = list(findings)
        self.skipped = list(skipped)

    def urgency_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {HIGH: 0, MEDIUM: 0, LOW: 0}
        for finding in self.findings:
            counts[finding.urgency] = counts.get(finding.urgency, 0) + 1
        return counts

    def print_findings(self) -> None:
        if not self.findings:
            print(f"{Fore.GREEN}[+] No findings.")
            return

        current: Optional[str] = None
        for finding in self.findings:
            if finding.policy_name != current:
                current = finding.policy_name
                print(f"\n{Style.BRIGHT}{current}")
            color = URGENCY_COLORS.get(finding.urgency, "")
            print(f"{color}  [{finding.urgency}] {finding.problem}")
            print(f"         Action: {finding.recommendation}")

    def print_summary(self) -> None:
        counts = self.urgency_counts()
        print(f"\n{Style.BRIGHT}[Summary] Findings by urgency:")
        print(f"  {Fore.RED}HIGH{Style.RESET_ALL}:    {counts.get(HIGH, 0)}")
        print(f"  {Fore.YELLOW}MEDIUM{Style.RESET_ALL}:  {counts.get(MEDIUM, 0)}")
        print(f"  {Fore.GREEN}LOW{Style.RESET_ALL}:     {counts.get(LOW, 0)}")
        print(f"  Total:   {sum(counts.values())}")
        if self.skipped:
            print(f"  {Fore.YELLOW}Skipped policies: {len(self.skipped)}")

    def export_csv(self, output_path: Path) -> None:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with output_path.open("w", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=FINDING_COLUMNS)
            writer.writeheader()
            for finding in self.findings:
                writer.writerow({
                    "Urgency": finding.urgency,
                    "Problem": finding.problem,
                    "PolicyName": finding.policy_name,
                    "Recommendation": finding.recommendation,
                })

    def export_json(self, output_path: Path, context: Optional[AuditContext] = None) -> None:
        counts = self.urgency_counts()
        payload = {
            "generated_at": _utc_now_iso(),
            "tool": "gporecon",
            "domain": asdict(context) if context is not None else None,
            "summary": {
                "counts": counts,
                "total_findings": sum(counts.values()),
                "skipped": [asdict(s) for s in self.skipped],
            },
            "findings": [asdict(f) for f in self.findings],
        }
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def compare_with_baseline(self, baseline_json_path: Path) -> tuple[int, int]:
        baseline = json.loads(baseline_json_path.read_text(encoding="utf-8"))

        old_set: set[str] = set()
        for f in baseline.get("findings", []):
            old_set.add(
                Finding(
                    urgency=f.get("urgency", ""),
                    problem=f.get("problem", ""),
                    policy_name=f.get("policy_name", ""),
                    recommendation=f.get("recommendation", ""),
                    check=f.get("check", ""),
                    target=f.get("target"),
                ).fingerprint()
            )

        new_set = {finding.fingerprint() for finding in self.findings}
        added = len(new_set - old_set)
        resolved = len(old_set - new_set)
        return added, resolved


def link_order_rows(entries: Iterable[LinkOrderEntry]) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for entry in entries:
        rows.append({
            "OU": entry.ou_name,
            "OUDistinguishedName": entry.ou_dn,
            "Order": str(entry.order),
            "GPO": entry.gpo_name or "(unknown policy)",
            "GPOGuid": entry.gpo_guid or "",
            "Linked": _flag(entry.linked),
            "Enforced": _flag(entry.enforced),
            "Status": "malformed" if entry.malformed else entry.status_code,
        })
    return rows


def print_link_order(entries: Iterable[LinkOrderEntry]) -> None:
    current: Optional[str] = None
    for entry in entries:
        if entry.ou_dn != current:
            current = entry.ou_dn
            print(f"\n{Style.BRIGHT}{entry.ou_name}{Style.RESET_ALL} ({entry.ou_dn})")
        if not entry.status_known:
            color = Fore.RED
        elif not entry.linked:
            color = Fore.YELLOW
        else:
            color = Fore.GREEN
        enforced = " [Enforced]" if entry.enforced else ""
        state = "Linked" if entry.linked else ("Unlinked" if entry.linked is not None else f"Unknown status {entry.status_code!r}")
        print(f"{color}  {entry.order:>3}  {entry.gpo_name or entry.gpo_dn}  {state}{enforced}")


def export_link_order_csv(entries: Iterable[LinkOrderEntry], output_path: Path) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=LINK_ORDER_COLUMNS)
        writer.writeheader()
        writer.writerows(link_order_rows(entries))


def status_rows(policies: Iterable[GroupPolicyObject]) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for gpo in policies:
        rows.append({
            "Name": gpo.name,
            "Guid": gpo.guid,
            "Status": gpo.status,
            "ComputerVersion": f"{gpo.computer.ad_version}/{gpo.computer.sysvol_version}",
            "UserVersion": f"{gpo.user.ad_version}/{gpo.user.sysvol_version}",
            "Links": str(len(gpo.links)),
            "Owner": (gpo.owner.name or gpo.owner.sid) if gpo.owner else "",
            "Modified": gpo.modified or "",
            "WmiFilter": gpo.wmi_filter or "",
        })
    return rows


def print_status(policies: Iterable[GroupPolicyObject]) -> None:
    for row in status_rows(policies):
        color = Fore.GREEN if row["Status"] == "AllSettingsEnabled" else Fore.YELLOW
        print(
            f"{color}{row['Status']:<26}{Style.RESET_ALL} {row['Name']}  "
            f"computer {row['ComputerVersion']}  user {row['UserVersion']}  links {row['Links']}"
        )


def export_status_csv(policies: Iterable[GroupPolicyObject], output_path: Path) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=STATUS_COLUMNS)
        writer.writeheader()
        writer.writerows(status_rows(policies))
