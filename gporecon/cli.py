from __future__ import annotations

import argparse
import getpass
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from colorama import Fore, Style

from .classifier import at_least, classify_snapshot
from .collector import DEFAULT_WORKERS, Collector
from .directory import DirectoryService, LdapDirectory, ReportStore, SnapshotDirectory
from .errors import DirectoryUnavailable, ReportParseError
from .log import setup_logging
from .models import LOW, URGENCY_RANK, Snapshot
from .reporter import (
    Reporter,
    export_link_order_csv,
    export_status_csv,
    print_banner,
    print_link_order,
    print_status,
)

logger = logging.getLogger(__name__)


class InputError(Exception):
    pass


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a number: {value!r}") from None
    if number < 1:
        raise argparse.ArgumentTypeError("must be at least 1")
    return number


def _source_options() -> argparse.ArgumentParser:
    env = os.environ.get
    source = argparse.ArgumentParser(add_help=False)
    group = source.add_argument_group("directory source")
    group.add_argument("--snapshot", default=env("GPORECON_SNAPSHOT"), help="Offline directory snapshot (JSON)")
    group.add_argument("--server", default=env("GPORECON_SERVER"), help="Domain controller to query over LDAP")
    group.add_argument("--user", default=env("GPORECON_USER"), help="Bind user (DOMAIN\\user for NTLM, or a DN/UPN)")
    group.add_argument("--password", default=env("GPORECON_PASSWORD"), help="Bind password (prompted when omitted)")
    group.add_argument("--base-dn", default=env("GPORECON_BASE_DN"), help="Domain naming context, e.g. DC=contoso,DC=com")
    group.add_argument("--ldaps", action="store_true", help="Use LDAPS")

    inputs = source.add_argument_group("inputs")
    inputs.add_argument("--reports", default=env("GPORECON_REPORTS"), help="Directory of Get-GPOReport XML files, or one -All report")
    inputs.add_argument("--sysvol", default=env("GPORECON_SYSVOL"), help="SYSVOL Policies folder, enables orphan detection")
    inputs.add_argument(
        "--workers",
        type=_positive_int,
        default=env("GPORECON_WORKERS", str(DEFAULT_WORKERS)),
        help="Concurrent report fetches (default: %(default)s)",
    )
    source.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return source


def build_parser() -> argparse.ArgumentParser:
    source = _source_options()
    parser = argparse.ArgumentParser(
        prog="gporecon",
        description=(
            "Group Policy reconciliation auditor\n\n"
            "Cross-checks GPO objects, their XML reports, permissions, links and SYSVOL "
            "folders, and reports problems with an urgency and a recommendation."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  gporecon audit --snapshot domain.json --reports reports/ --sysvol policies/\n"
            "  gporecon audit --server dc01 --user 'CONTOSO\\auditor' --base-dn DC=contoso,DC=com \\\n"
            "      --reports reports/ --csv-out findings.csv\n"
            "  gporecon link-order --snapshot domain.json --ou Workstations\n"
            "  gporecon status --snapshot domain.json --reports reports/\n"
        ),
    )
    sub = parser.add_subparsers(dest="command")

    audit = sub.add_parser("audit", parents=[source], help="Evaluate every policy and report findings")
    audit.add_argument("--min-urgency", choices=list(URGENCY_RANK), default=LOW, help="Hide findings below this urgency")
    audit.add_argument("--csv-out", help="Write findings to CSV")
    audit.add_argument("--json-out", help="Write findings to JSON")
    audit.add_argument("--baseline", help="Baseline JSON to compare (drift)")
    audit.set_defaults(handler=run_audit, needs_reports=True)

    link_order = sub.add_parser("link-order", parents=[source], help="Show GPO link order per container")
    link_order.add_argument("--ou", help="Only containers whose name or DN contains this text")
    link_order.add_argument("--csv-out", help="Write link order to CSV")
    link_order.set_defaults(handler=run_link_order, needs_reports=False)

    status = sub.add_parser("status", parents=[source], help="Show per-policy status and versions")
    status.add_argument("--csv-out", help="Write status rows to CSV")
    status.set_defaults(handler=run_status, needs_reports=True)

    return parser


def open_directory(args: argparse.Namespace) -> DirectoryService:
    if args.snapshot:
        return SnapshotDirectory(args.snapshot)
    if args.server and args.base_dn:
        password = args.password
        if args.user and password is None:
            password = getpass.getpass(f"Password for {args.user}: ")
        return LdapDirectory(
            args.server,
            args.base_dn,
            user=args.user,
            password=password,
            use_ssl=args.ldaps,
        )
    raise InputError("either --snapshot or both --server and --base-dn are required")


def open_reports(args: argparse.Namespace) -> Optional[ReportStore]:
    if not args.needs_reports:
        return None
    if not args.reports:
        raise InputError("--reports is required for this command")
    try:
        return ReportStore(args.reports)
    except ReportParseError as exc:
        raise InputError(str(exc)) from exc


def _collect(args: argparse.Namespace, directory: DirectoryService, reports: Optional[ReportStore]) -> Snapshot:
    collector = Collector(directory, reports, sysvol=args.sysvol, workers=args.workers)
    return collector.collect(include_policies=reports is not None)


def run_audit(args: argparse.Namespace, directory: DirectoryService, reports: Optional[ReportStore]) -> int:
    snapshot = _collect(args, directory, reports)
    findings = at_least(classify_snapshot(snapshot, workers=args.workers), args.min_urgency)
    reporter = Reporter(findings, skipped=snapshot.skipped)

    print_banner(f"GPO AUDIT: {Fore.WHITE}{Style.BRIGHT}{snapshot.context.dns_name or snapshot.context.netbios_name}")
    reporter.print_findings()
    reporter.print_summary()

    if args.baseline:
        try:
            added, resolved = reporter.compare_with_baseline(Path(args.baseline))
            print(f"\n{Style.BRIGHT}[Drift] Baseline comparison:")
            print(f"  New findings:      {added}")
            print(f"  Resolved findings: {resolved}")
        except (OSError, ValueError) as exc:
            logger.error("Baseline compare error: %s", exc)

    if args.json_out:
        try:
            reporter.export_json(Path(args.json_out), snapshot.context)
            print(f"{Fore.GREEN}[+] Wrote JSON: {args.json_out}")
        except OSError as exc:
            logger.error("JSON export error: %s", exc)

    if args.csv_out:
        try:
            reporter.export_csv(Path(args.csv_out))
            print(f"{Fore.GREEN}[+] Wrote CSV: {args.csv_out}")
        except OSError as exc:
            logger.error("CSV export error: %s", exc)

    return 0


def run_link_order(args: argparse.Namespace, directory: DirectoryService, reports: Optional[ReportStore]) -> int:
    snapshot = _collect(args, directory, reports)
    entries = list(snapshot.link_order)
    if args.ou:
        needle = args.ou.lower()
        entries = [e for e in entries if needle in e.ou_name.lower() or needle in e.ou_dn.lower()]

    print_banner("GPO LINK ORDER")
    if not entries:
        print(f"{Fore.GREEN}[+] No linked containers found.")
    print_link_order(entries)

    if args.csv_out:
        try:
            export_link_order_csv(entries, Path(args.csv_out))
            print(f"{Fore.GREEN}[+] Wrote CSV: {args.csv_out}")
        except OSError as exc:
            logger.error("CSV export error: %s", exc)
    return 0


def run_status(args: argparse.Namespace, directory: DirectoryService, reports: Optional[ReportStore]) -> int:
    snapshot = _collect(args, directory, reports)
    print_banner("GPO STATUS")
    print_status(snapshot.policies)
    if snapshot.skipped:
        print(f"{Fore.YELLOW}[!] Skipped policies: {len(snapshot.skipped)}")

    if args.csv_out:
        try:
            export_status_csv(snapshot.policies, Path(args.csv_out))
            print(f"{Fore.GREEN}[+] Wrote CSV: {args.csv_out}")
        except OSError as exc:
            logger.error("CSV export error: %s", exc)
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help(sys.stderr)
        return 2

    setup_logging(args.verbose)

    try:
        reports = open_reports(args)
        directory = open_directory(args)
    except InputError as exc:
        logger.error("Input error: %s", exc)
        return 2
    except DirectoryUnavailable as exc:
        logger.error("Directory unavailable: %s", exc)
        return 1

    try:
        return args.handler(args, directory, reports)
    except DirectoryUnavailable as exc:
        logger.error("Collection failed: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
