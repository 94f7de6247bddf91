import csv
import json
from unittest.mock import patch

import pytest

from gporecon import cli
from gporecon.errors import DirectoryUnavailable

from conftest import GUID_A, GUID_B, gplink, gpo_report_xml


@pytest.fixture
def audit_inputs(write_report, snapshot_file):
    write_report(GUID_A, "Workstation Baseline", computer={"enabled": False, "content": True})
    write_report(GUID_B, "Server Baseline", links=[])
    snapshot = snapshot_file(
        [(GUID_A, "Workstation Baseline"), (GUID_B, "Server Baseline")],
        units=[{
            "name": "Workstations",
            "dn": "OU=Workstations,DC=contoso,DC=com",
            "gplink": gplink((GUID_B, 1), (GUID_A, 2)),
            "object_count": 15,
        }],
    )
    return snapshot, write_report.directory


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("SNAPSHOT", "SERVER", "USER", "PASSWORD", "BASE_DN", "REPORTS", "SYSVOL", "WORKERS"):
        monkeypatch.delenv(f"GPORECON_{name}", raising=False)


class TestAudit:
    """The audit command end to end against offline inputs."""

    def test_audit_writes_findings(self, audit_inputs, tmp_path, capsys):
        snapshot, reports = audit_inputs
        out = tmp_path / "findings.csv"

        code = cli.main(["audit", "--snapshot", str(snapshot), "--reports", str(reports), "--csv-out", str(out)])

        assert code == 0
        with out.open(newline="", encoding="utf-8") as f:
            rows = list(csv.DictReader(f))
        assert [(r["Urgency"], r["Problem"], r["PolicyName"]) for r in rows] == [
            ("LOW", "Policy is not linked to any site, domain or OU.", "Server Baseline"),
            ("MEDIUM", "Computer section has content but is disabled.", "Workstation Baseline"),
        ]
        assert "Workstation Baseline" in capsys.readouterr().out

    def test_min_urgency_and_json(self, audit_inputs, tmp_path):
        snapshot, reports = audit_inputs
        out = tmp_path / "findings.json"

        code = cli.main([
            "audit", "--snapshot", str(snapshot), "--reports", str(reports),
            "--min-urgency", "MEDIUM", "--json-out", str(out),
        ])

        assert code == 0
        payload = json.loads(out.read_text(encoding="utf-8"))
        assert [f["check"] for f in payload["findings"]] == ["content_disabled"]

    def test_environment_supplies_sources(self, audit_inputs, monkeypatch):
        snapshot, reports = audit_inputs
        monkeypatch.setenv("GPORECON_SNAPSHOT", str(snapshot))
        monkeypatch.setenv("GPORECON_REPORTS", str(reports))
        assert cli.main(["audit"]) == 0

    def test_missing_report_is_skipped(self, audit_inputs, capsys):
        snapshot, reports = audit_inputs
        (reports / f"{GUID_B}.xml").unlink()

        assert cli.main(["audit", "--snapshot", str(snapshot), "--reports", str(reports)]) == 0
        assert "Skipped policies: 1" in capsys.readouterr().out

    def test_broken_policy_in_combined_report_is_skipped(self, snapshot_file, tmp_path, capsys):
        broken = gpo_report_xml(GUID_B, "Bad").replace("<VersionSysvol>1</VersionSysvol>", "", 1)
        combined = tmp_path / "all.xml"
        combined.write_text(f"<report>{gpo_report_xml(GUID_A, 'Good', links=[])}{broken}</report>", encoding="utf-8")
        snapshot = snapshot_file([(GUID_A, "Good"), (GUID_B, "Bad")])
        out = tmp_path / "findings.csv"

        code = cli.main(["audit", "--snapshot", str(snapshot), "--reports", str(combined), "--csv-out", str(out)])

        assert code == 0
        assert "Skipped policies: 1" in capsys.readouterr().out
        with out.open(newline="", encoding="utf-8") as f:
            assert {r["PolicyName"] for r in csv.DictReader(f)} == {"Good"}


class TestExitCodes:
    def test_no_command(self, capsys):
        assert cli.main([]) == 2

    def test_missing_source(self, audit_inputs):
        _snapshot, reports = audit_inputs
        assert cli.main(["audit", "--reports", str(reports)]) == 2

    def test_missing_reports(self, audit_inputs):
        snapshot, _reports = audit_inputs
        assert cli.main(["audit", "--snapshot", str(snapshot)]) == 2

    def test_bad_reports_path(self, audit_inputs, tmp_path):
        snapshot, _reports = audit_inputs
        assert cli.main(["audit", "--snapshot", str(snapshot), "--reports", str(tmp_path / "nope")]) == 2

    def test_unreadable_snapshot_is_fatal(self, audit_inputs, tmp_path):
        _snapshot, reports = audit_inputs
        broken = tmp_path / "broken.json"
        broken.write_text("[", encoding="utf-8")
        assert cli.main(["audit", "--snapshot", str(broken), "--reports", str(reports)]) == 1

    def test_directory_failure_during_collection(self, audit_inputs):
        snapshot, reports = audit_inputs
        with patch("gporecon.directory.SnapshotDirectory.list_policies", side_effect=DirectoryUnavailable("gone")):
            assert cli.main(["audit", "--snapshot", str(snapshot), "--reports", str(reports)]) == 1

    def test_invalid_workers(self, audit_inputs):
        snapshot, reports = audit_inputs
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["audit", "--snapshot", str(snapshot), "--reports", str(reports), "--workers", "0"])
        assert exc_info.value.code == 2


class TestOtherCommands:
    def test_link_order(self, audit_inputs, tmp_path):
        snapshot, _reports = audit_inputs
        out = tmp_path / "links.csv"

        assert cli.main(["link-order", "--snapshot", str(snapshot), "--ou", "workstations", "--csv-out", str(out)]) == 0
        with out.open(newline="", encoding="utf-8") as f:
            rows = list(csv.DictReader(f))
        assert [(r["GPO"], r["Order"], r["Linked"], r["Enforced"]) for r in rows] == [
            ("Server Baseline", "2", "No", "No"),
            ("Workstation Baseline", "1", "Yes", "Yes"),
        ]

    def test_link_order_filter_without_match(self, audit_inputs, capsys):
        snapshot, _reports = audit_inputs
        assert cli.main(["link-order", "--snapshot", str(snapshot), "--ou", "Servers"]) == 0
        assert "No linked containers" in capsys.readouterr().out

    def test_status(self, audit_inputs, tmp_path):
        snapshot, reports = audit_inputs
        out = tmp_path / "status.csv"

        assert cli.main(["status", "--snapshot", str(snapshot), "--reports", str(reports), "--csv-out", str(out)]) == 0
        with out.open(newline="", encoding="utf-8") as f:
            statuses = {r["Name"]: r["Status"] for r in csv.DictReader(f)}
        assert statuses == {
            "Server Baseline": "UserSettingsDisabled",
            "Workstation Baseline": "AllSettingsDisabled",
        }
