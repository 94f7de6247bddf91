import csv
import json

from gporecon.models import HIGH, LOW, MEDIUM, Finding, LinkOrderEntry, SkippedObject
from gporecon.reporter import (
    FINDING_COLUMNS,
    LINK_ORDER_COLUMNS,
    STATUS_COLUMNS,
    Reporter,
    export_link_order_csv,
    export_status_csv,
    link_order_rows,
)

from conftest import GUID_A


def _findings():
    return [
        Finding(HIGH, "Computer version differs between AD (2) and SYSVOL (1).", "Baseline",
                "Check SYSVOL replication.", "version_inconsistent", "Computer"),
        Finding(LOW, "Policy is not linked to any site, domain or OU.", "Old Policy",
                "Link the policy.", "unlinked"),
    ]


class TestReporter:
    """Console, CSV and JSON output of findings."""

    def test_csv_has_the_four_columns(self, tmp_path):
        out = tmp_path / "out" / "findings.csv"
        Reporter(_findings()).export_csv(out)

        with out.open(newline="", encoding="utf-8") as f:
            rows = list(csv.DictReader(f))
        assert list(rows[0].keys()) == FINDING_COLUMNS
        assert rows[0]["Urgency"] == HIGH
        assert rows[1]["PolicyName"] == "Old Policy"

    def test_json_export(self, tmp_path, context):
        out = tmp_path / "findings.json"
        skipped = [SkippedObject(identity=f"Broken {GUID_A}", reason="no report file")]
        Reporter(_findings(), skipped=skipped).export_json(out, context)

        payload = json.loads(out.read_text(encoding="utf-8"))
        assert payload["tool"] == "gporecon"
        assert payload["domain"]["netbios_name"] == "CONTOSO"
        assert payload["summary"]["counts"] == {HIGH: 1, MEDIUM: 0, LOW: 1}
        assert payload["summary"]["total_findings"] == 2
        assert payload["summary"]["skipped"][0]["reason"] == "no report file"
        assert payload["findings"][0]["check"] == "version_inconsistent"

    def test_baseline_drift(self, tmp_path):
        baseline = tmp_path / "baseline.json"
        Reporter(_findings()).export_json(baseline)

        current = _findings()[1:] + [
            Finding(MEDIUM, "Policy is owned by a user account (CONTOSO\\jdoe).", "Old Policy",
                    "Change the owner to Domain Admins.", "owner_is_user"),
        ]
        assert Reporter(current).compare_with_baseline(baseline) == (1, 1)
        assert Reporter(_findings()).compare_with_baseline(baseline) == (0, 0)

    def test_print_findings(self, capsys):
        Reporter(_findings()).print_findings()
        out = capsys.readouterr().out
        assert "Baseline" in out
        assert "[HIGH] Computer version differs" in out

    def test_print_without_findings(self, capsys):
        Reporter([]).print_findings()
        assert "No findings" in capsys.readouterr().out


class TestTables:
    def test_link_order_rows(self):
        entries = [
            LinkOrderEntry("Labs", "OU=Labs,DC=contoso,DC=com", f"cn={GUID_A},cn=policies", GUID_A, "Baseline",
                           True, True, 2, "2"),
            LinkOrderEntry("Labs", "OU=Labs,DC=contoso,DC=com", "garbage", None, None, None, None, 1, "",
                           malformed=True),
        ]
        enforced, broken = link_order_rows(entries)

        assert (enforced["Order"], enforced["Linked"], enforced["Enforced"]) == ("2", "Yes", "Yes")
        assert broken["GPO"] == "(unknown policy)"
        assert broken["Linked"] == "Unknown"
        assert broken["Status"] == "malformed"

    def test_link_order_csv(self, tmp_path):
        out = tmp_path / "links.csv"
        export_link_order_csv([], out)
        assert out.read_text(encoding="utf-8").strip() == ",".join(LINK_ORDER_COLUMNS)

    def test_status_csv(self, tmp_path, make_gpo):
        out = tmp_path / "status.csv"
        export_status_csv([make_gpo()], out)

        with out.open(newline="", encoding="utf-8") as f:
            (row,) = list(csv.DictReader(f))
        assert list(row.keys()) == STATUS_COLUMNS
        assert row["Status"] == "UserSettingsDisabled"
        assert row["ComputerVersion"] == "4/4"
        assert row["Owner"] == "CONTOSO\\Domain Admins"
