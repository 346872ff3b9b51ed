import json
import tempfile
import unittest
from pathlib import Path

from vuln_pipeline.aggregator import FindingBatch, aggregate
from vuln_pipeline.exceptions import PartialMatchError, ReportEmissionError
from vuln_pipeline.models import Advisory, Finding, PolicyDecision
from vuln_pipeline.report import emit, parse_structured, render_html, write_output

from fakes import SNYK_001, unit

CRITICAL_ADVISORY = Advisory(id="GHSA-crit", severity="critical", affected_version_range="<2.0.0",
                             fixed_version="2.0.0", title="<script>alert(1)</script>")
PASS = PolicyDecision(blocking=False, reason="Non-blocking mode")
BLOCK = PolicyDecision(blocking=True, reason="1 findings at or above 'high'", threshold_breached="high")


def findings():
    return [
        Finding(unit("minimist", "1.2.2", direct=False, path=("mkdirp@0.5.1",)), SNYK_001, "upgrade minimist"),
        Finding(unit("zlib", "1.0.0", ecosystem="Debian"), CRITICAL_ADVISORY, "upgrade zlib"),
        Finding(unit("axios", "0.21.0"), SNYK_001, "upgrade axios"),
    ]


class TestEmit(unittest.TestCase):
    def setUp(self):
        self.error = PartialMatchError(unit("left-pad", "1.0.0"), "lookup failed", "sca")
        self.report = aggregate([FindingBatch("sca", findings(), [self.error])])

    def test_structured_document(self):
        document = json.loads(emit(self.report, BLOCK).structured)
        self.assertEqual(document["total"], 3)
        self.assertEqual(document["countsBySeverity"], {"critical": 1, "high": 2})
        self.assertEqual(document["confidence"], "partial")
        self.assertEqual([f["dependencyName"] for f in document["findings"]], ["zlib", "axios", "minimist"])
        minimist = document["findings"][2]
        self.assertEqual(minimist["advisoryId"], "SNYK-001")
        self.assertEqual(minimist["fixedVersion"], "1.2.3")
        self.assertEqual(minimist["introducingPath"], ["mkdirp@0.5.1"])
        self.assertFalse(minimist["direct"])
        self.assertEqual(document["policy"], {"blocking": True, "thresholdBreached": "high",
                                              "reason": "1 findings at or above 'high'"})
        self.assertEqual(document["matchErrors"][0]["dependencyName"], "left-pad")

    def test_output_is_deterministic(self):
        reversed_report = aggregate([FindingBatch("sca", list(reversed(findings())), [self.error])])
        first, second = emit(self.report, BLOCK), emit(reversed_report, BLOCK)
        self.assertEqual(first.structured, second.structured)
        self.assertEqual(first.human_readable, second.human_readable)

    def test_round_trip(self):
        report, decision = parse_structured(emit(self.report, BLOCK).structured)
        self.assertEqual(decision, BLOCK)
        self.assertEqual(report.total, self.report.total)
        self.assertEqual(report.counts_by_severity, self.report.counts_by_severity)
        self.assertEqual(set(report.findings), set(self.report.findings))
        self.assertEqual(report.match_errors, self.report.match_errors)
        self.assertEqual(report.provenance, self.report.provenance)

    def test_text_report(self):
        text = emit(self.report, BLOCK).human_readable.decode("utf-8")
        self.assertIn("Policy:     BLOCKING", text)
        self.assertIn("[CRITICAL] zlib@1.0.0 (Debian)", text)
        self.assertIn("Path:     mkdirp@0.5.1 > minimist@1.2.2", text)
        self.assertIn("left-pad@1.0.0 (npm): lookup failed", text)
        self.assertLess(text.index("zlib"), text.index("axios"))

    def test_empty_report(self):
        emitted = emit(aggregate([]), PASS)
        self.assertIn("No vulnerabilities found.", emitted.human_readable.decode("utf-8"))
        document = json.loads(emitted.structured)
        self.assertEqual((document["total"], document["findings"], document["countsBySeverity"]), (0, [], {}))
        self.assertEqual(document["confidence"], "complete")

    def test_html_is_escaped(self):
        html = render_html(self.report, BLOCK).decode("utf-8")
        self.assertIn("&lt;script&gt;", html)
        self.assertNotIn("<script>", html)


class TestParseStructured(unittest.TestCase):
    def test_rejects_garbage(self):
        with self.assertRaises(ValueError):
            parse_structured(b"not json")

    def test_rejects_inconsistent_totals(self):
        document = json.loads(emit(aggregate([[Finding(unit("a", "1"), SNYK_001)]]), PASS).structured)
        document["total"] = 5
        with self.assertRaises(ValueError):
            parse_structured(json.dumps(document))


class TestWriteOutput(unittest.TestCase):
    def test_write_creates_parent_directories(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = write_output(Path(tmp) / "reports" / "scan.json", b"{}")
            self.assertEqual(path.read_bytes(), b"{}")

    def test_unwritable_path(self):
        with tempfile.TemporaryDirectory() as tmp:
            blocker = Path(tmp) / "file"
            blocker.write_text("x")
            with self.assertRaises(ReportEmissionError):
                write_output(blocker / "scan.json", b"{}")


if __name__ == '__main__':
    unittest.main()
