import unittest
from unittest import mock

import requests

from vuln_pipeline.exceptions import (
    AdvisorySourceUnavailableError, MalformedManifestError, UnsupportedEcosystemError, VulnGateError,
)
from vuln_pipeline.models import (
    Advisory, ContainerLayerManifest, DependencyGraphManifest, GraphNode, ImageLayer, PolicyConfig,
)
from vuln_pipeline.osv_source import OsvAdvisorySource
from vuln_pipeline.pipeline import run_scan
from vuln_pipeline.policy import make_policy

from fakes import SNYK_001, FakeAdvisorySource


def npm_graph(*nodes, label="package-lock.json"):
    return DependencyGraphManifest(ecosystem="npm", nodes=tuple(nodes), label=label)


class TestRunScan(unittest.TestCase):
    def setUp(self):
        self.source = FakeAdvisorySource({("npm", "minimist"): [SNYK_001]})
        self.manifest = npm_graph(GraphNode("minimist", "1.2.2"))

    def test_minimist_scenario(self):
        outcome = run_scan([self.manifest], self.source, make_policy("critical"))
        self.assertEqual(outcome.report.total, 1)
        self.assertEqual(outcome.report.counts_by_severity, {"high": 1})
        self.assertEqual(outcome.report.findings[0].advisory.id, "SNYK-001")
        self.assertFalse(outcome.decision.blocking)

        outcome = run_scan([self.manifest], self.source, make_policy("high"))
        self.assertTrue(outcome.decision.blocking)
        self.assertEqual(outcome.decision.threshold_breached, "high")

    def test_default_policy_never_blocks(self):
        outcome = run_scan([self.manifest], self.source)
        self.assertFalse(outcome.decision.blocking)

    def test_same_pair_from_two_passes_counts_once(self):
        image = ContainerLayerManifest(ecosystem="debian", layers=(ImageLayer("l1", (("openssl", "3.0.11-1"),)),),
                                       label="image")
        outcome = run_scan([self.manifest, npm_graph(GraphNode("minimist", "1.2.2"), label="workspace"), image],
                           self.source)
        self.assertEqual(outcome.report.total, 1)
        [finding] = outcome.report.findings
        self.assertEqual(outcome.report.provenance[finding.key], ("package-lock.json", "workspace"))

    def test_duplicate_labels_are_disambiguated(self):
        outcome = run_scan([self.manifest, self.manifest], self.source)
        [finding] = outcome.report.findings
        self.assertEqual(outcome.report.provenance[finding.key], ("package-lock.json", "package-lock.json#2"))

    def test_one_failed_lookup_of_three(self):
        advisory = Advisory(id="ADV-1", severity="medium", affected_version_range="*")
        source = FakeAdvisorySource({("npm", "a"): [advisory], ("npm", "c"): [advisory]}, failing={"b"})
        manifest = npm_graph(GraphNode("a", "1.0.0"), GraphNode("b", "1.0.0"), GraphNode("c", "1.0.0"))
        outcome = run_scan([manifest], source, PolicyConfig())
        self.assertEqual(sorted(f.dependency_unit.name for f in outcome.report.findings), ["a", "c"])
        self.assertEqual([e.unit.name for e in outcome.report.match_errors], ["b"])
        self.assertEqual(outcome.report.confidence, "partial")

    def test_all_lookups_failing_raises(self):
        source = FakeAdvisorySource(failing={"minimist"})
        with self.assertRaises(AdvisorySourceUnavailableError):
            run_scan([self.manifest], source)

    def test_malformed_manifest_aborts_before_matching(self):
        broken = npm_graph(GraphNode("orphan", "1.0.0", parents=("ghost@1.0.0",)), label="broken")
        with self.assertRaises(MalformedManifestError):
            run_scan([self.manifest, broken], self.source)
        self.assertEqual(self.source.calls, [])

    def test_unsupported_source_is_skipped(self):
        hex_graph = DependencyGraphManifest(ecosystem="Hex", nodes=(GraphNode("phoenix", "1.7.0"),), label="mix.lock")
        outcome = run_scan([hex_graph, self.manifest], self.source)
        self.assertEqual(outcome.report.total, 1)
        self.assertEqual([e.ecosystem for e in outcome.skipped], ["Hex"])

    def test_only_unsupported_sources_raise(self):
        hex_graph = DependencyGraphManifest(ecosystem="Hex", nodes=(GraphNode("phoenix", "1.7.0"),), label="mix.lock")
        with self.assertRaises(UnsupportedEcosystemError):
            run_scan([hex_graph], self.source)

    def test_inventory_covers_every_pass(self):
        image = ContainerLayerManifest(ecosystem="alpine", layers=(ImageLayer("l1", (("musl", "1.2.4-r2"),)),))
        outcome = run_scan([self.manifest, image], self.source)
        self.assertEqual([c.identifier for c in outcome.inventory.components],
                         ["pkg:npm/minimist@1.2.2", "pkg:apk/alpine/musl@1.2.4-r2"])

    def test_monitor_registers_project(self):
        run_scan([self.manifest], self.source, monitor=True, project="acme/web")
        self.assertEqual(self.source.registered, ["acme/web"])

    def test_monitor_failure_is_not_fatal(self):
        class NoMonitoring(FakeAdvisorySource):
            def register_for_tracking(self, project_identifier):
                raise VulnGateError("monitoring endpoint down")

        source = NoMonitoring({("npm", "minimist"): [SNYK_001]})
        outcome = run_scan([self.manifest], source, monitor=True, project="acme/web")
        self.assertEqual(outcome.report.total, 1)

    @mock.patch("vuln_pipeline.osv_source.requests.post")
    def test_monitor_request_error_is_logged(self, post):
        post.side_effect = requests.exceptions.MissingSchema("No scheme supplied")
        source = OsvAdvisorySource(monitor_url="monitor.example.com/track")
        with mock.patch.object(source, "lookup", return_value=[SNYK_001]):
            with self.assertLogs("vuln_pipeline.pipeline", level="WARNING") as logs:
                outcome = run_scan([self.manifest], source, monitor=True, project="acme/web")
        self.assertEqual(outcome.report.total, 1)
        self.assertIn("acme/web", logs.output[0])

    def test_unexpected_monitor_error_is_logged(self):
        class BrokenMonitoring(FakeAdvisorySource):
            def register_for_tracking(self, project_identifier):
                raise RuntimeError("socket closed")

        source = BrokenMonitoring({("npm", "minimist"): [SNYK_001]})
        with self.assertLogs("vuln_pipeline.pipeline", level="WARNING") as logs:
            outcome = run_scan([self.manifest], source, monitor=True)
        self.assertEqual(outcome.report.total, 1)
        self.assertIn("socket closed", logs.output[0])


if __name__ == '__main__':
    unittest.main()
