import json
import tempfile
import unittest
from pathlib import Path

from vuln_pipeline.advisories import (
    FileAdvisorySource, RateLimiter, load_feed, normalize_severity, severity_from_cvss, severity_from_vector,
)
from vuln_pipeline.exceptions import ConfigError

FEED = {
    "advisories": [
        {"id": "SNYK-001", "ecosystem": "npm", "package": "minimist", "severity": "high", "range": "<1.2.3",
         "fixedVersion": "1.2.3", "title": "Prototype Pollution", "aliases": ["CVE-2021-44906"]},
        {"id": "PYSEC-2021-1", "ecosystem": "pypi", "package": "Django", "severity": 9.8, "range": "<3.2.4"},
    ]
}


class TestSeverity(unittest.TestCase):
    def test_cvss_bands(self):
        self.assertEqual(severity_from_cvss(9.8), "critical")
        self.assertEqual(severity_from_cvss(7.0), "high")
        self.assertEqual(severity_from_cvss(4.0), "medium")
        self.assertEqual(severity_from_cvss(0.1), "low")
        self.assertEqual(severity_from_cvss(0.0), "unknown")
        self.assertEqual(severity_from_cvss(None), "unknown")

    def test_labels(self):
        self.assertEqual(normalize_severity("MODERATE"), "medium")
        self.assertEqual(normalize_severity("Important"), "high")
        self.assertEqual(normalize_severity("whatever"), "unknown")
        self.assertEqual(normalize_severity(None), "unknown")

    def test_vectors(self):
        self.assertEqual(severity_from_vector("CVSS:3.1/AV:N/AC:L/PR:N/UI:N/S:U/C:H/I:H/A:H"), "critical")
        self.assertEqual(normalize_severity("CVSS:3.1/AV:N/AC:L/PR:N/UI:N/S:U/C:H/I:H/A:H"), "critical")
        self.assertEqual(severity_from_vector("CVSS:3.1/garbage"), "unknown")


class TestFeed(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.feed_path = Path(self.tmp.name) / "feed.json"
        self.feed_path.write_text(json.dumps(FEED), encoding="utf-8")

    def test_load_feed(self):
        entries = load_feed(self.feed_path)
        self.assertEqual([(e, p) for e, p, _ in entries], [("npm", "minimist"), ("PyPI", "Django")])
        advisory = entries[0][2]
        self.assertEqual(advisory.fixed_version, "1.2.3")
        self.assertEqual(advisory.aliases, ("CVE-2021-44906",))
        self.assertEqual(entries[1][2].severity, "critical")
        self.assertIsNone(entries[1][2].fixed_version)

    def test_lookup_is_case_insensitive_and_alias_aware(self):
        source = FileAdvisorySource.from_file(self.feed_path)
        self.assertEqual([a.id for a in source.lookup("python", "django")], ["PYSEC-2021-1"])
        self.assertEqual(source.lookup("npm", "lodash"), [])

    def test_entry_without_package(self):
        self.feed_path.write_text(json.dumps({"advisories": [{"id": "X-1", "ecosystem": "npm"}]}), encoding="utf-8")
        with self.assertRaises(ConfigError):
            load_feed(self.feed_path)

    def test_unreadable_feed(self):
        with self.assertRaises(ConfigError):
            load_feed(Path(self.tmp.name) / "missing.json")


class TestRateLimiter(unittest.TestCase):
    def test_disabled_limiter_never_waits(self):
        limiter = RateLimiter(None)
        for _ in range(100):
            limiter.acquire()
        self.assertEqual(limiter.interval, 0.0)

    def test_interval(self):
        self.assertAlmostEqual(RateLimiter(4).interval, 0.25)


if __name__ == '__main__':
    unittest.main()
