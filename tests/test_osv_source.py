import unittest
from unittest import mock

import requests

from vuln_pipeline.exceptions import AdvisorySourceUnavailableError
from vuln_pipeline.osv_source import OsvAdvisorySource, advisory_from_osv, events_to_range

MINIMIST_VULN = {
    "id": "GHSA-xvch-5gv4-984h",
    "summary": "Prototype Pollution in minimist",
    "aliases": ["CVE-2021-44906"],
    "affected": [
        {"package": {"ecosystem": "npm", "name": "minimist"},
         "ranges": [{"type": "SEMVER", "events": [{"introduced": "0"}, {"fixed": "0.2.4"},
                                                  {"introduced": "1.0.0"}, {"fixed": "1.2.6"}]}],
         "database_specific": {"severity": "CRITICAL"}},
        {"package": {"ecosystem": "npm", "name": "other-package"},
         "ranges": [{"type": "SEMVER", "events": [{"introduced": "0"}]}]},
    ],
}


def response(status_code=200, data=None):
    resp = mock.Mock(status_code=status_code, content=b"{}")
    resp.json.return_value = data or {}
    if status_code >= 400:
        resp.raise_for_status.side_effect = requests.exceptions.HTTPError(f"{status_code} Client Error")
    return resp


class TestOsvConversion(unittest.TestCase):
    def test_events_to_range(self):
        self.assertEqual(events_to_range([{"introduced": "0"}, {"fixed": "1.2.3"}]), ["<1.2.3"])
        self.assertEqual(events_to_range([{"introduced": "1.0"}, {"last_affected": "1.5"}]), [">=1.0 <=1.5"])
        self.assertEqual(events_to_range([{"introduced": "2.0"}]), [">=2.0"])
        self.assertEqual(events_to_range([{"introduced": "0"}]), ["*"])

    def test_advisory_from_osv(self):
        advisory = advisory_from_osv(MINIMIST_VULN, "npm", "minimist")
        self.assertEqual(advisory.id, "GHSA-xvch-5gv4-984h")
        self.assertEqual(advisory.affected_version_range, "<0.2.4 || >=1.0.0 <1.2.6")
        self.assertEqual(advisory.fixed_version, "1.2.6")
        self.assertEqual(advisory.severity, "critical")
        self.assertEqual(advisory.aliases, ("CVE-2021-44906",))
        self.assertEqual(advisory.title, "Prototype Pollution in minimist")

    def test_severity_from_cvss_vector(self):
        vuln = {"id": "OSV-1", "severity": [{"type": "CVSS_V3", "score": "CVSS:3.1/AV:N/AC:L/PR:N/UI:N/S:U/C:H/I:N/A:N"}],
                "affected": [{"package": {"ecosystem": "PyPI", "name": "django"}, "versions": ["3.2.0"]}]}
        advisory = advisory_from_osv(vuln, "PyPI", "Django")
        self.assertEqual(advisory.severity, "high")
        self.assertEqual(advisory.affected_version_range, "=3.2.0")

    def test_other_package_is_ignored(self):
        self.assertIsNone(advisory_from_osv(MINIMIST_VULN, "npm", "lodash"))


class TestOsvAdvisorySource(unittest.TestCase):
    def setUp(self):
        self.source = OsvAdvisorySource("https://osv.example/", api_token="s3cret", max_retries=2, backoff=0)

    @mock.patch("vuln_pipeline.osv_source.requests.post")
    def test_lookup_follows_pagination(self, post):
        post.side_effect = [
            response(data={"vulns": [MINIMIST_VULN], "next_page_token": "page-2"}),
            response(data={"vulns": []}),
        ]
        advisories = self.source.lookup("npm", "minimist")
        self.assertEqual([a.id for a in advisories], ["GHSA-xvch-5gv4-984h"])
        self.assertEqual(post.call_count, 2)
        first_call, second_call = post.call_args_list
        self.assertEqual(first_call.args[0], "https://osv.example/v1/query")
        self.assertEqual(first_call.kwargs["json"], {"package": {"name": "minimist", "ecosystem": "npm"}})
        self.assertEqual(first_call.kwargs["headers"], {"Authorization": "Bearer s3cret"})
        self.assertEqual(second_call.kwargs["json"]["page_token"], "page-2")

    @mock.patch("vuln_pipeline.osv_source.requests.post")
    def test_retries_transient_errors(self, post):
        post.side_effect = [response(503), requests.exceptions.ConnectionError("reset"), response(data={})]
        self.assertEqual(self.source.lookup("npm", "minimist"), [])
        self.assertEqual(post.call_count, 3)

    @mock.patch("vuln_pipeline.osv_source.requests.post")
    def test_gives_up_after_retries(self, post):
        post.side_effect = requests.exceptions.Timeout("slow")
        with self.assertRaises(AdvisorySourceUnavailableError):
            self.source.lookup("npm", "minimist")
        self.assertEqual(post.call_count, 3)

    @mock.patch("vuln_pipeline.osv_source.requests.post")
    def test_client_error_is_not_retried(self, post):
        post.return_value = response(400)
        with self.assertRaises(AdvisorySourceUnavailableError):
            self.source.lookup("npm", "minimist")
        self.assertEqual(post.call_count, 1)

    @mock.patch("vuln_pipeline.osv_source.requests.post")
    def test_register_for_tracking(self, post):
        post.return_value = response(data={})
        source = OsvAdvisorySource(monitor_url="https://monitor.example/projects", backoff=0)
        source.register_for_tracking("acme/web")
        post.assert_called_once()
        self.assertEqual(post.call_args.args[0], "https://monitor.example/projects")
        self.assertEqual(post.call_args.kwargs["json"], {"project": "acme/web"})

    @mock.patch("vuln_pipeline.osv_source.requests.post")
    def test_invalid_url_is_not_retried(self, post):
        post.side_effect = requests.exceptions.MissingSchema("No scheme supplied")
        source = OsvAdvisorySource(monitor_url="monitor.example.com/track", backoff=0)
        with self.assertRaises(AdvisorySourceUnavailableError):
            source.register_for_tracking("acme/web")
        self.assertEqual(post.call_count, 1)

    @mock.patch("vuln_pipeline.osv_source.requests.post")
    def test_register_without_monitor_url_is_a_no_op(self, post):
        OsvAdvisorySource().register_for_tracking("acme/web")
        post.assert_not_called()


if __name__ == '__main__':
    unittest.main()
