# tests/fakes.py
import threading
import time

from vuln_pipeline.advisories import AdvisorySource
from vuln_pipeline.exceptions import AdvisorySourceUnavailableError
from vuln_pipeline.models import Advisory, DependencyUnit


class FakeAdvisorySource(AdvisorySource):
    """In-memory advisory source that can fail or stall for chosen package names."""

    name = "fake"

    def __init__(self, advisories=None, failing=(), slow=None):
        self.advisories = advisories or {}  # (ecosystem, name) -> [Advisory]
        self.failing = set(failing)
        self.slow = dict(slow or {})  # name -> seconds
        self.calls = []
        self.registered = []
        self._lock = threading.Lock()

    def lookup(self, ecosystem, name):
        with self._lock:
            self.calls.append((ecosystem, name))
        if name in self.slow:
            time.sleep(self.slow[name])
        if name in self.failing:
            raise AdvisorySourceUnavailableError(f"lookup failed for {name}")
        return list(self.advisories.get((ecosystem, name), ()))

    def register_for_tracking(self, project_identifier):
        self.registered.append(project_identifier)


SNYK_001 = Advisory(id="SNYK-001", severity="high", affected_version_range="<1.2.3", fixed_version="1.2.3",
                    title="Prototype Pollution", aliases=("CVE-2021-44906",))


def unit(name, version, ecosystem="npm", direct=True, path=()):
    return DependencyUnit(name=name, ecosystem=ecosystem, resolved_version=version, direct=direct,
                          introducing_path=tuple(path))
