# vuln_pipeline/exceptions.py
"""Error taxonomy for a scan run."""


class VulnGateError(Exception):
    """Base class for every error raised by vulngate."""


class ConfigError(VulnGateError):
    pass


class MalformedManifestError(VulnGateError):
    """The manifest could not be parsed. Aborts the run before matching."""

    def __init__(self, message: str, source: str | None = None):
        self.source = source
        super().__init__(f"{source}: {message}" if source else message)


class UnsupportedEcosystemError(VulnGateError):
    """No resolver is registered for the manifest's ecosystem."""

    def __init__(self, ecosystem: str, kind: str, source: str | None = None):
        self.ecosystem = ecosystem
        self.kind = kind
        self.source = source
        message = f"No resolver registered for {kind} ecosystem '{ecosystem}'"
        if source:
            message += f" (source: {source})"
        super().__init__(message)


class AdvisorySourceUnavailableError(VulnGateError):
    """The advisory source could not answer a lookup."""


class PartialMatchError(VulnGateError):
    """
    Lookup failure for a single dependency unit.
    Collected into the report instead of raised; compares by value so that
    reports carrying them stay comparable.
    """

    def __init__(self, unit, reason: str, label: str | None = None):
        self.unit = unit
        self.reason = reason
        self.label = label
        super().__init__(f"{unit.name}@{unit.resolved_version} ({unit.ecosystem}): {reason}")

    def _identity(self) -> tuple:
        return (self.unit.key, self.reason, self.label)

    def __eq__(self, other):
        if not isinstance(other, PartialMatchError):
            return NotImplemented
        return self._identity() == other._identity()

    def __hash__(self):
        return hash(self._identity())


class ReportEmissionError(VulnGateError):
    """Reports could not be rendered or written."""


class InvalidRangeError(VulnGateError, ValueError):
    """An affected-version range could not be parsed."""
