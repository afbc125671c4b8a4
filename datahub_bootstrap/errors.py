"""Error taxonomy for the bootstrap sequence.

Every fatal condition is raised as a ``BootstrapError`` subclass at the stage
that detects it and is turned into a diagnostic plus exit code 1 by
``datahub_bootstrap.bootstrap.main``.
"""


class BootstrapError(Exception):
    """Base class for all bootstrap failures."""


class MalformedConnectionString(BootstrapError):
    def __init__(self, reason: str, setting: str | None = None):
        self.reason = reason
        self.setting = setting
        where = f" in {setting}" if setting else ""
        super().__init__(f"Malformed connection string{where}: {reason}")

    def for_setting(self, setting: str) -> "MalformedConnectionString":
        """Return a copy of this error attributed to ``setting``."""
        return MalformedConnectionString(self.reason, setting=setting)


class MissingConfiguration(BootstrapError):
    def __init__(self, setting: str, hint: str | None = None):
        self.setting = setting
        self.hint = hint
        message = f"Missing required configuration: {setting}"
        if hint:
            message = f"{message} ({hint})"
        super().__init__(message)


class CredentialMaterializationFailure(BootstrapError):
    def __init__(self, step: str, detail: str):
        self.step = step
        self.detail = detail
        super().__init__(f"Failed to {step}: {detail}")


class DependencyUnreachable(BootstrapError):
    """One or more required dependencies exhausted their readiness budget."""

    def __init__(self, results):
        self.results = list(results)
        names = ", ".join(r.name for r in self.results)
        super().__init__(f"Required dependencies not ready: {names}")
