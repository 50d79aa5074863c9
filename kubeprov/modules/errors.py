"""Exception hierarchy for provisioning runs.

Fatal errors (configuration, resolution, playbook, dependency) abort the run
before or between plays. Task-level errors (check, apply, timeout, remote
execution) fail only the task on the host where they occur.
"""


class KubeprovError(Exception):
    """Base class for all kubeprov errors."""
    pass


class ConfigurationError(KubeprovError):
    """Raised when required variables or settings are missing or invalid."""
    pass


class ResolutionError(KubeprovError):
    """Raised when a host group cannot be resolved."""
    pass


# Name used by the resolver contract
UnknownGroup = ResolutionError


class PlaybookError(KubeprovError):
    """Raised when a play, task or handler definition is malformed."""
    pass


class RemoteExecutionError(KubeprovError):
    """Raised when the remote execution channel itself fails."""
    pass


class CheckError(KubeprovError):
    """Raised when a controller cannot determine the current state."""
    pass


class ApplyError(KubeprovError):
    """Raised when a controller fails to reach the desired state."""
    pass


class TaskTimeout(KubeprovError):
    """Raised when a remote operation exceeds the task timeout."""
    pass


class DependencyUnmet(KubeprovError):
    """Raised when the worker phase runs without a completed control phase."""

    def __init__(self, message: str, result=None):
        super().__init__(message)
        # Partial BootstrapResult, when the control phase already ran
        self.result = result
        # RunReport of the whole run, filled in by run_site
        self.report = None


class TemplateRenderError(KubeprovError):
    """Raised when task parameters or a template file cannot be rendered."""
    pass
