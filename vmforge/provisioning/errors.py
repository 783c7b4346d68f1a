"""Error taxonomy shared by every backend adapter."""

from contextlib import contextmanager


class VMError(Exception):
    """Base class for all vmforge errors."""


class PreconditionError(VMError):
    """Input is missing or the VM is in the wrong state; no backend call was made."""


class NotProvisionedError(PreconditionError):
    def __init__(self, name, operation):
        self.name = name
        self.operation = operation
        super().__init__(f"{operation}: VM '{name}' is not provisioned")


class ResolutionError(VMError):
    """A human-readable reference could not be resolved to a backend id."""

    def __init__(self, kind, name, message):
        self.kind = kind
        self.name = name
        super().__init__(message)


class NotFoundError(ResolutionError):
    def __init__(self, kind, name):
        super().__init__(kind, name, f"{kind} '{name}' not found")


class AmbiguousError(ResolutionError):
    def __init__(self, kind, name, count):
        self.count = count
        super().__init__(kind, name, f"{kind} '{name}' is ambiguous ({count} matches)")


class BackendError(VMError):
    """A backend API call failed.

    Raised ``from`` the underlying SDK/HTTP exception so the original
    traceback is preserved.
    """

    def __init__(self, step, resource_id="", detail=""):
        self.step = step
        self.resource_id = resource_id
        msg = f"{step} failed"
        if resource_id:
            msg += f" ({resource_id})"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class TerminalStateError(VMError):
    """The backend reported that the resource itself entered a failed state."""

    def __init__(self, description, last_value):
        self.description = description
        self.last_value = last_value
        super().__init__(f"{description}: terminal failure (last: {last_value!r})")


class PollTimeoutError(VMError, TimeoutError):
    """A poll loop gave up while the resource was still in a non-terminal state."""

    def __init__(self, description, timeout, last_value):
        self.description = description
        self.timeout = timeout
        self.last_value = last_value
        super().__init__(f"Timeout after {timeout}s waiting for {description} (last: {last_value!r})")


class UnsupportedOperationError(VMError):
    def __init__(self, operation, backend):
        self.operation = operation
        self.backend = backend
        super().__init__(f"{operation} is not supported by the {backend} backend")


class TeardownError(VMError):
    """A destroy step failed; ``kind``/``resource_id`` name the resource still present."""

    def __init__(self, kind, resource_id, detail=""):
        self.kind = kind
        self.resource_id = resource_id
        msg = f"Failed to tear down {kind} '{resource_id}'"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class NoAddressError(VMError):
    """No usable IP address exists for the requested address class."""


class ConfigError(VMError):
    """Machine file is missing, malformed or names an unknown backend."""


@contextmanager
def wrap_backend_errors(step, resource_id="", exc_types=(Exception,)):
    """Re-raise *exc_types* escaping the block as BackendError naming *step*.

    vmforge errors raised inside the block pass through untouched.
    """
    try:
        yield
    except VMError:
        raise
    except exc_types as e:
        raise BackendError(step, resource_id, str(e)) from e
