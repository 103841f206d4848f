"""Exception hierarchy and error aggregation for git-warden."""


class WardenError(Exception):
    """Base class for every error raised by git-warden."""


class ConfigurationError(WardenError):
    """Invalid or missing settings detected before any repository is prepared."""


class GitNotFoundError(ConfigurationError):
    """The git executable could not be located."""


class DirtyDirectoryError(WardenError):
    """The target path holds files that are not a git checkout."""


class ConflictError(WardenError):
    """The target path is a checkout of a different remote."""


class SyncError(WardenError):
    """A clone or pull failed, typically for a transient network reason."""


class CommandError(WardenError):
    """A post-update command failed to start or exited non-zero."""


class ValidationError(WardenError):
    """A webhook request failed signature or payload validation.

    Attributes:
        status_code (int): The HTTP client-error status to respond with.
    """

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


class AggregateError(WardenError):
    """Several independent failures reported as one.

    Attributes:
        errors (list[BaseException]): The original errors, in order.
    """

    def __init__(self, errors: list[BaseException]):
        super().__init__("\n".join(str(e) for e in errors))
        self.errors = errors


def merge_errors(*errors: BaseException | None) -> BaseException | None:
    """Combines independent errors into a single error.

    None entries are skipped. A single error is returned unchanged, several
    are wrapped in an AggregateError whose message keeps every original
    message, in order, one per line.

    Args:
        *errors (BaseException | None): The errors to merge.

    Returns:
        BaseException | None: The merged error, or None if there was nothing
        to report.
    """
    present = [e for e in errors if e is not None]
    if not present:
        return None
    if len(present) == 1:
        return present[0]
    return AggregateError(present)
