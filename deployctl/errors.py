class DeployctlError(Exception):
    """Base class for errors raised by deployctl."""


class JobStoreError(DeployctlError):
    """The job store could not be read or written (disk full, permissions, ...).

    Fatal to the engine: the watcher stops instead of guessing at state.
    """


class MalformedRecordError(DeployctlError):
    """A job record could not be parsed into a JobRecord."""


class DuplicateJobError(DeployctlError):
    """A job with the same id already exists somewhere in the store."""


class QueueLockedError(DeployctlError):
    """Another dispatcher already holds the queue."""
