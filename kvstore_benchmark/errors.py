# errors.py
# Exception taxonomy for the benchmark driver.


class BenchmarkError(Exception):
    """Base class for every error raised by kvstore_benchmark."""
    pass


class ConfigError(BenchmarkError):
    """Raised when a run file cannot be read or is structurally malformed."""
    pass


class InvalidAxisSpace(BenchmarkError):
    """Raised when an axis space would expand to a malformed matrix."""
    pass


class UnknownBackend(BenchmarkError):
    """Raised when a configuration names a backend with no capability record."""

    def __init__(self, backend):
        super().__init__(f"No capability record for backend: {backend!r}")
        self.backend = backend


class WorkspaceError(BenchmarkError):
    """Raised when a task's data or result directory cannot be prepared or removed."""
    pass


class SpawnError(BenchmarkError):
    """Raised when the benchmark executable cannot be launched."""
    pass


class TaskFailure(BenchmarkError):
    def __init__(self, task_id, exit_code):
        super().__init__(f"Task {task_id} failed with exit code {exit_code}")
        self.task_id = task_id
        self.exit_code = exit_code


class TaskOOM(BenchmarkError):
    def __init__(self, task_id, exit_code):
        super().__init__(f"Task {task_id} ran out of memory (exit code {exit_code})")
        self.task_id = task_id
        self.exit_code = exit_code
