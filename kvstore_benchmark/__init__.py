"""Matrix driver for key-value store benchmarks.

Expands axis spaces into configurations, drops the ones a backend cannot
run, and executes the rest as isolated child processes under a bounded pool.
"""

from .bench_config import NOT_APPLICABLE, Configuration, expand_grid, load_config, resolve_config
from .bench_pipeline import build_tasks
from .capabilities import BackendCapability, CapabilityRegistry
from .constraints import filter_configurations
from .errors import (
    BenchmarkError,
    ConfigError,
    InvalidAxisSpace,
    SpawnError,
    TaskFailure,
    TaskOOM,
    UnknownBackend,
    WorkspaceError,
)
from .models import RunOutcome, Task, TaskEvent, TaskState
from .scheduler import Scheduler, run_tasks

__version__ = "0.1.0"
