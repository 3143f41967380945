# models.py
# Tasks, their lifecycle states, and the outcomes the scheduler reports.

from __future__ import annotations
import enum
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .bench_config import Configuration
from .errors import TaskFailure, TaskOOM


class TaskState(enum.Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    KILLED_OOM = "oom"
    RECLAIMED = "reclaimed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.SUCCEEDED, TaskState.FAILED, TaskState.KILLED_OOM)


@dataclass(frozen=True)
class Task:
    id: str
    configuration: Configuration
    data_dir: Path
    result_dir: Path
    argv: Tuple[str, ...]
    display_name: str

    @property
    def stats_path(self) -> Path:
        return self.result_dir / "stats.jsonl"

    @property
    def config_path(self) -> Path:
        return self.result_dir / "config.json"

    @property
    def log_path(self) -> Path:
        return self.result_dir / "run.log"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "data_dir": str(self.data_dir),
            "result_dir": str(self.result_dir),
            "argv": list(self.argv),
            "configuration": self.configuration.as_dict(),
        }


@dataclass(frozen=True)
class RunOutcome:
    task: Task
    state: TaskState
    exit_code: Optional[int]
    elapsed: float
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state is TaskState.SUCCEEDED

    def raise_for_status(self) -> None:
        if self.state is TaskState.KILLED_OOM:
            raise TaskOOM(self.task.id, self.exit_code)
        if self.state is TaskState.FAILED:
            raise TaskFailure(self.task.id, self.exit_code)


@dataclass(frozen=True)
class TaskEvent:
    """A single state transition, as delivered to progress reporters."""
    task: Task
    state: TaskState
    outcome: Optional[RunOutcome] = None

