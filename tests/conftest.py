import sys
from pathlib import Path

import pytest

from kvstore_benchmark.bench_config import expand_grid
from kvstore_benchmark.bench_pipeline import build_tasks
from kvstore_benchmark.models import TaskState

FAKE_BENCH = Path(__file__).with_name("fake_bench.py")


@pytest.fixture
def fake_command():
    return [sys.executable, str(FAKE_BENCH)]


@pytest.fixture
def make_tasks(tmp_path, fake_command):
    """Build tasks for the fake benchmark, one per workload value."""
    def _make(workloads, backend="redb", command=None):
        configs = expand_grid({"workload": list(workloads), "backend": [backend]})
        return build_tasks(configs, command or fake_command, tmp_path / "data", tmp_path / "results")
    return _make


class RecordingReporter:
    def __init__(self):
        self.events = []
        self.running = 0
        self.peak_running = 0

    def handle(self, event):
        self.events.append(event)
        if event.state is TaskState.RUNNING:
            self.running += 1
            self.peak_running = max(self.peak_running, self.running)
        elif event.state.is_terminal:
            self.running -= 1

    def states_for(self, task_id):
        return [e.state for e in self.events if e.task.id == task_id]

    def terminal(self):
        return [e for e in self.events if e.state.is_terminal]


@pytest.fixture
def recorder():
    return RecordingReporter()
