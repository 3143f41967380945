# progress.py
# Status lines and a progress bar driven by scheduler events.

from __future__ import annotations
import sys
from typing import Dict, Optional, TextIO

from tqdm import tqdm

from .models import TaskEvent, TaskState

LABELS = {
    TaskState.PENDING: "pending",
    TaskState.RUNNING: "running",
    TaskState.SUCCEEDED: "done",
    TaskState.FAILED: "FAILED",
    TaskState.KILLED_OOM: "OOM",
}


class NullReporter:
    def handle(self, event: TaskEvent) -> None:
        pass

    def close(self) -> None:
        pass


class TqdmReporter:
    """One status line per transition plus a bar counting finished tasks.

    Scheduled and Reclaimed transitions are bookkeeping and print nothing;
    pending lines are only shown with ``show_pending``.
    """

    def __init__(self, total: int, desc: str = "Benchmarks", file: Optional[TextIO] = None,
                 show_pending: bool = False, disable: bool = False):
        self.file = file if file is not None else sys.stderr
        self.show_pending = show_pending
        self.bar = tqdm(total=total, desc=desc, unit="task", file=self.file, disable=disable, leave=True)
        self.counts: Dict[TaskState, int] = {}

    def line(self, event: TaskEvent) -> Optional[str]:
        state = event.state
        if state not in LABELS or (state is TaskState.PENDING and not self.show_pending):
            return None
        head = f"[{LABELS[state]:>7}] {event.task.display_name} ({event.task.id[:8]})"
        if event.outcome is None:
            return head
        tail = f" in {event.outcome.elapsed:.1f}s"
        if event.outcome.exit_code is not None and state is not TaskState.SUCCEEDED:
            tail += f", exit={event.outcome.exit_code}"
        if event.outcome.error:
            tail += f": {event.outcome.error}"
        return head + tail

    def handle(self, event: TaskEvent) -> None:
        text = self.line(event)
        if text is not None:
            tqdm.write(text, file=self.file)
        if event.state.is_terminal:
            self.counts[event.state] = self.counts.get(event.state, 0) + 1
            self.bar.update(1)
            self.bar.set_postfix(
                ok=self.counts.get(TaskState.SUCCEEDED, 0),
                failed=self.counts.get(TaskState.FAILED, 0),
                oom=self.counts.get(TaskState.KILLED_OOM, 0),
                refresh=False,
            )

    def close(self) -> None:
        self.bar.close()
