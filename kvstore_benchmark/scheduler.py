# scheduler.py
# Bounded-concurrency execution of benchmark tasks as child processes.

from __future__ import annotations
import asyncio
import codecs
import logging
import os
import shutil
import time
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

from .bench_config import ensure_dir
from .bench_pipeline import write_task_config
from .errors import SpawnError, WorkspaceError
from .models import RunOutcome, Task, TaskEvent, TaskState
from .progress import NullReporter

DEFAULT_OOM_EXIT_CODE = 777

CHUNK_SIZE = 1 << 16
# Longest unterminated line kept for the debug echo; run.log always gets everything.
LINE_LIMIT = 1 << 20
CRLF = "\r\n"


class Scheduler:
    """Runs tasks through a pool of ``parallelism`` workers fed by one FIFO queue.

    Each task is attempted once. Its data directory is created right before
    the child starts and removed once it exits, whatever the outcome; its
    result directory is left in place. A child that never exits holds its
    slot until ``timeout`` (seconds) runs out, or forever when it is None.
    """

    def __init__(
        self,
        parallelism: int,
        oom_exit_code: int = DEFAULT_OOM_EXIT_CODE,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[Path] = None,
        timeout: Optional[float] = None,
        reporter=None,
        log_env_var: Optional[str] = "RUST_LOG",
        log_env_default: str = "error",
    ):
        if int(parallelism) < 1:
            raise ValueError(f"parallelism must be >= 1, got {parallelism}")
        if timeout is not None and timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")
        self.parallelism = int(parallelism)
        self.oom_exit_code = int(oom_exit_code)
        self.extra_env = dict(env or {})
        self.cwd = cwd
        self.timeout = timeout
        self.reporter = reporter if reporter is not None else NullReporter()
        self.log_env_var = log_env_var
        self.log_env_default = log_env_default
        self.occupied = 0
        self.peak_occupied = 0

    def child_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(self.extra_env)
        if self.log_env_var:
            env.setdefault(self.log_env_var, self.log_env_default)
        return env

    def classify(self, exit_code: int) -> TaskState:
        if exit_code == 0:
            return TaskState.SUCCEEDED
        if exit_code == self.oom_exit_code:
            return TaskState.KILLED_OOM
        return TaskState.FAILED

    async def run(self, tasks: Sequence[Task]) -> List[RunOutcome]:
        """Run every task; returns outcomes in submission order."""
        queue: asyncio.Queue = asyncio.Queue()
        for task in tasks:
            queue.put_nowait(task)
            self._notify(task, TaskState.PENDING)

        outcomes: Dict[str, RunOutcome] = {}
        env = self.child_env()
        workers = [
            asyncio.ensure_future(self._worker(queue, outcomes, env))
            for _ in range(min(self.parallelism, len(tasks)))
        ]
        logging.info(f"[Scheduler] {len(tasks)} tasks on {len(workers)} workers")
        await asyncio.gather(*workers)
        return [outcomes[t.id] for t in tasks]

    async def _worker(self, queue: asyncio.Queue, outcomes: Dict[str, RunOutcome], env: Dict[str, str]) -> None:
        while True:
            try:
                task = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            self.occupied += 1
            self.peak_occupied = max(self.peak_occupied, self.occupied)
            try:
                outcomes[task.id] = await self._run_one(task, env)
            finally:
                self.occupied -= 1
                queue.task_done()

    async def _run_one(self, task: Task, env: Dict[str, str]) -> RunOutcome:
        self._notify(task, TaskState.SCHEDULED)
        self._notify(task, TaskState.RUNNING)
        started = time.monotonic()
        exit_code = None
        error = None
        try:
            self._prepare_workspace(task)
            exit_code, timed_out = await self._execute(task, env)
            state = self.classify(exit_code)
            if timed_out:
                state = TaskState.FAILED
                error = f"killed after {self.timeout}s timeout"
        except (WorkspaceError, SpawnError) as e:
            state = TaskState.FAILED
            error = str(e)
        except Exception as e:
            logging.exception(f"[Scheduler] Unexpected error while running {task.display_name} ({task.id})")
            state = TaskState.FAILED
            error = f"{type(e).__name__}: {e}"
        elapsed = time.monotonic() - started

        try:
            self._reclaim(task)
        except WorkspaceError as e:
            state = TaskState.FAILED
            error = f"{error}; {e}" if error else str(e)

        if state is TaskState.SUCCEEDED:
            logging.info(f"[Scheduler] {task.display_name} ({task.id}) finished in {elapsed:.2f}s")
        else:
            logging.warning(
                f"[Scheduler] {task.display_name} ({task.id}) {state.value} after {elapsed:.2f}s, "
                f"exit={exit_code}" + (f": {error}" if error else "")
            )
        outcome = RunOutcome(task=task, state=state, exit_code=exit_code, elapsed=elapsed, error=error)
        self._notify(task, state, outcome)
        self._notify(task, TaskState.RECLAIMED, outcome)
        return outcome

    def _prepare_workspace(self, task: Task) -> None:
        try:
            ensure_dir(task.data_dir)
            ensure_dir(task.result_dir)
            write_task_config(task)
        except OSError as e:
            raise WorkspaceError(f"Cannot prepare workspace for {task.id}: {e}") from e

    def _reclaim(self, task: Task) -> None:
        try:
            shutil.rmtree(task.data_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise WorkspaceError(f"Cannot remove data dir {task.data_dir}: {e}") from e

    async def _execute(self, task: Task, env: Dict[str, str]):
        cwd = self.cwd if self.cwd is not None else task.data_dir
        try:
            logf = open(task.log_path, "w")
        except OSError as e:
            raise WorkspaceError(f"Cannot open {task.log_path}: {e}") from e

        with logf:
            try:
                proc = await asyncio.create_subprocess_exec(
                    *task.argv,
                    cwd=str(cwd),
                    env=env,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                )
            except OSError as e:
                raise SpawnError(f"Cannot launch {task.argv[0]!r}: {e}") from e

            logging.debug(f"[Scheduler] Spawned pid {proc.pid} for {task.display_name} ({task.id})")
            pump = asyncio.ensure_future(self._pump(proc.stdout, logf, task.display_name))
            exited = asyncio.ensure_future(proc.wait())
            try:
                await asyncio.wait({pump, exited}, timeout=self.timeout, return_when=asyncio.FIRST_EXCEPTION)
                if pump.done() and pump.exception() is not None:
                    raise pump.exception()
                timed_out = not exited.done()
            finally:
                # the child must not outlive its task, whatever interrupted the wait
                if proc.returncode is None:
                    try:
                        proc.kill()
                    except ProcessLookupError:
                        pass
                # wait() only resolves once the pipe reaches EOF
                if pump.done():
                    while await proc.stdout.read(CHUNK_SIZE):
                        pass
                else:
                    await pump
                await exited
        return proc.returncode, timed_out

    async def _pump(self, stream, logf, prefix: str) -> None:
        """Drain child output into run.log in fixed-size chunks until EOF.

        Complete lines are echoed to the debug log. A line longer than
        LINE_LIMIT is echoed truncated. If run.log stops accepting writes the
        output is still drained, so the child never blocks on a full pipe.
        """
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        writable = True
        eof = False
        while not eof:
            chunk = await stream.read(CHUNK_SIZE)
            eof = not chunk
            text = decoder.decode(chunk, final=eof)
            if writable and text:
                try:
                    logf.write(text)
                except OSError as e:
                    writable = False
                    logging.warning(f"[{prefix}] Cannot write {logf.name}, discarding further output: {e}")
            pending += text
            *lines, pending = pending.split("\n")
            for line in lines:
                logging.debug(f"[{prefix}] {line.rstrip(CRLF)}")
            if len(pending) > LINE_LIMIT:
                logging.debug(f"[{prefix}] {pending[:200]}... ({len(pending)} chars, line truncated)")
                pending = ""
        if pending:
            logging.debug(f"[{prefix}] {pending.rstrip(CRLF)}")

    def _notify(self, task: Task, state: TaskState, outcome: Optional[RunOutcome] = None) -> None:
        try:
            self.reporter.handle(TaskEvent(task=task, state=state, outcome=outcome))
        except Exception as e:
            logging.warning(f"[Scheduler] Progress reporter failed on {state.value} for {task.id}: {e!r}")


def run_tasks(tasks: Sequence[Task], **kwargs) -> List[RunOutcome]:
    """Blocking entry point: build a Scheduler from kwargs and run it to completion."""
    return asyncio.run(Scheduler(**kwargs).run(tasks))
