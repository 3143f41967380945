import asyncio
import json
import os

import pytest

from kvstore_benchmark.errors import TaskFailure, TaskOOM
from kvstore_benchmark.models import TaskState
from kvstore_benchmark.scheduler import Scheduler, run_tasks


def test_outcomes_by_exit_code(make_tasks, recorder):
    tasks = make_tasks(["ok", "fail", "oom"])
    outcomes = run_tasks(tasks, parallelism=3, reporter=recorder)

    assert [o.task.id for o in outcomes] == [t.id for t in tasks]
    assert [o.state for o in outcomes] == [TaskState.SUCCEEDED, TaskState.FAILED, TaskState.KILLED_OOM]
    assert [o.exit_code for o in outcomes] == [0, 3, 777]
    assert outcomes[0].ok
    outcomes[0].raise_for_status()
    with pytest.raises(TaskFailure):
        outcomes[1].raise_for_status()
    with pytest.raises(TaskOOM):
        outcomes[2].raise_for_status()


def test_oom_exit_code_is_configurable(make_tasks):
    (outcome,) = run_tasks(make_tasks(["oom"]), parallelism=1, oom_exit_code=137)
    assert outcome.state is TaskState.FAILED
    assert outcome.exit_code == 777


def test_data_dir_reclaimed_and_results_kept(make_tasks, recorder):
    tasks = make_tasks(["ok", "fail", "oom"])
    run_tasks(tasks, parallelism=2, reporter=recorder)

    for event in recorder.terminal():
        task = event.task
        assert not task.data_dir.exists()
        assert task.result_dir.is_dir()
        config = json.loads(task.config_path.read_text())
        assert config["id"] == task.id
        assert task.stats_path.exists()
        log = task.log_path.read_text()
        assert "warming up" in log
        assert f"cwd={task.data_dir}" in log


def test_state_sequence_per_task(make_tasks, recorder):
    tasks = make_tasks(["ok", "fail"])
    run_tasks(tasks, parallelism=1, reporter=recorder)
    assert recorder.states_for(tasks[0].id) == [
        TaskState.PENDING, TaskState.SCHEDULED, TaskState.RUNNING, TaskState.SUCCEEDED, TaskState.RECLAIMED,
    ]
    assert recorder.states_for(tasks[1].id)[-2:] == [TaskState.FAILED, TaskState.RECLAIMED]
    terminal = recorder.terminal()
    assert all(e.outcome is not None and e.outcome.elapsed >= 0 for e in terminal)


def test_running_count_never_exceeds_parallelism(make_tasks, recorder):
    tasks = make_tasks([f"sleep-0.{i + 2}" for i in range(5)])
    scheduler = Scheduler(parallelism=2, reporter=recorder)
    outcomes = asyncio.run(scheduler.run(tasks))

    assert len(recorder.terminal()) == 5
    assert all(o.state is TaskState.SUCCEEDED for o in outcomes)
    assert recorder.peak_running == 2
    assert scheduler.peak_occupied == 2
    assert scheduler.occupied == 0


def test_admission_is_fifo(make_tasks, recorder):
    tasks = make_tasks([f"sleep-0.0{i}" for i in range(1, 6)])
    run_tasks(tasks, parallelism=2, reporter=recorder)
    started = [e.task.id for e in recorder.events if e.state is TaskState.SCHEDULED]
    assert started == [t.id for t in tasks]


def test_spawn_error_fails_only_that_task(make_tasks, fake_command, tmp_path, recorder):
    broken = make_tasks(["ok"], command=[str(tmp_path / "no-such-bench")])
    good = make_tasks(["ok"], command=fake_command)
    outcomes = run_tasks(broken + good, parallelism=1, reporter=recorder)

    assert outcomes[0].state is TaskState.FAILED
    assert outcomes[0].exit_code is None
    assert "Cannot launch" in outcomes[0].error
    assert not broken[0].data_dir.exists()
    assert broken[0].config_path.exists()
    assert outcomes[1].state is TaskState.SUCCEEDED


def test_workspace_error_never_spawns(make_tasks, tmp_path):
    (task,) = make_tasks(["ok"])
    # a file where the result root should be makes directory creation fail
    task.result_dir.parent.parent.mkdir(parents=True, exist_ok=True)
    task.result_dir.parent.write_text("not a directory")

    (outcome,) = run_tasks([task], parallelism=1)
    assert outcome.state is TaskState.FAILED
    assert outcome.exit_code is None
    assert "workspace" in outcome.error
    assert not task.data_dir.exists()


def test_reporter_errors_do_not_fail_tasks(make_tasks):
    class Exploding:
        def handle(self, event):
            raise RuntimeError("boom")

    outcomes = run_tasks(make_tasks(["ok", "ok"]), parallelism=2, reporter=Exploding())
    assert all(o.state is TaskState.SUCCEEDED for o in outcomes)


def test_timeout_kills_hung_child(make_tasks):
    tasks = make_tasks(["hang", "ok"])
    outcomes = run_tasks(tasks, parallelism=2, timeout=0.5)
    assert outcomes[0].state is TaskState.FAILED
    assert "timeout" in outcomes[0].error
    assert not tasks[0].data_dir.exists()
    assert outcomes[1].state is TaskState.SUCCEEDED


def test_log_env_defaults_quiet_unless_operator_sets_it(make_tasks, monkeypatch):
    monkeypatch.delenv("RUST_LOG", raising=False)
    (quiet,) = make_tasks(["ok"])
    run_tasks([quiet], parallelism=1)
    assert "log-env=error" in quiet.log_path.read_text()

    monkeypatch.setenv("RUST_LOG", "debug")
    (loud,) = make_tasks(["ok"])
    run_tasks([loud], parallelism=1)
    assert "log-env=debug" in loud.log_path.read_text()


def test_child_env_merges_extra_env(monkeypatch):
    monkeypatch.delenv("RUST_LOG", raising=False)
    env = Scheduler(parallelism=1, env={"EXTRA": "1"}).child_env()
    assert env["EXTRA"] == "1"
    assert env["RUST_LOG"] == "error"
    assert env["PATH"] == os.environ["PATH"]
    assert "RUST_LOG" not in Scheduler(parallelism=1, log_env_var=None).child_env()


def test_explicit_cwd(make_tasks, tmp_path):
    (task,) = make_tasks(["ok"])
    run_tasks([task], parallelism=1, cwd=tmp_path)
    assert f"cwd={tmp_path.resolve()}" in task.log_path.read_text()


def test_empty_task_list():
    assert run_tasks([], parallelism=4) == []


@pytest.mark.parametrize("kwargs", [{"parallelism": 0}, {"parallelism": 1, "timeout": 0}])
def test_invalid_settings(kwargs):
    with pytest.raises(ValueError):
        Scheduler(**kwargs)


def test_unterminated_multi_megabyte_output_does_not_break_the_run(make_tasks):
    tasks = make_tasks(["bigline", "sleep-0.3"])
    outcomes = run_tasks(tasks, parallelism=2, timeout=20)

    assert [o.state for o in outcomes] == [TaskState.SUCCEEDED, TaskState.SUCCEEDED]
    assert all(not t.data_dir.exists() for t in tasks)
    assert "x" * (3 << 20) in tasks[0].log_path.read_text()


def test_unexpected_error_fails_task_kills_child_and_reclaims(make_tasks):
    class BrokenLogScheduler(Scheduler):
        calls = 0

        async def _pump(self, stream, logf, prefix):
            BrokenLogScheduler.calls += 1
            if BrokenLogScheduler.calls == 1:
                raise RuntimeError("log sink exploded")
            await super()._pump(stream, logf, prefix)

    tasks = make_tasks(["sleep-30", "ok"])
    outcomes = asyncio.run(BrokenLogScheduler(parallelism=1).run(tasks))

    assert outcomes[0].state is TaskState.FAILED
    assert outcomes[0].error == "RuntimeError: log sink exploded"
    assert outcomes[0].elapsed < 20
    assert not tasks[0].data_dir.exists()
    assert outcomes[1].state is TaskState.SUCCEEDED


def test_output_still_drained_when_run_log_rejects_writes():
    class FullDisk:
        name = "run.log"

        def write(self, text):
            raise OSError(28, "No space left on device")

    async def drain():
        stream = asyncio.StreamReader()
        stream.feed_data(b"line one\n" + b"y" * (200 << 10))
        stream.feed_eof()
        await Scheduler(parallelism=1)._pump(stream, FullDisk(), "redb")
        return stream.at_eof()

    assert asyncio.run(drain())
