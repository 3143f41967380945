# bench_pipeline.py
# Building tasks from filtered configurations, persisting their config, and the per-step summary.

from __future__ import annotations
import csv
import json
import shlex
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Sequence

from .bench_config import NOT_APPLICABLE, Configuration
from .models import RunOutcome, Task

# axis -> flag of the benchmark executable; ``variant`` only feeds --display-name.
ARG_MAP = {
    "workload": "workload",
    "backend": "backend",
    "fsync": "fsync",
    "items": "items",
    "threads": "threads",
    "minutes": "minutes",
    "granularity_ms": "granularity-ms",
    "key_size": "key-size",
    "value_size": "value-size",
    "cache_size": "cache-size",
    "lsm_block_size": "lsm-block-size",
    "lsm_kv_separation": "lsm-kv-separation",
    "lsm_compression": "lsm-compression",
    "lsm_compaction": "lsm-compaction",
}

SUMMARY_FIELDS = ["id", "display_name", "workload", "backend", "state", "exit_code", "duration_sec", "error"]


def build_cli_args(arg_map: Dict[str, str], config: Configuration) -> List[str]:
    """Emit one flag per axis in arg_map order; booleans are presence flags, NOT_APPLICABLE is dropped."""
    cli = []
    for axis, cli_name in arg_map.items():
        value = config.value(axis)
        if value is NOT_APPLICABLE:
            continue
        flag = f"--{cli_name}"
        if isinstance(value, bool):
            if value:
                cli.append(flag)
        else:
            cli += [flag, str(value)]
    return cli


def display_name(config: Configuration) -> str:
    if config.is_set("variant"):
        return f"{config.backend}-{config.variant}"
    return config.backend


def new_task_id() -> str:
    return uuid.uuid4().hex


def build_task(
    config: Configuration,
    command: Sequence[str],
    data_root: Path,
    result_root: Path,
    task_id: str,
) -> Task:
    data_dir = (Path(data_root) / task_id).resolve()
    result_dir = (Path(result_root) / task_id).resolve()
    name = display_name(config)
    argv = list(command) + build_cli_args(ARG_MAP, config)
    argv += ["--out", str(result_dir / "stats.jsonl")]
    argv += ["--data-dir", str(data_dir)]
    argv += ["--display-name", name]
    return Task(
        id=task_id,
        configuration=config,
        data_dir=data_dir,
        result_dir=result_dir,
        argv=tuple(argv),
        display_name=name,
    )


def build_tasks(
    configs: Iterable[Configuration],
    command: Sequence[str],
    data_root: Path,
    result_root: Path,
    id_factory: Callable[[], str] = new_task_id,
) -> List[Task]:
    tasks = []
    seen = set()
    for config in configs:
        task_id = id_factory()
        if task_id in seen:
            raise ValueError(f"Task id factory returned a duplicate id: {task_id}")
        seen.add(task_id)
        tasks.append(build_task(config, command, data_root, result_root, task_id))
    return tasks


def format_command(argv: Sequence[str]) -> str:
    return " ".join(shlex.quote(x) for x in argv)


def write_task_config(task: Task) -> Path:
    """Write <result_dir>/config.json; the directory must already exist."""
    path = task.config_path
    with open(path, "w") as f:
        json.dump(task.as_dict(), f, indent=2)
    return path


def summary_row(outcome: RunOutcome) -> Dict[str, Any]:
    cfg = outcome.task.configuration
    return {
        "id": outcome.task.id,
        "display_name": outcome.task.display_name,
        "workload": cfg.workload if cfg.is_set("workload") else None,
        "backend": cfg.backend,
        "state": outcome.state.value,
        "exit_code": outcome.exit_code,
        "duration_sec": round(outcome.elapsed, 2),
        "error": outcome.error,
    }


def append_summary(outcomes: List[RunOutcome], out_root: Path):
    if not outcomes:
        return None
    csv_path = Path(out_root) / "summary.csv"
    csv_path.parent.mkdir(parents=True, exist_ok=True)

    write_header = (not csv_path.exists()) or (csv_path.stat().st_size == 0)
    with open(csv_path, "a", newline="") as f:
        w = csv.DictWriter(f, fieldnames=SUMMARY_FIELDS)
        if write_header:
            w.writeheader()
        w.writerows(summary_row(o) for o in outcomes)
    return csv_path
