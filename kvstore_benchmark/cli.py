import argparse
import logging
import shutil
import sys
from pathlib import Path

from kvstore_benchmark.bench_config import expand_grid, load_config, resolve_config
from kvstore_benchmark.bench_pipeline import append_summary, build_tasks, format_command
from kvstore_benchmark.constraints import filter_configurations
from kvstore_benchmark.errors import BenchmarkError
from kvstore_benchmark.progress import TqdmReporter
from kvstore_benchmark.scheduler import run_tasks

DEFAULT_CONFIG = Path(__file__).with_name("config.yaml")


def plan_steps(run_cfg, step_name=None):
    """Expand, filter and build every selected step up front.

    Structural errors in any step surface here, before a single process runs.
    """
    planned = []
    for step in run_cfg.select(step_name):
        configs = expand_grid(step.axes)
        kept = filter_configurations(configs, run_cfg.registry, step.durability_exempt_workloads)
        tasks = build_tasks(kept, step.command, step.data_root, step.result_root)
        logging.info(f"[Plan] {step.name}: {len(configs)} combinations, {len(tasks)} tasks")
        planned.append((step, len(configs), tasks))
    return planned


def print_plan(planned):
    for step, n_raw, tasks in planned:
        print(f"\n==> Step {step.name}: {len(tasks)} of {n_raw} combinations, parallelism={step.parallelism}")
        for task in tasks:
            print(f"[{task.display_name}] {task.id}")
            print("CMD:", format_command(task.argv))


def clean_data_roots(steps):
    for root in sorted({s.data_root for s in steps}):
        if root.exists():
            logging.info(f"[Run] Removing stale data root {root}")
            shutil.rmtree(root)


def run_steps(run_cfg, planned, parallelism=None):
    if run_cfg.clean_data_root:
        clean_data_roots([step for step, _, _ in planned])

    for step, _, tasks in planned:
        print(f"\n==> Running step {step.name} ({len(tasks)} tasks)")
        reporter = TqdmReporter(total=len(tasks), desc=step.name)
        try:
            outcomes = run_tasks(
                tasks,
                parallelism=parallelism or step.parallelism,
                oom_exit_code=step.oom_exit_code,
                env=step.env,
                cwd=step.workdir,
                timeout=step.timeout_sec,
                reporter=reporter,
                log_env_var=step.log_env_var,
                log_env_default=step.log_env_default,
            )
        finally:
            reporter.close()
        csv_path = append_summary(outcomes, step.result_root)
        ok = sum(1 for o in outcomes if o.ok)
        print(f"[Done] {step.name}: {ok}/{len(outcomes)} succeeded")
        if csv_path is not None:
            print("Summary appended to", csv_path)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Matrix driver for key-value store benchmarks")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging, including child output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (("run", "Expand the matrix and run every task"),
                            ("plan", "Print the filtered matrix without running anything")):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("-c", "--config", default=str(DEFAULT_CONFIG), help="Path to configuration file")
        sub.add_argument("--step", default=None, help="Only this step of the config")
        if name == "run":
            sub.add_argument("-j", "--parallelism", type=int, default=None,
                             help="Override the configured number of concurrent tasks")
            sub.add_argument("--dry", action="store_true", help="Print commands instead of running them")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )

    if getattr(args, "parallelism", None) is not None and args.parallelism < 1:
        parser.error("--parallelism must be >= 1")

    try:
        run_cfg = resolve_config(load_config(Path(args.config)))
        planned = plan_steps(run_cfg, args.step)
    except BenchmarkError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    if args.command == "plan" or args.dry:
        print_plan(planned)
        return 0

    run_steps(run_cfg, planned, parallelism=args.parallelism)
    return 0


if __name__ == "__main__":
    sys.exit(main())
