# bench_config.py
# Run-file parsing, reference resolution, and expansion of axis spaces into configurations.

from __future__ import annotations
import enum
import itertools
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml

from .capabilities import CapabilityRegistry
from .errors import ConfigError, InvalidAxisSpace


class Sentinel(enum.Enum):
    NOT_APPLICABLE = "n/a"

    def __repr__(self):
        return "NOT_APPLICABLE"


# Marks a knob that has no meaning for the configuration it sits in.
NOT_APPLICABLE = Sentinel.NOT_APPLICABLE

AxisValue = Union[bool, int, float, str, Sentinel]

# Order matters: it is the order flags are emitted in.
AXES = (
    "workload",
    "backend",
    "variant",
    "fsync",
    "items",
    "threads",
    "minutes",
    "granularity_ms",
    "key_size",
    "value_size",
    "cache_size",
    "lsm_block_size",
    "lsm_kv_separation",
    "lsm_compression",
    "lsm_compaction",
)

LSM_AXES = ("lsm_block_size", "lsm_kv_separation", "lsm_compression", "lsm_compaction")

# Emitted as bare presence flags, so only true, false or null make sense.
BOOL_AXES = ("fsync", "lsm_kv_separation")


@dataclass(frozen=True)
class Configuration:
    """One concrete assignment of a value to every axis of an axis space.

    Axes the axis space did not declare stay NOT_APPLICABLE; ``axes`` lists
    the declared ones so the filter can tell "left to the executable" apart
    from "explicitly not applicable".
    """
    backend: str
    workload: AxisValue = NOT_APPLICABLE
    variant: AxisValue = NOT_APPLICABLE
    fsync: AxisValue = NOT_APPLICABLE
    items: AxisValue = NOT_APPLICABLE
    threads: AxisValue = NOT_APPLICABLE
    minutes: AxisValue = NOT_APPLICABLE
    granularity_ms: AxisValue = NOT_APPLICABLE
    key_size: AxisValue = NOT_APPLICABLE
    value_size: AxisValue = NOT_APPLICABLE
    cache_size: AxisValue = NOT_APPLICABLE
    lsm_block_size: AxisValue = NOT_APPLICABLE
    lsm_kv_separation: AxisValue = NOT_APPLICABLE
    lsm_compression: AxisValue = NOT_APPLICABLE
    lsm_compaction: AxisValue = NOT_APPLICABLE
    axes: Tuple[str, ...] = ()

    def value(self, axis: str) -> AxisValue:
        return getattr(self, axis)

    def is_set(self, axis: str) -> bool:
        return getattr(self, axis) is not NOT_APPLICABLE

    def as_dict(self) -> Dict[str, Any]:
        """JSON-friendly view; NOT_APPLICABLE becomes None."""
        out = {}
        for f in fields(self):
            if f.name == "axes":
                continue
            v = getattr(self, f.name)
            out[f.name] = None if v is NOT_APPLICABLE else v
        out["axes"] = list(self.axes)
        return out


def deep_merge(a, b):
    """Non-destructive recursive merge: values in b override a."""
    if isinstance(a, dict) and isinstance(b, dict):
        out = dict(a)
        for k, v in b.items():
            out[k] = deep_merge(a.get(k), v)
        return out
    return b if b is not None else a


def resolve_refs(d, ctx):
    """Recursively resolve ${a.b.c} anywhere in strings (embedded or whole)."""
    def lookup(path):
        cur = ctx
        for p in path.split("."):
            try:
                cur = cur[p]
            except (KeyError, TypeError):
                raise ConfigError(f"Unresolvable reference: ${{{path}}}") from None
        return cur

    def _resolve_val(v):
        if isinstance(v, str):
            def repl(m):
                return str(lookup(m.group(1)))
            return re.sub(r"\$\{([^}]+)\}", repl, v)
        return v

    if isinstance(d, dict):
        return {k: resolve_refs(_resolve_val(v), ctx) for k, v in d.items()}
    if isinstance(d, list):
        return [resolve_refs(_resolve_val(v), ctx) for v in d]
    return _resolve_val(d)


def ensure_dir(p: Path):
    p.mkdir(parents=True, exist_ok=True)


def _normalize_axis(name: str, raw: Any) -> List[AxisValue]:
    values = raw if isinstance(raw, (list, tuple)) else [raw]
    if not values:
        raise InvalidAxisSpace(f"Axis {name!r} has no candidate values")
    out: List[AxisValue] = []
    seen = set()
    for v in values:
        if v is None:
            v = NOT_APPLICABLE
        elif name in BOOL_AXES and not isinstance(v, (bool, Sentinel)):
            raise InvalidAxisSpace(f"Axis {name!r} must be true, false or null, got {v!r}")
        elif not isinstance(v, (bool, int, float, str, Sentinel)):
            raise InvalidAxisSpace(f"Axis {name!r} has a non-scalar value: {v!r}")
        key = (type(v), v)
        if key in seen:
            raise InvalidAxisSpace(f"Axis {name!r} lists {v!r} more than once")
        seen.add(key)
        out.append(v)
    return out


def expand_grid(grid: Mapping[str, Any]) -> List[Configuration]:
    """Cartesian product of an axis space, one Configuration per combination.

    Axes are iterated in declaration order with the last axis varying
    fastest, so the same axis space always expands to the same list.
    """
    unknown = [k for k in grid if k not in AXES]
    if unknown:
        raise InvalidAxisSpace(f"Unknown axes: {unknown} (known: {list(AXES)})")
    if "backend" not in grid:
        raise InvalidAxisSpace("Axis space must declare a 'backend' axis")

    keys = list(grid.keys())
    vals = [_normalize_axis(k, grid[k]) for k in keys]
    if any(not isinstance(v, str) for v in vals[keys.index("backend")]):
        raise InvalidAxisSpace("Every 'backend' value must be a backend name")

    axes = tuple(keys)
    return [Configuration(axes=axes, **dict(zip(keys, combo))) for combo in itertools.product(*vals)]


# ---------------- run file ----------------

DEFAULTS: Dict[str, Any] = {
    "command": ["rust-storage-bench"],
    "parallelism": 1,
    "data_root": ".data",
    "result_root": ".results",
    "oom_exit_code": 777,
    "timeout_sec": None,
    "clean_data_root": True,
    "log_env_var": "RUST_LOG",
    "log_env_default": "error",
    "env": {},
    "workdir": None,
    "durability_exempt_workloads": [],
}


@dataclass
class StepConfig:
    name: str
    axes: Dict[str, Any]
    command: List[str]
    parallelism: int
    data_root: Path
    result_root: Path
    oom_exit_code: int
    timeout_sec: Optional[float]
    env: Dict[str, str]
    log_env_var: str
    log_env_default: str
    workdir: Optional[Path] = None
    durability_exempt_workloads: List[str] = field(default_factory=list)


@dataclass
class RunConfig:
    steps: List[StepConfig]
    registry: CapabilityRegistry
    clean_data_root: bool = True

    def select(self, name: Optional[str]) -> List[StepConfig]:
        if name is None:
            return list(self.steps)
        picked = [s for s in self.steps if s.name == name]
        if not picked:
            raise ConfigError(f"No step named {name!r} (have: {[s.name for s in self.steps]})")
        return picked


def load_config(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r") as f:
            raw = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse config {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Config {path} must be a mapping at top level")
    return raw


def _as_int(step: str, key: str, v: Any, minimum: Optional[int] = None) -> int:
    if isinstance(v, bool) or not isinstance(v, (int, str)):
        raise ConfigError(f"[{step}] {key} must be an integer, got {v!r}")
    try:
        n = int(v)
    except ValueError:
        raise ConfigError(f"[{step}] {key} must be an integer, got {v!r}") from None
    if minimum is not None and n < minimum:
        raise ConfigError(f"[{step}] {key} must be >= {minimum}, got {n}")
    return n


def _build_step(idx: int, raw_step: Dict[str, Any], defaults: Dict[str, Any]) -> StepConfig:
    name = str(raw_step.get("name") or f"step{idx}")
    axes = raw_step.get("axes")
    if not isinstance(axes, dict) or not axes:
        raise ConfigError(f"[{name}] step needs a non-empty 'axes' mapping")

    if "clean_data_root" in raw_step:
        raise ConfigError(f"[{name}] clean_data_root applies to the whole run; set it under defaults")
    merged = deep_merge(defaults, {k: v for k, v in raw_step.items() if k not in ("name", "axes")})
    unknown = set(merged) - set(DEFAULTS)
    if unknown:
        raise ConfigError(f"[{name}] unknown settings: {sorted(unknown)}")

    command = merged["command"]
    if isinstance(command, str):
        command = [command]
    if not isinstance(command, list) or not command:
        raise ConfigError(f"[{name}] command must be a non-empty list of arguments")
    command = [str(c) for c in command]
    # a relative executable path would otherwise resolve against the task's working directory
    if "/" in command[0] and not Path(command[0]).is_absolute():
        command[0] = str(Path(command[0]).resolve())

    workdir = merged["workdir"]
    if workdir is not None:
        workdir = Path(str(workdir)).expanduser().resolve()

    timeout = merged["timeout_sec"]
    if timeout is not None:
        try:
            timeout = float(timeout)
        except (TypeError, ValueError):
            raise ConfigError(f"[{name}] timeout_sec must be a number, got {timeout!r}") from None

    return StepConfig(
        name=name,
        axes=axes,
        command=command,
        parallelism=_as_int(name, "parallelism", merged["parallelism"], minimum=1),
        data_root=Path(str(merged["data_root"])).expanduser().resolve(),
        result_root=Path(str(merged["result_root"])).expanduser().resolve(),
        oom_exit_code=_as_int(name, "oom_exit_code", merged["oom_exit_code"]),
        timeout_sec=timeout,
        env={str(k): str(v) for k, v in (merged["env"] or {}).items()},
        log_env_var=str(merged["log_env_var"]),
        log_env_default=str(merged["log_env_default"]),
        workdir=workdir,
        durability_exempt_workloads=[str(w) for w in (merged["durability_exempt_workloads"] or [])],
    )


def resolve_config(raw: Dict[str, Any]) -> RunConfig:
    """Turn a parsed run file into a RunConfig.

    - ``defaults`` is merged over the built-in defaults and may be referenced
      as ``${defaults.<key>}`` anywhere in the file
    - ``backends`` overrides or extends the known capability records
    - every entry of ``steps`` may override any default
    """
    defaults = deep_merge(DEFAULTS, raw.get("defaults") or {})
    cfg = resolve_refs(raw, {"defaults": defaults})
    defaults = deep_merge(DEFAULTS, cfg.get("defaults") or {})

    steps_raw = cfg.get("steps")
    if not isinstance(steps_raw, list) or not steps_raw:
        raise ConfigError("Config needs a non-empty 'steps' list")

    steps = []
    for idx, s in enumerate(steps_raw):
        if not isinstance(s, dict):
            raise ConfigError(f"Step #{idx} must be a mapping, got {s!r}")
        steps.append(_build_step(idx, s, defaults))
    names = [s.name for s in steps]
    if len(set(names)) != len(names):
        raise ConfigError(f"Step names must be unique: {names}")

    registry = CapabilityRegistry.default().with_overrides(cfg.get("backends"))
    return RunConfig(steps=steps, registry=registry, clean_data_root=bool(defaults["clean_data_root"]))
