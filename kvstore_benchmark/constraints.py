# constraints.py
# Drops configurations a backend cannot honour.

from __future__ import annotations
import logging
from typing import Iterable, List, Optional

from .bench_config import LSM_AXES, NOT_APPLICABLE, Configuration
from .capabilities import BackendCapability, CapabilityRegistry


def violation(config: Configuration, cap: BackendCapability, exempt_workloads: Iterable[str] = ()) -> Optional[str]:
    """Return the first rule ``config`` breaks for ``cap``, or None if it is valid."""
    if config.workload not in set(exempt_workloads):
        if config.fsync is True and not cap.supports_durable:
            return f"{cap.name} cannot run with fsync"
        if config.fsync is False and not cap.supports_non_durable:
            return f"{cap.name} cannot run without fsync"

    # Only axes the axis space declared take part; undeclared ones are left to the executable.
    declared = [a for a in LSM_AXES if a in config.axes]
    if cap.is_log_structured:
        missing = [a for a in declared if config.value(a) is NOT_APPLICABLE]
        if missing:
            return f"{cap.name} is log-structured but {', '.join(missing)} not set"
    else:
        stray = [a for a in declared if config.value(a) is not NOT_APPLICABLE]
        if stray:
            return f"{cap.name} is not log-structured but sets {', '.join(stray)}"
    return None


def filter_configurations(
    configs: Iterable[Configuration],
    registry: CapabilityRegistry,
    exempt_workloads: Iterable[str] = (),
) -> List[Configuration]:
    """Keep the configurations every backend can actually run, preserving order.

    Raises UnknownBackend for a backend the registry has no record of; that is
    a malformed matrix, not something to skip over.
    """
    exempt = frozenset(exempt_workloads)
    kept: List[Configuration] = []
    dropped = 0
    for config in configs:
        cap = registry.lookup(config.backend)
        reason = violation(config, cap, exempt)
        if reason is None:
            kept.append(config)
        else:
            dropped += 1
            logging.debug(f"[Filter] Dropping {config.as_dict()}: {reason}")
    logging.info(f"[Filter] Kept {len(kept)} of {len(kept) + dropped} configurations")
    return kept
