# capabilities.py
# Backend capability records and the registry the constraint filter consults.

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, Mapping

from .errors import ConfigError, UnknownBackend


@dataclass(frozen=True)
class BackendCapability:
    name: str
    supports_durable: bool
    supports_non_durable: bool
    is_log_structured: bool


# sled and bloodstone never fsync; jammdb and nebari always do.
KNOWN_BACKENDS = (
    BackendCapability("fjall", True, True, True),
    BackendCapability("rocksdb", True, True, True),
    BackendCapability("sled", False, True, False),
    BackendCapability("bloodstone", False, True, False),
    BackendCapability("redb", True, True, False),
    BackendCapability("persy", True, True, False),
    BackendCapability("heed", True, True, False),
    BackendCapability("jammdb", True, False, False),
    BackendCapability("nebari", True, False, False),
)


class CapabilityRegistry:
    """Lookup table of backend name -> BackendCapability.

    Registries are plain values: build one, hand it to the filter. Nothing in
    the package keeps a shared instance around.
    """

    def __init__(self, capabilities: Iterable[BackendCapability] = ()):
        self._by_name: Dict[str, BackendCapability] = {}
        for cap in capabilities:
            if cap.name in self._by_name:
                raise ConfigError(f"Duplicate capability record for backend: {cap.name}")
            self._by_name[cap.name] = cap

    @classmethod
    def default(cls) -> "CapabilityRegistry":
        return cls(KNOWN_BACKENDS)

    def lookup(self, name: str) -> BackendCapability:
        try:
            return self._by_name[name]
        except (KeyError, TypeError):
            raise UnknownBackend(name) from None

    def with_overrides(self, overrides: Mapping[str, Mapping[str, Any]] | None) -> "CapabilityRegistry":
        """Return a new registry with records replaced or added from a config mapping.

        Each override is ``{durable: bool, non_durable: bool, lsm: bool}``;
        keys left out keep the existing record's value (False for new backends).
        """
        merged = dict(self._by_name)
        for name, raw in (overrides or {}).items():
            if not isinstance(raw, Mapping):
                raise ConfigError(f"Backend override for {name!r} must be a mapping, got {raw!r}")
            unknown = set(raw) - {"durable", "non_durable", "lsm"}
            if unknown:
                raise ConfigError(f"Unknown keys in backend override for {name!r}: {sorted(unknown)}")
            base = merged.get(name, BackendCapability(name, False, False, False))
            merged[name] = BackendCapability(
                name=name,
                supports_durable=bool(raw.get("durable", base.supports_durable)),
                supports_non_durable=bool(raw.get("non_durable", base.supports_non_durable)),
                is_log_structured=bool(raw.get("lsm", base.is_log_structured)),
            )
        return CapabilityRegistry(merged.values())

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __iter__(self) -> Iterator[BackendCapability]:
        return iter(self._by_name.values())

    def __len__(self) -> int:
        return len(self._by_name)
