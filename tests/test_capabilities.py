import pytest

from kvstore_benchmark.capabilities import KNOWN_BACKENDS, BackendCapability, CapabilityRegistry
from kvstore_benchmark.errors import ConfigError, UnknownBackend


def test_default_registry_is_a_fresh_value():
    a = CapabilityRegistry.default()
    b = CapabilityRegistry.default()
    assert a is not b
    assert len(a) == len(KNOWN_BACKENDS)
    assert a.lookup("sled").supports_durable is False
    assert a.lookup("fjall").is_log_structured is True
    assert a.lookup("redb").is_log_structured is False


def test_lookup_unknown():
    with pytest.raises(UnknownBackend):
        CapabilityRegistry.default().lookup("lmdb")


def test_duplicate_records_rejected():
    cap = BackendCapability("x", True, True, False)
    with pytest.raises(ConfigError, match="Duplicate"):
        CapabilityRegistry([cap, cap])


def test_overrides_replace_and_add_without_touching_original():
    base = CapabilityRegistry.default()
    merged = base.with_overrides({"sled": {"durable": True}, "lmdb": {"durable": True, "non_durable": True}})
    assert merged.lookup("sled") == BackendCapability("sled", True, True, False)
    assert merged.lookup("lmdb") == BackendCapability("lmdb", True, True, False)
    assert base.lookup("sled").supports_durable is False
    assert "lmdb" not in base


def test_override_must_be_a_mapping():
    with pytest.raises(ConfigError, match="mapping"):
        CapabilityRegistry.default().with_overrides({"sled": True})
