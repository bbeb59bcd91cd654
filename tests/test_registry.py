from __future__ import annotations

import pytest

from conftest import FakeHandle
from conductor.engine.errors import (
    ProcessAlreadyRegisteredError,
    ProcessInactiveError,
    ProcessNotFoundError,
)
from conductor.engine.models import ProcessEntry, make_process_id
from conductor.engine.registry import ProcessRegistry


def _entry(pid: str) -> ProcessEntry:
    return ProcessEntry(process_id=pid, project_path="/work", handle=FakeHandle())


def test_register_and_lookup():
    registry = ProcessRegistry()
    entry = _entry("p-1")
    registry.register(entry)

    assert registry.lookup("p-1") is entry
    assert registry.require("p-1") is entry
    assert "p-1" in registry
    assert len(registry) == 1


def test_duplicate_registration_is_rejected():
    registry = ProcessRegistry()
    registry.register(_entry("p-1"))
    with pytest.raises(ProcessAlreadyRegisteredError):
        registry.register(_entry("p-1"))
    assert len(registry) == 1


def test_require_distinguishes_missing_and_inactive():
    registry = ProcessRegistry()
    registry.register(_entry("p-1"))

    with pytest.raises(ProcessNotFoundError):
        registry.require("nope")

    assert registry.mark_inactive("p-1") is True
    assert registry.mark_inactive("p-1") is False
    with pytest.raises(ProcessInactiveError):
        registry.require("p-1")


def test_remove_fires_cancellation_once():
    registry = ProcessRegistry()
    entry = _entry("p-1")
    registry.register(entry)

    assert registry.remove("p-1") is entry
    assert entry.cancellation.cancelled
    assert entry.is_active is False
    assert registry.remove("p-1") is None
    assert registry.lookup("p-1") is None


def test_list_active_skips_inactive_entries():
    registry = ProcessRegistry()
    for pid in ("a", "b", "c"):
        registry.register(_entry(pid))
    registry.mark_inactive("b")

    assert registry.list_active() == ["a", "c"]
    assert [e.process_id for e in registry.entries()] == ["a", "b", "c"]


def test_process_ids_are_unique():
    ids = {make_process_id() for _ in range(500)}
    assert len(ids) == 500
