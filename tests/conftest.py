from __future__ import annotations

from typing import Any

import pytest

from agent.event_journal import EventJournal
from agent.models import ConnectionRecord, Protocol


@pytest.fixture
def journal_path(tmp_path) -> str:
    return str(tmp_path / "pm_logs.csv")


@pytest.fixture
def journal(journal_path) -> EventJournal:
    """Journal backed by a throwaway CSV file."""
    return EventJournal(journal_path)


@pytest.fixture
def make_record():
    """Factory for connection records with sensible defaults."""

    def _make(
        port: int = 8080,
        protocol: str = "TCP",
        name: str = "app.exe",
        path: str = "C:\\Program Files\\App\\app.exe",
        **kw: Any,
    ) -> ConnectionRecord:
        kw.setdefault("local_address", "0.0.0.0")
        if protocol == "TCP":
            kw.setdefault("state", "LISTEN")
        rec = ConnectionRecord(protocol=Protocol.parse(protocol), local_port=port, **kw)
        rec.process_name = name
        rec.process_path = path
        return rec

    return _make


def assert_has_keys(obj: dict[str, Any], required: tuple[str, ...]) -> None:
    missing = [k for k in required if k not in obj]
    assert not missing, f"Missing keys: {missing} in {obj}"
