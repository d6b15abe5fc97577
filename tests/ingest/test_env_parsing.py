from __future__ import annotations

from decimal import Decimal

import pytest

from lob_ingest.settings import IngestSettings, parse_depths, parse_floats


def test_from_env_reads_overrides(monkeypatch):
    monkeypatch.setenv("SYMBOL", "ethusdt")
    monkeypatch.setenv("DEPTHS", "50, 10,10")
    monkeypatch.setenv("TICK_SIZE", "0.1")
    monkeypatch.setenv("RUN_BUDGET_S", "120")
    monkeypatch.setenv("SNAPSHOT_RETRY_MAX", "3")
    monkeypatch.setenv("INSECURE_TLS", "yes")

    s = IngestSettings.from_env()

    assert s.symbol == "ethusdt"
    assert s.depths == (10, 50)
    assert s.tick_size == Decimal("0.1")
    assert s.run_budget_s == 120.0
    assert s.snapshot_retry_max == 3
    assert s.insecure_tls is True


def test_from_env_falls_back_on_bad_values(monkeypatch):
    monkeypatch.setenv("RUN_BUDGET_S", "soon")
    monkeypatch.setenv("TICK_SIZE", "-1")
    monkeypatch.setenv("RECOVERY_BUFFER_MAX", "0")
    monkeypatch.delenv("SYMBOL", raising=False)

    s = IngestSettings.from_env()

    assert s.symbol == ""
    assert s.run_budget_s == 840.0
    assert s.tick_size == Decimal("0.01")
    assert s.recovery_buffer_max == 1


def test_parse_depths_rejects_bad_entries():
    assert parse_depths(None) == (10, 20, 50)
    assert parse_depths(" ") == (10, 20, 50)
    with pytest.raises(ValueError):
        parse_depths("10,x")
    with pytest.raises(ValueError):
        parse_depths("10,-5")


def test_parse_floats_default_on_error():
    assert parse_floats("1,2.5", (9.0,)) == (1.0, 2.5)
    assert parse_floats("1,a", (9.0,)) == (9.0,)
