import pytest

from deployctl.models import PROCESSING
from deployctl.repository import (
    counts, enqueue_deployment, fail_stale, find_stale, get_config, retry_failed, set_config,
)
from deployctl.utils import iso_seconds_ago

from conftest import make_record


def test_enqueue_maps_branch_to_environment(store):
    record = enqueue_deployment(store, project="alpha", ref="refs/heads/develop", commit="abc")
    assert record.environment == "development"
    assert record.branch == "develop"
    assert record.actor == "unknown"
    assert store.read(record.id).status == "queued"


def test_enqueue_ids_are_unique_within_a_second(store):
    a = enqueue_deployment(store, project="alpha", ref="main")
    b = enqueue_deployment(store, project="alpha", ref="main")
    assert a.id != b.id
    assert a.id.startswith("alpha_production_")


def test_enqueue_unsupported_branch_returns_none(store):
    assert enqueue_deployment(store, project="alpha", ref="refs/heads/feature/x") is None
    assert list(store.scan("pending")) == []


@pytest.mark.parametrize("kwargs", [
    {"project": "", "ref": "main"},
    {"project": "alpha", "ref": " "},
    {"project": "alpha", "ref": "main", "source_urls": ["a", "b", "c"]},
])
def test_enqueue_validates_input(store, kwargs):
    with pytest.raises(ValueError):
        enqueue_deployment(store, **kwargs)


def test_counts_split_pending_by_status(store):
    store.put(make_record(id="q1"))
    store.put(make_record(id="p1", status=PROCESSING))
    store.put(make_record(id="done"))
    store.move("done", "pending", "processed")
    assert counts(store) == {"queued": 1, "processing": 1, "processed": 1, "failed": 0}


def test_stale_detection_uses_started_at(store):
    store.put(make_record(id="old", status=PROCESSING, started_at=iso_seconds_ago(600)))
    store.put(make_record(id="new", status=PROCESSING, started_at=iso_seconds_ago(5)))
    store.put(make_record(id="queued"))

    assert [r.id for r in find_stale(store, 300)] == ["old"]
    assert fail_stale(store, 300) == ["old"]
    assert store.read("old", "failed").status == "failed"
    assert store.exists("new", "pending")


def test_retry_of_unknown_job(store):
    with pytest.raises(KeyError):
        retry_failed(store, "missing")


def test_config_layers(store, monkeypatch):
    assert get_config(store)["hook_timeout_seconds"] == "300"
    set_config(store, "hook_timeout_seconds", "45")
    assert get_config(store)["hook_timeout_seconds"] == "45"
    monkeypatch.setenv("DEPLOYCTL_HOOK_TIMEOUT_SECONDS", "15")
    assert get_config(store)["hook_timeout_seconds"] == "15"


def test_set_config_rejects_unknown_keys(store):
    with pytest.raises(ValueError):
        set_config(store, "backoff_base", "2")
