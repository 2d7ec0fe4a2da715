import errno
import json
import os

import pytest

from deployctl.errors import DuplicateJobError, JobStoreError, MalformedRecordError, QueueLockedError
from deployctl.models import PROCESSING
from deployctl.store import FileJobStore, is_record_name

from conftest import make_record, write_raw


def test_put_publishes_without_leaving_temp_files(store):
    record = make_record()
    store.put(record)

    names = os.listdir(store.partition_dir("pending"))
    assert names == [record.id + ".json"]
    assert store.read(record.id).project == "alpha"


def test_put_refuses_to_overwrite(store):
    store.put(make_record())
    with pytest.raises(DuplicateJobError):
        store.put(make_record(commit="other"))
    assert store.read("alpha_production_1700000000_abc123").commit == "0123abcd"


def test_put_refuses_ids_already_filed(store):
    record = make_record()
    store.put(record)
    store.move(record.id, "pending", "processed")
    with pytest.raises(DuplicateJobError):
        store.put(make_record())


def test_scan_skips_temporary_and_foreign_names(store):
    store.put(make_record())
    write_raw(store, ".alpha.json.x1.tmp", "{")
    write_raw(store, "beta.json.tmp", "{")
    write_raw(store, "notes.txt", "hello")

    assert list(store.scan("pending")) == ["alpha_production_1700000000_abc123"]


def test_is_record_name():
    assert is_record_name("a.json")
    assert not is_record_name(".a.json")
    assert not is_record_name("a.json.tmp")
    assert not is_record_name("a.txt")


def test_write_rewrites_in_place(store):
    record = make_record(delivery="gh-1")
    store.put(record)
    record.status = PROCESSING
    store.write(record)

    on_disk = json.loads(open(store.path_for(record.id)).read())
    assert on_disk["status"] == "processing"
    assert on_disk["delivery"] == "gh-1"
    assert on_disk["updated_at"]


def test_move_between_partitions(store):
    record = make_record()
    store.put(record)
    store.move(record.id, "pending", "failed")
    assert not store.exists(record.id, "pending")
    assert store.read(record.id, "failed").id == record.id


def test_read_rejects_id_that_does_not_match_file(store):
    write_raw(store, "one.json", {"id": "two", "project": "alpha"})
    with pytest.raises(MalformedRecordError):
        store.read("one")


def test_undecodable_or_deeply_nested_files_are_malformed(store):
    write_raw(store, "binary.json", b'{"id": "binary", "project": "\xff\xfe"}')
    write_raw(store, "deep.json", "[" * 100000 + "]" * 100000)

    with pytest.raises(MalformedRecordError, match="UTF-8"):
        store.read("binary")
    with pytest.raises(MalformedRecordError):
        store.read("deep")


def test_quarantine_keeps_the_raw_content(store):
    write_raw(store, "broken.json", "{not json")
    failed_id = store.quarantine("broken", "{not json", "malformed record: invalid JSON")

    assert not store.exists("broken", "pending")
    record = store.read(failed_id, "failed")
    assert record.status == "failed"
    assert record.extra["raw"] == "{not json"


def test_io_errors_surface_as_job_store_error(store, monkeypatch):
    record = make_record()
    store.put(record)

    def disk_full(src, dst):
        raise OSError(errno.ENOSPC, "No space left on device")

    monkeypatch.setattr(os, "replace", disk_full)
    with pytest.raises(JobStoreError):
        store.write(record)
    with pytest.raises(JobStoreError):
        store.move(record.id, "pending", "processed")


def test_config_roundtrip(store):
    assert store.read_config() == {}
    store.write_config({"projects_dir": "/srv/projects"})
    assert store.read_config() == {"projects_dir": "/srv/projects"}


def test_consumer_lock_admits_one_holder(store):
    with store.consumer_lock():
        with pytest.raises(QueueLockedError):
            with store.consumer_lock():
                pass
        with pytest.raises(QueueLockedError):
            with FileJobStore(store.root).consumer_lock():
                pass

    with store.consumer_lock():
        pass
