"""Shared fixtures: a throwaway job store, a projects tree and a stub deployment."""

import json
import logging
import os
import stat

import pytest

from deployctl.deploy import DeployResult, DeploymentOperation
from deployctl.dispatcher import Dispatcher
from deployctl.models import JobRecord
from deployctl.store import FileJobStore
from deployctl.utils import now_iso


class StubDeployment(DeploymentOperation):
    """Records every call; succeeds or fails as configured."""

    def __init__(self, ok=True, detail="stub failure", raises=None):
        self.ok = ok
        self.detail = detail
        self.raises = raises
        self.calls = []

    def deploy(self, project, environment, ref, commit, *, record, layout, env, timeout):
        self.calls.append({
            "project": project,
            "environment": environment,
            "ref": ref,
            "commit": commit,
            "workdir": layout.env_dir,
            "timeout": timeout,
        })
        if self.raises is not None:
            raise self.raises
        return DeployResult(self.ok, 0 if self.ok else 1, "" if self.ok else self.detail)


@pytest.fixture(autouse=True)
def _restore_root_logging():
    """The CLI reconfigures the root logger; put it back after each test."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def store(tmp_path):
    return FileJobStore(str(tmp_path / "queue")).init()


@pytest.fixture
def projects_dir(tmp_path):
    path = tmp_path / "projects"
    (path / "alpha" / "production").mkdir(parents=True)
    return path


@pytest.fixture
def hook_log(tmp_path, monkeypatch):
    """File every test hook appends one line to; exported as $HOOK_LOG."""
    path = tmp_path / "hooks.log"
    monkeypatch.setenv("HOOK_LOG", str(path))
    return path


@pytest.fixture
def stub():
    return StubDeployment()


@pytest.fixture
def dispatcher(store, stub, projects_dir):
    return Dispatcher(store, stub, projects_dir=str(projects_dir), deploy_timeout=30, hook_timeout=10)


def make_record(**fields):
    data = {
        "id": "alpha_production_1700000000_abc123",
        "project": "alpha",
        "branch": "main",
        "ref": "refs/heads/main",
        "environment": "production",
        "commit": "0123abcd",
        "actor": "dev",
        "source_urls": ["https://git.example.com/alpha.git"],
        "status": "queued",
        "created_at": now_iso(),
    }
    data.update(fields)
    return JobRecord.from_dict(data)


def write_raw(store, name, content):
    path = os.path.join(store.partition_dir("pending"), name)
    if isinstance(content, bytes):
        with open(path, "wb") as fh:
            fh.write(content)
        return path
    with open(path, "w", encoding="utf-8") as fh:
        fh.write(content if isinstance(content, str) else json.dumps(content))
    return path


def write_hook(directory, name, body="", exit_code=0, executable=True):
    """A hook that logs '<stage> <scope> <dir name>' to $HOOK_LOG, then exits."""
    os.makedirs(directory, exist_ok=True)
    path = os.path.join(str(directory), name)
    with open(path, "w", encoding="utf-8") as fh:
        fh.write("#!/bin/sh\n")
        fh.write('echo "$HOOK_STAGE $HOOK_SCOPE $(basename "$PWD")" >> "$HOOK_LOG"\n')
        fh.write(body + "\n")
        fh.write(f"exit {exit_code}\n")
    if executable:
        os.chmod(path, os.stat(path).st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def read_log(path):
    if not os.path.exists(path):
        return []
    with open(path, encoding="utf-8") as fh:
        return [line.strip() for line in fh if line.strip()]
