import os

from deployctl.hooks import (
    HookExecutor, ProjectLayout, discover_hooks, load_project_env, parse_hook_name,
    resolve_hooks, run_hook,
)
from deployctl.models import HookDescriptor, JobRecord, POST_DEPLOY, PRE_DEPLOY

from conftest import read_log, write_hook


def _layout(projects_dir):
    return ProjectLayout(str(projects_dir), "alpha", "production")


def test_parse_hook_name():
    assert parse_hook_name("pre_deploy.sh") == (PRE_DEPLOY, "general")
    assert parse_hook_name("post_deploy.web.sh") == (POST_DEPLOY, "web")
    assert parse_hook_name("post_deploy.queue-worker.sh") == (POST_DEPLOY, "queue-worker")
    assert parse_hook_name("pre_deploy.txt") is None
    assert parse_hook_name("deploy.sh") is None
    assert parse_hook_name(".pre_deploy.sh") is None
    assert parse_hook_name("pre_deploy..sh") is None


def test_resolve_is_a_pure_override():
    discovered = [
        HookDescriptor(PRE_DEPLOY, "general", "/p/alpha/pre_deploy.sh", "base"),
        HookDescriptor(PRE_DEPLOY, "web", "/p/alpha/pre_deploy.web.sh", "base"),
        HookDescriptor(PRE_DEPLOY, "db", "/p/alpha/pre_deploy.db.sh", "base"),
        HookDescriptor(POST_DEPLOY, "general", "/p/alpha/post_deploy.sh", "base"),
        HookDescriptor(PRE_DEPLOY, "web", "/p/alpha/production/pre_deploy.web.sh", "production"),
        HookDescriptor(PRE_DEPLOY, "general", "/p/alpha/production/pre_deploy.sh", "production"),
    ]
    scoped, general = resolve_hooks(discovered, PRE_DEPLOY)

    assert [(h.scope, h.origin) for h in scoped] == [("db", "base"), ("web", "production")]
    assert general.origin == "production"

    scoped, general = resolve_hooks(discovered, POST_DEPLOY)
    assert scoped == []
    assert general.path == "/p/alpha/post_deploy.sh"


def test_discover_lists_base_before_environment(projects_dir, hook_log):
    base = projects_dir / "alpha"
    env = base / "production"
    write_hook(env, "post_deploy.sh")
    write_hook(base, "post_deploy.sh")
    write_hook(base, "README.md")

    found = discover_hooks(_layout(projects_dir))
    assert [h.origin for h in found] == ["base", "production"]


def test_discover_tolerates_missing_directories(tmp_path):
    assert discover_hooks(ProjectLayout(str(tmp_path), "ghost", "staging")) == []


def test_environment_general_hook_replaces_base(projects_dir, hook_log):
    base = projects_dir / "alpha"
    write_hook(base, "post_deploy.sh")
    write_hook(base / "production", "post_deploy.sh")

    record = JobRecord(id="a", project="alpha", ref="refs/heads/main", environment="production")
    executor = HookExecutor.for_record(record, _layout(projects_dir), timeout=10)
    executor.execute_stage(POST_DEPLOY)

    assert read_log(hook_log) == ["post-deploy general production"]


def test_failing_scoped_hook_does_not_stop_the_stage(projects_dir, hook_log):
    base = projects_dir / "alpha"
    write_hook(base, "pre_deploy.api.sh", exit_code=3)
    write_hook(base, "pre_deploy.web.sh")
    write_hook(base, "pre_deploy.sh", exit_code=1)

    record = JobRecord(id="a", project="alpha", ref="refs/heads/main", environment="production")
    results = HookExecutor.for_record(record, _layout(projects_dir), timeout=10).execute_stage(PRE_DEPLOY)

    assert results == {"api": False, "web": True, "general": False}
    # Scoped hooks first, the general hook last.
    assert read_log(hook_log)[-1] == "pre-deploy general alpha"
    assert len(read_log(hook_log)) == 3


def test_hook_receives_deployment_context(projects_dir, hook_log):
    env_dir = projects_dir / "alpha" / "production"
    write_hook(
        env_dir, "pre_deploy.sh",
        body='echo "$REPOSITORY_NAME|$ENVIRONMENT|$BRANCH_NAME|$COMMIT_SHA|$PUSHER_NAME|$PROJECT_DIR|$GREETING" >> "$HOOK_LOG"',
    )
    (env_dir / ".env").write_text("GREETING=hello\n")

    layout = _layout(projects_dir)
    record = JobRecord(id="a", project="alpha", ref="refs/heads/main", environment="production",
                       commit="abc", actor="dev")
    HookExecutor.for_record(record, layout, timeout=10,
                            project_env=load_project_env(layout)).execute_stage(PRE_DEPLOY)

    assert read_log(hook_log)[1] == f"alpha|production|main|abc|dev|{layout.env_dir}|hello"


def test_non_executable_hook_runs_through_sh(projects_dir, hook_log):
    path = write_hook(projects_dir / "alpha", "pre_deploy.sh", executable=False)
    hook = HookDescriptor(PRE_DEPLOY, "general", path, "base")
    assert run_hook(hook, dict(os.environ), timeout=10)
    assert read_log(hook_log) == ["pre-deploy general alpha"]


def test_hook_timeout_is_a_failure(projects_dir, hook_log):
    path = write_hook(projects_dir / "alpha", "pre_deploy.sh", body="sleep 5")
    hook = HookDescriptor(PRE_DEPLOY, "general", path, "base")
    assert run_hook(hook, dict(os.environ), timeout=1) is False


def test_environment_env_file_overrides_base(projects_dir):
    (projects_dir / "alpha" / ".env").write_text("A=base\nB=base\n")
    (projects_dir / "alpha" / "production" / ".env").write_text("B=env\n")
    assert load_project_env(_layout(projects_dir)) == {"A": "base", "B": "env"}
