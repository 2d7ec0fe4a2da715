import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from dotenv import dotenv_values

from .models import GENERAL_SCOPE, HookDescriptor, JobRecord, POST_DEPLOY, PRE_DEPLOY
from .utils import now_iso

logger = logging.getLogger("deployctl.hooks")

STAGE_PREFIXES = {
    PRE_DEPLOY: "pre_deploy",
    POST_DEPLOY: "post_deploy",
}
HOOK_SUFFIX = ".sh"
BASE_ORIGIN = "base"

# How much hook output ends up in the log.
MAX_OUTPUT_CHARS = 2000


@dataclass(frozen=True)
class ProjectLayout:
    projects_dir: str
    project: str
    environment: str

    @property
    def base_dir(self) -> str:
        return os.path.join(self.projects_dir, self.project)

    @property
    def env_dir(self) -> str:
        return os.path.join(self.base_dir, self.environment)


def parse_hook_name(name: str) -> Optional[Tuple[str, str]]:
    """'pre_deploy.web.sh' -> ('pre-deploy', 'web'); None for anything else."""
    if not name.endswith(HOOK_SUFFIX) or name.startswith("."):
        return None
    stem = name[: -len(HOOK_SUFFIX)]
    for stage, prefix in STAGE_PREFIXES.items():
        if stem == prefix:
            return stage, GENERAL_SCOPE
        if stem.startswith(prefix + "."):
            scope = stem[len(prefix) + 1:]
            if scope and scope != GENERAL_SCOPE:
                return stage, scope
    return None


def _scan_dir(directory: str, origin: str) -> List[HookDescriptor]:
    try:
        names = sorted(os.listdir(directory))
    except (FileNotFoundError, NotADirectoryError):
        return []
    found = []
    for name in names:
        parsed = parse_hook_name(name)
        path = os.path.join(directory, name)
        if parsed and os.path.isfile(path):
            stage, scope = parsed
            found.append(HookDescriptor(stage=stage, scope=scope, path=path, origin=origin))
    return found


def discover_hooks(layout: ProjectLayout) -> List[HookDescriptor]:
    """Every hook file on disk, base directory first, environment directory second."""
    return _scan_dir(layout.base_dir, BASE_ORIGIN) + _scan_dir(layout.env_dir, layout.environment)


def resolve_hooks(discovered: Iterable[HookDescriptor], stage: str
                  ) -> Tuple[List[HookDescriptor], Optional[HookDescriptor]]:
    """
    Apply the override rule for one stage.

    ``discovered`` must list base hooks before environment hooks; a later
    entry for the same scope replaces an earlier one. Returns the scoped hooks
    (sorted by scope) and the general hook, if any.
    """
    chosen: Dict[str, HookDescriptor] = {}
    for hook in discovered:
        if hook.stage == stage:
            chosen[hook.scope] = hook
    general = chosen.pop(GENERAL_SCOPE, None)
    scoped = [chosen[scope] for scope in sorted(chosen)]
    return scoped, general


def load_project_env(layout: ProjectLayout) -> Dict[str, str]:
    """Base .env first, then the environment's .env on top."""
    values: Dict[str, str] = {}
    for directory in (layout.base_dir, layout.env_dir):
        path = os.path.join(directory, ".env")
        if os.path.isfile(path):
            logger.debug("Loading %s", path)
            values.update({k: v for k, v in dotenv_values(path).items() if v is not None})
    return values


def deployment_env(record: JobRecord, layout: ProjectLayout,
                   project_env: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Process environment shared by hooks and the deployment operation."""
    env = dict(os.environ)
    env.update(project_env or {})
    env.update({
        "DEPLOY_ID": record.id,
        "REPOSITORY_NAME": record.project,
        "REF": record.ref or record.branch,
        "BRANCH": record.ref or record.branch,
        "BRANCH_NAME": record.branch_name,
        "COMMIT_SHA": record.commit or "unknown",
        "PUSHER_NAME": record.actor or "unknown",
        "ENVIRONMENT": layout.environment,
        "PROJECT_DIR": layout.env_dir,
        "BASE_PROJECT_DIR": layout.base_dir,
        "PROJECTS_DIR": layout.projects_dir,
        "BUILD_DATE": now_iso(),
    })
    env.setdefault("PROJECT_NAME", record.project)
    env.setdefault("suffix", layout.environment)
    return env


def _tail(text: Optional[str]) -> str:
    if not text:
        return ""
    text = text.strip()
    return text[-MAX_OUTPUT_CHARS:]


def run_hook(hook: HookDescriptor, env: Dict[str, str], timeout: int) -> bool:
    """
    Run one hook script in its own directory.

    Returns True on exit code 0. Non-executable scripts are run through sh.
    """
    cmd = [hook.path] if os.access(hook.path, os.X_OK) else ["sh", hook.path]
    hook_env = dict(env)
    hook_env["HOOK_STAGE"] = hook.stage
    hook_env["HOOK_SCOPE"] = hook.scope
    label = f"{hook.stage} hook '{hook.scope}' ({os.path.basename(hook.path)} from {hook.origin})"
    logger.info("Executing %s", label)
    try:
        result = subprocess.run(
            cmd,
            cwd=os.path.dirname(hook.path),
            env=hook_env,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        logger.warning("%s timed out after %ss (continuing anyway)", label, timeout)
        return False
    except OSError as e:
        logger.warning("%s could not be started: %s (continuing anyway)", label, e)
        return False

    if result.stdout:
        logger.info("%s output:\n%s", label, _tail(result.stdout))
    if result.returncode == 0:
        logger.info("%s completed successfully", label)
        return True
    logger.warning("%s failed with exit code %s (continuing anyway): %s",
                   label, result.returncode, _tail(result.stderr))
    return False


class HookExecutor:
    """Runs the hook plan built once for a record."""

    def __init__(self, hooks: List[HookDescriptor], env: Dict[str, str], timeout: int):
        self.hooks = hooks
        self.env = env
        self.timeout = timeout

    @classmethod
    def for_record(cls, record: JobRecord, layout: ProjectLayout, timeout: int,
                   project_env: Optional[Dict[str, str]] = None) -> "HookExecutor":
        return cls(discover_hooks(layout), deployment_env(record, layout, project_env), timeout)

    def plan(self, stage: str) -> List[HookDescriptor]:
        scoped, general = resolve_hooks(self.hooks, stage)
        return scoped + ([general] if general else [])

    def execute_stage(self, stage: str) -> Dict[str, bool]:
        """Run every resolved hook for ``stage``; returns scope -> success."""
        results = {}
        plan = self.plan(stage)
        if not plan:
            logger.debug("No %s hooks", stage)
        for hook in plan:
            results[hook.scope] = run_hook(hook, self.env, self.timeout)
        return results
