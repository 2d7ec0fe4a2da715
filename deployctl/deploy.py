import logging
import os
import shlex
import shutil
import subprocess
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from .hooks import ProjectLayout
from .models import JobRecord

logger = logging.getLogger("deployctl.deploy")

EXIT_TIMEOUT = 124
EXIT_NOT_FOUND = 127
MAX_ERROR_CHARS = 2000

SSH_KEY_NAMES = ("id_ed25519", "id_rsa")
SOURCE_DIR_NAME = "source"
COMPOSE_FILE = "docker-compose.yml"


@dataclass
class DeployResult:
    ok: bool
    returncode: int = 0
    detail: str = ""


class DeploymentOperation(ABC):
    """Interface consumed by the dispatcher."""

    @abstractmethod
    def deploy(self, project: str, environment: str, ref: str, commit: str, *,
               record: JobRecord, layout: ProjectLayout, env: Dict[str, str],
               timeout: int) -> DeployResult: ...


def safe_run_command(args: Sequence[str], *, cwd: Optional[str] = None,
                     env: Optional[Dict[str, str]] = None, timeout: float = 10) -> DeployResult:
    """Run a command; every way it can go wrong comes back as a failed DeployResult."""
    printable = " ".join(shlex.quote(a) for a in args)
    logger.info("$ %s", printable)
    try:
        result = subprocess.run(
            list(args),
            cwd=cwd,
            env=env,
            capture_output=True,
            text=True,
            timeout=max(timeout, 1),
        )
    except subprocess.TimeoutExpired:
        return DeployResult(False, EXIT_TIMEOUT, f"Command timed out after {int(timeout)}s: {printable}")
    except FileNotFoundError:
        return DeployResult(False, EXIT_NOT_FOUND, f"Command not found: {printable}")
    except OSError as e:
        return DeployResult(False, 1, f"Could not run '{printable}': {e}")

    if result.stdout:
        logger.debug(result.stdout.strip())
    if result.returncode == 0:
        return DeployResult(True, 0, "")
    error = result.stderr.strip()[-MAX_ERROR_CHARS:] if result.stderr else ""
    return DeployResult(False, result.returncode, error or f"Exit code {result.returncode}: {printable}")


class CommandDeployment(DeploymentOperation):
    """Runs ``<command> <project> <environment> <ref> <commit>`` in the environment directory."""

    def __init__(self, command: str):
        self.args = shlex.split(command)
        if not self.args:
            raise ValueError("deploy_command is empty")

    def deploy(self, project, environment, ref, commit, *, record, layout, env, timeout):
        cwd = layout.env_dir if os.path.isdir(layout.env_dir) else None
        return safe_run_command(self.args + [project, environment, ref, commit or ""],
                                cwd=cwd, env=env, timeout=timeout)


def has_ssh_keys(keys_dir: str) -> bool:
    return any(os.path.isfile(os.path.join(keys_dir, name)) for name in SSH_KEY_NAMES)


def ssh_key_path(keys_dir: str) -> Optional[str]:
    for name in SSH_KEY_NAMES:
        path = os.path.join(keys_dir, name)
        if os.path.isfile(path):
            return path
    return None


def select_source_url(source_urls: List[str], ssh_available: bool) -> Optional[str]:
    """
    Pick the fetch location.

    SSH URLs are only usable with deploy keys; otherwise the first non-SSH
    URL wins, and an SSH URL is the last resort.
    """
    def is_ssh(url: str) -> bool:
        return url.startswith("git@") or url.startswith("ssh://")

    if ssh_available:
        for url in source_urls:
            if is_ssh(url):
                return url
    for url in source_urls:
        if not is_ssh(url):
            return url
    return source_urls[0] if source_urls else None


class ComposeDeployment(DeploymentOperation):
    """
    Clone the branch into ``<env_dir>/source`` and recreate the compose stack.

    All steps share one deadline so the whole deployment is bounded by
    ``timeout``.
    """

    def __init__(self, ssh_keys_dir: str = "/root/.ssh-keys"):
        self.ssh_keys_dir = ssh_keys_dir

    def _steps(self, url: str, branch: str) -> List[List[str]]:
        return [
            ["git", "clone", "--branch", branch, "--depth", "1", url, SOURCE_DIR_NAME],
            ["docker", "compose", "pull"],
            ["docker", "compose", "build", "--pull"],
            ["docker", "compose", "up", "-d", "--force-recreate"],
        ]

    def deploy(self, project, environment, ref, commit, *, record, layout, env, timeout):
        if not os.path.isdir(layout.base_dir):
            return DeployResult(False, 1, f"Base project directory {layout.base_dir} does not exist")
        if not os.path.isdir(layout.env_dir):
            return DeployResult(False, 1, f"Environment directory {layout.env_dir} does not exist")
        if not os.path.isfile(os.path.join(layout.env_dir, COMPOSE_FILE)):
            return DeployResult(False, 1, f"No {COMPOSE_FILE} found in project directory: {layout.env_dir}")

        keys = has_ssh_keys(self.ssh_keys_dir)
        url = select_source_url(record.source_urls, keys)
        if not url:
            return DeployResult(False, 1, f"No source URL for {project}")

        step_env = dict(env)
        key = ssh_key_path(self.ssh_keys_dir) if keys else None
        if key:
            step_env["GIT_SSH_COMMAND"] = (
                f"ssh -o StrictHostKeyChecking=no -o UserKnownHostsFile=/dev/null -i {key}"
            )

        source_dir = os.path.join(layout.env_dir, SOURCE_DIR_NAME)
        if os.path.isdir(source_dir):
            logger.info("Removing existing %s", source_dir)
            shutil.rmtree(source_dir)

        deadline = time.monotonic() + timeout
        for args in self._steps(url, record.branch_name):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return DeployResult(False, EXIT_TIMEOUT, f"Deployment timed out after {timeout}s")
            result = safe_run_command(args, cwd=layout.env_dir, env=step_env, timeout=remaining)
            if not result.ok:
                return result

        cleanup = safe_run_command(["docker", "image", "prune", "-f"], env=step_env,
                                   timeout=max(deadline - time.monotonic(), 30))
        if not cleanup.ok:
            logger.warning("Image cleanup failed: %s", cleanup.detail)
        return DeployResult(True, 0, "")


def build_deployment(cfg: Dict[str, str]) -> DeploymentOperation:
    command = (cfg.get("deploy_command") or "").strip()
    if command:
        return CommandDeployment(command)
    return ComposeDeployment(ssh_keys_dir=cfg.get("ssh_keys_dir", "/root/.ssh-keys"))
