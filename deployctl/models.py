from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Tuple

from .errors import MalformedRecordError
from .utils import branch_from_ref

# Job States
QUEUED = "queued"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"

TERMINAL_STATES = (COMPLETED, FAILED)
CLAIMED_STATES = (PROCESSING, COMPLETED, FAILED)

# Partitions
PENDING = "pending"
PROCESSED = "processed"
FAILED_PARTITION = "failed"
PARTITIONS = (PENDING, PROCESSED, FAILED_PARTITION)

# Environments
PRODUCTION = "production"
STAGING = "staging"
DEVELOPMENT = "development"
ENVIRONMENTS = (PRODUCTION, STAGING, DEVELOPMENT)

BRANCH_ENVIRONMENTS = {
    "main": PRODUCTION,
    "master": PRODUCTION,
    "staging": STAGING,
    "develop": DEVELOPMENT,
}

# Hook stages
PRE_DEPLOY = "pre-deploy"
POST_DEPLOY = "post-deploy"
GENERAL_SCOPE = "general"

MAX_SOURCE_URLS = 2

# Older producers wrote these names; mapped onto the canonical ones on read.
LEGACY_FIELDS = {
    "repository": "project",
    "commit_sha": "commit",
    "pusher_name": "actor",
}
LEGACY_URL_FIELDS = ("repository_ssh_url", "repository_clone_url")

_OPTIONAL_FIELDS = ("updated_at", "started_at", "finished_at", "reason", "retry_of")


def environment_for_branch(branch: str) -> Optional[str]:
    """Map a branch name to its environment, or None when it is not deployable."""
    return BRANCH_ENVIRONMENTS.get(branch)


@dataclass
class JobRecord:
    id: str
    project: str = ""
    branch: str = ""
    ref: str = ""
    environment: str = ""
    commit: str = ""
    actor: str = ""
    source_urls: List[str] = field(default_factory=list)
    status: str = QUEUED
    created_at: str = ""
    updated_at: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    reason: Optional[str] = None
    retry_of: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any, fallback_id: str = "") -> "JobRecord":
        """
        Build a record from its decoded JSON form.

        Unknown keys are kept in ``extra`` so a rewrite preserves them.
        Raises MalformedRecordError when the payload is not an object or a
        known field has the wrong type.
        """
        if not isinstance(data, dict):
            raise MalformedRecordError(f"record must be a JSON object, got {type(data).__name__}")

        data = dict(data)
        for legacy, canonical in LEGACY_FIELDS.items():
            if legacy in data and not data.get(canonical):
                data[canonical] = data.pop(legacy)

        if "source_urls" in data:
            urls = data.pop("source_urls") or []
        else:
            urls = [data.pop(k) for k in LEGACY_URL_FIELDS if k in data]
        if not isinstance(urls, list) or not all(isinstance(u, str) for u in urls):
            raise MalformedRecordError("source_urls must be a list of strings")
        urls = [u for u in urls if u][:MAX_SOURCE_URLS]

        kwargs = {}
        for name in cls.__dataclass_fields__:
            if name in ("extra", "source_urls") or name not in data:
                continue
            value = data.pop(name)
            if value is None:
                continue
            if not isinstance(value, str):
                raise MalformedRecordError(f"field {name!r} must be a string")
            kwargs[name] = value

        kwargs["id"] = kwargs.get("id") or fallback_id
        if not kwargs["id"]:
            raise MalformedRecordError("record has no id")
        # An empty status means the producer did not set one yet.
        kwargs["status"] = kwargs.get("status") or QUEUED
        return cls(source_urls=urls, extra=data, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        out = dict(self.extra)
        body = asdict(self)
        body.pop("extra")
        for k in _OPTIONAL_FIELDS:
            if body[k] is None:
                body.pop(k)
        out.update(body)
        return out

    @property
    def branch_name(self) -> str:
        """Branch from ``branch``, falling back to ``ref`` without refs/heads/."""
        return branch_from_ref(self.branch or self.ref)

    def missing_fields(self) -> List[str]:
        missing = []
        if not self.project.strip():
            missing.append("project")
        if not (self.branch.strip() or self.ref.strip()):
            missing.append("branch/ref")
        return missing


@dataclass(frozen=True)
class HookDescriptor:
    stage: str
    scope: str
    path: str
    origin: str

    @property
    def key(self) -> Tuple[str, str]:
        return (self.stage, self.scope)

    @property
    def is_general(self) -> bool:
        return self.scope == GENERAL_SCOPE
