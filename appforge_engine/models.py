import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class BuildStatus(Enum):
    QUEUED = "queued"
    BUILDING = "building"
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"

    @property
    def is_terminal(self) -> bool:
        return self in (BuildStatus.SUCCESS, BuildStatus.FAILED, BuildStatus.TIMEOUT)


class JobStage(Enum):
    PENDING = "pending"
    GENERATING = "generating"
    PREPARING = "preparing"
    PUSHING = "pushing"
    TRIGGERING = "triggering"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


def iso(value: Optional[datetime.datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def parse_iso(value: Optional[str]) -> Optional[datetime.datetime]:
    if not value:
        return None
    try:
        parsed = datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


@dataclass(frozen=True)
class TemplateDescriptor:
    id: str
    name: str
    display_name: str
    description: str
    category: str
    icon: str
    color: str
    plugins: Tuple[str, ...] = ()
    estimated_minutes: int = 3
    features: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TemplateDescriptor':
        return cls(
            id=data['id'],
            name=data['name'],
            display_name=data.get('display_name') or data['name'],
            description=data.get('description', ""),
            category=data.get('category', "utilities"),
            icon=data.get('icon', ""),
            color=data.get('color', "#4A90E2"),
            plugins=tuple(data.get('plugins') or ()),
            estimated_minutes=int(data.get('estimated_minutes', 3)),
            features=tuple(data.get('features') or ()),
        )


@dataclass(frozen=True)
class GlobalConfig:
    github_username: str
    package_prefix: str
    author_name: str
    author_email: str
    app_version: str = "1.0.0"
    workflow_id: str = "cordova_android_build"
    branch: str = "main"
    ci_manifest_override: Optional[str] = None
    build_variables: Dict[str, str] = field(default_factory=dict)
    # Feature toggles
    create_repositories: bool = True
    trigger_builds: bool = True
    track_builds: bool = True


@dataclass(frozen=True)
class ResolvedPlugin:
    id: str
    version: str

    @property
    def spec(self) -> str:
        return f"{self.id}@{self.version}"


@dataclass(frozen=True)
class GeneratedArtifact:
    template_id: str
    file_tree: Dict[str, bytes]
    package_identifier: str
    plugins: Tuple[ResolvedPlugin, ...]
    created_at: datetime.datetime


@dataclass(frozen=True)
class PreparedArtifact(GeneratedArtifact):
    ci_manifest_path: str = "codemagic.yaml"


@dataclass(frozen=True)
class RemoteRepositoryRef:
    name: str
    full_name: str
    html_url: str
    clone_url: str
    existed_before: bool

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "full_name": self.full_name,
            "html_url": self.html_url,
            "clone_url": self.clone_url,
            "existed_before": self.existed_before,
        }


@dataclass
class PushResult:
    uploaded_count: int
    total_count: int
    per_file_errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "uploaded_count": self.uploaded_count,
            "total_count": self.total_count,
            "per_file_errors": dict(self.per_file_errors),
        }


@dataclass(frozen=True)
class CommitIdentity:
    name: str
    email: str


@dataclass(frozen=True)
class BuildAppRef:
    id: str
    repository_ref: RemoteRepositoryRef
    name: Optional[str] = None
    existed_before: bool = False


@dataclass(frozen=True)
class BuildHandle:
    build_id: str
    app_ref: BuildAppRef
    workflow_id: str
    branch: str
    started_at: datetime.datetime
    build_url: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "build_id": self.build_id,
            "app_id": self.app_ref.id,
            "workflow_id": self.workflow_id,
            "branch": self.branch,
            "started_at": iso(self.started_at),
            "build_url": self.build_url,
        }


@dataclass(frozen=True)
class BuildArtifact:
    name: str
    url: str
    size: Optional[int] = None
    checksum: Optional[str] = None

    def to_dict(self) -> dict:
        return {"name": self.name, "url": self.url, "size": self.size, "checksum": self.checksum}


@dataclass(frozen=True)
class BuildStatusSnapshot:
    build_id: str
    status: BuildStatus
    started_at: Optional[datetime.datetime] = None
    finished_at: Optional[datetime.datetime] = None
    artifacts: Tuple[BuildArtifact, ...] = ()
    attempt: int = 0
    warning: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "build_id": self.build_id,
            "status": self.status.value,
            "started_at": iso(self.started_at),
            "finished_at": iso(self.finished_at),
            "artifacts": [a.to_dict() for a in self.artifacts],
            "attempt": self.attempt,
            "warning": self.warning,
        }


@dataclass
class JobResult:
    template_id: str
    status: JobStage = JobStage.PENDING
    stage: JobStage = JobStage.PENDING # Last stage entered before the terminal state
    artifact: Optional[GeneratedArtifact] = None
    repository_ref: Optional[RemoteRepositoryRef] = None
    push_result: Optional[PushResult] = None
    build_handle: Optional[BuildHandle] = None
    final_status: Optional[BuildStatusSnapshot] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    transient: Optional[bool] = None
    started_at: Optional[datetime.datetime] = None
    finished_at: Optional[datetime.datetime] = None

    @property
    def success(self) -> bool:
        return self.status == JobStage.COMPLETED

    def to_dict(self) -> dict:
        return {
            "template_id": self.template_id,
            "status": self.status.value,
            "success": self.success,
            "stage": self.stage.value,
            "package_identifier": self.artifact.package_identifier if self.artifact else None,
            "repository": self.repository_ref.to_dict() if self.repository_ref else None,
            "push": self.push_result.to_dict() if self.push_result else None,
            "build": self.build_handle.to_dict() if self.build_handle else None,
            "final_status": self.final_status.to_dict() if self.final_status else None,
            "error": self.error,
            "error_type": self.error_type,
            "transient": self.transient,
            "started_at": iso(self.started_at),
            "finished_at": iso(self.finished_at),
        }


@dataclass(frozen=True)
class BatchReport:
    batch_id: str
    total: int
    succeeded: int
    failed: int
    cancelled: int
    started_at: datetime.datetime
    finished_at: datetime.datetime
    results: Tuple[JobResult, ...]

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "started_at": iso(self.started_at),
            "finished_at": iso(self.finished_at),
            "duration_seconds": self.duration_seconds,
            "results": [r.to_dict() for r in self.results],
        }

    @classmethod
    def from_results(cls, batch_id: str, results: List[JobResult],
                     started_at: datetime.datetime, finished_at: datetime.datetime) -> 'BatchReport':
        return cls(
            batch_id=batch_id,
            total=len(results),
            succeeded=sum(1 for r in results if r.status == JobStage.COMPLETED),
            failed=sum(1 for r in results if r.status == JobStage.FAILED),
            cancelled=sum(1 for r in results if r.status == JobStage.CANCELLED),
            started_at=started_at,
            finished_at=finished_at,
            results=tuple(results),
        )
