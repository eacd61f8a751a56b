import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import httpx
import pytest

from appforge_engine.clock import Clock
from appforge_engine.errors import RepositoryError
from appforge_engine.models import (BuildAppRef, BuildArtifact, BuildHandle, BuildStatus, BuildStatusSnapshot,
                                    GeneratedArtifact, GlobalConfig, PushResult, RemoteRepositoryRef,
                                    TemplateDescriptor)
from appforge_engine.rate_limit import RetryPolicy

T0 = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock(Clock):
    """Time only moves when the code under test sleeps."""

    def __init__(self, start: datetime = T0):
        self.current = start
        self._monotonic = 0.0
        self.sleeps: List[float] = []

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self._monotonic

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        if seconds > 0:
            self.advance(seconds)
        await asyncio.sleep(0)

    def advance(self, seconds: float):
        self._monotonic += seconds
        self.current += timedelta(seconds=seconds)


def make_template(name: str, plugins=(), template_id: Optional[str] = None) -> TemplateDescriptor:
    return TemplateDescriptor(
        id=template_id or name.lower(),
        name=name,
        display_name=name,
        description=f"{name} test app",
        category="utilities",
        icon="*",
        color="#123456",
        plugins=tuple(plugins),
        features=("One", "Two"),
    )


def make_artifact(files: Dict[str, bytes], template_id: str = "raw") -> GeneratedArtifact:
    return GeneratedArtifact(
        template_id=template_id,
        file_tree=dict(files),
        package_identifier=f"com.acme.{template_id}",
        plugins=(),
        created_at=T0,
    )


def make_repo_ref(name: str = "Alpha", owner: str = "octo", existed_before: bool = False) -> RemoteRepositoryRef:
    return RemoteRepositoryRef(
        name=name,
        full_name=f"{owner}/{name}",
        html_url=f"https://github.com/{owner}/{name}",
        clone_url=f"https://github.com/{owner}/{name}.git",
        existed_before=existed_before,
    )


def make_handle(build_id: str = "build-1", repo_name: str = "Alpha") -> BuildHandle:
    return BuildHandle(
        build_id=build_id,
        app_ref=BuildAppRef(id="app-1", repository_ref=make_repo_ref(repo_name), name=repo_name),
        workflow_id="cordova_android_build",
        branch="main",
        started_at=T0,
        build_url=f"https://codemagic.io/app/app-1/build/{build_id}",
    )


def json_response(status: int, data, headers: Optional[dict] = None) -> httpx.Response:
    return httpx.Response(status, content=json.dumps(data).encode("utf-8"),
                          headers={"Content-Type": "application/json", **(headers or {})})


def mock_http(handler: Callable[[httpx.Request], httpx.Response], base_url: str) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=base_url, transport=httpx.MockTransport(handler))


class FakeRepositoryClient:
    """In-memory stand-in for RepositoryClient that records every call."""

    def __init__(self, fail_push_for: Optional[set] = None, upload_errors: Optional[Dict[str, str]] = None):
        self.calls: List[tuple] = []
        self.fail_push_for = fail_push_for or set()
        self.upload_errors = upload_errors or {}
        self.repositories: Dict[str, RemoteRepositoryRef] = {}

    async def ensure_repository(self, name_candidate: str, description: str = "") -> RemoteRepositoryRef:
        self.calls.append(("ensure_repository", name_candidate))
        await asyncio.sleep(0)
        if name_candidate in self.repositories:
            return self.repositories[name_candidate]
        ref = make_repo_ref(name_candidate)
        self.repositories[name_candidate] = make_repo_ref(name_candidate, existed_before=True)
        return ref

    async def push_files(self, ref, file_tree, identity, on_progress=None) -> PushResult:
        self.calls.append(("push_files", ref.name))
        await asyncio.sleep(0)
        if ref.name in self.fail_push_for:
            raise RepositoryError(f"push to {ref.full_name} rejected", kind="push")
        result = PushResult(uploaded_count=0, total_count=len(file_tree))
        for index, path in enumerate(file_tree, start=1):
            error = self.upload_errors.get(path) or self.upload_errors.get("*")
            if error:
                result.per_file_errors[path] = error
            else:
                result.uploaded_count += 1
            if on_progress:
                on_progress(index, result.total_count, path, error)
        return result


class FakeBuildService:
    """In-memory stand-in for BuildServiceClient; each build walks through `statuses`."""

    def __init__(self, statuses=(BuildStatus.QUEUED, BuildStatus.BUILDING, BuildStatus.SUCCESS),
                 final_for: Optional[Dict[str, BuildStatus]] = None, trigger_error: Optional[Exception] = None):
        self.calls: List[tuple] = []
        self.statuses = list(statuses)
        self.final_for = final_for or {}
        self.trigger_error = trigger_error
        self._polls: Dict[str, int] = {}
        self._build_repo: Dict[str, str] = {}

    async def ensure_app(self, repository_ref, display_name):
        self.calls.append(("ensure_app", repository_ref.name))
        await asyncio.sleep(0)
        return BuildAppRef(id=f"app-{repository_ref.name}", repository_ref=repository_ref, name=display_name)

    async def trigger(self, app_ref, workflow_id, branch, variables=None):
        self.calls.append(("trigger", app_ref.repository_ref.name))
        await asyncio.sleep(0)
        if self.trigger_error is not None:
            raise self.trigger_error
        build_id = f"build-{app_ref.repository_ref.name}"
        self._build_repo[build_id] = app_ref.repository_ref.name
        return BuildHandle(build_id=build_id, app_ref=app_ref, workflow_id=workflow_id, branch=branch,
                           started_at=T0, build_url=f"https://codemagic.io/app/{app_ref.id}/build/{build_id}")

    async def get_build_status(self, build_id, attempt=0):
        repo = self._build_repo[build_id]
        self.calls.append(("get_build_status", repo))
        await asyncio.sleep(0)
        index = self._polls.get(build_id, 0)
        self._polls[build_id] = index + 1
        status = self.statuses[min(index, len(self.statuses) - 1)]
        if status.is_terminal and repo in self.final_for:
            status = self.final_for[repo]
        return BuildStatusSnapshot(build_id=build_id, status=status, started_at=T0, attempt=attempt)

    async def list_artifacts(self, build_id):
        self.calls.append(("list_artifacts", self._build_repo[build_id]))
        await asyncio.sleep(0)
        return [BuildArtifact(name="app-release.apk", url=f"https://files.test/{build_id}.apk", size=10,
                              checksum="abc")]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return GlobalConfig(
        github_username="octo",
        package_prefix="com.acme",
        author_name="Ada Lovelace",
        author_email="ada@example.com",
    )


@pytest.fixture
def fast_retry():
    return RetryPolicy(max_retries=2, base_delay=1.0, max_delay=30.0)
