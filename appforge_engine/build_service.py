import re
from typing import Dict, List, Optional

import httpx

from .ensure import ensure_resource
from .errors import BuildAppError, PollError, TriggerError
from .http_client import ServiceClient
from .logger_setup import logger
from .models import (BuildAppRef, BuildArtifact, BuildHandle, BuildStatus, BuildStatusSnapshot,
                     RemoteRepositoryRef, parse_iso)

BUILD_URL_TEMPLATE = "https://codemagic.io/app/{app_id}/build/{build_id}"

STATUS_MAP = {
    'queued': BuildStatus.QUEUED,
    'preparing': BuildStatus.BUILDING,
    'fetching': BuildStatus.BUILDING,
    'building': BuildStatus.BUILDING,
    'testing': BuildStatus.BUILDING,
    'publishing': BuildStatus.BUILDING,
    'finishing': BuildStatus.BUILDING,
    'finished': BuildStatus.SUCCESS,
    'success': BuildStatus.SUCCESS,
    'failed': BuildStatus.FAILED,
    'canceled': BuildStatus.FAILED,
    'cancelled': BuildStatus.FAILED,
    'skipped': BuildStatus.FAILED,
    'timeout': BuildStatus.FAILED,
}


def map_remote_status(remote: Optional[str]) -> BuildStatus:
    return STATUS_MAP.get((remote or "").strip().lower(), BuildStatus.UNKNOWN)


def normalize_repository_url(url: Optional[str]) -> str:
    """Reduces https/ssh clone URLs and web URLs of one repository to the same string."""
    if not url:
        return ""
    url = url.strip().lower()
    url = re.sub(r"^[a-z+]+://", "", url)
    url = re.sub(r"^[^@/]+@", "", url)
    url = url.replace(":", "/", 1) if ":" in url.split("/", 1)[0] else url
    url = url.rstrip("/")
    if url.endswith(".git"):
        url = url[:-4]
    return url.rstrip("/")


def _app_repository_urls(app: dict) -> List[str]:
    urls = [app.get("repositoryUrl")]
    repository = app.get("repository")
    if isinstance(repository, dict):
        urls.extend(repository.get(key) for key in ("htmlUrl", "cloneUrl", "url"))
    elif isinstance(repository, str):
        urls.append(repository)
    return [u for u in urls if u]


class BuildServiceClient(ServiceClient):
    """Codemagic applications and builds."""

    service_name = "codemagic"
    error_class = BuildAppError

    def __init__(self, client: httpx.AsyncClient, team_id: Optional[str] = None, **kwargs):
        super().__init__(client, **kwargs)
        self.team_id = team_id

    async def find_app(self, repository_ref: RemoteRepositoryRef) -> Optional[BuildAppRef]:
        response = await self._request("GET", "/apps", "app lookup")
        if response.status_code != 200:
            raise self._status_error(response, "app lookup")
        data = self._json(response, "app lookup")
        applications = data.get("applications", []) if isinstance(data, dict) else []

        wanted = {normalize_repository_url(repository_ref.clone_url), normalize_repository_url(repository_ref.html_url)}
        wanted.discard("")
        for app in applications:
            if not isinstance(app, dict):
                continue
            if any(normalize_repository_url(u) in wanted for u in _app_repository_urls(app)):
                app_id = app.get("_id") or app.get("id")
                if app_id:
                    return BuildAppRef(id=app_id, repository_ref=repository_ref, name=app.get("appName"),
                                       existed_before=True)
        return None

    async def create_app(self, repository_ref: RemoteRepositoryRef, display_name: str) -> BuildAppRef:
        payload = {"repositoryUrl": repository_ref.clone_url}
        if self.team_id:
            payload["teamId"] = self.team_id
        response = await self._request("POST", "/apps", "app create", json_body=payload)
        if response.status_code not in (200, 201):
            raise self._status_error(response, "app create")
        data = self._json(response, "app create")
        app_id = (data.get("_id") or data.get("id")) if isinstance(data, dict) else None
        if not app_id:
            raise BuildAppError("codemagic app create returned no application id", transient=True)
        logger.info(f"Registered {repository_ref.full_name} with codemagic as app {app_id}")
        return BuildAppRef(id=app_id, repository_ref=repository_ref,
                           name=data.get("appName") or display_name, existed_before=False)

    async def ensure_app(self, repository_ref: RemoteRepositoryRef, display_name: str) -> BuildAppRef:
        app_ref, _ = await ensure_resource(
            lambda: self.find_app(repository_ref),
            lambda: self.create_app(repository_ref, display_name),
            f"codemagic app for {repository_ref.clone_url}",
        )
        return app_ref

    async def trigger(self, app_ref: BuildAppRef, workflow_id: str, branch: str,
                      variables: Optional[Dict[str, str]] = None) -> BuildHandle:
        """Starts one build. Sent exactly once: no retry on rate limit, timeout or 5xx."""
        payload = {"appId": app_ref.id, "workflowId": workflow_id, "branch": branch}
        if variables:
            payload["environment"] = {"variables": dict(variables)}

        response = await self._request("POST", "/builds", "build trigger", json_body=payload,
                                       error_class=TriggerError, retry_rate_limit=False)
        if response.status_code == 404:
            raise TriggerError(
                f"Workflow '{workflow_id}' not found for app {app_ref.id} on branch '{branch}'. "
                f"Check that codemagic.yaml defines it")
        if response.status_code not in (200, 201):
            raise self._status_error(response, "build trigger", error_class=TriggerError)

        data = self._json(response, "build trigger", error_class=TriggerError)
        build_id = data.get("buildId") if isinstance(data, dict) else None
        if not build_id:
            raise TriggerError("codemagic accepted the build but returned no buildId", transient=True)

        logger.info(f"Triggered build {build_id} for app {app_ref.id} ({workflow_id}@{branch})")
        return BuildHandle(
            build_id=build_id,
            app_ref=app_ref,
            workflow_id=workflow_id,
            branch=branch,
            started_at=self.clock.now(),
            build_url=BUILD_URL_TEMPLATE.format(app_id=app_ref.id, build_id=build_id),
        )

    async def _fetch_build(self, build_id: str, op: str) -> dict:
        response = await self._request("GET", f"/builds/{build_id}", op, error_class=PollError)
        if response.status_code == 404:
            raise PollError(f"Build {build_id} not found")
        if response.status_code != 200:
            raise self._status_error(response, op, error_class=PollError)
        data = self._json(response, op, error_class=PollError)
        build = data.get("build") if isinstance(data, dict) else None
        if not isinstance(build, dict):
            raise PollError(f"codemagic {op} response has no build record", transient=True)
        return build

    async def get_build_status(self, build_id: str, attempt: int = 0) -> BuildStatusSnapshot:
        build = await self._fetch_build(build_id, "build status")
        return BuildStatusSnapshot(
            build_id=build_id,
            status=map_remote_status(build.get("status")),
            started_at=parse_iso(build.get("startedAt")),
            finished_at=parse_iso(build.get("finishedAt")),
            attempt=attempt,
        )

    async def list_artifacts(self, build_id: str) -> List[BuildArtifact]:
        build = await self._fetch_build(build_id, "artifact listing")
        artifacts = []
        for item in build.get("artefacts") or []:
            if not isinstance(item, dict) or not item.get("name"):
                continue
            artifacts.append(BuildArtifact(
                name=item["name"],
                url=item.get("url", ""),
                size=item.get("size"),
                checksum=item.get("md5"),
            ))
        return artifacts
