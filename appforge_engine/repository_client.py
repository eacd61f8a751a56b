import base64
import re
from typing import Callable, Dict, Optional
from urllib.parse import quote

import httpx

from .ensure import ensure_resource
from .errors import RateLimitError, RepositoryError
from .http_client import ServiceClient, response_message
from .logger_setup import logger
from .models import CommitIdentity, PushResult, RemoteRepositoryRef

# (index, total, path, error or None)
PushProgress = Callable[[int, int, str, Optional[str]], None]

MAX_REPOSITORY_NAME = 100


def derive_repository_name(candidate: str) -> str:
    """Maps a free-form app name onto the characters a repository name may use."""
    name = re.sub(r"[^A-Za-z0-9._-]+", "-", candidate.strip())
    name = re.sub(r"-{2,}", "-", name).strip("-.")
    name = name[:MAX_REPOSITORY_NAME].rstrip("-.")
    if not name:
        raise RepositoryError(f"Cannot derive a repository name from '{candidate}'", kind="invalid_name")
    return name


class RepositoryClient(ServiceClient):
    """GitHub repositories owned by one account: find-or-create, then per-file upserts."""

    service_name = "github"
    error_class = RepositoryError

    def __init__(self, client: httpx.AsyncClient, owner: str, **kwargs):
        super().__init__(client, **kwargs)
        self.owner = owner

    def _to_ref(self, data: dict, existed_before: bool) -> RemoteRepositoryRef:
        try:
            return RemoteRepositoryRef(
                name=data["name"],
                full_name=data["full_name"],
                html_url=data.get("html_url", ""),
                clone_url=data.get("clone_url", ""),
                existed_before=existed_before,
            )
        except (KeyError, TypeError):
            raise RepositoryError("github returned a repository without name/full_name", transient=True,
                                  kind="transport")

    async def find_repository(self, name: str) -> Optional[RemoteRepositoryRef]:
        expected = f"{self.owner}/{name}"
        response = await self._request("GET", f"/repos/{self.owner}/{name}", "repository lookup")
        if response.status_code == 404:
            return None
        if response.status_code in (301, 302, 307):
            raise RepositoryError(
                f"Repository name '{expected}' redirects to a renamed repository; choose another name",
                kind="name_collision")
        if response.status_code != 200:
            raise self._status_error(response, "repository lookup")

        data = self._json(response, "repository lookup")
        found = data.get("full_name") if isinstance(data, dict) else None
        if not found or not isinstance(found, str):
            raise RepositoryError("github repository lookup returned a malformed response", transient=True,
                                  kind="transport")
        if found.lower() != expected.lower():
            raise RepositoryError(
                f"Repository name '{expected}' resolves to unrelated repository '{found}'",
                kind="name_collision")
        return self._to_ref(data, existed_before=True)

    async def create_repository(self, name: str, description: str, private: bool = False) -> RemoteRepositoryRef:
        payload = {
            "name": name,
            "description": description,
            "private": private,
            "auto_init": False,
        }
        response = await self._request("POST", "/user/repos", "repository create", json_body=payload)
        if response.status_code == 422:
            data = {}
            try:
                data = response.json()
            except ValueError:
                pass
            errors = data.get("errors", []) if isinstance(data, dict) else []
            name_taken = any(isinstance(e, dict) and e.get("field") == "name" for e in errors)
            if name_taken or "already exists" in response.text.lower():
                raise RepositoryError(
                    f"Repository name '{name}' already exists for another resource under '{self.owner}'",
                    kind="name_collision")
            raise RepositoryError(f"github rejected repository '{name}': {response_message(response)}",
                                  kind="invalid_name")
        if response.status_code not in (200, 201):
            raise self._status_error(response, "repository create")

        ref = self._to_ref(self._json(response, "repository create"), existed_before=False)
        logger.info(f"Created repository {ref.full_name}")
        return ref

    async def ensure_repository(self, name_candidate: str, description: str = "") -> RemoteRepositoryRef:
        name = derive_repository_name(name_candidate)
        ref, existed = await ensure_resource(
            lambda: self.find_repository(name),
            lambda: self.create_repository(name, description),
            f"repository {self.owner}/{name}",
        )
        if existed:
            # Reused as-is; its contents are not compared with what is about to be pushed.
            logger.warning(f"Repository {ref.full_name} already exists, pushing over its current contents")
        return ref

    async def _existing_sha(self, url: str, path: str) -> Optional[str]:
        response = await self._request("GET", url, f"sha lookup for {path}")
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise self._status_error(response, f"sha lookup for {path}")
        data = self._json(response, f"sha lookup for {path}")
        if isinstance(data, dict):
            return data.get("sha")
        return None

    async def upsert_file(self, ref: RemoteRepositoryRef, path: str, content: bytes, identity: CommitIdentity):
        url = f"/repos/{ref.full_name}/contents/{quote(path)}"
        person = {"name": identity.name, "email": identity.email}
        payload = {
            "message": f"Add {path}",
            "content": base64.b64encode(content).decode("ascii"),
            "committer": person,
            "author": person,
        }
        response = await self._request("PUT", url, f"upload {path}", json_body=payload)

        if response.status_code in (409, 422) and "sha" in response.text:
            # File already exists: an update has to name the blob it replaces
            sha = await self._existing_sha(url, path)
            if sha:
                payload["sha"] = sha
                payload["message"] = f"Update {path}"
                response = await self._request("PUT", url, f"upload {path}", json_body=payload)

        if response.status_code not in (200, 201):
            error = self._status_error(response, f"upload {path}")
            if isinstance(error, RepositoryError) and error.kind == "http":
                error.kind = "push"
            raise error

    async def push_files(self, ref: RemoteRepositoryRef, file_tree: Dict[str, bytes], identity: CommitIdentity,
                         on_progress: Optional[PushProgress] = None) -> PushResult:
        """Uploads every file on its own; a failed file is recorded and the rest still go out.

        RateLimitError is the exception: once the retry budget is spent every
        remaining upload would hit the same limit, so it propagates.
        """
        result = PushResult(uploaded_count=0, total_count=len(file_tree))
        for index, (path, content) in enumerate(file_tree.items(), start=1):
            error_message = None
            try:
                await self.upsert_file(ref, path, content, identity)
                result.uploaded_count += 1
                logger.debug(f"Uploaded {path} to {ref.full_name} ({index}/{result.total_count})")
            except RateLimitError as e:
                logger.warning(f"Push to {ref.full_name} stopped by rate limit after "
                               f"{result.uploaded_count}/{result.total_count} files")
                e.push_result = result
                raise
            except RepositoryError as e:
                error_message = e.message
                result.per_file_errors[path] = e.message
                logger.warning(f"Failed to upload {path} to {ref.full_name}: {e.message}")
            if on_progress:
                on_progress(index, result.total_count, path, error_message)

        logger.info(f"Pushed {result.uploaded_count}/{result.total_count} files to {ref.full_name}")
        return result
