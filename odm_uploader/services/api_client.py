"""HTTP adapter for the image request handler API."""
from __future__ import annotations

import asyncio
import logging
from contextlib import ExitStack
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import httpx

from ..errors import (
    RemoteAPIError,
    RemoteProtocolError,
    TransportError,
    extract_error_message,
)
from ..models import (
    CommitResult,
    Project,
    PushImagesResponse,
    RemoteId,
    RemoteTask,
    TaskProgress,
)
from ..protocols import ByteProgressCallback, ICredentialProvider

logger = logging.getLogger(__name__)

IMAGE_CONTENT_TYPE = "image/jpeg"


class _UploadMeter:
    """Aggregates bytes read by every file of one multipart request."""

    def __init__(self, total: int, callback: Optional[ByteProgressCallback]):
        self.total = total
        self.sent = 0
        self._callback = callback

    def advance(self, delta: int) -> None:
        if not delta:
            return
        self.sent = max(0, min(self.total, self.sent + delta))
        if self._callback is not None:
            self._callback(self.sent, self.total)


class ProgressFileReader:
    """Binary file wrapper that reports read progress to an _UploadMeter.

    httpx streams multipart file parts by calling read() in chunks, so
    bytes read approximate bytes handed to the transport.
    """

    mode = "rb"

    def __init__(self, path: Path, meter: _UploadMeter):
        self.name = str(path)
        self._file = open(path, "rb")
        self._meter = meter
        self._reported = 0

    def _sync_position(self) -> None:
        position = self._file.tell()
        self._meter.advance(position - self._reported)
        self._reported = position

    def read(self, size: int = -1) -> bytes:
        chunk = self._file.read(size)
        if chunk:
            self._sync_position()
        return chunk

    def seek(self, offset: int, whence: int = 0) -> int:
        position = self._file.seek(offset, whence)
        self._sync_position()
        return position

    def tell(self) -> int:
        return self._file.tell()

    def fileno(self) -> int:
        return self._file.fileno()

    def close(self) -> None:
        self._file.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def _as_list(payload: Any, what: str) -> List[Any]:
    """Accept a bare array or a paginated {results: [...]} envelope."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict) and isinstance(payload.get("results"), list):
        return payload["results"]
    raise RemoteProtocolError(f"Expected a list of {what}", details=payload)


class ImageHandlerClient:
    """
    HTTP client adapter for the image request handler.

    Implements IImageHandlerAPI protocol.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 60,
        credentials: Optional[ICredentialProvider] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_retries: int = 3,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._credentials = credentials
        self._transport = transport
        self._max_retries = max(1, max_retries)
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def base_url(self) -> str:
        return self._base_url

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _auth_headers(self) -> Dict[str, str]:
        if self._credentials is None:
            return {}
        token = await self._credentials.get_token()
        return {"Authorization": f"JWT {token}"}

    @staticmethod
    def _error_body(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text

    @staticmethod
    def _parse(response: httpx.Response, method: str, endpoint: str) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise RemoteProtocolError(
                f"Invalid JSON in response to {method} {endpoint}",
                details=response.text[:500],
            ) from exc

    async def _request(
        self,
        method: str,
        endpoint: str,
        retries: int = 1,
        timeout: Optional[float] = None,
        **kwargs,
    ) -> Any:
        if not self._client:
            raise RuntimeError("ImageHandlerClient not initialized. Use 'async with' context.")

        request_timeout = timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT
        reauthenticated = False
        attempt = 0

        while True:
            try:
                headers = await self._auth_headers()
                response = await self._client.request(
                    method, endpoint, headers=headers, timeout=request_timeout, **kwargs
                )
            except httpx.TimeoutException as exc:
                if attempt < retries - 1:
                    attempt += 1
                    await asyncio.sleep(0.5 * attempt)
                    continue
                raise TransportError(f"Timed out on {method} {endpoint}: {exc}") from exc
            except httpx.RequestError as exc:
                if attempt < retries - 1:
                    attempt += 1
                    await asyncio.sleep(0.5 * attempt)
                    continue
                raise TransportError(f"Request to {method} {endpoint} failed: {exc}") from exc

            if response.status_code == 401 and self._credentials is not None and not reauthenticated:
                invalidate = getattr(self._credentials, "invalidate", None)
                if callable(invalidate) and "files" not in kwargs:
                    logger.info("Backend rejected token, refreshing credentials")
                    invalidate()
                    reauthenticated = True
                    continue

            if response.status_code >= 500 and attempt < retries - 1:
                attempt += 1
                logger.debug(f"HTTP {response.status_code} on {method} {endpoint}, retry {attempt}")
                await asyncio.sleep(0.5 * attempt)
                continue

            if response.status_code >= 400:
                body = self._error_body(response)
                raise RemoteAPIError(
                    response.status_code,
                    extract_error_message(
                        body, f"API error {response.status_code} on {method} {endpoint}"
                    ),
                    details=body,
                )

            return self._parse(response, method, endpoint)

    async def ping(self) -> bool:
        """Return True when the backend answers at all."""
        if not self._client:
            raise RuntimeError("ImageHandlerClient not initialized. Use 'async with' context.")
        try:
            response = await self._client.get("/")
        except httpx.RequestError as exc:
            logger.debug(f"Backend not reachable: {exc}")
            return False
        return response.status_code < 500

    async def get_projects(self) -> List[Project]:
        payload = await self._request("GET", "/api/get-projects", retries=self._max_retries)
        return [Project.from_payload(item) for item in _as_list(payload, "projects")]

    async def create_project(self, name: str) -> Project:
        payload = await self._request("POST", "/api/create-project", json={"name": name})
        return Project.from_payload(payload)

    async def rename_project(self, project_id: RemoteId, new_name: str) -> Any:
        return await self._request(
            "POST",
            "/api/rename-project",
            json={"project_id": project_id, "new_name": new_name},
        )

    async def delete_project(self, project_id: RemoteId) -> Any:
        return await self._request("POST", "/api/delete-project", json={"project_id": project_id})

    async def get_tasks(self, project_id: RemoteId) -> List[RemoteTask]:
        payload = await self._request(
            "GET",
            "/api/get-tasks",
            retries=self._max_retries,
            params={"project_id": project_id},
        )
        return [RemoteTask.from_payload(item, project_id) for item in _as_list(payload, "tasks")]

    async def push_images(
        self,
        project_name: str,
        files: Sequence[Path],
        timeout: Optional[float] = None,
        progress_callback: Optional[ByteProgressCallback] = None,
        field_name: str = "images",
    ) -> PushImagesResponse:
        paths = [Path(p) for p in files]
        total = sum(p.stat().st_size for p in paths)
        meter = _UploadMeter(total, progress_callback)

        with ExitStack() as stack:
            parts = []
            for path in paths:
                reader = stack.enter_context(ProgressFileReader(path, meter))
                parts.append((field_name, (path.name, reader, IMAGE_CONTENT_TYPE)))

            logger.debug(f"POST /api/push-images: {len(parts)} files, {total} bytes")
            payload = await self._request(
                "POST",
                "/api/push-images",
                timeout=timeout,
                data={"project_name": project_name},
                files=parts,
            )
        return PushImagesResponse.from_payload(payload)

    async def task_progress(self, task_id: RemoteId, project_id: RemoteId) -> TaskProgress:
        payload = await self._request(
            "GET",
            "/api/task-progress",
            params={"task_id": task_id, "project_id": project_id},
        )
        return TaskProgress.from_payload(payload)

    async def commit_task_to_map(
        self, project_id: RemoteId, task_id: RemoteId, map_name: str
    ) -> CommitResult:
        payload = await self._request(
            "POST",
            "/api/commit-task-to-map",
            json={"project_id": project_id, "map_name": map_name, "task_id": task_id},
        )
        return CommitResult.from_payload(payload)

    async def commit_task_to_custom_folder(
        self, project_id: RemoteId, task_id: RemoteId, folder_path: str
    ) -> CommitResult:
        payload = await self._request(
            "POST",
            "/api/commit-task-to-custom-folder",
            json={"project_id": project_id, "task_id": task_id, "folder_path": folder_path},
        )
        return CommitResult.from_payload(payload)
