"""
Cloud storage backends.

The integrity subsystem only needs four operations from a remote:
put, get, exists and list (with sizes). Three transports provide them:

    FolderStorage   a locally mounted, provider-synced folder (Dropbox, iCloud, ...)
    RcloneStorage   any rclone remote, driven through the rclone binary
    WebDavStorage   a WebDAV server, spoken to directly over HTTP

Keys are POSIX-style paths relative to the storage root, for example
``myproject/databases/app_20260301_120000_1.db.gz.age``.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import time
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import quote, unquote, urlparse

import requests

from checkpoint.config.credentials import CredentialNotFoundError, CredentialStore
from checkpoint.tools import ToolError, ToolNotFoundError, ToolTimeoutError, run_tool

if TYPE_CHECKING:
    from checkpoint.config.settings import Settings

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60
TRANSFER_TIMEOUT_SECONDS = 1800
_DAV_NS = "{DAV:}"


class CloudStorageError(Exception):
    """Raised when a remote operation fails."""

    pass


class CloudTimeoutError(CloudStorageError):
    """Raised when a remote operation does not finish in time."""

    pass


class CloudStorage(ABC):
    """Put/get/exists/list capability over a remote location."""

    @abstractmethod
    def put(self, local_path: Path, key: str) -> None:
        """Upload a local file to key."""

    @abstractmethod
    def get(self, key: str, local_path: Path) -> None:
        """Download key to a local file."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Return True if key exists remotely."""

    @abstractmethod
    def list(self, prefix: str = "", timeout: float | None = None) -> dict[str, int]:
        """
        List remote objects under a prefix.

        Returns:
            Mapping of key to size in bytes.

        Raises:
            CloudTimeoutError: If the listing did not finish in time.
            CloudStorageError: If the remote cannot be listed.
        """

    @abstractmethod
    def describe(self) -> str:
        """Short human-readable description of the remote."""


class FolderStorage(CloudStorage):
    """Storage backed by a local folder that a sync client mirrors to the cloud."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root).expanduser()

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise CloudStorageError(f"Key escapes storage root: {key}")
        return path

    def put(self, local_path: Path, key: str) -> None:
        destination = self._path(key)
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            temp_fd, temp_path = tempfile.mkstemp(
                prefix=f".{destination.name}.",
                suffix=".tmp",
                dir=str(destination.parent),
            )
            os.close(temp_fd)
            try:
                shutil.copy2(local_path, temp_path)
                os.replace(temp_path, destination)
            except Exception:
                if os.path.exists(temp_path):
                    os.unlink(temp_path)
                raise
        except OSError as e:
            raise CloudStorageError(f"Cannot copy to {destination}: {e}") from e

    def get(self, key: str, local_path: Path) -> None:
        source = self._path(key)
        try:
            shutil.copy2(source, local_path)
        except OSError as e:
            raise CloudStorageError(f"Cannot copy from {source}: {e}") from e

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def list(self, prefix: str = "", timeout: float | None = None) -> dict[str, int]:
        if timeout is None:
            return self._scan(prefix)
        # A stalled sync client or hung mount can block the walk indefinitely
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="checkpoint-list")
        future = executor.submit(self._scan, prefix)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError as e:
            raise CloudTimeoutError(
                f"Listing {self.root} did not finish within {timeout:g}s"
            ) from e
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _scan(self, prefix: str) -> dict[str, int]:
        if not self.root.is_dir():
            raise CloudStorageError(f"Cloud folder not found: {self.root}")
        base = self.root / prefix if prefix else self.root
        if not base.is_dir():
            return {}
        objects = {}
        for path in base.rglob("*"):
            if path.is_file() and not path.name.endswith(".tmp"):
                objects[path.relative_to(self.root).as_posix()] = path.stat().st_size
        return objects

    def describe(self) -> str:
        return f"folder {self.root}"


class RcloneStorage(CloudStorage):
    """
    Storage on an rclone remote.

    Args:
        remote: rclone remote name (without the trailing colon).
        base_path: Path inside the remote that acts as the storage root.
        timeout: Timeout for metadata operations.
    """

    def __init__(
        self,
        remote: str,
        base_path: str = "Backups/Checkpoint",
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.remote = remote.rstrip(":")
        self.base_path = base_path.strip("/")
        self.timeout = timeout

    def _target(self, key: str = "") -> str:
        path = "/".join(part for part in (self.base_path, key.strip("/")) if part)
        return f"{self.remote}:{path}"

    def _run(self, args: list[str], timeout: float | None) -> str:
        try:
            return run_tool(["rclone", *args], timeout=timeout).stdout
        except ToolTimeoutError as e:
            raise CloudTimeoutError(str(e)) from e
        except ToolNotFoundError as e:
            raise CloudStorageError("rclone is not installed") from e
        except ToolError as e:
            raise CloudStorageError(str(e)) from e

    def put(self, local_path: Path, key: str) -> None:
        self._run(["copyto", str(local_path), self._target(key)], TRANSFER_TIMEOUT_SECONDS)

    def get(self, key: str, local_path: Path) -> None:
        self._run(["copyto", self._target(key), str(local_path)], TRANSFER_TIMEOUT_SECONDS)

    def exists(self, key: str) -> bool:
        try:
            output = self._run(["lsf", self._target(key)], self.timeout)
        except CloudTimeoutError:
            raise
        except CloudStorageError:
            return False
        return bool(output.strip())

    def list(self, prefix: str = "", timeout: float | None = None) -> dict[str, int]:
        output = self._run(
            ["lsjson", "-R", "--files-only", self._target(prefix)],
            timeout or self.timeout,
        )
        try:
            items = json.loads(output or "[]")
        except json.JSONDecodeError as e:
            raise CloudStorageError(f"Unexpected rclone output: {e}") from e

        prefix = prefix.strip("/")
        objects = {}
        for item in items:
            rel = item.get("Path", "")
            key = f"{prefix}/{rel}" if prefix else rel
            objects[key] = int(item.get("Size", 0))
        return objects

    def describe(self) -> str:
        return f"rclone {self._target()}"


class WebDavStorage(CloudStorage):
    """
    Storage on a WebDAV server.

    Args:
        url: Collection URL acting as the storage root.
        username: Optional basic-auth user.
        password: Optional basic-auth password.
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        url: str,
        username: str | None = None,
        password: str | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.url = url.rstrip("/") + "/"
        self.username = username
        self.password = password
        self.timeout = timeout
        self._session: requests.Session | None = None

    def _get_session(self) -> requests.Session:
        """Get or create the HTTP session."""
        if self._session is not None:
            return self._session
        self._session = requests.Session()
        if self.username:
            self._session.auth = (self.username, self.password or "")
        return self._session

    def _url(self, key: str) -> str:
        return self.url + quote(key.strip("/"))

    def _request(
        self,
        method: str,
        url: str,
        timeout: float | None = None,
        **kwargs: object,
    ) -> requests.Response:
        try:
            return self._get_session().request(
                method, url, timeout=timeout or self.timeout, **kwargs
            )
        except requests.exceptions.Timeout as e:
            raise CloudTimeoutError(f"WebDAV {method} timed out: {e}") from e
        except requests.exceptions.RequestException as e:
            raise CloudStorageError(f"WebDAV {method} failed: {e}") from e

    def _ensure_collections(self, key: str) -> None:
        parts = key.strip("/").split("/")[:-1]
        current = ""
        for part in parts:
            current = f"{current}{part}/"
            response = self._request("MKCOL", self.url + quote(current))
            # 405: collection already exists
            if response.status_code not in (201, 405):
                raise CloudStorageError(
                    f"Cannot create collection {current}: HTTP {response.status_code}"
                )

    def put(self, local_path: Path, key: str) -> None:
        self._ensure_collections(key)
        with open(local_path, "rb") as f:
            response = self._request("PUT", self._url(key), TRANSFER_TIMEOUT_SECONDS, data=f)
        if response.status_code not in (200, 201, 204):
            raise CloudStorageError(f"Upload of {key} failed: HTTP {response.status_code}")

    def get(self, key: str, local_path: Path) -> None:
        response = self._request("GET", self._url(key), TRANSFER_TIMEOUT_SECONDS, stream=True)
        if response.status_code != 200:
            raise CloudStorageError(f"Download of {key} failed: HTTP {response.status_code}")
        with open(local_path, "wb") as f:
            for chunk in response.iter_content(chunk_size=65536):
                f.write(chunk)

    def exists(self, key: str) -> bool:
        response = self._request("HEAD", self._url(key))
        return response.status_code == 200

    def list(self, prefix: str = "", timeout: float | None = None) -> dict[str, int]:
        root_path = urlparse(self.url).path
        objects: dict[str, int] = {}
        pending = [prefix.strip("/") + "/" if prefix.strip("/") else ""]
        budget = timeout or self.timeout
        deadline = time.monotonic() + budget

        while pending:
            collection = pending.pop()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise CloudTimeoutError(f"WebDAV listing did not finish within {budget:g}s")
            response = self._request(
                "PROPFIND",
                self.url + quote(collection),
                remaining,
                headers={"Depth": "1"},
            )
            if response.status_code == 404:
                continue
            if response.status_code != 207:
                raise CloudStorageError(
                    f"Listing {collection or '/'} failed: HTTP {response.status_code}"
                )

            for href, size, is_collection in self._parse_multistatus(response.content):
                path = unquote(urlparse(href).path)
                if not path.startswith(root_path):
                    continue
                key = path[len(root_path):]
                if is_collection:
                    if key.rstrip("/") != collection.rstrip("/"):
                        pending.append(key if key.endswith("/") else key + "/")
                else:
                    objects[key] = size
        return objects

    @staticmethod
    def _parse_multistatus(content: bytes) -> list[tuple[str, int, bool]]:
        try:
            tree = ET.fromstring(content)
        except ET.ParseError as e:
            raise CloudStorageError(f"Invalid PROPFIND response: {e}") from e

        entries = []
        for response in tree.iter(f"{_DAV_NS}response"):
            href = response.findtext(f"{_DAV_NS}href", default="")
            prop = response.find(f".//{_DAV_NS}prop")
            if prop is None:
                continue
            is_collection = prop.find(f"{_DAV_NS}resourcetype/{_DAV_NS}collection") is not None
            length = prop.findtext(f"{_DAV_NS}getcontentlength", default="0") or "0"
            entries.append((href, int(length), is_collection))
        return entries

    def describe(self) -> str:
        return f"webdav {self.url}"


def get_storage(settings: Settings, store: CredentialStore | None = None) -> CloudStorage | None:
    """
    Build the configured cloud storage backend.

    The first configured transport wins: a synced folder, then an rclone
    remote, then a WebDAV server. The WebDAV password comes from the
    CHECKPOINT_WEBDAV_PASSWORD environment variable or, if unlocked, from
    the credential store under service "webdav".

    Args:
        settings: Loaded settings.
        store: Optional credential store for the WebDAV password.

    Returns:
        A storage backend, or None if no cloud target is configured.
    """
    cloud = settings.cloud
    timeout = cloud.verify_timeout

    if cloud.folder_enabled and cloud.folder_path:
        return FolderStorage(Path(cloud.folder_path))

    if cloud.rclone_enabled and cloud.rclone_remote:
        return RcloneStorage(cloud.rclone_remote, cloud.rclone_path, timeout=timeout)

    if cloud.webdav_url:
        password = os.environ.get("CHECKPOINT_WEBDAV_PASSWORD")
        if password is None and store is not None and store.is_unlocked():
            try:
                password = store.get_secret("webdav", cloud.webdav_username or cloud.webdav_url)
            except CredentialNotFoundError:
                logger.warning("No WebDAV password stored; connecting without one")
        return WebDavStorage(
            cloud.webdav_url,
            username=cloud.webdav_username or None,
            password=password,
            timeout=timeout,
        )

    return None
