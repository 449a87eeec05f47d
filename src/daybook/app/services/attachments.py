"""Attachment blob stores.

References handed out by a store are opaque to the rest of the app; only the
store that produced a reference knows how to delete it. Paths follow
``{owner}/{entry}/{timestamp}-{ulid}.{ext}``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Iterable, Protocol
from urllib.parse import unquote, urlparse

import httpx
from ulid import ULID

logger = logging.getLogger(__name__)

DEFAULT_BUCKET = "journal-photos"
LOCAL_SCHEME = "attachment"


class AttachmentUploadError(Exception):
    """Raised when an attachment could not be stored remotely."""


class AttachmentStore(Protocol):
    async def upload(self, owner_id: str, entry_id: str, local_ref: str) -> str:
        ...

    async def delete(self, ref: str) -> None:
        ...


def _extension(local_ref: str) -> str:
    suffix = Path(urlparse(local_ref).path).suffix.lower().lstrip(".")
    return suffix or "jpg"


def content_type_for(ext: str) -> str:
    if ext == "jpg":
        ext = "jpeg"
    return f"image/{ext}"


def _path_segment(value: str) -> str:
    if not value or value in (".", "..") or "/" in value or "\\" in value:
        raise AttachmentUploadError(f"unsafe attachment path segment: {value!r}")
    return value


def object_path(owner_id: str, entry_id: str, local_ref: str) -> str:
    """Unique object path for one upload.

    The ULID suffix keeps uploads made in the same millisecond apart.
    """

    millis = int(time.time() * 1000)
    return (
        f"{_path_segment(owner_id)}/{_path_segment(entry_id)}/"
        f"{millis}-{ULID()}.{_extension(local_ref)}"
    )


def path_from_reference(ref: str) -> str:
    """Recover ``owner/entry/filename`` from the tail of a reference."""

    parts = [p for p in urlparse(ref).path.split("/") if p]
    if len(parts) < 3:
        raise ValueError(f"unrecognised attachment reference: {ref}")
    return "/".join(unquote(p) for p in parts[-3:])


async def read_local_reference(local_ref: str) -> bytes:
    """Read the bytes behind a device-local reference."""

    parsed = urlparse(local_ref)
    if parsed.scheme != "file":
        raise AttachmentUploadError(
            f"cannot read {parsed.scheme}:// references on this host"
        )
    path = Path(unquote(parsed.path))
    try:
        return await asyncio.to_thread(path.read_bytes)
    except OSError as exc:
        raise AttachmentUploadError(f"cannot read {path}") from exc


async def delete_all(store: AttachmentStore, refs: Iterable[str]) -> int:
    """Delete every reference, logging failures instead of raising.

    Returns the number of references that were removed.
    """

    refs = list(refs)
    if not refs:
        return 0
    results = await asyncio.gather(
        *(store.delete(ref) for ref in refs), return_exceptions=True
    )
    removed = 0
    for ref, result in zip(refs, results):
        if isinstance(result, Exception):
            logger.warning("Failed to delete attachment %s: %s", ref, result)
        else:
            removed += 1
    return removed


class HttpAttachmentStore:
    """Object-storage REST backend with public read URLs."""

    def __init__(
        self,
        base_url: str,
        *,
        bucket: str = DEFAULT_BUCKET,
        api_key: str | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.bucket = bucket
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, headers=headers)

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/object/public/{self.bucket}/{path}"

    async def upload(self, owner_id: str, entry_id: str, local_ref: str) -> str:
        data = await read_local_reference(local_ref)
        path = object_path(owner_id, entry_id, local_ref)
        try:
            response = await self._client.post(
                f"{self.base_url}/object/{self.bucket}/{path}",
                content=data,
                headers={
                    "Content-Type": content_type_for(_extension(local_ref)),
                    "x-upsert": "false",
                },
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise AttachmentUploadError(f"upload of {path} failed: {exc}") from exc
        return self.public_url(path)

    async def delete(self, ref: str) -> None:
        path = path_from_reference(ref)
        response = await self._client.request(
            "DELETE",
            f"{self.base_url}/object/{self.bucket}",
            json={"prefixes": [path]},
        )
        response.raise_for_status()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class FilesystemAttachmentStore:
    """Store attachments under a local directory.

    References look like ``attachment://journal-photos/owner/entry/name.jpg``.
    """

    def __init__(self, root: str | Path, *, bucket: str = DEFAULT_BUCKET) -> None:
        self.root = Path(root).expanduser().resolve(strict=False)
        self.bucket = bucket

    def _target(self, path: str) -> Path:
        target = (self.root / self.bucket / path).resolve(strict=False)
        if self.root not in target.parents:
            raise ValueError(f"attachment path escapes storage root: {path}")
        return target

    async def upload(self, owner_id: str, entry_id: str, local_ref: str) -> str:
        data = await read_local_reference(local_ref)
        path = object_path(owner_id, entry_id, local_ref)
        target = self._target(path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            raise AttachmentUploadError(f"could not write {target}") from exc
        return f"{LOCAL_SCHEME}://{self.bucket}/{path}"

    async def delete(self, ref: str) -> None:
        target = self._target(path_from_reference(ref))
        await asyncio.to_thread(target.unlink, True)

    async def aclose(self) -> None:
        return None


__all__ = [
    "AttachmentStore",
    "AttachmentUploadError",
    "FilesystemAttachmentStore",
    "HttpAttachmentStore",
    "content_type_for",
    "delete_all",
    "object_path",
    "path_from_reference",
    "read_local_reference",
]
