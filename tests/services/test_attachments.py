from __future__ import annotations

import asyncio
from pathlib import Path
from types import SimpleNamespace

import httpx
import orjson
import pytest

from daybook.app.services.attachments import (
    AttachmentUploadError,
    FilesystemAttachmentStore,
    HttpAttachmentStore,
    content_type_for,
    delete_all,
    object_path,
    path_from_reference,
)


def _photo(tmp_path: Path) -> str:
    photo = tmp_path / "summit.PNG"
    photo.write_bytes(b"\x89PNG")
    return photo.as_uri()


def test_filesystem_store_round_trip(tmp_path: Path) -> None:
    store = FilesystemAttachmentStore(tmp_path / "blobs")

    async def scenario() -> None:
        ref = await store.upload("owner-1", "entry-1", _photo(tmp_path))
        assert ref.startswith("attachment://journal-photos/owner-1/entry-1/")
        assert ref.endswith(".png")

        stored = tmp_path / "blobs" / "journal-photos" / path_from_reference(ref)
        assert stored.read_bytes() == b"\x89PNG"

        assert await delete_all(store, [ref]) == 1
        assert not stored.exists()

        with pytest.raises(AttachmentUploadError):
            await store.upload("owner-1", "entry-1", "content://media/1")

    asyncio.run(scenario())


def test_http_store_uploads_and_deletes(tmp_path: Path) -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={})

    store = HttpAttachmentStore(
        "https://storage.example/v1/",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )

    async def scenario() -> str:
        ref = await store.upload("owner-1", "entry-1", _photo(tmp_path))
        await store.delete(ref)
        return ref

    ref = asyncio.run(scenario())

    upload, delete = requests
    assert upload.method == "POST"
    assert upload.url.path.startswith("/v1/object/journal-photos/owner-1/entry-1/")
    assert upload.headers["content-type"] == "image/png"
    assert ref.startswith("https://storage.example/v1/object/public/journal-photos/")
    assert delete.method == "DELETE"
    assert orjson.loads(delete.content) == {"prefixes": [path_from_reference(ref)]}


def test_http_upload_failure_is_reported(tmp_path: Path) -> None:
    store = HttpAttachmentStore(
        "https://storage.example/v1",
        client=httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(403))
        ),
    )

    async def scenario() -> None:
        with pytest.raises(AttachmentUploadError):
            await store.upload("owner-1", "entry-1", _photo(tmp_path))

    asyncio.run(scenario())


def test_helpers() -> None:
    assert content_type_for("jpg") == "image/jpeg"
    with pytest.raises(ValueError):
        path_from_reference("https://cdn.example/a.jpg")


def test_uploads_in_the_same_millisecond_do_not_collide(
    tmp_path: Path, monkeypatch
) -> None:
    monkeypatch.setattr(
        "daybook.app.services.attachments.time",
        SimpleNamespace(time=lambda: 1714550400.123),
    )
    first = tmp_path / "first.jpg"
    second = tmp_path / "second.jpg"
    first.write_bytes(b"first")
    second.write_bytes(b"second")
    store = FilesystemAttachmentStore(tmp_path / "blobs")

    async def scenario() -> tuple[str, str]:
        return (
            await store.upload("owner-1", "entry-1", first.as_uri()),
            await store.upload("owner-1", "entry-1", second.as_uri()),
        )

    ref_a, ref_b = asyncio.run(scenario())

    assert ref_a != ref_b
    root = tmp_path / "blobs" / "journal-photos"
    assert (root / path_from_reference(ref_a)).read_bytes() == b"first"
    assert (root / path_from_reference(ref_b)).read_bytes() == b"second"


@pytest.mark.parametrize(
    "owner_id, entry_id",
    [
        ("../../x", "entry-1"),
        ("owner-1", ".."),
        ("owner-1", "a/b"),
        ("", "entry-1"),
        ("owner\\1", "entry-1"),
    ],
)
def test_object_path_rejects_unsafe_segments(owner_id: str, entry_id: str) -> None:
    with pytest.raises(AttachmentUploadError):
        object_path(owner_id, entry_id, "file:///photos/a.jpg")
