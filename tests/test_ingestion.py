import io
import os
import re

import pytest
import requests
from werkzeug.datastructures import FileStorage, MultiDict

import ffmpeg_microservice
from ffmpeg_microservice import (
    DownloadError,
    download_media_from_url,
    make_output_path,
    pick_uploaded_file,
    save_uploaded_file,
)
from conftest import FakeResponse, list_work_files


def _upload(name, content=b"video-bytes", field="video"):
    return FileStorage(stream=io.BytesIO(content), filename=name, name=field)


def test_pick_uploaded_file_accepts_any_field_name():
    first = _upload("a.mp4", field="clip")
    second = _upload("b.mp4", field="video")
    files = MultiDict([("clip", first), ("video", second)])

    assert pick_uploaded_file(files) is first


def test_pick_uploaded_file_skips_empty_filenames():
    empty = _upload("", field="video")
    real = _upload("real.mp4", field="other")
    files = MultiDict([("video", empty), ("other", real)])

    assert pick_uploaded_file(files) is real


def test_pick_uploaded_file_none_when_no_files():
    assert pick_uploaded_file(MultiDict()) is None


def test_save_uploaded_file_creates_work_dir(work_dir):
    assert not os.path.exists(work_dir)

    path = save_uploaded_file(_upload("My Clip.mp4"), work_dir)

    assert os.path.dirname(path) == work_dir
    assert re.fullmatch(r"\d+-[0-9a-f]{12}-My_Clip\.mp4", os.path.basename(path))
    with open(path, "rb") as f:
        assert f.read() == b"video-bytes"


def test_save_uploaded_file_sanitizes_name(work_dir):
    path = save_uploaded_file(_upload("../../etc/passwd"), work_dir)

    assert os.path.dirname(path) == work_dir
    assert ".." not in os.path.basename(path)


def test_save_uploaded_file_existing_dir(work_dir):
    os.makedirs(work_dir)
    first = save_uploaded_file(_upload("clip.mp4"), work_dir)
    second = save_uploaded_file(_upload("clip.mp4"), work_dir)

    assert first != second
    assert len(list_work_files(work_dir)) == 2


def test_same_instant_names_are_unique(work_dir, monkeypatch):
    monkeypatch.setattr(ffmpeg_microservice.time, "time", lambda: 1700000000.0)

    paths = {make_output_path(work_dir, "converted", "mp4") for _ in range(50)}

    assert len(paths) == 50


def test_make_output_path_sanitizes_extension(work_dir):
    path = make_output_path(work_dir, "converted", "../mp4")

    assert os.path.dirname(path) == work_dir
    assert path.endswith(".mp4")


def test_download_writes_file(work_dir, monkeypatch):
    response = FakeResponse(headers={"content-length": "12"})
    calls = []

    def fake_get(url, **kwargs):
        calls.append((url, kwargs))
        return response

    monkeypatch.setattr(ffmpeg_microservice.requests, "get", fake_get)

    path = download_media_from_url("https://example.com/clip.mp4", work_dir, timeout=5)

    assert re.fullmatch(r"input-\d+-[0-9a-f]{12}\.mp4", os.path.basename(path))
    with open(path, "rb") as f:
        assert f.read() == b"remote-video"
    assert calls[0][1]["stream"] is True
    assert calls[0][1]["timeout"] == 5
    assert response.closed


@pytest.mark.parametrize("status", [304, 404, 500])
def test_download_non_success_status(work_dir, monkeypatch, status):
    monkeypatch.setattr(
        ffmpeg_microservice.requests, "get",
        lambda url, **kwargs: FakeResponse(status_code=status),
    )

    with pytest.raises(DownloadError, match=str(status)):
        download_media_from_url("http://example.com/clip.mp4", work_dir)

    assert list_work_files(work_dir) == []


def test_download_transport_error(work_dir, monkeypatch):
    def fake_get(url, **kwargs):
        raise requests.exceptions.ConnectionError("Name or service not known")

    monkeypatch.setattr(ffmpeg_microservice.requests, "get", fake_get)

    with pytest.raises(DownloadError, match="Failed to download media"):
        download_media_from_url("http://unreachable.invalid/clip.mp4", work_dir)

    assert list_work_files(work_dir) == []


def test_download_removes_partial_file(work_dir, monkeypatch):
    response = FakeResponse(
        chunks=[b"partial"],
        error=requests.exceptions.ChunkedEncodingError("connection broken"),
    )
    monkeypatch.setattr(ffmpeg_microservice.requests, "get", lambda url, **kwargs: response)

    with pytest.raises(DownloadError):
        download_media_from_url("http://example.com/clip.mp4", work_dir)

    assert list_work_files(work_dir) == []
    assert response.closed


def test_download_too_large(work_dir, monkeypatch):
    monkeypatch.setattr(
        ffmpeg_microservice.requests, "get",
        lambda url, **kwargs: FakeResponse(chunks=[b"x" * 10, b"y" * 10]),
    )

    with pytest.raises(DownloadError, match="File too large"):
        download_media_from_url("http://example.com/clip.mp4", work_dir, max_size=15)

    assert list_work_files(work_dir) == []


def test_download_declared_length_too_large(work_dir, monkeypatch):
    monkeypatch.setattr(
        ffmpeg_microservice.requests, "get",
        lambda url, **kwargs: FakeResponse(headers={"content-length": "1000"}),
    )

    with pytest.raises(DownloadError, match="File too large"):
        download_media_from_url("http://example.com/clip.mp4", work_dir, max_size=100)


@pytest.mark.parametrize("url", ["ftp://example.com/clip.mp4", "not a url", "file:///etc/passwd"])
def test_download_rejects_unsupported_urls(work_dir, url):
    with pytest.raises(DownloadError, match="Invalid URL"):
        download_media_from_url(url, work_dir)


def test_download_wall_clock_timeout(work_dir, monkeypatch):
    response = FakeResponse(chunks=[b"a", b"b", b"c", b"d"], delay=0.05)
    monkeypatch.setattr(ffmpeg_microservice.requests, "get", lambda url, **kwargs: response)

    with pytest.raises(DownloadError, match="Download timed out"):
        download_media_from_url("http://slow.example.com/clip.mp4", work_dir, timeout=0.08)

    assert list_work_files(work_dir) == []
    assert response.closed
