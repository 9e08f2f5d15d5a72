import json
import os
import subprocess
import tempfile
import time

import pytest

_TEST_ROOT = tempfile.mkdtemp(prefix="ffmpeg-microservice-tests-")

os.environ.setdefault("LOG_DIR", os.path.join(_TEST_ROOT, "logs"))
os.environ.setdefault("WORK_DIR", os.path.join(_TEST_ROOT, "uploads"))
os.environ.setdefault("CLEANUP_INTERVAL_MINUTES", "0")

import ffmpeg_microservice  # noqa: E402


SAMPLE_PROBE = {
    "streams": [
        {
            "index": 0,
            "codec_name": "h264",
            "codec_type": "video",
            "width": 1280,
            "height": 720,
            "r_frame_rate": "30000/1001",
        },
        {
            "index": 1,
            "codec_name": "aac",
            "codec_type": "audio",
            "sample_rate": "44100",
            "r_frame_rate": "0/0",
        },
    ],
    "format": {
        "filename": "clip.mp4",
        "format_name": "mov,mp4,m4a,3gp,3g2,mj2",
        "duration": "10.010000",
        "size": "1048576",
        "bit_rate": "838020",
    },
}


class FakeTool:
    """Stands in for subprocess.run: records commands and writes outputs"""

    def __init__(self, probe_output=None, returncode=0, stderr="",
                 output_bytes=b"fake-media-bytes", write_output=True):
        self.probe_output = SAMPLE_PROBE if probe_output is None else probe_output
        self.returncode = returncode
        self.stderr = stderr
        self.output_bytes = output_bytes
        self.write_output = write_output
        self.calls = []

    def __call__(self, cmd, **kwargs):
        self.calls.append(list(cmd))
        if self.returncode != 0:
            return subprocess.CompletedProcess(cmd, self.returncode, stdout="", stderr=self.stderr)
        if os.path.basename(cmd[0]).startswith("ffprobe"):
            return subprocess.CompletedProcess(
                cmd, 0, stdout=json.dumps(self.probe_output), stderr=""
            )
        if self.write_output:
            with open(cmd[-1], "wb") as f:
                f.write(self.output_bytes)
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")


class FakeResponse:
    """Minimal streamed requests.Response"""

    def __init__(self, status_code=200, chunks=(b"remote-", b"video"),
                 headers=None, error=None, delay=0):
        self.status_code = status_code
        self.delay = delay
        self.chunks = list(chunks)
        self.headers = headers or {}
        self.error = error
        self.closed = False

    def iter_content(self, chunk_size=8192):
        for chunk in self.chunks:
            if self.delay:
                time.sleep(self.delay)
            yield chunk
        if self.error is not None:
            raise self.error

    def close(self):
        self.closed = True


def list_work_files(work_dir):
    if not os.path.isdir(work_dir):
        return []
    return sorted(os.listdir(work_dir))


@pytest.fixture
def work_dir(tmp_path):
    return str(tmp_path / "uploads")


@pytest.fixture
def app(work_dir):
    flask_app = ffmpeg_microservice.app
    flask_app.config.update(TESTING=True, WORK_DIR=work_dir)
    return flask_app


@pytest.fixture
def client(app):
    with app.test_client() as test_client:
        yield test_client


@pytest.fixture
def fake_tool(monkeypatch):
    tool = FakeTool()
    monkeypatch.setattr(ffmpeg_microservice.subprocess, "run", tool)
    return tool
