#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
FFmpeg Microservice
A Flask-based microservice exposing video/audio inspection and transcoding
through ffmpeg / ffprobe
"""

import os
import json
import uuid
import base64
import subprocess
import time
import threading
import logging
import logging.handlers
from collections import namedtuple
from datetime import datetime, timezone
from urllib.parse import urlparse
import requests
from flask import Flask, request, jsonify
from flask_cors import CORS
from werkzeug.utils import secure_filename
import magic

SERVICE_NAME = "ffmpeg-microservice"


# Configure logging
def setup_logging():
    """Setup comprehensive logging configuration"""
    # Create logs directory if it doesn't exist
    log_dir = os.getenv("LOG_DIR", "./logs")
    os.makedirs(log_dir, exist_ok=True)

    # Get log level from environment
    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_str, logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Clear existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    detailed_formatter = logging.Formatter(
        '%(asctime)s [%(levelname)s] [%(name)s:%(lineno)d] '
        '[%(funcName)s] [%(threadName)s] - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    simple_formatter = logging.Formatter(
        '%(asctime)s [%(levelname)s] %(name)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(simple_formatter)
    root_logger.addHandler(console_handler)

    all_log_file = os.path.join(log_dir, "all.log")
    file_handler = logging.handlers.RotatingFileHandler(
        all_log_file, maxBytes=10*1024*1024, backupCount=5
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(detailed_formatter)
    root_logger.addHandler(file_handler)

    # Quiet Werkzeug and Gunicorn outside debug mode
    if not _parse_bool(os.getenv("FLASK_DEBUG", "false")):
        logging.getLogger("werkzeug").setLevel(logging.WARNING)
        logging.getLogger("gunicorn").setLevel(logging.WARNING)

    return logging.getLogger(SERVICE_NAME)


def _parse_bool(value):
    """Parse boolean value from string or boolean"""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in ("true", "1", "yes", "on")
    return bool(value) if value is not None else False


def _parse_int(value, default=None):
    """Parse integer value from string or int"""
    if value is None:
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        return default


def _parse_float(value, default=None):
    """Parse float value from string or number"""
    if value is None:
        return default
    try:
        return float(value)
    except (ValueError, TypeError):
        return default


logger = setup_logging()

# Configuration from environment variables
HOST = os.getenv("HOST", "0.0.0.0")
PORT = _parse_int(os.getenv("PORT"), 3001)
FLASK_DEBUG = _parse_bool(os.getenv("FLASK_DEBUG", "false"))
WORK_DIR = os.getenv("WORK_DIR", "./uploads")
MAX_UPLOAD_SIZE = int(os.getenv("MAX_UPLOAD_SIZE", "104857600"))  # 100MB
MAX_JSON_SIZE = int(os.getenv("MAX_JSON_SIZE", "52428800"))  # 50MB
MAX_DOWNLOAD_SIZE = int(os.getenv("MAX_DOWNLOAD_SIZE", "104857600"))  # 100MB
DOWNLOAD_TIMEOUT = float(os.getenv("DOWNLOAD_TIMEOUT", "30"))
FFMPEG_TIMEOUT = float(os.getenv("FFMPEG_TIMEOUT", "600"))
FFMPEG_BINARY = os.getenv("FFMPEG_BINARY", "ffmpeg")
FFPROBE_BINARY = os.getenv("FFPROBE_BINARY", "ffprobe")
FILE_RETENTION_MINUTES = int(os.getenv("FILE_RETENTION_MINUTES", "60"))
CLEANUP_INTERVAL_MINUTES = int(os.getenv("CLEANUP_INTERVAL_MINUTES", "30"))

app = Flask(__name__)
app.config.update(
    WORK_DIR=WORK_DIR,
    MAX_CONTENT_LENGTH=MAX_UPLOAD_SIZE,
    MAX_JSON_SIZE=MAX_JSON_SIZE,
    MAX_DOWNLOAD_SIZE=MAX_DOWNLOAD_SIZE,
    DOWNLOAD_TIMEOUT=DOWNLOAD_TIMEOUT,
    FFMPEG_TIMEOUT=FFMPEG_TIMEOUT,
)

CORS(
    app,
    origins="*",
    methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


def log_startup_info():
    """Log startup information"""
    logger.info("=" * 60)
    logger.info("FFmpeg Microservice Starting")
    logger.info("=" * 60)
    logger.info(f"Working directory: {os.getcwd()}")
    logger.info(f"Log level: {os.getenv('LOG_LEVEL', 'INFO')}")
    logger.info(f"Log directory: {os.getenv('LOG_DIR', './logs')}")
    logger.info(f"Flask debug mode: {FLASK_DEBUG}")
    logger.info("Configuration loaded:")
    logger.info(f"  WORK_DIR: {WORK_DIR}")
    logger.info(f"  MAX_UPLOAD_SIZE: {MAX_UPLOAD_SIZE} bytes ({MAX_UPLOAD_SIZE/1024/1024:.1f} MB)")
    logger.info(f"  MAX_JSON_SIZE: {MAX_JSON_SIZE} bytes ({MAX_JSON_SIZE/1024/1024:.1f} MB)")
    logger.info(f"  MAX_DOWNLOAD_SIZE: {MAX_DOWNLOAD_SIZE} bytes ({MAX_DOWNLOAD_SIZE/1024/1024:.1f} MB)")
    logger.info(f"  DOWNLOAD_TIMEOUT: {DOWNLOAD_TIMEOUT}s")
    logger.info(f"  FFMPEG_TIMEOUT: {FFMPEG_TIMEOUT}s")
    logger.info(f"  FFMPEG_BINARY: {FFMPEG_BINARY}")
    logger.info(f"  FFPROBE_BINARY: {FFPROBE_BINARY}")
    logger.info(f"  FILE_RETENTION_MINUTES: {FILE_RETENTION_MINUTES}")
    logger.info(f"  CLEANUP_INTERVAL_MINUTES: {CLEANUP_INTERVAL_MINUTES}")


log_startup_info()


def log_request_info(request_id=None):
    """Log request information with optional request ID"""
    if request_id is None:
        request_id = str(uuid.uuid4())[:8]

    log_data = {
        "request_id": request_id,
        "method": request.method,
        "path": request.path,
        "remote_addr": request.remote_addr,
        "user_agent": request.headers.get("User-Agent", "Unknown"),
        "content_length": request.content_length,
        "content_type": request.content_type,
        "form": request.form.to_dict(),
        "files": [f.filename for f in request.files.values()],
        "json": request.get_json(silent=True) if request.is_json else None,
    }

    logger.info(f"Request {request_id}: {log_data}")
    return request_id


def log_response_info(request_id, status_code, response_time=None, response_data=None):
    """Log response information"""
    log_data = {
        "request_id": request_id,
        "status_code": status_code,
        "response_time_ms": round(response_time, 1) if response_time else None,
        "response_data": response_data if response_data is not None else {},
    }
    logger.info(f"Response {request_id}: {log_data}")


def log_error(request_id, error, context=None):
    """Log error with context"""
    error_data = {
        "request_id": request_id,
        "error_type": type(error).__name__,
        "error_message": str(error),
        "context": context or {},
    }

    logger.error(f"Error {request_id}: {error_data}", exc_info=True)


def error_response(message, status_code, details=None):
    """Create a JSON error body; ``details`` is only included when given"""
    body = {"error": message}
    if details is not None:
        body["details"] = details
    return jsonify(body), status_code


class MediaServiceError(Exception):
    """Base class for failures while processing a media job"""


class DownloadError(MediaServiceError):
    """Remote media could not be fetched"""


class ToolError(MediaServiceError):
    """ffmpeg / ffprobe reported a failure"""

    def __init__(self, message, stderr=""):
        super().__init__(message)
        self.stderr = stderr


class ToolNotFoundError(ToolError):
    """The tool binary could not be spawned"""


QualityPreset = namedtuple("QualityPreset", ["name", "video_bitrate", "audio_bitrate"])

QUALITY_PRESETS = {
    "low": QualityPreset("low", "500k", "64k"),
    "medium": QualityPreset("medium", "1000k", "128k"),
    "high": QualityPreset("high", "2500k", "192k"),
}
DEFAULT_QUALITY = "medium"


def resolve_quality_preset(name):
    """Look up a quality tier; unknown names fall back to ``medium``"""
    preset = QUALITY_PRESETS.get(name)
    if preset is None:
        logger.debug(f"Unknown quality '{name}', using {DEFAULT_QUALITY}")
        return QUALITY_PRESETS[DEFAULT_QUALITY]
    return preset


def _run_tool(cmd, timeout):
    """Run an external tool and return its stdout.

    Raises ToolNotFoundError when the binary cannot be spawned and ToolError
    when it times out or exits non-zero.
    """
    tool = os.path.basename(cmd[0])
    logger.debug(f"Running {tool} command: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd, capture_output=True, text=True, timeout=timeout
        )
    except FileNotFoundError as e:
        logger.error(f"Cannot spawn {tool}: {e}")
        raise ToolNotFoundError(f"Cannot find {tool}: {e}")
    except subprocess.TimeoutExpired as e:
        logger.error(f"{tool} timed out after {timeout}s")
        stderr = e.stderr or ""
        if isinstance(stderr, bytes):
            stderr = stderr.decode("utf-8", errors="replace")
        raise ToolError(f"{tool} timed out after {timeout}s", stderr=stderr)

    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        last_line = stderr.splitlines()[-1] if stderr else "no error output"
        logger.error(f"{tool} exited with code {result.returncode}: {stderr}")
        raise ToolError(
            f"{tool} exited with code {result.returncode}: {last_line}",
            stderr=stderr,
        )
    return result.stdout


class MediaProcessor:
    """Thin adapter over ffmpeg / ffprobe for a single input file.

    The processor never deletes files; the caller owns both the input and
    the output paths.
    """

    def __init__(self, input_path, timeout=FFMPEG_TIMEOUT,
                 ffmpeg_binary=None, ffprobe_binary=None):
        self.input_path = input_path
        self.timeout = timeout
        self.ffmpeg_binary = ffmpeg_binary or FFMPEG_BINARY
        self.ffprobe_binary = ffprobe_binary or FFPROBE_BINARY
        logger.debug(f"MediaProcessor initialized for: {input_path}")

    def probe(self):
        """Extract container and stream metadata using ffprobe"""
        logger.info(f"Probing media: {self.input_path}")

        cmd = [
            self.ffprobe_binary,
            "-v",
            "error",
            "-print_format",
            "json",
            "-show_format",
            "-show_streams",
            self.input_path,
        ]
        output = _run_tool(cmd, self.timeout)

        try:
            data = json.loads(output)
        except (json.JSONDecodeError, TypeError):
            logger.error(f"Failed to parse ffprobe output for: {self.input_path}")
            raise ToolError("Failed to parse media metadata")

        format_info = data.get("format", {})
        # r_frame_rate stays a rational string such as "30000/1001"
        streams = [
            {
                "type": stream.get("codec_type"),
                "codec": stream.get("codec_name"),
                "width": stream.get("width"),
                "height": stream.get("height"),
                "fps": stream.get("r_frame_rate"),
            }
            for stream in data.get("streams", [])
        ]

        probe_result = {
            "duration": _parse_float(format_info.get("duration")),
            "size": _parse_int(format_info.get("size")),
            "format": format_info.get("format_name"),
            "streams": streams,
        }
        logger.info(f"Probe completed: {probe_result}")
        return probe_result

    def transcode(self, output_path, target_format, video_bitrate=None,
                  audio_bitrate=None, start_time=None, duration=None):
        """Transcode the input into ``target_format`` at ``output_path``.

        Pass ``video_bitrate=None`` for audio-only conversions. The format is
        handed to ffmpeg unchanged so an unknown muxer surfaces as a ToolError.
        """
        logger.info(
            f"Transcoding {self.input_path} -> {output_path} "
            f"(format={target_format}, video_bitrate={video_bitrate}, "
            f"audio_bitrate={audio_bitrate}, start={start_time}, duration={duration})"
        )

        cmd = [
            self.ffmpeg_binary,
            "-hide_banner",
            "-loglevel",
            "error",
            "-y",
            "-i",
            self.input_path,
        ]
        if video_bitrate:
            cmd.extend(["-b:v", str(video_bitrate)])
        if audio_bitrate:
            cmd.extend(["-b:a", str(audio_bitrate)])
        if start_time:
            cmd.extend(["-ss", str(start_time)])
        if duration:
            cmd.extend(["-t", str(duration)])
        cmd.extend(["-f", str(target_format), output_path])

        _run_tool(cmd, self.timeout)
        self._require_output(output_path)
        logger.info(f"Transcode completed: {output_path} ({os.path.getsize(output_path)} bytes)")

    def extract_thumbnail(self, output_path, timestamp="00:00:01"):
        """Capture one JPEG frame at ``timestamp``, 640px wide"""
        logger.info(f"Extracting thumbnail at {timestamp} from: {self.input_path}")

        cmd = [
            self.ffmpeg_binary,
            "-hide_banner",
            "-loglevel",
            "error",
            "-y",
            "-ss",
            str(timestamp),
            "-i",
            self.input_path,
            "-frames:v",
            "1",
            "-vf",
            "scale=640:-1",
            "-q:v",
            "2",
            "-f",
            "image2",
            output_path,
        ]

        _run_tool(cmd, self.timeout)
        # ffmpeg exits 0 without writing a frame when seeking past the end
        self._require_output(output_path)
        logger.info(f"Thumbnail extracted: {output_path} ({os.path.getsize(output_path)} bytes)")

    def _require_output(self, output_path):
        if not os.path.isfile(output_path) or os.path.getsize(output_path) == 0:
            logger.error(f"No output produced at: {output_path}")
            raise ToolError(f"ffmpeg produced no output for {os.path.basename(self.input_path)}")


def _unique_token():
    """Millisecond timestamp plus a random suffix for temp file names"""
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:12]}"


def make_output_path(work_dir, prefix, extension):
    """Build a unique output path inside ``work_dir``"""
    safe_ext = secure_filename(str(extension)) or "out"
    os.makedirs(work_dir, exist_ok=True)
    return os.path.join(work_dir, f"{prefix}-{_unique_token()}.{safe_ext}")


def sniff_mime_type(file_path):
    """Detect the MIME type of a local file; warn if it is not media"""
    try:
        mime_type = magic.from_file(file_path, mime=True)
    except Exception as e:
        logger.debug(f"MIME detection failed for {file_path}: {e}")
        return "unknown"

    if not (mime_type.startswith("video/") or mime_type.startswith("audio/")):
        logger.warning(f"File {file_path} does not look like media: {mime_type}")
    else:
        logger.debug(f"Detected MIME type for {file_path}: {mime_type}")
    return mime_type


def pick_uploaded_file(files):
    """Return the first uploaded file regardless of its field name.

    Only one file is ever used; any additional uploads are ignored.
    """
    for field_name, file in files.items(multi=True):
        if file and file.filename:
            logger.debug(f"Using uploaded file from field '{field_name}': {file.filename}")
            return file
    return None


def save_uploaded_file(file, work_dir):
    """Save an uploaded file into ``work_dir`` under a unique name"""
    logger.info(f"Saving uploaded file: {file.filename}")

    original_name = secure_filename(file.filename or "") or "upload"
    os.makedirs(work_dir, exist_ok=True)
    temp_path = os.path.join(work_dir, f"{_unique_token()}-{original_name}")

    file.save(temp_path)
    logger.info(f"File saved successfully: {temp_path} ({os.path.getsize(temp_path)} bytes)")
    sniff_mime_type(temp_path)
    return temp_path


def download_media_from_url(url, work_dir, timeout=DOWNLOAD_TIMEOUT,
                            max_size=MAX_DOWNLOAD_SIZE):
    """Download remote media into ``work_dir``.

    Raises DownloadError on an invalid URL, a non-2xx status, a transport
    failure or an oversized body. A partially written file is removed
    before the error propagates.
    """
    logger.info(f"Downloading media from URL: {url}")

    parsed_url = urlparse(url)
    if parsed_url.scheme not in ("http", "https") or not parsed_url.netloc:
        logger.error(f"Invalid URL format: {url}")
        raise DownloadError(f"Invalid URL: {url}")

    os.makedirs(work_dir, exist_ok=True)
    temp_path = os.path.join(work_dir, f"input-{_unique_token()}.mp4")
    logger.debug(f"Download target: {temp_path}")

    # timeout also bounds the whole transfer, not just each read
    deadline = time.monotonic() + timeout
    try:
        response = requests.get(url, stream=True, timeout=timeout)
        try:
            if not 200 <= response.status_code < 300:
                logger.error(f"Remote server returned {response.status_code} for {url}")
                raise DownloadError(
                    f"Download failed with status {response.status_code}"
                )

            content_length = _parse_int(response.headers.get("content-length"))
            if content_length is not None:
                logger.info(f"Expected file size: {content_length} bytes ({content_length/1024/1024:.1f} MB)")
                if content_length > max_size:
                    logger.error(f"File too large: {content_length} bytes > {max_size} bytes")
                    raise DownloadError("File too large")

            downloaded = 0
            with open(temp_path, "wb") as f:
                for chunk in response.iter_content(chunk_size=8192):
                    if time.monotonic() > deadline:
                        logger.error(f"Download exceeded {timeout}s for {url}")
                        raise DownloadError("Download timed out")
                    if not chunk:
                        continue
                    downloaded += len(chunk)
                    if downloaded > max_size:
                        logger.error(f"Downloaded file too large: {downloaded} bytes")
                        raise DownloadError("File too large")
                    f.write(chunk)
        finally:
            response.close()

    except DownloadError:
        cleanup_temp_files(temp_path)
        raise
    except requests.exceptions.RequestException as e:
        cleanup_temp_files(temp_path)
        logger.error(f"Request failed for URL {url}: {str(e)}")
        raise DownloadError(f"Failed to download media: {str(e)}")
    except OSError as e:
        cleanup_temp_files(temp_path)
        logger.error(f"Could not write download for {url}: {str(e)}")
        raise DownloadError(f"Failed to store media: {str(e)}")

    logger.info(f"Download completed: {temp_path} ({downloaded} bytes)")
    sniff_mime_type(temp_path)
    return temp_path


def cleanup_temp_files(*file_paths):
    """Remove temporary files; failures are logged and never raised"""
    for file_path in file_paths:
        if not file_path:
            continue
        try:
            os.remove(file_path)
            logger.debug(f"Cleaned up temp file: {file_path}")
        except FileNotFoundError:
            logger.debug(f"Temp file already gone: {file_path}")
        except OSError as e:
            logger.warning(f"Failed to clean up temp file {file_path}: {e}")


OP_PROBE = "probe"
OP_CONVERT_VIDEO = "convert_video"
OP_CONVERT_AUDIO = "convert_audio"
OP_EXTRACT_THUMBNAIL = "extract_thumbnail"


class MediaJob:
    """Temp files and parameters belonging to one request"""

    def __init__(self, operation, parameters=None):
        self.operation = operation
        self.parameters = parameters or {}
        self.input_path = None
        self.output_path = None
        self._cleaned = False

    def cleanup(self):
        """Remove the job's files; later calls do nothing"""
        if self._cleaned:
            return
        self._cleaned = True
        cleanup_temp_files(self.input_path, self.output_path)


def read_output_base64(file_path):
    with open(file_path, "rb") as f:
        return base64.b64encode(f.read()).decode("ascii")


def cleanup_old_files(work_dir, retention_seconds):
    """Remove files in ``work_dir`` older than the retention window"""
    if not os.path.isdir(work_dir):
        logger.debug("Work directory does not exist, skipping cleanup")
        return 0

    current_time = time.time()
    cleaned_count = 0
    error_count = 0

    for filename in os.listdir(work_dir):
        file_path = os.path.join(work_dir, filename)
        try:
            if not os.path.isfile(file_path):
                continue
            file_age = current_time - os.path.getmtime(file_path)
        except FileNotFoundError:
            # removed by a finishing request
            continue
        if file_age > retention_seconds:
            try:
                os.remove(file_path)
                cleaned_count += 1
                logger.info(f"Cleaned up orphaned file: {filename} (age: {file_age/60:.1f}m)")
            except OSError as e:
                error_count += 1
                logger.error(f"Failed to clean up {filename}: {e}")

    if cleaned_count > 0 or error_count > 0:
        logger.info(f"Cleanup completed: {cleaned_count} files cleaned, {error_count} errors")
    return cleaned_count


def start_cleanup_thread(work_dir, interval_minutes, retention_minutes):
    """Start background thread sweeping orphaned work files"""

    def cleanup_worker():
        logger.info("Cleanup worker thread started")
        while True:
            time.sleep(interval_minutes * 60)
            try:
                cleanup_old_files(work_dir, retention_minutes * 60)
            except OSError as e:
                logger.error(f"Cleanup error: {e}")

    cleanup_thread = threading.Thread(target=cleanup_worker, daemon=True)
    cleanup_thread.start()
    logger.info(
        f"Started cleanup thread (interval: {interval_minutes} "
        f"minutes, retention: {retention_minutes} minutes)"
    )
    return cleanup_thread


# API Routes


@app.before_request
def limit_json_body():
    """Reject JSON / url-encoded bodies above MAX_JSON_SIZE"""
    if request.mimetype in ("application/json", "application/x-www-form-urlencoded"):
        limit = app.config["MAX_JSON_SIZE"]
        if request.content_length is not None and request.content_length > limit:
            logger.warning(f"Rejected {request.mimetype} body of {request.content_length} bytes")
            return error_response("Request body too large", 413)
    return None


@app.route("/health", methods=["GET"])
def health_check():
    """Health check endpoint"""
    timestamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    return jsonify({
        "status": "ok",
        "service": SERVICE_NAME,
        "timestamp": timestamp.replace("+00:00", "Z"),
    })


@app.route("/video/info", methods=["POST"])
def video_info():
    """Probe an uploaded file and return its metadata"""
    start_time = time.time()
    request_id = log_request_info()

    upload = pick_uploaded_file(request.files)
    if upload is None:
        logger.warning(f"Request {request_id}: No video file provided")
        log_response_info(request_id, 400, (time.time() - start_time) * 1000)
        return error_response("No video file provided", 400)

    job = MediaJob(OP_PROBE)
    try:
        job.input_path = save_uploaded_file(upload, app.config["WORK_DIR"])
        processor = MediaProcessor(job.input_path, timeout=app.config["FFMPEG_TIMEOUT"])
        result = processor.probe()
    except Exception as e:
        # probe errors carry no "details" field
        log_error(request_id, e, {"endpoint": "/video/info"})
        log_response_info(request_id, 500, (time.time() - start_time) * 1000)
        return error_response(str(e), 500)
    finally:
        job.cleanup()

    log_response_info(request_id, 200, (time.time() - start_time) * 1000, result)
    return jsonify(result)


@app.route("/video/convert", methods=["POST"])
def convert_video():
    """Convert an uploaded video to another container format"""
    start_time = time.time()
    request_id = log_request_info()

    upload = pick_uploaded_file(request.files)
    if upload is None:
        logger.warning(f"Request {request_id}: No video file provided")
        log_response_info(request_id, 400, (time.time() - start_time) * 1000)
        return error_response("No video file provided", 400)

    output_format = request.form.get("format") or "mp4"
    quality = request.form.get("quality") or DEFAULT_QUALITY
    preset = resolve_quality_preset(quality)
    work_dir = app.config["WORK_DIR"]

    job = MediaJob(OP_CONVERT_VIDEO, {"format": output_format, "quality": preset.name})
    try:
        job.input_path = save_uploaded_file(upload, work_dir)
        job.output_path = make_output_path(work_dir, "converted", output_format)
        processor = MediaProcessor(job.input_path, timeout=app.config["FFMPEG_TIMEOUT"])
        processor.transcode(
            job.output_path,
            output_format,
            video_bitrate=preset.video_bitrate,
            audio_bitrate=preset.audio_bitrate,
        )
        data = read_output_base64(job.output_path)
    except MediaServiceError as e:
        log_error(request_id, e, {"endpoint": "/video/convert"})
        log_response_info(request_id, 500, (time.time() - start_time) * 1000)
        return error_response("Video conversion failed", 500, details=str(e))
    except Exception as e:
        log_error(request_id, e, {"endpoint": "/video/convert"})
        log_response_info(request_id, 500, (time.time() - start_time) * 1000)
        return error_response(str(e), 500)
    finally:
        job.cleanup()

    log_response_info(
        request_id, 200, (time.time() - start_time) * 1000,
        {"format": output_format, "quality": quality, "data_length": len(data)},
    )
    return jsonify({
        "success": True,
        "format": output_format,
        "quality": quality,
        "data": data,
        "contentType": f"video/{output_format}",
    })


@app.route("/video/convert-from-url", methods=["POST"])
def convert_video_from_url():
    """Download a remote video, optionally trim it, and convert it"""
    start_time = time.time()
    request_id = log_request_info()

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = {}
    video_url = data.get("videoUrl") or data.get("url")
    if not video_url or not isinstance(video_url, str):
        logger.warning(f"Request {request_id}: No video URL provided")
        log_response_info(request_id, 400, (time.time() - start_time) * 1000)
        return error_response("No video URL provided", 400)

    output_format = data.get("format") or "mp4"
    quality = data.get("quality") or DEFAULT_QUALITY
    preset = resolve_quality_preset(quality)
    start_offset = data.get("startTime")
    duration = data.get("duration")
    work_dir = app.config["WORK_DIR"]

    job = MediaJob(OP_CONVERT_VIDEO, {
        "format": output_format,
        "quality": preset.name,
        "start_time": start_offset,
        "duration": duration,
    })
    try:
        job.input_path = download_media_from_url(
            video_url,
            work_dir,
            timeout=app.config["DOWNLOAD_TIMEOUT"],
            max_size=app.config["MAX_DOWNLOAD_SIZE"],
        )
        job.output_path = make_output_path(work_dir, "converted", output_format)
        processor = MediaProcessor(job.input_path, timeout=app.config["FFMPEG_TIMEOUT"])
        processor.transcode(
            job.output_path,
            output_format,
            video_bitrate=preset.video_bitrate,
            audio_bitrate=preset.audio_bitrate,
            start_time=start_offset,
            duration=duration,
        )
        payload = read_output_base64(job.output_path)
    except MediaServiceError as e:
        log_error(request_id, e, {"endpoint": "/video/convert-from-url", "url": video_url})
        log_response_info(request_id, 500, (time.time() - start_time) * 1000)
        return error_response("Download or processing failed", 500, details=str(e))
    except Exception as e:
        log_error(request_id, e, {"endpoint": "/video/convert-from-url", "url": video_url})
        log_response_info(request_id, 500, (time.time() - start_time) * 1000)
        return error_response(str(e), 500)
    finally:
        job.cleanup()

    log_response_info(
        request_id, 200, (time.time() - start_time) * 1000,
        {"format": output_format, "quality": quality, "data_length": len(payload)},
    )
    return jsonify({
        "success": True,
        "format": output_format,
        "quality": quality,
        "data": payload,
        "contentType": f"video/{output_format}",
    })


@app.route("/video/thumbnail", methods=["POST"])
def video_thumbnail():
    """Extract a single JPEG frame from an uploaded video"""
    start_time = time.time()
    request_id = log_request_info()

    upload = pick_uploaded_file(request.files)
    if upload is None:
        logger.warning(f"Request {request_id}: No video file provided")
        log_response_info(request_id, 400, (time.time() - start_time) * 1000)
        return error_response("No video file provided", 400)

    timestamp = request.form.get("timestamp") or "00:00:01"
    work_dir = app.config["WORK_DIR"]

    job = MediaJob(OP_EXTRACT_THUMBNAIL, {"timestamp": timestamp})
    try:
        job.input_path = save_uploaded_file(upload, work_dir)
        job.output_path = make_output_path(work_dir, "thumb", "jpg")
        processor = MediaProcessor(job.input_path, timeout=app.config["FFMPEG_TIMEOUT"])
        processor.extract_thumbnail(job.output_path, timestamp)
        data = read_output_base64(job.output_path)
    except MediaServiceError as e:
        log_error(request_id, e, {"endpoint": "/video/thumbnail"})
        log_response_info(request_id, 500, (time.time() - start_time) * 1000)
        return error_response("Thumbnail extraction failed", 500, details=str(e))
    except Exception as e:
        log_error(request_id, e, {"endpoint": "/video/thumbnail"})
        log_response_info(request_id, 500, (time.time() - start_time) * 1000)
        return error_response(str(e), 500)
    finally:
        job.cleanup()

    log_response_info(
        request_id, 200, (time.time() - start_time) * 1000,
        {"timestamp": timestamp, "data_length": len(data)},
    )
    return jsonify({
        "success": True,
        "data": data,
        "contentType": "image/jpeg",
    })


@app.route("/audio/convert", methods=["POST"])
def convert_audio():
    """Convert an uploaded audio file to another format and bitrate"""
    start_time = time.time()
    request_id = log_request_info()

    upload = pick_uploaded_file(request.files)
    if upload is None:
        logger.warning(f"Request {request_id}: No audio file provided")
        log_response_info(request_id, 400, (time.time() - start_time) * 1000)
        return error_response("No audio file provided", 400)

    output_format = request.form.get("format") or "mp3"
    bitrate = request.form.get("bitrate") or "128k"
    work_dir = app.config["WORK_DIR"]

    job = MediaJob(OP_CONVERT_AUDIO, {"format": output_format, "bitrate": bitrate})
    try:
        job.input_path = save_uploaded_file(upload, work_dir)
        job.output_path = make_output_path(work_dir, "converted", output_format)
        processor = MediaProcessor(job.input_path, timeout=app.config["FFMPEG_TIMEOUT"])
        processor.transcode(job.output_path, output_format, audio_bitrate=bitrate)
        data = read_output_base64(job.output_path)
    except MediaServiceError as e:
        log_error(request_id, e, {"endpoint": "/audio/convert"})
        log_response_info(request_id, 500, (time.time() - start_time) * 1000)
        return error_response("Audio conversion failed", 500, details=str(e))
    except Exception as e:
        log_error(request_id, e, {"endpoint": "/audio/convert"})
        log_response_info(request_id, 500, (time.time() - start_time) * 1000)
        return error_response(str(e), 500)
    finally:
        job.cleanup()

    log_response_info(
        request_id, 200, (time.time() - start_time) * 1000,
        {"format": output_format, "bitrate": bitrate, "data_length": len(data)},
    )
    return jsonify({
        "success": True,
        "format": output_format,
        "bitrate": bitrate,
        "data": data,
        "contentType": f"audio/{output_format}",
    })


@app.errorhandler(413)
def file_too_large(e):
    return error_response("File too large", 413)


@app.errorhandler(404)
def not_found(e):
    return error_response("Endpoint not found", 404)


@app.errorhandler(405)
def method_not_allowed(e):
    return error_response("Method not allowed", 405)


@app.errorhandler(500)
def internal_error(e):
    return error_response("Internal server error", 500)


# Ensure work directory exists
os.makedirs(WORK_DIR, exist_ok=True)
logger.info(f"Work directory ensured: {WORK_DIR}")

# Sweep files orphaned by a previous run
cleanup_old_files(WORK_DIR, FILE_RETENTION_MINUTES * 60)

if CLEANUP_INTERVAL_MINUTES > 0:
    start_cleanup_thread(WORK_DIR, CLEANUP_INTERVAL_MINUTES, FILE_RETENTION_MINUTES)

logger.info("=" * 60)
logger.info("FFmpeg Microservice Started Successfully")
logger.info("=" * 60)

if __name__ == "__main__":
    logger.info(f"FFmpeg microservice running on port {PORT}")
    logger.info(f"Health check: http://localhost:{PORT}/health")
    app.run(host=HOST, port=PORT, debug=FLASK_DEBUG)
