"""
Service classes for the Shader Export Service.
Contains the render driver (ShaderRenderer and its browser host) and the VideoEncoder.
"""

import os
import sys
import math
import time
import shutil
import logging
import tempfile
from dataclasses import dataclass
from typing import Optional, Tuple

import ffmpeg
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from config import (
    BASE_RESOLUTIONS,
    BROWSER_ARGS,
    ENCODER_PRESET,
    JPEG_QUALITY,
    LINUX_BROWSER_ARGS,
    PIXEL_FORMAT,
    PROGRESS_LOG_EVERY,
    QUALITY_CRF,
    QUALITY_SCALES,
    RENDER_HTML,
    SCRATCH_ROOT,
    SHADER_READY_TIMEOUT_MS,
    VIDEO_CODEC,
)
from exceptions import (
    EncoderError,
    JobTimeoutError,
    RenderHostError,
    RenderHostLaunchError,
    ShaderCompileError,
)
from schemas import ExportSettings

FRAME_PATTERN = "frame_%05d.jpg"


def compute_resolution(aspect_ratio: str, quality: str) -> Tuple[int, int]:
    """Pixel size for an aspect ratio at a quality tier. Unknown ratios render as 16:9."""
    base_width, base_height = BASE_RESOLUTIONS.get(aspect_ratio, BASE_RESOLUTIONS["16:9"])
    scale = QUALITY_SCALES.get(quality, 1)
    return round(base_width * scale), round(base_height * scale)


def total_frames(duration: float, fps: int) -> int:
    return math.floor(duration * fps)


def frame_filename(index: int) -> str:
    return FRAME_PATTERN % index


class ScratchDirectory:
    """
    Private working directory for one job, removed on exit whether or not
    the job succeeded. The job id is part of the name so concurrent jobs
    never share a directory.
    """

    def __init__(self, job_id: str, root: Optional[str] = SCRATCH_ROOT):
        self.job_id = job_id
        self.root = root
        self.path = None

    @property
    def frames_dir(self) -> str:
        return os.path.join(self.path, "frames")

    def __enter__(self) -> "ScratchDirectory":
        if self.root:
            os.makedirs(self.root, exist_ok=True)
        self.path = tempfile.mkdtemp(prefix=f"render-{self.job_id}-", dir=self.root)
        try:
            os.makedirs(self.frames_dir)
        except OSError:
            # __exit__ does not run when __enter__ raises.
            shutil.rmtree(self.path, ignore_errors=True)
            raise
        return self

    def __exit__(self, exc_type, exc, tb):
        if self.path and os.path.exists(self.path):
            shutil.rmtree(self.path, ignore_errors=True)
            if os.path.exists(self.path):
                logging.warning(f"Could not fully remove scratch directory {self.path}")
        return False


# --------------------------------------------------------------------------
# --- Render Host ---
# --------------------------------------------------------------------------

class BrowserRenderHost:
    """Headless Chromium page running the shader. One instance per job."""

    def __init__(self, job_id: str, ready_timeout_ms: int = SHADER_READY_TIMEOUT_MS,
                 jpeg_quality: int = JPEG_QUALITY):
        self.job_id = job_id
        self.ready_timeout_ms = ready_timeout_ms
        self.jpeg_quality = jpeg_quality
        self._playwright = None
        self._browser = None
        self._page = None

    def _browser_args(self):
        args = list(BROWSER_ARGS)
        if sys.platform.startswith("linux"):
            args += LINUX_BROWSER_ARGS
        return args

    def _log_console(self, msg):
        logging.info(f"[Job {self.job_id}] BROWSER LOG: {msg.text}")

    def _log_page_error(self, err):
        logging.error(f"[Job {self.job_id}] BROWSER ERROR: {err}")

    def launch(self, width: int, height: int):
        try:
            self._playwright = sync_playwright().start()
            self._browser = self._playwright.chromium.launch(headless=True, args=self._browser_args())
            self._page = self._browser.new_page(viewport={"width": width, "height": height})
        except PlaywrightError as e:
            self.close()
            raise RenderHostLaunchError(f"Could not launch rendering host: {e}") from e
        self._page.on("console", self._log_console)
        self._page.on("pageerror", self._log_page_error)

    def initialize(self, shader_code: str, width: int, height: int):
        """Compile the shader and wait for the page to signal readiness."""
        try:
            self._page.set_content(RENDER_HTML, wait_until="load")
            self._page.evaluate(
                "([code, w, h]) => window.initShader(w, h, code)", [shader_code, width, height]
            )
            self._page.wait_for_function("window.isReady === true", timeout=self.ready_timeout_ms)
        except PlaywrightTimeoutError as e:
            logging.error(f"[Job {self.job_id}] Shader compilation timed out")
            raise ShaderCompileError() from e
        except PlaywrightError as e:
            raise ShaderCompileError(f"Shader compilation failed on server: {e}") from e

    def render_frame(self, t: float, path: str):
        try:
            self._page.evaluate("(t) => window.renderFrame(t)", t)
            self._page.screenshot(path=path, type="jpeg", quality=self.jpeg_quality)
        except PlaywrightError as e:
            raise RenderHostError(f"Rendering host failed at t={t:.3f}s: {e}") from e

    def close(self):
        # Each step is attempted even if an earlier one fails.
        if self._browser is not None:
            try:
                self._browser.close()
            except PlaywrightError as e:
                logging.warning(f"[Job {self.job_id}] Error closing browser: {e}")
            self._browser = None
        if self._playwright is not None:
            try:
                self._playwright.stop()
            except PlaywrightError as e:
                logging.warning(f"[Job {self.job_id}] Error stopping playwright: {e}")
            self._playwright = None
        self._page = None


# --------------------------------------------------------------------------
# --- Shader Renderer ---
# --------------------------------------------------------------------------

class ShaderRenderer:
    """Drives a render host through a fixed-step frame loop."""

    def __init__(self, host_factory=BrowserRenderHost):
        self.host_factory = host_factory

    def render(self, job_id: str, shader_code: str, settings: ExportSettings, frames_dir: str,
               deadline: Optional[float] = None) -> int:
        """
        Write frame_00000.jpg ... into frames_dir. Returns the frame count.

        deadline is a time.monotonic() value; passing it aborts the job with
        JobTimeoutError between frames.
        """
        width, height = compute_resolution(settings.aspect_ratio, settings.quality)
        frame_count = total_frames(settings.duration, settings.fps)
        logging.info(f"🎬 [Job {job_id}] Starting Export: {width}x{height}, {frame_count} frames")

        host = self.host_factory(job_id)
        try:
            host.launch(width, height)
            host.initialize(shader_code, width, height)
            for i in range(frame_count):
                if deadline is not None and time.monotonic() > deadline:
                    raise JobTimeoutError(f"Export timed out after capturing {i}/{frame_count} frames")
                host.render_frame(i / settings.fps, os.path.join(frames_dir, frame_filename(i)))
                if i % PROGRESS_LOG_EVERY == 0:
                    logging.info(f"[Job {job_id}] Captured frame {i + 1}/{frame_count}")
        finally:
            host.close()

        logging.info(f"✅ [Job {job_id}] All {frame_count} frames captured.")
        return frame_count


# --------------------------------------------------------------------------
# --- Video Encoder ---
# --------------------------------------------------------------------------

def crf_for_quality(quality: str) -> int:
    return QUALITY_CRF.get(quality, QUALITY_CRF["HD"])


@dataclass
class EncodeResult:
    output_path: str
    elapsed_seconds: float
    returncode: int = 0


class VideoEncoder:
    """Turns a frame sequence into an H.264 video with ffmpeg."""

    def __init__(self, cmd: str = "ffmpeg"):
        self.cmd = cmd

    def build(self, frames_dir: str, fps: int, quality: str, output_path: str):
        return (
            ffmpeg
            .input(os.path.join(frames_dir, FRAME_PATTERN), framerate=fps)
            .output(
                output_path,
                vcodec=VIDEO_CODEC,
                pix_fmt=PIXEL_FORMAT,
                crf=crf_for_quality(quality),
                preset=ENCODER_PRESET,
                movflags="+faststart",
                r=fps,
            )
            .overwrite_output()
        )

    def encode(self, job_id: str, frames_dir: str, fps: int, quality: str, output_path: str) -> EncodeResult:
        stream = self.build(frames_dir, fps, quality, output_path)
        logging.info(f"[Job {job_id}] FFmpeg command: {' '.join(ffmpeg.compile(stream, cmd=self.cmd))}")

        started = time.monotonic()
        try:
            ffmpeg.run(stream, cmd=self.cmd, capture_stdout=True, capture_stderr=True)
        except ffmpeg.Error as e:
            stderr = e.stderr.decode("utf8", errors="replace").strip() if e.stderr else ""
            logging.error(f"❌ [Job {job_id}] FFmpeg failed. Stderr:\n{stderr}")
            last_line = stderr.splitlines()[-1] if stderr else "Unknown FFmpeg error"
            raise EncoderError(f"Video encoding failed: {last_line}") from e
        except OSError as e:
            raise EncoderError(f"Could not start encoder: {e}") from e

        elapsed = time.monotonic() - started
        if not os.path.exists(output_path):
            raise EncoderError("Encoder finished but produced no output file.")
        logging.info(f"✅ [Job {job_id}] Video encoded successfully in {elapsed:.1f}s.")
        return EncodeResult(output_path=output_path, elapsed_seconds=elapsed)
