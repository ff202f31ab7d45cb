"""
Configuration file for the Shader Export Service.
Contains all global constants, read from the environment where deployments differ.
"""

import os

# --- Constants ---
PROJECT_ROOT = os.getcwd()
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./exports.db")
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")
EXPORTS_DIR = os.getenv("EXPORTS_DIR", os.path.join(PROJECT_ROOT, "public_exports"))
SCRATCH_ROOT = os.getenv("SCRATCH_ROOT") or None  # None -> system temp dir
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# --- Queue Section ---
EXPORT_QUEUE_NAME = os.getenv("EXPORT_QUEUE_NAME", "video-export")
EXPORT_TASK_NAME = "exports.render_video"
REAPER_TASK_NAME = "exports.reap_stale_jobs"
QUEUE_MAX_ATTEMPTS = int(os.getenv("QUEUE_MAX_ATTEMPTS", "3"))
QUEUE_BACKOFF_BASE = float(os.getenv("QUEUE_BACKOFF_BASE", "2.0"))
QUEUE_BACKOFF_MAX = float(os.getenv("QUEUE_BACKOFF_MAX", "60.0"))
# How long finished task results are kept on the broker for inspection.
QUEUE_RESULT_RETENTION = int(os.getenv("QUEUE_RESULT_RETENTION", "3600"))
WORKER_CONCURRENCY = int(os.getenv("WORKER_CONCURRENCY", "2"))

# --- Rendering Section ---
SHADER_READY_TIMEOUT_MS = int(os.getenv("SHADER_READY_TIMEOUT_MS", "5000"))
JOB_TIMEOUT_SECONDS = int(os.getenv("JOB_TIMEOUT_SECONDS", "900"))
# Celery kills the worker process at this point; no handler runs after it.
JOB_HARD_TIME_LIMIT = JOB_TIMEOUT_SECONDS + 60
# A processing row older than this has lost its worker and is failed by the reaper.
STALE_JOB_SECONDS = int(os.getenv("STALE_JOB_SECONDS", str(JOB_HARD_TIME_LIMIT + 60)))
REAPER_INTERVAL_SECONDS = int(os.getenv("REAPER_INTERVAL_SECONDS", "60"))
JPEG_QUALITY = int(os.getenv("JPEG_QUALITY", "90"))
PROGRESS_LOG_EVERY = 30

BASE_RESOLUTIONS = {
    "16:9": (1280, 720),
    "9:16": (720, 1280),
    "1:1": (720, 720),
}
QUALITY_SCALES = {
    "HD": 1,
    "FHD": 1.5,
    "4K": 3,
}

# --- Encoding Section ---
# Lower CRF means higher quality and bitrate.
QUALITY_CRF = {
    "HD": 18,
    "FHD": 16,
    "4K": 14,
}
ENCODER_PRESET = "fast"
VIDEO_CODEC = "libx264"
PIXEL_FORMAT = "yuv420p"
CONTENT_TYPES = {
    "mp4": "video/mp4",
    "mov": "video/quicktime",
}

# --- Render Page Section ---
# Injected into the headless browser. initShader() compiles the fragment
# program and only flips isReady when the GPU program links.
RENDER_HTML = """
<!DOCTYPE html>
<html>
<head><style>body{margin:0;overflow:hidden;}</style></head>
<body>
<script src="https://cdnjs.cloudflare.com/ajax/libs/three.js/r128/three.min.js"></script>
<script>
    let renderer, scene, camera, uniforms;
    window.isReady = false;
    window.initShader = function(w, h, fragCode) {
        camera = new THREE.OrthographicCamera(-1, 1, 1, -1, 0, 1);
        scene = new THREE.Scene();
        const geometry = new THREE.PlaneGeometry(2, 2);
        uniforms = { uTime: { value: 0 }, uResolution: { value: new THREE.Vector2(w, h) } };
        const material = new THREE.ShaderMaterial({
            uniforms: uniforms,
            fragmentShader: fragCode,
            vertexShader: 'varying vec2 vUv; void main() { vUv = uv; gl_Position = vec4(position, 1.0); }'
        });
        scene.add(new THREE.Mesh(geometry, material));
        renderer = new THREE.WebGLRenderer({ preserveDrawingBuffer: true });
        renderer.setSize(w, h);
        document.body.appendChild(renderer.domElement);
        renderer.compile(scene, camera);
        const program = renderer.info.programs && renderer.info.programs[0];
        if (program && program.diagnostics && !program.diagnostics.runnable) {
            window.shaderError = program.diagnostics.fragmentShader.log;
            return;
        }
        window.isReady = true;
    };
    window.renderFrame = function(t) {
        if (uniforms) uniforms.uTime.value = t;
        if (renderer) renderer.render(scene, camera);
    };
</script>
</body>
</html>
"""

BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--enable-webgl",
    "--ignore-gpu-blocklist",
]
# Linux hosts have no GPU; fall back to software WebGL.
LINUX_BROWSER_ARGS = ["--disable-gpu", "--use-gl=angle", "--use-angle=swiftshader"]
