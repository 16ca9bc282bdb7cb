import io
import sys
from pathlib import Path

import pytest
from fastapi import UploadFile
from PIL import Image

from settings import Settings

FAKE_RENDERER = '''
import json
import pathlib
import subprocess
import sys
import time

job_dir = pathlib.Path(sys.argv[-1])
spec = json.loads((job_dir / "spec.json").read_text())
options = spec if isinstance(spec, dict) else {}
mode = options.get("testMode", "ok")
print("rendering", job_dir.name, flush=True)

if mode in ("leave_child", "hang_with_child"):
    # The child inherits stdout and stderr and outlives the renderer.
    subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
if mode in ("hang", "hang_with_child"):
    time.sleep(600)
if mode == "slow":
    time.sleep(float(options.get("seconds", 0.5)))
if mode == "fail":
    print("boom", file=sys.stderr, flush=True)
    sys.exit(3)
if mode != "no_output":
    out = job_dir / "out"
    (out / "design.pes").write_bytes(b"#PES0001 fake design")
    (out / "preview.png").write_bytes(b"fake preview")
print("done", flush=True)
'''


def png_bytes(color=(200, 30, 30), size=(8, 8)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def make_upload(filename: str, data: bytes = None) -> UploadFile:
    return UploadFile(file=io.BytesIO(png_bytes() if data is None else data), filename=filename)


@pytest.fixture
def fake_renderer(tmp_path) -> Path:
    script = tmp_path / "fake_renderer.py"
    script.write_text(FAKE_RENDERER, encoding="utf-8")
    return script


@pytest.fixture
def make_settings(tmp_path, fake_renderer):
    def _make(**overrides) -> Settings:
        values = {
            "class_key": "secret",
            "jobs_root": tmp_path / "jobs",
            "renderer_sketch": fake_renderer,
            "processing_bin": sys.executable,
            "processing_args": "{sketch} {job_dir}",
            "render_timeout_ms": 20_000,
            "service_log": tmp_path / "render_service.log",
        }
        values.update(overrides)
        return Settings(**values)

    return _make
