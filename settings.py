import os
import shlex
from pathlib import Path
from typing import List, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

repo_dir = os.path.dirname(os.path.abspath(__file__))

DEFAULT_PROCESSING_BIN = "/usr/local/bin/processing-java"
DEFAULT_PROCESSING_ARGS = "--sketch={sketch} --run {job_dir}"
TRUTHY = {"1", "true", "yes", "on"}


def load_env_files() -> None:
    # .env never overrides the real environment; .env.local overrides both.
    load_dotenv(dotenv_path=os.path.join(repo_dir, ".env"), override=False)
    load_dotenv(dotenv_path=os.path.join(repo_dir, ".env.local"), override=True)


def _flag(value: Optional[str], default: bool) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in TRUTHY


class Settings(BaseModel):
    host: str = "0.0.0.0"
    port: int = Field(default=3000, gt=0)
    class_key: Optional[str] = None

    jobs_root: Path = Path(repo_dir) / "jobs"
    renderer_sketch: Path = Path(repo_dir) / "renderer"
    processing_bin: str = DEFAULT_PROCESSING_BIN
    processing_wrapper: Optional[str] = None
    processing_wrapper_args: List[str] = Field(default_factory=list)
    processing_args: str = DEFAULT_PROCESSING_ARGS

    max_files: int = Field(default=10, gt=0)
    max_file_mb: float = Field(default=10, gt=0)
    max_request_mb: float = Field(default=50, gt=0)
    render_timeout_ms: int = Field(default=120_000, gt=0)
    max_concurrent_renders: int = Field(default=1, gt=0)

    job_ttl_hours: float = Field(default=0, ge=0)
    cleanup_interval_minutes: float = Field(default=60, gt=0)
    job_delete_after_seconds: float = Field(default=0, ge=0)
    keep_finished_jobs: int = Field(default=32, ge=0)

    log_renderer_output: bool = False
    render_output_limit_kb: int = Field(default=256, gt=0)
    verify_layer_images: bool = True
    service_log: Optional[Path] = None

    @property
    def max_file_bytes(self) -> int:
        return int(self.max_file_mb * 1024 * 1024)

    @property
    def max_request_bytes(self) -> int:
        return int(self.max_request_mb * 1024 * 1024)

    @property
    def render_timeout_seconds(self) -> float:
        return self.render_timeout_ms / 1000.0

    @property
    def retention_seconds(self) -> float:
        return self.job_ttl_hours * 3600.0

    @property
    def service_log_path(self) -> Path:
        if self.service_log is not None:
            return self.service_log
        return self.jobs_root.parent / "render_service.log"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from the process environment (or the given mapping).

        Unset variables keep the model defaults; malformed numbers raise a
        pydantic ``ValidationError`` so misconfiguration fails at startup.
        """
        if environ is None:
            load_env_files()
            environ = os.environ

        values = {}
        mapping = {
            "HOST": "host",
            "PORT": "port",
            "CLASS_KEY": "class_key",
            "JOBS_ROOT": "jobs_root",
            "RENDERER_SKETCH": "renderer_sketch",
            "PROCESSING_BIN": "processing_bin",
            "PROCESSING_WRAPPER": "processing_wrapper",
            "PROCESSING_ARGS": "processing_args",
            "MAX_FILES": "max_files",
            "MAX_FILE_MB": "max_file_mb",
            "MAX_REQUEST_MB": "max_request_mb",
            "RENDER_TIMEOUT_MS": "render_timeout_ms",
            "MAX_CONCURRENT_RENDERS": "max_concurrent_renders",
            "JOB_TTL_HOURS": "job_ttl_hours",
            "CLEANUP_INTERVAL_MINUTES": "cleanup_interval_minutes",
            "JOB_DELETE_AFTER_SECONDS": "job_delete_after_seconds",
            "KEEP_FINISHED_JOBS": "keep_finished_jobs",
            "RENDER_OUTPUT_LIMIT_KB": "render_output_limit_kb",
            "SERVICE_LOG": "service_log",
        }
        for env_name, field_name in mapping.items():
            raw = environ.get(env_name)
            if raw is None or not raw.strip():
                continue
            values[field_name] = raw.strip()

        wrapper_args = environ.get("PROCESSING_WRAPPER_ARGS") or ""
        values["processing_wrapper_args"] = shlex.split(wrapper_args)
        values["log_renderer_output"] = _flag(environ.get("LOG_RENDERER_OUTPUT"), False)
        values["verify_layer_images"] = _flag(environ.get("VERIFY_LAYER_IMAGES"), True)
        return cls(**values)
