import logging
import os
import shutil
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, Tuple

from pydantic import ValidationError as ModelValidationError

from job_errors import StorageError, UnknownJob
from job_models import DESIGN_FILE, PREVIEW_FILE, JobRecord

logger = logging.getLogger("pembroider_service.store")

LAYERS_DIR = "layers"
OUT_DIR = "out"
SPEC_FILE = "spec.json"
STATUS_FILE = "status.json"


def make_job_id() -> str:
    return str(uuid.uuid4())


def is_job_id(value: str) -> bool:
    try:
        return str(uuid.UUID(value)) == value
    except (ValueError, TypeError, AttributeError):
        return False


@dataclass(frozen=True)
class JobPaths:
    id: str
    root: Path
    layers: Path
    out: Path
    spec: Path
    status: Path
    design: Path
    preview: Path

    def outputs_present(self) -> bool:
        return self.design.is_file() and self.preview.is_file()

    def output(self, name: str) -> Path:
        if name == DESIGN_FILE:
            return self.design
        if name == PREVIEW_FILE:
            return self.preview
        raise ValueError(f"Unknown output file '{name}'.")


def get_job_paths(jobs_root: Path, job_id: str) -> JobPaths:
    root = jobs_root / job_id
    out = root / OUT_DIR
    return JobPaths(
        id=job_id,
        root=root,
        layers=root / LAYERS_DIR,
        out=out,
        spec=root / SPEC_FILE,
        status=root / STATUS_FILE,
        design=out / DESIGN_FILE,
        preview=out / PREVIEW_FILE,
    )


class JobStore:
    def __init__(self, jobs_root: Path):
        self.jobs_root = Path(jobs_root)

    def ensure_root(self) -> None:
        try:
            self.jobs_root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"Cannot create jobs root {self.jobs_root}: {exc}") from exc

    def paths(self, job_id: str) -> JobPaths:
        if not is_job_id(job_id):
            raise UnknownJob(f"Job '{job_id}' does not exist.")
        return get_job_paths(self.jobs_root, job_id)

    def exists(self, job_id: str) -> bool:
        return is_job_id(job_id) and (self.jobs_root / job_id).is_dir()

    def create_job(self) -> JobPaths:
        job_id = make_job_id()
        paths = get_job_paths(self.jobs_root, job_id)
        try:
            paths.layers.mkdir(parents=True, exist_ok=False)
            paths.out.mkdir(parents=True, exist_ok=False)
        except OSError as exc:
            logger.error("job %s: failed to create job directory %s: %s", job_id, paths.root, exc)
            self.delete_job(job_id)
            raise StorageError(f"Could not create job directory: {exc}") from exc
        logger.info("job %s: created job directory %s", job_id, paths.root)
        return paths

    def delete_job(self, job_id: str) -> bool:
        if not is_job_id(job_id):
            return False
        root = self.jobs_root / job_id
        if not root.exists():
            return True
        try:
            shutil.rmtree(root)
        except FileNotFoundError:
            return True
        except OSError as exc:
            logger.warning("job %s: failed to delete %s: %s", job_id, root, exc)
            return False
        logger.info("job %s: deleted job directory", job_id)
        return True

    def write_status(self, record: JobRecord) -> bool:
        paths = get_job_paths(self.jobs_root, record.id)
        if not paths.root.is_dir():
            return False
        data = record.model_dump_json(indent=2, exclude={"queue_position", "reconstructed"})
        try:
            fd, tmp_name = tempfile.mkstemp(prefix=".status-", suffix=".json", dir=paths.root)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(data)
                os.replace(tmp_name, paths.status)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as exc:
            logger.warning("job %s: failed to write status mirror: %s", record.id, exc)
            return False
        return True

    def read_status(self, job_id: str) -> Optional[JobRecord]:
        paths = self.paths(job_id)
        try:
            raw = paths.status.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("job %s: failed to read status mirror: %s", job_id, exc)
            return None
        try:
            return JobRecord.model_validate_json(raw)
        except ModelValidationError as exc:
            logger.warning("job %s: ignoring unreadable status mirror: %s", job_id, exc)
            return None

    def iter_job_dirs(self) -> Iterator[Tuple[str, Path]]:
        try:
            entries = list(os.scandir(self.jobs_root))
        except FileNotFoundError:
            return
        for entry in entries:
            if is_job_id(entry.name) and entry.is_dir(follow_symlinks=False):
                yield entry.name, Path(entry.path)
