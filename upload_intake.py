import copy
import json
import logging
import os
import re
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from PIL import Image

from job_errors import (
    FileTooLargeError,
    InvalidLayerImage,
    InvalidSpecJSON,
    MissingReferencedFile,
    NoFilesError,
    StorageError,
    TooManyFilesError,
)
from job_store import JobPaths, JobStore

logger = logging.getLogger("pembroider_service.intake")

CHUNK_SIZE = 1024 * 1024
MAX_STEM_LENGTH = 120
MAX_EXTENSION_LENGTH = 16
UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9._-]")
DOT_RUN_RE = re.compile(r"\.{2,}")

# Keys a layer object may use to name its image file, in lookup order.
LAYER_REFERENCE_KEYS = ("file", "filename", "image", "src")

DEFAULT_LAYER_PARAMS: Dict[str, Any] = {
    "fill": "hatch",
    "angle": 45,
    "spacing": 4,
    "stroke": True,
    "strokeWeight": 1,
    "color": "#000000",
}
DEFAULT_SPEC: Dict[str, Any] = {"version": 1, "width": 1000, "height": 1000}


def sanitize_filename(name: Optional[str]) -> str:
    base = (name or "").replace("\\", "/").split("/")[-1]
    cleaned = UNSAFE_CHARS_RE.sub("_", base)
    cleaned = DOT_RUN_RE.sub(".", cleaned).lstrip("._")
    if not cleaned:
        return f"file_{uuid.uuid4().hex}.png"

    stem, ext = os.path.splitext(cleaned)
    if len(ext) > MAX_EXTENSION_LENGTH:
        stem, ext = cleaned, ""
    if len(stem) > MAX_STEM_LENGTH:
        cleaned = stem[:MAX_STEM_LENGTH].rstrip(".") + ext
    return cleaned


def unique_name(directory: Path, base_name: str) -> str:
    stem, ext = os.path.splitext(base_name)
    candidate = base_name
    counter = 1
    while (directory / candidate).exists():
        candidate = f"{stem}-{counter}{ext}"
        counter += 1
    return candidate


def parse_spec(raw_spec: Optional[str]) -> Optional[Any]:
    if raw_spec is None or not raw_spec.strip():
        return None
    try:
        spec = json.loads(raw_spec)
    except json.JSONDecodeError as exc:
        raise InvalidSpecJSON(str(exc)) from exc
    if not isinstance(spec, (dict, list)):
        raise InvalidSpecJSON("spec must be a JSON object or array.")
    if isinstance(spec, dict) and "layers" in spec and not isinstance(spec["layers"], list):
        raise InvalidSpecJSON("spec 'layers' must be an array.")
    return spec


def default_layer(filename: str) -> Dict[str, Any]:
    layer = {"file": filename}
    layer.update(DEFAULT_LAYER_PARAMS)
    return layer


def build_default_spec(layers: Sequence[str]) -> Dict[str, Any]:
    spec = dict(DEFAULT_SPEC)
    spec["layers"] = [default_layer(name) for name in layers]
    return spec


def _reference_key(entry: Dict[str, Any]) -> Optional[str]:
    for key in LAYER_REFERENCE_KEYS:
        if isinstance(entry.get(key), str):
            return key
    return None


def resolve_layer_references(spec: Any, saved: Sequence[Tuple[str, str]]) -> Any:
    """Point every layer reference in ``spec`` at a saved filename.

    ``saved`` pairs each client filename with the name it was stored under.
    A reference matching a client filename takes the next stored name produced
    by that filename; otherwise it must already be a stored name.
    """
    if spec is None:
        return build_default_spec([name for _, name in saved])

    resolved = copy.deepcopy(spec)
    if isinstance(resolved, dict):
        if "layers" not in resolved:
            resolved["layers"] = [default_layer(name) for _, name in saved]
            return resolved
        entries = resolved["layers"]
    else:
        entries = resolved

    by_original: Dict[str, List[str]] = {}
    for original, stored in saved:
        by_original.setdefault(original, []).append(stored)
    stored_names = {stored for _, stored in saved}

    missing: List[str] = []
    for index, entry in enumerate(entries):
        if isinstance(entry, str):
            key = None
            reference = entry
        elif isinstance(entry, dict):
            key = _reference_key(entry)
            if key is None:
                continue
            reference = entry[key]
        else:
            continue

        pending = by_original.get(reference)
        if pending:
            target = pending.pop(0)
        elif reference in stored_names:
            target = reference
        else:
            missing.append(reference)
            continue

        if key is None:
            entries[index] = target
        else:
            entry[key] = target

    if missing:
        raise MissingReferencedFile(
            f"Spec references files that were not uploaded: {', '.join(missing)}",
            missing=missing,
        )
    return resolved


def verify_image(path: Path) -> None:
    try:
        with Image.open(path) as image:
            image.verify()
    except Exception as exc:
        raise InvalidLayerImage(f"'{path.name}' is not a readable image: {exc}", file=path.name) from exc


@dataclass
class IntakeResult:
    paths: JobPaths
    layers: List[str] = field(default_factory=list)
    spec: Any = None


class UploadIntake:
    def __init__(
        self,
        store: JobStore,
        *,
        max_files: int,
        max_file_bytes: int,
        max_request_bytes: int,
        verify_images: bool = True,
    ):
        self.store = store
        self.max_files = max_files
        self.max_file_bytes = max_file_bytes
        self.max_request_bytes = max_request_bytes
        self.verify_images = verify_images

    async def intake(self, uploads: Optional[Sequence[Any]], raw_spec: Optional[str]) -> IntakeResult:
        """Validate an upload and persist it as a new job directory.

        Checks that need no disk state (file count, spec JSON) run before the
        directory exists. Any later failure removes the directory again, so a
        rejected request never leaves a job behind.
        """
        files = [upload for upload in uploads or [] if upload is not None]
        if not files:
            raise NoFilesError("Upload at least one layer image in the 'files' field.")
        if len(files) > self.max_files:
            raise TooManyFilesError(f"Received {len(files)} files; the limit is {self.max_files}.")
        spec = parse_spec(raw_spec)

        paths = self.store.create_job()
        try:
            saved: List[Tuple[str, str]] = []
            total_bytes = 0
            for upload in files:
                stored_name, size = await self._save_upload(paths.layers, upload, total_bytes)
                total_bytes += size
                saved.append((upload.filename or "", stored_name))
                logger.info("job %s: saved layer %s (%s bytes)", paths.id, stored_name, size)

            if self.verify_images:
                for _, stored_name in saved:
                    verify_image(paths.layers / stored_name)

            spec = resolve_layer_references(spec, saved)
            try:
                paths.spec.write_text(json.dumps(spec, indent=2), encoding="utf-8")
            except OSError as exc:
                raise StorageError(f"Could not write spec.json: {exc}") from exc
        except BaseException as exc:
            logger.warning("job %s: intake rejected (%s); removing job directory", paths.id, exc)
            self.store.delete_job(paths.id)
            raise

        return IntakeResult(paths=paths, layers=[name for _, name in saved], spec=spec)

    async def _save_upload(self, layers_dir: Path, upload: Any, already_written: int) -> Tuple[str, int]:
        stored_name = unique_name(layers_dir, sanitize_filename(upload.filename))
        dest = layers_dir / stored_name
        written = 0
        try:
            with open(dest, "xb") as handle:
                while True:
                    chunk = await upload.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    written += len(chunk)
                    if written > self.max_file_bytes:
                        raise FileTooLargeError(
                            f"'{upload.filename}' exceeds the {self.max_file_bytes // (1024 * 1024)} MB per-file limit.",
                            file=upload.filename,
                        )
                    if already_written + written > self.max_request_bytes:
                        raise FileTooLargeError(
                            f"Upload exceeds the {self.max_request_bytes // (1024 * 1024)} MB per-request limit."
                        )
                    handle.write(chunk)
        except OSError as exc:
            raise StorageError(f"Could not save '{stored_name}': {exc}") from exc
        return stored_name, written
