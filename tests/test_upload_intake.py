import asyncio
import json
import re

import pytest

from conftest import make_upload
from job_errors import (
    FileTooLargeError,
    InvalidLayerImage,
    InvalidSpecJSON,
    MissingReferencedFile,
    NoFilesError,
    TooManyFilesError,
)
from job_store import JobStore
from upload_intake import DEFAULT_LAYER_PARAMS, UploadIntake, sanitize_filename, unique_name

SAFE_NAME = re.compile(r"^[A-Za-z0-9._-]+$")


@pytest.fixture
def store(tmp_path):
    jobs_root = tmp_path / "jobs"
    jobs_root.mkdir()
    return JobStore(jobs_root)


@pytest.fixture
def intake(store):
    return UploadIntake(store, max_files=4, max_file_bytes=1024 * 1024, max_request_bytes=2 * 1024 * 1024)


def _job_dirs(store):
    return [job_id for job_id, _ in store.iter_job_dirs()]


def test_sanitize_filename_strips_path_traversal_and_unsafe_chars():
    assert sanitize_filename("../evil/..//secret?.png") == "secret_.png"


def test_sanitize_filename_handles_windows_separators():
    assert sanitize_filename("C:\\Users\\me\\my layer.png") == "my_layer.png"


def test_sanitize_filename_passwd_stays_a_plain_name():
    assert sanitize_filename("../../etc/passwd.png") == "passwd.png"


def test_sanitize_filename_collapses_dot_runs_and_leading_dots():
    assert sanitize_filename("..hidden...png") == "hidden.png"


def test_sanitize_filename_falls_back_for_empty_names():
    for raw in ("", None, "..", "/", "???"):
        name = sanitize_filename(raw)
        assert name.startswith("file_") and name.endswith(".png")


def test_sanitize_filename_is_idempotent_and_safe():
    samples = [
        "../evil/..//secret?.png",
        "layer 1 (copy).PNG",
        "ünïcödé.png",
        ".env",
        "a" * 400 + ".png",
        "b" * 119 + ".." + "c" * 50 + ".jpg",
        "name." + "x" * 40,
        "___leading.png",
    ]
    for raw in samples:
        once = sanitize_filename(raw)
        assert SAFE_NAME.match(once), once
        assert ".." not in once
        assert sanitize_filename(once) == once


def test_unique_name_adds_numeric_suffix(tmp_path):
    (tmp_path / "layer.png").write_bytes(b"x")
    assert unique_name(tmp_path, "layer.png") == "layer-1.png"
    (tmp_path / "layer-1.png").write_bytes(b"x")
    assert unique_name(tmp_path, "layer.png") == "layer-2.png"
    assert unique_name(tmp_path, "other.png") == "other.png"


def test_duplicate_uploads_get_distinct_names(intake):
    result = asyncio.run(intake.intake([make_upload("layer.png"), make_upload("layer.png")], None))

    assert result.layers == ["layer.png", "layer-1.png"]
    assert sorted(p.name for p in result.paths.layers.iterdir()) == ["layer-1.png", "layer.png"]


def test_traversal_name_is_stored_inside_layers(intake):
    result = asyncio.run(intake.intake([make_upload("../../etc/passwd.png")], None))

    stored = result.paths.layers / result.layers[0]
    assert "/" not in result.layers[0]
    assert stored.resolve().parent == result.paths.layers.resolve()
    assert stored.is_file()


def test_default_spec_is_built_when_none_supplied(intake):
    result = asyncio.run(intake.intake([make_upload("a.png"), make_upload("b.png")], None))

    saved = json.loads(result.paths.spec.read_text())
    assert [layer["file"] for layer in saved["layers"]] == ["a.png", "b.png"]
    assert saved["layers"][0]["fill"] == DEFAULT_LAYER_PARAMS["fill"]
    assert saved["width"] == 1000


def test_spec_without_layers_is_filled_in(intake):
    spec = json.dumps({"width": 400, "height": 300})
    result = asyncio.run(intake.intake([make_upload("a.png")], spec))

    saved = json.loads(result.paths.spec.read_text())
    assert saved["width"] == 400
    assert saved["layers"][0]["file"] == "a.png"


def test_references_to_duplicate_uploads_are_rewritten(intake):
    spec = json.dumps({"layers": [{"file": "layer.png", "angle": 0}, {"file": "layer.png", "angle": 90}]})
    result = asyncio.run(intake.intake([make_upload("layer.png"), make_upload("layer.png")], spec))

    saved = json.loads(result.paths.spec.read_text())
    assert [layer["file"] for layer in saved["layers"]] == ["layer.png", "layer-1.png"]
    assert [layer["angle"] for layer in saved["layers"]] == [0, 90]


def test_references_to_client_names_follow_sanitizing(intake):
    spec = json.dumps(["my layer.png"])
    result = asyncio.run(intake.intake([make_upload("my layer.png")], spec))

    assert json.loads(result.paths.spec.read_text()) == ["my_layer.png"]


def test_missing_referenced_file_rejects_and_cleans_up(intake, store):
    spec = json.dumps({"layers": [{"file": "a.png"}, {"filename": "ghost.png"}]})

    with pytest.raises(MissingReferencedFile) as excinfo:
        asyncio.run(intake.intake([make_upload("a.png")], spec))

    assert excinfo.value.details["missing"] == ["ghost.png"]
    assert _job_dirs(store) == []


def test_no_files_is_rejected_before_any_job_exists(intake, store):
    with pytest.raises(NoFilesError):
        asyncio.run(intake.intake([], "{}"))
    assert _job_dirs(store) == []


def test_too_many_files(intake, store):
    uploads = [make_upload(f"{index}.png") for index in range(5)]
    with pytest.raises(TooManyFilesError):
        asyncio.run(intake.intake(uploads, None))
    assert _job_dirs(store) == []


@pytest.mark.parametrize("raw_spec", ["{not json", "42", '"text"', '{"layers": "a.png"}'])
def test_invalid_spec_is_rejected(intake, store, raw_spec):
    with pytest.raises(InvalidSpecJSON):
        asyncio.run(intake.intake([make_upload("a.png")], raw_spec))
    assert _job_dirs(store) == []


def test_non_image_layer_is_rejected(intake, store):
    with pytest.raises(InvalidLayerImage):
        asyncio.run(intake.intake([make_upload("notes.png", b"definitely not a png")], None))
    assert _job_dirs(store) == []


def test_image_verification_can_be_disabled(store):
    intake = UploadIntake(store, max_files=2, max_file_bytes=1024, max_request_bytes=4096, verify_images=False)
    result = asyncio.run(intake.intake([make_upload("notes.txt", b"plain text")], None))
    assert (result.paths.layers / "notes.txt").read_bytes() == b"plain text"


def test_file_over_limit_is_rejected(store):
    intake = UploadIntake(store, max_files=2, max_file_bytes=16, max_request_bytes=4096, verify_images=False)
    with pytest.raises(FileTooLargeError):
        asyncio.run(intake.intake([make_upload("big.png", b"x" * 17)], None))
    assert _job_dirs(store) == []


def test_request_over_limit_is_rejected(store):
    intake = UploadIntake(store, max_files=4, max_file_bytes=16, max_request_bytes=24, verify_images=False)
    uploads = [make_upload("a.png", b"x" * 16), make_upload("b.png", b"y" * 16)]
    with pytest.raises(FileTooLargeError):
        asyncio.run(intake.intake(uploads, None))
    assert _job_dirs(store) == []


def test_array_entries_that_are_not_layers_are_left_alone(intake):
    spec = json.dumps([1, "a.png", None, {"note": "outline"}])
    result = asyncio.run(intake.intake([make_upload("a.png")], spec))

    assert json.loads(result.paths.spec.read_text()) == [1, "a.png", None, {"note": "outline"}]
