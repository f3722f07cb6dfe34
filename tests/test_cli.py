"""Command-line wiring, file discovery and Drive upload."""

from __future__ import annotations

import asyncio
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from conftest import FakeOcrClient, FakeTranslator

from paperburner.cli import _build_settings, _setup_logging, parse_args, run_batch
from paperburner.sources import discover_pdfs, upload_to_drive


def test_parse_args_defaults():
    args = parse_args(["paper.pdf"])
    assert args.inputs == [Path("paper.pdf")]
    assert args.translation_model is None
    assert args.concurrency is None
    assert args.credentials == Path("credentials.json")
    assert not args.zip and not args.epub and not args.upload_drive


def test_build_settings_applies_flags(tmp_path):
    settings_file = tmp_path / "settings.json"
    settings_file.write_text('{"concurrency_level": 5, "target_language": "korean"}')
    args = parse_args(
        [
            "in",
            "--settings",
            str(settings_file),
            "--output-dir",
            str(tmp_path / "out"),
            "--translation-model",
            "gemini",
            "--concurrency",
            "2",
            "--max-tokens",
            "4000",
            "--epub",
            "--upload-drive",
        ]
    )
    settings = _build_settings(args)
    assert settings.concurrency_level == 2
    assert settings.target_language == "korean"
    assert settings.translation_model == "gemini"
    assert settings.max_tokens_per_chunk == 4000
    assert settings.save_location == str(tmp_path / "out")
    assert settings.enable_recognition_to_epub and settings.enable_translation_to_epub
    assert settings.enable_google_drive and settings.google_drive_auto_upload
    assert settings.skip_processed_files is False


def test_setup_logging_adds_rotating_file_in_detailed_mode(tmp_path):
    root = logging.getLogger()
    saved = (list(root.handlers), root.level)
    try:
        _setup_logging(
            verbose=False, detailed_logging=True, output_dir=tmp_path, log_file=None
        )
        file_handlers = [h for h in root.handlers if isinstance(h, RotatingFileHandler)]
        assert len(file_handlers) == 1
        assert Path(file_handlers[0].baseFilename) == tmp_path / "paperburner.log"
        assert root.level == logging.INFO
        assert logging.getLogger("httpx").level == logging.WARNING
        for handler in file_handlers:
            handler.close()
    finally:
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])


def test_discover_pdfs(tmp_path):
    folder = tmp_path / "papers"
    (folder / "nested").mkdir(parents=True)
    for rel in ("b.pdf", "a.PDF", "nested/c.pdf", "notes.txt"):
        (folder / rel).write_bytes(b"x")
    loose = tmp_path / "z.pdf"
    loose.write_bytes(b"x")

    found = discover_pdfs(
        [loose, folder, folder / "b.pdf", tmp_path / "missing.pdf", folder / "notes.txt"]
    )
    assert found == [loose, folder / "a.PDF", folder / "b.pdf", folder / "nested" / "c.pdf"]


class _FakeDrive:
    def __init__(self, fail=None):
        self.created = []
        self.fail = fail

    def files(self):
        return self

    def create(self, body, media_body, fields):
        self.created.append((body, fields))
        return self

    def execute(self):
        if self.fail is not None:
            raise self.fail
        return {"id": "drive-1", "webViewLink": "https://drive.example/drive-1"}


def test_upload_to_drive(tmp_path):
    path = tmp_path / "paper.md"
    path.write_text("# Paper", encoding="utf-8")
    service = _FakeDrive()

    result = upload_to_drive(service, path, folder_id="folder-9")

    assert result.success
    assert result.file_id == "drive-1"
    assert result.web_link == "https://drive.example/drive-1"
    body, fields = service.created[0]
    assert body == {"name": "paper.md", "parents": ["folder-9"]}
    assert fields == "id, webViewLink"


def test_upload_to_drive_reports_errors(tmp_path):
    path = tmp_path / "paper.md"
    path.write_text("# Paper", encoding="utf-8")

    result = upload_to_drive(_FakeDrive(fail=OSError("disk gone")), path)

    assert not result.success
    assert result.error == "disk gone"


def test_run_batch_translates_names(fast_settings, key_pools, make_pdfs):
    pdfs = make_pdfs(2)
    settings = fast_settings.with_overrides(translation_model="deepseek", concurrency_level=2)
    ocr = FakeOcrClient()
    events = []

    results, names = asyncio.run(
        run_batch(
            pdfs,
            settings,
            key_pools,
            on_event=events.append,
            ocr_client=ocr,
            translator=FakeTranslator(),
        )
    )

    assert [r.file_name for r in results] == ["doc0", "doc1"]
    assert all(r.success and r.translation for r in results)
    assert names == {"doc0": "DOC0", "doc1": "DOC1"}
    assert sum(1 for e in events if e.kind == "file_complete") == 2
    assert not ocr.closed
