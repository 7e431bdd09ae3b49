from __future__ import annotations

import json
import logging
from datetime import timedelta

from photolessons.config import ensure_storage_dirs, get_paths, load_settings
from photolessons.logging_setup import JsonFormatter, setup_logging


def test_get_paths_uses_environment_root(tmp_path, monkeypatch):
    monkeypatch.setenv("PHOTOLESSONS_ROOT", str(tmp_path))

    paths = get_paths()

    assert paths.root == tmp_path
    assert paths.db_path == tmp_path / "data" / "queue.db"
    assert paths.failed_dir == tmp_path / "storage" / "failed"


def test_ensure_storage_dirs_creates_category_uploads(tmp_path):
    paths = get_paths(tmp_path)

    ensure_storage_dirs(paths)

    assert (paths.uploads_dir / "life-science").is_dir()
    assert paths.duplicates_dir.is_dir()
    assert paths.work_dir.is_dir()


def test_load_settings_reads_environment(monkeypatch):
    monkeypatch.setenv("PHOTOLESSONS_REPO_URL", "https://example.com/gallery.git")
    monkeypatch.setenv("PHOTOLESSONS_BRANCH", "published")
    monkeypatch.setenv("PHOTOLESSONS_TICK_SECONDS", "15")

    settings = load_settings()

    assert settings.repo_url == "https://example.com/gallery.git"
    assert settings.branch == "published"
    assert settings.tick_interval_seconds == 15
    assert settings.max_attempts == 3
    assert settings.stale_after == timedelta(minutes=12)
    assert settings.max_source_bytes == 2 * 1024 * 1024


def test_json_formatter_includes_event_and_context():
    record = logging.LogRecord("photolessons.test", logging.INFO, __file__, 1, "Job claimed", None, None)
    record.event = "job_claimed"
    record.context = {"job_id": 7}

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "Job claimed"
    assert payload["event"] == "job_claimed"
    assert payload["context"] == {"job_id": 7}
    assert payload["level"] == "INFO"


def test_setup_logging_writes_per_role_file(tmp_path, monkeypatch):
    monkeypatch.setenv("PHOTOLESSONS_LOG_LEVEL", "debug")
    root = logging.getLogger()
    saved = (root.level, list(root.handlers))

    logfile = setup_logging(tmp_path / "logs", role="worker")
    try:
        logging.getLogger("photolessons.test").debug(
            "Tick finished", extra={"event": "tick_finished", "context": {"action": "idle"}}
        )
        for handler in root.handlers:
            handler.flush()
        entry = json.loads(logfile.read_text().splitlines()[-1])
    finally:
        for handler in root.handlers:
            if isinstance(handler, logging.FileHandler):
                handler.close()
        root.handlers[:] = saved[1]
        root.setLevel(saved[0])

    assert logfile.name == "photolessons-worker.log"
    assert entry["role"] == "worker"
    assert entry["level"] == "DEBUG"
    assert entry["context"] == {"action": "idle"}
