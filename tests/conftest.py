"""Shared fixtures: temp storage root, simulated clock and in-memory collaborators."""

from __future__ import annotations

import io
import json
from datetime import datetime, timedelta, timezone
from fnmatch import fnmatch
from pathlib import Path
from typing import Any, Callable, Iterable

import pytest
from PIL import Image

from photolessons.config import PipelineSettings, ensure_storage_dirs, get_paths
from photolessons.errors import PushRejected, TransientExternalError
from photolessons.services.content import (
    EDP_SYSTEM_PROMPT,
    FIVE_E_SYSTEM_PROMPT,
    Generation,
    Usage,
)
from photolessons.services.jobs import Scheduler
from photolessons.services.media import ImageOptimizer
from photolessons.services.pipeline_orchestrator import PipelineContext
from photolessons.services.queue import QueueStore
from photolessons.services.repository import RepositoryPublisher

GRADE_TEXT = (
    "# Frog Life Cycle\n\n"
    "Students connect what they see to 3-LS1-1 and 3-LS4-3. "
    "A stray physical science code K-PS2-1 does not belong here.\n\n"
    "Core idea: [[NGSS:DCI:LS1.B]]. Crosscutting concept: [[NGSS:CCC:Patterns]].\n"
)
FIVE_E_TEXT = "## Engage\nLook closely.\n## Explore\n## Explain\n## Elaborate\n## Evaluate\n"
EDP_TEXT = "### Visible Elements in Photo\n- A green frog\n### Engineering Task\n- K-2: Build a lily pad that floats.\n"
KEYWORD_TEXT = '["frog", "amphibian", "life cycle"]'

# Each fake call costs $0.0035: 1000 input tokens at $1/MTok plus 500 output at $5/MTok.
CALL_USAGE = Usage(input_tokens=1000, output_tokens=500)
CALL_COST = CALL_USAGE.cost


class SimulatedClock:
    """Controllable UTC clock for the queue store."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class SteppingTimer:
    """Monotonic timer that moves forward a fixed step per reading."""

    def __init__(self, step: float = 15.0) -> None:
        self.value = 0.0
        self.step = step

    def __call__(self) -> float:
        current = self.value
        self.value += self.step
        return current


class FakeContentService:
    """Generative service stand-in returning canned markdown."""

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.failures_remaining = 0
        self.keyword_text = KEYWORD_TEXT
        self.on_call: Callable[[dict[str, Any]], None] | None = None

    def generate(
        self,
        image_bytes: bytes,
        media_type: str,
        prompt: str,
        *,
        system: str | None = None,
        max_tokens: int = 5000,
    ) -> Generation:
        call = {"media_type": media_type, "prompt": prompt, "system": system}
        self.calls.append(call)
        if self.on_call is not None:
            self.on_call(call)
        if self.failures_remaining:
            self.failures_remaining -= 1
            raise TransientExternalError("service overloaded")
        if "JSON array" in prompt:
            text = self.keyword_text
        elif system == FIVE_E_SYSTEM_PROMPT:
            text = FIVE_E_TEXT
        elif system == EDP_SYSTEM_PROMPT:
            text = EDP_TEXT
        else:
            text = GRADE_TEXT
        return Generation(text=text, usage=CALL_USAGE)


class FakeRenderer:
    def __init__(self) -> None:
        self.rendered: list[str] = []
        self.failure: Exception | None = None

    def render(self, markdown: str, image_path: Path, template) -> bytes:
        if self.failure is not None:
            raise self.failure
        self.rendered.append(f"{template.kind}:{template.grade_name}")
        return b"%PDF-1.4 fake"


class InMemoryRepository:
    """Versioned repository kept in a dict, with simulated concurrent writers."""

    def __init__(self, files: dict[str, Any] | None = None) -> None:
        self.files: dict[str, bytes] = {}
        for path, value in (files or {}).items():
            self.files[path] = _encode(value)
        self.version = 0
        self.commits: list[str] = []
        self.clones: list[tuple[str, ...]] = []
        self.fetches = 0
        self.rebases = 0
        self.amends = 0
        self.push_attempts = 0
        self.always_reject = False
        self._pending_writers: list[dict[str, Any]] = []
        self._worktrees: dict[Path, dict[str, Any]] = {}

    def concurrent_write(self, changes: dict[str, Any]) -> None:
        """Another writer publishes these changes just before our next push."""

        self._pending_writers.append(changes)

    def read_json(self, path: str) -> Any:
        return json.loads(self.files[path].decode("utf-8"))

    def read_text(self, path: str) -> str | None:
        data = self.files.get(path)
        return data.decode("utf-8") if data is not None else None

    def clone(self, destination: Path, sparse_paths: Iterable[str]) -> None:
        patterns = tuple(sparse_paths)
        self.clones.append(patterns)
        destination.mkdir(parents=True, exist_ok=True)
        base: dict[str, bytes] = {}
        for path, data in self.files.items():
            if _matches(path, patterns):
                target = destination / path
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(data)
                base[path] = data
        self._worktrees[destination] = {
            "base": base,
            "patterns": patterns,
            "version": self.version,
            "pending": None,
        }

    def add(self, worktree: Path) -> None:
        pass

    def _diff(self, worktree: Path) -> dict[str, bytes | None]:
        state = self._worktrees[worktree]
        current = {
            path.relative_to(worktree).as_posix(): path.read_bytes()
            for path in worktree.rglob("*")
            if path.is_file()
        }
        changes: dict[str, bytes | None] = {
            path: data for path, data in current.items() if state["base"].get(path) != data
        }
        for path in state["base"]:
            if path not in current:
                changes[path] = None
        return changes

    def commit(self, worktree: Path, message: str) -> bool:
        changes = self._diff(worktree)
        if not changes:
            return False
        self._worktrees[worktree]["pending"] = (changes, message)
        return True

    def amend(self, worktree: Path) -> bool:
        state = self._worktrees[worktree]
        changes = self._diff(worktree)
        if state["pending"] is None or changes == state["pending"][0]:
            return False
        state["pending"] = (changes, state["pending"][1])
        self.amends += 1
        return True

    def push(self, worktree: Path) -> None:
        self.push_attempts += 1
        state = self._worktrees[worktree]
        if self._pending_writers:
            for path, value in self._pending_writers.pop(0).items():
                self.files[path] = _encode(value)
            self.version += 1
            self.commits.append("concurrent edit")
        if self.always_reject or state["version"] != self.version:
            raise PushRejected("remote contains work that you do not have locally")
        changes, message = state["pending"]
        for path, data in changes.items():
            if data is None:
                self.files.pop(path, None)
            else:
                self.files[path] = data
        self.version += 1
        state["version"] = self.version
        self.commits.append(message)

    def fetch(self, worktree: Path) -> None:
        self.fetches += 1

    def rebase(self, worktree: Path) -> None:
        """Replay our pending change on top of the remote files."""

        self.rebases += 1
        state = self._worktrees[worktree]
        ours = state["pending"][0] if state["pending"] else {}
        base: dict[str, bytes] = {}
        for path, data in self.files.items():
            if not _matches(path, state["patterns"]):
                continue
            base[path] = data
            if path not in ours:
                target = worktree / path
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(data)
        for path in state["base"]:
            if path not in base and path not in ours:
                (worktree / path).unlink(missing_ok=True)
        state["base"] = base
        state["version"] = self.version


def _encode(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("utf-8")
    return json.dumps(value, indent=2).encode("utf-8")


def _matches(path: str, patterns: tuple[str, ...]) -> bool:
    for pattern in patterns:
        if pattern.endswith("/"):
            if fnmatch(path, pattern + "*"):
                return True
        elif path == pattern:
            return True
    return False


def make_jpeg(size_bytes: int | None = None, dimensions: tuple[int, int] = (64, 48)) -> bytes:
    """Small valid JPEG, padded with trailing bytes up to size_bytes."""

    buffer = io.BytesIO()
    Image.new("RGB", dimensions, (40, 140, 60)).save(buffer, format="JPEG")
    data = buffer.getvalue()
    if size_bytes is not None and size_bytes > len(data):
        data += b"\0" * (size_bytes - len(data))
    return data


def seed_metadata(*images: dict[str, Any]) -> dict[str, Any]:
    return {"images": list(images), "totalImages": len(images)}


@pytest.fixture
def paths(tmp_path):
    app_paths = get_paths(tmp_path)
    ensure_storage_dirs(app_paths)
    return app_paths


@pytest.fixture
def clock():
    return SimulatedClock()


@pytest.fixture
def store(paths, clock):
    return QueueStore(paths.db_path, clock=clock)


@pytest.fixture
def settings():
    return PipelineSettings(repo_url="memory://gallery", content_call_delay=0.0)


@pytest.fixture
def content_service():
    return FakeContentService()


@pytest.fixture
def renderer():
    return FakeRenderer()


@pytest.fixture
def repository():
    return InMemoryRepository(
        {
            "gallery-metadata.json": seed_metadata(
                {
                    "id": 1,
                    "filename": "volcano.jpg",
                    "category": "earth-space-science",
                    "contentFile": "content/earth-space-science/volcano.json",
                    "hasContent": True,
                    "ngssStandards": {"grade4": ["4-ESS2-2"]},
                },
                {
                    "id": 4,
                    "filename": "magnet.jpg",
                    "category": "physical-science",
                    "contentFile": "content/physical-science/magnet.json",
                    "hasContent": True,
                    "ngssStandards": {"grade3": ["3-PS2-3", "3-PS2-4"]},
                },
            ),
            "README.md": "Gallery\n",
        }
    )


@pytest.fixture
def context(paths, settings, store, repository, content_service, renderer):
    return PipelineContext(
        paths=paths,
        settings=settings,
        store=store,
        publisher=RepositoryPublisher(repository, paths.work_dir, push_retries=settings.push_retries),
        content=content_service,
        optimizer=ImageOptimizer(paths.media_dir),
        renderer=renderer,
        sleep=lambda seconds: None,
        timer=SteppingTimer(step=30.0),
    )


@pytest.fixture
def scheduler(context):
    return Scheduler(context)


@pytest.fixture
def upload(paths):
    """Write a photo into the uploads area and return its reference."""

    def _upload(filename: str = "frog.jpg", category: str = "life-science", size_bytes: int | None = None) -> str:
        destination = paths.uploads_dir / category / filename
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(make_jpeg(size_bytes))
        return f"uploads/{category}/{filename}"

    return _upload


def drain(scheduler: Scheduler, limit: int = 20) -> list:
    """Tick until the queue is idle, returning the outcomes."""

    outcomes = []
    for _ in range(limit):
        outcome = scheduler.tick()
        if outcome.action == "idle":
            return outcomes
        outcomes.append(outcome)
    raise AssertionError("queue did not drain")
