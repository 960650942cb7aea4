import asyncio
from pathlib import Path

import pytest
from watchdog.events import FileModifiedEvent

from skillshelf.watcher import STOP_JOIN_TIMEOUT_SECONDS, SkillWatcher


class _FakeObserver:
    def __init__(self, failing_paths: set[str]):
        self.failing_paths = failing_paths
        self.scheduled: list[tuple[object, str, bool]] = []
        self.started = False
        self.stopped = False
        self.joined = False
        self.join_timeout: float | None = None

    def start(self) -> None:
        self.started = True

    def schedule(self, handler, path: str, recursive: bool = False) -> None:
        if path in self.failing_paths:
            raise OSError("inotify watch limit reached")
        self.scheduled.append((handler, path, recursive))

    def stop(self) -> None:
        self.stopped = True

    def join(self, timeout: float | None = None) -> None:
        self.joined = True
        self.join_timeout = timeout


def _observer_factory(created: list[_FakeObserver], failing_paths: set[str] | None = None):
    def _factory() -> _FakeObserver:
        observer = _FakeObserver(failing_paths or set())
        created.append(observer)
        return observer

    return _factory


def _make_skill(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    (path / "SKILL.md").write_text("# Skill\n", encoding="utf-8")
    return path


@pytest.mark.asyncio
async def test_start_watches_roots_and_skill_dirs(tmp_path: Path):
    root = tmp_path / "root"
    alpha = _make_skill(root / "alpha")
    beta = _make_skill(root / "beta")
    created: list[_FakeObserver] = []
    watcher = SkillWatcher(
        roots_provider=lambda: [root, tmp_path / "missing", root],
        on_change=lambda: None,
        observer_factory=_observer_factory(created),
    )

    watcher.start()
    try:
        observer = created[0]
        assert observer.started is True
        assert [path for _, path, _ in observer.scheduled] == [str(root), str(alpha), str(beta)]
        assert all(recursive is False for _, _, recursive in observer.scheduled)
        assert watcher.watched_paths == [root, alpha, beta]
    finally:
        watcher.stop()


@pytest.mark.asyncio
async def test_failed_watch_does_not_abort_others(tmp_path: Path):
    root = tmp_path / "root"
    alpha = _make_skill(root / "alpha")
    beta = _make_skill(root / "beta")
    created: list[_FakeObserver] = []
    watcher = SkillWatcher(
        roots_provider=lambda: [root],
        on_change=lambda: None,
        observer_factory=_observer_factory(created, {str(alpha)}),
    )

    watcher.start()
    try:
        assert watcher.watched_paths == [root, beta]
    finally:
        watcher.stop()


@pytest.mark.asyncio
async def test_event_burst_notifies_once_and_rebuilds_watch_set(tmp_path: Path):
    root = tmp_path / "root"
    _make_skill(root / "alpha")
    created: list[_FakeObserver] = []
    notifications: list[int] = []
    watcher = SkillWatcher(
        roots_provider=lambda: [root],
        on_change=lambda: notifications.append(len(created)),
        debounce_ms=50,
        observer_factory=_observer_factory(created),
    )

    watcher.start()
    try:
        handler = created[0].scheduled[0][0]
        gamma = _make_skill(root / "gamma")
        for _ in range(3):
            await asyncio.to_thread(handler.on_any_event, FileModifiedEvent(str(root)))
        await asyncio.sleep(0.3)

        assert notifications == [2]
        assert created[0].stopped is True
        assert str(gamma) in [path for _, path, _ in created[1].scheduled]
    finally:
        watcher.stop()


@pytest.mark.asyncio
async def test_stop_is_idempotent_and_cancels_pending_notification(tmp_path: Path):
    root = tmp_path / "root"
    root.mkdir()
    created: list[_FakeObserver] = []
    notifications: list[str] = []
    watcher = SkillWatcher(
        roots_provider=lambda: [root],
        on_change=lambda: notifications.append("changed"),
        debounce_ms=50,
        observer_factory=_observer_factory(created),
    )

    watcher.start()
    handler = created[0].scheduled[0][0]
    handler.on_any_event(FileModifiedEvent(str(root)))
    await asyncio.sleep(0)
    watcher.stop()
    watcher.stop()
    await asyncio.sleep(0.15)

    assert notifications == []
    assert watcher.is_running is False
    assert watcher.watched_paths == []
    assert created[0].stopped is True
    assert created[0].joined is True
    assert len(created) == 1


@pytest.mark.asyncio
async def test_stop_joins_observer_with_short_timeout(tmp_path: Path):
    created: list[_FakeObserver] = []
    watcher = SkillWatcher(
        roots_provider=lambda: [tmp_path],
        on_change=lambda: None,
        observer_factory=_observer_factory(created),
    )

    watcher.start()
    watcher.stop()

    observer = created[0]
    assert observer.stopped is True
    assert observer.joined is True
    assert observer.join_timeout == STOP_JOIN_TIMEOUT_SECONDS
    assert STOP_JOIN_TIMEOUT_SECONDS <= 0.5
    assert watcher.is_running is False
