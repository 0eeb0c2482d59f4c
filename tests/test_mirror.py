"""Tests for the mirror directory and its fingerprint cache."""

import os
import stat
import threading
from pathlib import Path

import pytest

from homesync.errors import AlreadyExists, IoFailure, NotMirrored
from homesync.mirror import Mirror, fingerprint
from homesync.package import Package, PackageModel


@pytest.fixture
def mirror(tmp_path: Path) -> Mirror:
    root = tmp_path / "mirror"
    (root / ".git").mkdir(parents=True)
    return Mirror(root)


@pytest.fixture
def bashrc(tmp_path: Path) -> Path:
    path = tmp_path / "home" / ".bashrc"
    path.parent.mkdir()
    path.write_text("alias ll='ls -l'\n")
    return path


BASH = Package("bash", ("$HOME/.bashrc",))


def test_capture_copies_content(mirror: Mirror, bashrc: Path) -> None:
    """Verifies capture writes the flat mirror file and records its digest."""
    entry = mirror.capture(BASH, bashrc)

    assert entry.path == mirror.root / "bash"
    assert entry.path.read_bytes() == bashrc.read_bytes()
    assert entry.fingerprint == fingerprint(bashrc.read_bytes())
    assert mirror.entry("bash") == entry


def test_diff_against_disk(mirror: Mirror, bashrc: Path) -> None:
    """Verifies drift detection compares content, not timestamps."""
    assert mirror.diff_against_disk(BASH, bashrc) is True

    mirror.capture(BASH, bashrc)
    assert mirror.diff_against_disk(BASH, bashrc) is False

    # Touching without changing content is not a change.
    os.utime(bashrc, (0, 0))
    assert mirror.diff_against_disk(BASH, bashrc) is False

    bashrc.write_text("alias la='ls -a'\n")
    assert mirror.diff_against_disk(BASH, bashrc) is True


def test_diff_against_unreadable_file_raises(mirror: Mirror, tmp_path: Path) -> None:
    """Verifies a vanished source surfaces as IoFailure."""
    mirror.capture(BASH, _write(tmp_path / "src", "x"))
    with pytest.raises(IoFailure):
        mirror.diff_against_disk(BASH, tmp_path / "missing")


def test_materialize_refuses_existing_target(
    mirror: Mirror, bashrc: Path, tmp_path: Path
) -> None:
    """Verifies the existing file is left byte-identical when overwrite is off."""
    mirror.capture(BASH, bashrc)
    target = _write(tmp_path / "other" / ".bashrc", "local edits\n")

    with pytest.raises(AlreadyExists):
        mirror.materialize(BASH, target)

    assert target.read_text() == "local edits\n"


def test_materialize_refuses_dangling_symlink(
    mirror: Mirror, bashrc: Path, tmp_path: Path
) -> None:
    """Verifies a symlink at the target counts as existing, even if broken."""
    mirror.capture(BASH, bashrc)
    target = tmp_path / "link"
    target.symlink_to(tmp_path / "nowhere")

    with pytest.raises(AlreadyExists):
        mirror.materialize(BASH, target)


def test_materialize_creates_parents_and_overwrites(
    mirror: Mirror, bashrc: Path, tmp_path: Path
) -> None:
    """Verifies missing directories are created and overwrite replaces content."""
    mirror.capture(BASH, bashrc)

    fresh = tmp_path / "new" / "deep" / ".bashrc"
    assert mirror.materialize(BASH, fresh) == fresh
    assert fresh.read_bytes() == bashrc.read_bytes()

    existing = _write(tmp_path / "existing", "old\n")
    mirror.materialize(BASH, existing, overwrite=True)
    assert existing.read_bytes() == bashrc.read_bytes()


def test_materialize_preserves_mode(
    mirror: Mirror, bashrc: Path, tmp_path: Path
) -> None:
    """Verifies applying onto an executable script keeps it executable."""
    mirror.capture(BASH, bashrc)
    script = _write(tmp_path / "script.sh", "#!/bin/sh\n")
    script.chmod(0o755)

    mirror.materialize(BASH, script, overwrite=True)

    assert stat.S_IMODE(script.stat().st_mode) == 0o755


def test_materialize_not_mirrored(mirror: Mirror, tmp_path: Path) -> None:
    """Verifies applying a never-staged package is a per-package IoFailure."""
    with pytest.raises(NotMirrored):
        mirror.materialize(BASH, tmp_path / ".bashrc")
    assert issubclass(NotMirrored, IoFailure)


def test_refresh_rebuilds_cache_from_disk(mirror: Mirror) -> None:
    """Verifies fingerprints follow files rewritten underneath the cache."""
    (mirror.root / "bash").write_text("pulled content\n")
    (mirror.root / ".git" / "HEAD").write_text("ref: refs/heads/master\n")
    (mirror.root / "subdir").mkdir()

    mirror.refresh()

    assert [e.name for e in mirror.entries()] == ["bash"]
    assert mirror.entry("bash").fingerprint == fingerprint(b"pulled content\n")


def test_stale_entries_and_remove(mirror: Mirror) -> None:
    """Verifies only files owned by nothing are reported as stale."""
    for name in ("bash", "old-vimrc", "LICENSE", ".homesync"):
        (mirror.root / name).write_text(name)
    mirror.refresh()
    model = PackageModel.build([("bash", ["$HOME/.bashrc"])], unmanaged=["LICENSE"])

    assert mirror.stale_entries(model) == ["old-vimrc"]

    mirror.remove("old-vimrc")
    assert not (mirror.root / "old-vimrc").exists()
    assert mirror.entry("old-vimrc") is None
    assert mirror.stale_entries(model) == []


def test_lock_serializes_holders(mirror: Mirror) -> None:
    """Verifies a second holder blocks until the first releases the lock."""
    order = []
    entered = threading.Event()

    def contender() -> None:
        entered.set()
        with mirror.lock():
            order.append("second")

    with mirror.lock():
        thread = threading.Thread(target=contender)
        thread.start()
        entered.wait(timeout=5)
        thread.join(timeout=0.3)
        order.append("first")

    thread.join(timeout=5)
    assert order == ["first", "second"]
    assert (mirror.root / ".git" / "homesync.lock").exists()


def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path
