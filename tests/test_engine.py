"""Tests for the sync engine orchestration."""

import os
import threading
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from homesync.config import RemoteRef
from homesync.engine import OutcomeStatus, SyncEngine, commit_message
from homesync.errors import BackendFailure, OverwriteRefused, ResolutionFailure
from homesync.git_wrapper import PullResult
from homesync.mirror import Mirror
from homesync.package import PackageModel

PACKAGES = [
    ("bash", ["$HOME/.bashrc", "$HOME/.bash_profile"]),
    ("vim", ["$HOME/.vimrc"]),
    ("tmux", ["$HOME/.tmux.conf", "$HOME/.config/tmux/tmux.conf"]),
]


@pytest.fixture
def home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    return home


@pytest.fixture
def mirror_root(tmp_path: Path) -> Path:
    root = tmp_path / "mirror"
    (root / ".git").mkdir(parents=True)
    return root


def make_engine(mirror_root: Path, packages=PACKAGES, unmanaged=()) -> SyncEngine:
    """Builds an engine over a real mirror directory and a mocked git backend."""
    model = PackageModel.build(packages, unmanaged)
    repo = MagicMock()
    repo.staged_paths.return_value = []
    return SyncEngine(model, Mirror(mirror_root), repo, RemoteRef())


def refreshed(engine: SyncEngine) -> SyncEngine:
    """Re-resolves after files were created, as the daemon would."""
    engine.model = engine.model.refresh()
    return engine


def test_stage_captures_changed_packages(home: Path, mirror_root: Path) -> None:
    """Verifies resolved packages are copied and staged; others are skipped."""
    (home / ".bashrc").write_text("export PS1='$ '\n")
    (home / ".vimrc").write_text("syntax on\n")
    engine = make_engine(mirror_root)

    report = engine.stage()

    assert report.by_status(OutcomeStatus.STAGED) == ["bash", "vim"]
    assert report.by_status(OutcomeStatus.SKIPPED) == ["tmux"]
    assert report.ok
    skipped = report.outcomes[-1]
    assert isinstance(skipped.error, ResolutionFailure)
    assert (mirror_root / "bash").read_text() == "export PS1='$ '\n"
    engine.repo.stage_path.assert_any_call(mirror_root / "bash")
    engine.repo.stage_path.assert_any_call(mirror_root / "vim")
    assert not (mirror_root / "tmux").exists()


def test_stage_is_idempotent(home: Path, mirror_root: Path, mocker: MagicMock) -> None:
    """Verifies a second stage without edits writes nothing to the mirror."""
    (home / ".vimrc").write_text("set number\n")
    engine = make_engine(mirror_root)
    engine.stage(["vim"])
    capture = mocker.spy(engine.mirror, "capture")
    engine.repo.reset_mock()

    report = engine.stage(["vim"])

    assert report.by_status(OutcomeStatus.UNCHANGED) == ["vim"]
    capture.assert_not_called()
    engine.repo.stage_path.assert_not_called()


def test_stage_follows_higher_priority_candidate(
    home: Path, mirror_root: Path
) -> None:
    """Verifies that creating an earlier candidate switches the captured source."""
    (home / ".bash_profile").write_text("profile\n")
    engine = make_engine(mirror_root)

    engine.stage(["bash"])
    assert (mirror_root / "bash").read_text() == "profile\n"

    (home / ".bashrc").write_text("rc\n")
    report = refreshed(engine).stage(["bash"])

    assert report.by_status(OutcomeStatus.STAGED) == ["bash"]
    assert report.outcomes[0].path == home / ".bashrc"
    assert (mirror_root / "bash").read_text() == "rc\n"


def test_stage_unknown_package_is_reported(home: Path, mirror_root: Path) -> None:
    """Verifies unknown names fail individually without aborting the rest."""
    (home / ".vimrc").write_text("set number\n")
    engine = make_engine(mirror_root)

    report = engine.stage(["emacs", "vim"])

    assert report.by_status(OutcomeStatus.FAILED) == ["emacs"]
    assert report.by_status(OutcomeStatus.STAGED) == ["vim"]
    assert not report.ok
    assert "Unknown package 'emacs'" in report.failures[0].detail


def test_stage_all_removes_stale_entries(home: Path, mirror_root: Path) -> None:
    """Verifies mirror files of removed packages are deleted and staged."""
    (mirror_root / "zshrc").write_text("old\n")
    (mirror_root / "LICENSE").write_text("MIT\n")
    (mirror_root / ".gitignore").write_text("*.swp\n")
    (mirror_root / ".gitattributes").write_text("* text=auto\n")
    engine = make_engine(mirror_root, unmanaged=["LICENSE"])

    report = engine.stage()

    assert report.by_status(OutcomeStatus.REMOVED) == ["zshrc"]
    assert not (mirror_root / "zshrc").exists()
    assert (mirror_root / "LICENSE").exists()
    assert (mirror_root / ".gitignore").exists()
    assert (mirror_root / ".gitattributes").exists()
    engine.repo.stage_path.assert_called_with(mirror_root / "zshrc")

    # Selective staging never removes anything.
    (mirror_root / "stray").write_text("x")
    engine.stage(["vim"])
    assert (mirror_root / "stray").exists()


def test_stage_sees_mirror_rewritten_by_another_process(
    home: Path, mirror_root: Path
) -> None:
    """Verifies staging compares against the mirror as it is now on disk."""
    (home / ".bashrc").write_text("local edit\n")
    engine = make_engine(mirror_root)
    other = make_engine(mirror_root)
    engine.stage(["bash"])

    # A pull in another process rewrites the mirror copy.
    (mirror_root / "bash").write_text("remote content\n")
    other.mirror.refresh()

    report = engine.stage(["bash"])

    assert report.by_status(OutcomeStatus.STAGED) == ["bash"]
    assert (mirror_root / "bash").read_text() == "local edit\n"
    engine.repo.stage_path.assert_called_with(mirror_root / "bash")


def test_stage_stops_between_packages(home: Path, mirror_root: Path) -> None:
    """Verifies a set stop event leaves remaining packages untouched."""
    (home / ".bashrc").write_text("rc\n")
    engine = make_engine(mirror_root)
    stop = threading.Event()
    stop.set()

    report = engine.stage(stop=stop)

    assert report.outcomes == []
    assert not (mirror_root / "bash").exists()


def test_round_trip_to_another_machine(
    tmp_path: Path, home: Path, mirror_root: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Verifies stage on one home and apply on another reproduce the bytes."""
    content = b"set -g mouse on\n\x00binary-safe\n"
    (home / ".config/tmux").mkdir(parents=True)
    (home / ".config/tmux/tmux.conf").write_bytes(content)
    make_engine(mirror_root).stage(["tmux"])

    other_home = tmp_path / "other"
    other_home.mkdir()
    monkeypatch.setenv("HOME", str(other_home))
    report = make_engine(mirror_root).apply(["tmux"])

    # Nothing resolves on the new machine, so the first candidate is used.
    assert report.by_status(OutcomeStatus.APPLIED) == ["tmux"]
    assert (other_home / ".tmux.conf").read_bytes() == content


def test_apply_refuses_then_overwrites(home: Path, mirror_root: Path) -> None:
    """Verifies existing files survive unless overwrite is given."""
    (mirror_root / "vim").write_text("mirrored\n")
    (home / ".vimrc").write_text("local\n")
    engine = make_engine(mirror_root)

    report = engine.apply(["vim"])

    assert report.by_status(OutcomeStatus.OVERWRITE_REFUSED) == ["vim"]
    assert isinstance(report.failures[0].error, OverwriteRefused)
    assert "--overwrite" in report.failures[0].detail
    assert (home / ".vimrc").read_text() == "local\n"

    assert engine.apply(["vim"], overwrite=True).ok
    assert (home / ".vimrc").read_text() == "mirrored\n"

    # Applying again with nothing new is harmless.
    assert engine.apply(["vim"], overwrite=True).ok
    assert (home / ".vimrc").read_text() == "mirrored\n"


def test_apply_unmirrored_package_fails(home: Path, mirror_root: Path) -> None:
    """Verifies a package absent from the mirror fails on its own."""
    (mirror_root / "vim").write_text("mirrored\n")
    engine = make_engine(mirror_root)

    report = engine.apply()

    assert report.by_status(OutcomeStatus.APPLIED) == ["vim"]
    assert report.by_status(OutcomeStatus.FAILED) == ["bash", "tmux"]


def test_apply_all_continues_past_write_errors(
    home: Path, mirror_root: Path, mocker: MagicMock
) -> None:
    """Verifies a permission error on one target does not stop the others."""
    for name in ("bash", "vim", "tmux"):
        (mirror_root / name).write_text(f"{name} content\n")
    engine = make_engine(mirror_root)

    real_replace = os.replace

    def deny_vimrc(src, dst):
        if Path(dst).name == ".vimrc":
            raise PermissionError(13, "Permission denied", str(dst))
        return real_replace(src, dst)

    mocker.patch("homesync.mirror.os.replace", side_effect=deny_vimrc)

    report = engine.apply(overwrite=True)

    assert report.by_status(OutcomeStatus.APPLIED) == ["bash", "tmux"]
    assert report.by_status(OutcomeStatus.FAILED) == ["vim"]
    assert "Permission denied" in report.failures[0].detail
    assert (home / ".bashrc").read_text() == "bash content\n"
    assert not (home / ".vimrc").exists()
    assert [p.name for p in home.iterdir() if ".vimrc" in p.name] == []


def test_push_commits_staged_paths(home: Path, mirror_root: Path) -> None:
    """Verifies push commits when something is staged and always pushes."""
    (home / ".vimrc").write_text("set number\n")
    engine = make_engine(mirror_root)
    engine.repo.staged_paths.return_value = ["vim"]

    result = engine.push(stage_all=True)

    assert result.committed == ["vim"]
    assert result.stage_report.by_status(OutcomeStatus.STAGED) == ["vim"]
    assert result.ok
    message = engine.repo.commit.call_args.args[0]
    assert message.startswith("Sync vim (")
    engine.repo.push.assert_called_once_with(engine.remote)


def test_push_without_changes_skips_commit(mirror_root: Path) -> None:
    engine = make_engine(mirror_root)

    result = engine.push()

    assert result.committed == []
    engine.repo.commit.assert_not_called()
    engine.repo.push.assert_called_once()


def test_push_backend_failure_propagates(mirror_root: Path) -> None:
    """Verifies a rejected push aborts the call and releases the mirror lock."""
    engine = make_engine(mirror_root)
    engine.repo.push.side_effect = BackendFailure("Git error: rejected")

    with pytest.raises(BackendFailure, match="rejected"):
        engine.push()

    with engine.mirror.lock():
        pass


def test_pull_conflict_leaves_files_alone(home: Path, mirror_root: Path) -> None:
    """Verifies a diverged mirror neither refreshes nor applies."""
    (mirror_root / "vim").write_text("mirrored\n")
    engine = make_engine(mirror_root)
    engine.repo.pull.return_value = PullResult.CONFLICT

    outcome = engine.pull(apply_all=True, overwrite=True)

    assert outcome.result is PullResult.CONFLICT
    assert outcome.apply_report is None
    assert not outcome.ok
    assert not (home / ".vimrc").exists()


def test_pull_refreshes_and_applies(home: Path, mirror_root: Path) -> None:
    """Verifies fingerprints are rebuilt from the tree git just rewrote."""
    engine = make_engine(mirror_root)

    def fast_forward(remote):
        (mirror_root / "vim").write_text("from remote\n")
        return PullResult.FAST_FORWARDED

    engine.repo.pull.side_effect = fast_forward

    outcome = engine.pull(apply_all=True)

    assert outcome.result is PullResult.FAST_FORWARDED
    assert engine.mirror.entry("vim") is not None
    assert outcome.apply_report.by_status(OutcomeStatus.APPLIED) == ["vim"]
    assert (home / ".vimrc").read_text() == "from remote\n"


def test_commit_message_truncates() -> None:
    paths = [f"pkg{i}" for i in range(7)]
    message = commit_message(paths)
    assert message.startswith("Sync pkg0, pkg1, pkg2, pkg3, pkg4 (+2 more) (")
    assert commit_message([]).startswith("Sync ")
