import contextlib
import fcntl
import hashlib
import logging
import os
import tempfile
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from .constants import APP_NAME, LOCK_FILE
from .errors import AlreadyExists, IoFailure, NotMirrored

if TYPE_CHECKING:
    from .package import Package, PackageModel

logger = logging.getLogger(APP_NAME)


def fingerprint(data: bytes) -> str:
    """Returns the SHA-256 hex digest identifying a file's contents."""
    return hashlib.sha256(data).hexdigest()


def _read_bytes(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as e:
        raise IoFailure(f"Could not read {path}: {e}") from e


def _atomic_write(path: Path, data: bytes) -> None:
    """Writes ``data`` to ``path`` through a temp file and an atomic rename.

    The existing file's permission bits are preserved so that applying a
    mirrored script does not strip its executable bit.
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            mode = path.stat().st_mode & 0o7777
        except FileNotFoundError:
            mode = None

        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
        tmp_file = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            if mode is not None:
                os.chmod(tmp_file, mode)
            os.replace(tmp_file, path)
        except BaseException:
            with contextlib.suppress(OSError):
                tmp_file.unlink()
            raise
    except OSError as e:
        raise IoFailure(f"Could not write {path}: {e}") from e


@dataclass(frozen=True)
class MirrorEntry:
    """The last staged state of a package.

    Attributes:
        name (str): Package name.
        path (Path): Location of the copy inside the mirror.
        fingerprint (str): SHA-256 digest of the copy.
    """

    name: str
    path: Path
    fingerprint: str


class Mirror:
    """A flat directory holding the last synced content of every package.

    The directory doubles as the git working tree, so each package lives at
    ``{root}/{package_name}``. Fingerprints are cached in memory and must be
    refreshed whenever git rewrites the tree underneath (see :meth:`refresh`).

    Attributes:
        root (Path): The mirror directory.
    """

    def __init__(self, root: Path):
        self.root = root
        self._fingerprints: dict[str, str] = {}
        self.refresh()

    def path_for(self, name: str) -> Path:
        return self.root / name

    def entry(self, name: str) -> MirrorEntry | None:
        """Returns the mirror entry for a package, or None if it was never staged."""
        digest = self._fingerprints.get(name)
        if digest is None:
            return None
        return MirrorEntry(name, self.path_for(name), digest)

    def entries(self) -> list[MirrorEntry]:
        return [
            MirrorEntry(name, self.path_for(name), digest)
            for name, digest in self._fingerprints.items()
        ]

    def refresh(self) -> None:
        """Recomputes every fingerprint from the files currently in the mirror."""
        self._fingerprints.clear()
        if not self.root.is_dir():
            return
        for child in sorted(self.root.iterdir()):
            if child.name == ".git" or not child.is_file():
                continue
            try:
                self._fingerprints[child.name] = fingerprint(child.read_bytes())
            except OSError as e:
                logger.warning(f"Could not fingerprint mirror file {child}: {e}")

    def capture(self, package: "Package", resolved_path: Path) -> MirrorEntry:
        """Copies a package's on-disk content into the mirror.

        The copy is always written, even if the content is unchanged.

        Raises:
            IoFailure: If the source cannot be read or the copy cannot be written.
        """
        data = _read_bytes(resolved_path)
        target = self.path_for(package.name)
        _atomic_write(target, data)
        digest = fingerprint(data)
        self._fingerprints[package.name] = digest
        logger.debug(f"Captured {resolved_path} into {target} ({digest[:12]}).")
        return MirrorEntry(package.name, target, digest)

    def materialize(
        self, package: "Package", target_path: Path, overwrite: bool = False
    ) -> Path:
        """Writes the mirrored content of a package back to disk.

        Args:
            package (Package): The package to materialize.
            target_path (Path): Where to write it. Parent directories are created.
            overwrite (bool): Whether an existing target may be replaced.

        Returns:
            Path: The written path.

        Raises:
            NotMirrored: If the mirror holds no copy of the package.
            AlreadyExists: If the target exists and ``overwrite`` is False.
            IoFailure: On read or write errors.
        """
        source = self.path_for(package.name)
        if not source.is_file():
            raise NotMirrored(f"No mirrored copy of '{package.name}' in {self.root}.")

        if not overwrite and (target_path.exists() or target_path.is_symlink()):
            raise AlreadyExists(f"{target_path} already exists.")

        data = _read_bytes(source)
        _atomic_write(target_path, data)
        self._fingerprints[package.name] = fingerprint(data)
        return target_path

    def diff_against_disk(self, package: "Package", resolved_path: Path) -> bool:
        """True if the on-disk content differs from the last staged content.

        Raises:
            IoFailure: If the on-disk file cannot be read.
        """
        stored = self._fingerprints.get(package.name)
        if stored is None:
            return True
        return fingerprint(_read_bytes(resolved_path)) != stored

    def stale_entries(self, model: "PackageModel") -> list[str]:
        """Lists mirror files belonging to neither a package nor an unmanaged entry."""
        return [
            name
            for name in self._fingerprints
            if name not in model and not model.is_unmanaged(name)
        ]

    def remove(self, name: str) -> None:
        """Deletes a mirror file and forgets its fingerprint.

        Raises:
            IoFailure: If the file cannot be removed.
        """
        try:
            self.path_for(name).unlink(missing_ok=True)
        except OSError as e:
            raise IoFailure(f"Could not remove {self.path_for(name)}: {e}") from e
        self._fingerprints.pop(name, None)

    @contextlib.contextmanager
    def lock(self) -> Iterator[None]:
        """Holds the process-level advisory lock on the mirror.

        Blocks until any other homesync process (the daemon or a foreground
        command) releases the mirror.
        """
        lock_path = self.root / ".git" / LOCK_FILE
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            lock_file = open(lock_path, "w")
        except OSError as e:
            raise IoFailure(f"Could not open lock file {lock_path}: {e}") from e

        with lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
