import logging
import os
import shlex
import subprocess
from enum import Enum
from pathlib import Path

from .config import RemoteRef
from .constants import APP_NAME
from .errors import BackendFailure

logger = logging.getLogger(APP_NAME)


class PullResult(Enum):
    """Outcome of reconciling the mirror with its remote branch."""

    FAST_FORWARDED = "fast-forwarded"
    UP_TO_DATE = "up-to-date"
    CONFLICT = "conflict"


def _network_env(ssh_key: Path | None) -> dict[str, str]:
    """Builds the environment for commands that talk to the remote.

    Batch mode keeps ssh from prompting, since the daemon has no terminal.
    """
    env = os.environ.copy()
    ssh = ["ssh", "-o", "BatchMode=yes"]
    if ssh_key is not None:
        ssh += ["-i", str(ssh_key), "-o", "IdentitiesOnly=yes"]
    env["GIT_SSH_COMMAND"] = shlex.join(ssh)
    return env


def _git(args: list[str], cwd: Path | None = None, env: dict | None = None) -> str:
    try:
        res = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
            env=env,
        )
        return res.stdout.strip()
    except subprocess.CalledProcessError as e:
        raise BackendFailure(f"Git error: {(e.stderr or '').strip() or e}") from e
    except FileNotFoundError as e:
        raise BackendFailure("Git executable not found on PATH.") from e


class GitRepo:
    """A wrapper around the Git command-line interface for the mirror repository.

    This is the only place homesync touches git. The mirror directory is the
    working tree, and every failure surfaces as :class:`BackendFailure`.

    Attributes:
        path (Path): The file system path to the repository root.
        ssh_key (Path | None): Private key used for network operations.
        user_name (str): Commit author name, empty to defer to git config.
        user_email (str): Commit author email, empty to defer to git config.
    """

    def __init__(
        self,
        path: Path,
        ssh_key: Path | None = None,
        user_name: str = "",
        user_email: str = "",
    ):
        """Initializes the GitRepo instance.

        Raises:
            BackendFailure: If the specified path does not contain a .git directory.
        """
        self.path = path
        self.ssh_key = ssh_key
        self.user_name = user_name
        self.user_email = user_email
        if not (self.path / ".git").exists():
            raise BackendFailure(f"Not a git repository: {self.path}")

    @classmethod
    def init(cls, path: Path, branch: str, **kwargs) -> "GitRepo":
        """Creates a new, empty repository whose initial branch is ``branch``."""
        path.mkdir(parents=True, exist_ok=True)
        _git(["init", "--quiet", str(path)])
        _git(["symbolic-ref", "HEAD", f"refs/heads/{branch}"], cwd=path)
        return cls(path, **kwargs)

    @classmethod
    def clone(
        cls, remote: RemoteRef, path: Path, ssh_key: Path | None = None, **kwargs
    ) -> "GitRepo":
        """Clones the remote branch into ``path``.

        Raises:
            BackendFailure: If the clone fails (unreachable remote, bad URL).
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        _git(
            [
                "clone",
                "--quiet",
                "--origin",
                remote.name,
                "--branch",
                remote.branch,
                remote.url,
                str(path),
            ],
            env=_network_env(ssh_key),
        )
        return cls(path, ssh_key=ssh_key, **kwargs)

    def _run(self, args: list[str], network: bool = False) -> str:
        """Executes a Git command within the repository context.

        Args:
            args (list[str]): A list of arguments to pass to the git command.
            network (bool, optional): Whether the command contacts the remote,
                                      in which case the SSH settings apply.

        Returns:
            str: The stripped stdout of the command.

        Raises:
            BackendFailure: If the git command returns a non-zero exit code.
        """
        env = _network_env(self.ssh_key) if network else None
        return _git(args, cwd=self.path, env=env)

    def _succeeds(self, args: list[str]) -> bool:
        """Runs a predicate-style git command, mapping its exit code to a bool."""
        res = subprocess.run(["git", *args], cwd=self.path, capture_output=True)
        return res.returncode == 0

    def current_branch(self) -> str:
        """Retrieves the name of the currently checked-out branch."""
        return self._run(["branch", "--show-current"])

    def rev_parse(self, rev: str) -> str | None:
        """Resolves a revision to a full SHA-1 hash, or None if it does not exist."""
        try:
            return self._run(["rev-parse", "--verify", "--quiet", rev])
        except BackendFailure as e:
            logger.debug(f"rev-parse failed for '{rev}': {e}")
            return None

    def stage_path(self, path: Path) -> None:
        """Stages a path for the next commit, including its deletion."""
        rel = path.relative_to(self.path) if path.is_absolute() else path
        self._run(["add", "--all", "--", str(rel)])

    def staged_paths(self) -> list[str]:
        """Lists the paths staged for the next commit."""
        output = self._run(["diff", "--cached", "--name-only"])
        return output.splitlines() if output else []

    def has_staged_changes(self) -> bool:
        return bool(self.staged_paths())

    def commit(self, message: str) -> None:
        """Creates a new commit from the staged changes."""
        identity = []
        if self.user_name:
            identity += ["-c", f"user.name={self.user_name}"]
        if self.user_email:
            identity += ["-c", f"user.email={self.user_email}"]
        self._run([*identity, "commit", "--quiet", "-m", message])

    def ensure_remote(self, remote: RemoteRef) -> None:
        """Registers or updates the remote URL. A blank URL is left alone."""
        if not remote.url:
            return
        try:
            current = self._run(["remote", "get-url", remote.name])
        except BackendFailure:
            self._run(["remote", "add", remote.name, remote.url])
            return
        if current != remote.url:
            logger.info(f"Updating remote '{remote.name}' to {remote.url}.")
            self._run(["remote", "set-url", remote.name, remote.url])

    def remote_has_branch(self, remote: RemoteRef) -> bool:
        output = self._run(
            ["ls-remote", "--heads", remote.name, remote.branch], network=True
        )
        return bool(output)

    def push(self, remote: RemoteRef) -> None:
        """Pushes HEAD to the remote branch."""
        self._run(
            ["push", "--quiet", remote.name, f"HEAD:refs/heads/{remote.branch}"],
            network=True,
        )

    def pull(self, remote: RemoteRef) -> PullResult:
        """Fetches the remote branch and fast-forwards onto it when possible.

        Divergent histories are reported as ``CONFLICT`` and the working tree
        is left untouched.

        Raises:
            BackendFailure: If fetching or merging fails.
        """
        if not self.remote_has_branch(remote):
            logger.info(f"Remote branch {remote.tracking_branch} does not exist yet.")
            return PullResult.UP_TO_DATE

        self._run(["fetch", "--quiet", remote.name, remote.branch], network=True)
        incoming = self.rev_parse("FETCH_HEAD")
        local = self.rev_parse("HEAD")

        if incoming is None or incoming == local:
            return PullResult.UP_TO_DATE
        if local is not None and self._succeeds(
            ["merge-base", "--is-ancestor", incoming, local]
        ):
            return PullResult.UP_TO_DATE
        if local is not None and not self._succeeds(
            ["merge-base", "--is-ancestor", local, incoming]
        ):
            return PullResult.CONFLICT

        self._run(["merge", "--ff-only", "--quiet", incoming])
        return PullResult.FAST_FORWARDED
