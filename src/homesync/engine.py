import datetime
import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .config import Config, RemoteRef
from .constants import APP_NAME
from .errors import (
    AlreadyExists,
    HomesyncError,
    IoFailure,
    OverwriteRefused,
    ResolutionFailure,
)
from .git_wrapper import GitRepo, PullResult
from .mirror import Mirror
from .package import Package, PackageModel
from .path import expand

logger = logging.getLogger(APP_NAME)


class OutcomeStatus(Enum):
    """Per-package result of an engine operation."""

    STAGED = "staged"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    REMOVED = "removed"
    APPLIED = "applied"
    OVERWRITE_REFUSED = "overwrite refused"
    FAILED = "failed"

    @property
    def is_failure(self) -> bool:
        return self in (OutcomeStatus.OVERWRITE_REFUSED, OutcomeStatus.FAILED)


@dataclass(frozen=True)
class PackageOutcome:
    """What happened to one package during an operation.

    Attributes:
        name (str): Package name.
        status (OutcomeStatus): The result.
        path (Path | None): The on-disk path involved, if any.
        error (HomesyncError | None): The per-package error, for failures.
    """

    name: str
    status: OutcomeStatus
    path: Path | None = None
    error: HomesyncError | None = None

    @property
    def detail(self) -> str:
        if self.error is not None:
            return str(self.error)
        return str(self.path) if self.path is not None else ""


@dataclass
class OperationReport:
    """Collected per-package outcomes of one operation."""

    outcomes: list[PackageOutcome] = field(default_factory=list)

    def add(self, outcome: PackageOutcome) -> None:
        self.outcomes.append(outcome)

    @property
    def failures(self) -> list[PackageOutcome]:
        return [o for o in self.outcomes if o.status.is_failure]

    @property
    def ok(self) -> bool:
        return not self.failures

    def by_status(self, status: OutcomeStatus) -> list[str]:
        return [o.name for o in self.outcomes if o.status is status]


@dataclass
class PushResult:
    """Outcome of ``push``.

    Attributes:
        committed (list[str]): Mirror paths included in the new commit.
        stage_report (OperationReport | None): Report of the pre-push stage.
    """

    committed: list[str] = field(default_factory=list)
    stage_report: OperationReport | None = None

    @property
    def ok(self) -> bool:
        return self.stage_report is None or self.stage_report.ok


@dataclass
class PullOutcome:
    """Outcome of ``pull``.

    Attributes:
        result (PullResult): How the mirror was reconciled with the remote.
        apply_report (OperationReport | None): Report of the post-pull apply.
    """

    result: PullResult
    apply_report: OperationReport | None = None

    @property
    def ok(self) -> bool:
        if self.result is PullResult.CONFLICT:
            return False
        return self.apply_report is None or self.apply_report.ok


def commit_message(paths: list[str]) -> str:
    """Generates the commit message for a set of staged mirror paths."""
    timestamp = datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    if not paths:
        return f"Sync {timestamp}"
    shown = ", ".join(paths[:5])
    if len(paths) > 5:
        shown += f" (+{len(paths) - 5} more)"
    return f"Sync {shown} ({timestamp})"


class SyncEngine:
    """Coordinates path resolution, the mirror, and the git backend.

    Every operation holds the mirror lock for its whole duration. Per-package
    failures are collected into an :class:`OperationReport`; a
    :class:`~homesync.errors.BackendFailure` aborts the operation.

    Attributes:
        model (PackageModel): The package generation operated on.
        mirror (Mirror): The mirror directory.
        repo (GitRepo): The version-control backend.
        remote (RemoteRef): The remote endpoint.
    """

    def __init__(
        self, model: PackageModel, mirror: Mirror, repo: GitRepo, remote: RemoteRef
    ):
        self.model = model
        self.mirror = mirror
        self.repo = repo
        self.remote = remote

    @classmethod
    def from_config(
        cls, config: Config, model: PackageModel | None = None
    ) -> "SyncEngine":
        """Wires an engine to the mirror repository named by the configuration.

        Raises:
            ConfigError: If the package declarations are invalid.
            BackendFailure: If the mirror is not a git repository (run ``init``).
        """
        if model is None:
            model = PackageModel.from_config(config)
        root = config.local_path
        repo = GitRepo(
            root,
            ssh_key=expand(config.ssh.private) if config.ssh.private else None,
            user_name=config.user.name,
            user_email=config.user.email,
        )
        return cls(model, Mirror(root), repo, config.repos.remote)

    def _lookup(
        self, names: Iterable[str] | None, report: OperationReport
    ) -> list[Package]:
        """Selects target packages, reporting unknown names as failures."""
        if names is None:
            return list(self.model)
        names = list(dict.fromkeys(names))
        for name in names:
            if name not in self.model:
                report.add(
                    PackageOutcome(
                        name,
                        OutcomeStatus.FAILED,
                        error=HomesyncError(f"Unknown package '{name}'."),
                    )
                )
        return self.model.select(names)

    # --- Stage ---

    def stage(
        self, names: Iterable[str] | None = None, stop: threading.Event | None = None
    ) -> OperationReport:
        """Captures changed packages into the mirror and stages them with git.

        Args:
            names: Packages to stage. None stages every package and also
                removes mirror entries no package refers to anymore.
            stop: Checked between packages; once set, remaining packages are
                left untouched.

        Returns:
            OperationReport: One outcome per package.

        Raises:
            BackendFailure: If git refuses to stage a path.
        """
        report = OperationReport()
        with self.mirror.lock():
            # Another process may have rewritten the mirror since the last call.
            self.mirror.refresh()
            for package in self._lookup(names, report):
                if stop is not None and stop.is_set():
                    logger.info("Stop requested; leaving remaining packages unstaged.")
                    return report
                report.add(self._stage_one(package))

            if names is None:
                self._remove_stale(report)

        staged = report.by_status(OutcomeStatus.STAGED)
        if staged:
            logger.info(f"STAGED {', '.join(staged)}")
        return report

    def _stage_one(self, package: Package) -> PackageOutcome:
        resolution = self.model.resolver.resolve(package)
        if resolution.path is None:
            logger.debug(f"SKIPPED {package.name}: no candidate path exists.")
            missing = ResolutionFailure(
                f"No candidate path of '{package.name}' exists."
            )
            return PackageOutcome(package.name, OutcomeStatus.SKIPPED, error=missing)

        try:
            if not self.mirror.diff_against_disk(package, resolution.path):
                return PackageOutcome(
                    package.name, OutcomeStatus.UNCHANGED, resolution.path
                )
            entry = self.mirror.capture(package, resolution.path)
        except IoFailure as e:
            logger.error(f"STAGE ERROR {package.name}: {e}")
            return PackageOutcome(
                package.name, OutcomeStatus.FAILED, resolution.path, e
            )

        self.repo.stage_path(entry.path)
        return PackageOutcome(package.name, OutcomeStatus.STAGED, resolution.path)

    def _remove_stale(self, report: OperationReport) -> None:
        for name in self.mirror.stale_entries(self.model):
            try:
                self.mirror.remove(name)
            except IoFailure as e:
                logger.error(f"REMOVE ERROR {name}: {e}")
                report.add(PackageOutcome(name, OutcomeStatus.FAILED, error=e))
                continue
            self.repo.stage_path(self.mirror.path_for(name))
            logger.info(f"REMOVED {name}: no longer configured.")
            report.add(PackageOutcome(name, OutcomeStatus.REMOVED))

    # --- Push / Pull ---

    def push(self, stage_all: bool = False) -> PushResult:
        """Commits staged mirror changes and pushes them to the remote.

        Args:
            stage_all (bool): Stage every package before committing.

        Raises:
            BackendFailure: If committing or pushing fails. Nothing is retried.
        """
        result = PushResult()
        if stage_all:
            result.stage_report = self.stage()

        with self.mirror.lock():
            staged = self.repo.staged_paths()
            if staged:
                self.repo.commit(commit_message(staged))
                result.committed = staged
                logger.info(f"COMMITTED {', '.join(staged)}")
            self.repo.push(self.remote)
        logger.info(f"PUSHED to {self.remote.tracking_branch}")
        return result

    def pull(self, apply_all: bool = False, overwrite: bool = False) -> PullOutcome:
        """Fast-forwards the mirror onto the remote branch.

        Divergent histories come back as ``PullResult.CONFLICT`` and leave the
        mirror untouched. After a successful pull the mirror fingerprints are
        recomputed, since git rewrote the working tree.

        Args:
            apply_all (bool): Apply every package after a successful pull.
            overwrite (bool): Overwrite policy for that apply.

        Raises:
            BackendFailure: If fetching or merging fails.
        """
        with self.mirror.lock():
            result = self.repo.pull(self.remote)
            if result is not PullResult.CONFLICT:
                self.mirror.refresh()
        logger.info(f"PULLED {self.remote.tracking_branch}: {result.value}")

        outcome = PullOutcome(result)
        if apply_all and result is not PullResult.CONFLICT:
            outcome.apply_report = self.apply(overwrite=overwrite)
        return outcome

    # --- Apply ---

    def apply(
        self, names: Iterable[str] | None = None, overwrite: bool = False
    ) -> OperationReport:
        """Writes mirrored content back onto disk.

        Each package goes to its resolved path or, if none of its candidates
        exists, to its first candidate.

        Args:
            names: Packages to apply. None applies every package.
            overwrite (bool): Whether existing files may be replaced.

        Returns:
            OperationReport: One outcome per package.
        """
        report = OperationReport()
        with self.mirror.lock():
            for package in self._lookup(names, report):
                report.add(self._apply_one(package, overwrite))

        applied = report.by_status(OutcomeStatus.APPLIED)
        if applied:
            logger.info(f"APPLIED {', '.join(applied)}")
        return report

    def _apply_one(self, package: Package, overwrite: bool) -> PackageOutcome:
        resolution = self.model.resolver.resolve(package)
        target = resolution.path or self.model.resolver.first_candidate(package)
        try:
            self.mirror.materialize(package, target, overwrite=overwrite)
        except AlreadyExists as e:
            refused = OverwriteRefused(f"{e} Use --overwrite to replace it.")
            return PackageOutcome(
                package.name, OutcomeStatus.OVERWRITE_REFUSED, target, refused
            )
        except IoFailure as e:
            logger.error(f"APPLY ERROR {package.name}: {e}")
            return PackageOutcome(package.name, OutcomeStatus.FAILED, target, e)
        return PackageOutcome(package.name, OutcomeStatus.APPLIED, target)
