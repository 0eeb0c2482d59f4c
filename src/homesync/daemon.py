import atexit
import logging
import os
import signal
import sys
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path
from types import FrameType

from .config import Config
from .constants import APP_NAME, LOG_FILE, PID_FILE
from .engine import OutcomeStatus, SyncEngine
from .errors import BackendFailure, ConfigError, HomesyncError
from .package import PackageModel
from .watcher import ChangeEvent, ReloadEvent, Watcher

logger = logging.getLogger(APP_NAME)
logger.setLevel(logging.INFO)


def setup_logging(interactive: bool, max_log_size: int = 5 * 1024 * 1024) -> None:
    """Configures the logging subsystem.

    Args:
        interactive (bool): If True, only warnings go to stderr; user-facing
                            output is left to the CLI. If False, logs go to
                            stderr and to a rotating file.
        max_log_size (int): Bytes before the daemon log file is rotated.
    """
    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S"
    )

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    # Always log to stderr (captured by systemd/launchd).
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    if interactive:
        stream_handler.setLevel(logging.WARNING)
    logger.addHandler(stream_handler)

    if not interactive:
        LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=max_log_size,
            backupCount=5,
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


def read_pid(pid_file: Path = PID_FILE) -> int | None:
    """Returns the pid of a running daemon, or None if none is running."""
    try:
        pid = int(pid_file.read_text().strip())
        os.kill(pid, 0)
    except (OSError, ValueError):
        return None
    return pid


def write_pid_file(pid_file: Path = PID_FILE) -> None:
    """Records this process as the running daemon.

    Raises:
        HomesyncError: If another daemon is already running.
    """
    if (other := read_pid(pid_file)) is not None and other != os.getpid():
        raise HomesyncError(f"Daemon already running (pid {other}).")
    pid_file.parent.mkdir(parents=True, exist_ok=True)
    pid_file.write_text(str(os.getpid()))
    atexit.register(lambda: pid_file.unlink(missing_ok=True))


class Daemon:
    """Stages tracked packages whenever they change on disk.

    The watcher is the only producer and this loop the only consumer of change
    events, so a package's mirror entry is never mutated concurrently.

    Attributes:
        config (Config): The loaded configuration generation.
        engine (SyncEngine): The engine for that generation.
        watcher (Watcher): The change notification source.
        stop_event (threading.Event): Set to request a graceful shutdown.
    """

    def __init__(
        self, config: Config, engine: SyncEngine, watcher: Watcher | None = None
    ):
        self.config = config
        self.engine = engine
        self.watcher = watcher or Watcher(
            engine.model,
            config_path=config.path,
            debounce=config.daemon.debounce,
            poll_interval=config.daemon.poll_interval,
        )
        self.stop_event = threading.Event()

    def request_stop(
        self, _signum: int | None = None, _frame: FrameType | None = None
    ) -> None:
        if not self.stop_event.is_set():
            logger.info("Shutdown requested; finishing current package.")
        self.stop_event.set()

    def run(self) -> None:
        """Runs until :meth:`request_stop` is called."""
        logger.info(f"Daemon started for {self.config.local_path}")
        try:
            # Subscribe first so edits made during the initial stage are seen.
            events = self.watcher.start(self.stop_event)
            try:
                self._stage(None)
            except BackendFailure as e:
                logger.error(f"BACKEND ERROR: {e}")
            for event in events:
                self.handle(event)
        finally:
            self.watcher.stop()
            logger.info("Daemon stopped.")

    def handle(self, event: ChangeEvent | ReloadEvent) -> None:
        """Processes one event from the watcher."""
        try:
            if isinstance(event, ReloadEvent):
                self._reload(event)
            else:
                logger.debug(f"Change detected in {event.package}")
                self._stage([event.package])
        except BackendFailure as e:
            logger.error(f"BACKEND ERROR: {e}")
        except Exception:
            logger.exception(f"LOOP ERROR {event}")

    def _stage(self, names: list[str] | None) -> None:
        report = self.engine.stage(names, stop=self.stop_event)
        for outcome in report.failures:
            logger.error(f"STAGE FAILED {outcome.name}: {outcome.detail}")
        for name in report.by_status(OutcomeStatus.SKIPPED):
            logger.debug(f"SKIPPED {name}: unresolved.")

    def _reload(self, event: ReloadEvent) -> None:
        """Rebuilds the package generation from the changed config file.

        A missing or invalid config keeps the last loaded state.
        """
        try:
            config = Config.load(event.path)
            model = PackageModel.from_config(config)
            engine = SyncEngine.from_config(config, model)
        except (ConfigError, BackendFailure) as e:
            logger.warning(f"Config reload failed, continuing with last state: {e}")
            return

        self.config = config
        self.engine = engine
        self.watcher.update(model)
        logger.info(f"RELOADED configuration from {event.path}")
        self._stage(None)


def main(config_path: Path | None = None) -> None:
    """The daemon entry point."""
    try:
        config = Config.load(config_path)
    except ConfigError as e:
        setup_logging(interactive=False)
        logger.critical(f"FATAL: {e}")
        sys.exit(1)

    setup_logging(interactive=False, max_log_size=config.limits.max_log_size)

    try:
        engine = SyncEngine.from_config(config)
        write_pid_file()
    except HomesyncError as e:
        logger.critical(f"FATAL: {e}")
        sys.exit(1)

    daemon = Daemon(config, engine)
    signal.signal(signal.SIGTERM, daemon.request_stop)
    signal.signal(signal.SIGINT, daemon.request_stop)
    daemon.run()


if __name__ == "__main__":
    main()
