# mysql_sync/source.py
import abc
import os
import socket
import time
from contextlib import contextmanager
from typing import IO, Iterator, List, Optional, Sequence

from .config import CONNECTOR_CLOUD_SQL_PROXY, SourceSettings
from .error_parser import parse_mysql_error
from .errors import ExportFailedError, NoDatabasesFoundError
from .logger import get_logger
from .runner import Command, ProcessRunner

logger = get_logger(__name__)

SYSTEM_SCHEMAS = frozenset({"information_schema", "performance_schema", "mysql", "sys"})

DUMP_OPTIONS = (
    "--single-transaction",
    "--quick",
    "--lock-tables=false",
    "--skip-add-drop-database",
    "--routines",
    "--triggers",
    "--events",
)


def filter_system_schemas(names: Sequence[str]) -> List[str]:
    """Drop engine-owned schemas (case-insensitive exact match), keeping order."""
    return [name for name in names if name and name.lower() not in SYSTEM_SCHEMAS]


class SourceEndpoint:
    """A reachable source server: knows how to list schemas and build the export command."""

    def __init__(self, settings: SourceSettings, host: str, port: int):
        self.settings = settings
        self.host = host
        self.port = port

    def __repr__(self):
        return f"SourceEndpoint({self.host}:{self.port}, user={self.settings.user})"

    def _env(self):
        # MYSQL_PWD keeps the password out of the process list
        return {"MYSQL_PWD": self.settings.password}

    def _connection_args(self) -> List[str]:
        return [
            f"--host={self.host}",
            f"--port={self.port}",
            f"--user={self.settings.user}",
        ]

    def list_databases_command(self) -> Command:
        return Command(
            ["mysql", *self._connection_args(), "--batch", "--skip-column-names", "--execute=SHOW DATABASES"],
            env=self._env(),
        )

    def dump_command(self, databases: Optional[Sequence[str]] = None) -> Command:
        """
        Export command for the configured database, or for ``databases``
        (emitting CREATE DATABASE / USE statements) in all-databases mode.
        """
        args = ["mysqldump", *self._connection_args(), *DUMP_OPTIONS]
        if databases:
            args.extend(["--databases", *databases])
        elif self.settings.database:
            args.append(self.settings.database)
        else:
            raise ValueError("dump_command needs either a configured database or an explicit list")
        return Command(args, env=self._env())

    def discover_databases(self, runner: ProcessRunner) -> List[str]:
        """List the source's user databases, excluding system schemas."""
        logger.info(f"Discovering databases on {self.host}:{self.port} …")
        result = runner.run(self.list_databases_command())
        if not result.ok:
            logger.error(f"Database discovery failed: {result.stderr_text.strip()}")
            raise ExportFailedError(
                f"Could not list databases on {self.host}:{self.port} (exit code {result.returncode})",
                step="discover",
                summary=parse_mysql_error(result.stderr_text),
            )

        all_names = [line.strip() for line in result.stdout_text.splitlines() if line.strip()]
        databases = filter_system_schemas(all_names)
        logger.debug(f"Source reported {len(all_names)} schemas: {all_names}")
        if not databases:
            raise NoDatabasesFoundError(
                f"No user databases found on {self.host}:{self.port}; "
                f"refusing to overwrite the target with an empty dump"
            )
        logger.info(f"Found {len(databases)} database(s): {', '.join(databases)}")
        return databases


class SourceConnector(abc.ABC):
    def __init__(self, settings: SourceSettings):
        self.settings = settings

    @abc.abstractmethod
    def connect(self, runner: ProcessRunner, output: Optional[IO[bytes]] = None):
        """Context manager yielding a SourceEndpoint that stays reachable inside the block."""


class DirectConnector(SourceConnector):
    @contextmanager
    def connect(self, runner: ProcessRunner, output: Optional[IO[bytes]] = None) -> Iterator[SourceEndpoint]:
        logger.info(f"Connecting directly to source {self.settings.host}:{self.settings.port}")
        yield SourceEndpoint(self.settings, self.settings.host, self.settings.port)


class CloudSqlProxyConnector(SourceConnector):
    """
    Reaches a Cloud SQL instance through a local Cloud SQL Auth Proxy.

    The proxy is started on entry and always stopped on exit, whether the
    block returns, raises, or is interrupted by a signal.
    """

    def __init__(self, settings: SourceSettings, poll_interval: float = 0.5):
        super().__init__(settings)
        self.poll_interval = poll_interval

    def _activate_service_account(self, runner: ProcessRunner) -> None:
        key_file = self.settings.credentials_file
        if key_file and os.path.isfile(key_file):
            logger.info(f"Activating service account from {key_file}")
            result = runner.run(Command(["gcloud", "auth", "activate-service-account", f"--key-file={key_file}"]))
            if not result.ok:
                raise ExportFailedError(
                    f"gcloud service account activation failed: {result.stderr_text.strip()}"
                )
        else:
            logger.info("GOOGLE_APPLICATION_CREDENTIALS not set – assuming gcloud is already authenticated.")

    def proxy_command(self, runner: ProcessRunner) -> Command:
        instance = self.settings.cloud_sql_instance
        port = self.settings.port
        # Support both v2 (cloud-sql-proxy) and v1 (cloud_sql_proxy) binaries
        if runner.which("cloud-sql-proxy"):
            return Command(["cloud-sql-proxy", "--address", "127.0.0.1", "--port", str(port), instance])
        if runner.which("cloud_sql_proxy"):
            return Command(["cloud_sql_proxy", f"-instances={instance}=tcp:127.0.0.1:{port}"])
        raise ExportFailedError("Neither cloud-sql-proxy nor cloud_sql_proxy found in PATH.")

    def _port_open(self) -> bool:
        try:
            with socket.create_connection(("127.0.0.1", self.settings.port), timeout=self.poll_interval):
                return True
        except OSError:
            return False

    def _wait_until_ready(self, process) -> None:
        deadline = time.monotonic() + self.settings.proxy_wait_seconds
        while True:
            if process.poll() is not None:
                raise ExportFailedError(f"Cloud SQL Auth Proxy exited early with code {process.returncode}")
            if self._port_open():
                return
            if time.monotonic() >= deadline:
                raise ExportFailedError(
                    f"Cloud SQL Auth Proxy did not accept connections on 127.0.0.1:{self.settings.port} "
                    f"within {self.settings.proxy_wait_seconds}s"
                )
            time.sleep(self.poll_interval)

    @contextmanager
    def connect(self, runner: ProcessRunner, output: Optional[IO[bytes]] = None) -> Iterator[SourceEndpoint]:
        self._activate_service_account(runner)
        command = self.proxy_command(runner)
        logger.info(f"Starting Cloud SQL Auth Proxy on 127.0.0.1:{self.settings.port} …")
        process = runner.spawn(command, output=output)
        try:
            logger.info(f"Proxy PID: {process.pid} – waiting for it to be ready …")
            self._wait_until_ready(process)
            yield SourceEndpoint(self.settings, "127.0.0.1", self.settings.port)
        finally:
            logger.info(f"Stopping Cloud SQL Auth Proxy (PID {process.pid}) …")
            runner.stop(process)


def get_source_connector(settings: SourceSettings) -> SourceConnector:
    if settings.connector == CONNECTOR_CLOUD_SQL_PROXY:
        return CloudSqlProxyConnector(settings)
    return DirectConnector(settings)
