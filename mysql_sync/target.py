# mysql_sync/target.py
import abc
from typing import List, Optional, Sequence

from .config import TargetSettings
from .error_parser import parse_mysql_error
from .errors import ImportFailedError, TargetUnavailableError
from .logger import get_logger
from .runner import Command, ProcessRunner
from .source import filter_system_schemas

logger = get_logger(__name__)

BOOTSTRAP_HINT = "Start it first, e.g. with `mysql-sync bootstrap`."


def quote_identifier(name: str) -> str:
    return "`" + name.replace("`", "``") + "`"


def quote_string(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "''") + "'"


class TargetEndpoint(abc.ABC):
    """The locally managed MySQL instance that receives the dump."""

    def __init__(self, settings: TargetSettings):
        self.settings = settings

    def _env(self):
        return {"MYSQL_PWD": self.settings.root_password}

    @property
    @abc.abstractmethod
    def identity(self) -> str:
        """Stable name of the instance, used to key the run lock."""

    @abc.abstractmethod
    def _wrap(self, args: Sequence[str], interactive: bool = False) -> List[str]:
        pass

    @abc.abstractmethod
    def _client_args(self) -> List[str]:
        pass

    def describe(self) -> str:
        database = self.settings.database or "(all databases)"
        return f"{self.identity}/{database}"

    def mysql_command(self, database: Optional[str] = None, extra: Sequence[str] = ()) -> Command:
        args = ["mysql", *self._client_args(), *extra]
        if database:
            args.append(database)
        return Command(self._wrap(args, interactive=True), env=self._env())

    def ping_command(self) -> Command:
        return Command(self._wrap(["mysqladmin", *self._client_args(), "ping", "--silent"]), env=self._env())

    def import_command(self, database: Optional[str] = None) -> Command:
        return self.mysql_command(database)

    def is_available(self, runner: ProcessRunner) -> bool:
        result = runner.run(self.ping_command())
        if not result.ok:
            logger.debug(f"Target ping failed: {result.stderr_text.strip()}")
        return result.ok

    def check_available(self, runner: ProcessRunner) -> None:
        if not self.is_available(runner):
            raise TargetUnavailableError(f"Local MySQL at {self.identity} is not running. {BOOTSTRAP_HINT}")
        logger.info(f"Target {self.identity} is up.")

    def execute(self, runner: ProcessRunner, sql: str, step: str = "import") -> None:
        """Run SQL statements on the target, sending them on stdin."""
        result = runner.run(self.mysql_command(), input=sql.encode("utf-8"))
        if not result.ok:
            logger.error(f"Target rejected statement: {result.stderr_text.strip()}")
            raise ImportFailedError(
                f"Statement failed on {self.identity} (exit code {result.returncode})",
                step=step,
                summary=parse_mysql_error(result.stderr_text),
            )

    def ensure_database(self, runner: ProcessRunner, name: str) -> None:
        logger.info(f"Creating database '{name}' if not exists")
        self.execute(runner, f"CREATE DATABASE IF NOT EXISTS {quote_identifier(name)};\n")

    def list_databases(self, runner: ProcessRunner) -> List[str]:
        result = runner.run(self.mysql_command(extra=["--batch", "--skip-column-names", "--execute=SHOW DATABASES"]))
        if not result.ok:
            raise ImportFailedError(
                f"Could not list databases on {self.identity}",
                step="verify",
                summary=parse_mysql_error(result.stderr_text),
            )
        names = [line.strip() for line in result.stdout_text.splitlines() if line.strip()]
        return filter_system_schemas(names)


class LocalTarget(TargetEndpoint):
    """Target reached over TCP, e.g. a container publishing 3306 on the host."""

    @property
    def identity(self) -> str:
        return f"{self.settings.host}:{self.settings.port}"

    def _client_args(self) -> List[str]:
        return [
            f"--host={self.settings.host}",
            f"--port={self.settings.port}",
            "--user=root",
        ]

    def _wrap(self, args: Sequence[str], interactive: bool = False) -> List[str]:
        return list(args)


class ContainerTarget(TargetEndpoint):
    """Target running in a Docker container; clients run inside it with ``docker exec``."""

    def __init__(self, settings: TargetSettings):
        super().__init__(settings)
        self.container_name = settings.container

    @property
    def identity(self) -> str:
        return f"container:{self.settings.container}"

    def _client_args(self) -> List[str]:
        return ["--user=root"]

    def _wrap(self, args: Sequence[str], interactive: bool = False) -> List[str]:
        # `-e MYSQL_PWD` without a value forwards the variable from the docker
        # client's environment, so the password never reaches argv
        prefix = ["docker", "exec"]
        if interactive:
            prefix.append("-i")
        return [*prefix, "-e", "MYSQL_PWD", self.container_name, *args]

    def find_container(self, runner: ProcessRunner) -> Optional[str]:
        result = runner.run(Command([
            "docker", "ps",
            "--filter", f"name={self.settings.container}",
            "--format", "{{.Names}}",
        ]))
        if not result.ok:
            logger.error(f"docker ps failed: {result.stderr_text.strip()}")
            return None
        names = [line.strip() for line in result.stdout_text.splitlines() if line.strip()]
        # the name filter matches substrings, prefer the exact name
        if self.settings.container in names:
            return self.settings.container
        return names[0] if names else None

    def is_available(self, runner: ProcessRunner) -> bool:
        name = self.find_container(runner)
        if not name:
            logger.error(f"Local MySQL container ({self.settings.container}) is not running.")
            return False
        self.container_name = name
        return super().is_available(runner)


def get_target_endpoint(settings: TargetSettings) -> TargetEndpoint:
    if settings.container:
        return ContainerTarget(settings)
    return LocalTarget(settings)
