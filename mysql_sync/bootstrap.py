import json
import time
from typing import List, Optional

from pydantic import ValidationError

from .config import SyncConfiguration
from .errors import ConfigurationError, SyncError, TargetUnavailableError
from .logger import get_logger
from .runner import Command, ProcessRunner
from .schemas import UserGrant
from .target import TargetEndpoint, get_target_endpoint, quote_identifier, quote_string

logger = get_logger(__name__)

REQUIRED_TOOLS = ("docker", "mysqldump", "mysql", "gzip", "gunzip")
READY_RETRIES = 30
READY_INTERVAL = 2.0


def parse_users(users_json: str) -> List[UserGrant]:
    """Parse MYSQL_USERS_JSON: a JSON list of {user, password, host, privileges[, database]}."""
    try:
        raw_users = json.loads(users_json or "[]")
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"MYSQL_USERS_JSON is not valid JSON: {e}")
    if not isinstance(raw_users, list):
        raise ConfigurationError("MYSQL_USERS_JSON must be a JSON list")

    users = []
    for index, raw_user in enumerate(raw_users):
        try:
            users.append(UserGrant.model_validate(raw_user))
        except ValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) or "entry" for err in e.errors())
            raise ConfigurationError(f"MYSQL_USERS_JSON entry {index} is invalid ({fields})")
    return users


def user_statements(user: UserGrant, default_database: Optional[str]) -> str:
    """SQL that creates and grants one user; safe to run any number of times."""
    account = f"{quote_string(user.user)}@{quote_string(user.host)}"
    database = user.database or default_database
    scope = f"{quote_identifier(database)}.*" if database else "*.*"
    return (
        f"CREATE USER IF NOT EXISTS {account} IDENTIFIED BY {quote_string(user.password)};\n"
        f"GRANT {user.privileges} ON {scope} TO {account};\n"
        "FLUSH PRIVILEGES;\n"
    )


class Bootstrapper:
    """Bring up the local target and provision its users, the way a fresh host needs it."""

    def __init__(self, config: SyncConfiguration, runner: Optional[ProcessRunner] = None,
                 retries: int = READY_RETRIES, interval: float = READY_INTERVAL):
        self.config = config
        self.runner = runner or ProcessRunner()
        self.retries = retries
        self.interval = interval
        self.target: TargetEndpoint = get_target_endpoint(config.target)

    def check_dependencies(self) -> None:
        logger.info("Checking dependencies …")
        missing = [tool for tool in REQUIRED_TOOLS if not self.runner.which(tool)]
        if missing:
            raise ConfigurationError(f"Required command not found: {', '.join(missing)}")
        logger.info("All dependencies OK.")

    def compose_command(self) -> List[str]:
        if self.runner.run(Command(["docker", "compose", "version"])).ok:
            return ["docker", "compose"]
        if self.runner.which("docker-compose"):
            return ["docker-compose"]
        raise ConfigurationError("Neither `docker compose` nor docker-compose is available")

    def start_target(self) -> None:
        service = self.config.target.container
        if not service:
            logger.info("Target is not container-managed; skipping container start.")
            return
        logger.info(f"Starting local MySQL container '{service}' …")
        result = self.runner.run(Command([
            *self.compose_command(), "-f", self.config.compose_file, "up", "-d", service,
        ]))
        if not result.ok:
            logger.error(result.stderr_text.strip())
            raise TargetUnavailableError(
                f"docker compose could not start '{service}'. Check: docker compose logs {service}",
                step="bootstrap",
            )

    def wait_until_ready(self) -> None:
        logger.info("Waiting for MySQL to be ready …")
        for attempt in range(1, self.retries + 1):
            if self.target.is_available(self.runner):
                logger.info("MySQL is ready.")
                return
            logger.debug(f"Target not ready (attempt {attempt}/{self.retries})")
            if attempt < self.retries:
                time.sleep(self.interval)
        raise TargetUnavailableError(
            f"MySQL at {self.target.identity} did not become ready after {self.retries} attempts",
            step="bootstrap",
        )

    def provision(self) -> int:
        """Create the target database and users; re-running changes nothing."""
        users = parse_users(self.config.users_json)
        if self.config.target.database:
            self.target.ensure_database(self.runner, self.config.target.database)

        logger.info(f"Found {len(users)} user(s) to create.")
        for user in users:
            logger.info(f"  → '{user.user}'@'{user.host}'  [{user.privileges}]")
            self.target.execute(self.runner, user_statements(user, self.config.target.database), step="bootstrap")
        logger.info("Users created.")
        return len(users)

    def run(self, start: bool = True) -> int:
        # Validate users before touching anything
        parse_users(self.config.users_json)
        self.check_dependencies()
        if start:
            self.start_target()
        self.wait_until_ready()
        try:
            return self.provision()
        except SyncError as e:
            e.step = "bootstrap"
            raise
