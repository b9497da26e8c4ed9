# tests/conftest.py
import gzip
import re
from datetime import datetime, timedelta

import pytest

from mysql_sync.config import build_configuration
from mysql_sync.runner import ProcessResult, ProcessRunner

SOURCE_HOST = "prod-db.example.com"
SOURCE_PASSWORD = "s3cr3t-source-pw"
ROOT_PASSWORD = "r00t-target-pw"
SYSTEM_SCHEMAS = ["information_schema", "mysql", "performance_schema", "sys"]


class FakeProcess:
    def __init__(self, pid=4242):
        self.pid = pid
        self.returncode = None
        self.stopped = False

    def poll(self):
        return self.returncode


class FakeMySQL:
    """In-memory stand-in for the source server, the local target and the docker daemon."""

    def __init__(self):
        self.source = {}
        self.target = {}
        self.users = set()
        self.grants = set()
        self.target_up = True
        self.container_running = True
        self.failures = {}
        self.hide_on_target = set()


class FakeRunner(ProcessRunner):
    """Records every command and answers it from a FakeMySQL."""

    def __init__(self, world, tools=("docker", "mysqldump", "mysql", "gzip", "gunzip")):
        super().__init__(terminate_timeout=0)
        self.world = world
        self.tools = set(tools)
        self.commands = []
        self.inputs = []
        self.spawned = []
        self.cancel_on = None
        self.terminate_during = None

    def which(self, program):
        return f"/usr/bin/{program}" if program in self.tools else None

    def run(self, command, input=None, timeout=None):
        self.commands.append(command)
        self.inputs.append(input)
        rc, out, err = self._respond(command, input or b"")
        return ProcessResult(command, rc, out, err)

    def pipeline(self, producer, consumer, stdin=None, stdout=None):
        self.commands.extend([producer, consumer])
        if self.cancel_on and self.cancel_on in (producer.program, consumer.program):
            from mysql_sync.errors import SyncCancelledError
            raise SyncCancelledError("Received SIGTERM, aborting sync")
        if self.terminate_during and self.terminate_during in (producer.program, consumer.program):
            # the scheduler shutdown handler kills the tools from another thread
            self.terminate_all()
            return ProcessResult(producer, -15, b"", b""), ProcessResult(consumer, -15, b"", b"")
        data = stdin.read() if stdin is not None else b""
        rc1, out1, err1 = self._respond(producer, data)
        rc2, out2, err2 = self._respond(consumer, out1)
        if stdout is not None and out2:
            stdout.write(out2)
        return ProcessResult(producer, rc1, b"", err1), ProcessResult(consumer, rc2, b"", err2)

    def spawn(self, command, output=None):
        self.commands.append(command)
        process = FakeProcess()
        self.spawned.append(process)
        return process

    def stop(self, process):
        if isinstance(process, FakeProcess):
            process.stopped = True
            process.returncode = -15
            return
        super().stop(process)

    # -- simulation -------------------------------------------------------

    def _unwrap_docker(self, args):
        if args[:2] == ("docker", "ps"):
            name = args[args.index("--filter") + 1].split("=", 1)[1]
            out = f"{name}\n".encode() if self.world.container_running else b""
            return None, (0, out, b"")
        if args[:3] == ("docker", "compose", "version"):
            return None, (0, b"Docker Compose version v2.24.0\n", b"")
        if args[:2] == ("docker", "compose"):
            self.world.container_running = True
            self.world.target_up = True
            return None, (0, b"", b"")
        if args[:2] == ("docker", "exec"):
            rest = list(args[2:])
            if rest and rest[0] == "-i":
                rest = rest[1:]
            assert rest[:2] == ["-e", "MYSQL_PWD"], "password must be forwarded by name"
            if not self.world.container_running:
                return None, (1, b"", b"Error response from daemon: No such container")
            return tuple(rest[3:]), None
        return args, None

    def _respond(self, command, data):
        args, answer = self._unwrap_docker(command.args)
        if answer is not None:
            return answer
        program = args[0]
        if program in self.world.failures:
            rc, err = self.world.failures[program]
            return rc, b"", err
        if program == "gzip":
            return 0, gzip.compress(data), b""
        if program == "gunzip":
            try:
                return 0, gzip.decompress(data), b""
            except OSError:
                return 1, b"", b"gzip: stdin: not in gzip format"
        if program == "mysqladmin":
            if self.world.target_up:
                return 0, b"", b""
            return 1, b"", b"mysqladmin: connect to server at '127.0.0.1' failed\nCan't connect to MySQL server"
        if program == "mysqldump":
            return 0, self._dump(args), b""
        if program == "mysql":
            if f"--host={SOURCE_HOST}" in args or "--host=127.0.0.1" in args and "--user=reader" in args:
                return self._source_query(args)
            return self._target_statements(args, data)
        return 127, b"", f"{program}: command not found".encode()

    def _dump(self, args):
        if "--databases" in args:
            names = list(args[args.index("--databases") + 1:])
            chunks = []
            for name in names:
                chunks.append(
                    f"CREATE DATABASE /*!32312 IF NOT EXISTS*/ `{name}`;\n"
                    f"USE `{name}`;\n"
                    f"-- DATA {self.world.source[name]}\n"
                )
            return "".join(chunks).encode()
        name = args[-1]
        return f"-- DATA {self.world.source[name]}\n".encode()

    def _source_query(self, args):
        names = SYSTEM_SCHEMAS + sorted(self.world.source)
        return 0, ("\n".join(names) + "\n").encode(), b""

    def _target_statements(self, args, data):
        if "--execute=SHOW DATABASES" in args:
            visible = [n for n in sorted(self.world.target) if n not in self.world.hide_on_target]
            return 0, ("\n".join(SYSTEM_SCHEMAS + visible) + "\n").encode(), b""
        if not self.world.target_up:
            return 1, b"", b"ERROR 2003 (HY000): Can't connect to MySQL server on '127.0.0.1:3306'"

        current = args[-1] if not args[-1].startswith("--") else None
        for line in data.decode().splitlines():
            created = re.match(r"CREATE DATABASE .*`(.+)`;", line)
            used = re.match(r"USE `(.+)`;", line)
            user = re.match(r"CREATE USER IF NOT EXISTS '(.+)'@'(.+)' IDENTIFIED BY", line)
            grant = re.match(r"GRANT (.+) ON (.+) TO '(.+)'@'(.+)';", line)
            if created:
                self.world.target.setdefault(created.group(1), None)
            elif used:
                current = used.group(1)
            elif line.startswith("-- DATA "):
                self.world.target[current] = line[len("-- DATA "):]
            elif user:
                self.world.users.add(user.groups())
            elif grant:
                self.world.grants.add(grant.groups())
        return 0, b"", b""


class StepClock:
    """datetime.now replacement advancing by a fixed step per call."""

    def __init__(self, start=datetime(2024, 5, 1, 10, 0, 0), step=timedelta(hours=2)):
        self.current = start - step
        self.step = step

    def __call__(self):
        self.current += self.step
        return self.current


@pytest.fixture
def world():
    return FakeMySQL()


@pytest.fixture
def runner(world):
    return FakeRunner(world)


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def settings(tmp_path):
    return {
        "SOURCE_HOST": SOURCE_HOST,
        "SOURCE_PORT": "3306",
        "SOURCE_USER": "reader",
        "SOURCE_PASSWORD": SOURCE_PASSWORD,
        "MYSQL_ROOT_PASSWORD": ROOT_PASSWORD,
        "BACKUP_DIR": str(tmp_path / "backups"),
        "LOG_DIR": str(tmp_path / "logs"),
    }


@pytest.fixture
def make_config(settings):
    def _make(**overrides):
        values = dict(settings)
        for key, value in overrides.items():
            if value is None:
                values.pop(key, None)
            else:
                values[key] = value
        return build_configuration(values)
    return _make
