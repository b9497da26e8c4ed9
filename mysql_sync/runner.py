import os
import shutil
import subprocess
import tempfile
import threading
from dataclasses import dataclass, field
from typing import Dict, IO, List, Optional, Tuple

from .logger import get_logger

logger = get_logger(__name__)

TERMINATE_TIMEOUT = 5.0


@dataclass(frozen=True)
class Command:
    """A program invocation plus the variables overlaid on the inherited environment."""

    args: Tuple[str, ...]
    env: Dict[str, str] = field(default_factory=dict, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "args", tuple(str(a) for a in self.args))
        object.__setattr__(self, "env", dict(self.env))

    @property
    def program(self) -> str:
        return self.args[0]

    def display(self) -> str:
        # env overlay values may hold credentials, only their names are shown
        names = "".join(f"{name}=*** " for name in sorted(self.env))
        return f"{names}{' '.join(self.args)}"


@dataclass
class ProcessResult:
    command: Command
    returncode: int
    stdout: bytes = b""
    stderr: bytes = b""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def stdout_text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")


class ProcessRunner:
    """
    Single seam through which every external tool is started.

    Every started process is tracked until it exits so that a cancelled run
    can terminate whatever is still in flight.
    """

    def __init__(self, terminate_timeout: float = TERMINATE_TIMEOUT):
        self.terminate_timeout = terminate_timeout
        self._active: List[subprocess.Popen] = []
        self._lock = threading.Lock()
        self._cancelled = threading.Event()

    @staticmethod
    def which(program: str) -> Optional[str]:
        return shutil.which(program)

    def _environment(self, command: Command) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(command.env)
        return env

    def _track(self, process: subprocess.Popen) -> subprocess.Popen:
        with self._lock:
            self._active.append(process)
        return process

    def _untrack(self, process: subprocess.Popen) -> None:
        with self._lock:
            if process in self._active:
                self._active.remove(process)

    def run(self, command: Command, input: Optional[bytes] = None, timeout: Optional[float] = None) -> ProcessResult:
        """Run a command to completion, capturing stdout and stderr."""
        logger.debug(f"Executing: {command.display()}")
        process = self._track(subprocess.Popen(
            command.args,
            env=self._environment(command),
            stdin=subprocess.PIPE if input is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        ))
        try:
            stdout, stderr = process.communicate(input=input, timeout=timeout)
        except subprocess.TimeoutExpired:
            self.stop(process)
            stdout, stderr = b"", f"{command.program} timed out after {timeout}s".encode()
            return ProcessResult(command, -1, stdout, stderr)
        finally:
            if process.poll() is None:
                self.stop(process)
            self._untrack(process)
        return ProcessResult(command, process.returncode, stdout or b"", stderr or b"")

    def pipeline(
        self,
        producer: Command,
        consumer: Command,
        stdin: Optional[IO[bytes]] = None,
        stdout: Optional[IO[bytes]] = None,
    ) -> Tuple[ProcessResult, ProcessResult]:
        """
        Run ``producer | consumer``.

        The producer reads from ``stdin`` (or nothing) and the consumer writes
        to ``stdout`` (or discards its output). Data flows between the two
        processes through an OS pipe and is never buffered in memory here.
        """
        logger.debug(f"Executing pipeline: {producer.display()} | {consumer.display()}")
        with tempfile.TemporaryFile() as p1_err, tempfile.TemporaryFile() as p2_err:
            p1 = self._track(subprocess.Popen(
                producer.args,
                env=self._environment(producer),
                stdin=stdin if stdin is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=p1_err,
            ))
            p2 = None
            try:
                p2 = self._track(subprocess.Popen(
                    consumer.args,
                    env=self._environment(consumer),
                    stdin=p1.stdout,
                    stdout=stdout if stdout is not None else subprocess.DEVNULL,
                    stderr=p2_err,
                ))
                # Allow the producer to receive SIGPIPE if the consumer exits early
                p1.stdout.close()

                p1_rc = p1.wait()
                p2_rc = p2.wait()
            finally:
                for process in (p1, p2):
                    if process is None:
                        continue
                    if process.poll() is None:
                        self.stop(process)
                    self._untrack(process)

            p1_err.seek(0)
            p2_err.seek(0)
            return (
                ProcessResult(producer, p1_rc, b"", p1_err.read()),
                ProcessResult(consumer, p2_rc, b"", p2_err.read()),
            )

    def spawn(self, command: Command, output: Optional[IO[bytes]] = None) -> subprocess.Popen:
        """Start a long-running helper process; the caller owns stopping it."""
        logger.debug(f"Spawning: {command.display()}")
        return self._track(subprocess.Popen(
            command.args,
            env=self._environment(command),
            stdin=subprocess.DEVNULL,
            stdout=output if output is not None else subprocess.DEVNULL,
            stderr=subprocess.STDOUT if output is not None else subprocess.DEVNULL,
        ))

    def stop(self, process: subprocess.Popen) -> None:
        """Terminate a process, escalating to kill when it does not exit in time."""
        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=self.terminate_timeout)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()
                logger.warning(f"Process {process.pid} forcefully killed")
        self._untrack(process)

    @property
    def cancelled(self) -> bool:
        """True once terminate_all() was called, until reset()."""
        return self._cancelled.is_set()

    def reset(self) -> None:
        self._cancelled.clear()

    def terminate_all(self) -> None:
        # set first, so whoever sees a killed process also sees the cancellation
        self._cancelled.set()
        with self._lock:
            active = list(self._active)
        for process in active:
            logger.warning(f"Terminating in-flight process {process.pid}")
            self.stop(process)
