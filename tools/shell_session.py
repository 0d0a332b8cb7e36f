"""Persistent shell session with sentinel-framed request/response commands.

One long-lived shell process (PowerShell on Windows, bash elsewhere) serves
every host command. Commands run strictly one at a time in submission order:
each script is wrapped in an error boundary followed by a line that prints a
per-session sentinel token, and everything the shell prints before that token
is the command's result.

A command that outlives its timeout rejects with ShellTimeout and the process
is killed, since a half-finished command would desynchronize sentinel
matching. Whenever the process dies the in-flight command rejects with
ShellTerminated, a fresh process is spawned after ``respawn_delay`` seconds,
and the queue resumes.

Usage:
    session = ShellSession()
    future = session.execute("Get-Date", timeout=10)
    print(future.result())

    output = await session.execute_async("Get-Process | Select -First 3")
"""

import asyncio
import codecs
import logging
import os
import platform
import shlex
import shutil
import signal
import subprocess
import threading
import uuid
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)

_IS_WINDOWS = platform.system() == "Windows"

DEFAULT_COMMAND_TIMEOUT = 30.0
DEFAULT_RESPAWN_DELAY = 1.0

# Stripped from the child environment so the shell doesn't inherit our venv.
_SCRUBBED_ENV_VARS = ("VIRTUAL_ENV", "PYTHONHOME")


class ShellSessionError(Exception):
    """Base class for shell session failures."""


class ShellTimeout(ShellSessionError):
    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Command timed out after {timeout:g}s")


class ShellTerminated(ShellSessionError):
    """The shell process went away (crash, kill, or close) before finishing."""


# ---------------------------------------------------------------------------
# Dialects
# ---------------------------------------------------------------------------

class ShellDialect:
    """How to start a shell and frame one command for it."""

    name = "shell"

    def argv(self) -> List[str]:
        raise NotImplementedError

    def wrap(self, script: str, sentinel: str) -> str:
        raise NotImplementedError


class PowerShellDialect(ShellDialect):
    name = "powershell"

    def __init__(self, executable: Optional[str] = None):
        self.executable = executable or self._find_executable()

    @staticmethod
    def _find_executable() -> str:
        system_root = os.environ.get("SystemRoot", r"C:\Windows")
        system_ps = os.path.join(system_root, "System32", "WindowsPowerShell", "v1.0", "powershell.exe")
        if os.path.exists(system_ps):
            return system_ps
        return shutil.which("powershell") or shutil.which("pwsh") or "powershell"

    def argv(self) -> List[str]:
        return [
            self.executable,
            "-NoLogo",
            "-NoExit",
            "-NoProfile",
            "-ExecutionPolicy", "Bypass",
            "-Command", "-",
        ]

    def wrap(self, script: str, sentinel: str) -> str:
        return (
            "$ErrorActionPreference = 'Continue'\n"
            "try {\n"
            f"{script}\n"
            "} catch {\n"
            "Write-Error $_\n"
            "}\n"
            f'Write-Output "{sentinel}"\n'
            "\n"
        )


class PosixShellDialect(ShellDialect):
    name = "bash"

    def __init__(self, executable: Optional[str] = None):
        self.executable = executable or shutil.which("bash") or "/bin/sh"

    def argv(self) -> List[str]:
        if os.path.basename(self.executable) == "bash":
            return [self.executable, "--noprofile", "--norc"]
        return [self.executable]

    def wrap(self, script: str, sentinel: str) -> str:
        # eval keeps syntax errors from killing the shell; stdin is detached so
        # a command that reads input can't swallow the sentinel line.
        return (
            f"eval {shlex.quote(script)} </dev/null\n"
            f"printf '\\n%s\\n' '{sentinel}'\n"
        )


def create_dialect(name: str = "auto") -> ShellDialect:
    """Build a dialect from a config value: auto | powershell | bash."""
    name = (name or "auto").strip().lower()
    if name == "auto":
        return PowerShellDialect() if _IS_WINDOWS else PosixShellDialect()
    if name in ("powershell", "pwsh"):
        return PowerShellDialect(shutil.which("pwsh") if name == "pwsh" else None)
    if name in ("bash", "sh", "posix"):
        return PosixShellDialect(shutil.which(name) if name == "sh" else None)
    raise ValueError(f"Unknown shell dialect: {name!r}")


# ---------------------------------------------------------------------------
# Process helpers
# ---------------------------------------------------------------------------

def _kill_process_tree(proc: subprocess.Popen, *, force: bool = False) -> None:
    """Terminate the shell and everything it started.

    POSIX shells run in their own process group (``os.setsid``), so one
    ``killpg`` reaches every child. Windows falls back to ``proc.kill()``.
    """
    if _IS_WINDOWS:
        try:
            proc.kill()
        except OSError:
            pass
        return

    sig = signal.SIGKILL if force else signal.SIGTERM
    try:
        os.killpg(os.getpgid(proc.pid), sig)
    except OSError:
        try:
            proc.kill() if force else proc.terminate()
        except OSError:
            pass


def _clean_env() -> dict:
    return {k: v for k, v in os.environ.items() if k not in _SCRUBBED_ENV_VARS}


def _settle(future: Future, result: Optional[str] = None,
            error: Optional[BaseException] = None) -> None:
    if future.cancelled():
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(result)


@dataclass
class _Command:
    script: str
    timeout: float
    future: Future = field(default_factory=Future)
    timer: Optional[threading.Timer] = None


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class ShellSession:
    """
    Serialized request/response wrapper around one persistent shell process.

    Args:
        dialect: Shell flavour; defaults to the platform's native shell.
        default_timeout: Seconds a command may run when execute() gets none.
        respawn_delay: Backoff before replacing a dead process.
        cwd: Working directory for the shell (defaults to the user's home).
        autostart: Spawn the process now rather than on the first command.
    """

    def __init__(
        self,
        dialect: Optional[ShellDialect] = None,
        *,
        default_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        respawn_delay: float = DEFAULT_RESPAWN_DELAY,
        cwd: Optional[str] = None,
        autostart: bool = True,
    ):
        self.dialect = dialect or create_dialect("auto")
        self.default_timeout = default_timeout
        self.respawn_delay = respawn_delay
        self.cwd = cwd or os.path.expanduser("~")
        self.sentinel = f"VENESA_SHELL_END_{uuid.uuid4().hex}"

        self._lock = threading.Lock()
        self._queue: "deque[_Command]" = deque()
        self._current: Optional[_Command] = None
        self._proc: Optional[subprocess.Popen] = None
        self._generation = 0
        self._buffer = ""
        self._stderr_chunks: List[str] = []
        self._respawn_timer: Optional[threading.Timer] = None
        self._closed = False

        if autostart:
            with self._lock:
                error = self._spawn_locked()
            if error:
                logger.warning("Shell not available yet: %s", error)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def execute(self, script: str, timeout: Optional[float] = None) -> "Future[str]":
        """Queue *script*; the returned future resolves with its stdout text."""
        cmd = _Command(script=script, timeout=timeout or self.default_timeout)
        error: Optional[str] = None
        failed: List[_Command] = []
        pending = None

        with self._lock:
            if self._closed:
                cmd.future.set_exception(ShellTerminated("Shell session is closed"))
                return cmd.future
            self._queue.append(cmd)
            if self._proc is None and self._respawn_timer is None:
                error = self._spawn_locked()
            if error:
                failed = self._drain_queue_locked()
            else:
                pending = self._pump_locked()

        self._write_payload(pending)
        self._reject_all(failed, error)
        return cmd.future

    async def execute_async(self, script: str, timeout: Optional[float] = None) -> str:
        return await asyncio.wrap_future(self.execute(script, timeout))

    def run(self, script: str, timeout: Optional[float] = None) -> str:
        """Blocking execute(). Raises ShellTimeout / ShellTerminated."""
        return self.execute(script, timeout).result()

    def is_alive(self) -> bool:
        with self._lock:
            return self._proc is not None and self._proc.poll() is None

    def pending_count(self) -> int:
        """Queued commands plus the one executing, if any."""
        with self._lock:
            return len(self._queue) + (1 if self._current else 0)

    def close(self) -> None:
        """Kill the shell and reject everything outstanding. No respawn."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._respawn_timer is not None:
                self._respawn_timer.cancel()
                self._respawn_timer = None
            outstanding = ([self._current] if self._current else []) + list(self._queue)
            self._current = None
            self._queue.clear()
            proc = self._proc
            self._proc = None
            self._generation += 1

        if proc is not None:
            self._shutdown_process(proc)
        for cmd in outstanding:
            if cmd.timer:
                cmd.timer.cancel()
            _settle(cmd.future, error=ShellTerminated("Shell session closed"))
        logger.debug("Shell session closed (%s)", self.dialect.name)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # ------------------------------------------------------------------
    # Process lifecycle (call with self._lock held)
    # ------------------------------------------------------------------

    def _spawn_locked(self) -> Optional[str]:
        """Start a new shell. Returns an error message if it could not start."""
        popen_kwargs: dict = {}
        if _IS_WINDOWS:
            popen_kwargs["creationflags"] = getattr(subprocess, "CREATE_NO_WINDOW", 0)
        else:
            popen_kwargs["preexec_fn"] = os.setsid

        argv = self.dialect.argv()
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=self.cwd if os.path.isdir(self.cwd) else None,
                env=_clean_env(),
                **popen_kwargs,
            )
        except OSError as e:
            logger.error("Failed to start shell %s: %s", argv[0], e)
            return f"Could not start shell: {e}"

        self._proc = proc
        self._generation += 1
        self._buffer = ""
        self._stderr_chunks = []
        generation = self._generation
        logger.info("Shell session started (%s, pid %s)", self.dialect.name, proc.pid)

        threading.Thread(
            target=self._read_stdout, args=(proc, generation), daemon=True,
            name=f"shell-stdout-{proc.pid}",
        ).start()
        threading.Thread(
            target=self._read_stderr, args=(proc, generation), daemon=True,
            name=f"shell-stderr-{proc.pid}",
        ).start()
        return None

    def _pump_locked(self) -> Optional[Tuple[subprocess.Popen, bytes]]:
        """Start the next queued command if the shell is idle.

        Returns the (process, payload) the caller must hand to
        _write_payload() after releasing the lock, or None.
        """
        if self._current is not None or self._proc is None:
            return None

        while self._queue:
            cmd = self._queue.popleft()
            if not cmd.future.set_running_or_notify_cancel():
                continue

            self._current = cmd
            self._stderr_chunks = []
            cmd.timer = threading.Timer(cmd.timeout, self._on_timeout, args=(cmd, self._generation))
            cmd.timer.daemon = True
            cmd.timer.start()

            payload = self.dialect.wrap(cmd.script, self.sentinel)
            return self._proc, payload.encode("utf-8")
        return None

    def _write_payload(self, pending: Optional[Tuple[subprocess.Popen, bytes]]) -> None:
        # Called without the lock: the shell may block on a full stdout pipe
        # until the reader threads drain it.
        if pending is None:
            return
        proc, payload = pending
        try:
            proc.stdin.write(payload)
            proc.stdin.flush()
        except (OSError, ValueError) as e:
            # The stdout reader will see EOF (or the timeout fires) and reject the command.
            logger.warning("Could not write to shell: %s", e)

    def _retire_locked(self) -> Optional[subprocess.Popen]:
        """Detach the current process and schedule its replacement."""
        proc = self._proc
        self._proc = None
        self._generation += 1
        self._buffer = ""
        if not self._closed and self._respawn_timer is None:
            self._respawn_timer = threading.Timer(self.respawn_delay, self._respawn)
            self._respawn_timer.daemon = True
            self._respawn_timer.start()
        return proc

    # ------------------------------------------------------------------
    # Event handlers (reader threads and timers)
    # ------------------------------------------------------------------

    def _respawn(self) -> None:
        with self._lock:
            self._respawn_timer = None
            if self._closed or self._proc is not None:
                return
            logger.info("Respawning shell session")
            error = self._spawn_locked()
            pending = None
            if error:
                failed = self._drain_queue_locked()
            else:
                failed = []
                pending = self._pump_locked()
        self._write_payload(pending)
        self._reject_all(failed, error)

    def _on_timeout(self, cmd: _Command, generation: int) -> None:
        with self._lock:
            if self._current is not cmd or generation != self._generation:
                return
            self._current = None
            logger.warning("Shell command timed out after %ss. Restarting shell.", cmd.timeout)
            proc = self._retire_locked()

        if proc is not None:
            self._shutdown_process(proc)
        _settle(cmd.future, error=ShellTimeout(cmd.timeout))

    def _on_stdout(self, text: str, generation: int) -> None:
        done: Optional[_Command] = None
        result = ""
        stderr_text = ""

        with self._lock:
            if generation != self._generation:
                return
            self._buffer += text
            if self._current is None or self.sentinel not in self._buffer:
                return

            before, _, after = self._buffer.partition(self.sentinel)
            self._buffer = after.lstrip("\r\n")
            done, self._current = self._current, None
            result = before.strip()
            stderr_text = "".join(self._stderr_chunks).strip()
            self._stderr_chunks = []
            pending = self._pump_locked()

        self._write_payload(pending)
        if done.timer:
            done.timer.cancel()
        if stderr_text:
            logger.warning("Shell stderr: %s", stderr_text)
        _settle(done.future, result=result)

    def _on_stderr(self, text: str, generation: int) -> None:
        with self._lock:
            if generation == self._generation and self._current is not None:
                self._stderr_chunks.append(text)
                return
        if text.strip():
            logger.debug("Shell stderr (idle): %s", text.strip())

    def _on_exit(self, proc: subprocess.Popen, generation: int) -> None:
        returncode = proc.wait()
        with self._lock:
            if generation != self._generation:
                return
            logger.warning("Shell process exited with code %s. Restarting session...", returncode)
            cmd, self._current = self._current, None
            self._retire_locked()

        if cmd is not None:
            if cmd.timer:
                cmd.timer.cancel()
            _settle(cmd.future, error=ShellTerminated(
                f"Shell process terminated unexpectedly (exit code {returncode})"
            ))

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    def _read_stdout(self, proc: subprocess.Popen, generation: int) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                chunk = proc.stdout.read1(4096)
                if not chunk:
                    break
                self._on_stdout(decoder.decode(chunk), generation)
        except (OSError, ValueError) as e:
            logger.debug("Shell stdout reader stopped: %s", e)
        finally:
            proc.stdout.close()
        self._on_exit(proc, generation)

    def _read_stderr(self, proc: subprocess.Popen, generation: int) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                chunk = proc.stderr.read1(4096)
                if not chunk:
                    break
                self._on_stderr(decoder.decode(chunk), generation)
        except (OSError, ValueError) as e:
            logger.debug("Shell stderr reader stopped: %s", e)
        finally:
            proc.stderr.close()

    def _shutdown_process(self, proc: subprocess.Popen) -> None:
        _kill_process_tree(proc)
        try:
            proc.wait(timeout=1.0)
        except subprocess.TimeoutExpired:
            _kill_process_tree(proc, force=True)
        try:
            proc.stdin.close()
        except OSError:
            pass

    def _drain_queue_locked(self) -> List[_Command]:
        commands = list(self._queue)
        self._queue.clear()
        return commands

    def _reject_all(self, commands: List[_Command], reason: Optional[str]) -> None:
        for cmd in commands:
            _settle(cmd.future, error=ShellTerminated(reason or "Shell process unavailable"))
