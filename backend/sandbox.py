import asyncio
import logging
import math
import os
import resource
import shlex
import shutil
import signal
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from config import JudgeSettings
from errors import ConfigurationError

logger = logging.getLogger(__name__)

# Exit code conventions
EXIT_TIMEOUT = 124
EXIT_NOT_FOUND = 127
EXIT_KILLED = 128 + signal.SIGKILL  # 137, killed by a limit (time or memory)

POLL_INTERVAL = 0.005  # seconds between reap attempts

# Why the host killed a program
KILLED_FOR_TIME = "time"
KILLED_FOR_MEMORY = "memory"

PAGE_SIZE_KB = os.sysconf("SC_PAGE_SIZE") // 1024


@dataclass
class Program:
    """Something the sandbox can run: a source file plus interpreter, or a binary."""
    path: Path
    interpreter: Optional[str] = None
    interpreter_args: List[str] = field(default_factory=list)

    @property
    def compiled(self) -> bool:
        return self.interpreter is None


@dataclass
class ExecutionResult:
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    oom_killed: bool = False
    execution_time_ms: int = 0
    memory_kb: Optional[int] = None
    sandbox_error: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @classmethod
    def not_found(cls, message: str) -> "ExecutionResult":
        return cls(exit_code=EXIT_NOT_FOUND, stderr=message, sandbox_error=True)


class SandboxRunner:
    """Runs one program against one input file under resource limits.

    Subclasses decide how the program is isolated; this class owns spawning,
    reaping, CPU accounting and the exit status conventions.
    """

    name = "base"

    def __init__(self, settings: JudgeSettings):
        self.settings = settings

    def check_environment(self, program: Program) -> Optional[str]:
        """Return a description of what is missing, or None when ready."""
        raise NotImplementedError

    def build_command(self, program: Program, timeout_sec: float, memory_limit_mb: int) -> List[str]:
        raise NotImplementedError

    def guard_timeout(self, timeout_sec: float) -> float:
        """Host side deadline after which the whole process group is killed."""
        return timeout_sec

    def preexec(self, memory_limit_mb: int) -> Optional[Callable[[], None]]:
        return None

    def memory_usage_kb(self, pid: int) -> Optional[int]:
        """Resident size of a running program, for runners that enforce memory by sampling."""
        return None

    def oom_kill_count(self) -> Optional[int]:
        """OOM kill counter of the resource controller, for runners that have one."""
        return None

    def memory_exceeded(self, exit_code: int, peak_kb: Optional[int], memory_limit_mb: int,
                        oom_kills_before: Optional[int]) -> bool:
        # no controller signal: a SIGKILL the host did not send is the memory limit
        return exit_code == EXIT_KILLED

    async def run(self, program: Program, input_file: Path, output_file: Path,
                  timeout_sec: float, memory_limit_mb: int) -> ExecutionResult:
        missing = self.check_environment(program)
        if missing:
            logger.error(f"[Sandbox] {missing}")
            return ExecutionResult.not_found(missing)

        command = self.build_command(program, timeout_sec, memory_limit_mb)
        logger.debug(f"[Sandbox] {shlex.join(command)}")

        try:
            return await asyncio.to_thread(
                self._execute, command, input_file, output_file, timeout_sec, memory_limit_mb
            )
        except FileNotFoundError as e:
            return ExecutionResult.not_found(f"Execution error: {e}")
        except OSError as e:
            logger.exception("[Sandbox] Failed to start program")
            return ExecutionResult(exit_code=1, stderr=f"Execution error: {e}", sandbox_error=True)

    def _execute(self, command: List[str], input_file: Path, output_file: Path,
                 timeout_sec: float, memory_limit_mb: int) -> ExecutionResult:
        oom_kills_before = self.oom_kill_count()
        with open(input_file, "rb") as fin, open(output_file, "wb") as fout:
            start_time = time.perf_counter()
            process = subprocess.Popen(
                command,
                stdin=fin,
                stdout=fout,
                stderr=subprocess.STDOUT,
                cwd=str(input_file.parent),
                start_new_session=True,
                preexec_fn=self.preexec(memory_limit_mb),
            )
            exit_code, usage, killed_for = self._wait(
                process, self.guard_timeout(timeout_sec), memory_limit_mb * 1024
            )
            elapsed = time.perf_counter() - start_time

        result = ExecutionResult(exit_code=exit_code)
        if usage is not None:
            result.execution_time_ms = round((usage.ru_utime + usage.ru_stime) * 1000)
            result.memory_kb = usage.ru_maxrss
        else:
            result.execution_time_ms = round(elapsed * 1000)

        # the wall clock counts even when the program exits cleanly afterwards
        result.timed_out = (
            killed_for == KILLED_FOR_TIME
            or exit_code == EXIT_TIMEOUT
            or elapsed > timeout_sec
            or result.execution_time_ms > timeout_sec * 1000
        )
        result.oom_killed = killed_for == KILLED_FOR_MEMORY or (
            killed_for is None
            and self.memory_exceeded(exit_code, result.memory_kb, memory_limit_mb, oom_kills_before)
        )

        with open(output_file, "rb") as f:
            result.stdout = f.read(self.settings.max_output_size).decode("utf-8", errors="replace")
        return result

    def _wait(self, process: subprocess.Popen, timeout: float, memory_limit_kb: int):
        """Reap the program, killing its group at the deadline or over the memory limit.

        Returns the exit code, the rusage of the child (None when CPU time is not
        measured) and why the host killed it, if it did.
        """
        use_wait4 = self.settings.measure_cpu_time and hasattr(os, "wait4")
        deadline = time.monotonic() + timeout
        usage = None
        killed_for = None
        while True:
            if use_wait4:
                pid, status, usage = os.wait4(process.pid, os.WNOHANG)
                if pid:
                    # reaped here, so Popen must not try again
                    process.returncode = os.waitstatus_to_exitcode(status)
                    break
            elif process.poll() is not None:
                break

            if killed_for is None:
                if time.monotonic() >= deadline:
                    killed_for = KILLED_FOR_TIME
                else:
                    resident_kb = self.memory_usage_kb(process.pid)
                    if resident_kb is not None and resident_kb > memory_limit_kb:
                        killed_for = KILLED_FOR_MEMORY
                if killed_for:
                    self._kill(process)
            time.sleep(POLL_INTERVAL)

        return _exit_code(process.returncode), usage, killed_for

    @staticmethod
    def _kill(process: subprocess.Popen) -> None:
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass  # already exited


def _exit_code(returncode: int) -> int:
    # Popen reports signals as negative numbers; use the shell convention
    return 128 - returncode if returncode < 0 else returncode


class NsjailRunner(SandboxRunner):
    """Namespaces + chroot + cgroup memory controller through nsjail."""

    name = "nsjail"

    def _in_chroot(self, path: str) -> Path:
        return Path(self.settings.chroot_path) / path.lstrip("/")

    def _memory_events(self) -> Path:
        return Path(self.settings.cgroupv2_mount) / "memory.events"

    def check_environment(self, program: Program) -> Optional[str]:
        chroot = Path(self.settings.chroot_path)
        if not chroot.is_dir():
            return f"ERROR: Chroot directory {chroot} does not exist!"
        if not Path(self.settings.nsjail_binary).exists():
            return f"ERROR: nsjail not found at {self.settings.nsjail_binary}"
        if self.settings.nsjail_cgroup_memory and not self._memory_events().exists():
            return (f"ERROR: cgroup v2 directory {self.settings.cgroupv2_mount} has no memory "
                    f"controller (memory.events missing)")
        if program.compiled:
            if not program.path.exists():
                return f"ERROR: Compiled program {program.path} does not exist"
            return None

        interpreter = self._in_chroot(program.interpreter)
        if not interpreter.exists():
            message = f"ERROR: Interpreter not found in chroot. Expected: {interpreter}\n"
            usr_bin = chroot / "usr" / "bin"
            if usr_bin.is_dir():
                message += f"Chroot contents of /usr/bin: {', '.join(sorted(p.name for p in usr_bin.iterdir()))}\n"
            return message
        return None

    def oom_kill_count(self) -> Optional[int]:
        if not self.settings.nsjail_cgroup_memory:
            return None
        try:
            events = self._memory_events().read_text()
        except OSError:
            logger.warning(f"[Sandbox] Cannot read {self._memory_events()}")
            return None
        for line in events.splitlines():
            key, _, value = line.partition(" ")
            if key == "oom_kill":
                return int(value)
        return None

    def memory_exceeded(self, exit_code: int, peak_kb: Optional[int], memory_limit_mb: int,
                        oom_kills_before: Optional[int]) -> bool:
        if oom_kills_before is None:
            return super().memory_exceeded(exit_code, peak_kb, memory_limit_mb, oom_kills_before)
        # memory.events is hierarchical, so the jail's kills show up on the parent
        oom_kills_after = self.oom_kill_count()
        return exit_code != 0 and oom_kills_after is not None and oom_kills_after > oom_kills_before

    def build_command(self, program: Program, timeout_sec: float, memory_limit_mb: int) -> List[str]:
        s = self.settings
        if program.compiled:
            target = f"{s.workspace_path}/program"
            inner = [target]
        else:
            target = f"{s.workspace_path}/source"
            inner = [program.interpreter, *program.interpreter_args, target]

        if s.nsjail_cgroup_memory:
            memory = [
                "--use_cgroupv2",
                "--cgroupv2_mount", s.cgroupv2_mount,
                "--cgroup_mem_max", str(memory_limit_mb * 1024 * 1024),    # bytes
                "--cgroup_mem_swap_max", "0",
                "--rlimit_as", str(address_space_mb(s, memory_limit_mb)),  # MB
            ]
        else:
            memory = ["--rlimit_as", str(memory_limit_mb)]                 # MB

        return [
            s.nsjail_binary,
            "--mode", "o",                                  # run once
            "--quiet",
            "--chroot", s.chroot_path,
            "--user", str(s.sandbox_uid),
            "--group", str(s.sandbox_gid),
            "--hostname", "NSJAIL",
            "--cwd", s.workspace_path,
            "--time_limit", str(math.ceil(timeout_sec)),    # backstop, the host kills at timeout_sec
            "--max_cpus", "1",
            *memory,
            "--rlimit_core", "0",
            "--rlimit_fsize", str(s.max_file_size_mb),      # MB
            "--rlimit_nofile", str(s.max_file_descriptors),
            "--rlimit_nproc", str(s.max_processes),
            "--disable_proc",
            "--iface_no_lo",
            "--bindmount_ro", f"{program.path}:{target}",
            "--",
            *inner,
        ]


class RlimitRunner(SandboxRunner):
    """setrlimit only: no filesystem, process or network isolation.

    Meant for development machines and the test suite where nsjail and the
    chroot image are not provisioned. There is no memory controller, so the
    limit is enforced on resident size: it is sampled while the program runs
    and the peak is checked once it is reaped. Address space is capped only by
    a backstop, since allocation failures under RLIMIT_AS look like ordinary
    crashes. A program that allocates past the backstop in one go still ends
    as a runtime error.
    """

    name = "rlimit"

    def __init__(self, settings: JudgeSettings):
        super().__init__(settings)
        logger.warning("[Sandbox] rlimit runner in use: submissions are NOT isolated from the host")

    def _resolve(self, program: Program) -> Optional[str]:
        return shutil.which(program.interpreter)

    def check_environment(self, program: Program) -> Optional[str]:
        if not program.path.exists():
            return f"ERROR: Program file {program.path} does not exist"
        if not program.compiled and not self._resolve(program):
            return f"ERROR: Interpreter {program.interpreter} not found"
        return None

    def build_command(self, program: Program, timeout_sec: float, memory_limit_mb: int) -> List[str]:
        if program.compiled:
            return [str(program.path)]
        return [self._resolve(program), *program.interpreter_args, str(program.path)]

    def memory_usage_kb(self, pid: int) -> Optional[int]:
        try:
            with open(f"/proc/{pid}/statm") as f:
                resident_pages = int(f.read().split()[1])
        except (OSError, ValueError, IndexError):
            return None  # gone already, or no procfs
        return resident_pages * PAGE_SIZE_KB

    def memory_exceeded(self, exit_code: int, peak_kb: Optional[int], memory_limit_mb: int,
                        oom_kills_before: Optional[int]) -> bool:
        if peak_kb is not None and peak_kb > memory_limit_mb * 1024:
            return True
        return super().memory_exceeded(exit_code, peak_kb, memory_limit_mb, oom_kills_before)

    def preexec(self, memory_limit_mb: int) -> Callable[[], None]:
        memory = address_space_mb(self.settings, memory_limit_mb) * 1024 * 1024
        file_size = self.settings.max_file_size_mb * 1024 * 1024
        nofile = self.settings.max_file_descriptors
        nproc = self.settings.max_processes

        def limit_resources():
            _lower_limit(resource.RLIMIT_AS, memory)
            _lower_limit(resource.RLIMIT_CORE, 0)
            _lower_limit(resource.RLIMIT_FSIZE, file_size)
            _lower_limit(resource.RLIMIT_NOFILE, nofile)
            _lower_limit(resource.RLIMIT_NPROC, nproc)

        return limit_resources


def address_space_mb(settings: JudgeSettings, memory_limit_mb: int) -> int:
    """RLIMIT_AS for runners that account memory some other way."""
    return max(settings.address_space_backstop_mb, memory_limit_mb * 2)


def _lower_limit(limit: int, value: int) -> None:
    # an unprivileged process may only lower its hard limit
    _, hard = resource.getrlimit(limit)
    if hard != resource.RLIM_INFINITY:
        value = min(value, hard)
    resource.setrlimit(limit, (value, value))


RUNNERS = {
    NsjailRunner.name: NsjailRunner,
    RlimitRunner.name: RlimitRunner,
}


def create_runner(settings: JudgeSettings) -> SandboxRunner:
    try:
        runner_class = RUNNERS[settings.sandbox_backend]
    except KeyError:
        raise ConfigurationError(f"Unknown sandbox backend: {settings.sandbox_backend}")
    return runner_class(settings)
