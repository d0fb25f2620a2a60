import dataclasses
import sys

import pytest

from config import JudgeSettings
from errors import ConfigurationError
from sandbox import (EXIT_KILLED, EXIT_NOT_FOUND, NsjailRunner, Program, RlimitRunner,
                     _exit_code, create_runner)

from conftest import A_PLUS_B


def _write(tmp_path, name, text):
    path = tmp_path / name
    path.write_text(text)
    return path


async def _run_python(runner, tmp_path, code, stdin="", timeout=2.0, memory_mb=256):
    source = _write(tmp_path, "prog.py", code)
    input_file = _write(tmp_path, "input", stdin)
    output_file = tmp_path / "output"
    output_file.touch()
    return await runner.run(Program(source, interpreter=sys.executable), input_file,
                            output_file, timeout, memory_mb)


class TestNsjailCommand:
    """Argument vector handed to nsjail."""

    def test_interpreted_program_runs_through_interpreter(self, nsjail_settings, tmp_path):
        runner = NsjailRunner(nsjail_settings)
        program = Program(tmp_path / "abc.py", interpreter="/usr/bin/python3", interpreter_args=["-S"])

        cmd = runner.build_command(program, 1.5, 256)

        assert cmd[0] == nsjail_settings.nsjail_binary
        assert cmd[cmd.index("--time_limit") + 1] == "2"
        assert cmd[cmd.index("--rlimit_fsize") + 1] == "10"
        assert cmd[cmd.index("--user") + 1] == "65534"
        assert cmd[cmd.index("--chroot") + 1] == nsjail_settings.chroot_path
        assert cmd[cmd.index("--bindmount_ro") + 1] == f"{tmp_path / 'abc.py'}:/workspace/source"
        assert cmd[cmd.index("--"):] == ["--", "/usr/bin/python3", "-S", "/workspace/source"]
        assert "--disable_proc" in cmd and "--iface_no_lo" in cmd

    def test_memory_is_limited_by_cgroup(self, nsjail_settings, tmp_path):
        cmd = NsjailRunner(nsjail_settings).build_command(Program(tmp_path / "prog"), 1, 256)

        assert "--use_cgroupv2" in cmd
        assert cmd[cmd.index("--cgroupv2_mount") + 1] == nsjail_settings.cgroupv2_mount
        assert cmd[cmd.index("--cgroup_mem_max") + 1] == str(256 * 1024 * 1024)
        assert cmd[cmd.index("--cgroup_mem_swap_max") + 1] == "0"
        assert cmd[cmd.index("--rlimit_as") + 1] == "4096"

    def test_memory_falls_back_to_rlimit_without_cgroup(self, nsjail_settings, tmp_path):
        settings = dataclasses.replace(nsjail_settings, nsjail_cgroup_memory=False)

        cmd = NsjailRunner(settings).build_command(Program(tmp_path / "prog"), 1, 256)

        assert cmd[cmd.index("--rlimit_as") + 1] == "256"
        assert "--cgroup_mem_max" not in cmd

    def test_compiled_program_runs_directly(self, nsjail_settings, tmp_path):
        runner = NsjailRunner(nsjail_settings)
        cmd = runner.build_command(Program(tmp_path / "prog"), 1, 32)

        assert cmd[cmd.index("--bindmount_ro") + 1] == f"{tmp_path / 'prog'}:/workspace/program"
        assert cmd[cmd.index("--"):] == ["--", "/workspace/program"]

    def test_path_with_spaces_stays_one_argument(self, nsjail_settings, tmp_path):
        runner = NsjailRunner(nsjail_settings)
        program = Program(tmp_path / "my dir" / "a b.py", interpreter="/usr/bin/python3")

        cmd = runner.build_command(program, 1, 64)

        assert f"{tmp_path / 'my dir' / 'a b.py'}:/workspace/source" in cmd

    def test_host_deadline_is_the_exact_limit(self, nsjail_settings):
        assert NsjailRunner(nsjail_settings).guard_timeout(0.5) == 0.5


class TestNsjailEnvironment:
    @pytest.mark.asyncio
    async def test_missing_chroot_is_reported_not_raised(self, tmp_path):
        settings = JudgeSettings(work_dir=tmp_path, chroot_path=str(tmp_path / "missing"))
        source = _write(tmp_path, "a.py", "print(1)\n")
        input_file = _write(tmp_path, "input", "")

        result = await NsjailRunner(settings).run(
            Program(source, interpreter="/usr/bin/python3"), input_file, tmp_path / "output", 1, 64
        )

        assert result.exit_code == EXIT_NOT_FOUND
        assert result.sandbox_error
        assert "Chroot directory" in result.stderr

    @pytest.mark.asyncio
    async def test_interpreter_missing_from_chroot_lists_contents(self, nsjail_settings, tmp_path):
        source = _write(tmp_path, "a.py", "print(1)\n")
        input_file = _write(tmp_path, "input", "")

        result = await NsjailRunner(nsjail_settings).run(
            Program(source, interpreter="/usr/bin/python3"), input_file, tmp_path / "output", 1, 64
        )

        assert result.exit_code == EXIT_NOT_FOUND
        assert "Interpreter not found in chroot" in result.stderr
        assert "ruby" in result.stderr

    @pytest.mark.asyncio
    async def test_missing_memory_controller_is_reported(self, nsjail_settings, tmp_path):
        settings = dataclasses.replace(nsjail_settings, cgroupv2_mount=str(tmp_path / "no-cgroup"))
        source = _write(tmp_path, "prog", "")
        input_file = _write(tmp_path, "input", "")

        result = await NsjailRunner(settings).run(Program(source), input_file, tmp_path / "output", 1, 64)

        assert result.sandbox_error
        assert "memory.events missing" in result.stderr


class TestNsjailRun:
    """Runs through a stand-in nsjail that executes the jailed command on the host."""

    @pytest.mark.asyncio
    async def test_bind_mounted_program_runs(self, jailed_settings, tmp_path):
        result = await _run_python(NsjailRunner(jailed_settings), tmp_path, A_PLUS_B, stdin="1 2\n")

        assert result.exit_code == 0
        assert result.stdout == "3\n"
        assert not result.timed_out
        assert not result.oom_killed

    @pytest.mark.asyncio
    async def test_fractional_limit_is_not_rounded_up(self, jailed_settings, tmp_path):
        result = await _run_python(NsjailRunner(jailed_settings), tmp_path,
                                   "import time\ntime.sleep(0.9)\nprint(3)\n", timeout=0.5)

        assert result.timed_out
        assert result.exit_code == EXIT_KILLED

    @pytest.mark.asyncio
    async def test_cgroup_oom_kill_is_memory_limit(self, jailed_settings, tmp_path, monkeypatch):
        monkeypatch.setenv("FAKE_NSJAIL_KILL", "oom")

        result = await _run_python(NsjailRunner(jailed_settings), tmp_path, "print(1)\n")

        assert result.exit_code == EXIT_KILLED
        assert result.oom_killed
        assert not result.timed_out
        assert "oom_kill 1" in (tmp_path / "cgroup" / "memory.events").read_text()

    @pytest.mark.asyncio
    async def test_kill_without_oom_event_is_not_memory_limit(self, jailed_settings, tmp_path,
                                                              monkeypatch):
        monkeypatch.setenv("FAKE_NSJAIL_KILL", "plain")

        result = await _run_python(NsjailRunner(jailed_settings), tmp_path, "print(1)\n")

        assert result.exit_code == EXIT_KILLED
        assert not result.oom_killed


class TestRlimitRunner:
    """Programs really run here, under setrlimit only."""

    async def _run(self, runner, tmp_path, code, stdin="", timeout=2.0, memory_mb=256):
        return await _run_python(runner, tmp_path, code, stdin, timeout, memory_mb)

    @pytest.mark.asyncio
    async def test_program_reads_stdin_and_writes_stdout(self, runner, tmp_path):
        result = await self._run(runner, tmp_path, "print(input()[::-1])\n", stdin="abc\n")

        assert result.exit_code == 0
        assert result.stdout == "cba\n"
        assert not result.timed_out
        assert not result.sandbox_error
        assert result.memory_kb and result.memory_kb > 0

    @pytest.mark.asyncio
    async def test_stderr_is_merged_into_output(self, runner, tmp_path):
        result = await self._run(runner, tmp_path, "import sys\nsys.stderr.write('oops\\n')\n")

        assert "oops" in result.stdout

    @pytest.mark.asyncio
    async def test_busy_loop_is_killed_as_timeout(self, runner, tmp_path):
        result = await self._run(runner, tmp_path, "while True:\n    pass\n", timeout=0.5)

        assert result.exit_code == EXIT_KILLED
        assert result.timed_out

    @pytest.mark.asyncio
    async def test_sleeping_program_is_killed_by_wall_clock(self, runner, tmp_path):
        result = await self._run(runner, tmp_path, "import time\ntime.sleep(10)\n", timeout=0.5)

        assert result.timed_out

    @pytest.mark.asyncio
    async def test_clean_exit_after_the_limit_is_timeout(self, settings, tmp_path):
        class LateDeadline(RlimitRunner):
            def guard_timeout(self, timeout_sec):
                return timeout_sec + 5

        result = await self._run(LateDeadline(settings), tmp_path, "import time\ntime.sleep(0.8)\n",
                                 timeout=0.5)

        assert result.exit_code == 0
        assert result.timed_out

    @pytest.mark.asyncio
    async def test_memory_hog_is_killed_as_memory_limit(self, runner, tmp_path):
        code = "data = bytearray(256 * 1024 * 1024)\nprint(len(data))\n"

        result = await self._run(runner, tmp_path, code, timeout=10, memory_mb=64)

        assert result.oom_killed
        assert not result.timed_out
        assert "MemoryError" not in result.stdout

    def test_peak_resident_size_is_checked_after_exit(self, settings):
        runner = RlimitRunner(settings)

        assert runner.memory_exceeded(0, 70000, 64, None)
        assert not runner.memory_exceeded(1, 9000, 64, None)

    @pytest.mark.asyncio
    async def test_non_zero_exit_code_is_kept(self, runner, tmp_path):
        result = await self._run(runner, tmp_path, "raise SystemExit(3)\n")

        assert result.exit_code == 3
        assert not result.timed_out
        assert not result.oom_killed

    @pytest.mark.asyncio
    async def test_wall_clock_used_when_cpu_time_disabled(self, tmp_path):
        settings = JudgeSettings(work_dir=tmp_path, sandbox_backend="rlimit", measure_cpu_time=False)
        result = await self._run(RlimitRunner(settings), tmp_path, "print(1)\n")

        assert result.exit_code == 0
        assert result.memory_kb is None
        assert result.execution_time_ms > 0

    @pytest.mark.asyncio
    async def test_missing_interpreter_is_infrastructure_error(self, runner, tmp_path):
        source = _write(tmp_path, "prog.py", "print(1)\n")
        input_file = _write(tmp_path, "input", "")

        result = await runner.run(Program(source, interpreter="/nonexistent/python"), input_file,
                                  tmp_path / "output", 1, 64)

        assert result.exit_code == EXIT_NOT_FOUND
        assert result.sandbox_error

    @pytest.mark.asyncio
    async def test_input_and_program_are_left_untouched(self, runner, tmp_path):
        code = "print(input())\n"
        await self._run(runner, tmp_path, code, stdin="keep\n")

        assert (tmp_path / "prog.py").read_text() == code
        assert (tmp_path / "input").read_text() == "keep\n"


def test_signal_exit_uses_shell_convention():
    assert _exit_code(-9) == 137
    assert _exit_code(0) == 0
    assert _exit_code(1) == 1


def test_unknown_backend_is_configuration_error(tmp_path):
    with pytest.raises(ConfigurationError):
        create_runner(JudgeSettings(work_dir=tmp_path, sandbox_backend="docker"))


def test_create_runner_picks_backend(tmp_path):
    assert isinstance(create_runner(JudgeSettings(work_dir=tmp_path, sandbox_backend="rlimit")), RlimitRunner)
    assert isinstance(create_runner(JudgeSettings(work_dir=tmp_path, sandbox_backend="nsjail")), NsjailRunner)
