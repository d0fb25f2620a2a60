import logging
import re
import shutil
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from compiler import execution_path_for
from config import JudgeSettings
from errors import JudgeError
from models import Example, Problem, ProgrammingLanguage, Verdict
from sandbox import ExecutionResult, Program, SandboxRunner

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


@dataclass
class CaseResult:
    verdict: Verdict
    output: str = ""
    runtime_ms: int = 0
    memory_kb: Optional[int] = None
    error_message: Optional[str] = None

    @property
    def passed(self) -> bool:
        return self.verdict == Verdict.PASSED

    def to_dict(self):
        return {
            "verdict": self.verdict.value,
            "output": self.output,
            "runtime_ms": self.runtime_ms,
            "memory_kb": self.memory_kb,
            "error_message": self.error_message,
        }


@dataclass(frozen=True)
class Limits:
    time_limit_sec: float
    memory_limit_mb: int


def effective_limits(language: ProgrammingLanguage, problem: Problem) -> Limits:
    """The larger of the language floor and the problem floor, for time and memory."""
    time_limit = max(language.time_limit_sec, problem.time_limit_sec)
    memory_limit_kb = max(language.memory_limit_kb or 0, problem.memory_limit_kb or 0)
    return Limits(time_limit, memory_limit_kb // 1024)


def compare_output(actual: str, expected: str, ignore_line_order: bool = False) -> Verdict:
    if actual == expected:
        return Verdict.PASSED
    if ignore_line_order and sorted(actual.splitlines()) == sorted(expected.splitlines()):
        return Verdict.PASSED
    if _WHITESPACE.sub("", actual) == _WHITESPACE.sub("", expected):
        return Verdict.PRESENTATION_ERROR
    return Verdict.WRONG_ANSWER


@contextmanager
def scratch_dir(parent: Path, prefix: str = "case_") -> Iterator[Path]:
    """Process-unique directory, removed with everything in it on exit."""
    parent.mkdir(parents=True, exist_ok=True)
    path = parent / f"{prefix}{uuid.uuid4().hex}"
    path.mkdir()
    try:
        yield path
    finally:
        shutil.rmtree(path)


class Evaluator:
    """Runs one example against a submission whose program reads stdin."""

    testing_mode = "stdin_stdout"

    def __init__(self, runner: SandboxRunner, settings: JudgeSettings):
        self.runner = runner
        self.settings = settings

    def build_source(self, source_code: str, language: ProgrammingLanguage, problem: Problem) -> str:
        return source_code

    async def prepare(self, source_code: str, language: ProgrammingLanguage, problem: Problem,
                      work_dir: Path) -> Program:
        """Write the source into work_dir and compile it when the language needs it."""
        path = execution_path_for(language)
        source = self.build_source(source_code, language, problem)
        source_file = work_dir / f"{uuid.uuid4().hex}.{language.extension}"
        source_file.write_text(source, encoding="utf-8")
        return await path.prepare(source_file, work_dir, self.settings)

    async def evaluate(self, source_code: str, language: ProgrammingLanguage, example: Example,
                       problem: Problem, program: Optional[Program] = None) -> CaseResult:
        limits = effective_limits(language, problem)
        try:
            with scratch_dir(self.settings.work_dir) as work_dir:
                if program is None:
                    program = await self.prepare(source_code, language, problem, work_dir)
                return await self._run_case(program, example, problem, limits, work_dir)
        except JudgeError as e:
            if e.verdict == Verdict.ERROR:
                logger.error(f"Configuration error: {e.detail}")
            return CaseResult(e.verdict, error_message=e.detail)
        except Exception as e:
            logger.exception("Evaluation failed")
            return CaseResult(Verdict.ERROR, error_message=f"{type(e).__name__}: {e}")

    async def _run_case(self, program: Program, example: Example, problem: Problem,
                        limits: Limits, work_dir: Path) -> CaseResult:
        input_file = work_dir / "input"
        input_file.write_bytes(example.input.encode("utf-8"))
        output_file = work_dir / "output"
        output_file.touch()

        logger.info(f"Executing: timeout={limits.time_limit_sec}s, memory={limits.memory_limit_mb}MB")
        result = await self.runner.run(
            program, input_file, output_file, limits.time_limit_sec, limits.memory_limit_mb
        )
        logger.info(
            f"Execution result: exit_code={result.exit_code}, timed_out={result.timed_out}, "
            f"oom_killed={result.oom_killed}, execution_time_ms={result.execution_time_ms}"
        )
        return self.classify(result, example, problem, limits)

    def classify(self, result: ExecutionResult, example: Example, problem: Problem,
                 limits: Limits) -> CaseResult:
        runtime = result.execution_time_ms
        memory = result.memory_kb

        if result.sandbox_error:
            return CaseResult(Verdict.ERROR, runtime_ms=runtime,
                              error_message=result.stderr or "Sandbox failure")
        if result.timed_out:
            return CaseResult(Verdict.TIME_LIMIT, runtime_ms=runtime, memory_kb=memory,
                              error_message=f"Time limit exceeded (> {limits.time_limit_sec:g}s)")
        if result.oom_killed:
            return CaseResult(Verdict.MEMORY_LIMIT, runtime_ms=runtime, memory_kb=memory,
                              error_message="Memory limit exceeded")
        if not result.success:
            message = f"Runtime error (exit code {result.exit_code})"
            if result.stderr:
                message += f"\n{result.stderr}"
            return CaseResult(Verdict.RUNTIME_ERROR, output=result.stdout, runtime_ms=runtime,
                              memory_kb=memory, error_message=message)

        verdict = compare_output(result.stdout, example.output, bool(problem.ignore_output_line_order))
        messages = {
            Verdict.PASSED: None,
            Verdict.PRESENTATION_ERROR: "Output is correct but formatting differs",
            Verdict.WRONG_ANSWER: "Output does not match expected",
        }
        return CaseResult(verdict, output=result.stdout, runtime_ms=runtime,
                          memory_kb=memory, error_message=messages[verdict])
