import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from compiler import execution_path_for
from config import JudgeSettings
from errors import CompilationError, ConfigurationError, JudgeError
from evaluator import CaseResult, Evaluator, scratch_dir
from harness import FunctionModeEvaluator
from models import (CLAIMABLE, Example, JudgeStatus, Problem, ProgrammingLanguage, Submission,
                    TestingMode, can_transition, status_text)
from sandbox import SandboxRunner
from store import ProblemStore, SubmissionStore

logger = logging.getLogger(__name__)

EVALUATORS = {
    TestingMode.STDIN_STDOUT.value: Evaluator,
    TestingMode.FUNCTION.value: FunctionModeEvaluator,
}


def evaluator_for(problem: Problem, runner: SandboxRunner, settings: JudgeSettings) -> Evaluator:
    try:
        evaluator_class = EVALUATORS[problem.testing_mode or TestingMode.STDIN_STDOUT.value]
    except KeyError:
        raise ConfigurationError(f"Unknown testing mode: {problem.testing_mode}")
    return evaluator_class(runner, settings)


@dataclass
class JudgeResult:
    status: JudgeStatus
    time_used: float = 0.0  # seconds
    memory_used: Optional[int] = None  # KB
    message: str = ""
    failed_case: Optional[int] = None
    cases: List[CaseResult] = field(default_factory=list)

    @property
    def status_text(self) -> str:
        return status_text(self.status.value, self.failed_case)

    def to_dict(self):
        return {
            "status": self.status.value,
            "status_text": self.status_text,
            "time_used": self.time_used,
            "memory_used": self.memory_used,
            "message": self.message,
            "failed_case": self.failed_case,
            "cases": [case.to_dict() for case in self.cases],
        }


@dataclass
class _Judgment:
    """State of one submission while it is being judged."""
    submission: Submission
    problem: Optional[Problem]
    language: Optional[ProgrammingLanguage]
    state: JudgeStatus


class Judge:
    """Drives a submission from queued to its final status."""

    def __init__(self, problems: ProblemStore, submissions: SubmissionStore, runner: SandboxRunner,
                 settings: JudgeSettings,
                 evaluator_factory: Callable[..., Evaluator] = evaluator_for):
        self.problems = problems
        self.submissions = submissions
        self.runner = runner
        self.settings = settings
        self.evaluator_factory = evaluator_factory

    async def judge(self, submission_id: int) -> Optional[JudgeResult]:
        """Judge a queued submission. Returns None when it was not ours to judge."""
        start_time = time.perf_counter()

        submission = await self.submissions.get(submission_id)
        if submission is None:
            logger.warning(f"[Judge #{submission_id}] Submission not found")
            return None
        if JudgeStatus(submission.status) not in CLAIMABLE:
            logger.info(f"[Judge #{submission_id}] Already {submission.status}, skipping")
            return None

        problem = await self.problems.get_problem(submission.problem_id)
        language = await self.problems.get_language(submission.programming_language_id)
        first_state = JudgeStatus.RUNNING
        if language is not None:
            try:
                if execution_path_for(language).compiled:
                    first_state = JudgeStatus.COMPILING
            except ConfigurationError:
                pass  # reported from _judge_impl

        if not await self.submissions.claim(submission_id, first_state):
            logger.info(f"[Judge #{submission_id}] Claimed by another worker, skipping")
            return None

        judgment = _Judgment(submission, problem, language, first_state)
        logger.info(f"[Judge #{submission_id}] Problem: {submission.problem_id}, "
                    f"Language: {language.name if language else submission.programming_language_id}")

        try:
            result = await self._judge_impl(judgment)
        except Exception as e:
            logger.exception(f"[Judge #{submission_id}] Judging failed")
            result = JudgeResult(JudgeStatus.ERROR, message=f"{type(e).__name__}: {e}")

        result.time_used = time.perf_counter() - start_time
        await self._finish(judgment, result)
        logger.info(f"[Judge #{submission_id}] Result: {result.status_text}, Time: {result.time_used:.3f}s")
        return result

    async def _judge_impl(self, judgment: _Judgment) -> JudgeResult:
        submission, problem, language = judgment.submission, judgment.problem, judgment.language
        if problem is None:
            return JudgeResult(JudgeStatus.ERROR, message=f"Problem {submission.problem_id} not found")
        if language is None:
            return JudgeResult(JudgeStatus.ERROR,
                               message=f"Language {submission.programming_language_id} not found")

        examples = await self.problems.ordered_examples(problem.id)
        if not examples:
            return JudgeResult(JudgeStatus.ERROR, message="No test cases")

        async def on_compiled():
            if judgment.state == JudgeStatus.COMPILING:
                await self._advance(judgment, JudgeStatus.RUNNING)

        return await self.run_examples(submission.id, submission.source_code, language, problem,
                                       examples, fail_fast=True, on_compiled=on_compiled)

    async def run_examples(self, label, source_code: str, language: ProgrammingLanguage,
                           problem: Problem, examples: List[Example], fail_fast: bool = True,
                           on_compiled: Optional[Callable] = None) -> JudgeResult:
        """Compile once, then evaluate the examples in order."""
        try:
            evaluator = self.evaluator_factory(problem, self.runner, self.settings)
        except ConfigurationError as e:
            return JudgeResult(JudgeStatus.ERROR, message=e.detail)

        with scratch_dir(self.settings.work_dir, prefix=f"submission_{label}_") as work_dir:
            logger.info(f"[Judge #{label}] Compiling...")
            try:
                program = await evaluator.prepare(source_code, language, problem, work_dir)
            except CompilationError as e:
                logger.info(f"[Judge #{label}] Compile Error: {e.detail[:200]}")
                return JudgeResult(JudgeStatus.COMPILE_ERROR, message=e.detail)
            except JudgeError as e:
                logger.error(f"[Judge #{label}] {e.detail}")
                return JudgeResult(JudgeStatus.ERROR, message=e.detail)

            if on_compiled is not None:
                await on_compiled()

            cases = []
            first_failure = None
            for idx, example in enumerate(examples, 1):
                case = await evaluator.evaluate(source_code, language, example, problem, program=program)
                cases.append(case)
                if case.passed:
                    continue
                logger.info(f"[Judge #{label}] Example {idx}: {case.verdict.value}")
                if first_failure is None:
                    first_failure = idx
                if fail_fast:
                    break

        memory = [c.memory_kb for c in cases if c.memory_kb is not None]
        result = JudgeResult(JudgeStatus.ACCEPTED, memory_used=max(memory) if memory else None, cases=cases)
        if first_failure is None:
            result.message = f"Passed {len(cases)}/{len(examples)} test cases"
            return result

        failed = cases[first_failure - 1]
        result.status = JudgeStatus.from_verdict(failed.verdict)
        result.failed_case = first_failure
        result.message = failed.error_message or ""
        return result

    async def preview(self, problem_id: int, language_id: int, source_code: str) -> Optional[JudgeResult]:
        """Run code against the visible examples only; nothing is persisted."""
        start_time = time.perf_counter()
        problem = await self.problems.get_problem(problem_id)
        language = await self.problems.get_language(language_id)
        if problem is None or language is None:
            return None

        examples = await self.problems.ordered_examples(problem_id, include_hidden=False)
        result = await self.run_examples("preview", source_code, language, problem, examples, fail_fast=False)
        result.time_used = time.perf_counter() - start_time
        return result

    async def _advance(self, judgment: _Judgment, status: JudgeStatus) -> None:
        submission_id = judgment.submission.id
        if not await self.submissions.update_status(submission_id, status, expected=judgment.state):
            raise RuntimeError(f"Submission {submission_id} left {judgment.state.value} while being judged")
        judgment.state = status

    async def _finish(self, judgment: _Judgment, result: JudgeResult) -> None:
        submission = judgment.submission
        status = result.status
        if not can_transition(judgment.state, status):
            logger.warning(f"[Judge #{submission.id}] {judgment.state.value} -> {status.value} "
                           f"not allowed, recording error")
            status = JudgeStatus.ERROR

        stored = await self.submissions.update_status(
            submission.id,
            status,
            expected=judgment.state,
            message=result.message[:self.settings.max_message_size],
            failed_case=result.failed_case,
            memory_used=result.memory_used,
        )
        if not stored:
            logger.warning(f"[Judge #{submission.id}] Status changed while judging; result dropped")
            return
        judgment.state = status
        await self.submissions.update_time_used(submission.id, result.time_used)

        if judgment.problem is not None:
            await self.problems.refresh_statistics(submission.problem_id)
            await self.submissions.record_user_problem_status(
                submission.user_id, submission.problem_id, solved=status == JudgeStatus.ACCEPTED
            )
