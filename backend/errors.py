"""Exceptions raised while preparing or judging a submission.

Every error carries the verdict it turns into, so the evaluator and the judge
can convert it into a judging outcome at the boundary where it is caught:

    try:
        program = await evaluator.prepare(...)
    except JudgeError as e:
        return CaseResult(e.verdict, error_message=e.detail)
"""

from typing import Optional

from models import Verdict


class JudgeError(Exception):
    """Base class for judging errors."""

    verdict: Verdict = Verdict.ERROR
    detail: str = "Judging failed"

    def __init__(self, detail: Optional[str] = None) -> None:
        self.detail = detail or self.__class__.detail
        super().__init__(self.detail)


class ConfigurationError(JudgeError):
    """Deployment or problem setup is broken; an admin has to act."""

    detail = "Judge is misconfigured"


class CompilationError(JudgeError):
    """The submitted code did not compile."""

    verdict = Verdict.COMPILE_ERROR
    detail = "Compilation failed (no error details)"
