"""Function-mode judging.

The user writes a function (or a class, or a snippet) instead of a whole
program. The problem ships a per-language tester: a complete program that
reads the example input, calls the user's code and prints what it got. The
user's code replaces the tester line carrying the injection marker, for
example::

    import sys

    # USER CODE GOES HERE

    a, b = map(int, sys.stdin.read().split())
    print(add(a, b))

From there on the combined program is compiled, run and compared exactly like
a stdin/stdout submission.
"""

import re

from errors import ConfigurationError
from evaluator import Evaluator
from models import Problem, ProgrammingLanguage, TestingMode

INJECTION_MARKER = "USER CODE GOES HERE"

_MARKER_LINE = re.compile(
    r"^[ \t]*(?://|#|--|;)[ \t]*" + re.escape(INJECTION_MARKER) + r"[ \t]*$",
    re.MULTILINE,
)


def splice(tester_code: str, user_code: str) -> str:
    """Put user_code where the tester's marker line is."""
    if not _MARKER_LINE.search(tester_code):
        raise ConfigurationError(f"Tester has no '{INJECTION_MARKER}' marker. Please contact admin.")
    # a callable replacement keeps backslashes in user code literal
    return _MARKER_LINE.sub(lambda _: user_code, tester_code, count=1)


class FunctionModeEvaluator(Evaluator):
    testing_mode = TestingMode.FUNCTION.value

    def build_source(self, source_code: str, language: ProgrammingLanguage, problem: Problem) -> str:
        if problem.template_for(language.id) is None:
            raise ConfigurationError(
                f"Template not found for {language.name}. This problem does not support this language."
            )
        tester = problem.tester_for(language.id)
        if tester is None:
            raise ConfigurationError(f"Tester not found for {language.name}. Please contact admin.")
        return splice(tester.tester_code, source_code)
