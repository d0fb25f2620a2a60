import dataclasses
import shlex
import stat
import sys
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from config import JudgeSettings
from judge import Judge
from models import (Example, Problem, ProblemTemplate, ProblemTester, ProgrammingLanguage,
                    init_db)
from sandbox import RlimitRunner
from store import ProblemStore, SubmissionStore

FAKE_CC = Path(__file__).parent / "fixtures" / "fake_cc.py"
FAKE_NSJAIL = Path(__file__).parent / "fixtures" / "fake_nsjail.py"

A_PLUS_B = "a, b = map(int, input().split())\nprint(a + b)\n"


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'oj.db'}"


@pytest_asyncio.fixture
async def session_factory(db_url):
    engine = create_async_engine(db_url, poolclass=NullPool)
    await init_db(engine)
    yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def settings(tmp_path):
    return JudgeSettings(work_dir=tmp_path / "work", sandbox_backend="rlimit")


@pytest.fixture
def runner(settings):
    return RlimitRunner(settings)


@pytest.fixture
def nsjail_settings(tmp_path):
    """A chroot holding only ruby, a cgroup directory and a placeholder nsjail binary."""
    chroot = tmp_path / "chroot"
    (chroot / "usr" / "bin").mkdir(parents=True)
    (chroot / "usr" / "bin" / "ruby").touch()
    cgroup = tmp_path / "cgroup"
    cgroup.mkdir()
    (cgroup / "memory.events").write_text("low 0\nhigh 0\nmax 0\noom 0\noom_kill 0\noom_group_kill 0\n")
    nsjail = tmp_path / "nsjail"
    nsjail.touch()
    return JudgeSettings(work_dir=tmp_path / "work", sandbox_backend="nsjail", nsjail_binary=str(nsjail),
                         chroot_path=str(chroot), cgroupv2_mount=str(cgroup))


@pytest.fixture
def jailed_settings(nsjail_settings, tmp_path):
    """nsjail settings whose binary runs programs on the host, with this interpreter in the chroot."""
    wrapper = tmp_path / "fake-nsjail"
    wrapper.write_text(f"#!/bin/sh\nexec {shlex.quote(sys.executable)} {shlex.quote(str(FAKE_NSJAIL))} \"$@\"\n")
    wrapper.chmod(wrapper.stat().st_mode | stat.S_IXUSR)
    interpreter = Path(nsjail_settings.chroot_path) / sys.executable.lstrip("/")
    interpreter.parent.mkdir(parents=True, exist_ok=True)
    interpreter.touch()
    return dataclasses.replace(nsjail_settings, nsjail_binary=str(wrapper))


@pytest.fixture
def problems(session_factory):
    return ProblemStore(session_factory)


@pytest.fixture
def submissions(session_factory):
    return SubmissionStore(session_factory)


@pytest.fixture
def judge(problems, submissions, runner, settings):
    return Judge(problems, submissions, runner, settings)


async def add(session_factory, obj):
    async with session_factory() as session:
        session.add(obj)
        await session.commit()
        await session.refresh(obj)
    return obj


def python_language_row(**overrides):
    values = dict(
        name="Python 3",
        compiler_binary="",
        interpreter_binary=sys.executable,
        interpreter_flags="",
        memory_limit_kb=262144,
        time_limit_sec=1.0,
        extension="py",
    )
    values.update(overrides)
    return ProgrammingLanguage(**values)


def compiled_language_row(**overrides):
    values = dict(
        name="FakeC",
        compiler_binary=sys.executable,
        compiler_flags=f"{shlex.quote(str(FAKE_CC))} -o {{compiled_file}} {{source_file}}",
        interpreter_binary="",
        memory_limit_kb=262144,
        time_limit_sec=1.0,
        extension="py",
    )
    values.update(overrides)
    return ProgrammingLanguage(**values)


@pytest_asyncio.fixture
async def python_language(session_factory):
    return await add(session_factory, python_language_row())


@pytest_asyncio.fixture
async def compiled_language(session_factory):
    return await add(session_factory, compiled_language_row())


@pytest.fixture
def make_problem(session_factory, problems):
    """Insert a problem and return it reloaded with templates and testers.

    examples are (input, output) or (input, output, is_hidden) tuples, stored
    with sort_order in list order.
    """

    async def _make(examples, templates=None, testers=None, **fields):
        fields.setdefault("title", "A + B")
        fields.setdefault("time_limit_sec", 1.0)
        fields.setdefault("memory_limit_kb", 65536)
        fields.setdefault("testing_mode", "stdin_stdout")
        fields.setdefault("ignore_output_line_order", False)
        problem = await add(session_factory, Problem(**fields))

        async with session_factory() as session:
            for order, example in enumerate(examples, 1):
                input_text, output_text, *hidden = example
                session.add(Example(problem_id=problem.id, input=input_text, output=output_text,
                                    sort_order=order, is_hidden=hidden[0] if hidden else True))
            for language_id, code in (templates or {}).items():
                session.add(ProblemTemplate(problem_id=problem.id, programming_language_id=language_id,
                                            template_code=code))
            for language_id, code in (testers or {}).items():
                session.add(ProblemTester(problem_id=problem.id, programming_language_id=language_id,
                                          tester_code=code))
            await session.commit()

        return await problems.get_problem(problem.id)

    return _make
