import asyncio
import logging
import shlex
from pathlib import Path
from typing import List

from config import JudgeSettings
from errors import CompilationError, ConfigurationError
from models import ProgrammingLanguage
from sandbox import Program

logger = logging.getLogger(__name__)

SOURCE_PLACEHOLDER = "{source_file}"
COMPILED_PLACEHOLDER = "{compiled_file}"


def build_compile_command(language: ProgrammingLanguage, source_file: Path, compiled_file: Path) -> List[str]:
    """Compiler argument vector with placeholders substituted per argument.

    Flags are split before substitution, so a path containing spaces or shell
    metacharacters always stays a single argument.
    """
    args = []
    for flag in shlex.split(language.compiler_flags or ""):
        args.append(flag.replace(SOURCE_PLACEHOLDER, str(source_file))
                        .replace(COMPILED_PLACEHOLDER, str(compiled_file)))
    return [language.compiler_binary, *args]


def _discard(compiled_file: Path) -> None:
    compiled_file.unlink(missing_ok=True)


async def compile_source(language: ProgrammingLanguage, source_file: Path, compiled_file: Path,
                         timeout: float, max_message_size: int) -> str:
    """Compile source_file into compiled_file; returns compiler warnings.

    Diagnostics of a failed compile are cut to max_message_size characters.
    """
    cmd = build_compile_command(language, source_file, compiled_file)
    logger.info(f"Compiling with: {shlex.join(cmd)}")

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(source_file.parent)
        )
    except FileNotFoundError:
        raise ConfigurationError(f"Compiler not found: {language.compiler_binary}")

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        _discard(compiled_file)
        raise CompilationError("Compilation timeout")

    if process.returncode != 0:
        _discard(compiled_file)
        error_msg = stderr.decode("utf-8", errors="replace")
        logger.error(f"Compilation failed: {error_msg[:200]}")
        raise CompilationError(error_msg[:max_message_size] if error_msg.strip() else None)

    if not compiled_file.exists():
        raise CompilationError("Compiler exited successfully but produced no executable")

    return (stdout + stderr).decode("utf-8", errors="replace")


class InterpretedPath:
    compiled = False

    def __init__(self, language: ProgrammingLanguage):
        self.language = language

    async def prepare(self, source_file: Path, work_dir: Path, settings: JudgeSettings) -> Program:
        return Program(
            path=source_file,
            interpreter=self.language.interpreter_binary,
            interpreter_args=shlex.split(self.language.interpreter_flags or ""),
        )


class CompiledPath:
    compiled = True

    def __init__(self, language: ProgrammingLanguage):
        self.language = language

    async def prepare(self, source_file: Path, work_dir: Path, settings: JudgeSettings) -> Program:
        compiled_file = work_dir / source_file.stem
        await compile_source(self.language, source_file, compiled_file,
                             settings.compile_timeout_sec, settings.max_message_size)
        return Program(path=compiled_file)


def execution_path_for(language: ProgrammingLanguage):
    """Pick how a language's programs are turned into something runnable."""
    has_compiler = bool(language.compiler_binary)
    has_interpreter = bool(language.interpreter_binary)
    if has_compiler and has_interpreter:
        raise ConfigurationError(f"{language.name} has both a compiler and an interpreter configured")
    if not has_compiler and not has_interpreter:
        raise ConfigurationError(f"{language.name} has neither a compiler nor an interpreter configured")
    return CompiledPath(language) if has_compiler else InterpretedPath(language)
