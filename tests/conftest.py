"""Pytest configuration for the Foldr test suite."""

import sys
from pathlib import Path

import pytest

# Flat module layout: make lexer/parser/interpreter/foldr importable.
sys.path.insert(0, str(Path(__file__).parent.parent))

from interpreter import DEFAULT_RECURSION_LIMIT, Interpreter  # noqa: E402


class ProgramRun:
    """Result of running a Foldr program with captured I/O."""

    def __init__(self, interpreter: Interpreter, output: list[str]) -> None:
        self.interpreter = interpreter
        self._output = output
        self.env = None

    @property
    def stdout(self) -> str:
        return "".join(self._output)

    @property
    def lines(self) -> list[str]:
        return self.stdout.splitlines()


@pytest.fixture
def run_program():
    """Run source text; return a ProgramRun with stdout and the global env."""

    def _run(
        source: str,
        *,
        stdin: list[str] | None = None,
        strict: bool = True,
        verbose: bool = False,
        recursion_limit: int = DEFAULT_RECURSION_LIMIT,
    ) -> ProgramRun:
        pending = list(stdin or [])
        output: list[str] = []

        def _input() -> str | None:
            if not pending:
                return None
            return pending.pop(0) + "\n"

        interpreter = Interpreter(
            source=source,
            filename="<test>",
            verbose=verbose,
            strict=strict,
            recursion_limit=recursion_limit,
            input_provider=_input,
            output_sink=output.append,
        )
        run = ProgramRun(interpreter, output)
        run.env = interpreter.run()
        return run

    return _run


@pytest.fixture
def make_interpreter():
    """Build an Interpreter with captured output, without running it."""

    def _make(source: str, *, strict: bool = True, verbose: bool = False) -> tuple[Interpreter, list[str]]:
        output: list[str] = []
        interpreter = Interpreter(
            source=source,
            filename="<test>",
            verbose=verbose,
            strict=strict,
            input_provider=lambda: None,
            output_sink=output.append,
        )
        return interpreter, output

    return _make
