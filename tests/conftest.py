from pathlib import Path
from typing import List

import pytest

from interpreter import Diagnostic, Interpreter


EXT_DIR = Path(__file__).resolve().parent.parent / "ext"


class Run:
    def __init__(self, interpreter: Interpreter, output: List[str], sunk: List[Diagnostic]) -> None:
        self.interpreter = interpreter
        self.output = output
        self.sunk = sunk
        self.result = interpreter.run()

    @property
    def errors(self) -> List[Diagnostic]:
        return self.result.errors

    def rules(self, severity: str = "error") -> List[str]:
        return [d.rule for d in self.result.diagnostics if d.severity == severity]


@pytest.fixture
def run():
    def _run(source: str, **kwargs) -> Run:
        output: List[str] = []
        sunk: List[Diagnostic] = []
        kwargs.setdefault("output_sink", output.append)
        kwargs.setdefault("diagnostic_sink", sunk.append)
        interpreter = Interpreter(source=source, **kwargs)
        return Run(interpreter, output, sunk)

    return _run


@pytest.fixture
def ext_dir() -> Path:
    return EXT_DIR
