import io
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

PROJECT_DIR = Path(__file__).resolve().parent.parent
if str(PROJECT_DIR) not in sys.path:
    sys.path.insert(0, str(PROJECT_DIR))

import rsgen  # noqa: E402


class FailingSink:
    """Sink that accepts a fixed number of writes, then raises OSError."""

    def __init__(self, allowed_writes: int = 0):
        self.allowed_writes = allowed_writes
        self.written: list[str] = []

    def write(self, text: str) -> int:
        if len(self.written) >= self.allowed_writes:
            raise OSError("No space left on device")
        self.written.append(text)
        return len(text)


@pytest.fixture
def render() -> Callable[..., str]:
    def _render(item: object, config: rsgen.FormatConfig | None = None) -> str:
        buf = io.StringIO()
        item.render(rsgen.Formatter(buf, config))
        return buf.getvalue()

    return _render


@pytest.fixture
def make_failing_sink() -> Callable[[int], FailingSink]:
    def _make_failing_sink(allowed_writes: int = 0) -> FailingSink:
        return FailingSink(allowed_writes)

    return _make_failing_sink
