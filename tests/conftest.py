"""
Shared fixtures for the merkle_claims tests.

Adds the project root to sys.path so the flat module imports without an
editable install.
"""
import sys
from pathlib import Path

import pytest

_PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(_PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(_PROJECT_ROOT))

from merkle_claims import Record  # noqa: E402


def addr(n: int) -> str:
    """0xaaa...a<n>: a lowercase 20-byte hex address ending in hex digit n."""
    return "0x" + "a" * 39 + format(n, "x")


@pytest.fixture
def four_records():
    return [Record(addr(i + 1), i, (i + 1) * 100) for i in range(4)]


@pytest.fixture
def make_records():
    def _make(n: int):
        return [Record("0x" + format(i + 1, "040x"), i, 1000 + i) for i in range(n)]
    return _make
