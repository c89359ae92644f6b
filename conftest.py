import os
from datetime import datetime, timedelta, timezone

import pytest

from library import Library


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now = self.now + timedelta(**delta)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def lib(tmp_path, request, clock):
    # One database file per test
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    lib = Library(db_file=db_file, clock=clock)
    yield lib
    lib.close()
    if os.path.exists(db_file):
        os.remove(db_file)
