"""In-memory fake implementations for testing.

This module provides fake implementations of warden protocols for use in unit
tests. Fakes are preferred over mocks because they:

1. Implement real protocol contracts, catching interface mismatches at test time
2. Provide deterministic, predictable behavior without call-order dependencies
3. Enable behavior-based testing (assert outputs/state) over interaction testing

Available fakes:
- FakeSupervisor: Scripted ExecutionOutcomes implementing SupervisorPort
- FakeCleanup: Counting cleanup hook implementing CleanupPort
- FakeDisplaySink: Captures displayed lines, can simulate a broken pipe
- FakeHandle: Signal-recording stand-in for ProcessHandle

Usage:
    from tests.fakes import FakeSupervisor, make_outcome

    async def test_something():
        supervisor = FakeSupervisor([make_outcome(exit_code=1), make_outcome()])
        ...
"""

from tests.fakes.cleanup import FakeCleanup
from tests.fakes.display import FakeDisplaySink
from tests.fakes.process import FakeHandle
from tests.fakes.supervisor import FakeSupervisor, SupervisorCall, make_outcome

__all__ = [
    "FakeCleanup",
    "FakeDisplaySink",
    "FakeHandle",
    "FakeSupervisor",
    "SupervisorCall",
    "make_outcome",
]
