"""In-memory cloud for executor and task tests.

Key Features:
- In-memory resource state keyed by resource ID
- Call recording with start/end events for ordering assertions
- Failure injection per operation and resource
- Artificial latency and max-concurrency tracking
- Scripted stub tasks that exercise the reconciler protocol

Usage:
    from cloud_mock import InMemoryCloud, StubTask

    cloud = InMemoryCloud()
    cloud.fail("create", "stub/a", RuntimeError("boom"))
    report = await Executor(cloud).run(graph)

    assert cloud.mutating_calls == []
"""

from .cloud import CloudCall, InMemoryCloud
from .tasks import StubTask, make_graph, sid, stub_id

__all__ = [
    "CloudCall",
    "InMemoryCloud",
    "StubTask",
    "make_graph",
    "sid",
    "stub_id",
]
