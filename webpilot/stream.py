"""
Per-execution step stream.

A thread-safe, iterable queue of AgentSteps. The executing thread
publishes; any number of readers iterate until the stream is closed.
"""

import json
import queue
import threading
from typing import Iterator, Optional

from .types import AgentStep, ExecutionSummary

_CLOSED = object()


class StepStream:
    """The subscriber side of one execution.

    Usage:
        stream = orchestrator.start(goal)
        for step in stream:
            print(step.description, step.success)
        print(stream.summary)
    """

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        self.summary: Optional[ExecutionSummary] = None
        self._queue: "queue.Queue[object]" = queue.Queue()
        self._closed = threading.Event()
        self._finished = threading.Event()
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def publish(self, step: AgentStep) -> bool:
        """Queue a step. Returns False once the stream is closed."""
        with self._lock:
            if self._closed.is_set():
                return False
            self._queue.put(step)
            return True

    def close(self) -> None:
        """Stop accepting steps and end iteration for readers."""
        with self._lock:
            if self._closed.is_set():
                return
            self._closed.set()
            self._queue.put(_CLOSED)

    def finish(self, summary: ExecutionSummary) -> None:
        """Attach the final summary and close."""
        self.summary = summary
        self.close()
        self._finished.set()

    def wait(self, timeout: Optional[float] = None) -> Optional[ExecutionSummary]:
        """Block until the execution has finalized."""
        self._finished.wait(timeout)
        return self.summary

    def __iter__(self) -> Iterator[AgentStep]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                # Leave the marker for other readers
                self._queue.put(_CLOSED)
                return
            yield item

    def sse_events(self, include_screenshots: bool = False) -> Iterator[str]:
        """Server-sent event frames: one per step, then the summary."""
        for step in self:
            payload = json.dumps(step.to_dict(include_screenshot=include_screenshots), default=str)
            yield f"event: step\ndata: {payload}\n\n"
        summary = self.wait()
        if summary is not None:
            yield f"event: summary\ndata: {json.dumps(summary.to_dict())}\n\n"
