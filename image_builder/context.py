"""Timing traces around artifact builds and remote session phases.

Traces nest, and each asyncio task building an artifact has its own stack:
```
[Trace] > Build all > Build 'app' > creating pod
[Trace] < Build all > Build 'app' > creating pod (0.42s)
```
"""

import contextvars
from contextlib import contextmanager
import logging
from time import perf_counter
from typing import Generator


_LOGGER = logging.getLogger(__name__)

# No public API
__all__: list[str] = []


_TRACE: contextvars.ContextVar[tuple[str, ...]] = contextvars.ContextVar(
    "image_builder_trace", default=()
)


@contextmanager
def trace_context(name: str) -> Generator[None, None, None]:
    """Log entering and leaving the named block with the time spent in it."""
    names = _TRACE.get() + (name,)
    token = _TRACE.set(names)
    label = " > ".join(names)
    start = perf_counter()
    _LOGGER.debug("[Trace] > %s", label)
    try:
        yield
    finally:
        _TRACE.reset(token)
        _LOGGER.debug("[Trace] < %s (%0.2fs)", label, perf_counter() - start)
