"""
Tagged results for best-effort steps.

Soft failures in the pipeline (search, AI analysis, AI generation) never abort
the job. Each step is run through :func:`attempt`, which turns its return value
or exception into an :class:`Outcome`; callers then pick the first usable one
with :func:`first_ok` instead of juggling flags inside nested try blocks.
"""

import logging
from typing import Any, Awaitable, Callable, NamedTuple

logger = logging.getLogger("photolister.outcome")

OK = "ok"
EMPTY = "empty"
ERR = "err"


class Outcome(NamedTuple):
    kind: str
    value: Any = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.kind == OK

    def unwrap_or(self, default):
        return self.value if self.kind == OK else default


def ok(value) -> Outcome:
    return Outcome(OK, value)


def empty() -> Outcome:
    return Outcome(EMPTY)


def err(error: BaseException) -> Outcome:
    return Outcome(ERR, error=error)


def classify(value) -> Outcome:
    if value is None:
        return empty()
    if isinstance(value, (list, tuple, dict, str)) and not value:
        return empty()
    return ok(value)


async def attempt(label: str, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Outcome:
    """Await ``fn`` and tag the result. Exceptions are logged, never raised."""
    try:
        value = await fn(*args, **kwargs)
    except Exception as e:
        logger.warning("%s failed: %s", label, e)
        return err(e)
    outcome = classify(value)
    if outcome.kind == EMPTY:
        logger.info("%s returned nothing", label)
    return outcome


def first_ok(*outcomes: Outcome) -> Outcome:
    for outcome in outcomes:
        if outcome.ok:
            return outcome
    return empty()
