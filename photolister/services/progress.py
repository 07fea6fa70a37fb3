"""
Per-job progress records, written by the generation pipeline and polled by
the client. Kept in memory only.
"""

import logging
import time

from photolister.models import TOTAL_STEPS, ProgressState

logger = logging.getLogger("photolister.progress")

STAGES = [
    "analyzing_photos",
    "searching_similar_items",
    "generating_content",
    "setting_price",
    "creating_draft",
]
COMPLETED = "completed"
ERROR = "error"
STARTED = "started"
NOT_STARTED = "not_started"

FINISHED_TTL_SECONDS = 60 * 60


class ProgressTracker:
    def __init__(self, ttl: float = FINISHED_TTL_SECONDS):
        self._states: dict[str, ProgressState] = {}
        self._finished_at: dict[str, float] = {}
        self._ttl = ttl

    def _evict(self):
        cutoff = time.monotonic() - self._ttl
        for job_id in [j for j, t in self._finished_at.items() if t < cutoff]:
            self._states.pop(job_id, None)
            self._finished_at.pop(job_id, None)

    def _write(self, job_id: str, state: ProgressState) -> ProgressState:
        current = self._states.get(job_id)
        if current is not None and current.status == ERROR:
            logger.debug("Ignoring %s for job %s, already failed", state.status, job_id)
            return current
        if (
            current is not None
            and state.status != ERROR
            and state.steps_completed < current.steps_completed
        ):
            raise ValueError(
                f"Job {job_id} cannot go back from step {current.steps_completed} "
                f"to {state.steps_completed}"
            )
        if current is not None and state.owner_id is None:
            state = state.model_copy(update={"owner_id": current.owner_id})
        self._states[job_id] = state
        if state.status in (COMPLETED, ERROR):
            self._finished_at[job_id] = time.monotonic()
        return state

    def start(self, job_id: str, owner_id: str | None = None) -> ProgressState:
        self._evict()
        self._states.pop(job_id, None)
        self._finished_at.pop(job_id, None)
        return self._write(job_id, ProgressState(
            job_id=job_id,
            owner_id=owner_id,
            status=STARTED,
            current_step=STAGES[0],
            steps_completed=0,
        ))

    def advance(self, job_id: str, stage: str) -> ProgressState:
        """Mark ``stage`` as current; steps completed is the stage's index."""
        if stage not in STAGES:
            raise ValueError(f"Unknown stage {stage!r}")
        return self._write(job_id, ProgressState(
            job_id=job_id,
            status=stage,
            current_step=stage,
            steps_completed=STAGES.index(stage),
        ))

    def complete(self, job_id: str, listing_id: str) -> ProgressState:
        return self._write(job_id, ProgressState(
            job_id=job_id,
            status=COMPLETED,
            current_step=COMPLETED,
            steps_completed=TOTAL_STEPS,
            listing_id=listing_id,
        ))

    def fail(self, job_id: str, message: str) -> ProgressState:
        return self._write(job_id, ProgressState(
            job_id=job_id,
            status=ERROR,
            current_step=ERROR,
            steps_completed=0,
            error=message or "Unknown error during listing generation",
        ))

    def get(self, job_id: str) -> ProgressState:
        self._evict()
        state = self._states.get(job_id)
        return state if state is not None else ProgressState(job_id=job_id, status=NOT_STARTED)


tracker = ProgressTracker()
