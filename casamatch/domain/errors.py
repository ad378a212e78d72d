# casamatch/domain/errors.py
from __future__ import annotations


class ListingRejected(ValueError):
    """A listing that cannot become a canonical property (missing address, price, ...)."""


class SourceUnavailable(RuntimeError):
    def __init__(self, source: str):
        super().__init__(f"source unavailable: {source}")
        self.source = source


class CheckpointVersionError(ValueError):
    """Stored checkpoint/results payload does not match the shape this build understands."""


class CheckpointPersistenceError(RuntimeError):
    def __init__(self, job_id: int, attempts: int):
        super().__init__(f"checkpoint write failed for job {job_id} after {attempts} attempts")
        self.job_id = job_id
        self.attempts = attempts


class ScorerError(RuntimeError):
    """The external match scorer failed or answered with something unusable."""
