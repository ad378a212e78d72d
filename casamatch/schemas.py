from __future__ import annotations

from datetime import datetime
from typing import Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .domain.errors import CheckpointVersionError

CHECKPOINT_VERSION = 1
RESULTS_VERSION = 1


class SearchCriteria(BaseModel):
    """What a job asks its sources for."""
    model_config = ConfigDict(extra="ignore")

    city: str | None = None
    min_price: float | None = Field(default=None, ge=0)
    max_price: float | None = Field(default=None, ge=0)
    min_size: float | None = Field(default=None, ge=0)
    max_size: float | None = Field(default=None, ge=0)
    min_rooms: int | None = Field(default=None, ge=0)
    property_types: list[str] = Field(default_factory=list)
    max_items: int | None = Field(default=None, gt=0)


class JobConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sources: list[str] = Field(default_factory=list)
    batch_size: int | None = Field(default=None, gt=0)
    fetch_details: bool = False


class Checkpoint(BaseModel):
    """
    Durable progress marker of a job.

    source/offset point at the next unprocessed listing of the source in progress;
    completed_sources are never fetched again for this job.
    """
    model_config = ConfigDict(extra="forbid")

    version: Literal[1] = CHECKPOINT_VERSION
    source: str | None = None
    offset: int = Field(default=0, ge=0)
    run_ids: dict[str, str] = Field(default_factory=dict)
    completed_sources: list[str] = Field(default_factory=list)

    def start_source(self, source: str) -> int:
        """Return the offset to resume from for this source."""
        if self.source != source:
            self.source = source
            self.offset = 0
        return self.offset

    def complete_source(self, source: str) -> None:
        if source not in self.completed_sources:
            self.completed_sources.append(source)
        self.source = None
        self.offset = 0


class ItemError(BaseModel):
    model_config = ConfigDict(extra="forbid")

    source: str
    external_id: str | None = None
    message: str
    at: datetime


class SourceResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    fetched: int = 0
    imported: int = 0
    updated: int = 0
    failed: int = 0
    error: str | None = None


class JobResults(BaseModel):
    model_config = ConfigDict(extra="forbid")

    version: Literal[1] = RESULTS_VERSION
    total_fetched: int = 0
    imported: int = 0
    updated: int = 0
    failed: int = 0
    errors: list[ItemError] = Field(default_factory=list)
    per_source: dict[str, SourceResult] = Field(default_factory=dict)
    # canonical ids this job created or updated; feed the dedup scope and matching
    created_ids: list[int] = Field(default_factory=list)
    touched_ids: list[int] = Field(default_factory=list)
    dedup: dict[str, int] | None = None
    matching: dict[str, int] | None = None
    note: str | None = None

    def source(self, name: str) -> SourceResult:
        return self.per_source.setdefault(name, SourceResult())

    def record_property(self, property_id: int, *, created: bool) -> None:
        if created and property_id not in self.created_ids:
            self.created_ids.append(property_id)
        if property_id not in self.touched_ids:
            self.touched_ids.append(property_id)

    def record_error(self, err: ItemError, cap: int) -> None:
        """Append, evicting the oldest entries once the cap is hit."""
        self.errors.append(err)
        if cap > 0 and len(self.errors) > cap:
            del self.errors[: len(self.errors) - cap]

    @property
    def changed(self) -> int:
        return self.imported + self.updated


M = TypeVar("M", bound=BaseModel)


def _load(model: type[M], raw: str | None, what: str) -> M:
    if not raw:
        return model()
    try:
        return model.model_validate_json(raw)
    except ValidationError as e:
        raise CheckpointVersionError(f"unreadable {what}: {e.error_count()} validation error(s)") from e


def load_checkpoint(raw: str | None) -> Checkpoint:
    """Missing payload => fresh checkpoint. Wrong shape/version => CheckpointVersionError."""
    return _load(Checkpoint, raw, "checkpoint")


def load_results(raw: str | None) -> JobResults:
    return _load(JobResults, raw, "results")
