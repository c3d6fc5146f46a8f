"""
Job-related type definitions.
"""

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from claimqueue.constants import FIELD_FAILED_AT, FIELD_SUCCEEDED_AT

_METADATA_ATTRS = {"started_at", "succeeded_at", "failed_at", "error"}


class Job(BaseModel):
    """
    A unit of work: user-defined fields plus reserved metadata.

    User fields are kept as pydantic extras. Reserved fields use their wire
    names (``startedAt`` etc.) when serialized to the store. Timestamps are
    epoch milliseconds assigned by the store, never by the caller.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str | None = None
    priority: int | float | None = None
    started_at: int | None = Field(default=None, alias="startedAt")
    succeeded_at: int | None = Field(default=None, alias="succeededAt")
    failed_at: int | None = Field(default=None, alias="failedAt")
    error: str | None = None

    @classmethod
    def coerce(cls, job: "Job | Mapping[str, Any]") -> "Job":
        """Accept either a Job or a plain mapping of fields."""
        if isinstance(job, Job):
            return job
        return cls.model_validate(dict(job))

    @classmethod
    def from_record(cls, key: str, value: Mapping[str, Any]) -> "Job":
        """
        Build a Job from a stored record.

        Args:
            key: The store location key the record lives under.
            value: The stored record.

        Returns:
            The Job, with ``id`` derived from the key when the record had none.
        """
        job = cls.model_validate(dict(value))
        if job.id is None:
            job.id = key
        return job

    @property
    def payload(self) -> dict[str, Any]:
        """User-defined fields only."""
        return dict(self.model_extra or {})

    def get(self, name: str, default: Any = None) -> Any:
        """Get a user-defined field."""
        return (self.model_extra or {}).get(name, default)

    @property
    def is_failed(self) -> bool:
        """A failed job has failedAt set and no succeededAt."""
        return self.failed_at is not None and self.succeeded_at is None

    def to_record(self) -> dict[str, Any]:
        """All set fields, keyed by wire name."""
        return self.model_dump(by_alias=True, exclude_none=True)

    def to_pending_record(self) -> dict[str, Any]:
        """Payload plus id and priority, with lifecycle metadata reset."""
        return self.model_dump(
            by_alias=True,
            exclude_none=True,
            exclude=_METADATA_ATTRS,
        )


def is_failed_record(value: Any) -> bool:
    """Check a raw stored record against the failed-job rule."""
    return (
        isinstance(value, Mapping)
        and value.get(FIELD_FAILED_AT) is not None
        and value.get(FIELD_SUCCEEDED_AT) is None
    )
