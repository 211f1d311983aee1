"""Pydantic models for reclamation outcomes and the probe API."""

from enum import Enum

from pydantic import BaseModel, Field


class ReclamationStatus(str, Enum):
    RECLAIMED = "reclaimed"  # container gone and records deleted
    PARTIAL = "partial"  # records deleted, a container call failed
    LEAKED = "leaked"  # store unreachable, records may remain


class ContainerState(str, Enum):
    REMOVED = "removed"
    NOT_FOUND = "not_found"
    NO_MAPPING = "no_mapping"
    FAILED = "failed"
    UNKNOWN = "unknown"


class ReclamationOutcome(BaseModel):
    """Result of one reclamation, logged for every session."""

    session_id: str
    status: ReclamationStatus = ReclamationStatus.RECLAIMED
    container_id: str | None = None
    port: int | None = None
    container_state: ContainerState = ContainerState.UNKNOWN
    failed_step: str | None = None  # resolve | find | stop | remove | cleanup
    error: str | None = None
    records_deleted: int = 0
    duration_seconds: float = 0.0

    def fail(self, step: str, error: Exception, status: ReclamationStatus) -> None:
        """Record a failed step; a later failure keeps the more severe status."""
        if self.failed_step is None:
            self.failed_step = step
            self.error = str(error)
        if status == ReclamationStatus.LEAKED or self.status == ReclamationStatus.RECLAIMED:
            self.status = status


class StatsResponse(BaseModel):
    """Response for GET /stats."""

    subscribed: bool
    submitted: int = 0
    in_flight: int = 0
    reclaimed: int = 0
    partial: int = 0
    leaked: int = 0
    error: int = Field(default=0, description="Tasks that raised past the reclaimer")
