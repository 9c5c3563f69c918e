"""Data models for the API1 to API2 customer sync."""

from dataclasses import dataclass
from enum import Enum


@dataclass(frozen=True)
class SourceCustomer:
    """A customer as read from API1."""

    name: str
    active_at: str | None
    arr: float | None
    team_member_id: int | str | None
    updated_at: str | None  # ISO-8601, drives the watermark

    @classmethod
    def from_api(cls, data: dict) -> "SourceCustomer":
        return cls(
            name=data.get("name"),
            active_at=data.get("activeAt"),
            arr=data.get("arr"),
            team_member_id=data.get("teamMemberId"),
            updated_at=data.get("updatedAt"),
        )


@dataclass
class DestinationCustomer:
    """A customer as stored in API2."""

    name: str
    active_at: str | None = None
    arr: float | None = None
    team_member_id: int | str | None = None
    id: int | str | None = None  # Assigned by API2 on create

    @classmethod
    def from_api(cls, data: dict) -> "DestinationCustomer":
        return cls(
            id=data.get("id"),
            name=data.get("name"),
            active_at=data.get("activeAt"),
            arr=data.get("arr"),
            team_member_id=data.get("teamMemberId"),
        )

    @classmethod
    def from_source(cls, customer: SourceCustomer) -> "DestinationCustomer":
        """Candidate payload built from the four business fields."""
        return cls(
            name=customer.name,
            active_at=customer.active_at,
            arr=customer.arr,
            team_member_id=customer.team_member_id,
        )

    def to_payload(self) -> dict:
        payload = {
            "name": self.name,
            "activeAt": self.active_at,
            "arr": self.arr,
            "teamMemberId": self.team_member_id,
        }
        if self.id is not None:
            payload["id"] = self.id
        return payload


class Outcome(Enum):
    """Result of reconciling one source customer."""

    CREATED = "created"
    UPDATED = "updated"
    ERROR = "error"
    WOULD_CREATE = "would_create"
    WOULD_UPDATE = "would_update"


@dataclass
class SyncConfig:
    """Tuning values for a sync run."""

    max_concurrent_requests: int = 5
    timeout_s: float = 30.0
    max_retries: int = 5
    max_backoff_s: float = 600.0
    state_file: str = "last_sync_date.json"
    lock_stale_s: float = 3600.0

    @classmethod
    def from_dict(cls, config: dict) -> "SyncConfig":
        section = config.get("sync", {})
        defaults = cls()
        return cls(
            max_concurrent_requests=int(
                section.get("max_concurrent_requests", defaults.max_concurrent_requests)
            ),
            timeout_s=float(section.get("timeout_s", defaults.timeout_s)),
            max_retries=int(section.get("max_retries", defaults.max_retries)),
            max_backoff_s=float(section.get("max_backoff_s", defaults.max_backoff_s)),
            state_file=section.get("state_file", defaults.state_file),
            lock_stale_s=float(section.get("lock_stale_s", defaults.lock_stale_s)),
        )


@dataclass
class SyncStats:
    """Counters for one sync run."""

    updated: int = 0
    created: int = 0
    errors: int = 0
    # Record count of the first group, not the number of groups
    chunks_processed: int = 0
    groups: int = 0
    skipped: int = 0

    def record(self, outcome: Outcome) -> None:
        if outcome is Outcome.UPDATED:
            self.updated += 1
        elif outcome is Outcome.CREATED:
            self.created += 1
        elif outcome is Outcome.ERROR:
            self.errors += 1
        else:
            self.skipped += 1


@dataclass
class SyncResult:
    """What a single run reports back to its caller."""

    status: str  # success | extraction_failed | persistence_failed | locked
    previous_watermark: str | None = None
    watermark: str | None = None
    stats: SyncStats | None = None

    @property
    def ok(self) -> bool:
        return self.status == "success"
