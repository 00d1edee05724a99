"""
Pydantic models for receipts, bounties, stored documents and dashboard output.
"""

from datetime import datetime
from typing import Optional, List, Literal, Any, Dict
from pydantic import BaseModel, ConfigDict, Field, AliasChoices, field_validator


RECEIPT_ACTIONS = (
    "like",
    "tip",
    "tip_sent",
    "use",
    "bounty",
    "daily_bounty",
    "daily_signin",
    "draft_cost",
    "listen",
    "reply",
    "self_like",
    "unknown",
)

ReceiptAction = Literal[
    "like", "tip", "tip_sent", "use", "bounty", "daily_bounty", "daily_signin",
    "draft_cost", "listen", "reply", "self_like", "unknown",
]

SELF_USER = "you"

# Concept-use receipts are recorded with the verb that produced them
ACTION_ALIASES = {
    "create": "use",
    "generate": "use",
}


class Receipt(BaseModel):
    """A single recorded platform activity with a signed clout value.

    Stored and pasted documents use the wire names ``clout`` and ``date``;
    both the wire names and the field names are accepted on input.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    user: str = Field("", description="Who performed the action ('you' for yourself)")
    action: ReceiptAction = Field("unknown", description="Kind of activity")
    concept: Optional[str] = Field(None, description="Concept the activity relates to")
    amount: int = Field(0, alias="clout", description="Signed clout value")
    timestamp: str = Field("", alias="date", description="Free-form 'Mon D H:MM AM/PM' timestamp")
    raw: str = Field("", description="Original receipt text")

    @field_validator("user", "timestamp", "raw", mode="before")
    @classmethod
    def none_to_empty(cls, v):
        """Missing text fields read as empty strings."""
        return "" if v is None else v

    @field_validator("action", mode="before")
    @classmethod
    def coerce_action(cls, v):
        """Unrecognised actions are kept as 'unknown' rather than rejected."""
        if isinstance(v, str):
            v = ACTION_ALIASES.get(v, v)
        return v if v in RECEIPT_ACTIONS else "unknown"

    @field_validator("concept", mode="before")
    @classmethod
    def empty_concept_to_none(cls, v):
        return v or None

    @field_validator("amount", mode="before")
    @classmethod
    def coerce_amount(cls, v):
        """Null clout counts as zero; fractional clout is truncated."""
        if v is None:
            return 0
        if isinstance(v, float):
            return int(v)
        return v

    def to_document(self) -> Dict[str, Any]:
        """Serialize with wire names for storage."""
        return self.model_dump(by_alias=True)


class Bounty(BaseModel):
    """A self-funded promotional spend, optionally tagged to a concept."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    amount: int = Field(0, validation_alias=AliasChoices("amount", "clout"))
    timestamp: str = Field(
        "",
        validation_alias=AliasChoices("date", "timestamp"),
        serialization_alias="date",
    )

    @field_validator("amount", mode="before")
    @classmethod
    def non_negative_amount(cls, v):
        """Bounty spends may arrive as negative clout; store the magnitude."""
        if v is None:
            return 0
        return abs(int(v))

    @field_validator("timestamp", mode="before")
    @classmethod
    def none_to_empty(cls, v):
        return "" if v is None else v

    @classmethod
    def from_receipt(cls, receipt: Receipt) -> "Bounty":
        return cls(amount=receipt.amount, timestamp=receipt.timestamp)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class UserProfile(BaseModel):
    """Profile written at sign-up and read at every session start."""
    id: str = Field(..., description="Stable user id from the identity provider")
    username: str = Field("", description="Platform username")
    email: Optional[str] = Field(None, description="Login email")


class MetadataDocument(BaseModel):
    """Per-user singleton holding tagged and untagged bounties."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    bounties: Dict[str, List[Bounty]] = Field(default_factory=dict)
    untagged_bounties: List[Bounty] = Field(default_factory=list, alias="untaggedBounties")
    last_updated: Optional[str] = Field(None, alias="lastUpdated")
    migration_source: Optional[str] = Field(None, alias="migrationSource")
    migration_complete: Optional[bool] = Field(None, alias="migrationComplete")

    @field_validator("bounties", mode="before")
    @classmethod
    def drop_malformed_bounty_lists(cls, v):
        """Concepts whose bounty entry is not a list are ignored."""
        if not isinstance(v, dict):
            return {}
        return {name: items for name, items in v.items() if isinstance(items, list)}

    @field_validator("untagged_bounties", mode="before")
    @classmethod
    def untagged_must_be_list(cls, v):
        return v if isinstance(v, list) else []

    def to_document(self) -> Dict[str, Any]:
        """Serialize for storage, stamping ``lastUpdated``."""
        document = {
            "bounties": {
                name: [b.to_document() for b in items]
                for name, items in self.bounties.items()
            },
            "untaggedBounties": [b.to_document() for b in self.untagged_bounties],
            "lastUpdated": datetime.now().isoformat(),
        }
        # Left out unless set, so merged saves keep a stored migration marker
        if self.migration_source is not None:
            document["migrationSource"] = self.migration_source
            document["migrationComplete"] = bool(self.migration_complete)
        return document


class DayBucketDocument(BaseModel):
    """Per-day shard header stored above the shard's item documents."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    date: str = Field(..., description="Normalized day key, e.g. 'Oct 18'")
    item_count: int = Field(0, alias="itemCount")
    last_updated: Optional[str] = Field(None, alias="lastUpdated")


class PasteResult(BaseModel):
    """Summary of one paste operation."""
    added: int = 0
    added_bounties: int = 0
    skipped_missing_date: int = 0
    message: str = ""


class ProgressSnapshot(BaseModel):
    """Point-in-time view of a long-running bulk operation."""
    current: int = 0
    total: int = 0
    done: bool = False

    @property
    def percentage(self) -> int:
        if self.total <= 0:
            return 0
        return round(self.current / self.total * 100)


class MigrationOutcome(BaseModel):
    """Result of bringing a user's storage into the current sharded shape."""
    migrated: bool = False
    event_count: int = 0
    source_shape: str = "empty"
    skipped_missing_date: int = 0
    source_removed: bool = False
    unreadable: int = 0


class ClearOutcome(BaseModel):
    """Result of a background bulk delete."""
    success: bool = False
    buckets_deleted: int = 0
    total_buckets: int = 0
    error: Optional[str] = None


# Dashboard output

class BountyWindow(BaseModel):
    amount: int
    timestamp: Optional[str] = None
    earned: int = 0
    roi: int = 0


class ConceptPerformance(BaseModel):
    name: str
    income: int = 0
    uses: int = 0
    paid_uses: int = 0
    free_uses: int = 0
    avg_per_use: float = 0.0
    bounty_cost: int = 0
    bounty_earnings: int = 0
    bounty_windows: List[BountyWindow] = Field(default_factory=list)
    net_income: int = 0
    avg_roi: int = 0
    profitable: bool = False


class LeaderboardEntry(BaseModel):
    name: str
    value: int


class ActionCount(BaseModel):
    name: str
    value: int


class HourlyAmount(BaseModel):
    hour: int
    label: str
    amount: int


class FlowPoint(BaseModel):
    index: int
    amount: int
    total: int
    label: str


class DashboardSummary(BaseModel):
    receipt_count: int = 0
    total_amount: int = 0
    average_amount: float = 0.0
    oldest: Optional[datetime] = None
    newest: Optional[datetime] = None
    untagged_bounty_count: int = 0
    untagged_bounty_total: int = 0


class DashboardStats(BaseModel):
    """Everything the dashboard renders, derived from the event log."""
    time_filter: str
    summary: DashboardSummary
    concepts: List[ConceptPerformance] = Field(default_factory=list)
    top_users_by_count: List[LeaderboardEntry] = Field(default_factory=list)
    top_users_by_value: List[LeaderboardEntry] = Field(default_factory=list)
    actions: List[ActionCount] = Field(default_factory=list)
    time_of_day: List[HourlyAmount] = Field(default_factory=list)
    cumulative_flow: List[FlowPoint] = Field(default_factory=list)


class WebSocketMessage(BaseModel):
    """Base class for WebSocket messages sent to frontend."""
    type: str = Field(..., description="Message type identifier")
    data: Dict[str, Any] = Field(..., description="Message payload")


class ProgressMessage(WebSocketMessage):
    """Bulk delete progress pushed to connected clients."""
    type: Literal["delete_progress"] = "delete_progress"

    @field_validator("data")
    @classmethod
    def validate_progress_data(cls, v):
        """Ensure progress payload has current and total."""
        for field in ("current", "total"):
            if field not in v:
                raise ValueError(f"Progress data must contain '{field}'")
        return v
