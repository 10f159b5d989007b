"""
Domain types shared by the aggregation engines.

Everything here is plain data: no I/O and no discord imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class Stage(Enum):
    """Session stages; terminal transitions remove the session instead of storing a stage."""

    AWAITING_IMAGES = "awaiting_images"
    AWAITING_COMPLETION = "awaiting_completion"
    RESOLVING_CONFLICTS = "resolving_conflicts"
    FINAL_CONFIRMATION = "final_confirmation"


class DecisionType(Enum):
    DONE = "done"
    ADD_MORE = "add_more"
    CANCEL = "cancel"
    RESOLVE = "resolve"
    INCLUDE = "include"
    CONFIRM_OVERWRITE = "confirm_overwrite"
    CONFIRM_COMMIT = "confirm_commit"
    CANCEL_COMMIT = "cancel_commit"
    PHASE2_NEXT_ROUND = "phase2_next_round"


@dataclass(frozen=True)
class Member:
    """Roster snapshot entry."""

    member_id: int
    display_name: str
    alias: str = ""


@dataclass(frozen=True)
class Clan:
    key: str
    label: str
    role_id: int


@dataclass(frozen=True, order=True)
class WeekInfo:
    """ISO week of the session creation instant."""

    year: int
    week: int

    @property
    def key(self) -> str:
        return f"{self.week}-{self.year}"

    def __str__(self) -> str:
        return f"week {self.week}/{self.year}"


@dataclass(frozen=True)
class LineReading:
    """One ``(nick, score)`` row recognised in an image, before roster matching."""

    nick: str
    score: int
    uncertain: bool = False
    raw_line: str = ""


@dataclass(frozen=True)
class MatchedReading:
    """A LineReading snapped to a roster member."""

    member_id: int
    nick: str
    score: int
    uncertain: bool = False
    ocr_token: str = ""
    similarity: float = 1.0


@dataclass
class ImageOutcome:
    """Per-image result of ``submit_images``."""

    index: int
    url: str
    ok: bool
    readings: List[MatchedReading] = field(default_factory=list)
    dropped_tokens: List[str] = field(default_factory=list)
    error: Optional[str] = None
    downloaded_path: Optional[str] = None
    processed_path: Optional[str] = None

    @property
    def notice(self) -> Optional[str]:
        if not self.ok:
            return f"Image {self.index + 1} skipped: {self.error}"
        if not self.readings and self.dropped_tokens:
            return f"Image {self.index + 1}: no roster members recognised"
        if not self.readings:
            return f"Image {self.index + 1}: no score rows found"
        return None


@dataclass
class Decision:
    """
    Operator action.

    RESOLVE carries ``member_id`` and either the ``score`` itself or the
    ``choice`` index of the pressed button; INCLUDE carries ``member_id`` and
    ``include``.
    """

    type: DecisionType
    member_id: Optional[int] = None
    score: Optional[int] = None
    choice: Optional[int] = None
    include: Optional[bool] = None

    @classmethod
    def resolve(cls, member_id: int, score: int) -> "Decision":
        return cls(DecisionType.RESOLVE, member_id=member_id, score=score)

    @classmethod
    def pick(cls, member_id: int, choice: int) -> "Decision":
        return cls(DecisionType.RESOLVE, member_id=member_id, choice=choice)

    @classmethod
    def include_row(cls, member_id: int, include: bool) -> "Decision":
        return cls(DecisionType.INCLUDE, member_id=member_id, include=include)

    @classmethod
    def of(cls, value: str) -> "Decision":
        return cls(DecisionType(value))


@dataclass(frozen=True)
class OutboundEvent:
    """A render request for the transport: ``kind`` selects the prompt, ``payload`` carries it."""

    kind: str
    session_id: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PlayerScore:
    member_id: int
    display_name: str
    score: int

    def to_dict(self) -> Dict[str, Any]:
        return {"memberId": self.member_id, "displayName": self.display_name, "score": self.score}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlayerScore":
        return cls(
            member_id=int(data["memberId"]),
            display_name=str(data["displayName"]),
            score=int(data["score"]),
        )


@dataclass
class FinalResults:
    """``nick -> score`` with the member id kept alongside; insertion order is display order."""

    players: List[PlayerScore] = field(default_factory=list)

    def as_map(self) -> Dict[str, int]:
        return {p.display_name: p.score for p in self.players}

    def scores(self) -> List[int]:
        return [p.score for p in self.players]

    def __len__(self) -> int:
        return len(self.players)


@dataclass
class Session:
    """Mutable per-operator session owned by the SessionManager."""

    session_id: str
    guild_id: int
    operator_id: int
    phase: int
    clan: str
    week_info: WeekInfo
    created_at: datetime
    roster: Tuple[Member, ...] = ()
    stage: Stage = Stage.AWAITING_IMAGES
    current_round: int = 1
    channel_id: Optional[int] = None
    processed_images: List[str] = field(default_factory=list)
    image_readings: List[List[MatchedReading]] = field(default_factory=list)
    conflicts: List[int] = field(default_factory=list)
    resolved_conflicts: Dict[int, int] = field(default_factory=dict)
    uncertain_members: List[int] = field(default_factory=list)
    included_uncertain: Dict[int, bool] = field(default_factory=dict)
    rounds_data: List[FinalResults] = field(default_factory=list)
    downloaded_files: List[str] = field(default_factory=list)
    pending_overwrite: bool = False
    public_message_handle: Optional[Any] = None

    @property
    def has_readings(self) -> bool:
        return any(self.image_readings)

    def reset_round(self) -> None:
        """Drop per-round state before the next phase-2 round."""
        self.image_readings = []
        self.conflicts = []
        self.resolved_conflicts = {}
        self.uncertain_members = []
        self.included_uncertain = {}
        self.stage = Stage.AWAITING_IMAGES
