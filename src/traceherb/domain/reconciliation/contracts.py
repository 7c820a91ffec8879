"""Shared reconciliation contract components.

Holds the outcome dataclasses produced by identity resolution and the
decisions handed between the arbiter and the merge stage.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Literal

from traceherb.domain.model import MatchKind

if TYPE_CHECKING:
    from traceherb.domain.model import BatchStatus, StatusConflict


class ResolutionStatus(StrEnum):
    """Outcome produced by identity resolution."""

    NEW = "new"
    RESOLVED = "resolved"
    AMBIGUOUS = "ambiguous"


@dataclass(slots=True, kw_only=True)
class NewIdentityResolution:
    """Record matches no known alias and starts a new identity."""

    status: Literal[ResolutionStatus.NEW] = ResolutionStatus.NEW
    reason: str | None = None


@dataclass(slots=True, kw_only=True)
class ResolvedIdentityResolution:
    """Record resolved to one canonical identity."""

    target: str
    match_kind: MatchKind
    confidence: float | None = None
    matched_value: str | None = None
    reason: str | None = None
    status: Literal[ResolutionStatus.RESOLVED] = ResolutionStatus.RESOLVED


@dataclass(slots=True, kw_only=True)
class AmbiguousIdentityResolution:
    """Record matched several identities; ``target`` is the deterministic winner."""

    target: str
    candidates: tuple[str, ...]
    match_kind: MatchKind
    confidence: float | None = None
    reason: str | None = None
    status: Literal[ResolutionStatus.AMBIGUOUS] = ResolutionStatus.AMBIGUOUS

    def __post_init__(self) -> None:
        if len(self.candidates) < 2:  # noqa: PLR2004
            raise ValueError("Ambiguous resolution must include at least two candidates")
        if self.target not in self.candidates:
            raise ValueError("Ambiguous resolution target must be one of its candidates")

    @property
    def absorbed(self) -> tuple[str, ...]:
        """Identities merged into ``target`` (only exact ambiguity fuses identities)."""

        if self.match_kind is not MatchKind.EXACT:
            return ()
        return tuple(candidate for candidate in self.candidates if candidate != self.target)


type IdentityResolution = (
    NewIdentityResolution | ResolvedIdentityResolution | AmbiguousIdentityResolution
)


@dataclass(frozen=True, slots=True)
class IdentityLink:
    """Result of linking one record into the identity registry."""

    identity: str
    resolution: IdentityResolution
    absorbed: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class StatusDecision:
    """Arbitrated status plus the records it overrules for decision fields."""

    status: BatchStatus
    conflict: StatusConflict | None = None
    overruled: frozenset[str] = field(default_factory=frozenset)
