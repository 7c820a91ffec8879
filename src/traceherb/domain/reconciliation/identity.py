"""Identity resolution across independently generated batch identifiers.

Responsibilities of this stage:
- map the external ids carried by a record onto one canonical identity key
- classify each record as NEW/RESOLVED/AMBIGUOUS
- fuse identities when one record links two of them exactly

Identity keys are opaque; once an alias is linked it never moves back out.
The resolver is not thread-safe; callers serialise access (the engine does
so with its registry lock).
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from typing import TYPE_CHECKING

from traceherb.domain.errors import MalformedRecordError
from traceherb.domain.model import MatchKind

from .contracts import (
    AmbiguousIdentityResolution,
    IdentityLink,
    NewIdentityResolution,
    ResolvedIdentityResolution,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from traceherb.domain.model import BatchRecord, SourceRole

    from .contracts import IdentityResolution

log = logging.getLogger(__name__)

type KeyFactory = Callable[[], str]

DEFAULT_MIN_FUZZY_LENGTH = 4


def _uuid_key() -> str:
    return str(uuid.uuid4())


def normalize_identifier(value: str) -> str:
    return value.strip()


class IdentityResolver:
    """Registry of aliases per canonical identity."""

    def __init__(
        self,
        *,
        min_fuzzy_length: int = DEFAULT_MIN_FUZZY_LENGTH,
        key_factory: KeyFactory | None = None,
    ) -> None:
        if min_fuzzy_length < 1:
            raise ValueError("min_fuzzy_length must be positive")
        self._min_fuzzy_length = min_fuzzy_length
        self._key_factory = key_factory or _uuid_key
        self._owner: dict[str, str] = {}
        self._aliases: dict[str, set[str]] = {}
        self._fuzzy_aliases: dict[str, set[str]] = {}
        self._sources: dict[str, set[SourceRole]] = {}
        self._redirects: dict[str, str] = {}

    # ------------------------------------------------------------------ queries

    def identities(self) -> tuple[str, ...]:
        return tuple(sorted(self._aliases))

    def canonical(self, key: str) -> str:
        """Follow redirects left behind by fused identities."""

        seen: set[str] = set()
        while key in self._redirects and key not in seen:
            seen.add(key)
            key = self._redirects[key]
        return key

    def lookup(self, identifier: str) -> str | None:
        """Return the identity for an exact alias or identity key, if known."""

        value = normalize_identifier(identifier)
        if not value:
            return None
        owner = self._owner.get(value)
        if owner is not None:
            return self.canonical(owner)
        key = self.canonical(value)
        return key if key in self._aliases else None

    def aliases(self, key: str) -> frozenset[str]:
        return frozenset(self._aliases.get(self.canonical(key), ()))

    def low_confidence_aliases(self, key: str) -> frozenset[str]:
        return frozenset(self._fuzzy_aliases.get(self.canonical(key), ()))

    def sources(self, key: str) -> frozenset[SourceRole]:
        return frozenset(self._sources.get(self.canonical(key), ()))

    def classify(self, values: Iterable[str]) -> IdentityResolution:
        """Classify identifier values against the registry without mutating it."""

        normalized = sorted({normalize_identifier(value) for value in values} - {""})
        exact = sorted(
            {self.canonical(self._owner[value]) for value in normalized if value in self._owner}
        )
        if len(exact) == 1:
            matched = next(value for value in normalized if value in self._owner)
            return ResolvedIdentityResolution(
                target=exact[0],
                match_kind=MatchKind.EXACT,
                confidence=1.0,
                matched_value=matched,
                reason="exact_match",
            )
        if exact:
            return AmbiguousIdentityResolution(
                target=self._pick_winner(exact),
                candidates=tuple(exact),
                match_kind=MatchKind.EXACT,
                confidence=1.0,
                reason="multiple_exact_matches",
            )
        return self._classify_fuzzy(normalized)

    # ---------------------------------------------------------------- mutation

    def link(self, record: BatchRecord) -> IdentityLink:
        """Resolve ``record`` and register its identifiers under the chosen identity."""

        values = {normalize_identifier(value) for value in record.id_values} - {""}
        if not values:
            raise MalformedRecordError(
                f"{record.source_role} record {record.fingerprint[:12]} carries no identifier"
            )
        resolution = self.classify(values)
        absorbed: tuple[str, ...] = ()
        match resolution:
            case NewIdentityResolution():
                identity = self._new_identity()
                fuzzy = False
            case ResolvedIdentityResolution(target=target, match_kind=kind):
                identity = target
                fuzzy = kind is MatchKind.FUZZY
            case AmbiguousIdentityResolution(target=target, match_kind=kind):
                identity = target
                fuzzy = kind is MatchKind.FUZZY
                absorbed = resolution.absorbed
                for loser in absorbed:
                    self._absorb(identity, loser)
                log.warning(
                    "Ambiguous identity for %s record (%s match on %s); %s",
                    record.source_role,
                    kind,
                    ", ".join(resolution.candidates),
                    f"fused into {identity}" if absorbed else f"linked to {identity} only",
                )
        self._register(identity, values, fuzzy=fuzzy)
        self._sources[identity].add(record.source_role)
        return IdentityLink(identity=identity, resolution=resolution, absorbed=absorbed)

    # ---------------------------------------------------------------- internals

    def _classify_fuzzy(self, values: list[str]) -> IdentityResolution:
        matches: dict[str, tuple[float, str]] = {}
        for value in values:
            for token in self._tokens(value):
                for alias, owner in sorted(self._owner.items()):
                    if len(alias) < self._min_fuzzy_length:
                        continue
                    if token in alias or alias in token:
                        key = self.canonical(owner)
                        confidence = min(len(token), len(alias)) / max(len(token), len(alias))
                        if key not in matches or confidence > matches[key][0]:
                            matches[key] = (confidence, alias)
        if not matches:
            return NewIdentityResolution(reason="no_match")
        candidates = sorted(matches)
        if len(candidates) == 1:
            confidence, alias = matches[candidates[0]]
            return ResolvedIdentityResolution(
                target=candidates[0],
                match_kind=MatchKind.FUZZY,
                confidence=confidence,
                matched_value=alias,
                reason="fuzzy_match",
            )
        return AmbiguousIdentityResolution(
            target=self._pick_winner(candidates),
            candidates=tuple(candidates),
            match_kind=MatchKind.FUZZY,
            confidence=min(matches[key][0] for key in candidates),
            reason="multiple_fuzzy_matches",
        )

    def _tokens(self, value: str) -> tuple[str, ...]:
        # Portals prefix locally generated ids ("HERB_<code>"); the suffix alone also counts.
        tokens = {value}
        if "_" in value:
            tokens.add(value.rsplit("_", 1)[1])
        return tuple(sorted(token for token in tokens if len(token) >= self._min_fuzzy_length))

    def _pick_winner(self, candidates: Iterable[str]) -> str:
        return min(candidates, key=lambda key: (-len(self._sources.get(key, ())), key))

    def _new_identity(self) -> str:
        key = self._key_factory()
        while key in self._aliases or key in self._redirects:
            key = self._key_factory()
        self._aliases[key] = set()
        self._fuzzy_aliases[key] = set()
        self._sources[key] = set()
        return key

    def _register(self, identity: str, values: Iterable[str], *, fuzzy: bool) -> None:
        for value in values:
            if value in self._owner:
                continue
            self._owner[value] = identity
            self._aliases[identity].add(value)
            if fuzzy:
                self._fuzzy_aliases[identity].add(value)

    def _absorb(self, winner: str, loser: str) -> None:
        for value in self._aliases.pop(loser, set()):
            self._owner[value] = winner
            self._aliases[winner].add(value)
        self._fuzzy_aliases[winner] |= self._fuzzy_aliases.pop(loser, set())
        self._sources[winner] |= self._sources.pop(loser, set())
        self._redirects[loser] = winner
        for key, target in self._redirects.items():
            if target == loser:
                self._redirects[key] = winner
