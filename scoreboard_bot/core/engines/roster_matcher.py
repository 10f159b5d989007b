from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from scoreboard_bot.core.domain.models import LineReading, MatchedReading, Member
from scoreboard_bot.core.engines.base.logging_utils import get_logger
from scoreboard_bot.core.engines.similarity import similarity
from scoreboard_bot.core.engines.text_normalizer import fold_confusables, normalise

logger = get_logger("roster_matcher")


@dataclass(frozen=True)
class RosterMatch:
    member: Member
    similarity: float
    matched_name: str  # normalised form of the field that produced the best score


@dataclass(frozen=True)
class _Candidate:
    member: Member
    names: Tuple[str, ...]


class RosterMatcher:
    """
    Snap OCR nick tokens to the closest roster member.

    Each member is scored on both ``display_name`` and ``alias``; a member's score
    is the better of the two. Ties between members go to the longer normalised
    name, then to the lexicographically smaller ``str(member_id)``.
    """

    MATCH_THRESHOLD = 0.7

    def __init__(
        self,
        *,
        threshold: float = MATCH_THRESHOLD,
        detailed_logging: bool = False,
        log_threshold: float = 0.3,
    ) -> None:
        self.threshold = threshold
        self.detailed_logging = detailed_logging
        self.log_threshold = log_threshold

    def score(self, token_norm: str, name_norm: str) -> float:
        """Similarity of two normalised names, also tolerating lost diacritics."""
        if not token_norm or not name_norm:
            return 0.0
        direct = similarity(token_norm, name_norm)
        if direct >= 1.0:
            return direct
        return max(direct, similarity(fold_confusables(token_norm), fold_confusables(name_norm)))

    def match(self, token: str, roster: Sequence[Member]) -> Optional[RosterMatch]:
        """Return the best member for ``token`` at or above the threshold, else None."""
        return self._match_normalised(normalise(token), token, self._candidates(roster))

    def match_readings(
        self,
        readings: Iterable[LineReading],
        roster: Sequence[Member],
    ) -> Tuple[List[MatchedReading], List[str]]:
        """Match every reading; returns (matched readings, dropped OCR tokens)."""
        candidates = self._candidates(roster)
        matched: List[MatchedReading] = []
        dropped: List[str] = []
        for reading in readings:
            result = self._match_normalised(normalise(reading.nick), reading.nick, candidates)
            if result is None:
                dropped.append(reading.nick)
                continue
            matched.append(
                MatchedReading(
                    member_id=result.member.member_id,
                    nick=result.member.display_name,
                    score=reading.score,
                    uncertain=reading.uncertain,
                    ocr_token=reading.nick,
                    similarity=result.similarity,
                )
            )
        return matched, dropped

    @staticmethod
    def _candidates(roster: Sequence[Member]) -> List[_Candidate]:
        candidates = []
        for member in roster:
            names = tuple(dict.fromkeys(n for n in (normalise(member.display_name), normalise(member.alias)) if n))
            candidates.append(_Candidate(member=member, names=names))
        return candidates

    def _match_normalised(self, token_norm: str, token: str, candidates: List[_Candidate]) -> Optional[RosterMatch]:
        if not token_norm:
            logger.debug("Token %r normalises to nothing, no match", token)
            return None

        best: Optional[RosterMatch] = None
        for candidate in candidates:
            member_best: Optional[Tuple[float, str]] = None
            for name in candidate.names:
                value = self.score(token_norm, name)
                if self.detailed_logging and value >= self.log_threshold:
                    logger.info("  %r vs %r -> %.1f%%", token, candidate.member.display_name, value * 100)
                if member_best is None or (value, len(name)) > (member_best[0], len(member_best[1])):
                    member_best = (value, name)
            if member_best is None:
                continue
            current = RosterMatch(member=candidate.member, similarity=member_best[0], matched_name=member_best[1])
            if best is None or self._beats(current, best):
                best = current

        if best is None or best.similarity < self.threshold:
            logger.log(
                logging.INFO if self.detailed_logging else logging.DEBUG,
                "No roster match for %r (best %.2f)",
                token,
                best.similarity if best else 0.0,
            )
            return None
        return best

    @staticmethod
    def _beats(challenger: RosterMatch, incumbent: RosterMatch) -> bool:
        if challenger.similarity != incumbent.similarity:
            return challenger.similarity > incumbent.similarity
        if len(challenger.matched_name) != len(incumbent.matched_name):
            return len(challenger.matched_name) > len(incumbent.matched_name)
        return str(challenger.member.member_id) < str(incumbent.member.member_id)
