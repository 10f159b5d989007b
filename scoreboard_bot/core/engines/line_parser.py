"""
Turn recognised leaderboard text into ``(nick, score, uncertain)`` rows.

Row grammar (after trimming)::

    [rank] <nick> <score>[©]

``nick`` must contain at least one letter; ``score`` is a non-negative integer of
two or more digits (thousands separators allowed) or one of the glyphs the
recogniser produces for a zero in the game font (``o``, ``e``, ``(0)``, ``[o``...).
A trailing ``©`` on the line or on the nick marks a low-confidence row.
"""
from __future__ import annotations

import logging
import re
from typing import List, Optional, Tuple

from scoreboard_bot.core.domain.models import LineReading
from scoreboard_bot.core.engines.base.logging_utils import get_logger
from scoreboard_bot.core.engines.text_normalizer import POLISH_LETTERS

logger = get_logger("line_parser")

UNCERTAINTY_MARKER = "©"
LONG_NICK_LENGTH = 10

_ZERO_CORE = r"(?:0|o|e|9|1|zo|ze)"
_ZERO_GLYPH = rf"(?:\({_ZERO_CORE}\)?|\[{_ZERO_CORE}\]?|{_ZERO_CORE}[\)\]]?)"
_NUMBER = r"(?:\d{1,3}(?:[ ,.]\d{3})+|\d{2,})"

ZERO_GLYPH_RE = re.compile(rf"^{_ZERO_GLYPH}$", re.IGNORECASE)
SCORE_TOKEN_RE = re.compile(rf"^(?:{_NUMBER}|{_ZERO_GLYPH})$", re.IGNORECASE)
ROW_RE = re.compile(rf"^(?P<nick>.*?\S)\s+(?P<score>{_NUMBER}|{_ZERO_GLYPH})$", re.IGNORECASE)
RANK_PREFIX_RE = re.compile(r"^\d{1,3}[.)]?\s+(?=\S)")
LETTER_RE = re.compile(f"[A-Za-z{POLISH_LETTERS}{POLISH_LETTERS.upper()}]")


def parse_score(token: str) -> Optional[int]:
    """Convert a score token into an int; zero glyphs read as 0, anything else as None."""
    token = token.strip()
    if ZERO_GLYPH_RE.match(token):
        return 0
    if not SCORE_TOKEN_RE.match(token):
        return None
    return int(re.sub(r"[ ,.]", "", token))


class LineParser:
    """Line-level parser for OCR output."""

    def __init__(self, *, min_line_length: int = 5, detailed_logging: bool = False) -> None:
        self.min_line_length = min_line_length
        self._log_level = logging.INFO if detailed_logging else logging.DEBUG

    def parse(self, text: str) -> List[LineReading]:
        """Parse every line of ``text`` in source order."""
        lines = [line.strip() for line in (text or "").splitlines() if line.strip()]
        readings: List[LineReading] = []
        skip_next = False

        for index, line in enumerate(lines):
            if skip_next:
                skip_next = False
                continue
            if len(line) < self.min_line_length:
                logger.log(self._log_level, "Line %d too short, ignored: %r", index + 1, line)
                continue

            reading = self.parse_line(line)
            if reading is None:
                reading = self._join_long_nick(line, lines[index + 1] if index + 1 < len(lines) else None)
                if reading is not None:
                    skip_next = True

            if reading is None:
                logger.log(self._log_level, "Line %d discarded: %r", index + 1, line)
                continue

            logger.log(
                self._log_level,
                "Line %d -> nick=%r score=%d%s",
                index + 1,
                reading.nick,
                reading.score,
                " (uncertain)" if reading.uncertain else "",
            )
            readings.append(reading)

        return readings

    def parse_line(self, line: str) -> Optional[LineReading]:
        """Parse a single trimmed line; returns None when it does not match the row grammar."""
        body, uncertain = self._strip_marker(line.strip())
        match = ROW_RE.match(body)
        if not match:
            return None

        nick, nick_uncertain = self._clean_nick(match.group("nick"))
        if not nick:
            return None
        score = parse_score(match.group("score"))
        if score is None:
            return None
        return LineReading(nick=nick, score=score, uncertain=uncertain or nick_uncertain, raw_line=line)

    def _join_long_nick(self, line: str, next_line: Optional[str]) -> Optional[LineReading]:
        """A nick of 10+ characters may wrap its score onto the following line."""
        if next_line is None:
            return None
        body, uncertain = self._strip_marker(line)
        nick, nick_uncertain = self._clean_nick(body)
        if len(nick) < LONG_NICK_LENGTH:
            return None
        score_token, next_uncertain = self._strip_marker(next_line)
        if not SCORE_TOKEN_RE.match(score_token):
            return None
        score = parse_score(score_token)
        if score is None:
            return None
        return LineReading(
            nick=nick,
            score=score,
            uncertain=uncertain or nick_uncertain or next_uncertain,
            raw_line=f"{line} {next_line}",
        )

    @staticmethod
    def _strip_marker(text: str) -> Tuple[str, bool]:
        text = text.strip()
        uncertain = False
        while text.endswith(UNCERTAINTY_MARKER):
            uncertain = True
            text = text[: -len(UNCERTAINTY_MARKER)].rstrip()
        return text, uncertain

    @staticmethod
    def _clean_nick(raw: str) -> Tuple[str, bool]:
        nick = raw.strip()
        uncertain = UNCERTAINTY_MARKER in nick
        nick = nick.replace(UNCERTAINTY_MARKER, "").strip()
        nick = RANK_PREFIX_RE.sub("", nick, count=1)
        if not LETTER_RE.search(nick):
            return "", uncertain
        return nick, uncertain
