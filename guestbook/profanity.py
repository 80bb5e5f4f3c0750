"""
Profanity annotation for guestbook notes.

Flags are decoration hints for the front end (a sticker gets slapped over
the word), not moderation: a flagged note is still stored.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from better_profanity import profanity

# "@" and "$" stay inside a token so that a$$-style spellings reach the word list
WORD_RE = re.compile(r"[\w@$*]+")


@dataclass(frozen=True)
class ProfanityFlag:
    word: str
    char_start: int
    char_end: int  # exclusive
    sticker_pool: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "word": self.word,
            "charStart": self.char_start,
            "charEnd": self.char_end,
            "stickerPool": list(self.sticker_pool),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProfanityFlag":
        return cls(
            word=data["word"],
            char_start=int(data["charStart"]),
            char_end=int(data["charEnd"]),
            sticker_pool=tuple(data.get("stickerPool") or ()),
        )


def detect_profanity(text: str, sticker_ids) -> list[ProfanityFlag]:
    """
    Return one flag per profane word in *text*, in reading order.

    Every flag carries its own snapshot of *sticker_ids*.
    """
    pool = tuple(sticker_ids or ())
    flags = []
    for m in WORD_RE.finditer(text):
        if profanity.contains_profanity(m.group(0)):
            flags.append(
                ProfanityFlag(
                    word=m.group(0),
                    char_start=m.start(),
                    char_end=m.end(),
                    sticker_pool=pool,
                )
            )
    return flags
