from typing import List, Optional, Sequence, Protocol
from config.settings import settings


class Flaggable(Protocol):
    tags: List[str]
    note: Optional[str]


class NegativeFlagChecker:
    """Detects risk markers on customer and order metadata.

    Every tag containing a negative keyword is reported; free-text notes
    contribute at most one flag each (the first keyword found). Flags are
    labelled with their origin, e.g. ``customer_tag:fraud_risk`` or
    ``order_note:chargeback``, so an escalation can explain itself.
    """

    def __init__(self,
                 tag_keywords: Optional[Sequence[str]] = None,
                 note_keywords: Optional[Sequence[str]] = None):
        if tag_keywords is None:
            tag_keywords = settings.NEGATIVE_FLAG_TAGS
        if note_keywords is None:
            note_keywords = settings.NEGATIVE_NOTE_KEYWORDS
        self.tag_keywords = [k.lower() for k in tag_keywords]
        self.note_keywords = [k.lower() for k in note_keywords]

    def check(self,
              customer: Optional[Flaggable] = None,
              order: Optional[Flaggable] = None) -> List[str]:
        flags: List[str] = []
        for label, source in (("customer", customer), ("order", order)):
            if source is None:
                continue
            flags.extend(self._check_tags(label, source.tags or []))
            note_flag = self._check_note(label, source.note)
            if note_flag:
                flags.append(note_flag)
        return flags

    def _check_tags(self, label: str, tags: Sequence[str]) -> List[str]:
        matched = []
        for tag in tags:
            normalized = tag.lower().strip()
            if any(keyword in normalized for keyword in self.tag_keywords):
                matched.append(f"{label}_tag:{tag}")
        return matched

    def _check_note(self, label: str, note: Optional[str]) -> Optional[str]:
        if not note:
            return None
        lower_note = note.lower()
        for keyword in self.note_keywords:
            if keyword in lower_note:
                return f"{label}_note:{keyword}"
        return None


# Global flag checker instance
flag_checker = NegativeFlagChecker()
