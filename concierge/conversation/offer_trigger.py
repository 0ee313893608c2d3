"""Decides when the capsule reservation offer should be shown."""

from typing import Optional

from concierge.config import CapsuleConfig, settings
from concierge.schemas.session_schema import Session


class OfferTriggerEvaluator:
    """
    Pure predicate over a session snapshot.

    True iff the shortlist holds at least ``min_shortlist`` items, an
    inspiration image was uploaded, or the active style tags intersect
    the bespoke keyword set.
    """

    def __init__(self, config: Optional[CapsuleConfig] = None) -> None:
        self._config = config or settings.capsule

    def has_bespoke_signal(self, style_tags: Optional[list[str]]) -> bool:
        if not style_tags:
            return False
        keywords = set(self._config.bespoke_keywords)
        return any(tag.strip().lower() in keywords for tag in style_tags)

    def mentions_bespoke(self, text: Optional[str]) -> bool:
        if not text:
            return False
        folded = text.casefold()
        return any(keyword in folded for keyword in self._config.bespoke_keywords)

    def should_offer(self, session: Session) -> bool:
        return (
            len(session.shortlist) >= self._config.min_shortlist
            or session.inspiration_uploaded
            or self.has_bespoke_signal(session.preferences.style_tags)
        )
