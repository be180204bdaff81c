"""Member resolution: canonical keys, aliases, and likely-match lookup.

Exact and alias lookups are the only paths used for automatic decisions.
``find_likely`` adds token-containment and fuzzy matching and is meant for
manual-correction assistance only.
"""

import logging
from datetime import datetime
from typing import Iterable, Optional

from rapidfuzz import fuzz, process
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import FUZZY_MATCH_THRESHOLD
from database import utcnow
from exceptions import AliasConflict
from models import Alias, Member
from parse import canonicalize

logger = logging.getLogger(__name__)


class MemberResolver:
    """Resolve display names to member ids within one database session.

    Args:
        db: An open SQLAlchemy session; the caller owns the transaction.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def resolve(self, guild_id: str, canonical_key: str) -> Optional[int]:
        """Return the member id for *canonical_key* via exact or alias match."""
        if not canonical_key:
            return None
        member_id = self.db.execute(
            select(Member.id).where(
                Member.guild_id == guild_id,
                Member.canonical_key == canonical_key,
            )
        ).scalar_one_or_none()
        if member_id is not None:
            return member_id
        return self.db.execute(
            select(Alias.member_id).where(
                Alias.guild_id == guild_id,
                Alias.alias_key == canonical_key,
            )
        ).scalar_one_or_none()

    def resolve_or_create(
        self,
        guild_id: str,
        display_name: str,
        seen_at: Optional[datetime] = None,
        canonical_key: Optional[str] = None,
    ) -> int:
        """Return the member id for *display_name*, creating the member if new.

        An existing member (found by canonical key or alias) gets its
        ``display_name`` and ``last_seen_at`` refreshed. Calling this twice
        with the same name never creates a second row. *canonical_key*
        overrides the key derived from *display_name*.

        Raises:
            ValueError: If *display_name* canonicalizes to an empty key.
        """
        key = canonical_key or canonicalize(display_name)
        if not key:
            raise ValueError(f"Display name {display_name!r} has no usable characters")
        seen_at = seen_at or utcnow()

        member_id = self.resolve(guild_id, key)
        if member_id is not None:
            member = self.db.get(Member, member_id)
            member.display_name = display_name
            member.last_seen_at = seen_at
            return member_id

        member = Member(
            guild_id=guild_id,
            canonical_key=key,
            display_name=display_name,
            last_seen_at=seen_at,
        )
        self.db.add(member)
        self.db.flush()
        logger.debug("Created member %d '%s' in guild %s", member.id, key, guild_id)
        return member.id

    def upsert_members(
        self,
        guild_id: str,
        display_names: Iterable[tuple[str, str]],
        seen_at: Optional[datetime] = None,
    ) -> dict[str, int]:
        """Upsert every ``(canonical_key, display_name)`` pair.

        Returns:
            A dict mapping each input canonical key to its member id.
        """
        seen_at = seen_at or utcnow()
        ids: dict[str, int] = {}
        for key, display_name in display_names:
            ids[key] = self.resolve_or_create(
                guild_id, display_name or key, seen_at, canonical_key=key
            )
        return ids

    def find_likely(self, guild_id: str, text: str) -> Optional[int]:
        """Best-effort match of free text to an existing member.

        Order: exact key, alias, then the most recently seen member whose
        key contains the input tokens in order, then a rapidfuzz
        ``token_set_ratio`` match at ``FUZZY_MATCH_THRESHOLD``.
        """
        key = canonicalize(text)
        if not key:
            return None
        member_id = self.resolve(guild_id, key)
        if member_id is not None:
            return member_id

        candidates = self.db.execute(
            select(Member.id, Member.canonical_key)
            .where(Member.guild_id == guild_id)
            .order_by(Member.last_seen_at.desc(), Member.id.desc())
        ).all()
        if not candidates:
            return None

        tokens = key.split(" ")
        for candidate_id, candidate_key in candidates:
            if _contains_tokens_in_order(candidate_key, tokens):
                return candidate_id

        choices = {candidate_id: candidate_key for candidate_id, candidate_key in candidates}
        best = process.extractOne(
            key,
            choices,
            scorer=fuzz.token_set_ratio,
            score_cutoff=FUZZY_MATCH_THRESHOLD * 100,
        )
        if best is None:
            return None
        matched_key, score, candidate_id = best
        logger.debug("Fuzzy matched '%s' -> '%s' (score %.1f)", key, matched_key, score)
        return candidate_id

    def add_alias(self, guild_id: str, alias_key: str, member_id: int) -> None:
        """Point *alias_key* at *member_id*, replacing any earlier alias target.

        Raises:
            AliasConflict: If *alias_key* is another member's canonical key.
        """
        owner_id = self.db.execute(
            select(Member.id).where(
                Member.guild_id == guild_id,
                Member.canonical_key == alias_key,
            )
        ).scalar_one_or_none()
        if owner_id == member_id:
            return
        if owner_id is not None:
            raise AliasConflict(guild_id, alias_key, owner_id)

        alias = self.db.execute(
            select(Alias).where(Alias.guild_id == guild_id, Alias.alias_key == alias_key)
        ).scalar_one_or_none()
        if alias is None:
            self.db.add(Alias(guild_id=guild_id, alias_key=alias_key, member_id=member_id))
        else:
            alias.member_id = member_id
        self.db.flush()
        logger.info("Alias '%s' -> member %d in guild %s", alias_key, member_id, guild_id)

    def list_aliases(self, guild_id: str) -> list[tuple[str, int]]:
        """Return ``(alias_key, member_id)`` pairs for the guild, sorted by key."""
        rows = self.db.execute(
            select(Alias.alias_key, Alias.member_id)
            .where(Alias.guild_id == guild_id)
            .order_by(Alias.alias_key)
        ).all()
        return [(row.alias_key, row.member_id) for row in rows]

    def alias_targets(self, guild_id: str) -> dict[str, str]:
        """Map each alias key in the guild to its member's canonical key."""
        rows = self.db.execute(
            select(Alias.alias_key, Member.canonical_key)
            .join(Member, Member.id == Alias.member_id)
            .where(Alias.guild_id == guild_id)
        ).all()
        return {row.alias_key: row.canonical_key for row in rows}


def _contains_tokens_in_order(candidate: str, tokens: list[str]) -> bool:
    position = 0
    for token in tokens:
        found = candidate.find(token, position)
        if found < 0:
            return False
        position = found + len(token)
    return True
