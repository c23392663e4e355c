"""
Ledger. Manages profiles, balances, and the append-only entry log.

Every balance mutation produces a LedgerEntry. The ledger is the single
source of truth for who has how much Zeny.

The ledger does NOT know about markets, odds, or bets beyond the IDs it
stamps on entries. Balances never go negative.

Invariant: profile.balance == sum(entry.delta for that profile's entries)
"""

import logging
from typing import Optional

from yomi.exceptions import InsufficientBalance, ProfileNotFound
from yomi.models import LedgerEntry, Profile, ROLES


logger = logging.getLogger(__name__)


class Ledger:

    def __init__(self):
        self.profiles: dict[int, Profile] = {}
        self.entries: list[LedgerEntry] = []

    def create_profile(self, username: str, balance: int = 0,
                       role: str = "user") -> Profile:
        profile = Profile.new(username, role=role)
        self.profiles[profile.id] = profile
        if balance > 0:
            self.credit(profile.id, balance, reason="signup")
        return profile

    def get_profile(self, profile_id: int) -> Profile:
        profile = self.profiles.get(profile_id)
        if profile is None:
            raise ProfileNotFound(f"profile {profile_id} not found")
        return profile

    def set_role(self, profile_id: int, role: str) -> Profile:
        if role not in ROLES:
            raise ValueError(f"unknown role: {role}")
        profile = self.get_profile(profile_id)
        profile.role = role
        return profile

    # ------------------------------------------------------------------
    # Balance mutations
    # ------------------------------------------------------------------

    def credit(self, profile_id: int, amount: int, reason: str,
               market_id: Optional[int] = None,
               bet_id: Optional[int] = None,
               reference: Optional[str] = None) -> LedgerEntry:
        """Add Zeny to a balance."""
        if amount <= 0:
            raise ValueError(f"credit amount must be positive, got {amount}")
        profile = self.get_profile(profile_id)
        profile.balance += amount
        return self._record(profile, amount, reason, market_id, bet_id,
                            reference)

    def debit(self, profile_id: int, amount: int, reason: str,
              market_id: Optional[int] = None,
              bet_id: Optional[int] = None) -> LedgerEntry:
        """
        Remove Zeny from a balance.
        Raises InsufficientBalance if the balance would go negative.
        """
        if amount <= 0:
            raise ValueError(f"debit amount must be positive, got {amount}")
        profile = self.get_profile(profile_id)
        if profile.balance < amount:
            raise InsufficientBalance(
                f"insufficient balance: need {amount}, "
                f"have {profile.balance}")
        profile.balance -= amount
        return self._record(profile, -amount, reason, market_id, bet_id,
                            None)

    def top_up(self, profile_id: int, amount: int,
               reference: str) -> Optional[LedgerEntry]:
        """
        Credit a completed payment. Idempotent per reference: a reference
        that was already credited returns None and changes nothing.
        """
        if self.has_reference(reference):
            logger.warning(f"Payment {reference} already credited, ignoring")
            return None
        entry = self.credit(profile_id, amount, reason="topup",
                            reference=reference)
        logger.info(
            f"Top-up {reference}: profile {profile_id} +{amount} "
            f"(balance {entry.balance_after})")
        return entry

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_reference(self, reference: str) -> bool:
        return any(e.reference == reference for e in self.entries)

    def entries_for(self, profile_id: int) -> list[LedgerEntry]:
        return [e for e in self.entries if e.profile_id == profile_id]

    def total_in_circulation(self) -> int:
        return sum(p.balance for p in self.profiles.values())

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _record(self, profile: Profile, delta: int, reason: str,
                market_id: Optional[int], bet_id: Optional[int],
                reference: Optional[str]) -> LedgerEntry:
        entry = LedgerEntry.new(
            profile_id=profile.id,
            delta=delta,
            balance_after=profile.balance,
            reason=reason,
            market_id=market_id,
            bet_id=bet_id,
            reference=reference,
        )
        self.entries.append(entry)
        return entry
