"""
Persistence layer. JSON snapshot + atomic writes.

The snapshot contains the complete state:
  - Ledger: profiles, ledger entries
  - Engine: markets with their outcomes, bets, price history
  - Auth: users and API key hashes
  - ID counters (so IDs resume correctly after restart)

Save after every complete mutation (bet/resolve/cancel/create/top-up).
On startup, load the snapshot. No replay needed.

Atomic write: write to .tmp, then os.replace. A crash mid-write
leaves the previous snapshot intact.
"""

import dataclasses
import json
import os
from decimal import Decimal

from yomi.auth import AuthStore, User
from yomi.ledger import Ledger
from yomi.market_engine import MarketEngine
from yomi.models import (
    Bet, LedgerEntry, Market, Outcome, PricePoint, Profile,
    _counters, set_counter, reset_counters,
)


CURRENT_VERSION = 1


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def _serialize(obj):
    """Recursively serialize dataclasses and Decimals to JSON-safe types."""
    if isinstance(obj, Decimal):
        return str(obj)
    if dataclasses.is_dataclass(obj):
        return {
            f.name: _serialize(getattr(obj, f.name))
            for f in dataclasses.fields(obj)
        }
    if isinstance(obj, list):
        return [_serialize(item) for item in obj]
    if isinstance(obj, dict):
        return {str(k): _serialize(v) for k, v in obj.items()}
    return obj


# ---------------------------------------------------------------------------
# Deserialization helpers
# ---------------------------------------------------------------------------

def _load_outcome(d: dict) -> Outcome:
    return Outcome(
        id=d["id"],
        market_id=d["market_id"],
        name=d["name"],
        probability=Decimal(d["probability"]),
        is_winner=d.get("is_winner"),
    )


def _load_market(d: dict) -> Market:
    return Market(
        id=d["id"],
        question=d["question"],
        type=d["type"],
        status=d["status"],
        is_live=d["is_live"],
        category=d["category"],
        volume=d["volume"],
        pool_yes=Decimal(d["pool_yes"]),
        pool_no=Decimal(d["pool_no"]),
        outcomes=[_load_outcome(o) for o in d["outcomes"]],
        winner_outcome_id=d.get("winner_outcome_id"),
        closes_at=d.get("closes_at"),
        created_at=d["created_at"],
        resolved_at=d.get("resolved_at"),
    )


def _load_bet(d: dict) -> Bet:
    return Bet(**{**d, "odds_at_bet": Decimal(d["odds_at_bet"])})


def _load_price_point(d: dict) -> PricePoint:
    return PricePoint(**{**d, "probability": Decimal(d["probability"])})


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def save_snapshot(ledger: Ledger, engine: MarketEngine, path: str,
                  auth_store: AuthStore | None = None) -> None:
    """
    Save ledger + engine + auth state to a JSON file.
    Atomic: writes to .tmp then renames.
    """
    users = auth_store.users.values() if auth_store else []
    state = {
        "version": CURRENT_VERSION,
        "counters": dict(_counters),
        "profiles": [_serialize(p) for p in ledger.profiles.values()],
        "entries": [_serialize(e) for e in ledger.entries],
        "markets": [_serialize(m) for m in engine.markets.values()],
        "bets": [_serialize(b) for b in engine.bets.values()],
        "price_history": [_serialize(p) for p in engine.price_history],
        "auth": {"users": [_serialize(u) for u in users]},
    }
    tmp = path + ".tmp"
    with open(tmp, "w") as f:
        json.dump(state, f, indent=2)
    os.replace(tmp, path)


def load_snapshot(path: str) -> tuple[Ledger, MarketEngine, AuthStore]:
    """
    Load ledger + engine + auth state from a JSON snapshot.
    Returns (ledger, engine, auth_store) ready to use.
    """
    with open(path) as f:
        state = json.load(f)

    version = state.get("version")
    if version != CURRENT_VERSION:
        raise ValueError(f"unsupported snapshot version: {version}")

    reset_counters()
    for kind, value in state["counters"].items():
        set_counter(kind, value)

    ledger = Ledger()
    for pdata in state["profiles"]:
        profile = Profile(**pdata)
        ledger.profiles[profile.id] = profile
    ledger.entries = [LedgerEntry(**e) for e in state["entries"]]

    engine = MarketEngine(ledger)
    for mdata in state["markets"]:
        market = _load_market(mdata)
        engine.markets[market.id] = market
    for bdata in state["bets"]:
        engine.insert_bet(_load_bet(bdata))
    engine.price_history = [_load_price_point(p)
                            for p in state.get("price_history", [])]

    auth_store = AuthStore()
    for udata in state["auth"]["users"]:
        auth_store.add_user(User(**udata))

    return ledger, engine, auth_store
