#!/usr/bin/env python3
"""
YOMI admin CLI. Every invocation: lock -> load -> execute -> save -> unlock.

Usage:
    python3 -m yomi.cli create-profile USERNAME [--balance N] [--admin]
    python3 -m yomi.cli top-up PROFILE_ID AMOUNT REFERENCE
    python3 -m yomi.cli set-role PROFILE_ID ROLE
    python3 -m yomi.cli create-market QUESTION [--multi OUTCOME ...] [--category C] [--closes-at ISO]
    python3 -m yomi.cli close MARKET_ID
    python3 -m yomi.cli close-expired
    python3 -m yomi.cli bet MARKET_ID PROFILE_ID CHOICE AMOUNT
    python3 -m yomi.cli resolve MARKET_ID OUTCOME [--force]
    python3 -m yomi.cli resolve-multi MARKET_ID WINNER [WINNER ...] [--force]
    python3 -m yomi.cli cancel MARKET_ID
    python3 -m yomi.cli profile PROFILE_ID
    python3 -m yomi.cli market MARKET_ID
    python3 -m yomi.cli markets

Output: JSON, one line. {"ok": true, ...} or {"ok": false, "error": "..."}
State: YOMI_STATE env var, default ./yomi_state.json
"""

import argparse
import fcntl
import json
import os
import sys
from contextlib import contextmanager

from yomi.auth import AuthStore
from yomi.exceptions import InvalidSelection, ValidationError, YomiError
from yomi.ledger import Ledger
from yomi.market_engine import MarketEngine
from yomi.models import reset_counters
from yomi.persistence import save_snapshot, load_snapshot


STATE_PATH = os.environ.get("YOMI_STATE", "./yomi_state.json")


@contextmanager
def file_lock(path):
    """Exclusive file lock. Prevents concurrent CLI invocations from corrupting state."""
    lock_path = path + ".lock"
    f = open(lock_path, "w")
    try:
        fcntl.flock(f, fcntl.LOCK_EX)
        yield
    finally:
        fcntl.flock(f, fcntl.LOCK_UN)
        f.close()


def load_or_create(path):
    if os.path.exists(path):
        return load_snapshot(path)
    reset_counters()
    ledger = Ledger()
    return ledger, MarketEngine(ledger), AuthStore()


def reply(data):
    print(json.dumps(data))


def _market_json(m):
    return {
        "market_id": m.id,
        "question": m.question,
        "type": m.type,
        "status": m.status,
        "is_live": m.is_live,
        "volume": m.volume,
        "outcomes": {o.name: str(o.probability) for o in m.outcomes},
    }


def _outcome_id(market, name):
    outcome = market.outcome_by_name(name)
    if outcome is None:
        raise InvalidSelection(f"invalid selection: {name}")
    return outcome.id


def cmd_create_profile(ledger, engine, auth_store, args):
    """Create a profile and the API key that signs in as it."""
    username = args.username.strip()
    if not username or len(username) > 40:
        raise ValidationError("username must be 1-40 characters")
    if auth_store.get_by_username(username) is not None:
        raise ValidationError(f"username {username!r} is already taken")
    role = "admin" if args.admin else "user"
    profile = ledger.create_profile(username, balance=args.balance,
                                    role=role)
    _, raw_key = auth_store.register_user(username, profile.id)
    return {"ok": True, "profile_id": profile.id, "balance": profile.balance,
            "api_key": raw_key}


def cmd_top_up(ledger, engine, auth_store, args):
    entry = ledger.top_up(args.profile_id, args.amount, args.reference)
    profile = ledger.get_profile(args.profile_id)
    return {"ok": True, "credited": entry is not None,
            "balance": profile.balance}


def cmd_set_role(ledger, engine, auth_store, args):
    profile = ledger.set_role(args.profile_id, args.role)
    return {"ok": True, "profile_id": profile.id, "role": profile.role}


def cmd_create_market(ledger, engine, auth_store, args):
    market = engine.create_market(
        question=args.question,
        type="multi" if args.multi else "binary",
        outcomes=args.multi,
        category=args.category,
        closes_at=args.closes_at,
    )
    return {"ok": True, **_market_json(market)}


def cmd_close(ledger, engine, auth_store, args):
    engine.close_market(args.market_id)
    return {"ok": True, "market_id": args.market_id}


def cmd_close_expired(ledger, engine, auth_store, args):
    closed = engine.close_expired()
    return {"ok": True, "closed": [m.id for m in closed]}


def cmd_bet(ledger, engine, auth_store, args):
    bet = engine.place_bet(args.profile_id, args.market_id, args.choice,
                           args.amount)
    return {"ok": True, "bet_id": bet.id,
            "odds": str(bet.odds_at_bet),
            "potential_payout": bet.potential_payout,
            "new_balance": ledger.get_profile(args.profile_id).balance}


def cmd_resolve(ledger, engine, auth_store, args):
    market = engine.get_market(args.market_id)
    result = engine.resolve(args.market_id,
                            _outcome_id(market, args.outcome),
                            force=args.force)
    return {"ok": True, "settled": result.settled_count,
            "payouts_count": result.payouts_count,
            "total_paid": result.total_paid, "errors": result.errors}


def cmd_resolve_multi(ledger, engine, auth_store, args):
    market = engine.get_market(args.market_id)
    winners = {_outcome_id(market, name) for name in args.winners}
    flags = {o.id: o.id in winners for o in market.outcomes}
    result = engine.resolve_multi(args.market_id, flags, force=args.force)
    return {"ok": True, "settled": result.settled_count,
            "payouts_count": result.payouts_count,
            "total_paid": result.total_paid, "errors": result.errors}


def cmd_cancel(ledger, engine, auth_store, args):
    result = engine.cancel_market(args.market_id)
    return {"ok": True, "refunds_count": result.refunds_count,
            "total_refunded": result.total_refunded,
            "errors": result.errors}


def cmd_profile(ledger, engine, auth_store, args):
    p = ledger.get_profile(args.profile_id)
    return {"ok": True, "profile_id": p.id, "username": p.username,
            "balance": p.balance, "role": p.role,
            "total_bets": p.total_bets, "total_won": p.total_won,
            "wins": p.wins, "losses": p.losses,
            "xp": p.xp, "level": p.level}


def cmd_market(ledger, engine, auth_store, args):
    market = engine.get_market(args.market_id)
    bets = [
        {"bet_id": b.id, "user_id": b.user_id, "outcome_id": b.outcome_id,
         "amount": b.amount, "direction": b.direction,
         "odds": str(b.odds_at_bet), "status": b.status}
        for b in engine.bets_for_market(market.id)
    ]
    return {"ok": True, **_market_json(market),
            "winner_outcome_id": market.winner_outcome_id, "bets": bets}


def cmd_markets(ledger, engine, auth_store, args):
    return {"ok": True,
            "markets": [_market_json(m) for m in engine.list_markets()]}


# Commands that mutate state (need save after)
MUTATING = {"create-profile", "top-up", "set-role", "create-market",
            "close", "close-expired", "bet", "resolve", "resolve-multi",
            "cancel"}


def main():
    parser = argparse.ArgumentParser(description="YOMI admin CLI")
    parser.add_argument("--state", default=STATE_PATH,
                        help="Path to state file")
    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("create-profile")
    p.add_argument("username")
    p.add_argument("--balance", type=int, default=0)
    p.add_argument("--admin", action="store_true")

    p = sub.add_parser("top-up")
    p.add_argument("profile_id", type=int)
    p.add_argument("amount", type=int)
    p.add_argument("reference")

    p = sub.add_parser("set-role")
    p.add_argument("profile_id", type=int)
    p.add_argument("role", choices=["user", "admin"])

    p = sub.add_parser("create-market")
    p.add_argument("question")
    p.add_argument("--multi", nargs="+", default=None, metavar="OUTCOME",
                   help="Outcome names (default: binary OUI/NON)")
    p.add_argument("--category", default="autre")
    p.add_argument("--closes-at", default=None)

    p = sub.add_parser("close")
    p.add_argument("market_id", type=int)

    sub.add_parser("close-expired")

    p = sub.add_parser("bet")
    p.add_argument("market_id", type=int)
    p.add_argument("profile_id", type=int)
    p.add_argument("choice")
    p.add_argument("amount", type=int)

    p = sub.add_parser("resolve")
    p.add_argument("market_id", type=int)
    p.add_argument("outcome")
    p.add_argument("--force", action="store_true")

    p = sub.add_parser("resolve-multi")
    p.add_argument("market_id", type=int)
    p.add_argument("winners", nargs="+")
    p.add_argument("--force", action="store_true")

    p = sub.add_parser("cancel")
    p.add_argument("market_id", type=int)

    p = sub.add_parser("profile")
    p.add_argument("profile_id", type=int)

    p = sub.add_parser("market")
    p.add_argument("market_id", type=int)

    sub.add_parser("markets")

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    commands = {
        "create-profile": cmd_create_profile,
        "top-up": cmd_top_up,
        "set-role": cmd_set_role,
        "create-market": cmd_create_market,
        "close": cmd_close,
        "close-expired": cmd_close_expired,
        "bet": cmd_bet,
        "resolve": cmd_resolve,
        "resolve-multi": cmd_resolve_multi,
        "cancel": cmd_cancel,
        "profile": cmd_profile,
        "market": cmd_market,
        "markets": cmd_markets,
    }

    state_path = args.state

    try:
        with file_lock(state_path):
            ledger, engine, auth_store = load_or_create(state_path)
            result = commands[args.command](ledger, engine, auth_store,
                                            args)

            if args.command in MUTATING:
                save_snapshot(ledger, engine, state_path,
                              auth_store=auth_store)

            reply(result)
    except (YomiError, ValueError) as e:
        reply({"ok": False, "error": str(e)})
        sys.exit(1)


if __name__ == "__main__":
    main()
