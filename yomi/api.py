"""
FastAPI application. HTTP API for the YOMI prediction market.

Public endpoints (no auth): health, markets, market detail, market bets,
price history.
User endpoints (API key): /me, /me/bets, place bet, key rotation.
Admin endpoints (API key of an admin profile): create/close/resolve/cancel
markets, credit adjustments.
Webhook (HMAC signature): payment provider top-ups.
"""

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from decimal import Decimal, InvalidOperation

from fastapi import FastAPI, Request

from yomi.api_errors import APIError, api_error_handler, translate_engine_error
from yomi.api_models import (
    RegisterRequest, RegisterResponse, RotateKeyResponse,
    ProfileResponse,
    OutcomeResponse, MarketSummary, MarketDetail, BetResponse,
    PricePointResponse,
    PlaceBetRequest, PlaceBetResponse,
    CreateMarketRequest, ResolveRequest, ResolveMultiRequest,
    ResolveResponse, CancelResponse, CloseExpiredResponse,
    CreditRequest, CreditResponse,
    HealthResponse,
)
from yomi.auth import AuthStore
from yomi.exceptions import ProfileNotFound, ValidationError, YomiError
from yomi.ledger import Ledger
from yomi.market_engine import MarketEngine
from yomi.middleware import AuthUser, AdminUser
from yomi.models import (
    Bet, Market, Profile, Selection, MARKET_STATUSES, reset_counters,
)
from yomi.payments import apply_checkout_event, verify_signature
from yomi.persistence import save_snapshot, load_snapshot


STATE_PATH = os.environ.get("YOMI_STATE", "./yomi_state.json")
INITIAL_BALANCE = int(os.environ.get("YOMI_INITIAL_BALANCE", "1000"))
ADMIN_USERNAMES = {
    name.strip()
    for name in os.environ.get("YOMI_ADMIN_USERNAMES", "").split(",")
    if name.strip()
}
PAYMENT_WEBHOOK_SECRET = os.environ.get("YOMI_PAYMENT_WEBHOOK_SECRET", "")
LOG_LEVEL = os.environ.get("YOMI_LOG_LEVEL", "INFO")

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if os.path.exists(STATE_PATH):
        ledger, engine, auth_store = load_snapshot(STATE_PATH)
        logger.info(f"Loaded state from {STATE_PATH}")
    else:
        reset_counters()
        ledger = Ledger()
        engine = MarketEngine(ledger)
        auth_store = AuthStore()

    app.state.ledger = ledger
    app.state.engine = engine
    app.state.auth_store = auth_store
    app.state.lock = asyncio.Lock()
    yield


app = FastAPI(title="YOMI API", version="0.1.0", lifespan=lifespan)
app.add_exception_handler(APIError, api_error_handler)


def _save():
    """Save state to disk. Called after every mutation."""
    save_snapshot(app.state.ledger, app.state.engine, STATE_PATH,
                  auth_store=app.state.auth_store)


# ---------------------------------------------------------------------------
# Response builders
# ---------------------------------------------------------------------------

def _profile_response(p: Profile) -> ProfileResponse:
    return ProfileResponse(
        profile_id=p.id,
        username=p.username,
        balance=p.balance,
        role=p.role,
        total_bets=p.total_bets,
        total_won=p.total_won,
        wins=p.wins,
        losses=p.losses,
        xp=p.xp,
        level=p.level,
    )


def _outcomes(m: Market) -> list[OutcomeResponse]:
    return [
        OutcomeResponse(outcome_id=o.id, name=o.name,
                        probability=str(o.probability), is_winner=o.is_winner)
        for o in m.outcomes
    ]


def _market_summary(m: Market) -> MarketSummary:
    return MarketSummary(
        market_id=m.id,
        question=m.question,
        type=m.type,
        category=m.category,
        status=m.status,
        is_live=m.is_live,
        volume=m.volume,
        outcomes=_outcomes(m),
        closes_at=m.closes_at,
        created_at=m.created_at,
    )


def _bet_response(b: Bet) -> BetResponse:
    market = app.state.engine.markets.get(b.market_id)
    outcome = market.outcome(b.outcome_id) if market else None
    return BetResponse(
        bet_id=b.id,
        user_id=b.user_id,
        market_id=b.market_id,
        outcome_id=b.outcome_id,
        outcome=outcome.name if outcome else "",
        amount=b.amount,
        direction=b.direction,
        odds_at_bet=str(b.odds_at_bet),
        potential_payout=b.potential_payout,
        status=b.status,
        created_at=b.created_at,
        resolved_at=b.resolved_at,
    )


def _get_market(market_id: int) -> Market:
    m = app.state.engine.markets.get(market_id)
    if m is None:
        raise APIError(404, "market_not_found", f"Market {market_id} not found")
    return m


# ---------------------------------------------------------------------------
# Health (public)
# ---------------------------------------------------------------------------

@app.get("/v1/health")
async def health() -> HealthResponse:
    return HealthResponse(
        status="ok",
        markets=len(app.state.engine.markets),
        profiles=len(app.state.ledger.profiles),
        zeny_in_circulation=app.state.ledger.total_in_circulation(),
    )


# ---------------------------------------------------------------------------
# Auth (no API key required)
# ---------------------------------------------------------------------------

@app.post("/v1/auth/register")
async def auth_register(req: RegisterRequest) -> RegisterResponse:
    """Register with a username. Creates a funded profile and an API key."""
    username = req.username.strip()
    if not username or len(username) > 40:
        raise APIError(400, "invalid_username",
                       "Username must be 1-40 characters")

    async with app.state.lock:
        auth_store = app.state.auth_store
        if auth_store.get_by_username(username) is not None:
            raise APIError(409, "username_taken",
                           f"Username '{username}' is already taken")
        role = "admin" if username in ADMIN_USERNAMES else "user"
        profile = app.state.ledger.create_profile(
            username, balance=INITIAL_BALANCE, role=role)
        user, raw_key = auth_store.register_user(username, profile.id)
        _save()

    logger.info(f"Registered {username} as profile {profile.id} ({role})")
    return RegisterResponse(
        api_key=raw_key,
        profile_id=user.profile_id,
        username=username,
        balance=profile.balance,
        role=profile.role,
    )


@app.post("/v1/auth/rotate-key")
async def auth_rotate_key(user: AuthUser) -> RotateKeyResponse:
    """Issue a new API key. The current one stops working."""
    async with app.state.lock:
        _, raw_key = app.state.auth_store.rotate_key(user.username)
        _save()
    return RotateKeyResponse(api_key=raw_key)


# ---------------------------------------------------------------------------
# Public market data (no auth required)
# ---------------------------------------------------------------------------

@app.get("/v1/markets")
async def list_markets(
    status: str | None = None,
    category: str | None = None,
) -> list[MarketSummary]:
    """List markets, optionally filtered by status and category."""
    if status is not None and status not in MARKET_STATUSES:
        raise APIError(400, "bad_request", f"Unknown status: {status}")
    return [
        _market_summary(m)
        for m in app.state.engine.list_markets(status=status, category=category)
    ]


@app.get("/v1/markets/{market_id}")
async def get_market(market_id: int) -> MarketDetail:
    m = _get_market(market_id)
    return MarketDetail(
        **_market_summary(m).model_dump(),
        pool_yes=str(m.pool_yes),
        pool_no=str(m.pool_no),
        winner_outcome_id=m.winner_outcome_id,
        resolved_at=m.resolved_at,
        num_bets=len(app.state.engine.bets_for_market(market_id)),
    )


@app.get("/v1/markets/{market_id}/bets")
async def get_market_bets(market_id: int) -> list[BetResponse]:
    """All bets on a market. Public."""
    _get_market(market_id)
    return [_bet_response(b)
            for b in app.state.engine.bets_for_market(market_id)]


@app.get("/v1/markets/{market_id}/history")
async def get_market_history(market_id: int) -> list[PricePointResponse]:
    """Outcome probabilities over time, oldest first. Public."""
    m = _get_market(market_id)
    names = {o.id: o.name for o in m.outcomes}
    return [
        PricePointResponse(outcome_id=p.outcome_id,
                           outcome=names.get(p.outcome_id, ""),
                           probability=str(p.probability),
                           created_at=p.created_at)
        for p in app.state.engine.price_history_for_market(market_id)
    ]


# ---------------------------------------------------------------------------
# User endpoints (API key required)
# ---------------------------------------------------------------------------

@app.get("/v1/me")
async def get_me(user: AuthUser) -> ProfileResponse:
    return _profile_response(app.state.ledger.get_profile(user.profile_id))


@app.get("/v1/me/bets")
async def get_my_bets(user: AuthUser) -> list[BetResponse]:
    return [_bet_response(b)
            for b in app.state.engine.bets_for_user(user.profile_id)]


@app.post("/v1/markets/{market_id}/bets")
async def place_bet(market_id: int, req: PlaceBetRequest,
                    user: AuthUser) -> PlaceBetResponse:
    """Place a bet. One bet per user per market."""
    if req.selection is not None:
        selection = Selection(req.selection.direction,
                              req.selection.outcome_name)
    elif req.outcome is not None:
        selection = req.outcome
    else:
        raise APIError(400, "invalid_outcome",
                       "Provide either 'outcome' or 'selection'")

    async with app.state.lock:
        try:
            bet = app.state.engine.place_bet(
                user.profile_id, market_id, selection, req.amount)
            _save()
        except YomiError as e:
            raise translate_engine_error(e)
        balance = app.state.ledger.get_profile(user.profile_id).balance

    return PlaceBetResponse(success=True, new_balance=balance,
                            bet=_bet_response(bet))


# ---------------------------------------------------------------------------
# Admin endpoints
# ---------------------------------------------------------------------------

@app.post("/v1/admin/markets")
async def admin_create_market(req: CreateMarketRequest,
                              _: AdminUser) -> MarketDetail:
    """Create a binary (OUI/NON) or multi-outcome market."""
    try:
        probabilities = (
            [Decimal(p) for p in req.probabilities]
            if req.probabilities is not None else None)
        pool_yes, pool_no = Decimal(req.pool_yes), Decimal(req.pool_no)
    except InvalidOperation:
        raise APIError(400, "invalid_amount",
                       "Probabilities and pools must be decimal strings")

    async with app.state.lock:
        try:
            market = app.state.engine.create_market(
                question=req.question,
                type=req.type,
                outcomes=req.outcomes,
                probabilities=probabilities,
                category=req.category,
                closes_at=req.closes_at,
                pool_yes=pool_yes,
                pool_no=pool_no,
            )
        except YomiError as e:
            raise translate_engine_error(e)
        _save()

    return await get_market(market.id)


@app.post("/v1/admin/markets/close-expired")
async def admin_close_expired(_: AdminUser) -> CloseExpiredResponse:
    """Close every open market whose close time has passed."""
    async with app.state.lock:
        closed = app.state.engine.close_expired()
        if closed:
            _save()
    return CloseExpiredResponse(closed=[m.id for m in closed])


@app.post("/v1/admin/markets/{market_id}/close")
async def admin_close(market_id: int, _: AdminUser) -> dict:
    """Stop taking bets on a market."""
    async with app.state.lock:
        try:
            app.state.engine.close_market(market_id)
            _save()
        except YomiError as e:
            raise translate_engine_error(e)
    return {"success": True, "market_id": market_id, "status": "closed"}


@app.post("/v1/admin/markets/{market_id}/resolve")
async def admin_resolve(market_id: int, req: ResolveRequest,
                        _: AdminUser) -> ResolveResponse:
    """Resolve a market with a single winning outcome and pay winners."""
    async with app.state.lock:
        try:
            result = app.state.engine.resolve(
                market_id, req.winning_outcome_id, force=req.force)
            _save()
        except YomiError as e:
            raise translate_engine_error(e)

    return ResolveResponse(
        success=True,
        payouts_count=result.payouts_count,
        total_paid=result.total_paid,
        errors=result.errors,
    )


@app.post("/v1/admin/markets/{market_id}/resolve-multi")
async def admin_resolve_multi(market_id: int, req: ResolveMultiRequest,
                              _: AdminUser) -> ResolveResponse:
    """Resolve a market from a win/lose flag for every outcome."""
    flags = {r.outcome_id: r.is_winner for r in req.results}
    if len(flags) != len(req.results):
        raise APIError(400, "incomplete_resolution",
                       "Each outcome may appear only once")

    async with app.state.lock:
        try:
            result = app.state.engine.resolve_multi(
                market_id, flags, force=req.force)
            _save()
        except YomiError as e:
            raise translate_engine_error(e)

    return ResolveResponse(
        success=True,
        payouts_count=result.payouts_count,
        total_paid=result.total_paid,
        errors=result.errors,
    )


@app.post("/v1/admin/markets/{market_id}/cancel")
async def admin_cancel(market_id: int, _: AdminUser) -> CancelResponse:
    """Cancel a market and refund every pending bet in full."""
    async with app.state.lock:
        try:
            result = app.state.engine.cancel_market(market_id)
            _save()
        except YomiError as e:
            raise translate_engine_error(e)

    return CancelResponse(
        success=True,
        refunds_count=result.refunds_count,
        total_refunded=result.total_refunded,
        errors=result.errors,
    )


@app.post("/v1/admin/profiles/{profile_id}/credit")
async def admin_credit(profile_id: int, req: CreditRequest,
                       _: AdminUser) -> CreditResponse:
    """Credit Zeny to a profile as a manual adjustment."""
    async with app.state.lock:
        try:
            entry = app.state.ledger.credit(
                profile_id, req.amount, reason="adjustment")
            _save()
        except YomiError as e:
            raise translate_engine_error(e)

    logger.info(f"Adjustment: profile {profile_id} +{req.amount}")
    return CreditResponse(profile_id=profile_id, balance=entry.balance_after)


# ---------------------------------------------------------------------------
# Payment webhook (HMAC signature)
# ---------------------------------------------------------------------------

@app.post("/v1/webhooks/payments")
async def payments_webhook(request: Request) -> dict:
    """Credit Zeny for completed checkout sessions. Idempotent per session."""
    if not PAYMENT_WEBHOOK_SECRET:
        raise APIError(503, "webhook_unavailable",
                       "YOMI_PAYMENT_WEBHOOK_SECRET not configured")

    payload = await request.body()
    signature = request.headers.get("x-yomi-signature", "")
    if not verify_signature(PAYMENT_WEBHOOK_SECRET.encode(), payload,
                            signature):
        logger.warning("Rejected payment webhook with invalid signature")
        raise APIError(401, "invalid_signature", "Invalid webhook signature")

    try:
        event = json.loads(payload)
    except json.JSONDecodeError:
        raise APIError(400, "bad_request", "Invalid JSON")
    if not isinstance(event, dict):
        raise APIError(400, "bad_request", "Event must be a JSON object")

    async with app.state.lock:
        try:
            entry = apply_checkout_event(app.state.ledger, event)
        except ProfileNotFound as e:
            raise APIError(400, "unknown_user", str(e))
        except ValidationError as e:
            raise APIError(400, "bad_request", str(e))
        if entry is not None:
            _save()

    return {"received": True, "credited": entry.delta if entry else 0}
