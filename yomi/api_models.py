"""
Pydantic request/response models for the API.
Zeny amounts are integers; odds and probabilities are strings to keep
their Decimal precision.
"""

from typing import Literal

from pydantic import BaseModel, Field


# --- Auth ---

class RegisterRequest(BaseModel):
    username: str

class RegisterResponse(BaseModel):
    api_key: str
    profile_id: int
    username: str
    balance: int
    role: str

class RotateKeyResponse(BaseModel):
    api_key: str


# --- Profiles ---

class ProfileResponse(BaseModel):
    profile_id: int
    username: str
    balance: int
    role: str
    total_bets: int
    total_won: int
    wins: int
    losses: int
    xp: int
    level: int


# --- Markets ---

class OutcomeResponse(BaseModel):
    outcome_id: int
    name: str
    probability: str
    is_winner: bool | None

class MarketSummary(BaseModel):
    market_id: int
    question: str
    type: str
    category: str
    status: str
    is_live: bool
    volume: int
    outcomes: list[OutcomeResponse]
    closes_at: str | None
    created_at: str

class MarketDetail(MarketSummary):
    pool_yes: str
    pool_no: str
    winner_outcome_id: int | None
    resolved_at: str | None
    num_bets: int

class BetResponse(BaseModel):
    bet_id: int
    user_id: int
    market_id: int
    outcome_id: int
    outcome: str
    amount: int
    direction: str
    odds_at_bet: str
    potential_payout: int
    status: str
    created_at: str
    resolved_at: str | None

class PricePointResponse(BaseModel):
    outcome_id: int
    outcome: str
    probability: str
    created_at: str


# --- Betting ---

class SelectionModel(BaseModel):
    direction: Literal["YES", "NO"] = "YES"
    outcome_name: str

class PlaceBetRequest(BaseModel):
    """Either a user-facing `outcome` label or an explicit `selection`."""
    outcome: str | None = None
    selection: SelectionModel | None = None
    amount: int

class PlaceBetResponse(BaseModel):
    success: bool
    new_balance: int
    bet: BetResponse


# --- Admin ---

class CreateMarketRequest(BaseModel):
    question: str
    type: Literal["binary", "multi"] = "binary"
    category: str = "autre"
    outcomes: list[str] | None = None
    probabilities: list[str] | None = None
    closes_at: str | None = None
    pool_yes: str = "100"
    pool_no: str = "100"

class ResolveRequest(BaseModel):
    winning_outcome_id: int
    force: bool = False

class OutcomeResult(BaseModel):
    outcome_id: int
    is_winner: bool

class ResolveMultiRequest(BaseModel):
    results: list[OutcomeResult]
    force: bool = False

class ResolveResponse(BaseModel):
    success: bool
    payouts_count: int
    total_paid: int
    errors: list[str]

class CancelResponse(BaseModel):
    success: bool
    refunds_count: int
    total_refunded: int
    errors: list[str]

class CloseExpiredResponse(BaseModel):
    closed: list[int]

class CreditRequest(BaseModel):
    amount: int = Field(gt=0)

class CreditResponse(BaseModel):
    profile_id: int
    balance: int


class HealthResponse(BaseModel):
    status: str
    markets: int
    profiles: int
    zeny_in_circulation: int
