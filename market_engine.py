"""
market_engine.py

Housing market simulation core.

Design goals:
- Pure reducer transitions: (market, policy, action) -> (market, policy, events)
- One fixed time quantum per processed action (a quarter)
- All clamped indicators stay in range after every transition
- Never NaN/Infinity in state: a step that would diverge keeps the previous value
- Exactly reproducible seed (2005 Q1) and historical reference
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from math import isfinite
from typing import Any, Literal, Mapping

from errors import ValidationError


Role = Literal["homebuyer", "investor", "regulator"]

ROLES: tuple[str, ...] = ("homebuyer", "investor", "regulator")

# One processed action advances the simulation by a quarter.
TIME_QUANTUM = 0.25

# Reference median household income used for price-to-income ratio.
MEDIAN_INCOME = 52000.0

# Baseline housing starts for supply level.
BASELINE_HOUSING_STARTS = 1800000.0

# LTV at or above which lending is considered loose.
NEUTRAL_LTV = 95.0

# Historical narrative matches within this many quarters.
HISTORY_TOLERANCE_QUARTERS = 2.0

DEFAULT_NARRATIVE = "Normal market conditions"

PRICE_GROWTH_MIN = -20.0
PRICE_GROWTH_MAX = 30.0
BUBBLE_RISK_MIN = 0.0
BUBBLE_RISK_MAX = 100.0
INVENTORY_MIN = 0.5
INVENTORY_MAX = 12.0
HOUSING_STARTS_MIN = 500000.0
HOUSING_STARTS_MAX = 3000000.0
FORECLOSURE_MIN = 0.1
FORECLOSURE_MAX = 5.0
DEMAND_FLOOR = 50.0

# Reset targets cover 2005 Q1 through 2014 Q4.
HISTORICAL_QUARTER_MIN = 0.0
HISTORICAL_QUARTER_MAX = 40.0

# Largest accepted magnitude for a numeric action parameter.
PARAMETER_MAGNITUDE_MAX = 1e9


@dataclass(frozen=True)
class MarketState:
    median_price: float = 220000.0
    price_growth: float = 8.5
    inventory: float = 4.2
    bubble_risk: float = 35.0
    supply_level: float = 100.0
    demand_level: float = 120.0
    price_to_income_ratio: float = 3.8
    mortgage_rate: float = 5.87
    unemployment_rate: float = 5.1
    housing_starts: float = 2068000.0
    foreclosure_rate: float = 0.58
    # Quarters since 2005 Q1.
    time_step: float = 0.0


@dataclass(frozen=True)
class PolicyState:
    fed_rate: float = 2.25
    max_ltv: float = 95.0
    capital_requirements: float = 8.0
    stress_testing: bool = False
    regulatory_strength: float = 50.0


@dataclass(frozen=True)
class HistoricalEntry:
    time: float
    events: tuple[str, ...]


HISTORICAL_REFERENCE: tuple[HistoricalEntry, ...] = (
    HistoricalEntry(0, ("Low interest rates", "Loose lending standards")),
    HistoricalEntry(4, ("Fed starts raising rates", "Subprime lending peaks")),
    HistoricalEntry(8, ("Housing prices peak", "Early signs of stress")),
    HistoricalEntry(10, ("Subprime crisis begins", "Bear Stearns hedge funds collapse")),
    HistoricalEntry(12, ("Lehman Brothers fails", "Global financial crisis")),
    HistoricalEntry(14, ("TARP bailouts", "Fed cuts rates to zero")),
    HistoricalEntry(16, ("Housing market bottoms", "Recovery begins")),
)


# --------------------------- Actions / Events ---------------------------


@dataclass(frozen=True)
class Action:
    participant_id: str
    role: str
    action_type: str
    parameters: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MarketEvent:
    event_type: str
    event_data: dict
    triggered_by: str
    impact: dict


@dataclass(frozen=True)
class TransitionResult:
    events: tuple[MarketEvent, ...]
    new_state: MarketState
    policy: PolicyState


# Required parameter shape per (role, action type). Kinds: "number", "bool".
ACTION_PARAMETERS: dict[str, dict[str, dict[str, str]]] = {
    "homebuyer": {
        "purchase": {"price": "number", "income": "number", "downPayment": "number"},
        "wait": {},
    },
    "investor": {
        "buy_properties": {"quantity": "number", "leverage": "number"},
        "securitize": {},
    },
    "regulator": {
        "set_fed_rate": {"rate": "number"},
        "set_ltv_limit": {"maxLTV": "number"},
        "require_stress_testing": {"enabled": "bool"},
    },
}


# --------------------------- Helpers ---------------------------


def initialize() -> tuple[MarketState, PolicyState, tuple[HistoricalEntry, ...]]:
    """Seed state: 2005 Q1, before the crisis."""
    return MarketState(), PolicyState(), HISTORICAL_REFERENCE


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def _finite_or(value: float, fallback: float) -> float:
    try:
        return value if isfinite(value) else fallback
    except (TypeError, OverflowError):
        return fallback


def _to_float(value: Any, default: float) -> float:
    try:
        return _finite_or(float(value), float(default))
    except (TypeError, ValueError, OverflowError):
        return float(default)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _has_non_finite(value: Any) -> bool:
    if isinstance(value, float):
        return not isfinite(value)
    if isinstance(value, Mapping):
        return any(_has_non_finite(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(_has_non_finite(v) for v in value)
    return False


def validate_action(action: Action) -> None:
    """
    Check the parameter shape of a recognized action.

    Non-finite floats are rejected anywhere in the parameters, since they
    end up in recorded decisions and broadcast events. Unknown roles and
    action types otherwise pass untouched; the reducer treats them as
    no-ops.
    """
    params = action.parameters if isinstance(action.parameters, Mapping) else {}
    if _has_non_finite(params):
        raise ValidationError(f"{action.action_type}: parameters must be finite numbers")
    shape = ACTION_PARAMETERS.get(action.role, {}).get(action.action_type)
    if shape is None:
        return
    for name, kind in shape.items():
        if name not in params:
            raise ValidationError(f"{action.action_type}: missing parameter '{name}'")
        value = params[name]
        if kind == "number":
            if not _is_number(value):
                raise ValidationError(f"{action.action_type}: parameter '{name}' must be a number")
            if _finite_or(value, None) is None:
                raise ValidationError(f"{action.action_type}: parameter '{name}' must be finite")
            if abs(value) > PARAMETER_MAGNITUDE_MAX:
                raise ValidationError(
                    f"{action.action_type}: parameter '{name}' out of range (|x| <= {PARAMETER_MAGNITUDE_MAX:g})"
                )
        elif kind == "bool" and not isinstance(value, bool):
            raise ValidationError(f"{action.action_type}: parameter '{name}' must be a boolean")


def check_invariants(market: MarketState) -> list[str]:
    """
    Clamping and finiteness checks for a post-transition market state.
    """
    violations: list[str] = []
    for name, value in market_to_dict(market).items():
        if not isfinite(value):
            violations.append(f"{name} must be finite")
    if not BUBBLE_RISK_MIN <= market.bubble_risk <= BUBBLE_RISK_MAX:
        violations.append("bubbleRisk out of [0, 100]")
    if not INVENTORY_MIN <= market.inventory <= INVENTORY_MAX:
        violations.append("inventory out of [0.5, 12]")
    if not HOUSING_STARTS_MIN <= market.housing_starts <= HOUSING_STARTS_MAX:
        violations.append("housingStarts out of [500000, 3000000]")
    if not FORECLOSURE_MIN <= market.foreclosure_rate <= FORECLOSURE_MAX:
        violations.append("foreclosureRate out of [0.1, 5]")
    if market.demand_level < DEMAND_FLOOR:
        violations.append("demandLevel below 50")
    return violations


def market_to_dict(market: MarketState) -> dict:
    return {
        "medianPrice": market.median_price,
        "priceGrowth": market.price_growth,
        "inventory": market.inventory,
        "bubbleRisk": market.bubble_risk,
        "supplyLevel": market.supply_level,
        "demandLevel": market.demand_level,
        "priceToIncomeRatio": market.price_to_income_ratio,
        "mortgageRate": market.mortgage_rate,
        "unemploymentRate": market.unemployment_rate,
        "housingStarts": market.housing_starts,
        "foreclosureRate": market.foreclosure_rate,
        "timeStep": market.time_step,
    }


def market_from_dict(data: Mapping[str, Any] | None) -> MarketState:
    data = data or {}
    seed = MarketState()
    return MarketState(
        median_price=_to_float(data.get("medianPrice"), seed.median_price),
        price_growth=_to_float(data.get("priceGrowth"), seed.price_growth),
        inventory=_to_float(data.get("inventory"), seed.inventory),
        bubble_risk=_to_float(data.get("bubbleRisk"), seed.bubble_risk),
        supply_level=_to_float(data.get("supplyLevel"), seed.supply_level),
        demand_level=_to_float(data.get("demandLevel"), seed.demand_level),
        price_to_income_ratio=_to_float(data.get("priceToIncomeRatio"), seed.price_to_income_ratio),
        mortgage_rate=_to_float(data.get("mortgageRate"), seed.mortgage_rate),
        unemployment_rate=_to_float(data.get("unemploymentRate"), seed.unemployment_rate),
        housing_starts=_to_float(data.get("housingStarts"), seed.housing_starts),
        foreclosure_rate=_to_float(data.get("foreclosureRate"), seed.foreclosure_rate),
        time_step=_to_float(data.get("timeStep"), seed.time_step),
    )


def policy_to_dict(policy: PolicyState) -> dict:
    return {
        "fedRate": policy.fed_rate,
        "maxLTV": policy.max_ltv,
        "capitalRequirements": policy.capital_requirements,
        "stressTesting": policy.stress_testing,
        "regulatoryStrength": policy.regulatory_strength,
    }


def policy_from_dict(data: Mapping[str, Any] | None) -> PolicyState:
    data = data or {}
    seed = PolicyState()
    return PolicyState(
        fed_rate=_to_float(data.get("fedRate"), seed.fed_rate),
        max_ltv=_to_float(data.get("maxLTV"), seed.max_ltv),
        capital_requirements=_to_float(data.get("capitalRequirements"), seed.capital_requirements),
        stress_testing=bool(data.get("stressTesting", seed.stress_testing)),
        regulatory_strength=_to_float(data.get("regulatoryStrength"), seed.regulatory_strength),
    )


def event_to_dict(event: MarketEvent) -> dict:
    return {
        "eventType": event.event_type,
        "eventData": dict(event.event_data),
        "triggeredBy": event.triggered_by,
        "impact": dict(event.impact),
    }


# --------------------------- Action handlers ---------------------------


_Outcome = tuple[MarketState, PolicyState, list[MarketEvent]]


def _homebuyer_purchase(market: MarketState, policy: PolicyState, action: Action) -> _Outcome:
    params = action.parameters
    price = params["price"]
    income = params["income"]
    down_payment = params["downPayment"]
    ratio = _finite_or(price / income, None) if income else None

    st = replace(market, demand_level=_finite_or(market.demand_level + 1, market.demand_level))
    event = MarketEvent(
        event_type="homebuyer_purchase",
        event_data={
            "price": price,
            "income": income,
            "downPayment": down_payment,
            "priceToIncomeRatio": ratio,
        },
        triggered_by=action.participant_id,
        impact={
            "demandIncrease": 1,
            "marketSignal": "bullish" if price > market.median_price else "bearish",
        },
    )
    return st, policy, [event]


def _homebuyer_wait(market: MarketState, policy: PolicyState, action: Action) -> _Outcome:
    st = replace(market, demand_level=market.demand_level - 0.5)
    event = MarketEvent(
        event_type="homebuyer_wait",
        event_data={"reason": action.parameters.get("reason")},
        triggered_by=action.participant_id,
        impact={"demandDecrease": 0.5},
    )
    return st, policy, [event]


def _investor_buy_properties(market: MarketState, policy: PolicyState, action: Action) -> _Outcome:
    quantity = action.parameters["quantity"]
    leverage = action.parameters["leverage"]
    demand_increase = quantity * 2
    risk_increase = quantity * leverage * 0.1

    st = replace(
        market,
        demand_level=_finite_or(market.demand_level + demand_increase, market.demand_level),
        bubble_risk=_finite_or(market.bubble_risk + risk_increase, market.bubble_risk),
    )
    event = MarketEvent(
        event_type="investor_purchase",
        event_data={"quantity": quantity, "leverage": leverage},
        triggered_by=action.participant_id,
        impact={
            "demandIncrease": _finite_or(demand_increase, 0.0),
            "bubbleRiskIncrease": _finite_or(risk_increase, 0.0),
        },
    )
    return st, policy, [event]


def _investor_securitize(market: MarketState, policy: PolicyState, action: Action) -> _Outcome:
    st = replace(market, bubble_risk=market.bubble_risk + 5)
    event = MarketEvent(
        event_type="mortgage_securitization",
        event_data=dict(action.parameters),
        triggered_by=action.participant_id,
        impact={"bubbleRiskIncrease": 5, "marketLiquidity": "increased"},
    )
    return st, policy, [event]


def _regulator_set_fed_rate(market: MarketState, policy: PolicyState, action: Action) -> _Outcome:
    new_rate = action.parameters["rate"]
    old_rate = policy.fed_rate
    change = new_rate - old_rate

    pol = replace(policy, fed_rate=float(new_rate))
    st = replace(
        market,
        mortgage_rate=_finite_or(market.mortgage_rate + change * 1.2, market.mortgage_rate),
        demand_level=_finite_or(market.demand_level - change * 10, market.demand_level),
    )
    event = MarketEvent(
        event_type="fed_rate_change",
        event_data={"oldRate": old_rate, "newRate": new_rate, "change": _finite_or(change, 0.0)},
        triggered_by=action.participant_id,
        impact={
            "mortgageRateChange": _finite_or(change * 1.2, 0.0),
            "demandChange": _finite_or(-change * 10, 0.0),
            "coolingEffect": "moderate" if change > 0 else "stimulative",
        },
    )
    return st, pol, [event]


def _regulator_set_ltv_limit(market: MarketState, policy: PolicyState, action: Action) -> _Outcome:
    max_ltv = action.parameters["maxLTV"]
    # Tightening below the neutral LTV is positive; loosening above it is negative.
    reduction = (NEUTRAL_LTV - max_ltv) * 0.5

    pol = replace(policy, max_ltv=float(max_ltv))
    st = replace(
        market,
        bubble_risk=_finite_or(market.bubble_risk - reduction, market.bubble_risk),
        demand_level=_finite_or(market.demand_level - reduction * 0.3, market.demand_level),
    )
    event = MarketEvent(
        event_type="ltv_regulation",
        event_data={"maxLTV": max_ltv},
        triggered_by=action.participant_id,
        impact={
            "bubbleRiskReduction": _finite_or(reduction, 0.0),
            "demandReduction": _finite_or(reduction * 0.3, 0.0),
        },
    )
    return st, pol, [event]


def _regulator_require_stress_testing(market: MarketState, policy: PolicyState, action: Action) -> _Outcome:
    enabled = bool(action.parameters["enabled"])
    pol = replace(policy, stress_testing=enabled)
    if not enabled:
        return market, pol, []

    st = replace(market, bubble_risk=market.bubble_risk - 10)
    event = MarketEvent(
        event_type="stress_testing_mandate",
        event_data={"enabled": True},
        triggered_by=action.participant_id,
        impact={"bubbleRiskReduction": 10, "bankStability": "improved"},
    )
    return st, pol, [event]


_HANDLERS = {
    ("homebuyer", "purchase"): _homebuyer_purchase,
    ("homebuyer", "wait"): _homebuyer_wait,
    ("investor", "buy_properties"): _investor_buy_properties,
    ("investor", "securitize"): _investor_securitize,
    ("regulator", "set_fed_rate"): _regulator_set_fed_rate,
    ("regulator", "set_ltv_limit"): _regulator_set_ltv_limit,
    ("regulator", "require_stress_testing"): _regulator_require_stress_testing,
}


# --------------------------- Transitions ---------------------------


def apply_action(
    market: MarketState,
    policy: PolicyState,
    action: Action,
) -> tuple[MarketState, PolicyState, list[MarketEvent]]:
    """
    Pure reducer for one participant action (without the time step).

    Unknown role or action type returns the inputs unchanged and no events.
    """
    handler = _HANDLERS.get((action.role, action.action_type))
    if handler is None:
        return market, policy, []
    return handler(market, policy, action)


def update_dynamics(market: MarketState, policy: PolicyState) -> MarketState:
    """
    Advance the shared economic model by one quantum.

    Steps run in a fixed order and each reads the values produced by the
    steps before it.
    """
    m = market
    time_step = m.time_step + TIME_QUANTUM

    # Supply/demand imbalance and rate pressure drive price growth.
    price_growth = m.price_growth
    supply_demand_ratio = m.supply_level / m.demand_level if m.demand_level else 0.0
    if supply_demand_ratio:
        price_change_from_sd = (1 / supply_demand_ratio - 1) * 20
        rate_demand_effect = (8 - m.mortgage_rate) * 2
        blended = m.price_growth * 0.9 + price_change_from_sd * 0.3 + rate_demand_effect * 0.1
        if isfinite(blended):
            price_growth = _clamp(blended, PRICE_GROWTH_MIN, PRICE_GROWTH_MAX)

    # Annualized percentage compounded per quarter.
    median_price = _finite_or(m.median_price * (1 + price_growth / 400), m.median_price)
    price_to_income = _finite_or(median_price / MEDIAN_INCOME, m.price_to_income_ratio)

    raw_risk = (
        price_to_income * 15
        + price_growth * 2
        + (10 if m.mortgage_rate < 4 else 0)
        + (15 if policy.max_ltv > 90 else 0)
        + (10 if not policy.stress_testing else 0)
    )
    bubble_risk = _clamp(_finite_or(raw_risk, m.bubble_risk), BUBBLE_RISK_MIN, BUBBLE_RISK_MAX)

    inventory = _clamp(
        _finite_or(m.inventory + (m.supply_level - m.demand_level) * 0.01, m.inventory),
        INVENTORY_MIN,
        INVENTORY_MAX,
    )

    housing_starts = _clamp(
        _finite_or(m.housing_starts + price_growth * 10000, m.housing_starts),
        HOUSING_STARTS_MIN,
        HOUSING_STARTS_MAX,
    )

    foreclosure_rate = _clamp(
        _finite_or(
            0.5 + bubble_risk * 0.03 + max(0, price_to_income - 4) * 0.5,
            m.foreclosure_rate,
        ),
        FORECLOSURE_MIN,
        FORECLOSURE_MAX,
    )

    supply_level = 100 + (housing_starts - BASELINE_HOUSING_STARTS) / 10000

    demand_level = max(
        DEMAND_FLOOR,
        _finite_or(120 - m.mortgage_rate * 5 - m.unemployment_rate * 3, DEMAND_FLOOR),
    )

    return replace(
        m,
        time_step=time_step,
        price_growth=price_growth,
        median_price=median_price,
        price_to_income_ratio=price_to_income,
        bubble_risk=bubble_risk,
        inventory=inventory,
        housing_starts=housing_starts,
        foreclosure_rate=foreclosure_rate,
        supply_level=supply_level,
        demand_level=demand_level,
    )


def historical_comparison(
    market: MarketState,
    history: tuple[HistoricalEntry, ...] = HISTORICAL_REFERENCE,
) -> dict:
    match = next(
        (h for h in history if abs(h.time - market.time_step) < HISTORY_TOLERANCE_QUARTERS),
        None,
    )
    return {
        "currentRisk": market.bubble_risk,
        "historicalEvent": ", ".join(match.events) if match else DEFAULT_NARRATIVE,
    }


def reset_to_historical_period(market: MarketState, quarter: float) -> MarketState:
    """
    Jump to a historical quarter. Overwrites bubble risk and price growth;
    earlier play history does not carry into the result.

    Raises ValidationError for a quarter outside
    [HISTORICAL_QUARTER_MIN, HISTORICAL_QUARTER_MAX].
    """
    if not _is_number(quarter) or _finite_or(quarter, None) is None:
        raise ValidationError("quarter must be a finite number")
    if not HISTORICAL_QUARTER_MIN <= quarter <= HISTORICAL_QUARTER_MAX:
        raise ValidationError(
            f"quarter must be between {HISTORICAL_QUARTER_MIN:g} and {HISTORICAL_QUARTER_MAX:g}"
        )
    if quarter <= 4:
        # 2005-2006: bubble building
        bubble_risk = 20 + quarter * 5
        price_growth = 12 + quarter * 2
    elif quarter <= 10:
        # 2006-2008: peak and early crisis
        bubble_risk = 45 + (quarter - 4) * 8
        price_growth = max(-10, 24 - (quarter - 4) * 6)
    else:
        # 2008+: crisis and recovery
        bubble_risk = max(10, 85 - (quarter - 10) * 5)
        price_growth = max(-25, -15 + (quarter - 10) * 2)
    return replace(
        market,
        time_step=float(quarter),
        bubble_risk=_clamp(float(bubble_risk), BUBBLE_RISK_MIN, BUBBLE_RISK_MAX),
        price_growth=_clamp(float(price_growth), PRICE_GROWTH_MIN, PRICE_GROWTH_MAX),
    )


def process(market: MarketState, policy: PolicyState, action: Action) -> TransitionResult:
    """apply_action followed by update_dynamics."""
    st, pol, events = apply_action(market, policy, action)
    st = update_dynamics(st, pol)
    return TransitionResult(events=tuple(events), new_state=st, policy=pol)


def replay(
    actions,
    market: MarketState | None = None,
    policy: PolicyState | None = None,
) -> tuple[MarketState, PolicyState, list[MarketEvent]]:
    """Fold a sequence of actions over a starting state."""
    seed_market, seed_policy, _ = initialize()
    st = market or seed_market
    pol = policy or seed_policy
    events: list[MarketEvent] = []
    for action in actions:
        result = process(st, pol, action)
        st, pol = result.new_state, result.policy
        events.extend(result.events)
    return st, pol, events


# --------------------------- Engine holder ---------------------------


class SimulationEngine:
    """Holds one session's authoritative market/policy pair."""

    def __init__(
        self,
        market: MarketState | None = None,
        policy: PolicyState | None = None,
        history: tuple[HistoricalEntry, ...] | None = None,
    ) -> None:
        seed_market, seed_policy, seed_history = initialize()
        self.market = market or seed_market
        self.policy = policy or seed_policy
        self.history = history or seed_history

    @classmethod
    def from_snapshot(cls, market_data: Mapping | None, policy_data: Mapping | None) -> "SimulationEngine":
        return cls(market=market_from_dict(market_data), policy=policy_from_dict(policy_data))

    def apply_action(self, action: Action) -> TransitionResult:
        self.market, self.policy, events = apply_action(self.market, self.policy, action)
        return TransitionResult(events=tuple(events), new_state=self.market, policy=self.policy)

    def update_dynamics(self) -> MarketState:
        self.market = update_dynamics(self.market, self.policy)
        return self.market

    def process(self, action: Action) -> TransitionResult:
        # State is committed only after both steps succeed.
        result = process(self.market, self.policy, action)
        self.market, self.policy = result.new_state, result.policy
        return result

    def get_historical_comparison(self) -> dict:
        return historical_comparison(self.market, self.history)

    def reset_to_historical_period(self, quarter: float) -> MarketState:
        self.market = reset_to_historical_period(self.market, quarter)
        return self.market

    def restore(self, market: MarketState, policy: PolicyState) -> None:
        self.market = market
        self.policy = policy

    def snapshot(self) -> dict:
        return {
            "marketState": market_to_dict(self.market),
            "policyState": policy_to_dict(self.policy),
        }
