"""
Cost guardrails and quota enforcement.

Runs before any provider call so a request over quota never reaches the
network.

Enforcement Order:
1. Per-request max cost - Prevents a single runaway request
2. Per-user daily limit
3. System daily limit
4. System monthly limit
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum, auto
from ai_orchestrator.config.loader import QuotaConfig
from ai_orchestrator.storage.repository import UsageLedger

# Fraction of a limit at which a WARN is returned
WARNING_RATIO = Decimal("0.8")


class EnforcementAction(Enum):
    """Available enforcement actions in order of severity."""
    ALLOW = auto()    # Allow the request (no action)
    WARN = auto()     # Log warning but allow request
    BLOCK = auto()    # Reject the request entirely


class GuardrailViolation(Exception):
    """Raised when a guardrail is enforced with BLOCK action."""
    def __init__(self, message: str, action: EnforcementAction):
        super().__init__(message)
        self.action = action


class QuotaExceeded(GuardrailViolation):
    """A quota limit would be or has been exceeded."""
    def __init__(self, reason: str):
        super().__init__(reason, EnforcementAction.BLOCK)
        self.reason = reason


@dataclass(frozen=True)
class QuotaState:
    """Spend already recorded in the ledger for the current periods."""
    user_daily: Decimal
    system_daily: Decimal
    system_monthly: Decimal

    @classmethod
    def from_ledger(cls, ledger: UsageLedger, user_id: str) -> "QuotaState":
        return cls(
            user_daily=ledger.daily_cost(user_id=user_id),
            system_daily=ledger.daily_cost(),
            system_monthly=ledger.monthly_cost(),
        )


def _over_limit(used: Decimal, estimated: Decimal, limit: Decimal) -> bool:
    return used >= limit or used + estimated > limit


def check_quota(
    config: QuotaConfig,
    state: QuotaState,
    estimated_cost: Decimal = Decimal("0"),
) -> EnforcementAction:
    """
    Enforce quota limits in a fixed order of precedence.

    A limit is breached when spend already meets it, or when spend plus
    the estimated cost of this request would exceed it.

    Args:
        config: Quota limits
        state: Current spend
        estimated_cost: Pre-flight estimate for the pending request

    Returns:
        EnforcementAction.ALLOW, or WARN when any limit is at least
        WARNING_RATIO used

    Raises:
        QuotaExceeded: If any limit is breached
    """
    # 1. Per-request circuit breaker
    if estimated_cost > config.max_cost_per_request:
        raise QuotaExceeded(
            f"Request cost ${estimated_cost:.4f} exceeds maximum allowed "
            f"${config.max_cost_per_request:.2f}"
        )

    # 2-4. Period limits
    checks = (
        ("Daily user limit", state.user_daily, config.per_user_daily),
        ("Daily system limit", state.system_daily, config.daily),
        ("Monthly system limit", state.system_monthly, config.monthly),
    )
    for label, used, limit in checks:
        if _over_limit(used, estimated_cost, limit):
            raise QuotaExceeded(
                f"{label} exceeded: ${used + estimated_cost:.4f} of ${limit:.2f}"
            )

    for _, used, limit in checks:
        if used + estimated_cost >= limit * WARNING_RATIO:
            return EnforcementAction.WARN

    return EnforcementAction.ALLOW


def remaining_budget(config: QuotaConfig, state: QuotaState) -> Decimal:
    """Dollars left before the tightest limit is reached (never negative)."""
    remaining = min(
        config.per_user_daily - state.user_daily,
        config.daily - state.system_daily,
        config.monthly - state.system_monthly,
    )
    return max(remaining, Decimal("0"))
