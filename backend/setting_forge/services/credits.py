"""Credit preflight for shared-pool model rounds."""
import logging
from dataclasses import dataclass

from setting_forge.config import settings
from setting_forge.errors import InsufficientCreditsError
from .model_router import ModelRoute


logger = logging.getLogger(__name__)

MIN_INPUT_TOKENS = 200
CHARS_PER_TOKEN = 3


@dataclass
class CreditEstimate:
    input_tokens: int
    output_tokens: int
    credits: float


def estimate_cost(route: ModelRoute, system_prompt: str, user_prompt: str, previous_text: str = "") -> CreditEstimate:
    """Rough token estimate from prompt sizes; output is assumed to be twice the input."""
    chars = len(system_prompt or "") + len(user_prompt or "") + len(previous_text or "")
    input_tokens = max(MIN_INPUT_TOKENS, chars // CHARS_PER_TOKEN)
    output_tokens = input_tokens * 2
    credits = (
        input_tokens / 1000 * route.input_credits_per_1k
        + output_tokens / 1000 * route.output_credits_per_1k
    )
    return CreditEstimate(input_tokens=input_tokens, output_tokens=output_tokens, credits=credits)


class CreditLedger:
    """In-process view of user balances; accounting rules live elsewhere."""

    def __init__(self, default_balance: float | None = None):
        self.default_balance = settings.default_credit_balance if default_balance is None else default_balance
        self._balances: dict[str, float] = {}

    def balance(self, user_id: str) -> float:
        return self._balances.get(user_id, self.default_balance)

    def set_balance(self, user_id: str, amount: float):
        self._balances[user_id] = amount

    async def preflight(self, user_id: str, route: ModelRoute, system_prompt: str,
                        user_prompt: str, previous_text: str = "") -> CreditEstimate:
        """Raise InsufficientCreditsError when the estimate exceeds the balance."""
        estimate = estimate_cost(route, system_prompt, user_prompt, previous_text)
        available = self.balance(user_id)
        logger.debug("Credit preflight user=%s est_in=%d est_out=%d cost=%.2f balance=%.2f",
                     user_id, estimate.input_tokens, estimate.output_tokens, estimate.credits, available)
        if estimate.credits > available:
            raise InsufficientCreditsError(user_id, estimate.credits, available)
        return estimate
