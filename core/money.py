"""
Fixed-point USDC arithmetic. USDC has 6 decimals; every amount is a Decimal
quantized to that precision. Rounding always favors the platform: fees round
up, payouts and refunds round down.
"""
from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_UP

USDC_QUANTUM = Decimal('0.000001')
BPS_DENOMINATOR = Decimal(10000)


def to_usdc(value) -> Decimal:
    """Parse a user-supplied amount. Raises ValueError for anything non-finite or negative."""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValueError(f"Invalid amount: {value!r}")
    if not amount.is_finite() or amount < 0:
        raise ValueError(f"Invalid amount: {value!r}")
    return amount.quantize(USDC_QUANTUM, rounding=ROUND_DOWN)


def platform_fee(amount: Decimal, fee_bps: int) -> Decimal:
    return (amount * Decimal(fee_bps) / BPS_DENOMINATOR).quantize(USDC_QUANTUM, rounding=ROUND_UP)


def split_release(budget: Decimal, fee_bps: int) -> tuple:
    """Returns (agent_payout, fee). payout + fee == budget."""
    fee = platform_fee(budget, fee_bps)
    return budget - fee, fee


def split_refund(budget: Decimal, refund_percentage: int, fee_bps: int) -> tuple:
    """Returns (refund, agent_payout, fee) for a dispute settlement.

    The poster's refund carries no fee; the agent's remainder is fee-deducted.
    refund + agent_payout + fee == budget.
    """
    refund = (budget * Decimal(refund_percentage) / Decimal(100)).quantize(
        USDC_QUANTUM, rounding=ROUND_DOWN)
    remainder = budget - refund
    if remainder <= 0:
        return budget, Decimal('0'), Decimal('0')
    payout, fee = split_release(remainder, fee_bps)
    return refund, payout, fee


def fmt(amount) -> str:
    """Render an amount as a fixed 6-decimal string for JSON payloads."""
    if amount is None:
        return None
    return str(Decimal(amount).quantize(USDC_QUANTUM))
