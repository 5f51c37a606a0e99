from __future__ import annotations

from dataclasses import dataclass

from ..state.models import AccountState

_EPS = 1e-12


@dataclass
class PnlResult:
    account: AccountState
    realized_delta: float


def apply_fill(account: AccountState, side: str, price: float, qty: float, fee: float) -> PnlResult:
    """
    Linear position accounting for fill statistics.
    - position_qty signed: + long, - short
    - avg_entry_price is the VWAP of the open position (0 when flat)
    - realized pnl accrues only on the closing quantity; fees are tracked apart
    """
    price = float(price)
    qty = abs(float(qty))
    pos = float(account.position_qty)
    avg = float(account.avg_entry_price)
    fees_paid = float(account.fees_paid) + float(fee)

    signed = qty if side.lower() == "buy" else -qty

    # flat, or adding in the same direction
    if abs(pos) < _EPS or (pos > 0) == (signed > 0):
        new_pos = pos + signed
        new_avg = (abs(pos) * avg + qty * price) / max(abs(new_pos), _EPS)
        return PnlResult(
            account=account.model_copy(update={
                "position_qty": new_pos,
                "avg_entry_price": new_avg,
                "fees_paid": fees_paid,
            }),
            realized_delta=0.0,
        )

    closing = min(abs(pos), qty)
    realized = closing * (price - avg) if pos > 0 else closing * (avg - price)
    new_pos = pos + signed

    if abs(new_pos) < _EPS:
        new_pos, new_avg = 0.0, 0.0
    elif (pos > 0) == (new_pos > 0):
        new_avg = avg
    else:
        # flipped through flat: the remainder opened at this fill's price
        new_avg = price

    return PnlResult(
        account=account.model_copy(update={
            "position_qty": new_pos,
            "avg_entry_price": new_avg,
            "realized_pnl": float(account.realized_pnl) + realized,
            "fees_paid": fees_paid,
        }),
        realized_delta=realized,
    )
