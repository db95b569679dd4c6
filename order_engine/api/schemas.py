from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from order_engine.common.errors import ValidationError
from order_engine.execution.models import MARKET_ORDER

MAX_AMOUNT_IN = 1_000_000
MAX_SLIPPAGE = 0.5


class OrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    token_in: str = Field(..., alias="tokenIn", min_length=1, description="Token sold, e.g. SOL")
    token_out: str = Field(..., alias="tokenOut", min_length=1, description="Token bought, e.g. USDC")
    amount_in: float = Field(..., alias="amountIn", gt=0, le=MAX_AMOUNT_IN, description="Amount of token_in to sell")
    order_type: str = Field(default=MARKET_ORDER, alias="orderType", description="Only 'market' is supported")
    slippage: Optional[float] = Field(default=None, ge=0, le=MAX_SLIPPAGE, description="Max slippage fraction")

    @field_validator("amount_in", mode="before")
    @classmethod
    def _amount_must_be_number(cls, v: Any) -> Any:
        # Reject numeric strings and booleans; JSON numbers only.
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise ValueError("amountIn must be a positive number")
        return v

    @field_validator("order_type")
    @classmethod
    def _market_only(cls, v: str) -> str:
        s = (v or MARKET_ORDER).strip().lower()
        if s != MARKET_ORDER:
            raise ValueError("only market orders are supported")
        return s

    @model_validator(mode="after")
    def _distinct_tokens(self) -> "OrderRequest":
        if self.token_in == self.token_out:
            raise ValueError("tokenIn and tokenOut must be different")
        return self


def _describe(err: PydanticValidationError) -> str:
    parts = []
    for e in err.errors():
        loc = ".".join(str(p) for p in e.get("loc", ()) if p != "__root__")
        msg = str(e.get("msg", "invalid value"))
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, ") :]
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts) or "invalid order request"


def parse_order_request(payload: Any) -> OrderRequest:
    if not isinstance(payload, dict) or not payload:
        raise ValidationError("Request body is required")
    try:
        return OrderRequest.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(_describe(e), {"errors": len(e.errors())}) from e
