import os
from typing import Annotated, Any, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic import BeforeValidator, model_validator

from .helpers import is_valid_email, effective_amount

MIN_PAYMENT_AMOUNT = int(os.getenv("MIN_PAYMENT_AMOUNT", "1000"))
MAX_PAYMENT_AMOUNT = int(os.getenv("MAX_PAYMENT_AMOUNT", "10000000"))

M = TypeVar("M", bound=BaseModel)


def _email(v: Any) -> Any:
    if isinstance(v, str):
        v = v.strip().lower()
    if not isinstance(v, str) or not is_valid_email(v):
        raise ValueError("Invalid email format")
    return v


def _stripped(v: Any) -> Any:
    return v.strip() if isinstance(v, str) else v


Email = Annotated[str, BeforeValidator(_email), Field(max_length=255)]
Text = Annotated[str, BeforeValidator(_stripped)]


class CreatePaymentRequest(BaseModel):
    amount: int = Field(..., le=MAX_PAYMENT_AMOUNT)
    discounted_amount: Optional[int] = Field(None, ge=0,
                                             le=MAX_PAYMENT_AMOUNT)
    email: Email
    name: Text = Field(..., min_length=1, max_length=100)
    product_name: Text = Field(..., min_length=1, max_length=100)
    title: Optional[Text] = Field(None, max_length=200)
    sender_bank_type: Optional[str] = Field(None, max_length=50)

    @model_validator(mode="after")
    def payable_floor(self):
        if self.effective_amount < MIN_PAYMENT_AMOUNT:
            raise ValueError(
                f"Minimum payment amount is {MIN_PAYMENT_AMOUNT}"
            )
        return self

    @property
    def effective_amount(self) -> int:
        return effective_amount(self.amount, self.discounted_amount)


class UseVoucherRequest(BaseModel):
    product_name: Text = Field(..., min_length=1, max_length=100)
    user_email: Email
    transaction_id: Optional[str] = Field(None, max_length=100)
    name: Optional[Text] = Field(None, max_length=100)


class ResendVoucherRequest(BaseModel):
    transaction_id: str = Field(..., min_length=1, max_length=100)


class FlipCallbackPayload(BaseModel):
    """Shape of the `data` object Flip posts to the callback URL."""
    id: str = Field(..., min_length=1)
    bill_link_id: Optional[str] = None
    amount: int
    status: str = Field(..., min_length=1)
    sender_email: Email
    payment_method: Optional[str] = None

    @field_validator("id", "bill_link_id", "payment_method", mode="before")
    @classmethod
    def coerce_text(cls, v):
        # Flip sends numeric ids for some fields
        if v is None or v == "":
            return None
        return str(v)

    @field_validator("amount", mode="before")
    @classmethod
    def coerce_amount(cls, v):
        if isinstance(v, str):
            try:
                v = float(v.strip())
            except ValueError:
                raise ValueError("amount must be a number")
        if isinstance(v, float):
            if not v.is_integer():
                raise ValueError("amount must be a whole number")
            v = int(v)
        return v


def validate_request(
    model: Type[M], data: Any
) -> Tuple[Optional[M], Optional[str]]:
    """Parse `data`; on failure return the first problem as `field: msg`."""
    try:
        return model.model_validate(data), None
    except ValidationError as exc:
        err = exc.errors()[0]
        loc = ".".join(str(p) for p in err.get("loc", ()))
        msg = err.get("msg", "Validation failed")
        # pydantic prefixes custom messages
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        return None, (f"{loc}: {msg}" if loc else msg)
