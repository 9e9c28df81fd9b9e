from pydantic import BaseModel, ConfigDict, ValidationError
from typing import List, Tuple, Union


class DecodeError(ValueError):
    """Raised when a queue message is not a well-formed payment."""


class Payment(BaseModel):
    # strict: "1", 1.0 and true are not accepted where an integer is expected
    model_config = ConfigDict(strict=True, frozen=True)

    user_id: int
    payment_id: int
    deposit_amount: int

    def as_row(self) -> Tuple[int, int, int]:
        return (self.user_id, self.payment_id, self.deposit_amount)


PublishBody = Union[Payment, List[Payment]]


def encode(payment: Payment) -> bytes:
    return payment.model_dump_json().encode("utf-8")


def decode(raw: Union[bytes, str]) -> Payment:
    try:
        return Payment.model_validate_json(raw)
    except ValidationError as exc:
        raise DecodeError(str(exc)) from exc
