"""
Outcome of one External Processor call.

The worker branches on the variant type; rate-limit information travels as a
number, never as text.
"""

from dataclasses import dataclass, field
from typing import Union


@dataclass(frozen=True)
class Success:
    output: dict = field(default_factory=dict)


@dataclass(frozen=True)
class RateLimited:
    retry_after: float  # seconds

    def __post_init__(self) -> None:
        if self.retry_after <= 0:
            raise ValueError("retry_after must be positive")


@dataclass(frozen=True)
class OtherFailure:
    message: str


Outcome = Union[Success, RateLimited, OtherFailure]
