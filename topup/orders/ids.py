"""Order id generators."""
import itertools
import uuid
from typing import Protocol


class OrderIdGenerator(Protocol):
    """Produces globally unique order ids."""

    def new_id(self) -> str: ...


class UuidOrderIdGenerator:
    """128-bit random ids: `<prefix><uuid4>`."""

    def __init__(self, prefix: str = "ROBEKC-"):
        self.prefix = prefix

    def new_id(self) -> str:
        return f"{self.prefix}{uuid.uuid4()}"


class SequentialOrderIdGenerator:
    """Deterministic ids for tests: `<prefix>1`, `<prefix>2`, ..."""

    def __init__(self, prefix: str = "ORDER-", start: int = 1):
        self.prefix = prefix
        self._counter = itertools.count(start)

    def new_id(self) -> str:
        return f"{self.prefix}{next(self._counter)}"
