import pytest

from fakes import RECEIVER, Harness
from storefront_checkout.ledger import MemoryLedger


@pytest.fixture
def harness() -> Harness:
    return Harness()


@pytest.fixture
def ledger() -> MemoryLedger:
    return MemoryLedger(receiver_wallet=RECEIVER)
