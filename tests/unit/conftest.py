"""Pytest configuration for unit tests."""
import pytest

from cfex.ir.assembler import assemble
from tests.unit.listings import DISPATCH_FIVE, DISPATCH_FOUR, TRY_CATCH


@pytest.fixture
def dispatch_five():
    return assemble(DISPATCH_FIVE)


@pytest.fixture
def dispatch_four():
    return assemble(DISPATCH_FOUR)


@pytest.fixture
def try_catch():
    return assemble(TRY_CATCH)
