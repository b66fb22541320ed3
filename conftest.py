"""Shared fixtures for the SheetCalc tests."""

import os
import sys

import pytest

# Ensure project root is on sys.path
ROOT = os.path.dirname(os.path.abspath(__file__))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

# Never hit the network from the test suite
os.environ.pop("SHEETCALC_LIVE_RATES", None)


@pytest.fixture
def evaluator():
    from expression_evaluator import default_evaluator

    return default_evaluator()


@pytest.fixture
def engine(evaluator):
    from sheet_engine import SheetEvaluator

    return SheetEvaluator(evaluator)
