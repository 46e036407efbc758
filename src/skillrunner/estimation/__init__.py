"""Token and cost estimation."""

from skillrunner.estimation.cost import CostCalculator, Pricing
from skillrunner.estimation.tokens import CharRatioEstimator, TiktokenEstimator, TokenEstimator

__all__ = [
    "CharRatioEstimator",
    "CostCalculator",
    "Pricing",
    "TiktokenEstimator",
    "TokenEstimator",
]
