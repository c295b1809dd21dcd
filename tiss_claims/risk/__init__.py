"""
Glosa risk prediction and formatting auto-fix.
"""

from tiss_claims.risk.predictor import GlosaRiskPredictor
from tiss_claims.risk.rules import OPERATOR_RULES, OperatorRule, operator_key

__all__ = [
    "GlosaRiskPredictor",
    "OPERATOR_RULES",
    "OperatorRule",
    "operator_key",
]
