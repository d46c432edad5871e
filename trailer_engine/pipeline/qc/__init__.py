"""
Quality gate

Independent checkers (typography, consistency, safety, technical) and the
QualityGate that turns their scores into a PASS/FAIL verdict and a retry signal.
"""

from .gate import QualityGate

__all__ = ["QualityGate"]
