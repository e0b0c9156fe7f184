"""
Issue Validation Package

Decides whether a submitted report is legitimate enough to earn points:
a local heuristic gate followed by an external classifier, with tolerant
parsing of the classifier's free-text reply.
"""

from .classifier import (
    GroqClassifier,
    ParsedMalformed,
    ParsedOk,
    parse_classifier_response,
)
from .validator import IssueValidator

__all__ = [
    "GroqClassifier",
    "ParsedMalformed",
    "ParsedOk",
    "parse_classifier_response",
    "IssueValidator",
]
