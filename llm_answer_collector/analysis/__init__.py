"""
Consolidated analysis cache.

Public API:
    - AnalysisCache: get-or-compute cache keyed by Result id (single-flight)
    - ConsolidatedAnalysis: entities, citation categories and sentiment of a Result
    - HTTPConsolidatedAnalyzer: httpx backend for the consolidated call
"""

from .http_analyzer import HTTPConsolidatedAnalyzer
from .result_cache import AnalysisCache, ConsolidatedAnalysis

__all__ = [
    "AnalysisCache",
    "ConsolidatedAnalysis",
    "HTTPConsolidatedAnalyzer",
]
