"""Analysis collaborators invoked by queue workers."""

from file_insight.analysis.base import AnalysisError, AnalysisResult, Analyzer
from file_insight.analysis.heuristic import HeuristicAnalyzer
from file_insight.analysis.http_analyzer import HttpAnalyzer

__all__ = [
    "AnalysisError",
    "AnalysisResult",
    "Analyzer",
    "HeuristicAnalyzer",
    "HttpAnalyzer",
]
