"""Exam paper extraction, figure cropping and answer grading services."""

from .config import AppConfig, load_config
from .pipeline import AnalysisRequest, AnalysisSummary, PaperAnalysisPipeline, build_pipeline

__all__ = [
    "AnalysisRequest",
    "AnalysisSummary",
    "AppConfig",
    "PaperAnalysisPipeline",
    "build_pipeline",
    "load_config",
]
