from .analyzer import AnalysisResult, AnalysisSection, Analyzer  # noqa
from .prompts import ANALYSIS_KINDS, DEFAULT_PROMPTS, load_prompts  # noqa
