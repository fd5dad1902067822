"""External collaborators: content generation, analysis and build fixes."""

from .analysis import AppAnalysis, AppAnalyzer, fallback_analysis, parse_analysis
from .client import CerebrasClient, Completion, ContentGenerator
from .fixer import BuildFixer, FixResult, LLMBuildFixer
from .fixes import FixReport, apply_post_generation_fixes
from .prompts import analysis_prompt, build_fix_prompt, generation_prompt, improvement_prompt

__all__ = [
    "AppAnalysis",
    "AppAnalyzer",
    "BuildFixer",
    "CerebrasClient",
    "Completion",
    "ContentGenerator",
    "FixReport",
    "FixResult",
    "LLMBuildFixer",
    "analysis_prompt",
    "apply_post_generation_fixes",
    "build_fix_prompt",
    "fallback_analysis",
    "generation_prompt",
    "improvement_prompt",
    "parse_analysis",
]
