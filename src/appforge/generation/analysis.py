"""Structural analysis of an app request, with a deterministic fallback."""

from __future__ import annotations

import json
import logging
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from appforge.content.parser import strip_code_fences
from appforge.errors import AnalysisFailure, GenerationError

from .client import ContentGenerator
from .prompts import analysis_prompt

logger = logging.getLogger(__name__)

FRONTEND_KEYWORDS = ("react", "vue", "svelte", "frontend", "spa", "vite", "component", "ui", "interface")
BACKEND_KEYWORDS = ("api", "rest", "server", "backend", "express", "database", "auth", "sqlite", "postgres")
FULLSTACK_KEYWORDS = ("full-stack", "fullstack", "full stack", "frontend and backend", "track", "store", "save")


class AppAnalysis(BaseModel):
    """What kind of app a request asks for."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    app_type: Literal["frontend", "backend", "fullstack"] = "backend"
    framework: str = "vanilla"
    build_tool: str = "none"
    styling: str = "css"
    database: str = "none"
    authentication: bool = False
    server_file: str = "none"
    static_build: bool = False
    missing_files: list[str] = Field(default_factory=list)
    missing_dependencies: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    source: Literal["generator", "fallback"] = "generator"

    @property
    def uses_vite(self) -> bool:
        return self.build_tool == "vite"


def fallback_analysis(prompt: str) -> AppAnalysis:
    """Keyword-scored analysis used whenever the generator cannot answer."""
    text = prompt.lower()
    frontend = sum(1 for keyword in FRONTEND_KEYWORDS if keyword in text)
    backend = sum(1 for keyword in BACKEND_KEYWORDS if keyword in text)
    fullstack = sum(1 for keyword in FULLSTACK_KEYWORDS if keyword in text)

    both = (
        (frontend and backend)
        or ("track" in text and "ui" in text)
        or ("spa" in text and "api" in text)
    )
    if both or fullstack:
        app_type = "fullstack"
    elif frontend > backend:
        app_type = "frontend"
    else:
        app_type = "backend"

    return AppAnalysis(
        app_type=app_type,
        framework="react" if "react" in text else "vanilla",
        build_tool="vite" if "vite" in text else "none",
        styling="tailwind" if "tailwind" in text else "css",
        database="sqlite" if "sqlite" in text else "none",
        authentication="auth" in text or "login" in text,
        server_file="server.js" if app_type in ("fullstack", "backend") else "none",
        static_build=app_type == "fullstack",
        source="fallback",
    )


def parse_analysis(content: str) -> AppAnalysis:
    """Parse the generator's JSON answer.

    Raises:
        AnalysisFailure: If the content is not a valid analysis object
    """
    cleaned = strip_code_fences("analysis.json", content)
    try:
        data = json.loads(cleaned)
        return AppAnalysis.model_validate(data)
    except (json.JSONDecodeError, PydanticValidationError) as e:
        raise AnalysisFailure(f"Unparseable analysis: {e}") from e


class AppAnalyzer:
    """Asks the generator for an analysis and falls back to keywords."""

    def __init__(self, generator: ContentGenerator | None):
        self.generator = generator

    async def analyze(self, prompt: str) -> AppAnalysis:
        """Analyze a request. Never raises; failures use the fallback."""
        try:
            analysis = await self._ask(prompt)
        except AnalysisFailure as e:
            logger.warning(f"Analysis failed, using keyword fallback: {e.message}")
            analysis = fallback_analysis(prompt)

        logger.info(
            f"Analysis ({analysis.source}): {analysis.app_type} app with "
            f"{analysis.framework} + {analysis.build_tool}, styling {analysis.styling}, "
            f"database {analysis.database}"
        )
        return analysis

    async def _ask(self, prompt: str) -> AppAnalysis:
        if self.generator is None:
            raise AnalysisFailure("No content generator configured")
        try:
            completion = await self.generator.complete(
                analysis_prompt(prompt), max_tokens=1000, temperature=0.3
            )
        except GenerationError as e:
            raise AnalysisFailure(f"Analysis request failed: {e.message}") from e
        return parse_analysis(completion.content)
