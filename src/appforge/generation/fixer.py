"""Automated build fixer: asks the generator to repair a failing build.

The orchestrator calls a ``BuildFixer`` between bounded build attempts.
Proposed changes are applied only to allow-listed paths and only when the
content passes the dangerous-pattern guard.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Literal, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from appforge.content.parser import strip_code_fences
from appforge.content.store import ContentStore
from appforge.errors import FileWriteFailure, GenerationError, ValidationError
from appforge.utils.validation import (
    is_allowed_fix_file,
    sanitize_generated_content,
    sanitize_log_message,
    validate_relative_path,
)

from .client import ContentGenerator
from .prompts import build_fix_prompt

logger = logging.getLogger(__name__)


@dataclass
class FixResult:
    """Outcome of one automated fix attempt."""

    applied: bool
    description: str = ""
    written: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    rejected: list[tuple[str, str]] = field(default_factory=list)
    error: str | None = None

    @property
    def touched(self) -> list[str]:
        return self.written + self.deleted


@runtime_checkable
class BuildFixer(Protocol):
    """Collaborator that may edit an app's files after a failed build."""

    async def fix(
        self,
        app_name: str,
        store: ContentStore,
        error: str,
        diagnostics: str,
        files: Sequence[str],
    ) -> FixResult: ...


class _FixChange(BaseModel):
    model_config = ConfigDict(extra="ignore")

    file: str
    action: Literal["create", "modify", "delete"]
    content: str | None = None


class _FixPlan(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    success: bool = False
    fix_description: str = ""
    changes: list[_FixChange] = Field(default_factory=list)
    error: str | None = None


class LLMBuildFixer:
    """BuildFixer backed by the content generator."""

    def __init__(self, generator: ContentGenerator):
        self.generator = generator

    async def fix(
        self,
        app_name: str,
        store: ContentStore,
        error: str,
        diagnostics: str,
        files: Sequence[str],
    ) -> FixResult:
        """Request and apply a fix. Never raises."""
        prompt = build_fix_prompt(
            app_name,
            sanitize_log_message(error),
            sanitize_log_message(diagnostics),
            list(files),
        )
        try:
            completion = await self.generator.complete(prompt, max_tokens=2000, temperature=0.1)
        except GenerationError as e:
            logger.warning(f"Build fix request failed: {e.message}")
            return FixResult(applied=False, error=e.message)

        try:
            plan = _FixPlan.model_validate(
                json.loads(strip_code_fences("fix.json", completion.content))
            )
        except (json.JSONDecodeError, PydanticValidationError) as e:
            logger.warning(f"Could not parse build fix response: {e}")
            return FixResult(applied=False, error="Unparseable fix response")

        if not plan.success or not plan.changes:
            return FixResult(applied=False, error=plan.error or "No fix proposed")

        result = FixResult(applied=False, description=plan.fix_description or "Applied automatic fixes")
        for change in plan.changes:
            self._apply(store, change, result)

        result.applied = bool(result.touched)
        logger.info(
            f"Build fix for {app_name}: {len(result.written)} written, "
            f"{len(result.deleted)} deleted, {len(result.rejected)} rejected"
        )
        return result

    @staticmethod
    def _apply(store: ContentStore, change: _FixChange, result: FixResult) -> None:
        try:
            relative = validate_relative_path(change.file, store.root)
        except ValidationError as e:
            result.rejected.append((change.file, e.message))
            return
        if not is_allowed_fix_file(relative):
            logger.warning(f"Blocked fix to restricted file: {relative}")
            result.rejected.append((relative, "not an allowed fix target"))
            return

        if change.action == "delete":
            if store.delete(relative):
                result.deleted.append(relative)
            return

        try:
            content = sanitize_generated_content(change.content or "")
            store.write_text(relative, content)
        except (ValidationError, FileWriteFailure) as e:
            logger.warning(f"Rejected fix to {relative}: {e.message}")
            result.rejected.append((relative, e.message))
            return
        result.written.append(relative)
