"""Extraction of tagged file blocks from generated text.

The generation collaborator answers with::

    <changes>what changed and why</changes>
    <file path="src/App.jsx">...content...</file>

Unsafe paths are skipped individually; one bad block never fails the batch.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from appforge.content.store import ContentStore
from appforge.errors import FileWriteFailure

logger = logging.getLogger(__name__)

FILE_BLOCK_RE = re.compile(r'<file path="([^"]+)">([\s\S]*?)</file>')
CHANGES_BLOCK_RE = re.compile(r"<changes>([\s\S]*?)</changes>")

# Fence languages stripped per file extension
_FENCE_LANGUAGES = {
    ".json": ("json",),
    ".css": ("css",),
    ".js": ("javascript", "js", "jsx"),
    ".jsx": ("javascript", "js", "jsx"),
    ".ts": ("typescript", "ts", "tsx"),
    ".tsx": ("typescript", "ts", "tsx"),
    ".html": ("html",),
}


@dataclass
class GeneratedFile:
    """One file block extracted from generated text."""

    path: str
    content: str


@dataclass
class GeneratedOutput:
    """All blocks extracted from one generation response."""

    files: list[GeneratedFile] = field(default_factory=list)
    explanation: str = ""


@dataclass
class WriteReport:
    """Outcome of writing a batch of generated files."""

    written: list[str] = field(default_factory=list)
    skipped: list[tuple[str, str]] = field(default_factory=list)

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)


def strip_code_fences(path: str, content: str) -> str:
    """Remove markdown code fences the generator sometimes wraps content in."""
    suffix = "." + path.rsplit(".", 1)[-1].lower() if "." in path else ""
    languages = _FENCE_LANGUAGES.get(suffix)
    if languages is None:
        return content.strip()

    for language in languages:
        content = re.sub(rf"^```{language}\s*\n", "", content)
    content = re.sub(r"^```\s*\n", "", content)
    content = re.sub(r"\n```$", "", content)
    return content.strip()


def parse_generated_output(text: str) -> GeneratedOutput:
    """Extract file blocks and the optional changes explanation."""
    output = GeneratedOutput()

    changes_match = CHANGES_BLOCK_RE.search(text)
    if changes_match:
        output.explanation = changes_match.group(1).strip()

    for match in FILE_BLOCK_RE.finditer(text):
        path = match.group(1).strip()
        content = strip_code_fences(path, match.group(2).strip())
        output.files.append(GeneratedFile(path=path, content=content))

    return output


def write_generated_files(store: ContentStore, output: GeneratedOutput) -> WriteReport:
    """Write every extracted file into the store, skipping unsafe ones."""
    report = WriteReport()
    for generated in output.files:
        action = "Updating" if store.exists(generated.path) else "Creating"
        try:
            relative = store.write_text(generated.path, generated.content)
        except FileWriteFailure as e:
            logger.warning(f"Skipping file {generated.path}: {e.message}")
            report.skipped.append((generated.path, e.message))
            continue
        logger.info(f"{action} file: {relative}")
        if relative not in report.written:
            report.written.append(relative)

    if report.skipped:
        logger.warning(f"Skipped {report.skipped_count} generated file(s)")
    return report
