"""Deterministic repairs applied to freshly generated apps.

Generators routinely forget a dependency or the Vite entry HTML; these
fixes close the most common gaps before the first build.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field

from appforge.content.store import ContentStore
from appforge.errors import FileWriteFailure

from .analysis import AppAnalysis

logger = logging.getLogger(__name__)

REACT_VERSION = "^18.2.0"
EXPRESS_VERSION = "^4.18.2"
SQLITE_VERSION = "^5.1.7"
TAILWIND_POSTCSS_VERSION = "^4.1.11"

INDEX_HTML = """<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="UTF-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1.0" />
    <title>{title}</title>
  </head>
  <body>
    <div id="root"></div>
    <script type="module" src="/src/main.jsx"></script>
  </body>
</html>
"""

POSTCSS_CONFIG = """import tailwindcss from "@tailwindcss/postcss";

export default {
  plugins: [tailwindcss]
}
"""


@dataclass
class FixReport:
    """Files touched by post-generation fixes."""

    modified: list[str] = field(default_factory=list)
    created: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)

    @property
    def touched(self) -> list[str]:
        return self.modified + self.created


def _fix_manifest(manifest: dict, analysis: AppAnalysis, notes: list[str]) -> bool:
    changed = False
    dependencies = manifest.setdefault("dependencies", {})
    dev_dependencies = manifest.get("devDependencies") or {}

    if not manifest.get("type"):
        manifest["type"] = "module"
        notes.append('Added "type": "module"')
        changed = True

    if analysis.framework == "react":
        for package in ("react", "react-dom"):
            if package not in dependencies:
                dependencies[package] = REACT_VERSION
                notes.append(f"Added {package}")
                changed = True

    if analysis.app_type in ("backend", "fullstack") and "express" not in dependencies:
        dependencies["express"] = EXPRESS_VERSION
        notes.append("Added express")
        changed = True

    if analysis.database == "sqlite" and "sqlite3" not in dependencies:
        dependencies["sqlite3"] = SQLITE_VERSION
        notes.append("Added sqlite3")
        changed = True

    if (
        analysis.styling == "tailwind"
        and "tailwindcss" in dev_dependencies
        and "@tailwindcss/postcss" not in dev_dependencies
    ):
        manifest["devDependencies"]["@tailwindcss/postcss"] = TAILWIND_POSTCSS_VERSION
        notes.append("Added @tailwindcss/postcss")
        changed = True

    return changed


def apply_post_generation_fixes(store: ContentStore, analysis: AppAnalysis) -> FixReport:
    """Repair a generated app in place.

    A missing or invalid ``package.json`` skips the manifest fixes only.
    Individual write failures are logged and skipped.
    """
    report = FixReport()
    manifest: dict | None = None

    raw = store.read_text("package.json")
    if raw is not None:
        try:
            parsed = json.loads(raw)
            manifest = parsed if isinstance(parsed, dict) else None
        except json.JSONDecodeError as e:
            logger.warning(f"Could not apply package.json fixes: {e}")

    def write(path: str, content: str, created: bool) -> None:
        try:
            store.write_text(path, content)
        except FileWriteFailure as e:
            logger.warning(f"Post-generation fix for {path} skipped: {e.message}")
            return
        (report.created if created else report.modified).append(path)

    if manifest is not None and _fix_manifest(manifest, analysis, report.notes):
        write("package.json", json.dumps(manifest, indent=2) + "\n", created=False)

    dev_dependencies = (manifest or {}).get("devDependencies") or {}
    uses_vite = analysis.uses_vite or "vite" in dev_dependencies
    if uses_vite:
        index = store.read_text("index.html") if store.exists("index.html") else None
        if index is None or not index.strip():
            title = (manifest or {}).get("name") or "App"
            write("index.html", INDEX_HTML.format(title=title), created=index is None)
            report.notes.append("Generated index.html")

    if analysis.styling == "tailwind" and "tailwindcss" in dev_dependencies:
        if not store.exists("postcss.config.js"):
            write("postcss.config.js", POSTCSS_CONFIG, created=True)
            report.notes.append("Created postcss.config.js")
        css = store.read_text("src/index.css") if store.exists("src/index.css") else None
        if css and "@tailwind" in css and '@import "tailwindcss"' not in css:
            updated = re.sub(r"@tailwind\s+[^;]+;", "", css)
            write("src/index.css", '@import "tailwindcss";\n' + updated.lstrip(), created=False)
            report.notes.append("Switched CSS to Tailwind v4 import")

    for note in report.notes:
        logger.info(f"Fixed: {note}")
    return report
