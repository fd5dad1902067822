"""Prompt builders for the content-generation collaborator."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .analysis import AppAnalysis

FILE_FORMAT_HINT = 'Use this syntax for each file: <file path="filename.js">file content here</file>.'

ANALYSIS_TEMPLATE = """Analyze this app request and determine the optimal structure:

REQUEST: "{prompt}"

Respond with ONLY raw JSON (no markdown, no code blocks, no explanations):
{{
  "appType": "frontend|backend|fullstack",
  "framework": "react|vue|svelte|express|fastify|koa|vanilla",
  "buildTool": "vite|webpack|parcel|none",
  "styling": "tailwind|css|sass|styled-components|none",
  "database": "sqlite|postgres|mongodb|none",
  "authentication": "true|false",
  "serverFile": "server.js|app.js|index.js|none",
  "staticBuild": "true|false",
  "missingFiles": ["index.html", "package.json", "src/main.jsx"],
  "missingDependencies": ["react", "react-dom", "express"],
  "recommendations": ["Use Vite for fast builds"]
}}

Rules:
- A request that mentions both a UI and an API or database is "fullstack".
- Fullstack apps use "server.js" as serverFile and set staticBuild to "true".
- Vite + Express apps list "express" in missingDependencies.
- React apps list "react" and "react-dom" in missingDependencies.
- Apps with a database list the driver in missingDependencies."""

GENERATION_REQUIREMENTS = """Make it a complete working application with proper structure.

REQUIREMENTS:
- The server must listen on process.env.PORT or 3000.
- List EVERY imported or required module in package.json.
- If using Express, include "express": "^4.18.2" in dependencies.
- If using React, include "react" and "react-dom" "^18.2.0" in dependencies.
- If using SQLite, include "sqlite3": "^5.1.7" and store data under ./data/.
- If using Tailwind CSS v4, include "tailwindcss" and "@tailwindcss/postcss" "^4.1.11" in
  devDependencies, create postcss.config.js with the @tailwindcss/postcss plugin and use
  @import "tailwindcss"; in CSS.
- Vite apps include "vite" in devDependencies, a "build": "vite build" script and an
  index.html in the project root with <div id="root"></div> and
  <script type="module" src="/src/main.jsx"></script>.
- Fullstack apps: server.js serves the API routes BEFORE a catch-all that sends
  dist/index.html, and serves dist/ with express.static.
- JSON files must be plain valid JSON.
- Prefer SQLite over external databases."""

IMPROVEMENT_INSTRUCTIONS = """INSTRUCTIONS:
1. Understand what the app currently does from the file contents.
2. Make targeted changes for the improvement request only.
3. Preserve existing functionality.
4. Only include files that need changes; do not recreate unchanged files.

OUTPUT FORMAT:

<changes>
Brief explanation of what changed and why
</changes>

<file path="filename.js">
complete updated file content
</file>

This is an improvement to an existing app: make surgical changes."""

BUILD_FIX_TEMPLATE = """You are a Docker and Node.js expert. Analyze this container build or
startup failure and propose file changes that fix it.

ERROR: {error}

ENGINE OUTPUT:
{diagnostics}

APP: {app_name}
FILES: {files}

Common causes: missing dependencies in package.json, wrong import statements, missing
files, build tool misconfiguration.

Respond with ONLY a JSON object:
{{
  "success": true,
  "fixDescription": "short description",
  "changes": [
    {{"file": "relative/path", "action": "create|modify|delete", "content": "full content or null"}}
  ],
  "error": "reason when no fix is possible"
}}

Only propose safe, necessary changes. Set success to false if the error cannot be fixed
automatically."""


def analysis_prompt(prompt: str) -> str:
    return ANALYSIS_TEMPLATE.format(prompt=prompt)


def generation_prompt(prompt: str, analysis: AppAnalysis | None = None) -> str:
    """Prompt for a brand-new app, enriched with the structural analysis."""
    parts = [prompt.rstrip(".") + "."]

    if analysis is not None:
        parts.append(
            "ANALYSIS:\n"
            f"- App type: {analysis.app_type}\n"
            f"- Framework: {analysis.framework}\n"
            f"- Build tool: {analysis.build_tool}\n"
            f"- Styling: {analysis.styling}\n"
            f"- Database: {analysis.database}\n"
            f"- Authentication: {'yes' if analysis.authentication else 'no'}"
        )
        if analysis.missing_files:
            parts.append(f"Ensure these files are created: {', '.join(analysis.missing_files)}")
        if analysis.missing_dependencies:
            parts.append(
                "Ensure these dependencies are in package.json: "
                + ", ".join(analysis.missing_dependencies)
            )
        if analysis.recommendations:
            parts.append(f"Recommendations: {', '.join(analysis.recommendations)}")

    parts.append(GENERATION_REQUIREMENTS)
    parts.append(FILE_FORMAT_HINT)
    return "\n\n".join(parts)


def improvement_prompt(
    original_prompt: str,
    intent: str,
    files: Sequence[str],
    contents: Mapping[str, str | None],
    previous_intents: Sequence[str] = (),
) -> str:
    """Prompt for improving an existing app, with its current file contents."""
    lines = [
        f"IMPROVEMENT REQUEST: {intent}",
        "",
        f"ORIGINAL APP PROMPT: {original_prompt}",
    ]
    if previous_intents:
        lines.append(f"EARLIER IMPROVEMENTS: {'; '.join(previous_intents)}")
    lines += ["", "CURRENT APP STRUCTURE:", f"Files: {', '.join(files)}", "", "CURRENT FILE CONTENTS:"]

    for path, content in contents.items():
        if content is None:
            continue
        lines.append(f'<current_file path="{path}">\n{content}\n</current_file>')

    lines += ["", IMPROVEMENT_INSTRUCTIONS]
    return "\n".join(lines)


def build_fix_prompt(app_name: str, error: str, diagnostics: str, files: Sequence[str]) -> str:
    return BUILD_FIX_TEMPLATE.format(
        app_name=app_name,
        error=error,
        diagnostics=diagnostics or "(no output captured)",
        files=", ".join(files) or "(none)",
    )
