"""Tests for the content-generation collaborators."""

import asyncio
import json

import httpx
import pytest

from appforge.content import ContentStore
from appforge.errors import AnalysisFailure, GenerationError
from appforge.generation import (
    AppAnalysis,
    AppAnalyzer,
    CerebrasClient,
    LLMBuildFixer,
    apply_post_generation_fixes,
    fallback_analysis,
    improvement_prompt,
    parse_analysis,
)
from conftest import FakeGenerator


def chat_response(content, usage=None):
    return httpx.Response(
        200,
        json={
            "choices": [{"message": {"role": "assistant", "content": content}}],
            "usage": usage or {"total_tokens": 321},
        },
    )


class TestCerebrasClient:
    """Tests for CerebrasClient."""

    def test_complete(self):
        captured = {}

        def handler(request):
            captured["auth"] = request.headers["Authorization"]
            captured["body"] = json.loads(request.content)
            return chat_response("hello")

        client = CerebrasClient("csk-test", transport=httpx.MockTransport(handler))
        completion = asyncio.run(client.complete("build a todo app", max_tokens=100))

        assert completion.content == "hello"
        assert completion.usage == {"total_tokens": 321}
        assert captured["auth"] == "Bearer csk-test"
        assert captured["body"]["max_tokens"] == 100
        assert captured["body"]["messages"] == [{"role": "user", "content": "build a todo app"}]

    def test_missing_key(self):
        with pytest.raises(GenerationError, match="not configured"):
            asyncio.run(CerebrasClient(None).complete("x"))

    def test_http_error(self):
        client = CerebrasClient(
            "csk-test", transport=httpx.MockTransport(lambda r: httpx.Response(429))
        )
        with pytest.raises(GenerationError) as exc_info:
            asyncio.run(client.complete("x"))
        assert exc_info.value.details["status"] == 429

    def test_malformed_body(self):
        client = CerebrasClient(
            "csk-test", transport=httpx.MockTransport(lambda r: httpx.Response(200, json={}))
        )
        with pytest.raises(GenerationError, match="shape"):
            asyncio.run(client.complete("x"))

    def test_network_error(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out")

        client = CerebrasClient("csk-test", transport=httpx.MockTransport(handler))
        with pytest.raises(GenerationError, match="request failed"):
            asyncio.run(client.complete("x"))


class TestAnalysis:
    """Tests for request analysis."""

    def test_parse_camel_case_json(self):
        analysis = parse_analysis(
            '```json\n{"appType": "fullstack", "framework": "react", "buildTool": "vite",'
            ' "database": "sqlite", "serverFile": "server.js"}\n```'
        )
        assert analysis.app_type == "fullstack"
        assert analysis.uses_vite
        assert analysis.source == "generator"

    def test_parse_rejects_bad_app_type(self):
        with pytest.raises(AnalysisFailure):
            parse_analysis('{"appType": "mobile"}')

    def test_parse_rejects_prose(self):
        with pytest.raises(AnalysisFailure):
            parse_analysis("It is a React app")

    @pytest.mark.parametrize(
        "prompt,expected",
        [
            ("A react dashboard with charts and a component library", "frontend"),
            ("REST api for notes in sqlite", "backend"),
            ("Track my expenses with a nice ui", "fullstack"),
            ("something vague", "backend"),
        ],
    )
    def test_fallback_keyword_scoring(self, prompt, expected):
        assert fallback_analysis(prompt).app_type == expected

    def test_fallback_details(self):
        analysis = fallback_analysis("react vite tailwind app with sqlite and login api")
        assert analysis.framework == "react"
        assert analysis.build_tool == "vite"
        assert analysis.styling == "tailwind"
        assert analysis.database == "sqlite"
        assert analysis.authentication
        assert analysis.source == "fallback"

    def test_analyzer_falls_back_on_generator_error(self):
        analyzer = AppAnalyzer(FakeGenerator([GenerationError("API down")]))
        analysis = asyncio.run(analyzer.analyze("REST api for notes"))
        assert analysis.source == "fallback"
        assert analysis.app_type == "backend"

    def test_analyzer_falls_back_on_garbage(self):
        analysis = asyncio.run(AppAnalyzer(FakeGenerator(["no idea"])).analyze("react ui"))
        assert analysis.source == "fallback"

    def test_analyzer_without_generator(self):
        analysis = asyncio.run(AppAnalyzer(None).analyze("react ui"))
        assert analysis.app_type == "frontend"

    def test_analyzer_uses_generator_answer(self):
        generator = FakeGenerator(['{"appType": "frontend", "framework": "vue"}'])
        analysis = asyncio.run(AppAnalyzer(generator).analyze("anything"))
        assert analysis.framework == "vue"
        assert analysis.source == "generator"


class TestPostGenerationFixes:
    """Tests for apply_post_generation_fixes."""

    def test_manifest_fixes(self, tmp_path):
        store = ContentStore(tmp_path)
        store.write_text("package.json", json.dumps({"name": "todo", "dependencies": {}}))
        analysis = AppAnalysis(app_type="fullstack", framework="react", database="sqlite")

        report = apply_post_generation_fixes(store, analysis)

        manifest = json.loads(store.read_text("package.json"))
        assert manifest["type"] == "module"
        assert set(manifest["dependencies"]) == {"react", "react-dom", "express", "sqlite3"}
        assert report.modified == ["package.json"]

    def test_vite_index_created_when_missing(self, tmp_path):
        store = ContentStore(tmp_path)
        store.write_text(
            "package.json",
            json.dumps({"name": "todo", "type": "module", "devDependencies": {"vite": "^5"}}),
        )
        report = apply_post_generation_fixes(store, AppAnalysis(app_type="frontend"))
        assert "index.html" in report.created
        assert '<div id="root"></div>' in store.read_text("index.html")
        assert "<title>todo</title>" in store.read_text("index.html")

    def test_empty_vite_index_regenerated(self, tmp_path):
        store = ContentStore(tmp_path)
        store.write_text("index.html", "   ")
        report = apply_post_generation_fixes(
            store, AppAnalysis(app_type="frontend", build_tool="vite")
        )
        assert report.modified == ["index.html"]
        assert "<title>App</title>" in store.read_text("index.html")

    def test_invalid_manifest_skips_manifest_fixes(self, tmp_path):
        store = ContentStore(tmp_path)
        store.write_text("package.json", "{broken")
        report = apply_post_generation_fixes(store, AppAnalysis(app_type="backend"))
        assert report.touched == []
        assert store.read_text("package.json") == "{broken"

    def test_tailwind_v4_migration(self, tmp_path):
        store = ContentStore(tmp_path)
        store.write_text(
            "package.json",
            json.dumps({"type": "module", "devDependencies": {"tailwindcss": "^4"}}),
        )
        store.write_text("src/index.css", "@tailwind base;\n@tailwind components;\nbody {}")
        report = apply_post_generation_fixes(
            store, AppAnalysis(app_type="frontend", styling="tailwind")
        )
        assert "postcss.config.js" in report.created
        assert store.read_text("src/index.css").startswith('@import "tailwindcss";')
        manifest = json.loads(store.read_text("package.json"))
        assert "@tailwindcss/postcss" in manifest["devDependencies"]


class TestLLMBuildFixer:
    """Tests for LLMBuildFixer."""

    def _fix(self, tmp_path, response):
        store = ContentStore(tmp_path)
        store.write_text("package.json", '{"name": "todo"}')
        generator = FakeGenerator([response])
        result = asyncio.run(
            LLMBuildFixer(generator).fix(
                "todo", store, "build failed", "npm ERR! api_key=secret123", ["package.json"]
            )
        )
        return store, generator, result

    def test_applies_allowed_changes(self, tmp_path):
        response = json.dumps(
            {
                "success": True,
                "fixDescription": "Add build script",
                "changes": [
                    {
                        "file": "package.json",
                        "action": "modify",
                        "content": '{"name": "todo", "scripts": {"build": "vite build"}}',
                    },
                    {"file": "src/main.jsx", "action": "create", "content": "import './index.css';"},
                ],
            }
        )
        store, generator, result = self._fix(tmp_path, response)
        assert result.applied
        assert result.written == ["package.json", "src/main.jsx"]
        assert "vite build" in store.read_text("package.json")
        assert "secret123" not in generator.prompts[0]

    def test_rejects_restricted_and_dangerous_changes(self, tmp_path):
        response = json.dumps(
            {
                "success": True,
                "changes": [
                    {"file": "Dockerfile", "action": "modify", "content": "FROM evil"},
                    {"file": "../escape.js", "action": "create", "content": "x"},
                    {
                        "file": "server.js",
                        "action": "create",
                        "content": "require('child_process').exec('rm -rf /')",
                    },
                ],
            }
        )
        store, _, result = self._fix(tmp_path, response)
        assert not result.applied
        assert len(result.rejected) == 3
        assert not store.exists("server.js")

    def test_delete_action(self, tmp_path):
        store = ContentStore(tmp_path)
        store.write_text("src/broken.jsx", "x")
        response = json.dumps(
            {"success": True, "changes": [{"file": "src/broken.jsx", "action": "delete"}]}
        )
        result = asyncio.run(
            LLMBuildFixer(FakeGenerator([response])).fix("todo", store, "err", "", ["src/broken.jsx"])
        )
        assert result.deleted == ["src/broken.jsx"]
        assert not store.exists("src/broken.jsx")

    def test_unfixable(self, tmp_path):
        _, _, result = self._fix(tmp_path, '{"success": false, "error": "needs a human"}')
        assert not result.applied
        assert result.error == "needs a human"

    def test_unparseable_response(self, tmp_path):
        _, _, result = self._fix(tmp_path, "sure, try reinstalling node")
        assert not result.applied

    def test_generator_failure_never_raises(self, tmp_path):
        _, _, result = self._fix(tmp_path, GenerationError("API down"))
        assert not result.applied
        assert result.error == "API down"


class TestPrompts:
    """Tests for prompt construction."""

    def test_improvement_prompt_embeds_current_files(self):
        prompt = improvement_prompt(
            "todo app",
            "add dark mode",
            ["server.js", "gone.js"],
            {"server.js": "const a = 1;", "gone.js": None},
            ["add tags"],
        )
        assert "IMPROVEMENT REQUEST: add dark mode" in prompt
        assert '<current_file path="server.js">' in prompt
        assert 'path="gone.js"' not in prompt
        assert "add tags" in prompt
