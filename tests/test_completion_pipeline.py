"""
Completion pipeline: prompt shape, fence cleanup, reflow, retry, backends.
"""

import asyncio
import json

import pytest
from aiohttp import web
from aiohttp import test_utils

import completion_pipeline as cp
from completion_pipeline import CompletionFault, CompletionResult


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _flaky(failures, reply):
    """Generator that fails `failures` times, then returns `reply`."""
    calls = []

    async def gen(prompt):
        calls.append(prompt)
        if len(calls) <= failures:
            raise CompletionFault(f"boom {len(calls)}")
        return reply

    return gen, calls


def _sleeps():
    waited = []

    async def sleep(s):
        waited.append(s)

    return sleep, waited


# ---------------------------------------------------------------------------
# Text shaping
# ---------------------------------------------------------------------------

class TestFences:
    def test_java_fence_cleaned(self):
        assert cp.strip_code_fences("```java\nfoo();\n```") == "foo();"

    def test_bare_fence_cleaned(self):
        assert cp.strip_code_fences("```\nx = 1\n```") == "x = 1"

    def test_embedded_fences_removed(self):
        raw = "Here:\n```python\nx = 1\n```\nok"
        assert cp.strip_code_fences(raw) == "Here:\nx = 1\nok"

    def test_plain_text_untouched(self):
        assert cp.strip_code_fences("  return a + b;  ") == "return a + b;"

    def test_none_is_empty(self):
        assert cp.strip_code_fences(None) == ""


class TestReflow:
    def test_line_indentation_of_cursor_line(self):
        content = "class A {\n    int x;\n}"
        cursor = content.index("int")
        assert cp.line_indentation(content, cursor) == 4

    def test_line_indentation_counts_spaces_only(self):
        assert cp.line_indentation("\tfoo", 1) == 0

    def test_line_indentation_past_end(self):
        assert cp.line_indentation("a\nb", 100) == 0

    def test_indent_code_prefixes_and_blanks_empty_lines(self):
        assert cp.indent_code("a();\n\n  b();", 2) == "  a();\n\n    b();"

    def test_baseline_drops_blank_lines_and_common_indent(self):
        assert cp.normalize_indentation("    a\n\n      b\n    c") == "a\n  b\nc"

    def test_reflow_cursor_mode(self):
        content = "void f() {\n        TODO\n}"
        out = cp.reflow("x();\ny();", content=content, cursor_position=content.index("TODO"), mode="cursor")
        assert out == "        x();\n        y();"

    def test_reflow_cursor_mode_without_cursor_is_noop(self):
        assert cp.reflow("  x();", content="", cursor_position=None, mode="cursor") == "  x();"

    def test_reflow_none(self):
        assert cp.reflow("  x();", content="    y", cursor_position=0, mode="none") == "  x();"


class TestPrompt:
    def test_typed_prompt_mentions_replacement(self):
        p = cp.build_prompt("int a = TODO;", "TODO", "java")
        assert "Given this java code:\nint a = TODO;" in p
        assert 'The text "TODO" in the code should be replaced' in p
        assert "no backticks" in p

    def test_voice_prompt_mentions_cursor(self):
        p = cp.build_prompt("a |CURSOR| b", "add a loop", "python", is_voice_prompt=True)
        assert "|CURSOR|" in p
        assert 'Voice command: "add a loop"' in p
        assert "no backticks" in p


# ---------------------------------------------------------------------------
# Retry loop
# ---------------------------------------------------------------------------

class TestRetry:
    def test_succeeds_on_third_attempt(self):
        gen, calls = _flaky(2, "```java\nfoo();\n```")
        sleep, waited = _sleeps()
        result = asyncio.run(
            cp.request_completion(
                content="", prompt="x", language="java",
                generate=gen, max_retries=3, retry_delay_s=1.0, indent_mode="none", sleep=sleep,
            )
        )
        assert result == CompletionResult(ok=True, snippet="foo();", attempts=3)
        assert len(calls) == 3
        assert waited == [1.0, 1.0]

    def test_real_delay_between_attempts(self):
        gen, calls = _flaky(1, "ok();")

        async def run():
            loop = asyncio.get_running_loop()
            t0 = loop.time()
            res = await cp.request_completion(
                content="", prompt="x", language="java",
                generate=gen, max_retries=3, retry_delay_s=0.05, indent_mode="none",
            )
            return res, loop.time() - t0

        result, elapsed = asyncio.run(run())
        assert result.ok and result.attempts == 2
        assert elapsed >= 0.05

    def test_exhaustion_is_a_failed_outcome(self):
        gen, calls = _flaky(99, "never")
        sleep, waited = _sleeps()
        result = asyncio.run(
            cp.request_completion(
                content="", prompt="x", language="java",
                generate=gen, max_retries=3, retry_delay_s=1.0, sleep=sleep,
            )
        )
        assert result.ok is False
        assert result.snippet == ""
        assert result.attempts == 3
        assert "after 3 attempts" in result.error
        assert len(calls) == 3
        assert waited == [1.0, 1.0]

    def test_non_text_reply_is_retried(self):
        replies = [None, {"response": 1}, "done();"]

        async def gen(prompt):
            return replies.pop(0)

        sleep, _ = _sleeps()
        result = asyncio.run(
            cp.request_completion(content="", prompt="x", language="java", generate=gen, max_retries=3, sleep=sleep)
        )
        assert result.ok and result.snippet == "done();" and result.attempts == 3

    def test_cursor_reflow_applied_on_success(self):
        async def gen(prompt):
            return "```java\na();\nb();\n```"

        content = "class A {\n    |CURSOR|\n}"
        result = asyncio.run(
            cp.request_completion(
                content=content, prompt="x", language="java",
                cursor_position=content.index("|CURSOR|"), generate=gen, indent_mode="cursor",
            )
        )
        assert result.snippet == "    a();\n    b();"

    def test_frames(self):
        assert CompletionResult(ok=True, snippet="x").to_frame() == {"type": "AI_CODE_COMPLETION", "content": "x"}
        bad = CompletionResult(ok=False, error="nope", attempts=3).to_frame()
        assert bad == {"type": "ERROR", "request": "AI_CODE_COMPLETION", "error": "nope", "attempts": 3}


# ---------------------------------------------------------------------------
# Configuration + backends
# ---------------------------------------------------------------------------

class TestConfigure:
    def test_rejects_unknown_backend(self):
        with pytest.raises(ValueError):
            cp.configure(backend="carrier-pigeon")

    def test_rejects_unknown_indent_mode(self):
        with pytest.raises(ValueError):
            cp.configure(indent_mode="sideways")


class TestOllamaBackend:
    def _serve(self, handler):
        app = web.Application()
        app.router.add_post("/api/generate", handler)
        return test_utils.TestServer(app)

    def test_posts_prompt_and_reads_response(self, monkeypatch):
        seen = {}

        async def handler(request):
            seen.update(await request.json())
            return web.json_response({"response": "```java\nfoo();\n```"})

        async def run():
            async with self._serve(handler) as srv:
                monkeypatch.setattr(cp, "OLLAMA_URL", str(srv.make_url("")).rstrip("/"))
                monkeypatch.setattr(cp, "OLLAMA_MODEL", "llama3.2")
                return await cp._generate_ollama("PROMPT")

        assert asyncio.run(run()) == "```java\nfoo();\n```"
        assert seen == {"model": "llama3.2", "prompt": "PROMPT", "stream": False}

    def test_non_2xx_is_a_fault(self, monkeypatch):
        async def handler(request):
            return web.Response(status=503, text="busy")

        async def run():
            async with self._serve(handler) as srv:
                monkeypatch.setattr(cp, "OLLAMA_URL", str(srv.make_url("")).rstrip("/"))
                await cp._generate_ollama("PROMPT")

        with pytest.raises(CompletionFault):
            asyncio.run(run())

    def test_missing_response_field_is_a_fault(self, monkeypatch):
        async def handler(request):
            return web.Response(text=json.dumps({"done": True}), content_type="application/json")

        async def run():
            async with self._serve(handler) as srv:
                monkeypatch.setattr(cp, "OLLAMA_URL", str(srv.make_url("")).rstrip("/"))
                await cp._generate_ollama("PROMPT")

        with pytest.raises(CompletionFault):
            asyncio.run(run())


class TestOpenAIBackend:
    def test_missing_key_is_a_fault(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(CompletionFault):
            cp.call_openai_chat([{"role": "user", "content": "hi"}])

    def test_selected_by_backend(self, monkeypatch):
        monkeypatch.setattr(cp, "BACKEND", "openai")
        assert cp._backend_generator() is cp._generate_openai
        monkeypatch.setattr(cp, "BACKEND", "ollama")
        assert cp._backend_generator() is cp._generate_ollama
