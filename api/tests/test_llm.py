from types import SimpleNamespace

import pytest

from devx360 import llm
from devx360.config import Settings
from devx360.errors import InsightBackendFailure


class _StubCompletions:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _stub_openai(monkeypatch, completions):
    def factory(api_key):
        return SimpleNamespace(chat=SimpleNamespace(completions=completions))

    monkeypatch.setattr(llm, "AsyncOpenAI", factory)


@pytest.mark.asyncio
async def test_missing_api_key_is_a_backend_failure():
    with pytest.raises(InsightBackendFailure):
        await llm.generate_dora_narrative({"metrics": {}}, Settings(openai_api_key=""))


@pytest.mark.asyncio
async def test_narrative_is_returned_stripped(monkeypatch):
    completions = _StubCompletions(content="  ## Deployment Frequency\nDaily.\n")
    _stub_openai(monkeypatch, completions)

    text = await llm.generate_dora_narrative({"metrics": {"30d": {}}}, Settings(openai_api_key="sk-test"))

    assert text == "## Deployment Frequency\nDaily."
    assert completions.kwargs["model"] == "gpt-4o-mini"
    assert completions.kwargs["messages"][0]["content"] == llm.SYSTEM_KNOWLEDGE
    assert '"30d"' in completions.kwargs["messages"][1]["content"]


@pytest.mark.asyncio
async def test_api_error_and_empty_reply_are_backend_failures(monkeypatch):
    _stub_openai(monkeypatch, _StubCompletions(error=RuntimeError("503 Service Unavailable")))
    with pytest.raises(InsightBackendFailure):
        await llm.generate_dora_narrative({}, Settings(openai_api_key="sk-test"))

    _stub_openai(monkeypatch, _StubCompletions(content="   "))
    with pytest.raises(InsightBackendFailure):
        await llm.generate_dora_narrative({}, Settings(openai_api_key="sk-test"))


def test_prompt_asks_for_every_section():
    for heading in llm.SECTION_HEADINGS:
        assert f"## {heading}" in llm.SYSTEM_KNOWLEDGE
