"""Tests for services/openai_provider.py: Assistants API mapping with a mocked client."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import openai
import pytest

from services.openai_provider import OpenAIAssistantsProvider, _flatten_content
from services.provider import ExecutionFailedError, ProviderError, wait_for_completion
from services.token_usage import TokenUsage


def _text_block(value):
    return SimpleNamespace(type="text", text=SimpleNamespace(value=value))


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def oai(client):
    return OpenAIAssistantsProvider(client=client, max_completion_tokens=4096)


class TestConstruction:
    def test_requires_api_key_without_client(self):
        with pytest.raises(ValueError, match="OPENAI_API_KEY"):
            OpenAIAssistantsProvider(api_key="")

    def test_builds_sdk_client(self):
        with patch("services.openai_provider.openai.OpenAI") as mock_cls:
            OpenAIAssistantsProvider(api_key="sk-test", organization="org-1", timeout=12.0)
        mock_cls.assert_called_once_with(api_key="sk-test", organization="org-1", base_url=None, timeout=12.0)

    def test_from_settings(self, monkeypatch):
        import config

        monkeypatch.setattr(config.settings, "OPENAI_API_KEY", "sk-from-settings")
        with patch("services.openai_provider.openai.OpenAI") as mock_cls:
            p = OpenAIAssistantsProvider.from_settings()
        assert mock_cls.call_args.kwargs["api_key"] == "sk-from-settings"
        assert p.max_completion_tokens == config.settings.OPENAI_MAX_COMPLETION_TOKENS


class TestSessions:
    def test_open_session_creates_thread(self, oai, client):
        client.beta.threads.create.return_value = SimpleNamespace(id="thread_abc")
        assert oai.open_session() == "thread_abc"

    def test_close_session_deletes_thread(self, oai, client):
        oai.close_session("thread_abc")
        client.beta.threads.delete.assert_called_once_with("thread_abc")

    def test_sdk_errors_wrapped(self, oai, client):
        client.beta.threads.create.side_effect = openai.OpenAIError("network down")
        with pytest.raises(ProviderError, match="network down"):
            oai.open_session()

        client.beta.threads.delete.side_effect = openai.OpenAIError("gone")
        with pytest.raises(ProviderError):
            oai.close_session("thread_abc")


class TestTurnsAndRuns:
    def test_submit_turn(self, oai, client):
        client.beta.threads.messages.create.return_value = SimpleNamespace(id="msg_1")
        assert oai.submit_turn("thread_abc", "Explain preload") == "msg_1"
        client.beta.threads.messages.create.assert_called_once_with("thread_abc", role="user", content="Explain preload")

    def test_start_execution_passes_token_cap(self, oai, client):
        client.beta.threads.runs.create.return_value = SimpleNamespace(id="run_1")
        assert oai.start_execution("thread_abc", "asst_cardio") == "run_1"
        client.beta.threads.runs.create.assert_called_once_with(
            thread_id="thread_abc", assistant_id="asst_cardio", max_completion_tokens=4096
        )

    def test_start_execution_without_cap(self, client):
        client.beta.threads.runs.create.return_value = SimpleNamespace(id="run_1")
        OpenAIAssistantsProvider(client=client).start_execution("thread_abc", "asst_cardio")
        assert "max_completion_tokens" not in client.beta.threads.runs.create.call_args.kwargs

    def test_poll_job_with_usage(self, oai, client):
        client.beta.threads.runs.retrieve.return_value = SimpleNamespace(
            status="completed",
            usage=SimpleNamespace(prompt_tokens=300, completion_tokens=150, total_tokens=450),
        )
        job = oai.poll_job("thread_abc", "run_1")
        client.beta.threads.runs.retrieve.assert_called_once_with("run_1", thread_id="thread_abc")
        assert job.status == "completed"
        assert job.usage == TokenUsage(300, 150, 450)

    def test_poll_job_in_progress_without_usage(self, oai, client):
        client.beta.threads.runs.retrieve.return_value = SimpleNamespace(status="in_progress", usage=None)
        job = oai.poll_job("thread_abc", "run_1")
        assert job.status == "in_progress"
        assert job.usage is None

    def test_incomplete_run_fails_without_waiting_out_the_deadline(self, oai, client):
        client.beta.threads.runs.retrieve.return_value = SimpleNamespace(
            status="incomplete",
            usage=SimpleNamespace(prompt_tokens=300, completion_tokens=4096, total_tokens=4396),
        )
        with pytest.raises(ExecutionFailedError, match="execution failed: incomplete"):
            wait_for_completion(oai, "thread_abc", "run_1", timeout=30.0, interval=5.0)
        assert client.beta.threads.runs.retrieve.call_count == 1
        client.beta.threads.messages.list.assert_not_called()

    def test_poll_job_error_wrapped(self, oai, client):
        client.beta.threads.runs.retrieve.side_effect = openai.OpenAIError("rate limited")
        with pytest.raises(ProviderError):
            oai.poll_job("thread_abc", "run_1")


class TestFetchMessages:
    def test_lists_newest_first_and_flattens_text(self, oai, client):
        client.beta.threads.messages.list.return_value = SimpleNamespace(
            data=[
                SimpleNamespace(id="msg_2", role="assistant", content=[_text_block("Preload is"), _text_block("EDV.")]),
                SimpleNamespace(id="msg_1", role="user", content=[_text_block("Explain preload")]),
            ]
        )
        messages = oai.fetch_messages("thread_abc", 10)

        client.beta.threads.messages.list.assert_called_once_with("thread_abc", limit=10, order="desc")
        assert [(m.id, m.role) for m in messages] == [("msg_2", "assistant"), ("msg_1", "user")]
        assert messages[0].content == "Preload is\nEDV."

    def test_fetch_error_wrapped(self, oai, client):
        client.beta.threads.messages.list.side_effect = openai.OpenAIError("boom")
        with pytest.raises(ProviderError):
            oai.fetch_messages("thread_abc", 10)


def test_flatten_skips_non_text_blocks():
    blocks = [SimpleNamespace(type="image_file", image_file=SimpleNamespace(file_id="f1")), _text_block("only text")]
    assert _flatten_content(blocks) == "only text"
    assert _flatten_content(None) == ""
