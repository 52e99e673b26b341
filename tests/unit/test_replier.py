"""
Unit tests for the Gemini reply generator.
"""

import asyncio

import pytest
from unittest.mock import Mock, patch

from review_responder.replier import (
    AiError,
    GeminiReplyGenerator,
    build_system_prompt,
    build_user_prompt,
)


def run_async(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _mock_model(text="Thanks for the review!"):
    response = Mock()
    response.text = text
    model = Mock()
    model.generate_content = Mock(return_value=response)
    return model


class TestPrompts:
    """Tests for prompt construction."""

    def test_basic_system_prompt(self):
        """Test the base rules are always present."""
        prompt = build_system_prompt()
        assert "app store reviews" in prompt
        assert "keywords" not in prompt

    def test_system_prompt_extras(self):
        """Test optional extras are included."""
        prompt = build_system_prompt(
            keywords=["sync", "offline"],
            support_email="help@example.com",
            custom_prompt="Sign as the Acme team",
            supporting_info="A notes app",
            max_length=350,
        )
        assert "sync, offline" in prompt
        assert "help@example.com" in prompt
        assert "Sign as the Acme team" in prompt
        assert "A notes app" in prompt
        assert "350 characters" in prompt

    def test_user_prompt_rating(self):
        """Test the star rating is described."""
        prompt = build_user_prompt("App crashes on launch", 1)
        assert "1-star very negative" in prompt
        assert "App crashes on launch" in prompt

    def test_user_prompt_empty_text(self):
        """Test rating-only reviews get a placeholder."""
        prompt = build_user_prompt("  ", 5)
        assert "(No review text)" in prompt


class TestGeminiReplyGenerator:
    """Tests for GeminiReplyGenerator."""

    def test_init_default(self):
        """Test defaults."""
        generator = GeminiReplyGenerator(api_key="test-key")
        assert generator.model == "gemini-2.5-flash"
        assert generator.timeout_seconds == 30
        assert generator.available

    def test_available_without_key(self):
        """Test generator is unavailable without a key."""
        with patch.dict('os.environ', {}, clear=True):
            generator = GeminiReplyGenerator(api_key=None)
            assert not generator.available

    def test_key_from_environment(self):
        with patch.dict('os.environ', {"GEMINI_API_KEY": "env-key"}):
            assert GeminiReplyGenerator().api_key == "env-key"

    def test_gemma_detection(self):
        assert GeminiReplyGenerator(api_key="k", model="gemma-3-27b-it")._is_gemma_model()
        assert not GeminiReplyGenerator(api_key="k")._is_gemma_model()

    def test_generate_without_api_key(self):
        """Test generation fails with AiError without a key."""
        with patch.dict('os.environ', {}, clear=True):
            generator = GeminiReplyGenerator(api_key=None)
            with pytest.raises(AiError, match="GEMINI_API_KEY"):
                run_async(generator.generate_reply("Great app", 5))

    def test_generate_with_mock(self):
        """Test a reply is returned stripped."""
        generator = GeminiReplyGenerator(api_key="test-key", max_retries=0)
        model = _mock_model("  Thank you!  \n")

        with patch.object(generator, "_model_for", return_value=model):
            reply = run_async(generator.generate_reply("Great app", 5))

        assert reply == "Thank you!"
        prompt = model.generate_content.call_args.args[0]
        assert "Great app" in prompt

    def test_empty_reply_is_error(self):
        """Test an empty model response becomes AiError."""
        generator = GeminiReplyGenerator(api_key="test-key", max_retries=0)

        with patch.object(generator, "_model_for", return_value=_mock_model("")):
            with pytest.raises(AiError, match="attempts"):
                run_async(generator.generate_reply("Meh", 3))

    def test_gemma_prompt_inlines_instructions(self):
        """Test Gemma models receive the system prompt inline."""
        generator = GeminiReplyGenerator(api_key="k", model="gemma-3-27b-it", max_retries=0)
        model = _mock_model()

        with patch.object(generator, "_model_for", return_value=model):
            run_async(generator.generate_reply("Nice", 4, keywords=["widgets"]))

        prompt = model.generate_content.call_args.args[0]
        assert "widgets" in prompt
        assert "Nice" in prompt

    def test_draft_for_uses_configured_extras(self, make_review):
        """Test draft_for passes review text, rating and extras."""
        generator = GeminiReplyGenerator(
            api_key="k",
            max_retries=0,
            keywords=["backup"],
            support_email="help@example.com",
        )
        review = make_review(rating=2, title="Lost data", body="Sync ate my notes")

        with patch.object(generator, "_model_for", return_value=_mock_model()) as model_for:
            run_async(generator.draft_for(review))

        system_prompt = model_for.call_args.args[0]
        assert "backup" in system_prompt
        assert "help@example.com" in system_prompt
