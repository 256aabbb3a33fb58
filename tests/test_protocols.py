"""Tests for tigra.protocols, tigra.prompts and tigra.exceptions helpers."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from tigra.exceptions import (
    ProviderFailure,
    ProviderSetupError,
    SchemaMismatch,
    provider_setup_error,
    schema_setup_message,
)
from tigra.models import Message, UserPreferences
from tigra.prompts import SYSTEM_INSTRUCTION, UserContext, build_system_instruction
from tigra.protocols import (
    AppleFMProvider,
    CompletionProvider,
    _import_apple_fm_sdk,
    format_transcript,
)

from .conftest import FakeProvider, make_profile


def make_mock_model(available=True, reason=None):
    model = MagicMock()
    model.is_available.return_value = (available, reason)
    return model


def make_fake_sdk(snapshots=(), error=None, available=True):
    """A stand-in ``apple_fm_sdk`` whose sessions stream cumulative snapshots."""
    sdk = MagicMock()
    sdk.SystemLanguageModel.return_value = make_mock_model(available, "not ready")

    async def stream_response(prompt):
        for snapshot in snapshots:
            yield snapshot
        if error is not None:
            raise error

    session = MagicMock()
    session.stream_response = MagicMock(side_effect=stream_response)
    sdk.LanguageModelSession.return_value = session
    return sdk


@pytest.fixture(autouse=True)
def _clear_sdk_cache():
    _import_apple_fm_sdk.cache_clear()
    yield
    _import_apple_fm_sdk.cache_clear()


def test_fake_provider_satisfies_protocol():
    assert isinstance(FakeProvider(), CompletionProvider)
    assert isinstance(AppleFMProvider(), CompletionProvider)


def test_format_transcript():
    history = [Message.create("user", "hi"), Message.create("model", "hello")]
    assert format_transcript(history) == "User: hi\n\nAssistant: hello"


# ========================================================================
# AppleFMProvider
# ========================================================================


class TestAppleFMProvider:
    @pytest.mark.asyncio
    async def test_converts_snapshots_to_deltas(self):
        sdk = make_fake_sdk(["Hel", "Hello, ", "Hello, world"])
        with patch("tigra.protocols.importlib.import_module", return_value=sdk):
            deltas = [d async for d in AppleFMProvider().stream([], "be nice", "Say hello")]

        assert deltas == ["Hel", "lo, ", "world"]
        sdk.LanguageModelSession.assert_called_once()
        assert sdk.LanguageModelSession.call_args.kwargs["instructions"] == "be nice"
        sdk.LanguageModelSession.return_value.stream_response.assert_called_once_with("Say hello")

    @pytest.mark.asyncio
    async def test_history_is_replayed_in_prompt(self):
        sdk = make_fake_sdk(["ok"])
        history = [Message.create("user", "first"), Message.create("model", "reply")]
        with patch("tigra.protocols.importlib.import_module", return_value=sdk):
            [d async for d in AppleFMProvider().stream(history, "sys", "second")]

        prompt = sdk.LanguageModelSession.return_value.stream_response.call_args.args[0]
        assert "User: first" in prompt
        assert "Assistant: reply" in prompt
        assert prompt.endswith("second")

    @pytest.mark.asyncio
    async def test_sdk_error_becomes_provider_failure(self):
        sdk = make_fake_sdk(["Hi"], error=RuntimeError("guardrail"))
        received = []
        with (
            patch("tigra.protocols.importlib.import_module", return_value=sdk),
            pytest.raises(ProviderFailure, match="guardrail"),
        ):
            async for delta in AppleFMProvider().stream([], "sys", "x"):
                received.append(delta)
        assert received == ["Hi"]

    @pytest.mark.asyncio
    async def test_unavailable_model_is_setup_error(self):
        sdk = make_fake_sdk(available=False)
        with (
            patch("tigra.protocols.importlib.import_module", return_value=sdk),
            pytest.raises(ProviderSetupError, match="not ready"),
        ):
            [d async for d in AppleFMProvider().stream([], "sys", "x")]


class TestCheckAvailable:
    def test_missing_sdk_reports_setup_checklist(self):
        with (
            patch(
                "tigra.protocols.importlib.import_module",
                side_effect=ModuleNotFoundError("No module named 'apple_fm_sdk'"),
            ),
            pytest.raises(ProviderSetupError) as exc_info,
        ):
            AppleFMProvider().check_available()

        message = str(exc_info.value)
        assert message.startswith("[AppleFMProvider] Completion provider unavailable: ModuleNotFoundError")
        assert "pip install 'tigra-client[apple]'" in message
        assert isinstance(exc_info.value.__cause__, ModuleNotFoundError)

    def test_model_is_resolved_once(self):
        sdk = make_fake_sdk()
        provider = AppleFMProvider()
        with patch("tigra.protocols.importlib.import_module", return_value=sdk):
            provider.check_available()
            provider.check_available()

        sdk.SystemLanguageModel.assert_called_once_with()

    def test_availability_check_error_is_setup_error(self):
        sdk = make_fake_sdk()
        sdk.SystemLanguageModel.return_value.is_available.side_effect = OSError("no neural engine")
        with (
            patch("tigra.protocols.importlib.import_module", return_value=sdk),
            pytest.raises(ProviderSetupError, match="OSError: no neural engine"),
        ):
            AppleFMProvider().check_available()


def test_provider_setup_error_context():
    error = provider_setup_error("model missing", context="tigra chat")
    assert str(error).splitlines()[0] == "[tigra chat] Completion provider unavailable: model missing"


# ========================================================================
# Diagnostics
# ========================================================================


class TestSchemaMessages:
    def test_missing_table(self):
        assert schema_setup_message("chats").startswith("Database Error: Table 'chats' does not exist.")

    def test_missing_field(self):
        error = SchemaMismatch("no column", table="users", field="phone")
        assert error.diagnostic.startswith("Schema Mismatch:")
        assert "'phone'" in error.diagnostic
        assert error.diagnostic.endswith("no column")


# ========================================================================
# System instruction
# ========================================================================


class TestSystemInstruction:
    CONTEXT = UserContext(platform="Linux 6.1", language="en_US", timezone="UTC", user_agent="ua")

    def test_profile_block(self):
        text = build_system_instruction(make_profile(phone=None, age=None), self.CONTEXT)
        assert text.startswith(SYSTEM_INSTRUCTION)
        assert "User Timezone: UTC" in text
        assert "Name: Ada" in text
        assert "Age: Not specified" in text
        assert "[USER PERSONALIZATION]" not in text

    def test_personalization_block(self):
        profile = make_profile().with_preferences(UserPreferences(interests="chess"))
        text = build_system_instruction(profile, self.CONTEXT)
        assert "[USER PERSONALIZATION]" in text
        assert "Location (City): Unknown" in text
        assert "Interests: chess" in text

    def test_detect(self):
        context = UserContext.detect()
        assert context.platform
        assert context.user_agent.startswith("tigra-client")
