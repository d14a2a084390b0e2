"""
Tests for the SMTP mailer, LLM helpers and database settings.
"""
import aiosmtplib
import pytest

from shared import llm
from shared.config import BlockflowConfig
from shared.database.config import build_tortoise_config, parse_postgres_credentials
from shared.mailer import SmtpMailer, build_message


def smtp_settings(**overrides):
    return BlockflowConfig(_env_file=None, smtp_host="smtp.example.com", smtp_from="bot@shop.example", **overrides)


def test_html_body_gets_plain_text_alternative():
    message = build_message(smtp_settings(), "ada@example.com", "welcome", "<p>Hello <b>Ada</b></p>", sender_name="Shop")

    assert message["Subject"] == "Welcome"
    assert message["From"] == "Shop <bot@shop.example>"
    assert message["Message-ID"].endswith("@shop.example>")
    assert message.get_body(("plain",)).get_content().strip() == "Hello Ada"
    assert message.get_body(("html",)) is not None


def test_explicit_subject_wins():
    message = build_message(smtp_settings(), "a@b.co", "system", "plain text", subject="Order shipped")
    assert message["Subject"] == "Order shipped"
    assert not message.is_multipart()


class TestSmtpMailer:
    @pytest.mark.asyncio
    async def test_logs_instead_of_sending_without_host(self, monkeypatch):
        async def fail_send(*args, **kwargs):
            raise AssertionError("SMTP should not be used")

        monkeypatch.setattr(aiosmtplib, "send", fail_send)
        result = await SmtpMailer(BlockflowConfig(_env_file=None)).send_notification_email("a@b.co", "system", "hi")

        assert result.success
        assert result.messageId.startswith("logged-")

    @pytest.mark.asyncio
    async def test_sends_with_starttls(self, monkeypatch):
        calls = []

        async def fake_send(message, **kwargs):
            calls.append((message, kwargs))

        monkeypatch.setattr(aiosmtplib, "send", fake_send)
        result = await SmtpMailer(smtp_settings()).send_notification_email("a@b.co", "system", "hi")

        assert result.success
        message, kwargs = calls[0]
        assert result.messageId == message["Message-ID"]
        assert kwargs["hostname"] == "smtp.example.com"
        assert kwargs["start_tls"] is True
        assert kwargs["use_tls"] is False

    @pytest.mark.asyncio
    async def test_smtp_errors_become_failed_results(self, monkeypatch):
        async def refuse(*args, **kwargs):
            raise aiosmtplib.SMTPException("relay denied")

        monkeypatch.setattr(aiosmtplib, "send", refuse)
        result = await SmtpMailer(smtp_settings()).send_notification_email("a@b.co", "system", "hi")

        assert not result.success
        assert "relay denied" in result.error


def test_provider_detection():
    assert llm._detect_provider("claude-3-5-haiku-latest") == "anthropic"
    assert llm._detect_provider("gpt-4o-mini") == "openai"


def test_missing_api_key_is_reported(monkeypatch):
    monkeypatch.setattr(llm.config, "openai_api_key", None)
    with pytest.raises(ValueError, match="OPENAI_API_KEY"):
        llm.get_llm("gpt-4o-mini")


def test_message_text_flattens_content_blocks():
    assert llm.message_text("plain") == "plain"
    assert llm.message_text([{"type": "text", "text": "a"}, "b", {"type": "image"}]) == "ab"


def test_tortoise_credentials_come_from_settings():
    settings = BlockflowConfig(_env_file=None, DATABASE_URL="postgresql://app:pw@db:6543/blocks", db_max_connections=4)
    credentials = build_tortoise_config(settings)["connections"]["default"]["credentials"]

    assert credentials["host"] == "db"
    assert credentials["port"] == 6543
    assert credentials["database"] == "blocks"
    assert credentials["maxsize"] == 4


def test_non_postgres_urls_are_rejected():
    with pytest.raises(ValueError, match="postgres"):
        parse_postgres_credentials("mysql://x@y/z")
