"""
Tests for UI directive blocks, email.send and ai.summarize.
"""
import pytest

from tests.fakes import RecordingMailer, node, run_block
from workflow_engine.errors import ErrorCode


class TestToast:
    @pytest.mark.asyncio
    async def test_directive_is_emitted(self, engine_services):
        result = await run_block(
            engine_services,
            node("t", "notify.toast", title="Saved", message="Thanks {{user.name}}", variant="success", duration=3000),
            {"user": {"name": "Ada"}},
        )

        assert result.success
        directive = result.directives[0]
        assert directive.type == "toast"
        assert directive.message == "Thanks Ada"
        assert directive.variant.value == "success"
        assert result.updates["toastResult"]["duration"] == 3000

    @pytest.mark.asyncio
    @pytest.mark.parametrize("duration", [999, 30001])
    async def test_duration_bounds(self, engine_services, duration):
        result = await run_block(engine_services, node("t", "notify.toast", message="hi", duration=duration))
        assert not result.success
        assert result.error.code == ErrorCode.INVALID_CONFIG

    @pytest.mark.asyncio
    async def test_message_required(self, engine_services):
        result = await run_block(engine_services, node("t", "notify.toast", message="   "))
        assert result.error.code == ErrorCode.INVALID_CONFIG


class TestNavigation:
    @pytest.mark.asyncio
    async def test_modal_data_is_substituted(self, engine_services):
        result = await run_block(
            engine_services,
            node("m", "ui.openModal", modalId="confirm", data={"orderId": "{{order.id}}"}),
            {"order": {"id": 42}},
        )
        assert result.directives[0].data == {"orderId": 42}
        assert result.updates["modalResult"] == {"opened": True, "modalId": "confirm"}

    @pytest.mark.asyncio
    async def test_redirect_to_page(self, engine_services):
        result = await run_block(engine_services, node("r", "page.redirect", targetPageId="page-2"))
        assert result.directives[0].targetType == "page"
        assert result.updates["redirectResult"]["targetPageId"] == "page-2"

    @pytest.mark.asyncio
    async def test_redirect_rejects_script_urls(self, engine_services):
        result = await run_block(engine_services, node("r", "page.redirect", type="url", url="javascript:alert(1)"))
        assert not result.success
        assert result.error.code == ErrorCode.VALIDATION_ERROR

    @pytest.mark.asyncio
    async def test_go_back(self, engine_services):
        result = await run_block(engine_services, node("g", "page.goBack"))
        assert result.updates == {"goBack": True}
        assert result.directives[0].type == "goBack"


class TestEmail:
    @pytest.mark.asyncio
    async def test_sends_through_mailer(self, engine_services, mailer):
        result = await run_block(
            engine_services,
            node("e", "email.send", emailTo="{{user.email}}, ops@example.com", emailSubject="Hi {{user.name}}",
                 emailBody="<p>Welcome</p>"),
            {"user": {"email": "ada@example.com", "name": "Ada"}},
        )

        assert result.success, result.error
        assert mailer.sent[0]["to"] == "ada@example.com, ops@example.com"
        assert mailer.sent[0]["subject"] == "Hi Ada"
        assert result.updates["emailSendResult"]["messageId"] == "msg-1"

    @pytest.mark.asyncio
    async def test_invalid_recipient(self, engine_services, mailer):
        result = await run_block(
            engine_services, node("e", "email.send", emailTo="not-an-email", emailSubject="s", emailBody="b")
        )
        assert result.error.code == ErrorCode.VALIDATION_ERROR
        assert mailer.sent == []

    @pytest.mark.asyncio
    async def test_delivery_failure_is_external_error(self, engine_services):
        engine_services.mailer = RecordingMailer(fail_with="relay refused")
        result = await run_block(
            engine_services, node("e", "email.send", emailTo="a@b.co", emailSubject="s", emailBody="b")
        )
        assert result.error.code == ErrorCode.EXTERNAL_SERVICE_ERROR
        assert "relay refused" in result.error.message
        assert result.directives[0].variant.value == "destructive"


class TestSummarize:
    @pytest.mark.asyncio
    async def test_summarizes_context_text(self, engine_services):
        result = await run_block(
            engine_services,
            node("s", "ai.summarize", fileVariable="{{upload}}", outputVariable="digest"),
            {"upload": {"text": "A very long document."}},
        )
        assert result.success, result.error
        assert result.updates["digest"] == "short summary"
        assert engine_services.summarizer.calls == [("A very long document.", None)]

    @pytest.mark.asyncio
    async def test_reads_text_files(self, engine_services, tmp_path):
        path = tmp_path / "notes.md"
        path.write_text("Meeting notes")
        result = await run_block(
            engine_services, node("s", "ai.summarize", fileVariable="file"), {"file": {"path": str(path)}}
        )
        assert result.success, result.error
        assert engine_services.summarizer.calls[0][0] == "Meeting notes"

    @pytest.mark.asyncio
    async def test_binary_files_are_rejected(self, engine_services):
        result = await run_block(
            engine_services, node("s", "ai.summarize", fileVariable="file"), {"file": {"path": "/tmp/scan.pdf"}}
        )
        assert result.error.code == ErrorCode.VALIDATION_ERROR
