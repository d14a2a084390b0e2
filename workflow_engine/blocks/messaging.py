"""
Blocks that hand work to external services: email delivery and AI
summaries.
"""

from __future__ import annotations

import asyncio
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional

from workflow_engine.blocks.base import BlockConfig, BlockHandler, BlockScope, register_block
from workflow_engine.context import PLACEHOLDER_PATTERN, ExecutionContext
from workflow_engine.errors import BlockConfigError, ExternalServiceError, ValidationError
from workflow_engine.schema import BlockResult

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
TEXT_FILE_SUFFIXES = (".txt", ".md", ".csv", ".json", ".log")


def parse_recipients(raw: str) -> List[str]:
    recipients = [part.strip() for part in raw.split(",") if part.strip()]
    if not recipients:
        raise BlockConfigError("emailTo is required")
    for address in recipients:
        if not EMAIL_PATTERN.match(address):
            raise ValidationError(f"Invalid email address '{address}'")
    return recipients


class EmailSendConfig(BlockConfig):
    emailTo: Optional[str] = None
    emailSubject: Optional[str] = None
    emailBody: Optional[str] = None
    senderName: Optional[str] = None


@register_block
class EmailSendBlock(BlockHandler):
    label = "email.send"
    config_model = EmailSendConfig
    rate_limit_action = "email.send"
    toast_on_failure = True

    async def execute(self, config: EmailSendConfig, context: ExecutionContext, scope: BlockScope) -> BlockResult:
        to = context.substitute_text(config.emailTo).strip()
        subject = context.substitute_text(config.emailSubject).strip()
        body = context.substitute_text(config.emailBody)
        if not to or not subject or not body.strip():
            raise BlockConfigError("emailTo, emailSubject and emailBody are required")
        recipients = parse_recipients(to)
        sender = context.substitute_text(config.senderName).strip() or None

        try:
            result = await scope.services.mailer.send_notification_email(
                ", ".join(recipients), "system", body, sender, subject=subject
            )
        except Exception as exc:
            raise ExternalServiceError(f"Email delivery failed: {exc}") from exc
        if not result.success:
            raise ExternalServiceError(f"Email delivery failed: {result.error or 'unknown error'}")

        summary = {
            "success": True,
            "messageId": result.messageId,
            "to": recipients,
            "subject": subject,
            "sentAt": datetime.now(timezone.utc).isoformat(),
        }
        return BlockResult.ok({"emailSendResult": summary}, output=summary)


class AiSummarizeConfig(BlockConfig):
    fileVariable: Optional[str] = None
    text: Optional[str] = None
    outputVariable: str = "aiSummary"
    apiKey: Optional[str] = None


def _read_text_file(path: str) -> str:
    file_path = Path(path)
    if file_path.suffix.lower() not in TEXT_FILE_SUFFIXES:
        raise ValidationError(f"Cannot summarize '{file_path.name}': only text files are supported")
    if not file_path.is_file():
        raise ValidationError(f"File '{file_path.name}' was not found")
    return file_path.read_text(encoding="utf-8", errors="replace")


async def resolve_source_text(config: AiSummarizeConfig, context: ExecutionContext) -> str:
    if config.text:
        return context.substitute_text(config.text)
    if not config.fileVariable:
        raise BlockConfigError("ai.summarize requires fileVariable or text")

    reference = config.fileVariable.strip()
    match = PLACEHOLDER_PATTERN.fullmatch(reference)
    value: Any = context.lookup(match.group(1).strip() if match else reference)
    if value is None:
        raise ValidationError(f"Variable '{reference}' is not set")
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        for key in ("text", "content", "extractedText"):
            if isinstance(value.get(key), str):
                return value[key]
        if value.get("path"):
            return await asyncio.to_thread(_read_text_file, str(value["path"]))
    raise ValidationError(f"Variable '{reference}' does not contain text")


@register_block
class AiSummarizeBlock(BlockHandler):
    label = "ai.summarize"
    config_model = AiSummarizeConfig
    rate_limit_action = "ai.summarize"

    async def execute(self, config: AiSummarizeConfig, context: ExecutionContext, scope: BlockScope) -> BlockResult:
        text = (await resolve_source_text(config, context)).strip()
        if not text:
            raise ValidationError("Nothing to summarize")

        api_key = context.substitute_text(config.apiKey).strip() or None
        try:
            summary = await scope.services.summarizer.summarize(text, api_key=api_key)
        except Exception as exc:
            raise ExternalServiceError(f"Summarization failed: {exc}") from exc

        output_variable = config.outputVariable.strip() or "aiSummary"
        result = {"summary": summary, "sourceLength": len(text)}
        return BlockResult.ok({output_variable: summary, "aiSummaryResult": result}, output=result)
