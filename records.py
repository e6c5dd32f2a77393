"""Execution record: the full trace of one automation run.

Populated stage by stage in memory, written once as JSON when the run
ends. ``to_dict`` produces the on-disk camelCase shape; optional fields
are omitted when unset.
"""
from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from typing import Any

from utils import utc_now_iso


def new_run_id() -> str:
    return secrets.token_hex(8)


def _compact(data: dict) -> dict:
    return {k: v for k, v in data.items() if v is not None}


@dataclass
class ExtractedMessage:
    """Stage-2 structured output."""

    message: str = ""
    has_new_message: bool | None = None  # None: field absent from the model output
    notes: str = ""

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "hasNewMessage": self.has_new_message,
            "notes": self.notes,
        }


@dataclass
class Step1Result:
    success: bool = False
    prompt: str = ""
    model: str = ""
    response: str = ""
    timestamp: str = ""
    error: str | None = None
    error_stack: str | None = None

    @property
    def response_length(self) -> int:
        return len(self.response)

    def to_dict(self) -> dict:
        return _compact({
            "success": self.success,
            "prompt": self.prompt,
            "promptLength": len(self.prompt),
            "model": self.model,
            "response": self.response,
            "responseLength": self.response_length,
            "timestamp": self.timestamp,
            "error": self.error,
            "errorStack": self.error_stack,
        })


@dataclass
class Step2Result:
    success: bool = False
    prompt: str = ""
    model: str = ""
    response: str = ""
    parsed: ExtractedMessage | None = None
    timestamp: str = ""
    error: str | None = None

    def to_dict(self) -> dict:
        return _compact({
            "success": self.success,
            "prompt": self.prompt,
            "promptLength": len(self.prompt),
            "model": self.model,
            "response": self.response,
            "responseLength": len(self.response),
            "parsed": self.parsed.to_dict() if self.parsed else None,
            "timestamp": self.timestamp,
            "error": self.error,
        })


@dataclass
class FinalOutcome:
    message: str = ""
    has_new_message: bool = False
    notes: str = ""
    sent: bool = False
    sent_to: str | None = None
    send_error: str | None = None
    truncation_detected: bool | None = None
    used_step1_response: bool | None = None
    fallback: bool | None = None
    reason: str | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        return _compact({
            "message": self.message,
            "hasNewMessage": self.has_new_message,
            "notes": self.notes,
            "sent": self.sent,
            "sentTo": self.sent_to,
            "messageLength": len(self.message),
            "sendError": self.send_error,
            "truncationDetected": self.truncation_detected,
            "usedStep1Response": self.used_step1_response,
            "fallback": self.fallback,
            "reason": self.reason,
            "error": self.error,
        })


@dataclass
class ExecutionRecord:
    automation_id: str
    automation_name: str
    automation_type: str
    chat_id: str
    system_prompt: str = ""
    scheduled_prompt: str = ""
    trigger: str = "manual"
    test_id: str = field(default_factory=new_run_id)
    timestamp: str = field(default_factory=utc_now_iso)
    chat_history_length: int | None = None
    chat_history_error: str | None = None
    step1: Step1Result = field(default_factory=Step1Result)
    step2: Step2Result = field(default_factory=Step2Result)
    final: FinalOutcome = field(default_factory=FinalOutcome)
    log_file: str | None = None
    log_file_error: str | None = None

    @classmethod
    def for_automation(cls, automation, trigger: str = "manual") -> "ExecutionRecord":
        return cls(
            automation_id=automation.automation_id,
            automation_name=automation.chat_name,
            automation_type=automation.automation_type,
            chat_id=automation.chat_id,
            system_prompt=automation.system_prompt,
            scheduled_prompt=automation.scheduled_prompt,
            trigger=trigger,
        )

    @property
    def failed_stage(self) -> str | None:
        """Name of the first stage that failed, or None for a clean run."""
        if not self.step1.success:
            return "step1"
        if not self.step2.success:
            return "step2"
        if self.final.send_error:
            return "delivery"
        return None

    @property
    def history_type(self) -> str:
        """Entry type used in the automation's running history log."""
        if self.trigger != "scheduled":
            return "test"
        if self.final.sent:
            return "scheduled"
        if not self.step1.success or self.final.send_error or self.final.error:
            return "error"
        return "skipped"

    def history_entry(self) -> dict:
        entry_type = self.history_type
        if entry_type == "test":
            status = "Message sent" if self.final.sent else "Message not sent"
            message = self.final.message or "Test execution"
            notes = f"Test execution - {status}"
        elif entry_type == "scheduled":
            message = self.final.message
            notes = self.final.notes
        elif entry_type == "skipped":
            message = "No new unique message to send"
            notes = self.final.notes or self.final.reason or ""
        else:
            message = (
                self.final.send_error
                or self.step1.error
                or self.final.error
                or self.final.reason
                or "Automation run failed"
            )
            notes = self.final.notes
        return {
            "type": entry_type,
            "message": message,
            "notes": notes,
            "timestamp": self.timestamp,
            "testId": self.test_id,
        }

    def to_dict(self) -> dict[str, Any]:
        return _compact({
            "testId": self.test_id,
            "automationId": self.automation_id,
            "automationName": self.automation_name,
            "automationType": self.automation_type,
            "chatId": self.chat_id,
            "timestamp": self.timestamp,
            "trigger": self.trigger,
            "config": {
                "systemPrompt": self.system_prompt,
                "scheduledPrompt": self.scheduled_prompt,
            },
            "chatHistoryLength": self.chat_history_length,
            "chatHistoryError": self.chat_history_error,
            "step1": self.step1.to_dict(),
            "step2": self.step2.to_dict(),
            "final": self.final.to_dict(),
            "logFile": self.log_file,
            "logFileError": self.log_file_error,
        })
