"""Automation run: transcript → generate → extract → guard → deliver → log.

``AutomationPipeline.run_automation`` is the single entrypoint for both the
manual test trigger and the scheduler. Every stage writes into one
``ExecutionRecord``; the record is persisted (its own file plus a summary
entry in the automation's history log) before the call returns, whether the
run succeeded or not. Only configuration errors raise.
"""
from __future__ import annotations

import asyncio
import logging

import config
from dispatcher import DeliveryDispatcher, should_send
from execution_log import ExecutionLogStore
from generation import clean_message, extract_message, generate_candidate
from records import ExecutionRecord
from transcript import assemble_transcript
from truncation import resolve_message

log = logging.getLogger(__name__)

STEP1_FAILED_MESSAGE = "Step 1 failed - no message generated"
RUN_TIMED_OUT = "Run timed out"


class AutomationPipeline:
    def __init__(
        self,
        registry,
        transport,
        backend,
        log_store: ExecutionLogStore | None = None,
        dispatcher: DeliveryDispatcher | None = None,
        *,
        run_timeout: float | None = None,
        transcript_limit: int | None = None,
    ):
        self.registry = registry
        self.transport = transport
        self.backend = backend
        self.log_store = log_store or ExecutionLogStore()
        self.dispatcher = dispatcher or DeliveryDispatcher(transport)
        self.run_timeout = run_timeout or config.RUN_TIMEOUT
        self.transcript_limit = transcript_limit or config.TRANSCRIPT_LIMIT

    async def run_automation(self, automation_id: str, trigger: str = "manual") -> ExecutionRecord:
        """Run one automation end to end and return its execution record.

        Raises AutomationNotFound / AutomationConfigError before anything
        runs; every later failure is recorded on the returned record.
        """
        automation = await self.registry.get(automation_id)
        record = ExecutionRecord.for_automation(automation, trigger=trigger)
        log.info("Running automation %s (%s, %s)", automation.chat_name, automation_id, trigger)

        message = ""
        try:
            message = await asyncio.wait_for(
                self._compose(automation, record), timeout=self.run_timeout
            )
        except asyncio.TimeoutError:
            log.error("Automation %s timed out after %.0fs", automation_id, self.run_timeout)
            self._mark_timed_out(record)
        except Exception as exc:
            log.error("Automation %s failed unexpectedly", automation_id, exc_info=True)
            record.final.error = f"Unexpected error: {exc}"

        # Delivery is outside the timeout: a cancelled await cannot stop a
        # send already handed to the transport thread.
        if message:
            await self._deliver(automation, record, message)

        await self._persist(automation, record)
        log.info(
            "Automation %s finished: %s",
            automation_id,
            "message sent" if record.final.sent else "message not sent",
        )
        return record

    async def _compose(self, automation, record: ExecutionRecord) -> str:
        """Run transcript and both generation stages; return the message to send or ''."""
        transcript = await assemble_transcript(
            self.transport, automation.chat_id, self.transcript_limit
        )
        if transcript.degraded:
            record.chat_history_error = transcript.error
        else:
            record.chat_history_length = len(transcript.text)

        record.step1 = await generate_candidate(
            self.backend,
            automation.system_prompt,
            transcript.text,
            automation.scheduled_prompt,
        )
        if not record.step1.success:
            record.final.error = "Step 1 failed"
            record.final.message = STEP1_FAILED_MESSAGE
            return ""

        step1_text = record.step1.response
        record.step2 = await extract_message(self.backend, step1_text)
        final = record.final

        if record.step2.success:
            parsed = record.step2.parsed
            final.notes = parsed.notes
            final.has_new_message = should_send(parsed.has_new_message)
            if not final.has_new_message:
                final.message = parsed.message
                final.reason = (
                    "hasNewMessage is false"
                    if parsed.has_new_message is False
                    else "hasNewMessage not confirmed by extractor"
                )
                log.info("No new message for %s, skipping send", automation.chat_name)
                return ""

            decision = resolve_message(step1_text, parsed.message)
            if decision.truncation_detected:
                log.info("Step 2 appears to have truncated the message, using step 1 response")
                final.truncation_detected = True
                final.used_step1_response = True
                message = step1_text
            else:
                message = clean_message(decision.message)
        else:
            final.fallback = True
            final.has_new_message = True
            final.reason = "Step 2 failed, using step 1 response"
            message = step1_text

        # Stage-1 text substituted by the guard or the fallback is kept verbatim
        final.message = message
        if not message.strip():
            empty_reason = "Generated message is empty after cleaning"
            final.reason = f"{final.reason}; {empty_reason}" if final.reason else empty_reason
            log.warning("Generated message is empty for %s", automation.chat_name)
            return ""
        return message

    async def _deliver(self, automation, record: ExecutionRecord, message: str):
        final = record.final
        try:
            delivery = await self.dispatcher.deliver(automation, message)
        except Exception as exc:
            log.error("Delivery for %s failed unexpectedly", automation.automation_id, exc_info=True)
            final.send_error = str(exc) or type(exc).__name__
            return
        final.sent = delivery.sent
        final.sent_to = delivery.sent_to
        final.send_error = delivery.error

    @staticmethod
    def _mark_timed_out(record: ExecutionRecord):
        final = record.final
        final.sent = False
        if not record.step1.success:
            record.step1.error = RUN_TIMED_OUT
            final.error = "Step 1 failed"
            final.message = STEP1_FAILED_MESSAGE
        else:
            record.step2.error = RUN_TIMED_OUT
            final.error = RUN_TIMED_OUT

    async def _persist(self, automation, record: ExecutionRecord):
        try:
            record.log_file = await self.log_store.write_record(
                automation.automation_id, record.to_dict()
            )
            log.info("Detailed log saved to %s", record.log_file)
        except Exception as exc:
            log.error("Failed to save execution record for %s: %s", automation.automation_id, exc)
            record.log_file_error = str(exc)

        try:
            await self.log_store.append_history(automation.log_file, record.history_entry())
        except Exception as exc:
            log.error("Failed to append history for %s: %s", automation.automation_id, exc)

        try:
            await asyncio.to_thread(self.log_store.cleanup_old_records, automation.automation_id)
        except Exception as exc:
            log.warning("Execution record cleanup failed for %s: %s", automation.automation_id, exc)
