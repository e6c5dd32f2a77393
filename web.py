"""HTTP endpoints for automations.

FastAPI app exposing the automation list, the manual test trigger and the
paginated run history. Automation definitions themselves are edited as
YAML files, not through this API.
"""

import hmac
import logging

from fastapi import Depends, FastAPI, Header, HTTPException, Query

import config
from registry import AutomationConfigError, AutomationNotFound

log = logging.getLogger(__name__)


def _require_token(authorization: str = Header("")):
    if not config.WEB_AUTH_TOKEN:
        return
    scheme, _, token = authorization.partition(" ")
    # Constant-time comparison
    if scheme.lower() != "bearer" or not hmac.compare_digest(token, config.WEB_AUTH_TOKEN):
        raise HTTPException(status_code=401, detail="Invalid token")


def create_app(herald) -> FastAPI:
    """Create the FastAPI app wired to the Herald instance."""
    app = FastAPI(title="Herald", docs_url=None, redoc_url=None)
    auth = [Depends(_require_token)]

    async def _get_automation(automation_id: str):
        try:
            return await herald.registry.get(automation_id)
        except AutomationNotFound:
            raise HTTPException(status_code=404, detail="Automation not found")
        except AutomationConfigError as exc:
            raise HTTPException(status_code=400, detail=str(exc))

    @app.get("/api/automations", dependencies=auth)
    async def list_automations():
        return [a.to_dict() for a in await herald.registry.list()]

    @app.get("/api/automations/{automation_id}/log", dependencies=auth)
    async def automation_log(
        automation_id: str,
        page: str | None = Query(None),
        page_size: str | None = Query(None, alias="pageSize"),
    ):
        automation = await _get_automation(automation_id)
        history = await herald.log_store.read_history(automation.log_file, page, page_size)
        return history.to_dict()

    @app.get("/api/automations/{automation_id}/runs/{log_file}", dependencies=auth)
    async def automation_run(automation_id: str, log_file: str):
        await _get_automation(automation_id)
        if log_file not in herald.log_store.list_records(automation_id):
            raise HTTPException(status_code=404, detail="Execution record not found")
        return herald.log_store.load_record(log_file)

    @app.post("/api/automations/{automation_id}/test", dependencies=auth)
    async def test_automation(automation_id: str):
        if not herald.transport.ready:
            raise HTTPException(status_code=503, detail="WhatsApp not ready")
        automation = await _get_automation(automation_id)
        log.info("Triggering test execution for %s", automation.chat_name)
        record = await herald.pipeline.run_automation(automation_id, trigger="manual")
        return {
            "success": True,
            "failedStage": record.failed_stage,
            "testLog": record.to_dict(),
            "message": (
                "Test executed and message sent successfully"
                if record.final.sent
                else "Test executed but message not sent"
            ),
        }

    return app
