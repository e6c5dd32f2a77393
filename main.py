import asyncio
import logging
import signal
import sys
import threading

import config
from automations import AutomationEngine
from database import Database
from execution_log import ExecutionLogStore
from genai import GeminiClient
from pipeline import AutomationPipeline
from registry import AutomationRegistry
from whatsapp import WhatsAppClient, WhatsAppTransport

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
config.LOG_DIR.mkdir(parents=True, exist_ok=True)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(config.LOG_DIR / "herald.log"),
    ],
)
log = logging.getLogger("herald")


# ---------------------------------------------------------------------------
# Herald core
# ---------------------------------------------------------------------------
class Herald:
    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.loop: asyncio.AbstractEventLoop | None = None
        self.db = Database(config.DATABASE_PATH)
        self.wa = WhatsAppClient(config.AUTH_DIR, message_callback=self._on_whatsapp_message)
        self.transport = WhatsAppTransport(self.wa, self.db)
        self.registry = AutomationRegistry()
        self.log_store = ExecutionLogStore()
        self.pipeline = AutomationPipeline(
            self.registry,
            self.transport,
            GeminiClient(),
            self.log_store,
        )
        self.engine = AutomationEngine(
            self.registry, self.pipeline, is_ready=lambda: self.transport.ready
        )
        self.running = True

    # --- WhatsApp callback (runs on neonize thread) ---

    def _on_whatsapp_message(self, msg_data: dict):
        """Thread-safe bridge: push message to the async queue."""
        if self.loop:
            self.loop.call_soon_threadsafe(self.queue.put_nowait, msg_data)

    async def store_message(self, msg_data: dict):
        await asyncio.to_thread(
            self.db.store_message,
            msg_data["msg_id"],
            msg_data["chat_jid"],
            msg_data["sender_jid"],
            msg_data["sender_name"],
            msg_data["content"],
            msg_data["timestamp"],
            msg_data["is_from_me"],
        )

    # --- Main loop ---

    async def run(self):
        self.loop = asyncio.get_running_loop()

        self.db.initialize()
        await self.registry.initialize()

        # Start WhatsApp in background thread (neonize is synchronous)
        wa_thread = threading.Thread(target=self.wa.connect, daemon=True, name="whatsapp")
        wa_thread.start()

        log.info("Herald is starting up. Waiting for WhatsApp connection...")
        log.info("Scan the QR code with your phone to pair.")

        import uvicorn
        from web import create_app

        server = uvicorn.Server(
            uvicorn.Config(
                create_app(self),
                host=config.WEB_HOST,
                port=config.WEB_PORT,
                log_level="warning",
            )
        )
        web_task = asyncio.create_task(server.serve(), name="web")
        log.info("Web API listening on http://%s:%d", config.WEB_HOST, config.WEB_PORT)
        scheduler_task = asyncio.create_task(self.engine.run(), name="scheduler")

        while self.running:
            try:
                msg_data = await asyncio.wait_for(
                    self.queue.get(), timeout=config.POLL_INTERVAL
                )
                await self.store_message(msg_data)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            except Exception:
                log.error("Error in main loop", exc_info=True)

        scheduler_task.cancel()
        await asyncio.gather(scheduler_task, return_exceptions=True)
        server.should_exit = True
        await self.engine.wait_idle()
        await asyncio.gather(web_task, return_exceptions=True)
        self.db.close()
        log.info("Herald shut down.")

    def shutdown(self, *_args):
        log.info("Shutdown signal received...")
        self.running = False


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def main():
    herald = Herald()

    signal.signal(signal.SIGINT, herald.shutdown)
    signal.signal(signal.SIGTERM, herald.shutdown)

    try:
        asyncio.run(herald.run())
    except KeyboardInterrupt:
        log.info("Interrupted.")


if __name__ == "__main__":
    main()
