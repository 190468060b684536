# main.py
import asyncio
import logging

from aiohttp import web

from admin_api import AdminApi, error_middleware
from audit_log import AuditLog
from broadcast import Broadcaster
from config import (
    ADMINS_FILE, AUDIT_LOG_FILE, EXCEL_URL, GUARDIANS_FILE, PORT, RELATIONS_FILE,
    WHATSAPP_VERIFY_TOKEN, local_now, log_startup_banner,
)
from conversation import ConversationStore
from guardian_bot import GuardianBot, SenderDispatcher
from guardians import AdminList, GuardianRegistry
from pins import PinValidator
from students import StudentDirectory
from transport import WhatsAppCloudTransport
from workbook_cache import WorkbookCache

log = logging.getLogger("main")

TRANSPORT = web.AppKey("transport", WhatsAppCloudTransport)
BOT = web.AppKey("bot", GuardianBot)
DISPATCHER = web.AppKey("dispatcher", SenderDispatcher)

# Parsing + media download can be slow; the webhook is ACKed first.
_background = set()


def _spawn(coro) -> None:
    task = asyncio.create_task(coro)
    _background.add(task)
    task.add_done_callback(_background.discard)


async def handle_health(_request: web.Request):
    return web.Response(text="ok")


async def handle_verify(request: web.Request):
    """Graph API webhook subscription handshake."""
    q = request.query
    if q.get("hub.mode") == "subscribe" and WHATSAPP_VERIFY_TOKEN and q.get("hub.verify_token") == WHATSAPP_VERIFY_TOKEN:
        log.info("Webhook verified.")
        return web.Response(text=q.get("hub.challenge", ""))
    return web.Response(text="forbidden", status=403)


async def _ingest(app: web.Application, payload: dict):
    try:
        messages = await app[TRANSPORT].parse_webhook(payload)
    except Exception:
        log.exception("Could not parse webhook payload")
        return
    for msg in messages:
        if not msg.text and msg.media is None:
            log.debug("Ignoring message without text or media from %s", msg.sender_id)
            continue
        app[DISPATCHER].submit(msg)


async def handle_webhook(request: web.Request):
    try:
        data = await request.json()
    except Exception:
        return web.Response(text="bad request", status=400)
    _spawn(_ingest(request.app, data))
    return web.Response(text="OK")


def build_app() -> web.Application:
    transport = WhatsAppCloudTransport()
    cache = WorkbookCache(EXCEL_URL)
    students = StudentDirectory(cache)
    registry = GuardianRegistry(GUARDIANS_FILE)
    audit = AuditLog(AUDIT_LOG_FILE, clock=local_now)
    admins = AdminList.load(ADMINS_FILE)

    bot = GuardianBot(
        transport=transport,
        students=students,
        pins=PinValidator(RELATIONS_FILE),
        registry=registry,
        states=ConversationStore(),
        audit=audit,
        admins=admins,
        broadcaster=Broadcaster(transport, registry),
        clock=local_now,
    )

    app = web.Application(middlewares=[error_middleware])
    app[TRANSPORT] = transport
    app[BOT] = bot
    app[DISPATCHER] = SenderDispatcher(bot.handle_message)
    app.add_routes([
        web.get("/", handle_health),
        web.get("/webhook", handle_verify),
        web.post("/webhook", handle_webhook),
    ])
    AdminApi(registry, students, audit, cache, clock=local_now).register(app)
    app.on_startup.append(on_startup)
    app.on_shutdown.append(on_shutdown)
    return app


async def on_startup(app: web.Application):
    log_startup_banner()
    log.info("Server booted on port %s. Webhook path: /webhook", PORT)


async def on_shutdown(app: web.Application):
    log.info("Shutting down...")
    app[BOT].cancel_timers()
    try:
        await app[DISPATCHER].close()
    finally:
        await app[TRANSPORT].close()
    log.info("Shutdown complete.")


def main():
    web.run_app(build_app(), host="0.0.0.0", port=int(PORT), shutdown_timeout=30)


if __name__ == "__main__":
    main()
