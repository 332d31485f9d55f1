import asyncio
import hmac
import logging
import os
import threading

from flask import Flask, jsonify, request
from telegram import Update

import db
from bot import DB_PATH, build_app
from worker import run_tick_once

LOGGER = logging.getLogger(__name__)

CRON_KINDS = ("overdue", "upcoming")

app = Flask(__name__)

_LOCK = threading.Lock()
_LOOP = asyncio.new_event_loop()
_TG_APP = None


def _run(coro):
    with _LOCK:
        return _LOOP.run_until_complete(coro)


def _ensure_tg_app():
    global _TG_APP
    if _TG_APP is not None:
        return _TG_APP

    token = os.getenv("BOT_TOKEN")
    if not token:
        raise RuntimeError("BOT_TOKEN is required")
    if not DB_PATH:
        raise RuntimeError("DATABASE_URL or DB_PATH is required")

    with _LOCK:
        if _TG_APP is None:
            db.init_db(DB_PATH)
            tg_app = build_app(token, DB_PATH, background=False)
            _LOOP.run_until_complete(tg_app.initialize())
            _TG_APP = tg_app
    return _TG_APP


def _secret_matches(required: str, *candidates: str) -> bool:
    return any(hmac.compare_digest(c.encode(), required.encode()) for c in candidates if c)


def _check_telegram_secret() -> bool:
    required = os.getenv("TELEGRAM_WEBHOOK_SECRET", "").strip()
    if not required:
        return True
    return _secret_matches(required, request.headers.get("X-Telegram-Bot-Api-Secret-Token", ""))


def _check_cron_secret() -> bool:
    required = os.getenv("CRON_SECRET", "").strip()
    if not required:
        return True
    return _secret_matches(
        required,
        request.args.get("token", ""),
        request.headers.get("X-Cron-Secret", ""),
    )


def _error(e: Exception, status: int = 500):
    return jsonify({"ok": False, "error": type(e).__name__, "message": str(e)}), status


@app.get("/")
def health():
    return jsonify({"ok": True, "service": "task-manager-bot"})


@app.post("/api/webhook")
def telegram_webhook():
    if not _check_telegram_secret():
        return jsonify({"ok": False, "error": "forbidden"}), 403

    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return jsonify({"ok": False, "error": "bad json"}), 400

    try:
        tg_app = _ensure_tg_app()
        update = Update.de_json(payload, tg_app.bot)
        _run(tg_app.process_update(update))
    except Exception as e:
        LOGGER.exception("webhook update failed")
        return _error(e)
    return jsonify({"ok": True})


@app.get("/api/cron/<kind>")
def cron_check(kind: str):
    if not _check_cron_secret():
        return jsonify({"ok": False, "error": "forbidden"}), 403
    if kind not in CRON_KINDS:
        return jsonify({"ok": False, "error": "unknown check"}), 404

    try:
        tg_app = _ensure_tg_app()
        sent = _run(run_tick_once(kind, bot=tg_app.bot))
    except Exception as e:
        LOGGER.exception("cron %s failed", kind)
        return _error(e)
    return jsonify({"ok": True, "check": kind, "notified": sent})
