import hmac
import logging
import os
import sys

from dotenv import load_dotenv
from flask import Flask, jsonify, redirect, request
from werkzeug.exceptions import MethodNotAllowed

load_dotenv()

from db import SessionLocal, init_db
from fitbit.burn import sync_burn
from fitbit.callback import CallbackResult, complete_authorization, redirect_target
from fitbit.connections import disconnect
from fitbit.identity import require_user_id_from_auth_header
from fitbit.sessions import request_origin, start_authorization
from fitbit.steps_sync import sync_steps
from fitbit.weight import sync_weight
from jobs.sync_fitbit import run_once

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("fitbit_connector")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type, x-fitbit-sync-secret",
    "Access-Control-Allow-Methods": "GET,POST,OPTIONS",
}

app = Flask(__name__)

init_db()


@app.before_request
def cors_preflight():
    # Browsers block the real request unless the preflight gets a 2xx
    if request.method == "OPTIONS":
        return "", 204


@app.after_request
def add_cors_headers(response):
    response.headers.update(CORS_HEADERS)
    return response


@app.errorhandler(MethodNotAllowed)
def method_not_allowed(_e):
    return jsonify({"error": "Method not allowed"}), 405


@app.get("/")
def home():
    return "Fitbit steps connector is running. POST /fitbit-start to connect."


@app.post("/fitbit-start")
def fitbit_start():
    """Begin the OAuth + PKCE flow. Returns the URL the client should open."""
    db = SessionLocal()
    try:
        user_id = require_user_id_from_auth_header(request.headers.get("Authorization"))
        origin = request_origin(request.headers.get("Origin"), request.headers.get("Referer"))
        authorize_url = start_authorization(db, user_id, app_origin=origin)
        return jsonify({"authorizeUrl": authorize_url}), 200
    except Exception as e:
        logger.error("fitbit-start error: %s", e)
        return jsonify({"error": "FITBIT_START_FAILED", "detail": str(e)}), 400
    finally:
        db.close()


def _redirect_to_app(result: CallbackResult):
    try:
        target = redirect_target(result)
    except Exception as e:
        logger.error("fitbit-callback cannot redirect: %s", e)
        return "Fitbit callback is misconfigured", 500
    response = redirect(target, code=302)
    response.headers["Cache-Control"] = "no-store"
    response.headers["X-Content-Type-Options"] = "nosniff"
    return response


@app.route("/fitbit-callback", methods=["GET", "POST"])
def fitbit_callback():
    # Fitbit redirects the browser here with a GET; anything else is not us
    if request.method != "GET":
        return _redirect_to_app(CallbackResult(ok=False, error_code="METHOD_NOT_ALLOWED"))

    error = request.args.get("error")
    if error:
        description = request.args.get("error_description") or request.args.get("errorDescription")
        return _redirect_to_app(CallbackResult(ok=False, error_code=error, message=description))

    db = SessionLocal()
    try:
        result = complete_authorization(db, request.args.get("code"), request.args.get("state"))
    except Exception as e:
        db.rollback()
        logger.error("fitbit-callback error: %s", e)
        result = CallbackResult(ok=False, error_code="CALLBACK_FAILED", message=str(e))
    finally:
        db.close()
    return _redirect_to_app(result)


@app.post("/fitbit-sync-steps")
def fitbit_sync_steps():
    """On-demand 7-day steps sync for the calling user."""
    db = SessionLocal()
    try:
        user_id = require_user_id_from_auth_header(request.headers.get("Authorization"))
        result = sync_steps(db, user_id)
        return jsonify(result.body()), result.status_code
    except Exception as e:
        logger.error("fitbit-sync-steps error: %s", e)
        return jsonify({"error": "FITBIT_SYNC_STEPS_FAILED", "detail": str(e)}), 400
    finally:
        db.close()


@app.post("/fitbit-sync-now")
def fitbit_sync_now():
    """Today's raw activity burn for the calling user."""
    db = SessionLocal()
    try:
        user_id = require_user_id_from_auth_header(request.headers.get("Authorization"))
        result = sync_burn(db, user_id)
        return jsonify(result.body()), result.status_code
    except Exception as e:
        logger.error("fitbit-sync-now error: %s", e)
        return jsonify({"error": "FITBIT_SYNC_NOW_FAILED", "detail": str(e)}), 400
    finally:
        db.close()


@app.post("/fitbit-sync-weight")
def fitbit_sync_weight():
    db = SessionLocal()
    try:
        user_id = require_user_id_from_auth_header(request.headers.get("Authorization"))
        result = sync_weight(db, user_id)
        return jsonify(result.body()), result.status_code
    except Exception as e:
        logger.error("fitbit-sync-weight error: %s", e)
        return jsonify({"error": "FITBIT_SYNC_WEIGHT_FAILED", "detail": str(e)}), 400
    finally:
        db.close()


@app.post("/fitbit-disconnect")
def fitbit_disconnect():
    db = SessionLocal()
    try:
        user_id = require_user_id_from_auth_header(request.headers.get("Authorization"))
        disconnect(db, user_id)
        return jsonify({"ok": True}), 200
    except Exception as e:
        logger.error("fitbit-disconnect error: %s", e)
        return jsonify({"error": "FITBIT_DISCONNECT_FAILED", "detail": str(e)}), 400
    finally:
        db.close()


@app.post("/fitbit-sync")
def fitbit_sync_all():
    """Scheduled sync for every active connection, guarded by a shared secret."""
    secret = request.headers.get("X-Fitbit-Sync-Secret") or ""
    expected = os.getenv("FITBIT_SYNC_SECRET") or ""
    if not expected or not hmac.compare_digest(secret.encode(), expected.encode()):
        return jsonify({"error": "UNAUTHORIZED"}), 401

    try:
        counts = run_once()
    except Exception as e:
        logger.error("fitbit-sync error: %s", e)
        return jsonify({"error": "FITBIT_SYNC_FAILED", "detail": str(e)}), 400
    return jsonify({"ok": True, **counts}), 200


def debug_enabled() -> bool:
    # The Werkzeug debugger executes code sent from the browser
    return os.getenv("FLASK_DEBUG", "").strip().lower() in ("1", "true", "yes")


if __name__ == "__main__":
    app.run(port=int(os.getenv("PORT", "5000")), debug=debug_enabled())
