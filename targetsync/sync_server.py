"""
HTTP Sync Server: relay and merge authority for host/slave agents.

A lightweight Flask server holding the shared SyncState. Agents never talk
to each other; the host pushes targets and control commands, slaves poll
for them and push their activity observations back.

Usage:
    python -m targetsync.sync_server [OPTIONS]

Options:
    --host TEXT       Bind address (default: $HOST or 0.0.0.0)
    --port INT        Bind port (default: $PORT or 8787)
    --data-file TEXT  Path to persistence file (default: $DATA_FILE or sync-state.json)
    --token TEXT      Shared secret expected in X-Sync-Token (default: $SYNC_TOKEN)
    --reset           Wipe existing data file on startup
"""

import argparse
import hmac
import logging
import os
import time

from flask import Flask, jsonify, request as flask_request

from targetsync.state_store import EmptyUpdateError, PersistenceError, SyncStateStore
from targetsync.utils import setup_logging

logger = logging.getLogger("sync_server")

SYNC_PATH = "/sync-state"
TOKEN_HEADER = "X-Sync-Token"
MAX_BODY_BYTES = 1024 * 1024

_TRUE_FLAGS = {"1", "true", "yes", "on"}


def _wants_log() -> bool:
    for name in ("includeLog", "includeActivity"):
        if flask_request.args.get(name, "").strip().lower() in _TRUE_FLAGS:
            return True
    return False


def _presented_token() -> str:
    token = flask_request.headers.get(TOKEN_HEADER, "")
    if token:
        return token
    auth = flask_request.headers.get("Authorization", "")
    if auth[:7].lower() == "bearer ":
        return auth[7:]
    return ""


def create_app(store: SyncStateStore, sync_token: str = "") -> Flask:
    """
    Build the Flask app around an already loaded store.

    An empty sync_token disables authorization (trusted networks only).
    """
    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = MAX_BODY_BYTES
    started = time.time()

    def _authorized() -> bool:
        if not sync_token:
            return True
        return hmac.compare_digest(_presented_token().encode("utf-8"), sync_token.encode("utf-8"))

    # ── CORS / preflight ──────────────────────────────────────────────────

    @app.before_request
    def _preflight():
        if flask_request.method == "OPTIONS":
            return "", 204
        return None

    @app.after_request
    def _cors(response):
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Headers"] = f"Content-Type, {TOKEN_HEADER}, Authorization"
        response.headers["Access-Control-Allow-Methods"] = "GET, PUT, OPTIONS"
        return response

    # ── Errors ────────────────────────────────────────────────────────────

    @app.errorhandler(404)
    def _not_found(_err):
        return jsonify({"error": "not found"}), 404

    @app.errorhandler(405)
    def _not_allowed(_err):
        return jsonify({"error": "method not allowed"}), 405

    @app.errorhandler(413)
    def _too_large(_err):
        return jsonify({"error": "payload too large"}), 413

    # ── Endpoints ─────────────────────────────────────────────────────────

    @app.route("/health", methods=["GET"])
    def health():
        """Health check: verifies the server is running."""
        return jsonify({"status": "ok", "uptime": int(time.time() - started)})

    @app.route(SYNC_PATH, methods=["GET", "PUT"])
    def sync_state():
        """
        GET: public snapshot (?includeLog=1 adds the raw activity buckets).
        PUT: partial update envelope with any of
             {targets, updatedAt}, {control, controlUpdatedAt},
             {activityBatch, activityUpdatedAt}, {coordsBatch}, {lockCommand}.
        """
        if not _authorized():
            logger.warning(f"UNAUTHORIZED  {flask_request.method} from {flask_request.remote_addr}")
            return jsonify({"error": "unauthorized"}), 401

        include_log = _wants_log()
        if flask_request.method == "GET":
            return jsonify(store.snapshot(include_log=include_log))

        body = flask_request.get_json(force=True, silent=True)
        if body is None and flask_request.get_data(cache=True).strip():
            return jsonify({"error": "invalid json"}), 400
        try:
            view = store.apply_update(body if body is not None else {}, include_log=include_log)
        except EmptyUpdateError as e:
            return jsonify({"error": str(e)}), 400
        except PersistenceError as e:
            logger.error(f"PUT rejected, state not persisted: {e}")
            return jsonify({"error": "state could not be persisted"}), 500
        return jsonify(view)

    return app


# ═══════════════════════════════════════════════════════════════════════════
#  CLI entry point
# ═══════════════════════════════════════════════════════════════════════════

def main():
    parser = argparse.ArgumentParser(
        description="HTTP Sync Server relaying targets, commands and activity between agents"
    )
    parser.add_argument("--host", default=os.environ.get("HOST", "0.0.0.0"),
                        help="Bind address (default: $HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, default=int(os.environ.get("PORT", 8787)),
                        help="Bind port (default: $PORT or 8787)")
    parser.add_argument("--data-file", default=os.environ.get("DATA_FILE", "sync-state.json"),
                        help="Path to persistence file (default: $DATA_FILE or sync-state.json)")
    parser.add_argument("--token", default=os.environ.get("SYNC_TOKEN", ""),
                        help="Shared secret expected in the X-Sync-Token header (default: $SYNC_TOKEN)")
    parser.add_argument("--reset", action="store_true",
                        help="Wipe existing data file on startup")
    args = parser.parse_args()

    setup_logging("sync_server", log_prefix="sync_server")
    # Suppress Flask's per-request logging
    logging.getLogger("werkzeug").setLevel(logging.WARNING)

    store = SyncStateStore(args.data_file)
    if args.reset:
        store.reset()
        logger.info("Starting with empty state (--reset)")
    else:
        state = store.load()
        logger.info(
            f"Resumed state from {args.data_file}  "
            f"(targets={len(state['targets'])}, buckets={len(state['activity']['buckets'])}, "
            f"lock={'held' if state['lock'] else 'free'})"
        )

    if not args.token:
        logger.warning("SYNC_TOKEN is empty, every request is authorized")

    # Startup banner
    logger.info("=" * 60)
    logger.info(f"  Sync server running on http://{args.host}:{args.port}{SYNC_PATH}")
    logger.info(f"  Data file:      {args.data_file}")
    logger.info(f"  Auth:           {'token' if args.token else 'disabled'}")
    logger.info("=" * 60)

    app = create_app(store, args.token)
    # The store serializes mutations under its own mutex
    app.run(host=args.host, port=args.port, threaded=True, use_reloader=False)


if __name__ == "__main__":
    main()
