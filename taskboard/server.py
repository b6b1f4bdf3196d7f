#!/usr/bin/env python3
"""
Taskboard HTTP server
---------------------
JSON API over BoardService. Every route goes through the same service
methods as the CLI and the agent tools.

Usage:
    python -m taskboard.server --port 3001
    taskboard serve

API:
    GET    /health
    GET    /api/boards                          → [{id, name, lastUpdated}]
    POST   /api/boards                          → body {name, description?}
    GET    /api/boards/<id>?format=&columnId=   → projection (full|summary|compact|cards-only)
    PUT    /api/boards/<id>                     → body {projectName?, description?}
    DELETE /api/boards/<id>
    POST   /api/boards/<id>/archive
    GET    /api/archives
    POST   /api/archives/<archiveId>/restore
    GET    /api/boards/<id>/stats
    GET    /api/boards/<id>/integrity
    GET    /api/boards/<id>/export              → text/csv
    GET    /api/boards/<id>/cards?q=&tags=...   → paged search
    POST   /api/boards/<id>/cards               → body {columnId, position?, ...card fields}
    POST   /api/boards/<id>/cards/batch         → body {operations: [...]}
    GET    /api/boards/<id>/cards/<cardId>
    PUT    /api/boards/<id>/cards/<cardId>
    DELETE /api/boards/<id>/cards/<cardId>
    POST   /api/boards/<id>/cards/<cardId>/move → body {columnId, position}
    POST   /api/boards/<id>/columns             → body {name, wipLimit?, position?}
    PUT    /api/boards/<id>/columns/<columnId>
    DELETE /api/boards/<id>/columns/<columnId>
    POST   /api/boards/<id>/columns/reorder     → body {order: [columnId, ...]}

Errors are {"error": {"kind", "message", ...}} with the status from STATUS_CODES.
Mutating routes need X-API-Key when api_secret is configured.
"""

import hmac
import logging
import sys
from functools import wraps
from typing import Optional

from flask import Flask, Response, current_app, jsonify, request

from . import __version__
from .config import Config
from .errors import RateLimitError, TaskboardError, ValidationError
from .service import BoardService

logger = logging.getLogger(__name__)

STATUS_CODES = {
    "VALIDATION_ERROR": 400,
    "NOT_FOUND": 404,
    "FORMAT_MISMATCH": 409,
    "DEPENDENCY_ERROR": 422,
    "RATE_LIMITED": 429,
    "SERVER_BUSY": 503,
    "PERSISTENCE_ERROR": 500,
}


# ── Request helpers ──────────────────────────────────────────────────────────

def _service() -> BoardService:
    return current_app.config["BOARD_SERVICE"]


def client_id() -> str:
    """X-Client-Id header, else the remote address."""
    provided = request.headers.get("X-Client-Id", "").strip()
    return provided or request.remote_addr or "unknown"


def _body() -> dict:
    data = request.get_json(force=True, silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def require_api_key(f):
    """Decorator: when a secret is configured, reject requests without a matching X-API-Key."""
    @wraps(f)
    def decorated(*args, **kwargs):
        secret = current_app.config.get("API_SECRET", "")
        if secret:
            provided = request.headers.get("X-API-Key", "").strip()
            if not hmac.compare_digest(provided, secret):
                code = 401 if not provided else 403
                return jsonify({"error": {"kind": "UNAUTHORIZED", "message": "Unauthorized"}}), code
        return f(*args, **kwargs)
    return decorated


def _error_response(e: TaskboardError):
    response = jsonify({"error": e.to_dict()})
    response.status_code = STATUS_CODES.get(e.kind, 500)
    if isinstance(e, RateLimitError):
        response.headers["Retry-After"] = str(e.retry_after_secs)
    return response


# ── App factory ──────────────────────────────────────────────────────────────

def create_app(service: Optional[BoardService] = None, config: Optional[Config] = None) -> Flask:
    config = config or Config.load()
    service = service or BoardService.from_config(config)

    app = Flask(__name__)
    app.config["BOARD_SERVICE"] = service
    app.config["API_SECRET"] = config.api_secret

    @app.errorhandler(TaskboardError)
    def handle_taskboard_error(e):
        return _error_response(e)

    @app.errorhandler(404)
    def handle_not_found(e):
        return jsonify({"error": {"kind": "NOT_FOUND", "message": "No such route"}}), 404

    @app.errorhandler(405)
    def handle_bad_method(e):
        return jsonify({"error": {"kind": "METHOD_NOT_ALLOWED", "message": str(e)}}), 405

    @app.errorhandler(500)
    def handle_internal(e):
        original = getattr(e, "original_exception", None)
        logger.error(f"Unhandled error on {request.method} {request.path}", exc_info=original)
        return jsonify({"error": {"kind": "INTERNAL_ERROR", "message": "Internal server error"}}), 500

    # ── Boards ──────────────────────────────────────────────────────────

    @app.route("/health")
    def health():
        return jsonify({
            "status": "ok",
            "version": __version__,
            "boardsDir": str(_service().store.boards_dir),
            "rateLimiter": _service().limiter.stats(),
        })

    @app.route("/api/boards", methods=["GET"])
    def list_boards():
        return jsonify(_service().list_boards(client_id=client_id()))

    @app.route("/api/boards", methods=["POST"])
    @require_api_key
    def create_board():
        data = _body()
        summary = _service().create_board(
            data.get("name") or data.get("projectName") or "",
            description=data.get("description", ""),
            client_id=client_id(),
        )
        return jsonify(summary), 201

    @app.route("/api/boards/<board_id>", methods=["GET"])
    def get_board(board_id):
        return jsonify(_service().get_board(
            board_id,
            shape=request.args.get("format", "full"),
            column_id=request.args.get("columnId") or None,
            client_id=client_id(),
        ))

    @app.route("/api/boards/<board_id>", methods=["PUT"])
    @require_api_key
    def update_board(board_id):
        return jsonify(_service().update_board(board_id, _body(), client_id=client_id()))

    @app.route("/api/boards/<board_id>", methods=["DELETE"])
    @require_api_key
    def delete_board(board_id):
        return jsonify(_service().delete_board(board_id, client_id=client_id()))

    @app.route("/api/boards/<board_id>/archive", methods=["POST"])
    @require_api_key
    def archive_board(board_id):
        return jsonify(_service().archive_board(board_id, client_id=client_id()))

    @app.route("/api/archives", methods=["GET"])
    def list_archives():
        return jsonify(_service().list_archives(client_id=client_id()))

    @app.route("/api/archives/<archive_id>/restore", methods=["POST"])
    @require_api_key
    def restore_board(archive_id):
        return jsonify(_service().restore_board(archive_id, client_id=client_id()))

    @app.route("/api/boards/<board_id>/stats", methods=["GET"])
    def board_stats(board_id):
        return jsonify(_service().board_stats(board_id, client_id=client_id()))

    @app.route("/api/boards/<board_id>/integrity", methods=["GET"])
    def check_integrity(board_id):
        return jsonify(_service().check_integrity(board_id, client_id=client_id()))

    @app.route("/api/boards/<board_id>/export", methods=["GET"])
    def export_board(board_id):
        text = _service().export_csv(board_id, client_id=client_id())
        return Response(text, mimetype="text/csv", headers={
            "Content-Disposition": f"attachment; filename={board_id}.csv",
        })

    # ── Cards ───────────────────────────────────────────────────────────

    @app.route("/api/boards/<board_id>/cards", methods=["GET"])
    def search_cards(board_id):
        return jsonify(_service().search_cards(board_id, request.args.to_dict(), client_id=client_id()))

    @app.route("/api/boards/<board_id>/cards", methods=["POST"])
    @require_api_key
    def create_card(board_id):
        data = _body()
        column_id = data.pop("columnId", None)
        if not column_id:
            raise ValidationError("columnId is required")
        position = data.pop("position", "last")
        card = _service().create_card(board_id, column_id, data, position=position,
                                      client_id=client_id())
        return jsonify(card), 201

    @app.route("/api/boards/<board_id>/cards/batch", methods=["POST"])
    @require_api_key
    def batch_cards(board_id):
        data = _body()
        return jsonify(_service().batch_cards(board_id, data.get("operations"), client_id=client_id()))

    @app.route("/api/boards/<board_id>/cards/<card_id>", methods=["GET"])
    def get_card(board_id, card_id):
        return jsonify(_service().get_card(board_id, card_id, client_id=client_id()))

    @app.route("/api/boards/<board_id>/cards/<card_id>", methods=["PUT"])
    @require_api_key
    def update_card(board_id, card_id):
        return jsonify(_service().update_card(board_id, card_id, _body(), client_id=client_id()))

    @app.route("/api/boards/<board_id>/cards/<card_id>", methods=["DELETE"])
    @require_api_key
    def delete_card(board_id, card_id):
        return jsonify(_service().delete_card(board_id, card_id, client_id=client_id()))

    @app.route("/api/boards/<board_id>/cards/<card_id>/move", methods=["POST"])
    @require_api_key
    def move_card(board_id, card_id):
        data = _body()
        if not data.get("columnId"):
            raise ValidationError("columnId is required")
        return jsonify(_service().move_card(
            board_id, card_id, data["columnId"], position=data.get("position", "last"),
            client_id=client_id(),
        ))

    # ── Columns ─────────────────────────────────────────────────────────

    @app.route("/api/boards/<board_id>/columns", methods=["POST"])
    @require_api_key
    def add_column(board_id):
        data = _body()
        column = _service().add_column(
            board_id, data.get("name"), wip_limit=data.get("wipLimit"),
            position=data.get("position"), client_id=client_id(),
        )
        return jsonify(column), 201

    @app.route("/api/boards/<board_id>/columns/reorder", methods=["POST"])
    @require_api_key
    def reorder_columns(board_id):
        data = _body()
        return jsonify(_service().reorder_columns(board_id, data.get("order"), client_id=client_id()))

    @app.route("/api/boards/<board_id>/columns/<column_id>", methods=["PUT"])
    @require_api_key
    def update_column(board_id, column_id):
        return jsonify(_service().update_column(board_id, column_id, _body(), client_id=client_id()))

    @app.route("/api/boards/<board_id>/columns/<column_id>", methods=["DELETE"])
    @require_api_key
    def delete_column(board_id, column_id):
        return jsonify(_service().delete_column(board_id, column_id, client_id=client_id()))

    return app


def serve(config: Config, host: Optional[str] = None, port: Optional[int] = None) -> None:
    host = host or config.host
    port = port or config.port
    app = create_app(config=config)
    print(f"""
╔═══════════════════════════════════════╗
║  Taskboard Server                     ║
╠═══════════════════════════════════════╣
║  URL:    http://{host}:{port:<18}║
║  Boards: {config.boards_dir[:29]:<29}║
╚═══════════════════════════════════════╝
""", file=sys.stderr)
    app.run(host=host, port=port, debug=False, threaded=True)


# ── Main ─────────────────────────────────────────────────────────────────────

if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Taskboard HTTP server")
    parser.add_argument("--host", help="Bind address (use 0.0.0.0 to expose on network)")
    parser.add_argument("--port", type=int)
    parser.add_argument("--config", help="Path to taskboard.yaml (overrides TASKBOARD_CONFIG)")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [taskboard] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )
    serve(Config.load(args.config), host=args.host, port=args.port)
