# api/dependencies.py
# Vercel picks up a Flask/Werkzeug WSGI app named `app`.
# Endpoints:
#   - POST /api/dependencies        -> build the dependency graph
#   - GET  /api/dependencies        -> health
#   - GET  /api/dependencies/query  -> catalog query for a database
#
# Payload:
#    {
#      "tables": [ {"id": "db.t", "uuid": "...", "database": "db", "name": "t",
#                   "engine": "MergeTree", "tableQuery": "CREATE TABLE ...",
#                   "dependenciesDatabase": [], "dependenciesTable": []} ],
#      "database": "db",
#      "focus": "db.t",                       (optional)
#      "config": { "deduplicate_edges": false }  (optional)
#    }

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from flask import Flask, request, Response

# Ensure table_dependencies.py is in the root or available on PYTHONPATH in Vercel.
from table_dependencies import (
    BuilderConfig,
    MalformedRecordError,
    build_dependency_graph,
    catalog_query,
    graph_to_dict,
    records_from_rows,
)

logger = logging.getLogger(__name__)

app = Flask(__name__)

# ---------- Helpers ----------

def _json_response(body: Dict[str, Any], status: int = 200) -> Response:
    return _corsify(Response(json.dumps(body), status=status, mimetype="application/json"))

def _error(message: str, status: int, detail: Optional[str] = None) -> Response:
    body: Dict[str, Any] = {"error": message}
    if detail:
        body["detail"] = detail
    return _json_response(body, status)

def _parse_config(cfg: Optional[Dict[str, Any]]) -> BuilderConfig:
    c = BuilderConfig()
    if not cfg:
        return c
    if "deduplicate_edges" in cfg:
        c.deduplicate_edges = bool(cfg["deduplicate_edges"])
    return c

def _focus_database(focus: Optional[str]) -> Optional[str]:
    if focus and "." in focus:
        return focus.split(".", 1)[0]
    return None

# ---------- CORS ----------

def _corsify(resp: Response) -> Response:
    resp.headers["Access-Control-Allow-Origin"] = "*"
    resp.headers["Access-Control-Allow-Methods"] = "GET,POST,OPTIONS"
    resp.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
    return resp

@app.after_request
def add_cors_headers(resp: Response):
    return _corsify(resp)

@app.route("/", methods=["OPTIONS"])
def options_root():
    return _corsify(Response(status=204))

# ---------- Routes ----------

@app.route("/", methods=["GET"])
def health() -> Response:
    return _json_response({"ok": True})

@app.route("/", methods=["POST"])
def dependencies() -> Response:
    payload = request.get_json(force=True, silent=True)
    if payload is None:
        return _error("Invalid JSON", 400)
    if not isinstance(payload, dict):
        return _error("JSON object expected", 400)

    rows = payload.get("tables")
    if not isinstance(rows, list):
        return _error("`tables` must be a list of catalog rows", 400)

    focus = payload.get("focus")
    database = payload.get("database") or _focus_database(focus)
    if not database:
        return _error("`database` is required (or a qualified `focus`)", 400)

    try:
        records = records_from_rows(rows)
    except (MalformedRecordError, AttributeError, TypeError) as e:
        return _error("Malformed catalog rows", 400, str(e))

    try:
        graph = build_dependency_graph(records, database, _parse_config(payload.get("config")))
        if focus:
            graph = graph.narrow(focus)
    except Exception as e:
        logger.exception("dependency graph build failed for %s", database)
        return _error("build_dependency_graph failed", 500, str(e))

    return _json_response(graph_to_dict(graph))

@app.route("/query", methods=["GET"])
def query() -> Response:
    database = request.args.get("database")
    if not database:
        return _error("`database` query parameter is required", 400)
    return _json_response({"sql": catalog_query(database)})

# Map the function path too (Vercel passes the full path to the app)
@app.route("/api/dependencies", methods=["OPTIONS"])
def options_dependencies():
    return _corsify(Response(status=204))

@app.route("/api/dependencies", methods=["GET"])
def health_alias():
    return health()

@app.route("/api/dependencies", methods=["POST"])
def dependencies_alias():
    return dependencies()

@app.route("/api/dependencies/query", methods=["GET"])
def query_alias():
    return query()
