"""HTTP route handlers for the Tech Roadmap datasource API."""

import logging

from flask import Blueprint, Response, current_app, jsonify, request

from tech_roadmap.config import get_master_secret
from tech_roadmap.datasource import DatasourceService
from tech_roadmap.exceptions import (
    AuthenticationError,
    ConfigurationError,
    CsvParseError,
    DatasourceError,
    InvalidConfigError,
    InvalidQueryError,
    InvalidUrlError,
    RateLimitError,
    RoadmapError,
    SecretError,
)
from tech_roadmap.models import camel_case_dict
from tech_roadmap.roadmap_csv import build_csv_from_items

logger = logging.getLogger(__name__)

bp = Blueprint("main", __name__)

DEFAULT_DEBUG_SAMPLE = 50


def _service() -> DatasourceService:
    return current_app.extensions["datasource_service"]


def _error_response(e: RoadmapError):
    """Map a roadmap error to a JSON error body and status code."""
    if isinstance(e, InvalidConfigError):
        status = 400
    elif isinstance(e, (ConfigurationError, SecretError)):
        status = 503
    elif isinstance(e, (CsvParseError, InvalidUrlError, InvalidQueryError)):
        status = 400
    elif isinstance(e, AuthenticationError):
        status = 401
    elif isinstance(e, RateLimitError):
        status = 429
    elif isinstance(e, DatasourceError):
        status = 502
    else:
        status = 500
    logger.warning("Request failed (%d): %s", status, e)
    return jsonify({"error": str(e)}), status


def _json_body() -> dict | None:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else None


@bp.route("/health")
def health():
    """Health check endpoint."""
    try:
        get_master_secret()
    except ConfigurationError:
        return jsonify({"status": "ok", "secret_configured": False})
    return jsonify({"status": "ok", "secret_configured": True})


@bp.route("/api/roadmaps/<roadmap_id>/datasource")
def get_datasource(roadmap_id: str):
    """Return the sanitized datasource summary."""
    try:
        summary = _service().get_summary(roadmap_id)
    except RoadmapError as e:
        return _error_response(e)
    return jsonify({"datasource": summary.to_dict()})


@bp.route("/api/roadmaps/<roadmap_id>/datasource", methods=["PUT"])
def put_datasource(roadmap_id: str):
    """Replace the datasource type and config, optionally storing a new PAT."""
    body = _json_body()
    if body is None:
        return jsonify({"error": "Invalid JSON body"}), 400

    pat = body.get("pat")
    try:
        summary = _service().update_config(
            roadmap_id,
            body.get("type"),
            body.get("config"),
            secret=pat if isinstance(pat, str) else None,
            clear_secret=body.get("clearPat") is True,
        )
    except RoadmapError as e:
        return _error_response(e)
    return jsonify({"datasource": summary.to_dict()})


@bp.route("/api/roadmaps/<roadmap_id>/datasource/items")
def get_items(roadmap_id: str):
    """Return roadmap items as JSON, or as CSV with ``format=csv``."""
    force_refresh = request.args.get("refresh", "").lower() in ("1", "true", "yes")
    try:
        result = _service().fetch_items(roadmap_id, force_refresh=force_refresh)
    except RoadmapError as e:
        return _error_response(e)

    if request.args.get("format") == "csv":
        return Response(
            build_csv_from_items(result.items),
            mimetype="text/csv",
            headers={"Content-Disposition": f'attachment; filename="roadmap-{roadmap_id}.csv"'},
        )
    return jsonify(result.to_dict())


@bp.route("/api/roadmaps/<roadmap_id>/csv", methods=["PUT"])
def put_csv(roadmap_id: str):
    """Store uploaded CSV text for the roadmap."""
    text = request.get_data(as_text=True)
    try:
        count = _service().set_csv_text(roadmap_id, text)
    except RoadmapError as e:
        return _error_response(e)
    return jsonify({"itemCount": count})


@bp.route("/api/roadmaps/<roadmap_id>/datasource/validate", methods=["POST"])
def validate_datasource(roadmap_id: str):
    """Dry-run a proposed datasource config."""
    body = _json_body()
    if body is None:
        return jsonify({"error": "Invalid JSON body"}), 400

    try:
        report = _service().validate_config(
            roadmap_id,
            body.get("type"),
            body.get("config"),
            pat=body.get("pat") or None,
        )
    except RoadmapError as e:
        return _error_response(e)
    return jsonify({"success": True, **camel_case_dict(report)})


@bp.route("/api/roadmaps/<roadmap_id>/datasource/projects", methods=["POST"])
def list_projects(roadmap_id: str):
    """List Azure DevOps projects for an organization."""
    body = _json_body()
    if body is None:
        return jsonify({"error": "Invalid JSON body"}), 400

    organization_url = body.get("organizationUrl")
    if not isinstance(organization_url, str) or not organization_url.strip():
        return jsonify({"error": "Organization URL is required."}), 400

    try:
        projects = _service().list_projects(roadmap_id, organization_url, pat=body.get("pat") or None)
    except RoadmapError as e:
        return _error_response(e)
    return jsonify({"projects": [camel_case_dict(project) for project in projects]})


@bp.route("/api/roadmaps/<roadmap_id>/datasource/work-item", methods=["POST"])
def resolve_work_item(roadmap_id: str):
    """Resolve a pasted work item URL."""
    body = _json_body()
    if body is None:
        return jsonify({"error": "Invalid JSON body"}), 400

    url = body.get("url")
    if not isinstance(url, str) or not url.strip():
        return jsonify({"error": "Work item URL is required."}), 400

    try:
        lookup = _service().resolve_work_item(roadmap_id, url, pat=body.get("pat") or None)
    except RoadmapError as e:
        return _error_response(e)
    return jsonify({"result": camel_case_dict(lookup)})


@bp.route("/api/roadmaps/<roadmap_id>/datasource/debug")
def debug_datasource(roadmap_id: str):
    """Return raw Azure DevOps payloads for a sample of work items."""
    sample = request.args.get("sample", DEFAULT_DEBUG_SAMPLE, type=int)
    sample = max(1, min(200, sample))
    try:
        payload = _service().fetch_debug_payload(roadmap_id, sample)
    except RoadmapError as e:
        return _error_response(e)
    return jsonify({"payload": camel_case_dict(payload)})


@bp.route("/api/roadmaps/<roadmap_id>/comments/<item_id>")
def get_comments(roadmap_id: str, item_id: str):
    """Return the discussion comments of a work item."""
    if not item_id.isdigit():
        return jsonify({"error": "Invalid work item id."}), 400
    try:
        comments = _service().fetch_comments(roadmap_id, item_id)
    except RoadmapError as e:
        return _error_response(e)
    return jsonify({"comments": [camel_case_dict(comment) for comment in comments]})


@bp.route("/api/roadmaps/<roadmap_id>/related/<item_id>")
def get_related(roadmap_id: str, item_id: str):
    """Return work items linked to a work item as related."""
    if not item_id.isdigit():
        return jsonify({"error": "Invalid work item id."}), 400
    try:
        related = _service().fetch_related_items(roadmap_id, item_id)
    except RoadmapError as e:
        return _error_response(e)
    return jsonify({"related": [camel_case_dict(item) for item in related]})
