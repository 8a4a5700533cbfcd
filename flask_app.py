"""
Flask application for the vocabulary sheet pipeline.

Thin HTTP surface over SheetService: upload, status, regenerate, delete and
job status. Authentication is the session's user_id; login lives elsewhere.

Run with:
    flask --app flask_app run
"""

import logging
import os
from typing import Optional

from flask import Flask, jsonify, request, session

from jobs.queue import SheetQueue
from pipeline.config import PipelineConfig, load_config
from pipeline.errors import (
    InvalidSheetState,
    QueueUnavailable,
    RegenerationBlocked,
    SheetNotFound,
    UploadRejected,
)
from pipeline.schema import SheetStatus, TestKind
from pipeline.sheets import SheetService

logger = logging.getLogger(__name__)


def require_auth() -> Optional[str]:
    """Return the signed-in user id, or None."""
    return session.get("user_id") or None


def _int_arg(value) -> Optional[int]:
    if value in (None, ""):
        return None
    return int(value)


def _sheet_json(sheet) -> dict:
    return sheet.model_dump(mode="json", exclude={"storage_key"})


def build_sheet_service(config: PipelineConfig, queue=None) -> SheetService:
    """Default wiring: Supabase for records and files, RQ for jobs."""
    from pipeline.supabase_client import get_service_client
    from pipeline.supabase_db import SupabaseRecordStore
    from pipeline.supabase_storage import SupabaseBlobStore

    client = get_service_client(config)
    return SheetService(
        SupabaseRecordStore(client),
        SupabaseBlobStore(client, config.bucket),
        queue,
        max_upload_bytes=config.max_upload_bytes,
    )


def create_app(config: Optional[PipelineConfig] = None, service: Optional[SheetService] = None,
               queue=None) -> Flask:
    """
    Application factory.

    ``queue`` and ``service`` are injected by tests; otherwise they are built
    from ``config``. A missing or unreachable Redis is logged once here and
    enqueueing routes answer 503.
    """
    config = config or load_config()

    if queue is None and service is None:
        try:
            queue = SheetQueue.from_config(config)
        except QueueUnavailable as e:
            logger.error(f"❌ Job queue unavailable: {e}")
            queue = None
    if service is None:
        service = build_sheet_service(config, queue)

    app = Flask(__name__)
    app.secret_key = os.environ.get("FLASK_SECRET_KEY", os.urandom(32))
    app.config["MAX_CONTENT_LENGTH"] = config.max_upload_bytes + 1024 * 1024
    app.logger.setLevel(logging.INFO)

    def not_authenticated():
        return jsonify({"success": False, "error": "Not authenticated"}), 401

    def queue_missing():
        return jsonify({"success": False, "error": "Job queue unavailable"}), 503

    @app.route("/api/sheets", methods=["POST"])
    def upload_sheet():
        """Store an upload, create a PENDING sheet and enqueue processing."""
        user_id = require_auth()
        if not user_id:
            return not_authenticated()
        if service.queue is None:
            return queue_missing()

        file = request.files.get("file")
        if file is None or file.filename == "":
            return jsonify({"success": False, "error": "No file uploaded"}), 400

        try:
            test_type = TestKind(request.form.get("test_type", TestKind.VOCABULARY.value).upper())
            tests_to_generate = _int_arg(request.form.get("tests_to_generate"))
            grade_level = _int_arg(request.form.get("grade_level"))
        except ValueError as e:
            return jsonify({"success": False, "error": f"Invalid form field: {e}"}), 400

        try:
            sheet, job_id = service.create_upload(
                owner_id=user_id,
                filename=file.filename,
                data=file.read(),
                tests_to_generate=tests_to_generate,
                test_type=test_type,
                grade_level=grade_level,
                name=request.form.get("name") or None,
            )
        except UploadRejected as e:
            return jsonify({"success": False, "error": str(e)}), 400

        return jsonify({"success": True, "sheet": _sheet_json(sheet), "job_id": job_id}), 201

    @app.route("/api/sheets/<sheet_id>", methods=["GET"])
    def get_sheet(sheet_id):
        """Status and error message for the poller; tests once COMPLETED."""
        user_id = require_auth()
        if not user_id:
            return not_authenticated()
        try:
            sheet = service.get_owned(sheet_id, user_id)
        except SheetNotFound as e:
            return jsonify({"success": False, "error": str(e)}), 404

        payload = {"success": True, "sheet": _sheet_json(sheet)}
        if sheet.status == SheetStatus.COMPLETED:
            payload["tests"] = [t.model_dump(mode="json") for t in service.store.list_tests(sheet_id)]
        return jsonify(payload)

    @app.route("/api/sheets/<sheet_id>/regenerate", methods=["POST"])
    def regenerate_sheet(sheet_id):
        user_id = require_auth()
        if not user_id:
            return not_authenticated()
        if service.queue is None:
            return queue_missing()

        data = request.get_json(silent=True) or {}
        force = bool(data.get("force", False))
        try:
            report, job_id = service.request_regeneration(sheet_id, user_id, force=force)
        except SheetNotFound as e:
            return jsonify({"success": False, "error": str(e)}), 404
        except RegenerationBlocked as e:
            return jsonify({
                "success": False,
                "error": str(e),
                "attempts": e.report.attempts,
                "assignments": e.report.assignments,
                "affected_tests": e.report.affected_tests,
            }), 409
        except InvalidSheetState as e:
            return jsonify({"success": False, "error": str(e), "status": e.status}), 409

        return jsonify({"success": True, "job_id": job_id, "forced": force and not report.is_safe}), 202

    @app.route("/api/sheets/<sheet_id>", methods=["DELETE"])
    def delete_sheet(sheet_id):
        user_id = require_auth()
        if not user_id:
            return not_authenticated()
        try:
            service.delete_sheet(sheet_id, user_id)
        except SheetNotFound as e:
            return jsonify({"success": False, "error": str(e)}), 404
        return jsonify({"success": True})

    @app.route("/api/jobs/<job_id>", methods=["GET"])
    def job_status(job_id):
        user_id = require_auth()
        if not user_id:
            return not_authenticated()
        if service.queue is None:
            return queue_missing()

        status = service.queue.get_job_status(job_id)
        sheet_id = status.get("sheet_id")
        if status.get("status") == "not_found" or (sheet_id and service.store.get_sheet(sheet_id, owner_id=user_id) is None):
            return jsonify({"success": False, "error": "Job not found"}), 404
        return jsonify({"success": True, **status})

    return app


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format='%(asctime)s [%(levelname)s] %(message)s')
    port = int(os.environ.get("PORT", 5000))
    create_app().run(host="0.0.0.0", port=port, debug=False)
