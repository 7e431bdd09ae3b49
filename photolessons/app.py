"""Flask entrypoint for photolessons: uploads, queue monitor and admin actions."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from flask import Flask, jsonify, request
from werkzeug.utils import secure_filename

from photolessons.config import ensure_storage_dirs, get_paths, load_settings
from photolessons.errors import QueueConflict, ValidationError
from photolessons.logging_setup import setup_logging
from photolessons.models import JOB_TYPES, Job
from photolessons.services.enqueue import enqueue_upload, request_reprocess, retry_failed
from photolessons.services.queue import QueueStore
from photolessons.services.storage import is_image, store_upload

logger = logging.getLogger(__name__)

STATUS_FILTERS = ("pending", "processing", "completed", "failed")


def serialize_job(job: Job) -> dict:
    """Job dict for JSON responses, with the stage result decoded."""

    payload = job.to_dict()
    result_data = {}
    if job.result_json:
        try:
            result_data = json.loads(job.result_json)
        except json.JSONDecodeError:
            result_data = {}
    payload["result"] = result_data
    return payload


def create_app(root: Path | None = None, store: QueueStore | None = None) -> Flask:
    """Application factory for photolessons."""

    paths = get_paths(root)
    settings = load_settings()
    setup_logging(paths.logs_dir, role="serve")
    ensure_storage_dirs(paths)
    queue = store or QueueStore(paths.db_path)

    app = Flask(__name__)
    app.config["PATHS"] = paths
    app.config["QUEUE"] = queue

    @app.route("/uploads/<category>", methods=["POST"])
    def upload(category: str):
        """Store an uploaded photo and queue it."""

        if category not in settings.valid_categories:
            return jsonify({"error": f"Invalid category: {category}"}), 400
        upload_file = request.files.get("file")
        if upload_file is None or not upload_file.filename:
            return jsonify({"error": "No file provided"}), 400
        filename = secure_filename(upload_file.filename)
        if not filename or not is_image(Path(filename)):
            return jsonify({"error": "Only image uploads are accepted"}), 400

        source_ref = store_upload(paths, category, filename, upload_file.read())
        job = enqueue_upload(queue, source_ref, valid_categories=settings.valid_categories)
        logger.info(
            "Upload received",
            extra={
                "event": "upload_received",
                "context": {"source": source_ref, "job_id": job.id if job else None},
            },
        )
        return jsonify({"status": "queued", "job": serialize_job(job)}), 202

    @app.route("/queue")
    def queue_list():
        """Return jobs, optionally filtered by status or type."""

        status = request.args.get("status") or None
        if status and status not in STATUS_FILTERS:
            return jsonify({"error": f"Unknown status: {status}"}), 400
        job_type = request.args.get("type") or None
        if job_type and job_type not in JOB_TYPES:
            return jsonify({"error": f"Unknown job type: {job_type}"}), 400
        jobs = queue.list_jobs(status=status)
        if job_type:
            jobs = [job for job in jobs if job.job_type == job_type]
        return jsonify({"jobs": [serialize_job(job) for job in jobs]})

    @app.route("/queue/counts")
    def queue_counts():
        return jsonify(queue.counts())

    @app.route("/queue/<int:job_id>")
    def job_status(job_id: int):
        """Return JSON status for a queued job."""

        job = queue.get(job_id)
        if not job:
            return jsonify({"error": "Job not found"}), 404
        return jsonify(serialize_job(job))

    @app.route("/queue/clear-completed", methods=["POST"])
    def clear_completed():
        removed = queue.clear_completed()
        logger.info(
            "Completed jobs cleared",
            extra={"event": "jobs_cleared", "context": {"count": removed}},
        )
        return jsonify({"status": "ok", "removed": removed})

    @app.route("/queue/<int:job_id>/retry", methods=["POST"])
    def retry_job(job_id: int):
        """Queue a new attempt for a failed job."""

        try:
            job = retry_failed(queue, paths, job_id)
        except KeyError:
            return jsonify({"error": "Job not found"}), 404
        except ValidationError as exc:
            return jsonify({"error": str(exc)}), 409
        return jsonify({"status": "queued", "job": serialize_job(job)}), 202

    @app.route("/assets/<category>/<filename>/reprocess", methods=["POST"])
    def reprocess_asset(category: str, filename: str):
        """Regenerate content for an already published photo."""

        if category not in settings.valid_categories:
            return jsonify({"error": f"Invalid category: {category}"}), 400
        try:
            job = request_reprocess(queue, paths, category, secure_filename(filename))
        except QueueConflict as exc:
            return jsonify({"error": str(exc)}), 409
        except ValidationError as exc:
            return jsonify({"error": str(exc)}), 404
        return jsonify({"status": "queued", "job": serialize_job(job)}), 202

    return app


if __name__ == "__main__":
    application = create_app()
    application.run(debug=True)
