"""
Intake API: a thin Flask layer over the job store.

Endpoints:
    POST /api/create-job                 queue a job (images already on disk)
    GET  /api/job-status/<owner_id>      status of the owner's latest job
    POST /api/stop-job/<job_id>          cancel a queued/running job
    POST /api/fetch-displays             list displays for portal credentials
    POST /api/fetch-display-details      preview image URL of one display
    GET  /health

create-job body (image paths must lie inside upload_dir):
    {"userId": "...", "portalUser": "...", "portalPass": "...",
     "displayValue": "...", "interval": 0, "cycle": false,
     "images": [{"path": "...", "name": "..."}, ...]}
"""

import logging
import time

from flask import Flask, jsonify, request as flask_request

from displaypush.notifier import NullNotifier
from displaypush.portal import fetch_display_preview, fetch_displays

logger = logging.getLogger("displaypush")


def create_app(store, config: dict, notifier=None) -> Flask:
    app = Flask(__name__)
    notifier = notifier or NullNotifier()
    started = time.time()

    # Request logging is done by the handlers themselves
    logging.getLogger("werkzeug").setLevel(logging.WARNING)

    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({"status": "ok", "uptime": int(time.time() - started)})

    @app.route("/api/create-job", methods=["POST"])
    def create_job():
        body = flask_request.get_json(silent=True) or {}
        owner_id = body.get("userId")
        username = body.get("portalUser")
        password = body.get("portalPass")
        display = body.get("displayValue")
        images = body.get("images") or []

        if not owner_id or not username or not password or not display or not images:
            return jsonify({"message": "Missing required fields."}), 400

        try:
            job_id = store.create_job(
                owner_id,
                {"username": username, "password": password},
                images,
                {"interval_minutes": body.get("interval", 0), "cycle": body.get("cycle", False), "display": display},
                upload_dir=config["upload_dir"],
            )
        except ValueError as e:
            return jsonify({"message": str(e)}), 400
        except Exception as e:
            logger.error(f"Error creating job: {e}")
            return jsonify({"message": "Failed to create job."}), 500

        notifier.job_created(job_id, owner_id, len(images))
        return jsonify({"message": "Automation job created successfully.", "jobId": job_id}), 201

    @app.route("/api/job-status/<owner_id>", methods=["GET"])
    def job_status(owner_id):
        job = store.latest_for_owner(owner_id)
        if job is None:
            return jsonify({"message": "No job found for this user."}), 404
        return jsonify(job.status_view())

    @app.route("/api/stop-job/<int:job_id>", methods=["POST"])
    def stop_job(job_id):
        try:
            cancelled = store.cancel_job(job_id)
        except Exception as e:
            logger.error(f"Error stopping job {job_id}: {e}")
            return jsonify({"message": "Failed to stop job."}), 500
        if not cancelled:
            return jsonify({"message": "Job not found or already completed/failed."}), 404
        return jsonify({"message": "Job cancellation request sent successfully."})

    @app.route("/api/fetch-displays", methods=["POST"])
    def displays():
        body = flask_request.get_json(silent=True) or {}
        username, password = body.get("username"), body.get("password")
        if not username or not password:
            return jsonify({"message": "Username and password are required."}), 400
        try:
            return jsonify(fetch_displays(config, username, password))
        except Exception as e:
            logger.error(f"Error fetching displays: {e}")
            return jsonify({"message": "Failed to fetch displays. Please check credentials."}), 500

    @app.route("/api/fetch-display-details", methods=["POST"])
    def display_details():
        body = flask_request.get_json(silent=True) or {}
        username, password = body.get("username"), body.get("password")
        display = body.get("displayValue")
        if not username or not password or not display:
            return jsonify({"message": "Missing required fields."}), 400
        try:
            image_url = fetch_display_preview(config, username, password, display)
        except Exception as e:
            logger.error(f"Error fetching display details: {e}")
            return jsonify({"message": "Failed to fetch display details."}), 500
        return jsonify({"imageUrl": image_url})

    return app
