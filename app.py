import os
import logging
import secrets
from flask import Flask, request, jsonify
from pydantic import ValidationError
from dispatcher.config import SANDBOX_TOKEN
from dispatcher.exception import (
    DuplicatedSubmissionIdError,
    QueueError,
    QueueFullError,
)
from dispatcher.factory import build_dispatcher
from dispatcher.meta import JudgeJob

logging.basicConfig(level=logging.INFO)
app = Flask(__name__)
if __name__ != "__main__":
    # let flask app use gunicorn's logger
    gunicorn_logger = logging.getLogger("gunicorn.error")
    if gunicorn_logger.handlers:
        app.logger.handlers = gunicorn_logger.handlers
        app.logger.setLevel(gunicorn_logger.level)
        logging.getLogger().setLevel(gunicorn_logger.level)

# Allow overriding log level via environment variable
if os.getenv("NOJ_DEBUG", "").lower() == "true":
    app.logger.setLevel(logging.DEBUG)
    logging.getLogger().setLevel(logging.DEBUG)
logger = app.logger

# setup dispatcher
DISPATCHER_CONFIG = os.getenv(
    "DISPATCHER_CONFIG",
    ".config/dispatcher.json",
)
DISPATCHER = build_dispatcher(DISPATCHER_CONFIG)
DISPATCHER.start()


def _err(msg: str, code: int):
    return jsonify({
        "status": "err",
        "message": msg,
        "data": None,
    }), code


def _token_ok(token: str) -> bool:
    return secrets.compare_digest(token, SANDBOX_TOKEN)


@app.post("/submit/<int:submission_id>")
def submit(submission_id: int):
    payload = request.get_json(silent=True) or {}
    token = request.args.get("token", payload.pop("token", ""))
    if not _token_ok(token):
        logger.debug(f"get invalid token: {token}")
        return "invalid token", 403
    payload["submission_id"] = submission_id
    try:
        job = JudgeJob.model_validate(payload)
    except ValidationError as e:
        return _err(str(e), 400)
    if DISPATCHER.worker.submissions.get(submission_id) is None:
        return _err(f"submission {submission_id} not found", 404)
    logger.debug(f"send submission {submission_id} to dispatcher")
    try:
        DISPATCHER.handle(job)
    except DuplicatedSubmissionIdError as e:
        return _err(str(e), 409)
    except QueueFullError:
        return _err(
            "task queue is full now.\n"
            "please wait a moment and re-send the submission.",
            500,
        )
    except QueueError as e:
        return _err(str(e), 503)
    return jsonify({
        "status": "ok",
        "msg": "ok",
        "data": "ok",
    })


@app.get("/submission/<int:submission_id>")
def submission_status(submission_id: int):
    submission = DISPATCHER.worker.submissions.get(submission_id)
    if submission is None:
        return _err(f"submission {submission_id} not found", 404)
    return jsonify({
        "submissionId": submission.id,
        "status": submission.status,
        "verdict": submission.verdict,
        "execTime": submission.execution_time,
        "memoryUsage": submission.memory_used,
        "score": submission.score,
        "testsPassed": submission.test_cases_passed,
        "testsTotal": submission.total_test_cases,
        "errorMessage": submission.error_message,
        "judgedAt": submission.judged_at.isoformat()
        if submission.judged_at else None,
    })


@app.get("/contest/<int:contest_id>/leaderboard")
def leaderboard(contest_id: int):
    standings = DISPATCHER.sink.scorer.leaderboard(contest_id)
    return jsonify([{
        "rank": s.rank,
        "userId": s.user_id,
        "score": s.score,
        "penalty": s.penalty,
    } for s in standings])


@app.get("/status")
def status():
    info = DISPATCHER.status()
    capacity = DISPATCHER.MAX_TASK_COUNT or DISPATCHER.MAX_WORKER_COUNT
    ret = {
        "load": info["queueSize"] / capacity,
    }
    # if token is provided
    if _token_ok(request.args.get("token", "")):
        ret.update(info)
    return jsonify(ret), 200


# for local debug
# if __name__ == "__main__":
#     app.run(host="0.0.0.0", port=5000, debug=True)
