"""
Buffered moderator digest.

Each new suggestion or report bumps a per-instance counter. The first one
in a quiet period queues a single summary job about a day later; the job
messages the tier list owner with the pending counts and resets the
buffer.
"""

import logging
import os
import random
from datetime import datetime, timedelta, timezone
from typing import Optional

import database
from database import create_document, get_documents, update_document

logger = logging.getLogger(__name__)

SUMMARY_JOB_NAME = "TIER_LIST_SUMMARY_DM"
POST_REPORT_COUNTS_KEY = "post_report_counts"
JOB_SCHEDULED_KEY_PREFIX = "job_scheduled:"

NOTIFICATION_DELAY_MINUTES = int(os.getenv("NOTIFICATION_DELAY_MINUTES", str(24 * 60)))
NOTIFICATION_JITTER_MINUTES = 60
SCHEDULED_FLAG_TTL = timedelta(hours=26)
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "")


def job_flag_key(post_id: str) -> str:
    return f"{JOB_SCHEDULED_KEY_PREFIX}{post_id}"


def send_private_message(to: str, subject: str, text: str) -> str:
    """Queue a private message in the outbox."""
    msg_id = create_document("message", {"to": to, "subject": subject, "text": text, "status": "queued"})
    logger.info("Queued private message %s to %s", msg_id, to)
    return msg_id


def schedule_buffered_notification(post_id: str, now: Optional[datetime] = None):
    """Record new moderator work for post_id and queue the digest if none is pending.

    Errors are logged and swallowed; the submission that triggered the
    call still succeeds.
    """
    now = now or datetime.now(timezone.utc)
    try:
        database.increment_counter(POST_REPORT_COUNTS_KEY, post_id)

        if database.read_blob(job_flag_key(post_id)):
            return

        meta = database.read_blob(f"app:meta:{post_id}")
        author_name = (meta or {}).get("installerUsername")
        if not author_name:
            logger.warning("No owner recorded for %s; digest not scheduled", post_id)
            return

        jitter = random.randrange(NOTIFICATION_JITTER_MINUTES)
        run_at = now + timedelta(minutes=NOTIFICATION_DELAY_MINUTES + jitter)
        create_document("job", {
            "name": SUMMARY_JOB_NAME,
            "data": {"postId": post_id, "authorName": author_name},
            "run_at": database.utc_naive(run_at),
            "status": "pending",
        })

        database.write_blob(job_flag_key(post_id), True, expires_at=now + SCHEDULED_FLAG_TTL)
        logger.info("Scheduled %s for %s at %s", SUMMARY_JOB_NAME, post_id, run_at.isoformat())
    except Exception:
        logger.exception("Failed to schedule notification for %s", post_id)


def clear_buffer(post_id: str):
    database.clear_counter(POST_REPORT_COUNTS_KEY, post_id)
    database.delete_blob(job_flag_key(post_id))


def pending_counts(post_id: str):
    """Return (flagged reports, suggestions awaiting approval)."""
    suggestions = database.read_blob(f"suggestions:{post_id}", [])
    reports = database.read_blob(f"reports:{post_id}", [])
    suggested = sum(1 for s in suggestions if s.get("status") == "pending")
    flagged = sum(1 for r in reports if r.get("status") == "action-needed")
    return flagged, suggested


def send_summary_message(author_name: str, post_id: str, flagged: int, suggested: int):
    meta = database.read_blob(f"app:meta:{post_id}") or {}
    misc = database.read_blob(f"misc:{post_id}") or {}
    community = meta.get("subreddit") or "your community"
    title = misc.get("title") or "Community Tier List"
    url = meta.get("postUrl") or f"{PUBLIC_BASE_URL}/{post_id}"

    subject = f"Action Required: Pending Items in Your Tier List ({community})"
    text = (
        f"There are a few pending actions on your Tier List post in {community}.\n\n"
        f"- **Flagged items pending review:** {flagged}\n"
        f"- **Suggested items awaiting approval:** {suggested}\n\n"
        "You are receiving this message because you are an admin of this Tier List post.\n\n"
        f"**Post link:** [{title}]({url})\n"
    )
    return send_private_message(author_name, subject, text)


def run_summary_job(post_id: str, author_name: str) -> bool:
    """Run one digest job. Returns True when a message was sent."""
    flagged, suggested = pending_counts(post_id)
    sent = False
    if flagged > 0 or suggested > 0:
        try:
            send_summary_message(author_name, post_id, flagged, suggested)
            sent = True
        except Exception:
            logger.exception("Error sending summary to %s", author_name)
    else:
        logger.info("No pending items for %s. Skipping message.", post_id)

    clear_buffer(post_id)
    return sent


def run_due_jobs(now: Optional[datetime] = None) -> int:
    """Execute every pending job whose run time has passed."""
    now = now or datetime.now(timezone.utc)
    ran = 0
    for job in get_documents("job", {"status": "pending", "run_at": {"$lte": database.utc_naive(now)}}):
        data = job.get("data") or {}
        try:
            if job.get("name") == SUMMARY_JOB_NAME:
                run_summary_job(data["postId"], data["authorName"])
            else:
                logger.warning("Unknown job %s; cleaning up", job.get("name"))
                if data.get("postId"):
                    clear_buffer(data["postId"])
            update_document("job", job["_id"], {"status": "done"})
            ran += 1
        except Exception:
            logger.exception("Job %s failed", job.get("_id"))
            update_document("job", job["_id"], {"status": "failed"})
    return ran
