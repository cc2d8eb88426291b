"""
Tests for the buffered moderator digest.
"""

from datetime import datetime, timedelta, timezone

import pytest

import database
import main
import notifications

POST_ID = "post-1"
NOW = datetime.now(timezone.utc).replace(microsecond=0)


@pytest.fixture
def instance(mongo):
    database.write_blob(f"app:meta:{POST_ID}", {
        "appId": POST_ID,
        "installerId": "id-alice",
        "installerUsername": "alice",
        "subreddit": "movies",
        "createdAt": "2026-05-01T00:00:00.000Z",
    })
    database.write_blob(f"misc:{POST_ID}", {"title": "Best Movies"})
    return POST_ID


def jobs(mongo):
    return list(mongo["job"].find({"name": notifications.SUMMARY_JOB_NAME}))


class TestScheduling:

    def test_first_submission_queues_one_job(self, mongo, instance):
        notifications.schedule_buffered_notification(instance, now=NOW)

        [job] = jobs(mongo)
        assert job["data"] == {"postId": instance, "authorName": "alice"}
        assert job["status"] == "pending"

        earliest = NOW + timedelta(minutes=notifications.NOTIFICATION_DELAY_MINUTES)
        latest = earliest + timedelta(minutes=notifications.NOTIFICATION_JITTER_MINUTES)
        run_at = job["run_at"].replace(tzinfo=timezone.utc)
        assert earliest <= run_at < latest

        assert database.read_blob(notifications.job_flag_key(instance)) is True
        assert database.read_counter(notifications.POST_REPORT_COUNTS_KEY, instance) == 1

    def test_later_submissions_only_count(self, mongo, instance):
        for _ in range(3):
            notifications.schedule_buffered_notification(instance, now=NOW)

        assert len(jobs(mongo)) == 1
        assert database.read_counter(notifications.POST_REPORT_COUNTS_KEY, instance) == 3

    def test_expired_flag_allows_a_new_job(self, mongo, instance):
        database.write_blob(
            notifications.job_flag_key(instance), True,
            expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
        )
        notifications.schedule_buffered_notification(instance, now=NOW)
        assert len(jobs(mongo)) == 1

    def test_unknown_owner_is_skipped(self, mongo):
        notifications.schedule_buffered_notification("orphan", now=NOW)
        assert jobs(mongo) == []
        assert database.read_blob(notifications.job_flag_key("orphan")) is None

    def test_errors_do_not_propagate(self, monkeypatch):
        monkeypatch.setattr(database, "db", None)
        notifications.schedule_buffered_notification(POST_ID, now=NOW)


class TestSummaryJob:

    def test_sends_counts_and_clears_buffer(self, mongo, instance):
        database.write_blob(f"suggestions:{instance}", [
            {"id": "s1", "status": "pending"},
            {"id": "s2", "status": "approved"},
            {"id": "s3", "status": "pending"},
        ])
        database.write_blob(f"reports:{instance}", [{"id": "r1", "status": "action-needed"}])
        notifications.schedule_buffered_notification(instance, now=NOW)

        assert notifications.run_summary_job(instance, "alice") is True

        [message] = list(mongo["message"].find())
        assert message["to"] == "alice"
        assert "(movies)" in message["subject"]
        assert "**Flagged items pending review:** 1" in message["text"]
        assert "**Suggested items awaiting approval:** 2" in message["text"]
        assert "[Best Movies]" in message["text"]

        assert database.read_counter(notifications.POST_REPORT_COUNTS_KEY, instance) == 0
        assert database.read_blob(notifications.job_flag_key(instance)) is None

    def test_nothing_pending_sends_nothing(self, mongo, instance):
        notifications.schedule_buffered_notification(instance, now=NOW)

        assert notifications.run_summary_job(instance, "alice") is False
        assert mongo["message"].count_documents({}) == 0
        assert database.read_blob(notifications.job_flag_key(instance)) is None


class TestRunDueJobs:

    def test_runs_only_due_jobs(self, mongo, instance):
        database.write_blob(f"reports:{instance}", [{"id": "r1", "status": "action-needed"}])
        notifications.schedule_buffered_notification(instance, now=NOW)

        assert notifications.run_due_jobs(now=NOW) == 0
        assert jobs(mongo)[0]["status"] == "pending"

        later = NOW + timedelta(days=2)
        assert notifications.run_due_jobs(now=later) == 1
        assert jobs(mongo)[0]["status"] == "done"
        assert mongo["message"].count_documents({"to": "alice"}) == 1

        assert notifications.run_due_jobs(now=later) == 0

    def test_unknown_job_clears_buffer(self, mongo, instance):
        notifications.schedule_buffered_notification(instance, now=NOW)
        database.create_document("job", {
            "name": "SEND_SUMMARY_DM",
            "data": {"postId": instance},
            "run_at": database.utc_naive(NOW),
            "status": "pending",
        })

        assert notifications.run_due_jobs(now=NOW) == 1
        assert database.read_blob(notifications.job_flag_key(instance)) is None

    def test_broken_job_is_marked_failed(self, mongo):
        database.create_document("job", {
            "name": notifications.SUMMARY_JOB_NAME,
            "data": {},
            "run_at": database.utc_naive(NOW),
            "status": "pending",
        })

        assert notifications.run_due_jobs(now=NOW) == 0
        [job] = list(mongo["job"].find())
        assert job["status"] == "failed"


class TestSchedulerEndpoints:

    def test_summary_endpoint(self, client, mongo, instance, scheduler):
        database.write_blob(f"suggestions:{instance}", [{"id": "s1", "status": "pending"}])

        response = client.post(
            "/internal/scheduler/tier-list-summary-dm",
            json={"data": {"postId": instance, "authorName": "alice"}},
            headers=scheduler,
        )
        assert response.json() == {"status": "ok", "sent": True}

    def test_summary_endpoint_requires_payload(self, client, scheduler):
        response = client.post("/internal/scheduler/tier-list-summary-dm", json={"postId": "x"}, headers=scheduler)
        assert response.status_code == 400

    @pytest.mark.parametrize("path", ["tier-list-summary-dm", "send-summary-dm", "run-due"])
    def test_callbacks_require_scheduler_token(self, client, mongo, instance, scheduler, path):
        notifications.schedule_buffered_notification(instance, now=NOW)
        database.write_blob(f"suggestions:{instance}", [{"id": "s1", "status": "pending"}])
        body = {"data": {"postId": instance, "authorName": "mallory"}}

        anonymous = client.post(f"/internal/scheduler/{path}", json=body)
        assert anonymous.status_code == 401
        assert anonymous.json()["status"] == "error"

        wrong = client.post(f"/internal/scheduler/{path}", json=body, headers={"X-Scheduler-Token": "guess"})
        assert wrong.status_code == 401

        assert mongo["message"].count_documents({}) == 0
        assert database.read_blob(notifications.job_flag_key(instance)) is True

    def test_unconfigured_token_rejects_everyone(self, client, monkeypatch):
        monkeypatch.setattr(main, "SCHEDULER_TOKEN", "")
        response = client.post("/internal/scheduler/run-due", headers={"X-Scheduler-Token": ""})
        assert response.status_code == 401

    def test_orphaned_job_cleans_up(self, client, mongo, instance, scheduler):
        notifications.schedule_buffered_notification(instance, now=NOW)
        response = client.post("/internal/scheduler/send-summary-dm", json={"postId": instance}, headers=scheduler)
        assert response.json() == {"status": "ok"}
        assert database.read_blob(notifications.job_flag_key(instance)) is None

    def test_submissions_schedule_digest(self, client, app_id, owner, voter, mongo, scheduler):
        client.post(f"/api/misc/{app_id}", json={"autoApproveSuggestions": False}, headers=owner)
        client.post(
            f"/api/suggestions/{app_id}",
            json={"name": "Heat", "imageUrl": "https://img.example/heat.png"},
            headers=voter,
        )

        assert len(jobs(mongo)) == 1
        assert client.post("/internal/scheduler/run-due", headers=scheduler).json() == {"status": "ok", "ran": 0}
