"""
Unit tests for videobatch/services/batch_intake.py

Runs the intake pipeline against SQLite and the in-memory ledger.
"""

import uuid
from unittest.mock import MagicMock, patch

import pytest

from videobatch.core.messaging import DispatchError
from videobatch.models import (
    BatchJob,
    BatchSource,
    BatchStatus,
    EnterpriseApiUsage,
    TaskStatus,
    VideoTask,
)
from videobatch.services import batch_intake
from videobatch.services.batch_intake import submit_consumer_batch, submit_enterprise_batch
from videobatch.services.credits import InsufficientCreditsError, LedgerError
from videobatch.services.dispatch import PullWorkerDispatcher, QueueDispatcher
from videobatch.services.exceptions import (
    BALANCE_CHECK_FAILED,
    CREDIT_FREEZE_FAILED,
    IDEMPOTENCY_CONFLICT_NO_BATCH,
    INSUFFICIENT_CREDITS,
    TASKS_INSERT_FAILED,
    BatchError,
)

BUCKET = "2026-03-04T12:34:00.000Z"
ENDPOINT = "/api/enterprise/video-batch"


def _consumer(db, ledger, user_id, prompts=None, model="sora-2", dispatcher=None):
    return submit_consumer_batch(
        db,
        ledger,
        dispatcher or PullWorkerDispatcher(),
        user_id=user_id,
        prompts=prompts or ["A cat riding a bike in the park", "A sunset over mountains"],
        model=model,
        aspect_ratio="16:9",
        duration=5,
    )


def _enterprise(db, ledger, api_key, items=None, request_id="req-1"):
    return submit_enterprise_batch(
        db,
        ledger,
        PullWorkerDispatcher(),
        api_key=api_key,
        items=items or [batch_intake.BatchItem(prompt="Shot one"), batch_intake.BatchItem(prompt="Shot two")],
        request_id=request_id,
        bucket=BUCKET,
        endpoint=ENDPOINT,
    )


def _counts(db):
    return db.query(BatchJob).count(), db.query(VideoTask).count()


class TestConsumerIntake:
    """Tests for the consumer submission pipeline."""

    @pytest.mark.unit
    def test_two_prompts_with_100_credits(self, db_session, ledger, user_id):
        """Two sora-2 prompts should freeze 20 of 100 credits."""
        result = _consumer(db_session, ledger, user_id)

        assert result["ok"] is True
        assert result["total_count"] == 2
        assert result["cost_per_video"] == 10
        assert result["credits_frozen"] == 20
        assert result["credits_remaining"] == 80

        batch = db_session.get(BatchJob, uuid.UUID(result["batch_id"]))
        assert batch.status == BatchStatus.QUEUED
        assert batch.source == BatchSource.CONSUMER
        assert batch.frozen_credits == 20
        assert [(t.batch_index, t.status) for t in batch.tasks] == [
            (0, TaskStatus.PENDING),
            (1, TaskStatus.PENDING),
        ]
        assert ledger.balances[user_id] == 80
        assert ledger.holds[batch.id] == 20

    @pytest.mark.unit
    def test_task_order_matches_input(self, db_session, ledger, user_id):
        """batch_index should follow the order prompts were submitted in."""
        prompts = [f"Prompt number {i}" for i in range(7)]
        result = _consumer(db_session, ledger, user_id, prompts=prompts)

        batch = db_session.get(BatchJob, uuid.UUID(result["batch_id"]))
        assert [t.prompt for t in batch.tasks] == prompts
        assert [t.batch_index for t in batch.tasks] == list(range(7))

    @pytest.mark.unit
    def test_insufficient_balance_creates_nothing(self, db_session, ledger, user_id):
        """With 15 credits a 20 credit batch should be rejected before any write."""
        ledger.balances[user_id] = 15

        with pytest.raises(BatchError) as exc_info:
            _consumer(db_session, ledger, user_id)

        assert exc_info.value.code == INSUFFICIENT_CREDITS
        assert exc_info.value.status_code == 402
        assert exc_info.value.extra == {"required": 20, "available": 15}
        assert _counts(db_session) == (0, 0)
        assert ledger.balances[user_id] == 15

    @pytest.mark.unit
    def test_freeze_race_rolls_back(self, db_session, ledger, user_id):
        """A freeze rejected after a passing pre-check should delete batch and tasks."""
        ledger.freeze_error = InsufficientCreditsError(20, 5)

        with pytest.raises(BatchError) as exc_info:
            _consumer(db_session, ledger, user_id)

        assert exc_info.value.code == INSUFFICIENT_CREDITS
        assert exc_info.value.extra == {"required": 20, "available": 5}
        assert _counts(db_session) == (0, 0)

    @pytest.mark.unit
    def test_freeze_failure_rolls_back(self, db_session, ledger, user_id):
        """A ledger failure during freeze should delete batch and tasks."""
        ledger.freeze_error = LedgerError("rpc down")

        with pytest.raises(BatchError) as exc_info:
            _consumer(db_session, ledger, user_id)

        assert exc_info.value.code == CREDIT_FREEZE_FAILED
        assert exc_info.value.status_code == 500
        assert _counts(db_session) == (0, 0)
        assert ledger.balances[user_id] == 100

    @pytest.mark.unit
    def test_task_insert_failure_rolls_back(self, db_session, ledger, user_id):
        """A failed task insert should delete the batch and never touch credits."""
        real_build = batch_intake._build_tasks

        def duplicate_indexes(batch, items):
            tasks = real_build(batch, items)
            for task in tasks:
                task.batch_index = 0
            return tasks

        with patch("videobatch.services.batch_intake._build_tasks", side_effect=duplicate_indexes):
            with pytest.raises(BatchError) as exc_info:
                _consumer(db_session, ledger, user_id)

        assert exc_info.value.code == TASKS_INSERT_FAILED
        assert _counts(db_session) == (0, 0)
        assert ledger.holds == {}
        assert ledger.balances[user_id] == 100

    @pytest.mark.unit
    def test_balance_check_failure(self, db_session, ledger, user_id):
        """A failing balance read should be BALANCE_CHECK_FAILED."""
        ledger.check_error = LedgerError("timeout")

        with pytest.raises(BatchError) as exc_info:
            _consumer(db_session, ledger, user_id)

        assert exc_info.value.code == BALANCE_CHECK_FAILED
        assert _counts(db_session) == (0, 0)

    @pytest.mark.unit
    def test_dispatch_failure_does_not_fail_request(self, db_session, ledger, user_id):
        """A broken queue should not fail the submission."""
        publisher = MagicMock()
        publisher.publish_batch_job.side_effect = DispatchError("down")

        result = _consumer(db_session, ledger, user_id, dispatcher=QueueDispatcher(publisher))

        assert result["ok"] is True
        batch = db_session.get(BatchJob, uuid.UUID(result["batch_id"]))
        assert batch.enqueued_at is None

    @pytest.mark.unit
    def test_usage_recorded_per_model(self, db_session, ledger, user_id):
        """Daily usage should be recorded for the batch's model."""
        _consumer(db_session, ledger, user_id)
        assert ledger.usage == [(user_id, "sora-2", 2)]


class TestEnterpriseIntake:
    """Tests for the enterprise submission pipeline."""

    @pytest.mark.unit
    def test_success_links_usage_row(self, db_session, ledger, api_key):
        """A new request should create a batch and link it to the usage row."""
        result = _enterprise(db_session, ledger, api_key)

        assert result["ok"] is True
        assert result["required_credits"] == 20
        assert result["available_credits"] == 100
        assert result["status"] == "queued"
        assert result["enqueue"] == "pull-worker"
        assert result["enqueue_mode"] == "pull-worker"

        usage = db_session.query(EnterpriseApiUsage).one()
        assert str(usage.batch_job_id) == result["batch_id"]
        batch = db_session.get(BatchJob, usage.batch_job_id)
        assert batch.source == BatchSource.ENTERPRISE
        assert batch.request_id == "req-1"

    @pytest.mark.unit
    def test_replay_returns_same_batch(self, db_session, ledger, api_key):
        """A repeated request id should return the first batch without charging again."""
        first = _enterprise(db_session, ledger, api_key)
        second = _enterprise(db_session, ledger, api_key)

        assert second["batch_id"] == first["batch_id"]
        assert second["idempotent_replay"] is True
        assert second["enqueue"] == "skipped_idempotent"
        assert _counts(db_session) == (1, 2)
        assert ledger.balances[api_key.user_id] == 80

    @pytest.mark.unit
    def test_replay_before_link_is_conflict(self, db_session, ledger, api_key):
        """A usage row without a batch yet should answer 409."""
        db_session.add(
            EnterpriseApiUsage(
                api_key_id=api_key.id, endpoint=ENDPOINT, request_id="req-1", minute_bucket=BUCKET
            )
        )
        db_session.commit()

        with pytest.raises(BatchError) as exc_info:
            _enterprise(db_session, ledger, api_key)

        assert exc_info.value.code == IDEMPOTENCY_CONFLICT_NO_BATCH
        assert exc_info.value.status_code == 409

    @pytest.mark.unit
    def test_failed_freeze_releases_request_id(self, db_session, ledger, api_key):
        """After a rolled back submission the same request id should be usable again."""
        ledger.freeze_error = LedgerError("rpc down")
        with pytest.raises(BatchError):
            _enterprise(db_session, ledger, api_key)
        assert db_session.query(EnterpriseApiUsage).count() == 0

        ledger.freeze_error = None
        result = _enterprise(db_session, ledger, api_key)
        assert "idempotent_replay" not in result

    @pytest.mark.unit
    def test_key_price_overrides_default(self, db_session, ledger, api_key):
        """A key's own cost_per_video should replace the configured rate."""
        api_key.cost_per_video = 25
        db_session.commit()

        result = _enterprise(db_session, ledger, api_key)

        assert result["cost_per_video"] == 25
        assert result["required_credits"] == 50

    @pytest.mark.unit
    def test_insufficient_credits_leaves_no_usage(self, db_session, ledger, api_key):
        """A 402 should not consume the request id or create rows."""
        ledger.balances[api_key.user_id] = 15

        with pytest.raises(BatchError) as exc_info:
            _enterprise(db_session, ledger, api_key)

        assert exc_info.value.status_code == 402
        assert db_session.query(EnterpriseApiUsage).count() == 0
        assert _counts(db_session) == (0, 0)
