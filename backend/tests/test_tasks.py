"""Background task tests: notification worker, cleanup and renewal reminders"""
import asyncio
import time
import pytest
from datetime import timedelta
from unittest.mock import patch

from app.db.helpers import utc_now
from app.db.task_queue import (
    enqueue_task, pop_task_nowait, get_task_status, queue_length, delayed_count, promote_due_retries,
    NOTIFICATION_TASK, CLAIM_TOKEN_TASK
)
from app.models.claim_token import AccountClaimToken
from app.models.membership import Membership
from app.models.notification import Notification
from app.models.stripe_event import StripeEvent
from app.models.user import User
from app.services.buyer_service import resolve_buyer, issue_claim_token
from app.tasks.cleanup import run_cleanup
from app.tasks.notification_worker import run_task, process_task, spawn_task, _running_tasks
from app.tasks.renewal_reminder import queue_renewal_reminders


def _notification_task(user_id, dedup_key="creator_sale:order:1"):
    return {
        "task_id": "t1",
        "task_type": NOTIFICATION_TASK,
        "payload": {"user_id": user_id, "type": "creator_sale", "title": "New sale", "dedup_key": dedup_key},
    }


@pytest.mark.high
class TestRunTask:

    def test_notification_delivered_once(self, db_session, test_user):
        assert run_task(_notification_task(test_user.id), db_session) == {"delivered": True}
        assert run_task(_notification_task(test_user.id), db_session) == {"delivered": False}
        assert db_session.query(Notification).count() == 1

    def test_distinct_keys_both_delivered(self, db_session, test_user):
        run_task(_notification_task(test_user.id, "creator_sale:order:1"), db_session)
        run_task(_notification_task(test_user.id, "creator_sale:order:2"), db_session)
        assert db_session.query(Notification).count() == 2

    def test_missing_user_rejected(self, db_session):
        with pytest.raises(ValueError):
            run_task({"task_type": NOTIFICATION_TASK, "payload": {}}, db_session)

    def test_unknown_task_type_rejected(self, db_session):
        with pytest.raises(ValueError, match="Unknown task type"):
            run_task({"task_type": "refund_sync", "payload": {"user_id": 1}}, db_session)

    def test_claim_task_issues_token(self, db_session):
        ghost_id = resolve_buyer(db_session, email="guest@resend.dev")
        task = pop_task_nowait(CLAIM_TOKEN_TASK)

        run_task(task, db_session)

        assert db_session.query(AccountClaimToken).filter(AccountClaimToken.user_id == ghost_id).count() == 1


@pytest.mark.medium
class TestProcessTask:

    def test_validation_error_fails_without_retry(self, db_session):
        task_id = enqueue_task(NOTIFICATION_TASK, {"type": "creator_sale"})
        task = pop_task_nowait(NOTIFICATION_TASK)

        with patch("app.tasks.notification_worker.SessionLocal", return_value=db_session):
            asyncio.run(process_task(task))

        assert get_task_status(task_id)["status"] == "failed"
        assert queue_length(NOTIFICATION_TASK) == 0

    def test_unexpected_error_is_retried(self, db_session, test_user):
        task_id = enqueue_task(NOTIFICATION_TASK, {"user_id": test_user.id, "type": "creator_sale"})
        task = pop_task_nowait(NOTIFICATION_TASK)

        with patch("app.tasks.notification_worker.SessionLocal", return_value=db_session), \
                patch("app.tasks.notification_worker.deliver_notification", side_effect=RuntimeError("db down")):
            asyncio.run(process_task(task))

        assert get_task_status(task_id)["status"] == "retrying"
        assert queue_length(NOTIFICATION_TASK) == 0
        assert delayed_count() == 1

        # Backoff for the first retry is two seconds
        assert promote_due_retries(now=time.time()) == 0
        assert promote_due_retries(now=time.time() + 3) == 1
        retry = pop_task_nowait(NOTIFICATION_TASK)
        assert retry["retry_count"] == 1
        assert retry["payload"]["user_id"] == test_user.id

    def test_unknown_type_is_not_queued(self):
        with pytest.raises(ValueError, match="Unknown task type"):
            enqueue_task("refund_sync", {"user_id": 1})

    def test_success_marks_completed(self, db_session, test_user):
        task_id = enqueue_task(NOTIFICATION_TASK, {"user_id": test_user.id, "type": "creator_sale"})
        task = pop_task_nowait(NOTIFICATION_TASK)

        with patch("app.tasks.notification_worker.SessionLocal", return_value=db_session):
            asyncio.run(process_task(task))

        assert get_task_status(task_id)["status"] == "completed"

    def test_spawned_task_is_tracked_until_done(self, db_session, test_user):
        task_id = enqueue_task(NOTIFICATION_TASK, {"user_id": test_user.id, "type": "creator_sale"})
        task = pop_task_nowait(NOTIFICATION_TASK)

        async def spawn_and_wait():
            running = spawn_task(task)
            assert running in _running_tasks
            await running
            # Done callbacks run on the next loop iteration
            await asyncio.sleep(0)
            return running

        with patch("app.tasks.notification_worker.SessionLocal", return_value=db_session):
            running = asyncio.run(spawn_and_wait())

        assert running not in _running_tasks
        assert get_task_status(task_id)["status"] == "completed"


@pytest.mark.medium
class TestCleanup:

    def test_removes_old_ledger_rows_and_expired_tokens(self, db_session):
        db_session.add(StripeEvent(stripe_event_id="evt_old", event_type="x", created_at=utc_now() - timedelta(days=400)))
        db_session.add(StripeEvent(stripe_event_id="evt_new", event_type="x", created_at=utc_now()))
        ghost_id = resolve_buyer(db_session, email="guest@resend.dev")
        issue_claim_token(db_session, ghost_id)
        token = db_session.query(AccountClaimToken).one()
        token.expires_at = utc_now() - timedelta(days=1)
        db_session.commit()

        removed = run_cleanup(db_session)

        assert removed == {"stripe_events": 1, "account_claim_tokens": 1}
        assert db_session.query(StripeEvent).count() == 1
        # Ghost accounts are kept so a later purchase can still find them
        assert db_session.query(User).filter(User.id == ghost_id).count() == 1


@pytest.mark.medium
class TestRenewalReminders:

    def _membership(self, db_session, buyer, product, days_left, **overrides):
        values = dict(
            buyer_id=buyer.id,
            creator_id=product.creator_id,
            product_id=product.id,
            status="active",
            cancel_at_period_end=False,
            current_period_end=utc_now() + timedelta(days=days_left),
        )
        values.update(overrides)
        membership = Membership(**values)
        db_session.add(membership)
        db_session.commit()
        return membership

    def test_reminds_once_per_period(self, db_session, test_user, membership_product, run_queued_tasks):
        self._membership(db_session, test_user, membership_product, days_left=2)

        assert queue_renewal_reminders(db_session) == 1
        run_queued_tasks()
        assert queue_renewal_reminders(db_session) == 0

        reminders = db_session.query(Notification).filter(Notification.type == "membership_renewal").count()
        assert reminders == 1

    def test_skips_far_and_canceling_memberships(self, db_session, test_user, test_user_2, membership_product):
        self._membership(db_session, test_user, membership_product, days_left=20)
        self._membership(db_session, test_user_2, membership_product, days_left=1, cancel_at_period_end=True)

        assert queue_renewal_reminders(db_session) == 0
