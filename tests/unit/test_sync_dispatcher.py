# =============================================================================
# tests/unit/test_sync_dispatcher.py
# Unit Tests for pushing unsynced answers
# =============================================================================

import threading
from datetime import datetime

from casefile_core.errors import IncorrectFormatError
from casefile_core.models.records import EntityKind
from casefile_core.offline.connection_manager import ConnectionManager
from casefile_core.offline.sync_dispatcher import SyncDispatcher


def add_answers(db, beneficiary_id, count, form_id=10, version=1, first_question=101):
    answers = []
    for offset in range(count):
        question_id = first_question + offset
        record = db.query(EntityKind.QUESTION, {
            "question_id": question_id, "form_id": form_id, "form_version": version,
        })
        record = record[0] if record else db.insert(EntityKind.QUESTION, {
            "question_id": question_id, "form_id": form_id, "form_version": version,
        })
        answers.append(db.insert(EntityKind.ANSWER, {
            "question_record_id": record.id,
            "option_id": question_id * 10,
            "question_id": question_id,
            "beneficiary_id": beneficiary_id,
            "form_id": form_id,
            "form_version": version,
            "synced": False,
            "fill_date": datetime(2024, 5, 2, 14, 0),
        }))
    return answers


class TestSyncConvergence:
    """Test that passes drain unsynced rows"""

    def test_one_pass_syncs_everything(self, dispatcher, local_db, fake_gateway, beneficiary):
        add_answers(local_db, beneficiary.id, 5)

        report = dispatcher.sync_unsynced_data()

        assert report.success
        assert report.answers_synced == 5
        assert local_db.get_pending_count() == 0
        assert len(fake_gateway.pushed) == 1
        assert fake_gateway.pushed[0].to_payload()["answers"][0]["fillDate"] == "2024-05-02T14:00:00"

    def test_failing_gateway_flips_nothing_then_retry_succeeds(
        self, dispatcher, local_db, fake_gateway, beneficiary
    ):
        add_answers(local_db, beneficiary.id, 5)
        fake_gateway.fail_push = True

        failed = dispatcher.sync_unsynced_data()

        assert not failed.success
        assert failed.errors[0].code == "NET_001"
        assert local_db.get_pending_count() == 5

        fake_gateway.fail_push = False
        retried = dispatcher.sync_unsynced_data()

        assert retried.success
        assert local_db.get_pending_count() == 0

    def test_second_pass_resubmits_nothing(self, dispatcher, local_db, fake_gateway, beneficiary):
        add_answers(local_db, beneficiary.id, 3)
        dispatcher.sync_unsynced_data()

        report = dispatcher.sync_unsynced_data()

        assert report.batches_sent == 0
        assert len(fake_gateway.pushed) == 1


class TestBatching:
    """Test batch boundaries"""

    def test_one_batch_per_beneficiary_and_form_version(self, dispatcher, local_db, fake_gateway, beneficiary):
        local_db.insert(EntityKind.BENEFICIARY, {"id": 5, "name": "Ion"})
        add_answers(local_db, 4, 2, form_id=10)
        add_answers(local_db, 4, 1, form_id=11, first_question=301)
        add_answers(local_db, 5, 1, form_id=10)

        dispatcher.sync_unsynced_data()

        keys = sorted((b.beneficiary_id, b.form_id, len(b.answers)) for b in fake_gateway.pushed)
        assert keys == [(4, 10, 2), (4, 11, 1), (5, 10, 1)]

    def test_rejected_batch_does_not_block_others(
        self, dispatcher, local_db, fake_gateway, beneficiary, monkeypatch
    ):
        add_answers(local_db, 4, 1, form_id=10)
        add_answers(local_db, 4, 1, form_id=11, first_question=301)
        original_push = fake_gateway.push_answers

        def reject_form_10(batch):
            if batch.form_id == 10:
                raise IncorrectFormatError("Rejected by server", payload_kind="answers")
            original_push(batch)

        monkeypatch.setattr(fake_gateway, "push_answers", reject_form_10)

        report = dispatcher.sync_unsynced_data()

        assert [key for key, _ in report.failed_batches] == [(4, 10, 1)]
        assert [a.form_id for a in local_db.get_unsynced_answers()] == [10]

    def test_batches_beyond_limit_sync_in_same_call(self, local_db, fake_gateway, beneficiary):
        """A backlog larger than the batch limit drains without another trigger"""
        local_db.insert(EntityKind.BENEFICIARY, {"id": -1, "name": "Not registered yet"})
        add_answers(local_db, -1, 2, form_id=13, first_question=501)
        dispatcher = SyncDispatcher(local_db, fake_gateway, batch_limit=1, sync_interval=3600)
        add_answers(local_db, 4, 1, form_id=10)
        add_answers(local_db, 4, 1, form_id=11, first_question=301)
        add_answers(local_db, 4, 1, form_id=12, first_question=401)

        report = dispatcher.sync_unsynced_data()
        dispatcher.stop()

        assert report.success
        assert report.batches_sent == 3
        assert report.skipped_local_only == 2
        assert sorted(b.form_id for b in fake_gateway.pushed) == [10, 11, 12]
        assert local_db.get_pending_count() == 2

    def test_rejected_batches_beyond_limit_are_tried_once(
        self, local_db, fake_gateway, beneficiary, monkeypatch
    ):
        dispatcher = SyncDispatcher(local_db, fake_gateway, batch_limit=1, sync_interval=3600)
        add_answers(local_db, 4, 1, form_id=10)
        add_answers(local_db, 4, 1, form_id=11, first_question=301)
        add_answers(local_db, 4, 1, form_id=12, first_question=401)
        attempts = []

        def reject_all(batch):
            attempts.append(batch.form_id)
            raise IncorrectFormatError("Rejected by server", payload_kind="answers")

        monkeypatch.setattr(fake_gateway, "push_answers", reject_all)

        report = dispatcher.sync_unsynced_data()
        dispatcher.stop()

        assert sorted(attempts) == [10, 11, 12]
        assert len(report.failed_batches) == 3
        assert local_db.get_pending_count() == 3

    def test_unreachable_remote_ends_call_despite_backlog(self, local_db, fake_gateway, beneficiary):
        dispatcher = SyncDispatcher(local_db, fake_gateway, batch_limit=1, sync_interval=3600)
        add_answers(local_db, 4, 1, form_id=10)
        add_answers(local_db, 4, 1, form_id=11, first_question=301)
        fake_gateway.fail_push = True

        report = dispatcher.sync_unsynced_data()
        dispatcher.stop()

        assert len(report.failed_batches) == 1
        assert report.errors[0].code == "NET_001"
        assert local_db.get_pending_count() == 2

    def test_local_only_beneficiaries_are_held_back(self, dispatcher, local_db, fake_gateway, beneficiary):
        local_db.insert(EntityKind.BENEFICIARY, {"id": -1, "name": "Not registered yet"})
        add_answers(local_db, -1, 2)
        add_answers(local_db, 4, 1)

        report = dispatcher.sync_unsynced_data()

        assert report.skipped_local_only == 2
        assert [b.beneficiary_id for b in fake_gateway.pushed] == [4]
        assert local_db.get_pending_count() == 2


class TestReentrancy:
    """Test concurrent and overlapping passes"""

    def test_rows_replaced_during_push_stay_unsynced(self, dispatcher, local_db, fake_gateway, beneficiary):
        """An edit racing a push produces rows that the push does not mark"""
        (stale,) = add_answers(local_db, beneficiary.id, 1)
        original_push = fake_gateway.push_answers
        replacement = []

        def push_while_user_edits(batch):
            original_push(batch)
            if not replacement:
                local_db.delete(local_db.query(EntityKind.ANSWER, {"id": stale.id}))
                replacement.extend(add_answers(local_db, beneficiary.id, 1))

        fake_gateway.push_answers = push_while_user_edits
        first = dispatcher.sync_unsynced_data()

        assert first.answers_synced == 0
        row = local_db.query(EntityKind.ANSWER, {"id": replacement[0].id})[0]
        assert not row.synced
        assert local_db.get_pending_count() == 1

    def test_concurrent_callers_never_double_submit(self, dispatcher, local_db, fake_gateway, beneficiary):
        add_answers(local_db, beneficiary.id, 4)
        barrier = threading.Barrier(4)

        def call():
            barrier.wait()
            dispatcher.sync_unsynced_data()

        threads = [threading.Thread(target=call) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        pushed_ids = [a.id for batch in fake_gateway.pushed for a in batch.answers]
        assert len(pushed_ids) == len(set(pushed_ids)) == 4
        assert local_db.get_pending_count() == 0

    def test_request_during_pass_triggers_rescan(self, dispatcher, local_db, fake_gateway, beneficiary):
        add_answers(local_db, beneficiary.id, 1)
        original_push = fake_gateway.push_answers
        nested = []

        def push_and_edit(batch):
            original_push(batch)
            if not nested:
                add_answers(local_db, beneficiary.id, 1, first_question=150)
                nested.append(dispatcher.sync_unsynced_data())

        fake_gateway.push_answers = push_and_edit
        report = dispatcher.sync_unsynced_data()

        assert nested[0].deferred
        assert report.answers_synced == 2
        assert local_db.get_pending_count() == 0


class TestBackgroundAndStatus:
    """Test fire-and-forget requests, reconnect trigger and status"""

    def test_request_sync_returns_future(self, dispatcher, local_db, beneficiary):
        add_answers(local_db, beneficiary.id, 2)
        results = []

        future = dispatcher.request_sync(on_complete=lambda report, error: results.append((report, error)))
        report = future.result(timeout=10)

        assert report.answers_synced == 2
        assert results[0][1] is None

    def test_reconnect_triggers_sync(self, local_db, fake_gateway, beneficiary):
        manager = ConnectionManager()
        manager.force_offline()
        dispatcher = SyncDispatcher(local_db, fake_gateway, connection_manager=manager)
        add_answers(local_db, beneficiary.id, 1)

        manager.force_online()
        dispatcher.stop()

        assert local_db.get_pending_count() == 0

    def test_status_display(self, dispatcher, local_db, beneficiary):
        add_answers(local_db, beneficiary.id, 3)
        assert dispatcher.get_status_display()["pending_count"] == 3

        dispatcher.sync_unsynced_data()
        status = dispatcher.get_status_display()

        assert status["pending_count"] == 0
        assert status["total_synced"] == 3
        assert status["last_success"] is not None
        assert not status["is_syncing"]
