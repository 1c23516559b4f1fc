import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from sqlalchemy import func, select, update

from slotlottery import workflows
from slotlottery.db.engine import get_sessionmaker, make_engine
from slotlottery.lottery.automation import auto_select_overdue
from slotlottery.lottery.engine import SelectionEngine
from slotlottery.lottery.errors import PersistenceError
from slotlottery.lottery.types import WeightConfig
from slotlottery.lottery.weights import WeightMethod, WeightMethodRegistry
from slotlottery.models import Base, Event, LotteryEntry, LotterySession, SelectionRecord, User
from slotlottery.notifications import NotificationDispatcher

T0 = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)
AFTER_DEADLINE = T0 + timedelta(days=11)


def _completes_after_read(original):
    """Wrap ``SelectionEngine.entries_for`` so the session is completed right
    after its entries are read, as a concurrent writer would."""

    def entries_for(engine, lottery_session_id):
        entries = original(engine, lottery_session_id)
        engine._session.execute(
            update(LotterySession)
            .where(
                LotterySession.id == lottery_session_id,
                LotterySession.status != "completed",
            )
            .values(status="completed", completed_at=T0)
            .execution_options(synchronize_session=False)
        )
        return entries

    return entries_for


class RecordingNotifier(NotificationDispatcher):
    def __init__(self):
        self.calls = []

    def notify(self, target_user_id, template_type, payload):
        self.calls.append((target_user_id, template_type, dict(payload)))


class ExplodingNotifier(NotificationDispatcher):
    def notify(self, target_user_id, template_type, payload):
        raise RuntimeError("notification service unavailable")


class SweepTestCase(unittest.TestCase):
    def setUp(self):
        self.engine = make_engine("sqlite+pysqlite:///:memory:")
        Base.metadata.create_all(self.engine)
        self.Session = get_sessionmaker(self.engine)
        self.notifier = RecordingNotifier()
        self.sleeps = []
        with self.Session.begin() as session:
            self.organizer = User(in_app_id="organizer")
            self.rival = User(in_app_id="rival-organizer")
            self.fans = [User(in_app_id=f"fan-{i}") for i in range(3)]
            session.add_all([self.organizer, self.rival, *self.fans])
            session.flush()
            self.organizer_id = self.organizer.id
            self.rival_id = self.rival.id
            self.fan_ids = [fan.id for fan in self.fans]

    def tearDown(self):
        self.engine.dispose()

    def _lottery(self, title, *, owner_id=None, max_winners=1, weight_config=None,
                 deadline=T0 + timedelta(days=10)):
        owner_id = owner_id or self.organizer_id
        with self.Session.begin() as session:
            event = Event(title=title, organizer_id=owner_id)
            session.add(event)
            session.flush()
            created = workflows.create_lottery_session(
                session,
                owner_id,
                event.id,
                entry_start=T0,
                entry_end=T0 + timedelta(days=7),
                selection_deadline=deadline,
                max_winners=max_winners,
                weight_config=weight_config,
            )
            self.assertTrue(created.ok, created.error_message)
            workflows.set_session_status(session, created.data.id, "accepting", owner_id)
            return created.data.id

    def _enter(self, lottery_id, applicant_id, hours, slot_ref=None):
        with self.Session.begin() as session:
            result = workflows.submit_entry(
                session,
                lottery_id,
                applicant_id,
                slot_ref=slot_ref,
                now=T0 + timedelta(hours=hours),
            )
            self.assertTrue(result.ok, result.error_message)
            return result.data.id

    def _sweep(self, **kwargs):
        kwargs.setdefault("now", AFTER_DEADLINE)
        kwargs.setdefault("notifier", self.notifier)
        kwargs.setdefault("sleep", self.sleeps.append)
        return auto_select_overdue(self.Session, **kwargs)

    def _status(self, lottery_id):
        with self.Session() as session:
            return session.scalar(
                select(LotterySession.status).where(LotterySession.id == lottery_id)
            )

    def _records(self, lottery_id=None):
        with self.Session() as session:
            stmt = select(SelectionRecord).order_by(SelectionRecord.id)
            if lottery_id is not None:
                stmt = stmt.where(SelectionRecord.session_id == lottery_id)
            return session.scalars(stmt).all()


class AutoSelectRankingTests(SweepTestCase):
    def test_weighted_tie_goes_to_earliest_submission(self):
        lottery_id = self._lottery(
            "Weighted", weight_config=WeightConfig(enabled=True, method="linear")
        )
        a, b, c = self.fan_ids
        entry_a = self._enter(lottery_id, a, 1, "s1")
        self._enter(lottery_id, b, 2, "s1")
        self._enter(lottery_id, c, 3, "s1")
        for hours, slot in ((10, "s2"), (11, "s3"), (12, "s4")):
            self._enter(lottery_id, a, hours, slot)
            self._enter(lottery_id, b, hours, slot)

        report = self._sweep()

        self.assertEqual(report.processed_count, 1)
        (result,) = report.results
        self.assertEqual(result.outcome, "selected")
        self.assertEqual(result.entry_ids, (entry_a,))
        self.assertEqual(self._status(lottery_id), "completed")

        (record,) = self._records(lottery_id)
        self.assertEqual(record.entry_id, entry_a)
        self.assertIsNone(record.actor_id)
        self.assertTrue(record.automated)
        self.assertEqual(record.reason, "deadline exceeded, automatic selection")

    def test_unweighted_picks_earliest_regardless_of_cached_weight(self):
        lottery_id = self._lottery("Plain", max_winners=2)
        first = self._enter(lottery_id, self.fan_ids[0], 1)
        second = self._enter(lottery_id, self.fan_ids[1], 2)
        third = self._enter(lottery_id, self.fan_ids[2], 3)
        with self.Session.begin() as session:
            session.get(LotteryEntry, third).weight = 99.0

        report = self._sweep()

        self.assertEqual(report.results[0].entry_ids, (first, second))
        with self.Session() as session:
            statuses = dict(session.execute(select(LotteryEntry.id, LotteryEntry.status)).all())
        self.assertEqual(statuses, {first: "selected", second: "selected", third: "applied"})

    def test_notifies_owner_after_commit(self):
        lottery_id = self._lottery("Notify")
        self._enter(lottery_id, self.fan_ids[0], 1)

        self._sweep()

        self.assertEqual(len(self.notifier.calls), 1)
        target, template, payload = self.notifier.calls[0]
        self.assertEqual(target, self.organizer_id)
        self.assertEqual(template, "lottery_auto_selection")
        self.assertEqual(payload["lottery_session_id"], lottery_id)
        self.assertEqual(payload["event_title"], "Notify")
        self.assertEqual(payload["selected_count"], 1)


class AutoSelectLifecycleTests(SweepTestCase):
    def test_sweep_is_idempotent(self):
        lottery_id = self._lottery("Twice")
        self._enter(lottery_id, self.fan_ids[0], 1)

        first = self._sweep()
        second = self._sweep()
        targeted = self._sweep(lottery_session_id=lottery_id)

        self.assertEqual(first.processed_count, 1)
        self.assertEqual(second.results, [])
        self.assertEqual(targeted.results[0].outcome, "already_completed")
        self.assertEqual(len(self._records()), 1)
        self.assertEqual(len(self.notifier.calls), 1)

    def test_concurrent_completion_turns_sweep_into_no_op(self):
        lottery_id = self._lottery("Raced")
        self._enter(lottery_id, self.fan_ids[0], 1)

        racing = _completes_after_read(SelectionEngine.entries_for)
        with patch.object(
            SelectionEngine, "entries_for", autospec=True, side_effect=racing
        ):
            report = self._sweep()

        self.assertEqual(report.results[0].outcome, "already_completed")
        self.assertEqual(report.processed_count, 0)
        self.assertEqual(report.failed_count, 0)
        self.assertEqual(self._status(lottery_id), "completed")
        self.assertEqual(self._records(), [])
        self.assertEqual(self.notifier.calls, [])

    def test_empty_session_completes_without_winners(self):
        lottery_id = self._lottery("Nobody came")

        report = self._sweep()

        self.assertEqual(report.results[0].outcome, "completed_empty")
        self.assertEqual(report.processed_count, 1)
        self.assertEqual(self._status(lottery_id), "completed")
        self.assertEqual(self._records(), [])
        self.assertEqual(self.notifier.calls, [])

    def test_sessions_before_deadline_are_left_alone(self):
        lottery_id = self._lottery("Future", deadline=T0 + timedelta(days=20))
        self._enter(lottery_id, self.fan_ids[0], 1)

        self.assertEqual(self._sweep().results, [])
        targeted = self._sweep(lottery_session_id=lottery_id)
        self.assertEqual(targeted.results[0].outcome, "skipped")
        self.assertEqual(targeted.results[0].error, "not_overdue")
        self.assertEqual(self._status(lottery_id), "accepting")

    def test_unknown_session_reported_as_failed(self):
        report = self._sweep(lottery_session_id=9999)
        self.assertEqual(report.results[0].outcome, "failed")
        self.assertEqual(report.results[0].error, "not_found")

    def test_actor_scope_skips_foreign_sessions(self):
        mine = self._lottery("Mine")
        theirs = self._lottery("Theirs", owner_id=self.rival_id)
        self._enter(mine, self.fan_ids[0], 1)
        self._enter(theirs, self.fan_ids[1], 1)

        with self.assertLogs("slotlottery.lottery.automation", level="WARNING"):
            report = self._sweep(actor_id=self.organizer_id)

        outcomes = {r.lottery_session_id: (r.outcome, r.error) for r in report.results}
        self.assertEqual(outcomes[mine], ("selected", None))
        self.assertEqual(outcomes[theirs], ("skipped", "not_owner"))
        self.assertEqual(self._status(theirs), "accepting")
        (record,) = self._records()
        self.assertEqual(record.actor_id, self.organizer_id)

    def test_system_sweep_processes_every_owner(self):
        mine = self._lottery("Mine")
        theirs = self._lottery("Theirs", owner_id=self.rival_id)

        report = self._sweep()

        self.assertEqual(report.processed_count, 2)
        self.assertEqual(self._status(mine), "completed")
        self.assertEqual(self._status(theirs), "completed")


class AutoSelectFailureTests(SweepTestCase):
    def test_failure_in_one_session_does_not_stop_others(self):
        def broken(multiplier, total_slots):
            raise RuntimeError("formula misconfigured")

        registry = WeightMethodRegistry()
        registry.register(WeightMethod("custom", broken))
        bad = self._lottery(
            "Broken",
            weight_config=WeightConfig(enabled=True, method="custom"),
            deadline=T0 + timedelta(days=8),
        )
        good = self._lottery("Fine")
        self._enter(bad, self.fan_ids[0], 1)
        self._enter(good, self.fan_ids[1], 1)

        with self.assertLogs("slotlottery.lottery.automation", level="ERROR"):
            report = self._sweep(registry=registry)

        outcomes = {r.lottery_session_id: r.outcome for r in report.results}
        self.assertEqual(outcomes, {bad: "failed", good: "selected"})
        self.assertEqual(report.failed_count, 1)
        self.assertEqual(self._status(bad), "accepting")
        self.assertEqual(self._status(good), "completed")

    def test_notification_failure_is_swallowed(self):
        lottery_id = self._lottery("Loud")
        self._enter(lottery_id, self.fan_ids[0], 1)

        with self.assertLogs("slotlottery.notifications", level="ERROR"):
            report = self._sweep(notifier=ExplodingNotifier())

        self.assertEqual(report.results[0].outcome, "selected")
        self.assertEqual(self._status(lottery_id), "completed")

    def test_retries_persistence_errors(self):
        lottery_id = self._lottery("Flaky")
        self._enter(lottery_id, self.fan_ids[0], 1)
        original = SelectionEngine.resolve_overdue
        calls = []

        def flaky(engine, *args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise PersistenceError("database is locked")
            return original(engine, *args, **kwargs)

        with patch.object(
            SelectionEngine, "resolve_overdue", autospec=True, side_effect=flaky
        ):
            report = self._sweep(max_attempts=3, retry_backoff=0.25)

        result = report.results[0]
        self.assertEqual(result.outcome, "selected")
        self.assertEqual(result.attempts, 2)
        self.assertEqual(self.sleeps, [0.25])

    def test_gives_up_after_max_attempts(self):
        lottery_id = self._lottery("Down")
        self._enter(lottery_id, self.fan_ids[0], 1)

        with patch.object(
            SelectionEngine,
            "resolve_overdue",
            side_effect=PersistenceError("database is locked"),
        ):
            report = self._sweep(max_attempts=3, retry_backoff=0.25)

        result = report.results[0]
        self.assertEqual(result.outcome, "failed")
        self.assertEqual(result.attempts, 3)
        self.assertEqual(self.sleeps, [0.25, 0.5])
        self.assertEqual(self._status(lottery_id), "accepting")

    def test_workflow_wrapper_reports_invalid_settings(self):
        result = workflows.auto_select_overdue(self.Session, AFTER_DEADLINE, max_attempts=0)
        self.assertFalse(result.ok)
        self.assertEqual(result.error_code, "validation_error")

    def test_workflow_wrapper_returns_report(self):
        self._lottery("Wrapped")
        result = workflows.auto_select_overdue(
            self.Session, AFTER_DEADLINE, notifier=self.notifier
        )
        self.assertTrue(result.ok)
        self.assertEqual(result.data.processed_count, 1)

    def test_env_settings_used_when_not_given(self):
        lottery_id = self._lottery("Env")
        self._enter(lottery_id, self.fan_ids[0], 1)
        env = {"SWEEP_MAX_ATTEMPTS": "2", "SWEEP_RETRY_BACKOFF_SECONDS": "1.5"}
        with patch.dict("os.environ", env), patch.object(
            SelectionEngine,
            "resolve_overdue",
            side_effect=PersistenceError("database is locked"),
        ):
            report = self._sweep()
        self.assertEqual(report.results[0].attempts, 2)
        self.assertEqual(self.sleeps, [1.5])


class PendingSelectionsTests(SweepTestCase):
    def test_lists_due_and_overdue_sessions(self):
        now = T0 + timedelta(days=9)
        overdue = self._lottery("Overdue", deadline=T0 + timedelta(days=8))
        soon = self._lottery("Soon", deadline=T0 + timedelta(days=11))
        self._lottery("Later", deadline=T0 + timedelta(days=13))
        self._lottery("Other owner", owner_id=self.rival_id, deadline=T0 + timedelta(days=10))
        done = self._lottery("Done", deadline=T0 + timedelta(days=10))
        with self.Session.begin() as session:
            workflows.set_session_status(session, done, "completed", self.organizer_id)

        with self.Session.begin() as session:
            result = workflows.get_pending_selections(session, self.organizer_id, now=now)

        self.assertTrue(result.ok, result.error_message)
        rows = {row.lottery_session_id: row for row in result.data}
        self.assertEqual([row.lottery_session_id for row in result.data], [overdue, soon])
        self.assertTrue(rows[overdue].is_overdue)
        self.assertEqual(rows[overdue].days_remaining, -1)
        self.assertFalse(rows[soon].is_overdue)
        self.assertEqual(rows[soon].days_remaining, 2)
        self.assertEqual(rows[soon].event_title, "Soon")
        self.assertEqual(rows[soon].deadline, T0 + timedelta(days=11))

    def test_partial_days_round_up(self):
        now = T0 + timedelta(days=9, hours=12)
        soon = self._lottery("Soon", deadline=T0 + timedelta(days=11))
        with self.Session.begin() as session:
            rows = workflows.get_pending_selections(session, self.organizer_id, now=now).data
        self.assertEqual([(r.lottery_session_id, r.days_remaining) for r in rows], [(soon, 2)])

    def test_negative_window_rejected(self):
        with self.Session.begin() as session:
            result = workflows.get_pending_selections(session, self.organizer_id, within_days=-1)
        self.assertEqual(result.error_code, "validation_error")


if __name__ == "__main__":
    unittest.main()
