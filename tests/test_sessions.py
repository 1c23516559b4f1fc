import unittest
from datetime import datetime, timedelta, timezone

from slotlottery.db.engine import get_sessionmaker, make_engine
from slotlottery.lottery.types import (
    ChekiSelectionConfig,
    ModelSelectionConfig,
    WeightConfig,
)
from slotlottery.lottery.weights import WeightMethod, WeightMethodRegistry
from slotlottery.models import Base, Event, User
from slotlottery.workflows import (
    create_lottery_session,
    get_lottery_session,
    set_session_status,
    update_weight_config,
)

T0 = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


class SessionManagerTestCase(unittest.TestCase):
    def setUp(self):
        self.engine = make_engine("sqlite+pysqlite:///:memory:")
        Base.metadata.create_all(self.engine)
        self.Session = get_sessionmaker(self.engine)
        with self.Session.begin() as session:
            organizer = User(in_app_id="organizer")
            stranger = User(in_app_id="stranger")
            session.add_all([organizer, stranger])
            session.flush()
            event = Event(title="Release Party", organizer=organizer)
            session.add(event)
            session.flush()
            self.organizer_id = organizer.id
            self.stranger_id = stranger.id
            self.event_id = event.id

    def tearDown(self):
        self.engine.dispose()

    def _create(self, session, **overrides):
        params = dict(
            entry_start=T0,
            entry_end=T0 + timedelta(days=7),
            selection_deadline=T0 + timedelta(days=10),
            max_winners=3,
        )
        params.update(overrides)
        owner_id = params.pop("owner_id", self.organizer_id)
        event_id = params.pop("event_id", self.event_id)
        return create_lottery_session(session, owner_id, event_id, **params)


class CreateLotterySessionTests(SessionManagerTestCase):
    def test_creates_upcoming_session(self):
        with self.Session.begin() as session:
            result = self._create(
                session,
                weight_config=WeightConfig(enabled=True, method="bonus", multiplier=0.5),
                model_selection_config=ModelSelectionConfig(enabled=True),
                cheki_selection_config=ChekiSelectionConfig(enabled=True, scope="per_slot"),
                selection_criteria={"note": "front row"},
                max_entries_per_slot=10,
            )
            self.assertTrue(result.ok, result.error_message)
            lottery = result.data
            self.assertIsNotNone(lottery.id)
            self.assertEqual(lottery.status, "upcoming")
            self.assertEqual(
                lottery.weight_config,
                WeightConfig(enabled=True, method="bonus", multiplier=0.5),
            )
            self.assertTrue(lottery.model_selection_config.enabled)
            self.assertEqual(lottery.cheki_selection_config.scope, "per_slot")
            self.assertEqual(lottery.selection_criteria, {"note": "front row"})
            self.assertEqual(lottery.max_entries_per_slot, 10)
            self.assertEqual(lottery.owner_id, self.organizer_id)

    def test_unknown_event(self):
        with self.Session.begin() as session:
            result = self._create(session, event_id=9999)
            self.assertFalse(result.ok)
            self.assertEqual(result.error_code, "not_found")

    def test_only_organizer_may_create(self):
        with self.Session.begin() as session:
            result = self._create(session, owner_id=self.stranger_id)
            self.assertEqual(result.error_code, "unauthorized")

    def test_rejects_invalid_configuration(self):
        cases = [
            dict(entry_end=T0),
            dict(entry_end=T0 - timedelta(days=1)),
            dict(selection_deadline=T0 + timedelta(days=6)),
            dict(max_winners=0),
            dict(max_entries_per_slot=0),
            dict(weight_config=WeightConfig(enabled=True, multiplier=0)),
            dict(weight_config=WeightConfig(enabled=True, multiplier=-1.0)),
            dict(weight_config=WeightConfig(enabled=True, method="quadratic")),
            dict(model_selection_config=ModelSelectionConfig(scope="global")),
            dict(cheki_selection_config=ChekiSelectionConfig(scope="per_event")),
        ]
        for overrides in cases:
            with self.subTest(overrides=overrides):
                with self.Session.begin() as session:
                    result = self._create(session, **overrides)
                    self.assertEqual(result.error_code, "validation_error")
                    self.assertIsNone(get_lottery_session(session, self.event_id).data)

    def test_deadline_may_equal_entry_end(self):
        with self.Session.begin() as session:
            result = self._create(session, selection_deadline=T0 + timedelta(days=7))
            self.assertTrue(result.ok, result.error_message)

    def test_one_session_per_event(self):
        with self.Session.begin() as session:
            self.assertTrue(self._create(session).ok)
        with self.Session.begin() as session:
            result = self._create(session)
            self.assertEqual(result.error_code, "validation_error")

    def test_custom_registry_accepts_extra_method(self):
        registry = WeightMethodRegistry()
        registry.register(WeightMethod("flat", lambda m, n: m))
        with self.Session.begin() as session:
            result = self._create(
                session,
                weight_config=WeightConfig(enabled=True, method="flat"),
                registry=registry,
            )
            self.assertTrue(result.ok, result.error_message)


class GetLotterySessionTests(SessionManagerTestCase):
    def test_missing_session_is_not_an_error(self):
        with self.Session.begin() as session:
            result = get_lottery_session(session, self.event_id)
            self.assertTrue(result.ok)
            self.assertIsNone(result.data)

    def test_returns_existing_session(self):
        with self.Session.begin() as session:
            created = self._create(session).data
        with self.Session.begin() as session:
            result = get_lottery_session(session, self.event_id)
            self.assertEqual(result.data.id, created.id)


class SetSessionStatusTests(SessionManagerTestCase):
    def setUp(self):
        super().setUp()
        with self.Session.begin() as session:
            self.lottery_id = self._create(session).data.id

    def _set(self, status, actor_id=None):
        with self.Session.begin() as session:
            return set_session_status(
                session, self.lottery_id, status, actor_id or self.organizer_id
            )

    def test_moves_forward(self):
        self.assertEqual(self._set("accepting").data.status, "accepting")
        self.assertEqual(self._set("selecting").data.status, "selecting")
        completed = self._set("completed").data
        self.assertEqual(completed.status, "completed")
        self.assertIsNotNone(completed.completed_at)

    def test_selecting_may_be_skipped(self):
        self._set("accepting")
        self.assertEqual(self._set("completed").data.status, "completed")

    def test_rejects_regression_and_no_op(self):
        self._set("accepting")
        self.assertEqual(self._set("upcoming").error_code, "validation_error")
        self.assertEqual(self._set("accepting").error_code, "validation_error")

    def test_rejects_unknown_status(self):
        self.assertEqual(self._set("archived").error_code, "validation_error")

    def test_completed_is_terminal(self):
        self._set("completed")
        self.assertEqual(self._set("accepting").error_code, "already_completed")
        self.assertEqual(self._set("completed").error_code, "already_completed")

    def test_only_organizer_may_change_status(self):
        result = self._set("accepting", actor_id=self.stranger_id)
        self.assertEqual(result.error_code, "unauthorized")
        with self.Session.begin() as session:
            lottery = get_lottery_session(session, self.event_id).data
            self.assertEqual(lottery.status, "upcoming")

    def test_unknown_session(self):
        with self.Session.begin() as session:
            result = set_session_status(session, 9999, "accepting", self.organizer_id)
            self.assertEqual(result.error_code, "not_found")


class UpdateWeightConfigTests(SessionManagerTestCase):
    def setUp(self):
        super().setUp()
        with self.Session.begin() as session:
            self.lottery_id = self._create(session).data.id

    def test_replaces_weight_config(self):
        config = WeightConfig(enabled=True, method="linear", multiplier=2.0)
        with self.Session.begin() as session:
            result = update_weight_config(
                session, self.lottery_id, self.organizer_id, config
            )
            self.assertTrue(result.ok, result.error_message)
        with self.Session.begin() as session:
            lottery = get_lottery_session(session, self.event_id).data
            self.assertEqual(lottery.weight_config, config)

    def test_rejects_invalid_config(self):
        with self.Session.begin() as session:
            result = update_weight_config(
                session,
                self.lottery_id,
                self.organizer_id,
                WeightConfig(enabled=True, method="nope"),
            )
            self.assertEqual(result.error_code, "validation_error")

    def test_rejects_non_owner(self):
        with self.Session.begin() as session:
            result = update_weight_config(
                session, self.lottery_id, self.stranger_id, WeightConfig(enabled=True)
            )
            self.assertEqual(result.error_code, "unauthorized")

    def test_frozen_once_completed(self):
        with self.Session.begin() as session:
            set_session_status(session, self.lottery_id, "completed", self.organizer_id)
        with self.Session.begin() as session:
            result = update_weight_config(
                session, self.lottery_id, self.organizer_id, WeightConfig(enabled=True)
            )
            self.assertEqual(result.error_code, "already_completed")


if __name__ == "__main__":
    unittest.main()
