import unittest
from datetime import datetime
from unittest.mock import MagicMock

from data.database import ABTest
from models.ab_tests import ABTestUpdate
from services.cache import get_mock_cache_client
from services.errors import InvalidConfiguration, InvalidTransition, NotFound
from services.lifecycle import validate_test_config, transition_test, update_test


def variant(variant_id, pct, control=False):
    return {"id": variant_id, "name": variant_id, "components": [], "trafficPercentage": pct, "isControl": control}


class TestValidateTestConfig(unittest.TestCase):

    def test_valid_configurations(self):
        validate_test_config([variant("a", 50, True), variant("b", 50)], {"a": 50, "b": 50})
        validate_test_config(
            [variant("a", 33.33, True), variant("b", 33.33), variant("c", 33.34)],
            {"a": 33.33, "b": 33.33, "c": 33.34},
        )
        # 99.995 is inside the tolerance
        validate_test_config([variant("a", 49.995, True), variant("b", 50)], {"a": 49.995, "b": 50})

    def test_split_must_sum_to_one_hundred(self):
        with self.assertRaisesRegex(InvalidConfiguration, "add up to 100"):
            validate_test_config([variant("a", 50, True), variant("b", 40)], {"a": 50, "b": 40})

    def test_requires_a_control(self):
        with self.assertRaisesRegex(InvalidConfiguration, "control"):
            validate_test_config([variant("a", 50), variant("b", 50)], {"a": 50, "b": 50})

    def test_requires_two_variants(self):
        with self.assertRaisesRegex(InvalidConfiguration, "at least 2"):
            validate_test_config([variant("a", 100, True)], {"a": 100})

    def test_split_keys_must_match_variants(self):
        with self.assertRaisesRegex(InvalidConfiguration, "one entry per variant"):
            validate_test_config([variant("a", 50, True), variant("b", 50)], {"a": 50, "c": 50})

    def test_duplicate_variant_ids(self):
        with self.assertRaisesRegex(InvalidConfiguration, "unique"):
            validate_test_config([variant("a", 50, True), variant("a", 50)], {"a": 100})

    def test_percentage_must_match_split(self):
        with self.assertRaisesRegex(InvalidConfiguration, "does not match"):
            validate_test_config([variant("a", 60, True), variant("b", 50)], {"a": 50, "b": 50})


class TestTransitions(unittest.TestCase):

    def setUp(self):
        self.mock_db = MagicMock()
        self.cache = get_mock_cache_client()

    def _with_status(self, status, **fields):
        test = ABTest(id="t1", name="Hero test", page_id="page-1", status=status,
                      variants=[variant("a", 50, True), variant("b", 50)],
                      traffic_split={"a": 50, "b": 50}, **fields)
        self.mock_db.query.return_value.filter.return_value.one_or_none.return_value = test
        return test

    def test_allowed_transitions(self):
        allowed = [
            ("start", "draft", "running"),
            ("start", "paused", "running"),
            ("pause", "running", "paused"),
            ("complete", "running", "completed"),
            ("complete", "paused", "completed"),
            ("archive", "paused", "archived"),
            ("archive", "completed", "archived"),
        ]
        for action, source, target in allowed:
            with self.subTest(action=action, source=source):
                test = self._with_status(source)
                self.assertEqual(transition_test(self.mock_db, self.cache, "t1", action).status, target)
                self.assertEqual(test.status, target)

    def test_rejected_transitions_leave_status_unchanged(self):
        rejected = [
            ("start", "running"),
            ("start", "completed"),
            ("start", "archived"),
            ("pause", "draft"),
            ("pause", "completed"),
            ("complete", "draft"),
            ("complete", "archived"),
            ("archive", "draft"),
            ("archive", "running"),
        ]
        for action, source in rejected:
            with self.subTest(action=action, source=source):
                test = self._with_status(source)
                with self.assertRaises(InvalidTransition):
                    transition_test(self.mock_db, self.cache, "t1", action)
                self.assertEqual(test.status, source)

        self.mock_db.commit.assert_not_called()

    def test_start_keeps_a_scheduled_start_date(self):
        scheduled = datetime(2026, 3, 1)
        test = self._with_status("draft", start_date=scheduled)

        transition_test(self.mock_db, self.cache, "t1", "start")

        self.assertEqual(test.start_date, scheduled)

    def test_start_and_complete_stamp_dates(self):
        test = self._with_status("draft")
        transition_test(self.mock_db, self.cache, "t1", "start")
        self.assertIsNotNone(test.start_date)
        self.assertIsNone(test.end_date)

        transition_test(self.mock_db, self.cache, "t1", "complete")
        self.assertIsNotNone(test.end_date)

    def test_unknown_test(self):
        self.mock_db.query.return_value.filter.return_value.one_or_none.return_value = None
        with self.assertRaises(NotFound):
            transition_test(self.mock_db, self.cache, "missing", "start")


class TestUpdate(unittest.TestCase):

    def setUp(self):
        self.mock_db = MagicMock()
        self.cache = get_mock_cache_client()

    def _with_status(self, status):
        test = ABTest(id="t1", name="Hero test", page_id="page-1", status=status,
                      variants=[variant("a", 50, True), variant("b", 50)],
                      traffic_split={"a": 50, "b": 50})
        self.mock_db.query.return_value.filter.return_value.one_or_none.return_value = test
        return test

    def test_running_test_rejects_split_edits(self):
        test = self._with_status("running")
        update = ABTestUpdate(trafficSplit={"a": 30, "b": 70})

        with self.assertRaises(InvalidTransition):
            update_test(self.mock_db, self.cache, "t1", update)

        self.assertEqual(test.traffic_split, {"a": 50, "b": 50})
        self.mock_db.commit.assert_not_called()

    def test_running_test_accepts_metadata_edits(self):
        test = self._with_status("running")

        update_test(self.mock_db, self.cache, "t1", ABTestUpdate(name="Renamed", description="new copy"))

        self.assertEqual(test.name, "Renamed")
        self.assertEqual(test.description, "new copy")
        self.mock_db.commit.assert_called_once()

    def test_running_test_accepts_null_allocation_fields(self):
        test = self._with_status("running")

        update_test(self.mock_db, self.cache, "t1", ABTestUpdate(variants=None, trafficSplit=None, name="Renamed"))

        self.assertEqual(test.name, "Renamed")
        self.assertEqual(test.traffic_split, {"a": 50, "b": 50})
        self.assertEqual(len(test.variants), 2)
        self.mock_db.commit.assert_called_once()

    def test_draft_split_edit_is_validated_against_variants(self):
        test = self._with_status("draft")

        with self.assertRaises(InvalidConfiguration):
            update_test(self.mock_db, self.cache, "t1", ABTestUpdate(trafficSplit={"a": 30, "b": 70}))
        self.assertEqual(test.traffic_split, {"a": 50, "b": 50})

        update_test(self.mock_db, self.cache, "t1", ABTestUpdate(
            variants=[variant("a", 30, True), variant("b", 70)],
            trafficSplit={"a": 30, "b": 70},
        ))
        self.assertEqual(test.traffic_split, {"a": 30, "b": 70})
        self.assertEqual(test.variants[1]["trafficPercentage"], 70)

    def test_archived_test_is_read_only(self):
        self._with_status("archived")
        with self.assertRaises(InvalidTransition):
            update_test(self.mock_db, self.cache, "t1", ABTestUpdate(name="Renamed"))


if __name__ == "__main__":
    unittest.main()
