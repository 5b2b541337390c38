import random
import unittest
import sys
import os

# Ensure we can import modules from the parent directory
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models import ScheduleSlot
from sample_data import make_data, make_state
from slot_finder import find_slots


class TestSlotFinder(unittest.TestCase):
    def test_ranking_prefers_third_period_and_early_days(self):
        data = make_data(subjects=[{"id": "数学", "weekly_hours": 5}], teachers=[{"id": "T", "subjects": ["数学"]}])
        _, _, checker = make_state(data)
        slots = find_slots(checker, "1-1", "数学", ["T"])
        self.assertEqual(len(slots), 35)
        self.assertEqual((slots[0].day, slots[0].period), ("周一", 3))
        self.assertEqual((slots[1].day, slots[1].period), ("周二", 3))
        self.assertEqual(slots[-1].day, "周五")

    def test_available_time_bonus(self):
        data = make_data(subjects=[{"id": "数学", "weekly_hours": 5}],
                         teachers=[{"id": "T", "subjects": ["数学"], "available_times": [["周四", 6], ["周五", 1]]}])
        _, _, checker = make_state(data)
        slots = find_slots(checker, "1-1", "数学", ["T"])
        self.assertEqual([(s.day, s.period) for s in slots], [("周五", 1), ("周四", 6)])
        self.assertEqual(slots[0].score, 80)

    def test_block_candidates_start_on_odd_periods(self):
        data = make_data(subjects=[{"id": "体育", "weekly_hours": 2, "block": True}],
                         teachers=[{"id": "P", "subjects": ["体育"]}])
        schedule, _, checker = make_state(data)
        schedule.place("1-1", "周一", 4, ScheduleSlot("语文", ["X"]))
        slots = find_slots(checker, "1-1", "体育", ["P"])
        self.assertTrue(all(s.is_block and s.period % 2 == 1 for s in slots))
        self.assertNotIn(("周一", 3), [(s.day, s.period) for s in slots])
        self.assertEqual(slots[0].next_period, slots[0].period + 1)

    def test_emergency_mode_only_checks_double_booking(self):
        data = make_data(classes_per_grade=[2], subjects=[{"id": "数学", "weekly_hours": 5}],
                         teachers=[{"id": "T", "subjects": ["数学"], "unavailable": [["周一", 1]]}])
        schedule, _, checker = make_state(data)
        schedule.place("1-2", "周一", 2, ScheduleSlot("数学", ["T"]))

        normal = [(s.day, s.period) for s in find_slots(checker, "1-1", "数学", ["T"])]
        emergency = [(s.day, s.period) for s in find_slots(checker, "1-1", "数学", ["T"], emergency=True)]
        self.assertNotIn(("周一", 1), normal)
        self.assertIn(("周一", 1), emergency)
        self.assertNotIn(("周一", 2), emergency)

    def test_seeded_tie_breaking_is_reproducible(self):
        data = make_data(subjects=[{"id": "数学", "weekly_hours": 5}], teachers=[{"id": "T", "subjects": ["数学"]}])
        _, _, checker = make_state(data)
        first = find_slots(checker, "1-1", "数学", ["T"], rng=random.Random(3))
        second = find_slots(checker, "1-1", "数学", ["T"], rng=random.Random(3))
        self.assertEqual([(s.day, s.period) for s in first], [(s.day, s.period) for s in second])
        scores = [s.score for s in first]
        self.assertEqual(scores, sorted(scores, reverse=True))


if __name__ == '__main__':
    unittest.main()
