import unittest
import sys
import os

# Ensure we can import modules from the parent directory
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fixed_classes import apply_fixed_classes
from models import Schedule, TeacherHoursTracker
from sample_data import make_data


class TestFixedClasses(unittest.TestCase):
    def setUp(self):
        self.data = make_data(
            classes_per_grade=[2],
            subjects=[{"id": "班会", "weekly_hours": 1}, {"id": "英语", "weekly_hours": 4}],
            teachers=[{"id": "H", "subjects": ["班会"]}, {"id": "E", "subjects": ["英语"]},
                      {"id": "N", "subjects": ["英语"]}],
            class_weekly_hours={"1-2": 0},
            fixed_classes=[
                {"day": "周五", "period": 6, "class_id": "1-1", "subject": "班会", "teacher": "H"},
                {"day": "周一", "period": 1, "class_id": "1-1", "subject": "英语", "teacher": "E", "co_teachers": ["N"]},
                {"day": "周一", "period": 1, "class_id": "1-1", "subject": "班会", "teacher": "H"},
                {"day": "周二", "period": 1, "grade": 1, "class": 2, "subject": "班会", "teacher": "H"},
                {"day": "周二", "period": 9, "class_id": "1-1", "subject": "班会", "teacher": "H"},
            ],
        )
        self.schedule = Schedule(self.data)
        self.tracker = TeacherHoursTracker(self.data)

    def test_apply_and_reject(self):
        applied, rejected = apply_fixed_classes(self.data, self.schedule, self.tracker)
        self.assertEqual(applied, 2)
        self.assertEqual([r["reason"] for r in rejected], ["cell_occupied", "class_disabled", "period_out_of_range"])

        slot = self.schedule.get("1-1", "周五", 6)
        self.assertTrue(slot.is_fixed)
        self.assertEqual(slot.source, "fixed")
        self.assertEqual(self.tracker.current("H"), 1)

    def test_co_teachers_mark_co_teaching(self):
        apply_fixed_classes(self.data, self.schedule, self.tracker)
        slot = self.schedule.get("1-1", "周一", 1)
        self.assertEqual(slot.teachers, ["E", "N"])
        self.assertTrue(slot.is_co_teaching)
        self.assertEqual(self.tracker.current("N"), 1)


if __name__ == '__main__':
    unittest.main()
