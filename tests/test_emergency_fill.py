import unittest
import sys
import os

# Ensure we can import modules from the parent directory
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from emergency_fill import emergency_fill
from models import Schedule, ScheduleSlot, TeacherHoursTracker, TimetableData
from sample_data import make_data, overloaded_bundle
from validator import Validator


class TestEmergencyFill(unittest.TestCase):
    def test_fill_is_monotonic_and_tagged(self):
        data = TimetableData.from_dict(overloaded_bundle())
        schedule = Schedule(data)
        tracker = TeacherHoursTracker(data)
        existing = ScheduleSlot("语文", ["t_yw"])
        schedule.place("1-1", "周一", 1, existing)
        tracker.add("1-1", existing)
        before = schedule.filled_cells()

        filled = emergency_fill(data, schedule, tracker)
        self.assertEqual(filled, 9)
        self.assertGreaterEqual(schedule.filled_cells(), before)
        self.assertIs(schedule.get("1-1", "周一", 1), existing)
        self.assertEqual(schedule.get("1-1", "周五", 2).source, "emergency")
        self.assertEqual(tracker.mismatches(schedule), [])

    def test_double_booking_still_respected(self):
        data = make_data(classes_per_grade=[2], periods=1,
                         subjects=[{"id": "语文", "weekly_hours": 5}],
                         teachers=[{"id": "T", "subjects": ["语文"]}, {"id": "U", "subjects": []}])
        schedule = Schedule(data)
        tracker = TeacherHoursTracker(data)

        emergency_fill(data, schedule, tracker)
        self.assertEqual(schedule.filled_cells(), 5)
        report = Validator(data, schedule, tracker).validate()
        self.assertNotIn("teacher_time_conflict", [v["rule"] for v in report["violations"]])

        filled = emergency_fill(data, schedule, tracker, allow_unqualified=True)
        self.assertEqual(filled, 5)
        slot = schedule.get("1-2", "周一", 1)
        self.assertEqual(slot.source, "emergency_fallback")
        self.assertEqual(slot.teachers, ["U"])
        self.assertEqual(slot.subject, "语文")
        self.assertEqual(schedule.filled_cells(), 10)


if __name__ == '__main__':
    unittest.main()
