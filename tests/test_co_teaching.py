import random
import unittest
import sys
import os

# Ensure we can import modules from the parent directory
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from co_teaching import CoTeachingResolver, secondary_pool, validate_co_teaching
from constraint_checker import ConstraintChecker
from models import Schedule, ScheduleSlot, TeacherHoursTracker
from placement_engine import PlacementEngine
from sample_data import make_data


def co_teaching_data(weekly_hours=4, allocation=4, **extra):
    return make_data(
        subjects=[{"id": "英语", "weekly_hours": weekly_hours}, {"id": "外教口语", "weekly_hours": 0}],
        teachers=[
            {"id": "M", "subjects": ["英语"], "class_hours": {"1-1": allocation}},
            {"id": "A", "subjects": ["英语"]},
            {"id": "B", "subjects": ["外教口语"]},
        ],
        subject_equivalents=[["外教口语", "英语"]],
        constraints={"must": [{"type": "specific_teacher_co_teaching", "main_teacher": "M",
                               "co_teachers": ["A", "B"], "subject": "英语", "maxTeachersPerClass": 2}]},
        **extra
    )


class TestCoTeachingResolver(unittest.TestCase):
    def setUp(self):
        self.data = co_teaching_data()
        self.schedule = Schedule(self.data)
        self.tracker = TeacherHoursTracker(self.data)
        self.checker = ConstraintChecker(self.data, self.schedule, self.tracker)

    def test_equivalent_subject_qualifies_secondary(self):
        constraint = self.data.constraints_of_type("specific_teacher_co_teaching")[0]
        self.assertEqual(secondary_pool(self.data, constraint, "英语"), ["A", "B"])

    def test_sessions_are_co_taught_and_balanced(self):
        summary = CoTeachingResolver(self.data, self.schedule, self.tracker, self.checker, random.Random(1)).resolve()
        self.assertEqual(summary["placed"], 4)
        self.assertEqual(summary["shortfalls"], [])

        counts = summary["participation"]["M"]
        self.assertLessEqual(abs(counts["A"] - counts["B"]), 1)
        self.assertEqual(counts["A"] + counts["B"], 4)

        cells = [slot for _, _, _, slot in self.schedule.cells() if slot is not None]
        self.assertEqual(len(cells), 4)
        for slot in cells:
            self.assertEqual(slot.source, "constraint")
            self.assertEqual(slot.main_teacher, "M")
            self.assertEqual(len(slot.teachers), 2)
            self.assertTrue(slot.is_co_teaching)
        self.assertEqual(self.tracker.current("M"), 4)
        self.assertEqual(validate_co_teaching(self.data, self.schedule), [])

    def test_grade_allocation_is_shared_by_classes(self):
        data = make_data(
            classes_per_grade=[2],
            subjects=[{"id": "英语", "weekly_hours": 4}],
            teachers=[{"id": "M", "subjects": ["英语"], "grade_hours": {"1": 4}},
                      {"id": "A", "subjects": ["英语"]}],
            constraints={"must": [{"type": "specific_teacher_co_teaching", "main_teacher": "M",
                                   "co_teachers": ["A"], "subject": "英语"}]},
        )
        schedule = Schedule(data)
        tracker = TeacherHoursTracker(data)
        checker = ConstraintChecker(data, schedule, tracker)
        summary = CoTeachingResolver(data, schedule, tracker, checker, random.Random(3)).resolve()

        self.assertEqual(summary["placed"], 4)
        self.assertEqual(tracker.grade_hours("M", 1), 4)
        self.assertEqual(schedule.subject_count("1-1", "英语"), 4)
        self.assertEqual(schedule.subject_count("1-2", "英语"), 0)
        sources = {slot.source for _, _, _, slot in schedule.cells() if slot is not None}
        self.assertEqual(sources, {"constraint"})

    def test_solo_main_session_is_reported(self):
        self.schedule.place("1-1", "周一", 1, ScheduleSlot("英语", ["M"]))
        violations = validate_co_teaching(self.data, self.schedule)
        self.assertEqual(len(violations), 1)
        self.assertEqual(violations[0]["rule"], "co_teaching_missing_partner")

    def test_engine_does_not_schedule_main_teacher_alone(self):
        data = co_teaching_data(weekly_hours=6, allocation=4)
        schedule = Schedule(data)
        tracker = TeacherHoursTracker(data)
        checker = ConstraintChecker(data, schedule, tracker)
        CoTeachingResolver(data, schedule, tracker, checker, random.Random(2)).resolve()
        status = PlacementEngine(data, schedule, tracker, checker, rng=random.Random(2)).run()

        self.assertEqual(status, "success")
        self.assertEqual(schedule.subject_count("1-1", "英语"), 6)
        self.assertEqual(validate_co_teaching(data, schedule), [])
        self.assertEqual(tracker.class_hours("M", "1-1"), 4)


if __name__ == '__main__':
    unittest.main()
