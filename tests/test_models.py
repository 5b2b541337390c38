import unittest
import sys
import os

# Ensure we can import modules from the parent directory
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from error_handler import FixedSlotError, InvalidConfigError, SlotOccupiedError
from history import PlacementRecord, build_slots
from models import (
    CELL_EMPTY, CELL_FIXED, CELL_PLACED, SOURCE_LEGACY, Schedule, ScheduleSlot,
    TeacherHoursTracker, TimetableData, cell_kind, parse_cell, serialize_cell,
)
from sample_data import make_bundle, make_data, school_bundle


class TestTimetableData(unittest.TestCase):
    def test_classes_generated_from_base(self):
        data = make_data(grades=2, classes_per_grade=[2, 1])
        self.assertEqual([c.id for c in data.classes], ["1-1", "1-2", "2-1"])
        self.assertEqual(data.classes_by_id["2-1"].grade, 2)
        self.assertEqual(data.periods_on("1-1", "周三"), 7)

    def test_disabled_class_has_no_grid(self):
        data = make_data(classes_per_grade=[2], class_weekly_hours={"1-2": 0})
        schedule = Schedule(data)
        self.assertEqual(schedule.class_ids(), ["1-1"])
        self.assertFalse(data.is_class_enabled("1-2"))

    def test_subject_hours_override(self):
        bundle = make_bundle(
            subjects=[{"id": "数学", "weekly_hours": 5}],
            classes=[{"id": "A", "grade": 1, "class_number": 1, "subject_hours": {"数学": 3}},
                     {"id": "B", "grade": 1, "class_number": 2}],
        )
        data = TimetableData.from_dict(bundle)
        self.assertEqual(data.target_hours("A", "数学"), 3)
        self.assertEqual(data.target_hours("B", "数学"), 5)

    def test_legacy_keys_accepted(self):
        data = make_data(teachers=[{"id": "t1", "subjects": ["数学"], "maxHours": 10,
                                    "classWeeklyHours": {"1-1": 4}}])
        teacher = data.teachers_by_id["t1"]
        self.assertEqual(teacher.max_hours, 10)
        self.assertEqual(teacher.allocation_for(data.classes_by_id["1-1"]), 4)

    def test_invalid_bundle_raises(self):
        with self.assertRaises(InvalidConfigError):
            TimetableData.from_dict(["not", "a", "dict"])
        with self.assertRaises(InvalidConfigError):
            TimetableData.from_dict({"subjects": [{"id": "数学", "weekly_hours": "many"}]})

    def test_mutual_exclusion_is_symmetric(self):
        data = make_data(
            teachers=[{"id": "a", "subjects": []}, {"id": "b", "subjects": []}],
            constraints={"must": [{"type": "teacher_mutual_exclusion", "teachers": ["a", "b"]}]},
        )
        self.assertIn("b", data.exclusions_of("a"))
        self.assertIn("a", data.exclusions_of("b"))


class TestCells(unittest.TestCase):
    def test_legacy_string_cell(self):
        slot = parse_cell("王老师")
        self.assertEqual(slot.teachers, ["王老师"])
        self.assertIsNone(slot.subject)
        self.assertEqual(slot.source, SOURCE_LEGACY)
        self.assertEqual(cell_kind(slot), CELL_PLACED)

    def test_cell_kinds(self):
        self.assertEqual(cell_kind(parse_cell(None)), CELL_EMPTY)
        self.assertEqual(cell_kind(parse_cell({"subject": "数学", "teachers": ["t"], "isFixed": True})), CELL_FIXED)

    def test_structured_wire_shape(self):
        slot = ScheduleSlot("数学", ["t1", "t2"], is_co_teaching=True)
        wire = serialize_cell(slot)
        self.assertEqual(wire["subject"], "数学")
        self.assertEqual(wire["teachers"], ["t1", "t2"])
        self.assertTrue(wire["isCoTeaching"])
        self.assertFalse(wire["isFixed"])
        self.assertFalse(wire["isBlockPeriod"])
        self.assertIsNone(serialize_cell(None))


class TestSchedule(unittest.TestCase):
    def setUp(self):
        self.data = TimetableData.from_dict(school_bundle())
        self.schedule = Schedule(self.data)
        self.tracker = TeacherHoursTracker(self.data)

    def test_place_rejects_occupied_cell(self):
        self.schedule.place("1-1", "周一", 1, ScheduleSlot("语文", ["t_yw"]))
        with self.assertRaises(SlotOccupiedError):
            self.schedule.place("1-1", "周一", 1, ScheduleSlot("数学", ["t_sx"]))
        with self.assertRaises(SlotOccupiedError):
            self.schedule.place("1-1", "周一", 9, ScheduleSlot("数学", ["t_sx"]))

    def test_fixed_slot_cannot_be_removed(self):
        self.schedule.place("1-1", "周一", 1, ScheduleSlot("语文", ["t_yw"], is_fixed=True))
        with self.assertRaises(FixedSlotError):
            self.schedule.remove("1-1", "周一", 1)
        self.assertIsNotNone(self.schedule.get("1-1", "周一", 1))

    def test_teacher_index_follows_place_and_remove(self):
        self.schedule.place("1-2", "周二", 3, ScheduleSlot("语文", ["t_yw"]))
        self.assertEqual(self.schedule.teacher_classes("t_yw", "周二", 3), {"1-2"})
        self.schedule.remove("1-2", "周二", 3)
        self.assertEqual(self.schedule.teacher_classes("t_yw", "周二", 3), set())

    def test_wire_round_trip(self):
        PlacementRecord("1-1", build_slots("周一", 1, "体育", ["t_ty"], block=True)).apply(self.schedule, self.tracker)
        PlacementRecord("1-2", build_slots("周三", 4, "英语", ["t_yy", "t_yw"])).apply(self.schedule, self.tracker)
        self.schedule.place("1-2", "周五", 6, ScheduleSlot("美术", ["t_ms"], is_fixed=True, source="fixed"))

        restored = Schedule.from_wire(self.data, self.schedule.to_wire())
        self.assertEqual(restored.to_wire(), self.schedule.to_wire())
        self.assertEqual(restored.get("1-1", "周一", 2).block_partner, 1)
        self.assertTrue(restored.get("1-2", "周三", 4).is_co_teaching)


class TestTeacherHoursTracker(unittest.TestCase):
    def test_add_remove_and_rebuild(self):
        data = make_data(
            subjects=[{"id": "数学", "weekly_hours": 5},
                      {"id": "社团", "weekly_hours": 1, "category": "creative_activity"}],
            teachers=[{"id": "t1", "subjects": ["数学", "社团"]}],
        )
        schedule = Schedule(data)
        tracker = TeacherHoursTracker(data)
        math = ScheduleSlot("数学", ["t1"])
        club = ScheduleSlot("社团", ["t1"])
        schedule.place("1-1", "周一", 1, math)
        tracker.add("1-1", math)
        schedule.place("1-1", "周一", 3, club)
        tracker.add("1-1", club)

        # 创意体验类不计入课时
        self.assertEqual(tracker.current("t1"), 1)
        self.assertEqual(tracker.class_hours("t1", "1-1"), 1)
        self.assertEqual(tracker.grade_hours("t1", 1), 1)
        self.assertEqual(tracker.mismatches(schedule), [])

        tracker.remove("1-1", math)
        self.assertEqual(tracker.current("t1"), 0)
        self.assertEqual(len(tracker.mismatches(schedule)), 1)


if __name__ == '__main__':
    unittest.main()
