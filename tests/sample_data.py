import sys
import os

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from constraint_checker import ConstraintChecker
from models import Schedule, TeacherHoursTracker, TimetableData

DAYS = ["周一", "周二", "周三", "周四", "周五"]


def make_bundle(periods=7, grades=1, classes_per_grade=(1,), subjects=None, teachers=None, **extra):
    bundle = {
        "base": {
            "periods_per_day": {d: periods for d in DAYS},
            "grades": grades,
            "classes_per_grade": list(classes_per_grade),
        },
        "subjects": subjects or [],
        "teachers": teachers or [],
    }
    bundle.update(extra)
    return bundle


def make_data(**kwargs):
    return TimetableData.from_dict(make_bundle(**kwargs))


def make_state(data):
    schedule = Schedule(data)
    tracker = TeacherHoursTracker(data)
    checker = ConstraintChecker(data, schedule, tracker)
    return schedule, tracker, checker


def school_bundle():
    """一个年级两个班，每天6节，课时宽松，可以排满"""
    return make_bundle(
        periods=6,
        classes_per_grade=[2],
        subjects=[
            {"id": "语文", "weekly_hours": 5},
            {"id": "数学", "weekly_hours": 5},
            {"id": "英语", "weekly_hours": 4},
            {"id": "体育", "weekly_hours": 2, "block": True},
            {"id": "美术", "weekly_hours": 2},
        ],
        teachers=[
            {"id": "t_yw", "subjects": ["语文"]},
            {"id": "t_sx", "subjects": ["数学"]},
            {"id": "t_yy", "subjects": ["英语"]},
            {"id": "t_ty", "subjects": ["体育"]},
            {"id": "t_ms", "subjects": ["美术"]},
        ],
    )


def overloaded_bundle():
    """一个班每周只有10格，却要上12节语文，老师周五还不能上课"""
    return make_bundle(
        periods=2,
        subjects=[{"id": "语文", "weekly_hours": 12}],
        teachers=[{"id": "t_yw", "subjects": ["语文"], "unavailable": [["周五", 1], ["周五", 2]]}],
    )


def unavailable_fixed_bundle():
    """固定课落在老师不可排的时段上，排课能完成但校验不通过"""
    return make_bundle(
        periods=2,
        subjects=[{"id": "班会", "weekly_hours": 1}],
        teachers=[{"id": "H", "subjects": ["班会"], "unavailable": [["周一", 1]]}],
        fixed_classes=[{"day": "周一", "period": 1, "class_id": "1-1", "subject": "班会", "teacher": "H"}],
    )
