import collections
import logging

import pandas as pd

logger = logging.getLogger(__name__)


def calculate_schedule_stats(schedule, tracker=None):
    """统计课表填充情况"""
    total = schedule.total_cells()
    filled = schedule.filled_cells()
    subject_hours = collections.Counter()
    class_subject_hours = collections.defaultdict(collections.Counter)
    teacher_hours = collections.Counter()

    for class_id, _, _, slot in schedule.cells():
        if slot is None:
            continue
        subject_hours[slot.subject] += 1
        class_subject_hours[class_id][slot.subject] += 1
        for t in slot.teachers:
            teacher_hours[t] += 1

    if tracker is not None:
        # 以课时统计器为准 (创意体验类不计入)
        teacher_hours = {t: entry["current"] for t, entry in tracker.hours.items()}

    return {
        "total_slots": total,
        "filled_slots": filled,
        "empty_slots": total - filled,
        "fill_rate": round(filled / total * 100, 1) if total else 0.0,
        "subject_hours": dict(subject_hours),
        "teacher_hours": dict(teacher_hours),
        "class_subject_hours": {c: dict(counts) for c, counts in class_subject_hours.items()},
    }


def teacher_hours_frame(data, tracker):
    """老师课时表：当前课时 / 上限 / 使用率"""
    rows = []
    for t in data.teachers:
        current = tracker.current(t.id)
        rows.append({
            "teacher": t.id,
            "name": t.name,
            "current": current,
            "max": t.max_hours,
            "utilization": round(current / t.max_hours * 100, 1) if t.max_hours else 0.0,
        })
    return pd.DataFrame(rows, columns=["teacher", "name", "current", "max", "utilization"])


def class_hours_frame(data, schedule):
    """班级科目课时表：目标 / 已排 / 缺口"""
    rows = []
    for class_id in schedule.class_ids():
        for s in data.subjects:
            target = data.target_hours(class_id, s.id)
            placed = schedule.subject_count(class_id, s.id)
            if target == 0 and placed == 0:
                continue
            rows.append({
                "class_id": class_id,
                "subject": s.id,
                "target": target,
                "placed": placed,
                "missing": max(0, target - placed),
            })
    frame = pd.DataFrame(rows, columns=["class_id", "subject", "target", "placed", "missing"])
    if not frame.empty:
        frame = frame.sort_values(["missing", "class_id"], ascending=[False, True]).reset_index(drop=True)
    return frame


def summarize_shortfalls(data, schedule):
    """按科目汇总缺课数"""
    frame = class_hours_frame(data, schedule)
    if frame.empty:
        return {}
    grouped = frame.groupby("subject")["missing"].sum()
    return {subject: int(n) for subject, n in grouped.items() if n > 0}
