import logging

from models import ScheduleSlot, SOURCE_EMERGENCY, SOURCE_EMERGENCY_FALLBACK

logger = logging.getLogger(__name__)

# 老师没有任何任教科目时使用
FALLBACK_SUBJECT = "其他"


def _free(schedule, teacher_id, class_id, day, period):
    return not (schedule.teacher_classes(teacher_id, day, period) - {class_id})


def _subject_order(data, schedule, class_id):
    """缺课多的科目排前面，其余科目按原顺序跟在后面"""
    missing = {
        s.id: data.target_hours(class_id, s.id) - schedule.subject_count(class_id, s.id)
        for s in data.subjects
    }
    short = sorted((s for s in missing if missing[s] > 0), key=lambda s: -missing[s])
    return short, short + [s.id for s in data.subjects if s.id not in short]


def emergency_fill(data, schedule, tracker, allow_unqualified=False):
    """
    强制填满剩余空格，只保证老师不重复占用，其他规则全部忽略。
    填进去的课都带有 emergency 标记，方便人工复核。
    allow_unqualified=True 时，没有对口老师空闲的格子会交给任意空闲老师。
    返回填入的格子数。
    """
    filled = 0
    fallback = 0
    teachers = sorted(data.teachers, key=lambda x: str(x.id))

    for class_id, day, period in schedule.empty_cells():
        short, ordered = _subject_order(data, schedule, class_id)
        slot = None
        for subject_id in ordered:
            for t in data.qualified_teachers(subject_id):
                if _free(schedule, t, class_id, day, period):
                    slot = ScheduleSlot(subject_id, [t], source=SOURCE_EMERGENCY)
                    break
            if slot is not None:
                break

        if slot is None and allow_unqualified:
            for teacher in teachers:
                if _free(schedule, teacher.id, class_id, day, period):
                    if short:
                        subject_id = short[0]
                    else:
                        subject_id = teacher.subjects[0] if teacher.subjects else FALLBACK_SUBJECT
                    slot = ScheduleSlot(subject_id, [teacher.id], source=SOURCE_EMERGENCY_FALLBACK)
                    fallback += 1
                    break

        if slot is None:
            continue
        schedule.place(class_id, day, period, slot)
        tracker.add(class_id, slot)
        filled += 1

    if filled:
        logger.warning(f"紧急填充: 填入 {filled} 节 (其中非对口 {fallback} 节)，请人工复核")
    return filled
