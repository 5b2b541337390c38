import logging

from models import ScheduleSlot, SOURCE_FIXED

logger = logging.getLogger(__name__)


def apply_fixed_classes(data, schedule, tracker):
    """
    把固定课放进课表。
    班级停课、格子越界或已被占用的固定课会被跳过并记录，不会中断排课。
    返回 (成功数, 被拒绝的列表)。
    """
    applied = 0
    rejected = []

    for f in data.fixed_classes:
        reason = None
        if f.class_id not in data.classes_by_id:
            reason = "unknown_class"
        elif not data.is_class_enabled(f.class_id):
            reason = "class_disabled"
        elif not schedule.has_cell(f.class_id, f.day, f.period):
            reason = "period_out_of_range"
        elif schedule.get(f.class_id, f.day, f.period) is not None:
            reason = "cell_occupied"

        if reason is not None:
            logger.warning(f"跳过固定课 {f.class_id} {f.day} 第{f.period}节 {f.subject}: {reason}")
            rejected.append({
                "class_id": f.class_id,
                "day": f.day,
                "period": f.period,
                "subject": f.subject,
                "reason": reason,
            })
            continue

        slot = ScheduleSlot(
            subject=f.subject,
            teachers=f.teachers,
            is_co_teaching=bool(f.co_teachers),
            is_fixed=True,
            source=SOURCE_FIXED,
            main_teacher=f.teacher,
            co_teachers=f.co_teachers,
        )
        schedule.place(f.class_id, f.day, f.period, slot)
        tracker.add(f.class_id, slot)
        applied += 1

    logger.info(f"固定课: 成功 {applied} 节, 跳过 {len(rejected)} 节")
    return applied, rejected
