import logging

from constraint_checker import CRITICAL, LOW
from history import PlacementRecord, build_slots
from models import CONSTRAINT_CO_TEACHING, SOURCE_CONSTRAINT
from slot_finder import find_slots

logger = logging.getLogger(__name__)


def target_subjects(data, constraint):
    """约束指定了科目就只排该科目，否则排主讲老师的全部科目"""
    if constraint.subject:
        return [constraint.subject]
    main = data.teachers_by_id.get(constraint.main_teacher)
    return list(main.subjects) if main else []


def secondary_pool(data, constraint, subject_id):
    """能与主讲老师协同上这门课的老师 (允许等价科目互相替代，如外教口语与英语)"""
    allowed = data.equivalent_subjects(subject_id)
    pool = []
    for t in constraint.co_teachers:
        teacher = data.teachers_by_id.get(t)
        if teacher is not None and t != constraint.main_teacher and allowed & set(teacher.subjects):
            pool.append(t)
    return pool


class CoTeachingResolver:
    """按协同授课约束先行排课，让协同老师的参与次数尽量均衡"""

    def __init__(self, data, schedule, tracker, checker, rng=None, tier=LOW):
        self.data = data
        self.schedule = schedule
        self.tracker = tracker
        self.checker = checker
        self.rng = rng
        self.tier = tier

    def resolve(self):
        summary = {"placed": 0, "shortfalls": [], "participation": {}}

        for constraint in self.data.constraints_of_type(CONSTRAINT_CO_TEACHING):
            main = self.data.teachers_by_id.get(constraint.main_teacher)
            if main is None:
                logger.warning(f"协同授课约束的主讲老师 {constraint.main_teacher} 不存在，跳过")
                continue
            counts = {t: 0 for t in constraint.co_teachers}
            subjects = target_subjects(self.data, constraint)

            for class_unit in self.data.enabled_classes():
                allocation = main.allocation_for(class_unit)
                if not allocation:
                    continue
                if class_unit.id in main.class_hours:
                    remaining = allocation - self.tracker.class_hours(main.id, class_unit.id)
                else:
                    # 年级课时是整个年级共用的上限
                    remaining = allocation - self.tracker.grade_hours(main.id, class_unit.grade)

                for subject_id in subjects:
                    if remaining <= 0:
                        break
                    left = self.data.target_hours(class_unit.id, subject_id) - \
                        self.schedule.subject_count(class_unit.id, subject_id)
                    need = min(remaining, left)
                    if need <= 0:
                        continue
                    pool = secondary_pool(self.data, constraint, subject_id)
                    if not pool:
                        logger.warning(f"{main.id} 在 {class_unit.id} 的「{subject_id}」没有可用的协同老师")
                        summary["shortfalls"].append({
                            "main_teacher": main.id, "class_id": class_unit.id,
                            "subject": subject_id, "missing": need, "reason": "no_secondary_teacher",
                        })
                        continue

                    placed = self._place_sessions(constraint, class_unit.id, subject_id, main.id, pool, need, counts)
                    summary["placed"] += placed
                    remaining -= placed
                    if placed < need:
                        summary["shortfalls"].append({
                            "main_teacher": main.id, "class_id": class_unit.id,
                            "subject": subject_id, "missing": need - placed, "reason": "no_available_slots",
                        })

            summary["participation"][main.id] = counts
            logger.info(f"协同授课 {main.id}: 参与次数 {counts}")

        return summary

    def _place_sessions(self, constraint, class_id, subject_id, main, pool, need, counts):
        candidates = find_slots(self.checker, class_id, subject_id, (main,), self.tier, rng=self.rng)
        emergency = False
        if not candidates:
            logger.warning(f"{class_id} 的协同课「{subject_id}」没有正常时段，改用紧急模式")
            candidates = find_slots(self.checker, class_id, subject_id, (main,), self.tier,
                                    emergency=True, rng=self.rng)
            emergency = True

        tier = CRITICAL if emergency else self.tier
        wanted = max(1, constraint.max_teachers - 1)
        placed = 0
        for cand in candidates:
            if placed >= need:
                break
            block = cand.is_block and need - placed >= 2
            eligible = [
                t for t in pool
                if self.checker.evaluate(class_id, cand.day, cand.period, subject_id, (main, t), tier, block)
            ]
            if not eligible:
                continue
            chosen = self._pick_secondaries(eligible, counts, wanted)
            cells = build_slots(
                cand.day, cand.period, subject_id, [main] + chosen,
                block=block, source=SOURCE_CONSTRAINT, is_co_teaching=True,
                main_teacher=main, co_teachers=chosen, constraint_type=CONSTRAINT_CO_TEACHING,
            )
            PlacementRecord(class_id, cells, score=cand.score).apply(self.schedule, self.tracker)
            for t in chosen:
                counts[t] = counts.get(t, 0) + 1
            placed += len(cells)
        return placed

    def _pick_secondaries(self, eligible, counts, wanted):
        """参与次数最少的老师优先，同分时随机 (可复现)"""
        chosen = []
        remaining = sorted(eligible)
        while remaining and len(chosen) < wanted:
            low = min(counts.get(t, 0) for t in remaining)
            ties = [t for t in remaining if counts.get(t, 0) == low]
            pick = self.rng.choice(ties) if self.rng is not None else ties[0]
            chosen.append(pick)
            remaining.remove(pick)
        return chosen


def validate_co_teaching(data, schedule):
    """检查主讲老师的每节目标科目课是否都有协同老师"""
    violations = []
    for constraint in data.constraints_of_type(CONSTRAINT_CO_TEACHING):
        subjects = set(target_subjects(data, constraint))
        partners = set(constraint.co_teachers)
        for class_id, day, period, slot in schedule.cells():
            if slot is None or slot.is_fixed or constraint.main_teacher not in slot.teachers:
                continue
            if slot.subject not in subjects:
                continue
            if not slot.is_co_teaching or not partners & set(slot.teachers):
                violations.append({
                    "rule": "co_teaching_missing_partner",
                    "class_id": class_id,
                    "day": day,
                    "period": period,
                    "teacher": constraint.main_teacher,
                    "subject": slot.subject,
                    "message": f"{class_id} {day} 第{period}节 主讲老师 {constraint.main_teacher} 缺少协同老师",
                })
    for class_id, day, period, slot in schedule.cells():
        if slot is not None and slot.constraint_type == CONSTRAINT_CO_TEACHING and len(slot.teachers) < 2:
            violations.append({
                "rule": "co_teaching_structure",
                "class_id": class_id,
                "day": day,
                "period": period,
                "teacher": slot.main_teacher,
                "subject": slot.subject,
                "message": f"{class_id} {day} 第{period}节 协同课少于两位老师",
            })
    return violations
