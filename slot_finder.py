import logging

from constraint_checker import LOW

logger = logging.getLogger(__name__)

# 第3节是上午的黄金时段
PREFERRED_PERIOD = 3


class CandidateSlot:
    def __init__(self, day, period, score, is_block=False):
        self.day = day
        self.period = period
        self.score = score
        self.is_block = is_block

    @property
    def next_period(self):
        return self.period + 1 if self.is_block else None

    def __repr__(self):
        return f"CandidateSlot({self.day}, {self.period}, score={self.score}, block={self.is_block})"


def score_slot(data, day, period, teachers):
    """越靠近第3节、越靠前的星期分数越高；落在老师可排时间内的额外加分"""
    score = 100 - abs(period - PREFERRED_PERIOD) * 10 - data.day_index.get(day, 0) * 5
    for t in teachers:
        teacher = data.teachers_by_id.get(t)
        if teacher is not None and (day, period) in teacher.available_times:
            score += 20
    return score


def find_slots(checker, class_id, subject_id, teachers, tier=LOW, emergency=False, rng=None, block=None):
    """
    列出某班某科目在当前课表下的所有可用格子，按分数从高到低排序。

    emergency=True 时只检查格子是否为空、老师是否重复占用，且只按单节课处理。
    rng 用于打乱同分格子的顺序，不传则按星期、节次排序。
    block 为 None 时按科目和老师自动判断是否连堂。
    """
    data = checker.data
    schedule = checker.schedule
    teachers = tuple(teachers)
    if emergency:
        block = False
    elif block is None:
        block = checker.is_block(subject_id, teachers, tier)

    candidates = []
    for day in schedule.days:
        for period in schedule.periods(class_id, day):
            if emergency:
                if not schedule.is_empty(class_id, day, period):
                    continue
                if any(schedule.teacher_classes(t, day, period) - {class_id} for t in teachers):
                    continue
            elif not checker.evaluate(class_id, day, period, subject_id, teachers, tier, block):
                continue
            candidates.append(CandidateSlot(day, period, score_slot(data, day, period, teachers), block))

    if rng is not None:
        rng.shuffle(candidates)
        candidates.sort(key=lambda c: -c.score)
    else:
        candidates.sort(key=lambda c: (-c.score, data.day_index.get(c.day, 0), c.period))
    return candidates
