import logging

from error_handler import ScheduleError
from models import ScheduleSlot, SOURCE_SEARCH

logger = logging.getLogger(__name__)


def build_slots(day, period, subject_id, teachers, block=False, source=SOURCE_SEARCH,
                is_co_teaching=None, main_teacher=None, co_teachers=None, constraint_type=None):
    """生成一节课要占用的格子；连堂课占用 period 与 period + 1"""
    teachers = list(teachers)
    if is_co_teaching is None:
        is_co_teaching = len(teachers) > 1
    periods = [period, period + 1] if block else [period]
    cells = []
    for p in periods:
        partner = None
        if block:
            partner = period + 1 if p == period else period
        cells.append((day, p, ScheduleSlot(
            subject=subject_id,
            teachers=teachers,
            is_co_teaching=is_co_teaching,
            is_block_period=block,
            block_partner=partner,
            source=source,
            main_teacher=main_teacher,
            co_teachers=co_teachers,
            constraint_type=constraint_type,
        )))
    return cells


class PlacementRecord:
    """一次落子：可以原样撤销"""

    def __init__(self, class_id, cells, score=0, task_key=None):
        self.class_id = class_id
        self.cells = list(cells)
        self.score = score
        self.task_key = task_key

    @property
    def subject(self):
        return self.cells[0][2].subject if self.cells else None

    @property
    def day(self):
        return self.cells[0][0] if self.cells else None

    @property
    def period(self):
        return self.cells[0][1] if self.cells else None

    def apply(self, schedule, tracker):
        placed = []
        try:
            for day, period, slot in self.cells:
                schedule.place(self.class_id, day, period, slot)
                tracker.add(self.class_id, slot)
                placed.append((day, period, slot))
        except ScheduleError:
            # 连堂第二格失败时回滚第一格
            for day, period, slot in placed:
                schedule.remove(self.class_id, day, period, force=True)
                tracker.remove(self.class_id, slot)
            raise

    def undo(self, schedule, tracker):
        for day, period, slot in self.cells:
            if schedule.get(self.class_id, day, period) is slot:
                schedule.remove(self.class_id, day, period, force=True)
                tracker.remove(self.class_id, slot)

    def __repr__(self):
        return f"PlacementRecord({self.class_id} {self.day}{self.period} {self.subject} score={self.score})"


class PlacementHistory:
    """已提交落子的栈，回溯时从这里撤销"""

    def __init__(self):
        self._records = []

    def __len__(self):
        return len(self._records)

    def push(self, record):
        self._records.append(record)

    def recent(self, n):
        return self._records[-n:] if n > 0 else []

    def remove(self, record):
        self._records.remove(record)
