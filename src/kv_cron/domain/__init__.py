from .schedule import CronSchedule, CronScheduleRange, Schedule
from .occurrence import Occurrence, OccurrenceRecord, EnqueueOptions

__all__ = ["CronSchedule", "CronScheduleRange", "Schedule", "Occurrence", "OccurrenceRecord", "EnqueueOptions"]
