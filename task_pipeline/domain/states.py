from enum import StrEnum, auto

class JobName(StrEnum):
    STATUS_UPDATE = "status-update"
    OVERDUE_SWEEP = "overdue-sweep"

class JobStatus(StrEnum):
    PENDING = auto()    # Waiting (or delayed by backoff until available_at)
    ACTIVE = auto()     # Claimed by a worker slot
    COMPLETED = auto()  # Acked, kept only when remove_on_complete is off
    FAILED = auto()     # Terminal: attempts exhausted, kept for operators
    DISCARDED = auto()  # Unrecoverable payload, never retried

class JobEvent(StrEnum):
    CREATED = auto()
    STARTED = auto()
    COMPLETED = auto()
    RETRIED = auto()
    FAILED = auto()
    DISCARDED = auto()
    STALLED = auto()
    REQUEUED = auto()

class TaskStatus(StrEnum):
    PENDING = auto()
    IN_PROGRESS = auto()
    COMPLETED = auto()

class TaskPriority(StrEnum):
    LOW = auto()
    MEDIUM = auto()
    HIGH = auto()
