class PipelineError(Exception):
    """Base exception for the task pipeline."""
    pass

class ConfigurationError(PipelineError):
    pass

class JobError(PipelineError):
    """Base exception for job queue errors."""
    pass

class JobNotFoundError(JobError):
    def __init__(self, job_id):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id

class InvalidJobStateError(JobError):
    def __init__(self, current_status, target_status):
        super().__init__(f"Cannot transition from {current_status} to {target_status}")

class UnrecoverableJobError(JobError):
    """
    Raised by a handler when retrying cannot help (malformed payload,
    unknown enum value). The queue drops the job after one attempt.
    """
    pass

class RecoverableJobError(JobError):
    """Transient dependency failure. The queue retries per the job's policy."""
    pass

class PerItemNotificationError(PipelineError):
    """A single notification inside a sweep failed. Never fails the parent job."""

    def __init__(self, task_id, recipient, reason):
        super().__init__(f"Notification for task {task_id} to {recipient} failed: {reason}")
        self.task_id = task_id
        self.recipient = recipient
        self.reason = reason

class TaskNotFoundError(PipelineError):
    def __init__(self, task_id):
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id

class TaskAccessError(PipelineError):
    pass
