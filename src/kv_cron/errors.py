class KvCronError(Exception):
    """
    Base class for every error raised by kv_cron.
    """


class ScheduleError(KvCronError):
    """
    The schedule could not be turned into a cron expression or parsed by croniter.
    """


class EnqueueFailed(KvCronError):
    """
    The enqueue commit failed and the backoff schedule is exhausted.
    """

    def __init__(self, nonce: str, attempts: int):
        super().__init__(f"Failed to enqueue occurrence '{nonce}' after {attempts} attempt(s)")
        self.nonce = nonce
        self.attempts = attempts


class EnqueueConflict(EnqueueFailed):
    """
    The occurrence record changed under a checked enqueue, so retrying cannot succeed.
    """


class AbortFailed(KvCronError):
    def __init__(self, nonce: str):
        super().__init__(f"Failed to abort occurrence '{nonce}'")
        self.nonce = nonce


class UnknownJob(KvCronError, KeyError):
    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"No job registered with name '{self.name}'"


class ProcessFailed(KvCronError):
    def __init__(self, nonce: str, reason: str):
        super().__init__(f"Failed to process occurrence '{nonce}': {reason}")
        self.nonce = nonce
        self.reason = reason
