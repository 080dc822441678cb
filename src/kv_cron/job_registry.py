from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

from kv_cron.errors import UnknownJob

JobHandler = Callable[[], Union[Awaitable[Any], Any]]


class JobRegistry:
    """
    Validated mapping of job name to zero-argument handler.
    Handlers may be plain functions or coroutine functions.
    """
    def __init__(self, jobs: Optional[Mapping[str, JobHandler]] = None):
        self._handlers: Dict[str, JobHandler] = {}
        for name, handler in (jobs or {}).items():
            self.register(name, handler)

    @property
    def names(self) -> frozenset:
        return frozenset(self._handlers)

    def register(self, name: str, handler: JobHandler) -> None:
        """
        Register a handler under a job name.

        Args:
            name (str): Unique job name, stored in every occurrence of this job.
            handler (JobHandler): Zero-argument callable run once per live delivery.

        Raises:
            ValueError: If the name is empty or taken, or the handler is not callable.
        """
        if not isinstance(name, str) or not name:
            raise ValueError(f"Job name must be a non-empty string, got {name!r}")
        if not callable(handler):
            raise ValueError(f"Handler for job '{name}' is not callable")
        if name in self._handlers:
            raise ValueError(f"A handler for job '{name}' is already registered")
        self._handlers[name] = handler

    def get_handler(self, name: str) -> JobHandler:
        """
        Raises:
            UnknownJob: If no handler is registered under the name.
        """
        if name not in self._handlers:
            raise UnknownJob(name)
        return self._handlers[name]

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)
