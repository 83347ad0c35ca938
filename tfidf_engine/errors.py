class PipelineError(Exception):
    """Base class for failures surfaced to the caller of a run."""


class DataflowError(PipelineError):
    """The dataflow graph is malformed."""


class EmptyCorpusError(PipelineError):
    """The token stream contained no documents, so no weight is defined."""


class MalformedRecordError(PipelineError, ValueError):
    pass


class BroadcastLimitError(PipelineError):
    pass


class TaskFailedError(PipelineError):
    def __init__(self, task_id: str, reason: str):
        super().__init__(f"task {task_id} failed: {reason}")
        self.task_id = task_id
        self.reason = reason


class RetriesExhaustedError(PipelineError):
    def __init__(self, task_id: str, attempts: int, reason: str):
        super().__init__(f"task {task_id} failed {attempts} time(s), giving up: {reason}")
        self.task_id = task_id
        self.attempts = attempts
        self.reason = reason


class NoWorkersError(PipelineError):
    """Tasks were pending but no worker was available to run them."""
