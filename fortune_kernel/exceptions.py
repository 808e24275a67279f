"""
Typed Exception Hierarchy for the fortune batch layer.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Batch jobs record failures into persistent run records and the admin
dashboard renders them.  Callers must be able to react to an error by TYPE
(and by a stable ``code``) rather than by parsing message text:

    try:
        store.finalize(run_id, JobRunStatus.COMPLETED)
    except RunAlreadyFinalizedError as e:
        log.warning("run %s already %s", e.run_id, e.status)

Every exception:
  1. has a ``code`` class attribute (machine-readable, API-safe)
  2. carries its context as structured attributes, not only a message

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    FortuneKernelError (base)
    |
    +-- JobRunError
    |   +-- JobRunNotFoundError
    |   +-- RunAlreadyFinalizedError
    |   +-- RunCounterError
    |
    +-- ScheduleError
    |   +-- InvalidScheduleTimeError
    |   +-- InvalidCronExpressionError
    |   +-- JobNotRegisteredError
    |
    +-- InvalidRunParametersError
    |
    +-- ConfigurationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category   | Code                     | When Raised
-----------|--------------------------|------------------------------------------
Run        | JOB_RUN_NOT_FOUND        | Run id doesn't exist
           | RUN_ALREADY_FINALIZED    | Update/finalize on a terminal run
           | RUN_COUNTER_INVALID      | Counter decreased or exceeded its bound
-----------|--------------------------|------------------------------------------
Schedule   | INVALID_SCHEDULE_TIME    | Time setting is not HH:MM (24h)
           | INVALID_CRON_EXPRESSION  | Cron expression cannot be parsed
           | JOB_NOT_REGISTERED       | Scheduler has no job with that name
-----------|--------------------------|------------------------------------------
Params     | INVALID_RUN_PARAMETERS   | Run-now request failed validation
-----------|--------------------------|------------------------------------------
Config     | CONFIGURATION_ERROR      | Settings file or env value is invalid
"""


class FortuneKernelError(Exception):
    """
    Base exception for all fortune batch errors.

    All subclasses must have a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "FORTUNE_KERNEL_ERROR"


# Run-record exceptions


class JobRunError(FortuneKernelError):
    """Base exception for run-record errors."""

    code: str = "JOB_RUN_ERROR"


class JobRunNotFoundError(JobRunError):
    """Run record with the given id was not found."""

    code: str = "JOB_RUN_NOT_FOUND"

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Job run not found: {run_id}")


class RunAlreadyFinalizedError(JobRunError):
    """Run record is in a terminal state and cannot change."""

    code: str = "RUN_ALREADY_FINALIZED"

    def __init__(self, run_id: str, status: str, requested_status: str | None = None):
        self.run_id = run_id
        self.status = status
        self.requested_status = requested_status
        if requested_status:
            message = (
                f"Run {run_id} is already {status}; "
                f"cannot move to {requested_status}"
            )
        else:
            message = f"Run {run_id} is already {status}; it cannot be updated"
        super().__init__(message)


class RunCounterError(JobRunError):
    """Progress counters would decrease or break their ordering."""

    code: str = "RUN_COUNTER_INVALID"

    def __init__(self, run_id: str, counter: str, current: int, requested: int):
        self.run_id = run_id
        self.counter = counter
        self.current = current
        self.requested = requested
        super().__init__(
            f"Run {run_id}: counter {counter} cannot go from {current} to {requested}"
        )


# Schedule exceptions


class ScheduleError(FortuneKernelError):
    """Base exception for scheduling errors."""

    code: str = "SCHEDULE_ERROR"


class InvalidScheduleTimeError(ScheduleError):
    """A scheduled-time setting is not a valid 24-hour HH:MM string."""

    code: str = "INVALID_SCHEDULE_TIME"

    def __init__(self, value: object):
        self.value = value
        super().__init__(f"Invalid schedule time {value!r}; expected HH:MM (24h)")


class InvalidCronExpressionError(ScheduleError):
    """A cron expression cannot be parsed."""

    code: str = "INVALID_CRON_EXPRESSION"

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f"Invalid cron expression '{expression}': {reason}")


class JobNotRegisteredError(ScheduleError):
    """The scheduler has no job definition with this name."""

    code: str = "JOB_NOT_REGISTERED"

    def __init__(self, job_name: str, available: tuple[str, ...] = ()):
        self.job_name = job_name
        self.available = available
        super().__init__(
            f"No job registered as '{job_name}'. Available: {list(available)}"
        )


# Parameter / configuration exceptions


class InvalidRunParametersError(FortuneKernelError):
    """A run request carries parameters outside the accepted range."""

    code: str = "INVALID_RUN_PARAMETERS"

    def __init__(self, parameter: str, value: object, reason: str):
        self.parameter = parameter
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {parameter}={value!r}: {reason}")


class ConfigurationError(FortuneKernelError):
    """Runtime settings could not be loaded."""

    code: str = "CONFIGURATION_ERROR"

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Configuration error in {source}: {reason}")
