"""
Cron-driven trigger that enqueues job runs.

Expressions use the six-field form ``minutes hours day-of-month month
day-of-week year`` (always UTC), e.g. ``0 4 * * ? *`` for every day at
04:00. A seven-field form with a leading seconds field is also accepted.
Matching is delegated to APScheduler's CronTrigger.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterator, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from etl_automation.exceptions import ConfigurationError, QueueUnavailableError
from etl_automation.models import JobDefinition, JobRunRequest, utc_now


logger = logging.getLogger("etl_automation.scheduler")

WEEKDAY_NAMES = ['sun', 'mon', 'tue', 'wed', 'thu', 'fri', 'sat']
MONTH_NAMES = ['jan', 'feb', 'mar', 'apr', 'may', 'jun', 'jul', 'aug', 'sep', 'oct', 'nov', 'dec']
ORDINALS = {1: '1st', 2: '2nd', 3: '3rd', 4: '4th', 5: '5th'}
FIELD_MAXIMUMS = {
    'second': 59,
    'minute': 59,
    'hour': 23,
    'day': 31,
    'month': 12,
    'year': 2199,
}


def _weekday(token: str) -> str:
    """AWS weekday token (1-7 with 1=SUN, or SUN-SAT) to an APScheduler name."""
    t = token.strip().lower()
    if t in WEEKDAY_NAMES:
        return t
    if t.isdigit() and 1 <= int(t) <= 7:
        return WEEKDAY_NAMES[int(t) - 1]
    raise ConfigurationError(f"Invalid day-of-week value '{token}'")


def _expand_increments(value: str, name: str) -> str:
    """Rewrite ``a/b`` as ``a-max/b`` for each list element."""
    parts = []
    for part in value.split(','):
        base, sep, step = part.partition('/')
        if sep and base not in ('*', '') and '-' not in base:
            part = f"{base}-{FIELD_MAXIMUMS[name]}/{step}"
        parts.append(part)
    return ','.join(parts)


def _translate_day_fields(dom: str, dow: str):
    """
    Map the AWS day-of-month / day-of-week pair onto APScheduler's
    ``day`` and ``day_of_week`` fields.
    """
    if dom == '?' and dow == '?':
        raise ConfigurationError("Day-of-month and day-of-week cannot both be '?'")
    if dom != '?' and dow != '?':
        raise ConfigurationError("One of day-of-month or day-of-week must be '?'")

    if dow == '?':
        if 'W' in dom.upper():
            raise ConfigurationError("The 'W' (nearest weekday) modifier is not supported")
        if dom.upper() == 'L':
            return 'last', '*'
        return _expand_increments(dom, 'day'), '*'

    token = dow.strip()
    if '#' in token:
        day, _, nth = token.partition('#')
        if not nth.isdigit() or int(nth) not in ORDINALS:
            raise ConfigurationError(f"Invalid day-of-week occurrence '{dow}'")
        return f"{ORDINALS[int(nth)]} {_weekday(day)}", '*'
    if token.upper() == 'L':
        return '*', 'sat'
    if token.upper().endswith('L'):
        return f"last {_weekday(token[:-1])}", '*'
    if '/' in token:
        raise ConfigurationError(f"Increments are not supported in day-of-week '{dow}'")
    if token == '*':
        return '*', '*'

    names = []
    for part in token.split(','):
        first, sep, last = part.partition('-')
        names.append(f"{_weekday(first)}-{_weekday(last)}" if sep else _weekday(first))
    return '*', ','.join(names)


def _month_numbers(value: str) -> str:
    """Replace ``JAN``..``DEC`` with 1..12 so ranges keep their increments."""
    def number(token: str) -> str:
        t = token.strip().lower()
        if t in MONTH_NAMES:
            return str(MONTH_NAMES.index(t) + 1)
        return t

    parts = []
    for part in value.split(','):
        base, sep, step = part.partition('/')
        base = '-'.join(number(t) for t in base.split('-'))
        parts.append(f"{base}{sep}{step}")
    return ','.join(parts)


def _build_trigger(expression: str) -> CronTrigger:
    fields = (expression or '').split()
    if len(fields) == 6:
        second = '0'
    elif len(fields) == 7:
        second, fields = fields[0], fields[1:]
    else:
        raise ConfigurationError(
            f"Cron expression '{expression}' must have 6 fields "
            "(minutes hours day-of-month month day-of-week year)"
        )

    minute, hour, dom, month, dow, year = fields
    day, day_of_week = _translate_day_fields(dom, dow)

    try:
        return CronTrigger(
            second=_expand_increments(second, 'second'),
            minute=_expand_increments(minute, 'minute'),
            hour=_expand_increments(hour, 'hour'),
            day=day,
            month=_expand_increments(_month_numbers(month), 'month'),
            day_of_week=day_of_week,
            year=_expand_increments(year, 'year'),
            timezone='UTC',
        )
    except ValueError as e:
        raise ConfigurationError(f"Invalid cron expression '{expression}': {e}") from None


@dataclass(frozen=True)
class Schedule:
    """
    A validated cron expression, evaluated in UTC.

    The trigger is built on construction, so an invalid expression never
    yields a Schedule.
    """
    expression: str
    timezone: str = "UTC"
    trigger: CronTrigger = field(init=False, compare=False, repr=False)

    def __post_init__(self):
        object.__setattr__(self, 'trigger', _build_trigger(self.expression))

    @classmethod
    def parse(cls, expression: str) -> "Schedule":
        """
        Validate an expression and build its trigger.

        Raises:
            ConfigurationError: if the expression is malformed
        """
        return cls(expression=expression)

    def next_after(self, moment: datetime) -> Optional[datetime]:
        """First matching instant strictly after ``moment``."""
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        start = moment.astimezone(timezone.utc).replace(microsecond=0) + timedelta(seconds=1)
        nxt = self.trigger.get_next_fire_time(None, start)
        return nxt.astimezone(timezone.utc) if nxt else None

    def ticks(self, after: datetime) -> Iterator[datetime]:
        """Lazy, strictly increasing sequence of matching instants after ``after``."""
        current = after
        while True:
            nxt = self.next_after(current)
            if nxt is None:
                return
            yield nxt
            current = nxt


def fire(
    schedule: Schedule,
    clock: Callable[[], datetime] = utc_now,
    sleep: Callable[[float], None] = time.sleep,
    misfire_grace_seconds: int = 60,
) -> Iterator[datetime]:
    """
    Wall-clock driven fire times.

    Sleeps until each matching instant and yields it. A wake-up later than
    ``misfire_grace_seconds`` past the instant is skipped; missed windows
    are never caught up.
    """
    last = None
    while True:
        now = clock()
        nxt = schedule.next_after(now if last is None else max(now, last))
        if nxt is None:
            return

        delay = (nxt - now).total_seconds()
        if delay > 0:
            sleep(delay)

        woke = clock()
        last = nxt
        if (woke - nxt).total_seconds() > misfire_grace_seconds:
            logger.warning(f"Missed fire time {nxt.isoformat()} (woke at {woke.isoformat()}); skipping")
            continue
        yield nxt


class Scheduler:
    """
    Enqueues one JobRunRequest per fire of the schedule.

    Usage:
        scheduler = Scheduler(schedule, job_definition, queue)
        scheduler.start()   # APScheduler background thread
    """

    def __init__(
        self,
        schedule: Schedule,
        job_definition: JobDefinition,
        queue,
        clock: Callable[[], datetime] = utc_now,
        misfire_grace_seconds: int = 60,
    ):
        self.schedule = schedule
        self.job_definition = job_definition
        self.queue = queue
        self.clock = clock
        self.misfire_grace_seconds = misfire_grace_seconds
        self._background: Optional[BackgroundScheduler] = None

    def on_fire(self, fire_time: datetime) -> Optional[JobRunRequest]:
        """
        Enqueue a run for ``fire_time``.

        A rejected or failed enqueue is logged as a dropped fire and not
        retried; the next tick is unaffected.

        Returns:
            The accepted request, or None if the fire was dropped
        """
        request = JobRunRequest(
            job_definition_ref=self.job_definition.name,
            requested_at=fire_time,
        )
        try:
            result = self.queue.enqueue(request)
        except QueueUnavailableError as e:
            logger.error(f"Dropped fire at {fire_time.isoformat()}: queue unavailable ({e})")
            return None

        if not result.accepted:
            logger.warning(f"Dropped fire at {fire_time.isoformat()}: {result.reason}")
            return None

        logger.info(
            f"Enqueued run {request.request_id} of '{self.job_definition.name}' "
            f"for {fire_time.isoformat()}"
        )
        return request

    def run_forever(self, sleep: Callable[[float], None] = time.sleep) -> None:
        """Drive the schedule from the calling thread."""
        for fire_time in fire(self.schedule, self.clock, sleep, self.misfire_grace_seconds):
            self.on_fire(fire_time)

    def _fire_now(self) -> None:
        self.on_fire(self.clock().replace(microsecond=0))

    def start(self) -> BackgroundScheduler:
        """Run the schedule on an APScheduler background thread."""
        if self._background is not None:
            return self._background

        background = BackgroundScheduler(timezone='UTC')
        background.add_job(
            self._fire_now,
            trigger=self.schedule.trigger,
            id=f"fire-{self.job_definition.name}",
            coalesce=True,
            max_instances=1,
            misfire_grace_time=self.misfire_grace_seconds,
        )
        background.start()
        self._background = background
        logger.info(f"Scheduler started for '{self.job_definition.name}' ({self.schedule.expression} UTC)")
        return background

    def shutdown(self) -> None:
        if self._background is not None:
            self._background.shutdown(wait=False)
            self._background = None
            logger.info("Scheduler stopped")
