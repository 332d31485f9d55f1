import asyncio
import logging
import os
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable
from zoneinfo import ZoneInfo

from telegram import Bot

import db
import ui
from transport import TelegramTransport

LOGGER = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH") or os.getenv("DATABASE_URL", "")
OVERDUE_CHECK_TIME = os.getenv("OVERDUE_CHECK_TIME", "09:00")
UPCOMING_CHECK_TIME = os.getenv("UPCOMING_CHECK_TIME", "18:00")
NOTIFY_TIMEZONE = os.getenv("NOTIFY_TIMEZONE", "")

# Fixed wall-clock period: fire times shift by the DST offset twice a year.
RECURRING_PERIOD = timedelta(hours=24)


def parse_hhmm(value: str) -> tuple[int, int]:
    h, m = value.split(":", 1)
    hour, minute = int(h), int(m)
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError(f"invalid time of day: {value!r}")
    return hour, minute


def notify_tz() -> ZoneInfo | None:
    return ZoneInfo(NOTIFY_TIMEZONE) if NOTIFY_TIMEZONE else None


def next_fire(hour: int, minute: int, now: datetime) -> datetime:
    """First occurrence of hour:minute strictly after ``now``."""
    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return target


class JobState(str, Enum):
    IDLE = "idle"
    ARMED_ONCE = "armed_once"
    RECURRING = "recurring"


@dataclass
class DailyJob:
    name: str
    hour: int
    minute: int
    job: Callable[[], Awaitable]
    state: JobState = JobState.IDLE
    first_fire: datetime | None = None
    fired: int = 0
    task: asyncio.Task | None = field(default=None, repr=False)


class NotificationScheduler:
    """Daily overdue and upcoming reminders.

    Each job sleeps once until its first fire time, then every 24 hours. Job bodies run as
    detached tasks so a slow sweep never holds up the timer or update handling. Delivery is
    at-least-once: nothing records what was already sent, so a restart after a fire but
    before the sweep finished sends the same reminder again.
    """

    def __init__(self, transport, db_path: str, tz: ZoneInfo | None = None, clock=None, sleep=asyncio.sleep):
        self.transport = transport
        self.db_path = db_path
        self.tz = tz
        self._clock = clock or (lambda: datetime.now(tz))
        self._sleep = sleep
        self.jobs: dict[str, DailyJob] = {}
        self._runs: set[asyncio.Task] = set()

    def today(self) -> date:
        return self._clock().date()

    def start(
        self,
        overdue_time: str = OVERDUE_CHECK_TIME,
        upcoming_time: str = UPCOMING_CHECK_TIME,
    ) -> None:
        self.schedule_daily("overdue", *parse_hhmm(overdue_time), self.check_overdue_tasks)
        self.schedule_daily("upcoming", *parse_hhmm(upcoming_time), self.check_upcoming_tasks)

    def schedule_daily(self, name: str, hour: int, minute: int, job: Callable[[], Awaitable]) -> DailyJob:
        if name in self.jobs and self.jobs[name].task is not None:
            self.jobs[name].task.cancel()
        daily = DailyJob(name=name, hour=hour, minute=minute, job=job)
        now = self._clock()
        daily.first_fire = next_fire(hour, minute, now)
        delay = (daily.first_fire - now).total_seconds()
        daily.state = JobState.ARMED_ONCE
        daily.task = asyncio.create_task(self._run_daily(daily, delay), name=f"daily:{name}")
        self.jobs[name] = daily
        LOGGER.info("job %s armed, first fire at %s", name, daily.first_fire.isoformat())
        return daily

    async def _run_daily(self, daily: DailyJob, delay: float) -> None:
        await self._sleep(delay)
        while True:
            self._fire(daily)
            daily.state = JobState.RECURRING
            await self._sleep(RECURRING_PERIOD.total_seconds())

    def _fire(self, daily: DailyJob) -> None:
        daily.fired += 1
        run = asyncio.create_task(self._run_job(daily), name=f"run:{daily.name}")
        self._runs.add(run)
        run.add_done_callback(self._runs.discard)

    async def _run_job(self, daily: DailyJob) -> None:
        try:
            await daily.job()
        except Exception:
            LOGGER.exception("job %s failed", daily.name)

    async def stop(self) -> None:
        pending = [d.task for d in self.jobs.values() if d.task is not None] + list(self._runs)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for daily in self.jobs.values():
            daily.state = JobState.IDLE
            daily.task = None

    async def run_check(self, kind: str) -> int:
        checks = {"overdue": self.check_overdue_tasks, "upcoming": self.check_upcoming_tasks}
        if kind not in checks:
            raise ValueError(f"unknown check {kind!r}")
        return await checks[kind]()

    async def check_overdue_tasks(self) -> int:
        today = self.today()
        tasks = db.list_open_tasks_due_between(self.db_path, None, today)
        return await self._send_grouped(tasks, "overdue_title", "overdue_line")

    async def check_upcoming_tasks(self) -> int:
        tomorrow = self.today() + timedelta(days=1)
        tasks = db.list_open_tasks_due_between(self.db_path, tomorrow, tomorrow + timedelta(days=1))
        return await self._send_grouped(tasks, "upcoming_title", "upcoming_line")

    async def _send_grouped(self, tasks: list[dict], title_key: str, line_key: str) -> int:
        by_user: dict[int, list[dict]] = defaultdict(list)
        for task in tasks:
            if task["assigned_to"] is not None:
                by_user[task["assigned_to"]].append(task)

        project_names: dict[int, str] = {}
        sent = 0
        for user_id, items in by_user.items():
            try:
                lines = [ui.text("notifications", title_key, count=len(items))]
                for idx, task in enumerate(items, start=1):
                    pid = task["project_id"]
                    if pid not in project_names:
                        project = db.get_project(self.db_path, pid)
                        project_names[pid] = project["name"] if project else ui.text("views", "unknown_project")
                    lines.append(
                        ui.text(
                            "notifications",
                            line_key,
                            index=idx,
                            task=task["name"],
                            project=project_names[pid],
                            due=task["due_date"],
                            status=task["status"],
                        )
                    )
                delivery = await self.transport.send_message(user_id, "\n\n".join(lines))
                if delivery.ok:
                    sent += 1
                else:
                    LOGGER.warning("%s reminder to %s not delivered: %s", title_key, user_id, delivery.error)
            except Exception:
                LOGGER.exception("reminder for user failed: %s", user_id)
        LOGGER.info("%s: %s of %s recipients notified", title_key, sent, len(by_user))
        return sent


async def _check_with(bot: Bot, kind: str) -> int:
    db.init_db(DB_PATH)
    scheduler = NotificationScheduler(TelegramTransport(bot), DB_PATH, tz=notify_tz())
    return await scheduler.run_check(kind)


async def run_tick_once(kind: str, bot: Bot | None = None) -> int:
    if bot is not None:
        return await _check_with(bot, kind)

    token = os.getenv("BOT_TOKEN")
    if not token:
        raise RuntimeError("BOT_TOKEN is required")
    async with Bot(token=token) as local_bot:
        return await _check_with(local_bot, kind)


async def loop_worker() -> None:
    token = os.getenv("BOT_TOKEN")
    if not token:
        raise RuntimeError("BOT_TOKEN is required")

    db.init_db(DB_PATH)
    async with Bot(token=token) as bot:
        scheduler = NotificationScheduler(TelegramTransport(bot), DB_PATH, tz=notify_tz())
        scheduler.start()
        try:
            await asyncio.Event().wait()
        finally:
            await scheduler.stop()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(loop_worker())
