#!/usr/bin/env python3
"""
定时刷新调度
支持 Cron 表达式或固定间隔，watch 模式用它定时刷新/测速
"""
import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from croniter import croniter

from core.errors import ClashDashError
from utils.logger import log

Job = Callable[[], Awaitable[None]]


def is_valid_cron(cron_expression: str) -> bool:
    """验证Cron表达式是否有效"""
    return bool(cron_expression) and croniter.is_valid(cron_expression)


class RefreshScheduler:
    """
    刷新调度器

    cron_expression 优先；都没有配置时不启动
    """

    def __init__(self, job: Job, cron_expression: str = "", interval_minutes: float = 0):
        self.job = job
        self.cron_expression = cron_expression
        self.interval_minutes = interval_minutes
        self.runs = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def enabled(self) -> bool:
        return bool(self.cron_expression) or self.interval_minutes > 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def next_run(self, now: Optional[datetime] = None) -> Optional[datetime]:
        """获取下次执行时间"""
        now = now or datetime.now()
        if self.cron_expression:
            return croniter(self.cron_expression, now).get_next(datetime)
        if self.interval_minutes > 0:
            return now + timedelta(minutes=self.interval_minutes)
        return None

    def start(self) -> bool:
        if not self.enabled:
            log.debug("未配置定时任务")
            return False
        if self.cron_expression and not is_valid_cron(self.cron_expression):
            log.error(f"Cron表达式解析失败: {self.cron_expression}")
            return False
        if self.is_running:
            return True

        if self.cron_expression:
            log.info(f"⏰ Cron调度启动，表达式: {self.cron_expression}")
        else:
            log.info(f"⏰ 间隔调度启动，间隔: {self.interval_minutes}分钟")
        self._task = asyncio.create_task(self._loop())
        return True

    async def run_once(self):
        """执行一次任务，任务失败只记录日志，不影响后续调度"""
        self.runs += 1
        try:
            await self.job()
        except ClashDashError as e:
            log.warning(f"⚠️ 定时任务执行失败: {e.describe()}")
        except Exception as e:
            log.error(f"调度回调执行失败: {e}")

    async def _loop(self):
        while True:
            next_time = self.next_run()
            sleep_seconds = max((next_time - datetime.now()).total_seconds(), 0)
            log.info(f"下次执行时间: {next_time.strftime('%Y-%m-%d %H:%M:%S')}")
            await asyncio.sleep(sleep_seconds)
            log.info("定时调度触发执行")
            await self.run_once()

    async def stop(self):
        """停止调度"""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            log.info("调度器已停止")
        self._task = None
