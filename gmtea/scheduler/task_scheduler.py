"""
Periodic task driver.

Pending tasks run one after another, never concurrently, so a slow indexing
cycle delays the next tick instead of overlapping it.
"""

import asyncio
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from gmtea.utils.formatters import utc_now

logger = structlog.get_logger(__name__)


class ScheduledTask:
    """Represents a scheduled task."""
    
    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        interval_seconds: float,
        enabled: bool = True,
        run_immediately: bool = False
    ):
        self.name = name
        self.func = func
        self.interval_seconds = interval_seconds
        self.enabled = enabled
        self.last_run = None
        self.next_run = utc_now()
        self.run_count = 0
        self.error_count = 0
        self.last_error: Optional[str] = None
        
        if not run_immediately:
            self.schedule_next_run()
    
    def should_run(self) -> bool:
        """Check if task should run now."""
        return self.enabled and utc_now() >= self.next_run
    
    def schedule_next_run(self):
        """Schedule the next run."""
        self.next_run = utc_now() + timedelta(seconds=self.interval_seconds)
    
    async def run(self):
        """Execute the task. Errors are recorded and not raised."""
        start_time = utc_now()
        try:
            logger.debug("Running scheduled task", task=self.name)
            await self.func()
            self.run_count += 1
            logger.debug(
                "Task completed",
                task=self.name,
                duration=(utc_now() - start_time).total_seconds(),
                run_count=self.run_count
            )
        except Exception as e:
            self.error_count += 1
            self.last_error = str(e)
            logger.error(
                "Task failed",
                task=self.name,
                error=str(e),
                error_count=self.error_count
            )
        finally:
            self.last_run = start_time
            self.schedule_next_run()
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "interval_seconds": self.interval_seconds,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "next_run": self.next_run.isoformat(),
            "run_count": self.run_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
        }


class TaskScheduler:
    """Manages scheduled background tasks."""
    
    def __init__(self, loop_interval: float = 1.0):
        self.tasks: Dict[str, ScheduledTask] = {}
        self.running = False
        self.loop_interval = loop_interval
    
    def register_task(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        interval_seconds: float,
        enabled: bool = True,
        run_immediately: bool = False
    ) -> ScheduledTask:
        """Register a new scheduled task."""
        task = ScheduledTask(
            name=name,
            func=func,
            interval_seconds=interval_seconds,
            enabled=enabled,
            run_immediately=run_immediately
        )
        self.tasks[name] = task
        logger.info("Registered task", task=name, interval_seconds=interval_seconds)
        return task
    
    def set_interval(self, name: str, interval_seconds: float):
        """Change a task's interval; the next run is rescheduled from now."""
        task = self.tasks[name]
        task.interval_seconds = interval_seconds
        task.schedule_next_run()
        logger.info("Task interval changed", task=name, interval_seconds=interval_seconds)
    
    async def start(self):
        """Run pending tasks until stopped."""
        logger.info("Starting task scheduler")
        self.running = True
        
        while self.running:
            try:
                await self.run_pending_tasks()
                await asyncio.sleep(self.loop_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Task scheduler loop error", error=str(e))
                await asyncio.sleep(self.loop_interval)
        
        self.running = False
        logger.info("Task scheduler stopped")
    
    async def stop(self):
        """Stop after the task in flight, if any, finishes."""
        logger.info("Stopping task scheduler")
        self.running = False
    
    async def run_pending_tasks(self):
        for task in list(self.tasks.values()):
            if not self.running:
                break
            if task.should_run():
                await task.run()
    
    def health_check(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "tasks": {name: task.to_dict() for name, task in self.tasks.items()},
        }
