from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional, TypeVar

from app.core.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class TaskOutcome:
    item: Any
    result: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class TaskRunner:
    """Detached background execution on a bounded thread pool.

    Every spawned task gets a done-callback that logs uncaught exceptions,
    so fire-and-forget work never fails silently.
    """

    def __init__(self, name: str, max_workers: int) -> None:
        self.name = name
        self.max_workers = max(1, max_workers)
        self._executor: ThreadPoolExecutor | None = None

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix=f"pagecast-{self.name}"
            )
        return self._executor

    def _log_failure(self, task_name: str, future: Future) -> None:
        if future.cancelled():
            logger.warning("[%s] task %s was cancelled", self.name, task_name)
            return
        exc = future.exception()
        if exc is not None:
            logger.error(
                "[%s] task %s failed: %s",
                self.name,
                task_name,
                exc,
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    def spawn(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> "Future[T]":
        task_name = f"{getattr(fn, '__name__', 'task')}{args!r}"
        future = self._get_executor().submit(fn, *args, **kwargs)
        future.add_done_callback(lambda done: self._log_failure(task_name, done))
        return future

    # 批量执行并等待全部结束，逐项返回结果或异常
    def map_wait(self, fn: Callable[[Any], T], items: Iterable[Any]) -> List[TaskOutcome]:
        items = list(items)
        futures = [self._get_executor().submit(fn, item) for item in items]
        wait(futures)
        outcomes: List[TaskOutcome] = []
        for item, future in zip(items, futures):
            exc = future.exception()
            if exc is not None:
                outcomes.append(TaskOutcome(item=item, error=exc))
            else:
                outcomes.append(TaskOutcome(item=item, result=future.result()))
        return outcomes

    def shutdown(self, wait: bool = False) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None


class InlineRunner(TaskRunner):
    """Runs tasks synchronously in the caller's thread (tests, CLI scripts)."""

    def __init__(self, name: str = "inline") -> None:
        super().__init__(name, 1)

    def spawn(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> "Future[T]":
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
            self._log_failure(f"{getattr(fn, '__name__', 'task')}{args!r}", future)
        return future

    def map_wait(self, fn: Callable[[Any], T], items: Iterable[Any]) -> List[TaskOutcome]:
        outcomes: List[TaskOutcome] = []
        for item in items:
            try:
                outcomes.append(TaskOutcome(item=item, result=fn(item)))
            except Exception as exc:
                outcomes.append(TaskOutcome(item=item, error=exc))
        return outcomes

    def shutdown(self, wait: bool = False) -> None:
        return None


# 书籍流水线、段落 TTS、远端迁移分别使用独立线程池，避免互相占满
book_runner = TaskRunner("book", settings.book_workers)
segment_runner = TaskRunner("segment", settings.segment_workers)
promotion_runner = TaskRunner("promotion", settings.promotion_workers)


def shutdown_runners(wait: bool = False) -> None:
    for runner in (book_runner, segment_runner, promotion_runner):
        runner.shutdown(wait=wait)
