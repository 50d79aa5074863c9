"""Handler notifications.

Each host gets its own Notifier. Tasks that report Changed notify handlers by
name; after every host of the play has finished its task list the engine
flushes the notifier, running each distinct handler exactly once in the order
it was first notified.
"""
import logging
from typing import Callable, Dict, List

from .models import TaskResult, TaskStatus

logger = logging.getLogger("kubeprov.notify")

HandlerRunner = Callable[[str], TaskResult]


class Notifier:
    """Insertion-ordered, de-duplicated set of pending handler names."""

    def __init__(self, host: str = ""):
        self.host = host
        self._pending: Dict[str, None] = {}

    def notify(self, name: str) -> None:
        if name not in self._pending:
            logger.debug(f"[{self.host}] handler '{name}' notified")
        self._pending[name] = None

    def pending(self) -> List[str]:
        return list(self._pending)

    def __len__(self) -> int:
        return len(self._pending)

    def __bool__(self) -> bool:
        return bool(self._pending)

    def drop(self) -> List[str]:
        """Discard pending notifications and return what was discarded."""
        dropped = self.pending()
        self._pending.clear()
        if dropped:
            logger.warning(f"⚠️  [{self.host}] dropping handlers after failure: {', '.join(dropped)}")
        return dropped

    def flush(self, runner: HandlerRunner) -> List[TaskResult]:
        """Run every pending handler once, in first-notified order.

        A failing handler stops the remaining ones for this host; they are
        reported as NOT_RUN and nothing is rolled back. The notifier is empty
        afterwards.
        """
        results: List[TaskResult] = []
        names = self.pending()
        self._pending.clear()
        for index, name in enumerate(names):
            result = runner(name)
            results.append(result)
            if result.failed:
                for skipped in names[index + 1:]:
                    results.append(TaskResult(
                        task=skipped,
                        host=self.host,
                        status=TaskStatus.NOT_RUN,
                        message=f"handler '{name}' failed",
                        handler=True,
                    ))
                break
        return results
