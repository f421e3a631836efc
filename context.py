# ===============================================================
# context.py: explicit application context
# ===============================================================
import random
import time
from dataclasses import dataclass, field
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings


def epoch_now() -> int:
    return int(time.time())


@dataclass
class AppContext:
    """
    Built once at startup and handed to every service and task.
    Nothing in the services reaches for module-level state.
    """

    settings: Settings
    session_factory: Callable[[], AsyncSession]
    clock: Callable[[], int] = epoch_now
    rng: random.Random = field(default_factory=random.Random)

    def now(self) -> int:
        return self.clock()
