'''
Circuit breaker guarding the job processor against a failing store.

CLOSED: jobs are dequeued normally.
OPEN: nothing is dequeued until the cooldown has elapsed.
HALF_OPEN: exactly one probe job is admitted; its outcome closes or re-opens.
'''
from dataclasses import dataclass, field
import enum
import time
from typing import Callable, Optional

from ..common.logger import log


class CircuitState(enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5  # consecutive store failures before opening
    cooldown_seconds: float = 60.0  # time spent open before a probe


@dataclass
class CircuitBreaker:
    name: str = "store"
    config: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    clock: Callable[[], float] = time.monotonic

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_count: int = field(default=0, init=False)
    _opened_at: Optional[float] = field(default=None, init=False)
    _probe_in_flight: bool = field(default=False, init=False)

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._cooldown_elapsed():
            return CircuitState.HALF_OPEN
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _cooldown_elapsed(self) -> bool:
        return self._opened_at is not None and self.clock() - self._opened_at >= self.config.cooldown_seconds

    def seconds_until_probe(self) -> float:
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self.config.cooldown_seconds - (self.clock() - self._opened_at))

    def allow_request(self) -> bool:
        """True when a job may be dequeued now. In HALF_OPEN only one probe is admitted."""
        if self._state == CircuitState.CLOSED:
            return True
        if self._state == CircuitState.OPEN:
            if not self._cooldown_elapsed():
                return False
            self._state = CircuitState.HALF_OPEN
            self._probe_in_flight = False
            log.info(f"Circuit {self.name}: OPEN -> HALF_OPEN")
        if self._probe_in_flight:
            return False
        self._probe_in_flight = True
        return True

    def record_success(self):
        if self._state == CircuitState.HALF_OPEN:
            log.info(f"Circuit {self.name}: HALF_OPEN -> CLOSED")
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = None
        self._probe_in_flight = False

    def record_failure(self):
        if self._state == CircuitState.HALF_OPEN:
            self._open()
            log.warning(f"Circuit {self.name}: HALF_OPEN -> OPEN (probe failed)")
            return
        self._failure_count += 1
        if self._state == CircuitState.CLOSED and self._failure_count >= self.config.failure_threshold:
            self._open()
            log.warning(f"Circuit {self.name}: CLOSED -> OPEN ({self._failure_count} failures)")

    def release_probe(self):
        """The probe ended without touching the store (e.g. a deterministic error)."""
        self._probe_in_flight = False

    def _open(self):
        self._state = CircuitState.OPEN
        self._opened_at = self.clock()
        self._probe_in_flight = False

    def reset(self):
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = None
        self._probe_in_flight = False
        log.info(f"Circuit {self.name}: manually reset to CLOSED")
