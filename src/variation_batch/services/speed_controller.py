"""Adaptive pacing for calls to the image generation backend.

The controller keeps a bounded window of recent call outcomes and turns it
into a delay/parallelism recommendation. Computing a recommendation mutates
the controller's current delay and parallelism, so call
``get_speed_recommendation`` exactly once per decision point.

One controller belongs to one job run; call ``reset`` before reusing it.
"""

import time
from collections import deque
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

import structlog

from variation_batch.core.config import Settings

logger = structlog.get_logger()

MAX_PARALLELISM = 3
EMERGENCY_MIN_OBSERVATIONS = 5
EMERGENCY_RATE_LIMIT_HITS = 3
SPEED_UP_MAX_RESPONSE_MS = 30000
PARALLEL_MAX_RESPONSE_MS = 20000
PARALLEL_MIN_SUCCESS_RATE = 0.95
MILD_SLOWDOWN_FACTOR = 1.1


class ErrorType(str, Enum):
    """Classified cause of a failed call."""

    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    CLIENT_ERROR = "client_error"
    NONE = "none"


class AdjustmentType(str, Enum):
    """Kind of pacing change a recommendation makes."""

    SPEED_UP = "speed_up"
    SLOW_DOWN = "slow_down"
    MAINTAIN = "maintain"
    EMERGENCY_BRAKE = "emergency_brake"


@dataclass(frozen=True)
class SpeedObservation:
    """Outcome of one call to the generation backend."""

    success: bool
    response_time_ms: float
    error_type: ErrorType
    timestamp: float


@dataclass(frozen=True)
class SpeedMetrics:
    """Aggregates over the current observation window."""

    success_rate: float
    average_response_time: float
    error_rate: float
    rate_limit_hits: int
    timeouts: int
    server_errors: int


@dataclass(frozen=True)
class SpeedRecommendation:
    """Pacing decision derived from the window."""

    delay_ms: float
    parallelism: int
    reasoning: str
    confidence: float
    adjustment_type: AdjustmentType


@dataclass(frozen=True)
class SpeedControllerConfig:
    """Tuning knobs for the controller."""

    min_delay_ms: float = 500
    max_delay_ms: float = 10000
    base_delay_ms: float = 1500
    success_threshold: float = 0.85
    error_threshold: float = 0.15
    adjustment_factor: float = 1.3
    window_size: int = 20

    def __post_init__(self) -> None:
        if self.min_delay_ms < 0 or self.min_delay_ms > self.max_delay_ms:
            raise ValueError("min_delay_ms must be between 0 and max_delay_ms")
        if self.window_size < 1:
            raise ValueError("window_size must be at least 1")
        if self.adjustment_factor <= 1:
            raise ValueError("adjustment_factor must be greater than 1")

    @classmethod
    def from_settings(cls, settings: Settings) -> "SpeedControllerConfig":
        return cls(
            min_delay_ms=settings.speed_min_delay_ms,
            max_delay_ms=settings.speed_max_delay_ms,
            base_delay_ms=settings.speed_base_delay_ms,
            success_threshold=settings.speed_success_threshold,
            error_threshold=settings.speed_error_threshold,
            adjustment_factor=settings.speed_adjustment_factor,
            window_size=settings.speed_window_size,
        )


def classify_error(error_hint: object) -> ErrorType:
    """Map a raw error hint (message or HTTP status) to an ErrorType.

    Args:
        error_hint: Error message, status code, or None for no error

    Returns:
        The classified error type; unrecognised hints are client errors
    """
    if error_hint is None:
        return ErrorType.NONE
    if isinstance(error_hint, int) and not isinstance(error_hint, bool):
        error_hint = str(error_hint)
    if not isinstance(error_hint, str):
        return ErrorType.CLIENT_ERROR

    lowered = error_hint.lower()
    if "429" in error_hint or "rate limit" in lowered:
        return ErrorType.RATE_LIMIT
    if "timeout" in lowered:
        return ErrorType.TIMEOUT
    if error_hint.startswith("5"):
        return ErrorType.SERVER_ERROR
    return ErrorType.CLIENT_ERROR


class SpeedMetricsWindow:
    """Bounded ring of the most recent observations."""

    def __init__(self, window_size: int = 20) -> None:
        self.window_size = window_size
        self._observations: deque[SpeedObservation] = deque(maxlen=window_size)

    def __len__(self) -> int:
        return len(self._observations)

    @property
    def observations(self) -> list[SpeedObservation]:
        return list(self._observations)

    def record(
        self, success: bool, response_time_ms: float, error_hint: object = None
    ) -> SpeedObservation:
        """Classify and append an observation, evicting the oldest when full."""
        observation = SpeedObservation(
            success=success,
            response_time_ms=response_time_ms,
            error_type=classify_error(error_hint),
            timestamp=time.time(),
        )
        self._observations.append(observation)
        return observation

    def clear(self) -> None:
        self._observations.clear()

    def metrics(self) -> SpeedMetrics:
        """Aggregate the window; an empty window reports a healthy baseline."""
        total = len(self._observations)
        if total == 0:
            return SpeedMetrics(
                success_rate=1.0,
                average_response_time=0.0,
                error_rate=0.0,
                rate_limit_hits=0,
                timeouts=0,
                server_errors=0,
            )

        successes = sum(1 for o in self._observations if o.success)
        error_counts = {error_type: 0 for error_type in ErrorType}
        for observation in self._observations:
            error_counts[observation.error_type] += 1

        return SpeedMetrics(
            success_rate=successes / total,
            average_response_time=sum(o.response_time_ms for o in self._observations) / total,
            error_rate=(total - successes) / total,
            rate_limit_hits=error_counts[ErrorType.RATE_LIMIT],
            timeouts=error_counts[ErrorType.TIMEOUT],
            server_errors=error_counts[ErrorType.SERVER_ERROR],
        )


class AdaptiveSpeedController:
    """Feedback controller recommending delay and parallelism."""

    def __init__(self, config: SpeedControllerConfig | None = None) -> None:
        self.config = config or SpeedControllerConfig()
        self.window = SpeedMetricsWindow(self.config.window_size)
        self.current_delay_ms = self._base_delay()
        self.current_parallelism = 1

    def _base_delay(self) -> float:
        config = self.config
        return min(max(config.base_delay_ms, config.min_delay_ms), config.max_delay_ms)

    def _slower(self, factor: float) -> float:
        return min(self.current_delay_ms * factor, self.config.max_delay_ms)

    def _faster(self) -> float:
        return max(self.current_delay_ms / self.config.adjustment_factor, self.config.min_delay_ms)

    def record_result(
        self, success: bool, response_time_ms: float, error_hint: object = None
    ) -> None:
        """Record the outcome of one generation call."""
        observation = self.window.record(success, response_time_ms, error_hint)
        logger.debug(
            "Speed controller recorded result",
            success=success,
            response_time_ms=round(response_time_ms),
            error_type=observation.error_type.value,
            window=len(self.window),
        )

    def get_metrics(self) -> SpeedMetrics:
        return self.window.metrics()

    def get_speed_recommendation(self) -> SpeedRecommendation:
        """Compute the next pacing decision and apply it to controller state.

        Rules are checked in priority order and the first match wins:
        emergency brake, severe slowdown, speed up, mild slowdown, maintain.
        """
        metrics = self.window.metrics()
        config = self.config

        if (
            len(self.window) >= EMERGENCY_MIN_OBSERVATIONS
            and metrics.rate_limit_hits >= EMERGENCY_RATE_LIMIT_HITS
        ):
            self.current_delay_ms = self._slower(2)
            self.current_parallelism = 1
            recommendation = self._recommend(
                f"Emergency brake: {metrics.rate_limit_hits} rate limit hits detected",
                0.95,
                AdjustmentType.EMERGENCY_BRAKE,
            )
        elif metrics.error_rate > config.error_threshold * 2:
            self.current_delay_ms = self._slower(config.adjustment_factor)
            self.current_parallelism = 1
            recommendation = self._recommend(
                f"High error rate: {metrics.error_rate:.1%} - slowing down",
                0.8,
                AdjustmentType.SLOW_DOWN,
            )
        elif (
            metrics.success_rate > config.success_threshold
            and metrics.average_response_time < SPEED_UP_MAX_RESPONSE_MS
            and metrics.rate_limit_hits == 0
        ):
            self.current_delay_ms = self._faster()
            if (
                metrics.success_rate > PARALLEL_MIN_SUCCESS_RATE
                and metrics.average_response_time < PARALLEL_MAX_RESPONSE_MS
            ):
                self.current_parallelism = min(self.current_parallelism + 1, MAX_PARALLELISM)
            recommendation = self._recommend(
                f"High success rate: {metrics.success_rate:.1%} - speeding up",
                0.7,
                AdjustmentType.SPEED_UP,
            )
        elif metrics.error_rate > config.error_threshold:
            self.current_delay_ms = self._slower(MILD_SLOWDOWN_FACTOR)
            self.current_parallelism = max(self.current_parallelism - 1, 1)
            recommendation = self._recommend(
                f"Moderate error rate: {metrics.error_rate:.1%} - slight slowdown",
                0.6,
                AdjustmentType.SLOW_DOWN,
            )
        else:
            recommendation = self._recommend(
                f"Stable performance: {metrics.success_rate:.1%} success rate - maintaining speed",
                0.5,
                AdjustmentType.MAINTAIN,
            )

        if recommendation.adjustment_type is AdjustmentType.EMERGENCY_BRAKE:
            logger.warning(
                "Speed controller emergency brake",
                delay_ms=round(recommendation.delay_ms),
                rate_limit_hits=metrics.rate_limit_hits,
            )
        else:
            logger.info(
                "Speed controller recommendation",
                adjustment=recommendation.adjustment_type.value,
                delay_ms=round(recommendation.delay_ms),
                parallelism=recommendation.parallelism,
                reasoning=recommendation.reasoning,
            )
        return recommendation

    def _recommend(
        self, reasoning: str, confidence: float, adjustment_type: AdjustmentType
    ) -> SpeedRecommendation:
        return SpeedRecommendation(
            delay_ms=self.current_delay_ms,
            parallelism=self.current_parallelism,
            reasoning=reasoning,
            confidence=confidence,
            adjustment_type=adjustment_type,
        )

    def get_status(self) -> dict[str, Any]:
        """Snapshot for monitoring. Does not change controller state."""
        metrics = self.window.metrics()
        return {
            "metrics": asdict(metrics),
            "current_delay_ms": self.current_delay_ms,
            "current_parallelism": self.current_parallelism,
            "recent_results_count": len(self.window),
            "window_utilization": len(self.window) / self.config.window_size * 100,
        }

    def reset(self) -> None:
        """Restore base pacing and forget all observations."""
        self.window.clear()
        self.current_delay_ms = self._base_delay()
        self.current_parallelism = 1
        logger.debug("Speed controller reset", delay_ms=self.current_delay_ms)

    def set_emergency_mode(self, enable: bool) -> None:
        """Force maximum (or base) delay regardless of the window."""
        self.current_delay_ms = self.config.max_delay_ms if enable else self._base_delay()
        self.current_parallelism = 1
        if enable:
            logger.warning("Speed controller emergency mode enabled")
        else:
            logger.info("Speed controller emergency mode disabled")
