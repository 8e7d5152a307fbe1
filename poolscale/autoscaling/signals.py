"""
Scaling signals and the sources that measure them.

A :class:`SignalSource` returns one scalar per query. Sources never return a
default when the underlying system cannot answer: they raise
:class:`SignalUnavailable` so the owning scaler emits no vote.
"""
import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Dict, NamedTuple, Optional

import requests

from poolscale.autoscaling.errors import ConfigInvalid, SignalUnavailable
from poolscale.utils.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)


class SignalKind(Enum):
    """Kinds of scaling signal."""

    UTILIZATION = "utilization"  # Lagging resource saturation ratio
    EXTERNAL = "external"  # Leading external metric such as queue depth


class Signal:
    """Description of one measurable quantity owned by one trigger."""

    def __init__(self, name: str, kind: SignalKind, target: float, poll_interval: float = 15.0, trigger: Optional[str] = None):
        """Initialize a signal.

        Args:
            name: Signal name.
            kind: Signal kind.
            target: Target value per replica (utilization target or external threshold).
            poll_interval: Seconds between polls.
            trigger: Name of the owning trigger, defaults to the signal name.
        """
        self.name = name
        self.kind = kind
        self.target = float(target)
        self.poll_interval = float(poll_interval)
        self.trigger = trigger or name

    def __repr__(self) -> str:
        return f"Signal({self.name!r}, kind={self.kind.value}, target={self.target}, poll_interval={self.poll_interval})"


class SignalReading(NamedTuple):
    """Immutable snapshot of one poll."""

    signal_name: str
    value: float
    timestamp: float


class SignalSource(ABC):
    """Abstract pull-based source for a single scalar signal."""

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @abstractmethod
    def query(self) -> float:
        """Query the current value.

        Returns:
            Current signal value.

        Raises:
            SignalUnavailable: If the value cannot be obtained.
        """
        pass

    def read(self, clock: Callable[[], float] = time.monotonic) -> SignalReading:
        """Query the source and wrap the value in a timestamped reading.

        Raises:
            SignalUnavailable: If the value cannot be obtained or is not finite.
        """
        value = self.query()
        if value is None or math.isnan(value) or math.isinf(value):
            raise SignalUnavailable(self.name, f"non-finite value {value!r}")
        return SignalReading(self.name, value, clock())


class StaticSignalSource(SignalSource):
    """Source returning a fixed, externally settable value."""

    def __init__(self, name: str, value: float = 0.0):
        super().__init__(name)
        self.value = float(value)
        self.available = True

    def set_value(self, value: float) -> None:
        self.value = float(value)

    def query(self) -> float:
        if not self.available:
            raise SignalUnavailable(self.name, "source marked unavailable")
        return self.value


class CallableSignalSource(SignalSource):
    """Source delegating to a plain function.

    Any exception raised by the function is converted to SignalUnavailable.
    """

    def __init__(self, name: str, func: Callable[[], float]):
        super().__init__(name)
        self.func = func

    def query(self) -> float:
        try:
            return float(self.func())
        except SignalUnavailable:
            raise
        except Exception as e:
            raise SignalUnavailable(self.name, str(e)) from e


class PrometheusSignalSource(SignalSource):
    """Source evaluating a PromQL instant query over the Prometheus HTTP API."""

    def __init__(
        self,
        name: str,
        url: str,
        query: str,
        timeout: float = 5.0,
        empty_as_zero: bool = True,
        session: Optional[requests.Session] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        """Initialize Prometheus signal source.

        Args:
            name: Signal name.
            url: Prometheus base URL, e.g. ``http://prometheus:9090``.
            query: PromQL expression that evaluates to a single sample.
            timeout: HTTP timeout in seconds, so a stalled query cannot stall the poller.
            empty_as_zero: Treat an empty result vector as 0 (no series means no backlog).
            session: Optional requests session.
            circuit_breaker: Optional breaker; when open, queries fail fast.
        """
        super().__init__(name)
        self.url = url.rstrip("/")
        self.query_expr = query
        self.timeout = timeout
        self.empty_as_zero = empty_as_zero
        self.session = session or requests.Session()
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            name=f"prometheus-{name}", failure_threshold=3, recovery_timeout=60
        )

    def query(self) -> float:
        if not self.circuit_breaker.allow_request():
            raise SignalUnavailable(self.name, "circuit open")

        try:
            response = self.session.get(
                f"{self.url}/api/v1/query", params={"query": self.query_expr}, timeout=self.timeout
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as e:
            self.circuit_breaker.record_failure()
            raise SignalUnavailable(self.name, str(e)) from e

        try:
            value = self._parse_result(payload)
        except SignalUnavailable:
            self.circuit_breaker.record_failure()
            raise

        self.circuit_breaker.record_success()
        return value

    def _parse_result(self, payload: Dict[str, Any]) -> float:
        """Extract a scalar from a Prometheus query response.

        Args:
            payload: Decoded JSON response.

        Returns:
            Sample value. Vectors with several series are summed.
        """
        if payload.get("status") != "success":
            raise SignalUnavailable(self.name, payload.get("error", "query failed"))

        data = payload.get("data", {})
        result_type = data.get("resultType")
        result = data.get("result")

        try:
            if result_type in ("scalar", "string"):
                return float(result[1])
            if result_type == "vector":
                if not result:
                    if self.empty_as_zero:
                        return 0.0
                    raise SignalUnavailable(self.name, "empty result")
                return sum(float(sample["value"][1]) for sample in result)
        except (TypeError, KeyError, IndexError, ValueError) as e:
            raise SignalUnavailable(self.name, f"malformed result: {e}") from e

        raise SignalUnavailable(self.name, f"unsupported result type {result_type!r}")


def create_signal_source(name: str, source_config: Dict[str, Any]) -> SignalSource:
    """Create a signal source from its configuration block.

    Args:
        name: Signal name.
        source_config: ``source`` block of a trigger.

    Returns:
        Signal source instance.

    Raises:
        ConfigInvalid: If the source type is unknown or required fields are missing.
    """
    source_type = source_config.get("type", "static")

    if source_type == "prometheus":
        if not source_config.get("url") or not source_config.get("query"):
            raise ConfigInvalid(name, "prometheus source requires 'url' and 'query'")
        return PrometheusSignalSource(
            name,
            url=source_config["url"],
            query=source_config["query"],
            timeout=source_config.get("timeout", 5.0),
            empty_as_zero=source_config.get("empty_as_zero", True),
        )
    elif source_type == "static":
        return StaticSignalSource(name, source_config.get("value", 0.0))
    else:
        raise ConfigInvalid(name, f"unsupported signal source type {source_type!r}")


class SignalPoller:
    """Independent polling loop for one trigger.

    Each poller owns a daemon thread so a slow source only delays itself.
    """

    def __init__(
        self,
        source: SignalSource,
        interval: float,
        on_reading: Callable[[SignalReading], None],
        on_unavailable: Optional[Callable[[SignalUnavailable], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.source = source
        self.interval = interval
        self.on_reading = on_reading
        self.on_unavailable = on_unavailable
        self.clock = clock

        self.running = False
        self.thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self.logger = logging.getLogger(f"{__name__}.SignalPoller.{source.name}")

    def poll_once(self) -> Optional[SignalReading]:
        """Poll the source once and dispatch the result.

        Returns:
            The reading, or None if the signal was unavailable.
        """
        try:
            reading = self.source.read(self.clock)
        except SignalUnavailable as e:
            self.logger.warning(f"{e}; holding previous vote")
            if self.on_unavailable:
                self.on_unavailable(e)
            return None

        self.on_reading(reading)
        return reading

    def start(self) -> None:
        """Start the polling thread."""
        if self.running:
            self.logger.warning("Poller is already running")
            return

        self.running = True
        self._stop_event.clear()
        self.thread = threading.Thread(target=self._poll_loop, name=f"poller-{self.source.name}")
        self.thread.daemon = True
        self.thread.start()

    def stop(self) -> None:
        """Stop the polling thread."""
        self.running = False
        self._stop_event.set()
        if self.thread:
            self.thread.join(timeout=5.0)
            self.thread = None

    def _poll_loop(self) -> None:
        while self.running:
            try:
                self.poll_once()
            except Exception as e:
                self.logger.error(f"Error in polling loop: {e}")

            self._stop_event.wait(self.interval)
