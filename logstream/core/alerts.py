"""Alert publisher for error-level log events."""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from logstream.core.backoff import ALERT_BUDGET, RetryBudget, Sleeper, run_with_backoff
from logstream.core.event import LogEvent

if TYPE_CHECKING:
    from logstream.backends.base import AlertBus

logger = logging.getLogger("logstream.alerts")

ALERT_SOURCE = "log.stream.processor"
ALERT_DETAIL_TYPE = "LogError"


@dataclass(frozen=True, slots=True)
class AlertEntry:
    """One message on the alert bus."""

    source: str
    detail_type: str
    detail: str
    bus: str

    def to_message(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "detailType": self.detail_type,
            "detail": self.detail,
            "bus": self.bus,
        }


def build_alert(event: LogEvent, bus: str) -> AlertEntry:
    return AlertEntry(
        source=ALERT_SOURCE,
        detail_type=ALERT_DETAIL_TYPE,
        detail=event.model_dump_json(),
        bus=bus,
    )


class AlertPublisher:
    """Publishes one alert per error event, with retry."""

    def __init__(
        self,
        bus: "AlertBus",
        bus_name: str,
        budget: RetryBudget = ALERT_BUDGET,
        sleeper: Sleeper | None = None,
    ) -> None:
        self.bus = bus
        self.bus_name = bus_name
        self.budget = budget
        self.sleeper = sleeper

    async def publish(self, event: LogEvent) -> bool:
        """Send an alert for ``event``.

        Returns:
            True once the bus accepted the alert, False if a backoff wait
            was cancelled first.

        Raises:
            The bus's last error once the retry budget is exhausted.
        """
        entry = build_alert(event, self.bus_name)

        async def send() -> bool:
            await self.bus.put_events([entry])
            return True

        result = await run_with_backoff(
            send, self.budget, sleeper=self.sleeper, description="alert publish"
        )
        if result is None:
            return False
        logger.debug(
            f"Published alert for service {event.service or '-'}",
            extra={"bus": self.bus_name, "service": event.service},
        )
        return True
