"""Alerting adapters implementing INotifier.

- LoggingNotifier  - writes alerts to the structured log (default)
- WebhookNotifier  - POSTs a JSON alert envelope to an HTTP endpoint

The webhook payload is::

    {
        "service": "migration-control-plane",
        "severity": "critical",
        "message": "...",
        "context": {...},
        "sent_at": "2026-01-01T00:00:00+00:00"
    }
"""

from typing import Any

import httpx

from migration_control_plane.core.models import AlertSeverity, utc_now
from migration_control_plane.errors import NotificationError
from migration_control_plane.observability import get_logger

logger = get_logger(__name__)

_DEFAULT_SERVICE_NAME = "migration-control-plane"

# Default webhook timeout in milliseconds
_DEFAULT_TIMEOUT_MS = 2000


class LoggingNotifier:
    """Notifier that only logs alerts. Suitable when no webhook is configured."""

    async def notify(
        self,
        severity: AlertSeverity,
        message: str,
        context: dict[str, Any],
    ) -> None:
        log = logger.error if severity is AlertSeverity.CRITICAL else logger.warning
        log("Operational alert", severity=severity.value, alert=message, **context)


class WebhookNotifier:
    """Async webhook client for operational alerts.

    Args:
        url: Endpoint receiving the alert envelope.
        timeout_ms: Hard timeout per delivery in milliseconds.
        service_name: Value of the ``service`` field in the envelope.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        url: str,
        timeout_ms: int = _DEFAULT_TIMEOUT_MS,
        service_name: str = _DEFAULT_SERVICE_NAME,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize WebhookNotifier.

        Args:
            url: Alert endpoint URL.
            timeout_ms: Delivery timeout in milliseconds.
            service_name: Service name reported in alerts.
            transport: Optional transport override.
        """
        self._url = url
        self._service_name = service_name
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_ms / 1000.0),
            transport=transport,
        )

    async def notify(
        self,
        severity: AlertSeverity,
        message: str,
        context: dict[str, Any],
    ) -> None:
        """Deliver an alert to the webhook.

        Args:
            severity: Alert severity.
            message: Human-readable summary.
            context: Structured details. Values are stringified if not JSON-native.

        Raises:
            NotificationError: If the request fails or the endpoint returns an error status.
        """
        payload = {
            "service": self._service_name,
            "severity": severity.value,
            "message": message,
            "context": {key: _jsonable(value) for key, value in context.items()},
            "sent_at": utc_now().isoformat(),
        }
        try:
            response = await self._client.post(self._url, json=payload)
        except httpx.HTTPError as exc:
            logger.error("Alert webhook request failed", url=self._url, error=str(exc))
            raise NotificationError(f"Alert webhook request failed: {exc}") from exc

        if response.status_code >= 400:
            logger.error(
                "Alert webhook rejected alert",
                url=self._url,
                status_code=response.status_code,
            )
            raise NotificationError(
                f"Alert webhook returned {response.status_code}",
                status_code=response.status_code,
            )

        logger.info("Alert delivered", severity=severity.value, status_code=response.status_code)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    return str(value)
