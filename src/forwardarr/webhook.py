import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

import requests
from requests.exceptions import RequestException

from forwardarr.errors import WebhookError

TEMPLATE_JSON = "json"
TEMPLATE_DISCORD = "discord"
TEMPLATE_SLACK = "slack"
TEMPLATE_GOTIFY = "gotify"
TEMPLATES = (TEMPLATE_JSON, TEMPLATE_DISCORD, TEMPLATE_SLACK, TEMPLATE_GOTIFY)

EVENT_PORT_CHANGED = "port_changed"
USER_AGENT = "Forwardarr-Webhook/1.0"
TITLE = "Port Change Notification"
DISCORD_BLUE = 3447003


@dataclass
class Payload:
    event: str
    timestamp: datetime
    old_port: int
    new_port: int
    message: str

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = _rfc3339(self.timestamp)
        return data


def _rfc3339(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class WebhookClient:
    """Send port change notifications to a webhook.

    ``events`` acts as an allow-list, except that an empty list lets every
    event through.
    """

    def __init__(
        self,
        url: str,
        timeout: float,
        template: str = TEMPLATE_JSON,
        events: Iterable[str] = (),
        session: Any = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self.template = template
        self.events = {event.strip() for event in events if event.strip()}
        self._session = session if session is not None else requests.Session()

    def send_port_change(
        self, old_port: int, new_port: int, timestamp: datetime | None = None
    ) -> bool:
        event = EVENT_PORT_CHANGED
        if self.events and event not in self.events:
            logging.debug("[webhook] Event %s filtered out", event)
            return False

        payload = Payload(
            event=event,
            timestamp=timestamp or datetime.now(timezone.utc),
            old_port=old_port,
            new_port=new_port,
            message=f"Port changed from {old_port} to {new_port}",
        )
        self._send(payload)
        return True

    def format(self, payload: Payload) -> dict[str, Any]:
        if self.template == TEMPLATE_DISCORD:
            return _format_discord(payload)
        if self.template == TEMPLATE_SLACK:
            return _format_slack(payload)
        if self.template == TEMPLATE_GOTIFY:
            return _format_gotify(payload)
        return payload.to_dict()

    def close(self) -> None:
        self._session.close()

    def _send(self, payload: Payload) -> None:
        body = json.dumps(self.format(payload))
        logging.debug(
            "[webhook] Sending %s to %s (template=%s)", payload.event, self.url, self.template
        )
        try:
            response = self._session.post(
                self.url,
                data=body,
                headers={"Content-Type": "application/json", "User-Agent": USER_AGENT},
                timeout=self.timeout,
            )
        except RequestException as exc:
            raise WebhookError(f"failed to send webhook: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise WebhookError(f"webhook returned non-2xx status: {response.status_code}")
        logging.info("[webhook] Sent to %s (status %s)", self.url, response.status_code)


def _format_discord(payload: Payload) -> dict[str, Any]:
    return {
        "content": payload.message,
        "embeds": [
            {
                "title": TITLE,
                "description": payload.message,
                "color": DISCORD_BLUE,
                "fields": [
                    {"name": "Event", "value": payload.event, "inline": True},
                    {"name": "Old Port", "value": str(payload.old_port), "inline": True},
                    {"name": "New Port", "value": str(payload.new_port), "inline": True},
                ],
                "timestamp": _rfc3339(payload.timestamp),
            }
        ],
    }


def _format_slack(payload: Payload) -> dict[str, Any]:
    return {
        "text": payload.message,
        "blocks": [
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*{TITLE}*\n{payload.message}"},
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Event:*\n{payload.event}"},
                    {"type": "mrkdwn", "text": f"*Old Port:*\n{payload.old_port}"},
                    {"type": "mrkdwn", "text": f"*New Port:*\n{payload.new_port}"},
                    {"type": "mrkdwn", "text": f"*Time:*\n{_rfc3339(payload.timestamp)}"},
                ],
            },
        ],
    }


def _format_gotify(payload: Payload) -> dict[str, Any]:
    return {
        "title": TITLE,
        "message": payload.message,
        "priority": 5,
        "extras": {
            "event": payload.event,
            "old_port": payload.old_port,
            "new_port": payload.new_port,
            "timestamp": _rfc3339(payload.timestamp),
        },
    }
