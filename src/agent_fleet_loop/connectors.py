"""Outbound connector messaging (chat platform bridges)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from loguru import logger


@dataclass(frozen=True)
class ConnectorInfo:
    id: str
    platform: str
    recent_channel_id: str | None = None


@dataclass(frozen=True)
class SentMessage:
    connector_id: str
    channel_id: str
    message_id: str | None = None


@runtime_checkable
class ConnectorSender(Protocol):
    def list_running(self) -> list[ConnectorInfo]: ...

    async def send_message(self, *, connector_id: str | None, channel_id: str, text: str) -> SentMessage: ...


class NullConnectorSender:
    """Sender used when no chat platform bridge is running; logs and reports nothing running."""

    def list_running(self) -> list[ConnectorInfo]:
        return []

    async def send_message(self, *, connector_id: str | None, channel_id: str, text: str) -> SentMessage:
        logger.info(f"Connector message (no bridge running): connector={connector_id} channel={channel_id} len={len(text)}")
        return SentMessage(connector_id=connector_id or "none", channel_id=channel_id)


async def send_best_effort(
    sender: ConnectorSender,
    *,
    connector_id: str | None,
    channel_id: str,
    text: str,
) -> bool:
    """Fire-and-forget send. Failures are logged and reported as False."""
    try:
        await sender.send_message(connector_id=connector_id, channel_id=channel_id, text=text)
        return True
    except Exception as ex:
        logger.debug(f"Connector send failed (connector={connector_id}, channel={channel_id}): {ex}")
        return False


def resolve_heartbeat_target(sender: ConnectorSender, target: str | None) -> tuple[str | None, str] | None:
    """Map a heartbeat target setting to (connector_id, channel_id).

    ``"last"`` picks the first running connector with a recent channel,
    ``"connectorId:channelId"`` is explicit and anything else is a bare channel.
    ``None``, empty and ``"none"`` disable routing.
    """
    value = (target or "").strip()
    if not value or value.lower() == "none":
        return None
    if value.lower() == "last":
        for connector in sender.list_running():
            if connector.recent_channel_id:
                return connector.id, connector.recent_channel_id
        return None
    if ":" in value:
        connector_id, _, channel_id = value.partition(":")
        if connector_id.strip() and channel_id.strip():
            return connector_id.strip(), channel_id.strip()
        return None
    return None, value
