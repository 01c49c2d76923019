import json
from typing import Any

from agent_fleet_loop.connectors import ConnectorSender


class ConnectorMessageTool:
    def __init__(self, sender: ConnectorSender):
        self._sender = sender

    @property
    def name(self) -> str:
        return "connector_message_tool"

    @property
    def description(self) -> str:
        return (
            "Send proactive outbound messages through running chat connectors. "
            'Use action "list_running" to see connectors, "send" to deliver a message.'
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "action": {"type": "string", "enum": ["list_running", "send"]},
                "connectorId": {
                    "type": "string",
                    "description": "Connector id; defaults to the first running connector",
                },
                "to": {"type": "string", "description": "Target channel id / recipient"},
                "message": {"type": "string", "description": "Message text (send)"},
            },
            "required": ["action"],
        }

    async def execute(self, tool_input: dict[str, Any]) -> str:
        action = str(tool_input.get("action") or "send").strip().lower()
        running = self._sender.list_running()

        if action == "list_running":
            return json.dumps([{"id": c.id, "platform": c.platform} for c in running])
        if action != "send":
            return f'Error: unknown action "{action}". Use list_running or send.'

        message = str(tool_input.get("message") or "").strip()
        if not message:
            return "Error: message is required for send"
        if not running:
            return "Error: no running connectors"

        connector_id = str(tool_input.get("connectorId") or "").strip()
        selected = next((c for c in running if c.id == connector_id), None) if connector_id else running[0]
        if selected is None:
            return f"Error: running connector not found: {connector_id}"

        channel_id = str(tool_input.get("to") or "").strip() or selected.recent_channel_id
        if not channel_id:
            return 'Error: no target recipient; provide "to"'

        try:
            sent = await self._sender.send_message(connector_id=selected.id, channel_id=channel_id, text=message)
        except Exception as ex:
            return f"Error: {ex}"
        return json.dumps(
            {"status": "sent", "connectorId": sent.connector_id, "to": sent.channel_id, "messageId": sent.message_id}
        )
