"""Session handles and the argument formats the session-manager plugin expects."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

# The plugin only understands this action name
PLUGIN_ACTION = "StartSession"

SSH_DOCUMENT = "AWS-StartSSHSession"
PORT_FORWARD_DOCUMENT = "AWS-StartPortForwardingSession"
REMOTE_PORT_FORWARD_DOCUMENT = "AWS-StartPortForwardingSessionToRemoteHost"
DEFAULT_SSH_PORT = "22"


@dataclass
class SessionHandle:
    """An open broker session and the request that created it."""

    session_id: str
    token_value: str
    stream_url: str
    parameters: dict[str, Any] = field(default_factory=dict)

    @property
    def target(self) -> str:
        return self.parameters.get("Target", "")

    def to_json(self) -> str:
        """Serialize the broker response the way the plugin reads it."""
        return json.dumps(
            {
                "SessionId": self.session_id,
                "TokenValue": self.token_value,
                "StreamUrl": self.stream_url,
            }
        )

    def parameters_json(self) -> str:
        return json.dumps(self.parameters)


def session_parameters(
    target: str,
    document_name: str | None = None,
    parameters: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Build a StartSession request. Unset keys are left out."""
    request: dict[str, Any] = {"Target": target}
    if document_name:
        request["DocumentName"] = document_name
    if parameters:
        request["Parameters"] = {k: [v] for k, v in parameters.items()}
    return request


def ssh_session() -> tuple[str, dict[str, str]]:
    """Document and parameters for an SSH tunnel."""
    return SSH_DOCUMENT, {"portNumber": DEFAULT_SSH_PORT}


def port_forward_session(
    remote_port: str, local_port: str, host: str | None = None
) -> tuple[str, dict[str, str]]:
    """Document and parameters for a port tunnel, optionally to another host."""
    params = {"portNumber": remote_port, "localPortNumber": local_port}
    if host:
        params["host"] = host
        return REMOTE_PORT_FORWARD_DOCUMENT, params
    return PORT_FORWARD_DOCUMENT, params


def plugin_args(handle: SessionHandle, region: str, profile: str) -> list[str]:
    """Positional arguments for the session-manager plugin."""
    return [
        handle.to_json(),
        region,
        PLUGIN_ACTION,
        profile,
        handle.parameters_json(),
    ]


def proxy_command(plugin_path: str, handle: SessionHandle, region: str, profile: str) -> str:
    """An ``ssh -o`` option that tunnels the connection through the plugin."""
    return (
        f"ProxyCommand={plugin_path} '{handle.to_json()}' {region} "
        f"{PLUGIN_ACTION} {profile} '{handle.parameters_json()}'"
    )


def ssh_destination_args(
    exec_args: str = "", identity: str = "", user: str = "", host: str = ""
) -> list[str]:
    """Arguments for ssh/scp, adding ``-i identity`` unless one is present."""
    command = exec_args or f"{user}@{host}"
    if identity and " -i " not in f" {command} ":
        command = f"-i {identity} {command}"
    return command.split()
