"""Session broker calls backed by AWS Systems Manager."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .session import SessionHandle, session_parameters

RUN_SHELL_DOCUMENT = "AWS-RunShellScript"
COMMAND_TIMEOUT = 60


class BrokerError(Exception):
    """A broker call failed."""


@dataclass(frozen=True)
class InvocationRef:
    """One target's share of a sent command."""

    command_id: str
    target: str


@dataclass
class InvocationStatus:
    """Status of an invocation as reported by the broker."""

    status: str
    stdout: str = ""
    stderr: str = ""


class Broker(Protocol):
    """Remote calls the session and dispatch code depends on."""

    region: str

    def create_session(
        self,
        target: str,
        document_name: str | None = None,
        parameters: dict[str, str] | None = None,
    ) -> SessionHandle:
        """Open a session to a target."""
        ...

    def terminate_session(self, session_id: str) -> None:
        """Close a session."""
        ...

    def send_command(self, target_ids: list[str], command: str) -> list[InvocationRef]:
        """Send a shell command to every target. Returns one ref per target."""
        ...

    def get_invocation_status(self, ref: InvocationRef) -> InvocationStatus:
        """Fetch the current status of one invocation."""
        ...


class SSMBroker:
    """Broker implementation using the boto3 SSM client."""

    def __init__(
        self,
        profile: str | None = None,
        region: str | None = None,
        document: str = RUN_SHELL_DOCUMENT,
        timeout: int = COMMAND_TIMEOUT,
        cloudwatch_output: bool = True,
        session: boto3.Session | None = None,
    ):
        try:
            self._session = session or boto3.Session(profile_name=profile, region_name=region)
            self.client = self._session.client("ssm")
        except BotoCoreError as e:
            raise BrokerError(f"cannot create SSM client: {e}") from e
        self.region = self.client.meta.region_name
        self.document = document
        self.timeout = timeout
        self.cloudwatch_output = cloudwatch_output

    def _call(self, operation: str, **kwargs: Any) -> dict[str, Any]:
        try:
            return getattr(self.client, operation)(**kwargs)
        except (BotoCoreError, ClientError) as e:
            raise BrokerError(f"{operation} failed: {e}") from e

    def create_session(
        self,
        target: str,
        document_name: str | None = None,
        parameters: dict[str, str] | None = None,
    ) -> SessionHandle:
        request = session_parameters(target, document_name, parameters)
        response = self._call("start_session", **request)
        return SessionHandle(
            session_id=response["SessionId"],
            token_value=response["TokenValue"],
            stream_url=response["StreamUrl"],
            parameters=request,
        )

    def terminate_session(self, session_id: str) -> None:
        self._call("terminate_session", SessionId=session_id)

    def send_command(self, target_ids: list[str], command: str) -> list[InvocationRef]:
        response = self._call(
            "send_command",
            DocumentName=self.document,
            InstanceIds=list(target_ids),
            TimeoutSeconds=self.timeout,
            CloudWatchOutputConfig={"CloudWatchOutputEnabled": self.cloudwatch_output},
            Parameters={"commands": [command]},
        )
        sent = response["Command"]
        return [
            InvocationRef(command_id=sent["CommandId"], target=target)
            for target in sent.get("InstanceIds", target_ids)
        ]

    def get_invocation_status(self, ref: InvocationRef) -> InvocationStatus:
        response = self._call(
            "get_command_invocation",
            CommandId=ref.command_id,
            InstanceId=ref.target,
        )
        return InvocationStatus(
            status=response.get("Status", ""),
            stdout=response.get("StandardOutputContent", ""),
            stderr=response.get("StandardErrorContent", ""),
        )
