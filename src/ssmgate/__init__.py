"""ssmgate: Shells, tunnels and fan-out commands through AWS Systems Manager."""

__version__ = "0.1.0"

from .broker import Broker, BrokerError, InvocationRef, InvocationStatus, SSMBroker
from .config import CommandConfig, Config, load_config
from .dispatcher import Dispatcher
from .escape import Action, ActionKind, EscapeScanner
from .proxy import OutcomeReason, ProcessProxy, ProxyError, ProxyOutcome, terminate_gracefully
from .session import SessionHandle
from .watcher import InvocationResult, InvocationState, InvocationWatcher

__all__ = [
    "Action",
    "ActionKind",
    "Broker",
    "BrokerError",
    "CommandConfig",
    "Config",
    "Dispatcher",
    "EscapeScanner",
    "InvocationRef",
    "InvocationResult",
    "InvocationState",
    "InvocationStatus",
    "InvocationWatcher",
    "OutcomeReason",
    "ProcessProxy",
    "ProxyError",
    "ProxyOutcome",
    "SSMBroker",
    "SessionHandle",
    "load_config",
    "terminate_gracefully",
]
