from .correlator import Correlator, ReadCoalescer
from .errors import (
    CodexError,
    CodexLaunchError,
    CodexMalformedEnvelopeError,
    CodexProtocolError,
    CodexRemoteClosedError,
    CodexRemoteError,
    CodexTimeoutError,
    CodexTransportError,
)
from .models import (
    ApprovalCallback,
    ApprovalDecision,
    ApprovalPolicy,
    ApprovalRequest,
    InitializeResult,
    TurnResult,
    TurnState,
)
from .protocol import Notification, Response, decode_line, encode_message
from .pump import NotificationPump
from .session import CodexSession
from .transport import StdioTransport, Transport, WebSocketTransport
from .turn import TurnRunner

__all__ = [
    "ApprovalCallback",
    "ApprovalDecision",
    "ApprovalPolicy",
    "ApprovalRequest",
    "CodexError",
    "CodexLaunchError",
    "CodexMalformedEnvelopeError",
    "CodexProtocolError",
    "CodexRemoteClosedError",
    "CodexRemoteError",
    "CodexSession",
    "CodexTimeoutError",
    "CodexTransportError",
    "Correlator",
    "InitializeResult",
    "Notification",
    "NotificationPump",
    "ReadCoalescer",
    "Response",
    "StdioTransport",
    "Transport",
    "TurnResult",
    "TurnRunner",
    "TurnState",
    "WebSocketTransport",
    "decode_line",
    "encode_message",
]
