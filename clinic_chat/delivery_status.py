"""Gateway status token normalization.

Message delivery tokens map onto the canonical ``sent``, ``delivered``,
``read`` or ``failed``; connection state tokens map onto ``connected``,
``disconnected``, ``pairing`` or ``error``.
"""
from __future__ import annotations

from typing import Optional, Union

_MESSAGE_STATUS = {
    "ERROR": "failed",
    "PENDING": "sent",
    "SERVER_ACK": "sent",
    "DELIVERY_ACK": "delivered",
    "READ": "read",
}

# Baileys numeric acks: 0 error, 1 pending, 2 server, 3 delivery, 4 read
_NUMERIC_ACKS = {
    0: "ERROR",
    1: "PENDING",
    2: "SERVER_ACK",
    3: "DELIVERY_ACK",
    4: "READ",
}

_CONNECTION_STATE = {
    "open": "connected",
    "close": "disconnected",
    "connecting": "pairing",
}


def normalize_message_status(token: Optional[Union[str, int]]) -> str:
    """Map a gateway delivery token to a canonical message status.

    The mapping is total: anything unrecognized is reported as ``sent``.
    """
    if isinstance(token, bool) or token is None:
        return "sent"
    if isinstance(token, int):
        token = _NUMERIC_ACKS.get(token, "")
    return _MESSAGE_STATUS.get(str(token).strip().upper(), "sent")


def normalize_connection_state(state: Optional[str]) -> str:
    """Map a gateway connection state to a canonical connection status."""
    if not state:
        return "error"
    return _CONNECTION_STATE.get(str(state).strip().lower(), "error")
