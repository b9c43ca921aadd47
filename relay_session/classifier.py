# =============================================================================
# Relay Session -- Disconnect Classifier
# =============================================================================
#
# Pure mappings from vendor signals (disconnect reasons, transport state
# strings) onto the symbolic categories the controller reasons about.
# =============================================================================

from __future__ import annotations

from typing import Any, Iterable

from ._logging import logger
from .types import DisconnectCategory, TransportState

TERMINAL_REASONS = frozenset(
    {
        "LOGOUT",
        "LOGGED_OUT",
        "UNPAIRED",
        "FORBIDDEN",
        "CONFLICT",
        "CONNECTION_REPLACED",
        "SESSION_REPLACED",
        "MULTIDEVICE_MISMATCH",
        "CREDENTIAL_REVOKED",
        "BAD_SESSION",
        "CORRUPTED_CREDENTIAL",
        "AUTH_FAILURE",
    }
)

TRANSIENT_REASONS = frozenset(
    {
        "NAVIGATION",
        "RESTART_REQUIRED",
        "SERVER_RESTART",
        "CONNECTION_CLOSED",
        "CONNECTION_LOST",
        "NETWORK_ERROR",
        "TIMED_OUT",
        "TIMEOUT",
        "IDLE_TIMEOUT",
        "UNAVAILABLE",
        "UNAVAILABLE_SERVICE",
        "SERVICE_UNAVAILABLE",
    }
)

_TERMINAL_PREFIX = "TERMINAL_"
_TRANSIENT_PREFIX = "TRANSIENT_"

_CONNECTED_STATES = frozenset({"CONNECTED", "OPEN", "READY"})
_CONNECTING_STATES = frozenset(
    {"CONNECTING", "OPENING", "PAIRING", "SYNCING", "RESUMING", "INITIALIZING"}
)
_DISCONNECTED_STATES = frozenset(
    {
        "DISCONNECTED",
        "CLOSED",
        "CLOSING",
        "CONFLICT",
        "UNPAIRED",
        "UNPAIRED_IDLE",
        "UNLAUNCHED",
        "NOT_INITIALIZED",
        "TIMEOUT",
    }
)


def normalize_reason(reason: Any) -> str | None:
    """Upper-case a reason and fold ``-`` / spaces into ``_``."""
    if reason is None:
        return None
    text = str(reason).strip()
    if not text:
        return None
    return text.upper().replace("-", "_").replace(" ", "_")


class DisconnectClassifier:
    """Table-driven disconnect classification.

    The built-in table can be extended per deployment; extra entries win
    over the defaults so a vendor reason can be re-categorised.

    Args:
        extra_terminal: Additional reasons treated as terminal.
        extra_transient: Additional reasons treated as transient.
    """

    def __init__(
        self,
        extra_terminal: Iterable[str] = (),
        extra_transient: Iterable[str] = (),
    ) -> None:
        extra_terminal = {normalize_reason(r) for r in extra_terminal} - {None}
        extra_transient = {normalize_reason(r) for r in extra_transient} - {None}
        self._terminal = (TERMINAL_REASONS - extra_transient) | extra_terminal
        self._transient = (TRANSIENT_REASONS - extra_terminal) | extra_transient

    def classify(self, reason: Any) -> DisconnectCategory:
        if isinstance(reason, DisconnectCategory):
            return reason

        key = normalize_reason(reason)
        if key is not None:
            if key in self._terminal:
                return DisconnectCategory.TERMINAL
            if key in self._transient:
                return DisconnectCategory.TRANSIENT
            if key.startswith(_TERMINAL_PREFIX):
                return DisconnectCategory.TERMINAL
            if key.startswith(_TRANSIENT_PREFIX):
                return DisconnectCategory.TRANSIENT

        # Unknown reasons are logged in raw form
        logger.warning("Unclassified disconnect reason: %r", reason)
        return DisconnectCategory.UNKNOWN


_default_classifier = DisconnectClassifier()


def classify_disconnect(reason: Any) -> DisconnectCategory:
    """Classify *reason* with the built-in table."""
    return _default_classifier.classify(reason)


def normalize_transport_state(raw: Any) -> TransportState:
    """Map a vendor connection-state value onto :class:`TransportState`."""
    if isinstance(raw, TransportState):
        return raw
    key = normalize_reason(raw)
    if key is None:
        return TransportState.UNKNOWN
    if key in _CONNECTED_STATES:
        return TransportState.CONNECTED
    if key in _CONNECTING_STATES:
        return TransportState.CONNECTING
    if key in _DISCONNECTED_STATES:
        return TransportState.DISCONNECTED
    logger.debug("Unrecognised transport state: %r", raw)
    return TransportState.UNKNOWN
