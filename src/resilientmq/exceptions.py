"""Library exceptions for the resilientmq package."""

from aio_pika import exceptions as aio_pika_exceptions

NOT_FOUND_REPLY_CODE = 404
ACCESS_REFUSED_REPLY_CODE = 403


class ResilientMQError(Exception):
    """Base exception for resilientmq library."""

    pass


class NotConnectedError(ResilientMQError):
    """Raised when an operation needs a live channel and none exists."""

    def __init__(self, operation: str | None = None) -> None:
        self.operation = operation
        detail = f" ({operation})" if operation else ""
        super().__init__(f"Not connected{detail}.")


class ChannelClosedError(ResilientMQError):
    """Raised when a channel wrapper has been closed.

    Every message still queued when ``ChannelWrapper.close()`` runs has its
    publish rejected with this error.
    """

    def __init__(self, name: str | None = None) -> None:
        self.name = name
        label = f" {name!r}" if name else ""
        super().__init__(f"Channel{label} closed")


class ConnectionManagerClosedError(ResilientMQError):
    """Raised when connecting a manager that has already been closed."""

    def __init__(self) -> None:
        super().__init__("Connection manager has been closed")


class NoEndpointsError(ResilientMQError):
    """Raised when server discovery produced no broker endpoints."""

    def __init__(self) -> None:
        super().__init__("No broker endpoints available to connect to")


class SerializationError(ResilientMQError):
    """Raised when a message payload cannot be encoded."""

    def __init__(self, payload_type: str, message: str) -> None:
        self.payload_type = payload_type
        super().__init__(f"Serialization error for {payload_type}: {message}")


def is_channel_closed_error(exc: BaseException) -> bool:
    """
    Check whether an error means the channel was already closed.

    These errors are expected churn during reconnects: a setup action or
    subscription raced with the loss of its channel or connection.

    aio-pika fails in-flight calls with a plain ``ChannelClosed`` when the
    channel goes away underneath them. Its subclasses (``ChannelNotFoundEntity``,
    ``ChannelPreconditionFailed``, ...) are the broker rejecting the call
    itself and are not treated as churn.

    Args:
        exc: The exception to classify

    Returns:
        True for operations attempted on, or interrupted by, a closed channel
    """
    if isinstance(
        exc,
        (
            ChannelClosedError,
            aio_pika_exceptions.ChannelInvalidStateError,
            aio_pika_exceptions.ConnectionClosed,
        ),
    ):
        return True
    return type(exc) is aio_pika_exceptions.ChannelClosed


def is_access_refused_error(exc: BaseException) -> bool:
    """
    Check whether a connection attempt was refused by the broker itself.

    Such refusals are surfaced to an awaiting ``connect()`` call; an
    unreachable broker is not.

    Args:
        exc: The exception to classify

    Returns:
        True for authentication, ACCESS_REFUSED (403) or protocol refusals
    """
    if isinstance(
        exc,
        (
            aio_pika_exceptions.AuthenticationError,
            aio_pika_exceptions.ProbableAuthenticationError,
            aio_pika_exceptions.IncompatibleProtocolError,
        ),
    ):
        return True
    for attribute in ("code", "reply_code"):
        if getattr(exc, attribute, None) == ACCESS_REFUSED_REPLY_CODE:
            return True
    return "ACCESS_REFUSED" in str(exc)


def is_not_found_error(exc: BaseException) -> bool:
    """
    Check whether an error is the broker reporting a missing entity.

    aio-pika raises ``ChannelNotFoundEntity`` for AMQP reply code 404; other
    clients carry the code on the exception itself.

    Args:
        exc: The exception to classify

    Returns:
        True if the broker answered "not found"
    """
    if isinstance(exc, aio_pika_exceptions.ChannelNotFoundEntity):
        return True
    for attribute in ("code", "reply_code"):
        if getattr(exc, attribute, None) == NOT_FOUND_REPLY_CODE:
            return True
    return False


__all__ = [
    "ChannelClosedError",
    "ConnectionManagerClosedError",
    "NoEndpointsError",
    "NotConnectedError",
    "ResilientMQError",
    "SerializationError",
    "is_access_refused_error",
    "is_channel_closed_error",
    "is_not_found_error",
]
