"""Protocol client adapters."""

from resilientmq.adapters.aiopika import (
    AioPikaChannel,
    AioPikaConnection,
    build_message,
    connect_aio_pika,
)

__all__ = [
    "AioPikaChannel",
    "AioPikaConnection",
    "build_message",
    "connect_aio_pika",
]
