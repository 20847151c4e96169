"""Listeners for the hello and faceConverter destinations."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from kombu.message import Message

    from dukeface.messaging.broker import Handler, MessageBroker
    from dukeface.ml.pipeline import ImagePipeline

logger = logging.getLogger(__name__)

HELLO_DESTINATION = "hello"
FACE_CONVERTER_DESTINATION = "faceConverter"


def handle_hello_message(body: str, message: Message) -> None:
    logger.info("received! %s", message.headers.get("message_id"))
    logger.info("msg=%s", body)


def make_face_converter(pipeline: ImagePipeline) -> Handler:
    """Build the faceConverter listener: mask the image and discard the result.

    Runs on the listener's own thread and blocks it until the image is done,
    so a busy pipeline holds messages on the queue instead of dropping them.
    """

    def convert_face(body: bytes, message: Message) -> None:
        logger.info(
            "received! %s (filename=%s, %d bytes)",
            message.headers.get("message_id"),
            message.headers.get("filename") or "-",
            len(body),
        )
        pipeline.process_quietly(body)

    return convert_face


def register_listeners(broker: MessageBroker, pipeline: ImagePipeline, *, concurrency: int) -> None:
    broker.register_listener(HELLO_DESTINATION, handle_hello_message, concurrency=concurrency)
    broker.register_listener(FACE_CONVERTER_DESTINATION, make_face_converter(pipeline), concurrency=concurrency)
