"""Verification of device telemetry through the hub's Event Hub-compatible endpoint."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from azure.eventhub import EventData, TransportType
from azure.eventhub.aio import EventHubConsumerClient

from leaf_device.utils import parse_connection_string

logger = logging.getLogger("leafdevice.event_verifier")

DEFAULT_CONSUMER_GROUP = "$Default"
RECEIVE_TIMEOUT = timedelta(minutes=3)
RECEIVE_LOOKBACK = timedelta(minutes=5)
DEVICE_ID_PROPERTY = b"iothub-connection-device-id"


def get_device_id_from_event(event: EventData) -> str | None:
    """Return the id of the device that sent an event, if IoT Hub stamped one."""
    value = event.system_properties.get(DEVICE_ID_PROPERTY)
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


def event_matches(event: EventData, device_id: str, message_guid: str) -> bool:
    """True when the event came from device_id and its body carries message_guid."""
    if get_device_id_from_event(event) != device_id:
        return False
    return message_guid in event.body_as_str(encoding="UTF-8")


async def wait_for_device_message(
    eventhub_connection_string: str,
    device_id: str,
    message_guid: str,
    transport_type: TransportType = TransportType.Amqp,
    timeout: timedelta = RECEIVE_TIMEOUT,
    lookback: timedelta = RECEIVE_LOOKBACK,
    consumer_group: str = DEFAULT_CONSUMER_GROUP,
) -> EventData:
    """Wait for the event a device sent with the given correlation id.

    Reads every partition from `lookback` before now and stops at the first
    matching event. The receive is cancelled once the event arrives or the
    window closes.

    Args:
        eventhub_connection_string: Event Hub-compatible endpoint including EntityPath
        device_id: Device expected to have sent the message
        message_guid: Correlation id the message body must contain
        transport_type: AMQP over TCP or over WebSockets
        timeout: How long to wait for the event
        lookback: How far before now to start reading
        consumer_group: Consumer group to read with

    Returns:
        The matching event

    Raises:
        TimeoutError: If no matching event arrives within the timeout
        Exception: The first error the consumer reports before a match arrives
    """
    entity_path = parse_connection_string(eventhub_connection_string).get("EntityPath", "")
    logger.info(f"Receiving events from device '{device_id}' on Event Hub '{entity_path}'")

    matched: asyncio.Future[EventData] = asyncio.get_running_loop().create_future()

    async def on_event(partition_context: Any, event: EventData | None) -> None:
        if event is None or matched.done():
            return
        if event_matches(event, device_id, message_guid):
            logger.info(f"Received message {message_guid} on partition {partition_context.partition_id}")
            matched.set_result(event)

    async def on_error(partition_context: Any, error: Exception) -> None:
        partition_id = partition_context.partition_id if partition_context else None
        logger.warning(f"Event Hub receive error on partition {partition_id}: {error}")
        # receive() reports link, auth and connection failures here and keeps retrying
        if not matched.done():
            matched.set_exception(error)

    client = EventHubConsumerClient.from_connection_string(
        eventhub_connection_string,
        consumer_group=consumer_group,
        transport_type=transport_type,
    )

    async with client:
        receive_task = asyncio.ensure_future(
            client.receive(
                on_event=on_event,
                on_error=on_error,
                starting_position=datetime.now(tz=timezone.utc) - lookback,
            )
        )
        try:
            done, _ = await asyncio.wait(
                {receive_task, matched},
                timeout=timeout.total_seconds(),
                return_when=asyncio.FIRST_COMPLETED,
            )
            if matched in done:
                return matched.result()
            if receive_task in done:
                # receive() raises directly only for invalid arguments
                receive_task.result()
                raise RuntimeError("Event Hub receive stopped before the message arrived")
            raise TimeoutError(
                f"Message {message_guid} from device '{device_id}' not received within {timeout.total_seconds():.0f}s"
            )
        finally:
            if not receive_task.done():
                receive_task.cancel()
                await asyncio.gather(receive_task, return_exceptions=True)
            if not matched.done():
                matched.cancel()
