import logging
from typing import Any

import orjson

logger = logging.getLogger("leafdevice.utils")


# Telemetry body carrying the correlation id the event check looks for
def create_msg(message_guid: str) -> bytes:
    return f"Message from Leaf Device. Msg GUID: {message_guid}".encode("ascii")


def parse_connection_string(connection_string: str) -> dict[str, str]:
    """Split an Azure connection string into its key/value pairs.

    Values may themselves contain '=' (base64 keys), so each segment is only
    split on its first '='.

    Args:
        connection_string: String of the form "Key1=Value1;Key2=Value2"

    Returns:
        Dict mapping keys to values

    Raises:
        ValueError: If a segment has no '=' or a key repeats
    """
    result: dict[str, str] = {}
    for segment in connection_string.split(";"):
        if not segment.strip():
            continue
        key, sep, value = segment.partition("=")
        if not sep:
            raise ValueError(f"Invalid connection string segment: '{segment}'")
        key = key.strip()
        if key in result:
            raise ValueError(f"Duplicate key '{key}' in connection string")
        result[key] = value.strip()
    return result


def get_hostname(connection_string: str) -> str:
    """Return the HostName of an IoT hub connection string."""
    hostname = parse_connection_string(connection_string).get("HostName")
    if not hostname:
        raise ValueError("Connection string has no HostName")
    return hostname


def build_leaf_device_connection_string(
    hostname: str, device_id: str, shared_access_key: str, gateway_hostname: str
) -> str:
    return (
        f"HostName={hostname};DeviceId={device_id};"
        f"SharedAccessKey={shared_access_key};GatewayHostName={gateway_hostname}"
    )


def payload_as_json(payload: Any) -> str:
    """Render a direct method payload as compact JSON text.

    Payloads arrive either already deserialized or as raw JSON text; raw text
    is re-serialized so whitespace differences do not matter. Text that is not
    JSON is rendered as a JSON string.
    """
    if isinstance(payload, (str, bytes)):
        try:
            payload = orjson.loads(payload)
        except orjson.JSONDecodeError:
            if isinstance(payload, bytes):
                payload = payload.decode("utf-8", errors="replace")
    return orjson.dumps(payload).decode("utf-8")
