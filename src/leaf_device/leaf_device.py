"""Leaf device smoke test against an IoT Edge gateway.

This module provides the LeafDevice class which registers (or reuses) a device
identity on IoT Hub, connects it through an edge gateway, sends a telemetry
message, checks the message reached the hub's event stream, and round-trips
a direct method before cleaning up.

Example usage:
    leaf = LeafDevice(iothub_conn_str, eventhub_endpoint, "leaf-01", "ca.pem", "edge.local")
    await leaf.run()
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from azure.eventhub import TransportType
from azure.iot.device import Message, MethodRequest, MethodResponse, X509
from azure.iot.device.aio import IoTHubDeviceClient
from azure.iot.hub import IoTHubRegistryManager
from azure.iot.hub.models import CloudToDeviceMethod, Device
from cryptography import x509
from msrest.exceptions import HttpOperationError

from leaf_device.certificates import (
    AuthenticationType,
    DeviceCertificate,
    build_trust_bundle,
    load_client_certificate,
    load_thumbprints,
)
from leaf_device.event_verifier import wait_for_device_message
from leaf_device.utils import build_leaf_device_connection_string, create_msg, get_hostname, payload_as_json

logger = logging.getLogger("leafdevice.leaf_device")

DIRECT_METHOD_NAME = "DirectMethod"
DIRECT_METHOD_PAYLOAD = {"TestKey": "TestValue"}
EXPECTED_METHOD_PAYLOAD = '{"TestKey":"TestValue"}'
DIRECT_METHOD_TIMEOUT = 300  # seconds


@dataclass
class TransportSettings:
    """Transport choices for the device and event stream clients."""

    websockets: bool
    eventhub_transport_type: TransportType

    @classmethod
    def create(cls, use_websockets: bool) -> "TransportSettings":
        if use_websockets:
            return cls(websockets=True, eventhub_transport_type=TransportType.AmqpOverWebsocket)
        return cls(websockets=False, eventhub_transport_type=TransportType.Amqp)

    @property
    def description(self) -> str:
        return "MQTT over WebSockets" if self.websockets else "MQTT over TCP"


@dataclass
class DeviceContext:
    """State of a single smoke test run."""

    device: Optional[Device]
    iothub_connection_string: str
    registry_manager: IoTHubRegistryManager
    remove_device: bool
    # Used to identify exactly which message got sent
    message_guid: str = field(default_factory=lambda: str(uuid.uuid4()))
    device_client: Optional[IoTHubDeviceClient] = None


class LeafDevice:
    """Smoke test for a leaf device connecting through an edge gateway.

    The authentication mode follows from the certificates supplied:
    - no client certificate: SAS, using the device's symmetric key
    - client certificate only: X.509 CA-signed, its chain is trusted alongside the gateway CA
    - client certificate plus two thumbprint certificates: X.509 self-signed
    """

    def __init__(
        self,
        iothub_connection_string: str,
        eventhub_compatible_endpoint: str,
        device_id: str,
        trusted_ca_certificate_file_path: str | None,
        edge_hostname: str,
        use_websockets: bool = False,
        client_certificate_paths: Optional[DeviceCertificate] = None,
        thumbprint_certificate_paths: Optional[list[str]] = None,
    ):
        """Initialize a new LeafDevice.

        Raises:
            ValueError: If a certificate file is missing or invalid, or the wrong
                number of thumbprint certificates is given.
        """
        self.iothub_connection_string = iothub_connection_string
        self.eventhub_compatible_endpoint = eventhub_compatible_endpoint
        self.device_id = device_id
        self.trusted_ca_certificate_file_path = trusted_ca_certificate_file_path
        self.edge_hostname = edge_hostname
        self.transport = TransportSettings.create(use_websockets)

        self.client_certificate_paths = client_certificate_paths
        self.client_certificate: Optional[x509.Certificate] = None
        self.client_certificate_chain: list[x509.Certificate] = []
        self.thumbprints: list[str] = []
        self.server_verification_cert: Optional[str] = None
        self.context: Optional[DeviceContext] = None

        if client_certificate_paths is None:
            self.auth_type = AuthenticationType.SAS
        else:
            client_cert, chain = load_client_certificate(client_certificate_paths)
            self.client_certificate = client_cert
            if thumbprint_certificate_paths is not None:
                self.thumbprints = load_thumbprints(thumbprint_certificate_paths)
                self.auth_type = AuthenticationType.SELF_SIGNED
            else:
                self.client_certificate_chain = chain
                self.auth_type = AuthenticationType.CERTIFICATE_AUTHORITY

        logger.info(f"Leaf device '{device_id}' using {self.auth_type.value} auth over {self.transport.description}")

    @property
    def hub_hostname(self) -> str:
        return get_hostname(self.iothub_connection_string)

    async def run(self) -> None:
        """Run every step of the smoke test in order.

        On failure the device identity is kept for diagnosis and the error is
        re-raised. The device client is always shut down and a device created
        by this run is deleted unless it was kept.
        """
        try:
            logger.info("Initializing trusted certificates")
            await self.initialize_trusted_certs()
            logger.info("Getting or creating device identity")
            await self.get_or_create_device_identity()
            logger.info("Connecting to edge and sending data")
            await self.connect_to_edge_and_send_data()
            logger.info("Verifying data on IoT Hub")
            await self.verify_data_on_iothub()
            logger.info("Verifying direct method")
            await self.verify_direct_method()
            logger.info("Leaf device smoke test passed")
        except Exception:
            logger.exception("Leaf device smoke test failed, keeping device identity")
            self.keep_device_identity()
            raise
        finally:
            try:
                await self.close()
            finally:
                await self.maybe_delete_device_identity()

    async def initialize_trusted_certs(self) -> None:
        """Collect the gateway CA and any client chain into the device client's trust bundle."""
        self.server_verification_cert = build_trust_bundle(
            self.trusted_ca_certificate_file_path, self.client_certificate_chain
        )

    async def get_or_create_device_identity(self) -> None:
        """Reuse the device identity if registered, otherwise register it."""
        registry_manager = IoTHubRegistryManager.from_connection_string(self.iothub_connection_string)

        device = await asyncio.to_thread(self._get_device, registry_manager)

        if device is None:
            await self._create_device_identity(registry_manager)
            return

        logger.info(f"Device '{device.device_id}' already registered on IoT hub '{self.hub_hostname}'")

        if self.auth_type == AuthenticationType.SELF_SIGNED:
            # Always refresh the thumbprints so every run tests the configured pair
            device = await asyncio.to_thread(
                registry_manager.update_device_with_x509,
                device.device_id,
                device.etag,
                self.thumbprints[0],
                self.thumbprints[1],
                device.status or "enabled",
            )
            logger.info(f"Updated thumbprints for device '{self.device_id}'")

        self.context = DeviceContext(
            device=device,
            iothub_connection_string=self.iothub_connection_string,
            registry_manager=registry_manager,
            remove_device=False,
        )

    def _get_device(self, registry_manager: IoTHubRegistryManager) -> Optional[Device]:
        try:
            return registry_manager.get_device(self.device_id)
        except HttpOperationError as e:
            if e.response is not None and e.response.status_code == 404:
                return None
            raise

    async def _create_device_identity(self, registry_manager: IoTHubRegistryManager) -> None:
        logger.info(f"Registering device '{self.device_id}' on IoT hub '{self.hub_hostname}'")

        if self.auth_type == AuthenticationType.SELF_SIGNED:
            device = await asyncio.to_thread(
                registry_manager.create_device_with_x509,
                self.device_id,
                self.thumbprints[0],
                self.thumbprints[1],
                "enabled",
            )
        elif self.auth_type == AuthenticationType.CERTIFICATE_AUTHORITY:
            device = await asyncio.to_thread(
                registry_manager.create_device_with_certificate_authority, self.device_id, "enabled"
            )
        else:
            device = await asyncio.to_thread(
                registry_manager.create_device_with_sas, self.device_id, None, None, "enabled"
            )

        self.context = DeviceContext(
            device=device,
            iothub_connection_string=self.iothub_connection_string,
            registry_manager=registry_manager,
            remove_device=True,
        )

    async def connect_to_edge_and_send_data(self) -> None:
        """Connect through the edge gateway, send one message and start answering direct methods."""
        context = self._require_context()
        device_client = self._create_device_client(context)

        context.device_client = device_client
        logger.info("Leaf Device client created.")

        await device_client.connect()

        message = Message(create_msg(context.message_guid))
        message.message_id = context.message_guid
        logger.info(f"Trying to send the message to '{self.edge_hostname}'")

        await device_client.send_message(message)
        logger.info("Message Sent.")

        async def method_request_handler(method_request: MethodRequest) -> None:
            await device_client.send_method_response(self._handle_method_request(method_request))

        device_client.on_method_request_received = method_request_handler
        logger.info("Direct method callback is set.")

    def _create_device_client(self, context: DeviceContext) -> IoTHubDeviceClient:
        options: dict[str, Any] = {"websockets": self.transport.websockets}
        if self.server_verification_cert is not None:
            options["server_verification_cert"] = self.server_verification_cert

        if self.auth_type == AuthenticationType.SAS:
            device = context.device
            symmetric_key = device.authentication.symmetric_key if device and device.authentication else None
            if symmetric_key is None or not symmetric_key.primary_key:
                raise RuntimeError(f"Device '{self.device_id}' has no symmetric key for SAS authentication")
            leaf_device_connection_string = build_leaf_device_connection_string(
                self.hub_hostname, self.device_id, symmetric_key.primary_key, self.edge_hostname
            )
            return IoTHubDeviceClient.create_from_connection_string(leaf_device_connection_string, **options)

        if self.client_certificate is None or self.client_certificate_paths is None:
            raise RuntimeError("Missing client certificate")

        device_x509 = X509(
            cert_file=self.client_certificate_paths.certificate_file_path,
            key_file=self.client_certificate_paths.certificate_key_file_path,
        )
        return IoTHubDeviceClient.create_from_x509_certificate(
            x509=device_x509,
            hostname=self.hub_hostname,
            device_id=self.device_id,
            gateway_hostname=self.edge_hostname,
            **options,
        )

    @staticmethod
    def _handle_method_request(method_request: MethodRequest) -> MethodResponse:
        if method_request.name != DIRECT_METHOD_NAME:
            logger.warning(f"Leaf device received unknown direct method '{method_request.name}'")
            return MethodResponse.create_from_method_request(method_request, 501)

        logger.info(f"Leaf device received direct method call...Payload Received: {method_request.payload}")
        return MethodResponse.create_from_method_request(method_request, 200, method_request.payload)

    async def verify_data_on_iothub(self) -> None:
        """Wait for the sent message to show up on the hub's event stream.

        Raises:
            TimeoutError: If the message does not arrive within the receive window.
        """
        context = self._require_context()
        await wait_for_device_message(
            self.eventhub_compatible_endpoint,
            self.device_id,
            context.message_guid,
            transport_type=self.transport.eventhub_transport_type,
        )

    async def verify_direct_method(self) -> None:
        """Invoke the direct method from the service side and check the echo.

        Raises:
            RuntimeError: If the status is not 200 or the payload differs from what was sent.
        """
        context = self._require_context()
        request = CloudToDeviceMethod(
            method_name=DIRECT_METHOD_NAME,
            payload=DIRECT_METHOD_PAYLOAD,
            response_timeout_in_seconds=DIRECT_METHOD_TIMEOUT,
        )

        result = await asyncio.to_thread(context.registry_manager.invoke_device_method, self.device_id, request)

        if result.status != 200:
            raise RuntimeError("Could not invoke Direct Method on Device.")

        received = payload_as_json(result.payload)
        if received != EXPECTED_METHOD_PAYLOAD:
            raise RuntimeError(
                f"Payload doesn't match with Sent Payload. Received payload: {received}. "
                f"Expected: {EXPECTED_METHOD_PAYLOAD}"
            )
        logger.info("Direct method round trip succeeded")

    def keep_device_identity(self) -> None:
        if self.context is not None:
            self.context.remove_device = False

    async def maybe_delete_device_identity(self) -> None:
        """Delete the device identity if this run created it and nothing asked to keep it."""
        if self.context is None:
            return

        device = self.context.device
        remove = self.context.remove_device
        self.context.device = None

        if remove and device is not None:
            logger.info(f"Deleting device '{device.device_id}'")
            await asyncio.to_thread(self.context.registry_manager.delete_device, device.device_id)

    async def close(self) -> None:
        if self.context is not None and self.context.device_client is not None:
            await self.context.device_client.shutdown()
            self.context.device_client = None

    def _require_context(self) -> DeviceContext:
        if self.context is None:
            raise RuntimeError("Device identity has not been created; call get_or_create_device_identity first")
        return self.context
