#!/usr/bin/env python3
"""Leaf device smoke test for an IoT Edge gateway.

Registers (or reuses) a device identity on IoT Hub, connects it through the
edge gateway, sends a telemetry message, verifies it on the hub's event
stream and round-trips a direct method.

Every option falls back to the environment variable of the same purpose, then
to testenv.yaml (see smoke_config.py).
"""

import argparse
import asyncio
import logging
import sys

from leaf_device.certificates import DeviceCertificate
from leaf_device.leaf_device import LeafDevice
from leaf_device.smoke_config import config

logger = logging.getLogger("leafdevice.cli")

AZURE_LOGGERS = ("azure", "uamqp", "paho")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments, filling gaps from config."""
    parser = argparse.ArgumentParser(
        description="Leaf device smoke test through an IoT Edge gateway",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Example usage:
  leaf-device --connection-string "<hub conn str>" --eventhub-endpoint "<endpoint>;EntityPath=<hub>" \\
      --device-id leaf-01 --ca-cert-path ./certs/azure-iot-test-only.root.ca.cert.pem --edge-hostname edge.local
  leaf-device ... --client-cert-path ./certs/leaf.cert.pem --client-cert-key-path ./certs/leaf.key.pem
        """,
    )
    parser.add_argument(
        "--connection-string",
        default=config.get_optional("IOTHUB_CONNECTION_STRING", log_value=False),
        help="IoT hub connection string with registry read/write and service connect rights [IOTHUB_CONNECTION_STRING]",
    )
    parser.add_argument(
        "--eventhub-endpoint",
        default=config.get_optional("EVENTHUB_COMPATIBLE_ENDPOINT", log_value=False),
        help="Event Hub-compatible endpoint including EntityPath [EVENTHUB_COMPATIBLE_ENDPOINT]",
    )
    parser.add_argument(
        "--device-id",
        default=config.get_optional("LEAF_DEVICE_ID"),
        help="Leaf device id [LEAF_DEVICE_ID]",
    )
    parser.add_argument(
        "--ca-cert-path",
        default=config.get_optional("TRUSTED_CA_CERT_PATH"),
        help="Trusted CA certificate of the edge gateway [TRUSTED_CA_CERT_PATH]",
    )
    parser.add_argument(
        "--edge-hostname",
        default=config.get_optional("EDGE_HOSTNAME"),
        help="Hostname of the edge gateway [EDGE_HOSTNAME]",
    )
    parser.add_argument(
        "--use-websockets",
        action=argparse.BooleanOptionalAction,
        default=config.get_bool("USE_WEBSOCKETS"),
        help="Use MQTT and AMQP over WebSockets [USE_WEBSOCKETS]",
    )
    parser.add_argument(
        "--client-cert-path",
        default=config.get_optional("CLIENT_CERT_PATH"),
        help="Client certificate (and chain) for X.509 authentication [CLIENT_CERT_PATH]",
    )
    parser.add_argument(
        "--client-cert-key-path",
        default=config.get_optional("CLIENT_CERT_KEY_PATH"),
        help="Private key of the client certificate [CLIENT_CERT_KEY_PATH]",
    )
    parser.add_argument(
        "--x509-primary-cert-path",
        default=config.get_optional("X509_PRIMARY_CERT_PATH"),
        help="Primary thumbprint certificate for self-signed authentication [X509_PRIMARY_CERT_PATH]",
    )
    parser.add_argument(
        "--x509-secondary-cert-path",
        default=config.get_optional("X509_SECONDARY_CERT_PATH"),
        help="Secondary thumbprint certificate for self-signed authentication [X509_SECONDARY_CERT_PATH]",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args(argv)

    for name in ("connection_string", "eventhub_endpoint", "device_id", "edge_hostname"):
        if not getattr(args, name):
            parser.error(f"--{name.replace('_', '-')} is required")

    if bool(args.client_cert_path) != bool(args.client_cert_key_path):
        parser.error("--client-cert-path and --client-cert-key-path must be given together")

    if (args.x509_primary_cert_path or args.x509_secondary_cert_path) and not args.client_cert_path:
        parser.error("thumbprint certificates require --client-cert-path and --client-cert-key-path")

    return args


def build_leaf_device(args: argparse.Namespace) -> LeafDevice:
    client_certificate_paths = None
    if args.client_cert_path:
        client_certificate_paths = DeviceCertificate(args.client_cert_path, args.client_cert_key_path)

    thumbprint_certificate_paths = None
    if args.x509_primary_cert_path or args.x509_secondary_cert_path:
        thumbprint_certificate_paths = [
            path for path in (args.x509_primary_cert_path, args.x509_secondary_cert_path) if path
        ]

    return LeafDevice(
        iothub_connection_string=args.connection_string,
        eventhub_compatible_endpoint=args.eventhub_endpoint,
        device_id=args.device_id,
        trusted_ca_certificate_file_path=args.ca_cert_path,
        edge_hostname=args.edge_hostname,
        use_websockets=args.use_websockets,
        client_certificate_paths=client_certificate_paths,
        thumbprint_certificate_paths=thumbprint_certificate_paths,
    )


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    for name in AZURE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    configure_logging(args.verbose)

    try:
        leaf_device = build_leaf_device(args)
        asyncio.run(leaf_device.run())
    except Exception as e:
        logger.error(f"Leaf device smoke test failed: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
