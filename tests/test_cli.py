"""Tests for cli.py module."""

from typing import Any, Iterator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from leaf_device import cli
from leaf_device.certificates import DeviceCertificate

REQUIRED_ARGS = [
    "--connection-string",
    "HostName=myhub.azure-devices.net;SharedAccessKeyName=iothubowner;SharedAccessKey=c2VjcmV0",
    "--eventhub-endpoint",
    "Endpoint=sb://ihsuprodbyres.servicebus.windows.net/;SharedAccessKey=a2V5;EntityPath=myhub",
    "--device-id",
    "leaf-01",
    "--edge-hostname",
    "edge.local",
]


@pytest.fixture
def settings() -> Iterator[dict[str, str]]:
    """Config values seen by the CLI; empty means nothing set in env or YAML."""
    values: dict[str, str] = {}
    fake_config = MagicMock()
    fake_config.get_optional.side_effect = lambda name, **kwargs: values.get(name)
    fake_config.get_bool.side_effect = lambda name, default=False, **kwargs: (
        values[name].lower() == "true" if name in values else default
    )
    with patch.object(cli, "config", fake_config):
        yield values


class TestParseArgs:
    """Tests for the parse_args function."""

    def test_required_arguments(self, settings: dict[str, str]) -> None:
        args = cli.parse_args(REQUIRED_ARGS)

        assert args.device_id == "leaf-01"
        assert args.edge_hostname == "edge.local"
        assert args.use_websockets is False
        assert args.ca_cert_path is None
        assert args.client_cert_path is None

    @pytest.mark.parametrize(
        "missing", ["--connection-string", "--eventhub-endpoint", "--device-id", "--edge-hostname"]
    )
    def test_missing_required_argument_exits(self, settings: dict[str, str], missing: str) -> None:
        index = REQUIRED_ARGS.index(missing)
        argv = REQUIRED_ARGS[:index] + REQUIRED_ARGS[index + 2 :]

        with pytest.raises(SystemExit):
            cli.parse_args(argv)

    def test_config_fallback(self, settings: dict[str, str]) -> None:
        """Test that settings from env/YAML fill in omitted flags."""
        settings.update(
            {
                "IOTHUB_CONNECTION_STRING": "HostName=h;SharedAccessKey=k",
                "EVENTHUB_COMPATIBLE_ENDPOINT": "Endpoint=sb://e/;EntityPath=h",
                "LEAF_DEVICE_ID": "leaf-from-env",
                "EDGE_HOSTNAME": "edge-from-env",
                "USE_WEBSOCKETS": "true",
            }
        )

        args = cli.parse_args([])

        assert args.device_id == "leaf-from-env"
        assert args.edge_hostname == "edge-from-env"
        assert args.use_websockets is True

    def test_flag_overrides_config(self, settings: dict[str, str]) -> None:
        settings["LEAF_DEVICE_ID"] = "leaf-from-env"

        args = cli.parse_args(REQUIRED_ARGS)

        assert args.device_id == "leaf-01"

    def test_no_use_websockets_overrides_config(self, settings: dict[str, str]) -> None:
        """Test that a configured USE_WEBSOCKETS=true can be turned off on the command line."""
        settings["USE_WEBSOCKETS"] = "true"

        assert cli.parse_args(REQUIRED_ARGS).use_websockets is True
        assert cli.parse_args(REQUIRED_ARGS + ["--no-use-websockets"]).use_websockets is False

    def test_client_cert_requires_key(self, settings: dict[str, str]) -> None:
        with pytest.raises(SystemExit):
            cli.parse_args(REQUIRED_ARGS + ["--client-cert-path", "leaf.cert.pem"])

    def test_thumbprints_require_client_cert(self, settings: dict[str, str]) -> None:
        with pytest.raises(SystemExit):
            cli.parse_args(REQUIRED_ARGS + ["--x509-primary-cert-path", "primary.pem"])


class TestBuildLeafDevice:
    """Tests for the build_leaf_device function."""

    def build(self, argv: list[str]) -> Any:
        with patch.object(cli, "LeafDevice") as leaf_device_cls:
            cli.build_leaf_device(cli.parse_args(argv))
        return leaf_device_cls.call_args.kwargs

    def test_sas(self, settings: dict[str, str]) -> None:
        kwargs = self.build(REQUIRED_ARGS + ["--ca-cert-path", "ca.pem", "--use-websockets"])

        assert kwargs["device_id"] == "leaf-01"
        assert kwargs["trusted_ca_certificate_file_path"] == "ca.pem"
        assert kwargs["use_websockets"] is True
        assert kwargs["client_certificate_paths"] is None
        assert kwargs["thumbprint_certificate_paths"] is None

    def test_self_signed(self, settings: dict[str, str]) -> None:
        kwargs = self.build(
            REQUIRED_ARGS
            + [
                "--client-cert-path",
                "leaf.cert.pem",
                "--client-cert-key-path",
                "leaf.key.pem",
                "--x509-primary-cert-path",
                "primary.pem",
                "--x509-secondary-cert-path",
                "secondary.pem",
            ]
        )

        assert kwargs["client_certificate_paths"] == DeviceCertificate("leaf.cert.pem", "leaf.key.pem")
        assert kwargs["thumbprint_certificate_paths"] == ["primary.pem", "secondary.pem"]

    def test_single_thumbprint_is_passed_through(self, settings: dict[str, str]) -> None:
        """Test a lone thumbprint path reaches LeafDevice so it can report the count error."""
        kwargs = self.build(
            REQUIRED_ARGS
            + [
                "--client-cert-path",
                "leaf.cert.pem",
                "--client-cert-key-path",
                "leaf.key.pem",
                "--x509-secondary-cert-path",
                "secondary.pem",
            ]
        )

        assert kwargs["thumbprint_certificate_paths"] == ["secondary.pem"]


class TestMain:
    """Tests for the main entry point."""

    def test_success_returns_zero(self, settings: dict[str, str]) -> None:
        with patch.object(cli, "LeafDevice") as leaf_device_cls:
            leaf_device_cls.return_value.run = AsyncMock()
            assert cli.main(REQUIRED_ARGS) == 0

        leaf_device_cls.return_value.run.assert_awaited_once()

    def test_failure_returns_one(self, settings: dict[str, str]) -> None:
        with patch.object(cli, "LeafDevice") as leaf_device_cls:
            leaf_device_cls.return_value.run = AsyncMock(side_effect=RuntimeError("Could not invoke Direct Method"))
            assert cli.main(REQUIRED_ARGS) == 1

    def test_invalid_certificate_returns_one(self, settings: dict[str, str]) -> None:
        with patch.object(cli, "LeafDevice", side_effect=ValueError("'x' is not a path to a certificate file")):
            assert cli.main(REQUIRED_ARGS) == 1

    @pytest.mark.parametrize("flag, verbose", [([], False), (["--verbose"], True), (["--verb"], True)])
    def test_logging_follows_parsed_verbosity(self, settings: dict[str, str], flag: list[str], verbose: bool) -> None:
        """Test that abbreviated flags accepted by argparse also switch on debug logging."""
        with patch.object(cli, "LeafDevice") as leaf_device_cls, patch.object(cli, "configure_logging") as configure:
            leaf_device_cls.return_value.run = AsyncMock()
            cli.main(REQUIRED_ARGS + flag)

        configure.assert_called_once_with(verbose)
