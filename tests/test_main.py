"""
Tests for the command line entry point.
"""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

from meshcore_client.__main__ import main, parse_args
from meshcore_client.errors import TransportError


class TestParseArgs:
    """Tests for argument parsing."""

    def test_defaults(self) -> None:
        args = parse_args([])

        assert args.port is None
        assert args.baudrate is None
        assert args.watch == 0.0
        assert not args.verbose
        assert not args.list_ports

    def test_all_options(self) -> None:
        args = parse_args(["/dev/ttyACM0", "-b", "57600", "-c", "client.toml", "-w", "30", "-v"])

        assert args.port == "/dev/ttyACM0"
        assert args.baudrate == 57600
        assert args.config == Path("client.toml")
        assert args.watch == 30.0
        assert args.verbose


class TestMain:
    """Tests for main()."""

    def test_list_ports(self, capsys) -> None:
        port = MagicMock(device="/dev/ttyUSB0", description="CP2102")

        with patch("meshcore_client.__main__.list_ports", return_value=[port]):
            assert main(["--list-ports"]) == 0

        assert "/dev/ttyUSB0\tCP2102" in capsys.readouterr().out

    def test_connection_failure_exit_code(self) -> None:
        with patch("meshcore_client.__main__.run_client", AsyncMock(side_effect=TransportError("no port"))):
            assert main(["/dev/missing"]) == 1

    def test_success_exit_code(self) -> None:
        with patch("meshcore_client.__main__.run_client", AsyncMock(return_value=None)) as run_mock:
            assert main(["/dev/ttyUSB0", "-w", "5"]) == 0

        run_mock.assert_awaited_once_with("/dev/ttyUSB0", None, None, 5.0)
