"""Unit tests for the network server module."""

import socket
from unittest.mock import MagicMock, patch

import pytest

from kmsplugin.core.config import PluginConfig
from kmsplugin.core.exceptions import TransportError
from kmsplugin.network import server
from kmsplugin.network.server import PluginServer, ServerState, UnixSocketListener, grpc_address
from kmsplugin.network.service import PluginService
from kmsplugin.security.keysource import StaticKeySource

KEY_ID = "dev-key"


# --- Fixtures ---

@pytest.fixture
def config(tmp_path):
    return PluginConfig(
        key_uri=KEY_ID,
        key_source="keyring",
        unix_socket=str(tmp_path / "kms.sock"),
        shutdown_grace=2.0,
    )


@pytest.fixture
def mock_grpc_server():
    """Patches grpc.server() as used by kmsplugin.network.server."""
    with patch("kmsplugin.network.server.grpc.server") as factory:
        srv = MagicMock()
        srv.add_insecure_port.return_value = 1
        factory.return_value = srv
        yield srv


@pytest.fixture
def plugin(config):
    return PluginServer(config, key_source=StaticKeySource({KEY_ID: b"k"}))


# --- Addressing & listener ---

def test_grpc_address():
    assert grpc_address("/var/run/k8splugin.sock") == "unix:/var/run/k8splugin.sock"
    assert grpc_address("@kms") == "unix-abstract:kms"


def test_clean_removes_stale_socket_file(tmp_path):
    path = tmp_path / "kms.sock"
    path.write_bytes(b"")
    UnixSocketListener(str(path)).clean()
    assert not path.exists()


def test_clean_missing_file_is_fine(tmp_path):
    UnixSocketListener(str(tmp_path / "kms.sock")).clean()


def test_clean_abstract_socket_is_noop():
    with patch("kmsplugin.network.server.os.remove") as remove:
        UnixSocketListener("@kms").clean()
    remove.assert_not_called()


def test_clean_refuses_directory(tmp_path):
    with pytest.raises(TransportError, match="is a directory"):
        UnixSocketListener(str(tmp_path)).clean()


def test_clean_permission_error(tmp_path):
    path = tmp_path / "kms.sock"
    path.write_bytes(b"")
    with patch("kmsplugin.network.server.os.remove", side_effect=PermissionError("denied")):
        with pytest.raises(TransportError, match="failed to delete socket file"):
            UnixSocketListener(str(path)).clean()


def test_bind_records_port():
    srv = MagicMock()
    srv.add_insecure_port.return_value = 1
    listener = UnixSocketListener("/tmp/kms.sock")
    assert listener.bind(srv) == 1
    srv.add_insecure_port.assert_called_once_with("unix:/tmp/kms.sock")
    assert listener.port == 1


@pytest.mark.parametrize("outcome", [0, RuntimeError("Failed to bind")])
def test_bind_failure_is_transport_error(outcome):
    srv = MagicMock()
    if isinstance(outcome, Exception):
        srv.add_insecure_port.side_effect = outcome
    else:
        srv.add_insecure_port.return_value = outcome
    with pytest.raises(TransportError):
        UnixSocketListener("/tmp/kms.sock").bind(srv)


# --- Lifecycle ---

def test_lifecycle_happy_path(plugin, mock_grpc_server, config):
    assert plugin.state is ServerState.UNINITIALIZED
    assert plugin.listener is None and plugin.server is None

    plugin.init()
    assert plugin.state is ServerState.INITIALIZED
    assert isinstance(plugin.service, PluginService)

    plugin.serve()
    assert plugin.state is ServerState.SERVING
    assert plugin.server is mock_grpc_server
    assert plugin.listener.path == config.unix_socket
    mock_grpc_server.add_generic_rpc_handlers.assert_called_once()
    mock_grpc_server.start.assert_called_once()

    plugin.stop()
    assert plugin.state is ServerState.STOPPED
    mock_grpc_server.stop.assert_called_once_with(2.0)
    mock_grpc_server.stop.return_value.wait.assert_called_once()


def test_stop_with_explicit_grace(plugin, mock_grpc_server):
    plugin.init().serve()
    plugin.stop(grace=0.5)
    mock_grpc_server.stop.assert_called_once_with(0.5)


def test_stop_is_idempotent(plugin, mock_grpc_server):
    plugin.init().serve()
    plugin.stop()
    plugin.stop()
    assert mock_grpc_server.stop.call_count == 1


def test_stop_before_serving(plugin):
    plugin.init()
    plugin.stop()
    assert plugin.state is ServerState.STOPPED


def test_stop_closes_key_source(config, mock_grpc_server):
    source = MagicMock()
    plugin = PluginServer(config, key_source=source).init().serve()
    plugin.stop()
    source.close.assert_called_once()


def test_serve_before_init_is_rejected(plugin):
    with pytest.raises(TransportError):
        plugin.serve()


def test_no_restart_in_place(plugin, mock_grpc_server):
    plugin.init().serve()
    plugin.stop()
    with pytest.raises(TransportError):
        plugin.init()
    with pytest.raises(TransportError):
        plugin.serve()


def test_init_builds_key_source_from_config(config):
    with patch("kmsplugin.network.server.build_key_source") as build:
        plugin = PluginServer(config).init()
    build.assert_called_once_with(config)
    assert plugin.key_source is build.return_value


def test_bind_failure_stops_server(plugin, mock_grpc_server):
    mock_grpc_server.add_insecure_port.return_value = 0
    plugin.init()
    with pytest.raises(TransportError):
        plugin.serve()
    assert plugin.state is ServerState.STOPPED
    mock_grpc_server.stop.assert_called_once_with(None)
    mock_grpc_server.start.assert_not_called()


def test_wait_translates_grpc_timeout_flag(plugin, mock_grpc_server):
    plugin.init().serve()
    mock_grpc_server.wait_for_termination.return_value = True  # timed out
    assert plugin.wait(timeout=0.1) is False
    mock_grpc_server.wait_for_termination.return_value = False
    assert plugin.wait(timeout=0.1) is True


@pytest.mark.skipif(not hasattr(socket, "AF_UNIX"), reason="unix sockets required")
def test_listener_close_removes_socket_file(tmp_path):
    path = tmp_path / "kms.sock"
    path.write_bytes(b"")
    UnixSocketListener(str(path)).close()
    assert not path.exists()


def test_illegal_transition_message(plugin):
    with pytest.raises(TransportError, match="illegal lifecycle transition"):
        plugin._advance(ServerState.UNINITIALIZED)


def test_state_enum_order():
    order = [s.name for s in sorted(server.ServerState, key=lambda s: s.value)]
    assert order == ["UNINITIALIZED", "INITIALIZED", "SERVING", "DRAINING", "STOPPED"]


def test_bind_failure_closes_key_source(config, mock_grpc_server):
    source = MagicMock()
    mock_grpc_server.add_insecure_port.return_value = 0
    plugin = PluginServer(config, key_source=source).init()

    with pytest.raises(TransportError):
        plugin.serve()
    # the later stop() from the process entry point must not close it twice
    plugin.stop()
    source.close.assert_called_once()


def test_start_failure_is_transport_error(config, mock_grpc_server):
    source = MagicMock()
    mock_grpc_server.start.side_effect = RuntimeError("could not start server")
    plugin = PluginServer(config, key_source=source).init()

    with pytest.raises(TransportError, match="failed to start server"):
        plugin.serve()
    assert plugin.state is ServerState.STOPPED
    mock_grpc_server.stop.assert_called_once_with(None)
    source.close.assert_called_once()


def test_stop_closes_key_source_once(config, mock_grpc_server):
    source = MagicMock()
    plugin = PluginServer(config, key_source=source).init().serve()
    plugin.stop()
    plugin.stop()
    source.close.assert_called_once()
