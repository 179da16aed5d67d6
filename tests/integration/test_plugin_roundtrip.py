"""End-to-end tests: a real gRPC server on a unix socket, driven by KMSClient."""

import shutil
import socket
import tempfile
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import grpc
import pytest

from kmsplugin.core.config import PluginConfig
from kmsplugin.network import client as client_mod
from kmsplugin.network.client import KMSClient
from kmsplugin.network.server import PluginServer, ServerState
from kmsplugin.security import crypto
from kmsplugin.security.keysource import StaticKeySource

pytestmark = pytest.mark.skipif(not hasattr(socket, "AF_UNIX"), reason="unix sockets required")

KEY_URI = "projects/p/secrets/kms-master/versions/1"


# --- Fixtures ---

@pytest.fixture
def socket_path():
    # keep the path short; AF_UNIX paths are limited to ~100 bytes
    root = Path(tempfile.mkdtemp(prefix="kms"))
    try:
        yield str(root / "kms.sock")
    finally:
        shutil.rmtree(root, ignore_errors=True)


def _start(socket_path, key=b"testkey"):
    config = PluginConfig(key_uri=KEY_URI, key_source="keyring", unix_socket=socket_path, shutdown_grace=2.0)
    return PluginServer(config, key_source=StaticKeySource({KEY_URI: key})).init().serve()


@pytest.fixture
def running(socket_path):
    plugin = _start(socket_path)
    try:
        yield plugin
    finally:
        plugin.stop()


@pytest.fixture
def kms(running, socket_path):
    with KMSClient(socket_path) as c:
        yield c


# --- Tests ---

def test_version(kms):
    assert kms.version() == {
        "version": "v1beta1",
        "runtime_name": "GCP Secret Manager",
        "runtime_version": "0.0.1",
    }


def test_encrypt_decrypt_hello_world(kms):
    cipher = kms.encrypt(b"hello world")
    assert b"hello world" not in cipher
    assert kms.decrypt(cipher) == b"hello world"


def test_payload_opens_offline_with_same_master_key(kms):
    """What the plugin returns is exactly the stored envelope format."""
    cipher = kms.encrypt(b"etcd value")
    assert crypto.decrypt(b"testkey", cipher) == b"etcd value"


def test_wrong_key_is_generic_invalid_argument(kms, socket_path):
    cipher = kms.encrypt(b"hello world")
    kms.close()

    # a second plugin holding a different master key
    other_path = socket_path + "2"
    plugin = _start(other_path, key=b"wrongkey")
    try:
        with KMSClient(other_path) as other:
            with pytest.raises(grpc.RpcError) as exc:
                other.decrypt(cipher)
    finally:
        plugin.stop()
    assert exc.value.code() == grpc.StatusCode.INVALID_ARGUMENT
    assert exc.value.details() == "decryption failed"


def test_malformed_payload_is_invalid_argument(kms):
    with pytest.raises(grpc.RpcError) as exc:
        kms.decrypt(b"not a payload")
    assert exc.value.code() == grpc.StatusCode.INVALID_ARGUMENT


def test_concurrent_calls_are_independent(kms):
    values = [f"secret-{i}".encode() for i in range(32)]
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda v: kms.decrypt(kms.encrypt(v)), values))
    assert results == values


def test_healthz(kms):
    assert kms.healthz() is True


def test_stale_socket_file_is_replaced(socket_path):
    Path(socket_path).write_bytes(b"")
    plugin = _start(socket_path)
    try:
        with KMSClient(socket_path) as c:
            assert c.version()["version"] == "v1beta1"
    finally:
        plugin.stop()


def test_stop_removes_socket_file_and_stops(socket_path):
    plugin = _start(socket_path)
    assert Path(socket_path).exists()
    plugin.stop()
    assert plugin.state is ServerState.STOPPED
    assert not Path(socket_path).exists()


def test_client_main_version(running, socket_path, capsys):
    assert client_mod.main(["--unix-socket", socket_path, "version"]) == 0
    assert capsys.readouterr().out.strip() == "v1beta1 GCP Secret Manager 0.0.1"


def test_client_main_healthz(running, socket_path, capsys):
    assert client_mod.main(["--unix-socket", socket_path, "healthz"]) == 0
    assert capsys.readouterr().out.strip() == "ok"


def test_client_main_reports_rpc_failure(socket_path, capsys):
    # nothing is listening
    assert client_mod.main(["--unix-socket", socket_path, "--timeout", "0.5", "version"]) == 1
    assert "ERROR: " in capsys.readouterr().err
