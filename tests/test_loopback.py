from __future__ import annotations

import io
import os
import random
import socket

import pytest

from conftest import LoopbackServer
from tftpc.errors import PeerError
from tftpc.net import Impairment, UdpEndpoint
from tftpc.session import Direction, TransferSession


def run_session(port, direction, filename, f, impairment=None, **kwargs):
    kwargs.setdefault("timeout_ms", 500)
    with UdpEndpoint.for_family(socket.AF_INET, impairment) as udp:
        session = TransferSession(udp, ("127.0.0.1", port), direction, filename, f, **kwargs)
        metrics = session.run()
    return session, metrics


def test_download(server_root, tftp_server):
    content = os.urandom(1500)
    (server_root / "blob.bin").write_bytes(content)
    out = io.BytesIO()

    session, metrics = run_session(tftp_server.port, Direction.DOWNLOAD, "blob.bin", out)

    assert out.getvalue() == content
    assert metrics.bytes_transferred == 1500
    assert metrics.blocks == 3
    tftp_server.join(timeout=5.0)
    assert session.peer == ("127.0.0.1", tftp_server.transfer_port)
    assert tftp_server.transfer_port != tftp_server.port


def test_upload_exact_multiple(server_root, tftp_server):
    content = os.urandom(1024)

    _, metrics = run_session(tftp_server.port, Direction.UPLOAD, "up.bin", io.BytesIO(content))

    tftp_server.join(timeout=5.0)
    assert metrics.bytes_transferred == 1024
    assert metrics.blocks == 3
    assert (server_root / "up.bin").read_bytes() == content


def test_missing_remote_file(tftp_server):
    with pytest.raises(PeerError) as exc_info:
        run_session(tftp_server.port, Direction.DOWNLOAD, "nope.txt", io.BytesIO())

    assert exc_info.value.code == 1


def test_download_survives_loss(server_root):
    random.seed(1350)
    content = os.urandom(2000)
    (server_root / "lossy.bin").write_bytes(content)
    server = LoopbackServer(server_root, timeout=0.3, attempts=20)
    server.start()
    out = io.BytesIO()
    try:
        _, metrics = run_session(
            server.port,
            Direction.DOWNLOAD,
            "lossy.bin",
            out,
            impairment=Impairment(loss_rate=0.2),
            timeout_ms=100,
            max_retries=20,
        )
    finally:
        server.join(timeout=10.0)

    assert out.getvalue() == content
    assert metrics.bytes_transferred == 2000
