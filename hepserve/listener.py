"""Listeners that receive HEP packets over UDP, TCP, TLS and WebSocket."""

from __future__ import annotations

import base64
import datetime
import hashlib
import logging
import os
import socket
import ssl
import struct
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from itertools import cycle
from pathlib import Path
from queue import Queue
from typing import BinaryIO

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

log = logging.getLogger(__name__)

MAX_PKT_LEN = 65507
MIN_PKT_LEN = 6
WS_GUID = "258EAFA5-E914-47DA-95CA-C5AB0DC85B11"
OP_CLOSE = 0x8

_POLL_SECONDS = 1.0
_HANDSHAKE_SECONDS = 10.0
_MAX_HEADER_LINE = 8192

_TLS_VERSIONS = {
    "1.0": ssl.TLSVersion.TLSv1,
    "1.1": ssl.TLSVersion.TLSv1_1,
    "1.2": ssl.TLSVersion.TLSv1_2,
    "1.3": ssl.TLSVersion.TLSv1_3,
}


def parse_tls_version(version_text):
    """Map "1.0" to "1.3" to a TLS version; anything else gives TLS 1.2."""
    version = _TLS_VERSIONS.get(version_text)
    if version is None:
        log.warning("Invalid TLS version %s, defaulting to 1.2", version_text)
        return ssl.TLSVersion.TLSv1_2
    if version_text in ("1.0", "1.1"):
        log.warning("TLS%s is not recommended.  Use 1.2 or greater where possible", version_text)
    return version


def websocket_accept_key(key):
    """Return the Sec-WebSocket-Accept value for a client key."""
    digest = hashlib.sha1((key + WS_GUID).encode("ascii")).digest()
    return base64.b64encode(digest).decode("ascii")


def unmask(payload, mask):
    """XOR ``payload`` with the four byte ``mask``; the same call masks again."""
    if len(mask) != 4:
        raise ValueError("websocket mask must be four bytes")
    return bytes(a ^ b for a, b in zip(payload, cycle(mask)))


@dataclass
class HEPStats:
    """Packet counters shared between listener threads."""

    dup_count: int = 0
    err_count: int = 0
    hep_count: int = 0
    pkt_count: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def add(self, name: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + amount)


@dataclass(frozen=True)
class WSFrame:
    """One WebSocket frame with its payload already unmasked."""

    fin: bool
    opcode: int
    masked: bool
    mask: bytes
    payload: bytes


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    chunks = []
    remaining = size
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def _read_required(stream: BinaryIO, size: int) -> bytes:
    data = _read_exact(stream, size)
    if len(data) != size:
        raise EOFError("unexpected end of websocket stream")
    return data


def read_ws_frame(stream):
    """Read one frame; raise EOFError on a short read, ValueError if too large."""
    b0, b1 = _read_required(stream, 2)
    length = b1 & 0x7F
    if length == 126:
        (length,) = struct.unpack(">H", _read_required(stream, 2))
    elif length == 127:
        (length,) = struct.unpack(">Q", _read_required(stream, 8))
    masked = bool(b1 & 0x80)
    mask = _read_required(stream, 4) if masked else b""
    if length > MAX_PKT_LEN:
        raise ValueError(f"websocket frame of {length} bytes is too large")
    payload = _read_required(stream, length)
    if masked:
        payload = unmask(payload, mask)
    return WSFrame(bool(b0 & 0x80), b0 & 0x0F, masked, mask, payload)


def _resolve(addr: str, socktype: int):
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {addr!r}")
    infos = socket.getaddrinfo(
        host.strip("[]") or None, int(port), type=socktype, flags=socket.AI_PASSIVE
    )
    family, _, _, _, sockaddr = infos[0]
    return family, sockaddr


def _ensure_certificate(folder) -> tuple[Path, Path]:
    """Load the certificate pair kept in ``folder``, creating it when missing."""
    directory = Path(folder) / "hepserve"
    cert_path = directory / "cert.pem"
    key_path = directory / "key.pem"
    if cert_path.is_file() and key_path.is_file():
        return cert_path, key_path
    directory.mkdir(parents=True, exist_ok=True)
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "hepserve")])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=3650))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName("localhost")]), critical=False)
        .sign(key, hashes.SHA256())
    )
    key_path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    os.chmod(key_path, 0o600)
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    return cert_path, key_path


class HEPListener:
    """Receive raw HEP packets and put them on a queue."""

    def __init__(self, queue):
        self.queue: Queue = queue
        self.stats = HEPStats()
        self.addresses: dict[str, tuple] = {}
        self._stopped = threading.Event()
        self._lock = threading.Lock()
        self._conns: set[socket.socket] = set()
        self._running: list[threading.Event] = []

    @contextmanager
    def _serving(self):
        done = threading.Event()
        with self._lock:
            self._running.append(done)
        try:
            yield
        finally:
            done.set()

    @contextmanager
    def _track(self, conn: socket.socket):
        with self._lock:
            self._conns.add(conn)
        try:
            yield conn
        finally:
            with self._lock:
                self._conns.discard(conn)
            conn.close()

    def _deliver(self, data: bytes) -> None:
        self.queue.put(data)
        self.stats.add("pkt_count")

    def handle_stream(self, stream, protocol):
        """Read length-prefixed HEP packets from a byte stream until it ends."""
        try:
            while not self._stopped.is_set():
                header = _read_exact(stream, MIN_PKT_LEN)
                if len(header) < MIN_PKT_LEN:
                    log.warning("%s stream ended", protocol)
                    return
                size = int.from_bytes(header[4:6], "big")
                if size > MAX_PKT_LEN or size < MIN_PKT_LEN:
                    log.warning("wrong or too big HEP packet size with %d bytes", size)
                    return
                rest = _read_exact(stream, size - MIN_PKT_LEN)
                if len(rest) != size - MIN_PKT_LEN:
                    log.warning("unusual packet size with %d bytes", len(header) + len(rest))
                    self.stats.add("err_count")
                    return
                self._deliver(header + rest)
        except OSError as err:
            log.warning("%s read failed: %s", protocol, err)

    def serve_udp(self, addr):
        """Receive HEP datagrams on ``addr`` until stopped."""
        with self._serving():
            try:
                family, sockaddr = _resolve(addr, socket.SOCK_DGRAM)
                sock = socket.socket(family, socket.SOCK_DGRAM)
                sock.bind(sockaddr)
            except (ValueError, OSError) as err:
                log.error("%s", err)
                return
            with sock:
                sock.settimeout(_POLL_SECONDS)
                self.addresses["udp"] = sock.getsockname()
                while not self._stopped.is_set():
                    try:
                        data = sock.recv(65536)
                    except TimeoutError:
                        continue
                    except OSError as err:
                        log.error("%s", err)
                        return
                    if len(data) > MAX_PKT_LEN:
                        log.warning("received too big packet with %d bytes", len(data))
                        self.stats.add("err_count")
                        continue
                    self._deliver(data)
                log.info("stopping UDP listener on %s", sock.getsockname())

    def _accept_loop(self, addr: str, name: str, handler) -> None:
        with self._serving():
            try:
                family, sockaddr = _resolve(addr, socket.SOCK_STREAM)
                server = socket.create_server(sockaddr, family=family)
            except (ValueError, OSError) as err:
                log.error("%s", err)
                return
            threads: list[threading.Thread] = []
            with server:
                server.settimeout(_POLL_SECONDS)
                self.addresses[name] = server.getsockname()
                while not self._stopped.is_set():
                    try:
                        conn, peer = server.accept()
                    except TimeoutError:
                        continue
                    except OSError as err:
                        log.error("failed to accept %s connection: %s", name.upper(), err)
                        continue
                    conn.settimeout(None)
                    log.info("new %s connection %s -> %s", name.upper(), peer, server.getsockname())
                    thread = threading.Thread(target=handler, args=(conn,), daemon=True)
                    thread.start()
                    threads.append(thread)
                log.info("stopping %s listener on %s", name.upper(), server.getsockname())
            for thread in threads:
                thread.join()

    def _stream_conn(self, conn: socket.socket, protocol: str) -> None:
        with self._track(conn) as tracked, tracked.makefile("rb") as rfile:
            self.handle_stream(rfile, protocol)
        log.info("closing %s connection", protocol)

    def serve_tcp(self, addr):
        """Accept TCP connections carrying HEP packets until stopped."""
        self._accept_loop(addr, "tcp", lambda conn: self._stream_conn(conn, "TCP"))

    def serve_tls(self, addr, cert_folder, min_version):
        """Accept TLS connections carrying HEP packets until stopped."""
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.minimum_version = parse_tls_version(min_version)
        try:
            cert_path, key_path = _ensure_certificate(cert_folder)
            context.load_cert_chain(cert_path, key_path)
        except (OSError, ValueError, ssl.SSLError) as err:
            log.error("%s", err)
            return

        def handler(conn: socket.socket) -> None:
            conn.settimeout(_HANDSHAKE_SECONDS)
            try:
                tls_conn = context.wrap_socket(conn, server_side=True)
            except (ssl.SSLError, OSError) as err:
                log.error("TLS handshake failed: %s", err)
                conn.close()
                return
            tls_conn.settimeout(None)
            self._stream_conn(tls_conn, "TLS")

        self._accept_loop(addr, "tls", handler)

    def serve_ws(self, addr):
        """Accept WebSocket connections carrying HEP packets until stopped."""
        self._accept_loop(addr, "ws", self._ws_conn)

    def _ws_conn(self, conn: socket.socket) -> None:
        with self._track(conn) as tracked, tracked.makefile("rb") as rfile:
            try:
                self._upgrade(tracked, rfile)
            except (ValueError, OSError) as err:
                log.error("%s", err)
                return
            self._handle_ws(rfile)
        log.info("closing WS connection")

    @staticmethod
    def _upgrade(conn: socket.socket, rfile: BinaryIO) -> None:
        request = rfile.readline(_MAX_HEADER_LINE).split()
        if len(request) < 3 or request[0] != b"GET":
            raise ValueError("bad websocket handshake request")
        headers: dict[bytes, bytes] = {}
        while True:
            line = rfile.readline(_MAX_HEADER_LINE)
            if not line:
                raise ValueError("unexpected end of websocket handshake")
            line = line.rstrip(b"\r\n")
            if not line:
                break
            name, sep, value = line.partition(b":")
            if sep:
                headers[name.strip().lower()] = value.strip()
        if headers.get(b"upgrade", b"").lower() != b"websocket":
            raise ValueError("missing websocket upgrade header")
        if headers.get(b"sec-websocket-version") != b"13":
            raise ValueError("unsupported websocket version")
        key = headers.get(b"sec-websocket-key")
        if not key:
            raise ValueError("missing websocket key")
        accept = websocket_accept_key(key.decode("latin-1"))
        conn.sendall(
            (
                "HTTP/1.1 101 Switching Protocols\r\n"
                "Upgrade: websocket\r\n"
                "Connection: Upgrade\r\n"
                f"Sec-WebSocket-Accept: {accept}\r\n\r\n"
            ).encode("ascii")
        )

    def _handle_ws(self, rfile: BinaryIO) -> None:
        while True:
            try:
                frame = read_ws_frame(rfile)
            except (EOFError, ValueError, OSError) as err:
                log.error("%s", err)
                return
            if frame.opcode == OP_CLOSE:
                return
            self._deliver(frame.payload)

    def stop(self):
        """Stop all listeners and wait for them to finish."""
        self._stopped.set()
        with self._lock:
            conns = list(self._conns)
            running = list(self._running)
        for conn in conns:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
        for done in running:
            done.wait()