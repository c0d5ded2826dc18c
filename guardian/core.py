"""
guardian.core
~~~~~~~~~~~~~
Non-blocking reverse proxy that authenticates and authorizes every request
before forwarding it to a single backend.
"""

from __future__ import annotations

import asyncio
import signal
import ssl
import sys
import time
from typing import List, Optional, Tuple
from urllib.parse import urlsplit

from .acls import Action, AuthorizationStore, RuleSet
from .auth import AuthStatus, CredentialStore, hash_password
from .config import Config
from .loading import LoadError
from .logger import GuardianLogger
from .pipeline import Gatekeeper, Headers, Verdict, request_path

CRLF = b"\r\n"
BUFFER = 65_536
MAX_HEAD = 64 * 1024

# Demo stores used when no credential/authorization file is configured.
DEMO_CREDENTIALS = {
    "foo": hash_password("bar"),
    "baz": hash_password("boo"),
}
DEMO_AUTHORIZATIONS = {
    "foo": RuleSet(Action.ALLOW, frozenset({"GET /_cluster/health"})),
    "baz": RuleSet(Action.DENY, frozenset({"GET /_cluster/health"})),
}


def run_guardian(config: Config) -> None:
    logger = GuardianLogger(config.log_path)
    try:
        server = GuardianServer(config, logger)
    except LoadError as e:
        logger.error(str(e))
        logger.close()
        print(f"▸ Cannot start: {e}", file=sys.stderr)
        sys.exit(1)
    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        print("\n▸ Guardian shut down.")
    finally:
        logger.close()


def build_stores(
    cfg: Config, logger: Optional[GuardianLogger] = None
) -> Tuple[CredentialStore, AuthorizationStore]:
    """Load both stores; any :class:`LoadError` propagates."""
    if cfg.credentials_path:
        credentials = CredentialStore.from_path(cfg.credentials_path)
    else:
        if logger:
            logger.warning("no credentials file configured, using built-in demo credentials")
        credentials = CredentialStore.from_map(DEMO_CREDENTIALS)

    if cfg.authorizations_path:
        authorizations = AuthorizationStore.from_path(cfg.authorizations_path)
    else:
        if logger:
            logger.warning("no authorizations file configured, using built-in demo rules")
        authorizations = AuthorizationStore.from_map(DEMO_AUTHORIZATIONS)

    return credentials, authorizations


class GuardianServer:
    def __init__(self, cfg: Config, logger: GuardianLogger) -> None:
        self.cfg = cfg
        self.logger = logger
        self.backend = _Backend(cfg.backend_url)
        credentials, authorizations = build_stores(cfg, self.logger)
        self.gatekeeper = Gatekeeper(credentials, authorizations, cfg.realm)
        self._server: Optional[asyncio.Server] = None

    # ------------------------------------------------------------------ #
    # lifecycle
    # ------------------------------------------------------------------ #

    async def start(self) -> asyncio.Server:
        self._server = await asyncio.start_server(
            self._handle_client,
            host=self.cfg.listen_host,
            port=self.cfg.listen_port,
        )
        return self._server

    async def serve_forever(self) -> None:
        server = await self.start()
        self._install_reload_signal()

        bind_str = ", ".join(str(s.getsockname()) for s in server.sockets)
        print(f"▸ Guardian listening on {bind_str}  (backend={self.cfg.backend_url})")

        async with server:
            await server.serve_forever()

    def _install_reload_signal(self) -> None:
        if not hasattr(signal, "SIGHUP"):
            return
        try:
            asyncio.get_running_loop().add_signal_handler(signal.SIGHUP, self.reload)
        except (NotImplementedError, RuntimeError):
            pass

    def reload(self) -> bool:
        """Re-read the configured files and swap them in.

        On failure the current stores stay active.
        """
        try:
            credentials, authorizations = build_stores(self.cfg)
        except LoadError as e:
            self.logger.error(f"reload failed, keeping current stores: {e}")
            return False
        self.gatekeeper.swap(credentials, authorizations)
        self.logger.reload("credentials and authorizations")
        return True

    # ------------------------------------------------------------------ #
    # per-connection
    # ------------------------------------------------------------------ #

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        start_ts = time.time()
        peer = writer.get_extra_info("peername")
        peer_ip = peer[0] if peer else "-"

        try:
            req_line, headers = await _read_request_head(reader)
            method, target, proto = _parse_request_line(req_line)
            path = request_path(target)

            verdict = self.gatekeeper.evaluate(method, target, headers)
            self._log_verdict(verdict, peer_ip, method, path, proto)
            if not verdict.forwarded:
                await _send_simple_response(writer, verdict.status, verdict.body, verdict.headers)
                return

            framing = _body_framing(headers)
            fwd_headers = Gatekeeper.forward_headers(headers, verdict.username)
            status = await self._forward_http(
                reader, writer, method, target, proto, fwd_headers, framing
            )

            self.logger.forward(
                peer_ip,
                method,
                path,
                proto,
                verdict.username,
                status,
                int((time.time() - start_ts) * 1000),
            )

        except ProxyError as e:
            try:
                await _send_simple_response(writer, e.status, f"{e.status} {e.msg}\n".encode())
            except ConnectionError:
                pass
            self.logger.error(f"{peer_ip} {e}")
        except (ConnectionError, asyncio.IncompleteReadError):
            pass
        finally:
            try:
                writer.close()
                await writer.wait_closed()
            except ConnectionError:
                pass

    def _log_verdict(self, verdict: Verdict, ip: str, method: str, path: str, proto: str) -> None:
        if verdict.auth_status is not AuthStatus.PASSED:
            reason = verdict.auth_status.value if verdict.auth_status else "-"
            self.logger.auth_fail(ip, method, path, proto, verdict.username, reason)
            return
        self.logger.auth_pass(ip, method, path, proto, verdict.username)
        if verdict.forwarded:
            self.logger.authz_pass(ip, method, path, proto, verdict.username)
        else:
            self.logger.authz_fail(ip, method, path, proto, verdict.username)

    async def _forward_http(
        self,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
        method: str,
        target: str,
        proto: str,
        headers: Headers,
        framing: Tuple[str, int],
    ) -> int:
        try:
            remote_reader, remote_writer = await asyncio.open_connection(
                self.backend.host, self.backend.port, ssl=self.backend.ssl
            )
        except OSError as e:
            raise ProxyError(502, f"Bad Gateway: {e}") from e

        req_line = f"{method} {self.backend.target_for(target)} {proto}".encode("latin-1")
        upload: Optional[asyncio.Task] = None
        try:
            remote_writer.write(_rebuild_request_head(req_line, headers, self.backend.netloc))
            await remote_writer.drain()
            upload = asyncio.create_task(_send_body(client_reader, remote_writer, framing))

            first = await remote_reader.read(BUFFER)
            status = _status_of(first)
            if first:
                client_writer.write(first)
                await client_writer.drain()
            await _pipe_stream(remote_reader, client_writer)
        finally:
            if upload is not None:
                upload.cancel()
            remote_writer.close()
        return status


class ProxyError(Exception):
    def __init__(self, status: int, msg: str):
        self.status = status
        self.msg = msg
        super().__init__(f"{status} {msg}")


class _Backend:
    """Where forwarded requests go, parsed once from the backend URL."""

    def __init__(self, url: str) -> None:
        parts = urlsplit(url)
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise LoadError(f"backend: unsupported URL {url!r}")
        self.host = parts.hostname
        self.port = parts.port or (443 if parts.scheme == "https" else 80)
        self.netloc = parts.netloc.rpartition("@")[2]
        self.base_path = parts.path
        self.ssl: Optional[ssl.SSLContext] = (
            ssl.create_default_context() if parts.scheme == "https" else None
        )

    def target_for(self, target: str) -> str:
        """Origin-form target on the backend, base path joined with one slash."""
        if not target.startswith("/"):
            parts = urlsplit(target)
            target = (parts.path or "/") + (f"?{parts.query}" if parts.query else "")
        if not self.base_path:
            return target
        a, b = self.base_path.endswith("/"), target.startswith("/")
        if a and b:
            return self.base_path + target[1:]
        if not a and not b:
            return self.base_path + "/" + target
        return self.base_path + target


async def _read_request_head(reader: asyncio.StreamReader) -> Tuple[bytes, Headers]:
    head = b""
    while True:
        try:
            line = await reader.readline()
        except ValueError:
            raise ProxyError(400, "Bad Request: header line too long") from None
        if not line:
            raise ProxyError(400, "Bad Request: EOF before headers complete")
        head += line
        if len(head) > MAX_HEAD:
            raise ProxyError(400, "Bad Request: head too large")
        if line == CRLF:
            break

    lines = head.split(CRLF)[:-2]
    if not lines:
        raise ProxyError(400, "Bad Request: empty head")

    req_line = lines[0]
    hdrs: Headers = []
    for raw in lines[1:]:
        if b":" in raw:
            k, v = raw.split(b":", 1)
            hdrs.append((k.decode("latin-1").strip(), v.decode("latin-1").strip()))
    return req_line, hdrs


def _parse_request_line(line: bytes) -> Tuple[str, str, str]:
    parts = line.decode("latin-1").strip().split()
    if len(parts) != 3:
        raise ProxyError(400, "Bad Request: malformed request-line")
    method, target, proto = parts
    return method, target, proto


def _status_of(first_chunk: bytes) -> int:
    try:
        return int(first_chunk.split(b" ", 2)[1])
    except (IndexError, ValueError):
        return 0


def _body_framing(headers: Headers) -> Tuple[str, int]:
    """How the request body is delimited: ``("length", n)`` or ``("chunked", 0)``."""
    lengths = {v.strip() for k, v in headers if k.lower() == "content-length"}
    codings = [v for k, v in headers if k.lower() == "transfer-encoding"]

    if codings:
        if lengths:
            raise ProxyError(400, "Bad Request: both Content-Length and Transfer-Encoding")
        last = ",".join(codings).split(",")[-1].strip().lower()
        if last != "chunked":
            raise ProxyError(400, "Bad Request: unsupported Transfer-Encoding")
        return "chunked", 0

    if not lengths:
        return "length", 0
    if len(lengths) > 1:
        raise ProxyError(400, "Bad Request: conflicting Content-Length")
    raw = lengths.pop()
    if not raw.isdigit():
        raise ProxyError(400, "Bad Request: invalid Content-Length")
    return "length", int(raw)


async def _send_body(
    src: asyncio.StreamReader, dst: asyncio.StreamWriter, framing: Tuple[str, int]
) -> None:
    """Relay exactly one request body; bytes after it are never read."""
    kind, remaining = framing
    try:
        if kind == "length":
            while remaining:
                chunk = await src.read(min(BUFFER, remaining))
                if not chunk:
                    return
                remaining -= len(chunk)
                dst.write(chunk)
                await dst.drain()
            return

        while True:
            size_line = await src.readline()
            if not size_line:
                return
            dst.write(size_line)
            try:
                size = int(size_line.split(b";", 1)[0].strip(), 16)
            except ValueError:
                return
            if size == 0:
                break
            dst.write(await src.readexactly(size + 2))
            await dst.drain()

        # trailer section, ended by an empty line
        while True:
            line = await src.readline()
            if not line:
                return
            dst.write(line)
            if line in (CRLF, b"\n"):
                break
        await dst.drain()
    except (ConnectionError, asyncio.IncompleteReadError, ValueError):
        pass


_HOP_BY_HOP = {
    "proxy-authorization",
    "proxy-connection",
    "connection",
    "keep-alive",
    "te",
    "trailer",
    "upgrade",
}


def _encode_header(name: str, value: str) -> bytes:
    # Client headers were decoded as Latin-1; injected values may need UTF-8.
    line = f"{name}: {value}"
    try:
        return line.encode("latin-1")
    except UnicodeEncodeError:
        return line.encode("utf-8")


def _rebuild_request_head(req_line: bytes, headers: Headers, host: str) -> bytes:
    head = bytearray(req_line.rstrip() + CRLF)
    has_host = False
    for k, v in headers:
        if k.lower() in _HOP_BY_HOP:
            continue
        has_host = has_host or k.lower() == "host"
        head.extend(_encode_header(k, v) + CRLF)
    if not has_host:
        head.extend(f"Host: {host}".encode("latin-1") + CRLF)
    head.extend(b"Connection: close" + CRLF)
    head.extend(CRLF)
    return bytes(head)


_REASONS = {
    400: "Bad Request",
    401: "Unauthorized",
    403: "Forbidden",
    502: "Bad Gateway",
}


async def _send_simple_response(
    writer: asyncio.StreamWriter,
    status: int,
    body: bytes = b"",
    extra: Optional[List[Tuple[str, str]]] = None,
) -> None:
    reason = _REASONS.get(status, "Error")
    head = f"HTTP/1.1 {status} {reason}\r\n"
    for k, v in extra or []:
        head += f"{k}: {v}\r\n"
    head += "Content-Type: text/plain; charset=utf-8\r\n"
    head += "X-Content-Type-Options: nosniff\r\n"
    head += f"Content-Length: {len(body)}\r\nConnection: close\r\n\r\n"
    writer.write(head.encode("latin-1") + body)
    await writer.drain()


async def _pipe_stream(src: asyncio.StreamReader, dst: asyncio.StreamWriter) -> None:
    try:
        while not src.at_eof():
            chunk = await src.read(BUFFER)
            if not chunk:
                break
            dst.write(chunk)
            await dst.drain()
    except ConnectionError:
        pass
