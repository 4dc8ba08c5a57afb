"""
Paramiko implementation of the SSH/SFTP capability interface
"""
from __future__ import annotations

import socket
import stat as stat_module
from pathlib import Path
from typing import Any, BinaryIO, Callable, List, Optional

import paramiko

from .constants import DEFAULT_DIR_MODE, DEFAULT_TERM_TYPE, TERMINAL_POLL_INTERVAL
from .exceptions import (
    AuthRejected,
    ConnectTimeout,
    HostKeyMismatch,
    NetworkUnreachable,
    RemoteClosed,
)
from .interfaces import FileInfo, ProtocolBackend
from .logging import get_logger

logger = get_logger(__name__)

KEEPALIVE_INTERVAL = 30

# Tried in order when loading a private key of unknown type
_KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


class ParamikoBackend(ProtocolBackend):
    """
    Capability backend on top of paramiko.Transport:
    - separate transport handshake and authentication phases
    - password or private key authentication
    - host keys checked against known_hosts; unknown hosts are accepted
      and remembered (AutoAddPolicy semantics)
    - PTY channels and SFTP handles on the same transport
    """

    def __init__(
        self,
        known_hosts_path: Optional[Path] = None,
        term_type: str = DEFAULT_TERM_TYPE,
    ) -> None:
        self.term_type = term_type
        self.known_hosts_path = known_hosts_path
        self.host_keys = paramiko.HostKeys()
        self._load_host_keys()

    # --------------------
    # Host keys
    # --------------------
    def _load_host_keys(self) -> None:
        candidates = [Path("~/.ssh/known_hosts").expanduser()]
        if self.known_hosts_path:
            candidates.append(self.known_hosts_path)
        for path in candidates:
            if path.exists():
                try:
                    self.host_keys.load(str(path))
                except (OSError, paramiko.SSHException) as e:
                    logger.warning("Could not read known hosts %s: %s", path, e)

    def _check_host_key(self, transport: paramiko.Transport, host: str, port: int) -> None:
        key = transport.get_remote_server_key()
        lookup = host if port == 22 else f"[{host}]:{port}"
        known = self.host_keys.lookup(lookup)
        if known is not None and key.get_name() in known:
            if known[key.get_name()] != key:
                raise HostKeyMismatch(f"{lookup} presented a different {key.get_name()} key")
            return

        self.host_keys.add(lookup, key.get_name(), key)
        logger.info("Added host key for %s (%s)", lookup, key.get_name())
        if self.known_hosts_path:
            try:
                self.known_hosts_path.parent.mkdir(parents=True, exist_ok=True)
                self.host_keys.save(str(self.known_hosts_path))
            except OSError as e:
                logger.warning("Could not save known hosts: %s", e)

    # --------------------
    # Connection management
    # --------------------
    def load_private_key(self, path: str, passphrase: Optional[str] = None) -> paramiko.PKey:
        """Detect the key type and decrypt it with the passphrase"""
        p = Path(path).expanduser()
        if not p.is_file():
            raise AuthRejected(f"Private key not found at {p}")

        last_error: Optional[Exception] = None
        for key_class in _KEY_CLASSES:
            try:
                return key_class.from_private_key_file(str(p), password=passphrase or None)
            except paramiko.PasswordRequiredException as e:
                raise AuthRejected(f"Private key {p} needs a passphrase") from e
            except (paramiko.SSHException, ValueError) as e:
                last_error = e
            except OSError as e:
                raise AuthRejected(f"Cannot read private key {p}: {e}") from e

        raise AuthRejected(f"Failed to load private key at {p}: {last_error}") from last_error

    def open(
        self,
        host: str,
        port: int,
        user: str,
        password: Optional[str] = None,
        pkey: Any = None,
        timeout: float = 10,
        on_authenticating: Optional[Callable[[], None]] = None,
    ) -> paramiko.Transport:
        try:
            sock = socket.create_connection((host, port), timeout=timeout)
        except socket.timeout as e:
            raise ConnectTimeout(f"{host}:{port} did not answer within {timeout}s") from e
        except OSError as e:
            raise NetworkUnreachable(f"{host}:{port}: {e}") from e

        transport = paramiko.Transport(sock)
        try:
            try:
                transport.start_client(timeout=timeout)
            except socket.timeout as e:
                raise ConnectTimeout(f"SSH handshake with {host} timed out") from e
            except (paramiko.SSHException, EOFError, OSError) as e:
                raise NetworkUnreachable(f"SSH handshake with {host} failed: {e}") from e

            self._check_host_key(transport, host, port)

            if on_authenticating:
                on_authenticating()

            try:
                if pkey is not None:
                    transport.auth_publickey(user, pkey)
                else:
                    transport.auth_password(user, password or "")
            except paramiko.AuthenticationException as e:
                raise AuthRejected(f"{user}@{host}: {e}") from e
            except (paramiko.SSHException, EOFError, OSError) as e:
                raise NetworkUnreachable(f"Connection to {host} lost during authentication: {e}") from e

            if not transport.is_authenticated():
                raise AuthRejected(f"{user}@{host}: authentication incomplete")
        except Exception:
            transport.close()
            raise

        transport.set_keepalive(KEEPALIVE_INTERVAL)
        return transport

    def is_alive(self, conn: paramiko.Transport) -> bool:
        return conn.is_active()

    # --------------------
    # Terminal channels
    # --------------------
    def open_pty(self, conn: paramiko.Transport, cols: int, rows: int) -> paramiko.Channel:
        try:
            channel = conn.open_session()
            channel.get_pty(term=self.term_type, width=cols, height=rows)
            channel.invoke_shell()
        except (paramiko.SSHException, OSError) as e:
            raise RemoteClosed(f"Could not open terminal: {e}") from e
        channel.settimeout(TERMINAL_POLL_INTERVAL)
        return channel

    def read(self, channel: paramiko.Channel, size: int) -> Optional[bytes]:
        try:
            return channel.recv(size)
        except socket.timeout:
            return None
        except (paramiko.SSHException, OSError) as e:
            raise RemoteClosed(str(e)) from e

    def write(self, channel: paramiko.Channel, data: bytes) -> None:
        try:
            channel.sendall(data)
        except (paramiko.SSHException, OSError) as e:
            raise RemoteClosed(str(e)) from e

    def resize(self, channel: paramiko.Channel, cols: int, rows: int) -> None:
        try:
            channel.resize_pty(width=cols, height=rows)
        except (paramiko.SSHException, OSError) as e:
            raise RemoteClosed(str(e)) from e

    # --------------------
    # SFTP
    # --------------------
    def sftp_open(self, conn: paramiko.Transport) -> paramiko.SFTPClient:
        try:
            return paramiko.SFTPClient.from_transport(conn)
        except (paramiko.SSHException, OSError) as e:
            raise RemoteClosed(f"Could not start SFTP: {e}") from e

    def list_dir(self, sftp: paramiko.SFTPClient, path: str) -> List[FileInfo]:
        base = path.rstrip("/") or "/"
        return [
            _to_file_info(attr, f"{base.rstrip('/')}/{attr.filename}")
            for attr in sftp.listdir_attr(base)
            if attr.filename not in (".", "..")
        ]

    def stat(self, sftp: paramiko.SFTPClient, path: str) -> FileInfo:
        attr = sftp.stat(path)
        attr.filename = path.rstrip("/").rsplit("/", 1)[-1] or "/"
        return _to_file_info(attr, path)

    def open_read(self, sftp: paramiko.SFTPClient, path: str) -> BinaryIO:
        remote_file = sftp.open(path, "rb")
        remote_file.prefetch()
        return remote_file

    def open_write(self, sftp: paramiko.SFTPClient, path: str) -> BinaryIO:
        remote_file = sftp.open(path, "wb")
        remote_file.set_pipelined(True)
        return remote_file

    def mkdir(self, sftp: paramiko.SFTPClient, path: str) -> None:
        sftp.mkdir(path, DEFAULT_DIR_MODE)

    def home_dir(self, sftp: paramiko.SFTPClient) -> str:
        return sftp.normalize(".")

    def close(self, handle: Any) -> None:
        handle.close()


def _to_file_info(attr: paramiko.SFTPAttributes, path: str) -> FileInfo:
    return FileInfo(
        name=attr.filename,
        path=path,
        is_dir=stat_module.S_ISDIR(attr.st_mode or 0),
        size=attr.st_size or 0,
        mtime=float(attr.st_mtime or 0),
    )
