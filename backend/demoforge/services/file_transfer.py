"""
File Transfer - SSH/SFTP sessions used to write site files and run
post-install commands on a hosting package.
"""

import asyncio
import posixpath
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Optional, Protocol

import asyncssh
import structlog

from demoforge.config import Settings, get_settings
from demoforge.errors import DemoforgeError, PermanentError, TransientError
from demoforge.models import TransferCredentials

logger = structlog.get_logger()

SSH_ERRORS = (asyncssh.Error, OSError, asyncio.TimeoutError)


class TransferSession(Protocol):
    """An open file-transfer session on one host."""

    async def makedirs(self, path: str) -> None:
        ...

    async def write_file(self, path: str, content: bytes, mode: int = 0o644) -> None:
        """Write ``content`` to ``path``, replacing any existing file."""
        ...

    async def run(self, command: str) -> str:
        """Run a remote command; non-zero exit is a permanent failure."""
        ...


class FileTransfer(Protocol):
    """Opens transfer sessions from hosting credentials."""

    def session(self, credentials: TransferCredentials) -> AsyncContextManager[TransferSession]:
        ...


def classify_ssh_error(exc: BaseException, operation: str) -> DemoforgeError:
    """Map an asyncssh/socket failure onto the transient/permanent split."""
    if isinstance(exc, asyncssh.PermissionDenied):
        return PermanentError(f"{operation}: invalid credentials", detail=str(exc))
    if isinstance(exc, asyncssh.HostKeyNotVerifiable):
        return PermanentError(f"{operation}: host key not trusted", detail=str(exc))
    if isinstance(exc, asyncssh.ProcessError):
        stderr = (exc.stderr or "").strip()[:300]
        return PermanentError(
            f"{operation}: exited with status {exc.exit_status}",
            detail=stderr or None,
        )
    if isinstance(exc, asyncssh.SFTPConnectionLost):
        return TransientError(f"{operation}: connection lost", detail=str(exc))
    if isinstance(exc, asyncssh.SFTPError):
        return PermanentError(f"{operation}: {exc.reason}", detail=str(exc))
    if isinstance(exc, asyncio.TimeoutError):
        return TransientError(f"{operation}: timed out")
    return TransientError(f"{operation}: {exc}", detail=type(exc).__name__)


class SSHTransferSession:
    """TransferSession backed by an asyncssh connection and SFTP client."""

    def __init__(
        self,
        conn: asyncssh.SSHClientConnection,
        sftp: asyncssh.SFTPClient,
        timeout: float,
    ):
        self._conn = conn
        self._sftp = sftp
        self.timeout = timeout

    async def makedirs(self, path: str) -> None:
        try:
            await asyncio.wait_for(self._sftp.makedirs(path, exist_ok=True), self.timeout)
        except SSH_ERRORS as e:
            raise classify_ssh_error(e, f"mkdir {path}") from e

    async def write_file(self, path: str, content: bytes, mode: int = 0o644) -> None:
        parent = posixpath.dirname(path)
        if parent:
            await self.makedirs(parent)
        try:
            await asyncio.wait_for(self._write(path, content), self.timeout)
            await asyncio.wait_for(self._sftp.chmod(path, mode), self.timeout)
        except SSH_ERRORS as e:
            raise classify_ssh_error(e, f"write {path}") from e

    async def run(self, command: str) -> str:
        try:
            result = await asyncio.wait_for(self._conn.run(command, check=True), self.timeout)
        except SSH_ERRORS as e:
            raise classify_ssh_error(e, "remote command") from e
        return str(result.stdout or "")

    async def _write(self, path: str, content: bytes) -> None:
        # "wb" truncates, so re-deploys overwrite instead of appending
        async with self._sftp.open(path, "wb") as remote:
            await remote.write(content)


class SSHFileTransfer:
    """Opens SFTP sessions with asyncssh."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.connect_timeout = self.settings.status_check_timeout_seconds
        self.timeout = self.settings.transfer_timeout_seconds

    @asynccontextmanager
    async def session(self, credentials: TransferCredentials) -> AsyncIterator[SSHTransferSession]:
        operation = f"connect {credentials.username}@{credentials.host}:{credentials.port}"
        logger.info("Opening transfer session", host=credentials.host, user=credentials.username)

        try:
            conn = await asyncio.wait_for(
                asyncssh.connect(
                    credentials.host,
                    port=credentials.port,
                    username=credentials.username,
                    password=credentials.secret.get_secret_value(),
                    known_hosts=self.settings.sftp_known_hosts,
                ),
                self.connect_timeout,
            )
        except SSH_ERRORS as e:
            raise classify_ssh_error(e, operation) from e

        try:
            sftp = await asyncio.wait_for(conn.start_sftp_client(), self.connect_timeout)
        except SSH_ERRORS as e:
            conn.close()
            raise classify_ssh_error(e, f"{operation} (sftp)") from e

        try:
            yield SSHTransferSession(conn, sftp, self.timeout)
        finally:
            sftp.exit()
            conn.close()
            await conn.wait_closed()
