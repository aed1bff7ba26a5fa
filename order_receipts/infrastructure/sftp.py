from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Any, Mapping, Protocol

import paramiko

from order_receipts.errors import ReceiptTransportError


_LOGGER = logging.getLogger("order_receipts")


class ReceiptUploader(Protocol):
    def upload(self, local_path: str | os.PathLike, remote_name: str) -> None: ...


class SftpReceiptUploader:
    def __init__(
        self,
        *,
        host: str,
        port: int = 22,
        username: str | None = None,
        password: str | None = None,
        remote_dir: str = ".",
        strict_host_key_checking: bool = False,
        connect_timeout: float = 15,
        upload_timeout: float = 60,
    ) -> None:
        self.host = host
        self.port = int(port)
        self.username = username
        self.password = password
        self.remote_dir = remote_dir or "."
        self.strict_host_key_checking = strict_host_key_checking
        self.connect_timeout = float(connect_timeout)
        self.upload_timeout = float(upload_timeout)

    def _client(self) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        client.load_system_host_keys()
        if self.strict_host_key_checking:
            client.set_missing_host_key_policy(paramiko.RejectPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        return client

    def upload(self, local_path: str | os.PathLike, remote_name: str) -> None:
        client = self._client()
        _LOGGER.info(
            "sftp_connecting",
            extra={"host": self.host, "port": self.port, "user": self.username, "remote_dir": self.remote_dir},
        )
        try:
            client.connect(
                self.host,
                port=self.port,
                username=self.username,
                password=self.password,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
            sftp = client.open_sftp()
            try:
                sftp.get_channel().settimeout(self.upload_timeout)
                sftp.chdir(self.remote_dir)
                sftp.put(str(local_path), remote_name)
            finally:
                sftp.close()
        except (paramiko.SSHException, OSError) as exc:
            raise ReceiptTransportError(details=f"SFTP upload failed: {exc}") from exc
        finally:
            client.close()
        _LOGGER.info("sftp_upload_completed", extra={"remote_dir": self.remote_dir, "remote_name": remote_name})


class LocalDropUploader:
    """Stands in for the SFTP server by copying receipts into a local folder."""

    def __init__(self, drop_dir: str | os.PathLike) -> None:
        self.drop_dir = Path(drop_dir)

    def upload(self, local_path: str | os.PathLike, remote_name: str) -> None:
        try:
            self.drop_dir.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(local_path, self.drop_dir / remote_name)
        except OSError as exc:
            raise ReceiptTransportError(details=f"Mock upload failed: {exc}") from exc
        _LOGGER.info("sftp_mock_upload_completed", extra={"remote_name": remote_name})


def build_receipt_uploader(config: Mapping[str, Any]) -> ReceiptUploader:
    mode = str(config.get("SFTP_MODE") or "mock").strip().lower()
    if mode == "mock":
        return LocalDropUploader(config.get("MOCK_SFTP_DIR") or "sftp_mock")
    if mode != "sftp":
        raise RuntimeError(f"Invalid SFTP_MODE: {mode}")
    host = str(config.get("SFTP_HOST") or "").strip()
    if not host:
        raise RuntimeError("SFTP_HOST is not set.")
    return SftpReceiptUploader(
        host=host,
        port=int(config.get("SFTP_PORT") or 22),
        username=config.get("SFTP_USER"),
        password=config.get("SFTP_PASSWORD"),
        remote_dir=config.get("SFTP_REMOTE_DIR") or ".",
        strict_host_key_checking=bool(config.get("SFTP_STRICT_HOST_KEY_CHECKING")),
        connect_timeout=int(config.get("SFTP_CONNECT_TIMEOUT_SECONDS") or 15),
        upload_timeout=int(config.get("SFTP_UPLOAD_TIMEOUT_SECONDS") or 60),
    )
