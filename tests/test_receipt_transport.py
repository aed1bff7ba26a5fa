import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

import paramiko

from order_receipts.errors import ReceiptTransportError
from order_receipts.infrastructure.sftp import LocalDropUploader, SftpReceiptUploader, build_receipt_uploader


class BuildReceiptUploaderTest(unittest.TestCase):
    def test_mock_mode_uses_local_drop_dir(self) -> None:
        uploader = build_receipt_uploader({"SFTP_MODE": "mock", "MOCK_SFTP_DIR": "/tmp/drop"})
        self.assertIsInstance(uploader, LocalDropUploader)
        self.assertEqual(uploader.drop_dir, Path("/tmp/drop"))

    def test_sftp_mode_reads_connection_settings(self) -> None:
        uploader = build_receipt_uploader(
            {
                "SFTP_MODE": "SFTP",
                "SFTP_HOST": "sftp.example.test",
                "SFTP_PORT": 2222,
                "SFTP_USER": "receipts",
                "SFTP_REMOTE_DIR": "/inbox",
                "SFTP_STRICT_HOST_KEY_CHECKING": True,
            }
        )
        self.assertIsInstance(uploader, SftpReceiptUploader)
        self.assertEqual(uploader.port, 2222)
        self.assertEqual(uploader.connect_timeout, 15.0)
        self.assertTrue(uploader.strict_host_key_checking)

    def test_sftp_mode_without_host_is_rejected(self) -> None:
        with self.assertRaises(RuntimeError):
            build_receipt_uploader({"SFTP_MODE": "sftp"})

    def test_unknown_mode_is_rejected(self) -> None:
        with self.assertRaises(RuntimeError):
            build_receipt_uploader({"SFTP_MODE": "ftp"})


class LocalDropUploaderTest(unittest.TestCase):
    def setUp(self) -> None:
        self.root = Path(tempfile.mkdtemp(prefix="receipt_drop_"))

    def tearDown(self) -> None:
        shutil.rmtree(self.root, ignore_errors=True)

    def test_upload_copies_file_under_remote_name(self) -> None:
        source = self.root / "local.txt"
        source.write_text("A000^U1\n", encoding="utf-8")

        LocalDropUploader(self.root / "drop").upload(source, "INSPIEN_a_20261019000000.txt")

        self.assertEqual((self.root / "drop" / "INSPIEN_a_20261019000000.txt").read_text(encoding="utf-8"), "A000^U1\n")

    def test_missing_source_is_a_transport_error(self) -> None:
        with self.assertRaises(ReceiptTransportError):
            LocalDropUploader(self.root / "drop").upload(self.root / "missing.txt", "x.txt")


class SftpReceiptUploaderTest(unittest.TestCase):
    def _uploader(self) -> SftpReceiptUploader:
        return SftpReceiptUploader(host="sftp.example.test", username="receipts", password="pw", remote_dir="/inbox")

    def test_upload_changes_directory_then_puts(self) -> None:
        client = MagicMock()
        sftp = client.open_sftp.return_value
        with patch("order_receipts.infrastructure.sftp.paramiko.SSHClient", return_value=client):
            self._uploader().upload("/tmp/receipt.txt", "INSPIEN_a_20261019000000.txt")

        self.assertEqual(client.connect.call_args.kwargs["timeout"], 15.0)
        sftp.get_channel.return_value.settimeout.assert_called_once_with(60.0)
        sftp.chdir.assert_called_once_with("/inbox")
        sftp.put.assert_called_once_with("/tmp/receipt.txt", "INSPIEN_a_20261019000000.txt")
        sftp.close.assert_called_once()
        client.close.assert_called_once()

    def test_connection_failure_is_wrapped(self) -> None:
        client = MagicMock()
        client.connect.side_effect = paramiko.SSHException("auth failed")
        with patch("order_receipts.infrastructure.sftp.paramiko.SSHClient", return_value=client):
            with self.assertRaises(ReceiptTransportError) as captured:
                self._uploader().upload("/tmp/receipt.txt", "x.txt")

        self.assertIn("auth failed", str(captured.exception))
        client.close.assert_called_once()


if __name__ == "__main__":
    unittest.main()
