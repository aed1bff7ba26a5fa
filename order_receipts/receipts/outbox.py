from __future__ import annotations

import errno
import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Callable, Iterable, List

from order_receipts.domain.contracts import ReceiptMeta
from order_receipts.errors import InvalidOutboxTransition, ReceiptTargetExists
from order_receipts.receipts.lifecycle import RECOVERABLE_STATES, OutboxState, is_transition_allowed


_LOGGER = logging.getLogger("order_receipts")

META_SUFFIX = ".meta.json"
TMP_SUFFIX = ".tmp"
MAX_BACKOFF_MS = 10 * 60 * 1000
MAX_BACKOFF_EXPONENT = 10

_ATOMIC_RENAME_UNSUPPORTED = {
    code for code in (errno.EXDEV, getattr(errno, "ENOTSUP", None), getattr(errno, "EOPNOTSUPP", None)) if code
}
_HARD_LINK_UNSUPPORTED = _ATOMIC_RENAME_UNSUPPORTED | {errno.EPERM, errno.EMLINK}


def backoff_delay_ms(attempts: int) -> int:
    exponent = min(max(0, int(attempts)), MAX_BACKOFF_EXPONENT)
    return min(MAX_BACKOFF_MS, (2**exponent) * 1000)


def _json_dumps(value: dict) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


class ReceiptOutbox:
    """Local pending/sent/failed folders for receipts that still have to reach the SFTP server.

    Each entry is a receipt file plus a `<file_name>.meta.json` sidecar. The
    sidecar is written first and moves together with the receipt.
    """

    def __init__(self, root_dir: str | os.PathLike, *, clock: Callable[[], float] = time.time) -> None:
        self.root_dir = Path(root_dir)
        self._clock = clock

    @property
    def pending_dir(self) -> Path:
        return self.state_dir(OutboxState.PENDING)

    @property
    def sent_dir(self) -> Path:
        return self.state_dir(OutboxState.SENT)

    @property
    def failed_dir(self) -> Path:
        return self.state_dir(OutboxState.FAILED)

    def state_dir(self, state: OutboxState | str) -> Path:
        return self.root_dir / OutboxState(state).value

    def ensure_dirs(self) -> None:
        for state in OutboxState:
            self.state_dir(state).mkdir(parents=True, exist_ok=True)

    def meta_path(self, state: OutboxState | str, file_name: str) -> Path:
        return self.state_dir(state) / f"{file_name}{META_SUFFIX}"

    def receipt_path(self, state: OutboxState | str, file_name: str) -> Path:
        return self.state_dir(state) / file_name

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def next_attempt_at(self, attempts: int) -> int:
        return self.now_ms() + backoff_delay_ms(attempts)

    def name_in_use(self, file_name: str) -> bool:
        for state in OutboxState:
            if self.meta_path(state, file_name).exists() or self.receipt_path(state, file_name).exists():
                return True
        return False

    def write_meta(self, meta: ReceiptMeta, state: OutboxState | str = OutboxState.PENDING) -> Path:
        """Create the sidecar of a new entry; a file name already used in any state raises ReceiptTargetExists."""
        self.ensure_dirs()
        if self.name_in_use(meta.file_name):
            raise ReceiptTargetExists(f"Receipt file name already in use: {meta.file_name}")
        path = self.meta_path(state, meta.file_name)
        content = _json_dumps(meta.to_dict())
        tmp_path = self._write_temp(path, content)
        try:
            # link() fails on an existing target.
            os.link(tmp_path, path)
        except FileExistsError as exc:
            raise ReceiptTargetExists(f"Receipt file name already in use: {meta.file_name}") from exc
        except OSError as exc:
            if exc.errno not in _HARD_LINK_UNSUPPORTED:
                raise
            self._exclusive_write(path, content)
        finally:
            tmp_path.unlink(missing_ok=True)
        return path

    def read_meta(self, meta_path: str | os.PathLike) -> ReceiptMeta:
        raw = Path(meta_path).read_text(encoding="utf-8")
        return ReceiptMeta.from_dict(json.loads(raw))

    def update_meta(self, meta_path: str | os.PathLike, meta: ReceiptMeta) -> bool:
        """Rewrite an existing sidecar in place; False when the entry has left this folder or the write failed."""
        path = Path(meta_path)
        if not path.exists():
            _LOGGER.warning("receipt_meta_update_skipped", extra={"meta_path": str(path), "reason": "entry_moved"})
            return False
        try:
            self._atomic_write_text(path, _json_dumps(meta.to_dict()))
            return True
        except OSError:
            _LOGGER.error("receipt_meta_update_failed", extra={"meta_path": str(path)}, exc_info=True)
            return False

    def write_receipt(self, file_name: str, content: str, state: OutboxState | str = OutboxState.PENDING) -> Path:
        self.ensure_dirs()
        path = self.receipt_path(state, file_name)
        self._atomic_write_text(path, content)
        return path

    def iter_meta_paths(self, state: OutboxState | str) -> List[Path]:
        directory = self.state_dir(state)
        if not directory.is_dir():
            return []
        return sorted(directory.glob(f"*{META_SUFFIX}"))

    def locate(self, file_name: str) -> OutboxState | None:
        for state in OutboxState:
            if self.meta_path(state, file_name).exists():
                return state
        return None

    def find_by_trace_id(
        self,
        trace_id: str,
        states: Iterable[OutboxState] = RECOVERABLE_STATES,
    ) -> tuple[OutboxState, Path, ReceiptMeta] | None:
        for state in states:
            for meta_path in self.iter_meta_paths(state):
                try:
                    meta = self.read_meta(meta_path)
                except (OSError, ValueError, KeyError):
                    _LOGGER.error("receipt_meta_unreadable", extra={"meta_path": str(meta_path)}, exc_info=True)
                    continue
                if meta.trace_id == trace_id:
                    return OutboxState(state), meta_path, meta
        return None

    def transition(self, file_name: str, source: OutboxState | str, target: OutboxState | str) -> bool:
        source_state = OutboxState(source)
        target_state = OutboxState(target)
        if not is_transition_allowed(source_state, target_state):
            raise InvalidOutboxTransition(f"{source_state.value} -> {target_state.value} is not allowed")
        self.ensure_dirs()
        moved_receipt = self._move_if_exists(
            self.receipt_path(source_state, file_name),
            self.receipt_path(target_state, file_name),
        )
        moved_meta = self._move_if_exists(
            self.meta_path(source_state, file_name),
            self.meta_path(target_state, file_name),
        )
        _LOGGER.info(
            "receipt_outbox_transition",
            extra={
                "file_name": file_name,
                "from_state": source_state.value,
                "to_state": target_state.value,
                "moved_receipt": moved_receipt,
                "moved_meta": moved_meta,
            },
        )
        return moved_receipt or moved_meta

    def mark_sent(self, file_name: str, source: OutboxState | str = OutboxState.PENDING) -> bool:
        return self.transition(file_name, source, OutboxState.SENT)

    def mark_failed(self, file_name: str) -> bool:
        return self.transition(file_name, OutboxState.PENDING, OutboxState.FAILED)

    def rename_entry(self, state: OutboxState | str, old_file_name: str, new_file_name: str) -> Path:
        """Rename a receipt and its sidecar inside one state folder; returns the new sidecar path."""
        old_receipt = self.receipt_path(state, old_file_name)
        new_receipt = self.receipt_path(state, new_file_name)
        old_meta = self.meta_path(state, old_file_name)
        new_meta = self.meta_path(state, new_file_name)

        if new_receipt.exists() or new_meta.exists():
            raise ReceiptTargetExists(f"Target file name already exists: {new_file_name}")

        if old_receipt.exists():
            os.rename(old_receipt, new_receipt)
        if old_meta.exists():
            os.rename(old_meta, new_meta)
        return new_meta

    def _move_if_exists(self, source: Path, target: Path) -> bool:
        try:
            os.replace(source, target)
            return True
        except FileNotFoundError:
            return False
        except OSError:
            # The upload already happened; a failed move risks a duplicate upload, not data loss.
            _LOGGER.error(
                "receipt_outbox_move_failed",
                extra={"from_path": str(source), "to_path": str(target)},
                exc_info=True,
            )
            return False

    def _write_temp(self, target: Path, content: str) -> Path:
        # One temp file per writer.
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f"{target.name}.", suffix=TMP_SUFFIX)
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        return tmp_path

    def _exclusive_write(self, target: Path, content: str) -> None:
        try:
            fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError as exc:
            raise ReceiptTargetExists(f"Receipt file name already in use: {target.name}") from exc
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())

    def _atomic_write_text(self, target: Path, content: str) -> None:
        tmp_path = self._write_temp(target, content)
        try:
            os.replace(tmp_path, target)
        except OSError as exc:
            if exc.errno not in _ATOMIC_RENAME_UNSUPPORTED:
                tmp_path.unlink(missing_ok=True)
                raise
            _LOGGER.warning("receipt_outbox_atomic_rename_unsupported", extra={"path": str(target)})
            target.write_text(content, encoding="utf-8")
            tmp_path.unlink(missing_ok=True)
