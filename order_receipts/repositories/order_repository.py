from __future__ import annotations

from typing import List, Sequence

from order_receipts.db import is_unique_violation
from order_receipts.domain.contracts import OrderRow
from order_receipts.errors import OrderIdCollisionError
from order_receipts.repositories.base import BaseRepository


_ORDER_COLUMNS = "order_id, user_id, item_id, applicant_key, name, address, item_name, price, status"


class OrderRepository(BaseRepository):
    def max_order_id(self, db) -> str | None:
        row = db.execute(
            """
            SELECT MAX(order_id) AS max_order_id
            FROM orders
            WHERE applicant_key = ?
            """,
            (self.applicant_key,),
        ).fetchone()
        if not row:
            return None
        value = row["max_order_id"]
        return str(value) if value else None

    def insert_orders(self, db, rows: Sequence[OrderRow]) -> int:
        if not rows:
            return 0
        try:
            db.executemany(
                f"""
                INSERT INTO orders ({_ORDER_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        row.order_id,
                        row.user_id,
                        row.item_id,
                        self.applicant_key,
                        row.name,
                        row.address,
                        row.item_name,
                        row.price,
                        row.status or "N",
                    )
                    for row in rows
                ],
            )
        except Exception as exc:
            if is_unique_violation(exc):
                raise OrderIdCollisionError(details=str(exc)[:200]) from exc
            raise
        return len(rows)

    def find_by_ids(self, db, order_ids: Sequence[str]) -> List[OrderRow]:
        ids = [str(order_id) for order_id in order_ids if str(order_id or "").strip()]
        if not ids:
            return []
        rows = db.execute(
            f"""
            SELECT {_ORDER_COLUMNS}
            FROM orders
            WHERE applicant_key = ? AND order_id IN ({self.placeholders(len(ids))})
            ORDER BY order_id
            """,
            self.scoped_params(ids),
        ).fetchall()
        return [OrderRow.from_row(row) for row in rows]

    def select_unshipped_for_update(self, db, *, limit: int) -> List[OrderRow]:
        lock_clause = "FOR UPDATE SKIP LOCKED" if db.backend == "postgres" else ""
        rows = db.execute(
            f"""
            SELECT {_ORDER_COLUMNS}
            FROM orders
            WHERE applicant_key = ? AND status = 'N'
            ORDER BY order_id
            LIMIT ?
            {lock_clause}
            """,
            (self.applicant_key, max(1, int(limit))),
        ).fetchall()
        return [OrderRow.from_row(row) for row in rows]

    def insert_shipments(self, db, orders: Sequence[OrderRow]) -> int:
        if not orders:
            return 0
        db.executemany(
            """
            INSERT INTO shipments (shipment_id, order_id, item_id, applicant_key, address)
            VALUES (?, ?, ?, ?, ?)
            """,
            [(order.order_id, order.order_id, order.item_id, self.applicant_key, order.address) for order in orders],
        )
        return len(orders)

    def mark_shipped(self, db, order_ids: Sequence[str]) -> int:
        ids = list(order_ids)
        if not ids:
            return 0
        cursor = db.execute(
            f"""
            UPDATE orders
            SET status = 'Y'
            WHERE applicant_key = ? AND order_id IN ({self.placeholders(len(ids))})
            """,
            self.scoped_params(ids),
        )
        return int(getattr(cursor, "rowcount", 0) or 0)
