import json
import logging
from typing import Any, Dict, List, Optional, Tuple

import psycopg2
import psycopg2.extras

from service_orders import config
from service_orders.errors import NotFound
from service_orders.models import OrderFilters, OrderStatus, ServiceOrder
from service_orders.repository import OrderRepository, OrderTransaction

logger = logging.getLogger(__name__)

COLUMNS = (
    "id",
    "technician_id",
    "client_id",
    "tenant_id",
    "status",
    "initial_date",
    "final_date",
    "delivery_declaration",
    "problem",
    "solution",
    "return_declaration",
    "hours",
    "total_value",
    "transaction_ids",
    "created_at",
    "updated_at",
)
SELECT_COLUMNS = ", ".join(COLUMNS)
WRITABLE = set(COLUMNS) - {"id", "created_at", "updated_at"}


def db_conn(dsn: Optional[str] = None):
    dsn = dsn or config.DATABASE_URL
    if not dsn:
        raise RuntimeError("DATABASE_URL not set")
    return psycopg2.connect(dsn)


def init_db(dsn: Optional[str] = None):
    with db_conn(dsn) as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS service_orders (
                    id SERIAL PRIMARY KEY,
                    technician_id INTEGER NOT NULL,
                    client_id INTEGER NOT NULL,
                    tenant_id INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    initial_date TIMESTAMPTZ,
                    final_date TIMESTAMPTZ,
                    delivery_declaration TEXT,
                    problem TEXT,
                    solution TEXT,
                    return_declaration TEXT,
                    hours INTEGER,
                    total_value NUMERIC,
                    transaction_ids JSONB NOT NULL DEFAULT '[]'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    deleted_at TIMESTAMPTZ
                );
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS service_orders_tenant_idx ON service_orders (tenant_id)"
            )
        conn.commit()
    conn.close()
    logger.info("service_orders table ready")


def row_to_order(row: Dict[str, Any]) -> ServiceOrder:
    data = dict(row)
    data["status"] = OrderStatus(data["status"])
    data["transaction_ids"] = list(data.get("transaction_ids") or [])
    if data.get("total_value") is not None:
        data["total_value"] = float(data["total_value"])
    return ServiceOrder(**data)


def _db_value(column: str, value: Any) -> Any:
    if isinstance(value, OrderStatus):
        return value.value
    if column == "transaction_ids":
        return json.dumps(list(value or []))
    return value


def build_list_query(filters: OrderFilters) -> Tuple[str, List[Any]]:
    """
    Translate listing filters into a parameterised SELECT.

    Both date bounds -> BETWEEN on initial_date; a single bound -> >= / <=.
    """
    where = ["deleted_at IS NULL", "tenant_id = %s"]
    params: List[Any] = [filters.tenant_id]

    if filters.client_id is not None:
        where.append("client_id = %s")
        params.append(filters.client_id)

    if filters.initial_date_from is not None and filters.initial_date_to is not None:
        where.append("initial_date BETWEEN %s AND %s")
        params.extend([filters.initial_date_from, filters.initial_date_to])
    elif filters.initial_date_from is not None:
        where.append("initial_date >= %s")
        params.append(filters.initial_date_from)
    elif filters.initial_date_to is not None:
        where.append("initial_date <= %s")
        params.append(filters.initial_date_to)

    if filters.status is not None:
        where.append("status = %s")
        params.append(filters.status.value)

    if filters.total_value_gte is not None:
        where.append("total_value >= %s")
        params.append(filters.total_value_gte)
    if filters.total_value_lte is not None:
        where.append("total_value <= %s")
        params.append(filters.total_value_lte)

    sql = f"SELECT {SELECT_COLUMNS} FROM service_orders WHERE {' AND '.join(where)} ORDER BY id"
    return sql, params


class PostgresTransaction(OrderTransaction):
    """One psycopg2 connection held open for the whole transaction"""

    def __init__(self, conn):
        self.conn = conn

    def _cursor(self):
        return self.conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)

    def create(self, data: Dict[str, Any]) -> ServiceOrder:
        columns = [c for c in data if c in WRITABLE]
        placeholders = ", ".join("%s" for _ in columns)
        with self._cursor() as cur:
            cur.execute(
                f"INSERT INTO service_orders ({', '.join(columns)}) VALUES ({placeholders}) "
                f"RETURNING {SELECT_COLUMNS}",
                [_db_value(c, data[c]) for c in columns],
            )
            return row_to_order(cur.fetchone())

    def lock(self, order_id: int, tenant_id: int) -> Optional[ServiceOrder]:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {SELECT_COLUMNS} FROM service_orders "
                "WHERE id=%s AND tenant_id=%s AND deleted_at IS NULL FOR UPDATE",
                (order_id, tenant_id),
            )
            row = cur.fetchone()
        return row_to_order(row) if row else None

    def update(self, order: ServiceOrder, changes: Dict[str, Any]) -> ServiceOrder:
        columns = [c for c in changes if c in WRITABLE]
        assignments = ", ".join(f"{c} = %s" for c in columns)
        with self._cursor() as cur:
            cur.execute(
                f"UPDATE service_orders SET {assignments}, updated_at = NOW() "
                f"WHERE id = %s AND deleted_at IS NULL RETURNING {SELECT_COLUMNS}",
                [_db_value(c, changes[c]) for c in columns] + [order.id],
            )
            row = cur.fetchone()
        if row is None:
            raise NotFound(f"Service order with ID '{order.id}' not found.")
        return row_to_order(row)

    def commit(self):
        try:
            self.conn.commit()
        finally:
            self.conn.close()

    def rollback(self):
        try:
            self.conn.rollback()
        finally:
            self.conn.close()


class PostgresOrderRepository(OrderRepository):

    def __init__(self, dsn: Optional[str] = None):
        self.dsn = dsn or config.DATABASE_URL

    def begin(self) -> OrderTransaction:
        return PostgresTransaction(db_conn(self.dsn))

    def find(self, order_id: int, tenant_id: int) -> Optional[ServiceOrder]:
        conn = db_conn(self.dsn)
        try:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(
                    f"SELECT {SELECT_COLUMNS} FROM service_orders "
                    "WHERE id=%s AND tenant_id=%s AND deleted_at IS NULL",
                    (order_id, tenant_id),
                )
                row = cur.fetchone()
        finally:
            conn.close()
        return row_to_order(row) if row else None

    def list(self, filters: OrderFilters) -> List[ServiceOrder]:
        sql, params = build_list_query(filters)
        conn = db_conn(self.dsn)
        try:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
        finally:
            conn.close()
        return [row_to_order(r) for r in rows]
