"""
Relational system of record that file-backed clients and calculations migrate into.
"""

import json
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional


class SystemOfRecord(ABC):
    """Lookup interface the audit and migration need from the relational store."""

    @abstractmethod
    def get_client_by_number(self, company_number: str) -> Optional[Dict[str, Any]]:
        """Return the migrated client with this company number, if any."""
        pass

    @abstractmethod
    def get_calculation_by_id(self, calculation_id: str) -> Optional[Dict[str, Any]]:
        """Return the migrated calculation with this id, if any."""
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        """True when the store can be queried."""
        pass


class SqliteSystemOfRecord(SystemOfRecord):
    """SQLite implementation holding migrated clients and tax calculations."""

    def __init__(self, db_path):
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.init_db()

    @contextmanager
    def get_db(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a SQLite database connection."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def init_db(self):
        """Initialize the database with required tables."""
        with self.get_db() as conn:
            cursor = conn.cursor()

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS clients (
                    company_number TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    data TEXT NOT NULL,
                    migrated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS calculations (
                    id TEXT PRIMARY KEY,
                    client_id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    migrated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            cursor.execute('CREATE INDEX IF NOT EXISTS idx_calculations_client_id ON calculations(client_id)')
            conn.commit()

    def test_connection(self) -> bool:
        try:
            with self.get_db() as conn:
                conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error:
            return False

    def get_client_by_number(self, company_number: str) -> Optional[Dict[str, Any]]:
        with self.get_db() as conn:
            row = conn.execute(
                "SELECT company_number, name, data, migrated_at FROM clients WHERE company_number = ?",
                (str(company_number),)
            ).fetchone()
        return _row_to_dict(row)

    def get_calculation_by_id(self, calculation_id: str) -> Optional[Dict[str, Any]]:
        with self.get_db() as conn:
            row = conn.execute(
                "SELECT id, client_id, data, migrated_at FROM calculations WHERE id = ?",
                (str(calculation_id),)
            ).fetchone()
        return _row_to_dict(row)

    def insert_client(self, company_number: str, name: str, data: Dict[str, Any]) -> bool:
        """Insert a client. Returns False when the company number already exists."""
        with self.get_db() as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO clients (company_number, name, data, migrated_at) VALUES (?, ?, ?, ?)",
                (str(company_number), name, json.dumps(data, sort_keys=True), _now())
            )
            conn.commit()
            return cursor.rowcount == 1

    def insert_calculation(self, calculation_id: str, client_id: str, data: Dict[str, Any]) -> bool:
        """Insert a calculation. Returns False when the id already exists."""
        with self.get_db() as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO calculations (id, client_id, data, migrated_at) VALUES (?, ?, ?, ?)",
                (str(calculation_id), str(client_id), json.dumps(data, sort_keys=True), _now())
            )
            conn.commit()
            return cursor.rowcount == 1

    def count_clients(self) -> int:
        with self.get_db() as conn:
            return conn.execute("SELECT COUNT(*) FROM clients").fetchone()[0]

    def count_calculations(self) -> int:
        with self.get_db() as conn:
            return conn.execute("SELECT COUNT(*) FROM calculations").fetchone()[0]

    def list_client_numbers(self) -> List[str]:
        with self.get_db() as conn:
            return [row[0] for row in conn.execute("SELECT company_number FROM clients ORDER BY company_number")]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_dict(row) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    result = dict(row)
    result["data"] = json.loads(result["data"])
    return result
