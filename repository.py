"""
Persistence collaborators for processed statements.
"""
import json
import os
import logging
import threading
from abc import ABC, abstractmethod
from datetime import date
from pathlib import Path
from typing import Dict, List, Optional, Union

from pydantic import ValidationError

from errors import PersistenceError
from schema import StatementRecord

logger = logging.getLogger(__name__)

DateLike = Union[str, date]


def _iso(value: DateLike) -> str:
    return value.isoformat() if isinstance(value, date) else str(value)


def _identity(record: StatementRecord) -> Dict[str, str]:
    """Fields that identify a stored statement; empty when nothing identifies it."""
    keys = {}
    if record.last4:
        keys['last4'] = record.last4
    period = record.statement_period
    if period:
        keys['from'] = period.from_date
        keys['to'] = period.to
    if record.transactions:
        keys['first_date'] = record.transactions[0].date
    return keys


class StatementRepository(ABC):
    """
    Storage for StatementRecords. Subclasses provide `_load` and `_store`;
    queries and deletes are implemented here over the loaded list.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def _load(self) -> List[StatementRecord]:
        """Return every stored record in insertion order."""

    @abstractmethod
    def _store(self, records: List[StatementRecord]) -> None:
        """Replace the stored records."""

    def save(self, record: StatementRecord) -> None:
        with self._lock:
            records = self._load()
            records.append(record.model_copy(deep=True))
            self._store(records)
        self.logger.info(f"Saved statement for card {record.last4 or 'unknown'} "
                         f"with {len(record.transactions)} transaction(s)")

    def get_all(self) -> List[StatementRecord]:
        """All statements, newest statement period first."""
        with self._lock:
            records = self._load()
        dated = [r for r in records if r.statement_period]
        undated = [r for r in records if not r.statement_period]
        dated.sort(key=lambda r: r.statement_period.from_date, reverse=True)
        return dated + undated

    def get_by_identifier(self, last4: str) -> List[StatementRecord]:
        return [record for record in self.get_all() if record.last4 == last4]

    def get_by_date_range(self, start: DateLike, end: DateLike) -> List[StatementRecord]:
        """Statements whose whole period falls inside [start, end]."""
        start, end = _iso(start), _iso(end)
        return [
            record for record in self.get_all()
            if record.statement_period
            and record.statement_period.from_date >= start
            and record.statement_period.to <= end
        ]

    def delete(self, record: StatementRecord) -> bool:
        """
        Delete stored statements matching `record` on card last-4, statement
        period and first transaction date.

        Returns:
            True when at least one statement was removed
        """
        keys = _identity(record)
        if not keys:
            return False

        with self._lock:
            records = self._load()
            kept = [stored for stored in records if not self._matches(stored, keys)]
            if len(kept) == len(records):
                return False
            self._store(kept)

        self.logger.info(f"Deleted {len(records) - len(kept)} statement(s)")
        return True

    def delete_all(self) -> None:
        with self._lock:
            self._store([])

    @staticmethod
    def _matches(stored: StatementRecord, keys: Dict[str, str]) -> bool:
        stored_keys = _identity(stored)
        return all(stored_keys.get(name) == value for name, value in keys.items())


class InMemoryStatementRepository(StatementRepository):

    def __init__(self):
        super().__init__()
        self._records: List[StatementRecord] = []

    def _load(self) -> List[StatementRecord]:
        return list(self._records)

    def _store(self, records: List[StatementRecord]) -> None:
        self._records = list(records)


class JsonFileStatementRepository(StatementRepository):
    """Keeps all statements in one JSON file, rewritten atomically on change."""

    def __init__(self, path: Union[str, Path]):
        super().__init__()
        self.path = Path(path)

    def _load(self) -> List[StatementRecord]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding='utf-8'))
            return [StatementRecord.model_validate(item) for item in data]
        except (OSError, ValueError, ValidationError) as e:
            self.logger.error(f"Could not read statements from {self.path}: {e}")
            raise PersistenceError(f"Could not read statements from {self.path}: {e}") from e

    def _store(self, records: List[StatementRecord]) -> None:
        payload = [record.to_json_dict() for record in records]
        tmp_path = self.path.with_suffix(self.path.suffix + '.tmp')
        try:
            if self.path.parent and not self.path.parent.exists():
                self.path.parent.mkdir(parents=True)
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(payload, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except OSError as e:
            self.logger.error(f"Could not write statements to {self.path}: {e}")
            raise PersistenceError(f"Could not write statements to {self.path}: {e}") from e
