"""Interfaces to the systems the engine reports to.

The lifecycle service posts movements to a ledger and appends audit events
to the case history; the rate monitor sends notifications. Each
collaborator is an abstract class with a bundled implementation: the SQL
ledger and history write through the caller's session so they commit (or
roll back) together with the plan change that produced them.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from .data_models import MovementKind
from .logging import get_logger
from .store import HistoryEventModel, MovementModel

logger = get_logger(__name__)


class Ledger(ABC):
    """Financial ledger of a case."""

    @abstractmethod
    def post_movement(self, case_id: str, kind: MovementKind, amount: Decimal, on_date: date, memo: str) -> str:
        """Record a movement and return its id."""

    @abstractmethod
    def delete_movement(self, movement_id: str) -> None:
        """Remove a movement; unknown ids are ignored."""

    @abstractmethod
    def find_movement(self, movement_id: str) -> Optional[Dict[str, Any]]:
        """Return the movement as a dict, or ``None``."""


class CaseHistory(ABC):
    """Audit trail of a case."""

    @abstractmethod
    def append_event(
        self, case_id: str, event_type: str, payload: Dict[str, Any], actor: Optional[str] = None
    ) -> None:
        ...


class Notifier(ABC):
    """Alerting channel used by the rate monitor."""

    @abstractmethod
    def notify(self, audience: str, type: str, title: str, message: str, metadata: Dict[str, Any]) -> None:
        ...


class SqlLedger(Ledger):
    def __init__(self, session: Session) -> None:
        self._session = session

    def post_movement(self, case_id: str, kind: MovementKind, amount: Decimal, on_date: date, memo: str) -> str:
        movement = MovementModel(case_id=case_id, kind=kind, amount=amount, date=on_date, memo=memo)
        self._session.add(movement)
        self._session.flush()
        logger.debug("Posted %s movement %s of %s for case %s", kind.value, movement.id, amount, case_id)
        return movement.id

    def delete_movement(self, movement_id: str) -> None:
        movement = self._session.get(MovementModel, movement_id)
        if movement is not None:
            self._session.delete(movement)
            self._session.flush()

    def find_movement(self, movement_id: str) -> Optional[Dict[str, Any]]:
        movement = self._session.get(MovementModel, movement_id)
        if movement is None:
            return None
        return {
            "id": movement.id,
            "case_id": movement.case_id,
            "kind": movement.kind.value,
            "amount": movement.amount,
            "date": movement.date,
            "memo": movement.memo,
        }


class SqlCaseHistory(CaseHistory):
    def __init__(self, session: Session) -> None:
        self._session = session

    def append_event(
        self, case_id: str, event_type: str, payload: Dict[str, Any], actor: Optional[str] = None
    ) -> None:
        self._session.add(
            HistoryEventModel(
                case_id=case_id,
                event_type=event_type,
                payload_json=json.dumps(payload, default=str),
                actor=actor,
            )
        )


class LogNotifier(Notifier):
    """Notifier that writes every notification to the log."""

    def notify(self, audience: str, type: str, title: str, message: str, metadata: Dict[str, Any]) -> None:
        logger.warning("[%s -> %s] %s: %s", type, audience, title, message, extra={"extra": metadata})
