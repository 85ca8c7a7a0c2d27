from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from checkout_saga.store import Store

logger = logging.getLogger(__name__)

TERMINAL = ("committed", "aborted")
UNRELEASED = ("reserved", "release_failed")


@dataclass(slots=True)
class JournalEntry:
    checkout_id: str
    entry: int
    kind: str
    target: str
    quantity: int
    state: str


@dataclass(slots=True)
class RecoveryReport:
    released: List[JournalEntry] = field(default_factory=list)
    failed: List[JournalEntry] = field(default_factory=list)
    unknown: List[JournalEntry] = field(default_factory=list)
    flagged_orders: List[str] = field(default_factory=list)


class CompensationJournal:
    """
    Append-only JSON-lines log of a saga's reservations.

    An entry is written as `pending` before its reservation call and as
    `reserved` once the store confirmed it, so a crashed process leaves
    enough behind to release what it held. A `pending` entry with no
    follow-up cannot be resolved automatically: the store may or may not
    have applied it.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _append(self, record: dict) -> None:
        record["at"] = datetime.now(timezone.utc).isoformat()
        line = json.dumps(record, sort_keys=True)
        with self._lock:
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")
                fh.flush()

    def record(self, checkout_id: str, entry: int, kind: str, target: str, quantity: int, state: str) -> None:
        self._append(
            {
                "checkout_id": checkout_id,
                "entry": entry,
                "kind": kind,
                "target": target,
                "quantity": quantity,
                "state": state,
            }
        )

    def order_written(self, checkout_id: str, order_id: str) -> None:
        self._append({"checkout_id": checkout_id, "state": "order_written", "order_id": order_id})

    def close(self, checkout_id: str, status: str) -> None:
        if status not in TERMINAL:
            raise ValueError(f"unknown terminal status {status!r}")
        self._append({"checkout_id": checkout_id, "state": status})

    def _replay(self) -> Tuple[Dict[Tuple[str, int], JournalEntry], Dict[str, str], Dict[str, str]]:
        entries: Dict[Tuple[str, int], JournalEntry] = {}
        closed: Dict[str, str] = {}
        orders: Dict[str, str] = {}
        if not self.path.exists():
            return entries, closed, orders
        with self.path.open(encoding="utf-8") as fh:
            for lineno, raw in enumerate(fh, start=1):
                raw = raw.strip()
                if not raw:
                    continue
                try:
                    rec = json.loads(raw)
                except json.JSONDecodeError:
                    # a torn final write after a crash
                    logger.warning("skipping unreadable journal line %s in %s", lineno, self.path)
                    continue
                if not isinstance(rec, dict):
                    rec = {}
                checkout_id, state = rec.get("checkout_id"), rec.get("state")
                if checkout_id is None or state is None:
                    logger.warning("skipping journal line %s in %s: no checkout_id or state", lineno, self.path)
                    continue
                if state in TERMINAL:
                    closed[checkout_id] = state
                elif state == "order_written":
                    orders[checkout_id] = rec["order_id"]
                else:
                    key = (checkout_id, rec["entry"])
                    entries[key] = JournalEntry(
                        checkout_id=checkout_id,
                        entry=rec["entry"],
                        kind=rec["kind"],
                        target=rec["target"],
                        quantity=rec["quantity"],
                        state=state,
                    )
        return entries, closed, orders

    def outstanding(self) -> List[JournalEntry]:
        """Entries of unfinished checkouts that hold, or may hold, a reservation."""
        entries, closed, _ = self._replay()
        return [
            e
            for e in entries.values()
            if e.checkout_id not in closed and (e.state in UNRELEASED or e.state == "pending")
        ]

    def recover(self, store: Store) -> RecoveryReport:
        """Release what unfinished checkouts still hold, newest entry first."""
        entries, closed, orders = self._replay()
        report = RecoveryReport()
        open_ids = {e.checkout_id for e in entries.values() if e.checkout_id not in closed}
        open_ids.update(cid for cid in orders if cid not in closed)

        for checkout_id in sorted(open_ids):
            held = sorted(
                (e for e in entries.values() if e.checkout_id == checkout_id),
                key=lambda e: e.entry,
                reverse=True,
            )
            clean = True
            released = 0
            for e in held:
                if e.state == "pending":
                    report.unknown.append(e)
                    clean = False
                    continue
                if e.state not in UNRELEASED:
                    continue
                try:
                    if e.kind == "stock":
                        result = store.release_stock(e.target, e.quantity)
                    else:
                        result = store.release_coupon(e.target)
                    ok = result.ok
                except Exception:
                    logger.exception("recovery release failed for %s %s", e.kind, e.target)
                    ok = False
                e.state = "released" if ok else "release_failed"
                self.record(checkout_id, e.entry, e.kind, e.target, e.quantity, e.state)
                (report.released if ok else report.failed).append(e)
                released += ok
                clean = clean and ok

            order_id = orders.get(checkout_id)
            if order_id is not None:
                try:
                    store.flag_order_for_reconciliation(order_id, "checkout interrupted before commit")
                    report.flagged_orders.append(order_id)
                except Exception:
                    logger.exception("could not flag order %s for reconciliation", order_id)
                    clean = False

            if clean:
                self.close(checkout_id, "aborted")
            store.log(f"[checkout={checkout_id}] recovered: released={released} clean={clean}")
        return report


def open_journal(path: Optional[Union[str, Path]]) -> Optional[CompensationJournal]:
    return CompensationJournal(path) if path else None
