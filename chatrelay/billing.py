"""
Power billing: debit a user's balance and keep a log of every debit.
"""

import logging

from chatrelay.errors import BillingError
from chatrelay.storage.models import PowerLog

logger = logging.getLogger(__name__)


class PowerBilling:
    """Debits `users.power` and appends to `power_logs` in one transaction."""

    def __init__(self, store):
        self.store = store

    def debit(self, user_id: int, amount: int, entry: PowerLog) -> int:
        """Returns the new balance. Raises BillingError on unknown user or low balance."""
        with self.store._connect() as conn:
            row = conn.execute("SELECT power FROM users WHERE id = ?", (user_id,)).fetchone()
            if row is None:
                raise BillingError(f"user {user_id} not found")
            if row["power"] < amount:
                raise BillingError(
                    f"insufficient power for user {user_id}: {row['power']} < {amount}"
                )
            balance = row["power"] - amount
            conn.execute("UPDATE users SET power = ? WHERE id = ?", (balance, user_id))
            conn.execute(
                """INSERT INTO power_logs (user_id, type, amount, balance, model, remark, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (user_id, entry.type, amount, balance, entry.model, entry.remark, entry.created_at),
            )
        logger.debug("Debited %d power from user %s (balance %d)", amount, user_id, balance)
        return balance
