"""Persistence and configuration store used by the trading engine.

A thin facade over SQLModel sessions so the engine never touches the ORM
directly and tests can run against an in-memory SQLite engine.
"""

import logging
from datetime import datetime, timezone

from sqlmodel import Session, select

from tradebot.models.ai_decision import AIDecision
from tradebot.models.credential import Credential
from tradebot.models.job_log import JobLog
from tradebot.models.setting import Setting
from tradebot.models.trading_pair import TradingPair
from tradebot.models.transaction import Transaction
from tradebot.services.encryption import decrypt, encrypt
from tradebot.utils.constants import SETTING_DEFAULTS

logger = logging.getLogger(__name__)


class TradingStore:
    def __init__(self, engine=None):
        if engine is None:
            from tradebot.database import engine
        self.engine = engine

    # ------------------------------------------------------------------
    # Instruments
    # ------------------------------------------------------------------

    def list_active_pairs(self) -> list[TradingPair]:
        with Session(self.engine) as session:
            return list(session.exec(
                select(TradingPair)
                .where(TradingPair.is_active == True)  # noqa: E712
                .order_by(TradingPair.id)
            ).all())

    def get_pair(self, pair_id: int) -> TradingPair | None:
        with Session(self.engine) as session:
            return session.get(TradingPair, pair_id)

    def add_pair(self, pair: TradingPair) -> TradingPair:
        with Session(self.engine) as session:
            session.add(pair)
            session.commit()
            session.refresh(pair)
            return pair

    # ------------------------------------------------------------------
    # Settings and credentials
    # ------------------------------------------------------------------

    def get_settings(self) -> dict[str, str]:
        """All settings, with defaults for keys that have no row."""
        values = dict(SETTING_DEFAULTS)
        with Session(self.engine) as session:
            for row in session.exec(select(Setting)).all():
                values[row.key] = row.value
        return values

    def set_setting(self, key: str, value: str, description: str | None = None) -> Setting:
        with Session(self.engine) as session:
            row = session.get(Setting, key)
            if row is None:
                row = Setting(key=key, value=value, description=description)
            else:
                row.value = value
                row.updated_at = datetime.now(timezone.utc)
                if description is not None:
                    row.description = description
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    def get_credential(self, service_name: str) -> tuple[str, str | None] | None:
        """Decrypted (api_key, api_secret) of the newest active credential."""
        with Session(self.engine) as session:
            cred = session.exec(
                select(Credential)
                .where(Credential.service_name == service_name)
                .where(Credential.is_active == True)  # noqa: E712
                .order_by(Credential.id.desc())
            ).first()
            if cred is None or not cred.api_key_encrypted:
                return None
            secret = decrypt(cred.api_secret_encrypted) if cred.api_secret_encrypted else None
            return decrypt(cred.api_key_encrypted), secret

    def set_credential(self, service_name: str, api_key: str, api_secret: str | None = None) -> Credential:
        """Store a new credential and deactivate older ones for the service."""
        with Session(self.engine) as session:
            for old in session.exec(
                select(Credential).where(Credential.service_name == service_name)
            ).all():
                old.is_active = False
                session.add(old)
            cred = Credential(
                service_name=service_name,
                api_key_encrypted=encrypt(api_key),
                api_secret_encrypted=encrypt(api_secret) if api_secret else None,
            )
            session.add(cred)
            session.commit()
            session.refresh(cred)
            return cred

    # ------------------------------------------------------------------
    # Append-only audit records
    # ------------------------------------------------------------------

    def save_decision(self, decision: AIDecision) -> AIDecision:
        with Session(self.engine) as session:
            session.add(decision)
            session.commit()
            session.refresh(decision)
            return decision

    def save_transaction(self, transaction: Transaction) -> Transaction:
        with Session(self.engine) as session:
            session.add(transaction)
            session.commit()
            session.refresh(transaction)
            return transaction

    def last_entry(self, pair_id: int) -> Transaction | None:
        """Most recent entry order recorded for the pair."""
        with Session(self.engine) as session:
            return session.exec(
                select(Transaction)
                .where(Transaction.pair_id == pair_id)
                .where(Transaction.purpose == "entry")
                .order_by(Transaction.id.desc())
            ).first()

    def log_cycle(
        self,
        pair_id: int,
        status: str,
        action: str | None = None,
        message: str | None = None,
        decision: str | None = None,
        price: float | None = None,
        details: dict | None = None,
    ):
        """Write a JobLog entry; failures are logged, never raised."""
        try:
            with Session(self.engine) as session:
                session.add(JobLog(
                    pair_id=pair_id,
                    status=status,
                    action=action,
                    message=message,
                    decision=decision,
                    price=price,
                    details=details,
                ))
                session.commit()
        except Exception as e:
            logger.error(f"Failed to write job log for pair {pair_id}: {e}")
