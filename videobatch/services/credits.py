"""Credit ledger client.

Wallet balances are only ever moved through the ledger's stored procedures,
which serialize concurrent freezes for the same user. Every call runs and
commits in its own transaction; failures surface as ``LedgerError`` and are
never retried here.
"""

import abc
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from videobatch.services.pricing import PLANS, PlanId

logger = structlog.get_logger()


class LedgerError(Exception):
    """The ledger call failed (database error or unexpected response)."""


class InsufficientCreditsError(LedgerError):
    def __init__(self, required: int, available: int | None = None) -> None:
        super().__init__(f"Insufficient credits: required {required}, available {available}")
        self.required = required
        self.available = available


@dataclass
class FinalizeResult:
    already_finalized: bool = False
    refunded: int = 0


@dataclass
class DeductResult:
    bonus_used: int
    permanent_used: int
    remaining_credits: int


def unwrap_credits(value: Any) -> int:
    """Read a balance out of whatever shape the RPC returned.

    Accepts a bare number, a one-element list, or an object carrying the
    number under one of the usual keys. Anything else reads as 0.
    """
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, (list, tuple)) and value and isinstance(value[0], (int, float)):
        return int(value[0])
    if isinstance(value, dict):
        for key in ("total", "available", "credits", "value", "result", "data"):
            if key not in value or value[key] is None:
                continue
            inner = value[key]
            if isinstance(inner, (int, float)) and not isinstance(inner, bool):
                return int(inner)
            if isinstance(inner, (list, tuple)) and inner and isinstance(inner[0], (int, float)):
                return int(inner[0])
            break
    return 0


class CreditLedger(abc.ABC):
    @abc.abstractmethod
    def check_available(self, user_id: uuid.UUID) -> int:
        """Advisory balance read; the freeze call remains the source of truth."""

    @abc.abstractmethod
    def freeze(self, user_id: uuid.UUID, batch_id: uuid.UUID, amount: int) -> None:
        """Reserve ``amount`` credits for ``batch_id``, all or nothing.

        Raises:
            InsufficientCreditsError: the wallet cannot cover ``amount``
            LedgerError: any other failure
        """

    @abc.abstractmethod
    def finalize(self, user_id: uuid.UUID, batch_id: uuid.UUID, spent: int) -> FinalizeResult:
        """Settle a frozen reservation, refunding ``frozen - spent``."""

    @abc.abstractmethod
    def deduct(self, user_id: uuid.UUID, amount: int, model: str) -> DeductResult:
        """Spend credits directly (single-video path), bonus credits first."""

    @abc.abstractmethod
    def record_usage(self, user_id: uuid.UUID, model: str, count: int = 1) -> None:
        """Bump the per-day usage counter used by plan caps."""

    @abc.abstractmethod
    def grant(
        self,
        user_id: uuid.UUID,
        permanent: int,
        bonus: int,
        bonus_expires_at: datetime | None,
        is_starter: bool = False,
    ) -> None:
        """Add purchased credits to the wallet."""

    def grant_plan(self, user_id: uuid.UUID, plan_id: PlanId | str) -> None:
        plan = PLANS[PlanId(plan_id)]
        expires_at = None
        if plan.grant.bonus_credits:
            expires_at = datetime.now(timezone.utc) + timedelta(days=plan.grant.bonus_days_valid)
        self.grant(
            user_id,
            permanent=plan.grant.permanent_credits,
            bonus=plan.grant.bonus_credits,
            bonus_expires_at=expires_at,
            is_starter=plan.plan_id == PlanId.STARTER,
        )


class RpcCreditLedger(CreditLedger):
    """Ledger backed by the stored procedures in the Supabase database."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def _call(self, sql: str, params: dict[str, Any]) -> Any:
        try:
            result = self.session.execute(text(sql), params).scalar()
            self.session.commit()
            return result
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error("ledger_rpc_failed", sql=sql.split("(")[0], error=str(e))
            raise LedgerError(str(e)) from e

    def check_available(self, user_id: uuid.UUID) -> int:
        data = self._call(
            "SELECT get_total_available_credits(CAST(:user_uuid AS uuid))",
            {"user_uuid": str(user_id)},
        )
        return unwrap_credits(data)

    def freeze(self, user_id: uuid.UUID, batch_id: uuid.UUID, amount: int) -> None:
        data = self._call(
            "SELECT freeze_credits_for_batch("
            "CAST(:p_user_id AS uuid), CAST(:p_batch_id AS uuid), :p_amount)",
            {"p_user_id": str(user_id), "p_batch_id": str(batch_id), "p_amount": amount},
        )
        if isinstance(data, dict) and data.get("ok"):
            logger.info("credits_frozen", user_id=str(user_id), batch_id=str(batch_id), amount=amount)
            return
        error = data.get("error") if isinstance(data, dict) else None
        if error == "insufficient_credits":
            available = data.get("available")
            raise InsufficientCreditsError(amount, int(available) if available is not None else None)
        raise LedgerError(f"freeze_credits_for_batch rejected: {error or data!r}")

    def finalize(self, user_id: uuid.UUID, batch_id: uuid.UUID, spent: int) -> FinalizeResult:
        data = self._call(
            "SELECT finalize_batch_credits("
            "CAST(:p_user_id AS uuid), CAST(:p_batch_id AS uuid), :p_spent)",
            {"p_user_id": str(user_id), "p_batch_id": str(batch_id), "p_spent": spent},
        )
        if not isinstance(data, dict) or not data.get("ok"):
            raise LedgerError(f"finalize_batch_credits rejected: {data!r}")
        return FinalizeResult(
            already_finalized=bool(data.get("already")),
            refunded=int(data.get("refunded") or 0),
        )

    def deduct(self, user_id: uuid.UUID, amount: int, model: str) -> DeductResult:
        data = self._call(
            "SELECT deduct_credits_from_wallet("
            "CAST(:user_uuid AS uuid), :credits_needed, :model_type)",
            {"user_uuid": str(user_id), "credits_needed": amount, "model_type": model},
        )
        if not isinstance(data, dict) or not data.get("success"):
            error = data.get("error") if isinstance(data, dict) else None
            if error == "insufficient_credits":
                raise InsufficientCreditsError(amount)
            raise LedgerError(error or "Failed to deduct credits")
        return DeductResult(
            bonus_used=int(data.get("bonus_used") or 0),
            permanent_used=int(data.get("permanent_used") or 0),
            remaining_credits=int(data.get("remaining_credits") or 0),
        )

    def record_usage(self, user_id: uuid.UUID, model: str, count: int = 1) -> None:
        self._call(
            "SELECT increment_usage_daily(CAST(:p_user_id AS uuid), :p_model, :p_count)",
            {"p_user_id": str(user_id), "p_model": model, "p_count": count},
        )

    def grant(
        self,
        user_id: uuid.UUID,
        permanent: int,
        bonus: int,
        bonus_expires_at: datetime | None,
        is_starter: bool = False,
    ) -> None:
        data = self._call(
            "SELECT add_credits_to_wallet(CAST(:user_uuid AS uuid), :permanent_amount, "
            ":bonus_amount, :bonus_expires_at, :is_starter)",
            {
                "user_uuid": str(user_id),
                "permanent_amount": permanent,
                "bonus_amount": bonus,
                "bonus_expires_at": bonus_expires_at,
                "is_starter": is_starter,
            },
        )
        if not isinstance(data, dict) or not data.get("success"):
            error = data.get("error") if isinstance(data, dict) else None
            raise LedgerError(error or "Failed to add credits")
