"""
Account switch reconciler

When a tenant re-authorizes with a different Google account, agent configs created
under the old account are parked and configs that belong to the new account come
back. Switching A -> B -> A restores the original configs.
"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from .repository import CalendarRepository
from .schemas import ReconcileResult

logger = logging.getLogger(__name__)


def _same_account(a: Optional[str], b: Optional[str]) -> bool:
    return (a or "").strip().lower() == (b or "").strip().lower()


class AccountSwitchReconciler:
    def __init__(self, db: Session):
        self.db = db
        self.repo = CalendarRepository()

    def reconcile(
        self, credential_id: int, previous_account: Optional[str], new_account: Optional[str]
    ) -> ReconcileResult:
        if not previous_account or not new_account or _same_account(previous_account, new_account):
            return ReconcileResult()

        logger.info(f"🔄 Google account switched for credential {credential_id}, reconciling agent configs")
        result = ReconcileResult()
        # Configs the tenant removed stay parked whichever account is connected
        configs = [
            c for c in self.repo.get_configs_for_credential(self.db, credential_id) if c.removed_at is None
        ]
        try:
            # Configs predating account tracking belong to whoever authorizes now
            for config in configs:
                if config.created_with_email is None:
                    config.created_with_email = new_account
                    result.fixed_null_count += 1

            for config in configs:
                if config.is_active:
                    config.is_active = False
                    result.deactivated_count += 1

            for config in configs:
                if not config.is_active and _same_account(config.created_with_email, new_account):
                    config.is_active = True
                    result.reactivated_count += 1

            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.error(f"❌ Account switch reconciliation failed for credential {credential_id}")
            raise

        logger.info(
            f"✅ Reconciled credential {credential_id}: {result.deactivated_count} deactivated, "
            f"{result.reactivated_count} reactivated, {result.fixed_null_count} backfilled"
        )
        return result
