import pytest

from app.domain.calendar.reconciler import AccountSwitchReconciler
from app.models_google_calendar import AgentCalendarConfig
from tests.conftest import make_config, utc


def active_agents(db):
    return sorted(c.agent_id for c in db.query(AgentCalendarConfig).filter(AgentCalendarConfig.is_active.is_(True)))


def test_switching_away_and_back_restores_configs(db, credential):
    make_config(db, credential, agent_id="a1", created_with_email="a@example.com")
    make_config(db, credential, agent_id="a2", created_with_email="a@example.com")
    reconciler = AccountSwitchReconciler(db)

    to_b = reconciler.reconcile(credential.id, "a@example.com", "b@example.com")
    assert active_agents(db) == []
    assert to_b.deactivated_count == 2
    assert to_b.reactivated_count == 0

    make_config(db, credential, agent_id="b1", created_with_email="b@example.com")
    back_to_a = reconciler.reconcile(credential.id, "b@example.com", "A@Example.com")

    assert active_agents(db) == ["a1", "a2"]
    assert back_to_a.deactivated_count == 1
    assert back_to_a.reactivated_count == 2


def test_same_account_is_a_no_op(db, credential):
    make_config(db, credential, agent_id="a1", created_with_email="a@example.com")

    result = AccountSwitchReconciler(db).reconcile(credential.id, "a@example.com", " A@EXAMPLE.COM")

    assert result.deactivated_count == result.reactivated_count == result.fixed_null_count == 0
    assert active_agents(db) == ["a1"]


@pytest.mark.parametrize("previous, new", [(None, "b@example.com"), ("a@example.com", None)])
def test_unknown_account_is_a_no_op(db, credential, previous, new):
    make_config(db, credential, agent_id="a1", created_with_email="a@example.com")

    result = AccountSwitchReconciler(db).reconcile(credential.id, previous, new)

    assert result.deactivated_count == 0
    assert active_agents(db) == ["a1"]


def test_untracked_configs_are_adopted_by_new_account(db, credential):
    make_config(db, credential, agent_id="legacy", created_with_email=None)
    make_config(db, credential, agent_id="a1", created_with_email="a@example.com")

    result = AccountSwitchReconciler(db).reconcile(credential.id, "a@example.com", "b@example.com")

    assert result.fixed_null_count == 1
    assert active_agents(db) == ["legacy"]
    legacy = db.query(AgentCalendarConfig).filter_by(agent_id="legacy").one()
    assert legacy.created_with_email == "b@example.com"


def test_removed_config_stays_off_across_switches(db, credential):
    make_config(db, credential, agent_id="a1", created_with_email="a@example.com")
    make_config(
        db,
        credential,
        agent_id="gone",
        created_with_email="a@example.com",
        is_active=False,
        removed_at=utc(2026, 3, 1, 12, 0),
    )
    reconciler = AccountSwitchReconciler(db)

    reconciler.reconcile(credential.id, "a@example.com", "b@example.com")
    back = reconciler.reconcile(credential.id, "b@example.com", "a@example.com")

    assert back.reactivated_count == 1
    assert active_agents(db) == ["a1"]


def test_removed_config_without_account_is_not_adopted(db, credential):
    make_config(
        db, credential, agent_id="gone", created_with_email=None, is_active=False, removed_at=utc(2026, 3, 1)
    )

    result = AccountSwitchReconciler(db).reconcile(credential.id, "a@example.com", "b@example.com")

    assert result.fixed_null_count == 0
    assert active_agents(db) == []


def test_failed_commit_rolls_back(db, credential, monkeypatch):
    make_config(db, credential, agent_id="a1", created_with_email="a@example.com")

    def broken_commit():
        raise RuntimeError("connection lost")

    monkeypatch.setattr(db, "commit", broken_commit)

    with pytest.raises(RuntimeError):
        AccountSwitchReconciler(db).reconcile(credential.id, "a@example.com", "b@example.com")

    monkeypatch.undo()
    assert active_agents(db) == ["a1"]
