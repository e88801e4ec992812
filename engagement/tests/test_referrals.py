import threading
from decimal import Decimal

import pytest

from engagement.errors import NotMemberError, OracleUnavailableError
from ledger.models import SettingsUpdate, TransactionType

from .conftest import OFFICIAL_CHANNEL, make_account, make_task, transactions_of


@pytest.fixture
def referrer(env):
    return make_account(env, 600, first_name="Rahim")


def refer(env, referrer, telegram_id=601, first_name="Karim"):
    return make_account(env, telegram_id, first_name=first_name, referral_code=referrer.referral_code)


class TestRegistration:

    def test_signup_with_code_marks_bonus_pending(self, env, referrer):
        referred = refer(env, referrer)

        assert referred.referred_by == referrer.id
        assert referred.referral_bonus_pending
        assert not referred.referral_bonus_credited
        assert env.ledger.get_account(referrer.id).balance == Decimal("0.00")
        assert [a.id for a in env.referrals.list_referrals(referrer.id)] == [referred.id]

    def test_code_lookup_is_case_insensitive(self, env, referrer):
        account = make_account(env, 601, referral_code=referrer.referral_code.lower())
        assert account.referred_by == referrer.id

    def test_unknown_code_ignored(self, env):
        account = make_account(env, 601, referral_code="ZZZZZZ")

        assert account.referred_by is None
        assert not account.referral_bonus_pending

    def test_existing_telegram_id_returns_same_account(self, env, referrer):
        first = make_account(env, 601)
        again = make_account(env, 601, referral_code=referrer.referral_code)

        assert again.id == first.id
        assert again.referred_by is None

    def test_self_referral_ignored(self, env, referrer):
        code = referrer.referral_code
        assert make_account(env, 600, referral_code=code).referred_by is None


class TestBonusRelease:

    def test_official_task_verification_pays_referrer(self, env, referrer):
        admin = make_account(env, 1)
        task = make_task(env, admin, channel=OFFICIAL_CHANNEL, reward="1", budget="100")
        referred = refer(env, referrer)
        env.oracle.join(OFFICIAL_CHANNEL, referred.telegram_id)

        result = env.completions.verify(task.id, referred.id)

        assert result.referral_bonus is not None
        assert result.referral_bonus.account_id == referrer.id
        assert result.referral_bonus.amount == Decimal("5.00")
        assert env.ledger.get_account(referrer.id).balance == Decimal("5.00")
        assert env.ledger.get_account(referred.id).balance == Decimal("1.00")

        referred = env.ledger.get_account(referred.id)
        assert not referred.referral_bonus_pending
        assert referred.referral_bonus_credited

    def test_non_official_task_releases_nothing(self, env, referrer):
        creator = make_account(env, 500, balance=100)
        task = make_task(env, creator, channel="@promo_channel")
        referred = refer(env, referrer)
        env.oracle.join("@promo_channel", referred.telegram_id)

        result = env.completions.verify(task.id, referred.id)

        assert result.referral_bonus is None
        assert env.ledger.get_account(referred.id).referral_bonus_pending
        assert transactions_of(env, referrer.id, TransactionType.REFERRAL_BONUS) == []

    def test_unreferred_account_releases_nothing(self, env):
        admin = make_account(env, 1)
        task = make_task(env, admin, channel=OFFICIAL_CHANNEL, reward="1", budget="100")
        plain = make_account(env, 602)
        env.oracle.join(OFFICIAL_CHANNEL, plain.telegram_id)

        assert env.completions.verify(task.id, plain.id).referral_bonus is None

    def test_direct_check_without_official_task(self, env, referrer):
        referred = refer(env, referrer)
        env.oracle.join(OFFICIAL_CHANNEL, referred.telegram_id)

        result = env.referrals.verify_official_channel(referred.id)

        assert result.success
        assert result.bonus_credited
        assert env.ledger.get_account(referrer.id).balance == Decimal("5.00")

    def test_already_credited_short_circuits(self, env, referrer):
        referred = refer(env, referrer)
        env.oracle.join(OFFICIAL_CHANNEL, referred.telegram_id)
        env.referrals.verify_official_channel(referred.id)

        again = env.referrals.verify_official_channel(referred.id)

        assert again.already_credited
        assert not again.bonus_credited
        assert len(transactions_of(env, referrer.id, TransactionType.REFERRAL_BONUS)) == 1

    def test_not_member_keeps_bonus_pending(self, env, referrer):
        referred = refer(env, referrer)

        with pytest.raises(NotMemberError):
            env.referrals.verify_official_channel(referred.id)

        assert env.ledger.get_account(referred.id).referral_bonus_pending
        assert env.ledger.get_account(referrer.id).balance == Decimal("0.00")

    def test_unavailable_oracle_keeps_bonus_pending(self, env, referrer):
        referred = refer(env, referrer)
        env.oracle.unavailable = True

        with pytest.raises(OracleUnavailableError):
            env.referrals.verify_official_channel(referred.id)

        assert env.ledger.get_account(referred.id).referral_bonus_pending

    def test_bonus_amount_follows_settings(self, env, referrer):
        env.ledger.update_settings(SettingsUpdate(referral_bonus_amount=Decimal("7.50")))
        referred = refer(env, referrer)
        env.oracle.join(OFFICIAL_CHANNEL, referred.telegram_id)

        env.referrals.verify_official_channel(referred.id)

        assert env.ledger.get_account(referrer.id).balance == Decimal("7.50")

    def test_concurrent_verification_pays_once(self, env, referrer):
        admin = make_account(env, 1)
        make_task(env, admin, channel=OFFICIAL_CHANNEL, reward="1", budget="100")
        referred = refer(env, referrer)
        env.oracle.join(OFFICIAL_CHANNEL, referred.telegram_id)

        threads = [
            threading.Thread(target=env.referrals.verify_official_channel, args=(referred.id,))
            for _ in range(10)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(transactions_of(env, referrer.id, TransactionType.REFERRAL_BONUS)) == 1
        assert env.ledger.get_account(referrer.id).balance == Decimal("5.00")
        assert len(transactions_of(env, referred.id, TransactionType.TASK_EARNING)) == 1
