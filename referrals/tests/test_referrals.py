"""
Unit Tests for the Referral Graph and Commission Distributor

Tests cover:
1. Linking new accounts (no-op cases, idempotent retries, cycle guard)
2. Level index maintenance and repair
3. Commission percentages, rounding and the 10-level cap
4. Per-ancestor failure isolation
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace
from uuid import uuid4

from core.config import Settings
from core.storage import InMemoryStorage
from ledger.models import CreateAccountRequest
from ledger.service import AccountNotFoundError, InvalidAmountError, LedgerService
from ledger.subscriptions import SubscriptionService
from referrals.commission import CommissionDistributor, commission_for
from referrals.graph import ReferralGraph
from referrals.models import REFERRAL_PERCENTAGES


NOW = datetime(2024, 6, 2, 10, 0, tzinfo=timezone.utc)


def build_env(**settings):
    storage = InMemoryStorage()
    config = Settings(**settings)
    ledger = LedgerService(storage, config)
    graph = ReferralGraph(storage, config)
    return SimpleNamespace(
        storage=storage,
        ledger=ledger,
        subscriptions=SubscriptionService(storage, config),
        graph=graph,
        distributor=CommissionDistributor(ledger, graph),
    )


@pytest.fixture
def env():
    return build_env()


def join(env, name, code=None, subscribe=True):
    """Register ``name`` under ``code`` and optionally activate its subscription."""
    account = env.ledger.create_account(CreateAccountRequest(
        name=name.title(), username=name, email=f"{name}@example.com",
    ))
    env.graph.link_new_account(account.id, code, NOW)
    if subscribe:
        env.subscriptions.activate(account.id, Decimal("1000"), f"T-{name}", NOW)
    return env.ledger.get_account(account.id)


def build_chain(env, length):
    members = [join(env, "member1")]
    for i in range(2, length + 1):
        members.append(join(env, f"member{i}", members[-1].referral_code))
    return members


class TestLinkNewAccount:
    """Tests for attaching new accounts to the referral tree."""

    def test_direct_and_indirect_levels(self, env):
        """B under A under Z puts B in A.level1 and Z.level2."""
        z = join(env, "zara")
        a = join(env, "ali", z.referral_code)
        b = join(env, "bilal", a.referral_code)

        assert b.referral.referrer == a.id
        assert env.ledger.get_account(a.id).referral.levels["level1"] == [b.id]
        assert env.ledger.get_account(z.id).referral.levels["level2"] == [b.id]
        assert env.ledger.get_account(z.id).referral.levels["level1"] == [a.id]

    def test_code_lookup_ignores_case(self, env):
        """A lower-case code still resolves."""
        a = join(env, "ali")
        b = join(env, "bilal", a.referral_code.lower())

        assert b.referral.referrer == a.id

    @pytest.mark.parametrize("code", [None, "", "   ", "PMNOPE00"])
    def test_missing_or_unknown_code_is_noop(self, env, code):
        """Registration proceeds without a referrer."""
        account = join(env, "bilal", code)

        assert account.referral.referrer is None

    def test_self_referral_ignored(self, env):
        """An account cannot refer itself."""
        account = join(env, "ali")

        result = env.graph.link_new_account(account.id, account.referral_code, NOW)

        assert result.linked is False
        assert env.ledger.get_account(account.id).referral.referrer is None
        assert env.ledger.get_account(account.id).referral.levels["level1"] == []

    def test_inactive_referrer_code_ignored(self, env):
        """Codes of accounts without a current subscription do not link."""
        a = join(env, "ali", subscribe=False)
        code = env.subscriptions.generate_referral_code(a.id)

        b = join(env, "bilal", code)

        assert b.referral.referrer is None

    def test_inactive_referrer_allowed_when_configured(self):
        """The subscription gate on codes can be switched off."""
        env = build_env(referral_code_requires_active_subscription=False)
        a = join(env, "ali", subscribe=False)
        code = env.subscriptions.generate_referral_code(a.id)

        b = join(env, "bilal", code)

        assert b.referral.referrer == a.id

    def test_expired_referrer_code_ignored(self, env):
        """A code whose subscription expired no longer links."""
        a = join(env, "ali")
        b = env.ledger.create_account(CreateAccountRequest(name="B", username="bilal", email="b@example.com"))

        result = env.graph.link_new_account(b.id, a.referral_code, NOW + timedelta(days=31))

        assert result.linked is False

    def test_retry_is_idempotent(self, env):
        """Linking the same account twice leaves no duplicate level members."""
        a = join(env, "ali")
        b = join(env, "bilal", a.referral_code)

        result = env.graph.link_new_account(b.id, a.referral_code, NOW)

        assert result.linked is True
        assert env.ledger.get_account(a.id).referral.levels["level1"] == [b.id]

    def test_existing_referrer_not_overwritten(self, env):
        """A second, different code cannot re-parent an account."""
        a = join(env, "ali")
        c = join(env, "chand")
        b = join(env, "bilal", a.referral_code)

        result = env.graph.link_new_account(b.id, c.referral_code, NOW)

        assert result.linked is False
        assert env.ledger.get_account(b.id).referral.referrer == a.id
        assert env.ledger.get_account(c.id).referral.levels["level1"] == []

    def test_cycle_refused(self, env):
        """An ancestor cannot be linked under its own descendant."""
        a = join(env, "ali")
        b = join(env, "bilal", a.referral_code)

        result = env.graph.link_new_account(a.id, b.referral_code, NOW)

        assert result.linked is False
        assert env.ledger.get_account(a.id).referral.referrer is None

    def test_unknown_new_account(self, env):
        """Linking an unregistered account is an error."""
        a = join(env, "ali")

        with pytest.raises(AccountNotFoundError):
            env.graph.link_new_account(uuid4(), a.referral_code, NOW)


class TestLevelIndex:
    """Tests for the depth cap and index repair."""

    def test_fifteen_chain_caps_at_ten_levels(self, env):
        """Level sets only reach ten hops down."""
        members = build_chain(env, 15)
        top = env.ledger.get_account(members[0].id)

        assert top.referral.levels["level10"] == [members[10].id]
        indexed = {m for ids in top.referral.levels.values() for m in ids}
        assert indexed == {m.id for m in members[1:11]}

    def test_ancestor_chain_levels(self, env):
        """The chain starts at the direct referrer as level 1."""
        members = build_chain(env, 4)

        chain = env.graph.ancestor_chain(members[3].referral.referrer)

        assert [(link.account_id, link.level) for link in chain] == [
            (members[2].id, 1), (members[1].id, 2), (members[0].id, 3),
        ]

    def test_rebuild_restores_missing_entries(self, env):
        """A partially applied registration is repaired from the pointer chain."""
        z = join(env, "zara")
        a = join(env, "ali", z.referral_code)
        b = join(env, "bilal", a.referral_code)

        def drop(doc):
            doc["referral"]["levels"]["level2"] = []

        env.storage.update_account(z.id, drop)
        chain = env.graph.rebuild_level_index(b.id)

        assert [link.account_id for link in chain] == [a.id, z.id]
        assert env.ledger.get_account(z.id).referral.levels["level2"] == [b.id]
        assert env.ledger.get_account(a.id).referral.levels["level1"] == [b.id]

    def test_stats_counts_levels_and_active_directs(self, env):
        """Stats report per-level counts and active direct referrals."""
        a = join(env, "ali")
        b = join(env, "bilal", a.referral_code)
        join(env, "chand", a.referral_code, subscribe=False)
        join(env, "dua", b.referral_code)

        stats = env.graph.stats(a.id, NOW)

        assert stats.counts["level1"] == 2
        assert stats.counts["level2"] == 1
        assert stats.total_referrals == 3
        assert stats.direct_referrals_total == 2
        assert stats.direct_referrals_active == 1
        assert stats.referral_code == a.referral_code


class TestCommissionDistribution:
    """Tests for paying commissions up the chain."""

    def test_percentage_table_sums_to_67_percent(self):
        """The fixed table pays 67% in total."""
        assert sum(REFERRAL_PERCENTAGES) == Decimal("0.67")
        assert len(REFERRAL_PERCENTAGES) == 10

    def test_three_level_scenario(self, env):
        """B's 1000 purchase pays A 200 at level 1 and Z 120 at level 2."""
        z = join(env, "zara")
        a = join(env, "ali", z.referral_code)
        b = join(env, "bilal", a.referral_code)

        result = env.distributor.distribute(b.id, Decimal("1000"), reference="T123", now=NOW)

        a_after = env.ledger.get_account(a.id)
        z_after = env.ledger.get_account(z.id)
        b_after = env.ledger.get_account(b.id)
        assert a_after.referral.earnings_by_level["level1"] == Decimal("200.00")
        assert a_after.referral.total_earnings == Decimal("200.00")
        assert z_after.referral.earnings_by_level["level2"] == Decimal("120.00")
        assert z_after.referral.total_earnings == Decimal("120.00")
        assert b_after.referral.total_earnings == Decimal("0.00")
        assert result.total_paid == Decimal("320.00")

    def test_full_chain_pays_each_level(self, env):
        """A full ten-level chain pays 20/12/10/8/7/2/2/2/2/2 of 1000."""
        members = build_chain(env, 11)
        buyer = members[-1]

        result = env.distributor.distribute(buyer.id, Decimal("1000"), now=NOW)

        expected = ["200.00", "120.00", "100.00", "80.00", "70.00", "20.00", "20.00", "20.00", "20.00", "20.00"]
        assert [str(p.amount) for p in result.payouts] == expected
        assert result.total_paid == Decimal("670.00")
        for level, ancestor in enumerate(reversed(members[:-1]), start=1):
            account = env.ledger.get_account(ancestor.id)
            assert account.referral.earnings_by_level[f"level{level}"] == Decimal(expected[level - 1])

    def test_fifteen_chain_pays_at_most_ten(self, env):
        """Ancestors beyond level 10 receive nothing."""
        members = build_chain(env, 15)

        result = env.distributor.distribute(members[-1].id, Decimal("1000"), now=NOW)

        assert len(result.payouts) == 10
        for member in members[:4]:
            assert env.ledger.get_account(member.id).referral.total_earnings == Decimal("0.00")

    def test_each_level_rounded_independently(self):
        """Rounding applies per level, half up to cents."""
        assert commission_for(Decimal("333.33"), 1) == Decimal("66.67")
        assert commission_for(Decimal("333.33"), 2) == Decimal("40.00")
        assert commission_for(Decimal("333.33"), 6) == Decimal("6.67")

    def test_zero_commission_levels_skipped(self, env):
        """Levels whose commission rounds to zero are not written."""
        members = build_chain(env, 11)

        result = env.distributor.distribute(members[-1].id, Decimal("0.10"), now=NOW)

        assert [p.level for p in result.payouts] == [1, 2, 3, 4, 5]
        assert env.storage.entries_for(members[4].id) == []

    def test_no_referrer_is_noop(self, env):
        """A buyer without a referrer pays nobody."""
        buyer = join(env, "ali")

        result = env.distributor.distribute(buyer.id, Decimal("1000"), now=NOW)

        assert result.payouts == []

    def test_non_positive_amount_rejected(self, env):
        """Distribution needs a positive amount."""
        buyer = join(env, "ali")

        with pytest.raises(InvalidAmountError):
            env.distributor.distribute(buyer.id, Decimal("0"), now=NOW)

    def test_failure_for_one_ancestor_keeps_others(self, env, monkeypatch):
        """A failed credit is recorded and the rest of the chain is still paid."""
        z = join(env, "zara")
        a = join(env, "ali", z.referral_code)
        b = join(env, "bilal", a.referral_code)
        original = env.ledger.credit

        def flaky(account_id, *args, **kwargs):
            if account_id == a.id:
                raise RuntimeError("store unavailable")
            return original(account_id, *args, **kwargs)

        monkeypatch.setattr(env.ledger, "credit", flaky)
        result = env.distributor.distribute(b.id, Decimal("1000"), now=NOW)

        assert [(p.level, p.credited) for p in result.payouts] == [(1, False), (2, True)]
        assert result.payouts[0].error == "store unavailable"
        assert env.ledger.get_account(z.id).referral.total_earnings == Decimal("120.00")
        assert result.total_paid == Decimal("120.00")

    def test_corrupted_cycle_stops_at_buyer(self, env):
        """A cycle in stored pointers never pays the buyer."""
        a = join(env, "ali")
        b = join(env, "bilal", a.referral_code)

        def point_to_b(doc):
            doc["referral"]["referrer"] = b.id

        env.storage.update_account(a.id, point_to_b)
        result = env.distributor.distribute(b.id, Decimal("1000"), now=NOW)

        assert [p.account_id for p in result.payouts] == [a.id]
        assert env.ledger.get_account(b.id).referral.total_earnings == Decimal("0.00")
