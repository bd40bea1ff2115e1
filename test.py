'''
Testing module for the Subscription Sync Backend.

The reconciler and dispatcher tests call the module APIs directly and vet the outcome on the tables
in the SQLite database.

The webhook tests spin up a local Flask instance as per
(https://flask.palletsprojects.com/en/stable/testing/#sending-requests-with-the-test-client), send
a notification the way each platform would deliver it using the test client and vet the response
and the subscription row it produced. The services driven after a transition are replaced with
recording fakes so that the side effects can be observed.
'''

import hmac
import json
import time
import flask
import base64
import typing
import hashlib
import sqlite3
import werkzeug
import werkzeug.test
import threading
import traceback
import dataclasses

import jwt

import base
import backend
import canonical
import collaborators
import dispatcher
import reconciler
import server
import platform_apple
import platform_google
import platform_google_api
import platform_stripe
from base import Platform, SubscriptionStatus, SubscriptionTier

STRIPE_TEST_WEBHOOK_SECRET  = 'whsec_test_0123456789abcdef'
STRIPE_TEST_PRO_PRICE_ID    = 'price_pro_monthly'
STRIPE_TEST_ENTERPRISE_ID   = 'price_enterprise_monthly'
APPLE_TEST_BUNDLE_ID        = 'com.example.pos'
APPLE_TEST_JWT_KEY          = 'apple-test-notification-signing-key-0123456789'
GOOGLE_TEST_PACKAGE_NAME    = 'com.example.pos'

# 2030-01-01T00:00:00Z
GOOGLE_TEST_EXPIRY_RFC3339  = '2030-01-01T00:00:00Z'
GOOGLE_TEST_EXPIRY_UNIX_MS  = 1893456000000

class RecordingCache(collaborators.MemoryCache):
    def __init__(self):
        super().__init__()
        self.deleted: list[str] = []

    def delete(self, key: str) -> bool:
        self.deleted.append(key)
        return super().delete(key)

class RecordingStaffService:
    def __init__(self):
        self.enabled:  list[int] = []
        self.disabled: list[int] = []

    def enable_all_staff(self, organization_id: int) -> int:
        self.enabled.append(organization_id)
        return 0

    def disable_all_staff(self, organization_id: int) -> int:
        self.disabled.append(organization_id)
        return 0

class RecordingNotificationService:
    def __init__(self, fail: bool = False):
        self.fail:    bool                                            = fail
        self.emitted: list[tuple[int, str, dict[str, base.JSONValue]]] = []

    def emit_to_organization(self, organization_id: int, event_kind: str, payload: dict[str, base.JSONValue]) -> None:
        if self.fail:
            raise RuntimeError('Notification channel is down')
        self.emitted.append((organization_id, event_kind, payload))

@dataclasses.dataclass
class TestingContext:
    """
    Sets up a database with the necessary tables and a flask instance with every platform route
    equipped that you can simulate HTTP requests to. This class is designed to be used in a `with`
    context such that the DB is closed on scope exit.

    For tests, this means you probably want to supply a in-memory URI-style path to make a transient
    DB that is wiped on scope exit. This means tests have a fresh DB to work with for each `with`
    context and each chunk of tests to execute.
    """

    db:           backend.SetupDBResult
    sql_conn:     sqlite3.Connection
    flask_app:    flask.Flask
    flask_client: werkzeug.Client
    cache:        RecordingCache
    staff:        RecordingStaffService
    notifier:     RecordingNotificationService
    services:     collaborators.Collaborators

    db_path:      str             = ''
    uri:          bool            = False
    deployment:   base.Deployment = base.Deployment.Development

    def __init__(self, db_path: str, uri: bool, deployment: base.Deployment = base.Deployment.Development, notifier_fails: bool = False):
        self.db_path    = db_path
        self.uri        = uri
        self.deployment = deployment
        self.cache      = RecordingCache()
        self.staff      = RecordingStaffService()
        self.notifier   = RecordingNotificationService(fail=notifier_fails)
        self.services   = collaborators.Collaborators(cache=self.cache, staff=self.staff, notifier=self.notifier)

    def __enter__(self):
        err     = base.ErrorSink()
        self.db = backend.setup_db(path=self.db_path, uri=self.uri, err=err)
        assert len(err.msg_list) == 0, err.build()
        assert self.db.sql_conn
        self.sql_conn = self.db.sql_conn

        self.flask_app = server.init(testing_mode   = True,
                                     db_path        = self.db_path,
                                     db_path_is_uri = self.uri,
                                     services       = self.services,
                                     deployment     = self.deployment)

        stripe_core = platform_stripe.init(webhook_secret      = STRIPE_TEST_WEBHOOK_SECRET,
                                           api_key             = 'sk_test_unused',
                                           pro_price_id        = STRIPE_TEST_PRO_PRICE_ID,
                                           enterprise_price_id = STRIPE_TEST_ENTERPRISE_ID)
        platform_stripe.equip_flask_routes(stripe_core, self.flask_app)
        platform_apple.equip_flask_routes(platform_apple.Core(bundle_id=APPLE_TEST_BUNDLE_ID), self.flask_app)

        play_client = platform_google_api.PlayClient(service=None, package_name=GOOGLE_TEST_PACKAGE_NAME)
        platform_google.equip_flask_routes(platform_google.Core(package_name=GOOGLE_TEST_PACKAGE_NAME, play_client=play_client), self.flask_app)

        self.flask_client = self.flask_app.test_client()
        return self

    def __exit__(self,
                 exc_type: object | None,
                 exc_value: object | None,
                 traceback: traceback.TracebackException | None):
        self.sql_conn.close()
        return False

@dataclasses.dataclass
class Seeded:
    organization_id: int = 0
    user_id:         int = 0
    subscription_id: int = 0
    email:           str = ''

def seed_organization(sql_conn: sqlite3.Connection, email: str, stripe_account_id: str | None = None) -> Seeded:
    result       = Seeded(email=email)
    with base.SQLTransaction(sql_conn) as tx:
        result.organization_id = backend.add_organization_tx(tx, name='Example Cafe', stripe_account_id=stripe_account_id)
        result.user_id         = backend.add_user_tx(tx, result.organization_id, email)
    return result

def seed_subscription(sql_conn:     sqlite3.Connection,
                      platform:     Platform,
                      external_key: str,
                      status:       SubscriptionStatus,
                      tier:         SubscriptionTier = SubscriptionTier.Pro,
                      email:        str              = '') -> Seeded:
    result  = seed_organization(sql_conn, email if email else f'owner-{external_key}@example.com')
    pricing = backend.PRICING_BY_TIER[tier]
    row     = backend.SubscriptionRow(organization_id      = result.organization_id,
                                      user_id              = result.user_id,
                                      platform             = platform,
                                      tier                 = tier,
                                      status               = status,
                                      monthly_price        = pricing.monthly_price,
                                      transaction_fee_rate = pricing.transaction_fee_rate,
                                      features             = backend.features_for_tier(tier),
                                      created_unix_ts_ms   = 1,
                                      updated_unix_ts_ms   = 1)
    setattr(row, backend.EXTERNAL_KEY_COLUMN_BY_PLATFORM[platform], external_key)
    with base.SQLTransaction(sql_conn) as tx:
        result.subscription_id = backend.add_subscription_tx(tx, row)
    return result

def get_row(sql_conn: sqlite3.Connection, subscription_id: int) -> backend.SubscriptionRow:
    result = backend.get_subscription(sql_conn, subscription_id)
    assert result is not None
    return result

def test_reconciler_renewal_is_idempotent():
    with TestingContext(db_path='file:test_reconciler_renewal_db?mode=memory&cache=shared', uri=True) as ctx:
        seeded = seed_subscription(ctx.sql_conn, Platform.Stripe, 'sub_renew', SubscriptionStatus.PastDue)
        event  = canonical.renewed(Platform.Stripe, 'sub_renew', expires_unix_ts_ms=5_000)

        first = reconciler.reconcile(ctx.sql_conn, event, unix_ts_ms=1_000)
        assert first.found and first.applied and first.changed and first.real_transition
        assert first.previous is not None and first.previous.status == SubscriptionStatus.PastDue
        assert first.audit_action == 'subscription.active'
        assert first.audit_changes == {'status': 'active', 'previousStatus': 'past_due', 'tier': 'pro', 'previousTier': 'pro'}

        row = get_row(ctx.sql_conn, seeded.subscription_id)
        assert row.status                        == SubscriptionStatus.Active
        assert row.current_period_end_unix_ts_ms == 5_000
        assert row.updated_unix_ts_ms            == 1_000

        # NOTE: Redelivery finds the row already in the target state, nothing is written
        second = reconciler.reconcile(ctx.sql_conn, event, unix_ts_ms=2_000)
        assert second.found and second.applied
        assert not second.changed
        assert not second.real_transition
        assert get_row(ctx.sql_conn, seeded.subscription_id).updated_unix_ts_ms == 1_000

def test_reconciler_unknown_subscription_is_dropped():
    with TestingContext(db_path='file:test_reconciler_unknown_db?mode=memory&cache=shared', uri=True) as ctx:
        result = reconciler.reconcile(ctx.sql_conn, canonical.expired(Platform.Apple, 'never-seen'))
        assert not result.found
        assert not result.applied
        assert not result.real_transition
        assert result.current is None
        assert len(backend.get_subscriptions_list(ctx.sql_conn)) == 0

def test_reconciler_rejects_events_from_another_platform():
    with TestingContext(db_path='file:test_reconciler_platform_db?mode=memory&cache=shared', uri=True) as ctx:
        # NOTE: A row bound to Google that still carries a Stripe key, e.g. a stale subscription
        seeded = seed_subscription(ctx.sql_conn, Platform.Stripe, 'sub_stale', SubscriptionStatus.Active)
        with base.SQLTransaction(ctx.sql_conn) as tx:
            row          = backend.get_subscription_tx(tx, seeded.subscription_id)
            assert row is not None
            row.platform = Platform.Google
            backend.update_subscription_tx(tx, row)

        result = reconciler.reconcile(ctx.sql_conn, canonical.expired(Platform.Stripe, 'sub_stale'))
        assert result.found
        assert not result.applied
        assert not result.changed
        assert get_row(ctx.sql_conn, seeded.subscription_id).status == SubscriptionStatus.Active

def test_reconciler_payment_recovered_only_from_past_due():
    with TestingContext(db_path='file:test_reconciler_recovered_db?mode=memory&cache=shared', uri=True) as ctx:
        canceled_sub = seed_subscription(ctx.sql_conn, Platform.Stripe, 'sub_canceled', SubscriptionStatus.Canceled, tier=SubscriptionTier.Starter)
        result       = reconciler.reconcile(ctx.sql_conn, canonical.payment_recovered(Platform.Stripe, 'sub_canceled'))
        assert result.found and not result.applied and not result.changed
        assert get_row(ctx.sql_conn, canceled_sub.subscription_id).status == SubscriptionStatus.Canceled

        past_due_sub = seed_subscription(ctx.sql_conn, Platform.Stripe, 'sub_past_due', SubscriptionStatus.PastDue)
        result       = reconciler.reconcile(ctx.sql_conn, canonical.payment_recovered(Platform.Stripe, 'sub_past_due'))
        assert result.applied and result.real_transition
        assert get_row(ctx.sql_conn, past_due_sub.subscription_id).status == SubscriptionStatus.Active

def test_reconciler_expiry_downgrades_to_base_tier():
    with TestingContext(db_path='file:test_reconciler_expiry_db?mode=memory&cache=shared', uri=True) as ctx:
        seeded = seed_subscription(ctx.sql_conn, Platform.Google, 'token-expire', SubscriptionStatus.Active, tier=SubscriptionTier.Enterprise)

        result = reconciler.reconcile(ctx.sql_conn, canonical.expired(Platform.Google, 'token-expire'), unix_ts_ms=7_000)
        assert result.real_transition
        assert result.audit_action == 'subscription.canceled'

        row = get_row(ctx.sql_conn, seeded.subscription_id)
        assert row.status                 == SubscriptionStatus.Canceled
        assert row.tier                   == SubscriptionTier.Starter
        assert row.features               == backend.features_for_tier(SubscriptionTier.Starter)
        assert row.monthly_price          == backend.PRICING_BY_TIER[SubscriptionTier.Starter].monthly_price
        assert row.transaction_fee_rate   == backend.PRICING_BY_TIER[SubscriptionTier.Starter].transaction_fee_rate
        assert row.canceled_at_unix_ts_ms == 7_000

        # NOTE: A repeated expiry keeps the original cancellation stamp
        result = reconciler.reconcile(ctx.sql_conn, canonical.expired(Platform.Google, 'token-expire'), unix_ts_ms=9_000)
        assert not result.changed
        assert get_row(ctx.sql_conn, seeded.subscription_id).canceled_at_unix_ts_ms == 7_000

def test_reconciler_cancel_then_reenable_round_trip():
    with TestingContext(db_path='file:test_reconciler_cancel_db?mode=memory&cache=shared', uri=True) as ctx:
        seeded = seed_subscription(ctx.sql_conn, Platform.Apple, '1000000000000001', SubscriptionStatus.Active)

        result = reconciler.reconcile(ctx.sql_conn, canonical.canceled(Platform.Apple, '1000000000000001', cancel_at_unix_ts_ms=50_000), unix_ts_ms=10_000)
        assert result.changed
        assert not result.real_transition

        row = get_row(ctx.sql_conn, seeded.subscription_id)
        assert row.status                 == SubscriptionStatus.Active
        assert row.tier                   == SubscriptionTier.Pro
        assert row.cancel_at_unix_ts_ms   == 50_000
        assert row.canceled_at_unix_ts_ms == 10_000

        result = reconciler.reconcile(ctx.sql_conn, canonical.renewal_reenabled(Platform.Apple, '1000000000000001'), unix_ts_ms=11_000)
        assert result.changed
        assert not result.real_transition

        row = get_row(ctx.sql_conn, seeded.subscription_id)
        assert row.cancel_at_unix_ts_ms   is None
        assert row.canceled_at_unix_ts_ms is None
        assert row.status                 == SubscriptionStatus.Active

def test_reconciler_cancellation_stamps_survive_redelivery():
    with TestingContext(db_path='file:test_reconciler_cancel_stamp_db?mode=memory&cache=shared', uri=True) as ctx:
        seeded = seed_subscription(ctx.sql_conn, Platform.Apple, '1000000000000055', SubscriptionStatus.Active)
        cancel = canonical.canceled(Platform.Apple, '1000000000000055', cancel_at_unix_ts_ms=90_000)

        assert reconciler.reconcile(ctx.sql_conn, cancel, unix_ts_ms=10_000).changed
        assert not reconciler.reconcile(ctx.sql_conn, cancel, unix_ts_ms=20_000).changed
        assert get_row(ctx.sql_conn, seeded.subscription_id).canceled_at_unix_ts_ms == 10_000

        # NOTE: A refund ends the entitlement now, replacing the stamp of the scheduled cancellation
        refund = canonical.refunded(Platform.Apple, '1000000000000055')
        result = reconciler.reconcile(ctx.sql_conn, refund, unix_ts_ms=30_000)
        assert result.real_transition
        assert get_row(ctx.sql_conn, seeded.subscription_id).canceled_at_unix_ts_ms == 30_000

        assert not reconciler.reconcile(ctx.sql_conn, refund, unix_ts_ms=40_000).changed
        row = get_row(ctx.sql_conn, seeded.subscription_id)
        assert row.canceled_at_unix_ts_ms == 30_000
        assert row.status                 == SubscriptionStatus.Canceled
        assert row.tier                   == SubscriptionTier.Starter

def test_reconciler_purchase_restores_paid_tier():
    with TestingContext(db_path='file:test_reconciler_purchase_db?mode=memory&cache=shared', uri=True) as ctx:
        seeded = seed_subscription(ctx.sql_conn, Platform.Apple, '1000000000000002', SubscriptionStatus.Canceled, tier=SubscriptionTier.Starter)
        with base.SQLTransaction(ctx.sql_conn) as tx:
            row                        = backend.get_subscription_tx(tx, seeded.subscription_id)
            assert row is not None
            row.canceled_at_unix_ts_ms = 123
            row.cancel_at_unix_ts_ms   = 456
            backend.update_subscription_tx(tx, row)

        event  = canonical.purchased(Platform.Apple, '1000000000000002', tier=SubscriptionTier.Enterprise, expires_unix_ts_ms=99_000, period_start_unix_ts_ms=20_000)
        result = reconciler.reconcile(ctx.sql_conn, event)
        assert result.real_transition

        row = get_row(ctx.sql_conn, seeded.subscription_id)
        assert row.status                          == SubscriptionStatus.Active
        assert row.tier                            == SubscriptionTier.Enterprise
        assert row.monthly_price                   == 299.0
        assert row.features['api_access']          is True
        assert row.cancel_at_unix_ts_ms            is None
        assert row.canceled_at_unix_ts_ms          is None
        assert row.current_period_start_unix_ts_ms == 20_000
        assert row.current_period_end_unix_ts_ms   == 99_000

def test_reconciler_paused_drops_to_base_tier_and_recovery_restores():
    with TestingContext(db_path='file:test_reconciler_paused_db?mode=memory&cache=shared', uri=True) as ctx:
        seeded = seed_subscription(ctx.sql_conn, Platform.Google, 'token-pause', SubscriptionStatus.Active)

        _   = reconciler.reconcile(ctx.sql_conn, canonical.paused(Platform.Google, 'token-pause'))
        row = get_row(ctx.sql_conn, seeded.subscription_id)
        assert row.status == SubscriptionStatus.Paused
        assert row.tier   == SubscriptionTier.Starter

        _   = reconciler.reconcile(ctx.sql_conn, canonical.recovered(Platform.Google, 'token-pause'))
        row = get_row(ctx.sql_conn, seeded.subscription_id)
        assert row.status == SubscriptionStatus.Active
        assert row.tier   == backend.DEFAULT_PAID_TIER

def test_reconciler_status_sync_merges_cancel_fields():
    with TestingContext(db_path='file:test_reconciler_sync_db?mode=memory&cache=shared', uri=True) as ctx:
        seeded = seed_subscription(ctx.sql_conn, Platform.Stripe, 'sub_sync', SubscriptionStatus.Active)

        event  = canonical.status_synced(Platform.Stripe, 'sub_sync', SubscriptionStatus.Active, period_start_unix_ts_ms=1_000, period_end_unix_ts_ms=2_000, cancel_at_unix_ts_ms=2_000, canceled_at_unix_ts_ms=1_500)
        result = reconciler.reconcile(ctx.sql_conn, event)
        assert result.changed and not result.real_transition
        row = get_row(ctx.sql_conn, seeded.subscription_id)
        assert row.cancel_at_unix_ts_ms            == 2_000
        assert row.canceled_at_unix_ts_ms          == 1_500
        assert row.current_period_start_unix_ts_ms == 1_000
        assert row.current_period_end_unix_ts_ms   == 2_000

        # NOTE: Going past due without reported timestamps keeps the stored ones
        _   = reconciler.reconcile(ctx.sql_conn, canonical.status_synced(Platform.Stripe, 'sub_sync', SubscriptionStatus.PastDue))
        row = get_row(ctx.sql_conn, seeded.subscription_id)
        assert row.status                 == SubscriptionStatus.PastDue
        assert row.cancel_at_unix_ts_ms   == 2_000
        assert row.canceled_at_unix_ts_ms == 1_500

        # NOTE: Becoming active again without reported timestamps clears them
        _   = reconciler.reconcile(ctx.sql_conn, canonical.status_synced(Platform.Stripe, 'sub_sync', SubscriptionStatus.Active))
        row = get_row(ctx.sql_conn, seeded.subscription_id)
        assert row.status                 == SubscriptionStatus.Active
        assert row.cancel_at_unix_ts_ms   is None
        assert row.canceled_at_unix_ts_ms is None

def test_reconciler_bind_checkout_creates_and_migrates():
    with TestingContext(db_path='file:test_reconciler_checkout_db?mode=memory&cache=shared', uri=True) as ctx:
        # NOTE: Unknown purchaser, nothing is bound
        binding = reconciler.CheckoutBinding(email                  = 'nobody@example.com',
                                             stripe_subscription_id = 'sub_new',
                                             stripe_customer_id     = 'cus_new',
                                             tier                   = SubscriptionTier.Pro,
                                             price_id               = STRIPE_TEST_PRO_PRICE_ID,
                                             session_id             = 'cs_unknown')
        result  = reconciler.bind_checkout(ctx.sql_conn, binding)
        assert not result.found and not result.real_transition

        # NOTE: A user bound to Apple moves to Stripe, the same row is reused
        seeded  = seed_subscription(ctx.sql_conn, Platform.Apple, '1000000000000003', SubscriptionStatus.Active, email='owner@example.com')
        binding = dataclasses.replace(binding, email=' Owner@Example.com ', tier=SubscriptionTier.Enterprise, price_id=STRIPE_TEST_ENTERPRISE_ID, session_id='cs_migrate')
        result  = reconciler.bind_checkout(ctx.sql_conn, binding, unix_ts_ms=30_000)
        assert result.real_transition
        assert result.audit_action  == 'subscription.created'
        assert result.audit_changes == {'tier': 'enterprise', 'priceId': STRIPE_TEST_ENTERPRISE_ID, 'sessionId': 'cs_migrate'}

        rows = backend.get_subscriptions_list(ctx.sql_conn)
        assert len(rows) == 1
        row = rows[0]
        assert row.id                              == seeded.subscription_id
        assert row.platform                        == Platform.Stripe
        assert row.stripe_subscription_id          == 'sub_new'
        assert row.stripe_customer_id              == 'cus_new'
        assert row.apple_original_tx_id            is None
        assert row.tier                            == SubscriptionTier.Enterprise
        assert row.status                          == SubscriptionStatus.Active
        assert row.current_period_start_unix_ts_ms == 30_000

        # NOTE: Redelivery of the same checkout keeps the period start and is not a transition
        result = reconciler.bind_checkout(ctx.sql_conn, binding, unix_ts_ms=40_000)
        assert not result.real_transition
        assert not result.changed
        assert get_row(ctx.sql_conn, seeded.subscription_id).current_period_start_unix_ts_ms == 30_000

def test_reconciler_concurrent_duplicate_renewals_transition_once(tmp_path):
    db_path = str(tmp_path / 'concurrent.db')
    err     = base.ErrorSink()
    db      = backend.setup_db(path=db_path, uri=False, err=err)
    assert len(err.msg_list) == 0, err.build()
    assert db.sql_conn

    seeded   = seed_subscription(db.sql_conn, Platform.Stripe, 'sub_race', SubscriptionStatus.PastDue)
    staff    = RecordingStaffService()
    notifier = RecordingNotificationService()
    services = collaborators.Collaborators(cache=RecordingCache(), staff=staff, notifier=notifier)

    barrier                                  = threading.Barrier(2)
    results: list[reconciler.ReconcileResult] = []
    results_lock                             = threading.Lock()

    def deliver():
        barrier.wait()
        with backend.OpenDBAtPath(db_path) as worker_db:
            result = reconciler.reconcile(worker_db.sql_conn, canonical.renewed(Platform.Stripe, 'sub_race', expires_unix_ts_ms=8_000))
        _ = dispatcher.dispatch(db_path, False, services, result)
        with results_lock:
            results.append(result)

    threads = [threading.Thread(target=deliver) for _ in range(2)]
    for it in threads:
        it.start()
    for it in threads:
        it.join()

    assert len(results) == 2
    assert sum(1 for it in results if it.real_transition) == 1
    assert get_row(db.sql_conn, seeded.subscription_id).status == SubscriptionStatus.Active
    assert len(backend.get_audit_logs_list(db.sql_conn, seeded.organization_id)) == 1
    assert staff.enabled                                                         == [seeded.organization_id]
    assert len(notifier.emitted)                                                 == 1
    db.sql_conn.close()

def test_dispatcher_runs_hooks_for_real_transitions():
    with TestingContext(db_path='file:test_dispatcher_hooks_db?mode=memory&cache=shared', uri=True) as ctx:
        seeded = seed_subscription(ctx.sql_conn, Platform.Stripe, 'sub_dispatch', SubscriptionStatus.Active, email='owner@cafe.example')
        with base.SQLTransaction(ctx.sql_conn) as tx:
            staff_id = backend.add_user_tx(tx, seeded.organization_id, 'barista@cafe.example', invited_by=seeded.user_id, invite_accepted_unix_ts_ms=1)

        result = reconciler.reconcile(ctx.sql_conn, canonical.past_due(Platform.Stripe, 'sub_dispatch', audit_action='subscription.payment_failed'))
        report = dispatcher.dispatch(ctx.db_path, ctx.uri, ctx.services, result, unix_ts_ms=77_000)
        assert report.ran    == [name for name, _ in dispatcher.POST_COMMIT_HOOKS]
        assert report.failed == []

        # NOTE: Cache entries of every user of the organization are dropped
        for key in [f'user:{seeded.user_id}', 'user:email:owner@cafe.example', f'user:{staff_id}', 'user:email:barista@cafe.example']:
            assert key in ctx.cache.deleted

        # NOTE: Active -> past due loses the entitlement
        assert ctx.staff.disabled == [seeded.organization_id]
        assert ctx.staff.enabled  == []

        assert len(ctx.notifier.emitted) == 1
        organization_id, event_kind, payload = ctx.notifier.emitted[0]
        assert organization_id == seeded.organization_id
        assert event_kind      == dispatcher.SUBSCRIPTION_UPDATED_EVENT
        assert payload         == {'status': 'past_due', 'tier': 'pro', 'platform': 'stripe', 'cancelAt': None, 'canceledAt': None}

        audit_logs = backend.get_audit_logs_list(ctx.sql_conn, seeded.organization_id)
        assert len(audit_logs) == 1
        assert audit_logs[0].action             == 'subscription.payment_failed'
        assert audit_logs[0].entity_type        == 'subscription'
        assert audit_logs[0].entity_id          == str(seeded.subscription_id)
        assert audit_logs[0].user_id            == seeded.user_id
        assert audit_logs[0].created_unix_ts_ms == 77_000
        assert audit_logs[0].changes            == {'status': 'past_due', 'previousStatus': 'active', 'tier': 'pro', 'previousTier': 'pro'}

def test_dispatcher_skips_non_transitions():
    with TestingContext(db_path='file:test_dispatcher_skip_db?mode=memory&cache=shared', uri=True) as ctx:
        seeded = seed_subscription(ctx.sql_conn, Platform.Apple, '1000000000000004', SubscriptionStatus.Active)
        result = reconciler.reconcile(ctx.sql_conn, canonical.canceled(Platform.Apple, '1000000000000004'))
        assert result.changed and not result.real_transition

        report = dispatcher.dispatch(ctx.db_path, ctx.uri, ctx.services, result)
        assert report.ran == [] and report.failed == []
        assert ctx.notifier.emitted == []
        assert len(backend.get_audit_logs_list(ctx.sql_conn, seeded.organization_id)) == 0

def test_dispatcher_isolates_failing_hooks():
    with TestingContext(db_path='file:test_dispatcher_isolation_db?mode=memory&cache=shared', uri=True, notifier_fails=True) as ctx:
        seeded = seed_subscription(ctx.sql_conn, Platform.Google, 'token-isolation', SubscriptionStatus.PastDue)
        result = reconciler.reconcile(ctx.sql_conn, canonical.renewed(Platform.Google, 'token-isolation'))
        report = dispatcher.dispatch(ctx.db_path, ctx.uri, ctx.services, result)

        assert report.failed == ['notify_organization']
        assert report.ran    == ['invalidate_user_cache', 'gate_staff_seats', 'write_audit_log']
        assert ctx.staff.enabled == [seeded.organization_id]

        # NOTE: The hooks after the failing one still ran and the row stays committed
        assert len(backend.get_audit_logs_list(ctx.sql_conn, seeded.organization_id)) == 1
        assert get_row(ctx.sql_conn, seeded.subscription_id).status == SubscriptionStatus.Active

def test_dispatcher_staff_gating_is_edge_triggered():
    with TestingContext(db_path='file:test_dispatcher_edge_db?mode=memory&cache=shared', uri=True) as ctx:
        seeded = seed_subscription(ctx.sql_conn, Platform.Stripe, 'sub_edge', SubscriptionStatus.PastDue)

        # NOTE: Past due -> canceled, neither status is entitled so staff are not touched
        result = reconciler.reconcile(ctx.sql_conn, canonical.expired(Platform.Stripe, 'sub_edge'))
        report = dispatcher.dispatch(ctx.db_path, ctx.uri, ctx.services, result)
        assert 'gate_staff_seats' in report.ran
        assert ctx.staff.enabled  == []
        assert ctx.staff.disabled == []

        # NOTE: Canceled -> active regains the entitlement
        result = reconciler.reconcile(ctx.sql_conn, canonical.purchased(Platform.Stripe, 'sub_edge'))
        _      = dispatcher.dispatch(ctx.db_path, ctx.uri, ctx.services, result)
        assert ctx.staff.enabled  == [seeded.organization_id]
        assert ctx.staff.disabled == []

def test_dispatcher_staff_gating_follows_the_organization():
    with TestingContext(db_path='file:test_dispatcher_org_gating_db?mode=memory&cache=shared', uri=True) as ctx:
        seeded = seed_subscription(ctx.sql_conn, Platform.Stripe, 'sub_first', SubscriptionStatus.Active)

        # NOTE: A second member of the organization subscribed on Google Play
        pricing = backend.PRICING_BY_TIER[SubscriptionTier.Pro]
        with base.SQLTransaction(ctx.sql_conn) as tx:
            member_id = backend.add_user_tx(tx, seeded.organization_id, 'manager@cafe.example')
            second_id = backend.add_subscription_tx(tx, backend.SubscriptionRow(organization_id       = seeded.organization_id,
                                                                                user_id               = member_id,
                                                                                platform              = Platform.Google,
                                                                                google_purchase_token = 'token-second',
                                                                                tier                  = SubscriptionTier.Pro,
                                                                                status                = SubscriptionStatus.Active,
                                                                                monthly_price         = pricing.monthly_price,
                                                                                transaction_fee_rate  = pricing.transaction_fee_rate,
                                                                                features              = backend.features_for_tier(SubscriptionTier.Pro),
                                                                                created_unix_ts_ms    = 1,
                                                                                updated_unix_ts_ms    = 1))

        # NOTE: The Stripe subscription still entitles the organization, staff stay enabled
        result = reconciler.reconcile(ctx.sql_conn, canonical.expired(Platform.Google, 'token-second'))
        report = dispatcher.dispatch(ctx.db_path, ctx.uri, ctx.services, result)
        assert 'gate_staff_seats' in report.ran
        assert get_row(ctx.sql_conn, second_id).status == SubscriptionStatus.Canceled
        assert ctx.staff.disabled == []

        # NOTE: The last entitled subscription lapsing disables the staff
        result = reconciler.reconcile(ctx.sql_conn, canonical.expired(Platform.Stripe, 'sub_first'))
        _      = dispatcher.dispatch(ctx.db_path, ctx.uri, ctx.services, result)
        assert ctx.staff.disabled == [seeded.organization_id]
        assert ctx.staff.enabled  == []

def test_dispatcher_expiry_of_active_pro_subscription():
    with TestingContext(db_path='file:test_dispatcher_expiry_db?mode=memory&cache=shared', uri=True) as ctx:
        seeded = seed_subscription(ctx.sql_conn, Platform.Apple, '1000000000000042', SubscriptionStatus.Active, tier=SubscriptionTier.Pro)

        result = reconciler.reconcile(ctx.sql_conn, canonical.expired(Platform.Apple, '1000000000000042'))
        report = dispatcher.dispatch(ctx.db_path, ctx.uri, ctx.services, result)
        assert report.failed == []

        row = get_row(ctx.sql_conn, seeded.subscription_id)
        assert row.status == SubscriptionStatus.Canceled
        assert row.tier   == SubscriptionTier.Starter

        audit_logs = backend.get_audit_logs_list(ctx.sql_conn, seeded.organization_id)
        assert [it.action for it in audit_logs] == ['subscription.canceled']
        assert audit_logs[0].changes            == {'status': 'canceled', 'previousStatus': 'active', 'tier': 'starter', 'previousTier': 'pro'}
        assert ctx.staff.disabled               == [seeded.organization_id]
        assert ctx.staff.enabled                == []

def test_sql_staff_service_toggles_staff_accounts():
    with TestingContext(db_path='file:test_staff_service_db?mode=memory&cache=shared', uri=True) as ctx:
        seeded = seed_organization(ctx.sql_conn, 'owner@bakery.example')
        with base.SQLTransaction(ctx.sql_conn) as tx:
            accepted_id = backend.add_user_tx(tx, seeded.organization_id, 'accepted@bakery.example', invited_by=seeded.user_id, invite_accepted_unix_ts_ms=5)
            pending_id  = backend.add_user_tx(tx, seeded.organization_id, 'pending@bakery.example',  invited_by=seeded.user_id, is_active=False)

        cache = RecordingCache()
        cache.set(f'user:{accepted_id}', 'cached')
        service = collaborators.SQLStaffService(ctx.db_path, ctx.uri, cache)

        assert service.disable_all_staff(seeded.organization_id) == 1
        with base.SQLTransaction(ctx.sql_conn) as tx:
            owner    = backend.get_user_tx(tx, seeded.user_id)
            accepted = backend.get_user_tx(tx, accepted_id)
            pending  = backend.get_user_tx(tx, pending_id)
        assert owner and accepted and pending
        assert owner.is_active
        assert not accepted.is_active
        assert accepted.session_version == 1
        assert not pending.is_active
        assert cache.get(f'user:{accepted_id}') is None
        assert f'user:session_version:{accepted_id}' in cache.deleted

        # NOTE: Nothing left to disable
        assert service.disable_all_staff(seeded.organization_id) == 0

        # NOTE: Only staff that accepted their invite come back
        assert service.enable_all_staff(seeded.organization_id) == 1
        with base.SQLTransaction(ctx.sql_conn) as tx:
            accepted = backend.get_user_tx(tx, accepted_id)
            pending  = backend.get_user_tx(tx, pending_id)
        assert accepted and pending
        assert accepted.is_active
        assert not pending.is_active

def stripe_signature_header(payload: str, secret: str = STRIPE_TEST_WEBHOOK_SECRET, unix_ts_s: int | None = None) -> str:
    timestamp = unix_ts_s if unix_ts_s is not None else int(time.time())
    signature = hmac.new(secret.encode('utf-8'), f'{timestamp}.{payload}'.encode('utf-8'), hashlib.sha256).hexdigest()
    result    = f't={timestamp},v1={signature}'
    return result

def post_stripe_event(ctx: TestingContext, event_type: str, data_object: base.JSONObject, event_id: str = 'evt_test') -> werkzeug.test.TestResponse:
    payload = json.dumps({'id': event_id, 'object': 'event', 'type': event_type, 'livemode': False, 'data': {'object': data_object}})
    result  = ctx.flask_client.post(platform_stripe.ROUTE_WEBHOOK,
                                    data         = payload,
                                    content_type = 'application/json',
                                    headers      = {'Stripe-Signature': stripe_signature_header(payload)})
    return result

def test_platform_stripe_helpers():
    core = platform_stripe.init(webhook_secret=STRIPE_TEST_WEBHOOK_SECRET, pro_price_id=STRIPE_TEST_PRO_PRICE_ID, enterprise_price_id=STRIPE_TEST_ENTERPRISE_ID)
    assert platform_stripe.tier_from_price_id(core, STRIPE_TEST_PRO_PRICE_ID)  == SubscriptionTier.Pro
    assert platform_stripe.tier_from_price_id(core, STRIPE_TEST_ENTERPRISE_ID) == SubscriptionTier.Enterprise
    assert platform_stripe.tier_from_price_id(core, 'price_unknown')           == SubscriptionTier.Starter

    assert platform_stripe.map_stripe_status('unpaid')             == SubscriptionStatus.PastDue
    assert platform_stripe.map_stripe_status('incomplete_expired') == SubscriptionStatus.Canceled
    assert platform_stripe.map_stripe_status('trialing')           == SubscriptionStatus.Trialing
    assert platform_stripe.map_stripe_status('something_new')      == SubscriptionStatus.Active

def test_platform_stripe_rejects_unauthenticated_deliveries():
    with TestingContext(db_path='file:test_stripe_auth_db?mode=memory&cache=shared', uri=True) as ctx:
        payload  = json.dumps({'id': 'evt_1', 'type': 'invoice.payment_failed', 'data': {'object': {'subscription': 'sub_x'}}})

        response = ctx.flask_client.post(platform_stripe.ROUTE_WEBHOOK, data=payload, content_type='application/json')
        assert response.status_code == 400
        assert response.get_json()  == {'error': 'Missing Stripe-Signature header'}

        response = ctx.flask_client.post(platform_stripe.ROUTE_WEBHOOK, data=payload, content_type='application/json',
                                         headers={'Stripe-Signature': stripe_signature_header(payload, secret='whsec_wrong')})
        assert response.status_code == 400
        assert response.get_json()  == {'error': 'Webhook signature verification failed'}

        stale_ts = int(time.time()) - 3600
        response = ctx.flask_client.post(platform_stripe.ROUTE_WEBHOOK, data=payload, content_type='application/json',
                                         headers={'Stripe-Signature': stripe_signature_header(payload, unix_ts_s=stale_ts)})
        assert response.status_code == 400

def test_platform_stripe_acknowledges_unknown_events():
    with TestingContext(db_path='file:test_stripe_unknown_db?mode=memory&cache=shared', uri=True) as ctx:
        response = post_stripe_event(ctx, 'customer.created', {'id': 'cus_1'})
        assert response.status_code == 200
        assert response.get_json()  == {'received': True}

def test_platform_stripe_rejects_malformed_data_objects():
    with TestingContext(db_path='file:test_stripe_malformed_db?mode=memory&cache=shared', uri=True) as ctx:
        seeded = seed_subscription(ctx.sql_conn, Platform.Stripe, 'sub_malformed', SubscriptionStatus.Active)

        # NOTE: Handled event types whose object lacks the fields the handler needs
        for event_type, data_object in [('customer.subscription.deleted', {'object': 'subscription'}),
                                        ('customer.subscription.updated', {'id': 'sub_malformed'}),
                                        ('payment_intent.succeeded',      {'object': 'payment_intent'}),
                                        ('payout.paid',                   {'amount': 100})]:
            response = post_stripe_event(ctx, event_type, typing.cast(base.JSONObject, data_object))
            assert response.status_code == 400, event_type
            assert response.get_json()  == {'error': 'Malformed event payload'}

        assert get_row(ctx.sql_conn, seeded.subscription_id).status == SubscriptionStatus.Active
        assert ctx.notifier.emitted == []

def test_platform_stripe_checkout_binds_subscription(monkeypatch):
    monkeypatch.setattr(platform_stripe, 'fetch_checkout_price_id', lambda api_key, session_id: STRIPE_TEST_PRO_PRICE_ID)

    with TestingContext(db_path='file:test_stripe_checkout_db?mode=memory&cache=shared', uri=True) as ctx:
        seeded  = seed_organization(ctx.sql_conn, 'owner@diner.example')
        session = {'id': 'cs_test_1', 'object': 'checkout.session', 'mode': 'subscription', 'customer': 'cus_1',
                   'subscription': 'sub_checkout', 'customer_email': None, 'metadata': {'email': 'Owner@Diner.example'}}

        response = post_stripe_event(ctx, 'checkout.session.completed', session)
        assert response.status_code == 200, response.get_json()

        rows = backend.get_subscriptions_list(ctx.sql_conn)
        assert len(rows) == 1
        row = rows[0]
        assert row.organization_id        == seeded.organization_id
        assert row.user_id                == seeded.user_id
        assert row.platform               == Platform.Stripe
        assert row.stripe_subscription_id == 'sub_checkout'
        assert row.stripe_customer_id     == 'cus_1'
        assert row.tier                   == SubscriptionTier.Pro
        assert row.status                 == SubscriptionStatus.Active
        assert row.monthly_price          == 19.0

        audit_logs = backend.get_audit_logs_list(ctx.sql_conn, seeded.organization_id)
        assert len(audit_logs) == 1
        assert audit_logs[0].action  == 'subscription.created'
        assert audit_logs[0].changes == {'tier': 'pro', 'priceId': STRIPE_TEST_PRO_PRICE_ID, 'sessionId': 'cs_test_1'}
        assert ctx.staff.enabled     == [seeded.organization_id]
        assert len(ctx.notifier.emitted) == 1

        # NOTE: Stripe redelivers, no duplicate row and no second set of side effects
        response = post_stripe_event(ctx, 'checkout.session.completed', session)
        assert response.status_code == 200
        assert len(backend.get_subscriptions_list(ctx.sql_conn))                    == 1
        assert len(backend.get_audit_logs_list(ctx.sql_conn, seeded.organization_id)) == 1
        assert len(ctx.notifier.emitted)                                             == 1

def test_platform_stripe_checkout_without_subscription_is_ignored(monkeypatch):
    monkeypatch.setattr(platform_stripe, 'fetch_checkout_price_id', lambda api_key, session_id: STRIPE_TEST_PRO_PRICE_ID)

    with TestingContext(db_path='file:test_stripe_checkout_payment_db?mode=memory&cache=shared', uri=True) as ctx:
        _        = seed_organization(ctx.sql_conn, 'owner@kiosk.example')
        response = post_stripe_event(ctx, 'checkout.session.completed', {'id': 'cs_payment', 'mode': 'payment', 'customer_email': 'owner@kiosk.example'})
        assert response.status_code == 200
        assert len(backend.get_subscriptions_list(ctx.sql_conn)) == 0

def test_platform_stripe_subscription_lifecycle():
    with TestingContext(db_path='file:test_stripe_lifecycle_db?mode=memory&cache=shared', uri=True) as ctx:
        seeded = seed_subscription(ctx.sql_conn, Platform.Stripe, 'sub_life', SubscriptionStatus.Active)

        # NOTE: Newer API versions report the period on the subscription items
        response = post_stripe_event(ctx, 'customer.subscription.updated', {
            'id': 'sub_life', 'object': 'subscription', 'status': 'past_due', 'cancel_at': None, 'canceled_at': None,
            'items': {'data': [{'id': 'si_1', 'current_period_start': 1_700_000_000, 'current_period_end': 1_702_592_000}]},
        })
        assert response.status_code == 200
        row = get_row(ctx.sql_conn, seeded.subscription_id)
        assert row.status                          == SubscriptionStatus.PastDue
        assert row.current_period_start_unix_ts_ms == 1_700_000_000_000
        assert row.current_period_end_unix_ts_ms   == 1_702_592_000_000
        assert ctx.staff.disabled                  == [seeded.organization_id]

        # NOTE: Newer API versions moved the subscription reference under the invoice's parent
        response = post_stripe_event(ctx, 'invoice.payment_succeeded', {
            'id': 'in_1', 'object': 'invoice', 'parent': {'subscription_details': {'subscription': 'sub_life'}},
        })
        assert response.status_code == 200
        assert get_row(ctx.sql_conn, seeded.subscription_id).status == SubscriptionStatus.Active
        assert ctx.staff.enabled == [seeded.organization_id]

        response = post_stripe_event(ctx, 'invoice.payment_failed', {'id': 'in_2', 'object': 'invoice', 'subscription': 'sub_life'})
        assert response.status_code == 200
        assert get_row(ctx.sql_conn, seeded.subscription_id).status == SubscriptionStatus.PastDue
        actions = [it.action for it in backend.get_audit_logs_list(ctx.sql_conn, seeded.organization_id)]
        assert actions == ['subscription.past_due', 'subscription.active', 'subscription.payment_failed']

        response = post_stripe_event(ctx, 'customer.subscription.deleted', {'id': 'sub_life', 'object': 'subscription', 'status': 'canceled'})
        assert response.status_code == 200
        row = get_row(ctx.sql_conn, seeded.subscription_id)
        assert row.status == SubscriptionStatus.Canceled
        assert row.tier   == SubscriptionTier.Starter

def test_platform_stripe_handler_failure_answers_500(monkeypatch):
    def fail(*args, **kwargs):
        raise sqlite3.OperationalError('database is locked')
    monkeypatch.setattr(server, 'apply_canonical_event', fail)

    with TestingContext(db_path='file:test_stripe_failure_db?mode=memory&cache=shared', uri=True) as ctx:
        _        = seed_subscription(ctx.sql_conn, Platform.Stripe, 'sub_fail', SubscriptionStatus.Active)
        response = post_stripe_event(ctx, 'customer.subscription.deleted', {'id': 'sub_fail'})
        assert response.status_code == 500
        assert response.get_json()  == {'error': 'Webhook processing failed'}

def test_platform_stripe_orders_payouts_and_accounts():
    with TestingContext(db_path='file:test_stripe_marketplace_db?mode=memory&cache=shared', uri=True) as ctx:
        seeded = seed_organization(ctx.sql_conn, 'owner@market.example', stripe_account_id='acct_1')
        with base.SQLTransaction(ctx.sql_conn) as tx:
            order_id  = backend.add_order_tx(tx, seeded.organization_id, 42.5, 'pi_1')
            payout_id = backend.add_payout_tx(tx, seeded.organization_id, 'tr_1')

        response = post_stripe_event(ctx, 'payment_intent.succeeded', {'id': 'pi_1', 'object': 'payment_intent', 'latest_charge': 'ch_1'})
        assert response.status_code == 200
        assert backend.get_order_status(ctx.sql_conn, order_id) == ('completed', 'ch_1')

        response = post_stripe_event(ctx, 'charge.refunded', {'id': 'ch_1', 'object': 'charge'})
        assert response.status_code == 200
        assert backend.get_order_status(ctx.sql_conn, order_id) == ('refunded', 'ch_1')

        response = post_stripe_event(ctx, 'payout.created', {'id': 'po_1', 'object': 'payout', 'source_transaction': 'tr_1'})
        assert response.status_code == 200
        payout = backend.get_payout_status(ctx.sql_conn, payout_id)
        assert payout == ('processing', 'po_1', None)

        response = post_stripe_event(ctx, 'payout.paid', {'id': 'po_1', 'object': 'payout'})
        assert response.status_code == 200
        payout = backend.get_payout_status(ctx.sql_conn, payout_id)
        assert payout is not None
        assert payout[0] == 'paid'
        assert payout[2] is not None

        assert backend.get_organization_stripe_onboarding_completed(ctx.sql_conn, seeded.organization_id) is False
        response = post_stripe_event(ctx, 'account.updated', {'id': 'acct_1', 'object': 'account', 'charges_enabled': True, 'payouts_enabled': True})
        assert response.status_code == 200
        assert backend.get_organization_stripe_onboarding_completed(ctx.sql_conn, seeded.organization_id) is True

def apple_jws(payload: base.JSONObject) -> str:
    result = jwt.encode(payload, APPLE_TEST_JWT_KEY, algorithm='HS256')
    return result

def apple_signed_payload(notification_type:  str,
                         subtype:            str | None = None,
                         original_tx_id:     str | None = '2000000000000001',
                         expires_unix_ts_ms: int        = 1_900_000_000_000,
                         auto_renew_status:  int | None = None,
                         bundle_id:          str        = APPLE_TEST_BUNDLE_ID) -> str:
    data: base.JSONObject = {'environment': 'Sandbox', 'bundleId': bundle_id}
    if original_tx_id is not None:
        data['signedTransactionInfo'] = apple_jws({'originalTransactionId': original_tx_id,
                                                   'transactionId':         original_tx_id,
                                                   'productId':             'pos_pro_monthly',
                                                   'bundleId':              bundle_id,
                                                   'expiresDate':           expires_unix_ts_ms})
    if auto_renew_status is not None:
        data['signedRenewalInfo'] = apple_jws({'originalTransactionId': original_tx_id, 'autoRenewStatus': auto_renew_status})

    body: base.JSONObject = {'notificationType': notification_type, 'notificationUUID': 'b3c6e6a4-0000-4000-8000-000000000001', 'data': data}
    if subtype is not None:
        body['subtype'] = subtype
    result = apple_jws(body)
    return result

def test_platform_apple_notifications():
    with TestingContext(db_path='file:test_apple_db?mode=memory&cache=shared', uri=True) as ctx:
        seeded = seed_subscription(ctx.sql_conn, Platform.Apple, '2000000000000001', SubscriptionStatus.Canceled, tier=SubscriptionTier.Starter)

        def post(signed_payload: str) -> werkzeug.test.TestResponse:
            return ctx.flask_client.post(platform_apple.ROUTE_WEBHOOK, json={'signedPayload': signed_payload})

        response = post(apple_signed_payload('SUBSCRIBED', subtype='RESUBSCRIBE'))
        assert response.status_code == 200, response.get_json()
        row = get_row(ctx.sql_conn, seeded.subscription_id)
        assert row.status                        == SubscriptionStatus.Active
        assert row.tier                          == backend.DEFAULT_PAID_TIER
        assert row.current_period_end_unix_ts_ms == 1_900_000_000_000

        response = post(apple_signed_payload('DID_FAIL_TO_RENEW', subtype='GRACE_PERIOD'))
        assert response.status_code == 200
        assert get_row(ctx.sql_conn, seeded.subscription_id).status == SubscriptionStatus.PastDue

        response = post(apple_signed_payload('DID_RENEW', subtype='BILLING_RECOVERY', expires_unix_ts_ms=1_910_000_000_000))
        assert response.status_code == 200
        row = get_row(ctx.sql_conn, seeded.subscription_id)
        assert row.status                        == SubscriptionStatus.Active
        assert row.current_period_end_unix_ts_ms == 1_910_000_000_000

        response = post(apple_signed_payload('DID_CHANGE_RENEWAL_STATUS', subtype='AUTO_RENEW_DISABLED', expires_unix_ts_ms=1_910_000_000_000, auto_renew_status=0))
        assert response.status_code == 200
        row = get_row(ctx.sql_conn, seeded.subscription_id)
        assert row.status                 == SubscriptionStatus.Active
        assert row.cancel_at_unix_ts_ms   == 1_910_000_000_000
        assert row.canceled_at_unix_ts_ms is not None

        response = post(apple_signed_payload('DID_CHANGE_RENEWAL_STATUS', subtype='AUTO_RENEW_ENABLED', expires_unix_ts_ms=1_910_000_000_000, auto_renew_status=1))
        assert response.status_code == 200
        row = get_row(ctx.sql_conn, seeded.subscription_id)
        assert row.cancel_at_unix_ts_ms   is None
        assert row.canceled_at_unix_ts_ms is None

        response = post(apple_signed_payload('REFUND', expires_unix_ts_ms=1_910_000_000_000))
        assert response.status_code == 200
        row = get_row(ctx.sql_conn, seeded.subscription_id)
        assert row.status == SubscriptionStatus.Canceled
        assert row.tier   == SubscriptionTier.Starter

        actions = [it.action for it in backend.get_audit_logs_list(ctx.sql_conn, seeded.organization_id)]
        assert actions == ['subscription.active', 'subscription.past_due', 'subscription.active', 'subscription.canceled']

def test_platform_apple_rejects_bad_notifications():
    with TestingContext(db_path='file:test_apple_reject_db?mode=memory&cache=shared', uri=True) as ctx:
        response = ctx.flask_client.post(platform_apple.ROUTE_WEBHOOK, json={'somethingElse': 1})
        assert response.status_code == 400
        assert response.get_json()  == {'error': 'Missing signedPayload'}

        response = ctx.flask_client.post(platform_apple.ROUTE_WEBHOOK, json={'signedPayload': 'not-a-jws'})
        assert response.status_code == 400
        assert response.get_json()  == {'error': 'Invalid signed payload'}

        response = ctx.flask_client.post(platform_apple.ROUTE_WEBHOOK, json={'signedPayload': apple_signed_payload('EXPIRED', bundle_id='com.other.app')})
        assert response.status_code == 400
        assert response.get_json()  == {'error': 'Invalid signed payload'}

        # NOTE: Nothing identifies the subscription, acknowledged without touching any row
        seeded   = seed_subscription(ctx.sql_conn, Platform.Apple, '1000000000000077', SubscriptionStatus.Active)
        response = ctx.flask_client.post(platform_apple.ROUTE_WEBHOOK, json={'signedPayload': apple_signed_payload('EXPIRED', original_tx_id=None)})
        assert response.status_code == 200
        assert response.get_json()  == {'received': True}
        assert get_row(ctx.sql_conn, seeded.subscription_id).status == SubscriptionStatus.Active

        # NOTE: Test pings and types that don't affect a subscription are acknowledged
        response = ctx.flask_client.post(platform_apple.ROUTE_WEBHOOK, json={'signedPayload': apple_signed_payload('TEST', original_tx_id=None)})
        assert response.status_code == 200
        response = ctx.flask_client.post(platform_apple.ROUTE_WEBHOOK, json={'signedPayload': apple_signed_payload('PRICE_INCREASE')})
        assert response.status_code == 200

        # NOTE: No row for the transaction, acknowledged and dropped
        response = ctx.flask_client.post(platform_apple.ROUTE_WEBHOOK, json={'signedPayload': apple_signed_payload('EXPIRED', original_tx_id='9999')})
        assert response.status_code == 200
        assert [it.status for it in backend.get_subscriptions_list(ctx.sql_conn)] == [SubscriptionStatus.Active]

def google_subscription_v2_response(test_purchase: bool, state: str = 'SUBSCRIPTION_STATE_ACTIVE', auto_renew: bool = True) -> dict[str, typing.Any]:
    result: dict[str, typing.Any] = {
        'kind':              'androidpublisher#subscriptionPurchaseV2',
        'startTime':         '2029-12-01T00:00:00Z',
        'subscriptionState': state,
        'latestOrderId':     'GPA.3300-0000-0000-00001',
        'lineItems':         [{'productId': 'pos_pro', 'expiryTime': GOOGLE_TEST_EXPIRY_RFC3339, 'autoRenewingPlan': {'autoRenewEnabled': auto_renew}}],
    }
    if test_purchase:
        result['testPurchase'] = {}
    return result

def google_push_message(rtdn: base.JSONObject) -> base.JSONObject:
    data   = base64.b64encode(json.dumps(rtdn).encode('utf-8')).decode('ascii')
    result = {'message': {'data': data, 'messageId': '136969346945', 'publishTime': '2029-12-01T00:00:00.000Z'},
              'subscription': 'projects/example/subscriptions/play-rtdn'}
    return typing.cast(base.JSONObject, result)

def google_subscription_rtdn(notification_type: int, purchase_token: str, package_name: str = GOOGLE_TEST_PACKAGE_NAME) -> base.JSONObject:
    result: base.JSONObject = {
        'version':                  '1.0',
        'packageName':              package_name,
        'eventTimeMillis':          '1893000000000',
        'subscriptionNotification': {'version': '1.0', 'notificationType': notification_type, 'purchaseToken': purchase_token},
    }
    return result

def test_platform_google_parse_subscription_v2_response():
    err  = base.ErrorSink()
    data = platform_google_api.parse_subscription_v2_response(google_subscription_v2_response(test_purchase=True, auto_renew=False), err)
    assert not err.has(), err.build()
    assert data is not None
    assert data.test_purchase
    assert data.expiry_unix_ts_ms()  == GOOGLE_TEST_EXPIRY_UNIX_MS
    assert data.auto_renewing()      is False
    assert data.latest_order_id      == 'GPA.3300-0000-0000-00001'
    assert data.subscription_state   == platform_google_api.SubscriptionsV2State.ACTIVE

    err  = base.ErrorSink()
    data = platform_google_api.parse_subscription_v2_response({'kind': 'androidpublisher#productPurchase', 'lineItems': []}, err)
    assert data is None
    assert err.has()

def test_platform_google_notifications(monkeypatch):
    monkeypatch.setattr(platform_google_api, 'fetch_subscription_v2', lambda client, token: google_subscription_v2_response(test_purchase=True))

    with TestingContext(db_path='file:test_google_db?mode=memory&cache=shared', uri=True) as ctx:
        seeded = seed_subscription(ctx.sql_conn, Platform.Google, 'token-google', SubscriptionStatus.PastDue)

        def post(notification_type: int) -> werkzeug.test.TestResponse:
            return ctx.flask_client.post(platform_google.ROUTE_WEBHOOK, json=google_push_message(google_subscription_rtdn(notification_type, 'token-google')))

        response = post(2) # RENEWED
        assert response.status_code == 200, response.get_json()
        assert response.get_json()  == {'received': True}
        row = get_row(ctx.sql_conn, seeded.subscription_id)
        assert row.status                        == SubscriptionStatus.Active
        assert row.current_period_end_unix_ts_ms == GOOGLE_TEST_EXPIRY_UNIX_MS

        response = post(3) # CANCELED
        assert response.status_code == 200
        row = get_row(ctx.sql_conn, seeded.subscription_id)
        assert row.status               == SubscriptionStatus.Active
        assert row.cancel_at_unix_ts_ms == GOOGLE_TEST_EXPIRY_UNIX_MS

        response = post(5) # ON_HOLD
        assert response.status_code == 200
        assert get_row(ctx.sql_conn, seeded.subscription_id).status == SubscriptionStatus.PastDue

        response = post(19) # PRICE_CHANGE_UPDATED, acknowledged without a change
        assert response.status_code == 200
        assert get_row(ctx.sql_conn, seeded.subscription_id).status == SubscriptionStatus.PastDue

        response = post(13) # EXPIRED
        assert response.status_code == 200
        row = get_row(ctx.sql_conn, seeded.subscription_id)
        assert row.status == SubscriptionStatus.Canceled
        assert row.tier   == SubscriptionTier.Starter

def test_platform_google_voided_and_test_notifications(monkeypatch):
    monkeypatch.setattr(platform_google_api, 'fetch_subscription_v2', lambda client, token: google_subscription_v2_response(test_purchase=True))

    with TestingContext(db_path='file:test_google_voided_db?mode=memory&cache=shared', uri=True) as ctx:
        seeded = seed_subscription(ctx.sql_conn, Platform.Google, 'token-voided', SubscriptionStatus.Active)

        rtdn: base.JSONObject = {'version': '1.0', 'packageName': GOOGLE_TEST_PACKAGE_NAME, 'eventTimeMillis': '1893000000000',
                                 'voidedPurchaseNotification': {'purchaseToken': 'token-voided', 'orderId': 'GPA.1', 'productType': 2, 'refundType': 1}}
        response = ctx.flask_client.post(platform_google.ROUTE_WEBHOOK, json=google_push_message(rtdn))
        assert response.status_code == 200
        assert get_row(ctx.sql_conn, seeded.subscription_id).status == SubscriptionStatus.Active

        rtdn['voidedPurchaseNotification'] = {'purchaseToken': 'token-voided', 'orderId': 'GPA.1', 'productType': 1, 'refundType': 1}
        response = ctx.flask_client.post(platform_google.ROUTE_WEBHOOK, json=google_push_message(rtdn))
        assert response.status_code == 200
        row = get_row(ctx.sql_conn, seeded.subscription_id)
        assert row.status                 == SubscriptionStatus.Canceled
        assert row.tier                   == SubscriptionTier.Starter
        assert row.canceled_at_unix_ts_ms is not None

        test_rtdn: base.JSONObject = {'version': '1.0', 'packageName': GOOGLE_TEST_PACKAGE_NAME, 'eventTimeMillis': '1893000000000', 'testNotification': {'version': '1.0'}}
        response = ctx.flask_client.post(platform_google.ROUTE_WEBHOOK, json=google_push_message(test_rtdn))
        assert response.status_code == 200
        assert response.get_json()  == {'received': True, 'type': 'test_notification'}

def test_platform_google_rejects_bad_messages():
    with TestingContext(db_path='file:test_google_reject_db?mode=memory&cache=shared', uri=True) as ctx:
        response = ctx.flask_client.post(platform_google.ROUTE_WEBHOOK, json={'subscription': 'projects/example/subscriptions/play-rtdn'})
        assert response.status_code == 400
        assert response.get_json()  == {'error': platform_google.ERROR_MISSING_MESSAGE_DATA}

        response = ctx.flask_client.post(platform_google.ROUTE_WEBHOOK, data='not json', content_type='application/json')
        assert response.status_code == 400
        assert response.get_json()  == {'error': platform_google.ERROR_MISSING_MESSAGE_DATA}

        response = ctx.flask_client.post(platform_google.ROUTE_WEBHOOK, json={'message': {'data': '%%% not base64 %%%'}})
        assert response.status_code == 400
        assert response.get_json()  == {'error': 'Invalid message data'}

        response = ctx.flask_client.post(platform_google.ROUTE_WEBHOOK, json=google_push_message({'version': '1.0', 'packageName': GOOGLE_TEST_PACKAGE_NAME}))
        assert response.status_code == 400
        assert response.get_json()  == {'error': 'Invalid notification'}

        response = ctx.flask_client.post(platform_google.ROUTE_WEBHOOK, json=google_push_message(google_subscription_rtdn(2, 'token', package_name='com.other.app')))
        assert response.status_code == 400
        assert response.get_json()  == {'error': 'Package name mismatch'}

def test_platform_google_environment_guard(monkeypatch):
    monkeypatch.setattr(platform_google_api, 'fetch_subscription_v2', lambda client, token: google_subscription_v2_response(test_purchase=True))

    with TestingContext(db_path='file:test_google_prod_db?mode=memory&cache=shared', uri=True, deployment=base.Deployment.Production) as ctx:
        seeded   = seed_subscription(ctx.sql_conn, Platform.Google, 'token-sandbox', SubscriptionStatus.Active)
        response = ctx.flask_client.post(platform_google.ROUTE_WEBHOOK, json=google_push_message(google_subscription_rtdn(13, 'token-sandbox')))
        assert response.status_code == 200
        assert response.get_json()  == {'received': True, 'skipped': True, 'reason': platform_google.SKIP_REASON_TEST_PURCHASE_IN_PROD}
        assert get_row(ctx.sql_conn, seeded.subscription_id).status == SubscriptionStatus.Active

    # NOTE: Real purchases must not mutate a development deployment
    monkeypatch.setattr(platform_google_api, 'fetch_subscription_v2', lambda client, token: google_subscription_v2_response(test_purchase=False))
    with TestingContext(db_path='file:test_google_dev_db?mode=memory&cache=shared', uri=True, deployment=base.Deployment.Development) as ctx:
        seeded   = seed_subscription(ctx.sql_conn, Platform.Google, 'token-real', SubscriptionStatus.Active)
        response = ctx.flask_client.post(platform_google.ROUTE_WEBHOOK, json=google_push_message(google_subscription_rtdn(13, 'token-real')))
        assert response.status_code == 200
        assert response.get_json()  == {'received': True, 'skipped': True, 'reason': platform_google.SKIP_REASON_REAL_PURCHASE_IN_DEV}
        assert get_row(ctx.sql_conn, seeded.subscription_id).status == SubscriptionStatus.Active

def test_platform_google_processes_unvalidated_notifications(monkeypatch):
    def fail(client, token):
        raise ConnectionError('Play Developer API unreachable')
    monkeypatch.setattr(platform_google_api, 'fetch_subscription_v2', fail)

    with TestingContext(db_path='file:test_google_unvalidated_db?mode=memory&cache=shared', uri=True, deployment=base.Deployment.Production) as ctx:
        seeded   = seed_subscription(ctx.sql_conn, Platform.Google, 'token-offline', SubscriptionStatus.Active)
        response = ctx.flask_client.post(platform_google.ROUTE_WEBHOOK, json=google_push_message(google_subscription_rtdn(12, 'token-offline')))
        assert response.status_code == 200
        assert response.get_json()  == {'received': True}
        row = get_row(ctx.sql_conn, seeded.subscription_id)
        assert row.status == SubscriptionStatus.Canceled
        assert row.tier   == SubscriptionTier.Starter

class RendezvousPlayService:
    """
    Stands in for the Android Publisher service. Every `execute` blocks until `parties` calls are
    in flight at once, so the calls only complete if nothing serializes them.
    """
    def __init__(self, parties: int):
        self.barrier:     threading.Barrier = threading.Barrier(parties, timeout=5)
        self.transports:  list[typing.Any]  = []

    def purchases(self):
        return self

    def subscriptionsv2(self):
        return self

    def get(self, packageName: str, token: str):
        return self

    def execute(self, http: typing.Any = None):
        self.transports.append(http)
        _ = self.barrier.wait()
        return google_subscription_v2_response(test_purchase=True)

def test_platform_google_validations_run_concurrently():
    parties = 4
    service = RendezvousPlayService(parties)
    client  = platform_google_api.PlayClient(service=service, package_name=GOOGLE_TEST_PACKAGE_NAME)

    results: list[platform_google_api.SubscriptionValidation] = []
    results_lock                                              = threading.Lock()

    def validate(token: str):
        validation = platform_google_api.validate_subscription_purchase(client, token)
        with results_lock:
            results.append(validation)

    threads = [threading.Thread(target=validate, args=(f'token-{index}',)) for index in range(parties)]
    for it in threads:
        it.start()
    for it in threads:
        it.join()

    assert len(results) == parties
    assert all(it.status == platform_google_api.ValidationStatus.Verified for it in results), [it.error for it in results]

    # NOTE: Each call went out over its own transport
    assert len(service.transports) == parties
    assert len({id(it) for it in service.transports}) == parties

def test_base_helpers():
    assert base.iso8601_from_unix_ts_ms(None)              is None
    assert base.iso8601_from_unix_ts_ms(0)                 == '1970-01-01T00:00:00.000Z'
    assert base.iso8601_from_unix_ts_ms(1_893_456_000_000) == '2030-01-01T00:00:00.000Z'
    assert base.normalize_email('  Owner@Example.COM ')    == 'owner@example.com'
    assert collaborators.cache_key('user', 'email', 'a@b.c') == 'user:email:a@b.c'

    err = base.ErrorSink()
    assert base.json_dict_optional_int({'cancel_at': None}, 'cancel_at', err) is None
    assert base.json_dict_optional_int({'cancel_at': True}, 'cancel_at', err) is None
    assert err.has()
