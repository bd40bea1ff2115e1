'''
The backend layer owns the SQLite database: the schema, the row types and the queries that read
and write subscriptions and the tables they drive (users for staff seat gating, organizations,
orders, payouts and the audit trail).

The only module that mutates a subscription row is reconciler.py, it does so through the `*_tx`
functions in this file inside a transaction it opens itself.
'''

import traceback
import sqlite3
import typing
import collections.abc
import dataclasses
import logging
import json

import base
from base import Platform, SubscriptionStatus, SubscriptionTier

log                 = logging.Logger("BACKEND")

# NOTE: Concurrent writers wait this long on a locked DB before sqlite raises
DB_BUSY_TIMEOUT_S   = 5.0

# NOTE: Feature snapshot stored on the subscription when the tier changes. -1 means unlimited.
DEFAULT_FEATURES_BY_TIER: dict[SubscriptionTier, dict[str, int | bool]] = {
    SubscriptionTier.Starter: {
        'max_devices':           2,
        'max_events_per_month':  10,
        'max_staff_accounts':    3,
        'analytics':             False,
        'api_access':            False,
        'priority_support':      False,
        'custom_branding':       False,
        'advanced_reporting':    False,
        'inventory':             False,
        'multi_location':        False,
        'webhook_notifications': False,
        'offline_mode_days':     1,
    },
    SubscriptionTier.Pro: {
        'max_devices':           -1,
        'max_events_per_month':  -1,
        'max_staff_accounts':    20,
        'analytics':             True,
        'api_access':            False,
        'priority_support':      False,
        'custom_branding':       True,
        'advanced_reporting':    True,
        'inventory':             True,
        'multi_location':        True,
        'webhook_notifications': True,
        'offline_mode_days':     7,
    },
    SubscriptionTier.Enterprise: {
        'max_devices':           -1,
        'max_events_per_month':  -1,
        'max_staff_accounts':    -1,
        'analytics':             True,
        'api_access':            True,
        'priority_support':      True,
        'custom_branding':       True,
        'advanced_reporting':    True,
        'inventory':             True,
        'multi_location':        True,
        'webhook_notifications': True,
        'offline_mode_days':     30,
    },
}

@dataclasses.dataclass(frozen=True)
class TierPricing:
    monthly_price:        float = 0.0
    transaction_fee_rate: float = 0.0

PRICING_BY_TIER: dict[SubscriptionTier, TierPricing] = {
    SubscriptionTier.Starter:    TierPricing(monthly_price=0.0,   transaction_fee_rate=0.029),
    SubscriptionTier.Pro:        TierPricing(monthly_price=19.0,  transaction_fee_rate=0.028),
    SubscriptionTier.Enterprise: TierPricing(monthly_price=299.0, transaction_fee_rate=0.027),
}

BASE_TIER:         SubscriptionTier = SubscriptionTier.Starter
DEFAULT_PAID_TIER: SubscriptionTier = SubscriptionTier.Pro

# Column that stores the platform's external key for a subscription
EXTERNAL_KEY_COLUMN_BY_PLATFORM: dict[Platform, str] = {
    Platform.Stripe: 'stripe_subscription_id',
    Platform.Apple:  'apple_original_tx_id',
    Platform.Google: 'google_purchase_token',
}

@dataclasses.dataclass
class SQLField:
    name: str = ''
    type: str = ''

SQL_TABLE_SUBSCRIPTIONS_FIELD: list[SQLField] = [
  SQLField('organization_id',                 'INTEGER NOT NULL'),
  SQLField('user_id',                         'INTEGER NOT NULL'),
  SQLField('platform',                        'TEXT NOT NULL'),    # Enum cooresponding to `base.Platform`

  # Platform binding, exactly one of the three external keys is set and it must match `platform`.
  # The key is what a notification carries to identify the subscription it is describing.
  SQLField('stripe_subscription_id',          'TEXT UNIQUE'),
  SQLField('stripe_customer_id',              'TEXT'),

  # Apple's original transaction ID stays constant across renewals, billing retries and grace
  # periods for a given user and subscription product, unlike the per-renewal transaction ID.
  SQLField('apple_original_tx_id',            'TEXT UNIQUE'),
  SQLField('apple_product_id',                'TEXT'),

  # Google recommends the purchase token be the primary key for a user's subscription entitlement,
  # the same token is returned in every subsequent billing cycle.
  SQLField('google_purchase_token',           'TEXT UNIQUE'),
  SQLField('google_order_id',                 'TEXT'),
  SQLField('google_product_id',               'TEXT'),

  SQLField('tier',                            'TEXT NOT NULL'),    # Enum cooresponding to `base.SubscriptionTier`
  SQLField('status',                          'TEXT NOT NULL'),    # Enum cooresponding to `base.SubscriptionStatus`
  SQLField('current_period_start_unix_ts_ms', 'INTEGER'),
  SQLField('current_period_end_unix_ts_ms',   'INTEGER'),
  SQLField('trial_end_unix_ts_ms',            'INTEGER'),

  # When the subscription will actually stop. Null if it is not scheduled to cancel. Independent
  # of `canceled_at_unix_ts_ms`, a subscription can be canceled but still active until this time.
  SQLField('cancel_at_unix_ts_ms',            'INTEGER'),

  # When the user or platform initiated the cancellation. Null if there was none.
  SQLField('canceled_at_unix_ts_ms',          'INTEGER'),

  SQLField('monthly_price',                   'REAL NOT NULL'),
  SQLField('transaction_fee_rate',            'REAL NOT NULL'),

  # JSON snapshot of the capabilities of the tier, re-derived on every tier change
  SQLField('features',                        'TEXT NOT NULL'),
  SQLField('metadata',                        'TEXT'),
  SQLField('created_unix_ts_ms',              'INTEGER NOT NULL'),
  SQLField('updated_unix_ts_ms',              'INTEGER NOT NULL'),
]

SQLTableSubscriptionRowTuple: typing.TypeAlias = tuple[int,          # id
                                                       int,          # organization_id
                                                       int,          # user_id
                                                       str,          # platform
                                                       str | None,   # stripe_subscription_id
                                                       str | None,   # stripe_customer_id
                                                       str | None,   # apple_original_tx_id
                                                       str | None,   # apple_product_id
                                                       str | None,   # google_purchase_token
                                                       str | None,   # google_order_id
                                                       str | None,   # google_product_id
                                                       str,          # tier
                                                       str,          # status
                                                       int | None,   # current_period_start_unix_ts_ms
                                                       int | None,   # current_period_end_unix_ts_ms
                                                       int | None,   # trial_end_unix_ts_ms
                                                       int | None,   # cancel_at_unix_ts_ms
                                                       int | None,   # canceled_at_unix_ts_ms
                                                       float,        # monthly_price
                                                       float,        # transaction_fee_rate
                                                       str,          # features
                                                       str | None,   # metadata
                                                       int,          # created_unix_ts_ms
                                                       int,          # updated_unix_ts_ms
                                                      ]

UserRowIterator:              typing.TypeAlias = tuple[int,        # id
                                                       int,        # organization_id
                                                       str,        # email
                                                       int | None, # invited_by
                                                       int,        # is_active
                                                       int | None, # invite_accepted_unix_ts_ms
                                                       int,        # session_version
                                                      ]

@dataclasses.dataclass
class SubscriptionRow:
    id:                              int                      = 0
    organization_id:                 int                      = 0
    user_id:                         int                      = 0
    platform:                        Platform                 = Platform.Stripe
    stripe_subscription_id:          str | None               = None
    stripe_customer_id:              str | None               = None
    apple_original_tx_id:            str | None               = None
    apple_product_id:                str | None               = None
    google_purchase_token:           str | None               = None
    google_order_id:                 str | None               = None
    google_product_id:               str | None               = None
    tier:                            SubscriptionTier         = SubscriptionTier.Starter
    status:                          SubscriptionStatus       = SubscriptionStatus.Incomplete
    current_period_start_unix_ts_ms: int | None               = None
    current_period_end_unix_ts_ms:   int | None               = None
    trial_end_unix_ts_ms:            int | None               = None
    cancel_at_unix_ts_ms:            int | None               = None
    canceled_at_unix_ts_ms:          int | None               = None
    monthly_price:                   float                    = 0.0
    transaction_fee_rate:            float                    = 0.0
    features:                        dict[str, int | bool]    = dataclasses.field(default_factory=dict)
    metadata:                        dict[str, base.JSONValue] | None = None
    created_unix_ts_ms:              int                      = 0
    updated_unix_ts_ms:              int                      = 0

    def external_key(self) -> str | None:
        result = None
        match self.platform:
            case Platform.Stripe: result = self.stripe_subscription_id
            case Platform.Apple:  result = self.apple_original_tx_id
            case Platform.Google: result = self.google_purchase_token
        return result

@dataclasses.dataclass
class UserRow:
    id:                         int        = 0
    organization_id:            int        = 0
    email:                      str        = ''
    invited_by:                 int | None = None
    is_active:                  bool       = False
    invite_accepted_unix_ts_ms: int | None = None
    session_version:            int        = 0

@dataclasses.dataclass
class AuditLogRow:
    id:                 int                       = 0
    organization_id:    int                       = 0
    user_id:            int | None                = None
    action:             str                       = ''
    entity_type:        str                       = ''
    entity_id:          str                       = ''
    changes:            dict[str, base.JSONValue] = dataclasses.field(default_factory=dict)
    created_unix_ts_ms: int                       = 0

@dataclasses.dataclass
class SetupDBResult:
    """
    Class is returned by backend.setup_db() which opens the DB and maintains a connection to the DB
    via `sql_conn`. Caller must close `sql_conn` if they wish to release the connection from the DB.

    The connection is returned because tests use an in-memory transient DB that is wiped as soon as
    the last connection to it closes. The callers of this API (tests and main entry point) explicitly
    close the DB when they are done with it.
    """
    path:     str                       = ''
    success:  bool                      = False
    sql_conn: sqlite3.Connection | None = None

@dataclasses.dataclass
class OpenDBAtPath:
    """
    Open a pre-existing DB at the specified path. This class should be used in a `with` context to
    ensure that the connection established to the database is closed on scope exit, e.g.:

    with OpenDBAtPath(...) as db:
        # Use db.sql_conn =
        pass
    """

    sql_conn: sqlite3.Connection
    def __init__(self, db_path: str, uri: bool = False):
        self.sql_conn = sqlite3.connect(db_path, uri=uri, timeout=DB_BUSY_TIMEOUT_S)

    def __enter__(self):
        return self

    def __exit__(self,
                 exc_type:  object | None,
                 exc_value: object | None,
                 traceback: traceback.TracebackException | None):
        self.sql_conn.close()
        return False

def features_for_tier(tier: SubscriptionTier) -> dict[str, int | bool]:
    result = dict(DEFAULT_FEATURES_BY_TIER[tier])
    return result

def subscription_log_label(row: SubscriptionRow) -> str:
    key    = row.external_key()
    result = f'subscription #{row.id} ({row.platform}={base.obfuscate_unless_unsafe(key) if key else None}, org={row.organization_id})'
    return result

def string_from_sql_fields(fields: list[SQLField], schema: bool) -> str:
    result = ''
    if schema:
        result = ',\n'.join([f'{it.name} {it.type}' for it in fields]) # Create '<field0> <type0>,\n<field1> <type1>, ...'
    else:
        result = ', '.join([it.name for it in fields])  # Create '<field0>, <field1>, ...'
    return result

def subscription_row_from_tuple(row: SQLTableSubscriptionRowTuple) -> SubscriptionRow:
    result                                 = SubscriptionRow()
    result.id                              = row[0]
    result.organization_id                 = row[1]
    result.user_id                         = row[2]
    result.platform                        = Platform(row[3])
    result.stripe_subscription_id          = row[4]
    result.stripe_customer_id              = row[5]
    result.apple_original_tx_id            = row[6]
    result.apple_product_id                = row[7]
    result.google_purchase_token           = row[8]
    result.google_order_id                 = row[9]
    result.google_product_id               = row[10]
    result.tier                            = SubscriptionTier(row[11])
    result.status                          = SubscriptionStatus(row[12])
    result.current_period_start_unix_ts_ms = row[13]
    result.current_period_end_unix_ts_ms   = row[14]
    result.trial_end_unix_ts_ms            = row[15]
    result.cancel_at_unix_ts_ms            = row[16]
    result.canceled_at_unix_ts_ms          = row[17]
    result.monthly_price                   = row[18]
    result.transaction_fee_rate            = row[19]
    result.features                        = json.loads(row[20]) if row[20] else {}
    result.metadata                        = json.loads(row[21]) if row[21] else None
    result.created_unix_ts_ms              = row[22]
    result.updated_unix_ts_ms              = row[23]
    return result

def _subscription_field_values(row: SubscriptionRow) -> tuple[typing.Any, ...]:
    # NOTE: Must match the order of SQL_TABLE_SUBSCRIPTIONS_FIELD
    result = (row.organization_id,
              row.user_id,
              str(row.platform),
              row.stripe_subscription_id,
              row.stripe_customer_id,
              row.apple_original_tx_id,
              row.apple_product_id,
              row.google_purchase_token,
              row.google_order_id,
              row.google_product_id,
              str(row.tier),
              str(row.status),
              row.current_period_start_unix_ts_ms,
              row.current_period_end_unix_ts_ms,
              row.trial_end_unix_ts_ms,
              row.cancel_at_unix_ts_ms,
              row.canceled_at_unix_ts_ms,
              row.monthly_price,
              row.transaction_fee_rate,
              json.dumps(row.features, sort_keys=True),
              json.dumps(row.metadata, sort_keys=True) if row.metadata is not None else None,
              row.created_unix_ts_ms,
              row.updated_unix_ts_ms)
    return result

def get_subscription_by_external_key_tx(tx: base.SQLTransaction, platform: Platform, external_key: str) -> SubscriptionRow | None:
    assert tx.cursor is not None
    column        = EXTERNAL_KEY_COLUMN_BY_PLATFORM[platform]
    select_fields = string_from_sql_fields(fields=SQL_TABLE_SUBSCRIPTIONS_FIELD, schema=False)
    _             = tx.cursor.execute(f'SELECT id, {select_fields} FROM subscriptions WHERE {column} = ?', (external_key,))
    row           = typing.cast(SQLTableSubscriptionRowTuple | None, tx.cursor.fetchone())
    result        = subscription_row_from_tuple(row) if row else None
    return result

def get_subscription_tx(tx: base.SQLTransaction, subscription_id: int) -> SubscriptionRow | None:
    assert tx.cursor is not None
    select_fields = string_from_sql_fields(fields=SQL_TABLE_SUBSCRIPTIONS_FIELD, schema=False)
    _             = tx.cursor.execute(f'SELECT id, {select_fields} FROM subscriptions WHERE id = ?', (subscription_id,))
    row           = typing.cast(SQLTableSubscriptionRowTuple | None, tx.cursor.fetchone())
    result        = subscription_row_from_tuple(row) if row else None
    return result

def get_subscription(sql_conn: sqlite3.Connection, subscription_id: int) -> SubscriptionRow | None:
    with base.SQLTransaction(sql_conn) as tx:
        result = get_subscription_tx(tx, subscription_id)
    return result

def get_subscription_for_user_tx(tx: base.SQLTransaction, user_id: int) -> SubscriptionRow | None:
    assert tx.cursor is not None
    select_fields = string_from_sql_fields(fields=SQL_TABLE_SUBSCRIPTIONS_FIELD, schema=False)
    _             = tx.cursor.execute(f'SELECT id, {select_fields} FROM subscriptions WHERE user_id = ? ORDER BY id DESC LIMIT 1', (user_id,))
    row           = typing.cast(SQLTableSubscriptionRowTuple | None, tx.cursor.fetchone())
    result        = subscription_row_from_tuple(row) if row else None
    return result

def get_other_entitled_subscription_ids_tx(tx: base.SQLTransaction, organization_id: int, subscription_id: int) -> list[int]:
    """
    IDs of the organization's subscriptions, other than `subscription_id`, that currently entitle it
    to staff seats.
    """
    assert tx.cursor is not None
    statuses     = [str(it) for it in base.ENTITLED_STATUSES]
    placeholders = ', '.join(['?'] * len(statuses))
    _            = tx.cursor.execute(f'SELECT id FROM subscriptions WHERE organization_id = ? AND id != ? AND status IN ({placeholders}) ORDER BY id',
                                     (organization_id, subscription_id, *statuses))
    rows         = typing.cast(list[tuple[int]], tx.cursor.fetchall())
    result       = [it[0] for it in rows]
    return result

def get_subscriptions_list(sql_conn: sqlite3.Connection) -> list[SubscriptionRow]:
    result: list[SubscriptionRow] = []
    select_fields                 = string_from_sql_fields(fields=SQL_TABLE_SUBSCRIPTIONS_FIELD, schema=False)
    with base.SQLTransaction(sql_conn) as tx:
        assert tx.cursor is not None
        _    = tx.cursor.execute(f'SELECT id, {select_fields} FROM subscriptions ORDER BY id')
        rows = typing.cast(collections.abc.Iterator[SQLTableSubscriptionRowTuple], tx.cursor)
        for row in rows:
            result.append(subscription_row_from_tuple(row))
    return result

def add_subscription_tx(tx: base.SQLTransaction, row: SubscriptionRow) -> int:
    assert tx.cursor is not None
    fields       = string_from_sql_fields(fields=SQL_TABLE_SUBSCRIPTIONS_FIELD, schema=False)
    placeholders = ', '.join(['?'] * len(SQL_TABLE_SUBSCRIPTIONS_FIELD))
    _            = tx.cursor.execute(f'INSERT INTO subscriptions ({fields}) VALUES ({placeholders})', _subscription_field_values(row))
    assert tx.cursor.lastrowid is not None
    result       = tx.cursor.lastrowid
    return result

def update_subscription_tx(tx: base.SQLTransaction, row: SubscriptionRow):
    assert tx.cursor is not None
    assert row.id > 0
    assignments = ', '.join([f'{it.name} = ?' for it in SQL_TABLE_SUBSCRIPTIONS_FIELD])
    _           = tx.cursor.execute(f'UPDATE subscriptions SET {assignments} WHERE id = ?', (*_subscription_field_values(row), row.id))
    assert tx.cursor.rowcount == 1, f'Updating {subscription_log_label(row)} affected {tx.cursor.rowcount} rows'

def add_organization_tx(tx: base.SQLTransaction, name: str, stripe_account_id: str | None = None) -> int:
    assert tx.cursor is not None
    _ = tx.cursor.execute('''
        INSERT INTO organizations (name, stripe_account_id, stripe_onboarding_completed, updated_unix_ts_ms)
        VALUES                    (?,    ?,                 0,                           ?)
    ''', (name, stripe_account_id, base.unix_ts_ms_now()))
    assert tx.cursor.lastrowid is not None
    return tx.cursor.lastrowid

def get_organization_stripe_onboarding_completed(sql_conn: sqlite3.Connection, organization_id: int) -> bool | None:
    result = None
    with base.SQLTransaction(sql_conn) as tx:
        assert tx.cursor is not None
        _   = tx.cursor.execute('SELECT stripe_onboarding_completed FROM organizations WHERE id = ?', (organization_id,))
        row = typing.cast(tuple[int] | None, tx.cursor.fetchone())
        if row:
            result = bool(row[0])
    return result

def set_organization_stripe_onboarding_completed_tx(tx: base.SQLTransaction, stripe_account_id: str, completed: bool, unix_ts_ms: int) -> int:
    assert tx.cursor is not None
    _ = tx.cursor.execute('''
        UPDATE organizations
        SET    stripe_onboarding_completed = ?, updated_unix_ts_ms = ?
        WHERE  stripe_account_id = ?
    ''', (int(completed), unix_ts_ms, stripe_account_id))
    return tx.cursor.rowcount

def add_user_tx(tx:                         base.SQLTransaction,
                organization_id:            int,
                email:                      str,
                invited_by:                 int | None = None,
                is_active:                  bool       = True,
                invite_accepted_unix_ts_ms: int | None = None) -> int:
    assert tx.cursor is not None
    _ = tx.cursor.execute('''
        INSERT INTO users (organization_id, email, invited_by, is_active, invite_accepted_unix_ts_ms, session_version, updated_unix_ts_ms)
        VALUES            (?,               ?,     ?,          ?,         ?,                          0,               ?)
    ''', (organization_id, base.normalize_email(email), invited_by, int(is_active), invite_accepted_unix_ts_ms, base.unix_ts_ms_now()))
    assert tx.cursor.lastrowid is not None
    return tx.cursor.lastrowid

def _user_from_row_iterator(row: UserRowIterator) -> UserRow:
    result                            = UserRow()
    result.id                         = row[0]
    result.organization_id            = row[1]
    result.email                      = row[2]
    result.invited_by                 = row[3]
    result.is_active                  = bool(row[4])
    result.invite_accepted_unix_ts_ms = row[5]
    result.session_version            = row[6]
    return result

USER_SELECT_FIELDS = 'id, organization_id, email, invited_by, is_active, invite_accepted_unix_ts_ms, session_version'

def get_user_tx(tx: base.SQLTransaction, user_id: int) -> UserRow | None:
    assert tx.cursor is not None
    _      = tx.cursor.execute(f'SELECT {USER_SELECT_FIELDS} FROM users WHERE id = ?', (user_id,))
    row    = typing.cast(UserRowIterator | None, tx.cursor.fetchone())
    result = _user_from_row_iterator(row) if row else None
    return result

def get_user_by_email_tx(tx: base.SQLTransaction, email: str) -> UserRow | None:
    assert tx.cursor is not None
    _      = tx.cursor.execute(f'SELECT {USER_SELECT_FIELDS} FROM users WHERE email = ?', (base.normalize_email(email),))
    row    = typing.cast(UserRowIterator | None, tx.cursor.fetchone())
    result = _user_from_row_iterator(row) if row else None
    return result

def get_organization_users_tx(tx: base.SQLTransaction, organization_id: int) -> list[UserRow]:
    assert tx.cursor is not None
    _      = tx.cursor.execute(f'SELECT {USER_SELECT_FIELDS} FROM users WHERE organization_id = ? ORDER BY id', (organization_id,))
    rows   = typing.cast(collections.abc.Iterator[UserRowIterator], tx.cursor)
    result = [_user_from_row_iterator(row) for row in rows]
    return result

def disable_all_staff_tx(tx: base.SQLTransaction, organization_id: int, unix_ts_ms: int) -> list[UserRow]:
    """
    Deactivate every active staff account (users invited into the organization) and bump their
    session version so that any session they hold is invalidated. Returns the users that were
    toggled, empty if there were none which makes repeated calls a no-op.
    """
    assert tx.cursor is not None
    _      = tx.cursor.execute(f'''
        SELECT {USER_SELECT_FIELDS}
        FROM   users
        WHERE  organization_id = ? AND invited_by IS NOT NULL AND is_active = 1
    ''', (organization_id,))
    result = [_user_from_row_iterator(row) for row in typing.cast(list[UserRowIterator], tx.cursor.fetchall())]

    for user in result:
        _ = tx.cursor.execute('''
            UPDATE users
            SET    is_active = 0, session_version = session_version + 1, updated_unix_ts_ms = ?
            WHERE  id = ?
        ''', (unix_ts_ms, user.id))
        user.is_active        = False
        user.session_version += 1
    return result

def enable_all_staff_tx(tx: base.SQLTransaction, organization_id: int, unix_ts_ms: int) -> list[UserRow]:
    """
    Reactivate staff accounts that were deactivated. Staff that never accepted their invite stay
    inactive.
    """
    assert tx.cursor is not None
    _      = tx.cursor.execute(f'''
        SELECT {USER_SELECT_FIELDS}
        FROM   users
        WHERE  organization_id = ? AND invited_by IS NOT NULL AND is_active = 0 AND invite_accepted_unix_ts_ms IS NOT NULL
    ''', (organization_id,))
    result = [_user_from_row_iterator(row) for row in typing.cast(list[UserRowIterator], tx.cursor.fetchall())]

    for user in result:
        _ = tx.cursor.execute('UPDATE users SET is_active = 1, updated_unix_ts_ms = ? WHERE id = ?', (unix_ts_ms, user.id))
        user.is_active = True
    return result

def add_audit_log_tx(tx:              base.SQLTransaction,
                     organization_id: int,
                     user_id:         int | None,
                     action:          str,
                     entity_type:     str,
                     entity_id:       str,
                     changes:         dict[str, base.JSONValue],
                     unix_ts_ms:      int) -> int:
    assert tx.cursor is not None
    _ = tx.cursor.execute('''
        INSERT INTO audit_logs (organization_id, user_id, action, entity_type, entity_id, changes, created_unix_ts_ms)
        VALUES                 (?,               ?,       ?,      ?,           ?,         ?,       ?)
    ''', (organization_id, user_id, action, entity_type, entity_id, json.dumps(changes, sort_keys=True), unix_ts_ms))
    assert tx.cursor.lastrowid is not None
    return tx.cursor.lastrowid

def get_audit_logs_list(sql_conn: sqlite3.Connection, organization_id: int | None = None) -> list[AuditLogRow]:
    result: list[AuditLogRow] = []
    with base.SQLTransaction(sql_conn) as tx:
        assert tx.cursor is not None
        sql = 'SELECT id, organization_id, user_id, action, entity_type, entity_id, changes, created_unix_ts_ms FROM audit_logs'
        if organization_id is None:
            _ = tx.cursor.execute(f'{sql} ORDER BY id')
        else:
            _ = tx.cursor.execute(f'{sql} WHERE organization_id = ? ORDER BY id', (organization_id,))

        rows = typing.cast(collections.abc.Iterator[tuple[int, int, int | None, str, str, str, str, int]], tx.cursor)
        for row in rows:
            result.append(AuditLogRow(id                 = row[0],
                                      organization_id    = row[1],
                                      user_id            = row[2],
                                      action             = row[3],
                                      entity_type        = row[4],
                                      entity_id          = row[5],
                                      changes            = json.loads(row[6]),
                                      created_unix_ts_ms = row[7]))
    return result

def add_order_tx(tx: base.SQLTransaction, organization_id: int, total_amount: float, stripe_payment_intent_id: str | None) -> int:
    assert tx.cursor is not None
    _ = tx.cursor.execute('''
        INSERT INTO orders (organization_id, status,    total_amount, stripe_payment_intent_id, updated_unix_ts_ms)
        VALUES             (?,               'pending', ?,            ?,                        ?)
    ''', (organization_id, total_amount, stripe_payment_intent_id, base.unix_ts_ms_now()))
    assert tx.cursor.lastrowid is not None
    return tx.cursor.lastrowid

def get_order_status(sql_conn: sqlite3.Connection, order_id: int) -> tuple[str, str | None] | None:
    """Returns the (status, stripe_charge_id) of the order if it exists"""
    with base.SQLTransaction(sql_conn) as tx:
        assert tx.cursor is not None
        _      = tx.cursor.execute('SELECT status, stripe_charge_id FROM orders WHERE id = ?', (order_id,))
        result = typing.cast(tuple[str, str | None] | None, tx.cursor.fetchone())
    return result

def set_orders_status_by_payment_intent_tx(tx: base.SQLTransaction, payment_intent_id: str, status: str, stripe_charge_id: str | None, unix_ts_ms: int) -> int:
    assert tx.cursor is not None
    _ = tx.cursor.execute('''
        UPDATE orders
        SET    status = ?, stripe_charge_id = COALESCE(?, stripe_charge_id), updated_unix_ts_ms = ?
        WHERE  stripe_payment_intent_id = ?
    ''', (status, stripe_charge_id, unix_ts_ms, payment_intent_id))
    return tx.cursor.rowcount

def set_orders_status_by_charge_tx(tx: base.SQLTransaction, stripe_charge_id: str, status: str, unix_ts_ms: int) -> list[tuple[int, float]]:
    """Returns the (id, total_amount) of each order that was updated"""
    assert tx.cursor is not None
    _      = tx.cursor.execute('SELECT id, total_amount FROM orders WHERE stripe_charge_id = ?', (stripe_charge_id,))
    result = typing.cast(list[tuple[int, float]], tx.cursor.fetchall())
    if len(result):
        _ = tx.cursor.execute('UPDATE orders SET status = ?, updated_unix_ts_ms = ? WHERE stripe_charge_id = ?', (status, unix_ts_ms, stripe_charge_id))
    return result

def add_payout_tx(tx: base.SQLTransaction, organization_id: int, stripe_transfer_id: str) -> int:
    assert tx.cursor is not None
    _ = tx.cursor.execute('''
        INSERT INTO payouts (organization_id, stripe_transfer_id, status,    updated_unix_ts_ms)
        VALUES              (?,               ?,                  'pending', ?)
    ''', (organization_id, stripe_transfer_id, base.unix_ts_ms_now()))
    assert tx.cursor.lastrowid is not None
    return tx.cursor.lastrowid

def get_payout_status(sql_conn: sqlite3.Connection, payout_id: int) -> tuple[str, str | None, int | None] | None:
    """Returns the (status, stripe_payout_id, processed_unix_ts_ms) of the payout if it exists"""
    with base.SQLTransaction(sql_conn) as tx:
        assert tx.cursor is not None
        _      = tx.cursor.execute('SELECT status, stripe_payout_id, processed_unix_ts_ms FROM payouts WHERE id = ?', (payout_id,))
        result = typing.cast(tuple[str, str | None, int | None] | None, tx.cursor.fetchone())
    return result

def set_payout_created_tx(tx: base.SQLTransaction, stripe_transfer_id: str, stripe_payout_id: str, unix_ts_ms: int) -> int:
    assert tx.cursor is not None
    _ = tx.cursor.execute('''
        UPDATE payouts
        SET    stripe_payout_id = ?, status = 'processing', updated_unix_ts_ms = ?
        WHERE  stripe_transfer_id = ?
    ''', (stripe_payout_id, unix_ts_ms, stripe_transfer_id))
    return tx.cursor.rowcount

def set_payout_status_tx(tx: base.SQLTransaction, stripe_payout_id: str, status: str, unix_ts_ms: int) -> int:
    assert tx.cursor is not None
    processed_unix_ts_ms = unix_ts_ms if status == 'paid' else None
    _ = tx.cursor.execute('''
        UPDATE payouts
        SET    status = ?, processed_unix_ts_ms = COALESCE(?, processed_unix_ts_ms), updated_unix_ts_ms = ?
        WHERE  stripe_payout_id = ?
    ''', (status, processed_unix_ts_ms, unix_ts_ms, stripe_payout_id))
    return tx.cursor.rowcount

def db_info_string(sql_conn: sqlite3.Connection, db_path: str, err: base.ErrorSink) -> str:
    result = ''
    try:
        with base.SQLTransaction(sql_conn) as tx:
            assert tx.cursor is not None
            _                  = tx.cursor.execute('SELECT COUNT(*) FROM subscriptions')
            subscriptions: int = typing.cast(tuple[int], tx.cursor.fetchone())[0]

            _                  = tx.cursor.execute('''SELECT COUNT(*) FROM subscriptions WHERE status IN ('active', 'trialing')''')
            entitled:      int = typing.cast(tuple[int], tx.cursor.fetchone())[0]

            _                  = tx.cursor.execute('SELECT COUNT(*) FROM users')
            users:         int = typing.cast(tuple[int], tx.cursor.fetchone())[0]

            _                  = tx.cursor.execute('SELECT COUNT(*) FROM audit_logs')
            audit_logs:    int = typing.cast(tuple[int], tx.cursor.fetchone())[0]

        result = f'  DB:                      {db_path}\n'
        result += f'  Subscriptions:           {subscriptions} ({entitled} active/trialing)\n'
        result += f'  Users:                   {users}\n'
        result += f'  Audit Log Entries:       {audit_logs}'
    except Exception as e:
        err.msg_list.append(f"Failed to retrieve DB metadata: {e}")
    return result

def setup_db(path: str, uri: bool, err: base.ErrorSink) -> SetupDBResult:
    result: SetupDBResult = SetupDBResult()
    result.path           = path
    try:
        result.sql_conn = sqlite3.connect(path, uri=uri)
    except Exception as e:
        err.msg_list.append(f'Failed to open/connect to DB at {path}: {e}')
        return result

    with base.SQLTransaction(result.sql_conn) as tx:
        sql_stmt: str = f'''
            CREATE TABLE IF NOT EXISTS organizations (
                id                          INTEGER PRIMARY KEY NOT NULL,
                name                        TEXT NOT NULL,
                stripe_account_id           TEXT UNIQUE,       -- Stripe connected account of the organization
                stripe_onboarding_completed INTEGER NOT NULL,  -- Charges and payouts are both enabled on the connected account
                updated_unix_ts_ms          INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS users (
                id                         INTEGER PRIMARY KEY NOT NULL,
                organization_id            INTEGER NOT NULL,
                email                      TEXT UNIQUE NOT NULL, -- Normalised (trimmed, lower-case)

                -- Staff accounts are users invited into an organization by another user. The
                -- organization owner has no inviter. Staff accounts are enabled or disabled
                -- together when the organization's subscription gains or loses its entitlement.
                invited_by                 INTEGER,
                is_active                  INTEGER NOT NULL,
                invite_accepted_unix_ts_ms INTEGER,

                -- Incremented to invalidate every session issued to the user, sessions embed the
                -- version they were issued with.
                session_version            INTEGER NOT NULL,
                updated_unix_ts_ms         INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS subscriptions (
                id INTEGER PRIMARY KEY NOT NULL,
                {string_from_sql_fields(fields=SQL_TABLE_SUBSCRIPTIONS_FIELD, schema=True)},
                CHECK ((stripe_subscription_id IS NOT NULL) + (apple_original_tx_id IS NOT NULL) + (google_purchase_token IS NOT NULL) = 1)
            );

            CREATE INDEX IF NOT EXISTS subscriptions_organization_id ON subscriptions (organization_id);
            CREATE INDEX IF NOT EXISTS subscriptions_user_id         ON subscriptions (user_id);

            -- Append-only, written once per subscription transition. `changes` is a JSON object.
            CREATE TABLE IF NOT EXISTS audit_logs (
                id                 INTEGER PRIMARY KEY NOT NULL,
                organization_id    INTEGER NOT NULL,
                user_id            INTEGER,
                action             TEXT NOT NULL,
                entity_type        TEXT NOT NULL,
                entity_id          TEXT NOT NULL,
                changes            TEXT NOT NULL,
                created_unix_ts_ms INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS orders (
                id                       INTEGER PRIMARY KEY NOT NULL,
                organization_id          INTEGER NOT NULL,
                status                   TEXT NOT NULL, -- 'pending' | 'completed' | 'failed' | 'refunded'
                total_amount             REAL NOT NULL,
                stripe_payment_intent_id TEXT,
                stripe_charge_id         TEXT,
                updated_unix_ts_ms       INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS payouts (
                id                   INTEGER PRIMARY KEY NOT NULL,
                organization_id      INTEGER NOT NULL,
                status               TEXT NOT NULL, -- 'pending' | 'processing' | 'paid' | 'failed'
                stripe_transfer_id   TEXT,
                stripe_payout_id     TEXT,
                processed_unix_ts_ms INTEGER,
                updated_unix_ts_ms   INTEGER NOT NULL
            );
        '''

        assert tx.cursor is not None

        try:
            # NOTE: Bootstrap tables
            _ = tx.cursor.executescript(sql_stmt)
            _ = tx.cursor.execute('''PRAGMA journal_mode=WAL''')

            # NOTE: Version migration
            target_db_version = 1
            if 1:
                db_version: int = tx.cursor.execute('PRAGMA user_version').fetchone()[0]  # pyright: ignore[reportAny]

                # NOTE: v0 is the nil state, it means the DB has never been bootstrapped. All the
                # tables will have been created with the latest schema so we teleport to the target
                # version
                if db_version == 0:
                    db_version = target_db_version
                    _          = tx.cursor.execute(f'PRAGMA user_version = {db_version}')

                # NOTE: Verify that the DB was migrated to the target version
                if db_version != target_db_version:
                    err.msg_list.append(f'DB at {path} is at version {db_version} which this backend cannot migrate to {target_db_version}')

            result.success = not err.has()
        except Exception:
            err.msg_list.append(f"Failed to bootstrap DB tables: {traceback.format_exc()}")

    if not result.success:
        result.sql_conn.close()
        result.sql_conn = None

    return result
