'''
The reconciler is the subscription state machine. It looks up the subscription row a canonical
event refers to and applies the event to it within a single write transaction, reporting back
whether the row changed and whether the change was a real transition (status and/or tier changed).

Every kind of event maps to one entry in `TRANSITION_TABLE`, the table is the whole state machine.
Side effects are not executed here, the caller hands the result to the dispatcher after the
transaction has committed.
'''

import enum
import copy
import sqlite3
import logging
import dataclasses

import base
import backend
from base import Platform, SubscriptionStatus, SubscriptionTier
from canonical import CanonicalEvent, EventKind

log = logging.Logger('RECONCILER')

class TierEffect(enum.IntEnum):
    Unchanged = 0
    PaidTier  = 1 # Tier from the event (defaulting to the paid tier), features and pricing re-derived
    BaseTier  = 2 # Downgrade to the base tier, features and pricing re-derived

class CancelEffect(enum.IntEnum):
    Unchanged    = 0
    Clear        = 1 # Null both `cancel_at` and `canceled_at`
    Schedule     = 2 # Stamp `canceled_at` if unset, `cancel_at` from the event when it reports one
    StampIfUnset = 3 # Stamp `canceled_at` if unset
    Stamp        = 4 # Stamp `canceled_at`, an existing stamp on an already canceled row is kept
    Merge        = 5 # See `_merge_cancel_fields`

@dataclasses.dataclass(frozen=True)
class Transition:
    status:       SubscriptionStatus | None                # None leaves the status untouched
    tier:         TierEffect                     = TierEffect.Unchanged
    cancel:       CancelEffect                   = CancelEffect.Unchanged
    allowed_from: frozenset[SubscriptionStatus] | None = None # Only applied when the row is in one of these statuses

    # Status is taken from the event instead of `status`
    status_from_event: bool = False

TRANSITION_TABLE: dict[EventKind, Transition] = {
    EventKind.Purchased:        Transition(status=SubscriptionStatus.Active,   tier=TierEffect.PaidTier, cancel=CancelEffect.Clear),
    EventKind.Renewed:          Transition(status=SubscriptionStatus.Active),
    EventKind.Recovered:        Transition(status=SubscriptionStatus.Active,   tier=TierEffect.PaidTier),
    EventKind.PaymentRecovered: Transition(status=SubscriptionStatus.Active,   allowed_from=frozenset({SubscriptionStatus.PastDue})),
    EventKind.PastDue:          Transition(status=SubscriptionStatus.PastDue),
    EventKind.GracePeriod:      Transition(status=SubscriptionStatus.PastDue),
    EventKind.Paused:           Transition(status=SubscriptionStatus.Paused,   tier=TierEffect.BaseTier),
    EventKind.Canceled:         Transition(status=None,                        cancel=CancelEffect.Schedule),
    EventKind.RenewalReenabled: Transition(status=None,                        cancel=CancelEffect.Clear),
    EventKind.Expired:          Transition(status=SubscriptionStatus.Canceled, tier=TierEffect.BaseTier, cancel=CancelEffect.StampIfUnset),
    EventKind.Refunded:         Transition(status=SubscriptionStatus.Canceled, tier=TierEffect.BaseTier, cancel=CancelEffect.Stamp),
    EventKind.Revoked:          Transition(status=SubscriptionStatus.Canceled, tier=TierEffect.BaseTier, cancel=CancelEffect.Stamp),
    EventKind.StatusSynced:     Transition(status=None,                        cancel=CancelEffect.Merge, status_from_event=True),
}

@dataclasses.dataclass
class ReconcileResult:
    found:           bool                           = False # A row exists for the event's external key
    applied:         bool                           = False # The event was accepted for the row it found
    changed:         bool                           = False # At least one column of the row was written
    real_transition: bool                           = False # Status and/or tier changed
    previous:        backend.SubscriptionRow | None = None  # None if the row was created by this operation
    current:         backend.SubscriptionRow | None = None
    event:           CanonicalEvent | None          = None
    audit_action:    str                            = ''
    audit_changes:   dict[str, base.JSONValue]      = dataclasses.field(default_factory=dict)

@dataclasses.dataclass
class CheckoutBinding:
    email:                  str
    stripe_subscription_id: str
    stripe_customer_id:     str | None
    tier:                   SubscriptionTier
    price_id:               str
    session_id:             str

def _apply_tier(row: backend.SubscriptionRow, tier: SubscriptionTier):
    pricing                  = backend.PRICING_BY_TIER[tier]
    row.tier                 = tier
    row.features             = backend.features_for_tier(tier)
    row.monthly_price        = pricing.monthly_price
    row.transaction_fee_rate = pricing.transaction_fee_rate

def _merge_cancel_fields(row: backend.SubscriptionRow, event: CanonicalEvent):
    # NOTE: A timestamp reported by the platform always wins. With nothing reported, an activation
    # means the platform no longer considers the subscription canceled so both are cleared,
    # otherwise the stored values are kept.
    if event.cancel_at_unix_ts_ms is not None or event.canceled_at_unix_ts_ms is not None:
        if event.cancel_at_unix_ts_ms is not None:
            row.cancel_at_unix_ts_ms = event.cancel_at_unix_ts_ms
        if event.canceled_at_unix_ts_ms is not None:
            row.canceled_at_unix_ts_ms = event.canceled_at_unix_ts_ms
    elif row.status in base.ENTITLED_STATUSES:
        row.cancel_at_unix_ts_ms   = None
        row.canceled_at_unix_ts_ms = None

def apply_transition(row: backend.SubscriptionRow, transition: Transition, event: CanonicalEvent, unix_ts_ms: int) -> backend.SubscriptionRow:
    """
    Produce the row that results from applying the event to `row`. `row` is not modified. The
    returned row's `updated_unix_ts_ms` is left as is, the caller bumps it only if something else
    changed.
    """
    result = copy.deepcopy(row)

    # NOTE: Status
    if transition.status_from_event:
        assert event.status is not None, f'{event.kind} events must carry a status'
        result.status = event.status
    elif transition.status is not None:
        result.status = transition.status

    # NOTE: Tier, features and pricing
    match transition.tier:
        case TierEffect.Unchanged:
            pass
        case TierEffect.PaidTier:
            _apply_tier(result, event.tier if event.tier is not None else backend.DEFAULT_PAID_TIER)
        case TierEffect.BaseTier:
            _apply_tier(result, backend.BASE_TIER)

    # NOTE: Cancellation fields, `cancel_at` and `canceled_at` are independent of each other
    # and a redelivered cancellation keeps the stamp it set the first time
    match transition.cancel:
        case CancelEffect.Unchanged:
            pass
        case CancelEffect.Clear:
            result.cancel_at_unix_ts_ms   = None
            result.canceled_at_unix_ts_ms = None
        case CancelEffect.Schedule:
            if result.canceled_at_unix_ts_ms is None:
                result.canceled_at_unix_ts_ms = unix_ts_ms
            if event.cancel_at_unix_ts_ms is not None:
                result.cancel_at_unix_ts_ms = event.cancel_at_unix_ts_ms
        case CancelEffect.StampIfUnset:
            if result.canceled_at_unix_ts_ms is None:
                result.canceled_at_unix_ts_ms = unix_ts_ms
        case CancelEffect.Stamp:
            already_stamped = row.status == SubscriptionStatus.Canceled and row.canceled_at_unix_ts_ms is not None
            if not already_stamped:
                result.canceled_at_unix_ts_ms = unix_ts_ms
        case CancelEffect.Merge:
            _merge_cancel_fields(result, event)

    # NOTE: Period, only when the event carries it
    if event.period_start_unix_ts_ms is not None:
        result.current_period_start_unix_ts_ms = event.period_start_unix_ts_ms
    if event.expires_unix_ts_ms is not None:
        result.current_period_end_unix_ts_ms = event.expires_unix_ts_ms

    return result

def _rows_differ(a: backend.SubscriptionRow, b: backend.SubscriptionRow) -> bool:
    a_cmp  = dataclasses.replace(a, updated_unix_ts_ms=0)
    b_cmp  = dataclasses.replace(b, updated_unix_ts_ms=0)
    result = a_cmp != b_cmp
    return result

def _default_audit_changes(previous: backend.SubscriptionRow | None, current: backend.SubscriptionRow) -> dict[str, base.JSONValue]:
    result: dict[str, base.JSONValue] = {
        'status':         str(current.status),
        'previousStatus': str(previous.status) if previous else None,
        'tier':           str(current.tier),
        'previousTier':   str(previous.tier) if previous else None,
    }
    return result

def reconcile_tx(tx: base.SQLTransaction, event: CanonicalEvent, unix_ts_ms: int) -> ReconcileResult:
    result       = ReconcileResult(event=event)
    row          = backend.get_subscription_by_external_key_tx(tx, event.platform, event.external_key)
    result.found = row is not None
    if row is None:
        log.warning(f'No subscription found for {event.describe()} with key {base.obfuscate_unless_unsafe(event.external_key)}, event dropped')
        return result

    result.previous = row
    result.current  = row

    # NOTE: A row is only ever mutated by the platform it is bound to. Moving a subscription to
    # another platform happens exclusively through a Stripe checkout.
    if row.platform != event.platform:
        log.warning(f'Rejecting {event.describe()} for {backend.subscription_log_label(row)}, the subscription is bound to {row.platform}')
        return result

    transition = TRANSITION_TABLE[event.kind]
    if transition.allowed_from is not None and row.status not in transition.allowed_from:
        log.info(f'Ignoring {event.describe()} for {backend.subscription_log_label(row)}, status is {row.status}')
        return result

    result.applied = True
    updated        = apply_transition(row, transition, event, unix_ts_ms)
    result.changed = _rows_differ(row, updated)
    if result.changed:
        updated.updated_unix_ts_ms = unix_ts_ms
        backend.update_subscription_tx(tx, updated)

    result.current         = updated
    result.real_transition = row.status != updated.status or row.tier != updated.tier
    result.audit_action    = event.audit_action if event.audit_action else f'subscription.{updated.status}'
    result.audit_changes   = _default_audit_changes(row, updated)

    if result.real_transition:
        log.info(f'Applied {event.describe()} to {backend.subscription_log_label(row)}: {row.status}/{row.tier} -> {updated.status}/{updated.tier}')
    elif result.changed:
        log.info(f'Applied {event.describe()} to {backend.subscription_log_label(row)}, no status or tier change')
    else:
        log.info(f'Applied {event.describe()} to {backend.subscription_log_label(row)}, already up to date')
    return result

def reconcile(sql_conn: sqlite3.Connection, event: CanonicalEvent, unix_ts_ms: int | None = None) -> ReconcileResult:
    """
    Apply the canonical event to the subscription it refers to. The lookup and the write happen in
    one immediate transaction so that concurrent deliveries of events for the same subscription
    serialize on the database write lock and each observes the row the previous one committed.

    Database errors propagate to the caller.
    """
    now = unix_ts_ms if unix_ts_ms is not None else base.unix_ts_ms_now()
    with base.SQLTransaction(sql_conn, base.SQLTransactionMode.Immediate) as tx:
        result = reconcile_tx(tx, event, now)
    return result

def bind_checkout(sql_conn: sqlite3.Connection, binding: CheckoutBinding, unix_ts_ms: int | None = None) -> ReconcileResult:
    """
    Bind the Stripe subscription created by a completed checkout to the purchasing user's
    subscription row, creating the row if the user has none. A row currently bound to another
    platform is moved to Stripe and its other platform keys are cleared.

    The result is reported like a reconciler transition so the dispatcher runs the usual side
    effects, with the audit log entry recording the checkout instead of the status.
    """
    now    = unix_ts_ms if unix_ts_ms is not None else base.unix_ts_ms_now()
    result = ReconcileResult()
    with base.SQLTransaction(sql_conn, base.SQLTransactionMode.Immediate) as tx:
        user = backend.get_user_by_email_tx(tx, binding.email)
        if user is None:
            log.error(f'Checkout session {binding.session_id} completed for unknown user {base.obfuscate_unless_unsafe(binding.email)}')
            return result

        # NOTE: A redelivered checkout finds the row by its Stripe key, otherwise use the user's row
        existing = backend.get_subscription_by_external_key_tx(tx, Platform.Stripe, binding.stripe_subscription_id)
        if existing is None:
            existing = backend.get_subscription_for_user_tx(tx, user.id)

        if existing:
            row = copy.deepcopy(existing)
        else:
            row = backend.SubscriptionRow(organization_id=user.organization_id, user_id=user.id, created_unix_ts_ms=now)

        same_subscription = existing is not None and existing.stripe_subscription_id == binding.stripe_subscription_id

        row.platform               = Platform.Stripe
        row.stripe_subscription_id = binding.stripe_subscription_id
        row.stripe_customer_id     = binding.stripe_customer_id
        row.apple_original_tx_id   = None
        row.apple_product_id       = None
        row.google_purchase_token  = None
        row.google_order_id        = None
        row.google_product_id      = None
        row.status                 = SubscriptionStatus.Active
        row.cancel_at_unix_ts_ms   = None
        row.canceled_at_unix_ts_ms = None
        _apply_tier(row, binding.tier)
        if not same_subscription or row.current_period_start_unix_ts_ms is None:
            row.current_period_start_unix_ts_ms = now

        result.found    = True
        result.applied  = True
        result.previous = existing
        if existing is None:
            row.updated_unix_ts_ms = now
            row.id                 = backend.add_subscription_tx(tx, row)
            result.changed         = True
        else:
            result.changed = _rows_differ(existing, row)
            if result.changed:
                row.updated_unix_ts_ms = now
                backend.update_subscription_tx(tx, row)

        result.current         = row
        result.real_transition = existing is None or existing.status != row.status or existing.tier != row.tier or existing.platform != row.platform
        result.event           = None
        result.audit_action    = 'subscription.created'
        result.audit_changes   = {'tier': str(binding.tier), 'priceId': binding.price_id, 'sessionId': binding.session_id}

    log.info(f'Checkout session {binding.session_id} bound {backend.subscription_log_label(row)} at tier {row.tier} (created={existing is None}, transition={result.real_transition})')
    return result
