'''
Stripe webhook ingestion. Every delivery is authenticated against the endpoint's signing secret
with the `stripe` library, then routed through `EVENT_HANDLERS` by its event type.

Subscription lifecycle events are translated into canonical events and handed to the reconciler.
The remaining events this service cares about update the marketplace tables (orders,
organizations, payouts) directly. Anything else is acknowledged and logged.
'''

import json
import flask
import stripe
import typing
import logging
import traceback
import dataclasses

import base
import backend
import canonical
import reconciler
import server
from base import Platform, SubscriptionStatus, SubscriptionTier

log = logging.Logger('STRIPE')

ROUTE_WEBHOOK                         = '/stripe/webhook'
FLASK_CONFIG_PLATFORM_STRIPE_CORE_KEY = 'sub_sync_backend_platform_stripe_core'
DEFAULT_SIGNATURE_TOLERANCE_S         = 300

flask_blueprint = flask.Blueprint('sub-sync-backend-stripe', __name__)

@dataclasses.dataclass
class Core:
    webhook_secret:        str = ''
    api_key:               str = ''
    pro_price_id:          str = ''
    enterprise_price_id:   str = ''
    signature_tolerance_s: int = DEFAULT_SIGNATURE_TOLERANCE_S

@dataclasses.dataclass
class StripeEvent:
    id:          str               = ''
    type:        str               = ''
    livemode:    bool              = False
    data_object: base.JSONObject   = dataclasses.field(default_factory=dict)

StripeEventHandler: typing.TypeAlias = typing.Callable[[Core, flask.Flask, StripeEvent, base.ErrorSink], None]

# Stripe subscription statuses that don't map one to one onto ours
STRIPE_STATUS_MAP: dict[str, SubscriptionStatus] = {
    'active':             SubscriptionStatus.Active,
    'trialing':           SubscriptionStatus.Trialing,
    'past_due':           SubscriptionStatus.PastDue,
    'paused':             SubscriptionStatus.Paused,
    'canceled':           SubscriptionStatus.Canceled,
    'incomplete':         SubscriptionStatus.Incomplete,
    'unpaid':             SubscriptionStatus.PastDue,
    'incomplete_expired': SubscriptionStatus.Canceled,
}

def init(webhook_secret: str, api_key: str = '', pro_price_id: str = '', enterprise_price_id: str = '', signature_tolerance_s: int = DEFAULT_SIGNATURE_TOLERANCE_S) -> Core:
    result = Core(webhook_secret        = webhook_secret,
                  api_key               = api_key,
                  pro_price_id          = pro_price_id,
                  enterprise_price_id   = enterprise_price_id,
                  signature_tolerance_s = signature_tolerance_s)
    return result

def equip_flask_routes(core: Core, flask_app: flask.Flask):
    flask_app.register_blueprint(flask_blueprint)
    flask_app.config[FLASK_CONFIG_PLATFORM_STRIPE_CORE_KEY] = core

def map_stripe_status(status: str) -> SubscriptionStatus:
    result = STRIPE_STATUS_MAP.get(status, SubscriptionStatus.Active)
    return result

def tier_from_price_id(core: Core, price_id: str) -> SubscriptionTier:
    result = SubscriptionTier.Starter
    if len(core.pro_price_id) and price_id == core.pro_price_id:
        result = SubscriptionTier.Pro
    elif len(core.enterprise_price_id) and price_id == core.enterprise_price_id:
        result = SubscriptionTier.Enterprise
    return result

def unix_ts_ms_from_stripe_ts(unix_ts_s: int | None) -> int | None:
    result = unix_ts_s * 1000 if unix_ts_s is not None else None
    return result

def verify_and_parse_event(core: Core, payload: str, signature_header: str, err: base.ErrorSink) -> StripeEvent:
    result = StripeEvent()
    try:
        _ = stripe.WebhookSignature.verify_header(payload, signature_header, core.webhook_secret, core.signature_tolerance_s)
    except stripe.SignatureVerificationError as e:
        err.msg_list.append(f'Stripe signature verification failed: {e}')
        return result

    try:
        body = json.loads(payload)
    except json.JSONDecodeError as e:
        err.msg_list.append(f'Stripe payload was not valid JSON: {e}')
        return result

    if not isinstance(body, dict):
        err.msg_list.append('Stripe payload was not a JSON object')
        return result

    body               = typing.cast(base.JSONObject, body)
    result.id          = base.json_dict_require_str(body, 'id', err)
    result.type        = base.json_dict_require_str(body, 'type', err)
    result.livemode    = base.json_dict_optional_bool(body, 'livemode', False, err)
    data               = base.json_dict_require_obj(body, 'data', err)
    result.data_object = base.json_dict_require_obj(data, 'object', err) if not err.has() else {}
    return result

def fetch_checkout_price_id(api_key: str, session_id: str) -> str | None:
    """Retrieve the price of the first line item of the checkout session from the Stripe API"""
    line_items = stripe.checkout.Session.list_line_items(session_id, api_key=api_key, limit=1)
    result     = None
    if len(line_items.data) and line_items.data[0].price is not None:
        result = line_items.data[0].price.id
    return result

def _string_or_expanded_id(d: base.JSONObject, key: str) -> str | None:
    # NOTE: Stripe sends either the ID or the expanded object depending on the request's expansion
    result = None
    value  = d.get(key)
    if isinstance(value, str):
        result = value
    elif isinstance(value, dict) and isinstance(value.get('id'), str):
        result = typing.cast(str, value['id'])
    return result

def _invoice_subscription_id(invoice: base.JSONObject) -> str | None:
    result = _string_or_expanded_id(invoice, 'subscription')
    if result is None:
        # NOTE: Newer API versions moved the reference under the invoice's parent
        parent  = invoice.get('parent')
        details = parent.get('subscription_details') if isinstance(parent, dict) else None
        if isinstance(details, dict):
            result = _string_or_expanded_id(typing.cast(base.JSONObject, details), 'subscription')
    return result

def _subscription_period(subscription: base.JSONObject, err: base.ErrorSink) -> tuple[int | None, int | None]:
    start = base.json_dict_optional_int(subscription, 'current_period_start', err)
    end   = base.json_dict_optional_int(subscription, 'current_period_end',   err)
    if start is None and end is None:
        # NOTE: Newer API versions only report the period on the subscription items
        items = subscription.get('items')
        data  = items.get('data') if isinstance(items, dict) else None
        if isinstance(data, list) and len(data) and isinstance(data[0], dict):
            item  = typing.cast(base.JSONObject, data[0])
            start = base.json_dict_optional_int(item, 'current_period_start', err)
            end   = base.json_dict_optional_int(item, 'current_period_end',   err)
    result = (unix_ts_ms_from_stripe_ts(start), unix_ts_ms_from_stripe_ts(end))
    return result

def subscription_status_synced_event(subscription: base.JSONObject, status_override: SubscriptionStatus | None, err: base.ErrorSink) -> canonical.CanonicalEvent | None:
    subscription_id = base.json_dict_require_str(subscription, 'id',     err)
    stripe_status   = base.json_dict_require_str(subscription, 'status', err)
    cancel_at       = base.json_dict_optional_int(subscription, 'cancel_at',   err)
    canceled_at     = base.json_dict_optional_int(subscription, 'canceled_at', err)
    period_start, period_end = _subscription_period(subscription, err)
    if err.has():
        return None

    result = canonical.status_synced(platform                = Platform.Stripe,
                                     external_key            = subscription_id,
                                     status                  = status_override if status_override else map_stripe_status(stripe_status),
                                     period_start_unix_ts_ms = period_start,
                                     period_end_unix_ts_ms   = period_end,
                                     cancel_at_unix_ts_ms    = unix_ts_ms_from_stripe_ts(cancel_at),
                                     canceled_at_unix_ts_ms  = unix_ts_ms_from_stripe_ts(canceled_at))
    return result

def _log_malformed(event: StripeEvent, err: base.ErrorSink):
    log.error(f'Stripe {event.type} event {event.id} was malformed, rejecting: {err.build()}. Payload was: {base.safe_dump_dict_keys_or_data(event.data_object)}')

def handle_checkout_session_completed(core: Core, flask_app: flask.Flask, event: StripeEvent, err: base.ErrorSink):
    session         = event.data_object
    session_id      = base.json_dict_require_str(session, 'id', err)
    customer_email  = base.json_dict_optional_str(session, 'customer_email', err)
    metadata        = base.json_dict_optional_obj(session, 'metadata', err) or {}
    metadata_email  = base.json_dict_optional_str(metadata, 'email', err)
    subscription_id = _string_or_expanded_id(session, 'subscription')
    customer_id     = _string_or_expanded_id(session, 'customer')
    if err.has():
        _log_malformed(event, err)
        return

    email = metadata_email if metadata_email else customer_email
    if not email:
        log.error(f'Checkout session {session_id} has no email in its metadata or customer details, ignoring')
        return

    if subscription_id is None:
        log.info(f'Checkout session {session_id} is not for a subscription (one-off payment), ignoring')
        return

    price_id = fetch_checkout_price_id(core.api_key, session_id)
    if not price_id:
        log.error(f'Checkout session {session_id} has no price on its line items, ignoring')
        return

    binding = reconciler.CheckoutBinding(email                  = base.normalize_email(email),
                                         stripe_subscription_id = subscription_id,
                                         stripe_customer_id     = customer_id,
                                         tier                   = tier_from_price_id(core, price_id),
                                         price_id               = price_id,
                                         session_id             = session_id)
    _ = server.apply_checkout_binding(flask_app, binding)

def handle_customer_subscription_created(core: Core, flask_app: flask.Flask, event: StripeEvent, err: base.ErrorSink):
    canon_ev = subscription_status_synced_event(event.data_object, SubscriptionStatus.Active, err)
    if canon_ev is None:
        _log_malformed(event, err)
        return
    _ = server.apply_canonical_event(flask_app, canon_ev)

def handle_customer_subscription_updated(core: Core, flask_app: flask.Flask, event: StripeEvent, err: base.ErrorSink):
    canon_ev = subscription_status_synced_event(event.data_object, None, err)
    if canon_ev is None:
        _log_malformed(event, err)
        return
    _ = server.apply_canonical_event(flask_app, canon_ev)

def handle_customer_subscription_deleted(core: Core, flask_app: flask.Flask, event: StripeEvent, err: base.ErrorSink):
    subscription_id = base.json_dict_require_str(event.data_object, 'id', err)
    if err.has():
        _log_malformed(event, err)
        return
    _ = server.apply_canonical_event(flask_app, canonical.expired(Platform.Stripe, subscription_id))

def handle_invoice_payment_succeeded(core: Core, flask_app: flask.Flask, event: StripeEvent, err: base.ErrorSink):
    subscription_id = _invoice_subscription_id(event.data_object)
    if subscription_id is None:
        log.info(f'Invoice of event {event.id} is not for a subscription, ignoring')
        return
    _ = server.apply_canonical_event(flask_app, canonical.payment_recovered(Platform.Stripe, subscription_id))

def handle_invoice_payment_failed(core: Core, flask_app: flask.Flask, event: StripeEvent, err: base.ErrorSink):
    subscription_id = _invoice_subscription_id(event.data_object)
    if subscription_id is None:
        log.info(f'Invoice of event {event.id} is not for a subscription, ignoring')
        return
    canon_ev = canonical.past_due(Platform.Stripe, subscription_id, audit_action='subscription.payment_failed')
    _        = server.apply_canonical_event(flask_app, canon_ev)

def handle_payment_intent_succeeded(core: Core, flask_app: flask.Flask, event: StripeEvent, err: base.ErrorSink):
    payment_intent_id = base.json_dict_require_str(event.data_object, 'id', err)
    if err.has():
        _log_malformed(event, err)
        return

    charge_id = _string_or_expanded_id(event.data_object, 'latest_charge')
    with server.open_db_from_flask_request_context(flask_app) as db:
        with base.SQLTransaction(db.sql_conn) as tx:
            count = backend.set_orders_status_by_payment_intent_tx(tx, payment_intent_id, 'completed', charge_id, base.unix_ts_ms_now())
    log.info(f'Payment intent {base.obfuscate_unless_unsafe(payment_intent_id)} succeeded, {count} order(s) completed')

def handle_payment_intent_payment_failed(core: Core, flask_app: flask.Flask, event: StripeEvent, err: base.ErrorSink):
    payment_intent_id = base.json_dict_require_str(event.data_object, 'id', err)
    if err.has():
        _log_malformed(event, err)
        return

    with server.open_db_from_flask_request_context(flask_app) as db:
        with base.SQLTransaction(db.sql_conn) as tx:
            count = backend.set_orders_status_by_payment_intent_tx(tx, payment_intent_id, 'failed', None, base.unix_ts_ms_now())
    log.warning(f'Payment intent {base.obfuscate_unless_unsafe(payment_intent_id)} failed, {count} order(s) marked failed')

def handle_charge_refunded(core: Core, flask_app: flask.Flask, event: StripeEvent, err: base.ErrorSink):
    charge_id = base.json_dict_require_str(event.data_object, 'id', err)
    if err.has():
        _log_malformed(event, err)
        return

    with server.open_db_from_flask_request_context(flask_app) as db:
        with base.SQLTransaction(db.sql_conn) as tx:
            orders = backend.set_orders_status_by_charge_tx(tx, charge_id, 'refunded', base.unix_ts_ms_now())
    for order_id, total_amount in orders:
        log.info(f'Order {order_id} ({total_amount}) refunded through charge {base.obfuscate_unless_unsafe(charge_id)}')

def handle_account_updated(core: Core, flask_app: flask.Flask, event: StripeEvent, err: base.ErrorSink):
    account_id       = base.json_dict_require_str(event.data_object, 'id', err)
    charges_enabled  = base.json_dict_optional_bool(event.data_object, 'charges_enabled', False, err)
    payouts_enabled  = base.json_dict_optional_bool(event.data_object, 'payouts_enabled', False, err)
    if err.has():
        _log_malformed(event, err)
        return

    completed = charges_enabled and payouts_enabled
    with server.open_db_from_flask_request_context(flask_app) as db:
        with base.SQLTransaction(db.sql_conn) as tx:
            count = backend.set_organization_stripe_onboarding_completed_tx(tx, account_id, completed, base.unix_ts_ms_now())
    log.info(f'Connected account {account_id} updated (onboarding completed={completed}), {count} organization(s) updated')

def handle_logged_only(core: Core, flask_app: flask.Flask, event: StripeEvent, err: base.ErrorSink):
    object_id = event.data_object.get('id')
    log.info(f'Stripe {event.type} event {event.id} received for {object_id}')

def handle_payout_created(core: Core, flask_app: flask.Flask, event: StripeEvent, err: base.ErrorSink):
    payout_id = base.json_dict_require_str(event.data_object, 'id', err)
    if err.has():
        _log_malformed(event, err)
        return

    transfer_id = _string_or_expanded_id(event.data_object, 'source_transaction')
    if transfer_id is None:
        log.info(f'Payout {payout_id} has no source transaction, ignoring')
        return

    with server.open_db_from_flask_request_context(flask_app) as db:
        with base.SQLTransaction(db.sql_conn) as tx:
            count = backend.set_payout_created_tx(tx, transfer_id, payout_id, base.unix_ts_ms_now())
    log.info(f'Payout {payout_id} created for transfer {transfer_id}, {count} payout(s) processing')

def _handle_payout_status(flask_app: flask.Flask, event: StripeEvent, status: str, err: base.ErrorSink):
    payout_id = base.json_dict_require_str(event.data_object, 'id', err)
    if err.has():
        _log_malformed(event, err)
        return

    with server.open_db_from_flask_request_context(flask_app) as db:
        with base.SQLTransaction(db.sql_conn) as tx:
            count = backend.set_payout_status_tx(tx, payout_id, status, base.unix_ts_ms_now())
    if status == 'failed':
        log.warning(f'Payout {payout_id} failed, {count} payout(s) updated')
    else:
        log.info(f'Payout {payout_id} {status}, {count} payout(s) updated')

def handle_payout_paid(core: Core, flask_app: flask.Flask, event: StripeEvent, err: base.ErrorSink):
    _handle_payout_status(flask_app, event, 'paid', err)

def handle_payout_failed(core: Core, flask_app: flask.Flask, event: StripeEvent, err: base.ErrorSink):
    _handle_payout_status(flask_app, event, 'failed', err)

EVENT_HANDLERS: dict[str, StripeEventHandler] = {
    'checkout.session.completed':     handle_checkout_session_completed,
    'customer.subscription.created':  handle_customer_subscription_created,
    'customer.subscription.updated':  handle_customer_subscription_updated,
    'customer.subscription.deleted':  handle_customer_subscription_deleted,
    'invoice.payment_succeeded':      handle_invoice_payment_succeeded,
    'invoice.payment_failed':         handle_invoice_payment_failed,
    'payment_intent.succeeded':       handle_payment_intent_succeeded,
    'payment_intent.payment_failed':  handle_payment_intent_payment_failed,
    'charge.refunded':                handle_charge_refunded,
    'account.updated':                handle_account_updated,
    'account.application.authorized': handle_logged_only,
    'transfer.created':               handle_logged_only,
    'payout.created':                 handle_payout_created,
    'payout.paid':                    handle_payout_paid,
    'payout.failed':                  handle_payout_failed,
}

@flask_blueprint.route(ROUTE_WEBHOOK, methods=['POST'])
def stripe_webhook() -> flask.Response:
    core: Core       = typing.cast(Core, flask.current_app.config[FLASK_CONFIG_PLATFORM_STRIPE_CORE_KEY])
    signature_header = flask.request.headers.get('Stripe-Signature')
    if not signature_header:
        log.error('Stripe webhook received without a Stripe-Signature header')
        return server.json_error_response(400, 'Missing Stripe-Signature header')

    payload = flask.request.get_data(as_text=True)
    err     = base.ErrorSink()
    event   = verify_and_parse_event(core, payload, signature_header, err)
    if err.has():
        log.error(f'Stripe webhook rejected: {err.build()}')
        return server.json_error_response(400, 'Webhook signature verification failed')

    handler = EVENT_HANDLERS.get(event.type)
    if handler is None:
        log.info(f'Unhandled Stripe event type {event.type} ({event.id}), acknowledging')
        return server.json_received_response()

    handler_err = base.ErrorSink()
    try:
        handler(core, flask.current_app, event, handler_err)
    except Exception:
        log.error(f'Failed to process Stripe {event.type} event {event.id}: {traceback.format_exc()}')
        return server.json_error_response(500, 'Webhook processing failed')

    if handler_err.has():
        return server.json_error_response(400, 'Malformed event payload')
    return server.json_received_response()
